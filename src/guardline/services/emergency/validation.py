"""
Input validation for SOS and location requests
"""

import math
from typing import Any, Optional, Tuple

from .errors import ValidationError


# (field, minimum, maximum) for optional sensor readings
SENSOR_RANGES = {
    "accuracy": (0.0, 10000.0),
    "altitude": (-500.0, 10000.0),
    "speed": (0.0, 500.0),
    "heading": (0.0, 360.0),
    "battery_level": (0.0, 100.0),
}


def _as_number(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number")
    if math.isnan(number) or math.isinf(number):
        raise ValidationError(f"{name} must be a finite number")
    return number


def validate_coordinates(latitude: Any, longitude: Any) -> Tuple[float, float]:
    """Validate a required latitude/longitude pair"""
    if latitude is None or longitude is None:
        raise ValidationError("latitude and longitude are required")

    lat = _as_number("latitude", latitude)
    lng = _as_number("longitude", longitude)

    if not -90.0 <= lat <= 90.0:
        raise ValidationError("latitude must be between -90 and 90")
    if not -180.0 <= lng <= 180.0:
        raise ValidationError("longitude must be between -180 and 180")
    return lat, lng


def validate_optional_coordinates(latitude: Any,
                                  longitude: Any) -> Tuple[Optional[float], Optional[float]]:
    """Validate a coordinate pair that may be omitted entirely but not half-given"""
    if latitude is None and longitude is None:
        return None, None
    if latitude is None or longitude is None:
        raise ValidationError("latitude and longitude must be provided together")
    return validate_coordinates(latitude, longitude)


def validate_text(name: str, value: Optional[str], max_length: int) -> Optional[str]:
    """Strip free text and enforce its maximum length; blank text becomes None"""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    value = value.strip()
    if not value:
        return None
    if len(value) > max_length:
        raise ValidationError(f"{name} must be at most {max_length} characters")
    return value


def validate_sensor(name: str, value: Any) -> Optional[float]:
    """Validate an optional sensor reading against its physical range"""
    if value is None:
        return None
    number = _as_number(name, value)
    low, high = SENSOR_RANGES[name]
    if not low <= number <= high:
        raise ValidationError(f"{name} must be between {low:g} and {high:g}")
    return number


def validate_duration(duration_minutes: Any, default: int, maximum: int) -> int:
    """
    Resolve a sharing duration in whole minutes

    Missing durations fall back to ``default``. Fractional values are rounded
    up and the result is clamped to ``[1, maximum]``; zero or negative values
    are rejected.
    """
    if duration_minutes is None:
        return min(default, maximum)
    minutes = _as_number("duration_minutes", duration_minutes)
    if minutes <= 0:
        raise ValidationError("duration_minutes must be positive")
    return max(1, min(int(math.ceil(minutes)), maximum))


def validate_limit(limit: Any, default: int, maximum: int) -> int:
    """Resolve a result limit within ``[1, maximum]``"""
    if limit is None:
        return default
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise ValidationError("limit must be an integer")
    if not 1 <= limit <= maximum:
        raise ValidationError(f"limit must be between 1 and {maximum}")
    return limit


def validate_radius(radius_m: Any) -> float:
    radius = _as_number("radius_m", radius_m)
    if radius <= 0:
        raise ValidationError("radius_m must be positive")
    return radius
