"""
Emergency data models for Guardline

Defines the SOS alert, location sharing and location history records
shared by the stores, the coordinator and the web API.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
import uuid


def utc_now() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Role(Enum):
    """User roles, ordered from least to most privileged"""
    CITIZEN = "citizen"
    VOLUNTEER = "volunteer"
    POLICE = "police"
    ADMIN = "admin"

    @property
    def tier(self) -> int:
        return _ROLE_TIERS[self]

    @classmethod
    def parse(cls, value: Any) -> Optional['Role']:
        """Resolve a role from its value; unknown values yield None"""
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return None


_ROLE_TIERS = {
    Role.CITIZEN: 1,
    Role.VOLUNTEER: 2,
    Role.POLICE: 3,
    Role.ADMIN: 4,
}


class SosStatus(Enum):
    """SOS alert status"""
    ACTIVE = "active"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not SosStatus.ACTIVE


@dataclass(frozen=True)
class Actor:
    """The resolved identity a request acts as"""
    user_id: str
    role: Optional[Role]

    @classmethod
    def of(cls, user_id: str, role: Any) -> 'Actor':
        return cls(user_id=user_id, role=Role.parse(role))


@dataclass
class SosAlert:
    """SOS alert record"""
    user_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: SosStatus = SosStatus.ACTIVE
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    message: Optional[str] = None
    triggered_at: datetime = field(default_factory=utc_now)
    updated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None

    def is_active(self) -> bool:
        """Check if the alert still needs a response"""
        return self.status is SosStatus.ACTIVE

    @property
    def location(self) -> Optional[Dict[str, float]]:
        if self.latitude is None or self.longitude is None:
            return None
        return {"latitude": self.latitude, "longitude": self.longitude}

    def to_dict(self) -> Dict[str, Any]:
        """Owner view of the alert"""
        return {
            "id": self.id,
            "status": self.status.value,
            "location": self.location,
            "message": self.message,
            "triggered_at": _iso(self.triggered_at),
            "updated_at": _iso(self.updated_at),
            "cancelled_at": _iso(self.cancelled_at),
            "resolved_at": _iso(self.resolved_at),
        }

    def to_responder_dict(self) -> Dict[str, Any]:
        """Responder view of the alert, including owner and resolution audit fields"""
        data = self.to_dict()
        data.update({
            "user_id": self.user_id,
            "resolved_by": self.resolved_by,
            "resolution_notes": self.resolution_notes,
        })
        return data


@dataclass
class LocationPoint:
    """A single reported position; never mutated once recorded"""
    user_id: str
    latitude: float
    longitude: float
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    accuracy: Optional[float] = None
    altitude: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None
    battery_level: Optional[int] = None
    recorded_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "coordinates": {"latitude": self.latitude, "longitude": self.longitude},
            "accuracy": self.accuracy,
            "altitude": self.altitude,
            "speed": self.speed,
            "heading": self.heading,
            "battery_level": self.battery_level,
            "recorded_at": _iso(self.recorded_at),
        }


@dataclass
class LocationShareSession:
    """Live location sharing session"""
    user_id: str
    expires_at: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=utc_now)
    stopped_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        """An explicit stop wins over the expiry time"""
        return self.stopped_at is None and now < self.expires_at

    def to_dict(self, now: datetime) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "started_at": _iso(self.started_at),
            "expires_at": _iso(self.expires_at),
            "stopped_at": _iso(self.stopped_at),
            "is_active": self.is_active(now),
        }


@dataclass
class ShareStatus:
    """Sharing state of one user evaluated at a point in time"""
    user_id: str
    is_active: bool
    session: Optional[LocationShareSession] = None
    remaining_seconds: int = 0
    evaluated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "is_active": self.is_active,
            "remaining_seconds": self.remaining_seconds,
            "session": self.session.to_dict(self.evaluated_at) if self.session else None,
        }


@dataclass
class NearbyUser:
    """A sharing user's latest position relative to a search center"""
    point: LocationPoint
    distance_m: float

    @property
    def latitude(self) -> float:
        return self.point.latitude

    @property
    def longitude(self) -> float:
        return self.point.longitude

    def to_dict(self) -> Dict[str, Any]:
        data = self.point.to_dict()
        data["distance_m"] = round(self.distance_m, 1)
        return data
