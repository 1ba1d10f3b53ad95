"""
Configuration Management System for Guardline

Handles loading configuration from environment variables, config files,
and provides validation, typed settings and runtime updates.
"""

import os
import json
import yaml
import logging
from typing import Any, Dict, List, Optional, Callable
from pathlib import Path
from dataclasses import dataclass, field


@dataclass
class ConfigSource:
    """Configuration source definition"""
    name: str
    priority: int
    loader: Callable
    path: Optional[str] = None


class ConfigurationError(Exception):
    """Configuration-related errors"""
    pass


@dataclass
class EmergencySettings:
    """Tunables for the SOS alert lifecycle"""
    max_message_length: int = 500
    max_notes_length: int = 1000
    stats_windows: Dict[str, int] = field(
        default_factory=lambda: {"last_24h": 24, "last_7d": 168}
    )
    lock_timeout_seconds: float = 5.0
    store_timeout_seconds: float = 10.0


@dataclass
class LocationSettings:
    """Tunables for live location sharing"""
    default_share_minutes: int = 60
    max_share_minutes: int = 480
    volunteer_max_radius_m: float = 5000.0
    default_radius_m: float = 2000.0
    history_limit: int = 200


class ConfigurationManager:
    """
    Manages system configuration with support for multiple sources,
    validation, and runtime updates.
    """

    def __init__(self, config_dir: str = "config"):
        self.config_dir = Path(config_dir)
        self.config: Dict[str, Any] = {}
        self.watchers: Dict[str, List[Callable]] = {}
        self.sources: List[ConfigSource] = []
        self.logger = logging.getLogger(__name__)

        # Default configuration values
        self.defaults = {
            "app": {
                "name": "Guardline",
                "version": "1.0.0",
                "debug": False,
                "log_level": "INFO"
            },
            "database": {
                "path": "data/guardline.db",
                "max_connections": 10,
                "connection_wait": 5.0,
                "timeout_seconds": 10.0
            },
            "emergency": {
                "max_message_length": 500,
                "max_notes_length": 1000,
                "stats_windows": {"last_24h": 24, "last_7d": 168},
                "lock_timeout_seconds": 5.0
            },
            "location": {
                "default_share_minutes": 60,
                "max_share_minutes": 480,
                "volunteer_max_radius_m": 5000,
                "default_radius_m": 2000,
                "history_limit": 200
            },
            "notifications": {
                "gateway": "websocket"
            },
            "web": {
                "host": "0.0.0.0",
                "port": 8080,
                "secret_key": "change-me-in-production",
                "algorithm": "HS256",
                "api_prefix": "/api/v1",
                "cors_origins": ["*"]
            },
            "logging": {
                "level": "INFO",
                "file": "logs/guardline.log",
                "max_size": "10MB",
                "backup_count": 5
            }
        }

        self._setup_sources()

    def _setup_sources(self):
        """Set up configuration sources in priority order"""
        # Environment variables (highest priority)
        self.sources.append(ConfigSource(
            name="environment",
            priority=4,
            loader=self._load_from_env
        ))

        local_config_path = str(self.config_dir / "config.yaml")
        self.sources.append(ConfigSource(
            name="local_config",
            priority=3,
            loader=lambda: self._load_from_file(local_config_path),
            path=local_config_path
        ))

        default_config_path = str(self.config_dir / "default.yaml")
        self.sources.append(ConfigSource(
            name="default_config",
            priority=2,
            loader=lambda: self._load_from_file(default_config_path),
            path=default_config_path
        ))

        # Built-in defaults (lowest priority)
        self.sources.append(ConfigSource(
            name="defaults",
            priority=1,
            loader=lambda: self.defaults
        ))

    def load_config(self) -> None:
        """Load configuration from all sources"""
        self.logger.info("Loading configuration from all sources")

        merged_config = {}

        # Lowest priority first so later sources override
        for source in sorted(self.sources, key=lambda x: x.priority):
            try:
                source_config = source.loader()
                if source_config:
                    merged_config = self._deep_merge(merged_config, source_config)
                    self.logger.debug(f"Loaded configuration from {source.name}")
            except Exception as e:
                self.logger.warning(f"Failed to load config from {source.name}: {e}")

        self.config = merged_config
        self._validate_config()
        self.logger.info("Configuration loaded successfully")

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment variables"""
        config = {}

        env_mappings = {
            "GUARDLINE_DEBUG": "app.debug",
            "GUARDLINE_LOG_LEVEL": "app.log_level",
            "GUARDLINE_DB_PATH": "database.path",
            "GUARDLINE_WEB_HOST": "web.host",
            "GUARDLINE_WEB_PORT": "web.port",
            "GUARDLINE_SECRET_KEY": "web.secret_key",
            "GUARDLINE_MAX_SHARE_MINUTES": "location.max_share_minutes",
            "GUARDLINE_CORS_ORIGINS": "web.cors_origins"
        }

        for env_var, config_key in env_mappings.items():
            value = os.getenv(env_var)
            if value is not None:
                # Convert string values to appropriate types
                if value.lower() in ('true', 'false'):
                    value = value.lower() == 'true'
                elif value.isdigit():
                    value = int(value)
                elif config_key == "web.cors_origins":
                    try:
                        value = json.loads(value)
                    except json.JSONDecodeError:
                        value = [item.strip() for item in value.split(',') if item.strip()]

                self._set_nested_value(config, config_key, value)

        return config

    def _load_from_file(self, file_path: str) -> Dict[str, Any]:
        """Load configuration from YAML or JSON file"""
        path = Path(file_path)

        if not path.exists():
            return {}

        try:
            with open(path, 'r') as f:
                if path.suffix.lower() in ['.yaml', '.yml']:
                    return yaml.safe_load(f) or {}
                elif path.suffix.lower() == '.json':
                    return json.load(f)
                else:
                    self.logger.warning(f"Unsupported config file format: {path}")
                    return {}
        except Exception as e:
            self.logger.error(f"Error loading config file {path}: {e}")
            return {}

    def _deep_merge(self, base: Dict, override: Dict) -> Dict:
        """Deep merge two dictionaries"""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def _set_nested_value(self, config: Dict, key_path: str, value: Any) -> None:
        """Set a nested configuration value using dot notation"""
        keys = key_path.split('.')
        current = config

        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def _validate_config(self) -> None:
        """Validate configuration values"""
        errors = []

        required_sections = ['app', 'database', 'emergency', 'location', 'web']
        for section in required_sections:
            if section not in self.config:
                errors.append(f"Missing required configuration section: {section}")

        db_path = self.get('database.path')
        if db_path:
            db_dir = Path(db_path).parent
            if not db_dir.exists():
                try:
                    db_dir.mkdir(parents=True, exist_ok=True)
                except Exception as e:
                    errors.append(f"Cannot create database directory {db_dir}: {e}")

        web_port = self.get('web.port')
        if web_port and (not isinstance(web_port, int) or web_port < 1 or web_port > 65535):
            errors.append(f"Invalid web port: {web_port}")

        log_level = self.get('app.log_level', 'INFO')
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if str(log_level).upper() not in valid_levels:
            errors.append(f"Invalid log level: {log_level}")

        default_minutes = self.get('location.default_share_minutes', 60)
        max_minutes = self.get('location.max_share_minutes', 480)
        if not isinstance(max_minutes, int) or max_minutes < 1:
            errors.append(f"Invalid max_share_minutes: {max_minutes}")
        elif not isinstance(default_minutes, int) or not 1 <= default_minutes <= max_minutes:
            errors.append(
                f"default_share_minutes must be between 1 and {max_minutes}: {default_minutes}"
            )

        max_message = self.get('emergency.max_message_length', 500)
        if not isinstance(max_message, int) or max_message < 1:
            errors.append(f"Invalid max_message_length: {max_message}")

        windows = self.get('emergency.stats_windows', {})
        if not isinstance(windows, dict) or any(
            not isinstance(hours, int) or hours < 1 for hours in windows.values()
        ):
            errors.append(f"Invalid stats_windows: {windows}")

        if errors:
            raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation"""
        keys = key.split('.')
        current = self.config

        try:
            for k in keys:
                current = current[k]
            return current
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """Set configuration value using dot notation"""
        self._set_nested_value(self.config, key, value)

        if key in self.watchers:
            for callback in self.watchers[key]:
                try:
                    callback(key, value)
                except Exception as e:
                    self.logger.error(f"Error in config watcher for {key}: {e}")

    def watch(self, key: str, callback: Callable[[str, Any], None]) -> None:
        """Watch for configuration changes"""
        if key not in self.watchers:
            self.watchers[key] = []
        self.watchers[key].append(callback)

    def get_section(self, section: str) -> Dict[str, Any]:
        """Get entire configuration section"""
        return self.get(section, {})

    def get_emergency_settings(self) -> EmergencySettings:
        """Build the SOS lifecycle settings from the loaded configuration"""
        section = self.get_section('emergency')
        return EmergencySettings(
            max_message_length=section.get('max_message_length', 500),
            max_notes_length=section.get('max_notes_length', 1000),
            stats_windows=dict(section.get('stats_windows', {"last_24h": 24, "last_7d": 168})),
            lock_timeout_seconds=float(section.get('lock_timeout_seconds', 5.0)),
            store_timeout_seconds=float(self.get('database.timeout_seconds', 10.0))
        )

    def get_location_settings(self) -> LocationSettings:
        """Build the location sharing settings from the loaded configuration"""
        section = self.get_section('location')
        return LocationSettings(
            default_share_minutes=section.get('default_share_minutes', 60),
            max_share_minutes=section.get('max_share_minutes', 480),
            volunteer_max_radius_m=float(section.get('volunteer_max_radius_m', 5000)),
            default_radius_m=float(section.get('default_radius_m', 2000)),
            history_limit=section.get('history_limit', 200)
        )

    def export_config(self, file_path: str) -> None:
        """Export current configuration to file"""
        path = Path(file_path)

        try:
            with open(path, 'w') as f:
                if path.suffix.lower() in ['.yaml', '.yml']:
                    yaml.dump(self.config, f, default_flow_style=False, indent=2)
                elif path.suffix.lower() == '.json':
                    json.dump(self.config, f, indent=2)
                else:
                    raise ValueError(f"Unsupported file format: {path.suffix}")

            self.logger.info(f"Configuration exported to {path}")
        except Exception as e:
            self.logger.error(f"Failed to export configuration: {e}")
            raise ConfigurationError(f"Export failed: {e}")
