"""
Core module for Guardline

Contains configuration management, logging, database infrastructure
and keyed locking.
"""

from .config import ConfigurationManager, ConfigurationError, EmergencySettings, LocationSettings
from .database import DatabaseManager, DatabaseError, DatabaseBusyError, initialize_database, get_database
from .locks import KeyedLock, LockTimeoutError

__all__ = [
    'ConfigurationManager', 'ConfigurationError', 'EmergencySettings', 'LocationSettings',
    'DatabaseManager', 'DatabaseError', 'DatabaseBusyError', 'initialize_database', 'get_database',
    'KeyedLock', 'LockTimeoutError'
]
