"""
Location Service Module

Location history, live sharing sessions and distance helpers.
"""

from .geo import distance_meters, within, nearest_first
from .history_store import LocationHistoryStore
from .share_store import LocationShareStore

__all__ = [
    'distance_meters', 'within', 'nearest_first',
    'LocationHistoryStore', 'LocationShareStore'
]
