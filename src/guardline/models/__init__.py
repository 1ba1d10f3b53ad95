"""
Data models for Guardline

Contains the data classes shared by the stores, the coordinator and the API.
"""

from .emergency import (
    Actor, Role, SosAlert, SosStatus, LocationPoint,
    LocationShareSession, ShareStatus, NearbyUser, utc_now
)

__all__ = [
    'Actor', 'Role', 'SosAlert', 'SosStatus', 'LocationPoint',
    'LocationShareSession', 'ShareStatus', 'NearbyUser', 'utc_now'
]
