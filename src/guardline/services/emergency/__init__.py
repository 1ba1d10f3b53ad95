"""
Emergency Response Service Module

Provides the SOS alert lifecycle:
- SOS alert storage with one active alert per user
- Role-based access policy for responders
- Fire-and-forget notifications to responders and alerting users

The coordinator lives in ``guardline.services.emergency.coordinator``.
"""

from .errors import (
    EmergencyError, AuthorizationError, NotFoundError, NotSharingError,
    ConflictError, InvalidStateError, TransientError, ValidationError
)
from .access_policy import Capability, has_capability, require_capability, max_search_radius, responder_roles
from .sos_store import SosAlertStore
from .notifications import (
    RecipientSelector, NotificationGateway, LoggingNotificationGateway,
    WebSocketManager, WebSocketNotificationGateway, NotificationDispatcher
)

__all__ = [
    'EmergencyError', 'AuthorizationError', 'NotFoundError', 'NotSharingError',
    'ConflictError', 'InvalidStateError', 'TransientError', 'ValidationError',
    'Capability', 'has_capability', 'require_capability', 'max_search_radius', 'responder_roles',
    'SosAlertStore',
    'RecipientSelector', 'NotificationGateway', 'LoggingNotificationGateway',
    'WebSocketManager', 'WebSocketNotificationGateway', 'NotificationDispatcher'
]
