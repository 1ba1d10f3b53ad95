"""
Role-based access policy for the emergency subsystem

Pure functions over the role/capability table. Unknown or missing roles are
granted nothing.
"""

from typing import Any, FrozenSet, Optional

from ...models.emergency import Actor, Role
from .errors import AuthorizationError


class Capability:
    """Capability definitions"""
    # Own SOS lifecycle
    TRIGGER_OWN_SOS = "sos:trigger_own"
    CANCEL_OWN_SOS = "sos:cancel_own"
    VIEW_OWN_SOS = "sos:view_own"

    # Responder actions
    VIEW_ALL_ACTIVE_SOS = "sos:view_all_active"
    RESOLVE_SOS = "sos:resolve"
    VIEW_SOS_STATS = "sos:view_stats"

    # Location visibility
    VIEW_OTHERS_LOCATION = "location:view_others"
    VIEW_ACTIVE_USERS_MAP = "location:view_active_map"
    VIEW_RIDER_HISTORY = "location:view_rider_history"


_CITIZEN_CAPABILITIES = frozenset({
    Capability.TRIGGER_OWN_SOS, Capability.CANCEL_OWN_SOS, Capability.VIEW_OWN_SOS,
})

_VOLUNTEER_CAPABILITIES = _CITIZEN_CAPABILITIES | {
    Capability.VIEW_SOS_STATS,
    Capability.VIEW_OTHERS_LOCATION, Capability.VIEW_ACTIVE_USERS_MAP,
}

_RESPONDER_CAPABILITIES = _VOLUNTEER_CAPABILITIES | {
    Capability.VIEW_ALL_ACTIVE_SOS, Capability.RESOLVE_SOS,
    Capability.VIEW_RIDER_HISTORY,
}

# Role-based capability mapping; each role holds a superset of the one below it
ROLE_CAPABILITIES = {
    Role.CITIZEN: _CITIZEN_CAPABILITIES,
    Role.VOLUNTEER: _VOLUNTEER_CAPABILITIES,
    Role.POLICE: _RESPONDER_CAPABILITIES,
    Role.ADMIN: _RESPONDER_CAPABILITIES,
}

RESPONDER_ROLES = frozenset({Role.POLICE, Role.ADMIN})

TRACKING_ROLES = frozenset(
    role for role, capabilities in ROLE_CAPABILITIES.items()
    if Capability.VIEW_ACTIVE_USERS_MAP in capabilities
)


def has_capability(role: Any, capability: str) -> bool:
    """Check whether ``role`` grants ``capability``; never raises"""
    resolved = Role.parse(role) if role is not None else None
    if resolved is None:
        return False
    return capability in ROLE_CAPABILITIES.get(resolved, frozenset())


def require_capability(actor: Actor, capability: str) -> None:
    """
    Raise AuthorizationError unless the actor's role grants the capability

    The message names the missing capability only, never the target record.
    """
    if not has_capability(actor.role, capability):
        raise AuthorizationError(f"Missing capability: {capability}")


def max_search_radius(role: Any, volunteer_cap_m: float) -> Optional[float]:
    """
    Largest radius in meters a role may search for nearby users

    Returns None for unrestricted roles and 0 for roles that may not
    search at all.
    """
    resolved = Role.parse(role) if role is not None else None
    if resolved in RESPONDER_ROLES:
        return None
    if resolved is Role.VOLUNTEER:
        return volunteer_cap_m
    return 0.0


def responder_roles() -> FrozenSet[Role]:
    """Roles that receive new SOS alerts"""
    return RESPONDER_ROLES


def tracking_roles() -> FrozenSet[Role]:
    """Roles that receive live rider positions and sharing changes"""
    return TRACKING_ROLES
