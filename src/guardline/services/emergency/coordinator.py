"""
Emergency Coordinator

Async facade over the SOS, location share and location history stores:
- checks the actor's capability before touching any record
- runs each blocking store call in a worker thread under a timeout
- schedules notifications to responders and alerting users in the background

A store call that outlives its timeout keeps running in its worker thread.
If it commits afterwards, the notifications the caller would have sent are
dispatched then.
"""

import asyncio
import functools
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ...core.config import EmergencySettings, LocationSettings
from ...core.logging import get_structured_logger
from ...models.emergency import (
    Actor, LocationPoint, LocationShareSession, NearbyUser, ShareStatus, SosAlert
)
from ..location import geo
from ..location.history_store import LocationHistoryStore
from ..location.share_store import LocationShareStore
from . import validation
from .access_policy import (
    Capability, max_search_radius, require_capability, responder_roles, tracking_roles
)
from .errors import EmergencyError, NotFoundError, TransientError, ValidationError
from .notifications import NotificationDispatcher, RecipientSelector
from .sos_store import SosAlertStore


class EmergencyCoordinator:
    """
    Entry point for every emergency and location operation
    """

    def __init__(self, sos_store: SosAlertStore, share_store: LocationShareStore,
                 history_store: LocationHistoryStore, dispatcher: NotificationDispatcher,
                 emergency_settings: Optional[EmergencySettings] = None,
                 location_settings: Optional[LocationSettings] = None):
        self.logger = logging.getLogger(__name__)
        self.slog = get_structured_logger("emergency")
        self.sos_store = sos_store
        self.share_store = share_store
        self.history_store = history_store
        self.dispatcher = dispatcher
        self.emergency_settings = emergency_settings or EmergencySettings()
        self.location_settings = location_settings or LocationSettings()
        self._late: Set[asyncio.Task] = set()

    async def _run(self, func: Callable, *args,
                   on_late: Optional[Callable[[Any], None]] = None, **kwargs) -> Any:
        """
        Run a blocking store call off the event loop, bounded by the store timeout

        Args:
            func: Store method to call
            on_late: Called with the result if the call completes after the
                caller stopped waiting for it

        Raises:
            TransientError: If the call did not finish in time
        """
        name = getattr(func, '__name__', repr(func))
        future = asyncio.ensure_future(asyncio.to_thread(functools.partial(func, *args, **kwargs)))
        try:
            return await asyncio.wait_for(
                asyncio.shield(future),
                timeout=self.emergency_settings.store_timeout_seconds
            )
        except asyncio.TimeoutError:
            self.logger.warning(f"Store call {name} timed out")
            self._follow_late(name, future, on_late)
            raise TransientError("Storage did not respond in time, please retry")
        except asyncio.CancelledError:
            self._follow_late(name, future, on_late)
            raise

    def _follow_late(self, name: str, future: asyncio.Future,
                     on_late: Optional[Callable[[Any], None]]) -> None:
        task = asyncio.ensure_future(self._finish_late(name, future, on_late))
        self._late.add(task)
        task.add_done_callback(self._late.discard)

    async def _finish_late(self, name: str, future: asyncio.Future,
                           on_late: Optional[Callable[[Any], None]]) -> None:
        try:
            result = await future
        except EmergencyError as e:
            self.logger.info(f"Store call {name} finished after timing out without changes: "
                             f"{e.message}")
            return
        except Exception:
            self.logger.exception(f"Store call {name} failed after timing out")
            return

        self.logger.warning(f"Store call {name} completed after timing out")
        self.slog.warning("store_call_completed_late", call=name)
        if on_late is not None:
            on_late(result)

    # SOS lifecycle

    async def trigger_sos(self, actor: Actor, latitude: Optional[float] = None,
                          longitude: Optional[float] = None,
                          message: Optional[str] = None) -> SosAlert:
        """
        Raise an SOS alert for the acting user and alert all responders

        Raises:
            ConflictError: If the user already has an active alert
        """
        require_capability(actor, Capability.TRIGGER_OWN_SOS)
        latitude, longitude = validation.validate_optional_coordinates(latitude, longitude)
        message = validation.validate_text(
            "message", message, self.emergency_settings.max_message_length
        )

        alert = await self._run(self.sos_store.trigger, actor.user_id, latitude, longitude,
                                message, on_late=self._announce_trigger)
        self._announce_trigger(alert)
        return alert

    def _announce_trigger(self, alert: SosAlert) -> None:
        self.logger.critical(f"SOS ALERT: {alert.id} from {alert.user_id} - {alert.message or ''}")
        self.slog.critical("sos_triggered", alert_id=alert.id, user_id=alert.user_id,
                           has_location=alert.location is not None)
        self.dispatcher.dispatch(
            RecipientSelector.for_roles(responder_roles()),
            {"event": "sos_triggered", "alert": alert.to_responder_dict()}
        )

    async def cancel_sos(self, actor: Actor) -> SosAlert:
        """Cancel the acting user's active alert and tell responders it was withdrawn"""
        require_capability(actor, Capability.CANCEL_OWN_SOS)
        alert = await self._run(self.sos_store.cancel, actor.user_id,
                                on_late=self._announce_cancel)
        self._announce_cancel(alert)
        return alert

    def _announce_cancel(self, alert: SosAlert) -> None:
        self.slog.info("sos_cancelled", alert_id=alert.id, user_id=alert.user_id)
        self.dispatcher.dispatch(
            RecipientSelector.for_roles(responder_roles()),
            {"event": "sos_cancelled", "alert_id": alert.id, "user_id": alert.user_id}
        )

    async def get_sos_status(self, actor: Actor) -> Optional[SosAlert]:
        require_capability(actor, Capability.VIEW_OWN_SOS)
        return await self._run(self.sos_store.get_active_for_user, actor.user_id)

    async def sos_history(self, actor: Actor, limit: Optional[int] = None) -> List[SosAlert]:
        """Own alerts in any state, newest first"""
        require_capability(actor, Capability.VIEW_OWN_SOS)
        limit = validation.validate_limit(limit, 20, 100)
        return await self._run(self.sos_store.history_for_user, actor.user_id, limit)

    async def list_active_sos(self, actor: Actor) -> List[SosAlert]:
        require_capability(actor, Capability.VIEW_ALL_ACTIVE_SOS)
        return await self._run(self.sos_store.list_all_active)

    async def resolve_sos(self, actor: Actor, alert_id: str,
                          notes: Optional[str] = None) -> SosAlert:
        """
        Resolve an alert as a responder and tell the alerting user

        Raises:
            NotFoundError: If the alert does not exist
            InvalidStateError: If the alert is no longer active
        """
        require_capability(actor, Capability.RESOLVE_SOS)
        notes = validation.validate_text("notes", notes, self.emergency_settings.max_notes_length)

        alert = await self._run(self.sos_store.resolve, alert_id, actor.user_id, notes,
                                on_late=self._announce_resolve)
        self._announce_resolve(alert)
        return alert

    def _announce_resolve(self, alert: SosAlert) -> None:
        self.slog.info("sos_resolved", alert_id=alert.id, user_id=alert.user_id,
                       resolved_by=alert.resolved_by)
        self.dispatcher.dispatch(
            RecipientSelector.for_user(alert.user_id),
            {"event": "sos_resolved", "alert": alert.to_dict()}
        )

    async def sos_stats(self, actor: Actor) -> Dict[str, Any]:
        require_capability(actor, Capability.VIEW_SOS_STATS)
        return await self._run(self.sos_store.stats)

    # Location reporting

    async def update_location(self, actor: Actor, latitude: Any, longitude: Any,
                              accuracy: Any = None, altitude: Any = None, speed: Any = None,
                              heading: Any = None, battery_level: Any = None) -> LocationPoint:
        """
        Record the acting user's position

        An active SOS alert of the user follows the new position. While the
        user shares their location, trackers receive the new position live.
        """
        latitude, longitude = validation.validate_coordinates(latitude, longitude)
        battery = validation.validate_sensor("battery_level", battery_level)
        point = LocationPoint(
            user_id=actor.user_id,
            latitude=latitude,
            longitude=longitude,
            accuracy=validation.validate_sensor("accuracy", accuracy),
            altitude=validation.validate_sensor("altitude", altitude),
            speed=validation.validate_sensor("speed", speed),
            heading=validation.validate_sensor("heading", heading),
            battery_level=int(round(battery)) if battery is not None else None
        )

        recorded = await self._run(self._record_location, point,
                                   on_late=self._announce_location)
        self._announce_location(recorded)
        return recorded[0]

    def _record_location(self, point: LocationPoint
                         ) -> Tuple[LocationPoint, Optional[SosAlert], bool]:
        point = self.history_store.append(point)
        alert = self.sos_store.update_location(point.user_id, point.latitude, point.longitude)
        sharing = self.share_store.get_status(point.user_id).is_active
        return point, alert, sharing

    def _announce_location(self, recorded: Tuple[LocationPoint, Optional[SosAlert], bool]) -> None:
        point, alert, sharing = recorded
        if alert is not None:
            self.slog.info("sos_location_updated", alert_id=alert.id, user_id=point.user_id)
            self.dispatcher.dispatch(
                RecipientSelector.for_roles(responder_roles()),
                {"event": "sos_location_updated", "alert_id": alert.id,
                 "user_id": point.user_id, "location": alert.location}
            )
        if sharing:
            self.dispatcher.dispatch(
                RecipientSelector.for_roles(tracking_roles()),
                {"event": "rider_location", "location": point.to_dict()}
            )

    async def location_history(self, actor: Actor, start: Optional[datetime] = None,
                               end: Optional[datetime] = None, limit: Optional[int] = None,
                               page: int = 1) -> Tuple[List[LocationPoint], int]:
        """Own recorded points within an optional time range, newest first"""
        start, end, limit, page = self._history_window(start, end, limit, page)
        return await self._run(self.history_store.history, actor.user_id, start, end, limit, page)

    async def rider_location_history(self, actor: Actor, user_id: str,
                                     start: Optional[datetime] = None,
                                     end: Optional[datetime] = None,
                                     limit: Optional[int] = None,
                                     page: int = 1) -> Tuple[List[LocationPoint], int]:
        """
        Recorded points of another user while they share their location

        Raises:
            AuthorizationError: If the actor may not read other users' history
            NotSharingError: If the target is not sharing
        """
        if user_id == actor.user_id:
            return await self.location_history(actor, start, end, limit, page)

        require_capability(actor, Capability.VIEW_RIDER_HISTORY)
        start, end, limit, page = self._history_window(start, end, limit, page)
        return await self._run(self.share_store.shared_history, user_id, start, end, limit, page)

    def _history_window(self, start: Optional[datetime], end: Optional[datetime],
                        limit: Optional[int], page: Any):
        if start is not None and end is not None and end <= start:
            raise ValidationError("end must be after start")
        if isinstance(page, bool) or not isinstance(page, int) or page < 1:
            raise ValidationError("page must be a positive integer")
        limit = validation.validate_limit(limit, 50, self.location_settings.history_limit)
        return start, end, limit, page

    async def latest_location(self, actor: Actor) -> LocationPoint:
        point = await self._run(self.history_store.latest, actor.user_id)
        if point is None:
            raise NotFoundError("No location reported yet")
        return point

    # Live sharing

    async def start_sharing(self, actor: Actor,
                            duration_minutes: Optional[float] = None) -> LocationShareSession:
        session = await self._run(self.share_store.start_sharing, actor.user_id, duration_minutes,
                                  on_late=self._announce_sharing_started)
        self._announce_sharing_started(session)
        return session

    def _announce_sharing_started(self, session: LocationShareSession) -> None:
        self.slog.info("sharing_started", user_id=session.user_id,
                       expires_at=session.expires_at.isoformat())
        self.dispatcher.dispatch(
            RecipientSelector.for_roles(tracking_roles()),
            {"event": "rider_sharing_changed", "user_id": session.user_id, "enabled": True,
             "expires_at": session.expires_at.isoformat()}
        )

    async def stop_sharing(self, actor: Actor) -> Optional[LocationShareSession]:
        session = await self._run(self.share_store.stop_sharing, actor.user_id,
                                  on_late=self._announce_sharing_stopped)
        self._announce_sharing_stopped(session)
        return session

    def _announce_sharing_stopped(self, session: Optional[LocationShareSession]) -> None:
        if session is None:
            return
        self.slog.info("sharing_stopped", user_id=session.user_id)
        self.dispatcher.dispatch(
            RecipientSelector.for_roles(tracking_roles()),
            {"event": "rider_sharing_changed", "user_id": session.user_id, "enabled": False}
        )

    async def sharing_status(self, actor: Actor) -> ShareStatus:
        return await self._run(self.share_store.get_status, actor.user_id)

    async def sharing_stats(self, actor: Actor) -> Dict[str, Any]:
        """Number of users sharing their location right now"""
        require_capability(actor, Capability.VIEW_SOS_STATS)
        count = await self._run(self.share_store.sharing_count)
        return {
            "sharing_users": count,
            "timestamp": self.share_store.now().astimezone(timezone.utc).isoformat(),
        }

    async def shared_location(self, actor: Actor, user_id: str) -> LocationPoint:
        """
        Latest location of a sharing user

        Users may always read their own latest location.

        Raises:
            AuthorizationError: If the actor may not view other users
            NotSharingError: If the target is not sharing
            NotFoundError: If the target shares but never reported a position
        """
        if user_id == actor.user_id:
            return await self.latest_location(actor)

        require_capability(actor, Capability.VIEW_OTHERS_LOCATION)
        return await self._run(self.share_store.get_shared_location, user_id)

    async def nearby_users(self, actor: Actor, latitude: Any, longitude: Any,
                           radius_m: Any = None, limit: Optional[int] = None) -> List[NearbyUser]:
        """
        Sharing users within a radius of a point, nearest first

        Volunteers are capped to the configured search radius; police and
        admins search without a cap. The acting user is never included.
        """
        require_capability(actor, Capability.VIEW_OTHERS_LOCATION)
        center = validation.validate_coordinates(latitude, longitude)
        radius = (validation.validate_radius(radius_m) if radius_m is not None
                  else self.location_settings.default_radius_m)
        cap = max_search_radius(actor.role, self.location_settings.volunteer_max_radius_m)
        if cap is not None:
            radius = min(radius, cap)
        limit = validation.validate_limit(limit, 100, 500)

        points = await self._sharing_points(exclude=actor.user_id)
        candidates = [
            NearbyUser(point=point, distance_m=geo.distance_between(center, point))
            for point in points
        ]
        nearby = geo.nearest_first(center, geo.within(radius, center, candidates))
        return nearby[:limit]

    async def active_users(self, actor: Actor, limit: Optional[int] = None) -> List[LocationPoint]:
        """Latest positions of every sharing user, most recently reported first"""
        require_capability(actor, Capability.VIEW_ACTIVE_USERS_MAP)
        limit = validation.validate_limit(limit, 100, 500)
        points = await self._sharing_points()
        points.sort(key=lambda point: point.recorded_at, reverse=True)
        return points[:limit]

    async def _sharing_points(self, exclude: Optional[str] = None) -> List[LocationPoint]:
        user_ids = await self._run(self.share_store.active_user_ids)
        user_ids = [user_id for user_id in user_ids if user_id != exclude]
        latest = await self._run(self.history_store.latest_for_users, user_ids)
        return [latest[user_id] for user_id in user_ids if user_id in latest]

    async def drain_notifications(self, timeout: Optional[float] = None) -> None:
        """Wait for store calls that outlived their timeout and for pending notifications"""
        if self._late:
            done, not_done = await asyncio.wait(set(self._late), timeout=timeout)
            for task in not_done:
                self.logger.warning("Store call still running at shutdown")
                task.cancel()
        await self.dispatcher.drain(timeout)
