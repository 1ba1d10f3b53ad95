"""
Unit tests for the Emergency Coordinator
"""

import time
from unittest.mock import AsyncMock

import pytest

from guardline.models.emergency import Actor, Role, SosStatus
from guardline.services.emergency.access_policy import responder_roles, tracking_roles
from guardline.services.emergency.coordinator import EmergencyCoordinator
from guardline.services.emergency.errors import (
    AuthorizationError, ConflictError, NotFoundError, NotSharingError,
    TransientError, ValidationError
)
from guardline.services.emergency.notifications import NotificationDispatcher


class TestSosOperations:
    """SOS operations through the coordinator"""

    @pytest.mark.asyncio
    async def test_trigger_notifies_responders(self, coordinator, gateway, citizen):
        alert = await coordinator.trigger_sos(citizen, 40.0, -74.0, "  Help me  ")
        await coordinator.drain_notifications()

        assert alert.message == "Help me"
        assert gateway.events() == ["sos_triggered"]
        selector, payload = gateway.sent[0]
        assert selector.roles == responder_roles()
        assert payload["alert"]["id"] == alert.id
        assert payload["alert"]["user_id"] == citizen.user_id

    @pytest.mark.asyncio
    async def test_retrigger_conflicts(self, coordinator, citizen):
        first = await coordinator.trigger_sos(citizen)

        with pytest.raises(ConflictError) as exc_info:
            await coordinator.trigger_sos(citizen)

        assert exc_info.value.existing.id == first.id

    @pytest.mark.asyncio
    async def test_trigger_rejects_half_coordinates(self, coordinator, gateway, citizen):
        with pytest.raises(ValidationError):
            await coordinator.trigger_sos(citizen, latitude=10.0)

        assert await coordinator.get_sos_status(citizen) is None
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_trigger_rejects_long_message(self, coordinator, citizen):
        with pytest.raises(ValidationError):
            await coordinator.trigger_sos(citizen, message="x" * 501)

    @pytest.mark.asyncio
    async def test_unknown_role_has_no_capabilities(self, coordinator):
        stranger = Actor.of("stranger", "superhero")

        with pytest.raises(AuthorizationError):
            await coordinator.trigger_sos(stranger)

    @pytest.mark.asyncio
    async def test_cancel_notifies_withdrawal(self, coordinator, gateway, citizen):
        alert = await coordinator.trigger_sos(citizen)

        cancelled = await coordinator.cancel_sos(citizen)
        await coordinator.drain_notifications()

        assert cancelled.id == alert.id
        assert gateway.events() == ["sos_triggered", "sos_cancelled"]
        assert gateway.sent[1][1]["alert_id"] == alert.id

    @pytest.mark.asyncio
    async def test_citizen_cannot_list_active(self, coordinator, citizen):
        with pytest.raises(AuthorizationError):
            await coordinator.list_active_sos(citizen)

    @pytest.mark.asyncio
    async def test_volunteer_cannot_resolve_but_sees_stats(self, coordinator, citizen, volunteer):
        alert = await coordinator.trigger_sos(citizen)

        with pytest.raises(AuthorizationError):
            await coordinator.resolve_sos(volunteer, alert.id)

        stats = await coordinator.sos_stats(volunteer)
        assert stats["by_status"]["active"] == 1

    @pytest.mark.asyncio
    async def test_authorization_checked_before_lookup(self, coordinator, citizen):
        # Unknown id still yields AuthorizationError, not NotFoundError
        with pytest.raises(AuthorizationError):
            await coordinator.resolve_sos(citizen, "no-such-alert")

    @pytest.mark.asyncio
    async def test_resolve_notifies_alerting_user(self, coordinator, gateway, citizen, police):
        alert = await coordinator.trigger_sos(citizen)

        resolved = await coordinator.resolve_sos(police, alert.id, "On scene")
        await coordinator.drain_notifications()

        assert resolved.status is SosStatus.RESOLVED
        assert resolved.resolved_by == police.user_id
        selector, payload = gateway.sent[-1]
        assert selector.user_id == citizen.user_id
        assert payload["event"] == "sos_resolved"
        assert "resolved_by" not in payload["alert"]

    @pytest.mark.asyncio
    async def test_sos_history(self, coordinator, citizen, clock):
        await coordinator.trigger_sos(citizen)
        await coordinator.cancel_sos(citizen)
        clock.advance(minutes=1)
        second = await coordinator.trigger_sos(citizen)

        history = await coordinator.sos_history(citizen)

        assert [alert.id for alert in history][0] == second.id
        assert len(history) == 2

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_roll_back(self, sos_store, share_store,
                                                           history_store, citizen, caplog):
        failing = AsyncMock()
        failing.notify.side_effect = RuntimeError("push provider down")
        coordinator = EmergencyCoordinator(
            sos_store, share_store, history_store, NotificationDispatcher(failing)
        )

        alert = await coordinator.trigger_sos(citizen)
        await coordinator.drain_notifications()

        failing.notify.assert_awaited_once()
        assert sos_store.get_active_for_user(citizen.user_id).id == alert.id
        assert "failed" in caplog.text

    @pytest.mark.asyncio
    async def test_store_timeout_is_transient(self, coordinator, citizen, monkeypatch):
        coordinator.emergency_settings.store_timeout_seconds = 0.05

        def slow_get(user_id):
            time.sleep(0.3)

        monkeypatch.setattr(coordinator.sos_store, "get_active_for_user", slow_get)

        with pytest.raises(TransientError):
            await coordinator.get_sos_status(citizen)
        await coordinator.drain_notifications()

    @pytest.mark.asyncio
    async def test_trigger_committed_after_timeout_still_notifies(self, coordinator, gateway,
                                                                  citizen, monkeypatch):
        coordinator.emergency_settings.store_timeout_seconds = 0.05
        trigger = coordinator.sos_store.trigger

        def slow_trigger(*args):
            time.sleep(0.3)
            return trigger(*args)

        monkeypatch.setattr(coordinator.sos_store, "trigger", slow_trigger)

        with pytest.raises(TransientError):
            await coordinator.trigger_sos(citizen, message="Help")
        await coordinator.drain_notifications()

        alert = coordinator.sos_store.get_active_for_user(citizen.user_id)
        assert alert is not None
        assert gateway.events() == ["sos_triggered"]
        assert gateway.sent[0][1]["alert"]["id"] == alert.id

        monkeypatch.undo()
        coordinator.emergency_settings.store_timeout_seconds = 5.0
        with pytest.raises(ConflictError):
            await coordinator.trigger_sos(citizen)

    @pytest.mark.asyncio
    async def test_resolve_committed_after_timeout_notifies_user(self, coordinator, gateway,
                                                                 citizen, police, monkeypatch):
        alert = await coordinator.trigger_sos(citizen)
        coordinator.emergency_settings.store_timeout_seconds = 0.05
        resolve = coordinator.sos_store.resolve

        def slow_resolve(*args):
            time.sleep(0.3)
            return resolve(*args)

        monkeypatch.setattr(coordinator.sos_store, "resolve", slow_resolve)

        with pytest.raises(TransientError):
            await coordinator.resolve_sos(police, alert.id, "On scene")
        await coordinator.drain_notifications()

        selector, payload = gateway.sent[-1]
        assert payload["event"] == "sos_resolved"
        assert selector.user_id == citizen.user_id
        assert coordinator.sos_store.get(alert.id).status is SosStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_rejected_call_after_timeout_sends_nothing(self, coordinator, gateway,
                                                             citizen, monkeypatch):
        await coordinator.trigger_sos(citizen)
        await coordinator.drain_notifications()
        coordinator.emergency_settings.store_timeout_seconds = 0.05
        trigger = coordinator.sos_store.trigger

        def slow_trigger(*args):
            time.sleep(0.3)
            return trigger(*args)

        monkeypatch.setattr(coordinator.sos_store, "trigger", slow_trigger)

        with pytest.raises(TransientError):
            await coordinator.trigger_sos(citizen)
        await coordinator.drain_notifications()

        assert gateway.events() == ["sos_triggered"]


class TestLocationOperations:
    """Location reporting and sharing through the coordinator"""

    @pytest.mark.asyncio
    async def test_update_location_refreshes_active_alert(self, coordinator, gateway, citizen):
        alert = await coordinator.trigger_sos(citizen, 1.0, 1.0)

        point = await coordinator.update_location(citizen, 1.5, 1.25, battery_level=55.4)
        await coordinator.drain_notifications()

        assert point.battery_level == 55
        status = await coordinator.get_sos_status(citizen)
        assert status.id == alert.id
        assert status.location == {"latitude": 1.5, "longitude": 1.25}
        assert "sos_location_updated" in gateway.events()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field,value", [
        ("accuracy", -1), ("altitude", -600), ("speed", 501),
        ("heading", 361), ("battery_level", 101),
    ])
    async def test_update_location_sensor_ranges(self, coordinator, citizen, field, value):
        with pytest.raises(ValidationError):
            await coordinator.update_location(citizen, 1.0, 1.0, **{field: value})

    @pytest.mark.asyncio
    async def test_update_location_rejects_out_of_range(self, coordinator, citizen):
        with pytest.raises(ValidationError):
            await coordinator.update_location(citizen, 91.0, 0.0)
        with pytest.raises(ValidationError):
            await coordinator.update_location(citizen, 0.0, -181.0)

    @pytest.mark.asyncio
    async def test_location_history_range_validation(self, coordinator, citizen, clock):
        now = clock()
        with pytest.raises(ValidationError):
            await coordinator.location_history(citizen, start=now, end=now)

    @pytest.mark.asyncio
    async def test_latest_location(self, coordinator, citizen):
        with pytest.raises(NotFoundError):
            await coordinator.latest_location(citizen)

        point = await coordinator.update_location(citizen, 5.0, 6.0)
        assert (await coordinator.latest_location(citizen)).id == point.id

    @pytest.mark.asyncio
    async def test_shared_location_requires_capability(self, coordinator, citizen):
        other = Actor("citizen-2", Role.CITIZEN)
        await coordinator.start_sharing(other)

        with pytest.raises(AuthorizationError):
            await coordinator.shared_location(citizen, other.user_id)

    @pytest.mark.asyncio
    async def test_own_location_always_visible(self, coordinator, citizen):
        point = await coordinator.update_location(citizen, 5.0, 6.0)

        assert (await coordinator.shared_location(citizen, citizen.user_id)).id == point.id

    @pytest.mark.asyncio
    async def test_volunteer_sees_sharing_user(self, coordinator, citizen, volunteer, clock):
        await coordinator.start_sharing(citizen, 1)
        point = await coordinator.update_location(citizen, 5.0, 6.0)

        assert (await coordinator.shared_location(volunteer, citizen.user_id)).id == point.id

        clock.advance(seconds=61)
        with pytest.raises(NotSharingError):
            await coordinator.shared_location(volunteer, citizen.user_id)

    @pytest.mark.asyncio
    async def test_nearby_users_sorted_and_capped_for_volunteer(self, coordinator, volunteer, police):
        # ~1.1 km, ~3.3 km and ~8.9 km north of the origin
        for user_id, lat in [("far", 0.08), ("near", 0.01), ("mid", 0.03)]:
            actor = Actor(user_id, Role.CITIZEN)
            await coordinator.start_sharing(actor)
            await coordinator.update_location(actor, lat, 0.0)

        volunteer_view = await coordinator.nearby_users(volunteer, 0.0, 0.0, radius_m=20000)
        police_view = await coordinator.nearby_users(police, 0.0, 0.0, radius_m=20000)

        assert [u.point.user_id for u in volunteer_view] == ["near", "mid"]
        assert [u.point.user_id for u in police_view] == ["near", "mid", "far"]
        assert volunteer_view[0].distance_m == pytest.approx(1112, abs=5)

    @pytest.mark.asyncio
    async def test_nearby_excludes_non_sharing_and_self(self, coordinator, police):
        silent = Actor("silent", Role.CITIZEN)
        await coordinator.update_location(silent, 0.001, 0.0)
        await coordinator.start_sharing(police)
        await coordinator.update_location(police, 0.0, 0.0)

        assert await coordinator.nearby_users(police, 0.0, 0.0) == []

    @pytest.mark.asyncio
    async def test_active_users_map(self, coordinator, citizen, volunteer, clock):
        with pytest.raises(AuthorizationError):
            await coordinator.active_users(citizen)

        await coordinator.start_sharing(citizen)
        await coordinator.update_location(citizen, 1.0, 1.0)
        other = Actor("citizen-2", Role.CITIZEN)
        await coordinator.start_sharing(other)
        clock.advance(seconds=5)
        await coordinator.update_location(other, 2.0, 2.0)

        points = await coordinator.active_users(volunteer)

        assert [p.user_id for p in points] == ["citizen-2", citizen.user_id]

    @pytest.mark.asyncio
    async def test_sharing_lifecycle(self, coordinator, citizen):
        session = await coordinator.start_sharing(citizen, 15)
        status = await coordinator.sharing_status(citizen)

        assert status.is_active
        assert status.session.id == session.id

        assert (await coordinator.stop_sharing(citizen)).id == session.id
        assert await coordinator.stop_sharing(citizen) is None
        assert not (await coordinator.sharing_status(citizen)).is_active

    @pytest.mark.asyncio
    async def test_rider_location_history(self, coordinator, citizen, volunteer, police, clock):
        await coordinator.update_location(citizen, 1.0, 1.0)

        with pytest.raises(NotSharingError):
            await coordinator.rider_location_history(police, citizen.user_id)

        await coordinator.start_sharing(citizen, 10)
        clock.advance(seconds=30)
        await coordinator.update_location(citizen, 2.0, 2.0)

        with pytest.raises(AuthorizationError):
            await coordinator.rider_location_history(volunteer, citizen.user_id)

        points, total = await coordinator.rider_location_history(police, citizen.user_id, limit=1)
        assert total == 2
        assert [p.latitude for p in points] == [2.0]

        own, _ = await coordinator.rider_location_history(citizen, citizen.user_id)
        assert len(own) == 2

    @pytest.mark.asyncio
    async def test_sharing_stats(self, coordinator, citizen, volunteer, clock):
        with pytest.raises(AuthorizationError):
            await coordinator.sharing_stats(citizen)

        await coordinator.start_sharing(citizen, 1)
        await coordinator.start_sharing(Actor("citizen-2", Role.CITIZEN))

        stats = await coordinator.sharing_stats(volunteer)
        assert stats["sharing_users"] == 2
        assert stats["timestamp"] == clock().isoformat()

        clock.advance(minutes=2)
        assert (await coordinator.sharing_stats(volunteer))["sharing_users"] == 1

    @pytest.mark.asyncio
    async def test_live_position_pushed_only_while_sharing(self, coordinator, gateway, citizen):
        await coordinator.update_location(citizen, 1.0, 1.0)
        await coordinator.start_sharing(citizen)
        point = await coordinator.update_location(citizen, 2.0, 2.0)
        await coordinator.stop_sharing(citizen)
        await coordinator.update_location(citizen, 3.0, 3.0)
        await coordinator.drain_notifications()

        assert gateway.events() == [
            "rider_sharing_changed", "rider_location", "rider_sharing_changed"
        ]
        started, live, stopped = [payload for _, payload in gateway.sent]
        assert started["enabled"] is True
        assert live["location"]["id"] == point.id
        assert stopped["enabled"] is False
        assert all(selector.roles == tracking_roles() for selector, _ in gateway.sent)
