"""
SOS Alert Store

Owns the SOS alert lifecycle:
- active -> resolved (by a responder) or active -> cancelled (by the owner)
- at most one active alert per user
- terminal alerts are never mutated again
"""

import sqlite3
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ...core.config import EmergencySettings
from ...models.emergency import SosAlert, SosStatus
from .errors import ConflictError, InvalidStateError, NotFoundError
from .storage import GuardedStore, from_db_time, to_db_time


class SosAlertStore(GuardedStore):
    """Persists SOS alerts and enforces their state machine"""

    def __init__(self, db, settings: Optional[EmergencySettings] = None,
                 clock=None, lock_timeout: Optional[float] = None):
        self.settings = settings or EmergencySettings()
        super().__init__(
            db, clock=clock,
            lock_timeout=self.settings.lock_timeout_seconds if lock_timeout is None else lock_timeout,
            lock_name="sos"
        )

    def trigger(self, user_id: str, latitude: Optional[float] = None,
                longitude: Optional[float] = None,
                message: Optional[str] = None) -> SosAlert:
        """
        Create an active alert for a user

        Args:
            user_id: The alerting user
            latitude: Optional latitude of the user
            longitude: Optional longitude of the user
            message: Optional free text

        Returns:
            The created alert

        Raises:
            ConflictError: If the user already has an active alert; the
                existing alert is attached to the error
        """
        with self.guarded(user_id) as conn:
            existing = self._active_for_user(conn, user_id)
            if existing is not None:
                raise ConflictError("An SOS alert is already active", existing=existing)

            alert = SosAlert(
                user_id=user_id,
                latitude=latitude,
                longitude=longitude,
                message=message,
                triggered_at=self.now()
            )
            try:
                conn.execute(
                    """
                    INSERT INTO sos_alerts
                        (id, user_id, status, latitude, longitude, message, triggered_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (alert.id, user_id, alert.status.value, latitude, longitude,
                     message, to_db_time(alert.triggered_at))
                )
            except sqlite3.IntegrityError as e:
                # Another process won the race past our in-process lock
                raise ConflictError("An SOS alert is already active") from e

        self.logger.info(f"Created SOS alert {alert.id} for user {user_id}")
        return alert

    def cancel(self, user_id: str) -> SosAlert:
        """
        Cancel the user's active alert

        Raises:
            NotFoundError: If the user has no active alert
        """
        with self.guarded(user_id) as conn:
            alert = self._active_for_user(conn, user_id)
            if alert is None:
                raise NotFoundError("No active SOS alert")

            alert.status = SosStatus.CANCELLED
            alert.cancelled_at = self.now()
            conn.execute(
                "UPDATE sos_alerts SET status = ?, cancelled_at = ? WHERE id = ? AND status = ?",
                (alert.status.value, to_db_time(alert.cancelled_at), alert.id,
                 SosStatus.ACTIVE.value)
            )

        self.logger.info(f"Cancelled SOS alert {alert.id} for user {user_id}")
        return alert

    def resolve(self, alert_id: str, responder_id: str,
                notes: Optional[str] = None) -> SosAlert:
        """
        Resolve an active alert

        Args:
            alert_id: The alert to resolve
            responder_id: The responder closing the alert
            notes: Optional resolution notes

        Raises:
            NotFoundError: If the alert does not exist
            InvalidStateError: If the alert is already resolved or cancelled
        """
        owner = self.get(alert_id)
        if owner is None:
            raise NotFoundError("SOS alert not found")

        # Serialize with the owner's trigger/cancel
        with self.guarded(owner.user_id) as conn:
            alert = self._get(conn, alert_id)
            if alert.status.is_terminal:
                raise InvalidStateError(f"SOS alert is already {alert.status.value}")

            alert.status = SosStatus.RESOLVED
            alert.resolved_at = self.now()
            alert.resolved_by = responder_id
            alert.resolution_notes = notes
            conn.execute(
                """
                UPDATE sos_alerts
                SET status = ?, resolved_at = ?, resolved_by = ?, resolution_notes = ?
                WHERE id = ? AND status = ?
                """,
                (alert.status.value, to_db_time(alert.resolved_at), responder_id,
                 notes, alert_id, SosStatus.ACTIVE.value)
            )

        self.logger.info(f"Resolved SOS alert {alert_id} by responder {responder_id}")
        return alert

    def update_location(self, user_id: str, latitude: float,
                        longitude: float) -> Optional[SosAlert]:
        """Move the user's active alert to a new position; None if nothing is active"""
        with self.guarded(user_id) as conn:
            alert = self._active_for_user(conn, user_id)
            if alert is None:
                return None

            alert.latitude = latitude
            alert.longitude = longitude
            alert.updated_at = self.now()
            conn.execute(
                "UPDATE sos_alerts SET latitude = ?, longitude = ?, updated_at = ? WHERE id = ?",
                (latitude, longitude, to_db_time(alert.updated_at), alert.id)
            )

        self.logger.debug(f"Refreshed location of SOS alert {alert.id}")
        return alert

    def get_active_for_user(self, user_id: str) -> Optional[SosAlert]:
        """Active alert of a user, or None"""
        rows = self.query(
            "SELECT * FROM sos_alerts WHERE user_id = ? AND status = ?",
            (user_id, SosStatus.ACTIVE.value)
        )
        return self._row_to_alert(rows[0]) if rows else None

    def get(self, alert_id: str) -> Optional[SosAlert]:
        rows = self.query("SELECT * FROM sos_alerts WHERE id = ?", (alert_id,))
        return self._row_to_alert(rows[0]) if rows else None

    def list_all_active(self) -> List[SosAlert]:
        """All active alerts, oldest first"""
        rows = self.query(
            "SELECT * FROM sos_alerts WHERE status = ? ORDER BY triggered_at ASC, rowid ASC",
            (SosStatus.ACTIVE.value,)
        )
        return [self._row_to_alert(row) for row in rows]

    def history_for_user(self, user_id: str, limit: int = 20) -> List[SosAlert]:
        """Alerts of a user in any state, newest first"""
        rows = self.query(
            """
            SELECT * FROM sos_alerts WHERE user_id = ?
            ORDER BY triggered_at DESC, rowid DESC LIMIT ?
            """,
            (user_id, limit)
        )
        return [self._row_to_alert(row) for row in rows]

    def stats(self) -> Dict[str, Any]:
        """
        Alert statistics

        Returns:
            Counts per status, counts of alerts triggered within each
            configured window, and the mean time to resolution in seconds
        """
        now = self.now()
        by_status = {status.value: 0 for status in SosStatus}
        for row in self.query("SELECT status, COUNT(*) AS n FROM sos_alerts GROUP BY status"):
            by_status[row['status']] = row['n']

        windows = {}
        for name, hours in self.settings.stats_windows.items():
            since = to_db_time(now - timedelta(hours=hours))
            windows[name] = self.query(
                "SELECT COUNT(*) FROM sos_alerts WHERE triggered_at >= ?", (since,)
            )[0][0]

        durations = [
            (from_db_time(row['resolved_at']) - from_db_time(row['triggered_at'])).total_seconds()
            for row in self.query(
                "SELECT triggered_at, resolved_at FROM sos_alerts WHERE status = ?",
                (SosStatus.RESOLVED.value,)
            )
        ]
        mean_resolution = round(sum(durations) / len(durations), 1) if durations else None

        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "windows": windows,
            "mean_resolution_seconds": mean_resolution,
        }

    def _active_for_user(self, conn: sqlite3.Connection, user_id: str) -> Optional[SosAlert]:
        row = conn.execute(
            "SELECT * FROM sos_alerts WHERE user_id = ? AND status = ?",
            (user_id, SosStatus.ACTIVE.value)
        ).fetchone()
        return self._row_to_alert(row) if row else None

    def _get(self, conn: sqlite3.Connection, alert_id: str) -> SosAlert:
        row = conn.execute("SELECT * FROM sos_alerts WHERE id = ?", (alert_id,)).fetchone()
        return self._row_to_alert(row)

    def _row_to_alert(self, row: sqlite3.Row) -> SosAlert:
        return SosAlert(
            id=row['id'],
            user_id=row['user_id'],
            status=SosStatus(row['status']),
            latitude=row['latitude'],
            longitude=row['longitude'],
            message=row['message'],
            triggered_at=from_db_time(row['triggered_at']),
            updated_at=from_db_time(row['updated_at']),
            cancelled_at=from_db_time(row['cancelled_at']),
            resolved_at=from_db_time(row['resolved_at']),
            resolved_by=row['resolved_by'],
            resolution_notes=row['resolution_notes']
        )
