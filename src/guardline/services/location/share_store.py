"""
Location Share Store

Tracks live location sharing sessions. Expiry is never swept in the
background: whether a session is active is decided from the clock each time
it is read.
"""

import math
import sqlite3
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from ...core.config import LocationSettings
from ...models.emergency import LocationPoint, LocationShareSession, ShareStatus
from ..emergency.errors import NotFoundError, NotSharingError
from ..emergency.storage import GuardedStore, from_db_time, to_db_time
from ..emergency.validation import validate_duration
from .history_store import LocationHistoryStore


class LocationShareStore(GuardedStore):
    """Owns LocationShareSession records"""

    def __init__(self, db, history: LocationHistoryStore,
                 settings: Optional[LocationSettings] = None,
                 clock=None, lock_timeout: float = 5.0):
        super().__init__(db, clock=clock, lock_timeout=lock_timeout, lock_name="location_share")
        self.history = history
        self.settings = settings or LocationSettings()

    def start_sharing(self, user_id: str,
                      duration_minutes: Optional[float] = None) -> LocationShareSession:
        """
        Start sharing, or extend the active session in place

        Args:
            user_id: The sharing user
            duration_minutes: Requested duration; defaults to the configured
                default and is clamped to the configured maximum

        Returns:
            The active session with its new expiry
        """
        minutes = validate_duration(
            duration_minutes,
            self.settings.default_share_minutes,
            self.settings.max_share_minutes
        )

        with self.guarded(user_id) as conn:
            now = self.now()
            expires_at = now + timedelta(minutes=minutes)
            session = self._open_session(conn, user_id)

            if session is not None and session.is_active(now):
                conn.execute(
                    "UPDATE location_share_sessions SET expires_at = ? WHERE id = ?",
                    (to_db_time(expires_at), session.id)
                )
                session.expires_at = expires_at
                self.logger.info(f"Extended location sharing for user {user_id} by {minutes} min")
                return session

            if session is not None:
                # Lapsed without an explicit stop; close it at its expiry
                conn.execute(
                    "UPDATE location_share_sessions SET stopped_at = ? WHERE id = ?",
                    (to_db_time(session.expires_at), session.id)
                )

            session = LocationShareSession(
                user_id=user_id,
                started_at=now,
                expires_at=expires_at
            )
            conn.execute(
                """
                INSERT INTO location_share_sessions (id, user_id, started_at, expires_at)
                VALUES (?, ?, ?, ?)
                """,
                (session.id, user_id, to_db_time(now), to_db_time(expires_at))
            )

        self.logger.info(f"Started location sharing for user {user_id} for {minutes} min")
        return session

    def stop_sharing(self, user_id: str) -> Optional[LocationShareSession]:
        """
        Stop the user's session

        Idempotent: stopping when nothing is shared is not an error.

        Returns:
            The stopped session, or None if no session was active
        """
        with self.guarded(user_id) as conn:
            now = self.now()
            session = self._open_session(conn, user_id)
            if session is None:
                return None

            active = session.is_active(now)
            stopped_at = now if active else session.expires_at
            conn.execute(
                "UPDATE location_share_sessions SET stopped_at = ? WHERE id = ?",
                (to_db_time(stopped_at), session.id)
            )
            session.stopped_at = stopped_at

        if not active:
            return None
        self.logger.info(f"Stopped location sharing for user {user_id}")
        return session

    def get_status(self, user_id: str) -> ShareStatus:
        """Sharing status of a user evaluated at the current time"""
        now = self.now()
        rows = self.query(
            """
            SELECT * FROM location_share_sessions WHERE user_id = ?
            ORDER BY started_at DESC, rowid DESC LIMIT 1
            """,
            (user_id,)
        )
        session = self._row_to_session(rows[0]) if rows else None

        if session is None or not session.is_active(now):
            return ShareStatus(user_id=user_id, is_active=False, session=session,
                               remaining_seconds=0, evaluated_at=now)

        remaining = int(math.ceil((session.expires_at - now).total_seconds()))
        return ShareStatus(user_id=user_id, is_active=True, session=session,
                           remaining_seconds=remaining, evaluated_at=now)

    def get_shared_location(self, user_id: str) -> LocationPoint:
        """
        Latest location of a user while they are sharing

        Raises:
            NotSharingError: If the user has no active session
            NotFoundError: If the user shares but never reported a position
        """
        if not self.get_status(user_id).is_active:
            raise NotSharingError("User is not sharing their location")

        point = self.history.latest(user_id)
        if point is None:
            raise NotFoundError("No location reported yet")
        return point

    def shared_history(self, user_id: str, start: Optional[datetime] = None,
                       end: Optional[datetime] = None, limit: int = 50,
                       page: int = 1) -> Tuple[List[LocationPoint], int]:
        """
        Recorded points of a user while they are sharing

        Raises:
            NotSharingError: If the user has no active session
        """
        if not self.get_status(user_id).is_active:
            raise NotSharingError("User is not sharing their location")
        return self.history.history(user_id, start, end, limit, page)

    def sharing_count(self) -> int:
        rows = self.query(
            """
            SELECT COUNT(DISTINCT user_id) FROM location_share_sessions
            WHERE stopped_at IS NULL AND expires_at > ?
            """,
            (to_db_time(self.now()),)
        )
        return rows[0][0] if rows else 0

    def active_user_ids(self) -> List[str]:
        """Users whose session is active right now"""
        rows = self.query(
            """
            SELECT user_id FROM location_share_sessions
            WHERE stopped_at IS NULL AND expires_at > ?
            ORDER BY started_at
            """,
            (to_db_time(self.now()),)
        )
        return [row['user_id'] for row in rows]

    def _open_session(self, conn: sqlite3.Connection,
                      user_id: str) -> Optional[LocationShareSession]:
        row = conn.execute(
            "SELECT * FROM location_share_sessions WHERE user_id = ? AND stopped_at IS NULL",
            (user_id,)
        ).fetchone()
        return self._row_to_session(row) if row else None

    def _row_to_session(self, row: sqlite3.Row) -> LocationShareSession:
        return LocationShareSession(
            id=row['id'],
            user_id=row['user_id'],
            started_at=from_db_time(row['started_at']),
            expires_at=from_db_time(row['expires_at']),
            stopped_at=from_db_time(row['stopped_at'])
        )
