"""
Location History Store

Append-only log of reported positions. The most recent point of a user is
their last known location.
"""

import sqlite3
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from ...core.database import DatabaseBusyError
from ...models.emergency import LocationPoint
from ..emergency.errors import TransientError
from ..emergency.storage import GuardedStore, from_db_time, to_db_time


class LocationHistoryStore(GuardedStore):
    """Persists LocationPoint records"""

    def __init__(self, db, clock=None, lock_timeout: float = 5.0):
        super().__init__(db, clock=clock, lock_timeout=lock_timeout, lock_name="location_history")

    def append(self, point: LocationPoint) -> LocationPoint:
        """
        Record a reported position

        Args:
            point: The point to record; ``recorded_at`` is stamped by the store

        Returns:
            The stored point
        """
        point.recorded_at = self.now()
        try:
            self.db.execute_update(
                """
                INSERT INTO location_points
                    (id, user_id, latitude, longitude, accuracy, altitude,
                     speed, heading, battery_level, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (point.id, point.user_id, point.latitude, point.longitude,
                 point.accuracy, point.altitude, point.speed, point.heading,
                 point.battery_level, to_db_time(point.recorded_at))
            )
        except DatabaseBusyError as e:
            raise TransientError("Storage is busy, please retry") from e

        self.logger.debug(f"Recorded location {point.id} for user {point.user_id}")
        return point

    def latest(self, user_id: str) -> Optional[LocationPoint]:
        """Most recent point of a user, or None if they never reported one"""
        rows = self.query(
            """
            SELECT * FROM location_points WHERE user_id = ?
            ORDER BY recorded_at DESC, rowid DESC LIMIT 1
            """,
            (user_id,)
        )
        return self._row_to_point(rows[0]) if rows else None

    def latest_for_users(self, user_ids: Iterable[str]) -> Dict[str, LocationPoint]:
        """Most recent point of each user that has one"""
        user_ids = list(dict.fromkeys(user_ids))
        if not user_ids:
            return {}

        placeholders = ", ".join("?" for _ in user_ids)
        rows = self.query(
            f"""
            SELECT p.* FROM location_points p
            WHERE p.user_id IN ({placeholders})
              AND p.rowid = (
                  SELECT q.rowid FROM location_points q
                  WHERE q.user_id = p.user_id
                  ORDER BY q.recorded_at DESC, q.rowid DESC LIMIT 1
              )
            """,
            tuple(user_ids)
        )
        return {row['user_id']: self._row_to_point(row) for row in rows}

    def history(self, user_id: str, start: Optional[datetime] = None,
                end: Optional[datetime] = None, limit: int = 50,
                page: int = 1) -> Tuple[List[LocationPoint], int]:
        """
        Points of a user within an optional time range, newest first

        Args:
            user_id: Owner of the points
            start: Inclusive lower bound on ``recorded_at``
            end: Inclusive upper bound on ``recorded_at``
            limit: Page size
            page: 1-based page number

        Returns:
            Tuple of (points on the page, total matching points)
        """
        clauses = ["user_id = ?"]
        params: List = [user_id]
        if start is not None:
            clauses.append("recorded_at >= ?")
            params.append(to_db_time(start))
        if end is not None:
            clauses.append("recorded_at <= ?")
            params.append(to_db_time(end))
        where = " AND ".join(clauses)

        total = self.query(f"SELECT COUNT(*) FROM location_points WHERE {where}", tuple(params))[0][0]
        rows = self.query(
            f"""
            SELECT * FROM location_points WHERE {where}
            ORDER BY recorded_at DESC, rowid DESC LIMIT ? OFFSET ?
            """,
            tuple(params) + (limit, (page - 1) * limit)
        )
        return [self._row_to_point(row) for row in rows], total

    def _row_to_point(self, row: sqlite3.Row) -> LocationPoint:
        return LocationPoint(
            id=row['id'],
            user_id=row['user_id'],
            latitude=row['latitude'],
            longitude=row['longitude'],
            accuracy=row['accuracy'],
            altitude=row['altitude'],
            speed=row['speed'],
            heading=row['heading'],
            battery_level=row['battery_level'],
            recorded_at=from_db_time(row['recorded_at'])
        )
