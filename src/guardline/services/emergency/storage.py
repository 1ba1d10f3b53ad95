"""
Shared plumbing for the emergency and location stores

Timestamp encoding, the injectable clock, and the guarded transaction that
every per-user critical section runs in.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator, List, Optional, Tuple

from ...core.database import DatabaseBusyError, DatabaseManager
from ...core.locks import KeyedLock, LockTimeoutError
from ...models.emergency import utc_now
from .errors import TransientError


Clock = Callable[[], datetime]


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Encode a datetime as a fixed-width UTC ISO string so text order matches time order"""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class GuardedStore:
    """Base class for stores whose writes are serialized per user"""

    def __init__(self, db: DatabaseManager, clock: Optional[Clock] = None,
                 lock_timeout: float = 5.0, lock_name: str = "store"):
        self.db = db
        self.clock = clock or utc_now
        self.lock_timeout = lock_timeout
        self.locks = KeyedLock(lock_name)
        self.logger = logging.getLogger(self.__class__.__module__)

    def now(self) -> datetime:
        return self.clock()

    @contextmanager
    def guarded(self, user_id: str) -> Iterator[sqlite3.Connection]:
        """
        Run a read-then-write sequence for one user atomically

        Holds the per-user lock and an immediate transaction. Lock timeouts
        and busy storage surface as TransientError.
        """
        try:
            with self.locks.hold(user_id, timeout=self.lock_timeout):
                with self.db.transaction(immediate=True) as conn:
                    yield conn
        except (LockTimeoutError, DatabaseBusyError) as e:
            self.logger.warning(f"Storage busy for {self.locks.name} write: {e}")
            raise TransientError("Storage is busy, please retry") from e

    def query(self, sql: str, params: Tuple = ()) -> List[sqlite3.Row]:
        """Run a read, mapping busy storage to TransientError"""
        try:
            return self.db.execute_query(sql, params)
        except DatabaseBusyError as e:
            self.logger.warning(f"Storage busy for {self.locks.name} read: {e}")
            raise TransientError("Storage is busy, please retry") from e
