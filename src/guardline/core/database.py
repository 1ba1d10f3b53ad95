"""
Database Infrastructure for Guardline

Provides SQLite database management, connection pooling, schema bootstrap,
and transaction management for the emergency and location stores.
"""

import sqlite3
import logging
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass
from datetime import datetime


@dataclass
class Migration:
    """Database migration definition"""
    version: int
    name: str
    sql: str
    rollback_sql: Optional[str] = None


class DatabaseError(Exception):
    """Database-related errors"""
    pass


class DatabaseBusyError(DatabaseError):
    """The database or the connection pool could not serve the request in time"""
    pass


def is_busy_error(error: sqlite3.Error) -> bool:
    """Check whether an sqlite error means the database was locked or busy"""
    message = str(error).lower()
    return isinstance(error, sqlite3.OperationalError) and (
        'locked' in message or 'busy' in message
    )


class ConnectionPool:
    """Simple SQLite connection pool"""

    def __init__(self, database_path: str, max_connections: int = 10,
                 wait_timeout: float = 5.0, busy_timeout: float = 10.0):
        self.database_path = database_path
        self.max_connections = max_connections
        self.wait_timeout = wait_timeout
        self.busy_timeout = busy_timeout
        self.connections = []
        self.in_use = set()
        self.lock = threading.Condition()
        self.logger = logging.getLogger(__name__)

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection from the pool, waiting briefly if all are in use"""
        deadline = time.monotonic() + self.wait_timeout
        with self.lock:
            while True:
                # Try to reuse an existing connection
                for conn in self.connections:
                    if conn not in self.in_use:
                        self.in_use.add(conn)
                        return conn

                if len(self.connections) < self.max_connections:
                    conn = sqlite3.connect(
                        self.database_path,
                        check_same_thread=False,
                        timeout=self.busy_timeout
                    )
                    conn.row_factory = sqlite3.Row
                    conn.execute("PRAGMA foreign_keys = ON")
                    conn.execute("PRAGMA journal_mode = WAL")
                    self.connections.append(conn)
                    self.in_use.add(conn)
                    return conn

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise DatabaseBusyError("Connection pool exhausted")
                self.lock.wait(remaining)

    def return_connection(self, conn: sqlite3.Connection):
        """Return a connection to the pool"""
        with self.lock:
            if conn in self.in_use:
                self.in_use.remove(conn)
                self.lock.notify()

    def close_all(self):
        """Close all connections in the pool"""
        with self.lock:
            for conn in self.connections:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    self.logger.warning(f"Error closing connection: {e}")
            self.connections.clear()
            self.in_use.clear()


class DatabaseManager:
    """
    Manages SQLite database operations, schema bootstrap, and connection pooling
    """

    def __init__(self, database_path: str, max_connections: int = 10,
                 connection_wait: float = 5.0, busy_timeout: float = 10.0):
        self.database_path = Path(database_path)
        self.logger = logging.getLogger(__name__)
        self.migrations = self._get_migrations()

        # Ensure database directory exists
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.pool = ConnectionPool(
            str(self.database_path), max_connections, connection_wait, busy_timeout
        )

        self._initialize_database()

    @contextmanager
    def get_connection(self):
        """Context manager for database connections"""
        conn = self.pool.get_connection()
        try:
            yield conn
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            self.pool.return_connection(conn)

    @contextmanager
    def transaction(self, immediate: bool = False):
        """
        Context manager for database transactions

        Args:
            immediate: Take the write lock when the transaction begins so that
                a read-then-write sequence cannot interleave with another writer
        """
        with self.get_connection() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                if is_busy_error(e):
                    raise DatabaseBusyError(f"Database busy: {e}") from e
                raise
            except Exception:
                conn.rollback()
                raise

    def _initialize_database(self):
        """Initialize database with schema and migrations"""
        self.logger.info(f"Initializing database at {self.database_path}")

        with self.get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS migrations (
                    version INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    applied_at DATETIME DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.commit()

        self._run_migrations()

    def _get_migrations(self) -> List[Migration]:
        """Get all database migrations"""
        return [
            Migration(
                version=1,
                name="initial_schema",
                sql="""
                -- SOS alerts
                CREATE TABLE sos_alerts (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    latitude REAL,
                    longitude REAL,
                    message TEXT,
                    triggered_at TEXT NOT NULL,
                    updated_at TEXT,
                    cancelled_at TEXT,
                    resolved_at TEXT,
                    resolved_by TEXT,
                    resolution_notes TEXT
                );

                -- At most one active alert per user
                CREATE UNIQUE INDEX idx_sos_alerts_one_active
                    ON sos_alerts (user_id) WHERE status = 'active';
                CREATE INDEX idx_sos_alerts_status ON sos_alerts (status, triggered_at);
                CREATE INDEX idx_sos_alerts_user ON sos_alerts (user_id, triggered_at);

                -- Live location sharing sessions
                CREATE TABLE location_share_sessions (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    stopped_at TEXT
                );

                -- At most one open session per user; expiry is evaluated at read time
                CREATE UNIQUE INDEX idx_share_sessions_one_open
                    ON location_share_sessions (user_id) WHERE stopped_at IS NULL;
                CREATE INDEX idx_share_sessions_expires ON location_share_sessions (expires_at);

                -- Append-only location history
                CREATE TABLE location_points (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    latitude REAL NOT NULL,
                    longitude REAL NOT NULL,
                    accuracy REAL,
                    altitude REAL,
                    speed REAL,
                    heading REAL,
                    battery_level INTEGER,
                    recorded_at TEXT NOT NULL
                );

                CREATE INDEX idx_location_points_user_time
                    ON location_points (user_id, recorded_at);
                """
            ),
        ]

    def _run_migrations(self):
        """Run pending database migrations"""
        with self.get_connection() as conn:
            cursor = conn.execute("SELECT MAX(version) FROM migrations")
            result = cursor.fetchone()
            current_version = result[0] if result[0] is not None else 0

            for migration in self.migrations:
                if migration.version > current_version:
                    self.logger.info(f"Running migration {migration.version}: {migration.name}")

                    try:
                        conn.executescript(migration.sql)
                        conn.execute(
                            "INSERT INTO migrations (version, name) VALUES (?, ?)",
                            (migration.version, migration.name)
                        )
                        conn.commit()
                        self.logger.info(f"Migration {migration.version} completed successfully")

                    except sqlite3.Error as e:
                        conn.rollback()
                        self.logger.error(f"Migration {migration.version} failed: {e}")
                        raise DatabaseError(f"Migration failed: {e}")

    def backup_database(self, backup_path: Optional[str] = None) -> str:
        """Create a backup of the database"""
        if backup_path is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            backup_path = f"{self.database_path}.backup_{timestamp}"

        backup_path = Path(backup_path)
        backup_path.parent.mkdir(parents=True, exist_ok=True)

        with self.get_connection() as conn:
            with sqlite3.connect(str(backup_path)) as backup_conn:
                conn.backup(backup_conn)

        self.logger.info(f"Database backed up to {backup_path}")
        return str(backup_path)

    def execute_query(self, query: str, params: Tuple = ()) -> List[sqlite3.Row]:
        """Execute a SELECT query and return results"""
        with self.get_connection() as conn:
            try:
                cursor = conn.execute(query, params)
                return cursor.fetchall()
            except sqlite3.Error as e:
                if is_busy_error(e):
                    raise DatabaseBusyError(f"Database busy: {e}") from e
                raise

    def execute_update(self, query: str, params: Tuple = ()) -> int:
        """Execute an INSERT/UPDATE/DELETE query and return affected rows"""
        with self.transaction() as conn:
            cursor = conn.execute(query, params)
            return cursor.rowcount

    def get_stats(self) -> Dict[str, Any]:
        """Get database statistics"""
        stats = {}

        for table in ['sos_alerts', 'location_share_sessions', 'location_points']:
            rows = self.execute_query(f"SELECT COUNT(*) FROM {table}")
            stats[table] = rows[0][0] if rows else 0

        if self.database_path.exists():
            stats['database_size_bytes'] = self.database_path.stat().st_size
        else:
            stats['database_size_bytes'] = 0

        return stats

    def close(self):
        """Close all database connections"""
        self.pool.close_all()


# Global database manager instance (will be initialized by the application)
db_manager: Optional[DatabaseManager] = None


def initialize_database(database_path: str, max_connections: int = 10,
                        connection_wait: float = 5.0,
                        busy_timeout: float = 10.0) -> DatabaseManager:
    """Initialize the global database manager"""
    global db_manager
    db_manager = DatabaseManager(database_path, max_connections, connection_wait, busy_timeout)
    return db_manager


def get_database() -> DatabaseManager:
    """Get the global database manager instance"""
    if db_manager is None:
        raise DatabaseError("Database not initialized. Call initialize_database() first.")
    return db_manager
