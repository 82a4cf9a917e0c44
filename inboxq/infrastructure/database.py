"""SQLite access for inboxq

The processed-email ledger, events and todos all live in one database file.
Repositories borrow pooled WAL connections through get_db_connection() or
db_transaction() and wrap writes in @retry_on_db_lock() so overlapping runs
wait out each other's locks instead of failing.

INBOXQ_DB_PATH overrides the file location; tests also call close_pool()
after switching it.
"""

from __future__ import annotations

import atexit
import os
import random
import sqlite3
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from functools import lru_cache, wraps
from pathlib import Path
from queue import Empty, Full, Queue
from threading import Lock
from typing import Any, TypeVar

from inboxq.config import (
    DB_CONNECT_TIMEOUT,
    DB_POOL_SIZE,
    DB_POOL_TIMEOUT,
    DB_RETRY_BASE_DELAY,
    DB_RETRY_JITTER,
    DB_RETRY_MAX,
    DB_RETRY_MAX_DELAY,
    DB_TEMP_CONN_MAX,
    INBOXQ_ROOT,
)
from inboxq.observability.logging import get_logger
from inboxq.observability.telemetry import counter, log_event

F = TypeVar("F", bound=Callable[..., Any])

DB_PATH = INBOXQ_ROOT / "data" / "inboxq.db"

logger = get_logger(__name__)


def _is_lock_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


def retry_on_db_lock(
    max_retries: int = DB_RETRY_MAX,
    base_delay: float = DB_RETRY_BASE_DELAY,
    max_delay: float = DB_RETRY_MAX_DELAY,
) -> Callable[[F], F]:
    """
    Retry a database call while SQLite reports the file as locked or busy

    A user-triggered run and the timer-driven retry pass share one SQLite
    file. Lock errors back off exponentially (with jitter) up to max_retries
    extra attempts; any other OperationalError is raised on the first try.

    Usage:
        @retry_on_db_lock()
        def mark_synced(...):
            with db_transaction() as conn:
                conn.execute("UPDATE events ...")
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except sqlite3.OperationalError as e:
                    if not _is_lock_error(e):
                        raise
                    if attempt >= max_retries:
                        logger.error(
                            "%s still locked after %d retries: %s", func.__name__, attempt, e
                        )
                        counter("database.lock_retry_exhausted")
                        raise

                    pause = min(base_delay * (2**attempt), max_delay)
                    pause += random.uniform(0, pause * DB_RETRY_JITTER)
                    attempt += 1
                    logger.warning(
                        "%s hit a locked database, retry %d/%d in %.2fs",
                        func.__name__,
                        attempt,
                        max_retries,
                        pause,
                    )
                    time.sleep(pause)

        return wrapper  # type: ignore[return-value]

    return decorator


def _open_connection(db_path: Path) -> sqlite3.Connection:
    """
    Open a WAL-mode connection with foreign keys on and sqlite3.Row rows

    Raises:
        RuntimeError: If `PRAGMA quick_check` reports the file as damaged
    """
    conn = sqlite3.connect(str(db_path), timeout=DB_CONNECT_TIMEOUT, check_same_thread=False)
    try:
        verdict = conn.execute("PRAGMA quick_check(1)").fetchone()[0]
    except sqlite3.DatabaseError as e:
        verdict = str(e)

    if verdict != "ok":
        conn.close()
        counter("database.corruption_detected")
        logger.critical("Integrity check failed for %s: %s", db_path, verdict)
        raise RuntimeError(f"Database corruption detected: {verdict}")

    for pragma in ("journal_mode=WAL", "synchronous=NORMAL", "foreign_keys=ON"):
        conn.execute(f"PRAGMA {pragma}")
    conn.row_factory = sqlite3.Row
    return conn


class DatabaseConnectionPool:
    """
    Fixed set of shared SQLite connections plus a small overflow allowance

    Borrowers wait up to DB_POOL_TIMEOUT for an idle connection. After that
    an overflow connection is opened (at most DB_TEMP_CONN_MAX at once) and
    closed when it comes back; hitting that ceiling means something is not
    returning its connections.
    """

    def __init__(self, db_path: Path, pool_size: int = DB_POOL_SIZE):
        self.db_path = db_path
        self.pool_size = pool_size
        self.closed = False
        self._idle: Queue[sqlite3.Connection] = Queue(maxsize=pool_size)
        self._overflow: set[int] = set()
        self._lock = Lock()

        for _ in range(pool_size):
            try:
                self._idle.put_nowait(_open_connection(db_path))
            except (sqlite3.Error, RuntimeError) as e:
                logger.warning("Pool for %s starts one connection short: %s", db_path, e)

        atexit.register(self.close_all)

    @property
    def available(self) -> int:
        return self._idle.qsize()

    @property
    def overflow_count(self) -> int:
        return len(self._overflow)

    def get_connection(self) -> sqlite3.Connection:
        """
        Borrow a connection, opening an overflow one if the pool stays empty

        Raises:
            RuntimeError: If the pool is closed or the overflow ceiling is hit
        """
        if self.closed:
            raise RuntimeError("Connection pool has been closed")

        try:
            return self._idle.get(timeout=DB_POOL_TIMEOUT)
        except Empty:
            pass

        with self._lock:
            if len(self._overflow) >= DB_TEMP_CONN_MAX:
                logger.critical(
                    "No idle connections and %d overflow connections open; likely a leak",
                    len(self._overflow),
                )
                raise RuntimeError(
                    f"Database connection pool exhausted (pool_size={self.pool_size}, "
                    f"overflow_max={DB_TEMP_CONN_MAX})"
                )
            conn = _open_connection(self.db_path)
            self._overflow.add(id(conn))
            in_flight = len(self._overflow)

        log_event(
            "database.pool_exhausted",
            pool_size=self.pool_size,
            overflow=in_flight,
            severity="error",
        )
        return conn

    def return_connection(self, conn: sqlite3.Connection) -> None:
        """Hand a borrowed connection back; overflow connections are closed."""
        with self._lock:
            overflow = id(conn) in self._overflow
            self._overflow.discard(id(conn))

        if overflow or self.closed:
            conn.close()
            return

        try:
            self._idle.put_nowait(conn)
        except Full:
            conn.close()

    def close_all(self) -> None:
        """Mark the pool closed and close every idle connection."""
        self.closed = True
        while True:
            try:
                self._idle.get_nowait().close()
            except Empty:
                return


@lru_cache(maxsize=1)
def get_pool() -> DatabaseConnectionPool:
    """Process-wide pool for the current database path."""
    return DatabaseConnectionPool(get_db_path(), pool_size=DB_POOL_SIZE)


def close_pool() -> None:
    """
    Close and forget the global pool so the next call reopens it

    Tests call this after pointing INBOXQ_DB_PATH at a fresh file.
    """
    if get_pool.cache_info().currsize:
        get_pool().close_all()
    get_pool.cache_clear()


def get_db_path() -> Path:
    """INBOXQ_DB_PATH when set, otherwise data/inboxq.db under the project root."""
    override = os.getenv("INBOXQ_DB_PATH")
    return Path(override) if override else DB_PATH


@contextmanager
def get_db_connection() -> Generator[sqlite3.Connection, None, None]:
    """
    Get a pooled database connection (context manager)

    Usage:
        with get_db_connection() as conn:
            rows = conn.execute("SELECT * FROM events WHERE user_id = ?", (uid,)).fetchall()

    Raises:
        FileNotFoundError: If the database has not been initialised
    """
    db_path = get_db_path()

    if not db_path.exists():
        raise FileNotFoundError(f"Database not found: {db_path}\nRun: inboxq init-db")

    pool = get_pool()
    conn = pool.get_connection()
    try:
        yield conn
    finally:
        pool.return_connection(conn)


@contextmanager
def db_transaction() -> Generator[sqlite3.Connection, None, None]:
    """
    Context manager for database transactions

    Commits on success, rolls back on any error and re-raises it.

    Usage:
        with db_transaction() as conn:
            conn.execute("INSERT INTO events ...")
            conn.execute("INSERT INTO todos ...")
    """
    with get_db_connection() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def validate_schema() -> bool:
    """
    Validate the database has the expected tables and columns

    Raises:
        ValueError: If tables or columns are missing
    """
    from inboxq.infrastructure.database_schema import validate_schema as _validate_schema

    with get_db_connection() as conn:
        return _validate_schema(conn)


def get_pool_stats() -> dict[str, Any]:
    """Snapshot of pool occupancy for the status command and tests."""
    pool = get_pool()
    in_use = pool.pool_size - pool.available
    return {
        "pool_size": pool.pool_size,
        "available": pool.available,
        "in_use": in_use,
        "overflow": pool.overflow_count,
        "closed": pool.closed,
    }


def init_database() -> Path:
    """
    Initialize the database with schema (idempotent)

    Side Effects:
        - Creates the data directory and database file if needed
        - Creates tables and indexes that do not exist yet
    """
    from inboxq.infrastructure.database_schema import init_database as _init_database

    db_path = get_db_path()
    _init_database(db_path)
    return db_path
