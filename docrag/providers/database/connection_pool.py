"""Bounded pool of aiosqlite connections to the document store.

# ─── HOW THE POOL WORKS ───────────────────────────────────────────────
#
#   acquire() ──idle conn?──────────────────────→ hand it out
#             ──below max_connections?──────────→ open a new one
#             ──otherwise──→ FIFO waiter queue ──→ release() hands over
#                                              ──→ PoolTimeoutError after
#                                                  acquire_timeout
#
# The pool opens ~25% of max_connections up front and grows lazily.  A
# background sweep closes connections idle for longer than idle_timeout
# (never dropping below the initial size).  Every connection runs with
# WAL journaling, foreign keys on (chunks cascade with their document)
# and the ``cosine_similarity`` SQL function used by vector_search().
#
# All query helpers go through _run(): acquire → execute → release,
# retried by RetryPolicy when SQLite reports locked / busy / I-O errors.
# Constraint violations are never retried.
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import asyncio
import collections
import re
import sqlite3
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

import aiosqlite
import structlog

from docrag.models.stats import PoolStats
from docrag.providers.database import schema
from docrag.utils.errors import (
    PoolClosedError,
    PoolTimeoutError,
    StoreError,
    TransientStoreError,
)
from docrag.utils.retry import RetryPolicy

logger = structlog.get_logger(logger_name=__name__)

T = TypeVar("T")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Filter-key suffixes → SQL comparison operators.
_OPERATORS: dict[str, str] = {
    "lt": "<",
    "lte": "<=",
    "gt": ">",
    "gte": ">=",
    "ne": "!=",
    "in": "IN",
}

# OperationalError messages that indicate a condition worth retrying.
_TRANSIENT_MARKERS = ("locked", "busy", "disk i/o", "unable to open")

_BUSY_TIMEOUT_MS = 5000


@dataclass
class PoolConnection:
    """A pooled connection and its bookkeeping."""

    id: int
    handle: aiosqlite.Connection
    created_at: float = field(default_factory=time.monotonic)
    last_used: float = field(default_factory=time.monotonic)
    is_active: bool = False
    query_count: int = 0
    broken: bool = False


class ConnectionPool:
    """Async connection pool over a SQLite database file.

    Parameters
    ----------
    database_path:
        Path to the SQLite file; parent directories are created.
    max_connections:
        Hard upper bound on open connections (active + idle).
    idle_timeout:
        Seconds an idle connection may live before the sweep closes it.
    acquire_timeout:
        Seconds :meth:`acquire` waits for a free connection.
    sweep_interval:
        Seconds between idle sweeps.
    retry_attempts, retry_delay:
        Query-level retry for transient SQLite errors.
    """

    def __init__(
        self,
        database_path: str | Path,
        max_connections: int = 20,
        idle_timeout: float = 300.0,
        acquire_timeout: float = 10.0,
        sweep_interval: float = 60.0,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        if max_connections < 1:
            raise ValueError("max_connections must be >= 1")
        self._path = Path(database_path)
        self._max = max_connections
        self._min = max(1, int(max_connections * 0.25))
        self._idle_timeout = idle_timeout
        self._acquire_timeout = acquire_timeout
        self._sweep_interval = sweep_interval
        self._retry = RetryPolicy(
            max_attempts=retry_attempts,
            base_delay=retry_delay,
            max_delay=retry_delay * 8,
            retryable=lambda exc: isinstance(exc, TransientStoreError),
            name="database_query",
        )

        self._connections: dict[int, PoolConnection] = {}
        self._idle: collections.deque[PoolConnection] = collections.deque()
        self._waiters: collections.deque[asyncio.Future[PoolConnection]] = collections.deque()
        self._opening = 0
        self._next_id = 0
        self._closed = False
        self._initialized = False
        self._sweep_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._init_lock = asyncio.Lock()

        self._total_queries = 0
        self._avg_query_ms = 0.0
        self._errors = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the schema, open the initial connections and start the sweep."""
        async with self._init_lock:
            if self._initialized:
                return
            self._path.parent.mkdir(parents=True, exist_ok=True)

            first = await self._open_connection()
            await first.handle.executescript(schema.SCHEMA_SCRIPT)
            await first.handle.commit()
            self._idle.append(first)
            for _ in range(self._min - 1):
                self._idle.append(await self._open_connection())
            self._initialized = True

        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="pool-idle-sweep")
        logger.info(
            "connection_pool_initialized",
            path=str(self._path),
            initial=len(self._connections),
            max_connections=self._max,
        )

    async def close(self) -> None:
        """Close the pool; pending waiters receive :class:`PoolClosedError`.

        Idle connections are closed immediately, active ones on release.
        """
        if self._closed:
            return
        self._closed = True
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(PoolClosedError(provider_name="sqlite"))

        while self._idle:
            await self._discard(self._idle.popleft())
        logger.info("connection_pool_closed", remaining_active=len(self._connections))

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def max_connections(self) -> int:
        return self._max

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    async def acquire(self) -> PoolConnection:
        """Return a connection, waiting up to ``acquire_timeout`` for one.

        Raises
        ------
        PoolTimeoutError
            If no connection was freed in time.
        PoolClosedError
            If the pool is (or gets) closed.
        """
        if self._closed:
            raise PoolClosedError(provider_name="sqlite")
        if not self._initialized:
            await self.initialize()

        while self._idle:
            conn = self._idle.popleft()
            if conn.broken:
                await self._discard(conn)
                continue
            return self._activate(conn)

        if len(self._connections) + self._opening < self._max:
            self._opening += 1
            try:
                conn = await self._open_connection()
            finally:
                self._opening -= 1
            return self._activate(conn)

        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[PoolConnection] = loop.create_future()
        self._waiters.append(waiter)
        try:
            done, _ = await asyncio.wait({waiter}, timeout=self._acquire_timeout)
        except asyncio.CancelledError:
            # Hand the connection back if release() beat the cancellation.
            if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                await self.release(waiter.result())
            else:
                self._forget_waiter(waiter)
            raise

        if not done:
            self._forget_waiter(waiter)
            logger.warning(
                "connection_acquire_timeout",
                timeout=self._acquire_timeout,
                waiting=len(self._waiters),
                active=self._active_count(),
            )
            raise PoolTimeoutError(
                f"No connection available within {self._acquire_timeout}s",
                provider_name="sqlite",
            )
        return waiter.result()

    async def release(self, conn: PoolConnection) -> None:
        """Return *conn* to the pool, handing it to the oldest waiter if any."""
        if conn.id not in self._connections:
            return
        conn.is_active = False
        conn.last_used = time.monotonic()

        if self._closed:
            await self._discard(conn)
            return
        if conn.broken:
            await self._discard(conn)
            if self._waiters:
                task = asyncio.create_task(self._serve_waiter_with_new_connection())
                self._background.add(task)
                task.add_done_callback(self._background.discard)
            return

        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            waiter.set_result(self._activate(conn))
            return
        self._idle.append(conn)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[PoolConnection]:
        """``async with pool.connection() as conn:`` acquire/release pair."""
        conn = await self.acquire()
        try:
            yield conn
        finally:
            await self.release(conn)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run several statements atomically on one connection.

        Commits on normal exit, rolls back on any exception.
        """
        async with self.connection() as conn:
            try:
                await conn.handle.execute("BEGIN")
                yield conn.handle
                await conn.handle.commit()
            except BaseException:
                try:
                    await conn.handle.rollback()
                except (sqlite3.Error, ValueError):
                    conn.broken = True
                raise

    # ------------------------------------------------------------------
    # Raw query helpers
    # ------------------------------------------------------------------

    async def fetch_all(self, sql: str, params: Iterable[Any] = ()) -> list[dict[str, Any]]:
        args = [schema.adapt_param(p) for p in params]

        async def _op(db: aiosqlite.Connection) -> list[dict[str, Any]]:
            async with db.execute(sql, args) as cursor:
                rows = await cursor.fetchall()
            return [dict(row) for row in rows]

        return await self._run(_op)

    async def fetch_one(self, sql: str, params: Iterable[Any] = ()) -> dict[str, Any] | None:
        rows = await self.fetch_all(sql, params)
        return rows[0] if rows else None

    async def execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        """Execute a write statement and commit. Returns the affected row count."""
        args = [schema.adapt_param(p) for p in params]

        async def _op(db: aiosqlite.Connection) -> int:
            try:
                cursor = await db.execute(sql, args)
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
            return cursor.rowcount

        return await self._run(_op)

    async def execute_many(self, sql: str, rows: Iterable[Iterable[Any]]) -> int:
        batch = [[schema.adapt_param(p) for p in row] for row in rows]
        if not batch:
            return 0

        async def _op(db: aiosqlite.Connection) -> int:
            try:
                await db.executemany(sql, batch)
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
            return len(batch)

        return await self._run(_op)

    # ------------------------------------------------------------------
    # Typed table helpers
    # ------------------------------------------------------------------

    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        columns: Iterable[str] | None = None,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Select rows from *table*.

        ``filters`` maps column names to values; a list/tuple value means
        ``IN`` and ``col__lt`` / ``__lte`` / ``__gt`` / ``__gte`` / ``__ne``
        suffixes pick the comparison.  ``order_by`` is a column name,
        prefixed with ``-`` for descending order.
        """
        cols = ", ".join(_ident(c) for c in columns) if columns else "*"
        where, params = _where_clause(filters)
        sql = f"SELECT {cols} FROM {_ident(table)}{where}"
        if order_by:
            direction = "DESC" if order_by.startswith("-") else "ASC"
            sql += f" ORDER BY {_ident(order_by.lstrip('-'))} {direction}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return await self.fetch_all(sql, params)

    async def select_one(self, table: str, filters: dict[str, Any]) -> dict[str, Any] | None:
        rows = await self.select(table, filters, limit=1)
        return rows[0] if rows else None

    async def insert(self, table: str, rows: dict[str, Any] | list[dict[str, Any]]) -> int:
        """Insert one row or a homogeneous list of rows in one transaction."""
        if isinstance(rows, dict):
            rows = [rows]
        if not rows:
            return 0
        keys = list(rows[0])
        cols = ", ".join(_ident(k) for k in keys)
        placeholders = ", ".join("?" for _ in keys)
        sql = f"INSERT INTO {_ident(table)} ({cols}) VALUES ({placeholders})"
        return await self.execute_many(sql, ([row[k] for k in keys] for row in rows))

    async def update(self, table: str, values: dict[str, Any], filters: dict[str, Any]) -> int:
        if not values:
            return 0
        if not filters:
            raise StoreError("update() requires at least one filter", provider_name="sqlite")
        assignments = ", ".join(f"{_ident(k)} = ?" for k in values)
        where, params = _where_clause(filters)
        sql = f"UPDATE {_ident(table)} SET {assignments}{where}"
        return await self.execute(sql, [*values.values(), *params])

    async def delete(self, table: str, filters: dict[str, Any]) -> int:
        if not filters:
            raise StoreError("delete() requires at least one filter", provider_name="sqlite")
        where, params = _where_clause(filters)
        return await self.execute(f"DELETE FROM {_ident(table)}{where}", params)

    async def count(self, table: str, filters: dict[str, Any] | None = None) -> int:
        where, params = _where_clause(filters)
        row = await self.fetch_one(f"SELECT COUNT(*) AS n FROM {_ident(table)}{where}", params)
        return int(row["n"]) if row else 0

    async def vector_search(
        self,
        embedding: list[float],
        similarity_threshold: float = 0.3,
        match_count: int = 8,
    ) -> list[dict[str, Any]]:
        """Return up to *match_count* chunks ranked by cosine similarity.

        Only chunks of processed documents at or above
        *similarity_threshold* are returned, most similar first.
        """
        rows = await self.fetch_all(
            schema.VECTOR_SEARCH_SQL,
            [schema.encode_embedding(embedding), similarity_threshold, int(match_count)],
        )
        for row in rows:
            row["document_created_at"] = schema.from_db_time(row.get("document_created_at"))
        return rows

    # ------------------------------------------------------------------
    # Health and stats
    # ------------------------------------------------------------------

    async def health_check(self) -> bool:
        if self._closed:
            return False
        try:
            row = await self.fetch_one("SELECT 1 AS ok")
        except (StoreError, TransientStoreError, PoolTimeoutError) as exc:
            logger.warning("database_health_check_failed", error=str(exc))
            return False
        return bool(row and row["ok"] == 1)

    def stats(self) -> PoolStats:
        active = self._active_count()
        return PoolStats(
            total_connections=len(self._connections),
            active_connections=active,
            idle_connections=len(self._connections) - active,
            waiting_requests=sum(1 for w in self._waiters if not w.done()),
            total_queries=self._total_queries,
            avg_query_time_ms=round(self._avg_query_ms, 3),
            errors=self._errors,
            utilization=round(active / self._max * 100, 2),
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _run(self, op: Callable[[aiosqlite.Connection], Awaitable[T]]) -> T:
        async def _attempt() -> T:
            async with self.connection() as conn:
                started = time.perf_counter()
                try:
                    result = await op(conn.handle)
                except sqlite3.IntegrityError as exc:
                    self._errors += 1
                    raise StoreError(f"Constraint violation: {exc}", provider_name="sqlite") from exc
                except sqlite3.OperationalError as exc:
                    self._errors += 1
                    if any(marker in str(exc).lower() for marker in _TRANSIENT_MARKERS):
                        raise TransientStoreError(str(exc), provider_name="sqlite") from exc
                    raise StoreError(str(exc), provider_name="sqlite") from exc
                except sqlite3.Error as exc:
                    self._errors += 1
                    raise StoreError(str(exc), provider_name="sqlite") from exc
                except ValueError as exc:
                    # aiosqlite raises ValueError once its worker thread has died.
                    self._errors += 1
                    conn.broken = True
                    raise TransientStoreError(f"Connection lost: {exc}", provider_name="sqlite") from exc
                self._record_query(conn, (time.perf_counter() - started) * 1000)
                return result

        return await self._retry.call(_attempt)

    def _record_query(self, conn: PoolConnection, elapsed_ms: float) -> None:
        conn.query_count += 1
        self._total_queries += 1
        self._avg_query_ms += (elapsed_ms - self._avg_query_ms) / self._total_queries

    async def _open_connection(self) -> PoolConnection:
        try:
            handle = await aiosqlite.connect(self._path)
            handle.row_factory = aiosqlite.Row
            await handle.execute("PRAGMA journal_mode=WAL")
            await handle.execute("PRAGMA foreign_keys=ON")
            await handle.execute(f"PRAGMA busy_timeout={_BUSY_TIMEOUT_MS}")
            await handle.create_function(
                "cosine_similarity", 2, schema.cosine_similarity, deterministic=True
            )
        except sqlite3.Error as exc:
            self._errors += 1
            raise TransientStoreError(f"Failed to open connection: {exc}", provider_name="sqlite") from exc

        self._next_id += 1
        conn = PoolConnection(id=self._next_id, handle=handle)
        self._connections[conn.id] = conn
        logger.debug("connection_opened", connection_id=conn.id, total=len(self._connections))
        return conn

    async def _discard(self, conn: PoolConnection) -> None:
        self._connections.pop(conn.id, None)
        try:
            await conn.handle.close()
        except (sqlite3.Error, ValueError) as exc:
            logger.debug("connection_close_failed", connection_id=conn.id, error=str(exc))
        logger.debug("connection_closed", connection_id=conn.id, total=len(self._connections))

    def _activate(self, conn: PoolConnection) -> PoolConnection:
        conn.is_active = True
        conn.last_used = time.monotonic()
        return conn

    def _active_count(self) -> int:
        return sum(1 for c in self._connections.values() if c.is_active)

    def _forget_waiter(self, waiter: asyncio.Future[PoolConnection]) -> None:
        waiter.cancel()
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass

    async def _serve_waiter_with_new_connection(self) -> None:
        if self._closed or len(self._connections) + self._opening >= self._max:
            return
        self._opening += 1
        try:
            conn = await self._open_connection()
        except TransientStoreError as exc:
            logger.warning("replacement_connection_failed", error=str(exc))
            return
        finally:
            self._opening -= 1
        await self.release(conn)

    async def _sweep_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._sweep_interval)
            await self.sweep_idle()

    async def sweep_idle(self) -> int:
        """Close idle connections unused for longer than ``idle_timeout``."""
        now = time.monotonic()
        closed = 0
        for conn in list(self._idle):
            if len(self._connections) <= self._min:
                break
            if now - conn.last_used > self._idle_timeout:
                self._idle.remove(conn)
                await self._discard(conn)
                closed += 1
        if closed:
            logger.info("idle_connections_closed", closed=closed, total=len(self._connections))
        return closed


def _ident(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise StoreError(f"Invalid identifier: {name!r}", provider_name="sqlite")
    return name


def _where_clause(filters: dict[str, Any] | None) -> tuple[str, list[Any]]:
    if not filters:
        return "", []
    clauses: list[str] = []
    params: list[Any] = []
    for key, value in filters.items():
        column, _, suffix = key.partition("__")
        op = _OPERATORS.get(suffix, "=") if suffix else "="
        if suffix and suffix not in _OPERATORS:
            raise StoreError(f"Unknown filter operator: {suffix!r}", provider_name="sqlite")
        column = _ident(column)
        if op == "IN" and not isinstance(value, (list, tuple, set, frozenset)):
            value = [value]
        if isinstance(value, (list, tuple, set, frozenset)):
            values = list(value)
            if not values:
                clauses.append("0 = 1" if op != "!=" else "1 = 1")
                continue
            placeholders = ", ".join("?" for _ in values)
            keyword = "NOT IN" if op == "!=" else "IN"
            clauses.append(f"{column} {keyword} ({placeholders})")
            params.extend(values)
        elif value is None:
            clauses.append(f"{column} IS NOT NULL" if op == "!=" else f"{column} IS NULL")
        else:
            clauses.append(f"{column} {op} ?")
            params.append(value)
    return " WHERE " + " AND ".join(clauses), params
