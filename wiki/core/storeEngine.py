"""
Store Engine - pooled, asynchronous access to the Pages database.

Owns a bounded ConnectionPool and a bounded worker executor. Every sqlite
call runs on a worker thread; the event loop only awaits completion.

Lifecycle:
    engine = StoreEngine('sqlite:///db/wiki.db', maxPoolSize=30)
    await engine.start()          # ensures schema, completes readiness once
    rows = await engine.query(SqlQuery.ALL_PAGES_DATA)
    await engine.close()

Operations before start() completes (or after close()) raise
StoreNotReadyError; they are never queued.
"""

import asyncio
import contextlib
import sqlite3
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from wiki.core.errors import MappingError, StatementError, StoreError, StoreNotReadyError
from wiki.core.pool import ConnectionPool
from wiki.core.queries import SqlQuery, loadSqlQueries
from wikisdk.logging import getLogger


_MEMORY_URLS = ('sqlite://:memory:', 'sqlite:///:memory:', ':memory:')


def parseStoreUrl(url: str) -> Tuple[str, bool]:
    """
    Map a store URL to sqlite3.connect() arguments.

    sqlite:///db/wiki.db     -> relative path db/wiki.db
    sqlite:////var/wiki.db   -> absolute path /var/wiki.db
    sqlite://:memory:        -> private shared-cache memory database
    /some/path.db            -> bare path

    Returns: (database, uri flag)
    """
    if url in _MEMORY_URLS:
        return f"file:wiki-{uuid.uuid4().hex}?mode=memory&cache=shared", True
    if url.startswith('sqlite:///'):
        path = url[len('sqlite:///'):]
        if not path:
            raise ValueError(f"Store URL has no database path: {url}")
        return path, False
    if '://' in url:
        raise ValueError(f"Unsupported store URL '{url}'. Supported: sqlite:///path, sqlite://:memory:")
    return url, False


def _runUpdate(conn: sqlite3.Connection, sql: str, params: Tuple) -> int:
    try:
        cursor = conn.execute(sql, params)
        conn.commit()
        return cursor.rowcount
    except BaseException:
        with contextlib.suppress(sqlite3.Error):
            conn.rollback()
        raise


def _runQuery(conn: sqlite3.Connection, sql: str, params: Tuple) -> List[Dict[str, Any]]:
    cursor = conn.execute(sql, params)
    columns = [column[0].lower() for column in cursor.description or ()]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


class StoreEngine:
    """
    Asynchronous statement executor over a pooled sqlite database.

    Failures surface as StoreError subclasses with the sqlite error chained
    as __cause__. No retries.
    """

    def __init__(self, url: str, maxPoolSize: int = 30, acquireTimeout: float = 30.0,
                 sqlQueries: Optional[Dict[SqlQuery, str]] = None):
        self.log = getLogger()
        self.url = url
        self.sqlQueries: Dict[SqlQuery, str] = dict(sqlQueries) if sqlQueries else loadSqlQueries()

        self._database, self._isUri = parseStoreUrl(url)
        self._isMemory = self._isUri and 'mode=memory' in self._database

        self._executor = ThreadPoolExecutor(max_workers=maxPoolSize, thread_name_prefix='wikidb')
        self.pool = ConnectionPool(self._openConnection, maxSize=maxPoolSize,
                                   acquireTimeout=acquireTimeout, runBlocking=self._runBlocking)

        # Shared-cache memory databases vanish with their last connection
        self._keeper: Optional[sqlite3.Connection] = None

        self._ready: Optional[asyncio.Future] = None
        self._closed = False

    @classmethod
    def fromConfig(cls, wikidbConfig: Dict[str, Any]) -> 'StoreEngine':
        """Build from the 'wikidb' config section"""
        return cls(
            url=wikidbConfig['url'],
            maxPoolSize=wikidbConfig.get('maxPoolSize', 30),
            acquireTimeout=wikidbConfig.get('acquireTimeout', 30.0),
            sqlQueries=loadSqlQueries(wikidbConfig.get('sqlQueriesFile'))
        )

    # ===== Lifecycle =====

    async def start(self) -> 'StoreEngine':
        """Ensure the schema exists, then signal readiness (exactly once)"""
        if self._ready is not None:
            raise RuntimeError("StoreEngine already started")
        self._ready = asyncio.get_running_loop().create_future()

        try:
            if self._isMemory:
                self._keeper = await self._runBlocking(self._openConnection)
            await self._update(SqlQuery.CREATE_PAGES_TABLE, ())
        except Exception as e:
            self.log.error(f"[StoreEngine] Database preparation error: {e}", exc_info=True)
            error = e if isinstance(e, StoreError) else StoreError(f"Database preparation failed: {e}")
            self._ready.set_exception(error)
            # Mark retrieved: the raise below is the primary report
            self._ready.exception()
            if error is e:
                raise
            raise error from e

        self._ready.set_result(self)
        self.log.info("[StoreEngine] Database successfully prepared",
                      url=self.url, maxPoolSize=self.pool.maxSize)
        return self

    async def whenReady(self) -> 'StoreEngine':
        """Completes when start() succeeded; raises its failure otherwise"""
        if self._ready is None:
            raise StoreNotReadyError("Store engine has not been started")
        return await asyncio.shield(self._ready)

    @property
    def isReady(self) -> bool:
        return (not self._closed and self._ready is not None and self._ready.done()
                and self._ready.exception() is None)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        await self.pool.close()
        if self._keeper is not None:
            self._keeper.close()
            self._keeper = None
        await asyncio.to_thread(self._executor.shutdown, True)
        self.log.info("[StoreEngine] Closed", url=self.url)

    # ===== Operations =====

    async def execute(self, statementId: SqlQuery, params: Sequence[Any] = ()) -> int:
        """Run an update statement. Returns rows affected."""
        self._checkReady()
        return await self._update(statementId, params)

    async def query(self, statementId: SqlQuery, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Run a query. Returns rows as dicts keyed by lower-cased column name."""
        self._checkReady()
        return await self._run(_runQuery, statementId, params)

    async def querySingle(self, statementId: SqlQuery, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        """First row of a query, or None"""
        rows = await self.query(statementId, params)
        return rows[0] if rows else None

    # ===== Internals =====

    def _checkReady(self):
        if self._closed:
            raise StoreNotReadyError("Store engine is closed")
        if not self.isReady:
            raise StoreNotReadyError("Store engine is not ready")

    def _sql(self, statementId: SqlQuery) -> str:
        try:
            return self.sqlQueries[SqlQuery(statementId)]
        except (KeyError, ValueError):
            raise MappingError(f"Unknown statement: {statementId}") from None

    async def _update(self, statementId: SqlQuery, params: Sequence[Any]) -> int:
        return await self._run(_runUpdate, statementId, params)

    async def _run(self, fn, statementId: SqlQuery, params: Sequence[Any]):
        sql = self._sql(statementId)
        name = getattr(statementId, 'value', statementId)
        try:
            async with self.pool.connection() as conn:
                return await self._runBlocking(fn, conn, sql, tuple(params))
        except StoreError as e:
            self.log.error(f"[StoreEngine] {name} failed: {e}")
            raise
        except sqlite3.Error as e:
            self.log.error(f"[StoreEngine] {name} failed: {e}")
            raise StatementError(f"{name} failed: {e}") from e
        except (TypeError, ValueError, OverflowError, UnicodeDecodeError) as e:
            self.log.error(f"[StoreEngine] {name} result mapping failed: {e}")
            raise MappingError(f"{name} result mapping failed: {e}") from e

    async def _runBlocking(self, fn, *args):
        future = asyncio.get_running_loop().run_in_executor(self._executor, fn, *args)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            # The worker still holds the connection; let it finish before release
            await asyncio.wait([future])
            raise

    def _openConnection(self) -> sqlite3.Connection:
        if not self._isUri:
            Path(self._database).parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            self._database,
            uri=self._isUri,
            check_same_thread=False,   # pooled: one task at a time, any worker thread
            timeout=30.0
        )
        try:
            if not self._isMemory:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error:
            conn.close()
            raise
        return conn
