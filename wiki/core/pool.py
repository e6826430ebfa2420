"""
Bounded pool of sqlite3 connections.

Acquisition waits (the task, not the loop) for a free slot up to
acquireTimeout; connections are opened lazily. Use the scoped form so the
connection returns to the pool on every exit path:

    async with pool.connection() as conn:
        ...
"""

import asyncio
import sqlite3
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, List, Optional

from wiki.core.errors import PoolTimeoutError, StoreError
from wikisdk.logging import getLogger


# Statement-level failures leave the connection usable
_RECOVERABLE_ERRORS = (sqlite3.IntegrityError, sqlite3.ProgrammingError, sqlite3.DataError)


class ConnectionPool:
    """
    Connection pool with a fixed upper bound.

    Args:
        connect: Blocking factory returning a new sqlite3.Connection
        maxSize: Upper bound on open connections
        acquireTimeout: Seconds to wait for a free connection
        runBlocking: Coroutine function used to run connect() off the loop
    """

    def __init__(self, connect: Callable[[], sqlite3.Connection], maxSize: int = 30,
                 acquireTimeout: float = 30.0,
                 runBlocking: Optional[Callable[..., Awaitable]] = None):
        if maxSize < 1:
            raise ValueError(f"maxSize must be >= 1, got {maxSize}")
        self.log = getLogger()
        self._connect = connect
        self.maxSize = maxSize
        self.acquireTimeout = acquireTimeout
        self._runBlocking = runBlocking or asyncio.to_thread

        self._slots = asyncio.Semaphore(maxSize)
        self._idle: List[sqlite3.Connection] = []
        self._open = 0
        self._inUse = 0
        self._closed = False

    async def acquire(self) -> sqlite3.Connection:
        """Take a connection; pair every call with release()"""
        if self._closed:
            raise StoreError("Connection pool is closed")

        acquiring = asyncio.ensure_future(self._slots.acquire())
        try:
            done, _ = await asyncio.wait([acquiring], timeout=self.acquireTimeout)
        except asyncio.CancelledError:
            self._abandon(acquiring)
            raise
        if not done:
            self._abandon(acquiring)
            self.log.warning("[Pool] Connection acquisition timed out", maxSize=self.maxSize, inUse=self._inUse)
            raise PoolTimeoutError(
                f"Timed out after {self.acquireTimeout}s waiting for a pooled connection "
                f"(maxSize={self.maxSize})"
            )

        try:
            if self._idle:
                conn = self._idle.pop()
            else:
                conn = await self._runBlocking(self._connect)
                self._open += 1
                self.log.debug("[Pool] Opened connection", open=self._open)
        except BaseException:
            self._slots.release()
            raise

        self._inUse += 1
        return conn

    def _abandon(self, acquiring: asyncio.Future):
        """Cancel a pending slot acquire; a slot granted in the meantime goes back"""
        acquiring.add_done_callback(self._returnGrantedSlot)
        acquiring.cancel()

    def _returnGrantedSlot(self, acquiring: asyncio.Future):
        if not acquiring.cancelled():
            self._slots.release()

    def release(self, conn: sqlite3.Connection, discard: bool = False):
        """Return a connection; discarded ones are closed and not reused"""
        self._inUse -= 1
        try:
            if discard or self._closed:
                self._open -= 1
                conn.close()
                if discard:
                    self.log.warning("[Pool] Discarded broken connection", open=self._open)
            else:
                self._idle.append(conn)
        finally:
            self._slots.release()

    @asynccontextmanager
    async def connection(self):
        conn = await self.acquire()
        discard = False
        try:
            yield conn
        except BaseException as e:
            discard = isinstance(e, sqlite3.Error) and not isinstance(e, _RECOVERABLE_ERRORS)
            raise
        finally:
            self.release(conn, discard=discard)

    def stats(self) -> Dict[str, int]:
        return {
            'maxSize': self.maxSize,
            'open': self._open,
            'idle': len(self._idle),
            'inUse': self._inUse
        }

    async def close(self):
        """Close idle connections now; in-use ones close when released"""
        self._closed = True
        idle, self._idle = self._idle, []
        for conn in idle:
            conn.close()
            self._open -= 1
        self.log.debug("[Pool] Closed", closedIdle=len(idle), inUse=self._inUse)
