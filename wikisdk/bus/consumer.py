"""
ConsumerHandle: one registration of a handler at a bus address.

Each handle owns a FIFO queue drained by a single task, so a handle sees
messages in the order they were sent and runs one handler call at a time.
"""

import asyncio
import inspect
from typing import Any, Callable

from .message import Message, ReplyFailure
from wikisdk.logging import getLogger


class ConsumerHandle:
    """
    Registration handle returned by EventBus.consumer() / EventBus.subscribe().

    Read-only fields:
        - address: The registered address
        - active: Whether this handle still receives messages
        - receivesSends: False for publish-only subscribers
        - messagesSeen: Messages taken off the queue so far
    """

    def __init__(self, bus, address: str, handler: Callable[[Message], Any], receivesSends: bool):
        self._bus = bus
        self._address = address
        self._handler = handler
        self._receivesSends = receivesSends
        self._active = True
        self._messagesSeen = 0
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task = None
        self.log = getLogger()

    @property
    def address(self) -> str:
        return self._address

    @property
    def active(self) -> bool:
        return self._active

    @property
    def receivesSends(self) -> bool:
        return self._receivesSends

    @property
    def messagesSeen(self) -> int:
        return self._messagesSeen

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def _start(self):
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"bus-consumer:{self._address}")

    def _enqueue(self, message: Message):
        if self._active:
            self._queue.put_nowait(message)

    async def _run(self):
        while True:
            message = await self._queue.get()
            if message is None:
                break
            self._messagesSeen += 1
            try:
                result = self._handler(message)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                if message.replyAddress and not message.replied:
                    message._failWith(ReplyFailure.ERROR, -1, f"Consumer at '{self._address}' was unregistered")
                raise
            except Exception as e:
                self.log.error(f"[Bus] Handler error at {self._address}: {e}", exc_info=True)
                if message.replyAddress and not message.replied:
                    message.fail(500, str(e))

    async def unregister(self):
        """Stop receiving messages. Queued requests fail with NO_HANDLERS."""
        if not self._active:
            return
        self._active = False
        self._bus._removeHandle(self)

        while not self._queue.empty():
            message = self._queue.get_nowait()
            if message.replyAddress and not message.replied:
                message._failWith(ReplyFailure.NO_HANDLERS, -1, f"Consumer at '{self._address}' was unregistered")

        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
            await asyncio.wait([self._task])
        elif self._task is not None:
            # Unregistering from inside our own handler: stop after it returns
            self._queue.put_nowait(None)
