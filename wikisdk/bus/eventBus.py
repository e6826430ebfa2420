"""
EventBus: in-process addressable messaging.

Patterns:
    - send(address, body): point-to-point, one consumer (round-robin), no reply
    - request(address, body): point-to-point with exactly one correlated reply
    - publish(address, body): every handle at the address gets its own copy

Usage:
    bus = EventBus()
    handle = bus.consumer('wikidb.queue', handler)
    reply = await bus.request('wikidb.queue', {'id': 1}, headers={'action': 'fetchPageById'})
    bus.publish('page.saved', {'id': 1, 'client': 'abc'})
    await handle.unregister()
    await bus.close()

Invariants:
- A request is answered once: reply, failure, timeout or NO_HANDLERS
- Reply tokens are private to the requester; nothing else can consume them
- Messages from one sender to one address reach a handle in send order
- Delivery is at-most-once and in-process (nothing survives a crash)
"""

import asyncio
import uuid
from typing import Any, Callable, Dict, List, Optional

from .consumer import ConsumerHandle
from .message import Message, ReplyException, ReplyFailure
from wikisdk.logging import getLogger


class EventBus:
    """In-process message bus. Create one per composition (or per test)."""

    def __init__(self, name: str = "bus"):
        self.name = name
        self.log = getLogger()

        # address -> handles, in registration order
        self._handles: Dict[str, List[ConsumerHandle]] = {}
        self._roundRobin: Dict[str, int] = {}

        # reply token -> requester future
        self._pendingReplies: Dict[str, asyncio.Future] = {}

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._closed = False

    # ===== Registration =====

    def consumer(self, address: str, handler: Callable[[Message], Any]) -> ConsumerHandle:
        """Register a handler for sends, requests and publishes at address."""
        return self._register(address, handler, receivesSends=True)

    def subscribe(self, address: str, handler: Callable[[Message], Any]) -> ConsumerHandle:
        """Register a handler that only receives publishes at address."""
        return self._register(address, handler, receivesSends=False)

    def _register(self, address: str, handler: Callable, receivesSends: bool) -> ConsumerHandle:
        if self._closed:
            raise RuntimeError(f"EventBus '{self.name}' is closed")
        if not isinstance(address, str) or not address:
            raise ValueError(f"Bus address must be a non-empty string, got {address!r}")

        self._bindLoop()
        handle = ConsumerHandle(self, address, handler, receivesSends)
        handle._start()
        self._handles.setdefault(address, []).append(handle)

        self.log.debug(f"[Bus] Registered {'consumer' if receivesSends else 'subscriber'} at {address}",
                       handlers=len(self._handles[address]))
        return handle

    def _removeHandle(self, handle: ConsumerHandle):
        handles = self._handles.get(handle.address)
        if not handles:
            return
        if handle in handles:
            handles.remove(handle)
        if not handles:
            del self._handles[handle.address]
            self._roundRobin.pop(handle.address, None)
        self.log.debug(f"[Bus] Unregistered handler at {handle.address}")

    def handlerCount(self, address: str) -> int:
        return len(self._handles.get(address, []))

    # ===== Messaging =====

    def send(self, address: str, body: Any, headers: Optional[Dict[str, str]] = None):
        """Point-to-point, fire and forget. Dropped when nobody consumes address."""
        message = Message(address, body, headers, None, self, isSend=True)
        self._callInLoop(self._deliverPointToPoint, message)

    def publish(self, address: str, body: Any, headers: Optional[Dict[str, str]] = None):
        """Deliver an independent copy to every handle at address. No feedback."""
        self._callInLoop(self._deliverPublish, address, body, headers)

    async def request(self, address: str, body: Any, headers: Optional[Dict[str, str]] = None,
                      timeout: Optional[float] = None) -> Message:
        """
        Send to exactly one consumer and wait for its reply.

        Returns: the reply Message
        Raises: ReplyException (NO_HANDLERS, TIMEOUT, RECIPIENT_FAILURE, ERROR)
        """
        if self._closed:
            raise ReplyException(ReplyFailure.ERROR, -1, f"EventBus '{self.name}' is closed")

        self._bindLoop()
        replyAddress = f"__reply.{uuid.uuid4().hex}"
        future = self._loop.create_future()
        self._pendingReplies[replyAddress] = future

        message = Message(address, body, headers, replyAddress, self, isSend=True)
        try:
            if not self._deliverPointToPoint(message):
                raise ReplyException(ReplyFailure.NO_HANDLERS, -1, f"No handlers for address {address}")
            if timeout is None:
                return await future
            try:
                return await asyncio.wait_for(future, timeout=timeout)
            except asyncio.TimeoutError:
                raise ReplyException(
                    ReplyFailure.TIMEOUT, -1,
                    f"Timed out after waiting {timeout}s for a reply. address: {address}"
                ) from None
        finally:
            self._pendingReplies.pop(replyAddress, None)

    def _deliverPointToPoint(self, message: Message) -> bool:
        candidates = [h for h in self._handles.get(message.address, ()) if h.receivesSends and h.active]
        if not candidates:
            self.log.debug(f"[Bus] No consumer at {message.address}, message dropped")
            return False
        index = self._roundRobin.get(message.address, 0) % len(candidates)
        self._roundRobin[message.address] = index + 1
        candidates[index]._enqueue(message)
        return True

    def _deliverPublish(self, address: str, body: Any, headers: Optional[Dict[str, str]]):
        for handle in list(self._handles.get(address, ())):
            handle._enqueue(Message(address, body, headers, None, self, isSend=False))

    def _deliverReply(self, replyAddress: str, reply: Optional[Message], failure: Optional[ReplyException]):
        self._callInLoop(self._resolveReply, replyAddress, reply, failure)

    def _resolveReply(self, replyAddress: str, reply: Optional[Message], failure: Optional[ReplyException]):
        future = self._pendingReplies.get(replyAddress)
        if future is None or future.done():
            # Requester timed out or went away
            self.log.debug(f"[Bus] Discarding reply for {replyAddress}")
            return
        if failure is not None:
            future.set_exception(failure)
        else:
            future.set_result(reply)

    # ===== Loop plumbing =====

    def _bindLoop(self):
        loop = asyncio.get_running_loop()
        if self._loop is None or self._loop.is_closed():
            self._loop = loop
        elif self._loop is not loop:
            raise RuntimeError(f"EventBus '{self.name}' is bound to another event loop")

    def _callInLoop(self, fn: Callable, *args):
        """Run fn on the bus loop; safe to call from executor threads."""
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if self._loop is None:
            if running is None:
                raise RuntimeError(f"EventBus '{self.name}' has no event loop yet; use it from the loop first")
            fn(*args)
        elif running is not self._loop:
            self._loop.call_soon_threadsafe(fn, *args)
        else:
            fn(*args)

    # ===== Lifecycle =====

    async def close(self):
        """Unregister all handles and fail outstanding requests."""
        if self._closed:
            return
        self._closed = True

        for handles in list(self._handles.values()):
            for handle in list(handles):
                await handle.unregister()

        for replyAddress, future in list(self._pendingReplies.items()):
            if not future.done():
                future.set_exception(ReplyException(ReplyFailure.ERROR, -1, f"EventBus '{self.name}' closed"))
        self._pendingReplies.clear()

        self.log.info(f"[Bus] {self.name} closed")

    @property
    def closed(self) -> bool:
        return self._closed
