"""
Bus-to-client bridge over WebSocket.

Exposes only allow-listed bus addresses to browser clients. Frames are
JSON text messages:

    client -> bridge
        {"type": "send", "address": "app.markdown", "body": "# Hi", "replyAddress": "r1"}
        {"type": "publish", "address": "...", "body": ...}
        {"type": "register", "address": "page.saved"}
        {"type": "unregister", "address": "page.saved"}
        {"type": "ping"}

    bridge -> client
        {"type": "rec", "address": "page.saved", "body": {...}}
        {"type": "rec", "address": "r1", "body": "<h1>Hi</h1>"}          (reply)
        {"type": "err", "address": "r1", "failureCode": 500, "failureType": "...", "message": "..."}
        {"type": "pong"}

Architecture invariants:
- send/publish need the address on the inbound list
- register needs the address on the outbound list; forwarding re-checks it
- Denied frames are dropped without a response; the connection stays open
- Bridge registrations are publish-only subscribers
- Teardown removes every subscription of the connection; no resumption
"""

import asyncio
import uuid
import orjson
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Set, Tuple
from aiohttp import web, WSMsgType, WSCloseCode

from wikisdk.bus import ConsumerHandle, EventBus, Message, ReplyException
from wikisdk.logging import getLogger


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


@dataclass(frozen=True)
class PermittedOptions:
    """One allow-list entry (exact address match)"""
    address: str

    def matches(self, address: str) -> bool:
        return self.address == address


@dataclass(frozen=True)
class BridgeOptions:
    """Inbound and outbound allow-lists, fixed at startup"""
    inboundPermitteds: Tuple[PermittedOptions, ...] = ()
    outboundPermitteds: Tuple[PermittedOptions, ...] = ()

    @classmethod
    def fromConfig(cls, bridgeConfig: Dict[str, Any]) -> 'BridgeOptions':
        return cls(
            inboundPermitteds=tuple(PermittedOptions(a) for a in bridgeConfig.get('inbound', ())),
            outboundPermitteds=tuple(PermittedOptions(a) for a in bridgeConfig.get('outbound', ()))
        )

    def isInboundPermitted(self, address: str) -> bool:
        return any(p.matches(address) for p in self.inboundPermitteds)

    def isOutboundPermitted(self, address: str) -> bool:
        return any(p.matches(address) for p in self.outboundPermitteds)


class BridgeConnection:
    """
    Ephemeral per-client state. Exists only while the WebSocket is open.
    """

    def __init__(self, connId: str, ws: web.WebSocketResponse, peerAddr: str):
        self.connId = connId
        self.ws = ws
        self.peerAddr = peerAddr
        self.state = ConnectionState.CONNECTING
        self.log = getLogger()

        # address -> bus subscription
        self.registrations: Dict[str, ConsumerHandle] = {}
        # in-flight send-with-reply frames
        self.pendingRequests: Set[asyncio.Task] = set()

        # Stats
        self.framesIn = 0
        self.framesOut = 0
        self.framesDenied = 0

    async def sendFrame(self, frame: Dict[str, Any]) -> bool:
        """Write one JSON frame. Returns False when it could not be delivered."""
        if self.state != ConnectionState.OPEN or self.ws.closed:
            return False
        try:
            data = orjson.dumps(frame).decode()
        except orjson.JSONEncodeError as e:
            self.log.error(f"[Bridge] Frame for {frame.get('address')} is not JSON serializable: {e}",
                           connId=self.connId)
            return False
        try:
            await self.ws.send_str(data)
        except ConnectionResetError as e:
            self.log.debug(f"[Bridge] Write to {self.connId} failed: {e}")
            return False
        self.framesOut += 1
        return True


class EventBusBridge:
    """
    WebSocket endpoint bridging allow-listed bus addresses.

    Registered as a route handler on the gateway's aiohttp app:
        app.router.add_get('/eventbus', bridge.handleWebSocket)
    """

    def __init__(self, bus: EventBus, options: BridgeOptions, replyTimeout: float = 30.0):
        self.bus = bus
        self.options = options
        self.replyTimeout = replyTimeout
        self.log = getLogger()

        self.connections: Dict[str, BridgeConnection] = {}

    async def handleWebSocket(self, request: web.Request) -> web.WebSocketResponse:
        connId = str(uuid.uuid4())
        ws = web.WebSocketResponse()
        conn = BridgeConnection(connId, ws, request.remote or "unknown")
        self.connections[connId] = conn

        closeCode = WSCloseCode.OK
        try:
            await ws.prepare(request)
            conn.state = ConnectionState.OPEN
            self.log.info(f"[Bridge] Connection {connId} open from {conn.peerAddr}")

            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    conn.framesIn += 1
                    await self._handleFrame(conn, msg.data)
                elif msg.type == WSMsgType.BINARY:
                    self.log.warning(f"[Bridge] Binary frame from {connId}, closing")
                    closeCode = WSCloseCode.UNSUPPORTED_DATA
                    break
                elif msg.type == WSMsgType.ERROR:
                    self.log.error(f"[Bridge] WebSocket error on {connId}: {ws.exception()}")
                    break

        except Exception as e:
            self.log.error(f"[Bridge] Error in WebSocket loop for {connId}: {e}", exc_info=True)

        finally:
            await self._teardown(conn)
            if not ws.closed and ws.prepared:
                await ws.close(code=closeCode)

        return ws

    # ===== Frames =====

    async def _handleFrame(self, conn: BridgeConnection, data: str):
        try:
            frame = orjson.loads(data)
        except orjson.JSONDecodeError:
            self.log.warning(f"[Bridge] Malformed frame from {conn.connId} dropped")
            return
        if not isinstance(frame, dict):
            self.log.warning(f"[Bridge] Non-object frame from {conn.connId} dropped")
            return

        frameType = frame.get('type')
        if frameType == 'ping':
            await conn.sendFrame({'type': 'pong'})
            return

        address = frame.get('address')
        if not isinstance(address, str) or not address:
            self.log.warning(f"[Bridge] Frame without address from {conn.connId} dropped", frameType=frameType)
            return

        if frameType == 'send':
            await self._handleSend(conn, frame, address)
        elif frameType == 'publish':
            await self._handlePublish(conn, frame, address)
        elif frameType == 'register':
            await self._handleRegister(conn, address)
        elif frameType == 'unregister':
            await self._handleUnregister(conn, address)
        else:
            self.log.warning(f"[Bridge] Unknown frame type from {conn.connId} dropped", frameType=frameType)

    async def _handleSend(self, conn: BridgeConnection, frame: Dict[str, Any], address: str):
        if not self.options.isInboundPermitted(address):
            self._deny(conn, 'send', address)
            return

        body = frame.get('body')
        headers = self._frameHeaders(frame)
        replyAddress = frame.get('replyAddress')

        if isinstance(replyAddress, str) and replyAddress:
            task = asyncio.create_task(self._forwardRequest(conn, address, body, headers, replyAddress))
            conn.pendingRequests.add(task)
            task.add_done_callback(conn.pendingRequests.discard)
        else:
            self.bus.send(address, body, headers)

    async def _handlePublish(self, conn: BridgeConnection, frame: Dict[str, Any], address: str):
        if not self.options.isInboundPermitted(address):
            self._deny(conn, 'publish', address)
            return
        self.bus.publish(address, frame.get('body'), self._frameHeaders(frame))

    async def _handleRegister(self, conn: BridgeConnection, address: str):
        if not self.options.isOutboundPermitted(address):
            self._deny(conn, 'register', address)
            return
        if address in conn.registrations:
            return

        async def forwardToClient(message: Message):
            if conn.state != ConnectionState.OPEN or not self.options.isOutboundPermitted(message.address):
                return
            frame = {'type': 'rec', 'address': message.address, 'body': message.body}
            if message.headers:
                frame['headers'] = message.headers
            await conn.sendFrame(frame)

        conn.registrations[address] = self.bus.subscribe(address, forwardToClient)
        self.log.info(f"[Bridge] {conn.connId} registered for {address}")

    async def _handleUnregister(self, conn: BridgeConnection, address: str):
        handle = conn.registrations.pop(address, None)
        if handle is not None:
            await handle.unregister()
            self.log.info(f"[Bridge] {conn.connId} unregistered from {address}")

    async def _forwardRequest(self, conn: BridgeConnection, address: str, body: Any,
                              headers: Optional[Dict[str, str]], replyAddress: str):
        try:
            reply = await self.bus.request(address, body, headers, timeout=self.replyTimeout)
            frame = {'type': 'rec', 'address': replyAddress, 'body': reply.body}
            if reply.headers:
                frame['headers'] = reply.headers
        except ReplyException as e:
            frame = {
                'type': 'err',
                'address': replyAddress,
                'failureCode': int(e.failureCode),
                'failureType': e.failureType.value,
                'message': e.message
            }
        await conn.sendFrame(frame)

    def _frameHeaders(self, frame: Dict[str, Any]) -> Optional[Dict[str, str]]:
        headers = frame.get('headers')
        if not isinstance(headers, dict):
            return None
        return {str(k): str(v) for k, v in headers.items()}

    def _deny(self, conn: BridgeConnection, frameType: str, address: str):
        conn.framesDenied += 1
        self.log.warning(f"[Bridge] Denied {frameType} to {address}", connId=conn.connId, peer=conn.peerAddr)

    # ===== Lifecycle =====

    async def _teardown(self, conn: BridgeConnection):
        if conn.state == ConnectionState.CLOSED:
            return
        conn.state = ConnectionState.CLOSED
        self.connections.pop(conn.connId, None)

        for handle in list(conn.registrations.values()):
            await handle.unregister()
        conn.registrations.clear()

        # Replies still in flight are discarded; their side effects still land
        pending = list(conn.pendingRequests)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        self.log.info(f"[Bridge] Connection {conn.connId} closed "
                      f"(in={conn.framesIn}, out={conn.framesOut}, denied={conn.framesDenied})")

    async def closeAll(self):
        """Close every client connection (gateway shutdown)"""
        for conn in list(self.connections.values()):
            await self._teardown(conn)
            if not conn.ws.closed and conn.ws.prepared:
                await conn.ws.close(code=WSCloseCode.GOING_AWAY, message=b'Server shutdown')

    def getStatus(self) -> Dict[str, Any]:
        return {
            'connections': len(self.connections),
            'inbound': [p.address for p in self.options.inboundPermitteds],
            'outbound': [p.address for p in self.options.outboundPermitteds]
        }
