"""
Event-Bus Bridge Tests

WebSocket clients against EventBusBridge served by aiohttp TestServer.

Architecture Invariants:
- Inbound frames reach the bus only for inbound-listed addresses
- Only outbound-listed publishes reach clients
- Denied frames are dropped; the connection stays usable
- Closing the socket removes every subscription it made

Run: python -m pytest test/test_bridge.py -v
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest
from aiohttp import web, WSMsgType, WSCloseCode
from aiohttp.test_utils import TestClient, TestServer

from wiki.server.bridge import BridgeOptions, EventBusBridge, PermittedOptions
from wiki.server.rendering import handleMarkdownMessage
from wikisdk.bus import EventBus, ReplyException, ReplyFailure


INBOUND = ['app.markdown', 'in.relay', 'in.failing', 'in.nobody']
OUTBOUND = ['page.saved']


async def waitFor(predicate, timeout: float = 2.0):
    """Poll until predicate() is true"""
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout=timeout)


async def roundTrip(ws):
    """Ping and wait for the pong; every earlier frame has been handled"""
    await ws.send_json({'type': 'ping'})
    assert await ws.receive_json(timeout=2.0) == {'type': 'pong'}


@pytest.fixture
async def bus():
    bus = EventBus('test')
    bus.consumer('app.markdown', handleMarkdownMessage)
    yield bus
    await bus.close()


@pytest.fixture
async def bridge(bus):
    options = BridgeOptions.fromConfig({'inbound': INBOUND, 'outbound': OUTBOUND})
    return EventBusBridge(bus, options, replyTimeout=2.0)


@pytest.fixture
async def client(bridge):
    app = web.Application()
    app.router.add_get('/eventbus', bridge.handleWebSocket)
    client = TestClient(TestServer(app))
    await client.start_server()
    yield client
    await client.close()


class TestBridgeOptions:

    def test_exact_match_only(self):
        options = BridgeOptions(inboundPermitteds=(PermittedOptions('app.markdown'),))

        assert options.isInboundPermitted('app.markdown')
        assert not options.isInboundPermitted('app.markdown.extra')
        assert not options.isInboundPermitted('app')
        assert not options.isOutboundPermitted('app.markdown')

    def test_from_config(self):
        options = BridgeOptions.fromConfig({'inbound': ['a'], 'outbound': ['b', 'c']})

        assert options.isInboundPermitted('a')
        assert options.isOutboundPermitted('c')
        assert not options.isOutboundPermitted('a')


class TestInbound:

    @pytest.mark.asyncio
    async def test_ping_pong(self, client):
        async with client.ws_connect('/eventbus') as ws:
            await roundTrip(ws)

    @pytest.mark.asyncio
    async def test_markdown_request_reply(self, client):
        async with client.ws_connect('/eventbus') as ws:
            await ws.send_json({
                'type': 'send', 'address': 'app.markdown', 'body': '# Hi', 'replyAddress': 'r1'
            })
            frame = await ws.receive_json(timeout=2.0)

        assert frame['type'] == 'rec'
        assert frame['address'] == 'r1'
        assert '<h1>Hi</h1>' in frame['body']

    @pytest.mark.asyncio
    async def test_denied_send_has_no_effect(self, bus, bridge, client):
        received = []
        bus.consumer('wikidb.queue', lambda message: received.append(message.body))

        async with client.ws_connect('/eventbus') as ws:
            await ws.send_json({'type': 'send', 'address': 'wikidb.queue', 'body': {'id': 1}})
            await ws.send_json({
                'type': 'send', 'address': 'wikidb.queue', 'body': {}, 'replyAddress': 'r2',
                'headers': {'action': 'deletePage'}
            })
            await ws.send_json({'type': 'publish', 'address': 'wikidb.queue', 'body': 'x'})

            # No reply or error frame; connection still serves requests
            await roundTrip(ws)
            assert not ws.closed
            await ws.send_json({'type': 'send', 'address': 'app.markdown', 'body': 'ok', 'replyAddress': 'r3'})
            frame = await ws.receive_json(timeout=2.0)
            assert frame['address'] == 'r3'

        assert received == []
        await waitFor(lambda: bridge.connections == {})

    @pytest.mark.asyncio
    async def test_allowed_publish_reaches_bus(self, bus, client):
        received = []
        bus.subscribe('in.relay', lambda message: received.append(message.body))

        async with client.ws_connect('/eventbus') as ws:
            await ws.send_json({'type': 'publish', 'address': 'in.relay', 'body': {'n': 1}})
            await roundTrip(ws)

        await waitFor(lambda: received == [{'n': 1}])

    @pytest.mark.asyncio
    async def test_recipient_failure_becomes_err_frame(self, bus, client):
        bus.consumer('in.failing', lambda message: message.fail(404, "Nothing here"))

        async with client.ws_connect('/eventbus') as ws:
            await ws.send_json({'type': 'send', 'address': 'in.failing', 'body': {}, 'replyAddress': 'r4'})
            frame = await ws.receive_json(timeout=2.0)

        assert frame == {
            'type': 'err',
            'address': 'r4',
            'failureCode': 404,
            'failureType': 'RECIPIENT_FAILURE',
            'message': "Nothing here"
        }

    @pytest.mark.asyncio
    async def test_no_handlers_becomes_err_frame(self, client):
        async with client.ws_connect('/eventbus') as ws:
            await ws.send_json({'type': 'send', 'address': 'in.nobody', 'body': {}, 'replyAddress': 'r5'})
            frame = await ws.receive_json(timeout=2.0)

        assert frame['type'] == 'err'
        assert frame['failureType'] == 'NO_HANDLERS'

    @pytest.mark.asyncio
    async def test_malformed_frames_dropped(self, client):
        async with client.ws_connect('/eventbus') as ws:
            await ws.send_str('not json at all')
            await ws.send_str('[1, 2, 3]')
            await ws.send_json({'type': 'teleport', 'address': 'app.markdown'})
            await ws.send_json({'type': 'send', 'body': 'no address'})

            await roundTrip(ws)
            assert not ws.closed

    @pytest.mark.asyncio
    async def test_binary_frame_closes_connection(self, bridge, client):
        async with client.ws_connect('/eventbus') as ws:
            await ws.send_bytes(b'\x00\x01')
            msg = await ws.receive(timeout=2.0)

            assert msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED)
            assert ws.close_code == WSCloseCode.UNSUPPORTED_DATA

        await waitFor(lambda: bridge.connections == {})


class TestOutbound:

    @pytest.mark.asyncio
    async def test_registered_client_receives_publish(self, bus, client):
        async with client.ws_connect('/eventbus') as ws:
            await ws.send_json({'type': 'register', 'address': 'page.saved'})
            await roundTrip(ws)

            bus.publish('page.saved', {'id': 3, 'client': 'abc'})
            frame = await ws.receive_json(timeout=2.0)

        assert frame == {'type': 'rec', 'address': 'page.saved', 'body': {'id': 3, 'client': 'abc'}}

    @pytest.mark.asyncio
    async def test_register_outside_outbound_denied(self, bus, client):
        async with client.ws_connect('/eventbus') as ws:
            await ws.send_json({'type': 'register', 'address': 'secret.events'})
            await ws.send_json({'type': 'register', 'address': 'page.saved'})
            await roundTrip(ws)

            assert bus.handlerCount('secret.events') == 0
            bus.publish('secret.events', 'leak')
            bus.publish('page.saved', 'visible')

            frame = await ws.receive_json(timeout=2.0)

        assert frame['address'] == 'page.saved'
        assert frame['body'] == 'visible'

    @pytest.mark.asyncio
    async def test_inbound_send_never_leaks_unlisted_publish(self, bus, client):
        def relay(message):
            bus.publish('secret.events', message.body)
            bus.publish('page.saved', message.body)

        bus.consumer('in.relay', relay)

        async with client.ws_connect('/eventbus') as ws:
            await ws.send_json({'type': 'register', 'address': 'secret.events'})
            await ws.send_json({'type': 'register', 'address': 'page.saved'})
            await roundTrip(ws)

            await ws.send_json({'type': 'send', 'address': 'in.relay', 'body': 'payload'})
            first = await ws.receive_json(timeout=2.0)
            await roundTrip(ws)

        assert first == {'type': 'rec', 'address': 'page.saved', 'body': 'payload'}

    @pytest.mark.asyncio
    async def test_registration_is_publish_only(self, bus, client):
        async with client.ws_connect('/eventbus') as ws:
            await ws.send_json({'type': 'register', 'address': 'page.saved'})
            await roundTrip(ws)

            assert bus.handlerCount('page.saved') == 1
            with pytest.raises(ReplyException) as excInfo:
                await bus.request('page.saved', {}, timeout=0.5)
            assert excInfo.value.failureType == ReplyFailure.NO_HANDLERS

    @pytest.mark.asyncio
    async def test_register_is_idempotent(self, bus, client):
        async with client.ws_connect('/eventbus') as ws:
            await ws.send_json({'type': 'register', 'address': 'page.saved'})
            await ws.send_json({'type': 'register', 'address': 'page.saved'})
            await roundTrip(ws)

            assert bus.handlerCount('page.saved') == 1

    @pytest.mark.asyncio
    async def test_unregister(self, bus, client):
        async with client.ws_connect('/eventbus') as ws:
            await ws.send_json({'type': 'register', 'address': 'page.saved'})
            await roundTrip(ws)
            assert bus.handlerCount('page.saved') == 1

            await ws.send_json({'type': 'unregister', 'address': 'page.saved'})
            await roundTrip(ws)
            assert bus.handlerCount('page.saved') == 0

            bus.publish('page.saved', 'unseen')
            await roundTrip(ws)

    @pytest.mark.asyncio
    async def test_close_removes_subscriptions(self, bus, bridge, client):
        async with client.ws_connect('/eventbus') as ws:
            await ws.send_json({'type': 'register', 'address': 'page.saved'})
            await roundTrip(ws)
            assert bus.handlerCount('page.saved') == 1
            assert len(bridge.connections) == 1

        await waitFor(lambda: bus.handlerCount('page.saved') == 0)
        await waitFor(lambda: bridge.connections == {})

        # Publishing after teardown is harmless
        bus.publish('page.saved', {'id': 1})
        await asyncio.sleep(0.05)

    @pytest.mark.asyncio
    async def test_publish_fans_out_to_clients(self, bus, client):
        async with client.ws_connect('/eventbus') as first, client.ws_connect('/eventbus') as second:
            for ws in (first, second):
                await ws.send_json({'type': 'register', 'address': 'page.saved'})
                await roundTrip(ws)

            bus.publish('page.saved', {'id': 7, 'client': None})

            for ws in (first, second):
                frame = await ws.receive_json(timeout=2.0)
                assert frame['body'] == {'id': 7, 'client': None}


class TestTeardown:

    @pytest.mark.asyncio
    async def test_close_all_settles_requests_in_flight(self, bus, bridge, client):
        started = asyncio.Event()

        async def stalled(message):
            started.set()
            await asyncio.Event().wait()

        bus.consumer('in.relay', stalled)

        async with client.ws_connect('/eventbus') as ws:
            await ws.send_json({'type': 'send', 'address': 'in.relay', 'body': {}, 'replyAddress': 'r9'})
            await asyncio.wait_for(started.wait(), timeout=2.0)
            conn = next(iter(bridge.connections.values()))
            inFlight = list(conn.pendingRequests)
            assert len(inFlight) == 1

            await bridge.closeAll()

            assert all(task.done() for task in inFlight)
            assert conn.pendingRequests == set()
            assert bridge.connections == {}
