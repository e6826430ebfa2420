"""
Wiki API gateway - HTTP edge handler.

Serves the JSON page API and the event-bus bridge endpoint. Every page
operation is forwarded to the Page Service over the bus.

Architecture invariants:
- Gateway is stateless; the store is reached only through PageServiceClient
- Several gateways may run side by side on one bus (shared port)
- Page saves are announced on page.saved after the write is acknowledged
- Responses are JSON envelopes with a 'success' flag
"""

import orjson
from aiohttp import web
from typing import Any, Dict, Optional, Tuple

from wiki.config import (
    CONFIG_BRIDGE, CONFIG_HTTP, CONFIG_WIKIDB, MARKDOWN_ADDRESS, PAGE_SAVED_ADDRESS
)
from wiki.core.contracts import ServiceException
from wiki.server.bridge import BridgeOptions, EventBusBridge
from wiki.server.ipc import PageServiceClient
from wiki.server.rendering import handleMarkdownMessage, renderMarkdown
from wikisdk.bus import ConsumerHandle, EventBus
from wikisdk.logging import getLogger


BAD_PAYLOAD = "Bad request payload"
INVALID_PAGE_ID = "Invalid page id"


def _dumps(payload: Any) -> str:
    return orjson.dumps(payload).decode()


def _json(payload: Dict[str, Any], status: int = 200) -> web.Response:
    return web.json_response(payload, status=status, dumps=_dumps)


def _failure(message: str, status: int) -> web.Response:
    return _json({'success': False, 'error': message}, status=status)


class ApiGateway:
    """
    One HTTP listener instance.

    Usage:
        gateway = ApiGateway(bus, config, instanceId=0)
        await gateway.start()
        ...
        await gateway.stop()
    """

    def __init__(self, bus: EventBus, config: Dict[str, Any], instanceId: int = 0, reusePort: bool = False):
        self.bus = bus
        self.config = config
        self.instanceId = instanceId
        self.reusePort = reusePort
        self.log = getLogger()

        httpConfig = config[CONFIG_HTTP]
        bridgeConfig = config[CONFIG_BRIDGE]
        self.host = httpConfig['host']
        self.port = httpConfig['port']
        self.bridgePath = bridgeConfig['path']

        self.pageService = PageServiceClient(
            bus, config[CONFIG_WIKIDB]['queue'], timeout=httpConfig['requestTimeout']
        )
        self.bridge = EventBusBridge(
            bus, BridgeOptions.fromConfig(bridgeConfig), replyTimeout=bridgeConfig['replyTimeout']
        )

        self._markdownHandle: Optional[ConsumerHandle] = None

        # aiohttp app
        self.app = web.Application()
        self.app.on_startup.append(self._onStartup)
        self.app.on_shutdown.append(self._onShutdown)
        self.app.on_cleanup.append(self._onCleanup)
        self._setupRoutes()

        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def _setupRoutes(self):
        """Setup aiohttp routes"""
        self.app.router.add_get('/api/pages', self.handleListPages)
        self.app.router.add_post('/api/pages', self.handleCreatePage)
        self.app.router.add_get('/api/pages/{id}', self.handleGetPage)
        self.app.router.add_put('/api/pages/{id}', self.handleUpdatePage)
        self.app.router.add_delete('/api/pages/{id}', self.handleDeletePage)
        self.app.router.add_get('/health', self.handleHealth)
        self.app.router.add_get(self.bridgePath, self.bridge.handleWebSocket)

    # ===== Lifecycle =====

    async def _onStartup(self, app: web.Application):
        # Each gateway contributes one markdown renderer; the bus round-robins between them
        self._markdownHandle = self.bus.consumer(MARKDOWN_ADDRESS, handleMarkdownMessage)

    async def _onShutdown(self, app: web.Application):
        await self.bridge.closeAll()

    async def _onCleanup(self, app: web.Application):
        if self._markdownHandle is not None:
            await self._markdownHandle.unregister()
            self._markdownHandle = None

    async def start(self):
        """Start the HTTP listener"""
        self.log.info(f"[Gateway {self.instanceId}] Starting...")

        self._runner = web.AppRunner(self.app)
        await self._runner.setup()

        try:
            self._site = web.TCPSite(self._runner, self.host, self.port, reuse_port=self.reusePort or None)
            await self._site.start()
        except Exception:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            raise

        self.log.info(f"[Gateway {self.instanceId}] Listening on {self.host}:{self.port}")

    async def stop(self):
        """Stop the HTTP listener"""
        if self._runner is None:
            return
        self.log.info(f"[Gateway {self.instanceId}] Stopping...")
        await self._runner.cleanup()
        self._runner = None
        self._site = None
        self.log.info(f"[Gateway {self.instanceId}] Stopped")

    # ===== HTTP =====

    async def handleHealth(self, request: web.Request) -> web.Response:
        """Health check endpoint"""
        return web.json_response({'status': 'ok'})

    async def handleListPages(self, request: web.Request) -> web.Response:
        try:
            pages = await self.pageService.fetchAllPagesData()
        except ServiceException as e:
            return self._serviceFailure('list pages', e)
        return _json({
            'success': True,
            'pages': [{'id': page['id'], 'name': page['name']} for page in pages]
        })

    async def handleGetPage(self, request: web.Request) -> web.Response:
        pageId = self._pageId(request)
        if pageId is None:
            return _failure(INVALID_PAGE_ID, 400)

        try:
            page = await self.pageService.fetchPageById(pageId)
        except ServiceException as e:
            return self._serviceFailure('fetch page', e)

        if not page.get('found'):
            return _failure(f"There is no page with ID {pageId}", 404)

        content = page['content']
        return _json({
            'success': True,
            'page': {
                'id': page['id'],
                'name': page['name'],
                'markdown': content,
                'html': renderMarkdown(content)
            }
        })

    async def handleCreatePage(self, request: web.Request) -> web.Response:
        document, error = await self._readDocument(request, ('name', 'markdown'))
        if error is not None:
            return error

        try:
            await self.pageService.createPage(document['name'], document['markdown'])
        except ServiceException as e:
            return self._serviceFailure('create page', e)
        return _json({'success': True}, status=201)

    async def handleUpdatePage(self, request: web.Request) -> web.Response:
        pageId = self._pageId(request)
        if pageId is None:
            return _failure(INVALID_PAGE_ID, 400)

        document, error = await self._readDocument(request, ('markdown',))
        if error is not None:
            return error

        try:
            await self.pageService.savePage(pageId, document['markdown'])
        except ServiceException as e:
            return self._serviceFailure('save page', e)

        self.bus.publish(PAGE_SAVED_ADDRESS, {'id': pageId, 'client': document.get('client')})
        return _json({'success': True})

    async def handleDeletePage(self, request: web.Request) -> web.Response:
        pageId = self._pageId(request)
        if pageId is None:
            return _failure(INVALID_PAGE_ID, 400)

        try:
            await self.pageService.deletePage(pageId)
        except ServiceException as e:
            return self._serviceFailure('delete page', e)
        return _json({'success': True})

    # ===== Helpers =====

    def _pageId(self, request: web.Request) -> Optional[int]:
        try:
            return int(request.match_info['id'])
        except ValueError:
            return None

    async def _readDocument(self, request: web.Request,
                            required: Tuple[str, ...]) -> Tuple[Optional[Dict[str, Any]], Optional[web.Response]]:
        """Parse the JSON body and require string fields. Returns (document, errorResponse)."""
        try:
            document = await request.json(loads=orjson.loads)
        except ValueError:
            document = None

        if not isinstance(document, dict) or not all(isinstance(document.get(k), str) for k in required):
            self.log.warning(f"[Gateway {self.instanceId}] Bad page JSON payload from {request.remote}",
                             path=request.path)
            return None, _failure(BAD_PAYLOAD, 400)
        return document, None

    def _serviceFailure(self, operation: str, e: ServiceException) -> web.Response:
        self.log.error(f"[Gateway {self.instanceId}] Could not {operation}: {e.message}",
                       failureCode=int(e.failureCode))
        return _failure(e.message, 500)
