"""
Server-side client for the Page Service.

Holds only a bus handle and the service address; every method is one
request/reply over the bus. Any number of gateways can hold a client while
a single PageServiceHandler owns the store.

Timeouts are enforced here, on the caller side. A call that times out
raises, but the handler still finishes and any write still lands.
"""

from typing import Any, Dict, List

from wiki.config import DEFAULT_WIKIDB_QUEUE
from wiki.core.contracts import ACTION_HEADER, Action, ServiceException
from wikisdk.bus import EventBus, ReplyException
from wikisdk.logging import getLogger


class PageServiceClient:
    """Typed Page Service calls over the bus"""

    def __init__(self, bus: EventBus, address: str = DEFAULT_WIKIDB_QUEUE, timeout: float = 30.0):
        self.bus = bus
        self.address = address
        self.timeout = timeout
        self.log = getLogger()

    async def fetchAllPages(self) -> List[str]:
        return await self._request(Action.FETCH_ALL_PAGES, {})

    async def fetchAllPagesData(self) -> List[Dict[str, Any]]:
        return await self._request(Action.FETCH_ALL_PAGES_DATA, {})

    async def fetchPage(self, name: str) -> Dict[str, Any]:
        return await self._request(Action.FETCH_PAGE, {'name': name})

    async def fetchPageById(self, pageId: int) -> Dict[str, Any]:
        return await self._request(Action.FETCH_PAGE_BY_ID, {'id': pageId})

    async def createPage(self, name: str, content: str) -> None:
        await self._request(Action.CREATE_PAGE, {'name': name, 'content': content})

    async def savePage(self, pageId: int, content: str) -> None:
        await self._request(Action.SAVE_PAGE, {'id': pageId, 'content': content})

    async def deletePage(self, pageId: int) -> None:
        await self._request(Action.DELETE_PAGE, {'id': pageId})

    async def _request(self, action: Action, args: Dict[str, Any]) -> Any:
        try:
            reply = await self.bus.request(
                self.address, args,
                headers={ACTION_HEADER: action.value},
                timeout=self.timeout
            )
        except ReplyException as e:
            self.log.debug(f"[ServiceClient] {action.value} failed: {e.failureType.value} {e.message}")
            raise ServiceException(e.failureCode, e.message, e.failureType) from e
        return reply.body
