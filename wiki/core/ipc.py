"""
Core-side bus binding for the Page Service.

Registers one consumer at the service address, dispatches on the 'action'
header, replies with the result or fails with a FailureCode.

Architecture invariants:
- A single handler owns the store; all callers reach it over the bus
- The handler drains its queue in order, so it is the serialization point
- Store failures go back verbatim (message) with STORE_FAILURE
- Not-found is a normal reply ({'found': False}), never a failure
"""

from typing import Any, Dict, Optional

from wiki.config import DEFAULT_WIKIDB_QUEUE
from wiki.core.contracts import ACTION_HEADER, Action, FailureCode
from wiki.core.errors import StoreError, StoreNotReadyError
from wiki.core.pageService import PageService
from wikisdk.bus import ConsumerHandle, EventBus, Message
from wikisdk.logging import getLogger


class InvalidArgument(ValueError):
    """Request body is missing an argument or has the wrong type"""
    pass


def _requireInt(args: Dict[str, Any], key: str) -> int:
    value = args.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgument(f"'{key}' must be an integer")
    return value


def _requireStr(args: Dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str):
        raise InvalidArgument(f"'{key}' must be a string")
    return value


class PageServiceHandler:
    """
    Page Service bus handler.

    Usage:
        handler = PageServiceHandler(bus, PageService(engine), 'wikidb.queue')
        await handler.start()
    """

    def __init__(self, bus: EventBus, service: PageService, address: str = DEFAULT_WIKIDB_QUEUE):
        self.bus = bus
        self.service = service
        self.address = address
        self.log = getLogger()
        self._handle: Optional[ConsumerHandle] = None

    async def start(self):
        if self._handle is not None:
            raise RuntimeError(f"Page Service already registered at {self.address}")
        self._handle = self.bus.consumer(self.address, self._handleMessage)
        self.log.info(f"[PageService] Registered at {self.address}")

    async def stop(self):
        if self._handle is not None:
            await self._handle.unregister()
            self._handle = None
            self.log.info(f"[PageService] Unregistered from {self.address}")

    async def _handleMessage(self, message: Message):
        actionName = message.headers.get(ACTION_HEADER)
        try:
            action = Action(actionName)
        except ValueError:
            self.log.warning(f"[PageService] Unknown action: {actionName}")
            message.fail(FailureCode.UNKNOWN_ACTION, f"Unknown action: {actionName}")
            return

        args = message.body if message.body is not None else {}
        try:
            if not isinstance(args, dict):
                raise InvalidArgument("Request body must be an object")
            result = await self._dispatch(action, args)
        except InvalidArgument as e:
            self.log.warning(f"[PageService] Bad {action.value} request: {e}")
            message.fail(FailureCode.BAD_ARGUMENT, str(e))
        except StoreNotReadyError as e:
            message.fail(FailureCode.NOT_READY, str(e))
        except StoreError as e:
            message.fail(FailureCode.STORE_FAILURE, str(e))
        else:
            message.reply(result)

    async def _dispatch(self, action: Action, args: Dict[str, Any]) -> Any:
        if action == Action.FETCH_ALL_PAGES:
            return await self.service.fetchAllPages()
        elif action == Action.FETCH_ALL_PAGES_DATA:
            return await self.service.fetchAllPagesData()
        elif action == Action.FETCH_PAGE:
            return await self.service.fetchPage(_requireStr(args, 'name'))
        elif action == Action.FETCH_PAGE_BY_ID:
            return await self.service.fetchPageById(_requireInt(args, 'id'))
        elif action == Action.CREATE_PAGE:
            return await self.service.createPage(_requireStr(args, 'name'), _requireStr(args, 'content'))
        elif action == Action.SAVE_PAGE:
            return await self.service.savePage(_requireInt(args, 'id'), _requireStr(args, 'content'))
        elif action == Action.DELETE_PAGE:
            return await self.service.deletePage(_requireInt(args, 'id'))
        raise InvalidArgument(f"Unsupported action: {action.value}")
