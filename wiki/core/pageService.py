"""
Page Service - wiki page CRUD on top of the Store Engine.

Response shapes:
    fetchAllPages()      -> ['Alpha', 'Beta', 'alpha']          (case-sensitive sort)
    fetchAllPagesData()  -> [{'id': 1, 'name': 'Beta'}, ...]     (store order)
    fetchPage(name)      -> {'found': False} | {'found': True, 'id', 'rawContent'}
    fetchPageById(id)    -> {'found': False} | {'found': True, 'id', 'name', 'content'}
    createPage / savePage / deletePage -> None

Known weak contract: savePage/deletePage on a missing id succeed without
touching any row. Ids outside the sqlite INTEGER range can never be stored
and are treated as missing without a query.
"""

from typing import Any, Dict, List

from wiki.core.queries import SqlQuery
from wiki.core.storeEngine import StoreEngine
from wikisdk.logging import getLogger


# sqlite INTEGER PRIMARY KEY range
MIN_PAGE_ID = -2 ** 63
MAX_PAGE_ID = 2 ** 63 - 1


def isStorableId(pageId: int) -> bool:
    return MIN_PAGE_ID <= pageId <= MAX_PAGE_ID


class PageService:
    """Page CRUD. Store failures propagate as StoreError."""

    def __init__(self, store: StoreEngine):
        self.store = store
        self.log = getLogger()

    async def fetchAllPages(self) -> List[str]:
        rows = await self.store.query(SqlQuery.ALL_PAGES)
        return sorted(row['name'] for row in rows)

    async def fetchAllPagesData(self) -> List[Dict[str, Any]]:
        rows = await self.store.query(SqlQuery.ALL_PAGES_DATA)
        return [{'id': row['id'], 'name': row['name']} for row in rows]

    async def fetchPage(self, name: str) -> Dict[str, Any]:
        """Lowest id wins when several pages share the name"""
        row = await self.store.querySingle(SqlQuery.GET_PAGE, (name,))
        if row is None:
            return {'found': False}
        return {'found': True, 'id': row['id'], 'rawContent': row['content']}

    async def fetchPageById(self, pageId: int) -> Dict[str, Any]:
        if not isStorableId(pageId):
            return {'found': False}
        row = await self.store.querySingle(SqlQuery.GET_PAGE_BY_ID, (pageId,))
        if row is None:
            return {'found': False}
        return {'found': True, 'id': row['id'], 'name': row['name'], 'content': row['content']}

    async def createPage(self, name: str, content: str) -> None:
        await self.store.execute(SqlQuery.CREATE_PAGE, (name, content))
        self.log.info("[PageService] Page created", pageName=name)

    async def savePage(self, pageId: int, content: str) -> None:
        updated = 0
        if isStorableId(pageId):
            updated = await self.store.execute(SqlQuery.SAVE_PAGE, (content, pageId))
        if updated == 0:
            self.log.debug("[PageService] Save matched no page", id=pageId)

    async def deletePage(self, pageId: int) -> None:
        deleted = 0
        if isStorableId(pageId):
            deleted = await self.store.execute(SqlQuery.DELETE_PAGE, (pageId,))
        if deleted == 0:
            self.log.debug("[PageService] Delete matched no page", id=pageId)
        else:
            self.log.info("[PageService] Page deleted", id=pageId)
