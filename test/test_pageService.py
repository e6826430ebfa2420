"""
Page Service Tests

Page CRUD driven through PageServiceClient over a real bus, against a
temporary sqlite file per test.

Architecture Invariants:
- Not-found is a normal reply, never a failure
- Store failures come back with STORE_FAILURE and the store's message
- Known weak contract: savePage/deletePage on a missing id report success

Run: python -m pytest test/test_pageService.py -v
"""

import shutil
import sys
import tempfile
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from wiki.core.contracts import ACTION_HEADER, FailureCode, ServiceException
from wiki.core.ipc import PageServiceHandler
from wiki.core.pageService import PageService
from wiki.core.queries import DEFAULT_SQL_QUERIES, SqlQuery
from wiki.core.storeEngine import StoreEngine
from wiki.server.ipc import PageServiceClient
from wikisdk.bus import EventBus, ReplyException, ReplyFailure


@pytest.fixture
def tempDb():
    """Temporary sqlite database URL"""
    dirPath = Path(tempfile.mkdtemp())
    yield f"sqlite:///{dirPath / 'wiki.db'}"
    shutil.rmtree(dirPath, ignore_errors=True)


@pytest.fixture
async def bus():
    bus = EventBus('test')
    yield bus
    await bus.close()


@pytest.fixture
async def store(tempDb):
    store = StoreEngine(tempDb, maxPoolSize=4, acquireTimeout=2.0)
    await store.start()
    yield store
    await store.close()


@pytest.fixture
async def client(bus, store):
    handler = PageServiceHandler(bus, PageService(store))
    await handler.start()
    yield PageServiceClient(bus, timeout=5.0)
    await handler.stop()


class TestPageQueries:

    @pytest.mark.asyncio
    async def test_created_page_listed(self, client):
        await client.createPage('Sample', '# A page')

        assert await client.fetchAllPages() == ['Sample']

    @pytest.mark.asyncio
    async def test_names_sorted_case_sensitive(self, client):
        for name in ('beta', 'Alpha', 'alpha', 'Beta'):
            await client.createPage(name, 'x')

        assert await client.fetchAllPages() == ['Alpha', 'Beta', 'alpha', 'beta']

    @pytest.mark.asyncio
    async def test_pages_data_has_no_content(self, client):
        await client.createPage('One', 'first')
        await client.createPage('Two', 'second')

        data = await client.fetchAllPagesData()

        assert sorted(data, key=lambda p: p['id']) == [{'id': 1, 'name': 'One'}, {'id': 2, 'name': 'Two'}]

    @pytest.mark.asyncio
    async def test_fetch_by_id_missing_is_not_found(self, client):
        await client.createPage('Exists', 'x')

        for pageId in (0, 2, 999, -5):
            assert await client.fetchPageById(pageId) == {'found': False}

    @pytest.mark.asyncio
    async def test_fetch_by_id_beyond_integer_range_is_not_found(self, client):
        await client.createPage('Exists', 'x')

        for pageId in (2 ** 63, -2 ** 63 - 1, 10 ** 30):
            assert await client.fetchPageById(pageId) == {'found': False}

        # Writes on such ids match nothing, like any other missing id
        assert await client.savePage(2 ** 63, 'ghost') is None
        assert await client.deletePage(2 ** 63) is None
        assert await client.fetchAllPages() == ['Exists']

    @pytest.mark.asyncio
    async def test_fetch_by_id(self, client):
        await client.createPage('Home', '# Welcome')

        page = await client.fetchPageById(1)

        assert page == {'found': True, 'id': 1, 'name': 'Home', 'content': '# Welcome'}

    @pytest.mark.asyncio
    async def test_fetch_by_name(self, client):
        await client.createPage('Home', '# Welcome')

        assert await client.fetchPage('Home') == {'found': True, 'id': 1, 'rawContent': '# Welcome'}
        assert await client.fetchPage('home') == {'found': False}

    @pytest.mark.asyncio
    async def test_fetch_by_name_duplicates_lowest_id(self, client):
        await client.createPage('Twin', 'older')
        await client.createPage('Twin', 'newer')

        page = await client.fetchPage('Twin')

        assert page['id'] == 1
        assert page['rawContent'] == 'older'

    @pytest.mark.asyncio
    async def test_unicode_content(self, client):
        content = "# Überschrift\n\n日本語 ✓"
        await client.createPage('Ünïcode', content)

        page = await client.fetchPageById(1)
        assert page['name'] == 'Ünïcode'
        assert page['content'] == content


class TestPageWrites:

    @pytest.mark.asyncio
    async def test_save_existing(self, client):
        await client.createPage('Sample', '# A page')

        await client.savePage(1, 'Oh Yeah!')

        assert (await client.fetchPageById(1))['content'] == 'Oh Yeah!'

    @pytest.mark.asyncio
    async def test_save_missing_id_reports_success_known_weak_contract(self, client):
        # Documented limitation: no error and no row created
        assert await client.savePage(42, 'ghost') is None

        assert await client.fetchPageById(42) == {'found': False}
        assert await client.fetchAllPages() == []

    @pytest.mark.asyncio
    async def test_delete_twice_known_weak_contract(self, client):
        await client.createPage('Doomed', 'x')

        await client.deletePage(1)
        assert await client.fetchAllPages() == []

        # Second delete touches nothing yet still succeeds
        assert await client.deletePage(1) is None

    @pytest.mark.asyncio
    async def test_full_cycle(self, client):
        await client.createPage('Sample', '# A page')
        pages = await client.fetchAllPagesData()
        assert [p['name'] for p in pages] == ['Sample']
        pageId = pages[0]['id']

        assert (await client.fetchPageById(pageId))['content'] == '# A page'
        await client.savePage(pageId, 'Oh Yeah!')
        assert (await client.fetchPageById(pageId))['content'] == 'Oh Yeah!'
        await client.deletePage(pageId)

        assert await client.fetchAllPagesData() == []


class TestFailures:

    @pytest.mark.asyncio
    async def test_unknown_action(self, bus, client):
        with pytest.raises(ReplyException) as excInfo:
            await bus.request('wikidb.queue', {}, headers={ACTION_HEADER: 'dropAllPages'}, timeout=2.0)

        assert excInfo.value.failureCode == FailureCode.UNKNOWN_ACTION
        assert excInfo.value.failureType == ReplyFailure.RECIPIENT_FAILURE

    @pytest.mark.asyncio
    async def test_missing_action_header(self, bus, client):
        with pytest.raises(ReplyException) as excInfo:
            await bus.request('wikidb.queue', {}, timeout=2.0)

        assert excInfo.value.failureCode == FailureCode.UNKNOWN_ACTION

    @pytest.mark.asyncio
    @pytest.mark.parametrize('body', [{'id': 'one'}, {'id': True}, {}, ['id', 1]])
    async def test_bad_argument(self, bus, client, body):
        with pytest.raises(ReplyException) as excInfo:
            await bus.request('wikidb.queue', body, headers={ACTION_HEADER: 'fetchPageById'}, timeout=2.0)

        assert excInfo.value.failureCode == FailureCode.BAD_ARGUMENT

    @pytest.mark.asyncio
    async def test_store_not_ready(self, bus, tempDb):
        store = StoreEngine(tempDb, maxPoolSize=2)
        handler = PageServiceHandler(bus, PageService(store), 'unready.queue')
        await handler.start()
        try:
            with pytest.raises(ServiceException) as excInfo:
                await PageServiceClient(bus, 'unready.queue', timeout=2.0).fetchAllPages()
            assert excInfo.value.failureCode == FailureCode.NOT_READY
        finally:
            await handler.stop()
            await store.close()

    @pytest.mark.asyncio
    async def test_store_failure_message_verbatim(self, bus, tempDb):
        queries = dict(DEFAULT_SQL_QUERIES)
        queries[SqlQuery.ALL_PAGES] = "select name from Missing"
        store = StoreEngine(tempDb, maxPoolSize=2, sqlQueries=queries)
        await store.start()
        handler = PageServiceHandler(bus, PageService(store), 'failing.queue')
        await handler.start()
        try:
            with pytest.raises(ServiceException) as excInfo:
                await PageServiceClient(bus, 'failing.queue', timeout=2.0).fetchAllPages()
            assert excInfo.value.failureCode == FailureCode.STORE_FAILURE
            assert 'no such table: Missing' in excInfo.value.message
        finally:
            await handler.stop()
            await store.close()

    @pytest.mark.asyncio
    async def test_no_service_registered(self, bus):
        with pytest.raises(ServiceException) as excInfo:
            await PageServiceClient(bus, 'absent.queue', timeout=1.0).fetchAllPages()

        assert excInfo.value.failureType == ReplyFailure.NO_HANDLERS

    @pytest.mark.asyncio
    async def test_caller_timeout(self, bus):
        async def neverReplies(message):
            pass

        bus.consumer('slow.queue', neverReplies)
        with pytest.raises(ServiceException) as excInfo:
            await PageServiceClient(bus, 'slow.queue', timeout=0.05).fetchPageById(1)

        assert excInfo.value.failureType == ReplyFailure.TIMEOUT

    @pytest.mark.asyncio
    async def test_second_registration_rejected(self, bus, store, client):
        handler = PageServiceHandler(bus, PageService(store))
        await handler.start()
        try:
            with pytest.raises(RuntimeError):
                await handler.start()
        finally:
            await handler.stop()
