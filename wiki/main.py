"""
Wiki main entry point.

Composes the store engine, the Page Service handler and N API gateways on
one in-process event bus.

Startup order:
- Store engine (schema prepared, readiness signalled)
- Page Service handler registered at wikidb.queue
- http.instances API gateways sharing the listen port

Usage:
    python -m wiki.main [--config path/to/config.json]
"""

import asyncio
import argparse
import signal
import sys
from typing import Any, Dict, List, Optional

from wiki.config import CONFIG_HTTP, CONFIG_LOGGING, CONFIG_WIKIDB, ConfigError, loadConfig
from wiki.core.ipc import PageServiceHandler
from wiki.core.pageService import PageService
from wiki.core.storeEngine import StoreEngine
from wiki.server.server import ApiGateway
from wikisdk.bus import EventBus
from wikisdk.logging import getLogger, configureLogging


class WikiApp:
    """
    Composition root.

    Usage:
        app = WikiApp(loadConfig('wiki/config.json'))
        await app.start()
        ...
        await app.stop()
    """

    def __init__(self, config: Dict[str, Any], bus: Optional[EventBus] = None):
        self.config = config
        self._ownsBus = bus is None
        self.bus = bus if bus is not None else EventBus('wiki')
        self.log = getLogger()

        self.store: Optional[StoreEngine] = None
        self.pageHandler: Optional[PageServiceHandler] = None
        self.gateways: List[ApiGateway] = []

    async def start(self):
        """Start all components in order; on failure stop what was started and re-raise"""
        self.log.info("[Main] Starting...")
        try:
            await self._startStore()
            await self._startGateways()
        except Exception as e:
            self.log.error(f"[Main] Startup failed: {e}")
            await self.stop()
            raise
        self.log.info(f"[Main] Wiki running with {len(self.gateways)} gateway(s)")

    async def _startStore(self):
        dbConfig = self.config[CONFIG_WIKIDB]
        self.store = StoreEngine.fromConfig(dbConfig)
        await self.store.start()

        self.pageHandler = PageServiceHandler(self.bus, PageService(self.store), dbConfig['queue'])
        await self.pageHandler.start()

    async def _startGateways(self):
        instances = self.config[CONFIG_HTTP]['instances']
        for index in range(instances):
            gateway = ApiGateway(self.bus, self.config, instanceId=index, reusePort=instances > 1)
            await gateway.start()
            self.gateways.append(gateway)

    async def stop(self):
        """Stop in reverse startup order"""
        self.log.info("[Main] Stopping...")

        for gateway in reversed(self.gateways):
            await gateway.stop()
        self.gateways.clear()

        if self.pageHandler is not None:
            await self.pageHandler.stop()
            self.pageHandler = None

        if self.store is not None:
            await self.store.close()
            self.store = None

        if self._ownsBus and not self.bus.closed:
            await self.bus.close()

        self.log.info("[Main] Stopped")


async def runWiki(config: Dict[str, Any]):
    """Run until SIGINT/SIGTERM"""
    log = getLogger()
    app = WikiApp(config)
    stopEvent = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stopEvent.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt ends asyncio.run instead
            pass

    await app.start()
    try:
        await stopEvent.wait()
        log.info("[Main] Shutdown signal received")
    finally:
        await app.stop()


def main():
    """CLI entry point"""
    parser = argparse.ArgumentParser(description='Wiki - page store with HTTP API and event-bus bridge')
    parser.add_argument('--config', default=None, help='Path to config file (defaults when omitted)')
    args = parser.parse_args()

    try:
        config = loadConfig(args.config)
    except ConfigError as e:
        configureLogging()
        getLogger().error(f"[Main] {e}")
        sys.exit(1)

    loggingConfig = config[CONFIG_LOGGING]
    configureLogging(
        logDir=loggingConfig.get('logDir'),
        console=loggingConfig.get('console', True),
        level=loggingConfig.get('level', 'INFO')
    )
    log = getLogger()
    log.info("=" * 60)
    log.info("Wiki")
    log.info("=" * 60)
    log.info(f"Config: {args.config or '(defaults)'}")

    try:
        asyncio.run(runWiki(config))
    except KeyboardInterrupt:
        log.info("[Main] Shutdown signal received")
    except Exception as e:
        log.error(f"[Main] Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == '__main__':
    main()
