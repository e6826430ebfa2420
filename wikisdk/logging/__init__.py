"""
wikisdk.logging - hierarchical logger with automatic name detection.

API:
    from wikisdk.logging import getLogger

    class PageService:
        def __init__(self, store):
            self.log = getLogger()  # Auto: 'wiki.core.pageService.PageService'

        async def createPage(self, name, content):
            self.log.info("[PageService] Creating page", pageName=name)

    # Global configuration (once at app startup)
    from wikisdk.logging import configureLogging
    configureLogging(logDir='logs', level='DEBUG')
"""

from .logger import getLogger, configureLogging, StructuredFormatter

__all__ = [
    'getLogger',
    'configureLogging',
    'StructuredFormatter'
]
