"""
Page Service bus contract.

Requests go to the service address (config wikidb.queue) with the
operation named in the 'action' header and its arguments in the body:

    headers: {'action': 'savePage'}
    body:    {'id': 3, 'content': '# Title'}

Replies carry the operation result (None for writes). Failures carry a
FailureCode and a message.
"""

from enum import Enum, IntEnum
from typing import Optional

from wikisdk.bus import ReplyFailure


ACTION_HEADER = 'action'


class Action(str, Enum):
    """Page Service operations"""
    FETCH_ALL_PAGES = "fetchAllPages"
    FETCH_ALL_PAGES_DATA = "fetchAllPagesData"
    FETCH_PAGE = "fetchPage"
    FETCH_PAGE_BY_ID = "fetchPageById"
    CREATE_PAGE = "createPage"
    SAVE_PAGE = "savePage"
    DELETE_PAGE = "deletePage"


class FailureCode(IntEnum):
    """Failure codes carried by Page Service failure replies"""
    BAD_ARGUMENT = 400
    UNKNOWN_ACTION = 404
    STORE_FAILURE = 500
    NOT_READY = 503


class ServiceException(Exception):
    """A Page Service call failed (recipient failure, timeout or no handler)"""

    def __init__(self, failureCode: int, message: str,
                 failureType: Optional[ReplyFailure] = ReplyFailure.RECIPIENT_FAILURE):
        super().__init__(message)
        self.failureCode = failureCode
        self.message = message
        self.failureType = failureType

    def __repr__(self):
        failureType = self.failureType.value if self.failureType else None
        return f"ServiceException({self.failureCode}, {self.message!r}, {failureType})"
