"""
Bus message and reply failure types.

A Message travels to one address. When it carries a replyAddress the
receiver owes exactly one reply() or one fail(); the bus routes it back to
the waiting requester only.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ReplyFailure(str, Enum):
    """Why a request produced no reply body"""
    TIMEOUT = "TIMEOUT"
    NO_HANDLERS = "NO_HANDLERS"
    RECIPIENT_FAILURE = "RECIPIENT_FAILURE"
    ERROR = "ERROR"


class ReplyException(Exception):
    """Raised to a requester whose request failed"""

    def __init__(self, failureType: ReplyFailure, failureCode: int = -1, message: str = ""):
        super().__init__(message)
        self.failureType = failureType
        self.failureCode = failureCode
        self.message = message

    def toDict(self) -> Dict[str, Any]:
        return {
            'failureType': self.failureType.value,
            'failureCode': self.failureCode,
            'message': self.message
        }

    def __repr__(self):
        return f"ReplyException({self.failureType.value}, {self.failureCode}, {self.message!r})"


class Message:
    """
    A single delivery on the bus.

    Attributes:
        address: Destination address
        body: Payload (any Python value)
        headers: String headers, e.g. {'action': 'fetchPageById'}
        replyAddress: Per-request token, None for send/publish
        isSend: False when delivered by publish()
    """

    def __init__(self, address: str, body: Any, headers: Optional[Dict[str, str]] = None,
                 replyAddress: Optional[str] = None, bus=None, isSend: bool = True):
        self.address = address
        self.body = body
        self.headers: Dict[str, str] = dict(headers or {})
        self.replyAddress = replyAddress
        self.isSend = isSend
        self._bus = bus
        self._replied = False

    @property
    def replied(self) -> bool:
        return self._replied

    def reply(self, body: Any = None, headers: Optional[Dict[str, str]] = None):
        """Reply to the sender. No-op when the sender expects no reply."""
        if self.replyAddress is None:
            return
        self._markReplied()
        replyMessage = Message(self.replyAddress, body, headers, bus=self._bus)
        self._bus._deliverReply(self.replyAddress, replyMessage, None)

    def fail(self, failureCode: int, message: str):
        """Fail the request; the requester gets a RECIPIENT_FAILURE ReplyException."""
        self._failWith(ReplyFailure.RECIPIENT_FAILURE, failureCode, message)

    def _failWith(self, failureType: ReplyFailure, failureCode: int, message: str):
        if self.replyAddress is None:
            return
        self._markReplied()
        self._bus._deliverReply(self.replyAddress, None,
                                ReplyException(failureType, failureCode, message))

    def _markReplied(self):
        if self._replied:
            raise RuntimeError(f"Message to '{self.address}' was already replied to")
        self._replied = True

    def __repr__(self):
        kind = 'send' if self.isSend else 'publish'
        return f"Message({kind} {self.address!r}, replyAddress={self.replyAddress!r})"
