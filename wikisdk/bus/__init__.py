"""wikisdk.bus - in-process addressable message bus.

Public API:
    - EventBus: registration, send, request, publish
    - ConsumerHandle: registration handle (unregister, stats)
    - Message: a delivery; reply()/fail() when it is a request
    - ReplyException / ReplyFailure: request failure types

Usage:
    from wikisdk.bus import EventBus

    bus = EventBus()

    async def echo(message):
        message.reply(message.body)

    handle = bus.consumer('echo', echo)
    reply = await bus.request('echo', 'hello', timeout=5.0)
    assert reply.body == 'hello'
"""

from .message import Message, ReplyException, ReplyFailure
from .consumer import ConsumerHandle
from .eventBus import EventBus

__all__ = [
    'EventBus',
    'ConsumerHandle',
    'Message',
    'ReplyException',
    'ReplyFailure'
]
