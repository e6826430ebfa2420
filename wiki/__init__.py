"""
Wiki - page store behind an HTTP API and an event-bus bridge.

Components talk over a wikisdk.bus.EventBus:
- wiki.core: store engine and Page Service
- wiki.server: API gateways and the WebSocket bridge
- wiki.main: composition and CLI
"""
