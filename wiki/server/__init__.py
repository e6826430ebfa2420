"""
wiki.server - HTTP edge of the wiki.

- server: API gateway (REST routes, markdown renderer, bridge mount)
- bridge: WebSocket bridge for allow-listed bus addresses
- ipc: Page Service client over the bus
"""
