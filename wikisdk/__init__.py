"""
wikisdk - reusable building blocks for the wiki service.

- wikisdk.logging: structured hierarchical logging
- wikisdk.bus: in-process addressable message bus (request/reply, publish/subscribe)
"""
