"""
wiki.core - page storage side of the wiki.

- storeEngine: pooled sqlite access, readiness, statement catalog
- pageService: page CRUD and response shapes
- ipc: Page Service registration on the bus
"""
