"""Store failure taxonomy. Nothing here is retried automatically."""


class StoreError(Exception):
    """Opaque store failure; str(e) is the descriptive cause"""
    pass


class PoolTimeoutError(StoreError):
    """No pooled connection became free in time"""
    pass


class StatementError(StoreError):
    """Statement execution failed (constraint, SQL, connectivity)"""
    pass


class MappingError(StoreError):
    """Unknown statement id or undecodable result"""
    pass


class StoreNotReadyError(Exception):
    """Operation attempted before schema preparation finished, or after close"""
    pass
