"""mandate_rail.store

Record store contract and its implementations.
"""

from .base import Collection, Collections, DuplicateRecordError, Record, RecordStore, WriteConflictError
from .factory import FallbackStore, is_network_error, open_store
from .local import MemoryStore, OfflineStore
from .remote import RemoteStore

__all__ = [
    "Collection",
    "Collections",
    "DuplicateRecordError",
    "FallbackStore",
    "MemoryStore",
    "OfflineStore",
    "Record",
    "RecordStore",
    "RemoteStore",
    "WriteConflictError",
    "is_network_error",
    "open_store",
]
