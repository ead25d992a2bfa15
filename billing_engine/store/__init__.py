"""Record store contract and implementations."""
from .base import RawRecord, RecordStore, StoreError
from .memory import InMemoryRecordStore
from .postgres import PostgresRecordStore, get_connection

__all__ = [
    "RawRecord",
    "RecordStore",
    "StoreError",
    "InMemoryRecordStore",
    "PostgresRecordStore",
    "get_connection",
]
