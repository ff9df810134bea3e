from consult_relay.store.base import DurableStore
from consult_relay.store.sqlite_store import SqliteRecordStore

__all__ = [
    "DurableStore",
    "SqliteRecordStore",
]
