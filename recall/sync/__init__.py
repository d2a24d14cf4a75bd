"""
Remote sync.

Components:
- remote: RemoteStore backends (HTTP document store, SQL table) and deck sources
- sync_service: Pushes a deck's progress and reports partial failures
"""

from .remote import (
    DeckSource,
    HttpDeckSource,
    HttpRemoteStore,
    InsertResult,
    RemoteStore,
    SqlRemoteStore,
)
from .sync_service import SyncReport, SyncService

__all__ = [
    "DeckSource",
    "HttpDeckSource",
    "HttpRemoteStore",
    "InsertResult",
    "RemoteStore",
    "SqlRemoteStore",
    "SyncReport",
    "SyncService",
]
