"""Progress persistence: the StorageInterface contract and its SQLite store."""

from .interface import StorageInterface
from .state_store import StateStore

__all__ = ["StorageInterface", "StateStore"]
