"""Synchronization subsystem package for Todo Sync."""

from .models import (
    Ack,
    ChangeOperation,
    ChangeStatus,
    ConflictStrategy,
    ConflictWinner,
    PendingChange,
    RejectReason,
    ResultStatus,
    SyncConflict,
    SyncResult,
    SyncState,
    SyncStatus,
)
from .errors import ConflictUnresolved, StorageError, SyncError, TransportError
from .local_store import LocalStore
from .change_queue import ChangeQueue
from .conflicts import ConflictResolver, Resolution, ResolutionAction
from .gateway import InMemoryBackend, InMemoryRemoteGateway, RemoteGateway
from .supabase_gateway import SupabaseGateway
from .connectivity import ConnectivityMonitor
from .retry import Backoff
from .settings import SyncSettings
from .engine import SyncEngine

__all__ = [
    "Ack",
    "ChangeOperation",
    "ChangeStatus",
    "ConflictStrategy",
    "ConflictWinner",
    "PendingChange",
    "RejectReason",
    "ResultStatus",
    "SyncConflict",
    "SyncResult",
    "SyncState",
    "SyncStatus",
    "ConflictUnresolved",
    "StorageError",
    "SyncError",
    "TransportError",
    "LocalStore",
    "ChangeQueue",
    "ConflictResolver",
    "Resolution",
    "ResolutionAction",
    "InMemoryBackend",
    "InMemoryRemoteGateway",
    "RemoteGateway",
    "SupabaseGateway",
    "ConnectivityMonitor",
    "Backoff",
    "SyncSettings",
    "SyncEngine",
]
