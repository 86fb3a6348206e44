"""Error taxonomy for the synchronization subsystem."""


class SyncError(Exception):
    """Base exception for sync operations."""
    pass


class StorageError(SyncError):
    """The local store is unreadable, corrupt or rejected a write."""
    pass


class TransportError(SyncError):
    """The backend could not be reached or did not answer in time."""
    pass


class ConflictUnresolved(SyncError):
    """A task is blocked until the caller resolves its conflict."""

    def __init__(self, task_id: str, message: str = ""):
        self.task_id = task_id
        super().__init__(message or f"Conflict for task {task_id} requires manual resolution")
