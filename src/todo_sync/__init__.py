"""Todo Sync - offline-first task storage with background synchronization."""

__version__ = "0.1.0"
__author__ = "Todo Sync Team"

from .task import (
    Task,
    Tag,
    Priority,
    TaskFilter,
)

__all__ = ["Task", "Tag", "Priority", "TaskFilter", "__version__"]
