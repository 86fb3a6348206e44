"""Conflict detection and resolution between pending local changes and remote state.

A remote task that arrives while the local queue still holds changes for the
same id is compared against the ``base_version`` of the oldest pending
change, i.e. the version the client believed was current when it started
editing:

* remote not newer than the base: nobody else touched the task, the local
  changes are pushed as they are;
* remote newer than the base: a true conflict, settled by wall-clock
  last-write-wins (ties go to the remote) or parked for the user in manual
  mode;
* deletions beat concurrent updates on either side, so a task the user
  removed is never resurrected.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from ..task import Task
from .models import ChangeOperation, ConflictStrategy, ConflictWinner, PendingChange


logger = logging.getLogger(__name__)


class ResolutionAction(Enum):
    """What the engine should do with a remote task."""
    KEEP_LOCAL = "keep_local"      # Keep pending changes, ignore remote
    APPLY_REMOTE = "apply_remote"  # Drop pending changes, apply remote
    HOLD = "hold"                  # Park for manual resolution


@dataclass(frozen=True)
class Resolution:
    """Decision for one remote task against the local pending changes."""
    action: ResolutionAction
    true_conflict: bool = False
    winner: Optional[ConflictWinner] = None
    rebase_to: Optional[datetime] = None
    reason: str = ""


class ConflictResolver:
    """Resolves synchronization conflicts using the configured strategy."""

    def __init__(self, strategy: ConflictStrategy = ConflictStrategy.LAST_WRITE_WINS):
        self.strategy = strategy
        self.logger = logging.getLogger(__name__)

    def resolve(self, pending: List[PendingChange], remote: Task) -> Resolution:
        """Decide between the pending changes of a task and its remote state.

        Args:
            pending: Queued changes for ``remote.id`` in queue order (non-empty)
            remote: Current remote state; ``remote.deleted`` marks a deletion

        Returns:
            Resolution describing the action to take
        """
        if not pending:
            raise ValueError("resolve() needs at least one pending change")

        first, last = pending[0], pending[-1]
        remote_time = remote.updated_at

        if last.operation == ChangeOperation.DELETE:
            return self._resolve_local_delete(first, remote)

        if remote.deleted:
            return Resolution(
                ResolutionAction.APPLY_REMOTE,
                true_conflict=True,
                winner=ConflictWinner.REMOTE,
                reason="remote delete wins over local update",
            )

        if first.operation == ChangeOperation.CREATE:
            # The remote copy is an echo of our own create if it is not newer
            # than what we intend to write
            base = last.intended_version()
        else:
            base = first.base_version

        if base is not None and remote_time <= base:
            return Resolution(ResolutionAction.KEEP_LOCAL, reason="remote unchanged since base")

        if self.strategy == ConflictStrategy.MANUAL:
            return Resolution(ResolutionAction.HOLD, true_conflict=True,
                              reason="manual resolution required")

        return self._resolve_newest_wins(last, remote)

    def _resolve_local_delete(self, first: PendingChange, remote: Task) -> Resolution:
        if remote.deleted:
            # Both sides deleted the task; nothing left to push
            return Resolution(ResolutionAction.APPLY_REMOTE, reason="deleted on both sides")

        base = first.base_version
        if base is not None and remote.updated_at <= base:
            return Resolution(ResolutionAction.KEEP_LOCAL, reason="remote unchanged since base")

        return Resolution(
            ResolutionAction.KEEP_LOCAL,
            true_conflict=True,
            winner=ConflictWinner.LOCAL,
            rebase_to=remote.updated_at,
            reason="local delete wins over remote update",
        )

    def _resolve_newest_wins(self, last: PendingChange, remote: Task) -> Resolution:
        """Resolve conflict by keeping the version with the later ``updated_at``."""
        local_time = last.intended_version()
        if local_time is not None and local_time > remote.updated_at:
            return Resolution(
                ResolutionAction.KEEP_LOCAL,
                true_conflict=True,
                winner=ConflictWinner.LOCAL,
                rebase_to=remote.updated_at,
                reason="local version is newer",
            )
        return Resolution(
            ResolutionAction.APPLY_REMOTE,
            true_conflict=True,
            winner=ConflictWinner.REMOTE,
            reason="remote version is newer",
        )


def remote_is_newer(remote: Task, local: Optional[Task]) -> bool:
    """Last-write-wins for tasks without pending changes: remote must be strictly newer."""
    if local is None:
        return True
    return remote.updated_at > local.updated_at
