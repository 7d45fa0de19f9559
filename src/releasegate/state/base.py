from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from releasegate.errors import ReleaseGateError


class StateError(ReleaseGateError):
    """Raised when persisted run state cannot be read or written."""


class LockAcquireError(StateError):
    """Raised when the lock storage itself fails."""


class LockedError(ReleaseGateError):
    """Raised when another execution already holds the run lock."""

    def __init__(self, owner: str, created_at: str) -> None:
        super().__init__(f"locked by: {owner} at {created_at}")
        self.owner = owner
        self.created_at = created_at


@dataclass(frozen=True, slots=True)
class LockRecord:
    owner: str
    created_at: str

    def to_dict(self) -> dict[str, str]:
        return {"user": self.owner, "created_at": self.created_at}


@dataclass(frozen=True, slots=True)
class SuccessMarker:
    task_name: str
    last_succeeded_version: str
    updated_at: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "task_name": self.task_name,
            "last_succeeded_version": self.last_succeeded_version,
            "updated_at": self.updated_at,
        }


class SuccessStore(ABC):
    @abstractmethod
    def get(self, task_name: str) -> str:
        """Return the last succeeded tag for a task, or an empty string."""

    @abstractmethod
    def set(self, task_name: str, tag: str) -> None:
        """Persist the tag a task last completed successfully."""


class LockStore(ABC):
    @abstractmethod
    def create_lock(self, record: LockRecord) -> None:
        """Atomically create the lock record; raise LockedError if one exists."""

    @abstractmethod
    def read_lock(self) -> LockRecord | None:
        """Return the current lock record, if any."""

    @abstractmethod
    def remove_lock(self) -> bool:
        """Remove the lock record; return False when there was none."""
