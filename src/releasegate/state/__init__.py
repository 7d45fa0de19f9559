from releasegate.state.base import (
    LockAcquireError,
    LockedError,
    LockRecord,
    LockStore,
    StateError,
    SuccessMarker,
    SuccessStore,
)
from releasegate.state.local import LocalStateStore
from releasegate.state.lock import LockHandle, LockManager

__all__ = [
    "LocalStateStore",
    "LockAcquireError",
    "LockHandle",
    "LockManager",
    "LockRecord",
    "LockStore",
    "LockedError",
    "StateError",
    "SuccessMarker",
    "SuccessStore",
]
