from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from releasegate.state.base import LockRecord, LockStore, StateError
from releasegate.state.local import LocalStateStore, current_user

logger = logging.getLogger(__name__)

LockStoreFactory = Callable[[str], LockStore]


@dataclass(slots=True)
class LockHandle:
    identity: str
    record: LockRecord | None
    store: LockStore | None = field(default=None, repr=False)
    released: bool = False

    @property
    def disabled(self) -> bool:
        return self.record is None


class LockManager:
    """Exclusive, non-reentrant run lock keyed by repository identity."""

    def __init__(
        self,
        store_factory: LockStoreFactory | None = None,
        *,
        disabled: bool = False,
        owner: str | None = None,
        state_dir: Path | None = None,
    ) -> None:
        self.store_factory = store_factory or (
            lambda identity: LocalStateStore(identity, root=state_dir)
        )
        self.disabled = disabled
        self.owner = owner or current_user()

    def acquire(self, identity: str) -> LockHandle:
        """Create the lock record or raise LockedError with the current holder."""
        if self.disabled:
            logger.warning("Execution lock is disabled for this run")
            return LockHandle(identity=identity, record=None)

        store = self.store_factory(identity)
        record = LockRecord(
            owner=self.owner,
            created_at=datetime.now(UTC).replace(microsecond=0).isoformat(),
        )
        store.create_lock(record)
        logger.info("Execution lock acquired")
        return LockHandle(identity=identity, record=record, store=store)

    def release(self, handle: LockHandle) -> None:
        if handle.released or handle.disabled or handle.store is None:
            handle.released = True
            return
        handle.released = True
        current = handle.store.read_lock()
        if current != handle.record:
            logger.warning(
                "Lock for %s is no longer ours (held by %s); leaving it in place",
                handle.identity,
                current.owner if current else "nobody",
            )
            return
        handle.store.remove_lock()
        logger.info("Execution lock released")

    def force_unlock(self, identity: str) -> LockRecord:
        store = self.store_factory(identity)
        record = store.read_lock()
        if record is None or not store.remove_lock():
            raise StateError(f"No execution lock found for {identity}")
        return record

    @contextmanager
    def hold(self, identity: str) -> Iterator[LockHandle]:
        handle = self.acquire(identity)
        try:
            yield handle
        finally:
            try:
                self.release(handle)
            except StateError as exc:
                logger.error("Unlock error: %s", exc)
