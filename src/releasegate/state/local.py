from __future__ import annotations

import getpass
import hashlib
import json
import os
import re
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from releasegate.state.base import (
    LockAcquireError,
    LockedError,
    LockRecord,
    LockStore,
    StateError,
    SuccessMarker,
    SuccessStore,
)

DEFAULT_STATE_DIR = Path("~/.releasegate/storage")
LOCK_FILE_NAME = ".lock"
TASKS_DIR_NAME = "tasks"
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return f"uid-{os.getuid()}" if hasattr(os, "getuid") else "unknown"


def task_key(task_name: str) -> str:
    slug = _UNSAFE_CHARS.sub("-", task_name).strip("-.")[:48] or "task"
    digest = hashlib.sha1(task_name.encode("utf-8")).hexdigest()[:8]
    return f"{slug}-{digest}"


class LocalStateStore(SuccessStore, LockStore):
    """Keeps the run lock and success markers under one directory per repository."""

    def __init__(self, repository_identity: str, root: Path | None = None) -> None:
        base = (root or DEFAULT_STATE_DIR).expanduser()
        self.path = (base / repository_identity).resolve()
        self.lock_file = self.path / LOCK_FILE_NAME
        self.tasks_dir = self.path / TASKS_DIR_NAME

    def _marker_file(self, task_name: str) -> Path:
        return self.tasks_dir / f"{task_key(task_name)}.json"

    @staticmethod
    def _read_json(path: Path) -> Any:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as exc:
            raise StateError(f"Corrupted state file {path}: {exc}") from exc
        except OSError as exc:
            raise StateError(f"Unable to read state file {path}: {exc}") from exc

    @staticmethod
    def _write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2) + "\n"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=path.parent,
                prefix=f".{path.name}.",
                delete=False,
            ) as handle:
                handle.write(serialized)
                temp_name = handle.name
            os.replace(temp_name, path)
        except OSError as exc:
            raise StateError(f"Unable to write state file {path}: {exc}") from exc

    def get(self, task_name: str) -> str:
        payload = self._read_json(self._marker_file(task_name))
        if not isinstance(payload, dict):
            return ""
        return str(payload.get("last_succeeded_version") or "").strip()

    def get_marker(self, task_name: str) -> SuccessMarker | None:
        payload = self._read_json(self._marker_file(task_name))
        if not isinstance(payload, dict) or not payload.get("last_succeeded_version"):
            return None
        return SuccessMarker(
            task_name=str(payload.get("task_name") or task_name),
            last_succeeded_version=str(payload["last_succeeded_version"]),
            updated_at=str(payload.get("updated_at") or ""),
        )

    def set(self, task_name: str, tag: str) -> None:
        if not tag.strip():
            raise StateError("tag can't be empty")
        marker = SuccessMarker(
            task_name=task_name,
            last_succeeded_version=tag.strip(),
            updated_at=_utcnow_iso(),
        )
        self._write_json_atomic(self._marker_file(task_name), marker.to_dict())

    def create_lock(self, record: LockRecord) -> None:
        try:
            self.path.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            existing = self.read_lock()
            if existing is None:
                raise LockedError("unknown", "unknown") from None
            raise LockedError(existing.owner, existing.created_at) from None
        except OSError as exc:
            raise LockAcquireError(f"failed to create lock file: {exc}") from exc

        try:
            os.write(fd, json.dumps(record.to_dict()).encode("utf-8"))
        except OSError as exc:
            os.close(fd)
            self.lock_file.unlink(missing_ok=True)
            raise LockAcquireError(f"failed to write lock file: {exc}") from exc
        os.close(fd)

    def read_lock(self) -> LockRecord | None:
        try:
            raw = self.lock_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise LockAcquireError(f"error reading lock file: {exc}") from exc
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            # A crash between create and write leaves an empty marker behind.
            return LockRecord(owner="unknown", created_at="unknown")
        if not isinstance(payload, dict):
            return LockRecord(owner="unknown", created_at="unknown")
        return LockRecord(
            owner=str(payload.get("user") or "unknown"),
            created_at=str(payload.get("created_at") or "unknown"),
        )

    def remove_lock(self) -> bool:
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StateError(f"failed to remove lock file: {exc}") from exc
        return True
