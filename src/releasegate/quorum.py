from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from pathlib import Path

from releasegate.config import Quorum
from releasegate.errors import ReleaseGateError
from releasegate.signatures import SignatureVerifier
from releasegate.tasks import TargetRevision

logger = logging.getLogger(__name__)

__all__ = ["Quorum", "QuorumError", "QuorumVerifier", "load_quorum_keys"]


class QuorumError(ReleaseGateError):
    """Raised when a quorum's signing requirement is not met."""

    def __init__(self, quorum_name: str, cause: Exception) -> None:
        super().__init__(f"quorum `{quorum_name}` error: {cause}")
        self.quorum_name = quorum_name
        self.cause = cause


def load_quorum_keys(quorum: Quorum) -> list[str]:
    keys: list[str] = []
    for key_path in quorum.key_paths:
        try:
            keys.append(Path(key_path).read_text(encoding="utf-8"))
        except OSError as exc:
            raise QuorumError(
                quorum.name, RuntimeError(f"error reading GPG key file {key_path}: {exc}")
            ) from exc
    keys.extend(quorum.keys)
    return keys


class QuorumVerifier:
    """Checks every configured quorum concurrently; all of them must pass."""

    def __init__(self, verifier: SignatureVerifier, *, timeout_seconds: float = 60.0) -> None:
        self.verifier = verifier
        self.timeout_seconds = timeout_seconds

    def _check_one(self, quorum: Quorum, tag: str) -> None:
        logger.info("Verifying quorum %s", quorum.name)
        keys = load_quorum_keys(quorum)
        try:
            self.verifier.verify(tag, keys, quorum.minimum_signers)
        except Exception as exc:
            raise QuorumError(quorum.name, exc) from exc

    async def check_quorums(self, quorums: Sequence[Quorum], revision: TargetRevision) -> None:
        """Raise QuorumError for the first failing quorum in configuration order."""
        if not quorums:
            return

        checks = [
            asyncio.create_task(asyncio.to_thread(self._check_one, quorum, revision.tag))
            for quorum in quorums
        ]
        _, pending = await asyncio.wait(checks, timeout=self.timeout_seconds)
        for check in pending:
            check.cancel()

        # Read every finished result first so no task exception goes unretrieved.
        errors = [None if check in pending else check.exception() for check in checks]
        for quorum, check, error in zip(quorums, checks, errors, strict=True):
            if check in pending:
                raise QuorumError(
                    quorum.name,
                    TimeoutError(f"verification timed out after {self.timeout_seconds:.1f}s"),
                )
            if error is None:
                continue
            if isinstance(error, QuorumError):
                raise error
            raise QuorumError(quorum.name, error) from error

        logger.info("All %d quorum(s) verified for tag %s", len(quorums), revision.tag)
