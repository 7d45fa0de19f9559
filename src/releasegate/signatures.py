from __future__ import annotations

import logging
import os
import re
import subprocess
import tempfile
import time
from abc import ABC, abstractmethod
from pathlib import Path

from releasegate.errors import ReleaseGateError

logger = logging.getLogger(__name__)

SIGNATURES_NOTES_REF = "refs/notes/signatures"
VALIDSIG_PATTERN = re.compile(r"^\[GNUPG:\] VALIDSIG (\S+)(?:\s.*\s(\S+))?\s*$", re.MULTILINE)
SIGNATURE_BLOCK_PATTERN = re.compile(
    r"-----BEGIN PGP SIGNATURE-----.*?-----END PGP SIGNATURE-----", re.DOTALL
)


class SignatureVerificationError(ReleaseGateError):
    """Raised when a tag does not carry enough valid signatures."""


class SignatureVerifier(ABC):
    @abstractmethod
    def verify(self, tag: str, keys: list[str], minimum_signers: int) -> None:
        """Raise SignatureVerificationError unless ``minimum_signers`` of ``keys`` signed ``tag``."""


def parse_valid_signers(status_output: str) -> set[str]:
    """Return primary key fingerprints from gpg ``VALIDSIG`` status lines."""
    signers: set[str] = set()
    for match in VALIDSIG_PATTERN.finditer(status_output):
        signers.add((match.group(2) or match.group(1)).upper())
    return signers


class GpgTagSignatureVerifier(SignatureVerifier):
    """Counts distinct trusted signers of a tag using the git and gpg CLIs.

    A signer is counted when it produced the tag's own signature, or a detached
    signature over the tagged commit id stored in ``refs/notes/signatures``.
    Only the provided keys are imported, into a throwaway keyring. When
    ``timeout_seconds`` is set, every child process of one ``verify`` call shares
    that deadline and is killed once it passes.
    """

    def __init__(
        self,
        repo_path: Path,
        gpg_binary: str = "gpg",
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self.repo_path = repo_path
        self.gpg_binary = gpg_binary
        self.timeout_seconds = timeout_seconds

    def _run(
        self,
        args: list[str],
        *,
        env: dict[str, str],
        deadline: float | None,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        timeout = None
        if deadline is not None:
            timeout = deadline - time.monotonic()
            if timeout <= 0:
                raise SignatureVerificationError(
                    f"signature verification timed out after {self.timeout_seconds:.1f}s"
                )
        try:
            return subprocess.run(
                args,
                cwd=self.repo_path,
                env=env,
                input=input_text,
                text=True,
                capture_output=True,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise SignatureVerificationError(f"binary not found: {args[0]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise SignatureVerificationError(
                f"{Path(args[0]).name} timed out after {self.timeout_seconds:.1f}s"
            ) from exc

    def _import_keys(
        self, keys: list[str], env: dict[str, str], home: Path, deadline: float | None
    ) -> None:
        for index, key in enumerate(keys):
            proc = self._run(
                [self.gpg_binary, "--batch", "--homedir", str(home), "--import"],
                env=env,
                deadline=deadline,
                input_text=key,
            )
            if proc.returncode != 0:
                raise SignatureVerificationError(
                    f"unable to import key #{index + 1}: {proc.stderr.strip()}"
                )

    def _tag_signers(self, tag: str, env: dict[str, str], deadline: float | None) -> set[str]:
        proc = self._run(
            ["git", "--no-pager", "verify-tag", "--raw", tag], env=env, deadline=deadline
        )
        return parse_valid_signers(proc.stderr)

    def _notes_signers(
        self, tag: str, env: dict[str, str], home: Path, deadline: float | None
    ) -> set[str]:
        commit = self._run(
            ["git", "--no-pager", "rev-parse", f"{tag}^{{commit}}"], env=env, deadline=deadline
        ).stdout.strip()
        if not commit:
            return set()
        notes = self._run(
            ["git", "--no-pager", "notes", "--ref", SIGNATURES_NOTES_REF, "show", commit],
            env=env,
            deadline=deadline,
        )
        if notes.returncode != 0:
            return set()

        signers: set[str] = set()
        for block in SIGNATURE_BLOCK_PATTERN.findall(notes.stdout):
            signature_file = home / "detached.asc"
            signature_file.write_text(block + "\n", encoding="utf-8")
            proc = self._run(
                [
                    self.gpg_binary,
                    "--batch",
                    "--homedir",
                    str(home),
                    "--status-fd",
                    "1",
                    "--verify",
                    str(signature_file),
                    "-",
                ],
                env=env,
                deadline=deadline,
                input_text=commit,
            )
            signers |= parse_valid_signers(proc.stdout)
        return signers

    def verify(self, tag: str, keys: list[str], minimum_signers: int) -> None:
        logger.info("Start verifying signatures for tag %s", tag)
        deadline = (
            time.monotonic() + self.timeout_seconds if self.timeout_seconds is not None else None
        )
        with tempfile.TemporaryDirectory(prefix="releasegate-gnupg-") as home_dir:
            home = Path(home_dir)
            os.chmod(home, 0o700)
            env = os.environ.copy()
            env["GNUPGHOME"] = str(home)
            self._import_keys(keys, env, home, deadline)
            signers = self._tag_signers(tag, env, deadline) | self._notes_signers(
                tag, env, home, deadline
            )

        if len(signers) < minimum_signers:
            raise SignatureVerificationError(
                f"tag {tag} has {len(signers)} valid signature(s) from trusted keys, "
                f"{minimum_signers} required"
            )
        logger.debug("Tag %s signed by %s", tag, ", ".join(sorted(signers)))
