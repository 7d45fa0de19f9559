from __future__ import annotations

import hashlib
import logging
import os
import subprocess
from pathlib import Path, PurePosixPath

from releasegate.errors import GitError
from releasegate.tasks import TargetRevision
from releasegate.versions import is_semver_tag, parse_version

logger = logging.getLogger(__name__)

DEFAULT_REPOS_DIR = Path("~/.releasegate/repos")


def repository_name(url: str) -> str:
    tail = url.rstrip("/").rsplit(":", 1)[-1] if url.startswith("git@") else url.rstrip("/")
    name = PurePosixPath(tail).name
    return name.removesuffix(".git") or "repo"


def repository_identity(url: str) -> str:
    """Stable, filesystem-safe key for everything stored about one repository."""
    digest = hashlib.sha1(url.strip().encode("utf-8")).hexdigest()[:10]
    safe_name = "".join(ch if ch.isalnum() or ch in "._-" else "-" for ch in repository_name(url))
    return f"{safe_name}-{digest}"


class GitRepository:
    """Local clone of the target repository driven through the git CLI."""

    def __init__(
        self,
        url: str,
        path: Path | None = None,
        *,
        ssh_key_path: str = "",
        repos_dir: Path | None = None,
    ) -> None:
        self.url = url
        base = (repos_dir or DEFAULT_REPOS_DIR).expanduser()
        self.path = (path or base / repository_identity(url)).resolve()
        self.ssh_key_path = ssh_key_path

    def _env(self) -> dict[str, str]:
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        if self.ssh_key_path:
            key_path = str(Path(self.ssh_key_path).expanduser())
            env["GIT_SSH_COMMAND"] = f"ssh -i '{key_path}' -o IdentitiesOnly=yes"
        return env

    def _run_git(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=cwd or self.path,
                text=True,
                capture_output=True,
                env=self._env(),
            )
        except FileNotFoundError as exc:
            raise GitError("git binary not found") from exc
        if check and proc.returncode != 0:
            raise GitError(proc.stderr.strip() or proc.stdout.strip() or f"git {args[0]} failed")
        return proc

    def is_cloned(self) -> bool:
        return (self.path / ".git").exists()

    def ensure_cloned(self) -> None:
        if self.is_cloned():
            return
        logger.info("Cloning %s into %s", self.url, self.path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._run_git(["clone", "--quiet", self.url, str(self.path)], cwd=self.path.parent)
        logger.info("Cloning done")

    def fetch_tags(self) -> None:
        logger.info("Fetching tags")
        self._run_git(["fetch", "--quiet", "--force", "--tags", "origin"])
        self._run_git(["fetch", "--quiet", "origin", "refs/notes/*:refs/notes/*"], check=False)

    def list_tags(self) -> list[str]:
        proc = self._run_git(["tag", "--list"])
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def latest_semver_tag(self) -> str:
        tags = [tag for tag in self.list_tags() if is_semver_tag(tag)]
        if not tags:
            raise GitError("no semantic version tags found")
        return max(tags, key=parse_version)

    def commit_for(self, ref: str) -> str:
        proc = self._run_git(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], check=False)
        commit = proc.stdout.strip()
        if proc.returncode != 0 or not commit:
            raise GitError(f"tag not found: {ref}")
        return commit

    def checkout(self, commit: str) -> None:
        self._run_git(["checkout", "--quiet", "--force", "--detach", commit])

    def resolve_target(self, ref: str | None = None) -> TargetRevision:
        """Clone or refresh the repository and check out the target tag."""
        self.ensure_cloned()
        self.fetch_tags()
        tag = ref or self.latest_semver_tag()
        commit = self.commit_for(tag)
        logger.info("Got tag %s. Perform checkout", tag)
        self.checkout(commit)
        return TargetRevision(tag=tag, commit=commit)
