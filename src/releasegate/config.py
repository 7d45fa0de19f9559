from __future__ import annotations

import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from releasegate.errors import ConfigError

DEFAULT_CONFIG_FILE = "releasegate.toml"
DEFAULT_RUNNER_CONFIG_FILE = "releasegate-tasks.toml"

SSH_URL_PATTERN = re.compile(r"^git@(?:[a-zA-Z0-9-]+\.)+[a-zA-Z]{2,}(:[a-zA-Z0-9_/.-]+\.git)$")
HTTPS_URL_PATTERN = re.compile(r"^https?://(?:[a-zA-Z0-9-]+\.)+[a-zA-Z]{2,}(?:/[^\s]*)?\.git$")

HOOK_KEYS = {
    "onCommandStarted": "on_command_started",
    "onQuorumFailure": "on_quorum_failure",
    "onCommandSkipped": "on_command_skipped",
    "onCommandFailure": "on_command_failure",
    "onCommandSuccess": "on_command_success",
}


@dataclass(slots=True)
class RepoAuthConfig:
    ssh_key_path: str = ""


@dataclass(slots=True)
class RepoConfig:
    url: str = ""
    initial_last_processed_tag: str = ""
    config_file: str = ""
    auth: RepoAuthConfig = field(default_factory=RepoAuthConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RepoConfig:
        payload = dict(data)
        auth = RepoAuthConfig(**payload.pop("auth", {}))
        return cls(auth=auth, **payload)


@dataclass(frozen=True, slots=True)
class Quorum:
    name: str
    minimum_signers: int
    keys: tuple[str, ...] = ()
    key_paths: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any], index: int) -> Quorum:
        payload = dict(data)
        name = str(payload.pop("name", "") or f"quorum-{index + 1}")
        minimum = payload.pop("minimum_signers", 0)
        keys = tuple(str(item) for item in payload.pop("keys", []))
        key_paths = tuple(str(item) for item in payload.pop("key_paths", []))
        if payload:
            raise ConfigError(f"quorum `{name}` has unknown keys: {', '.join(sorted(payload))}")
        if not isinstance(minimum, int) or isinstance(minimum, bool):
            raise ConfigError(f"quorum `{name}`: minimum_signers must be an integer")
        return cls(name=name, minimum_signers=minimum, keys=keys, key_paths=key_paths)


@dataclass(slots=True)
class TaskConfig:
    name: str = ""
    commands: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    initial_last_processed_tag: str = ""


@dataclass(slots=True)
class HooksConfig:
    on_command_started: list[str] | None = None
    on_quorum_failure: list[str] | None = None
    on_command_skipped: list[str] | None = None
    on_command_failure: list[str] | None = None
    on_command_success: list[str] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HooksConfig:
        unknown = sorted(set(data) - set(HOOK_KEYS))
        if unknown:
            raise ConfigError(f"unknown hooks: {', '.join(unknown)}")
        return cls(
            **{HOOK_KEYS[key]: [str(item) for item in value] for key, value in data.items()}
        )


@dataclass(slots=True)
class StorageConfig:
    path: str = "~/.releasegate/storage"
    repos_path: str = "~/.releasegate/repos"


@dataclass(slots=True)
class RuntimeConfig:
    quorum_timeout_seconds: float = 60.0
    hook_timeout_seconds: float = 30.0
    kill_grace_seconds: float = 5.0


@dataclass(slots=True)
class ReleaseGateConfig:
    repo: RepoConfig = field(default_factory=RepoConfig)
    quorums: list[Quorum] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    tasks: list[TaskConfig] = field(default_factory=list)
    commands: list[str] = field(default_factory=list)
    hooks: HooksConfig = field(default_factory=HooksConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReleaseGateConfig:
        known = {
            "repo",
            "quorums",
            "env",
            "tasks",
            "commands",
            "hooks",
            "storage",
            "runtime",
        }
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"unknown config keys: {', '.join(unknown)}")
        try:
            return cls(
                repo=RepoConfig.from_dict(data.get("repo", {})),
                quorums=[
                    Quorum.from_dict(item, index)
                    for index, item in enumerate(data.get("quorums", []))
                ],
                env={str(key): str(value) for key, value in data.get("env", {}).items()},
                tasks=[TaskConfig(**item) for item in data.get("tasks", [])],
                commands=[str(item) for item in data.get("commands", [])],
                hooks=HooksConfig.from_dict(data.get("hooks", {})),
                storage=StorageConfig(**data.get("storage", {})),
                runtime=RuntimeConfig(**data.get("runtime", {})),
            )
        except (TypeError, AttributeError) as exc:
            raise ConfigError(f"unable to decode config: {exc}") from exc

    def validate(self) -> None:
        validate_repo(self.repo)
        validate_quorums(self.quorums)
        validate_tasks(self.tasks)
        if self.runtime.quorum_timeout_seconds <= 0:
            raise ConfigError("runtime.quorum_timeout_seconds must be positive")


@dataclass(slots=True)
class RunnerConfig:
    """Task definitions shipped inside the target repository."""

    commands: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    tasks: list[TaskConfig] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunnerConfig:
        try:
            return cls(
                commands=[str(item) for item in data.get("commands", [])],
                env={str(key): str(value) for key, value in data.get("env", {}).items()},
                tasks=[TaskConfig(**item) for item in data.get("tasks", [])],
            )
        except (TypeError, AttributeError) as exc:
            raise ConfigError(f"unable to decode runner config: {exc}") from exc


def is_local_url(url: str) -> bool:
    return url.startswith("file://") or url.startswith("/") or url.startswith(".")


def validate_repo(repo: RepoConfig) -> None:
    if not repo.url:
        raise ConfigError("repo.url is required")
    if SSH_URL_PATTERN.match(repo.url):
        if repo.auth.ssh_key_path and not Path(repo.auth.ssh_key_path).expanduser().exists():
            raise ConfigError(f"unable to validate ssh key path: {repo.auth.ssh_key_path}")
        return
    if HTTPS_URL_PATTERN.match(repo.url) or is_local_url(repo.url):
        if repo.auth.ssh_key_path:
            raise ConfigError(
                "unable to use ssh keys when cloning repo by https. "
                "should be only used when cloning by ssh"
            )
        return
    raise ConfigError(
        "invalid Git repository URL: must be SSH (git@...), HTTPS (https://...) or a local path"
    )


def validate_quorums(quorums: list[Quorum]) -> None:
    seen: set[str] = set()
    for quorum in quorums:
        if quorum.name in seen:
            raise ConfigError(f"duplicate quorum name: {quorum.name}")
        seen.add(quorum.name)
        if quorum.minimum_signers < 1:
            raise ConfigError("quorum size needs to be greater or equal 1")
        available = len(quorum.keys) + len(quorum.key_paths)
        if available < quorum.minimum_signers:
            raise ConfigError(
                f"quorum `{quorum.name}`: number of GPG keys is less than the minimum. "
                f"specified: {available}, minimum number: {quorum.minimum_signers}"
            )
        for key_path in quorum.key_paths:
            if not Path(key_path).is_file():
                raise ConfigError(f"quorum `{quorum.name}`: key file not found: {key_path}")


def validate_tasks(tasks: list[TaskConfig]) -> None:
    seen: set[str] = set()
    for index, task in enumerate(tasks):
        name = task.name or str(index + 1)
        if name in seen:
            raise ConfigError(f"duplicate task name: {name}")
        seen.add(name)
        if not task.commands:
            raise ConfigError(f"task `{name}` has no commands")


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigError(f"unable to read config: {path} not found") from exc
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"unable to read config {path}: {exc}") from exc


def _resolve_relative(base_dir: Path, value: str) -> str:
    candidate = Path(value).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return str(candidate)


def load_config(path: Path) -> ReleaseGateConfig:
    config = ReleaseGateConfig.from_dict(_read_toml(path))
    base_dir = path.resolve().parent
    config.quorums = [
        Quorum(
            name=quorum.name,
            minimum_signers=quorum.minimum_signers,
            keys=quorum.keys,
            key_paths=tuple(_resolve_relative(base_dir, item) for item in quorum.key_paths),
        )
        for quorum in config.quorums
    ]
    if config.repo.url.startswith("."):
        config.repo.url = _resolve_relative(base_dir, config.repo.url)
    try:
        config.validate()
    except ConfigError as exc:
        raise ConfigError(f"config validation error: {exc}") from exc
    return config


def load_runner_config(work_dir: Path, file_name: str = "") -> RunnerConfig | None:
    """Load the in-repository task file; a missing file is not an error."""
    path = work_dir / (file_name or DEFAULT_RUNNER_CONFIG_FILE)
    if not path.is_file():
        return None
    runner = RunnerConfig.from_dict(_read_toml(path))
    validate_tasks(runner.tasks)
    return runner
