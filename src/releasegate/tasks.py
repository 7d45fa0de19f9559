from __future__ import annotations

import hashlib
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from releasegate.config import ReleaseGateConfig, TaskConfig, load_runner_config
from releasegate.errors import ConfigResolutionError

logger = logging.getLogger(__name__)

SINGLE_TASK_NAME = "main"


@dataclass(frozen=True, slots=True)
class TargetRevision:
    tag: str
    commit: str


@dataclass(frozen=True, slots=True)
class Task:
    name: str
    commands: tuple[str, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    target_version: str = ""
    initial_baseline: str = ""


@dataclass(frozen=True, slots=True)
class Succeeded:
    task_name: str
    recorded: bool = True


@dataclass(frozen=True, slots=True)
class SkippedNoNewVersion:
    task_name: str
    last_succeeded: str = ""


@dataclass(frozen=True, slots=True)
class QuorumFailed:
    task_name: str
    quorum_name: str
    cause: Exception


@dataclass(frozen=True, slots=True)
class ExecutionFailed:
    task_name: str
    cause: Exception


Outcome = Succeeded | SkippedNoNewVersion | QuorumFailed | ExecutionFailed


@dataclass(slots=True)
class TaskSelection:
    cli_command: tuple[str, ...] = ()
    task_name: str = ""


def command_hash(commands: Sequence[str]) -> str:
    return hashlib.sha1("".join(commands).encode("utf-8")).hexdigest()


def _merge_env(*layers: Mapping[str, str]) -> dict[str, str]:
    merged: dict[str, str] = {}
    for layer in layers:
        merged.update(layer)
    return merged


def _build_tasks(
    configs: Sequence[TaskConfig],
    *,
    revision: TargetRevision,
    base_env: Mapping[str, str],
    default_baseline: str,
) -> list[Task]:
    return [
        Task(
            name=item.name or str(index + 1),
            commands=tuple(item.commands),
            env=_merge_env(base_env, item.env),
            target_version=revision.tag,
            initial_baseline=item.initial_last_processed_tag or default_baseline,
        )
        for index, item in enumerate(configs)
    ]


def _select(tasks: list[Task], task_name: str) -> list[Task]:
    if not tasks:
        raise ConfigResolutionError("no tasks found")
    if not task_name:
        return tasks
    for task in tasks:
        if task.name == task_name:
            return [task]
    raise ConfigResolutionError(f"task `{task_name}` not found")


@dataclass(slots=True)
class TaskPlan:
    tasks: list[Task]
    # Run-wide env, shared with hooks.
    env: dict[str, str] = field(default_factory=dict)


def resolve_tasks(
    config: ReleaseGateConfig,
    revision: TargetRevision,
    *,
    work_dir: Path,
    selection: TaskSelection | None = None,
) -> list[Task]:
    return plan_tasks(config, revision, work_dir=work_dir, selection=selection).tasks


def plan_tasks(
    config: ReleaseGateConfig,
    revision: TargetRevision,
    *,
    work_dir: Path,
    selection: TaskSelection | None = None,
) -> TaskPlan:
    """Build the ordered task list and the run-wide env for a run.

    Sources, first match wins: an ad-hoc command from the CLI, top-level
    ``commands``, ``[[tasks]]`` in the config file, then the task file shipped in
    the repository worktree.
    """
    selection = selection or TaskSelection()
    baseline = config.repo.initial_last_processed_tag

    if selection.cli_command:
        commands = (" ".join(selection.cli_command),)
        task = Task(
            name=command_hash(commands),
            commands=commands,
            env=dict(config.env),
            target_version=revision.tag,
        )
        return TaskPlan(tasks=[task], env=dict(config.env))

    if config.commands:
        single = Task(
            name=SINGLE_TASK_NAME,
            commands=tuple(config.commands),
            env=dict(config.env),
            target_version=revision.tag,
            initial_baseline=baseline,
        )
        return TaskPlan(tasks=_select([single], selection.task_name), env=dict(config.env))

    if config.tasks:
        tasks = _build_tasks(
            config.tasks, revision=revision, base_env=config.env, default_baseline=baseline
        )
        return TaskPlan(tasks=_select(tasks, selection.task_name), env=dict(config.env))

    runner = load_runner_config(work_dir, config.repo.config_file)
    if runner is None:
        raise ConfigResolutionError("no commands to run: no tasks configured")
    logger.info("Using tasks from the repository task file")
    base_env = _merge_env(config.env, runner.env)
    if runner.commands:
        single = Task(
            name=SINGLE_TASK_NAME,
            commands=tuple(runner.commands),
            env=base_env,
            target_version=revision.tag,
            initial_baseline=baseline,
        )
        return TaskPlan(tasks=_select([single], selection.task_name), env=base_env)
    tasks = _build_tasks(
        runner.tasks, revision=revision, base_env=base_env, default_baseline=baseline
    )
    return TaskPlan(tasks=_select(tasks, selection.task_name), env=base_env)
