import hashlib
from pathlib import Path

import pytest

from releasegate.config import ReleaseGateConfig, RepoConfig, TaskConfig
from releasegate.errors import ConfigResolutionError
from releasegate.tasks import (
    TargetRevision,
    TaskSelection,
    command_hash,
    plan_tasks,
    resolve_tasks,
)

REVISION = TargetRevision(tag="v2.0.0", commit="b" * 40)


def _config(**overrides) -> ReleaseGateConfig:
    config = ReleaseGateConfig(
        repo=RepoConfig(url="/srv/app.git", initial_last_processed_tag="v1.0.0"),
        env={"STAGE": "prod"},
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


def test_cli_command_wins_and_is_named_by_hash(tmp_path: Path) -> None:
    config = _config(commands=["make deploy"])
    selection = TaskSelection(cli_command=("echo", "{{ .RepoTag }}"))

    tasks = resolve_tasks(config, REVISION, work_dir=tmp_path, selection=selection)

    assert len(tasks) == 1
    assert tasks[0].commands == ("echo {{ .RepoTag }}",)
    assert tasks[0].name == hashlib.sha1(b"echo {{ .RepoTag }}").hexdigest()
    assert tasks[0].name == command_hash(tasks[0].commands)
    assert tasks[0].initial_baseline == ""
    assert tasks[0].env == {"STAGE": "prod"}


def test_top_level_commands_form_a_single_task(tmp_path: Path) -> None:
    config = _config(commands=["make", "make deploy"], tasks=[TaskConfig(name="x", commands=["y"])])

    tasks = resolve_tasks(config, REVISION, work_dir=tmp_path)

    assert [task.name for task in tasks] == ["main"]
    assert tasks[0].commands == ("make", "make deploy")
    assert tasks[0].initial_baseline == "v1.0.0"
    assert tasks[0].target_version == "v2.0.0"


def test_named_tasks_keep_order_and_merge_env(tmp_path: Path) -> None:
    config = _config(
        tasks=[
            TaskConfig(name="build", commands=["make"], env={"STAGE": "ci"}),
            TaskConfig(name="deploy", commands=["make deploy"], initial_last_processed_tag="v1.5.0"),
            TaskConfig(commands=["echo unnamed"]),
        ]
    )

    tasks = resolve_tasks(config, REVISION, work_dir=tmp_path)

    assert [task.name for task in tasks] == ["build", "deploy", "3"]
    assert tasks[0].env == {"STAGE": "ci"}
    assert tasks[1].env == {"STAGE": "prod"}
    assert tasks[0].initial_baseline == "v1.0.0"
    assert tasks[1].initial_baseline == "v1.5.0"


def test_task_selection_picks_one_task(tmp_path: Path) -> None:
    config = _config(
        tasks=[
            TaskConfig(name="build", commands=["make"]),
            TaskConfig(name="deploy", commands=["make deploy"]),
        ]
    )

    tasks = resolve_tasks(
        config, REVISION, work_dir=tmp_path, selection=TaskSelection(task_name="deploy")
    )

    assert [task.name for task in tasks] == ["deploy"]


def test_unknown_task_selection_fails(tmp_path: Path) -> None:
    config = _config(tasks=[TaskConfig(name="build", commands=["make"])])

    with pytest.raises(ConfigResolutionError, match="task `deploy` not found"):
        resolve_tasks(
            config, REVISION, work_dir=tmp_path, selection=TaskSelection(task_name="deploy")
        )


def test_repository_task_file_is_used_last(tmp_path: Path) -> None:
    (tmp_path / "releasegate-tasks.toml").write_text(
        """
[env]
REGION = "eu"

[[tasks]]
name = "publish"
commands = ["make publish"]
env = { STAGE = "staging" }
""",
        encoding="utf-8",
    )

    tasks = resolve_tasks(_config(), REVISION, work_dir=tmp_path)

    assert [task.name for task in tasks] == ["publish"]
    assert tasks[0].env == {"STAGE": "staging", "REGION": "eu"}


def test_custom_repository_task_file(tmp_path: Path) -> None:
    (tmp_path / "ci").mkdir()
    (tmp_path / "ci" / "release.toml").write_text('commands = ["make release"]\n', encoding="utf-8")
    config = _config(repo=RepoConfig(url="/srv/app.git", config_file="ci/release.toml"))

    tasks = resolve_tasks(config, REVISION, work_dir=tmp_path)

    assert tasks[0].name == "main"
    assert tasks[0].commands == ("make release",)


def test_plan_carries_repository_task_file_env(tmp_path: Path) -> None:
    (tmp_path / "releasegate-tasks.toml").write_text(
        'commands = ["make publish"]\n\n[env]\nREGION = "eu"\n', encoding="utf-8"
    )

    plan = plan_tasks(_config(), REVISION, work_dir=tmp_path)

    assert plan.env == {"STAGE": "prod", "REGION": "eu"}
    assert plan.tasks[0].env == plan.env


def test_nothing_to_run_fails(tmp_path: Path) -> None:
    with pytest.raises(ConfigResolutionError, match="no commands to run"):
        resolve_tasks(_config(), REVISION, work_dir=tmp_path)
