import logging
import subprocess
from pathlib import Path

import pytest
from click.testing import CliRunner

from releasegate import __version__
from releasegate.cli import cli
from releasegate.git import repository_identity
from releasegate.state import LocalStateStore, LockRecord
from releasegate.tasks import command_hash


@pytest.fixture(autouse=True)
def _isolated_root_logger(monkeypatch: pytest.MonkeyPatch) -> None:
    root = logging.getLogger()
    monkeypatch.setattr(root, "handlers", [])
    monkeypatch.setattr(root, "level", root.level)


def _init_origin(repo_path: Path) -> None:
    repo_path.mkdir()
    subprocess.run(["git", "init"], cwd=repo_path, check=True, text=True, capture_output=True)
    subprocess.run(
        ["git", "config", "user.email", "test@example.com"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "Test User"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    subprocess.run(
        ["git", "add", "README.md"], cwd=repo_path, check=True, text=True, capture_output=True
    )
    subprocess.run(
        ["git", "commit", "-m", "seed"], cwd=repo_path, check=True, text=True, capture_output=True
    )
    subprocess.run(
        ["git", "tag", "v1.0.0"], cwd=repo_path, check=True, text=True, capture_output=True
    )


def _write_config(tmp_path: Path, extra: str = "") -> Path:
    origin = tmp_path / "origin"
    if not origin.exists():
        _init_origin(origin)
    config_path = tmp_path / "releasegate.toml"
    config_path.write_text(
        f"""
[repo]
url = "{origin}"

[storage]
path = "{tmp_path / 'state'}"
repos_path = "{tmp_path / 'repos'}"
{extra}
""",
        encoding="utf-8",
    )
    return config_path


def test_version_option() -> None:
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_ad_hoc_command_runs_once_per_tag(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path)
    marker = tmp_path / "ran.txt"
    runner = CliRunner()
    args = ["run", "--config", str(config_path), "--", "echo", "{{ .RepoTag }}", ">>", str(marker)]

    first = runner.invoke(cli, args)
    second = runner.invoke(cli, args)

    assert first.exit_code == 0, first.output
    assert "Tag: v1.0.0" in first.output
    assert second.exit_code == 0, second.output
    task_name = command_hash([" ".join(args[4:])])
    assert f"Skipped: {task_name}" in second.output
    assert marker.read_text(encoding="utf-8") == "v1.0.0\n"


def test_failing_task_exits_non_zero(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path,
        """
[[tasks]]
name = "build"
commands = ["exit 3"]
""",
    )

    result = CliRunner().invoke(cli, ["run", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "error executing task build: exit code 3" in result.output
    state = LocalStateStore(repository_identity(str(tmp_path / "origin")), root=tmp_path / "state")
    assert not state.lock_file.exists()


def test_invalid_config_is_reported(tmp_path: Path) -> None:
    config_path = tmp_path / "releasegate.toml"
    config_path.write_text('[repo]\nurl = "ftp://example.com/app.git"\n', encoding="utf-8")

    result = CliRunner().invoke(cli, ["run", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "config validation error" in result.output


def test_force_unlock(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path)
    state = LocalStateStore(repository_identity(str(tmp_path / "origin")), root=tmp_path / "state")
    state.create_lock(LockRecord(owner="alice", created_at="2026-01-01T00:00:00+00:00"))
    runner = CliRunner()

    locked = runner.invoke(cli, ["run", "--config", str(config_path), "--", "true"])
    removed = runner.invoke(cli, ["force-unlock", "--config", str(config_path)])
    missing = runner.invoke(cli, ["force-unlock", "--config", str(config_path)])

    assert locked.exit_code == 0
    assert "Execution is locked by alice" in locked.output
    assert removed.exit_code == 0
    assert "Removed lock held by alice" in removed.output
    assert missing.exit_code == 1
    assert "No execution lock found" in missing.output
