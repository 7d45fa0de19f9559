from pathlib import Path

import pytest

from releasegate.config import (
    ConfigError,
    HooksConfig,
    ReleaseGateConfig,
    load_config,
    load_runner_config,
)

FULL_CONFIG = """
[repo]
url = "git@github.com:org/app.git"
initial_last_processed_tag = "v1.0.0"

[[quorums]]
name = "maintainers"
minimum_signers = 2
keys = ["inline-key"]
key_paths = ["keys/alice.asc"]

[[quorums]]
minimum_signers = 1
keys = ["other-key"]

[env]
DEPLOY_ENV = "prod"

[[tasks]]
name = "deploy"
commands = ["make deploy TAG={{ .RepoTag }}"]
env = { REGION = "eu" }
initial_last_processed_tag = "v1.2.0"

[hooks]
onCommandFailure = ["notify 'failed {{ .FailedTaskName }}'"]

[runtime]
quorum_timeout_seconds = 15
"""


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_load_full_config(tmp_path: Path) -> None:
    (tmp_path / "keys").mkdir()
    _write(tmp_path / "keys" / "alice.asc", "alice-key")
    config = load_config(_write(tmp_path / "releasegate.toml", FULL_CONFIG))

    assert config.repo.url == "git@github.com:org/app.git"
    assert [quorum.name for quorum in config.quorums] == ["maintainers", "quorum-2"]
    assert config.quorums[0].key_paths == (str((tmp_path / "keys" / "alice.asc").resolve()),)
    assert config.tasks[0].env == {"REGION": "eu"}
    assert config.hooks.on_command_failure == ["notify 'failed {{ .FailedTaskName }}'"]
    assert config.hooks.on_command_success is None
    assert config.runtime.quorum_timeout_seconds == 15
    assert config.runtime.hook_timeout_seconds == 30.0


def test_quorums_are_optional(tmp_path: Path) -> None:
    config = load_config(
        _write(tmp_path / "releasegate.toml", '[repo]\nurl = "/srv/app.git"\n')
    )
    assert config.quorums == []


def test_relative_local_url_resolves_against_config_dir(tmp_path: Path) -> None:
    config = load_config(_write(tmp_path / "releasegate.toml", '[repo]\nurl = "./origin"\n'))
    assert config.repo.url == str(tmp_path.resolve() / "origin")


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ('[repo]\nurl = "ftp://example.com/app.git"\n', "invalid Git repository URL"),
        ("[repo]\n", "repo.url is required"),
        (
            '[repo]\nurl = "https://github.com/org/app.git"\n'
            '[repo.auth]\nssh_key_path = "~/.ssh/id"\n',
            "unable to use ssh keys",
        ),
        (
            '[repo]\nurl = "/srv/app.git"\n'
            '[[quorums]]\nname = "q"\nminimum_signers = 0\nkeys = ["k"]\n',
            "greater or equal 1",
        ),
        (
            '[repo]\nurl = "/srv/app.git"\n'
            '[[quorums]]\nname = "q"\nminimum_signers = 2\nkeys = ["k"]\n',
            "number of GPG keys is less than the minimum",
        ),
        (
            '[repo]\nurl = "/srv/app.git"\n'
            '[[quorums]]\nname = "q"\nminimum_signers = 1\nkey_paths = ["missing.asc"]\n',
            "key file not found",
        ),
        (
            '[repo]\nurl = "/srv/app.git"\n'
            '[[tasks]]\nname = "a"\ncommands = ["x"]\n[[tasks]]\nname = "a"\ncommands = ["y"]\n',
            "duplicate task name",
        ),
    ],
)
def test_invalid_configs_are_rejected(tmp_path: Path, body: str, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        load_config(_write(tmp_path / "releasegate.toml", body))


def test_unknown_sections_are_rejected() -> None:
    with pytest.raises(ConfigError, match="unknown config keys: plugins"):
        ReleaseGateConfig.from_dict({"repo": {"url": "/srv/app.git"}, "plugins": {}})


def test_unknown_hooks_are_rejected() -> None:
    with pytest.raises(ConfigError, match="unknown hooks: onDeploy"):
        HooksConfig.from_dict({"onDeploy": ["echo"]})


def test_malformed_toml_is_a_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="unable to read config"):
        load_config(_write(tmp_path / "releasegate.toml", "[repo\n"))


def test_missing_config_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "releasegate.toml")


def test_missing_runner_file_is_not_an_error(tmp_path: Path) -> None:
    assert load_runner_config(tmp_path) is None
