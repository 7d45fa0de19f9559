from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace

REPO_TAG = "RepoTag"
REPO_URL = "RepoUrl"
REPO_COMMIT = "RepoCommit"
FAILED_TASK_NAME = "FailedTaskName"
FAILED_QUORUM_NAME = "FailedQuorumName"

# Accepts "{{ .RepoTag }}" as well as "{{RepoTag}}". Pipelines and functions such as
# {{ .RepoTag | printf "%s" }} are not template syntax here and stay literal text.
PLACEHOLDER_PATTERN = re.compile(r"\{\{-?\s*\.?([A-Za-z_][A-Za-z0-9_]*)\s*-?\}\}")


@dataclass(frozen=True, slots=True)
class TemplateContext:
    """Values available to command, env and hook templates during a run."""

    repo_tag: str = ""
    repo_url: str = ""
    repo_commit: str = ""
    failed_task_name: str = ""
    failed_quorum_name: str = ""

    def with_failed_task(self, task_name: str) -> TemplateContext:
        return replace(self, failed_task_name=task_name)

    def with_failed_quorum(self, quorum_name: str) -> TemplateContext:
        return replace(self, failed_quorum_name=quorum_name)

    def as_vars(self) -> dict[str, str]:
        return {
            REPO_TAG: self.repo_tag,
            REPO_URL: self.repo_url,
            REPO_COMMIT: self.repo_commit,
            FAILED_TASK_NAME: self.failed_task_name,
            FAILED_QUORUM_NAME: self.failed_quorum_name,
        }


def render(template: str, variables: Mapping[str, str]) -> str:
    """Substitute placeholders; unknown keys render as an empty string."""

    return PLACEHOLDER_PATTERN.sub(lambda match: variables.get(match.group(1), ""), template)


def render_all(templates: Iterable[str], variables: Mapping[str, str]) -> list[str]:
    return [render(item, variables) for item in templates]


def render_env(env: Mapping[str, str], variables: Mapping[str, str]) -> dict[str, str]:
    return {str(key).upper(): render(str(value), variables) for key, value in env.items()}
