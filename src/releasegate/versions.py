from __future__ import annotations

import logging

import semver

from releasegate.errors import ReleaseGateError

logger = logging.getLogger(__name__)


class VersionCheckError(ReleaseGateError):
    """Raised when the version gate cannot reach a decision."""


class InvalidVersionError(VersionCheckError):
    def __init__(self, role: str, value: str, cause: Exception) -> None:
        super().__init__(f"invalid {role} tag {value!r}: {cause}")
        self.role = role
        self.value = value


def parse_version(value: str, *, role: str = "current") -> semver.Version:
    raw = value.strip()
    candidate = raw[1:] if raw[:1] in {"v", "V"} else raw
    try:
        return semver.Version.parse(candidate, optional_minor_and_patch=True)
    except (ValueError, TypeError) as exc:
        raise InvalidVersionError(role, value, exc) from exc


def is_semver_tag(value: str) -> bool:
    try:
        parse_version(value)
    except InvalidVersionError:
        return False
    return True


def is_new_version(current: str, last_succeeded: str, initial_baseline: str = "") -> bool:
    """Decide whether ``current`` is work that has not been processed yet.

    Rules, first match wins:

    1. a baseline is set and ``current <= baseline``: not new;
    2. a baseline is set, ``current == baseline`` and nothing was recorded: not new;
    3. nothing was recorded: new;
    4. otherwise ``current > last_succeeded``.
    """
    current_version = parse_version(current, role="current")

    if initial_baseline:
        baseline = parse_version(initial_baseline, role="initial")
        if current_version <= baseline:
            logger.warning(
                "Current tag %s is less than or equal to initial tag %s", current, initial_baseline
            )
            return False
        if current_version == baseline and not last_succeeded:
            logger.warning("Current tag matches initial tag. Skipping as not newer.")
            return False

    if not last_succeeded:
        logger.warning("Last processed tag is unknown. Processing without checking newer version")
        return True

    last_version = parse_version(last_succeeded, role="last processed")
    return current_version > last_version
