from __future__ import annotations


class ReleaseGateError(RuntimeError):
    """Base class for every error surfaced by a release gate run."""


class ConfigError(ReleaseGateError):
    """Raised when the configuration file is missing, malformed or invalid."""


class ConfigResolutionError(ReleaseGateError):
    """Raised when no task can be resolved from configuration or CLI input."""


class GitError(ReleaseGateError):
    """Raised when a git operation against the target repository fails."""
