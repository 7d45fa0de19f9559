from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

import click

from releasegate import __version__
from releasegate.config import DEFAULT_CONFIG_FILE, ReleaseGateConfig, load_config
from releasegate.errors import ReleaseGateError
from releasegate.executor import ScriptExecutor
from releasegate.git import GitRepository, repository_identity
from releasegate.hooks import HookRunner
from releasegate.pipeline import PipelineController, RunOptions
from releasegate.quorum import QuorumVerifier
from releasegate.signatures import GpgTagSignatureVerifier
from releasegate.state import LocalStateStore, LockManager


@dataclass(slots=True)
class Runtime:
    config_path: Path
    config: ReleaseGateConfig
    identity: str
    state_dir: Path | None
    repository: GitRepository


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)-7s %(message)s",
        stream=sys.stdout,
        force=True,
    )


def _resolve_config_path(config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = Path.cwd() / config_path
    return config_path.resolve()


def _format_error(exc: BaseException) -> str:
    parts: list[str] = []
    current: BaseException | None = exc
    while current is not None:
        message = str(current)
        if message and not any(message in part for part in parts):
            parts.append(message)
        current = current.__cause__
    return ": ".join(parts)


def _load_runtime(config_path: Path) -> Runtime:
    config = load_config(config_path)
    state_dir = Path(config.storage.path).expanduser() if config.storage.path else None
    repos_dir = Path(config.storage.repos_path).expanduser() if config.storage.repos_path else None
    repository = GitRepository(
        config.repo.url,
        ssh_key_path=config.repo.auth.ssh_key_path,
        repos_dir=repos_dir,
    )
    return Runtime(
        config_path=config_path,
        config=config,
        identity=repository_identity(config.repo.url),
        state_dir=state_dir,
        repository=repository,
    )


def _build_controller(runtime: Runtime, *, disable_lock: bool) -> PipelineController:
    config = runtime.config
    cancel_event = asyncio.Event()
    executor = ScriptExecutor(
        runtime.repository.path,
        cancel_event=cancel_event,
        kill_grace_seconds=config.runtime.kill_grace_seconds,
    )
    # Hooks still run after a cancellation request, so they get their own executor.
    hook_executor = ScriptExecutor(
        runtime.repository.path, kill_grace_seconds=config.runtime.kill_grace_seconds
    )
    return PipelineController(
        config,
        runtime.repository,
        identity=runtime.identity,
        success_store=LocalStateStore(runtime.identity, root=runtime.state_dir),
        lock_manager=LockManager(disabled=disable_lock, state_dir=runtime.state_dir),
        quorum_verifier=QuorumVerifier(
            GpgTagSignatureVerifier(
                runtime.repository.path,
                timeout_seconds=config.runtime.quorum_timeout_seconds,
            ),
            timeout_seconds=config.runtime.quorum_timeout_seconds,
        ),
        executor=executor,
        hooks=HookRunner(
            config.hooks,
            hook_executor,
            env=config.env,
            timeout_seconds=config.runtime.hook_timeout_seconds,
        ),
        cancel_event=cancel_event,
    )


@click.group()
@click.version_option(__version__, prog_name="releasegate")
def cli() -> None:
    """Release gate: run tasks for new, quorum-signed tags."""


@cli.command("run", context_settings={"ignore_unknown_options": True})
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
@click.option("--force", "-f", is_flag=True, default=False, help="Skip the version check.")
@click.option("--disable-lock", is_flag=True, default=False, help="Run without the execution lock.")
@click.option("--task", "task_name", default="", help="Run only the named task.")
@click.option("--ref", default=None, help="Tag to process instead of the latest one.")
@click.option("--verbose", "-v", is_flag=True, default=False)
@click.argument("command", nargs=-1, type=click.UNPROCESSED)
def run_command(
    config_value: str,
    force: bool,
    disable_lock: bool,
    task_name: str,
    ref: str | None,
    verbose: bool,
    command: tuple[str, ...],
) -> None:
    _configure_logging(verbose)
    try:
        runtime = _load_runtime(_resolve_config_path(config_value))
        controller = _build_controller(runtime, disable_lock=disable_lock)
        options = RunOptions(force=force, task_name=task_name, ref=ref, cli_command=command)
        summary = asyncio.run(controller.run(options))
    except ReleaseGateError as exc:
        raise click.ClickException(_format_error(exc)) from exc

    if summary.locked_by is not None:
        return
    click.echo(f"Tag: {summary.tag} ({summary.commit[:10]})")
    click.echo(f"Succeeded: {', '.join(summary.succeeded) or '-'}")
    click.echo(f"Skipped: {', '.join(summary.skipped) or '-'}")
    if summary.exit_status:
        sys.exit(summary.exit_status)


@cli.command("force-unlock")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def force_unlock_command(config_value: str) -> None:
    _configure_logging(False)
    try:
        runtime = _load_runtime(_resolve_config_path(config_value))
        record = LockManager(state_dir=runtime.state_dir).force_unlock(runtime.identity)
    except ReleaseGateError as exc:
        raise click.ClickException(_format_error(exc)) from exc
    click.echo(f"Removed lock held by {record.owner} since {record.created_at}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
