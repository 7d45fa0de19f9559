from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime

from releasegate.config import ReleaseGateConfig
from releasegate.errors import ReleaseGateError
from releasegate.executor import ExecutionCancelledError, ExecutionError, ScriptExecutor
from releasegate.git import GitRepository
from releasegate.hooks import HookRunner
from releasegate.quorum import QuorumError, QuorumVerifier
from releasegate.state import LockedError, LockManager, StateError, SuccessStore
from releasegate.tasks import (
    ExecutionFailed,
    Outcome,
    QuorumFailed,
    SkippedNoNewVersion,
    Succeeded,
    TargetRevision,
    Task,
    TaskSelection,
    plan_tasks,
)
from releasegate.templates import TemplateContext
from releasegate.versions import VersionCheckError, is_new_version

logger = logging.getLogger(__name__)

CANCEL_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class PipelineCancelledError(ReleaseGateError):
    """Raised when a termination signal stopped the run."""


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class RunOptions:
    force: bool = False
    task_name: str = ""
    ref: str | None = None
    cli_command: tuple[str, ...] = ()


@dataclass(slots=True)
class RunSummary:
    tag: str
    commit: str
    started_at: str
    ended_at: str
    outcomes: list[Outcome] = field(default_factory=list)
    locked_by: str | None = None

    @property
    def succeeded(self) -> list[str]:
        return [item.task_name for item in self.outcomes if isinstance(item, Succeeded)]

    @property
    def skipped(self) -> list[str]:
        return [item.task_name for item in self.outcomes if isinstance(item, SkippedNoNewVersion)]

    @property
    def exit_status(self) -> int:
        failed = any(isinstance(item, QuorumFailed | ExecutionFailed) for item in self.outcomes)
        return 1 if failed else 0


class PipelineController:
    """Runs one gated release pass over the configured tasks.

    The run holds the repository lock for its whole duration. Tasks execute
    sequentially in configuration order; each one is version gated against its
    own success marker, the signing quorums are verified once per run before the
    first task that is allowed to execute, and hooks are fired at each
    transition. Quorum and execution failures abort the remaining tasks.
    """

    def __init__(
        self,
        config: ReleaseGateConfig,
        repository: GitRepository,
        *,
        identity: str,
        success_store: SuccessStore,
        lock_manager: LockManager,
        quorum_verifier: QuorumVerifier,
        executor: ScriptExecutor,
        hooks: HookRunner,
        cancel_event: asyncio.Event | None = None,
        install_signal_handlers: bool = True,
    ) -> None:
        self.config = config
        self.repository = repository
        self.identity = identity
        self.success_store = success_store
        self.lock_manager = lock_manager
        self.quorum_verifier = quorum_verifier
        self.executor = executor
        self.hooks = hooks
        self.cancel_event = cancel_event or executor.cancel_event or asyncio.Event()
        if executor.cancel_event is None:
            executor.cancel_event = self.cancel_event
        self.install_signal_handlers = install_signal_handlers
        self._quorums_verified = False

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def request_cancel(self, sig: signal.Signals | None = None) -> None:
        if sig is not None:
            logger.warning("Received %s, cancelling the run", sig.name)
        self.cancel_event.set()

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not self.install_signal_handlers:
            yield
            return
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in CANCEL_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_cancel, sig)
            except (NotImplementedError, RuntimeError, ValueError):
                logger.debug("Cannot install a handler for %s", sig.name)
                continue
            installed.append(sig)
        try:
            yield
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

    async def run(self, options: RunOptions | None = None) -> RunSummary:
        options = options or RunOptions()
        started_at = _utcnow_iso()
        self._quorums_verified = False
        with self._signal_handlers():
            try:
                with self.lock_manager.hold(self.identity):
                    return await self._run_locked(options, started_at)
            except LockedError as exc:
                logger.info("Execution is locked by %s at %s", exc.owner, exc.created_at)
                return RunSummary(
                    tag="",
                    commit="",
                    started_at=started_at,
                    ended_at=_utcnow_iso(),
                    locked_by=exc.owner,
                )

    async def _run_locked(self, options: RunOptions, started_at: str) -> RunSummary:
        try:
            revision = await asyncio.to_thread(self.repository.resolve_target, options.ref)
            context = TemplateContext(
                repo_tag=revision.tag,
                repo_url=self.config.repo.url,
                repo_commit=revision.commit,
            )
            plan = plan_tasks(
                self.config,
                revision,
                work_dir=self.repository.path,
                selection=TaskSelection(
                    cli_command=options.cli_command, task_name=options.task_name
                ),
            )
            self.hooks.env = {**self.hooks.env, **plan.env}
            if self.cancelled:
                raise PipelineCancelledError("run cancelled before any task started")

            self.hooks.on_command_started(context)
            outcomes: list[Outcome] = []
            for task in plan.tasks:
                if self.cancelled:
                    raise PipelineCancelledError(f"run cancelled before task {task.name}")
                outcome = await self._run_task(task, revision, context, force=options.force)
                outcomes.append(outcome)

                if isinstance(outcome, SkippedNoNewVersion):
                    await self.hooks.on_command_skipped(context)
                elif isinstance(outcome, QuorumFailed):
                    await self.hooks.on_quorum_failed(context, outcome.quorum_name)
                    raise outcome.cause
                elif isinstance(outcome, ExecutionFailed):
                    await self.hooks.on_command_failure(context, outcome.task_name)
                    raise outcome.cause

            if any(isinstance(item, Succeeded) for item in outcomes):
                await self.hooks.on_command_success(context)
            logger.info("All done")
            return RunSummary(
                tag=revision.tag,
                commit=revision.commit,
                started_at=started_at,
                ended_at=_utcnow_iso(),
                outcomes=outcomes,
            )
        finally:
            await self.hooks.drain(self.hooks.timeout_seconds)

    def _version_gate(self, task: Task, revision: TargetRevision) -> tuple[bool, str]:
        last_succeeded = self.success_store.get(task.name)
        logger.debug(
            "Task %s: current %s, last succeeded %r, initial %r",
            task.name,
            revision.tag,
            last_succeeded,
            task.initial_baseline,
        )
        return is_new_version(revision.tag, last_succeeded, task.initial_baseline), last_succeeded

    async def _run_task(
        self,
        task: Task,
        revision: TargetRevision,
        context: TemplateContext,
        *,
        force: bool,
    ) -> Outcome:
        if force:
            try:
                record, _ = self._version_gate(task, revision)
            except VersionCheckError as exc:
                logger.warning("Task %s: version check failed on a forced run: %s", task.name, exc)
                record = False
            logger.info("Task %s: version check bypassed by --force", task.name)
        else:
            try:
                is_new, last_succeeded = self._version_gate(task, revision)
            except VersionCheckError as exc:
                logger.error("Task %s: version check error: %s", task.name, exc)
                raise VersionCheckError(f"task {task.name}: {exc}") from exc
            if not is_new:
                logger.info(
                    "Task %s: no new version found (last succeeded %s)",
                    task.name,
                    last_succeeded or "unknown",
                )
                return SkippedNoNewVersion(task_name=task.name, last_succeeded=last_succeeded)
            record = True

        if not self._quorums_verified:
            try:
                await self.quorum_verifier.check_quorums(self.config.quorums, revision)
            except QuorumError as exc:
                logger.error("Quorum verification failed: %s", exc)
                return QuorumFailed(task_name=task.name, quorum_name=exc.quorum_name, cause=exc)
            self._quorums_verified = True

        logger.info("Running task %s for %s", task.name, revision.tag)
        try:
            await self.executor.run(task, context)
        except ExecutionCancelledError as exc:
            raise PipelineCancelledError(f"task {task.name} was cancelled") from exc
        except ExecutionError as exc:
            logger.error("Task %s failed: %s", task.name, exc)
            return ExecutionFailed(task_name=task.name, cause=exc)

        if not record:
            logger.warning(
                "Task %s: %s is not newer than the last processed version, marker unchanged",
                task.name,
                revision.tag,
            )
            return Succeeded(task_name=task.name, recorded=False)
        try:
            self.success_store.set(task.name, revision.tag)
        except StateError as exc:
            raise StateError(f"error recording success for task {task.name}: {exc}") from exc
        logger.info("Task %s succeeded, last processed tag set to %s", task.name, revision.tag)
        return Succeeded(task_name=task.name)
