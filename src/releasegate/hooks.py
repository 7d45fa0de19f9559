from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence

from releasegate.config import HooksConfig
from releasegate.executor import ExecutionError, ScriptExecutor
from releasegate.templates import TemplateContext

logger = logging.getLogger(__name__)


class HookRunner:
    """Fires operator hooks at pipeline transitions.

    A hook failure is only ever logged: hooks never change a run's outcome.
    ``on_command_started`` runs in the background and is bounded by ``drain``.
    """

    def __init__(
        self,
        hooks: HooksConfig,
        executor: ScriptExecutor,
        *,
        env: Mapping[str, str] | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.hooks = hooks
        self.executor = executor
        self.env = dict(env or {})
        self.timeout_seconds = timeout_seconds
        self._background: set[asyncio.Task[bool]] = set()

    async def _run(
        self, name: str, commands: Sequence[str] | None, context: TemplateContext
    ) -> bool:
        if not commands:
            return False
        logger.info("Running %s hook", name)
        try:
            await asyncio.wait_for(
                self.executor.run_commands(commands, self.env, context, label=f"{name} hook"),
                timeout=self.timeout_seconds,
            )
        except TimeoutError:
            logger.warning("%s hook timed out after %.1fs", name, self.timeout_seconds)
            return False
        except ExecutionError as exc:
            logger.warning("%s hook execution error: %s", name, exc)
            return False
        return True

    def on_command_started(self, context: TemplateContext) -> asyncio.Task[bool] | None:
        if not self.hooks.on_command_started:
            return None
        task = asyncio.create_task(
            self._run("onCommandStarted", self.hooks.on_command_started, context),
            name="releasegate-on-command-started",
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def on_quorum_failed(self, context: TemplateContext, quorum_name: str) -> bool:
        return await self._run(
            "onQuorumFailure", self.hooks.on_quorum_failure, context.with_failed_quorum(quorum_name)
        )

    async def on_command_skipped(self, context: TemplateContext) -> bool:
        return await self._run("onCommandSkipped", self.hooks.on_command_skipped, context)

    async def on_command_failure(self, context: TemplateContext, task_name: str) -> bool:
        return await self._run(
            "onCommandFailure", self.hooks.on_command_failure, context.with_failed_task(task_name)
        )

    async def on_command_success(self, context: TemplateContext) -> bool:
        return await self._run("onCommandSuccess", self.hooks.on_command_success, context)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for background hooks, cancelling any that outlive ``timeout``."""
        if not self._background:
            return
        pending_tasks = set(self._background)
        _, pending = await asyncio.wait(pending_tasks, timeout=timeout)
        for task in pending:
            logger.warning("Cancelling background hook %s", task.get_name())
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
