from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Mapping, Sequence
from pathlib import Path

from releasegate.errors import ReleaseGateError
from releasegate.tasks import Task
from releasegate.templates import TemplateContext, render_all, render_env

logger = logging.getLogger(__name__)
output_logger = logging.getLogger("releasegate.executor.output")

STREAM_CHUNK_BYTES = 64 * 1024
# Longer lines are logged in pieces of this size.
MAX_LINE_BYTES = 1024 * 1024


class ExecutionError(ReleaseGateError):
    """Raised when a script exits non-zero or cannot be started."""

    def __init__(
        self,
        message: str,
        *,
        task_name: str | None = None,
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.task_name = task_name
        self.exit_code = exit_code
        self.stderr = stderr


class ExecutionCancelledError(ExecutionError):
    """Raised when the run was cancelled while a script was executing."""


def build_script(commands: Sequence[str]) -> str:
    return "set -e\n" + "\n".join(commands)


class ScriptExecutor:
    """Runs command lists as one fail-fast shell script in a child process group."""

    def __init__(
        self,
        work_dir: Path | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
        kill_grace_seconds: float = 5.0,
        shell: str = "sh",
    ) -> None:
        self.work_dir = work_dir
        self.cancel_event = cancel_event
        self.kill_grace_seconds = kill_grace_seconds
        self.shell = shell

    def prepare(
        self,
        commands: Sequence[str],
        env: Mapping[str, str],
        context: TemplateContext,
    ) -> tuple[str, dict[str, str]]:
        variables = context.as_vars()
        script = build_script(render_all(commands, variables))
        process_env = os.environ.copy()
        process_env.update(render_env(env, variables))
        return script, process_env

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    async def run(self, task: Task, context: TemplateContext) -> None:
        try:
            await self.run_commands(task.commands, task.env, context, label=f"task {task.name}")
        except ExecutionError as exc:
            exc.task_name = task.name
            raise

    async def run_commands(
        self,
        commands: Sequence[str],
        env: Mapping[str, str],
        context: TemplateContext,
        *,
        label: str = "script",
    ) -> None:
        script, process_env = self.prepare(commands, env, context)
        if self.cancelled:
            raise ExecutionCancelledError(f"{label} not started: run was cancelled")

        try:
            process = await asyncio.create_subprocess_exec(
                self.shell,
                "-c",
                script,
                cwd=str(self.work_dir) if self.work_dir else None,
                env=process_env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            raise ExecutionError(f"error starting {label}: {exc}") from exc

        logger.debug("Started %s (pid %s)", label, process.pid)
        io_task = asyncio.ensure_future(
            asyncio.gather(self._stream_stdout(process), self._read_stderr(process))
        )
        cancel_wait = (
            asyncio.ensure_future(self.cancel_event.wait()) if self.cancel_event else None
        )
        try:
            waiters = {io_task} if cancel_wait is None else {io_task, cancel_wait}
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            if not io_task.done():
                logger.warning("Cancellation requested, terminating %s", label)
                await self._terminate(process)
                raise ExecutionCancelledError(
                    f"{label} was terminated by a cancellation request",
                    exit_code=process.returncode,
                )
            _, stderr_output = io_task.result()
            return_code = await process.wait()
        except asyncio.CancelledError:
            await self._terminate(process)
            raise
        except (OSError, ValueError) as exc:
            await self._terminate(process)
            raise ExecutionError(f"error reading output of {label}: {exc}") from exc
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()
            if not io_task.done():
                io_task.cancel()

        if return_code != 0:
            if stderr_output:
                logger.error("executing error: %s", stderr_output)
            message = f"error executing {label}: exit code {return_code}"
            if stderr_output:
                message = f"{message}: {stderr_output}"
            raise ExecutionError(message, exit_code=return_code, stderr=stderr_output)

    @staticmethod
    def _log_line(raw_line: bytes) -> None:
        output_logger.info("%s", raw_line.decode("utf-8", errors="replace").rstrip("\r"))

    @classmethod
    async def _stream_stdout(cls, process: asyncio.subprocess.Process) -> None:
        if process.stdout is None:
            return
        pending = b""
        while chunk := await process.stdout.read(STREAM_CHUNK_BYTES):
            pending += chunk
            *lines, pending = pending.split(b"\n")
            for line in lines:
                cls._log_line(line)
            while len(pending) >= MAX_LINE_BYTES:
                cls._log_line(pending[:MAX_LINE_BYTES])
                pending = pending[MAX_LINE_BYTES:]
        if pending:
            cls._log_line(pending)

    @staticmethod
    async def _read_stderr(process: asyncio.subprocess.Process) -> str:
        if process.stderr is None:
            return ""
        return (await process.stderr.read()).decode("utf-8", errors="replace").strip()

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        self._signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace_seconds)
        except TimeoutError:
            logger.warning("Process %s ignored SIGTERM, killing it", process.pid)
            self._signal_group(process, signal.SIGKILL)
            await process.wait()

    @staticmethod
    def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            return
        except PermissionError:
            process.send_signal(sig)
