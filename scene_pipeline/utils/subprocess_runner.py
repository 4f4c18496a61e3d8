"""Subprocess runner with timeouts, forced termination and cancellation."""

import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional

from scene_pipeline.core.config import Settings
from scene_pipeline.core.exceptions import (
    CommandFailedError,
    CommandTimeoutError,
    PipelineCancelled,
    ResourceExhausted,
)
from scene_pipeline.models.context import CancellationToken
from scene_pipeline.utils.path_validator import validate_argument, validate_media_path

MAX_OUTPUT_LINES = 1000
ERROR_TAIL_LINES = 5
TERMINATE_GRACE_SECONDS = 3.0

# SIGKILL from the OOM killer shows up as 137 through a shell and -9 directly
OOM_EXIT_CODES = (137, -9)


@dataclass
class MediaCommand:
    """An encoder invocation: argument vector plus its declared timeout."""

    argv: list[str]
    timeout_seconds: float
    task_name: str
    input_paths: list[str] = field(default_factory=list)
    output_path: Optional[str] = None


@dataclass
class CommandResult:
    """Result of a subprocess execution."""

    returncode: int
    output_lines: list[str]
    elapsed_seconds: float

    @property
    def output(self) -> str:
        return "\n".join(self.output_lines)


def is_oom_exit(returncode: Optional[int]) -> bool:
    return returncode in OOM_EXIT_CODES


class CommandRunner:
    """Runs MediaCommands one at a time per call, killing them on timeout or cancellation."""

    def __init__(self, settings: Settings, logger: Any):
        """
        Initialize the runner.

        Args:
            settings: Application settings
            logger: Logger instance
        """
        self.settings = settings
        self.logger = logger

    def validate(self, command: MediaCommand) -> None:
        """Sanitize every argument and every declared media path."""
        for arg in command.argv:
            validate_argument(arg)
        for path in command.input_paths:
            validate_media_path(path, self.settings.allowed_media_roots)
        if command.output_path:
            validate_media_path(command.output_path, self.settings.allowed_media_roots)

    def run(
        self,
        command: MediaCommand,
        cancellation: Optional[CancellationToken] = None,
        check: bool = True,
    ) -> CommandResult:
        """
        Run a command, merging stderr into stdout.

        Args:
            command: Command to run
            cancellation: Optional token; cancelling kills the process
            check: Raise on non-zero exit

        Returns:
            CommandResult

        Raises:
            CommandTimeoutError: If the timeout elapses (process is killed first)
            ResourceExhausted: If the process was killed by the OS (exit 137 / signal 9)
            CommandFailedError: On any other non-zero exit when check is True
            PipelineCancelled: If the token was cancelled while running
        """
        self.validate(command)
        if cancellation is not None:
            cancellation.raise_if_cancelled()

        self.logger.debug(f"Running {command.task_name}: {' '.join(command.argv)}")
        start_time = time.time()

        try:
            process = subprocess.Popen(
                command.argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as e:
            raise CommandFailedError(command.task_name, 127, str(e)) from e

        lines: deque[str] = deque(maxlen=MAX_OUTPUT_LINES)
        reader = threading.Thread(target=self._drain, args=(process, lines), daemon=True)
        reader.start()

        def kill() -> None:
            self._terminate(process)

        if cancellation is not None:
            cancellation.add_callback(kill)

        try:
            try:
                returncode = process.wait(timeout=command.timeout_seconds)
            except subprocess.TimeoutExpired as e:
                self.logger.warning(f"{command.task_name} exceeded {command.timeout_seconds:.0f}s, killing process")
                self._terminate(process)
                raise CommandTimeoutError(command.task_name, command.timeout_seconds) from e
        finally:
            if cancellation is not None:
                cancellation.remove_callback(kill)
            reader.join(timeout=TERMINATE_GRACE_SECONDS)

        elapsed = time.time() - start_time
        result = CommandResult(returncode=returncode, output_lines=list(lines), elapsed_seconds=elapsed)

        if cancellation is not None and cancellation.cancelled:
            raise PipelineCancelled(f"{command.task_name} cancelled")

        if returncode != 0:
            tail = " | ".join(result.output_lines[-ERROR_TAIL_LINES:])
            self.logger.error(f"❌ {command.task_name} exited with code {returncode} after {elapsed:.2f}s")
            if is_oom_exit(returncode):
                raise ResourceExhausted(f"{command.task_name} killed by the OS (exit {returncode})", returncode)
            if check:
                raise CommandFailedError(command.task_name, returncode, tail)
        else:
            self.logger.debug(f"✅ {command.task_name} completed in {elapsed:.2f}s")

        return result

    @staticmethod
    def _drain(process: subprocess.Popen, lines: deque) -> None:
        for line in process.stdout:
            lines.append(line.rstrip("\n"))
        process.stdout.close()

    @staticmethod
    def _terminate(process: subprocess.Popen) -> None:
        """Terminate, then escalate to kill if the process lingers."""
        if process.poll() is not None:
            return
        try:
            process.terminate()
            process.wait(timeout=TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
        except ProcessLookupError:
            return
