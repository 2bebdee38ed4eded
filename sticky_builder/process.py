"""Subprocess helpers.

This module handles:
- Running short-lived commands (optionally under sudo) and mapping failures
  onto ``CommandError`` with an ``ErrorKind``
- Supervising a long-running process whose combined output goes to a log file
- Probing for processes by name with pgrep
"""

from __future__ import annotations

import logging
import shlex
import signal
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from sticky_builder.errors import CommandError
from sticky_builder.types import ErrorKind

logger = logging.getLogger(__name__)

# Default timeout for short-lived commands (seconds)
COMMAND_TIMEOUT = 120


@dataclass
class CommandResult:
    """Result of a finished command."""

    args: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def privileged(args: list[str], use_sudo: bool) -> list[str]:
    """Prefix ``args`` with sudo when requested."""
    return ["sudo", *args] if use_sudo else list(args)


def last_line(text: str) -> str:
    """Return the last non-empty line of ``text``, used for error messages."""
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return lines[-1] if lines else ""


def run_command(
    args: list[str],
    *,
    check: bool = True,
    timeout: float | None = COMMAND_TIMEOUT,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run a command to completion and capture its output.

    Args:
        args: Command and arguments.
        check: Raise CommandError on a non-zero exit code.
        timeout: Seconds before the command is killed.
        env: Optional full environment for the child.

    Returns:
        CommandResult with exit code and decoded output.

    Raises:
        CommandError: If the command cannot be started, times out, or
            (with ``check``) exits non-zero.
    """
    cmd_str = shlex.join(args)
    logger.debug("Running: %s", cmd_str)

    try:
        completed = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise CommandError(
            f"Command timed out after {timeout}s: {cmd_str}",
            kind=ErrorKind.TIMEOUT,
            code="command_timeout",
        ) from e
    except OSError as e:
        raise CommandError(
            f"Failed to execute {cmd_str}: {e}",
            code="execution_error",
        ) from e

    result = CommandResult(
        args=list(args),
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )

    if check and not result.ok:
        detail = last_line(result.stderr) or f"exit code {result.returncode}"
        raise CommandError(
            f"{cmd_str} failed: {detail}",
            returncode=result.returncode,
            stderr=result.stderr,
        )

    return result


def find_pids(name: str) -> list[int]:
    """Return the PIDs of processes named ``name`` (empty when none).

    Raises:
        CommandError: If pgrep itself fails (exit codes other than 0 and 1).
    """
    result = run_command(["pgrep", name], check=False)
    if result.returncode == 1:
        return []
    if not result.ok:
        raise CommandError(
            f"pgrep {name} failed: {last_line(result.stderr)}",
            returncode=result.returncode,
            stderr=result.stderr,
        )
    return [int(pid) for pid in result.stdout.split() if pid.isdigit()]


class SupervisedProcess:
    """A long-running child process with its output sent to a log file.

    A detached process is started in its own session so it survives the
    parent exiting; otherwise it stays in the parent's process group.
    """

    def __init__(self, args: list[str], log_path: Path, detached: bool = False):
        self.args = list(args)
        self.log_path = log_path
        self.detached = detached
        self._proc: subprocess.Popen[bytes] | None = None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    def start(self) -> None:
        """Start the process, appending its combined output to the log.

        Raises:
            CommandError: If the process cannot be started.
        """
        if self._proc is not None:
            raise RuntimeError("process already started")

        cmd_str = shlex.join(self.args)
        logger.info("Starting %s (log: %s)", cmd_str, self.log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            with self.log_path.open("ab") as log_file:
                started = datetime.now(timezone.utc).isoformat()
                log_file.write(f"# Command: {cmd_str}\n# Started: {started}\n".encode())
                log_file.flush()
                self._proc = subprocess.Popen(
                    self.args,
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    start_new_session=self.detached,
                )
        except OSError as e:
            raise CommandError(
                f"Failed to start {cmd_str}: {e}",
                code="execution_error",
            ) from e

    def poll(self) -> int | None:
        """Return the exit code if the process has exited, else None."""
        if self._proc is None:
            return None
        return self._proc.poll()

    def send_signal(self, sig: int = signal.SIGTERM) -> None:
        if self._proc is not None and self._proc.poll() is None:
            self._proc.send_signal(sig)

    def wait(self, timeout: float | None = None) -> int:
        """Wait for the process to exit.

        Raises:
            subprocess.TimeoutExpired: If it is still running after ``timeout``.
        """
        if self._proc is None:
            raise RuntimeError("process not started")
        return self._proc.wait(timeout=timeout)


__all__ = [
    "COMMAND_TIMEOUT",
    "CommandResult",
    "SupervisedProcess",
    "find_pids",
    "last_line",
    "privileged",
    "run_command",
]
