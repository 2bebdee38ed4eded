"""Supervision of the buildkitd daemon.

State machine::

    NOT_STARTED -> STARTING -> READY -> SHUTTING_DOWN -> STOPPED
                      |
                      +-> FAILED (start or readiness timeout)

At most one daemon may run per session: ``start`` refuses when a buildkitd
process already exists and ``shutdown`` waits until none is left.
"""

from __future__ import annotations

import logging
import signal
from pathlib import Path

from sticky_builder.daemon.config import build_daemon_config, write_daemon_config
from sticky_builder.errors import (
    CommandError,
    DaemonError,
    DaemonStartError,
    DaemonStartTimeout,
    ShutdownTimeout,
    WorkersNotReady,
)
from sticky_builder.process import (
    SupervisedProcess,
    find_pids,
    privileged,
    run_command,
)
from sticky_builder.retry import PollTimeout, monotonic, poll_until
from sticky_builder.types import DaemonState

logger = logging.getLogger(__name__)

DAEMON_NAME = "buildkitd"

DEFAULT_ADDRESS = "tcp://127.0.0.1:1234"

# Interval between process presence probes (seconds)
PROCESS_POLL_INTERVAL = 0.3

# Interval between worker list queries (seconds)
WORKERS_POLL_INTERVAL = 1.0

DAEMON_FLAGS = [
    "--debug",
    "--allow-insecure-entitlement",
    "security.insecure",
    "--allow-insecure-entitlement",
    "network.host",
]


class DaemonSupervisor:
    """Starts, health-checks, prunes and stops buildkitd."""

    def __init__(
        self,
        root: Path,
        config_path: Path,
        log_path: Path,
        address: str = DEFAULT_ADDRESS,
        registry_mirror: str | None = None,
        use_sudo: bool = True,
        start_timeout: float = 10.0,
        ready_timeout: float = 30.0,
        shutdown_timeout: float = 10.0,
        cache_keep_hours: int = 7 * 24,
    ):
        self.root = root
        self.config_path = config_path
        self.log_path = log_path
        self.address = address
        self.registry_mirror = registry_mirror
        self.use_sudo = use_sudo
        self.start_timeout = start_timeout
        self.ready_timeout = ready_timeout
        self.shutdown_timeout = shutdown_timeout
        self.cache_keep_hours = cache_keep_hours
        self.state = DaemonState.NOT_STARTED
        self._process: SupervisedProcess | None = None

    @property
    def process(self) -> SupervisedProcess | None:
        return self._process

    def is_running(self) -> bool:
        """Whether a buildkitd process exists on the host."""
        return bool(find_pids(DAEMON_NAME))

    def start(self, parallelism: int, bind_address: str, detached: bool = False) -> str:
        """Write the configuration and launch buildkitd.

        Args:
            parallelism: Worker concurrency.
            bind_address: gRPC address to bind.
            detached: Let the daemon outlive this process.

        Returns:
            The address the daemon is bound to.

        Raises:
            DaemonStartError: A daemon is already running or the process died.
            DaemonStartTimeout: The process did not appear in time.
        """
        if self.state in (DaemonState.STARTING, DaemonState.READY):
            raise DaemonError(f"buildkitd already {self.state.value}")
        if self.is_running():
            raise DaemonStartError("buildkitd is already running")

        self.state = DaemonState.STARTING
        self.address = bind_address
        config = build_daemon_config(
            root=self.root,
            address=bind_address,
            parallelism=parallelism,
            registry_mirror=self.registry_mirror,
        )
        try:
            write_daemon_config(self.config_path, config)
        except OSError as e:
            self.state = DaemonState.FAILED
            raise DaemonStartError(f"Error writing buildkitd configuration: {e}") from e

        args = privileged(
            [DAEMON_NAME, f"--config={self.config_path}", *DAEMON_FLAGS],
            self.use_sudo,
        )
        process = SupervisedProcess(args, self.log_path, detached=detached)
        try:
            process.start()
        except CommandError as e:
            self.state = DaemonState.FAILED
            raise DaemonStartError(f"Failed to start buildkitd: {e}") from e
        self._process = process

        def probe() -> list[int]:
            returncode = process.poll()
            if returncode is not None and returncode != 0:
                raise DaemonStartError(
                    f"buildkitd exited with code {returncode}, see {self.log_path}"
                )
            return find_pids(DAEMON_NAME)

        try:
            pids = poll_until(
                probe,
                bool,
                interval=PROCESS_POLL_INTERVAL,
                timeout=self.start_timeout,
                description="buildkitd to start",
                tolerate=(CommandError,),
            )
        except PollTimeout as e:
            self.state = DaemonState.FAILED
            raise DaemonStartTimeout(self.start_timeout) from e
        except DaemonStartError:
            self.state = DaemonState.FAILED
            raise

        logger.info(
            "buildkitd daemon started successfully with PID %s",
            " ".join(str(p) for p in pids),
        )
        return bind_address

    def list_workers(self) -> list[str]:
        """Worker rows of `buildctl debug workers`, header excluded.

        Raises:
            CommandError: If the daemon cannot be queried.
        """
        result = run_command(
            privileged(
                ["buildctl", "--addr", self.address, "debug", "workers"], self.use_sudo
            )
        )
        lines = [line for line in result.stdout.strip().splitlines() if line.strip()]
        return lines[1:]

    def count_workers(self) -> int:
        return len(self.list_workers())

    def wait_ready(self, required_workers: int = 1) -> int:
        """Wait until at least ``required_workers`` workers are registered.

        Returns:
            The observed worker count.

        Raises:
            WorkersNotReady: Deadline exceeded; carries the last count seen.
        """
        try:
            count = poll_until(
                self.count_workers,
                lambda n: n >= required_workers,
                interval=WORKERS_POLL_INTERVAL,
                timeout=self.ready_timeout,
                description="buildkit workers",
                tolerate=(CommandError,),
            )
        except PollTimeout as e:
            self.state = DaemonState.FAILED
            last_count = e.last_value if isinstance(e.last_value, int) else 0
            error = WorkersNotReady(last_count, required_workers, self.ready_timeout)
            logger.warning("%s", error)
            raise error from e

        self.state = DaemonState.READY
        logger.info("Found %d workers, required %d", count, required_workers)
        return count

    def prune_cache(self) -> None:
        """Evict cache entries older than the retention window.

        No size limit is passed; the storage layer enforces volume size.

        Raises:
            CommandError: If buildctl prune fails.
        """
        run_command(
            privileged(
                [
                    "buildctl",
                    "--addr",
                    self.address,
                    "prune",
                    "--keep-duration",
                    f"{self.cache_keep_hours}h",
                    "--all",
                ],
                self.use_sudo,
            )
        )
        logger.debug("Successfully pruned buildkit cache")

    def shutdown(self) -> float | None:
        """Terminate buildkitd and wait for it to exit.

        Returns:
            Seconds the shutdown took, or None if no daemon was running.

        Raises:
            ShutdownTimeout: The daemon was still alive after the deadline.
        """
        if not self.is_running():
            logger.debug("buildkitd is not running")
            self.state = DaemonState.STOPPED
            return None

        self.state = DaemonState.SHUTTING_DOWN
        started = monotonic()
        if self._process is not None and not self.use_sudo:
            self._process.send_signal(signal.SIGTERM)
        else:
            run_command(
                privileged(["pkill", "-TERM", DAEMON_NAME], self.use_sudo), check=False
            )

        try:
            poll_until(
                self.is_running,
                lambda running: not running,
                interval=PROCESS_POLL_INTERVAL,
                timeout=self.shutdown_timeout,
                description="buildkitd to exit",
                tolerate=(CommandError,),
            )
        except PollTimeout as e:
            self.state = DaemonState.FAILED
            raise ShutdownTimeout(self.shutdown_timeout) from e

        if self._process is not None:
            self._process.poll()
        self.state = DaemonState.STOPPED
        duration = monotonic() - started
        logger.info("buildkitd stopped after %.2fs", duration)
        return duration


__all__ = [
    "DAEMON_FLAGS",
    "DAEMON_NAME",
    "DEFAULT_ADDRESS",
    "DaemonSupervisor",
]
