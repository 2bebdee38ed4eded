"""Ordered, idempotent teardown of everything a session acquired.

The main pass runs after the build phase::

    1. export build record      (skipped without a build reference)
    2. prune + stop buildkitd   (skipped when no daemon is running)
    3. leave overlay network    (skipped when not joined)
    4. integrity check + unmount
    5. report build outcome and release the lease

The exit pass runs at process exit, usually in a separate ``post``
invocation: it repeats steps 2-4 and commits the lease of a provisioning-only
session, which has no build outcome to trigger the commit.

Each step is isolated; a failing step is logged and the next one still runs.
Neither pass raises, so cleanup never masks the error of the build itself.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from sticky_builder.builder import buildx, overlay
from sticky_builder.controlplane.agent import AgentClient
from sticky_builder.controlplane.tasks import BuildTaskClient
from sticky_builder.daemon.supervisor import DaemonSupervisor
from sticky_builder.session import BuildSession, Lease
from sticky_builder.types import BuildStatus, StepOutcome
from sticky_builder.volume.integrity import validate_volume_state
from sticky_builder.volume.mounter import VolumeMounter

logger = logging.getLogger(__name__)

SHUTDOWN_METRIC = "daemon_shutdown_seconds"


class _Skip(Exception):
    """Raised inside a step to mark it as skipped."""


@dataclass
class LeaseReleaseConfig:
    """Identity sent along with the commit of a sticky disk."""

    sticky_disk_key: str
    vm_id: str = ""
    repo_name: str = ""
    sticky_disk_token: str = ""


class CleanupCoordinator:
    """Runs the cleanup passes for a BuildSession."""

    def __init__(
        self,
        supervisor: DaemonSupervisor,
        mounter: VolumeMounter,
        mount_point: Path,
        record_dir: Path,
        release: LeaseReleaseConfig,
        agent: AgentClient | None = None,
        tasks: BuildTaskClient | None = None,
        use_sudo: bool = True,
    ):
        self.supervisor = supervisor
        self.mounter = mounter
        self.mount_point = mount_point
        self.record_dir = record_dir
        self.release = release
        self.agent = agent
        self.tasks = tasks
        self.use_sudo = use_sudo
        self._daemon_stopped = True

    def _step(
        self, outcomes: list[StepOutcome], name: str, action: Callable[[], None]
    ) -> StepOutcome:
        try:
            action()
        except _Skip as skip:
            logger.debug("Cleanup step %s skipped: %s", name, skip)
            outcome = StepOutcome(name=name, ok=True, skipped=True)
        except Exception as e:
            logger.error("Cleanup step %s failed: %s", name, e)
            outcome = StepOutcome(name=name, ok=False, error=str(e))
        else:
            outcome = StepOutcome(name=name, ok=True)
        outcomes.append(outcome)
        return outcome

    def run_main_pass(self, session: BuildSession) -> list[StepOutcome]:
        """Tear down after the build phase, whatever its outcome."""
        outcomes: list[StepOutcome] = []
        self._step(outcomes, "export_build_record", lambda: self._export_record(session))
        self._teardown_local(session, outcomes)
        self._step(outcomes, "release_lease", lambda: self._release_lease(session))
        return outcomes

    def run_exit_pass(self, session: BuildSession) -> list[StepOutcome]:
        """Tear down at process exit; commits provisioning-only leases."""
        outcomes: list[StepOutcome] = []
        self._teardown_local(session, outcomes)
        self._step(outcomes, "commit_lease", lambda: self._commit_setup_only(session))
        return outcomes

    def _teardown_local(
        self, session: BuildSession, outcomes: list[StepOutcome]
    ) -> None:
        self._daemon_stopped = False
        self._step(outcomes, "stop_daemon", lambda: self._stop_daemon(session))
        self._step(outcomes, "leave_overlay", lambda: self._leave_overlay(session))
        self._step(outcomes, "unmount_volume", lambda: self._unmount(session))

    def _export_record(self, session: BuildSession) -> None:
        if not session.build_ref:
            raise _Skip("no build reference")
        buildx.export_build_record(session.build_ref, self.record_dir)

    def _stop_daemon(self, session: BuildSession) -> None:
        if not self.supervisor.is_running():
            self._daemon_stopped = True
            raise _Skip("buildkitd is not running")

        try:
            self.supervisor.prune_cache()
        except Exception as e:
            logger.warning("Error pruning buildkit cache: %s", e)

        duration = self.supervisor.shutdown()
        self._daemon_stopped = True
        session.daemon_started = False
        if duration is not None:
            session.record_metric(SHUTDOWN_METRIC, duration)
            self._report_metric(SHUTDOWN_METRIC, duration)

    def _report_metric(self, name: str, value: float) -> None:
        if self.agent is None:
            return
        try:
            self.agent.report_metric(name, value)
        except Exception as e:
            logger.debug("Could not report metric %s: %s", name, e)

    def _leave_overlay(self, session: BuildSession) -> None:
        if not session.overlay_joined:
            raise _Skip("overlay network not joined")
        overlay.leave_overlay(self.use_sudo)
        session.overlay_joined = False

    def _unmount(self, session: BuildSession) -> None:
        if not self._daemon_stopped:
            # The daemon holds open files on the mount
            session.volume_healthy = False
            raise RuntimeError("buildkitd may still be running, not unmounting")
        if not self.mounter.is_mounted(self.mount_point):
            session.mounted = False
            raise _Skip(f"nothing mounted at {self.mount_point}")

        report = validate_volume_state(
            self.mount_point, daemon_running=False, use_sudo=self.use_sudo
        )
        session.volume_healthy = report.healthy
        try:
            self.mounter.unmount(self.mount_point)
        except Exception:
            session.volume_healthy = False
            raise
        session.mounted = False

    def _release_lease(self, session: BuildSession) -> None:
        lease = self._unreleased_lease(session)

        report_error: Exception | None = None
        try:
            self._report_outcome(session, lease)
        except Exception as e:
            logger.warning("Error reporting build outcome: %s", e)
            report_error = e

        self._commit(session, lease)
        if report_error is not None:
            raise report_error

    def _unreleased_lease(self, session: BuildSession) -> Lease:
        lease = session.acquired_lease()
        if lease is None:
            raise _Skip("no sticky disk was acquired")
        if session.lease_released:
            raise _Skip("lease already released")
        return lease

    def _report_outcome(self, session: BuildSession, lease: Lease) -> None:
        build_id = lease.build_id
        if not build_id or self.tasks is None or session.build_status is None:
            return
        if session.build_status is BuildStatus.SUCCESS:
            self.tasks.complete(build_id, session.builder_launch_time)
        else:
            self.tasks.fail(build_id)

    def _commit_setup_only(self, session: BuildSession) -> None:
        if not session.setup_only:
            raise _Skip("not a provisioning-only session")
        self._commit(session, self._unreleased_lease(session))

    def _commit(self, session: BuildSession, lease: Lease) -> None:
        if self.agent is None:
            raise RuntimeError("no agent client to release the sticky disk with")
        should_commit = bool(session.volume_healthy)
        if not should_commit:
            logger.warning(
                "Volume state is not healthy, releasing sticky disk %s without commit",
                lease.expose_id,
            )
        self.agent.commit_sticky_disk(
            expose_id=lease.expose_id,
            sticky_disk_key=self.release.sticky_disk_key,
            should_commit=should_commit,
            vm_id=self.release.vm_id,
            repo_name=self.release.repo_name,
            sticky_disk_token=self.release.sticky_disk_token,
        )
        session.lease_released = True
        logger.info(
            "Released sticky disk %s (committed=%s)",
            lease.expose_id,
            should_commit,
        )


__all__ = [
    "SHUTDOWN_METRIC",
    "CleanupCoordinator",
    "LeaseReleaseConfig",
]
