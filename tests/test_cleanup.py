"""Tests for cleanup.py: the main and exit-time cleanup passes."""

from unittest.mock import MagicMock, patch

import pytest

from sticky_builder.cleanup import (
    SHUTDOWN_METRIC,
    CleanupCoordinator,
    LeaseReleaseConfig,
)
from sticky_builder.errors import ControlPlaneError, ShutdownTimeout
from sticky_builder.session import BuildSession, Lease
from sticky_builder.types import BuildStatus, ErrorKind
from sticky_builder.volume.integrity import IntegrityReport

CLEANUP = "sticky_builder.cleanup"


@pytest.fixture
def supervisor() -> MagicMock:
    supervisor = MagicMock()
    supervisor.is_running.return_value = True
    supervisor.shutdown.return_value = 1.5
    return supervisor


@pytest.fixture
def mounter() -> MagicMock:
    mounter = MagicMock()
    mounter.is_mounted.return_value = True
    return mounter


@pytest.fixture
def agent() -> MagicMock:
    return MagicMock()


@pytest.fixture
def tasks() -> MagicMock:
    return MagicMock()


@pytest.fixture
def coordinator(supervisor, mounter, agent, tasks, tmp_path) -> CleanupCoordinator:
    return CleanupCoordinator(
        supervisor=supervisor,
        mounter=mounter,
        mount_point=tmp_path / "buildkit",
        record_dir=tmp_path / "records",
        release=LeaseReleaseConfig(
            sticky_disk_key="acme/widgets", vm_id="vm-1", repo_name="acme/widgets"
        ),
        agent=agent,
        tasks=tasks,
    )


@pytest.fixture(autouse=True)
def healthy_volume():
    with patch(
        f"{CLEANUP}.validate_volume_state", return_value=IntegrityReport(healthy=True)
    ) as validate:
        yield validate


def leased_session(**kwargs) -> BuildSession:
    return BuildSession(
        lease=Lease(expose_id="exp-1", build_id="task-1", device="/dev/vdb"),
        mounted=True,
        daemon_started=True,
        **kwargs,
    )


def outcome(outcomes, name):
    return next(o for o in outcomes if o.name == name)


class TestMainPass:
    """Tests for CleanupCoordinator.run_main_pass."""

    def test_successful_build(self, coordinator, supervisor, mounter, agent, tasks):
        """A successful build is completed and the volume committed."""
        session = leased_session(build_status=BuildStatus.SUCCESS, build_ref="b/ref")
        session.builder_launch_time = 2.5

        with patch(f"{CLEANUP}.buildx.export_build_record") as export:
            outcomes = coordinator.run_main_pass(session)

        assert [o.name for o in outcomes] == [
            "export_build_record",
            "stop_daemon",
            "leave_overlay",
            "unmount_volume",
            "release_lease",
        ]
        assert all(o.ok for o in outcomes)
        export.assert_called_once()
        supervisor.prune_cache.assert_called_once()
        supervisor.shutdown.assert_called_once()
        mounter.unmount.assert_called_once()
        tasks.complete.assert_called_once_with("task-1", 2.5)
        agent.commit_sticky_disk.assert_called_once()
        assert agent.commit_sticky_disk.call_args.kwargs["should_commit"] is True
        assert session.lease_released is True
        assert session.metrics[SHUTDOWN_METRIC] == 1.5
        agent.report_metric.assert_called_once_with(SHUTDOWN_METRIC, 1.5)

    def test_failed_build_is_reported(self, coordinator, agent, tasks):
        """A failed build is reported as failed; the volume is still committed."""
        session = leased_session(build_status=BuildStatus.FAILURE)
        coordinator.run_main_pass(session)
        tasks.fail.assert_called_once_with("task-1")
        tasks.complete.assert_not_called()
        assert agent.commit_sticky_disk.call_args.kwargs["should_commit"] is True

    def test_empty_lease_is_never_released(self, coordinator, agent, tasks):
        """Without an acquired lease nothing is reported or committed."""
        session = BuildSession(lease=Lease(), build_status=BuildStatus.FAILURE)
        outcomes = coordinator.run_main_pass(session)

        assert outcome(outcomes, "release_lease").skipped
        agent.commit_sticky_disk.assert_not_called()
        tasks.complete.assert_not_called()
        tasks.fail.assert_not_called()

    def test_no_build_reference_skips_export(self, coordinator):
        """Without a build reference the record export is skipped."""
        with patch(f"{CLEANUP}.buildx.export_build_record") as export:
            outcomes = coordinator.run_main_pass(leased_session())
        export.assert_not_called()
        assert outcome(outcomes, "export_build_record").skipped

    def test_prune_failure_still_stops_daemon(self, coordinator, supervisor):
        """A failed prune should not prevent the shutdown."""
        supervisor.prune_cache.side_effect = RuntimeError("prune failed")
        outcomes = coordinator.run_main_pass(leased_session())
        supervisor.shutdown.assert_called_once()
        assert outcome(outcomes, "stop_daemon").ok

    def test_daemon_still_running_skips_unmount(
        self, coordinator, supervisor, mounter, agent
    ):
        """If the daemon cannot be stopped the volume is not unmounted or committed."""
        supervisor.shutdown.side_effect = ShutdownTimeout(10)
        session = leased_session(build_status=BuildStatus.SUCCESS)

        outcomes = coordinator.run_main_pass(session)

        assert not outcome(outcomes, "stop_daemon").ok
        assert not outcome(outcomes, "unmount_volume").ok
        mounter.unmount.assert_not_called()
        assert agent.commit_sticky_disk.call_args.kwargs["should_commit"] is False

    def test_unhealthy_volume_released_without_commit(
        self, coordinator, agent, healthy_volume
    ):
        """An integrity failure should release the disk without committing."""
        healthy_volume.return_value = IntegrityReport(
            healthy=False, problems=["database file cache.db is 0 bytes"]
        )
        session = leased_session(build_status=BuildStatus.SUCCESS)
        coordinator.run_main_pass(session)
        assert session.volume_healthy is False
        assert agent.commit_sticky_disk.call_args.kwargs["should_commit"] is False

    def test_integrity_check_uses_sudo(self, coordinator, healthy_volume, tmp_path):
        """The integrity check should inspect the mount with sudo."""
        coordinator.run_main_pass(leased_session(build_status=BuildStatus.SUCCESS))
        healthy_volume.assert_called_once_with(
            tmp_path / "buildkit", daemon_running=False, use_sudo=True
        )

    def test_unmount_failure_does_not_stop_release(self, coordinator, mounter, agent):
        """Every step runs even when an earlier one fails."""
        mounter.unmount.side_effect = RuntimeError("busy")
        session = leased_session(build_status=BuildStatus.SUCCESS)
        outcomes = coordinator.run_main_pass(session)
        assert not outcome(outcomes, "unmount_volume").ok
        assert outcome(outcomes, "release_lease").ok
        assert agent.commit_sticky_disk.call_args.kwargs["should_commit"] is False

    def test_nothing_running_or_mounted(self, coordinator, supervisor, mounter):
        """Cleanup after an early failure should skip the local steps."""
        supervisor.is_running.return_value = False
        mounter.is_mounted.return_value = False
        outcomes = coordinator.run_main_pass(BuildSession())
        assert all(o.ok for o in outcomes)
        supervisor.shutdown.assert_not_called()
        mounter.unmount.assert_not_called()

    def test_report_failure_still_commits(self, coordinator, agent, tasks):
        """A failed outcome report should not prevent releasing the disk."""
        tasks.complete.side_effect = ControlPlaneError("down", ErrorKind.TRANSIENT)
        session = leased_session(build_status=BuildStatus.SUCCESS)
        outcomes = coordinator.run_main_pass(session)
        agent.commit_sticky_disk.assert_called_once()
        assert session.lease_released is True
        assert not outcome(outcomes, "release_lease").ok

    def test_release_is_idempotent(self, coordinator, agent):
        """A released lease is not committed twice."""
        session = leased_session(build_status=BuildStatus.SUCCESS)
        coordinator.run_main_pass(session)
        coordinator.run_main_pass(session)
        agent.commit_sticky_disk.assert_called_once()

    def test_overlay_left_when_joined(self, coordinator):
        """A joined overlay network should be left."""
        session = leased_session(overlay_joined=True)
        with patch(f"{CLEANUP}.overlay.leave_overlay") as leave:
            coordinator.run_main_pass(session)
        leave.assert_called_once()
        assert session.overlay_joined is False


class TestExitPass:
    """Tests for CleanupCoordinator.run_exit_pass."""

    def test_setup_only_session_is_committed(
        self, coordinator, supervisor, mounter, agent, tasks
    ):
        """A provisioning-only session is torn down and committed at exit."""
        session = leased_session(setup_only=True)
        outcomes = coordinator.run_exit_pass(session)

        assert [o.name for o in outcomes] == [
            "stop_daemon",
            "leave_overlay",
            "unmount_volume",
            "commit_lease",
        ]
        supervisor.shutdown.assert_called_once()
        mounter.unmount.assert_called_once()
        agent.commit_sticky_disk.assert_called_once()
        tasks.complete.assert_not_called()
        assert session.lease_released is True

    def test_build_session_not_committed_again(self, coordinator, agent):
        """The exit pass leaves the release of build sessions to the main pass."""
        outcomes = coordinator.run_exit_pass(leased_session())
        assert outcome(outcomes, "commit_lease").skipped
        agent.commit_sticky_disk.assert_not_called()

    def test_already_stopped(self, coordinator, supervisor, mounter):
        """After the main pass the exit pass finds nothing to do."""
        supervisor.is_running.return_value = False
        mounter.is_mounted.return_value = False
        outcomes = coordinator.run_exit_pass(BuildSession(setup_only=True))
        assert all(o.skipped for o in outcomes if o.name != "leave_overlay")
        supervisor.shutdown.assert_not_called()
