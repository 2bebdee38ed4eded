"""Tests for the daemon package.

Process probes and buildctl calls are mocked; no daemon is started.
"""

import signal
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from sticky_builder.daemon.config import build_daemon_config, write_daemon_config
from sticky_builder.daemon.supervisor import DaemonSupervisor
from sticky_builder.errors import (
    CommandError,
    DaemonStartError,
    DaemonStartTimeout,
    ShutdownTimeout,
    WorkersNotReady,
)
from sticky_builder.process import CommandResult
from sticky_builder.types import DaemonState

SUPERVISOR = "sticky_builder.daemon.supervisor"


def workers_output(count: int) -> CommandResult:
    lines = ["ID\tPLATFORMS"] + [f"w{i}\tlinux/amd64" for i in range(count)]
    return CommandResult(args=[], returncode=0, stdout="\n".join(lines), stderr="")


@pytest.fixture
def supervisor(tmp_path) -> DaemonSupervisor:
    return DaemonSupervisor(
        root=tmp_path / "buildkit",
        config_path=tmp_path / "buildkitd.toml",
        log_path=tmp_path / "buildkitd.log",
        use_sudo=False,
    )


class TestDaemonConfig:
    """Tests for buildkitd configuration generation."""

    def test_basic_config(self):
        """The config should bind the address and disable automatic GC."""
        config = build_daemon_config(Path("/var/lib/buildkit"), "tcp://127.0.0.1:1234", 4)
        assert config["root"] == "/var/lib/buildkit"
        assert config["grpc"]["address"] == ["tcp://127.0.0.1:1234"]
        assert config["worker"]["oci"]["gc"] is False
        assert config["worker"]["oci"]["max-parallelism"] == 4
        assert config["worker"]["containerd"]["enabled"] is False
        assert "registry" not in config

    def test_registry_mirror(self):
        """A mirror should be configured for docker.io as insecure HTTP."""
        config = build_daemon_config(
            Path("/bk"), "tcp://127.0.0.1:1234", 2, registry_mirror="10.0.0.1:5000"
        )
        assert config["registry"]["docker.io"]["mirrors"] == ["http://10.0.0.1:5000"]
        assert config["registry"]["10.0.0.1:5000"]["insecure"] is True

    def test_write_toml(self, tmp_path):
        """The config should be written as TOML."""
        config = build_daemon_config(
            Path("/bk"), "tcp://127.0.0.1:1234", 2, registry_mirror="10.0.0.1:5000"
        )
        path = write_daemon_config(tmp_path / "sub" / "buildkitd.toml", config)
        content = path.read_text()
        assert 'root = "/bk"' in content
        assert "[worker.oci]" in content
        assert "max-parallelism = 2" in content
        assert '[registry."docker.io"]' in content


class TestStart:
    """Tests for DaemonSupervisor.start."""

    def test_start(self, fake_clock, supervisor):
        """The daemon should be started once its process appears."""
        process = MagicMock()
        process.poll.return_value = None
        with (
            patch(f"{SUPERVISOR}.find_pids", side_effect=[[], [], [], [321]]),
            patch(f"{SUPERVISOR}.SupervisedProcess", return_value=process) as cls,
        ):
            address = supervisor.start(4, "tcp://127.0.0.1:1234", detached=True)

        assert address == "tcp://127.0.0.1:1234"
        assert supervisor.state is DaemonState.STARTING
        assert supervisor.config_path.exists()
        args = cls.call_args.args[0]
        assert args[0] == "buildkitd"
        assert f"--config={supervisor.config_path}" in args
        assert cls.call_args.kwargs["detached"] is True
        assert fake_clock.sleeps == [0.3, 0.3]

    def test_refuses_second_daemon(self, supervisor):
        """Starting while a daemon is running should fail."""
        with (
            patch(f"{SUPERVISOR}.find_pids", return_value=[99]),
            patch(f"{SUPERVISOR}.SupervisedProcess") as cls,
        ):
            with pytest.raises(DaemonStartError):
                supervisor.start(4, "tcp://127.0.0.1:1234")
        cls.assert_not_called()

    def test_process_exits_early(self, fake_clock, supervisor):
        """A daemon that exits non-zero should fail the start immediately."""
        process = MagicMock()
        process.poll.return_value = 1
        with (
            patch(f"{SUPERVISOR}.find_pids", return_value=[]),
            patch(f"{SUPERVISOR}.SupervisedProcess", return_value=process),
        ):
            with pytest.raises(DaemonStartError):
                supervisor.start(4, "tcp://127.0.0.1:1234")
        assert supervisor.state is DaemonState.FAILED

    def test_start_timeout(self, fake_clock, supervisor):
        """A daemon that never appears should time out."""
        process = MagicMock()
        process.poll.return_value = None
        with (
            patch(f"{SUPERVISOR}.find_pids", return_value=[]),
            patch(f"{SUPERVISOR}.SupervisedProcess", return_value=process),
        ):
            with pytest.raises(DaemonStartTimeout):
                supervisor.start(4, "tcp://127.0.0.1:1234")
        assert supervisor.state is DaemonState.FAILED


class TestWaitReady:
    """Tests for DaemonSupervisor.wait_ready."""

    def test_ready(self, fake_clock, supervisor):
        """Readiness should be reached once enough workers are listed."""
        with patch(
            f"{SUPERVISOR}.run_command",
            side_effect=[workers_output(0), workers_output(1)],
        ):
            assert supervisor.wait_ready(1) == 1
        assert supervisor.state is DaemonState.READY

    def test_tolerates_buildctl_errors(self, fake_clock, supervisor):
        """A daemon not yet answering should be polled again."""
        with patch(
            f"{SUPERVISOR}.run_command",
            side_effect=[CommandError("connection refused"), workers_output(1)],
        ):
            assert supervisor.wait_ready(1) == 1

    def test_not_ready_carries_last_count(self, fake_clock, supervisor):
        """The timeout should report the last worker count observed."""
        with patch(f"{SUPERVISOR}.run_command", return_value=workers_output(1)):
            with pytest.raises(WorkersNotReady) as exc_info:
                supervisor.wait_ready(2)
        assert exc_info.value.last_count == 1
        assert exc_info.value.required == 2
        assert supervisor.state is DaemonState.FAILED
        assert sum(fake_clock.sleeps) == pytest.approx(30.0)


    def test_list_workers_skips_header(self, supervisor):
        """The header row should not be counted as a worker."""
        with patch(f"{SUPERVISOR}.run_command", return_value=workers_output(2)):
            assert supervisor.list_workers() == ["w0\tlinux/amd64", "w1\tlinux/amd64"]
            assert supervisor.count_workers() == 2


class TestPrune:
    """Tests for DaemonSupervisor.prune_cache."""

    def test_prune_arguments(self, supervisor):
        """Pruning should keep entries younger than the retention window."""
        with patch(f"{SUPERVISOR}.run_command") as mock_run:
            supervisor.prune_cache()
        assert mock_run.call_args.args[0] == [
            "buildctl",
            "--addr",
            "tcp://127.0.0.1:1234",
            "prune",
            "--keep-duration",
            "168h",
            "--all",
        ]


class TestShutdown:
    """Tests for DaemonSupervisor.shutdown."""

    def test_not_running(self, supervisor):
        """Shutting down without a daemon should do nothing."""
        with (
            patch(f"{SUPERVISOR}.find_pids", return_value=[]),
            patch(f"{SUPERVISOR}.run_command") as mock_run,
        ):
            assert supervisor.shutdown() is None
        mock_run.assert_not_called()
        assert supervisor.state is DaemonState.STOPPED

    def test_pkill_under_sudo(self, fake_clock, tmp_path):
        """With sudo the daemon should be signalled through pkill."""
        supervisor = DaemonSupervisor(
            root=tmp_path, config_path=tmp_path / "c.toml", log_path=tmp_path / "l"
        )
        with (
            patch(f"{SUPERVISOR}.find_pids", side_effect=[[5], [5], []]),
            patch(f"{SUPERVISOR}.run_command") as mock_run,
        ):
            duration = supervisor.shutdown()

        assert mock_run.call_args.args[0] == ["sudo", "pkill", "-TERM", "buildkitd"]
        assert duration == pytest.approx(0.3)
        assert supervisor.state is DaemonState.STOPPED

    def test_signals_own_process(self, fake_clock, supervisor):
        """Without sudo the started process should receive SIGTERM."""
        process = MagicMock()
        process.poll.return_value = None
        with (
            patch(f"{SUPERVISOR}.find_pids", side_effect=[[], [7], [7], []]),
            patch(f"{SUPERVISOR}.SupervisedProcess", return_value=process),
        ):
            supervisor.start(1, "tcp://127.0.0.1:1234")
            supervisor.shutdown()
        process.send_signal.assert_called_once_with(signal.SIGTERM)

    def test_shutdown_timeout(self, fake_clock, supervisor):
        """A daemon that ignores SIGTERM should time out."""
        with (
            patch(f"{SUPERVISOR}.find_pids", return_value=[5]),
            patch(f"{SUPERVISOR}.run_command"),
        ):
            with pytest.raises(ShutdownTimeout):
                supervisor.shutdown()
        assert supervisor.state is DaemonState.FAILED
