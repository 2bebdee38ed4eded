"""Tests for controlplane/acquire.py module."""

import stat
from unittest.mock import MagicMock

import pytest

from sticky_builder.controlplane.acquire import (
    ResourceAcquirer,
    TLSPaths,
    persist_tls_materials,
    write_secret,
)
from sticky_builder.controlplane.agent import StickyDiskResponse
from sticky_builder.errors import (
    AcquisitionDenied,
    AcquisitionError,
    AcquisitionTimeout,
    ControlPlaneError,
)
from sticky_builder.types import ErrorKind


@pytest.fixture
def tls_paths(tmp_path) -> TLSPaths:
    return TLSPaths(
        client_key=tmp_path / "client_key.pem",
        client_cert=tmp_path / "client_cert.pem",
        root_cert=tmp_path / "root_cert.pem",
    )


@pytest.fixture
def agent() -> MagicMock:
    agent = MagicMock()
    agent.get_sticky_disk.return_value = StickyDiskResponse(
        expose_id="exp-1", device="/dev/vdc"
    )
    return agent


@pytest.fixture
def tasks() -> MagicMock:
    tasks = MagicMock()
    tasks.submit.return_value = "task-1"
    tasks.get.return_value = {
        "ec2_instance": {
            "instance_ip": "10.0.0.5",
            "client_key": "KEY",
            "client_cert": "CERT",
            "root_cert": "ROOT",
        }
    }
    return tasks


def make_acquirer(agent, tasks, tls_paths) -> ResourceAcquirer:
    return ResourceAcquirer(agent, tasks, tls_paths, poll_interval=0.2, vm_id="vm-1")


class TestWriteSecret:
    """Tests for TLS material persistence."""

    def test_owner_only_permissions(self, tmp_path):
        """Secrets should be readable by the owner only."""
        path = tmp_path / "nested" / "key.pem"
        write_secret(path, "secret")
        assert path.read_text() == "secret"
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_persist_skips_missing_fields(self, tls_paths):
        """Only materials present in the instance should be written."""
        written = persist_tls_materials({"client_key": "KEY"}, tls_paths)
        assert written == [tls_paths.client_key]
        assert not tls_paths.root_cert.exists()


class TestAcquire:
    """Tests for ResourceAcquirer.acquire."""

    def test_full_acquisition(self, fake_clock, agent, tasks, tls_paths):
        """A ready builder should produce a lease with the task id."""
        result = make_acquirer(agent, tasks, tls_paths).acquire(
            "acme/widgets", "eu-central", timeout=45, entity_path="Dockerfile"
        )

        assert result.lease.expose_id == "exp-1"
        assert result.lease.build_id == "task-1"
        assert result.lease.device == "/dev/vdc"
        assert result.instance_ip == "10.0.0.5"
        assert result.builder_launch_time == 0.0
        agent.up.assert_called_once()
        tasks.submit.assert_called_once_with("Dockerfile")
        assert tls_paths.client_key.read_text() == "KEY"
        assert tls_paths.root_cert.read_text() == "ROOT"

    def test_sticky_disk_request_payload(self, fake_clock, agent, tasks, tls_paths):
        """The sticky disk should be keyed on the repository."""
        make_acquirer(agent, tasks, tls_paths).acquire("acme/widgets", "us-east", 45)
        request = agent.get_sticky_disk.call_args.args[0]
        assert request.sticky_disk_key == "acme/widgets"
        assert request.region == "us-east"
        assert request.vm_id == "vm-1"

    def test_ready_on_fourth_poll(self, fake_clock, agent, tasks, tls_paths):
        """Polling should stop at the first ready response."""
        ready = tasks.get.return_value
        tasks.get.side_effect = [{}, {}, {"ec2_instance": None}, ready]

        result = make_acquirer(agent, tasks, tls_paths).acquire("r", "eu", 45)

        assert tasks.get.call_count == 4
        assert fake_clock.sleeps == [0.2, 0.2, 0.2]
        assert result.builder_launch_time == pytest.approx(0.6)
        tasks.abandon.assert_not_called()

    def test_timeout_abandons_task(self, fake_clock, agent, tasks, tls_paths):
        """A builder that never becomes ready should be abandoned."""
        tasks.get.return_value = {"status": "pending"}

        with pytest.raises(AcquisitionTimeout) as exc_info:
            make_acquirer(agent, tasks, tls_paths).acquire("r", "eu", timeout=1)

        assert exc_info.value.task_id == "task-1"
        assert exc_info.value.kind is ErrorKind.TIMEOUT
        tasks.abandon.assert_called_once_with("task-1")
        assert not tls_paths.client_key.exists()

    def test_timeout_carries_exposed_disk(self, fake_clock, agent, tasks, tls_paths):
        """The disk exposed before the timeout should travel with the error."""
        tasks.get.return_value = {}

        with pytest.raises(AcquisitionTimeout) as exc_info:
            make_acquirer(agent, tasks, tls_paths).acquire("r", "eu", timeout=1)

        lease = exc_info.value.lease
        assert lease is not None
        assert lease.expose_id == "exp-1"
        assert lease.device == "/dev/vdc"
        assert lease.build_id is None

    def test_submit_denied_carries_exposed_disk(
        self, fake_clock, agent, tasks, tls_paths
    ):
        """A denied build task should still hand back the exposed disk."""
        tasks.submit.side_effect = ControlPlaneError("not found", ErrorKind.DENIED)

        with pytest.raises(AcquisitionDenied) as exc_info:
            make_acquirer(agent, tasks, tls_paths).acquire("r", "eu", 45)

        assert exc_info.value.lease.expose_id == "exp-1"

    def test_tls_write_failure_abandons_task(
        self, fake_clock, agent, tasks, tls_paths, tmp_path
    ):
        """Unwritable TLS paths should abandon the task and keep the lease."""
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        tls_paths.client_key = blocker / "client_key.pem"

        with pytest.raises(AcquisitionError) as exc_info:
            make_acquirer(agent, tasks, tls_paths).acquire("r", "eu", 45)

        tasks.abandon.assert_called_once_with("task-1")
        assert exc_info.value.lease.expose_id == "exp-1"

    def test_abandon_failure_does_not_hide_timeout(
        self, fake_clock, agent, tasks, tls_paths
    ):
        """An abandon error should be logged, and the timeout still raised."""
        tasks.get.return_value = {}
        tasks.abandon.side_effect = ControlPlaneError("down", ErrorKind.TRANSIENT)

        with pytest.raises(AcquisitionTimeout):
            make_acquirer(agent, tasks, tls_paths).acquire("r", "eu", timeout=1)

    def test_poll_error_abandons_task(self, fake_clock, agent, tasks, tls_paths):
        """A failing poll should abandon the task too."""
        tasks.get.side_effect = ControlPlaneError("gone", ErrorKind.FATAL)

        with pytest.raises(AcquisitionError):
            make_acquirer(agent, tasks, tls_paths).acquire("r", "eu", 45)
        tasks.abandon.assert_called_once_with("task-1")

    def test_setup_only_skips_build_task(self, fake_clock, agent, tasks, tls_paths):
        """Provisioning only should not submit a build task."""
        result = make_acquirer(agent, tasks, tls_paths).acquire(
            "r", "eu", 45, setup_only=True
        )
        assert result.lease.build_id is None
        assert result.lease.expose_id == "exp-1"
        tasks.submit.assert_not_called()

    def test_default_device(self, fake_clock, agent, tasks, tls_paths):
        """A missing device should fall back to the default device."""
        agent.get_sticky_disk.return_value = StickyDiskResponse(
            expose_id="exp-1", device=""
        )
        result = make_acquirer(agent, tasks, tls_paths).acquire(
            "r", "eu", 45, setup_only=True
        )
        assert result.lease.device == "/dev/vdb"

    def test_empty_repo_key(self, agent, tasks, tls_paths):
        """An empty repository name should be rejected before any request."""
        with pytest.raises(AcquisitionError):
            make_acquirer(agent, tasks, tls_paths).acquire("", "eu", 45)
        agent.up.assert_not_called()

    def test_agent_unreachable(self, fake_clock, agent, tasks, tls_paths):
        """A failed handshake should not be retried."""
        agent.up.side_effect = ControlPlaneError("refused", ErrorKind.TRANSIENT)
        with pytest.raises(AcquisitionError):
            make_acquirer(agent, tasks, tls_paths).acquire("r", "eu", 45)
        agent.up.assert_called_once()
        agent.get_sticky_disk.assert_not_called()

    def test_sticky_disk_retried(self, fake_clock, agent, tasks, tls_paths):
        """Transient sticky disk errors should be retried three times."""
        agent.get_sticky_disk.side_effect = ControlPlaneError(
            "unavailable", ErrorKind.TRANSIENT
        )
        with pytest.raises(AcquisitionError) as exc_info:
            make_acquirer(agent, tasks, tls_paths).acquire("r", "eu", 45)
        assert agent.get_sticky_disk.call_count == 3
        assert exc_info.value.kind is ErrorKind.TRANSIENT
        assert exc_info.value.lease is None

    def test_sticky_disk_denied(self, fake_clock, agent, tasks, tls_paths):
        """No capacity should raise AcquisitionDenied without retrying."""
        agent.get_sticky_disk.side_effect = ControlPlaneError(
            "not found", ErrorKind.DENIED
        )
        with pytest.raises(AcquisitionDenied):
            make_acquirer(agent, tasks, tls_paths).acquire("r", "eu", 45)
        assert agent.get_sticky_disk.call_count == 1

    def test_submit_denied(self, fake_clock, agent, tasks, tls_paths):
        """No builder instances should raise AcquisitionDenied."""
        tasks.submit.side_effect = ControlPlaneError("not found", ErrorKind.DENIED)
        with pytest.raises(AcquisitionDenied):
            make_acquirer(agent, tasks, tls_paths).acquire("r", "eu", 45)

    def test_missing_task_client(self, fake_clock, agent, tls_paths):
        """A full acquisition needs the build task API."""
        with pytest.raises(AcquisitionError):
            make_acquirer(agent, None, tls_paths).acquire("r", "eu", 45)
