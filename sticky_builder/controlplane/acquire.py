"""Acquisition of the sticky disk and the builder agent.

``ResourceAcquirer.acquire`` performs, in order:

1. a liveness handshake with the agent (not retried),
2. the sticky disk request (retried on transient errors),
3. unless provisioning only, a build task submission followed by polling
   until the builder agent reports ready, abandoning the task on timeout.

TLS materials delivered with the ready builder are written to fixed paths
with owner-only permissions.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from sticky_builder.controlplane.agent import AgentClient, StickyDiskRequest
from sticky_builder.controlplane.tasks import BuildTaskClient
from sticky_builder.errors import (
    AcquisitionDenied,
    AcquisitionError,
    AcquisitionTimeout,
    ControlPlaneError,
)
from sticky_builder.retry import PollTimeout, RetryPolicy, monotonic, poll_until
from sticky_builder.session import Lease
from sticky_builder.types import ErrorKind

logger = logging.getLogger(__name__)

STICKY_DISK_RETRY = RetryPolicy(max_attempts=3, base_backoff=0.5, fixed_delay=0.5)


@dataclass
class TLSPaths:
    """Where the builder's TLS materials are written."""

    client_key: Path
    client_cert: Path
    root_cert: Path


@dataclass
class AcquisitionResult:
    """Lease plus what was learned while acquiring it."""

    lease: Lease
    builder_launch_time: float | None = None
    instance_ip: str | None = None


def write_secret(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` readable by the owner only."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(content)
    os.chmod(path, 0o600)


def persist_tls_materials(instance: dict[str, Any], paths: TLSPaths) -> list[Path]:
    """Write the TLS materials present in ``instance``; return the paths written."""
    written: list[Path] = []
    for key, path in (
        ("client_key", paths.client_key),
        ("client_cert", paths.client_cert),
        ("root_cert", paths.root_cert),
    ):
        value = instance.get(key)
        if value:
            write_secret(path, str(value))
            logger.info("Wrote %s to %s", key.replace("_", " "), path)
            written.append(path)
    return written


class ResourceAcquirer:
    """Negotiates a sticky disk and a builder agent with the control plane."""

    def __init__(
        self,
        agent: AgentClient,
        tasks: BuildTaskClient | None,
        tls_paths: TLSPaths,
        default_device: str = "/dev/vdb",
        poll_interval: float = 0.2,
        installation_model_id: str = "",
        vm_id: str = "",
        sticky_disk_type: str = "dockerfile",
        sticky_disk_token: str = "",
    ):
        self.agent = agent
        self.tasks = tasks
        self.tls_paths = tls_paths
        self.default_device = default_device
        self.poll_interval = poll_interval
        self.installation_model_id = installation_model_id
        self.vm_id = vm_id
        self.sticky_disk_type = sticky_disk_type
        self.sticky_disk_token = sticky_disk_token

    def acquire(
        self,
        repo_key: str,
        region: str,
        timeout: float,
        entity_path: str | None = None,
        setup_only: bool = False,
    ) -> AcquisitionResult:
        """Acquire a sticky disk (and a builder agent unless ``setup_only``).

        Args:
            repo_key: Repository identity; keys the sticky disk.
            region: Region to request the disk in.
            timeout: Overall deadline in seconds.
            entity_path: Path of the Dockerfile being built, if any.
            setup_only: Provision only; no build task is submitted.

        Returns:
            AcquisitionResult holding the Lease.

        Raises:
            AcquisitionError: Agent unreachable or other failure.
            AcquisitionDenied: No capacity.
            AcquisitionTimeout: Builder agent not ready before the deadline.
        """
        if not repo_key:
            raise AcquisitionError("Repository name is not set")

        deadline = monotonic() + timeout

        try:
            self.agent.up()
        except ControlPlaneError as e:
            raise AcquisitionError(f"Agent connection test failed: {e}") from e
        logger.info("Successfully connected to the VM agent")

        logger.info("Getting sticky disk for %s", repo_key)
        request = StickyDiskRequest(
            sticky_disk_key=repo_key,
            region=region,
            installation_model_id=self.installation_model_id,
            vm_id=self.vm_id,
            sticky_disk_type=self.sticky_disk_type,
            repo_name=repo_key,
            sticky_disk_token=self.sticky_disk_token,
        )
        try:
            disk = STICKY_DISK_RETRY.execute(
                lambda: self.agent.get_sticky_disk(request),
                description="Requesting sticky disk",
            )
        except ControlPlaneError as e:
            if e.kind is ErrorKind.DENIED:
                raise AcquisitionDenied(f"No sticky disk capacity: {e}") from e
            raise AcquisitionError(f"Sticky disk request failed: {e}", kind=e.kind) from e

        device = disk.device
        if not device:
            # Older agents do not report the device.
            device = self.default_device
            logger.debug("Agent did not report a device, using %s", device)

        # The disk is exposed from here on and must be released even if the
        # builder never becomes ready.
        lease = Lease(expose_id=disk.expose_id, device=device)

        launch_time: float | None = None
        instance_ip: str | None = None
        if not setup_only:
            remaining = max(deadline - monotonic(), 0.0)
            try:
                build_id, launch_time, instance_ip = self._await_builder(
                    entity_path, remaining
                )
            except AcquisitionError as e:
                e.lease = lease
                raise
            lease = lease.model_copy(update={"build_id": build_id})

        logger.info("Acquired sticky disk %s on %s", lease.expose_id, lease.device)
        return AcquisitionResult(
            lease=lease,
            builder_launch_time=launch_time,
            instance_ip=instance_ip,
        )

    def _await_builder(
        self, entity_path: str | None, timeout: float
    ) -> tuple[str, float, str | None]:
        if self.tasks is None:
            raise AcquisitionError("Build task API URL is not configured")

        try:
            task_id = self.tasks.submit(entity_path)
        except ControlPlaneError as e:
            if e.kind is ErrorKind.DENIED:
                raise AcquisitionDenied(
                    "No builder instances were available"
                ) from e
            raise AcquisitionError(f"Build task submission failed: {e}", kind=e.kind) from e

        started = monotonic()
        try:
            data = poll_until(
                lambda: self.tasks.get(task_id),
                lambda d: bool(d.get("ec2_instance")),
                interval=self.poll_interval,
                timeout=timeout,
                description=f"builder agent for task {task_id}",
            )
        except PollTimeout as e:
            self._abandon(task_id)
            raise AcquisitionTimeout(
                f"Builder agent not ready after {timeout:.1f}s", task_id=task_id
            ) from e
        except ControlPlaneError as e:
            self._abandon(task_id)
            raise AcquisitionError(f"Polling build task failed: {e}", kind=e.kind) from e

        elapsed = round(monotonic() - started, 2)
        logger.info("Builder agent ready after %.2f seconds", elapsed)
        instance = data["ec2_instance"]
        try:
            persist_tls_materials(instance, self.tls_paths)
        except OSError as e:
            self._abandon(task_id)
            raise AcquisitionError(f"Could not write TLS materials: {e}") from e
        return task_id, elapsed, instance.get("instance_ip")

    def _abandon(self, task_id: str) -> None:
        try:
            self.tasks.abandon(task_id)
        except ControlPlaneError as e:
            logger.warning("Error abandoning build task %s: %s", task_id, e)


__all__ = [
    "STICKY_DISK_RETRY",
    "AcquisitionResult",
    "ResourceAcquirer",
    "TLSPaths",
    "persist_tls_materials",
    "write_secret",
]
