"""Builder lifecycle orchestration.

This module provides the high-level API used by the CLI:
- setup(): acquire, mount, start the daemon and register the builder,
  falling back to a local builder when allowed
- build(): run the external build against the registered builder
- run(): setup + build, always followed by the main cleanup pass
- post(): the exit-time cleanup pass
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import httpx
from pydantic import ValidationError

from sticky_builder.builder import buildx
from sticky_builder.builder.fallback import configure_local_builder, decide_fallback
from sticky_builder.builder.negotiator import (
    RemoteBuilderNegotiator,
    generate_builder_name,
    required_workers,
)
from sticky_builder.cleanup import CleanupCoordinator, LeaseReleaseConfig
from sticky_builder.config import Settings
from sticky_builder.controlplane.acquire import ResourceAcquirer, TLSPaths
from sticky_builder.controlplane.agent import AgentClient, create_agent_http_client
from sticky_builder.controlplane.tasks import BuildTaskClient, create_task_http_client
from sticky_builder.daemon.supervisor import DaemonSupervisor
from sticky_builder.errors import (
    AcquisitionError,
    BuildFailed,
    SetupFailed,
    StickyBuilderError,
)
from sticky_builder.session import BuilderHandle, BuildSession
from sticky_builder.types import BuildStatus, FallbackAction, StepOutcome
from sticky_builder.volume.mounter import VolumeMounter

logger = logging.getLogger(__name__)

INODE_WARNING_SOURCE = "setup_sticky_disk"


def resolve_dockerfile_path(context: str | None, file: str | None) -> str:
    """Path of the Dockerfile being built, relative to the repository.

    Git contexts (no local context directory) use ``file`` as is.
    """
    if not context or "://" in context or context.startswith("git@"):
        return os.path.normpath(file) if file else "Dockerfile"
    context = os.path.normpath(context)
    file_path = os.path.normpath(file or "Dockerfile")
    if file_path.startswith(context):
        return file_path
    return os.path.join(context, file_path)


class Orchestrator:
    """Drives one BuildSession through setup, build and cleanup."""

    def __init__(
        self,
        settings: Settings,
        session: BuildSession,
        acquirer: ResourceAcquirer,
        mounter: VolumeMounter,
        supervisor: DaemonSupervisor,
        negotiator: RemoteBuilderNegotiator,
        cleanup: CleanupCoordinator,
        http_clients: list[httpx.Client] | None = None,
    ):
        self.settings = settings
        self.session = session
        self.acquirer = acquirer
        self.mounter = mounter
        self.supervisor = supervisor
        self.negotiator = negotiator
        self.cleanup = cleanup
        self._http_clients = http_clients or []

    @classmethod
    def from_settings(cls, settings: Settings, session: BuildSession) -> Orchestrator:
        """Wire up the production components from ``settings``."""
        agent_http = create_agent_http_client(settings.agent_url, settings.request_timeout)
        http_clients = [agent_http]
        agent = AgentClient(agent_http)

        tasks: BuildTaskClient | None = None
        if settings.builder_url:
            tasks_http = create_task_http_client(
                settings.builder_url, settings.builder_token, settings.request_timeout
            )
            http_clients.append(tasks_http)
            tasks = BuildTaskClient(tasks_http, settings.repo_name)

        acquirer = ResourceAcquirer(
            agent,
            tasks,
            TLSPaths(
                client_key=settings.tls_client_key_path,
                client_cert=settings.tls_client_cert_path,
                root_cert=settings.tls_root_cert_path,
            ),
            default_device=settings.default_device,
            poll_interval=settings.task_poll_interval,
            installation_model_id=settings.installation_model_id,
            vm_id=settings.vm_id,
            sticky_disk_type=settings.sticky_disk_type,
            sticky_disk_token=settings.sticky_disk_token,
        )
        mounter = VolumeMounter(
            use_sudo=settings.use_sudo,
            report_warning=lambda message: agent.report_warning(
                message, INODE_WARNING_SOURCE
            ),
        )
        supervisor = DaemonSupervisor(
            root=settings.mount_point,
            config_path=settings.daemon_config_path,
            log_path=settings.daemon_log_path,
            address=session.daemon_address or f"tcp://127.0.0.1:{settings.daemon_port}",
            registry_mirror=settings.registry_mirror,
            use_sudo=settings.use_sudo,
            start_timeout=settings.daemon_start_timeout,
            ready_timeout=settings.workers_ready_timeout,
            shutdown_timeout=settings.daemon_shutdown_timeout,
            cache_keep_hours=settings.cache_keep_hours,
        )
        negotiator = RemoteBuilderNegotiator(
            port=settings.daemon_port,
            overlay_auth_key=settings.overlay_auth_key,
            hostname=settings.vm_id,
            use_sudo=settings.use_sudo,
        )
        cleanup = CleanupCoordinator(
            supervisor=supervisor,
            mounter=mounter,
            mount_point=settings.mount_point,
            record_dir=settings.build_record_dir,
            release=LeaseReleaseConfig(
                sticky_disk_key=settings.repo_name,
                vm_id=settings.vm_id,
                repo_name=settings.repo_name,
                sticky_disk_token=settings.sticky_disk_token,
            ),
            agent=agent,
            tasks=tasks,
            use_sudo=settings.use_sudo,
        )
        return cls(
            settings,
            session,
            acquirer,
            mounter,
            supervisor,
            negotiator,
            cleanup,
            http_clients=http_clients,
        )

    def close(self) -> None:
        for client in self._http_clients:
            client.close()

    def __enter__(self) -> Orchestrator:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def save(self) -> None:
        try:
            self.session.save(self.settings.state_file)
        except OSError as e:
            logger.warning("Could not save session state: %s", e)

    def setup(self) -> BuilderHandle:
        """Provision the remote builder, falling back to a local one if allowed.

        Returns:
            The builder subsequent builds should use.

        Raises:
            SetupFailed: Setup failed and fallback is disabled.
            FallbackError: The local fallback builder could not be configured.
        """
        try:
            handle = self._provision()
        except StickyBuilderError as e:
            decision = decide_fallback(e, self.session.no_fallback)
            if decision.action is FallbackAction.RETHROW:
                logger.error(decision.message)
                raise SetupFailed(decision.message, e) from e
            logger.warning(decision.message)
            self.session.fallback_taken = True
            handle = configure_local_builder()
        finally:
            self.save()

        self.session.builder = handle
        self.save()
        return handle

    def _provision(self) -> BuilderHandle:
        session = self.session
        settings = self.settings

        try:
            result = self.acquirer.acquire(
                repo_key=settings.repo_name,
                region=settings.region,
                timeout=settings.acquire_timeout,
                entity_path=session.entity_path or None,
                setup_only=session.setup_only,
            )
        except AcquisitionError as e:
            if e.lease is not None:
                # Exposed but unusable; cleanup releases it without a commit
                session.lease = e.lease
                self.save()
            raise
        session.lease = result.lease
        session.builder_launch_time = result.builder_launch_time
        self.save()

        device = result.lease.device
        self.mounter.prepare(device)
        self.mounter.mount(device, settings.mount_point)
        session.mounted = True
        logger.info("Successfully obtained sticky disk")

        try:
            address = self.negotiator.resolve_bind_address(session.platforms)
        finally:
            session.overlay_joined = self.negotiator.overlay_joined

        parallelism = os.cpu_count() or 1
        session.daemon_address = address
        self.supervisor.start(parallelism, address, detached=session.setup_only)
        session.daemon_started = True
        self.save()

        self.supervisor.wait_ready(required_workers(session.platforms))
        return self.negotiator.register_builder(
            generate_builder_name(), address, session.platforms
        )

    def build(self, build_args: list[str]) -> buildx.BuildResult:
        """Run ``docker buildx build`` with ``build_args``.

        Raises:
            BuildFailed: If the build exits non-zero.
        """
        record_dir = self.settings.build_record_dir
        builder = self.session.builder.name if self.session.builder else None
        result = buildx.run_build(
            build_args,
            log_path=record_dir / "build.log",
            metadata_file=record_dir / "metadata.json",
            builder=builder,
        )
        self.session.build_ref = result.ref
        if result.ref:
            logger.info("Build reference: %s", result.ref)
        else:
            logger.info("No build reference found")

        if not result.success:
            self.session.build_status = BuildStatus.FAILURE
            raise BuildFailed(result.error_message or "build failed", result.exit_code)
        self.session.build_status = BuildStatus.SUCCESS
        return result

    def run(self, build_args: list[str]) -> buildx.BuildResult:
        """Setup, build, then the main cleanup pass, whatever happened.

        Errors from setup or the build propagate after cleanup has run.
        """
        try:
            self.setup()
            try:
                return self.build(build_args)
            except StickyBuilderError:
                if self.session.build_status is None:
                    self.session.build_status = BuildStatus.FAILURE
                raise
        finally:
            log_outcomes("main", self.cleanup.run_main_pass(self.session))
            self.save()

    def post(self) -> list[StepOutcome]:
        """Exit-time cleanup pass."""
        outcomes = self.cleanup.run_exit_pass(self.session)
        log_outcomes("exit", outcomes)
        self.save()
        return outcomes


def log_outcomes(pass_name: str, outcomes: list[StepOutcome]) -> None:
    for outcome in outcomes:
        if not outcome.ok:
            logger.warning(
                "Cleanup (%s) step %s failed: %s", pass_name, outcome.name, outcome.error
            )
        elif outcome.skipped:
            logger.debug("Cleanup (%s) step %s skipped", pass_name, outcome.name)
        else:
            logger.info("Cleanup (%s) step %s done", pass_name, outcome.name)


def load_or_create_session(path: Path) -> BuildSession:
    """Session saved by an earlier phase, or a fresh one."""
    try:
        session = BuildSession.load(path)
    except (OSError, ValidationError) as e:
        logger.warning("Could not read session state from %s: %s", path, e)
        return BuildSession()
    if session is None:
        logger.debug("No session state at %s, starting empty", path)
        return BuildSession()
    return session


__all__ = [
    "Orchestrator",
    "load_or_create_session",
    "log_outcomes",
    "resolve_dockerfile_path",
]
