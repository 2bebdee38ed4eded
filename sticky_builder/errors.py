"""Error hierarchy for sticky_builder.

Every error carries an ``ErrorKind`` chosen at the boundary where the
underlying failure was first observed (HTTP responses in
``controlplane.transport``, subprocess results in ``process``). Downstream
code decides on retries and fallback by ``kind``, never by message text.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sticky_builder.types import ErrorKind

if TYPE_CHECKING:
    from sticky_builder.session import Lease


class StickyBuilderError(Exception):
    """Base error for all sticky_builder operations."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.FATAL,
        code: str = "sticky_builder_error",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.code = code


class ControlPlaneError(StickyBuilderError):
    """A request to the agent or the build task API failed."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        status_code: int | None = None,
        rate_limited: bool = False,
        code: str = "control_plane_error",
    ) -> None:
        super().__init__(message, kind=kind, code=code)
        self.status_code = status_code
        self.rate_limited = rate_limited


class AcquisitionError(StickyBuilderError):
    """Sticky disk or builder agent could not be acquired.

    ``lease`` holds the sticky disk when it was exposed before the failure;
    it must still be released.
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.FATAL,
        code: str = "acquisition_error",
        lease: Lease | None = None,
    ) -> None:
        super().__init__(message, kind=kind, code=code)
        self.lease = lease


class AcquisitionDenied(AcquisitionError):
    """The control plane has no capacity for this request."""

    def __init__(self, message: str) -> None:
        super().__init__(message, kind=ErrorKind.DENIED, code="acquisition_denied")


class AcquisitionTimeout(AcquisitionError):
    """No usable resource materialized before the deadline."""

    def __init__(self, message: str, task_id: str | None = None) -> None:
        super().__init__(message, kind=ErrorKind.TIMEOUT, code="acquisition_timeout")
        self.task_id = task_id


class CommandError(StickyBuilderError):
    """An external command failed to run or exited non-zero."""

    def __init__(
        self,
        message: str,
        returncode: int | None = None,
        stderr: str = "",
        kind: ErrorKind = ErrorKind.FATAL,
        code: str = "command_error",
    ) -> None:
        super().__init__(message, kind=kind, code=code)
        self.returncode = returncode
        self.stderr = stderr


class VolumeError(StickyBuilderError):
    """Formatting, mounting or unmounting the sticky disk failed."""

    def __init__(self, message: str, code: str = "volume_error") -> None:
        super().__init__(message, kind=ErrorKind.FATAL, code=code)


class DaemonError(StickyBuilderError):
    """Base error for build daemon supervision."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.FATAL,
        code: str = "daemon_error",
    ) -> None:
        super().__init__(message, kind=kind, code=code)


class DaemonStartError(DaemonError):
    """The daemon process failed while starting."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="daemon_start_error")


class DaemonStartTimeout(DaemonError):
    """The daemon process did not appear before the deadline."""

    def __init__(self, timeout: float) -> None:
        super().__init__(
            f"Timed out waiting for buildkitd to start after {timeout:g} seconds",
            kind=ErrorKind.TIMEOUT,
            code="daemon_start_timeout",
        )
        self.timeout = timeout


class WorkersNotReady(DaemonError):
    """The daemon did not report enough workers before the deadline."""

    def __init__(self, last_count: int, required: int, timeout: float) -> None:
        super().__init__(
            f"buildkit workers not ready after {timeout:g}s timeout. "
            f"Found {last_count} workers, required {required}",
            kind=ErrorKind.TIMEOUT,
            code="workers_not_ready",
        )
        self.last_count = last_count
        self.required = required


class ShutdownTimeout(DaemonError):
    """The daemon was still alive after the shutdown deadline."""

    def __init__(self, timeout: float) -> None:
        super().__init__(
            f"buildkitd still running {timeout:g} seconds after SIGTERM",
            kind=ErrorKind.TIMEOUT,
            code="shutdown_timeout",
        )
        self.timeout = timeout


class FallbackError(StickyBuilderError):
    """The local fallback builder could not be configured."""

    def __init__(self, message: str) -> None:
        super().__init__(message, kind=ErrorKind.FATAL, code="fallback_error")


class IntegrityError(StickyBuilderError):
    """The volume state is inconsistent and must not be committed."""

    def __init__(self, message: str, problems: list[str] | None = None) -> None:
        super().__init__(message, kind=ErrorKind.INTEGRITY, code="integrity_error")
        self.problems = problems or []


class SetupFailed(StickyBuilderError):
    """Setup failed and falling back was not allowed."""

    def __init__(self, message: str, cause: StickyBuilderError) -> None:
        super().__init__(message, kind=cause.kind, code="setup_failed")
        self.cause = cause


class BuildFailed(StickyBuilderError):
    """The external build tool reported a failure."""

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        super().__init__(message, kind=ErrorKind.FATAL, code="build_failed")
        self.exit_code = exit_code


__all__ = [
    "AcquisitionDenied",
    "AcquisitionError",
    "AcquisitionTimeout",
    "BuildFailed",
    "CommandError",
    "ControlPlaneError",
    "DaemonError",
    "DaemonStartError",
    "DaemonStartTimeout",
    "FallbackError",
    "IntegrityError",
    "SetupFailed",
    "ShutdownTimeout",
    "StickyBuilderError",
    "VolumeError",
    "WorkersNotReady",
]
