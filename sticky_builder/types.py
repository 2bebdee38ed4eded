"""Shared type definitions for sticky_builder.

This module contains enums and small dataclasses shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    """Closed classification of failures, assigned where they are first seen."""

    TRANSIENT = "transient"
    DENIED = "denied"
    TIMEOUT = "timeout"
    INTEGRITY = "integrity"
    FATAL = "fatal"


class DaemonState(str, Enum):
    """Lifecycle state of the supervised build daemon."""

    NOT_STARTED = "not_started"
    STARTING = "starting"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"
    FAILED = "failed"


class BuildStatus(str, Enum):
    """Outcome of the external build, as reported to the control plane."""

    SUCCESS = "success"
    FAILURE = "failure"


class FallbackAction(str, Enum):
    """What to do after a setup failure."""

    RETHROW = "rethrow"
    FALLBACK_TO_LOCAL = "fallback_to_local"


@dataclass
class StepOutcome:
    """Result of a single cleanup step."""

    name: str
    ok: bool
    skipped: bool = False
    error: str | None = None


__all__ = [
    "BuildStatus",
    "DaemonState",
    "ErrorKind",
    "FallbackAction",
    "StepOutcome",
]
