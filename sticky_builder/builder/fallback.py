"""Fallback to a local builder when remote setup fails."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sticky_builder.builder import buildx
from sticky_builder.errors import CommandError, DaemonError, FallbackError
from sticky_builder.session import BuilderHandle
from sticky_builder.types import FallbackAction

logger = logging.getLogger(__name__)

LOCAL_BUILDER_NAME = "local"
LOCAL_BUILDER_DRIVER = "docker-container"


@dataclass(frozen=True)
class FallbackDecision:
    action: FallbackAction
    message: str


def decide_fallback(setup_error: BaseException, no_fallback: bool) -> FallbackDecision:
    """Decide between aborting and continuing with a local builder.

    The message distinguishes daemon failures from other setup failures; it
    never changes the action.
    """
    if isinstance(setup_error, DaemonError):
        reason = f"buildkitd failed to start: {setup_error}"
    else:
        reason = f"Failed to set up the remote builder: {setup_error}"

    if no_fallback:
        return FallbackDecision(FallbackAction.RETHROW, f"{reason}. Failing the build")
    return FallbackDecision(
        FallbackAction.FALLBACK_TO_LOCAL, f"{reason}. Falling back to a local build"
    )


def configure_local_builder() -> BuilderHandle:
    """Use the configured builder, or create a local docker-container one.

    Raises:
        FallbackError: If no local builder can be configured.
    """
    try:
        existing = buildx.inspect_builder()
    except CommandError as e:
        raise FallbackError(f"Error configuring builder: {e}") from e
    if existing is not None:
        logger.info("Found configured builder: %s", existing.name)
        return BuilderHandle(
            name=existing.name, address=None, driver=existing.driver or "unknown"
        )

    try:
        buildx.create_builder(
            ["--name", LOCAL_BUILDER_NAME, "--driver", LOCAL_BUILDER_DRIVER, "--use"]
        )
    except CommandError as e:
        raise FallbackError(f"Failed to create local builder: {e}") from e
    logger.info("Created and set a local builder for use")
    return BuilderHandle(
        name=LOCAL_BUILDER_NAME, address=None, driver=LOCAL_BUILDER_DRIVER
    )


__all__ = [
    "LOCAL_BUILDER_DRIVER",
    "LOCAL_BUILDER_NAME",
    "FallbackDecision",
    "configure_local_builder",
    "decide_fallback",
]
