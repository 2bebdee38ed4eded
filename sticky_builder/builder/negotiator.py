"""Daemon address negotiation and remote builder registration.

The daemon binds to loopback. A multi-host path exists in which the daemon
binds to the overlay-network address so a remote worker can join it as a
peer; it stays behind ``MULTI_HOST_BINDING_ENABLED`` until remote workers
are stable, and must not be switched on implicitly.
"""

from __future__ import annotations

import logging
import platform
import uuid

from sticky_builder.builder import buildx, overlay
from sticky_builder.errors import CommandError
from sticky_builder.session import BuilderHandle

logger = logging.getLogger(__name__)

MULTI_HOST_BINDING_ENABLED = False

LOOPBACK_HOST = "127.0.0.1"

ARCH_MAP = {
    "x64": "amd64",
    "x86_64": "amd64",
    "amd64": "amd64",
    "arm64": "arm64",
    "aarch64": "arm64",
    "arm": "arm",
    "armv7l": "arm",
}


def generate_builder_name() -> str:
    return f"sticky-{uuid.uuid4().hex[:8]}"


def multi_host_requested(platforms: list[str] | None) -> bool:
    return MULTI_HOST_BINDING_ENABLED and len(platforms or []) > 1


def required_workers(platforms: list[str] | None) -> int:
    """Workers the daemon must report before it is ready."""
    return 2 if multi_host_requested(platforms) else 1


def resolve_platforms(platforms: list[str] | None, machine: str | None = None) -> str:
    """Platform list for ``buildx create``.

    User-supplied platforms win; otherwise ``linux/<host arch>``.
    """
    if platforms:
        return ",".join(platforms)
    arch = (machine or platform.machine()).lower()
    return f"linux/{ARCH_MAP.get(arch, arch)}"


class RemoteBuilderNegotiator:
    """Chooses where the daemon listens and registers a builder for it."""

    def __init__(
        self,
        port: int = 1234,
        overlay_auth_key: str = "",
        hostname: str = "",
        use_sudo: bool = True,
    ):
        self.port = port
        self.overlay_auth_key = overlay_auth_key
        self.hostname = hostname
        self.use_sudo = use_sudo
        self.overlay_joined = False

    def resolve_bind_address(self, platforms: list[str] | None = None) -> str:
        """Address the daemon should bind to.

        Raises:
            CommandError: When the multi-host path cannot obtain an overlay IP.
        """
        if not multi_host_requested(platforms):
            return f"tcp://{LOOPBACK_HOST}:{self.port}"

        self.overlay_joined = overlay.join_overlay(
            self.overlay_auth_key, self.hostname, self.use_sudo
        )
        ip = overlay.overlay_ip()
        if not ip:
            raise CommandError("Failed to get overlay IP for multi-platform build")
        address = f"tcp://{ip}:{self.port}"
        logger.info("Using overlay IP for multi-platform build: %s", address)
        return address

    @staticmethod
    def compose_create_args(
        name: str, address: str, platforms: list[str] | None = None
    ) -> list[str]:
        platform_flag = resolve_platforms(platforms)
        logger.info("Determined remote builder platform(s): %s", platform_flag)
        return [
            "--name",
            name,
            "--driver",
            "remote",
            "--platform",
            platform_flag,
            # Override whatever builder has been configured so far
            "--use",
            address,
        ]

    def register_builder(
        self, name: str, address: str, platforms: list[str] | None = None
    ) -> BuilderHandle:
        """Create a buildx builder pointing at ``address`` and select it.

        Raises:
            CommandError: If ``docker buildx create`` fails.
        """
        buildx.create_builder(self.compose_create_args(name, address, platforms))
        logger.info("Registered builder %s at %s", name, address)
        return BuilderHandle(name=name, address=address, driver="remote")


__all__ = [
    "ARCH_MAP",
    "MULTI_HOST_BINDING_ENABLED",
    "RemoteBuilderNegotiator",
    "generate_builder_name",
    "multi_host_requested",
    "required_workers",
    "resolve_platforms",
]
