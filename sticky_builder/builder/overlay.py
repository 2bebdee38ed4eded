"""Overlay network (tailscale) membership for multi-host builds."""

from __future__ import annotations

import logging

from sticky_builder.errors import CommandError
from sticky_builder.process import privileged, run_command

logger = logging.getLogger(__name__)


def join_overlay(auth_key: str, hostname: str, use_sudo: bool = True) -> bool:
    """Join the overlay network.

    Returns:
        True if joined, False if skipped because no auth key is configured.

    Raises:
        CommandError: If ``tailscale up`` fails.
    """
    if not auth_key or auth_key == "unset":
        logger.debug("No overlay auth key configured, skipping join")
        return False
    args = ["tailscale", "up", f"--authkey={auth_key}"]
    if hostname:
        args.append(f"--hostname={hostname}")
    try:
        run_command(privileged(args, use_sudo))
    except CommandError as e:
        # The message would otherwise carry the auth key
        raise CommandError(
            "Failed to join overlay network",
            returncode=e.returncode,
            stderr=e.stderr,
        ) from None
    logger.info("Successfully joined overlay network")
    return True


def overlay_ip() -> str | None:
    """IPv4 address on the overlay network, or None if unavailable."""
    result = run_command(["tailscale", "ip", "-4"], check=False)
    if not result.ok:
        logger.debug("Error getting overlay IP: %s", result.stderr.strip())
        return None
    address = result.stdout.strip().splitlines()
    return address[0] if address else None


def leave_overlay(use_sudo: bool = True) -> bool:
    """Leave the overlay network if joined.

    Failures are logged as warnings; leaving is best effort.

    Returns:
        True if the network was left, False otherwise.
    """
    status = run_command(privileged(["tailscale", "status"], use_sudo), check=False)
    # tailscale status exits 1 when logged out
    if status.returncode == 1 or (status.ok and not status.stdout.strip()):
        logger.debug("Not part of an overlay network, skipping leave")
        return False
    if not status.ok:
        logger.warning("Error checking overlay status: %s", status.stderr.strip())
        return False
    try:
        run_command(privileged(["tailscale", "down"], use_sudo))
    except CommandError as e:
        logger.warning("Error leaving overlay network: %s", e)
        return False
    logger.debug("Successfully left overlay network")
    return True


__all__ = ["join_overlay", "leave_overlay", "overlay_ip"]
