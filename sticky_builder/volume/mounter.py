"""Formatting and mounting of the sticky disk.

This module handles:
- Detecting the filesystem on the device and formatting only when none of
  the expected type is present
- Growing an existing ext4 filesystem to the full device size
- Mounting at the daemon root and checking inode pressure
- Idempotent unmounting with retries for transient "device busy" errors
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from pathlib import Path

from sticky_builder.errors import CommandError, VolumeError
from sticky_builder.process import privileged, run_command
from sticky_builder.retry import RetryDecision, RetryPolicy

logger = logging.getLogger(__name__)

FILESYSTEM_TYPE = "ext4"

MKFS_ARGS = [
    "mkfs.ext4",
    "-m0",
    "-Enodiscard,lazy_itable_init=1,lazy_journal_init=1",
    "-F",
]

# Inode utilisation (percent) above which a warning is raised
INODE_WARNING_THRESHOLD = 80

UNMOUNT_RETRY = RetryPolicy(max_attempts=3, base_backoff=0.3, fixed_delay=0.3)

WarningReporter = Callable[[str], None]


def _retry_busy(error: BaseException) -> RetryDecision:
    # Busy devices usually clear up after a moment
    if isinstance(error, CommandError):
        return RetryDecision.FIXED
    return RetryDecision.NO_RETRY


def get_mount_source(mount_point: Path, mounts_file: str = "/proc/mounts") -> str | None:
    """Return the device mounted at ``mount_point``, or None.

    Args:
        mount_point: Directory to look up.
        mounts_file: Mount table to read.

    Returns:
        Source device of the mount, or None if nothing is mounted there.
    """
    target = os.path.normpath(str(mount_point))
    source: str | None = None
    try:
        with open(mounts_file) as f:
            for line in f:
                parts = line.split()
                if len(parts) >= 2 and os.path.normpath(parts[1]) == target:
                    # Later entries shadow earlier ones
                    source = parts[0]
    except OSError:
        logger.warning("Could not read %s, assuming nothing is mounted", mounts_file)
    return source


def inode_usage_percent(mount_point: Path) -> int | None:
    """Return inode utilisation of the filesystem at ``mount_point``."""
    try:
        st = os.statvfs(mount_point)
    except OSError as e:
        logger.debug("Could not stat %s: %s", mount_point, e)
        return None
    if st.f_files == 0:
        return None
    used = st.f_files - st.f_ffree
    return round(used * 100 / st.f_files)


class VolumeMounter:
    """Prepares, mounts and unmounts the sticky disk."""

    def __init__(
        self,
        use_sudo: bool = True,
        report_warning: WarningReporter | None = None,
    ):
        self.use_sudo = use_sudo
        self.report_warning = report_warning

    def _run(self, args: list[str], check: bool = True):
        return run_command(privileged(args, self.use_sudo), check=check)

    def detect_filesystem(self, device: str) -> str | None:
        """Return the filesystem type on ``device`` (None if unformatted)."""
        # blkid exits non-zero when no filesystem is found
        result = self._run(["blkid", "-o", "value", "-s", "TYPE", device], check=False)
        fs_type = result.stdout.strip()
        return fs_type if result.ok and fs_type else None

    def prepare(self, device: str) -> None:
        """Make sure ``device`` carries an ext4 filesystem using its full size.

        Raises:
            VolumeError: If formatting fails.
        """
        fs_type = self.detect_filesystem(device)
        if fs_type == FILESYSTEM_TYPE:
            logger.debug("Device %s is already formatted with %s", device, fs_type)
            try:
                self._run(["resize2fs", "-f", device])
                logger.debug("Resized %s filesystem on %s", fs_type, device)
            except CommandError as e:
                logger.warning("Error resizing %s filesystem on %s: %s", fs_type, device, e)
            return

        if fs_type:
            logger.warning(
                "Device %s has unexpected filesystem %s, reformatting", device, fs_type
            )
        else:
            logger.debug("No filesystem found on %s, will format it", device)

        try:
            self._run([*MKFS_ARGS, device])
        except CommandError as e:
            logger.error("Failed to format device %s: %s", device, e)
            raise VolumeError(f"Failed to format {device}: {e}", code="format_error") from e
        logger.info("Formatted %s with %s", device, FILESYSTEM_TYPE)

    def mount(self, device: str, mount_point: Path) -> None:
        """Mount ``device`` at ``mount_point``, creating the directory first.

        Raises:
            VolumeError: If the mount fails.
        """
        try:
            self._run(["mkdir", "-p", str(mount_point)])
            self._run(["mount", device, str(mount_point)])
        except CommandError as e:
            raise VolumeError(
                f"Failed to mount {device} at {mount_point}: {e}", code="mount_error"
            ) from e
        logger.info("%s has been mounted to %s", device, mount_point)
        self.check_inode_usage(mount_point)

    def check_inode_usage(self, mount_point: Path) -> int | None:
        """Warn (and report) when inode utilisation exceeds the threshold."""
        usage = inode_usage_percent(mount_point)
        if usage is not None and usage > INODE_WARNING_THRESHOLD:
            message = f"High inode usage ({usage}%) detected at {mount_point}"
            logger.warning(message)
            if self.report_warning is not None:
                try:
                    self.report_warning(message)
                except Exception as e:
                    logger.debug("Could not report inode usage: %s", e)
        return usage

    def is_mounted(self, mount_point: Path) -> bool:
        return get_mount_source(mount_point) is not None

    def unmount(self, mount_point: Path) -> bool:
        """Flush and unmount ``mount_point``.

        Returns:
            True if something was unmounted, False if nothing was mounted.

        Raises:
            VolumeError: If the unmount still fails after retries.
        """
        if not self.is_mounted(mount_point):
            logger.debug("Nothing mounted at %s", mount_point)
            return False

        try:
            self._run(["sync"])
        except CommandError as e:
            logger.warning("sync failed before unmount: %s", e)

        def attempt() -> None:
            try:
                self._run(["umount", str(mount_point)])
            except CommandError:
                if not self.is_mounted(mount_point):
                    return
                raise

        try:
            UNMOUNT_RETRY.execute(
                attempt,
                classify=_retry_busy,
                description=f"Unmounting {mount_point}",
            )
        except CommandError as e:
            raise VolumeError(
                f"Failed to unmount {mount_point}: {e}", code="unmount_error"
            ) from e
        logger.info("Unmounted %s", mount_point)
        return True


__all__ = [
    "FILESYSTEM_TYPE",
    "INODE_WARNING_THRESHOLD",
    "MKFS_ARGS",
    "UNMOUNT_RETRY",
    "VolumeMounter",
    "get_mount_source",
    "inode_usage_percent",
]
