"""Checks run on the daemon root before the sticky disk is committed.

A volume is only worth persisting if the daemon shut down cleanly: no live
daemon process, no leftover lock or write-ahead files, and no truncated
databases. The daemon root is owned by root, so the checks run through
``find`` with sudo; a check that cannot run counts as a problem.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from sticky_builder.errors import CommandError, IntegrityError
from sticky_builder.process import last_line, privileged, run_command

logger = logging.getLogger(__name__)

DATABASE_FILES = [
    "history.db",
    "cache.db",
    "snapshots.db",
    "metadata_v2.db",
    "containerdmeta.db",
]

LEFTOVER_PATTERNS = ["*.lock", "*-wal", "*-shm"]


@dataclass
class IntegrityReport:
    """Outcome of a volume integrity check."""

    healthy: bool
    problems: list[str] = field(default_factory=list)


def _name_filter(names: list[str]) -> list[str]:
    """``find`` expression matching any of ``names``, grouped."""
    expr = ["("]
    for i, name in enumerate(names):
        if i:
            expr.append("-o")
        expr += ["-name", name]
    expr.append(")")
    return expr


def _inspect(args: list[str], use_sudo: bool) -> str:
    """Run a read-only inspection command and return its stdout.

    Raises:
        IntegrityError: If the command cannot run or exits non-zero, for
            instance on a directory it is not allowed to read.
    """
    try:
        result = run_command(privileged(args, use_sudo), check=False)
    except CommandError as e:
        raise IntegrityError(f"could not run {args[0]}: {e}") from e
    if not result.ok:
        detail = last_line(result.stderr) or f"exit code {result.returncode}"
        raise IntegrityError(f"{args[0]} failed: {detail}")
    return result.stdout


def find_leftover_files(root: Path, use_sudo: bool = True) -> list[str]:
    """Return lock and temporary database files under ``root``, relative to it.

    Raises:
        IntegrityError: If the daemon root could not be searched completely.
    """
    output = _inspect(["find", str(root), *_name_filter(LEFTOVER_PATTERNS)], use_sudo)
    return sorted(
        os.path.relpath(line, root) for line in output.splitlines() if line.strip()
    )


def database_sizes(root: Path, use_sudo: bool = True) -> dict[str, int]:
    """Sizes in bytes of the daemon databases present directly under ``root``.

    Missing databases are left out.

    Raises:
        IntegrityError: If the daemon root could not be inspected.
    """
    output = _inspect(
        [
            "find",
            str(root),
            "-maxdepth",
            "1",
            "-type",
            "f",
            *_name_filter(DATABASE_FILES),
            "-printf",
            "%f %s\\n",
        ],
        use_sudo,
    )
    sizes: dict[str, int] = {}
    for line in output.splitlines():
        name, sep, size = line.strip().rpartition(" ")
        if not sep or not size.isdigit():
            raise IntegrityError(f"unexpected find output: {line!r}")
        sizes[name] = int(size)
    return sizes


def validate_volume_state(
    root: Path, daemon_running: bool, use_sudo: bool = True
) -> IntegrityReport:
    """Check whether the daemon root at ``root`` is safe to commit.

    Args:
        root: Daemon root directory (the mount point).
        daemon_running: Whether a daemon process is still alive.
        use_sudo: Inspect the root with sudo.

    Returns:
        IntegrityReport listing every problem found.
    """
    problems: list[str] = []

    if daemon_running:
        problems.append("buildkitd process is still running")

    try:
        leftovers = find_leftover_files(root, use_sudo)
    except IntegrityError as e:
        problems.append(f"could not check for lock files: {e}")
    else:
        if leftovers:
            names = ", ".join(leftovers)
            problems.append(
                f"lock/temporary files indicate an unclean shutdown: {names}"
            )

    try:
        sizes = database_sizes(root, use_sudo)
    except IntegrityError as e:
        problems.append(f"could not check database files: {e}")
    else:
        for name in DATABASE_FILES:
            if sizes.get(name) == 0:
                problems.append(f"database file {name} is 0 bytes")

    for problem in problems:
        logger.warning("Volume integrity: %s", problem)

    return IntegrityReport(healthy=not problems, problems=problems)


__all__ = [
    "DATABASE_FILES",
    "LEFTOVER_PATTERNS",
    "IntegrityReport",
    "database_sizes",
    "find_leftover_files",
    "validate_volume_state",
]
