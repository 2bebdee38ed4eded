"""Docker Buildx invocation.

This module handles:
- Inspecting and creating builder instances
- Executing the build with output streamed to the console and a log file
- Resolving the build reference from the metadata file
- Exporting the build record for a reference
"""

from __future__ import annotations

import json
import logging
import os
import re
import shlex
import subprocess
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from sticky_builder.errors import CommandError
from sticky_builder.process import last_line, run_command

logger = logging.getLogger(__name__)

DOCKER = "docker"

# Key of the build reference in the buildx metadata file
METADATA_REF_KEY = "buildx.build.ref"


@dataclass
class BuilderInfo:
    """Subset of ``docker buildx inspect`` output."""

    name: str
    driver: str | None = None


@dataclass
class BuildResult:
    """Result of a build execution.

    Attributes:
        success: Whether the build succeeded.
        exit_code: Process exit code.
        log_path: Path to the build log file.
        started_at: Build start time.
        finished_at: Build finish time.
        command: The command that was executed.
        ref: Build reference resolved from the metadata file.
        error_message: Error message if build failed.
    """

    success: bool
    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str
    ref: str | None = None
    error_message: str | None = None


def buildx_command(args: list[str]) -> list[str]:
    return [DOCKER, "buildx", *args]


def parse_inspect_output(output: str) -> BuilderInfo | None:
    """Parse the first ``Name:``/``Driver:`` pair of ``buildx inspect``."""
    name: str | None = None
    driver: str | None = None
    for line in output.splitlines():
        key, sep, value = line.partition(":")
        if not sep:
            continue
        key = key.strip()
        if key == "Name" and name is None:
            name = value.strip()
        elif key == "Driver" and driver is None:
            driver = value.strip()
    if not name:
        return None
    return BuilderInfo(name=name, driver=driver)


def inspect_builder(name: str | None = None) -> BuilderInfo | None:
    """Return the named (or current) builder, or None if there is none."""
    args = ["inspect"] + ([name] if name else [])
    result = run_command(buildx_command(args), check=False)
    if not result.ok:
        logger.debug("buildx inspect failed: %s", last_line(result.stderr))
        return None
    return parse_inspect_output(result.stdout)


def create_builder(args: list[str]) -> None:
    """Run ``docker buildx create`` with ``args``.

    Raises:
        CommandError: With the last line of stderr if creation fails.
    """
    cmd = buildx_command(["create", *args])
    logger.info("Creating builder with command: %s", shlex.join(cmd))
    result = run_command(cmd, check=False)
    if not result.ok:
        message = last_line(result.stderr) or "unknown error"
        raise CommandError(
            message,
            returncode=result.returncode,
            stderr=result.stderr,
            code="builder_create_error",
        )


def resolve_build_ref(metadata_file: Path) -> str | None:
    """Read the build reference from a buildx metadata file."""
    try:
        metadata = json.loads(metadata_file.read_text())
    except (OSError, ValueError):
        return None
    ref = metadata.get(METADATA_REF_KEY) if isinstance(metadata, dict) else None
    return str(ref) if ref else None


def export_build_record(ref: str, output_dir: Path) -> Path:
    """Export the build record of ``ref`` to ``output_dir``.

    Returns:
        Path of the exported ``.dockerbuild`` file.

    Raises:
        CommandError: If the export fails.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    safe_name = re.sub(r"[^A-Za-z0-9._-]+", "_", ref)
    output = output_dir / f"{safe_name}.dockerbuild"
    run_command(buildx_command(["history", "export", ref, "--output", str(output)]))
    size = output.stat().st_size if output.exists() else 0
    logger.info("Build record written to %s (%d bytes)", output, size)
    return output


def run_build(
    build_args: list[str],
    log_path: Path,
    metadata_file: Path,
    builder: str | None = None,
) -> BuildResult:
    """Execute ``docker buildx build``.

    Args:
        build_args: Arguments following ``docker buildx build``.
        log_path: File the combined output is copied to.
        metadata_file: Where buildx writes build metadata.
        builder: Builder instance to use; current builder if None.

    Returns:
        BuildResult with execution details.

    Raises:
        CommandError: If the build cannot be started.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    metadata_file.parent.mkdir(parents=True, exist_ok=True)
    metadata_file.unlink(missing_ok=True)

    args = ["build"]
    if builder:
        args += ["--builder", builder]
    args += ["--metadata-file", str(metadata_file), *build_args]
    cmd = buildx_command(args)
    cmd_str = shlex.join(cmd)
    logger.info("Executing build: %s", cmd_str)

    env = dict(os.environ)
    env["BUILDX_METADATA_WARNINGS"] = "true"

    started_at = datetime.now(timezone.utc)
    last_output = ""
    try:
        with log_path.open("w") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                env=env,
            )
            if proc.stdout is None:
                proc.kill()
                raise CommandError(
                    "Build output could not be captured", code="execution_error"
                )
            for line in proc.stdout:
                log_file.write(line)
                sys.stdout.write(line)
                if line.strip():
                    last_output = line.strip()
            exit_code = proc.wait()
    except OSError as e:
        raise CommandError(
            f"Failed to execute build: {e}", code="execution_error"
        ) from e

    finished_at = datetime.now(timezone.utc)
    success = exit_code == 0
    error_message = None
    if not success:
        error_message = f"buildx failed with: {last_output or 'unknown error'}"
        logger.error("%s. See log: %s", error_message, log_path)

    with log_path.open("a") as log_file:
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        log_file.write(f"# Duration: {duration:.1f}s\n")

    return BuildResult(
        success=success,
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
        ref=resolve_build_ref(metadata_file),
        error_message=error_message,
    )


__all__ = [
    "BuildResult",
    "BuilderInfo",
    "buildx_command",
    "create_builder",
    "export_build_record",
    "inspect_builder",
    "parse_inspect_output",
    "resolve_build_ref",
    "run_build",
]
