"""buildkitd configuration file generation."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import tomli_w

logger = logging.getLogger(__name__)


def build_daemon_config(
    root: Path,
    address: str,
    parallelism: int,
    registry_mirror: str | None = None,
    snapshotter: str = "overlayfs",
) -> dict[str, Any]:
    """Compose the buildkitd configuration.

    Args:
        root: Cache root; lives on the sticky disk.
        address: gRPC address the daemon binds to.
        parallelism: Maximum concurrent build steps of the OCI worker.
        registry_mirror: Optional insecure pull-through mirror for docker.io.
        snapshotter: Snapshotter of the OCI worker.

    Returns:
        Configuration mapping ready to be serialized as TOML.
    """
    config: dict[str, Any] = {
        "root": str(root),
        "grpc": {"address": [address]},
        "worker": {
            "oci": {
                "enabled": True,
                # Pruning happens explicitly at cleanup; automatic GC slows
                # daemon startup.
                "gc": False,
                "max-parallelism": parallelism,
                "snapshotter": snapshotter,
            },
            "containerd": {"enabled": False},
        },
    }
    if registry_mirror:
        config["registry"] = {
            "docker.io": {
                "mirrors": [f"http://{registry_mirror}"],
                "http": True,
                "insecure": True,
            },
            registry_mirror: {"http": True, "insecure": True},
        }
    return config


def write_daemon_config(path: Path, config: dict[str, Any]) -> Path:
    """Serialize ``config`` as TOML to ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("wb") as f:
        tomli_w.dump(config, f)
    logger.debug("Wrote buildkitd configuration to %s", path)
    return path


__all__ = ["build_daemon_config", "write_daemon_config"]
