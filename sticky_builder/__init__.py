"""Sticky Builder - ephemeral remote container-build environments for CI jobs.

This package provisions a sticky-disk backed BuildKit daemon for a single CI
job, registers it with Docker Buildx, and tears everything down afterwards.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
