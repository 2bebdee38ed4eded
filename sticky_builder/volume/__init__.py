"""Sticky disk formatting, mounting and integrity checks."""

from sticky_builder.volume.integrity import IntegrityReport, validate_volume_state
from sticky_builder.volume.mounter import VolumeMounter, get_mount_source

__all__ = [
    "IntegrityReport",
    "VolumeMounter",
    "get_mount_source",
    "validate_volume_state",
]
