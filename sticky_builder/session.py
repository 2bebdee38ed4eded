"""Session state carried through every phase of a job.

The main phase and the exit-time cleanup pass may run in different processes
(``build``/``setup`` and then ``post``), so the session is persisted to a
JSON state file between them.
"""

from __future__ import annotations

import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from sticky_builder.types import BuildStatus

logger = logging.getLogger(__name__)


class Lease(BaseModel):
    """Ownership of remotely allocated resources.

    An empty ``expose_id`` means nothing was acquired; such a lease must
    never be released, committed or reported.
    """

    model_config = ConfigDict(frozen=True)

    expose_id: str = ""
    build_id: str | None = None
    device: str = ""

    @property
    def acquired(self) -> bool:
        return bool(self.expose_id)


class BuilderHandle(BaseModel):
    """A buildx builder registration. ``address`` None means the local builder."""

    model_config = ConfigDict(frozen=True)

    name: str
    address: str | None = None
    driver: str = "remote"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BuildSession(BaseModel):
    """State of one job invocation, shared by all phases."""

    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = Field(default_factory=_utcnow)
    entity_path: str = ""
    no_fallback: bool = False
    setup_only: bool = False
    platforms: list[str] = Field(default_factory=list)

    # Progress
    lease: Lease | None = None
    builder: BuilderHandle | None = None
    fallback_taken: bool = False
    mounted: bool = False
    daemon_started: bool = False
    daemon_address: str | None = None
    overlay_joined: bool = False
    builder_launch_time: float | None = None
    build_ref: str | None = None
    build_status: BuildStatus | None = None
    volume_healthy: bool | None = None
    lease_released: bool = False
    metrics: dict[str, float] = Field(default_factory=dict)

    def acquired_lease(self) -> Lease | None:
        """The lease, if one with a non-empty resource handle was acquired."""
        if self.lease is not None and self.lease.acquired:
            return self.lease
        return None

    def record_metric(self, name: str, value: float) -> None:
        self.metrics[name] = value

    def save(self, path: Path) -> None:
        """Persist the session atomically to ``path``."""
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(self.model_dump_json(indent=2))
        os.replace(tmp_path, path)
        logger.debug("Saved session %s to %s", self.session_id, path)

    @classmethod
    def load(cls, path: Path) -> BuildSession | None:
        """Load a session from ``path``; None when no state was saved."""
        if not path.exists():
            return None
        return cls.model_validate_json(path.read_text())


__all__ = ["BuildSession", "BuilderHandle", "Lease"]
