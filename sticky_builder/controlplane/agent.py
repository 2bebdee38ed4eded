"""Client for the VM agent that exposes sticky disks.

The agent speaks the Connect protocol with JSON bodies: every call is a
``POST {agent_url}/{service}/{Method}`` and errors come back as
``{"code": ..., "message": ...}``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from sticky_builder.controlplane.transport import request_json

logger = logging.getLogger(__name__)

STICKY_DISK_SERVICE = "stickydisk.v1.StickyDiskService"


@dataclass
class StickyDiskRequest:
    """Parameters of a sticky disk request."""

    sticky_disk_key: str
    region: str
    installation_model_id: str = ""
    vm_id: str = ""
    sticky_disk_type: str = "dockerfile"
    repo_name: str = ""
    sticky_disk_token: str = ""

    def to_payload(self) -> dict[str, str]:
        return {
            "stickyDiskKey": self.sticky_disk_key,
            "region": self.region,
            "installationModelId": self.installation_model_id,
            "vmId": self.vm_id,
            "stickyDiskType": self.sticky_disk_type,
            "repoName": self.repo_name,
            "stickyDiskToken": self.sticky_disk_token,
        }


@dataclass
class StickyDiskResponse:
    """What the agent returned for a sticky disk request."""

    expose_id: str
    device: str


class AgentClient:
    """Thin wrapper around the agent's unary RPCs."""

    def __init__(self, client: httpx.Client, timeout: float | None = None):
        self._client = client
        self._timeout = timeout

    def _call(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        return request_json(
            self._client,
            "POST",
            f"/{STICKY_DISK_SERVICE}/{method}",
            payload,
            timeout=self._timeout,
        )

    def up(self) -> None:
        """Liveness handshake."""
        self._call("Up", {})

    def get_sticky_disk(self, request: StickyDiskRequest) -> StickyDiskResponse:
        data = self._call("GetStickyDisk", request.to_payload())
        return StickyDiskResponse(
            expose_id=str(data.get("exposeId") or ""),
            device=str(data.get("diskIdentifier") or ""),
        )

    def commit_sticky_disk(
        self,
        expose_id: str,
        sticky_disk_key: str,
        should_commit: bool,
        vm_id: str = "",
        repo_name: str = "",
        sticky_disk_token: str = "",
    ) -> None:
        """Release the volume, persisting it when ``should_commit`` is set."""
        self._call(
            "CommitStickyDisk",
            {
                "exposeId": expose_id,
                "stickyDiskKey": sticky_disk_key,
                "vmId": vm_id,
                "shouldCommit": should_commit,
                "repoName": repo_name,
                "stickyDiskToken": sticky_disk_token,
            },
        )

    def report_metric(self, name: str, value: float) -> None:
        self._call("ReportMetric", {"name": name, "value": value})

    def report_warning(self, message: str, source: str) -> None:
        self._call(
            "ReportWarning", {"message": message, "source": source, "isWarning": True}
        )


def create_agent_http_client(base_url: str, timeout: float) -> httpx.Client:
    return httpx.Client(
        base_url=base_url,
        timeout=timeout,
        headers={"Connect-Protocol-Version": "1"},
    )


__all__ = [
    "STICKY_DISK_SERVICE",
    "AgentClient",
    "StickyDiskRequest",
    "StickyDiskResponse",
    "create_agent_http_client",
]
