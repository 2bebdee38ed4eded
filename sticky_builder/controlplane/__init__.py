"""Control-plane clients and resource acquisition."""

from sticky_builder.controlplane.acquire import (
    AcquisitionResult,
    ResourceAcquirer,
    TLSPaths,
)
from sticky_builder.controlplane.agent import (
    AgentClient,
    StickyDiskRequest,
    StickyDiskResponse,
    create_agent_http_client,
)
from sticky_builder.controlplane.tasks import BuildTaskClient, create_task_http_client

__all__ = [
    "AcquisitionResult",
    "AgentClient",
    "BuildTaskClient",
    "ResourceAcquirer",
    "StickyDiskRequest",
    "StickyDiskResponse",
    "TLSPaths",
    "create_agent_http_client",
    "create_task_http_client",
]
