"""Client for the build task API.

Endpoints (relative to ``builder_url``):

- ``POST /``                 submit ``{dockerfile_path?, repo_name}`` -> ``{id}``
- ``GET /{id}``              poll until ``ec2_instance`` is present
- ``POST /{id}/complete``    build succeeded
- ``POST /{id}/fail``        build failed
- ``POST /{id}/abandon``     agent never became ready

Server errors and connection resets are retried; client errors are not.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from sticky_builder.controlplane.transport import request_json
from sticky_builder.retry import RetryPolicy

logger = logging.getLogger(__name__)

# Submit and poll requests
REQUEST_RETRY = RetryPolicy(max_attempts=5, base_backoff=0.1, fixed_delay=0.1)

# Completion, failure and abandonment reports
REPORT_RETRY = RetryPolicy(max_attempts=3, base_backoff=0.2, fixed_delay=0.2)


class BuildTaskClient:
    """Submit build tasks and report their outcome."""

    def __init__(self, client: httpx.Client, repo_name: str):
        self._client = client
        self.repo_name = repo_name

    def submit(self, dockerfile_path: str | None = None) -> str:
        """Submit a build task and return its id."""
        payload: dict[str, Any] = {"repo_name": self.repo_name}
        if dockerfile_path:
            payload["dockerfile_path"] = dockerfile_path
            logger.info("Using dockerfile path: %s", dockerfile_path)

        data = REQUEST_RETRY.execute(
            lambda: request_json(self._client, "POST", "", payload),
            description="Submitting build task",
        )
        task_id = str(data["id"])
        logger.info("Submitted build task: %s", task_id)
        return task_id

    def get(self, task_id: str) -> dict[str, Any]:
        return REQUEST_RETRY.execute(
            lambda: request_json(self._client, "GET", f"/{task_id}"),
            description=f"Polling build task {task_id}",
        )

    def complete(self, task_id: str, builder_launch_time: float | None) -> None:
        payload: dict[str, Any] = {"repo_name": self.repo_name}
        if builder_launch_time is not None:
            payload["builder_launch_time"] = f"{builder_launch_time:.2f}"
        REPORT_RETRY.execute(
            lambda: request_json(self._client, "POST", f"/{task_id}/complete", payload),
            description=f"Completing build task {task_id}",
        )
        logger.info("Reported build task %s as complete", task_id)

    def fail(self, task_id: str) -> None:
        REPORT_RETRY.execute(
            lambda: request_json(
                self._client, "POST", f"/{task_id}/fail", {"repo_name": self.repo_name}
            ),
            description=f"Failing build task {task_id}",
        )
        logger.info("Reported build task %s as failed", task_id)

    def abandon(self, task_id: str) -> None:
        REPORT_RETRY.execute(
            lambda: request_json(
                self._client,
                "POST",
                f"/{task_id}/abandon",
                {"repo_name": self.repo_name},
            ),
            description=f"Abandoning build task {task_id}",
        )
        logger.info("Reported build task %s as abandoned", task_id)


def create_task_http_client(base_url: str, token: str, timeout: float) -> httpx.Client:
    return httpx.Client(
        base_url=base_url,
        timeout=timeout,
        headers={"Authorization": f"Bearer {token}"},
    )


__all__ = [
    "REPORT_RETRY",
    "REQUEST_RETRY",
    "BuildTaskClient",
    "create_task_http_client",
]
