"""HTTP client for the coordinator's job lifecycle API."""

from __future__ import annotations

import json
import logging
import platform as host_platform
import socket
from typing import Any, Dict, Optional

import httpx

from execution_agent import __version__
from execution_agent.config import AgentSettings
from execution_agent.models import CapacitySnapshot, ExecutionReport, Job, JobStatus

logger = logging.getLogger(__name__)


class CoordinatorError(RuntimeError):
    """Raised when the coordinator answers with a non-success status."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message


def system_info() -> Dict[str, Any]:
    """Describe the host this agent runs on."""

    return {
        "hostname": socket.gethostname(),
        "os": host_platform.system(),
        "os_release": host_platform.release(),
        "arch": host_platform.machine(),
        "python": host_platform.python_version(),
        "agent_version": __version__,
    }


class CoordinatorClient:
    """Heartbeat, poll, claim and report calls against the coordinator.

    Every public method is failure tolerant: transport errors, non-2xx
    responses and malformed bodies are logged and turned into ``None`` or
    ``False``. Retrying is left to the caller's next tick.
    """

    def __init__(
        self,
        settings: AgentSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if settings.api_token:
            headers["Authorization"] = f"Bearer {settings.api_token}"
        self._client = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=settings.request_timeout,
            transport=transport,
        )
        self.consecutive_poll_failures = 0

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "CoordinatorClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        response = await self._client.request(method, path, json=payload)
        if response.status_code >= 400:
            message = response.reason_phrase or "request failed"
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and body.get("error"):
                message = str(body["error"])
            raise CoordinatorError(response.status_code, message)
        if not response.content:
            return None
        return response.json()

    # ------------------------------------------------------------------
    # Lifecycle calls
    # ------------------------------------------------------------------
    async def send_heartbeat(self, capacity: CapacitySnapshot) -> bool:
        payload = {
            "current_capacity": capacity.current_capacity,
            "max_capacity": capacity.max_capacity,
            "active_jobs": capacity.active_jobs,
            "system_info": system_info(),
        }
        try:
            await self._request("POST", "/heartbeat", payload)
        except (httpx.HTTPError, CoordinatorError, ValueError) as exc:
            logger.warning("Heartbeat failed: %s", exc)
            return False
        logger.debug("Heartbeat sent (%d/%d active)", capacity.active_jobs, capacity.max_capacity)
        return True

    async def poll_for_jobs(self, capacity: CapacitySnapshot) -> Optional[Job]:
        """Return the first offered job, or ``None``.

        No request is made while the agent is saturated.
        """

        if capacity.saturated:
            return None
        try:
            body = await self._request("GET", "/jobs/poll")
        except (httpx.HTTPError, CoordinatorError, ValueError) as exc:
            self.consecutive_poll_failures += 1
            logger.warning("Polling for jobs failed (%d in a row): %s", self.consecutive_poll_failures, exc)
            return None
        self.consecutive_poll_failures = 0

        descriptor = None
        if isinstance(body, dict):
            jobs = body.get("jobs")
            if isinstance(jobs, list) and jobs:
                descriptor = jobs[0]
            elif isinstance(body.get("job"), dict):
                descriptor = body["job"]
        if descriptor is None:
            return None
        try:
            return Job.from_payload(descriptor)
        except ValueError as exc:
            logger.warning("Ignoring malformed job descriptor: %s", exc)
            return None

    async def claim_job(self, job: Job) -> Optional[Job]:
        try:
            body = await self._request("POST", f"/jobs/{job.id}/start", {})
        except (httpx.HTTPError, CoordinatorError, ValueError) as exc:
            logger.warning("Claiming job %s failed: %s", job.id, exc)
            return None
        claim = body.get("job", body) if isinstance(body, dict) else None
        try:
            return job.merged_with(claim if isinstance(claim, dict) else None)
        except ValueError as exc:
            logger.warning("Claim response for job %s is malformed: %s", job.id, exc)
            return None

    async def report_result(self, job_id: str, status: JobStatus, report: ExecutionReport) -> bool:
        """Send the final report once; failures are logged, never retried."""

        payload = {"status": status.value, **report.to_payload()}
        try:
            await self._request("POST", f"/jobs/{job_id}/result", payload)
        except (httpx.HTTPError, CoordinatorError, ValueError) as exc:
            logger.error("Reporting result of job %s failed: %s", job_id, exc)
            return False
        logger.info(
            "Reported job %s as %s (%d/%d steps passed)",
            job_id,
            status.value,
            report.passed_steps,
            report.total_steps,
        )
        return True

    def next_poll_delay(self, base: float, ceiling: float) -> float:
        """Poll delay doubled for each consecutive failure, capped at ``ceiling``."""

        if self.consecutive_poll_failures <= 0:
            return base
        return min(ceiling, base * (2 ** min(self.consecutive_poll_failures, 16)))


def dumps_report(report: ExecutionReport, status: JobStatus) -> str:
    return json.dumps({"status": status.value, **report.to_payload()}, indent=2)
