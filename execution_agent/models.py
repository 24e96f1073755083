"""Data models shared by the coordinator client, executor and interpreter."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from execution_agent.steps import Step, parse_script


class Platform(str, Enum):
    """Execution backend implied by a job."""

    WEB = "web"
    ANDROID = "android"
    IOS = "ios"

    @property
    def is_device(self) -> bool:
        return self is not Platform.WEB

    @classmethod
    def coerce(cls, value: Optional[str]) -> "Platform":
        """Return the platform for ``value``; missing values mean ``web``."""

        if not value:
            return cls.WEB
        lowered = str(value).strip().lower()
        if lowered in {"browser", "page", "chrome"}:
            return cls.WEB
        if lowered in {"mobile", "device"}:
            return cls.ANDROID
        try:
            return cls(lowered)
        except ValueError as exc:
            raise ValueError(f"Unsupported platform: {value}") from exc


class JobStatus(str, Enum):
    """Lifecycle states of a job as seen by this agent."""

    OFFERED = "offered"
    CLAIMED = "claimed"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}


class StepStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"


_FIELD_ALIASES: Dict[str, tuple] = {
    "platform": ("platform", "job_type", "type"),
    "target_context": ("target_context", "base_url", "targetContext"),
    "device_id": ("device_id", "deviceId"),
}


@dataclass
class Job:
    """A unit of work offered by the coordinator."""

    id: str
    steps: List[Step]
    target_context: Optional[str] = None
    platform: Platform = Platform.WEB
    device_id: Optional[str] = None
    status: JobStatus = JobStatus.OFFERED
    parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Job":
        """Build a job from a coordinator descriptor.

        Unknown keys are kept in :attr:`parameters` so that execution
        parameters returned by the claim call stay available to drivers.
        """

        if not isinstance(payload, dict):
            raise ValueError("Job descriptor must be a JSON object")
        job_id = payload.get("id") or payload.get("job_id")
        if not job_id:
            raise ValueError("Job descriptor is missing an id")

        platform = Platform.coerce(
            payload.get("platform") or payload.get("job_type") or payload.get("type")
        )
        target = (
            payload.get("target_context")
            or payload.get("base_url")
            or payload.get("targetContext")
        )
        device_id = payload.get("device_id") or payload.get("deviceId")
        if platform.is_device and not device_id and target:
            device_id = target

        known = {
            "id", "job_id", "steps", "platform", "job_type", "type",
            "target_context", "base_url", "targetContext", "device_id", "deviceId",
        }
        parameters = {key: value for key, value in payload.items() if key not in known}

        return cls(
            id=str(job_id),
            steps=parse_script(payload.get("steps") or []),
            target_context=target,
            platform=platform,
            device_id=device_id,
            parameters=parameters,
        )

    def merged_with(self, claim_payload: Optional[Dict[str, Any]]) -> "Job":
        """Return a claimed copy of this job with ``claim_payload`` merged over it."""

        if not claim_payload:
            return replace(self, status=JobStatus.CLAIMED)

        base: Dict[str, Any] = {
            "id": self.id,
            "platform": self.platform.value,
            "target_context": self.target_context,
            "device_id": self.device_id,
            **self.parameters,
        }
        # A claim may use any alias of a field; drop the offered value so it wins.
        for canonical, aliases in _FIELD_ALIASES.items():
            if any(claim_payload.get(alias) for alias in aliases):
                base.pop(canonical, None)
        claimed_steps = claim_payload.get("steps")
        job = Job.from_payload({**base, **claim_payload, "id": self.id, "steps": claimed_steps or []})
        if not claimed_steps:
            job.steps = list(self.steps)
        job.status = JobStatus.CLAIMED
        return job


@dataclass
class StepResult:
    """Outcome of one executed step."""

    step_index: int
    step_type: str
    status: StepStatus
    duration_ms: int
    error: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.status is StepStatus.PASSED

    def to_payload(self) -> Dict[str, Any]:
        return {
            "step_index": self.step_index,
            "step_type": self.step_type,
            "status": self.status.value,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


@dataclass
class ExecutionReport:
    """Aggregated result of one job, sent to the coordinator once."""

    total_steps: int
    step_results: List[StepResult] = field(default_factory=list)
    error_message: Optional[str] = None
    execution_time_ms: int = 0
    cancelled: bool = False

    @property
    def passed_steps(self) -> int:
        return sum(1 for result in self.step_results if result.passed)

    @property
    def failed_steps(self) -> int:
        return sum(1 for result in self.step_results if not result.passed)

    @property
    def status(self) -> JobStatus:
        if self.error_message or self.failed_steps:
            return JobStatus.FAILED
        if self.cancelled:
            return JobStatus.CANCELLED
        return JobStatus.COMPLETED

    def to_payload(self) -> Dict[str, Any]:
        counts = {
            "total_steps": self.total_steps,
            "passed_steps": self.passed_steps,
            "failed_steps": self.failed_steps,
        }
        return {
            **counts,
            "step_results": [result.to_payload() for result in self.step_results],
            "error_message": self.error_message,
            "execution_time_ms": self.execution_time_ms,
            "result_data": dict(counts),
        }


@dataclass(frozen=True)
class CapacitySnapshot:
    """Read-only view of the executor's capacity counters."""

    max_capacity: int
    active_jobs: int

    @property
    def current_capacity(self) -> int:
        return max(0, self.max_capacity - self.active_jobs)

    @property
    def saturated(self) -> bool:
        return self.active_jobs >= self.max_capacity
