"""Capacity-bounded job execution."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Dict, Optional, Set

from execution_agent.artifacts import ArtifactWriter
from execution_agent.blocking import run_blocking
from execution_agent.config import AgentSettings
from execution_agent.coordinator import CoordinatorClient
from execution_agent.drivers.base import DriverUnavailableError
from execution_agent.drivers.factory import DriverFactory
from execution_agent.interpreter import InterpreterOptions, StepInterpreter, error_message
from execution_agent.models import CapacitySnapshot, ExecutionReport, Job, JobStatus

logger = logging.getLogger(__name__)


class CapacityExceededError(RuntimeError):
    """Raised by :meth:`JobExecutor.submit` when every slot is taken."""


def interpreter_options(settings: AgentSettings) -> InterpreterOptions:
    return InterpreterOptions(
        step_timeout_ms=settings.step_timeout_ms,
        poll_ms=settings.locator_poll_ms,
        healing_threshold=settings.healing_threshold,
    )


class JobExecutor:
    """Runs claimed jobs as asyncio tasks, at most ``max_capacity`` at once.

    ``active_jobs`` is only changed on the event loop thread: incremented in
    :meth:`submit` before anything awaits and decremented by the task's done
    callback, which also fires when a task is cancelled before it starts.
    """

    def __init__(
        self,
        settings: AgentSettings,
        coordinator: CoordinatorClient,
        driver_factory: DriverFactory,
        interpreter: Optional[StepInterpreter] = None,
    ) -> None:
        self.settings = settings
        self.max_capacity = settings.max_capacity
        self._active_jobs = 0
        self._coordinator = coordinator
        self._driver_factory = driver_factory
        self._interpreter = interpreter or StepInterpreter(interpreter_options(settings))
        self._tasks: Set[asyncio.Task] = set()
        self._cancel_events: Dict[str, threading.Event] = {}

    @property
    def active_jobs(self) -> int:
        return self._active_jobs

    def snapshot(self) -> CapacitySnapshot:
        return CapacitySnapshot(max_capacity=self.max_capacity, active_jobs=self._active_jobs)

    def submit(self, job: Job) -> asyncio.Task:
        """Schedule ``job``; never queues beyond capacity."""

        if self._active_jobs >= self.max_capacity:
            raise CapacityExceededError(
                f"Agent is at capacity ({self._active_jobs}/{self.max_capacity})"
            )
        self._active_jobs += 1
        self._cancel_events[job.id] = threading.Event()
        task = asyncio.get_running_loop().create_task(self.run_job(job), name=f"job-{job.id}")
        self._tasks.add(task)
        task.add_done_callback(lambda finished, job_id=job.id: self._release(finished, job_id))
        logger.info("Accepted job %s (%d/%d active)", job.id, self._active_jobs, self.max_capacity)
        return task

    def _release(self, task: asyncio.Task, job_id: str) -> None:
        self._active_jobs -= 1
        self._tasks.discard(task)
        self._cancel_events.pop(job_id, None)
        if task.cancelled():
            logger.warning("Job %s task was cancelled before it reported", job_id)

    def cancel(self, job_id: str) -> bool:
        """Request cooperative cancellation; observed between steps."""

        event = self._cancel_events.get(job_id)
        if event is None:
            return False
        event.set()
        logger.info("Cancellation requested for job %s", job_id)
        return True

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run_job(self, job: Job) -> ExecutionReport:
        """Execute ``job`` and report it exactly once. Never raises."""

        started = time.monotonic()
        job.status = JobStatus.RUNNING
        report = ExecutionReport(total_steps=len(job.steps))
        cancel_event = self._cancel_events.get(job.id) or threading.Event()
        driver = None
        try:
            driver = await run_blocking(self._driver_factory.acquire, job)
            if not job.platform.is_device and job.target_context:
                await run_blocking(driver.navigate, job.target_context)
            artifacts = ArtifactWriter(self.settings.reports_folder, job.id)
            outcome = await run_blocking(
                self._interpreter.run,
                job.steps,
                driver,
                cancel_event=cancel_event,
                artifacts=artifacts,
            )
            report.step_results = outcome.results
            report.cancelled = outcome.cancelled
        except DriverUnavailableError as exc:
            logger.error("Job %s could not acquire a driver: %s", job.id, exc)
            report.error_message = error_message(exc)
        except Exception as exc:
            logger.exception("Job %s failed unexpectedly", job.id)
            report.error_message = error_message(exc)
        finally:
            if driver is not None:
                await self._close_driver(job, driver)
            report.execution_time_ms = int((time.monotonic() - started) * 1000)

        job.status = report.status
        try:
            await self._coordinator.report_result(job.id, report.status, report)
        except Exception:
            logger.exception("Reporting job %s raised", job.id)
        return report

    @staticmethod
    async def _close_driver(job: Job, driver) -> None:
        try:
            await run_blocking(driver.close)
        except Exception as exc:
            logger.warning("Closing driver of job %s failed: %s", job.id, exc)
