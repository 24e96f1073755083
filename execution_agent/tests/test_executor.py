"""Tests for the capacity-bounded executor and the poll cycle."""

from __future__ import annotations

import asyncio
import threading
from typing import List, Optional

import pytest

from execution_agent.agent_runner import AgentRunner
from execution_agent.drivers.factory import DriverFactory
from execution_agent.executor import CapacityExceededError, JobExecutor
from execution_agent.interpreter import InterpreterOptions, StepInterpreter
from execution_agent.models import CapacitySnapshot, Job, JobStatus


class FakeCoordinator:
    """Stands in for :class:`CoordinatorClient` and records every call."""

    def __init__(self, offers: Optional[List[dict]] = None, fail_reports: bool = False) -> None:
        self.offers = list(offers or [])
        self.polls: List[CapacitySnapshot] = []
        self.claims: List[str] = []
        self.reports: List[tuple] = []
        self.fail_reports = fail_reports

    async def poll_for_jobs(self, capacity):
        self.polls.append(capacity)
        if capacity.saturated or not self.offers:
            return None
        return Job.from_payload(self.offers.pop(0))

    async def claim_job(self, job):
        self.claims.append(job.id)
        return job.merged_with(None)

    async def report_result(self, job_id, status, report):
        self.reports.append((job_id, status, report))
        if self.fail_reports:
            raise RuntimeError("coordinator unreachable")
        return True


def _job(job_id: str, steps=None, platform: str = "android") -> Job:
    return Job.from_payload(
        {"id": job_id, "platform": platform, "device_id": "emulator-5554", "steps": steps or [{"type": "tap", "x": 1, "y": 2}]}
    )


def _executor(settings, coordinator, device_builder=None, page_builder=None, interpreter=None) -> JobExecutor:
    factory = DriverFactory(settings, page_builder=page_builder, device_builder=device_builder)
    interpreter = interpreter or StepInterpreter(InterpreterOptions(step_timeout_ms=250), sleep=lambda _s: None)
    return JobExecutor(settings, coordinator, factory, interpreter)


def test_successful_job_reports_completed_once(settings, device_driver_cls):
    coordinator = FakeCoordinator()
    drivers = []

    def build(_settings, platform, device_id, server):
        driver = device_driver_cls()
        drivers.append((driver, device_id, server))
        return driver

    async def scenario():
        executor = _executor(settings, coordinator, device_builder=build)
        await executor.submit(_job("job-1"))
        return executor

    executor = asyncio.run(scenario())

    assert executor.active_jobs == 0
    assert len(coordinator.reports) == 1
    job_id, status, report = coordinator.reports[0]
    assert (job_id, status) == ("job-1", JobStatus.COMPLETED)
    assert report.passed_steps == 1
    driver, device_id, server = drivers[0]
    assert driver.closed
    assert device_id == "emulator-5554"
    assert server == settings.appium_server


def test_web_job_navigates_to_target_context(settings, page_driver_cls):
    coordinator = FakeCoordinator()
    page = page_driver_cls({"#go": ""})
    job = Job.from_payload(
        {"id": "web-1", "base_url": "https://example.test", "steps": [{"type": "click", "selector": "#go"}]}
    )

    async def scenario():
        executor = _executor(settings, coordinator, page_builder=lambda _settings: page)
        await executor.submit(job)

    asyncio.run(scenario())

    assert page.calls[0] == ("navigate", "https://example.test")
    assert coordinator.reports[0][1] is JobStatus.COMPLETED
    assert page.closed


def test_failed_step_reports_failed(settings, device_driver_cls):
    coordinator = FakeCoordinator()
    job = _job("job-2", steps=[{"type": "tap", "locator": "com.example:id/gone", "locator_strategy": "id"}, {"type": "wait"}])

    async def scenario():
        executor = _executor(settings, coordinator, device_builder=lambda *args: device_driver_cls())
        await executor.submit(job)

    asyncio.run(scenario())

    _, status, report = coordinator.reports[0]
    assert status is JobStatus.FAILED
    assert report.total_steps == 2
    assert len(report.step_results) == 1
    assert report.failed_steps == 1


def test_driver_unavailable_is_reported_and_slot_released(settings):
    coordinator = FakeCoordinator()

    def broken(*_args):
        raise ConnectionError("no device attached")

    async def scenario():
        executor = _executor(settings, coordinator, device_builder=broken)
        await executor.submit(_job("job-3"))
        return executor

    executor = asyncio.run(scenario())

    _, status, report = coordinator.reports[0]
    assert status is JobStatus.FAILED
    assert "no device attached" in report.error_message
    assert report.step_results == []
    assert executor.active_jobs == 0


def test_unexpected_interpreter_error_is_reported(settings, device_driver_cls):
    coordinator = FakeCoordinator()
    driver = device_driver_cls()

    class ExplodingInterpreter:
        def run(self, steps, driver, **kwargs):
            raise KeyError("boom")

    async def scenario():
        executor = _executor(
            settings, coordinator, device_builder=lambda *args: driver, interpreter=ExplodingInterpreter()
        )
        await executor.submit(_job("job-4"))
        return executor

    executor = asyncio.run(scenario())

    assert [r[1] for r in coordinator.reports] == [JobStatus.FAILED]
    assert driver.closed
    assert executor.active_jobs == 0


def test_report_failure_still_releases_slot(settings, device_driver_cls):
    coordinator = FakeCoordinator(fail_reports=True)

    async def scenario():
        executor = _executor(settings, coordinator, device_builder=lambda *args: device_driver_cls())
        report = await executor.submit(_job("job-5"))
        return executor, report

    executor, report = asyncio.run(scenario())

    assert len(coordinator.reports) == 1
    assert report.status is JobStatus.COMPLETED
    assert executor.active_jobs == 0


def test_capacity_is_never_exceeded(settings, device_driver_cls):
    coordinator = FakeCoordinator()
    gate = threading.Event()

    def slow_build(*_args):
        gate.wait(5)
        return device_driver_cls()

    async def scenario():
        executor = _executor(settings, coordinator, device_builder=slow_build)
        tasks = [executor.submit(_job(f"job-{i}")) for i in range(3)]
        assert executor.active_jobs == 3
        assert executor.snapshot().current_capacity == 0
        with pytest.raises(CapacityExceededError):
            executor.submit(_job("job-overflow"))
        gate.set()
        await asyncio.gather(*tasks)
        return executor

    executor = asyncio.run(scenario())

    assert executor.active_jobs == 0
    assert sorted(r[0] for r in coordinator.reports) == ["job-0", "job-1", "job-2"]


def test_cancel_before_first_step(settings, device_driver_cls):
    coordinator = FakeCoordinator()

    async def scenario():
        executor = _executor(settings, coordinator, device_builder=lambda *args: device_driver_cls())
        task = executor.submit(_job("job-6"))
        assert executor.cancel("job-6")
        assert not executor.cancel("unknown")
        await task

    asyncio.run(scenario())

    _, status, report = coordinator.reports[0]
    assert status is JobStatus.CANCELLED
    assert report.step_results == []


def test_saturated_agent_does_not_poll_or_claim(settings, device_driver_cls):
    offers = [{"id": f"job-{i}", "platform": "android", "steps": [{"type": "wait"}]} for i in range(4)]
    coordinator = FakeCoordinator(offers)
    gate = threading.Event()

    def slow_build(*_args):
        gate.wait(5)
        return device_driver_cls()

    async def scenario():
        executor = _executor(settings, coordinator, device_builder=slow_build)
        runner = AgentRunner(settings, coordinator, executor)
        tasks = [await runner.tick() for _ in range(3)]
        fourth = await runner.tick()
        gate.set()
        await executor.wait_idle()
        return tasks, fourth

    tasks, fourth = asyncio.run(scenario())

    assert all(task is not None for task in tasks)
    assert fourth is None
    assert len(coordinator.polls) == 3
    assert coordinator.claims == ["job-0", "job-1", "job-2"]
    assert len(coordinator.offers) == 1
    assert len(coordinator.reports) == 3
