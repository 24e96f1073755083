"""Agent process: heartbeat and poll loops plus the command line entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import time
from typing import Any, Dict, List, Optional

import yaml

from execution_agent.config import AgentSettings
from execution_agent.coordinator import CoordinatorClient, dumps_report
from execution_agent.drivers.base import DriverUnavailableError
from execution_agent.drivers.factory import DriverFactory
from execution_agent.executor import CapacityExceededError, JobExecutor, interpreter_options
from execution_agent.interpreter import StepInterpreter, error_message
from execution_agent.models import ExecutionReport, Platform
from execution_agent.steps import parse_script

logger = logging.getLogger(__name__)


class AgentRunner:
    """Drives the job lifecycle: heartbeat, poll, claim and hand off."""

    def __init__(
        self,
        settings: AgentSettings,
        coordinator: CoordinatorClient,
        executor: JobExecutor,
    ) -> None:
        self.settings = settings
        self.coordinator = coordinator
        self.executor = executor
        self._stop = asyncio.Event()

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> "AgentRunner":
        coordinator = CoordinatorClient(settings)
        executor = JobExecutor(settings, coordinator, DriverFactory(settings))
        return cls(settings, coordinator, executor)

    def stop(self) -> None:
        if not self._stop.is_set():
            logger.info("Stopping agent")
        self._stop.set()

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def tick(self) -> Optional[asyncio.Task]:
        """One poll cycle; returns the scheduled job task when a job was taken."""

        capacity = self.executor.snapshot()
        if capacity.saturated:
            logger.debug("At capacity (%d/%d); not polling", capacity.active_jobs, capacity.max_capacity)
            return None
        offered = await self.coordinator.poll_for_jobs(capacity)
        if offered is None:
            return None
        logger.info("Job %s offered with %d steps", offered.id, len(offered.steps))
        claimed = await self.coordinator.claim_job(offered)
        if claimed is None:
            return None
        try:
            return self.executor.submit(claimed)
        except CapacityExceededError as exc:
            logger.warning("Claimed job %s could not be started: %s", claimed.id, exc)
            return None

    async def heartbeat_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.coordinator.send_heartbeat(self.executor.snapshot())
            except Exception:
                logger.exception("Heartbeat failed")
            await self._sleep(self.settings.heartbeat_interval)

    async def poll_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Poll cycle failed")
            delay = self.coordinator.next_poll_delay(
                self.settings.poll_interval, self.settings.poll_backoff_max
            )
            await self._sleep(delay)

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                signal.signal(sig, lambda _signum, _frame: loop.call_soon_threadsafe(self.stop))

    async def run(self) -> None:
        self._install_signal_handlers()
        logger.info(
            "Agent started against %s (max %d concurrent jobs)",
            self.settings.api_base_url,
            self.settings.max_capacity,
        )
        try:
            await asyncio.gather(self.heartbeat_loop(), self.poll_loop())
        finally:
            logger.info("Waiting for %d running job(s) to finish", self.executor.active_jobs)
            await self.executor.wait_idle()
            await self.coordinator.aclose()
            logger.info("Agent stopped")


# -----------------------------
# Command line
# -----------------------------
def load_script(path: str) -> Dict[str, Any]:
    """Load a YAML or JSON step script; a bare list is treated as the steps."""

    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle)
    if isinstance(data, list):
        return {"steps": data}
    if isinstance(data, dict) and isinstance(data.get("steps"), list):
        return data
    raise ValueError(f"{path} does not contain a list of steps")


def replay_script(
    settings: AgentSettings,
    script: Dict[str, Any],
    platform: Platform,
    device_id: Optional[str] = None,
    base_url: Optional[str] = None,
    factory: Optional[DriverFactory] = None,
) -> ExecutionReport:
    steps = parse_script(script["steps"])
    report = ExecutionReport(total_steps=len(steps))
    factory = factory or DriverFactory(settings)
    started = time.monotonic()
    try:
        driver = factory.open(platform, device_id or script.get("device_id"))
    except DriverUnavailableError as exc:
        report.error_message = error_message(exc)
        return report
    try:
        target = base_url or script.get("base_url")
        if target and not platform.is_device:
            driver.navigate(target)
        outcome = StepInterpreter(interpreter_options(settings)).run(steps, driver)
        report.step_results = outcome.results
    except Exception as exc:
        logger.exception("Local replay failed")
        report.error_message = error_message(exc)
    finally:
        driver.close()
        report.execution_time_ms = int((time.monotonic() - started) * 1000)
    return report


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Self-hosted UI execution agent")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Connect to the coordinator and execute jobs")

    serve = subparsers.add_parser("serve", help="Start the local control API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8765)

    replay = subparsers.add_parser("replay", help="Execute a step script locally")
    replay.add_argument("script", help="Path to a YAML or JSON step script")
    replay.add_argument("--platform", default="web", choices=[p.value for p in Platform])
    replay.add_argument("--device-id", default=None)
    replay.add_argument("--base-url", default=None)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = AgentSettings.from_env()

    if args.command == "run":
        asyncio.run(AgentRunner.from_settings(settings).run())
        return 0

    if args.command == "serve":
        import uvicorn

        from execution_agent.api import create_app

        uvicorn.run(create_app(settings), host=args.host, port=args.port)
        return 0

    script = load_script(args.script)
    report = replay_script(
        settings,
        script,
        Platform.coerce(args.platform),
        device_id=args.device_id,
        base_url=args.base_url,
    )
    print(dumps_report(report, report.status))
    return 0 if report.status.value == "completed" else 1


if __name__ == "__main__":
    sys.exit(main())
