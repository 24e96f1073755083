"""Recording of interactive sessions and replay of the captured steps."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from typing import Any, Dict, List, Optional, Sequence

from execution_agent import events
from execution_agent.blocking import run_blocking
from execution_agent.events import EventBus
from execution_agent.interpreter import InterpretationResult, StepInterpreter
from execution_agent.models import StepResult
from execution_agent.steps import Step

logger = logging.getLogger(__name__)


class RecordingError(RuntimeError):
    """Raised for recording or replay calls made in the wrong state."""


class RecordingBridge:
    """Append-only log of the steps performed during one recording session."""

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self._steps: List[Step] = []
        self._active = False
        self._paused = False
        self.session_id: Optional[str] = None
        self.started_at: Optional[float] = None

    @property
    def active(self) -> bool:
        return self._active

    @property
    def paused(self) -> bool:
        return self._paused

    def start(self) -> str:
        if self._active:
            raise RecordingError("A recording session is already active")
        self._steps = []
        self._active = True
        self._paused = False
        self.session_id = uuid.uuid4().hex
        self.started_at = time.time()
        logger.info("Recording session %s started", self.session_id)
        return self.session_id

    def stop(self) -> List[Step]:
        if not self._active:
            raise RecordingError("No recording session is active")
        self._active = False
        self._paused = False
        logger.info("Recording session %s stopped with %d steps", self.session_id, len(self._steps))
        return list(self._steps)

    def pause(self) -> None:
        if not self._active:
            raise RecordingError("No recording session is active")
        self._paused = True

    def resume(self) -> None:
        if not self._active:
            raise RecordingError("No recording session is active")
        self._paused = False

    def record(self, step: Step) -> bool:
        """Append ``step`` when recording and not paused."""

        if not self._active or self._paused:
            return False
        self._steps.append(step)
        index = len(self._steps) - 1
        self._bus.publish(events.STEP_ADDED, {"index": index, "step": step.to_dict()})
        return True

    def steps(self) -> List[Step]:
        return list(self._steps)

    def status(self) -> Dict[str, Any]:
        return {
            "recording": self._active,
            "paused": self._paused,
            "session_id": self.session_id,
            "started_at": self.started_at,
            "step_count": len(self._steps),
        }


class _ReplayObserver:
    """Forwards interpreter callbacks from the worker thread to the loop."""

    def __init__(self, bus: EventBus, loop: asyncio.AbstractEventLoop) -> None:
        self._bus = bus
        self._loop = loop

    def _publish(self, kind: str, data: Dict[str, Any]) -> None:
        self._loop.call_soon_threadsafe(self._bus.publish, kind, data)

    def on_step_started(self, index: int, step: Step) -> None:
        self._publish(events.REPLAY_STEP_STARTED, {"step_index": index, "step_type": step.step_type})

    def on_step_completed(self, index: int, step: Step, result: StepResult) -> None:
        self._publish(events.REPLAY_STEP_COMPLETED, result.to_payload())
        if not result.passed:
            self._publish(events.REPLAY_ERROR, {"step_index": index, "error": result.error})


class ReplayController:
    """Runs one replay at a time and publishes its progress."""

    def __init__(self, bus: EventBus, interpreter: StepInterpreter) -> None:
        self._bus = bus
        self._interpreter = interpreter
        self._cancel_event: Optional[threading.Event] = None

    @property
    def running(self) -> bool:
        return self._cancel_event is not None

    def stop(self) -> bool:
        if self._cancel_event is None:
            return False
        self._cancel_event.set()
        logger.info("Replay stop requested")
        return True

    async def replay(self, steps: Sequence[Step], driver: Any) -> InterpretationResult:
        if self._cancel_event is not None:
            raise RecordingError("A replay is already running")
        cancel_event = threading.Event()
        self._cancel_event = cancel_event
        observer = _ReplayObserver(self._bus, asyncio.get_running_loop())
        self._bus.publish(events.REPLAY_STARTED, {"total_steps": len(steps)})
        outcome: Optional[InterpretationResult] = None
        try:
            outcome = await run_blocking(
                self._interpreter.run,
                list(steps),
                driver,
                cancel_event=cancel_event,
                observer=observer,
            )
            return outcome
        except Exception as exc:
            logger.exception("Replay failed")
            self._bus.publish(events.REPLAY_ERROR, {"error": str(exc)})
            raise
        finally:
            self._cancel_event = None
            results = outcome.results if outcome else []
            self._bus.publish(
                events.REPLAY_COMPLETED,
                {
                    "total_steps": len(steps),
                    "passed_steps": sum(1 for result in results if result.passed),
                    "failed_steps": sum(1 for result in results if not result.passed),
                    "cancelled": bool(outcome and outcome.cancelled),
                },
            )
