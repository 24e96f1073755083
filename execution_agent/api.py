"""Local control surface: device passthroughs, inspection, recording and replay."""

from __future__ import annotations

import asyncio
import logging
import os
import secrets
import tempfile
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, status
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel, Field

from execution_agent import __version__
from execution_agent.blocking import run_blocking
from execution_agent.config import AgentSettings
from execution_agent.drivers.base import DriverUnavailableError, is_device_driver
from execution_agent.drivers.factory import AnyDriver, DriverFactory
from execution_agent.events import EventBus, format_sse
from execution_agent.executor import interpreter_options
from execution_agent.hierarchy import UIHierarchySnapshot, diff_hierarchies, parse_snapshot
from execution_agent.interpreter import StepInterpreter
from execution_agent.locator_history import LocatorHistoryStore
from execution_agent.locators import (
    ElementHints,
    LocatorCandidate,
    LocatorStrategy,
    count_matches,
    inspect_locator,
    inspect_point,
)
from execution_agent.models import Platform
from execution_agent.recording import RecordingBridge, RecordingError, ReplayController
from execution_agent.snapshot_store import SnapshotStore
from execution_agent.steps import (
    ClearAppData,
    ElementTarget,
    HideKeyboard,
    InputText,
    LaunchApp,
    LongPress,
    Navigate,
    Point,
    PressKey,
    StopApp,
    Swipe,
    Tap,
    UninstallApp,
    dump_script,
    parse_script,
)

logger = logging.getLogger(__name__)


# -----------------------------
# Request models
# -----------------------------
class PointRequest(BaseModel):
    x: int = Field(..., ge=0)
    y: int = Field(..., ge=0)


class LongPressRequest(PointRequest):
    duration_ms: int = Field(1000, ge=1)


class InputRequest(BaseModel):
    text: str
    x: Optional[int] = Field(None, ge=0)
    y: Optional[int] = Field(None, ge=0)


class SwipeRequest(BaseModel):
    start_x: int = Field(..., ge=0)
    start_y: int = Field(..., ge=0)
    end_x: int = Field(..., ge=0)
    end_y: int = Field(..., ge=0)
    duration_ms: int = Field(500, ge=1)


class KeyRequest(BaseModel):
    code: str = Field(..., min_length=1)


class AppRequest(BaseModel):
    app_id: str = Field(..., min_length=1)


class NavigateRequest(BaseModel):
    url: str = Field(..., min_length=1)


class LocatorRequest(BaseModel):
    locator: str = Field(..., min_length=1)
    strategy: str = "id"


class ConnectRequest(BaseModel):
    platform: str = "android"
    device_id: Optional[str] = None


class DiffRequest(BaseModel):
    from_snapshot_id: str
    to_snapshot_id: Optional[str] = Field(
        None, description="Defaults to a fresh capture of the current screen."
    )


class ReplayRequest(BaseModel):
    steps: Optional[List[Dict[str, Any]]] = Field(
        None, description="Steps to replay; defaults to the current recording."
    )


# -----------------------------
# Device session
# -----------------------------
class LocalDeviceController:
    """Lazily opened driver shared by the local passthrough endpoints."""

    def __init__(self, factory: DriverFactory, platform: Platform, device_id: Optional[str] = None) -> None:
        self._factory = factory
        self.platform = platform
        self.device_id = device_id
        self._driver: Optional[AnyDriver] = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._driver is not None

    async def driver(self) -> AnyDriver:
        async with self._lock:
            if self._driver is None:
                self._driver = await run_blocking(self._factory.open, self.platform, self.device_id)
            return self._driver

    async def connect(self, platform: Platform, device_id: Optional[str]) -> AnyDriver:
        await self.close()
        self.platform = platform
        self.device_id = device_id
        return await self.driver()

    async def close(self) -> None:
        async with self._lock:
            driver, self._driver = self._driver, None
        if driver is not None:
            await run_blocking(driver.close)


class LocalAgent:
    """Objects shared by the local API handlers."""

    def __init__(
        self,
        settings: AgentSettings,
        factory: DriverFactory,
        interpreter: StepInterpreter,
        store: SnapshotStore,
        history: LocatorHistoryStore,
    ) -> None:
        self.settings = settings
        self.bus = EventBus()
        self.recorder = RecordingBridge(self.bus)
        self.replayer = ReplayController(self.bus, interpreter)
        self.store = store
        self.history = history
        self.device = LocalDeviceController(
            factory, Platform.coerce(settings.local_platform), settings.local_device_id
        )


def _parse_bearer_token(authorization: Optional[str]) -> str:
    """Extract the bearer token from the ``Authorization`` header."""

    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header",
        )

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Authorization header",
        )
    return parts[1]


def create_app(
    settings: Optional[AgentSettings] = None,
    driver_factory: Optional[DriverFactory] = None,
    interpreter: Optional[StepInterpreter] = None,
    snapshot_store: Optional[SnapshotStore] = None,
    history_store: Optional[LocatorHistoryStore] = None,
) -> FastAPI:
    settings = settings or AgentSettings.from_env()
    agent = LocalAgent(
        settings,
        driver_factory or DriverFactory(settings),
        interpreter or StepInterpreter(interpreter_options(settings)),
        snapshot_store or SnapshotStore(settings.snapshot_dir, settings.snapshot_retention),
        history_store or LocatorHistoryStore(settings.history_dir, settings.history_enabled),
    )

    app = FastAPI(
        title="Execution Agent",
        version=__version__,
        description="Local control surface of a self-hosted UI execution agent.",
    )
    app.state.agent = agent

    async def require_token(authorization: Optional[str] = Header(None)) -> None:
        if not settings.local_token:
            return
        token = _parse_bearer_token(authorization)
        if not secrets.compare_digest(token, settings.local_token):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token",
            )

    router = APIRouter(dependencies=[Depends(require_token)])

    async def _driver() -> AnyDriver:
        try:
            return await agent.device.driver()
        except DriverUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

    async def _device_driver() -> AnyDriver:
        driver = await _driver()
        if not is_device_driver(driver):
            raise HTTPException(status_code=400, detail="The local session is not a device session")
        return driver

    async def _capture(driver: AnyDriver) -> UIHierarchySnapshot:
        xml = await run_blocking(driver.page_source)
        snapshot = parse_snapshot(xml)
        if snapshot.nodes:
            await run_blocking(agent.store.save, snapshot)
        return snapshot

    async def _screen_for_recording(driver: AnyDriver) -> Optional[UIHierarchySnapshot]:
        """Screen the user is about to act on, or ``None`` when not recording.

        Capture problems are logged and never block the action itself.
        """

        if not agent.recorder.active or agent.recorder.paused:
            return None
        try:
            snapshot = parse_snapshot(await run_blocking(driver.page_source))
        except Exception as exc:
            logger.warning("Hierarchy capture for recording failed: %s", exc)
            return None
        if snapshot.nodes:
            try:
                await run_blocking(agent.store.save, snapshot)
            except Exception as exc:
                logger.warning("Could not store snapshot %s: %s", snapshot.snapshot_id, exc)
        return snapshot

    async def _target_for_point(snapshot: Optional[UIHierarchySnapshot], x: int, y: int) -> ElementTarget:
        """Locators for the element under ``(x, y)``; the literal point when none derive."""

        point = Point(x, y)
        if snapshot is None:
            return ElementTarget(point=point)
        try:
            inspection = inspect_point(snapshot, x, y)
        except Exception as exc:
            logger.warning("Locator derivation at (%d, %d) failed: %s", x, y, exc)
            return ElementTarget(point=point)
        if inspection.node is None or inspection.bundle is None:
            return ElementTarget(point=point)
        try:
            await run_blocking(
                agent.history.append,
                inspection.node.get("package"),
                inspection.bundle,
                snapshot.snapshot_id,
                inspection.node.metadata(),
            )
        except Exception as exc:
            logger.warning("Could not append locator history: %s", exc)
        return ElementTarget(
            candidates=tuple(inspection.bundle.candidates),
            point=point,
            hints=ElementHints.from_node(inspection.node),
        )

    async def _perform(driver: AnyDriver, method: str, *args: Any) -> None:
        try:
            await run_blocking(getattr(driver, method), *args)
        except Exception as exc:
            logger.warning("Local %s failed: %s", method, exc)
            raise HTTPException(status_code=502, detail=f"{method} failed: {exc}") from exc

    # -- health ----------------------------------------------------------
    @app.get("/health", summary="Health check")
    async def health() -> Dict[str, str]:
        return {"status": "ok", "version": __version__}

    @router.get("/agent/status")
    async def agent_status() -> Dict[str, Any]:
        return {
            "version": __version__,
            "platform": agent.device.platform.value,
            "device_id": agent.device.device_id,
            "connected": agent.device.connected,
            "recording": agent.recorder.status(),
            "replay_running": agent.replayer.running,
        }

    @router.post("/agent/connect")
    async def connect(request: ConnectRequest) -> Dict[str, Any]:
        try:
            platform = Platform.coerce(request.platform)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        try:
            await agent.device.connect(platform, request.device_id)
        except DriverUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"connected": True, "platform": platform.value, "device_id": request.device_id}

    # -- passthroughs ------------------------------------------------------
    @router.post("/device/tap")
    async def tap(request: PointRequest) -> Dict[str, Any]:
        driver = await _device_driver()
        screen = await _screen_for_recording(driver)
        await _perform(driver, "tap", request.x, request.y)
        target = await _target_for_point(screen, request.x, request.y)
        agent.recorder.record(Tap(target=target))
        return {"status": "ok", "x": request.x, "y": request.y, "locators": len(target.candidates)}

    @router.post("/device/long-press")
    async def long_press(request: LongPressRequest) -> Dict[str, Any]:
        driver = await _device_driver()
        screen = await _screen_for_recording(driver)
        await _perform(driver, "long_press", request.x, request.y, request.duration_ms)
        target = await _target_for_point(screen, request.x, request.y)
        agent.recorder.record(LongPress(target=target, duration_ms=request.duration_ms))
        return {"status": "ok", "x": request.x, "y": request.y}

    @router.post("/device/input")
    async def input_text(request: InputRequest) -> Dict[str, Any]:
        driver = await _device_driver()
        target = None
        if request.x is not None and request.y is not None:
            screen = await _screen_for_recording(driver)
            await _perform(driver, "tap", request.x, request.y)
            target = await _target_for_point(screen, request.x, request.y)
        await _perform(driver, "input_text", request.text)
        agent.recorder.record(InputText(text=request.text, target=target))
        return {"status": "ok"}

    @router.post("/device/swipe")
    async def swipe(request: SwipeRequest) -> Dict[str, Any]:
        driver = await _device_driver()
        await _perform(
            driver, "swipe", request.start_x, request.start_y, request.end_x, request.end_y, request.duration_ms
        )
        agent.recorder.record(
            Swipe(
                start=Point(request.start_x, request.start_y),
                end=Point(request.end_x, request.end_y),
                duration_ms=request.duration_ms,
            )
        )
        return {"status": "ok"}

    @router.post("/device/key")
    async def press_key(request: KeyRequest) -> Dict[str, Any]:
        driver = await _device_driver()
        await _perform(driver, "press_key", request.code)
        agent.recorder.record(PressKey(code=request.code))
        return {"status": "ok"}

    @router.post("/device/hide-keyboard")
    async def hide_keyboard() -> Dict[str, Any]:
        driver = await _device_driver()
        await _perform(driver, "hide_keyboard")
        agent.recorder.record(HideKeyboard())
        return {"status": "ok"}

    @router.post("/app/launch")
    async def launch_app(request: AppRequest) -> Dict[str, Any]:
        driver = await _device_driver()
        await _perform(driver, "launch_app", request.app_id)
        agent.recorder.record(LaunchApp(app_id=request.app_id))
        return {"status": "ok"}

    @router.post("/app/stop")
    async def stop_app(request: AppRequest) -> Dict[str, Any]:
        driver = await _device_driver()
        await _perform(driver, "stop_app", request.app_id)
        agent.recorder.record(StopApp(app_id=request.app_id))
        return {"status": "ok"}

    @router.post("/app/clear")
    async def clear_app(request: AppRequest) -> Dict[str, Any]:
        driver = await _device_driver()
        await _perform(driver, "clear_app_data", request.app_id)
        agent.recorder.record(ClearAppData(app_id=request.app_id))
        return {"status": "ok"}

    @router.post("/device/uninstall")
    async def uninstall_app(request: AppRequest) -> Dict[str, Any]:
        driver = await _device_driver()
        await _perform(driver, "uninstall_app", request.app_id)
        agent.recorder.record(UninstallApp(app_id=request.app_id))
        return {"status": "ok"}

    @router.post("/page/navigate")
    async def navigate(request: NavigateRequest) -> Dict[str, Any]:
        driver = await _driver()
        if is_device_driver(driver):
            raise HTTPException(status_code=400, detail="The local session is not a browser session")
        await _perform(driver, "navigate", request.url)
        agent.recorder.record(Navigate(url=request.url))
        return {"status": "ok"}

    # -- inspection --------------------------------------------------------
    @router.get("/device/ui")
    async def device_ui() -> Dict[str, Any]:
        driver = await _device_driver()
        snapshot = await _capture(driver)
        return {
            "snapshot_id": snapshot.snapshot_id,
            "captured_at": snapshot.captured_at,
            "node_count": len(snapshot),
            "nodes": [
                {"index": node.index, "depth": node.depth, "parent_index": node.parent_index, **node.metadata()}
                for node in snapshot
            ],
        }

    @router.post("/device/inspect")
    async def inspect(request: PointRequest) -> Dict[str, Any]:
        driver = await _device_driver()
        snapshot = await _capture(driver)
        result = inspect_point(snapshot, request.x, request.y).to_dict()
        result["snapshot_id"] = snapshot.snapshot_id
        return result

    @router.post("/device/inspect-locator")
    async def inspect_by_locator(request: LocatorRequest) -> Dict[str, Any]:
        try:
            candidate = LocatorCandidate(LocatorStrategy.coerce(request.strategy), request.locator.strip())
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        driver = await _device_driver()
        snapshot = await _capture(driver)
        inspection = inspect_locator(snapshot, candidate)
        if inspection is None:
            raise HTTPException(
                status_code=404,
                detail=f"No element matches {candidate.strategy.value}={candidate.value!r}",
            )
        result = inspection.to_dict()
        result["match_count"] = count_matches(snapshot, candidate)
        result["snapshot_id"] = snapshot.snapshot_id
        return result

    @router.get("/device/locator-history/{fingerprint}")
    async def locator_history(fingerprint: str, package: Optional[str] = None, limit: int = 50) -> Dict[str, Any]:
        records = await run_blocking(agent.history.recent, package, fingerprint, max(1, limit))
        return {"fingerprint": fingerprint, "package": package, "records": records}

    @router.get("/device/screenshot")
    async def screenshot() -> Response:
        driver = await _driver()
        handle, path = tempfile.mkstemp(suffix=".png")
        os.close(handle)
        try:
            await _perform(driver, "screenshot", path)
            with open(path, "rb") as image:
                content = image.read()
        finally:
            os.unlink(path)
        return Response(content=content, media_type="image/png")

    @router.get("/device/hierarchy/snapshot/{snapshot_id}")
    async def get_snapshot(snapshot_id: str) -> Dict[str, Any]:
        snapshot = await run_blocking(agent.store.load, snapshot_id)
        if snapshot is None:
            raise HTTPException(status_code=404, detail="Snapshot not found")
        return {
            "snapshot_id": snapshot_id,
            "captured_at": snapshot.captured_at,
            "node_count": len(snapshot),
            "xml": snapshot.xml,
        }

    @router.post("/device/hierarchy/diff")
    async def diff(request: DiffRequest) -> Dict[str, Any]:
        before = await run_blocking(agent.store.load, request.from_snapshot_id)
        if before is None:
            raise HTTPException(status_code=404, detail="Snapshot not found")
        if request.to_snapshot_id:
            after = await run_blocking(agent.store.load, request.to_snapshot_id)
            if after is None:
                raise HTTPException(status_code=404, detail="Snapshot not found")
        else:
            after = await _capture(await _device_driver())
        result = diff_hierarchies(before, after)
        result["from_snapshot_id"] = request.from_snapshot_id
        result["to_snapshot_id"] = after.snapshot_id
        return result

    # -- recording ---------------------------------------------------------
    @router.post("/recording/start")
    async def start_recording() -> Dict[str, Any]:
        try:
            session_id = agent.recorder.start()
        except RecordingError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"status": "recording", "session_id": session_id}

    @router.post("/recording/stop")
    async def stop_recording() -> Dict[str, Any]:
        try:
            steps = agent.recorder.stop()
        except RecordingError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"status": "stopped", "steps": dump_script(steps)}

    @router.post("/recording/pause")
    async def pause_recording() -> Dict[str, Any]:
        try:
            agent.recorder.pause()
        except RecordingError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"status": "paused"}

    @router.post("/recording/resume")
    async def resume_recording() -> Dict[str, Any]:
        try:
            agent.recorder.resume()
        except RecordingError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"status": "recording"}

    @router.get("/recording/steps")
    async def recorded_steps() -> Dict[str, Any]:
        return {**agent.recorder.status(), "steps": dump_script(agent.recorder.steps())}

    @router.post("/recording/replay")
    async def replay(request: ReplayRequest) -> Dict[str, Any]:
        if request.steps is not None:
            try:
                steps = parse_script(request.steps)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
        else:
            steps = agent.recorder.steps()
        if not steps:
            raise HTTPException(status_code=400, detail="Nothing to replay")
        if agent.replayer.running:
            raise HTTPException(status_code=400, detail="A replay is already running")
        driver = await _driver()
        try:
            outcome = await agent.replayer.replay(steps, driver)
        except RecordingError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {
            "status": "cancelled" if outcome.cancelled else ("passed" if outcome.passed else "failed"),
            "total_steps": len(steps),
            "step_results": [result.to_payload() for result in outcome.results],
        }

    @router.post("/recording/replay/stop")
    async def stop_replay() -> Dict[str, Any]:
        return {"stopped": agent.replayer.stop()}

    @router.get("/recording/events")
    async def recording_events() -> StreamingResponse:
        async def _stream() -> AsyncIterator[str]:
            yield ": connected\n\n"
            async for event in agent.bus.listen():
                yield format_sse(event)

        return StreamingResponse(
            _stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    app.include_router(router)

    @app.on_event("shutdown")
    async def _close_device() -> None:
        """Release the local driver session on shutdown."""

        await agent.device.close()

    return app
