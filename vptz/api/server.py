"""
FastAPI front door for the virtual PTZ control service.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from ..control import ControlSurface
from ..errors import StoreError, ValidationError
from ..notify import ALL_CAMERAS, Cameras
from . import schemas

LOG = logging.getLogger(__name__)

T = TypeVar("T")

PRESET_ACTIONS = ("select", "store", "reset", "clear")


@dataclass
class OutboundMessage:
    payload: Dict[str, Any]
    allow_drop: bool = False


class StateSession:
    """One WebSocket client receiving state frames through a bounded queue."""

    def __init__(self, hub: "StateHub", websocket: WebSocket, *, queue_size: int) -> None:
        self.hub = hub
        self.websocket = websocket
        self.session_id = uuid.uuid4().hex
        self.send_queue: asyncio.Queue[OutboundMessage] = asyncio.Queue(maxsize=queue_size)
        self._stop_event = asyncio.Event()
        self._closing = False
        self.logger = LOG.getChild(f"ws.{self.session_id[:8]}")

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> None:
        try:
            await self.websocket.accept()
        except Exception:
            self.logger.exception("Failed to accept WebSocket connection")
            return

        try:
            await self.send(await self.hub.state_message(cached=True))
            async with asyncio.TaskGroup() as task_group:
                task_group.create_task(self._recv_loop())
                task_group.create_task(self._send_loop())
        except asyncio.CancelledError:
            raise
        except WebSocketDisconnect:
            self.logger.debug("WebSocket client disconnected")
        except Exception:
            self.logger.exception("State session crashed")
        finally:
            await self.hub.finalise_session(self)
            await self.close(code=1000)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closing:
            return
        self._closing = True
        self._stop_event.set()
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await self.websocket.close(code=code, reason=reason)

    async def send(self, payload: Dict[str, Any], *, allow_drop: bool = False) -> None:
        if self.is_stopped:
            return
        message = OutboundMessage(payload=payload, allow_drop=allow_drop)
        if allow_drop:
            try:
                self.send_queue.put_nowait(message)
            except asyncio.QueueFull:
                self.logger.debug("Dropping cached state frame due to backpressure")
            return
        await self.send_queue.put(message)

    async def _recv_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    message = await self.websocket.receive_json()
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    break
                except Exception:
                    self.logger.exception("Failed to receive message")
                    break
                if isinstance(message, dict) and str(message.get("cmd") or "").upper() == "STATE":
                    await self.send(await self.hub.state_message(cached=bool(message.get("cached", True))))
        finally:
            self._stop_event.set()

    async def _send_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    outbound = await asyncio.wait_for(self.send_queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                try:
                    await self.websocket.send_json(outbound.payload)
                except asyncio.CancelledError:
                    raise
                except (WebSocketDisconnect, RuntimeError) as exc:
                    self.logger.debug("Send failed, closing session: %s", exc)
                    break
                finally:
                    self.send_queue.task_done()
        finally:
            self._stop_event.set()


class StateHub:
    """WebSocket fan-out of coalesced state notifications."""

    def __init__(self, surface: ControlSurface, *, queue_size: int = 64) -> None:
        self.surface = surface
        self.queue_size = max(1, int(queue_size))
        self._sessions: Dict[str, StateSession] = {}
        self._lock = asyncio.Lock()
        self._running = False
        self._tally_bound = False

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self.surface.notifier.add_sink(self.publish)
        if not self._tally_bound:
            self._tally_bound = True
            self.surface.session.add_tally_listener(self._on_tally)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self.surface.notifier.remove_sink(self.publish)
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            await session.close(code=1001, reason="server shutdown")

    async def run(self, websocket: WebSocket) -> None:
        session = StateSession(self, websocket, queue_size=self.queue_size)
        async with self._lock:
            self._sessions[session.session_id] = session
        await session.run()

    async def finalise_session(self, session: StateSession) -> None:
        async with self._lock:
            self._sessions.pop(session.session_id, None)

    async def state_message(self, *, cached: bool, cameras: Cameras = ALL_CAMERAS, state: Optional[dict] = None) -> dict:
        if state is None:
            state = await self.surface.snapshot(cached=cached)
        message = schemas.StateMessage(state=state, cached=cached, cameras=cameras)
        return {"cmd": "STATE", "arg": message.model_dump()}

    async def _on_tally(self, instance, tally) -> None:
        if not self._running:
            return
        merged = self.surface.session.tally
        message = schemas.TallyMessage(program=merged.program, preview=merged.preview)
        await self._broadcast({"cmd": "TALLY", "arg": message.model_dump()}, allow_drop=True)

    async def publish(self, snapshot: dict, cached: bool, cameras: Cameras) -> None:
        async with self._lock:
            targets = list(self._sessions.values())
        if not targets:
            return
        payload = await self.state_message(cached=cached, cameras=cameras, state=snapshot)
        await self._send_all(targets, payload, allow_drop=cached)

    async def _broadcast(self, payload: dict, *, allow_drop: bool) -> None:
        async with self._lock:
            targets = list(self._sessions.values())
        await self._send_all(targets, payload, allow_drop=allow_drop)

    @staticmethod
    async def _send_all(targets, payload: dict, *, allow_drop: bool) -> None:
        if targets:
            await asyncio.gather(
                *[target.send(dict(payload), allow_drop=allow_drop) for target in targets],
                return_exceptions=True,
            )


async def _invoke(operation: Awaitable[T]) -> T:
    try:
        return await operation
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


def create_app(
    surface: ControlSurface,
    *,
    lifespan: Optional[Callable[..., object]] = None,
    queue_size: int = 64,
) -> FastAPI:
    hub = StateHub(surface, queue_size=queue_size)

    app = FastAPI(title="vMix Virtual PTZ API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.hub = hub
    app.state.surface = surface

    @app.on_event("startup")
    async def _startup() -> None:
        await surface.store.open()
        await surface.init()
        await hub.start()
        await surface.session.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await surface.shutdown()
        await surface.session.shutdown()
        await surface.notifier.flush()
        surface.notifier.shutdown()
        await hub.stop()
        await surface.store.close()

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await hub.run(websocket)

    @app.get("/healthz")
    async def healthz() -> dict:
        return {
            "status": "ok",
            "mixers": {instance.value: surface.session.state(instance).value for instance in surface.session.instances},
            "clients": hub.session_count,
        }

    @app.get("/state", response_model=schemas.StateResponse)
    async def get_state(cached: bool = Query(default=True)) -> schemas.StateResponse:
        state = await _invoke(surface.snapshot(cached=cached))
        return schemas.StateResponse(cached=cached, state=state)

    @app.post("/preset/{cam}/{preset}/{action}", response_model=schemas.OperationResponse)
    async def preset_action(cam: str, preset: str, action: str) -> schemas.OperationResponse:
        if action not in PRESET_ACTIONS:
            raise HTTPException(status_code=400, detail=f"invalid preset action \"{action}\"")
        if cam == ALL_CAMERAS:
            operation = getattr(surface, f"{action}_preset_all")
            await _invoke(operation(preset))
        else:
            operation = getattr(surface, f"{action}_preset")
            await _invoke(operation(cam, preset))
        return schemas.OperationResponse()

    @app.post("/ptz/{cam}/{op}/{direction}", response_model=schemas.OperationResponse)
    async def change_physical(cam: str, op: str, direction: str, speed: str = Query(default="med")) -> schemas.OperationResponse:
        await _invoke(surface.change_physical_preset(cam, op, direction, speed))
        return schemas.OperationResponse()

    @app.post("/vptz/{cam}/{framing}/{op}/{direction}", response_model=schemas.OperationResponse)
    async def change_virtual(
        cam: str,
        framing: str,
        op: str,
        direction: str,
        speed: str = Query(default="med"),
    ) -> schemas.OperationResponse:
        completed = await _invoke(surface.change_virtual_framing(cam, framing, op, direction, speed))
        return schemas.OperationResponse(completed=completed)

    @app.put("/vptz/{cam}/{framing}", response_model=schemas.GeometryModel)
    async def set_geometry(cam: str, framing: str, payload: schemas.GeometryModel) -> schemas.GeometryModel:
        geometry = await _invoke(surface.set_framing_geometry(cam, framing, payload.x, payload.y, payload.zoom))
        return schemas.GeometryModel(**geometry.to_dict())

    @app.post("/preview/{cam}/{framing}", response_model=schemas.OperationResponse)
    async def select_preview(cam: str, framing: str) -> schemas.OperationResponse:
        await _invoke(surface.select_for_preview(cam, framing))
        return schemas.OperationResponse()

    @app.post("/cut", response_model=schemas.OperationResponse)
    async def cut() -> schemas.OperationResponse:
        await _invoke(surface.cut())
        return schemas.OperationResponse()

    @app.post("/drive/{speed}", response_model=schemas.OperationResponse)
    async def drive(speed: str) -> schemas.OperationResponse:
        completed = await _invoke(surface.drive(speed))
        return schemas.OperationResponse(completed=completed)

    return app
