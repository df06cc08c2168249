"""
Public control operations.

The control surface validates identifiers, keeps the framing cache in step
with the store and the mixer, and runs the timed animations (nudges and
drives).  At most one animation runs per ``(camera, framing)``: a new request
for a busy target cancels the running one and waits for its finish handler
(which persists the state reached so far) before it starts.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterator, List, Optional, Tuple

from .config import ControlConfig
from .errors import ControlError, GeometryError, StoreError, ValidationError
from .geometry import NEUTRAL, Geometry, compute_path, path_steps
from .mixer.protocol import MixerCommand, format_number, geometry_commands
from .mixer.session import MixerInstance, SessionManager
from .notify import ALL_CAMERAS, Cameras, StateNotifier
from .scheduler import Debouncer, TickLoop
from .state import FramingCache, build_snapshot
from .store import FramingStore

LOG = logging.getLogger(__name__)

SPEEDS = ("fast", "med", "slow")
OPERATIONS = ("pan", "zoom")
PAN_DIRECTIONS = ("reset", "up-left", "up", "up-right", "left", "right", "down-left", "down", "down-right")
ZOOM_DIRECTIONS = ("reset", "increase", "decrease")

# physical camera moves
MOVE_SPEED = {"fast": 0.5, "med": 0.25, "slow": 0.10}
ZOOM_SPEED = {"fast": 1.0, "med": 0.5, "slow": 0.15}
MOVE_FUNCTIONS = {
    "up-left": "PTZMoveUpLeft",
    "up": "PTZMoveUp",
    "up-right": "PTZMoveUpRight",
    "left": "PTZMoveLeft",
    "right": "PTZMoveRight",
    "down-left": "PTZMoveDownLeft",
    "down": "PTZMoveDown",
    "down-right": "PTZMoveDownRight",
}
STOP_DELAY = 0.1
ZOOM_RESET_DELAY = 2.0
CONFIRM_WINDOW = 0.5

# virtual framing nudges
NUDGE_FPS = 30
NUDGE_DURATION_MS = 500
NUDGE_DELTA = {"fast": 0.30, "med": 0.15, "slow": 0.05}

# signs applied to (x, y); pan x grows towards the left edge of the feed
PAN_VECTORS = {
    "up-left": (1, -1),
    "up": (0, -1),
    "up-right": (-1, -1),
    "left": (1, 0),
    "right": (-1, 0),
    "down-left": (1, 1),
    "down": (0, 1),
    "down-right": (-1, 1),
}

# drive transitions
DRIVE_FPS = 30
DRIVE_DURATION_MS = {"fast": 1000, "med": 2000, "slow": 4000}
DRIVE_SETTLE_BEFORE_CUT = 0.1
DRIVE_SETTLE_AFTER_CUT = 0.05

RESET_GEOMETRY = {
    "C-L": Geometry(2.0, -1.2, 3.0),
    "C-C": Geometry(0.0, -1.2, 3.0),
    "C-R": Geometry(-2.0, -1.2, 3.0),
    "F-L": Geometry(1.0, -0.45, 2.0),
    "F-C": Geometry(0.0, -0.45, 2.0),
    "F-R": Geometry(-1.0, -0.45, 2.0),
    "W-C": Geometry(0.0, 0.0, 1.0),
}

Target = Tuple[str, str]


def _relative(delta: float) -> str:
    sign = "+=" if delta >= 0 else "-="
    return sign + format_number(abs(delta))


def _pan_step(position: float, sign: int, delta: float, limit: float) -> float:
    """Position after moving at most ``delta`` in direction ``sign`` without passing ``limit``."""
    if sign > 0:
        return max(position, min(position + delta, limit))
    return min(position, max(position - delta, -limit))


def _check_speed(speed: str) -> str:
    if speed not in SPEEDS:
        raise ValidationError(f"invalid speed \"{speed}\"")
    return speed


class ControlSurface:
    def __init__(
        self,
        config: ControlConfig,
        store: FramingStore,
        session: SessionManager,
        cache: FramingCache,
        notifier: StateNotifier,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        confirm_window: float = CONFIRM_WINDOW,
    ) -> None:
        self.config = config
        self.store = store
        self.session = session
        self.cache = cache
        self.notifier = notifier
        self.confirm_window = confirm_window
        self._sleep = sleep
        self._animations: Dict[Target, TickLoop] = {}
        self._locks: Dict[Target, asyncio.Lock] = {}
        self._confirmations: Dict[str, Debouncer] = {}

        notifier.bind(self.snapshot)
        session.set_restore_hook(self.restore_state)

    # ------------------------------------------------------------------ lifecycle

    async def init(self) -> None:
        await self.cache.seed(self.store)

    async def shutdown(self) -> None:
        for confirmation in self._confirmations.values():
            confirmation.cancel()
        for target in list(self._animations):
            await self._supersede(target)
        LOG.info("Control surface stopped")

    async def flush(self) -> None:
        """Send pending physical preset confirmations right away."""
        for confirmation in list(self._confirmations.values()):
            await confirmation.flush()
            await confirmation.drain()

    async def restore_state(self) -> None:
        """Push every cached framing of the current presets back to the mixer."""

        for cam in self.config.cameras:
            async with self._holding_camera(cam):
                await self._halt_camera(cam)
                preset = self.cache.preset(cam)
                LOG.info("Restoring framings of camera %s (preset %s)", cam, preset)
                stored = await self.store.get_geometry_all(cam, preset)
                commands: List[MixerCommand] = []
                for framing in self.config.framings:
                    geometry = stored[framing]
                    self.cache.set_geometry(cam, framing, geometry)
                    commands.extend(geometry_commands(self.config.input_name_framing(cam, framing), geometry))
                await self.session.send(MixerInstance.PRIMARY, commands)
        self.notifier.notify(cached=False, cameras=ALL_CAMERAS)

    # ------------------------------------------------------------------ snapshots

    async def snapshot(self, cached: bool = True, live: Cameras = frozenset()) -> dict:
        """
        Current state of every camera.

        A confirmed snapshot reads the store, except for the ``live`` cameras
        whose in-flight state is only in the cache.
        """

        program = self.config.parse_framing_input(self.session.effective_program())
        preview = self.config.parse_framing_input(self.session.effective_preview())
        if cached or live == ALL_CAMERAS:
            return build_snapshot(self.config, self.cache.presets(), self.cache.geometry, program, preview)

        async def load() -> Tuple[Dict[str, str], Dict[str, Dict[str, Geometry]]]:
            presets: Dict[str, str] = {}
            geometry: Dict[str, Dict[str, Geometry]] = {}
            for cam in self.config.cameras:
                if cam in live:
                    presets[cam] = self.cache.preset(cam)
                    geometry[cam] = {framing: self.cache.geometry(cam, framing) for framing in self.config.framings}
                    continue
                presets[cam] = await self.store.get_preset(cam)
                geometry[cam] = await self.store.get_geometry_all(cam, presets[cam])
            return presets, geometry

        presets, geometry = await self.store.transaction(load)
        return build_snapshot(
            self.config,
            presets,
            lambda cam, framing: geometry[cam][framing],
            program,
            preview,
        )

    # ------------------------------------------------------------------ animations

    def _lock(self, target: Target) -> asyncio.Lock:
        lock = self._locks.get(target)
        if lock is None:
            lock = self._locks[target] = asyncio.Lock()
        return lock

    async def _supersede(self, target: Target) -> None:
        running = self._animations.pop(target, None)
        if running is not None and not running.done:
            LOG.debug("Superseding animation of %s/%s", *target)
            running.cancel()
            await running.wait()

    @contextlib.asynccontextmanager
    async def _holding_camera(self, cam: str) -> AsyncIterator[None]:
        """Hold every framing lock of ``cam``, always acquired in framing order."""
        async with contextlib.AsyncExitStack() as stack:
            for framing in self.config.framings:
                await stack.enter_async_context(self._lock((cam, framing)))
            yield

    async def _halt_camera(self, cam: str) -> None:
        # caller holds the camera
        for framing in self.config.framings:
            await self._supersede((cam, framing))

    async def _run_animation(self, loop: TickLoop, failures: List[BaseException]) -> bool:
        completed = await loop.wait()
        if failures:
            raise failures[0]
        return completed

    def _persisting_finish(
        self,
        cam: str,
        preset: str,
        framing: str,
        final: Callable[[bool], Geometry],
        failures: List[BaseException],
    ) -> Callable[[bool], Awaitable[None]]:
        async def finish(cancelled: bool) -> None:
            geometry = final(cancelled)
            self.cache.set_geometry(cam, framing, geometry)
            try:
                await self.store.set_geometry(cam, preset, framing, geometry)
            except StoreError as exc:
                LOG.error("Persisting %s/%s/%s failed: %s", cam, preset, framing, exc)
                failures.append(exc)
            self.notifier.notify(cached=False, cameras=cam)

        return finish

    # ------------------------------------------------------------------ presets

    async def select_preset(self, cam: str, preset: str) -> None:
        self.config.check_camera(cam)
        self.config.check_preset(preset)
        LOG.info("Activating preset %s of camera %s", preset, cam)

        async def load() -> List[MixerCommand]:
            commands: List[MixerCommand] = []
            for framing in self.config.framings:
                geometry = await self.store.get_geometry(cam, preset, framing)
                self.cache.set_geometry(cam, framing, geometry)
                commands.extend(geometry_commands(self.config.input_name_framing(cam, framing), geometry))
            return commands

        async with self._holding_camera(cam):
            await self._halt_camera(cam)
            await self.store.set_preset(cam, preset)
            self.cache.set_preset(cam, preset)
            await self.session.send(
                MixerInstance.PRIMARY,
                [
                    MixerCommand("PTZMoveToVirtualInputPosition", self.config.input_name_preset(cam, preset)),
                    MixerCommand("PTZUpdateVirtualInput", self.config.input_name_camera(cam)),
                ],
            )
            commands = await self.store.transaction(load)
            await self.session.send(MixerInstance.PRIMARY, commands)
        self.notifier.notify(cached=False, cameras=cam)

    async def store_preset(self, cam: str, preset: str) -> None:
        """Save the physical position and the mixer-side framings into ``preset``."""

        self.config.check_camera(cam)
        self.config.check_preset(preset)
        LOG.info("Storing preset %s of camera %s", preset, cam)

        await self.session.send(
            MixerInstance.PRIMARY,
            MixerCommand("PTZUpdateVirtualInput", self.config.input_name_preset(cam, preset)),
        )

        captured: Dict[str, Geometry] = {}
        for framing in self.config.framings:
            entry = self.session.find_input(self.config.input_name_framing(cam, framing), MixerInstance.PRIMARY)
            if entry is not None:
                captured[framing] = entry.geometry
        if not captured:
            LOG.warning("No framing inputs of camera %s in the mixer roster; nothing stored", cam)
        else:
            await self._write_preset(cam, preset, captured, push=False)
        self.notifier.notify(cached=False, cameras=cam)

    async def reset_preset(self, cam: str, preset: str) -> None:
        self.config.check_camera(cam)
        self.config.check_preset(preset)
        LOG.info("Resetting framings of preset %s of camera %s", preset, cam)
        defaults = {framing: RESET_GEOMETRY.get(framing, NEUTRAL) for framing in self.config.framings}
        await self._write_preset(cam, preset, defaults, push=True)
        self.notifier.notify(cached=False, cameras=cam)

    async def clear_preset(self, cam: str, preset: str) -> None:
        self.config.check_camera(cam)
        self.config.check_preset(preset)
        LOG.info("Clearing framings of preset %s of camera %s", preset, cam)
        await self._write_preset(cam, preset, {framing: NEUTRAL for framing in self.config.framings}, push=True)
        self.notifier.notify(cached=False, cameras=cam)

    async def _write_preset(self, cam: str, preset: str, framings: Dict[str, Geometry], *, push: bool) -> None:
        async def persist() -> None:
            for framing, geometry in framings.items():
                await self.store.set_geometry(cam, preset, framing, geometry)

        async with self._holding_camera(cam):
            active = preset == self.cache.preset(cam)
            if active:
                await self._halt_camera(cam)
            await self.store.transaction(persist)
            if not active:
                return
            commands: List[MixerCommand] = []
            for framing, geometry in framings.items():
                self.cache.set_geometry(cam, framing, geometry)
                commands.extend(geometry_commands(self.config.input_name_framing(cam, framing), geometry))
            if push:
                await self.session.send(MixerInstance.PRIMARY, commands)

    async def _for_all_cameras(self, operation: Callable[[str, str], Awaitable[None]], preset: str) -> None:
        self.config.check_preset(preset)
        errors: List[ControlError] = []
        for cam in self.config.cameras:
            try:
                await operation(cam, preset)
            except ControlError as exc:
                LOG.error("Preset %s on camera %s failed: %s", preset, cam, exc)
                errors.append(exc)
        if errors:
            raise errors[0]

    async def select_preset_all(self, preset: str) -> None:
        await self._for_all_cameras(self.select_preset, preset)

    async def store_preset_all(self, preset: str) -> None:
        await self._for_all_cameras(self.store_preset, preset)

    async def reset_preset_all(self, preset: str) -> None:
        await self._for_all_cameras(self.reset_preset, preset)

    async def clear_preset_all(self, preset: str) -> None:
        await self._for_all_cameras(self.clear_preset, preset)

    # ------------------------------------------------------------------ physical camera

    async def change_physical_preset(self, cam: str, op: str, direction: str, speed: str = "med") -> None:
        self.config.check_camera(cam)
        _check_speed(speed)
        input_name = self.config.input_name_preset(cam, self.cache.preset(cam))

        stop: Optional[MixerCommand] = None
        delay = 0.0
        if op == "pan":
            if direction == "reset":
                start = MixerCommand("PTZHome", input_name)
            elif direction in MOVE_FUNCTIONS:
                start = MixerCommand(MOVE_FUNCTIONS[direction], input_name, format_number(MOVE_SPEED[speed]))
                stop = MixerCommand("PTZMoveStop", input_name)
                delay = STOP_DELAY
            else:
                raise ValidationError(f"invalid argument \"{direction}\"")
        elif op == "zoom":
            if direction == "reset":
                start = MixerCommand("PTZZoomOut", input_name, format_number(1.0))
                delay = ZOOM_RESET_DELAY
            elif direction == "increase":
                start = MixerCommand("PTZZoomIn", input_name, format_number(ZOOM_SPEED[speed]))
                delay = STOP_DELAY
            elif direction == "decrease":
                start = MixerCommand("PTZZoomOut", input_name, format_number(ZOOM_SPEED[speed]))
                delay = STOP_DELAY
            else:
                raise ValidationError(f"invalid argument \"{direction}\"")
            stop = MixerCommand("PTZZoomStop", input_name)
        else:
            raise ValidationError(f"invalid operation \"{op}\"")

        LOG.debug("Physical %s %s on camera %s (%s)", op, direction, cam, speed)
        await self.session.send(MixerInstance.PRIMARY, start)
        if stop is not None:
            await self._sleep(delay)
            await self.session.send(MixerInstance.PRIMARY, stop)
        self._confirmation(cam).trigger(restart=True)

    def _confirmation(self, cam: str) -> Debouncer:
        confirmation = self._confirmations.get(cam)
        if confirmation is None:
            confirmation = Debouncer(
                lambda: self._confirm_physical(cam),
                self.confirm_window,
                name=f"confirm-cam{cam}",
            )
            self._confirmations[cam] = confirmation
        return confirmation

    async def _confirm_physical(self, cam: str) -> None:
        input_name = self.config.input_name_preset(cam, self.cache.preset(cam))
        await self.session.send(MixerInstance.PRIMARY, MixerCommand("PTZUpdateVirtualInput", input_name))

    # ------------------------------------------------------------------ virtual framing

    def _nudge(
        self, geometry: Geometry, input_name: str, op: str, direction: str, delta: float
    ) -> Tuple[Geometry, List[MixerCommand]]:
        x, y, zoom = geometry.x, geometry.y, geometry.zoom
        commands: List[MixerCommand] = []

        if op == "pan":
            if direction == "reset":
                x, y = 0.0, 0.0
                if (x, y) != (geometry.x, geometry.y):
                    commands.append(MixerCommand("SetPanX", input_name, format_number(x)))
                    commands.append(MixerCommand("SetPanY", input_name, format_number(y)))
            else:
                sign_x, sign_y = PAN_VECTORS[direction]
                limit = max(0.0, zoom - 1.0)
                if sign_x:
                    moved = _pan_step(x, sign_x, delta, limit)
                    if moved != x:
                        commands.append(MixerCommand("SetPanX", input_name, _relative(moved - x)))
                        x = moved
                if sign_y:
                    moved = _pan_step(y, sign_y, delta, limit)
                    if moved != y:
                        commands.append(MixerCommand("SetPanY", input_name, _relative(moved - y)))
                        y = moved
        else:
            low, high = self.config.min_zoom, self.config.max_zoom
            if direction == "reset":
                zoom = min(max(1.0, low), high)
            elif direction == "increase":
                zoom = max(zoom, min(zoom + delta, high))
            else:
                zoom = min(zoom, max(zoom - delta, low))
            limit = max(0.0, zoom - 1.0)
            pulled_x = min(max(x, -limit), limit)
            pulled_y = min(max(y, -limit), limit)
            if (pulled_x, pulled_y) != (x, y):
                x, y = pulled_x, pulled_y
                commands.append(MixerCommand("SetPanX", input_name, format_number(x)))
                commands.append(MixerCommand("SetPanY", input_name, format_number(y)))
            if zoom != geometry.zoom:
                value = format_number(zoom) if direction == "reset" else _relative(zoom - geometry.zoom)
                commands.append(MixerCommand("SetZoom", input_name, value))

        updated = Geometry(x, y, zoom)
        if not updated.contained():
            updated = updated.clamped()
            commands = geometry_commands(input_name, updated)
        return updated, commands

    async def change_virtual_framing(self, cam: str, framing: str, op: str, direction: str, speed: str = "med") -> bool:
        """
        Nudge a framing for a short, time-sliced animation.

        Returns False when the animation was superseded by a later request
        for the same framing.
        """

        self.config.check_camera(cam)
        self.config.check_framing(framing)
        _check_speed(speed)
        if op not in OPERATIONS:
            raise ValidationError(f"invalid operation \"{op}\"")
        if direction not in (PAN_DIRECTIONS if op == "pan" else ZOOM_DIRECTIONS):
            raise ValidationError(f"invalid argument \"{direction}\"")

        target = (cam, framing)
        input_name = self.config.input_name_framing(cam, framing)
        failures: List[BaseException] = []

        async with self._lock(target):
            await self._supersede(target)
            preset = self.cache.preset(cam)
            delta = NUDGE_DELTA[speed] / path_steps(NUDGE_FPS, NUDGE_DURATION_MS)

            async def step() -> None:
                geometry, commands = self._nudge(self.cache.geometry(cam, framing), input_name, op, direction, delta)
                self.cache.set_geometry(cam, framing, geometry)
                if commands:
                    await self.session.send(MixerInstance.PRIMARY, commands)
                self.notifier.notify(cached=True, cameras=cam)

            loop = TickLoop(
                step,
                self._persisting_finish(cam, preset, framing, lambda _: self.cache.geometry(cam, framing), failures),
                duration_ms=NUDGE_DURATION_MS,
                fps=NUDGE_FPS,
                sleep=self._sleep,
                name=f"nudge-{cam}-{framing}",
            )
            self._animations[target] = loop.start()

        return await self._run_animation(loop, failures)

    async def set_framing_geometry(self, cam: str, framing: str, x: float, y: float, zoom: float) -> Geometry:
        self.config.check_camera(cam)
        self.config.check_framing(framing)
        values = (float(x), float(y), float(zoom))
        if not all(math.isfinite(value) for value in values):
            raise ValidationError("geometry values must be finite numbers")
        geometry = Geometry(*values)
        if not geometry.contained():
            raise GeometryError(
                f"geometry x={geometry.x} y={geometry.y} zoom={geometry.zoom} leaves the canvas "
                f"(zoom must be at least {geometry.min_zoom})"
            )

        target = (cam, framing)
        async with self._lock(target):
            await self._supersede(target)
            self.cache.set_geometry(cam, framing, geometry)
            await self.store.set_geometry(cam, self.cache.preset(cam), framing, geometry)
            await self.session.send(
                MixerInstance.PRIMARY,
                geometry_commands(self.config.input_name_framing(cam, framing), geometry),
            )
        self.notifier.notify(cached=False, cameras=cam)
        return geometry

    # ------------------------------------------------------------------ switching

    async def select_for_preview(self, cam: str, framing: str) -> None:
        self.config.check_camera(cam)
        self.config.check_framing(framing)
        input_name = self.config.input_name_framing(cam, framing)
        await self.session.send(self.session.preview_instance, MixerCommand("PreviewInput", input_name))

    async def cut(self) -> None:
        await self.session.send(self.session.preview_instance, MixerCommand("Cut"))

    async def drive(self, speed: str = "med") -> bool:
        """
        Cut the preview framing live while it borrows the program framing,
        then animate it into its own saved framing.

        Falls back to a plain cut unless program and preview are framings of
        the same camera.  Returns whether a drive animation ran to completion.
        """

        _check_speed(speed)
        program_name = self.session.effective_program()
        preview_name = self.session.effective_preview()
        program_cam, program_framing = self.config.parse_framing_input(program_name)
        cam, framing = self.config.parse_framing_input(preview_name)
        if not program_cam or not cam or program_cam != cam:
            LOG.info("Program %r and preview %r are not framings of one camera; plain cut", program_name, preview_name)
            await self.cut()
            return False

        target = (cam, framing)
        failures: List[BaseException] = []
        async with self._lock(target):
            await self._supersede(target)
            preset = self.cache.preset(cam)

            async def load() -> Tuple[Geometry, Geometry]:
                return (
                    await self.store.get_geometry(cam, preset, program_framing),
                    await self.store.get_geometry(cam, preset, framing),
                )

            program_geometry, preview_geometry = await self.store.transaction(load)
            borrowed = program_geometry.clamped()
            path = compute_path(borrowed, preview_geometry, DRIVE_FPS, DRIVE_DURATION_MS[speed])
            if not path:
                raise GeometryError("drive path is empty")

            LOG.info("Driving camera %s from %s into %s (%s)", cam, program_framing, framing, speed)
            input_name = self.config.input_name_framing(cam, framing)
            self.cache.set_geometry(cam, framing, borrowed)
            await self.session.send(MixerInstance.PRIMARY, geometry_commands(input_name, borrowed))
            self.notifier.notify(cached=True, cameras=cam)
            await self._sleep(DRIVE_SETTLE_BEFORE_CUT)
            await self.cut()
            await self._sleep(DRIVE_SETTLE_AFTER_CUT)

            samples: Iterator[Geometry] = iter(path)
            applied: List[Geometry] = [borrowed]

            async def step() -> None:
                geometry = next(samples)
                applied.append(geometry)
                self.cache.set_geometry(cam, framing, geometry)
                await self.session.send(MixerInstance.PRIMARY, geometry_commands(input_name, geometry))
                self.notifier.notify(cached=True, cameras=cam)

            loop = TickLoop(
                step,
                self._persisting_finish(
                    cam,
                    preset,
                    framing,
                    lambda cancelled: applied[-1] if cancelled else path[-1],
                    failures,
                ),
                duration_ms=DRIVE_DURATION_MS[speed],
                fps=DRIVE_FPS,
                sleep=self._sleep,
                name=f"drive-{cam}-{framing}",
            )
            self._animations[target] = loop.start()

        return await self._run_animation(loop, failures)
