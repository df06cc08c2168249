"""
Session management for one or two mixer instances.

The session manager subscribes to the events of every configured connection
and keeps the caches derived from them: the input roster, the tally lists
and the program/preview pointers.  Instance ``B`` (secondary) sits downstream
of instance ``A`` (primary), so its program/preview values win whenever they
are set.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Tuple

from ..config import ControlConfig
from ..errors import ProtocolError
from ..geometry import Geometry
from .channel import send_commands
from .protocol import Commands, RosterSnapshot, parse_roster, parse_tally

LOG = logging.getLogger(__name__)

ROSTER_REQUEST = "XML"
TALLY_SUBSCRIBE = "SUBSCRIBE TALLY"

BUSES = ("program", "preview")


class MixerInstance(str, Enum):
    PRIMARY = "A"
    SECONDARY = "B"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class ActiveInputs:
    """Program/preview input names reported by each instance."""

    program: Dict[MixerInstance, str] = field(default_factory=lambda: {item: "" for item in MixerInstance})
    preview: Dict[MixerInstance, str] = field(default_factory=lambda: {item: "" for item in MixerInstance})

    def update(self, instance: MixerInstance, program: str, preview: str) -> None:
        self.program[instance] = program
        self.preview[instance] = preview

    def effective(self, bus: str) -> str:
        if bus not in BUSES:
            raise ValueError(f"unknown bus '{bus}'")
        values = self.program if bus == "program" else self.preview
        return values.get(MixerInstance.SECONDARY, "") or values.get(MixerInstance.PRIMARY, "")


@dataclass(frozen=True)
class RosterEntry:
    instance: MixerInstance
    number: int
    name: str
    type: str
    geometry: Geometry

    @property
    def key(self) -> str:
        return f"{self.instance.value}:{self.number}"


@dataclass
class TallyState:
    program: List[str] = field(default_factory=list)
    preview: List[str] = field(default_factory=list)


RestoreHook = Callable[[], Awaitable[Any]]
TallyListener = Callable[[MixerInstance, TallyState], Any]


class SessionManager:
    def __init__(
        self,
        config: ControlConfig,
        connections: Mapping[MixerInstance, Any],
        notifier,
        *,
        settle_delay: float = 0.1,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if MixerInstance.PRIMARY not in connections:
            raise ValueError("a primary mixer connection is required")
        self.config = config
        self.notifier = notifier
        self.settle_delay = max(0.0, float(settle_delay))
        self._sleep = sleep
        self._connections: Dict[MixerInstance, Any] = dict(connections)
        self._states: Dict[MixerInstance, ConnectionState] = {
            instance: ConnectionState.DISCONNECTED for instance in self._connections
        }
        self._roster: Dict[Tuple[MixerInstance, int], RosterEntry] = {}
        self._tally: Dict[MixerInstance, TallyState] = {}
        self._tally_listeners: List[TallyListener] = []
        self._restore_hook: Optional[RestoreHook] = None
        self._cycle: Set[MixerInstance] = set()
        self._tasks: Set[asyncio.Task] = set()
        self.active = ActiveInputs()

        for instance, connection in self._connections.items():
            self._subscribe(instance, connection)

    # ------------------------------------------------------------------ wiring

    def _subscribe(self, instance: MixerInstance, connection: Any) -> None:
        connection.subscribe("connecting", lambda: self._on_connecting(instance))
        connection.subscribe("connect", lambda: self._on_connect(instance))
        connection.subscribe("close", lambda: self._on_close(instance))
        connection.subscribe("error", lambda exc: self._on_error(instance, exc))
        connection.subscribe("tally", lambda payload: self._on_tally(instance, payload))
        connection.subscribe("xml", lambda document: self._on_xml(instance, document))

    def set_restore_hook(self, hook: Optional[RestoreHook]) -> None:
        self._restore_hook = hook

    def add_tally_listener(self, listener: TallyListener) -> None:
        self._tally_listeners.append(listener)

    # ------------------------------------------------------------------ accessors

    @property
    def instances(self) -> List[MixerInstance]:
        return list(self._connections)

    @property
    def preview_instance(self) -> MixerInstance:
        """Instance that receives preview and cut commands."""
        if MixerInstance.SECONDARY in self._connections:
            return MixerInstance.SECONDARY
        return MixerInstance.PRIMARY

    def state(self, instance: MixerInstance) -> ConnectionState:
        return self._states.get(instance, ConnectionState.DISCONNECTED)

    def roster(self, instance: Optional[MixerInstance] = None) -> List[RosterEntry]:
        entries = sorted(self._roster.values(), key=lambda item: (item.instance.value, item.number))
        if instance is None:
            return entries
        return [entry for entry in entries if entry.instance == instance]

    def find_input(self, name: str, instance: Optional[MixerInstance] = None) -> Optional[RosterEntry]:
        """Look up a roster entry by name, primary instance first."""

        for entry in self.roster(instance):
            if entry.name == name:
                return entry
        return None

    @property
    def tally(self) -> TallyState:
        merged = TallyState()
        for instance in MixerInstance:
            item = self._tally.get(instance)
            if item is not None:
                merged.program.extend(item.program)
                merged.preview.extend(item.preview)
        return merged

    def effective_program(self) -> str:
        return self.active.effective("program")

    def effective_preview(self) -> str:
        return self.active.effective("preview")

    # ------------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        for instance, connection in self._connections.items():
            LOG.info("Connecting to mixer %s at %s", instance.value, connection.remote)
            await connection.start()

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        for instance, connection in self._connections.items():
            LOG.info("Shutting down connection to mixer %s", instance.value)
            await connection.shutdown()
            self._states[instance] = ConnectionState.DISCONNECTED

    async def send(self, instance: MixerInstance, commands: Commands) -> bool:
        return await send_commands(self._connections.get(instance), commands)

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------ events

    def _on_connecting(self, instance: MixerInstance) -> None:
        self._states[instance] = ConnectionState.CONNECTING

    def _on_connect(self, instance: MixerInstance) -> None:
        self._states[instance] = ConnectionState.CONNECTED
        LOG.info("Connection established to mixer %s", instance.value)
        self._spawn(self._after_connect(instance), f"mixer-{instance.value}-connect")

    async def _after_connect(self, instance: MixerInstance) -> None:
        try:
            await self._sleep(self.settle_delay)
            await self.send(instance, [ROSTER_REQUEST, TALLY_SUBSCRIBE])
            self._cycle.add(instance)
            if not self._cycle.issuperset(self._connections):
                return
            self._cycle.clear()
            if self._restore_hook is not None:
                LOG.info("All mixer instances connected; restoring framings")
                await self._restore_hook()
        except asyncio.CancelledError:
            raise
        except Exception:
            LOG.exception("Connect handling for mixer %s failed", instance.value)

    def _on_close(self, instance: MixerInstance) -> None:
        if self._states.get(instance) == ConnectionState.CONNECTED:
            LOG.info("Connection closed to mixer %s", instance.value)
        self._states[instance] = ConnectionState.DISCONNECTED

    def _on_error(self, instance: MixerInstance, exc: BaseException) -> None:
        LOG.warning("Connection error on mixer %s: %s", instance.value, exc)

    async def _on_tally(self, instance: MixerInstance, payload: str) -> None:
        try:
            summary = parse_tally(payload)
        except ProtocolError:
            LOG.exception("Ignoring tally update from mixer %s", instance.value)
            return

        tally = TallyState(
            program=[f"{instance.value}:{number}" for number in summary.program],
            preview=[f"{instance.value}:{number}" for number in summary.preview],
        )
        self._tally[instance] = tally
        LOG.debug("Tally on mixer %s: program=%s preview=%s", instance.value, tally.program, tally.preview)

        for listener in list(self._tally_listeners):
            try:
                result = listener(instance, tally)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                LOG.exception("Tally listener failed")

        for other, connection in self._connections.items():
            if connection.connected():
                await self.send(other, ROSTER_REQUEST)

    def _on_xml(self, instance: MixerInstance, document: str) -> None:
        try:
            snapshot = parse_roster(document)
        except ProtocolError:
            LOG.exception("Ignoring XML snapshot from mixer %s", instance.value)
            return
        self._apply_roster(instance, snapshot)
        self.notifier.notify(cached=False)

    def _apply_roster(self, instance: MixerInstance, snapshot: RosterSnapshot) -> None:
        for key in [key for key in self._roster if key[0] == instance]:
            del self._roster[key]
        for item in snapshot.inputs:
            self._roster[(instance, item.number)] = RosterEntry(
                instance=instance,
                number=item.number,
                name=item.name,
                type=item.type,
                geometry=item.geometry,
            )

        program = snapshot.input_by_number(snapshot.active)
        preview = snapshot.input_by_number(snapshot.preview)
        self.active.update(
            instance,
            program.name if program is not None else "",
            preview.name if preview is not None else "",
        )
        LOG.debug(
            "Roster of mixer %s: %d input(s), program=%r preview=%r",
            instance.value,
            len(snapshot.inputs),
            self.active.program[instance],
            self.active.preview[instance],
        )
