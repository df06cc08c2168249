"""Shared fakes for mixer connections and a fully wired control surface."""

from __future__ import annotations

import asyncio
import inspect
import xml.etree.ElementTree as ET
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import pytest

from vptz.config import ControlConfig
from vptz.control import ControlSurface
from vptz.mixer.protocol import XML_PAN_SCALE, MixerCommand, RosterInput, format_number, normalise_commands
from vptz.mixer.session import MixerInstance, SessionManager
from vptz.notify import StateNotifier
from vptz.state import FramingCache
from vptz.store import MEMORY_PATH, FramingStore


async def _fast_sleep(_delay: float) -> None:
    await asyncio.sleep(0)


class FakeConnection:
    """Records every batch instead of writing to a socket."""

    def __init__(self, remote: str = "127.0.0.1:8099", *, connected: bool = True) -> None:
        self.remote = remote
        self.online = connected
        self.batches: List[list] = []
        self.subscribers: Dict[str, List[Callable[..., Any]]] = defaultdict(list)
        self.started = False

    def connected(self) -> bool:
        return self.online

    def subscribe(self, event: str, callback: Callable[..., Any]) -> None:
        self.subscribers[event].append(callback)

    async def send(self, commands) -> None:
        self.batches.append(normalise_commands(commands))

    async def start(self) -> None:
        self.started = True

    async def shutdown(self) -> None:
        self.started = False

    async def emit(self, event: str, *args: Any) -> None:
        for callback in self.subscribers[event]:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result

    def functions(self) -> List[str]:
        return [
            command.function if isinstance(command, MixerCommand) else command
            for batch in self.batches
            for command in batch
        ]

    def clear(self) -> None:
        self.batches.clear()


@dataclass
class Rig:
    config: ControlConfig
    primary: FakeConnection
    secondary: Optional[FakeConnection]
    notifier: StateNotifier
    session: SessionManager
    store: FramingStore
    cache: FramingCache
    surface: ControlSurface
    dispatched: List[tuple] = field(default_factory=list)

    async def start(self) -> "Rig":
        await self.store.open()
        await self.surface.init()
        return self

    async def stop(self) -> None:
        await self.surface.shutdown()
        self.notifier.shutdown()
        await self.store.close()

    def all_batches(self) -> List[list]:
        batches = list(self.primary.batches)
        if self.secondary is not None:
            batches.extend(self.secondary.batches)
        return batches


def build_rig(*, dual: bool = False, config: Optional[ControlConfig] = None) -> Rig:
    config = config or ControlConfig(
        secondary_addr="127.0.0.1:8098" if dual else "127.0.0.1:8099",
    )
    primary = FakeConnection("127.0.0.1:8099")
    connections = {MixerInstance.PRIMARY: primary}
    secondary = None
    if dual:
        secondary = FakeConnection("127.0.0.1:8098")
        connections[MixerInstance.SECONDARY] = secondary

    notifier = StateNotifier(window=0.01)
    session = SessionManager(config, connections, notifier, settle_delay=0.0, sleep=_fast_sleep)
    store = FramingStore(config, MEMORY_PATH, sleep=_fast_sleep)
    cache = FramingCache(config)
    surface = ControlSurface(config, store, session, cache, notifier, sleep=_fast_sleep, confirm_window=0.01)
    rig = Rig(config, primary, secondary, notifier, session, store, cache, surface)
    notifier.add_sink(lambda snapshot, cached, cameras: rig.dispatched.append((snapshot, cached, cameras)))
    return rig


@pytest.fixture
def fast_sleep():
    return _fast_sleep


@pytest.fixture
def rig_factory():
    return build_rig


def build_roster_xml(
    inputs: Iterable[RosterInput],
    *,
    active: Optional[int] = None,
    preview: Optional[int] = None,
    version: str = "27.0.0.49",
) -> str:
    """Render a snapshot document in the shape the mixer reports it."""

    root = ET.Element("vmix")
    ET.SubElement(root, "version").text = version
    inputs_el = ET.SubElement(root, "inputs")
    for item in inputs:
        element = ET.SubElement(
            inputs_el,
            "input",
            {"number": str(item.number), "type": item.type, "title": item.name},
        )
        element.text = item.name
        if item.is_virtual_set:
            ET.SubElement(
                element,
                "position",
                {
                    "panX": format_number(item.geometry.x * XML_PAN_SCALE),
                    "panY": format_number(item.geometry.y * XML_PAN_SCALE),
                    "zoomX": format_number(item.geometry.zoom),
                    "zoomY": format_number(item.geometry.zoom),
                },
            )
    if active is not None:
        ET.SubElement(root, "active").text = str(active)
    if preview is not None:
        ET.SubElement(root, "preview").text = str(preview)
    return ET.tostring(root, encoding="unicode")
