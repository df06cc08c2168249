"""
In-memory control state: caches mirrored from the framing store and the
state snapshot handed to UI clients.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Tuple

from .config import ControlConfig
from .geometry import NEUTRAL, Geometry

LOG = logging.getLogger(__name__)

GeometryLookup = Callable[[str, str], Geometry]


@dataclass
class FramingState:
    program: bool = False
    preview: bool = False
    x: float = 0.0
    y: float = 0.0
    zoom: float = 1.0

    def to_dict(self) -> dict:
        return {
            "program": bool(self.program),
            "preview": bool(self.preview),
            "x": float(self.x),
            "y": float(self.y),
            "zoom": float(self.zoom),
        }


@dataclass
class CameraState:
    preset: str = ""
    framings: Dict[str, FramingState] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "preset": self.preset,
            "framings": {key: framing.to_dict() for key, framing in self.framings.items()},
        }


class FramingCache:
    """
    Preset-per-camera and geometry-per-(camera, framing) mirrors.

    Geometry entries always belong to the currently selected preset of their
    camera.  During animations they run ahead of the store.
    """

    def __init__(self, config: ControlConfig) -> None:
        self.config = config
        self._presets: Dict[str, str] = {}
        self._geometry: Dict[Tuple[str, str], Geometry] = {}

    def preset(self, cam: str) -> str:
        return self._presets.get(cam, self.config.presets[0])

    def presets(self) -> Dict[str, str]:
        return {cam: self.preset(cam) for cam in self.config.cameras}

    def set_preset(self, cam: str, preset: str) -> None:
        self._presets[cam] = preset

    def geometry(self, cam: str, framing: str) -> Geometry:
        return self._geometry.get((cam, framing), NEUTRAL)

    def set_geometry(self, cam: str, framing: str, geometry: Geometry) -> None:
        self._geometry[(cam, framing)] = geometry

    async def seed(self, store) -> None:
        for cam in self.config.cameras:
            preset = await store.get_preset(cam)
            self._presets[cam] = preset
            for framing in self.config.framings:
                self._geometry[(cam, framing)] = await store.get_geometry(cam, preset, framing)
        LOG.info("Seeded framing cache for %d camera(s)", len(self.config.cameras))


def build_snapshot(
    config: ControlConfig,
    presets: Mapping[str, str],
    geometry: GeometryLookup,
    program: Tuple[str, str] = ("", ""),
    preview: Tuple[str, str] = ("", ""),
) -> dict:
    """
    Build the state snapshot consumed by UI clients::

        {cam: {"preset": str, "framings": {framing: {program, preview, x, y, zoom}}}}
    """

    snapshot: Dict[str, dict] = {}
    for cam in config.cameras:
        camera = CameraState(preset=presets.get(cam, ""))
        for framing in config.framings:
            xyz = geometry(cam, framing)
            camera.framings[framing] = FramingState(
                program=program == (cam, framing),
                preview=preview == (cam, framing),
                x=xyz.x,
                y=xyz.y,
                zoom=xyz.zoom,
            )
        snapshot[cam] = camera.to_dict()
    return snapshot


def _flatten(prefix: str, value, out: Dict[str, object]) -> None:
    if isinstance(value, dict):
        for key, item in value.items():
            _flatten(f"{prefix}.{key}" if prefix else str(key), item, out)
    else:
        out[prefix] = value


def diff_snapshots(old: dict, new: dict) -> List[str]:
    """Dotted paths whose values differ between two snapshots."""

    flat_old: Dict[str, object] = {}
    flat_new: Dict[str, object] = {}
    _flatten("", old or {}, flat_old)
    _flatten("", new or {}, flat_new)
    paths = set(flat_old) | set(flat_new)
    return sorted(path for path in paths if flat_old.get(path) != flat_new.get(path))
