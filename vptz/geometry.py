"""
Geometry of virtual framings and eased camera paths.

A framing is described by a pan offset ``(x, y)`` and a ``zoom`` factor.  The
visible canvas spans ``[-1, +1]`` on both axes at zoom 1.0; the addressable
surface widens with magnification.  A framing stays optically inside the
camera frame as long as ``max(|x|, |y|) + 1 <= zoom``.

Everything in this module is pure and deterministic.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List

CONTAINMENT_TOLERANCE = 1e-6

CANVAS_WIDTH = 3840
CANVAS_HEIGHT = 2160

# Midpoint zoom-out search: start at the widest factor and narrow in fixed
# steps until the crop window fits the reference canvas.
MID_FACTOR_START = 0.75
MID_FACTOR_STEP = 0.001
MID_FACTOR_ITERATIONS = 250


@dataclass(frozen=True)
class Geometry:
    x: float = 0.0
    y: float = 0.0
    zoom: float = 1.0

    def to_dict(self) -> dict:
        return {"x": float(self.x), "y": float(self.y), "zoom": float(self.zoom)}

    @classmethod
    def from_dict(cls, payload: dict) -> "Geometry":
        return cls(
            x=float(payload.get("x", 0.0)),
            y=float(payload.get("y", 0.0)),
            zoom=float(payload.get("zoom", 1.0)),
        )

    @property
    def min_zoom(self) -> float:
        """Smallest zoom which keeps the current pan inside the canvas."""
        return max(abs(self.x), abs(self.y)) + 1.0

    def contained(self, tolerance: float = CONTAINMENT_TOLERANCE) -> bool:
        return self.min_zoom <= self.zoom + tolerance

    def clamped(self) -> "Geometry":
        """Raise zoom (never lower it) until the framing is contained."""
        required = self.min_zoom
        if self.zoom >= required:
            return self
        return Geometry(self.x, self.y, required)


NEUTRAL = Geometry(0.0, 0.0, 1.0)


# ---------------------------------------------------------------------- easing


def ease_in_cubic(t: float) -> float:
    return t ** 3


def ease_out_cubic(t: float) -> float:
    return 1.0 - (1.0 - t) ** 3


def ease_in_out_cubic(t: float) -> float:
    if t < 0.5:
        return 4.0 * t ** 3
    return 1.0 - ((-2.0 * t + 2.0) ** 3) / 2.0


def _lerp(a: float, b: float, t: float) -> float:
    if t == 1.0:
        return b
    return a + (b - a) * t


# ---------------------------------------------------------------------- canvas


def inside_canvas(
    x: float,
    y: float,
    zoom: float,
    width: float = CANVAS_WIDTH,
    height: float = CANVAS_HEIGHT,
) -> bool:
    """Whether the crop window of ``(x, y, zoom)`` fits the reference canvas."""

    if zoom <= 0:
        return False
    crop_w = width / zoom
    crop_h = height / zoom
    left = (width / 2) + crop_w * (-x / 2) - crop_w / 2
    top = (height / 2) - crop_h * (-y / 2) - crop_h / 2
    return left >= 0 and left + crop_w <= width and top >= 0 and top + crop_h <= height


def midpoint_factor(
    mid: Geometry,
    width: float = CANVAS_WIDTH,
    height: float = CANVAS_HEIGHT,
) -> float:
    """
    Widest zoom-out factor in ``[MID_FACTOR_START, 1.0]`` that keeps the
    midpoint's crop window inside the canvas.  Returns 1.0 when none fits.
    """

    for i in range(MID_FACTOR_ITERATIONS + 1):
        factor = min(1.0, MID_FACTOR_START + i * MID_FACTOR_STEP)
        if inside_canvas(mid.x, mid.y, mid.zoom * factor, width, height):
            return factor
        if factor >= 1.0:
            break
    return 1.0


# ---------------------------------------------------------------------- paths


def path_steps(fps: float, duration_ms: float) -> int:
    if fps <= 0 or duration_ms <= 0:
        return 0
    # round half up, matching the tick loop
    return int(math.floor(duration_ms / (1000.0 / fps) + 0.5))


def compute_path(
    src: Geometry,
    dst: Geometry,
    fps: float,
    duration_ms: float,
    width: float = CANVAS_WIDTH,
    height: float = CANVAS_HEIGHT,
) -> List[Geometry]:
    """
    Sample an eased path from ``src`` to ``dst``.

    The first half eases into a (zoomed-out) midpoint, the second half eases
    out of it into ``dst``.  The last sample is ``dst``.  Every sample is
    clamped so it stays inside the canvas.
    """

    steps = path_steps(fps, duration_ms)
    if steps < 1:
        return []
    if src == dst:
        return [src.clamped()] * steps

    mid = Geometry(
        x=_lerp(src.x, dst.x, 0.5),
        y=_lerp(src.y, dst.y, 0.5),
        zoom=_lerp(src.zoom, dst.zoom, 0.5),
    )
    mid = Geometry(mid.x, mid.y, mid.zoom * midpoint_factor(mid, width, height))

    half = steps // 2
    path: List[Geometry] = []
    for i in range(half):
        t = i / half
        path.append(
            Geometry(
                x=_lerp(src.x, mid.x, ease_in_cubic(t)),
                y=_lerp(src.y, mid.y, ease_in_cubic(t)),
                zoom=_lerp(src.zoom, mid.zoom, ease_in_out_cubic(t)),
            ).clamped()
        )
    tail = steps - half
    for i in range(tail):
        t = (i + 1) / tail
        path.append(
            Geometry(
                x=_lerp(mid.x, dst.x, ease_out_cubic(t)),
                y=_lerp(mid.y, dst.y, ease_out_cubic(t)),
                zoom=_lerp(mid.zoom, dst.zoom, ease_in_out_cubic(t)),
            ).clamped()
        )
    return path
