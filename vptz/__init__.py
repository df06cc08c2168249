"""
vMix virtual PTZ control service.

The package keeps persisted virtual framings per camera and physical preset,
mirrors the mixer's live program/preview state to UI clients, and drives
interpolated framing moves and live "drive" transitions on one or two vMix
instances.
"""

from __future__ import annotations

from .config import ControlConfig, load_profile
from .errors import ControlError, GeometryError, ProtocolError, StoreBusyError, StoreError, ValidationError
from .geometry import Geometry, compute_path

__all__ = [
    "ControlConfig",
    "ControlError",
    "Geometry",
    "GeometryError",
    "ProtocolError",
    "StoreBusyError",
    "StoreError",
    "ValidationError",
    "compute_path",
    "load_profile",
]
