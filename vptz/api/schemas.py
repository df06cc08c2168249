"""
Pydantic schemas mirroring the REST/WS contract.
"""

from __future__ import annotations

import math
from typing import Dict, List, Union

from pydantic import BaseModel, ConfigDict, Field, validator


class GeometryModel(BaseModel):
    x: float = 0.0
    y: float = 0.0
    zoom: float = 1.0
    model_config = ConfigDict(extra="forbid")

    @validator("x", "y", "zoom", pre=True)
    def _finite(cls, value: float) -> float:
        number = float(value)
        if not math.isfinite(number):
            raise ValueError("must be a finite number")
        return number


class FramingStateModel(GeometryModel):
    program: bool = False
    preview: bool = False


class CameraStateModel(BaseModel):
    preset: str = ""
    framings: Dict[str, FramingStateModel] = Field(default_factory=dict)


class StateResponse(BaseModel):
    cached: bool = True
    state: Dict[str, CameraStateModel] = Field(default_factory=dict)


class StateMessage(BaseModel):
    """Payload of a ``STATE`` WebSocket frame."""

    state: Dict[str, CameraStateModel] = Field(default_factory=dict)
    cached: bool = False
    cameras: Union[str, List[str]] = "all"

    @validator("cameras", pre=True)
    def _sorted_cameras(cls, value):
        if isinstance(value, str):
            return value
        return sorted(str(item) for item in value)


class TallyMessage(BaseModel):
    """Payload of a ``TALLY`` WebSocket frame; entries are ``instance:number``."""

    program: List[str] = Field(default_factory=list)
    preview: List[str] = Field(default_factory=list)


class OperationResponse(BaseModel):
    ok: bool = True
    completed: bool = True
