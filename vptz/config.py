"""
Static configuration of the control service.

The identifier sets are small and fixed: cameras, the physical presets each
camera can recall, and the virtual framings applied on top of a preset's
video feed.  Profiles stored in ``configs/profiles.yaml`` may override any
field.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .errors import ValidationError

LOG = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).resolve().parent / "configs"
PROFILES_PATH = CONFIG_DIR / "profiles.yaml"

DEFAULT_MIXER_ADDR = "127.0.0.1:8099"


def split_addr(addr: str) -> Tuple[str, int]:
    host, sep, port = str(addr).rpartition(":")
    if not sep or not host:
        raise ValidationError(f"invalid mixer address '{addr}' (expected host:port)")
    try:
        return host, int(port)
    except ValueError:
        raise ValidationError(f"invalid mixer port in '{addr}'") from None


@dataclass
class ControlConfig:
    cameras: List[str] = field(default_factory=lambda: ["1", "2", "3", "4", "5"])
    presets: List[str] = field(default_factory=lambda: ["A", "B", "C", "D", "E", "F", "G", "H"])
    framings: List[str] = field(
        default_factory=lambda: ["C-L", "C-C", "C-R", "F-L", "F-C", "F-R", "W-C"]
    )
    primary_addr: str = DEFAULT_MIXER_ADDR
    secondary_addr: str = DEFAULT_MIXER_ADDR
    state_dir: str = "var"
    min_zoom: float = 1.0
    max_zoom: float = 5.0
    camera_input: str = "PTZ - CAM{cam}-W-V"
    preset_input: str = "PTZ - CAM{cam}-W-V-{preset}"
    framing_input: str = "VPTZ - CAM{cam}-{framing}"

    # ------------------------------------------------------------------ topology

    @property
    def has_secondary(self) -> bool:
        return split_addr(self.primary_addr) != split_addr(self.secondary_addr)

    @property
    def database_path(self) -> Path:
        return Path(self.state_dir) / "state.db"

    # ------------------------------------------------------------------ validation

    def check_camera(self, cam: str) -> str:
        if cam not in self.cameras:
            raise ValidationError(f"invalid CAM id \"{cam}\"")
        return cam

    def check_preset(self, preset: str) -> str:
        if preset not in self.presets:
            raise ValidationError(f"invalid PTZ id \"{preset}\"")
        return preset

    def check_framing(self, framing: str) -> str:
        if framing not in self.framings:
            raise ValidationError(f"invalid VPTZ id \"{framing}\"")
        return framing

    # ------------------------------------------------------------------ input names

    def input_name_camera(self, cam: str) -> str:
        return self.camera_input.format(cam=cam)

    def input_name_preset(self, cam: str, preset: str) -> str:
        return self.preset_input.format(cam=cam, preset=preset)

    def input_name_framing(self, cam: str, framing: str) -> str:
        return self.framing_input.format(cam=cam, framing=framing)

    def _framing_pattern(self) -> "re.Pattern[str]":
        template = re.escape(self.framing_input)
        template = template.replace(re.escape("{cam}"), "(?P<cam>.+?)")
        template = template.replace(re.escape("{framing}"), "(?P<framing>.+)")
        return re.compile(f"^{template}$")

    def parse_framing_input(self, name: str) -> Tuple[str, str]:
        """
        Resolve an input name into ``(camera, framing)``.

        Names which are not virtual framing inputs of a configured camera
        yield ``("", "")``.
        """

        match = self._framing_pattern().match(name or "")
        if not match:
            return "", ""
        cam = match.group("cam")
        framing = match.group("framing")
        if cam not in self.cameras or framing not in self.framings:
            return "", ""
        return cam, framing


def _coerce_overrides(payload: Dict[str, Any]) -> Dict[str, Any]:
    known = {item.name for item in fields(ControlConfig)}
    unknown = sorted(set(payload) - known)
    if unknown:
        raise ValidationError(f"unknown configuration keys: {', '.join(unknown)}")
    result: Dict[str, Any] = {}
    for key, value in payload.items():
        if key in {"cameras", "presets", "framings"}:
            if not isinstance(value, (list, tuple)) or not value:
                raise ValidationError(f"'{key}' must be a non-empty list")
            result[key] = [str(item) for item in value]
        elif key in {"min_zoom", "max_zoom"}:
            result[key] = float(value)
        else:
            result[key] = str(value)
    return result


def load_profile(
    name: str = "default",
    path: Optional[Path] = None,
    base: Optional[ControlConfig] = None,
) -> ControlConfig:
    """Load a named profile from the YAML profile file."""

    config = base or ControlConfig()
    profiles_path = Path(path) if path is not None else PROFILES_PATH
    try:
        with profiles_path.open("r", encoding="utf-8") as handle:
            profiles = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        LOG.warning("Profile file %s not found; using built-in defaults", profiles_path)
        return config

    if not isinstance(profiles, dict):
        raise ValidationError(f"profile file {profiles_path} must contain a mapping")
    profile = profiles.get(name)
    if profile is None:
        raise ValidationError(f"unknown profile '{name}'")
    if not isinstance(profile, dict):
        raise ValidationError(f"profile '{name}' must be a mapping")

    config = replace(config, **_coerce_overrides(profile))
    if config.min_zoom < 1.0 or config.max_zoom < config.min_zoom:
        raise ValidationError("zoom range must satisfy 1.0 <= min_zoom <= max_zoom")
    return config
