"""
vMix TCP API codec.

Outbound commands are CRLF-terminated text lines, either a bare verb
(``XML``, ``SUBSCRIBE TALLY``) or ``FUNCTION <name> <query>``.  Inbound data
is line oriented except for XML snapshots, which arrive as an ``XML <length>``
header followed by ``length`` bytes of document.

Coordinate convention: geometry everywhere in this package uses the units of
the ``SetPanX``/``SetPanY``/``SetZoom`` functions.  The XML snapshot reports
pan positions doubled; :func:`pan_from_xml` is the only conversion site.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union
from urllib.parse import urlencode

from ..errors import ProtocolError
from ..geometry import Geometry

LINE_TERMINATOR = "\r\n"

VIRTUAL_SET_TYPE = "VirtualSet"

XML_PAN_SCALE = 2.0

TALLY_PROGRAM = "1"
TALLY_PREVIEW = "2"


@dataclass(frozen=True)
class MixerCommand:
    function: str
    input: Optional[str] = None
    value: Optional[str] = None

    def to_dict(self) -> dict:
        payload = {"Function": self.function}
        if self.input is not None:
            payload["Input"] = self.input
        if self.value is not None and self.value != "":
            payload["Value"] = self.value
        return payload


Command = Union[str, MixerCommand]
Commands = Union[Command, Sequence[Command]]


def normalise_commands(commands: Commands) -> List[Command]:
    if isinstance(commands, (str, MixerCommand)):
        return [commands]
    return list(commands)


def encode_command(command: Command) -> str:
    if isinstance(command, str):
        return command.strip() + LINE_TERMINATOR
    query = {key: value for key, value in command.to_dict().items() if key != "Function"}
    line = f"FUNCTION {command.function}"
    if query:
        line += " " + urlencode(query)
    return line + LINE_TERMINATOR


def encode_batch(commands: Commands) -> bytes:
    return "".join(encode_command(cmd) for cmd in normalise_commands(commands)).encode("utf-8")


def format_number(value: float) -> str:
    return repr(float(value))


def geometry_commands(input_name: str, geometry: Geometry) -> List[MixerCommand]:
    return [
        MixerCommand("SetPanX", input_name, format_number(geometry.x)),
        MixerCommand("SetPanY", input_name, format_number(geometry.y)),
        MixerCommand("SetZoom", input_name, format_number(geometry.zoom)),
    ]


def pan_from_xml(value: float) -> float:
    return float(value) / XML_PAN_SCALE


# ---------------------------------------------------------------------- tally


@dataclass(frozen=True)
class TallySummary:
    program: List[int] = field(default_factory=list)
    preview: List[int] = field(default_factory=list)


def parse_tally(payload: str) -> TallySummary:
    """
    Parse ``TALLY OK 0121...`` (or just the digit string).

    Each digit describes one input in order: 0 = off, 1 = program,
    2 = preview.
    """

    text = (payload or "").strip()
    if text.upper().startswith("TALLY"):
        parts = text.split()
        if len(parts) < 3 or parts[1].upper() != "OK":
            raise ProtocolError(f"unexpected tally line: {text!r}")
        text = parts[2]
    if not text or any(char not in "012" for char in text):
        raise ProtocolError(f"malformed tally payload: {text!r}")

    program: List[int] = []
    preview: List[int] = []
    for index, char in enumerate(text, start=1):
        if char == TALLY_PROGRAM:
            program.append(index)
        elif char == TALLY_PREVIEW:
            preview.append(index)
    return TallySummary(program=program, preview=preview)


# ---------------------------------------------------------------------- XML


@dataclass(frozen=True)
class RosterInput:
    number: int
    name: str
    type: str
    geometry: Geometry = Geometry()

    @property
    def is_virtual_set(self) -> bool:
        return self.type == VIRTUAL_SET_TYPE


@dataclass(frozen=True)
class RosterSnapshot:
    inputs: List[RosterInput]
    active: Optional[int] = None
    preview: Optional[int] = None

    def input_by_number(self, number: Optional[int]) -> Optional[RosterInput]:
        if number is None:
            return None
        for item in self.inputs:
            if item.number == number:
                return item
        return None


def _float_attr(element: Optional[ET.Element], name: str, default: float) -> float:
    if element is None:
        return default
    raw = element.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ProtocolError(f"non-numeric {name}={raw!r}") from None


def _int_text(element: Optional[ET.Element]) -> Optional[int]:
    if element is None or element.text is None or not element.text.strip():
        return None
    try:
        return int(element.text.strip())
    except ValueError:
        raise ProtocolError(f"non-numeric input number {element.text!r}") from None


def parse_roster(document: str) -> RosterSnapshot:
    try:
        root = ET.fromstring(document)
    except ET.ParseError as exc:
        raise ProtocolError(f"malformed XML snapshot: {exc}") from exc
    if root.tag != "vmix":
        raise ProtocolError(f"unexpected XML root <{root.tag}>")

    inputs: List[RosterInput] = []
    for element in root.findall("./inputs/input"):
        try:
            number = int(element.get("number", ""))
        except ValueError:
            raise ProtocolError("input without numeric 'number' attribute") from None
        name = element.get("title") or (element.text or "").strip()
        input_type = element.get("type", "")
        geometry = Geometry()
        if input_type == VIRTUAL_SET_TYPE:
            position = element.find("position")
            geometry = Geometry(
                x=pan_from_xml(_float_attr(position, "panX", 0.0)),
                y=pan_from_xml(_float_attr(position, "panY", 0.0)),
                zoom=_float_attr(position, "zoomX", 1.0),
            )
        inputs.append(RosterInput(number=number, name=name, type=input_type, geometry=geometry))

    return RosterSnapshot(
        inputs=inputs,
        active=_int_text(root.find("active")),
        preview=_int_text(root.find("preview")),
    )
