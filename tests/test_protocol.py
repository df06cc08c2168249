"""Tests covering the vMix TCP codec."""

from __future__ import annotations

import pytest

from vptz.errors import ProtocolError
from vptz.geometry import Geometry
from vptz.mixer.protocol import (
    MixerCommand,
    RosterInput,
    encode_batch,
    encode_command,
    geometry_commands,
    parse_roster,
    parse_tally,
)

from conftest import build_roster_xml

SNAPSHOT = """<vmix>
  <version>27.0.0.49</version>
  <inputs>
    <input key="a1" number="1" type="VirtualSet" title="VPTZ - CAM1-C-L">VPTZ - CAM1-C-L
      <position panX="1.0" panY="-0.5" zoomX="2.5" zoomY="2.5"/>
    </input>
    <input key="a2" number="2" type="VirtualSet" title="VPTZ - CAM1-W-C">VPTZ - CAM1-W-C</input>
    <input key="a3" number="3" type="Capture" title="PTZ - CAM1-W-V">PTZ - CAM1-W-V</input>
  </inputs>
  <active>2</active>
  <preview>1</preview>
</vmix>"""


def test_encode_function_command() -> None:
    line = encode_command(MixerCommand("SetPanX", "VPTZ - CAM1-C-L", "+=0.02"))
    assert line == "FUNCTION SetPanX Input=VPTZ+-+CAM1-C-L&Value=%2B%3D0.02\r\n"


def test_encode_bare_verbs_and_batches() -> None:
    assert encode_command("SUBSCRIBE TALLY") == "SUBSCRIBE TALLY\r\n"
    assert encode_command(MixerCommand("Cut")) == "FUNCTION Cut\r\n"
    assert encode_batch(["XML", MixerCommand("Cut")]) == b"XML\r\nFUNCTION Cut\r\n"


def test_geometry_commands_order() -> None:
    commands = geometry_commands("VPTZ - CAM2-F-C", Geometry(0.0, -0.45, 2.0))
    assert [command.function for command in commands] == ["SetPanX", "SetPanY", "SetZoom"]
    assert [command.value for command in commands] == ["0.0", "-0.45", "2.0"]


def test_parse_tally_line() -> None:
    summary = parse_tally("TALLY OK 0121")
    assert summary.program == [2, 4]
    assert summary.preview == [3]

    assert parse_tally("2000").preview == [1]


@pytest.mark.parametrize("payload", ["", "TALLY ER", "01x2"])
def test_parse_tally_rejects_garbage(payload: str) -> None:
    with pytest.raises(ProtocolError):
        parse_tally(payload)


def test_parse_roster_halves_pan_and_defaults() -> None:
    snapshot = parse_roster(SNAPSHOT)

    assert [item.number for item in snapshot.inputs] == [1, 2, 3]
    first, second, third = snapshot.inputs
    assert first.is_virtual_set
    assert first.geometry == Geometry(0.5, -0.25, 2.5)
    assert second.geometry == Geometry(0.0, 0.0, 1.0)
    assert not third.is_virtual_set
    assert snapshot.input_by_number(snapshot.active).name == "VPTZ - CAM1-W-C"
    assert snapshot.input_by_number(snapshot.preview).name == "VPTZ - CAM1-C-L"


@pytest.mark.parametrize("document", ["<vmix><inputs>", "<other/>", '<vmix><inputs><input number="x"/></inputs></vmix>'])
def test_parse_roster_rejects_malformed_documents(document: str) -> None:
    with pytest.raises(ProtocolError):
        parse_roster(document)


def test_rendered_roster_parses_back_with_pan_halved() -> None:
    document = build_roster_xml(
        [RosterInput(7, "VPTZ - CAM3-F-R", "VirtualSet", Geometry(-1.0, -0.45, 2.0))],
        active=7,
    )

    snapshot = parse_roster(document)
    assert snapshot.inputs[0].geometry == Geometry(-1.0, -0.45, 2.0)
    assert snapshot.active == 7
    assert snapshot.preview is None
