"""Tests covering the public control operations."""

from __future__ import annotations

import asyncio

import pytest

from vptz.control import RESET_GEOMETRY
from vptz.errors import GeometryError, ValidationError
from vptz.geometry import NEUTRAL, Geometry
from vptz.mixer.protocol import MixerCommand, RosterInput

from conftest import build_roster_xml


def _contained(geometry: Geometry) -> bool:
    return max(abs(geometry.x), abs(geometry.y)) + 1.0 <= geometry.zoom + 1e-6


def _roster(*entries, active=None, preview=None) -> str:
    return build_roster_xml(
        [RosterInput(number, name, "VirtualSet", geometry) for number, name, geometry in entries],
        active=active,
        preview=preview,
    )


@pytest.mark.asyncio
async def test_select_preset_recalls_and_pushes_all_framings(rig_factory) -> None:
    rig = await rig_factory().start()
    try:
        await rig.store.set_geometry("2", "B", "F-L", Geometry(1.0, -0.45, 2.0))

        await rig.surface.select_preset("2", "B")

        recall, geometry = rig.primary.batches
        assert [command.function for command in recall] == ["PTZMoveToVirtualInputPosition", "PTZUpdateVirtualInput"]
        assert recall[0].input == "PTZ - CAM2-W-V-B"
        assert recall[1].input == "PTZ - CAM2-W-V"
        assert len(geometry) == 21
        assert {command.function for command in geometry} == {"SetPanX", "SetPanY", "SetZoom"}
        assert await rig.store.get_preset("2") == "B"
        assert rig.cache.preset("2") == "B"
        assert rig.cache.geometry("2", "F-L") == Geometry(1.0, -0.45, 2.0)

        await rig.notifier.flush()
        assert rig.dispatched[-1][1:] == (False, frozenset({"2"}))
        assert rig.dispatched[-1][0]["2"]["preset"] == "B"
    finally:
        await rig.stop()


@pytest.mark.asyncio
async def test_select_preset_all_fans_out(rig_factory) -> None:
    rig = await rig_factory().start()
    try:
        with pytest.raises(ValidationError):
            await rig.surface.select_preset_all("Z")
        assert rig.primary.batches == []

        await rig.surface.select_preset_all("C")
        assert len(rig.primary.batches) == 10
        assert rig.cache.presets() == {cam: "C" for cam in rig.config.cameras}
    finally:
        await rig.stop()


@pytest.mark.asyncio
async def test_invalid_camera_sends_nothing(rig_factory) -> None:
    rig = await rig_factory().start()
    try:
        with pytest.raises(ValidationError, match="invalid CAM id"):
            await rig.surface.change_physical_preset("9", "pan", "up", "fast")
        with pytest.raises(ValidationError):
            await rig.surface.change_physical_preset("1", "tilt", "up", "fast")
        with pytest.raises(ValidationError):
            await rig.surface.change_physical_preset("1", "zoom", "up", "fast")
        with pytest.raises(ValidationError):
            await rig.surface.change_virtual_framing("1", "X-Y", "pan", "up", "fast")
        with pytest.raises(ValidationError):
            await rig.surface.change_virtual_framing("1", "C-C", "pan", "up", "warp")
        with pytest.raises(ValidationError):
            await rig.surface.select_preset("1", "Q")
        assert rig.primary.batches == []
    finally:
        await rig.stop()


@pytest.mark.asyncio
async def test_physical_move_stops_and_confirms(rig_factory) -> None:
    rig = await rig_factory().start()
    try:
        await rig.surface.change_physical_preset("1", "pan", "up", "fast")
        await rig.surface.change_physical_preset("1", "pan", "left", "slow")
        await rig.surface.flush()

        assert rig.primary.batches == [
            [MixerCommand("PTZMoveUp", "PTZ - CAM1-W-V-A", "0.5")],
            [MixerCommand("PTZMoveStop", "PTZ - CAM1-W-V-A")],
            [MixerCommand("PTZMoveLeft", "PTZ - CAM1-W-V-A", "0.1")],
            [MixerCommand("PTZMoveStop", "PTZ - CAM1-W-V-A")],
            [MixerCommand("PTZUpdateVirtualInput", "PTZ - CAM1-W-V-A")],
        ]
    finally:
        await rig.stop()


@pytest.mark.asyncio
async def test_physical_zoom_reset_and_home(rig_factory) -> None:
    rig = await rig_factory().start()
    try:
        await rig.surface.change_physical_preset("3", "zoom", "reset", "med")
        await rig.surface.change_physical_preset("3", "pan", "reset", "med")
        await rig.surface.flush()

        assert rig.primary.functions() == [
            "PTZZoomOut",
            "PTZZoomStop",
            "PTZHome",
            "PTZUpdateVirtualInput",
        ]
        assert rig.primary.batches[0][0].value == "1.0"
    finally:
        await rig.stop()


@pytest.mark.asyncio
async def test_nudge_moves_pan_and_persists(rig_factory) -> None:
    rig = await rig_factory().start()
    try:
        await rig.surface.set_framing_geometry("1", "C-C", 0.0, 0.0, 3.0)
        rig.primary.clear()

        completed = await rig.surface.change_virtual_framing("1", "C-C", "pan", "up", "fast")

        assert completed is True
        assert len(rig.primary.batches) == 15
        assert all(batch[0].function == "SetPanY" and batch[0].value.startswith("-=") for batch in rig.primary.batches)
        final = rig.cache.geometry("1", "C-C")
        assert final.y == pytest.approx(-0.3)
        assert await rig.store.get_geometry("1", "A", "C-C") == final

        await rig.notifier.flush()
        assert rig.dispatched[-1][1] is False
    finally:
        await rig.stop()


@pytest.mark.asyncio
async def test_nudge_pan_is_clamped_to_canvas(rig_factory) -> None:
    rig = await rig_factory().start()
    try:
        await rig.surface.set_framing_geometry("1", "F-C", 0.0, 0.0, 1.2)
        rig.primary.clear()

        await rig.surface.change_virtual_framing("1", "F-C", "pan", "left", "fast")

        final = rig.cache.geometry("1", "F-C")
        assert final.x == pytest.approx(0.2)
        assert final.zoom == pytest.approx(1.2)
        assert _contained(final)
        assert _contained(await rig.store.get_geometry("1", "A", "F-C"))
        assert len(rig.primary.batches) < 15
    finally:
        await rig.stop()


@pytest.mark.asyncio
async def test_nudge_zoom_out_pulls_pan_back(rig_factory) -> None:
    rig = await rig_factory().start()
    try:
        await rig.surface.set_framing_geometry("2", "C-R", 0.8, -0.1, 1.8)
        rig.primary.clear()

        await rig.surface.change_virtual_framing("2", "C-R", "zoom", "decrease", "fast")

        final = rig.cache.geometry("2", "C-R")
        assert final.zoom == pytest.approx(1.5)
        assert final.x == pytest.approx(0.5)
        assert final.y == pytest.approx(-0.1)
        assert _contained(final)
        first = rig.primary.batches[0]
        assert [command.function for command in first] == ["SetPanX", "SetPanY", "SetZoom"]
        assert first[2].value.startswith("-=")
    finally:
        await rig.stop()


@pytest.mark.asyncio
async def test_nudge_zoom_respects_configured_range(rig_factory) -> None:
    rig = await rig_factory().start()
    try:
        await rig.surface.set_framing_geometry("2", "W-C", 0.0, 0.0, 4.95)

        await rig.surface.change_virtual_framing("2", "W-C", "zoom", "increase", "fast")
        assert rig.cache.geometry("2", "W-C").zoom == pytest.approx(5.0)

        await rig.surface.change_virtual_framing("2", "W-C", "zoom", "reset", "fast")
        assert rig.cache.geometry("2", "W-C") == NEUTRAL
    finally:
        await rig.stop()


@pytest.mark.asyncio
async def test_second_nudge_supersedes_first(rig_factory) -> None:
    rig = await rig_factory().start()
    try:
        await rig.surface.set_framing_geometry("1", "C-C", 0.0, 0.0, 3.0)

        first = asyncio.create_task(rig.surface.change_virtual_framing("1", "C-C", "pan", "up", "slow"))
        for _ in range(3):
            await asyncio.sleep(0)
        second = asyncio.create_task(rig.surface.change_virtual_framing("1", "C-C", "pan", "up", "slow"))
        results = await asyncio.gather(first, second)

        assert results == [False, True]
        final = rig.cache.geometry("1", "C-C")
        assert await rig.store.get_geometry("1", "A", "C-C") == final
        # the second nudge ran in full on top of the partial first one
        assert final.y < -0.05 + 1e-9
        assert final.y > -0.1
    finally:
        await rig.stop()


@pytest.mark.asyncio
async def test_set_framing_geometry_checks_containment(rig_factory) -> None:
    rig = await rig_factory().start()
    try:
        with pytest.raises(GeometryError):
            await rig.surface.set_framing_geometry("1", "C-L", 2.0, 0.0, 2.5)
        with pytest.raises(ValidationError):
            await rig.surface.set_framing_geometry("1", "C-L", float("nan"), 0.0, 2.5)
        assert rig.primary.batches == []

        geometry = await rig.surface.set_framing_geometry("1", "C-L", 1.5, -1.0, 2.5)
        assert geometry == Geometry(1.5, -1.0, 2.5)
        assert [command.function for command in rig.primary.batches[0]] == ["SetPanX", "SetPanY", "SetZoom"]
        assert await rig.store.get_geometry("1", "A", "C-L") == geometry
    finally:
        await rig.stop()


@pytest.mark.asyncio
async def test_reset_and_clear_preset(rig_factory) -> None:
    rig = await rig_factory().start()
    try:
        await rig.surface.reset_preset("4", "A")
        assert len(rig.primary.batches) == 1
        assert len(rig.primary.batches[0]) == 21
        for framing, expected in RESET_GEOMETRY.items():
            assert rig.cache.geometry("4", framing) == expected
            assert await rig.store.get_geometry("4", "A", framing) == expected

        rig.primary.clear()
        await rig.surface.reset_preset("4", "E")
        assert rig.primary.batches == []
        assert await rig.store.get_geometry("4", "E", "C-L") == RESET_GEOMETRY["C-L"]

        await rig.surface.clear_preset("4", "A")
        assert len(rig.primary.batches) == 1
        assert all(rig.cache.geometry("4", framing) == NEUTRAL for framing in rig.config.framings)
        assert await rig.store.get_geometry("4", "A", "C-L") == NEUTRAL
    finally:
        await rig.stop()


@pytest.mark.asyncio
async def test_store_preset_captures_mixer_geometry(rig_factory) -> None:
    rig = await rig_factory().start()
    try:
        await rig.primary.emit(
            "xml",
            _roster(
                (1, "VPTZ - CAM1-C-L", Geometry(0.5, -0.25, 2.0)),
                (2, "VPTZ - CAM1-W-C", Geometry(0.0, 0.0, 1.0)),
            ),
        )

        await rig.surface.store_preset("1", "C")

        assert rig.primary.batches == [[MixerCommand("PTZUpdateVirtualInput", "PTZ - CAM1-W-V-C")]]
        assert await rig.store.get_geometry("1", "C", "C-L") == Geometry(0.5, -0.25, 2.0)
        assert rig.cache.geometry("1", "C-L") == NEUTRAL
    finally:
        await rig.stop()


@pytest.mark.asyncio
async def test_preview_and_cut_target_secondary(rig_factory) -> None:
    rig = await rig_factory(dual=True).start()
    try:
        await rig.surface.select_for_preview("3", "F-R")
        await rig.surface.cut()

        assert rig.primary.batches == []
        assert rig.secondary.batches == [
            [MixerCommand("PreviewInput", "VPTZ - CAM3-F-R")],
            [MixerCommand("Cut")],
        ]
    finally:
        await rig.stop()


@pytest.mark.asyncio
async def test_drive_with_mismatched_cameras_only_cuts(rig_factory) -> None:
    rig = await rig_factory().start()
    try:
        await rig.primary.emit(
            "xml",
            _roster(
                (1, "VPTZ - CAM1-C-L", NEUTRAL),
                (2, "VPTZ - CAM2-C-C", NEUTRAL),
                active=1,
                preview=2,
            ),
        )

        completed = await rig.surface.drive("fast")

        assert completed is False
        assert rig.primary.batches == [[MixerCommand("Cut")]]
    finally:
        await rig.stop()


@pytest.mark.asyncio
async def test_drive_cuts_then_animates_into_saved_framing(rig_factory) -> None:
    rig = await rig_factory().start()
    try:
        await rig.surface.set_framing_geometry("1", "C-L", 2.0, -1.2, 3.0)
        await rig.primary.emit(
            "xml",
            _roster(
                (1, "VPTZ - CAM1-W-C", NEUTRAL),
                (2, "VPTZ - CAM1-C-L", Geometry(2.0, -1.2, 3.0)),
                active=1,
                preview=2,
            ),
        )
        rig.primary.clear()

        completed = await rig.surface.drive("fast")

        assert completed is True
        batches = rig.primary.batches
        assert batches[0] == [
            MixerCommand("SetPanX", "VPTZ - CAM1-C-L", "0.0"),
            MixerCommand("SetPanY", "VPTZ - CAM1-C-L", "0.0"),
            MixerCommand("SetZoom", "VPTZ - CAM1-C-L", "1.0"),
        ]
        assert batches[1] == [MixerCommand("Cut")]
        path = batches[2:]
        assert len(path) == 30
        for batch in path:
            x, y, zoom = (float(command.value) for command in batch)
            assert _contained(Geometry(x, y, zoom))
        assert rig.cache.geometry("1", "C-L") == Geometry(2.0, -1.2, 3.0)
        assert await rig.store.get_geometry("1", "A", "C-L") == Geometry(2.0, -1.2, 3.0)
    finally:
        await rig.stop()


@pytest.mark.asyncio
async def test_restore_state_pushes_every_camera(rig_factory) -> None:
    rig = await rig_factory().start()
    try:
        await rig.store.set_geometry("5", "A", "W-C", Geometry(0.1, 0.1, 1.5))

        await rig.surface.restore_state()

        assert len(rig.primary.batches) == len(rig.config.cameras)
        assert all(len(batch) == 21 for batch in rig.primary.batches)
        assert rig.cache.geometry("5", "W-C") == Geometry(0.1, 0.1, 1.5)
    finally:
        await rig.stop()


@pytest.mark.asyncio
async def test_snapshot_shape(rig_factory) -> None:
    rig = await rig_factory().start()
    try:
        snapshot = await rig.surface.snapshot(cached=False)

        assert sorted(snapshot) == rig.config.cameras
        framing = snapshot["1"]["framings"]["C-C"]
        assert framing == {"program": False, "preview": False, "x": 0.0, "y": 0.0, "zoom": 1.0}
        assert snapshot["1"]["preset"] == "A"
    finally:
        await rig.stop()


@pytest.mark.asyncio
async def test_confirmed_window_keeps_in_flight_geometry(rig_factory) -> None:
    rig = await rig_factory().start()
    try:
        await rig.notifier.flush()
        rig.dispatched.clear()
        # cached tick for camera 1, nothing persisted yet
        rig.cache.set_geometry("1", "C-C", Geometry(0.0, -0.2, 3.0))

        rig.notifier.notify(cached=True, cameras="1")
        rig.notifier.notify(cached=False, cameras="2")
        await rig.notifier.flush()

        snapshot, cached, cameras = rig.dispatched[-1]
        assert cached is False
        assert cameras == frozenset({"1", "2"})
        assert snapshot["1"]["framings"]["C-C"]["y"] == pytest.approx(-0.2)
        assert snapshot["1"]["framings"]["C-C"]["zoom"] == pytest.approx(3.0)
        assert await rig.store.get_geometry("1", "A", "C-C") == NEUTRAL
    finally:
        await rig.stop()


@pytest.mark.asyncio
async def test_nudge_queued_behind_preset_switch_lands_in_new_preset(rig_factory) -> None:
    rig = await rig_factory().start()
    try:
        await rig.surface.set_framing_geometry("1", "C-C", 0.0, 0.0, 2.0)
        await rig.store.set_geometry("1", "B", "C-C", Geometry(0.5, 0.5, 4.0))

        select = asyncio.create_task(rig.surface.select_preset("1", "B"))
        await asyncio.sleep(0)
        nudge = asyncio.create_task(rig.surface.change_virtual_framing("1", "C-C", "pan", "up", "fast"))
        results = await asyncio.gather(select, nudge)

        assert results[1] is True
        assert await rig.store.get_geometry("1", "A", "C-C") == Geometry(0.0, 0.0, 2.0)
        stored = await rig.store.get_geometry("1", "B", "C-C")
        assert stored == rig.cache.geometry("1", "C-C")
        assert stored.x == pytest.approx(0.5)
        assert stored.y == pytest.approx(0.2)
        assert stored.zoom == pytest.approx(4.0)
    finally:
        await rig.stop()
