"""Tests for the recording session controller."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path

import pytest

from conftest import FakeFactory, FakePipeline
from cam_watch.errors import ConfigurationError, ConflictError, InvalidRequestError, NotRecordingError
from cam_watch.events import LifecycleLog
from cam_watch.recordings import (
    RecordingSessionController,
    parse_recording_filename,
    recording_filename,
)


def _write_mp4(path: Path, *, frames: int = 12) -> None:
    av = pytest.importorskip("av")
    with av.open(path.as_posix(), mode="w") as container:
        stream = container.add_stream("mpeg4", rate=12)
        stream.width = 64
        stream.height = 48
        stream.pix_fmt = "yuv420p"
        for _ in range(frames):
            frame = av.VideoFrame(64, 48, "yuv420p")
            for packet in stream.encode(frame):
                container.mux(packet)
        for packet in stream.encode():
            container.mux(packet)


def _touch(pipeline: FakePipeline) -> None:
    pipeline.output_path.write_bytes(b"")


def test_recording_filename_is_filesystem_safe() -> None:
    started = datetime(2026, 10, 19, 8, 15, 2, 417000, tzinfo=timezone.utc)

    filename = recording_filename("1", started)

    assert filename == "camera1_2026-10-19T08-15-02-417Z.mp4"
    assert ":" not in filename
    assert parse_recording_filename(filename) == ("1", started)
    assert parse_recording_filename("notes.txt") is None


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_start_recording_uses_main_feed(cameras, settings, anyio_backend) -> None:
    factory = FakeFactory(on_start=_touch)
    controller = RecordingSessionController(cameras, settings, factory)

    filename = await controller.start_recording("2")

    assert filename.startswith("camera2_") and filename.endswith(".mp4")
    pipeline = factory.created[0]
    assert "rtsp://cam2/main" in pipeline.spec.argv
    assert "rtsp://cam2/sub" not in pipeline.spec.argv
    assert pipeline.output_path == settings.recordings_dir / filename
    # No readiness wait: an empty file is the expected state right after start.
    assert pipeline.output_path.stat().st_size == 0
    assert controller.is_recording("2")


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_duplicate_start_conflicts_and_keeps_original(cameras, settings, anyio_backend) -> None:
    factory = FakeFactory()
    controller = RecordingSessionController(cameras, settings, factory)

    await controller.start_recording("2")
    with pytest.raises(ConflictError):
        await controller.start_recording("2")

    assert len(factory.created) == 1
    original = factory.created[0]
    assert controller.registry.lookup("2") is original
    assert original.is_alive()
    assert original.graceful_stops == 0


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_concurrent_starts_launch_one_recording(cameras, settings, anyio_backend) -> None:
    factory = FakeFactory(start_delay=0.02)
    controller = RecordingSessionController(cameras, settings, factory)

    results = await asyncio.gather(
        *(controller.start_recording("1") for _ in range(5)),
        return_exceptions=True,
    )

    filenames = [result for result in results if isinstance(result, str)]
    conflicts = [result for result in results if isinstance(result, ConflictError)]
    assert len(filenames) == 1
    assert len(conflicts) == 4
    assert len(factory.created) == 1


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_start_recording_requires_main_stream(cameras, settings, anyio_backend) -> None:
    factory = FakeFactory()
    controller = RecordingSessionController(cameras, settings, factory)

    with pytest.raises(ConfigurationError):
        await controller.start_recording("3")
    with pytest.raises(ConfigurationError):
        await controller.start_recording("404")
    assert factory.created == []


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_stop_without_recording_leaves_filesystem_alone(cameras, settings, anyio_backend) -> None:
    settings.recordings_dir.mkdir(parents=True)
    existing = settings.recordings_dir / "camera1_2026-01-01T00-00-00-000Z.mp4"
    existing.write_bytes(b"kept")
    before = sorted(path.name for path in settings.recordings_dir.iterdir())
    controller = RecordingSessionController(cameras, settings, FakeFactory())

    with pytest.raises(NotRecordingError):
        await controller.stop_recording("1")

    assert sorted(path.name for path in settings.recordings_dir.iterdir()) == before
    assert existing.read_bytes() == b"kept"


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_stop_recording_returns_playable_file(cameras, settings, anyio_backend) -> None:
    pytest.importorskip("av")
    from cam_watch.media import probe_recording

    log = LifecycleLog()

    def _finalise_later(pipeline: FakePipeline) -> None:
        # Container bytes land shortly after the stop request, like a real encoder.
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, _write_mp4, pipeline.output_path)

    factory = FakeFactory(on_start=_touch, on_stop=_finalise_later)
    controller = RecordingSessionController(cameras, settings, factory, event_log=log)

    filename = await controller.start_recording("1")
    await asyncio.sleep(0.05)
    session = await controller.stop_recording("1")

    path = settings.recordings_dir / filename
    assert session.filename == filename
    assert session.camera_id == "1"
    assert session.duration >= 0.04
    assert path.stat().st_size > 0
    probe = probe_recording(path)
    assert probe.playable
    assert probe.has_video
    assert controller.registry.lookup("1") is None
    assert factory.created[0].graceful_stops == 1
    assert [entry.event for entry in log.tail(category="recording")][-1] == "finalised"


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_stop_gives_up_waiting_for_empty_file(cameras, settings, anyio_backend) -> None:
    factory = FakeFactory(on_start=_touch)
    controller = RecordingSessionController(cameras, settings, factory)

    filename = await controller.start_recording("1")
    session = await controller.stop_recording("1")

    assert session.filename == filename
    assert (settings.recordings_dir / filename).stat().st_size == 0


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_recording_being_finalised_is_still_active(cameras, settings, anyio_backend) -> None:
    factory = FakeFactory(on_start=_touch)
    controller = RecordingSessionController(cameras, settings, factory)
    filename = await controller.start_recording("1")

    stopping = asyncio.create_task(controller.stop_recording("1"))
    await asyncio.sleep(0.1)

    assert controller.registry.lookup("1") is None
    with pytest.raises(ConflictError):
        controller.delete_recording(filename)
    assert filename not in [record.filename for record in controller.list_recordings()]

    session = await stopping
    assert session.filename == filename
    assert controller._locks == {}
    assert filename in [record.filename for record in controller.list_recordings()]
    assert controller.delete_recording(filename) == filename


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_dead_recording_is_reaped(cameras, settings, anyio_backend) -> None:
    factory = FakeFactory()
    controller = RecordingSessionController(cameras, settings, factory)

    await controller.start_recording("1")
    factory.created[0].exit(1)

    assert not controller.is_recording("1")
    with pytest.raises(NotRecordingError):
        await controller.stop_recording("1")
    await controller.start_recording("1")
    assert len(factory.created) == 2


def test_resolve_recording_path_rejects_traversal(cameras, settings) -> None:
    controller = RecordingSessionController(cameras, settings, FakeFactory())
    settings.recordings_dir.mkdir(parents=True)

    for name in ("../secret.mp4", "..", "/etc/passwd", "a/b.mp4", "a\\b.mp4", ""):
        with pytest.raises(InvalidRequestError):
            controller.resolve_recording_path(name)

    resolved = controller.resolve_recording_path("camera1_x.mp4")
    assert resolved.parent == settings.recordings_dir.resolve()


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_delete_recording(cameras, settings, anyio_backend) -> None:
    factory = FakeFactory(on_start=_touch)
    controller = RecordingSessionController(cameras, settings, factory)
    settings.recordings_dir.mkdir(parents=True)
    done = settings.recordings_dir / "camera2_2026-01-01T00-00-00-000Z.mp4"
    done.write_bytes(b"data")

    active = await controller.start_recording("1")

    with pytest.raises(ConflictError):
        controller.delete_recording(active)
    with pytest.raises(FileNotFoundError):
        controller.delete_recording("camera9_missing.mp4")
    assert controller.delete_recording(done.name) == done.name
    assert not done.exists()


def test_list_recordings_skips_active_and_reports_playability(cameras, settings) -> None:
    pytest.importorskip("av")
    settings.recordings_dir.mkdir(parents=True)
    good = settings.recordings_dir / "camera1_2026-03-01T10-00-00-000Z.mp4"
    _write_mp4(good)
    broken = settings.recordings_dir / "camera2_2026-03-01T11-00-00-000Z.mp4"
    broken.write_bytes(b"\x00\x00\x00\x18ftypisom truncated")
    controller = RecordingSessionController(cameras, settings, FakeFactory())

    records = {record.filename: record for record in controller.list_recordings()}

    assert set(records) == {good.name, broken.name}
    assert records[good.name].camera_id == "1"
    assert records[good.name].playable is True
    assert records[broken.name].playable is False
