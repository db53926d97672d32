from pathlib import Path

import pytest

pytest.importorskip("av")

from cam_watch.media import probe_recording


def test_truncated_recording_is_not_playable(tmp_path: Path):
    path = tmp_path / "camera1_truncated.mp4"
    # An ftyp box with no moov atom, as left behind by a killed encoder.
    path.write_bytes(b"\x00\x00\x00\x18ftypisom\x00\x00\x02\x00isomiso2" + b"\x00" * 64)

    probe = probe_recording(path)

    assert probe.playable is False
    assert probe.error
    assert probe.to_dict() == {"playable": False, "duration": None, "has_video": False}


def test_missing_recording_is_not_playable(tmp_path: Path):
    assert probe_recording(tmp_path / "absent.mp4").playable is False
