"""Container inspection for finished recordings."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import av
import av.error


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RecordingProbe:
    """Outcome of opening a recording with the demuxer."""

    playable: bool
    duration: float | None = None
    has_video: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "playable": self.playable,
            "duration": self.duration,
            "has_video": self.has_video,
        }


def probe_recording(path: Path) -> RecordingProbe:
    """Open *path* with PyAV and report whether it carries a usable index.

    A file truncated by a hard-killed encoder has no ``moov`` atom; the demuxer
    refuses to open it, which is reported as ``playable=False``.
    """

    try:
        container = av.open(Path(path).as_posix(), mode="r")
    except (av.error.FFmpegError, OSError) as exc:
        logger.debug("Unable to open recording %s: %s", path, exc)
        return RecordingProbe(playable=False, error=str(exc))
    try:
        has_video = any(stream.type == "video" for stream in container.streams)
        duration: float | None = None
        if container.duration is not None:
            duration = round(float(container.duration) / av.time_base, 3)
    finally:
        container.close()
    return RecordingProbe(playable=has_video, duration=duration, has_video=has_video)


__all__ = ["RecordingProbe", "probe_recording"]
