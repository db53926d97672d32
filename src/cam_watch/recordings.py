"""Per-camera recording sessions writing one finalised MP4 file each."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .config import CameraDirectory, OrchestratorSettings, Quality, validate_camera_id
from .errors import ConflictError, InvalidRequestError, NotRecordingError
from .events import LifecycleLog
from .media import probe_recording
from .registry import SessionRegistry
from .supervisor import PipelineSupervisor
from .transcoding import Pipeline, PipelineFactory, PipelineKind, PipelineSpec, build_recording_command


logger = logging.getLogger(__name__)

RECORDING_SUFFIX = ".mp4"

_RECORDING_NAME = re.compile(
    r"^camera(?P<camera_id>[A-Za-z0-9_-]+?)_"
    r"(?P<stamp>\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}-\d{3}Z)\.mp4$"
)
_STAMP_FORMAT = "%Y-%m-%dT%H-%M-%S"


def recording_filename(camera_id: str, started: datetime) -> str:
    """Return the filesystem-safe name for a recording started at *started*."""

    moment = started.astimezone(timezone.utc)
    stamp = f"{moment.strftime(_STAMP_FORMAT)}-{moment.microsecond // 1000:03d}Z"
    return f"camera{camera_id}_{stamp}{RECORDING_SUFFIX}"


def parse_recording_filename(filename: str) -> tuple[str, datetime] | None:
    """Split a recording filename into camera identifier and start time."""

    match = _RECORDING_NAME.match(filename)
    if match is None:
        return None
    stamp = match.group("stamp")
    try:
        started = datetime.strptime(stamp[:19], _STAMP_FORMAT).replace(
            microsecond=int(stamp[20:23]) * 1000,
            tzinfo=timezone.utc,
        )
    except ValueError:
        return None
    return match.group("camera_id"), started


def _file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0


@dataclass(frozen=True, slots=True)
class RecordingSession:
    """Summary of a recording returned once it has been stopped."""

    camera_id: str
    filename: str
    duration: float
    completed_at: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "camera_id": self.camera_id,
            "filename": self.filename,
            "duration": self.duration,
            "completed_at": self.completed_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class RecordingInfo:
    """A completed recording found on disk."""

    filename: str
    camera_id: str | None
    size_bytes: int
    modified_at: datetime
    duration: float | None
    playable: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "filename": self.filename,
            "camera_id": self.camera_id,
            "size_bytes": self.size_bytes,
            "modified_at": self.modified_at.isoformat(),
            "duration": self.duration,
            "playable": self.playable,
        }


class RecordingSessionController(PipelineSupervisor[str]):
    """Start and stop single-file recordings, one per camera."""

    def __init__(
        self,
        cameras: CameraDirectory,
        settings: OrchestratorSettings,
        pipeline_factory: PipelineFactory,
        *,
        registry: SessionRegistry[str] | None = None,
        event_log: LifecycleLog | None = None,
    ) -> None:
        super().__init__(
            registry if registry is not None else SessionRegistry("recording"),
            pipeline_factory,
            category="recording",
            event_log=event_log,
            shutdown_timeout=settings.shutdown_timeout,
        )
        self._cameras = cameras
        self._settings = settings
        self._finalising: set[str] = set()

    @property
    def directory(self) -> Path:
        return self._settings.recordings_dir

    def is_recording(self, camera_id: str) -> bool:
        pipeline = self._registry.lookup(camera_id)
        return pipeline is not None and pipeline.is_alive()

    async def start_recording(self, camera_id: str) -> str:
        """Launch a recording of the camera's main feed and return its filename."""

        camera_id = validate_camera_id(camera_id)
        async with self._lock_for(camera_id):
            if self._live_entry(camera_id) is not None:
                raise ConflictError("Already recording this camera")
            source_url = self._cameras.resolve(camera_id, Quality.MAIN)
            self.directory.mkdir(parents=True, exist_ok=True)
            filename = recording_filename(camera_id, datetime.now(timezone.utc))
            output_path = self.directory / filename
            spec = PipelineSpec(
                key=camera_id,
                kind=PipelineKind.RECORDING,
                argv=tuple(
                    build_recording_command(
                        source_url,
                        output_path,
                        binary=self._settings.ffmpeg_binary,
                    )
                ),
                output_path=output_path,
            )
            await self._launch(camera_id, spec)
        logger.info("Recording camera %s to %s", camera_id, filename)
        return filename

    async def stop_recording(self, camera_id: str) -> RecordingSession:
        """Stop the recording and wait for the container to be finalised."""

        camera_id = validate_camera_id(camera_id)
        async with self._lock_for(camera_id):
            pipeline = self._live_entry(camera_id)
            if pipeline is None:
                raise NotRecordingError("No active recording for this camera")
            await pipeline.request_graceful_stop()
            self._finalising.add(pipeline.output_path.name)
            self._registry.remove(camera_id, pipeline)
            duration = pipeline.elapsed
        self._record(
            "stop_requested",
            f"Stop requested for recording {pipeline.output_path.name}.",
            key=camera_id,
        )
        try:
            await self._wait_for_finalisation(pipeline)
        finally:
            self._finalising.discard(pipeline.output_path.name)
        session = RecordingSession(
            camera_id=camera_id,
            filename=pipeline.output_path.name,
            duration=round(duration, 3),
            completed_at=datetime.now(timezone.utc),
        )
        self._record(
            "finalised",
            f"Recording {session.filename} finalised.",
            key=camera_id,
            size_bytes=_file_size(pipeline.output_path),
            duration=session.duration,
        )
        return session

    async def _wait_for_finalisation(self, pipeline: Pipeline) -> None:
        # The trailing index is written after the last media bytes, so a
        # non-empty file is not yet a playable one; the grace interval covers it.
        path = pipeline.output_path
        deadline = time.monotonic() + self._settings.finalise_timeout
        while _file_size(path) <= 0:
            if time.monotonic() >= deadline:
                logger.warning(
                    "Recording %s still empty after %.1fs",
                    path.name,
                    self._settings.finalise_timeout,
                )
                break
            await asyncio.sleep(self._settings.finalise_poll_interval)
        await asyncio.sleep(self._settings.finalise_grace)
        if pipeline.is_alive():
            logger.debug("Encoder for %s still running after finalisation grace", path.name)

    def active_recordings(self) -> list[dict[str, object]]:
        sessions = []
        for camera_id, pipeline in self._registry.items():
            payload = pipeline.describe()
            payload.update({"camera_id": camera_id, "filename": pipeline.output_path.name})
            sessions.append(payload)
        return sessions

    def _active_filenames(self) -> set[str]:
        """Names of files still being written or finalised."""

        names = {pipeline.output_path.name for _, pipeline in self._registry.items()}
        return names | self._finalising

    def resolve_recording_path(self, filename: str) -> Path:
        """Return the absolute path of *filename*, rejecting anything outside the directory."""

        if not isinstance(filename, str) or not filename.strip():
            raise InvalidRequestError("Filename is required")
        name = filename.strip()
        if (
            name in {".", ".."}
            or "/" in name
            or "\\" in name
            or "\x00" in name
            or Path(name).name != name
        ):
            raise InvalidRequestError("Invalid file path")
        root = self.directory.resolve()
        candidate = (root / name).resolve()
        if candidate == root or not candidate.is_relative_to(root):
            raise InvalidRequestError("Invalid file path")
        return candidate

    def delete_recording(self, filename: str) -> str:
        """Delete a completed recording, returning its filename."""

        path = self.resolve_recording_path(filename)
        if path.name in self._active_filenames():
            raise ConflictError("Recording is still in progress")
        if not path.is_file():
            raise FileNotFoundError(filename)
        path.unlink()
        logger.info("Deleted recording %s", path.name)
        self._record("deleted", f"Deleted recording {path.name}.", filename=path.name)
        return path.name

    def list_recordings(self) -> list[RecordingInfo]:
        """Return completed recordings, newest first."""

        if not self.directory.is_dir():
            return []
        active = self._active_filenames()
        records: list[RecordingInfo] = []
        for path in self.directory.glob(f"*{RECORDING_SUFFIX}"):
            if path.name in active or not path.is_file():
                continue
            try:
                stat = path.stat()
            except OSError:
                continue
            parsed = parse_recording_filename(path.name)
            probe = probe_recording(path)
            records.append(
                RecordingInfo(
                    filename=path.name,
                    camera_id=parsed[0] if parsed else None,
                    size_bytes=stat.st_size,
                    modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    duration=probe.duration,
                    playable=probe.playable,
                )
            )
        records.sort(key=lambda record: record.modified_at, reverse=True)
        return records


__all__ = [
    "RecordingInfo",
    "RecordingSession",
    "RecordingSessionController",
    "parse_recording_filename",
    "recording_filename",
]
