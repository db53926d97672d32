"""Live-view sessions producing HLS playlists for browser playback."""
from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

from .config import CameraDirectory, OrchestratorSettings, Quality, parse_quality, validate_camera_id
from .events import LifecycleLog
from .registry import SessionRegistry
from .supervisor import PipelineSupervisor
from .transcoding import PipelineFactory, PipelineKind, PipelineSpec, build_live_command, format_key


logger = logging.getLogger(__name__)

LiveKey = tuple[str, Quality]

PLAYLIST_URL_PREFIX = "/streams"


def playlist_filename(quality: Quality) -> str:
    return f"{quality.value}.m3u8"


def segment_pattern(quality: Quality) -> str:
    return f"{quality.value}_%03d.ts"


def playlist_reference(camera_id: str, quality: Quality) -> str:
    """Return the URL path under which the playlist for a session is served."""

    return f"{PLAYLIST_URL_PREFIX}/{camera_id}/{playlist_filename(quality)}"


def remove_stale_artifacts(camera_dir: Path, quality: Quality) -> list[str]:
    """Delete the playlist and segments left behind by a previous run."""

    removed: list[str] = []
    if not camera_dir.is_dir():
        return removed
    playlist = camera_dir / playlist_filename(quality)
    candidates = [playlist] if playlist.exists() else []
    candidates.extend(sorted(camera_dir.glob(f"{quality.value}_*.ts")))
    for path in candidates:
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.error("Failed to remove stale live artifact %s: %s", path, exc)
            continue
        removed.append(path.name)
    return removed


async def wait_for_file(path: Path, *, timeout: float, interval: float) -> bool:
    """Poll for *path* to exist, returning ``False`` once *timeout* elapses."""

    deadline = time.monotonic() + max(0.0, timeout)
    while True:
        if path.exists():
            return True
        if time.monotonic() >= deadline:
            return False
        await asyncio.sleep(interval)


class StreamSessionController(PipelineSupervisor[LiveKey]):
    """Ensure at most one live transcoder per camera and quality."""

    def __init__(
        self,
        cameras: CameraDirectory,
        settings: OrchestratorSettings,
        pipeline_factory: PipelineFactory,
        *,
        registry: SessionRegistry[LiveKey] | None = None,
        event_log: LifecycleLog | None = None,
    ) -> None:
        super().__init__(
            registry if registry is not None else SessionRegistry("live"),
            pipeline_factory,
            category="live",
            event_log=event_log,
            shutdown_timeout=settings.shutdown_timeout,
        )
        self._cameras = cameras
        self._settings = settings

    def camera_dir(self, camera_id: str) -> Path:
        return self._settings.streams_dir / camera_id

    def playlist_path(self, camera_id: str, quality: Quality) -> Path:
        return self.camera_dir(camera_id) / playlist_filename(quality)

    async def ensure_live_view(self, camera_id: str, quality: Quality | str | None = None) -> str:
        """Make sure a live pipeline exists for the session and return its playlist."""

        camera_id = validate_camera_id(camera_id)
        quality = parse_quality(quality)
        source_url = self._cameras.resolve(camera_id, quality)
        key: LiveKey = (camera_id, quality)
        playlist = self.playlist_path(camera_id, quality)

        async with self._lock_for(key):
            launched = self._live_entry(key) is None
            if launched:
                camera_dir = self.camera_dir(camera_id)
                removed = remove_stale_artifacts(camera_dir, quality)
                if removed:
                    logger.info(
                        "Removed %d stale live artifact(s) for camera %s (%s)",
                        len(removed),
                        camera_id,
                        quality.value,
                    )
                camera_dir.mkdir(parents=True, exist_ok=True)
                spec = PipelineSpec(
                    key=key,
                    kind=PipelineKind.LIVE,
                    argv=tuple(
                        build_live_command(
                            source_url,
                            playlist,
                            camera_dir / segment_pattern(quality),
                            quality,
                            binary=self._settings.ffmpeg_binary,
                        )
                    ),
                    output_path=playlist,
                )
                logger.info("Starting live stream for camera %s (%s)", camera_id, quality.value)
                await self._launch(key, spec)

        timeout = (
            self._settings.playlist_wait_timeout
            if launched
            else self._settings.existing_playlist_wait
        )
        ready = await wait_for_file(
            playlist,
            timeout=timeout,
            interval=self._settings.playlist_poll_interval,
        )
        if not ready:
            logger.warning(
                "Playlist for camera %s (%s) not ready after %.1fs; returning reference anyway",
                camera_id,
                quality.value,
                timeout,
            )
            self._record(
                "playlist_delayed",
                f"Playlist {playlist.name} for camera {camera_id} not yet written.",
                key=format_key(key),
            )
        return playlist_reference(camera_id, quality)

    async def stop_live_view(self, camera_id: str, quality: Quality | str | None = None) -> bool:
        """Stop the live session for the key, returning ``False`` when none was active."""

        camera_id = validate_camera_id(camera_id)
        quality = parse_quality(quality)
        key: LiveKey = (camera_id, quality)
        async with self._lock_for(key):
            pipeline = await self._stop_registered(key)
        if pipeline is None:
            return False
        self._record("stopped", f"Stopped live pipeline {format_key(key)}.", key=format_key(key))
        return True

    def active_sessions(self) -> list[dict[str, object]]:
        sessions = []
        for (camera_id, quality), pipeline in self._registry.items():
            payload = pipeline.describe()
            payload.update(
                {
                    "camera_id": camera_id,
                    "quality": quality.value,
                    "playlist": playlist_reference(camera_id, quality),
                }
            )
            sessions.append(payload)
        return sessions


__all__ = [
    "LiveKey",
    "StreamSessionController",
    "playlist_reference",
    "remove_stale_artifacts",
    "wait_for_file",
]
