"""Configuration management for CamWatch."""
from __future__ import annotations

import json
import math
import os
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterator, Mapping

from .errors import ConfigurationError, InvalidRequestError


CAMERA_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_CAMERA_ENV_PATTERN = re.compile(r"^CAMERA([A-Za-z0-9_-]+?)_RTSP_(MAIN|SUB)$")


class Quality(str, Enum):
    """Encoded fidelity of a camera feed."""

    MAIN = "main"
    SUB = "sub"


DEFAULT_LIVE_QUALITY = Quality.SUB


def parse_quality(value: Any, *, default: Quality = DEFAULT_LIVE_QUALITY) -> Quality:
    """Return the :class:`Quality` named by *value*."""

    if value is None:
        return default
    if isinstance(value, Quality):
        return value
    if isinstance(value, str):
        cleaned = value.strip().lower()
        if not cleaned:
            return default
        try:
            return Quality(cleaned)
        except ValueError:
            pass
    raise InvalidRequestError(f"Unsupported quality {value!r}; expected 'main' or 'sub'")


def validate_camera_id(camera_id: Any) -> str:
    """Return *camera_id* as a string safe for use in filesystem paths."""

    if isinstance(camera_id, int) and not isinstance(camera_id, bool):
        camera_id = str(camera_id)
    if not isinstance(camera_id, str):
        raise InvalidRequestError("Invalid camera ID")
    cleaned = camera_id.strip()
    if not CAMERA_ID_PATTERN.match(cleaned):
        raise InvalidRequestError("Invalid camera ID")
    return cleaned


@dataclass(frozen=True, slots=True)
class CameraSource:
    """RTSP endpoints published by a single camera."""

    camera_id: str
    main_url: str = ""
    sub_url: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "camera_id", validate_camera_id(self.camera_id))
        object.__setattr__(self, "main_url", (self.main_url or "").strip())
        object.__setattr__(self, "sub_url", (self.sub_url or "").strip())

    def url_for(self, quality: Quality) -> str | None:
        url = self.main_url if quality is Quality.MAIN else self.sub_url
        return url or None

    def to_dict(self) -> dict[str, object]:
        return {
            "camera_id": self.camera_id,
            "main": bool(self.main_url),
            "sub": bool(self.sub_url),
        }


class CameraDirectory(Mapping[str, CameraSource]):
    """Immutable lookup from camera identifier to its RTSP sources."""

    def __init__(self, sources: Mapping[str, CameraSource] | None = None) -> None:
        self._sources = MappingProxyType(dict(sources or {}))

    @classmethod
    def from_sources(cls, sources: list[CameraSource] | tuple[CameraSource, ...]) -> "CameraDirectory":
        return cls({source.camera_id: source for source in sources})

    def __getitem__(self, camera_id: str) -> CameraSource:
        return self._sources[camera_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._sources)

    def __len__(self) -> int:
        return len(self._sources)

    def resolve(self, camera_id: str, quality: Quality) -> str:
        """Return the RTSP URL for *camera_id* at *quality*."""

        source = self._sources.get(camera_id)
        if source is None:
            raise ConfigurationError(f"Camera {camera_id!r} is not configured")
        url = source.url_for(quality)
        if url is None:
            raise ConfigurationError(
                f"Camera {camera_id!r} has no {quality.value!r} stream configured"
            )
        return url

    def to_list(self) -> list[dict[str, object]]:
        return [self._sources[key].to_dict() for key in sorted(self._sources)]


@dataclass(frozen=True, slots=True)
class OrchestratorSettings:
    """Tunables for the pipeline orchestration layer."""

    streams_dir: Path = Path("data/streams")
    recordings_dir: Path = Path("data/recordings")
    ffmpeg_binary: str | None = None
    playlist_poll_interval: float = 0.1
    playlist_wait_timeout: float = 2.0
    existing_playlist_wait: float = 1.0
    finalise_poll_interval: float = 0.25
    finalise_timeout: float = 10.0
    finalise_grace: float = 2.0
    start_probe_delay: float = 0.2
    shutdown_timeout: float = 5.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "streams_dir", Path(self.streams_dir))
        object.__setattr__(self, "recordings_dir", Path(self.recordings_dir))
        if self.ffmpeg_binary is not None:
            binary = str(self.ffmpeg_binary).strip()
            object.__setattr__(self, "ffmpeg_binary", binary or None)
        for name in (
            "playlist_poll_interval",
            "finalise_poll_interval",
        ):
            value = _coerce_seconds(getattr(self, name), name)
            if value <= 0:
                raise ValueError(f"{name} must be positive")
            object.__setattr__(self, name, value)
        for name in (
            "playlist_wait_timeout",
            "existing_playlist_wait",
            "finalise_timeout",
            "finalise_grace",
            "start_probe_delay",
            "shutdown_timeout",
        ):
            value = _coerce_seconds(getattr(self, name), name)
            if value < 0:
                raise ValueError(f"{name} must not be negative")
            object.__setattr__(self, name, value)

    def to_dict(self) -> dict[str, object]:
        return {
            "streams_dir": self.streams_dir.as_posix(),
            "recordings_dir": self.recordings_dir.as_posix(),
            "ffmpeg_binary": self.ffmpeg_binary,
            "playlist_poll_interval": self.playlist_poll_interval,
            "playlist_wait_timeout": self.playlist_wait_timeout,
            "existing_playlist_wait": self.existing_playlist_wait,
            "finalise_poll_interval": self.finalise_poll_interval,
            "finalise_timeout": self.finalise_timeout,
            "finalise_grace": self.finalise_grace,
            "start_probe_delay": self.start_probe_delay,
            "shutdown_timeout": self.shutdown_timeout,
        }


def _coerce_seconds(value: Any, name: str) -> float:
    try:
        seconds = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be numeric") from exc
    if not math.isfinite(seconds):
        raise ValueError(f"{name} must be finite")
    return seconds


DEFAULT_SETTINGS = OrchestratorSettings()


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Fully resolved configuration handed to the application factory."""

    cameras: CameraDirectory = field(default_factory=CameraDirectory)
    settings: OrchestratorSettings = DEFAULT_SETTINGS


def _parse_camera_entry(camera_id: Any, value: Any) -> CameraSource:
    if not isinstance(value, Mapping):
        raise ValueError(f"Camera {camera_id!r} must be an object with 'main'/'sub' URLs")
    main = value.get("main", "")
    sub = value.get("sub", "")
    if not isinstance(main, str) or not isinstance(sub, str):
        raise ValueError(f"Camera {camera_id!r} URLs must be strings")
    try:
        return CameraSource(str(camera_id), main, sub)
    except InvalidRequestError as exc:
        raise ValueError(f"Invalid camera identifier {camera_id!r}") from exc


def _parse_cameras(value: Any) -> dict[str, CameraSource]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError("'cameras' must be an object keyed by camera ID")
    sources: dict[str, CameraSource] = {}
    for camera_id, entry in value.items():
        source = _parse_camera_entry(camera_id, entry)
        sources[source.camera_id] = source
    return sources


def _parse_settings(value: Any, *, default: OrchestratorSettings) -> OrchestratorSettings:
    if value is None:
        return default
    if not isinstance(value, Mapping):
        raise ValueError("'settings' must be an object")
    known = set(default.to_dict())
    unknown = sorted(set(value) - known)
    if unknown:
        raise ValueError(f"Unknown settings: {', '.join(unknown)}")
    return replace(default, **dict(value))


def cameras_from_environment(
    environ: Mapping[str, str] | None = None,
    base: Mapping[str, CameraSource] | None = None,
) -> dict[str, CameraSource]:
    """Merge ``CAMERA<id>_RTSP_MAIN``/``_SUB`` variables into *base*."""

    env = os.environ if environ is None else environ
    merged: dict[str, CameraSource] = dict(base or {})
    for name in sorted(env):
        match = _CAMERA_ENV_PATTERN.match(name)
        if match is None:
            continue
        url = env[name].strip()
        if not url:
            continue
        camera_id, which = match.groups()
        current = merged.get(camera_id) or CameraSource(camera_id)
        if which == "MAIN":
            merged[camera_id] = replace(current, main_url=url)
        else:
            merged[camera_id] = replace(current, sub_url=url)
    return merged


def _settings_from_environment(
    settings: OrchestratorSettings, environ: Mapping[str, str]
) -> OrchestratorSettings:
    overrides: dict[str, object] = {}
    streams_dir = environ.get("CAMWATCH_STREAMS_DIR")
    if streams_dir:
        overrides["streams_dir"] = Path(streams_dir)
    recordings_dir = environ.get("CAMWATCH_RECORDINGS_DIR")
    if recordings_dir:
        overrides["recordings_dir"] = Path(recordings_dir)
    ffmpeg_binary = environ.get("CAMWATCH_FFMPEG")
    if ffmpeg_binary:
        overrides["ffmpeg_binary"] = ffmpeg_binary
    return replace(settings, **overrides) if overrides else settings


def load_config(
    config_path: Path | str | None,
    *,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """Load camera sources and settings from *config_path* and the environment."""

    env = os.environ if environ is None else environ
    cameras: dict[str, CameraSource] = {}
    settings = DEFAULT_SETTINGS
    path = Path(config_path) if config_path is not None else None
    try:
        if path is not None and path.exists():
            payload = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
            cameras = _parse_cameras(payload.get("cameras"))
            settings = _parse_settings(payload.get("settings"), default=DEFAULT_SETTINGS)
        settings = _settings_from_environment(settings, env)
        cameras = cameras_from_environment(env, cameras)
    except (OSError, ValueError, TypeError) as exc:
        raise RuntimeError(f"Failed to load configuration: {exc}") from exc
    return AppConfig(cameras=CameraDirectory(cameras), settings=settings)


__all__ = [
    "AppConfig",
    "CAMERA_ID_PATTERN",
    "CameraDirectory",
    "CameraSource",
    "DEFAULT_LIVE_QUALITY",
    "DEFAULT_SETTINGS",
    "OrchestratorSettings",
    "Quality",
    "cameras_from_environment",
    "load_config",
    "parse_quality",
    "validate_camera_id",
]
