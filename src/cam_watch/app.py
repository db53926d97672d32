"""FastAPI application wiring together the CamWatch services."""
from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Mapping

from fastapi import FastAPI, HTTPException
from fastapi.responses import RedirectResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field

from .config import CameraDirectory, OrchestratorSettings, load_config
from .errors import (
    CamWatchError,
    ConfigurationError,
    ConflictError,
    InvalidRequestError,
    LaunchError,
    NotRecordingError,
)
from .events import LifecycleLog
from .recordings import RecordingSessionController
from .streams import StreamSessionController
from .transcoding import PipelineFactory, create_ffmpeg_factory
from .uploads import UploadAuthExpired, UploadSink
from .version import APP_VERSION


class RecordingStartPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    camera_id: str | int | None = Field(default=None, alias="cameraId")
    quality: str | None = None


class RecordingStopPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    camera_id: str | int | None = Field(default=None, alias="cameraId")


class UploadPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filename: str | None = None
    camera_id: str | int | None = Field(default=None, alias="cameraId")


def _require_camera_id(value: str | int | None) -> str:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise HTTPException(status_code=400, detail="Camera ID is required")
    return str(value)


def create_app(
    config_path: Path | str | None = Path("data/config.json"),
    *,
    cameras: CameraDirectory | None = None,
    settings: OrchestratorSettings | None = None,
    pipeline_factory: PipelineFactory | None = None,
    upload_sink: UploadSink | None = None,
    event_log: LifecycleLog | None = None,
    environ: Mapping[str, str] | None = None,
) -> FastAPI:
    app = FastAPI(title="CamWatch", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    loaded = load_config(config_path, environ=os.environ if environ is None else environ)
    camera_directory = cameras if cameras is not None else loaded.cameras
    orchestrator_settings = settings if settings is not None else loaded.settings
    if pipeline_factory is None:
        pipeline_factory = create_ffmpeg_factory(
            start_probe_delay=orchestrator_settings.start_probe_delay
        )
    events = event_log if event_log is not None else LifecycleLog()

    orchestrator_settings.streams_dir.mkdir(parents=True, exist_ok=True)
    orchestrator_settings.recordings_dir.mkdir(parents=True, exist_ok=True)

    streams = StreamSessionController(
        camera_directory,
        orchestrator_settings,
        pipeline_factory,
        event_log=events,
    )
    recordings = RecordingSessionController(
        camera_directory,
        orchestrator_settings,
        pipeline_factory,
        event_log=events,
    )

    app.state.streams = streams
    app.state.recordings = recordings
    app.state.events = events
    app.state.settings = orchestrator_settings

    app.mount(
        "/streams",
        StaticFiles(directory=orchestrator_settings.streams_dir, check_dir=False),
        name="streams",
    )
    app.mount(
        "/recordings/files",
        StaticFiles(directory=orchestrator_settings.recordings_dir, check_dir=False),
        name="recording-files",
    )

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        if not camera_directory:
            logger.warning("No cameras configured; set CAMERA<id>_RTSP_MAIN/SUB or edit %s", config_path)
        events.record(
            "system",
            "startup",
            "CamWatch starting up.",
            cameras=len(camera_directory),
        )

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        events.record("system", "shutdown", "CamWatch shutting down.")
        await asyncio.gather(streams.aclose(), recordings.aclose())
        events.record("system", "shutdown_complete", "CamWatch shutdown sequence completed.")

    @app.get("/api/cameras")
    async def list_cameras() -> dict[str, object]:
        return {"cameras": camera_directory.to_list()}

    @app.get("/stream/{camera_id}")
    async def open_stream(camera_id: str, quality: str | None = None) -> RedirectResponse:
        try:
            reference = await streams.ensure_live_view(camera_id, quality)
        except InvalidRequestError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except ConfigurationError as exc:
            raise HTTPException(status_code=404, detail="Stream not found") from exc
        except CamWatchError as exc:
            raise HTTPException(status_code=500, detail="Failed to create stream") from exc
        return RedirectResponse(reference, status_code=307)

    @app.delete("/stream/{camera_id}")
    async def close_stream(camera_id: str, quality: str | None = None) -> dict[str, object]:
        try:
            stopped = await streams.stop_live_view(camera_id, quality)
        except InvalidRequestError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if not stopped:
            raise HTTPException(status_code=404, detail="No active stream")
        return {"success": True, "message": "Stream stopped"}

    @app.post("/recording/start")
    async def start_recording(payload: RecordingStartPayload) -> dict[str, object]:
        camera_id = _require_camera_id(payload.camera_id)
        if payload.quality and payload.quality.strip().lower() != "main":
            logger.debug("Ignoring requested %r quality; recordings use the main stream", payload.quality)
        try:
            filename = await recordings.start_recording(camera_id)
        except InvalidRequestError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except ConflictError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except ConfigurationError as exc:
            raise HTTPException(status_code=404, detail="Stream not found") from exc
        except LaunchError as exc:
            raise HTTPException(status_code=500, detail="Failed to start recording") from exc
        return {"success": True, "message": "Recording started", "filename": filename}

    @app.post("/recording/stop")
    async def stop_recording(payload: RecordingStopPayload) -> dict[str, object]:
        camera_id = _require_camera_id(payload.camera_id)
        try:
            session = await recordings.stop_recording(camera_id)
        except (InvalidRequestError, NotRecordingError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("Failed to stop recording for camera %s", camera_id)
            raise HTTPException(status_code=500, detail="Failed to stop recording") from exc
        return {
            "success": True,
            "message": "Recording stopped",
            "filename": session.filename,
            "duration": session.duration,
            "completedAt": session.completed_at.isoformat(),
        }

    @app.delete("/recording")
    async def delete_recording(filename: str | None = None) -> dict[str, object]:
        if not filename:
            raise HTTPException(status_code=400, detail="Filename is required")
        try:
            removed = await asyncio.to_thread(recordings.delete_recording, filename)
        except (InvalidRequestError, ConflictError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except FileNotFoundError as exc:
            raise HTTPException(status_code=404, detail="File not found") from exc
        except OSError as exc:
            logger.exception("Failed to delete recording %s", filename)
            raise HTTPException(status_code=500, detail="Failed to delete recording") from exc
        return {"success": True, "message": "Recording deleted successfully", "filename": removed}

    @app.get("/recordings")
    async def list_recordings() -> dict[str, object]:
        records = await asyncio.to_thread(recordings.list_recordings)
        return {"recordings": [record.to_dict() for record in records]}

    @app.get("/api/sessions")
    async def list_sessions() -> dict[str, object]:
        return {
            "live": streams.active_sessions(),
            "recordings": recordings.active_recordings(),
        }

    @app.get("/api/events")
    async def list_events(
        limit: int = 100, category: str | None = None, key: str | None = None
    ) -> dict[str, object]:
        entries = events.tail(limit, category=category, key=key)
        return {"events": [entry.to_dict() for entry in entries]}

    @app.post("/drive/upload")
    async def upload_recording(payload: UploadPayload) -> dict[str, object]:
        if upload_sink is None:
            raise HTTPException(status_code=503, detail="Upload service not configured")
        if not payload.filename:
            raise HTTPException(status_code=400, detail="Filename is required")
        try:
            path = recordings.resolve_recording_path(payload.filename)
        except InvalidRequestError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if not path.is_file():
            raise HTTPException(status_code=404, detail="Recording file not found")
        camera_id = str(payload.camera_id) if payload.camera_id is not None else None
        try:
            result = await upload_sink.upload(path, filename=path.name, camera_id=camera_id)
        except UploadAuthExpired as exc:
            raise HTTPException(
                status_code=401,
                detail={"error": str(exc), "authUrl": exc.auth_url},
            ) from exc
        except Exception as exc:
            logger.exception("Upload of %s failed", path.name)
            raise HTTPException(status_code=500, detail="Failed to upload recording") from exc
        events.record(
            "upload",
            "uploaded",
            f"Uploaded recording {path.name}.",
            filename=path.name,
            camera_id=camera_id,
        )
        return {"success": True, "message": "File uploaded", **result.to_dict()}

    return app


__all__ = ["create_app"]
