"""External ffmpeg processes converting one RTSP source into one artifact."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Hashable, Sequence

from .config import Quality
from .errors import LaunchError


logger = logging.getLogger(__name__)


DEFAULT_FFMPEG_BINARY = "ffmpeg"

LIVE_SEGMENT_SECONDS = 2
LIVE_PLAYLIST_SIZE = 3
LIVE_INPUT_TIMEOUT_US = 10_000_000
LIVE_CRF: dict[Quality, int] = {Quality.MAIN: 23, Quality.SUB: 28}
RECORDING_CRF = 23
RECORDING_MUXING_QUEUE = 1024

_STDERR_ALERT_TOKENS = ("error", "fail")


class PipelineKind(str, Enum):
    """Output configuration of a pipeline."""

    LIVE = "live"
    RECORDING = "recording"


@dataclass(frozen=True, slots=True)
class PipelineSpec:
    """Everything needed to launch one encoder process."""

    key: Hashable
    kind: PipelineKind
    argv: tuple[str, ...]
    output_path: Path


def format_key(key: Hashable) -> str:
    """Render a session key as used in log lines and event metadata."""

    if isinstance(key, tuple):
        return "-".join(str(getattr(part, "value", part)) for part in key)
    return str(key)


ExitCallback = Callable[["Pipeline", "int | None"], None]


class Pipeline(ABC):
    """Narrow handle over a running encoder, independent of how it is executed."""

    def __init__(self, spec: PipelineSpec) -> None:
        self.spec = spec
        self.started_at: datetime | None = None
        self._started_monotonic: float | None = None
        self._exit_callbacks: list[ExitCallback] = []
        self._exited = False
        self._stop_requested = False

    @property
    def key(self) -> Hashable:
        return self.spec.key

    @property
    def label(self) -> str:
        return format_key(self.spec.key)

    @property
    def kind(self) -> PipelineKind:
        return self.spec.kind

    @property
    def output_path(self) -> Path:
        return self.spec.output_path

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    @property
    def elapsed(self) -> float:
        """Seconds since the process was started."""

        if self._started_monotonic is None:
            return 0.0
        return max(0.0, time.monotonic() - self._started_monotonic)

    @property
    @abstractmethod
    def pid(self) -> int | None:
        """Operating system identifier of the process, when running."""

    @property
    @abstractmethod
    def returncode(self) -> int | None:
        """Exit status once the process has terminated."""

    @abstractmethod
    async def start(self) -> None:
        """Launch the process, raising :class:`LaunchError` on failure."""

    @abstractmethod
    async def request_graceful_stop(self) -> None:
        """Ask the process to finalise its output and exit."""

    @abstractmethod
    def is_alive(self) -> bool:
        """Return ``True`` while the process is running."""

    @abstractmethod
    async def wait(self, timeout: float | None = None) -> int | None:
        """Wait for the process to exit and return its status."""

    @abstractmethod
    async def kill(self) -> None:
        """Terminate the process immediately."""

    def add_exit_callback(self, callback: ExitCallback) -> None:
        """Invoke *callback* once the process has exited."""

        if self._exited:
            callback(self, self.returncode)
            return
        self._exit_callbacks.append(callback)

    def _mark_started(self) -> None:
        self.started_at = datetime.now(timezone.utc)
        self._started_monotonic = time.monotonic()

    def _notify_exit(self, returncode: int | None) -> None:
        if self._exited:
            return
        self._exited = True
        callbacks, self._exit_callbacks = self._exit_callbacks, []
        for callback in callbacks:
            try:
                callback(self, returncode)
            except Exception:  # pragma: no cover
                logger.exception("Exit callback failed for pipeline %s", self.label)

    def describe(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "pid": self.pid,
            "alive": self.is_alive(),
            "output": self.output_path.name,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "elapsed": round(self.elapsed, 3),
        }


PipelineFactory = Callable[[PipelineSpec], Pipeline]


class FFmpegPipeline(Pipeline):
    """Run a pipeline as a local ffmpeg subprocess."""

    def __init__(
        self,
        spec: PipelineSpec,
        *,
        start_probe_delay: float = 0.2,
        stderr_history: int = 20,
    ) -> None:
        super().__init__(spec)
        if not spec.argv:
            raise ValueError("Pipeline command must not be empty")
        self._start_probe_delay = max(0.0, float(start_probe_delay))
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_tail: deque[str] = deque(maxlen=max(1, int(stderr_history)))
        self._stderr_task: asyncio.Task[None] | None = None
        self._watch_task: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process is not None else None

    @property
    def stderr_tail(self) -> tuple[str, ...]:
        return tuple(self._stderr_tail)

    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None and not self._exited

    async def start(self) -> None:
        if self._process is not None:
            raise RuntimeError("Pipeline has already been started")
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            process = await asyncio.create_subprocess_exec(
                *self.spec.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise LaunchError(f"Failed to launch {self.spec.argv[0]}: {exc}") from exc
        self._process = process
        self._mark_started()
        self._stderr_task = asyncio.create_task(self._drain_stderr(process))
        self._watch_task = asyncio.create_task(self._watch(process))
        logger.info(
            "Started %s pipeline %s (pid %s): %s",
            self.kind.value,
            self.label,
            process.pid,
            " ".join(self.spec.argv),
        )
        if self._start_probe_delay <= 0:
            return
        # ffmpeg exits straight away on bad arguments or unreachable outputs.
        done, _ = await asyncio.wait({self._watch_task}, timeout=self._start_probe_delay)
        if done:
            message = "; ".join(self._stderr_tail) or "no diagnostic output"
            raise LaunchError(
                f"{self.spec.argv[0]} exited immediately with code {process.returncode}: {message}"
            )

    async def request_graceful_stop(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        self._stop_requested = True
        stdin = process.stdin
        if stdin is not None and not stdin.is_closing():
            try:
                stdin.write(b"q")
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                logger.debug("Control channel unavailable for %s: %s", self.label, exc)
            else:
                logger.info("Requested graceful stop of pipeline %s via stdin", self.label)
                return
        try:
            process.send_signal(signal.SIGINT)
        except ProcessLookupError:
            return
        logger.info("Requested graceful stop of pipeline %s via SIGINT", self.label)

    async def wait(self, timeout: float | None = None) -> int | None:
        task = self._watch_task
        if task is None:
            return None
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            return None
        return self.returncode

    async def kill(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        logger.warning("Killing pipeline %s (pid %s)", self.label, process.pid)
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await self.wait()

    # ------------------------------ helpers -----------------------------
    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        stream = process.stderr
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if not text:
                continue
            self._stderr_tail.append(text)
            lowered = text.lower()
            if any(token in lowered for token in _STDERR_ALERT_TOKENS):
                logger.warning("ffmpeg[%s]: %s", self.label, text)
            else:
                logger.debug("ffmpeg[%s]: %s", self.label, text)

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        if self._stderr_task is not None:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stderr_task, timeout=1.0)
        if self._stop_requested:
            logger.info("Pipeline %s exited with code %s", self.label, returncode)
        else:
            logger.warning(
                "Pipeline %s exited unexpectedly with code %s: %s",
                self.label,
                returncode,
                "; ".join(self._stderr_tail) or "no diagnostic output",
            )
        self._notify_exit(returncode)


def build_live_command(
    source_url: str,
    playlist_path: Path,
    segment_pattern: Path,
    quality: Quality,
    *,
    binary: str | None = None,
) -> list[str]:
    """Return the ffmpeg argv producing a low-latency HLS window."""

    return [
        binary or DEFAULT_FFMPEG_BINARY,
        "-hide_banner",
        "-nostats",
        "-loglevel",
        "warning",
        "-rtsp_transport",
        "tcp",
        "-timeout",
        str(LIVE_INPUT_TIMEOUT_US),
        "-err_detect",
        "ignore_err",
        "-i",
        source_url,
        "-c:v",
        "libx264",
        "-preset",
        "superfast",
        "-tune",
        "zerolatency",
        "-crf",
        str(LIVE_CRF[quality]),
        "-pix_fmt",
        "yuv420p",
        "-c:a",
        "aac",
        "-ar",
        "44100",
        "-ac",
        "2",
        "-b:a",
        "128k",
        "-f",
        "hls",
        "-hls_time",
        str(LIVE_SEGMENT_SECONDS),
        "-hls_list_size",
        str(LIVE_PLAYLIST_SIZE),
        "-hls_flags",
        "delete_segments",
        "-hls_allow_cache",
        "0",
        "-hls_segment_filename",
        segment_pattern.as_posix(),
        "-y",
        playlist_path.as_posix(),
    ]


def build_recording_command(
    source_url: str,
    output_path: Path,
    *,
    binary: str | None = None,
) -> list[str]:
    """Return the ffmpeg argv writing one finalised MP4 file."""

    return [
        binary or DEFAULT_FFMPEG_BINARY,
        "-hide_banner",
        "-nostats",
        "-loglevel",
        "warning",
        "-rtsp_transport",
        "tcp",
        "-i",
        source_url,
        "-c:v",
        "libx264",
        "-preset",
        "superfast",
        "-crf",
        str(RECORDING_CRF),
        "-pix_fmt",
        "yuv420p",
        "-movflags",
        "+faststart",
        "-fps_mode",
        "cfr",
        "-max_muxing_queue_size",
        str(RECORDING_MUXING_QUEUE),
        "-c:a",
        "aac",
        "-b:a",
        "128k",
        "-y",
        output_path.as_posix(),
    ]


def create_ffmpeg_factory(*, start_probe_delay: float = 0.2) -> PipelineFactory:
    """Return a :data:`PipelineFactory` producing :class:`FFmpegPipeline` handles."""

    def _factory(spec: PipelineSpec) -> Pipeline:
        return FFmpegPipeline(spec, start_probe_delay=start_probe_delay)

    return _factory


async def stop_pipelines(pipelines: Sequence[Pipeline], *, timeout: float) -> None:
    """Gracefully stop *pipelines*, killing any which outlive *timeout*."""

    if not pipelines:
        return
    for pipeline in pipelines:
        try:
            await pipeline.request_graceful_stop()
        except Exception:  # pragma: no cover
            logger.exception("Failed to signal pipeline %s", pipeline.label)
    results = await asyncio.gather(
        *(pipeline.wait(timeout) for pipeline in pipelines), return_exceptions=True
    )
    for pipeline, result in zip(pipelines, results):
        if isinstance(result, BaseException):  # pragma: no cover
            logger.error("Waiting for pipeline %s failed: %s", pipeline.label, result)
        if pipeline.is_alive():
            await pipeline.kill()


__all__ = [
    "DEFAULT_FFMPEG_BINARY",
    "ExitCallback",
    "format_key",
    "FFmpegPipeline",
    "LIVE_CRF",
    "LIVE_PLAYLIST_SIZE",
    "LIVE_SEGMENT_SECONDS",
    "Pipeline",
    "PipelineFactory",
    "PipelineKind",
    "PipelineSpec",
    "RECORDING_CRF",
    "build_live_command",
    "build_recording_command",
    "create_ffmpeg_factory",
    "stop_pipelines",
]
