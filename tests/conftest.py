from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable

import pytest

from cam_watch.config import CameraDirectory, CameraSource, OrchestratorSettings
from cam_watch.errors import LaunchError
from cam_watch.transcoding import Pipeline, PipelineSpec


class FakePipeline(Pipeline):
    """In-memory stand-in for an encoder process."""

    def __init__(
        self,
        spec: PipelineSpec,
        *,
        start_delay: float = 0.0,
        stop_delay: float = 0.0,
        fail: bool = False,
        on_start: Callable[["FakePipeline"], None] | None = None,
        on_stop: Callable[["FakePipeline"], None] | None = None,
    ) -> None:
        super().__init__(spec)
        self._start_delay = start_delay
        self._stop_delay = stop_delay
        self._fail = fail
        self._on_start = on_start
        self._on_stop = on_stop
        self._alive = False
        self._returncode: int | None = None
        self._exit_event = asyncio.Event()
        self.graceful_stops = 0
        self.killed = False

    @property
    def pid(self) -> int | None:
        return 4242 if self._alive else None

    @property
    def returncode(self) -> int | None:
        return self._returncode

    async def start(self) -> None:
        if self._start_delay:
            await asyncio.sleep(self._start_delay)
        if self._fail:
            raise LaunchError("encoder refused to start")
        self._mark_started()
        self._alive = True
        if self._on_start is not None:
            self._on_start(self)

    async def request_graceful_stop(self) -> None:
        self._stop_requested = True
        self.graceful_stops += 1
        if self._on_stop is not None:
            self._on_stop(self)
        if self._stop_delay:
            asyncio.get_running_loop().call_later(self._stop_delay, self.exit, 0)
        else:
            self.exit(0)

    def is_alive(self) -> bool:
        return self._alive

    async def wait(self, timeout: float | None = None) -> int | None:
        if self._alive:
            try:
                await asyncio.wait_for(self._exit_event.wait(), timeout)
            except asyncio.TimeoutError:
                pass
        return self._returncode

    async def kill(self) -> None:
        self.killed = True
        self.exit(-9)

    def exit(self, code: int) -> None:
        """Simulate the process terminating with *code*."""

        if not self._alive:
            return
        self._alive = False
        self._returncode = code
        self._exit_event.set()
        self._notify_exit(code)


class FakeFactory:
    """Pipeline factory recording every pipeline it creates."""

    def __init__(self, **behaviour: object) -> None:
        self.behaviour = behaviour
        self.created: list[FakePipeline] = []

    def __call__(self, spec: PipelineSpec) -> FakePipeline:
        pipeline = FakePipeline(spec, **self.behaviour)
        self.created.append(pipeline)
        return pipeline


@pytest.fixture
def cameras() -> CameraDirectory:
    return CameraDirectory.from_sources(
        [
            CameraSource("1", "rtsp://cam1/main", "rtsp://cam1/sub"),
            CameraSource("2", "rtsp://cam2/main", "rtsp://cam2/sub"),
            CameraSource("3", "", "rtsp://cam3/sub"),
        ]
    )


@pytest.fixture
def settings(tmp_path: Path) -> OrchestratorSettings:
    return OrchestratorSettings(
        streams_dir=tmp_path / "streams",
        recordings_dir=tmp_path / "recordings",
        playlist_poll_interval=0.01,
        playlist_wait_timeout=0.05,
        existing_playlist_wait=0.0,
        finalise_poll_interval=0.01,
        finalise_timeout=0.5,
        finalise_grace=0.01,
        start_probe_delay=0.0,
        shutdown_timeout=1.0,
    )
