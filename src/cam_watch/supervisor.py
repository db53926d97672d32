"""Shared launch and teardown logic for the session controllers."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Generic, Hashable, TypeVar

from .errors import ConflictError, LaunchError
from .events import LifecycleLog
from .registry import SessionRegistry
from .transcoding import Pipeline, PipelineFactory, PipelineSpec, format_key, stop_pipelines


logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


@dataclass(slots=True)
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class PipelineSupervisor(Generic[K]):
    """Launch pipelines into a registry and keep the registry free of dead processes."""

    def __init__(
        self,
        registry: SessionRegistry[K],
        pipeline_factory: PipelineFactory,
        *,
        category: str,
        event_log: LifecycleLog | None = None,
        shutdown_timeout: float = 5.0,
    ) -> None:
        self._registry = registry
        self._pipeline_factory = pipeline_factory
        self._category = category
        self._event_log = event_log
        self._shutdown_timeout = shutdown_timeout
        self._locks: dict[K, _KeyLock] = {}
        self._closed = False

    @property
    def registry(self) -> SessionRegistry[K]:
        return self._registry

    @contextlib.asynccontextmanager
    async def _lock_for(self, key: K) -> AsyncIterator[None]:
        """Serialise lookup, launch, registration and teardown for *key*.

        The lock is dropped from the table once nobody holds or awaits it.
        """

        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    def _record(self, event: str, message: str, *, key: str | None = None, **details: object) -> None:
        if self._event_log is not None:
            self._event_log.record(self._category, event, message, key=key, **details)

    def _live_entry(self, key: K) -> Pipeline | None:
        """Return the registered pipeline for *key*, reaping it if its process died."""

        pipeline = self._registry.lookup(key)
        if pipeline is None or pipeline.is_alive():
            return pipeline
        if self._registry.remove(key, pipeline) is not None:
            logger.warning(
                "Removed orphaned %s pipeline %s (exit code %s)",
                self._category,
                pipeline.label,
                pipeline.returncode,
            )
            self._record(
                "orphaned",
                f"Pipeline {format_key(key)} was registered without a running process.",
                key=format_key(key),
                returncode=pipeline.returncode,
            )
        return None

    async def _launch(self, key: K, spec: PipelineSpec) -> Pipeline:
        """Start a pipeline for *spec* and register it under *key*.

        Callers must hold :meth:`_lock_for` for *key*.
        """

        if self._closed:
            raise LaunchError(f"Not starting {self._category} pipeline {format_key(key)}: shutting down")
        pipeline = self._pipeline_factory(spec)
        pipeline.add_exit_callback(self._handle_exit)
        try:
            await pipeline.start()
        except LaunchError as exc:
            logger.error("Failed to launch %s pipeline %s: %s", self._category, format_key(key), exc)
            self._record("launch_failed", str(exc), key=format_key(key))
            raise
        if not self._registry.insert_if_absent(key, pipeline):
            await pipeline.request_graceful_stop()
            raise ConflictError(f"A {self._category} session for {format_key(key)} is already registered")
        if not pipeline.is_alive():
            # The process died between start and registration; its exit
            # notification found nothing to remove.
            self._registry.remove(key, pipeline)
            message = f"Pipeline {format_key(key)} exited with code {pipeline.returncode} during startup"
            self._record("launch_failed", message, key=format_key(key))
            raise LaunchError(message)
        self._record(
            "started",
            f"Started {self._category} pipeline {format_key(key)}.",
            key=format_key(key),
            pid=pipeline.pid,
            output=pipeline.output_path.name,
        )
        return pipeline

    def _handle_exit(self, pipeline: Pipeline, returncode: int | None) -> None:
        removed = self._registry.remove(pipeline.key, pipeline)
        if removed is not None and not pipeline.stop_requested:
            self._record(
                "orphaned",
                f"Pipeline {pipeline.label} exited unexpectedly.",
                key=pipeline.label,
                returncode=returncode,
            )
            return
        self._record(
            "exited",
            f"Pipeline {pipeline.label} exited.",
            key=pipeline.label,
            returncode=returncode,
        )

    async def _stop_registered(self, key: K) -> Pipeline | None:
        """Stop the pipeline registered under *key* and deregister it once it has exited.

        Callers must hold :meth:`_lock_for` for *key*. The entry stays registered
        until the process is gone.
        """

        pipeline = self._registry.lookup(key)
        if pipeline is None:
            return None
        await stop_pipelines([pipeline], timeout=self._shutdown_timeout)
        self._registry.remove(key, pipeline)
        return pipeline

    async def _stop_key(self, key: K) -> None:
        async with self._lock_for(key):
            await self._stop_registered(key)

    async def aclose(self) -> None:
        """Refuse further launches and stop every registered pipeline."""

        self._closed = True
        keys = [key for key, _ in self._registry.items()]
        if keys:
            logger.info("Stopping %d %s pipeline(s)", len(keys), self._category)
        await asyncio.gather(*(self._stop_key(key) for key in keys))
        leftovers = self._registry.drain()
        await stop_pipelines(leftovers, timeout=self._shutdown_timeout)


__all__ = ["PipelineSupervisor"]
