"""Thread-safe tables mapping session keys to their running pipelines."""
from __future__ import annotations

from threading import Lock
from typing import Generic, Hashable, TypeVar

from .transcoding import Pipeline


K = TypeVar("K", bound=Hashable)


class SessionRegistry(Generic[K]):
    """Hold at most one :class:`Pipeline` per session key."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._entries: dict[K, Pipeline] = {}
        self._lock = Lock()

    def insert_if_absent(self, key: K, pipeline: Pipeline) -> bool:
        """Register *pipeline* under *key* unless an entry already exists."""

        with self._lock:
            if key in self._entries:
                return False
            self._entries[key] = pipeline
            return True

    def lookup(self, key: K) -> Pipeline | None:
        with self._lock:
            return self._entries.get(key)

    def remove(self, key: K, pipeline: Pipeline | None = None) -> Pipeline | None:
        """Remove the entry for *key*.

        When *pipeline* is given the entry is only removed if it still refers to
        that exact pipeline, so an exit notification from a previous generation
        never evicts its replacement.
        """

        with self._lock:
            current = self._entries.get(key)
            if current is None:
                return None
            if pipeline is not None and current is not pipeline:
                return None
            del self._entries[key]
            return current

    def items(self) -> list[tuple[K, Pipeline]]:
        with self._lock:
            return list(self._entries.items())

    def drain(self) -> list[Pipeline]:
        """Remove and return every registered pipeline."""

        with self._lock:
            pipelines = list(self._entries.values())
            self._entries.clear()
        return pipelines

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = ["SessionRegistry"]
