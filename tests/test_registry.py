from __future__ import annotations

import threading
from pathlib import Path

from conftest import FakePipeline
from cam_watch.registry import SessionRegistry
from cam_watch.transcoding import PipelineKind, PipelineSpec


def _pipeline(key: str = "1") -> FakePipeline:
    spec = PipelineSpec(key=key, kind=PipelineKind.RECORDING, argv=("ffmpeg",), output_path=Path("out.mp4"))
    return FakePipeline(spec)


def test_insert_if_absent_keeps_first_entry():
    registry: SessionRegistry[str] = SessionRegistry("test")
    first, second = _pipeline(), _pipeline()

    assert registry.insert_if_absent("1", first) is True
    assert registry.insert_if_absent("1", second) is False
    assert registry.lookup("1") is first
    assert "1" in registry
    assert len(registry) == 1


def test_remove_checks_identity():
    registry: SessionRegistry[str] = SessionRegistry("test")
    old, new = _pipeline(), _pipeline()
    registry.insert_if_absent("1", new)

    assert registry.remove("1", old) is None
    assert registry.lookup("1") is new
    assert registry.remove("1", new) is new
    assert registry.lookup("1") is None
    assert registry.remove("1") is None


def test_remove_without_pipeline_removes_any_entry():
    registry: SessionRegistry[str] = SessionRegistry("test")
    pipeline = _pipeline()
    registry.insert_if_absent("1", pipeline)

    assert registry.remove("1") is pipeline
    assert len(registry) == 0


def test_drain_empties_registry():
    registry: SessionRegistry[str] = SessionRegistry("test")
    pipelines = [_pipeline(str(index)) for index in range(3)]
    for pipeline in pipelines:
        registry.insert_if_absent(pipeline.key, pipeline)

    drained = registry.drain()

    assert set(map(id, drained)) == set(map(id, pipelines))
    assert registry.items() == []


def test_concurrent_inserts_admit_exactly_one():
    registry: SessionRegistry[str] = SessionRegistry("test")
    barrier = threading.Barrier(16)
    results: list[bool] = []
    results_lock = threading.Lock()

    def worker() -> None:
        pipeline = _pipeline()
        barrier.wait()
        inserted = registry.insert_if_absent("1", pipeline)
        with results_lock:
            results.append(inserted)

    threads = [threading.Thread(target=worker) for _ in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1
    assert results.count(False) == 15
    assert len(registry) == 1
