import logging
import threading
import time

import numpy as np
import pytest
from PIL import Image

import watcher.directory_watcher as dw
from consumer.ocr import TextExtractor
from consumer.pipeline import CandidatePipeline
from consumer.similarity import SimilarityScorer
from watcher.directory_watcher import (
    CeleryDispatcher,
    DirectoryWatcher,
    ReferenceImageUnavailable,
    ThreadDispatcher,
)
from watcher.processed_set import ProcessedSet
from conftest import FakeEngine, make_noise, save


class RecordingDispatcher:
    def __init__(self, capacity=100):
        self.capacity = capacity
        self.submitted = []
        self.reaped = 0
        self.closed = False

    def has_capacity(self):
        return len(self.submitted) < self.capacity

    def submit(self, image_path):
        self.submitted.append(image_path)

    def reap(self):
        self.reaped += 1
        return []

    def shutdown(self, wait=True):
        self.closed = True


def fake_loader(path):
    return np.zeros((4, 4, 3), np.uint8)


def make_watcher(directory, dispatcher, **kwargs):
    kwargs.setdefault("reference_loader", fake_loader)
    w = DirectoryWatcher(directory, "ref.jpg", lambda ref: dispatcher, **kwargs)
    w.initialize()
    return w


def touch(path):
    path.write_bytes(b"x")
    return path


def test_only_jpg_files_are_candidates(tmp_path):
    for name in ("a.jpg", "b.JPG", "c.png", "notes.txt", "d.jpeg"):
        touch(tmp_path / name)
    (tmp_path / "folder.jpg").mkdir()
    dispatcher = RecordingDispatcher()
    w = make_watcher(tmp_path, dispatcher)

    assert w.run_once() == ["a.jpg", "b.JPG"]
    assert sorted(p.split("/")[-1] for p in map(str, dispatcher.submitted)) == ["a.jpg", "b.JPG"]


def test_custom_extensions(tmp_path):
    touch(tmp_path / "a.jpg")
    touch(tmp_path / "b.PNG")
    w = make_watcher(tmp_path, RecordingDispatcher(), extensions=[".png", ".JPG"])
    assert w.run_once() == ["a.jpg", "b.PNG"]


def test_files_dispatched_once_across_scans(tmp_path):
    touch(tmp_path / "a.jpg")
    dispatcher = RecordingDispatcher()
    w = make_watcher(tmp_path, dispatcher)

    assert w.run_once() == ["a.jpg"]
    assert w.run_once() == []
    touch(tmp_path / "b.jpg")
    assert w.run_once() == ["b.jpg"]
    assert w.run_once() == []
    assert len(dispatcher.submitted) == 2
    assert w.scans == 4
    assert dispatcher.reaped == 4


def test_deleted_and_recreated_file_not_redispatched(tmp_path):
    path = touch(tmp_path / "a.jpg")
    dispatcher = RecordingDispatcher()
    w = make_watcher(tmp_path, dispatcher)
    w.run_once()
    path.unlink()
    w.run_once()
    touch(path)
    assert w.run_once() == []
    assert "a.jpg" in w.processed


def test_pre_claimed_names_are_skipped(tmp_path):
    touch(tmp_path / "a.jpg")
    processed = ProcessedSet()
    processed.try_claim("a.jpg")
    w = make_watcher(tmp_path, RecordingDispatcher(), processed=processed)
    assert w.run_once() == []


def test_full_dispatcher_leaves_files_unclaimed(tmp_path, caplog):
    for name in ("a.jpg", "b.jpg", "c.jpg"):
        touch(tmp_path / name)
    dispatcher = RecordingDispatcher(capacity=1)
    w = make_watcher(tmp_path, dispatcher)

    with caplog.at_level(logging.WARNING):
        assert w.run_once() == ["a.jpg"]
    assert "b.jpg" not in w.processed
    assert caplog.records

    dispatcher.capacity = 3
    assert w.run_once() == ["b.jpg", "c.jpg"]


def test_listing_error_skips_iteration(tmp_path, caplog):
    missing = tmp_path / "later"
    dispatcher = RecordingDispatcher()
    w = make_watcher(missing, dispatcher)

    with caplog.at_level(logging.ERROR):
        assert w.run_once() == []
    assert any("later" in r.getMessage() for r in caplog.records)

    missing.mkdir()
    touch(missing / "a.jpg")
    assert w.run_once() == ["a.jpg"]


def test_missing_reference_means_zero_scans(tmp_path, caplog, monkeypatch):
    touch(tmp_path / "a.jpg")
    factory_calls = []
    scans = []
    monkeypatch.setattr(dw.os, "scandir", lambda *a: scans.append(a) or iter(()))
    w = DirectoryWatcher(tmp_path, tmp_path / "no_reference.jpg", lambda ref: factory_calls.append(ref))

    with caplog.at_level(logging.ERROR):
        with pytest.raises(ReferenceImageUnavailable):
            w.run_forever(interval_ms=100, times=3)

    assert w.scans == 0
    assert scans == []
    assert factory_calls == []
    assert w.state == DirectoryWatcher.INITIALIZING
    assert caplog.records


def test_unreadable_reference_is_unavailable(tmp_path):
    bad = tmp_path / "ref.jpg"
    bad.write_bytes(b"garbage")
    w = DirectoryWatcher(tmp_path, bad, lambda ref: RecordingDispatcher())
    with pytest.raises(ReferenceImageUnavailable):
        w.initialize()


def test_run_once_requires_initialize(tmp_path):
    w = DirectoryWatcher(tmp_path, "ref.jpg", lambda ref: RecordingDispatcher())
    with pytest.raises(RuntimeError):
        w.run_once()


def test_run_forever_times(tmp_path, monkeypatch):
    sleeps = []
    monkeypatch.setattr(dw.time, "sleep", sleeps.append)
    touch(tmp_path / "a.jpg")
    dispatcher = RecordingDispatcher()
    w = DirectoryWatcher(tmp_path, "ref.jpg", lambda ref: dispatcher, reference_loader=fake_loader)

    w.run_forever(interval_ms=10, times=3)

    assert w.scans == 3
    assert w.state == DirectoryWatcher.SCANNING
    assert len(dispatcher.submitted) == 1
    # 间隔下限 100ms，最后一轮后不再 sleep
    assert sleeps == [0.1, 0.1]
    w.close()
    assert dispatcher.closed


def test_reference_passed_to_dispatcher_factory(tmp_path, reference_file):
    seen = []
    w = DirectoryWatcher(tmp_path, reference_file, lambda ref: seen.append(ref) or RecordingDispatcher())
    w.initialize()
    assert len(seen) == 1
    assert seen[0] is w.reference
    assert seen[0].shape == (200, 200, 3)


def test_thread_dispatcher_bounds_pending():
    release = threading.Event()
    dispatcher = ThreadDispatcher(lambda path: release.wait(5), max_workers=1, max_pending=2)
    try:
        dispatcher.submit("a.jpg")
        dispatcher.submit("b.jpg")
        assert dispatcher.pending_count == 2
        assert not dispatcher.has_capacity()
    finally:
        release.set()
        dispatcher.shutdown(wait=True)
    assert dispatcher.pending_count == 0
    assert dispatcher.has_capacity()


def test_thread_dispatcher_reports_stalled_tasks(caplog):
    release = threading.Event()
    started = threading.Event()

    def handler(path):
        started.set()
        release.wait(5)

    dispatcher = ThreadDispatcher(handler, max_workers=1, max_pending=4, task_timeout_seconds=0.01)
    try:
        dispatcher.submit("/tmp/slow.jpg")
        assert started.wait(5)
        time.sleep(0.05)
        with caplog.at_level(logging.WARNING):
            assert dispatcher.reap() == ["slow.jpg"]
        assert dispatcher.reap() == []
        assert dispatcher.pending_count == 1
    finally:
        release.set()
        dispatcher.shutdown(wait=True)


class FakeTask:
    def __init__(self):
        self.sent = []

    def delay(self, *args):
        self.sent.append(args)
        return args


def test_celery_dispatcher_sends_reference_and_threshold(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    task = FakeTask()
    dispatcher = CeleryDispatcher(task, reference_path="ref.jpg", threshold=0.9)
    assert dispatcher.has_capacity()
    dispatcher.submit("incoming/a.jpg")
    base = tmp_path.resolve()
    assert task.sent == [(str(base / "incoming" / "a.jpg"), str(base / "ref.jpg"), 0.9)]
    assert dispatcher.reap() == []


def test_celery_dispatcher_defaults_to_worker_settings():
    task = FakeTask()
    CeleryDispatcher(task).submit("/data/a.jpg")
    assert task.sent == [("/data/a.jpg", None, None)]


def test_close_logs_claimed_files(tmp_path, caplog):
    touch(tmp_path / "a.jpg")
    w = make_watcher(tmp_path, RecordingDispatcher())
    w.run_once()
    with caplog.at_level(logging.DEBUG, logger="watcher.directory_watcher"):
        w.close()
    assert any("a.jpg" in r.getMessage() for r in caplog.records)


def test_reference_over_pixel_limit_is_unavailable(tmp_path, monkeypatch, gradient):
    reference = save(gradient, tmp_path / "ref.png")
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
    w = DirectoryWatcher(tmp_path, reference, lambda ref: RecordingDispatcher())
    with pytest.raises(ReferenceImageUnavailable):
        w.initialize()


def test_end_to_end_with_threads(tmp_path, gradient):
    incoming = tmp_path / "incoming"
    incoming.mkdir()
    reference_path = save(gradient, tmp_path / "reference.png")
    save(gradient, incoming / "match.jpg", quality=95)
    save(make_noise(200, 200), incoming / "other.JPG", quality=95)
    touch(incoming / "broken.jpg")
    save(gradient, incoming / "ignored.png")

    engine = FakeEngine()
    emitted = []
    emitted_lock = threading.Lock()

    def emit(code):
        with emitted_lock:
            emitted.append(code)

    def factory(reference):
        pipeline = CandidatePipeline(reference, SimilarityScorer(), TextExtractor(engine), emit=emit)
        return ThreadDispatcher(pipeline.process, max_workers=3, max_pending=8)

    w = DirectoryWatcher(incoming, reference_path, factory)
    w.initialize()
    assert w.run_once() == ["broken.jpg", "match.jpg", "other.JPG"]
    w.close(wait=True)

    assert emitted == ["ABCDEFG12345"]
    assert engine.calls == [str(incoming / "match.jpg")]
