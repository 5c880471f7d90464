"""
目录监控：按固定间隔扫描目录，发现新的 jpg 文件后认领并派发处理任务。

派发方式：
- ThreadDispatcher：本进程内的有界线程池（默认）
- CeleryDispatcher：发送到 Celery worker
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

import numpy as np

from consumer.pipeline import load_reference
from image_ops import ImageDecodeFailed, ImageNotFound
from watcher.processed_set import ProcessedSet

logger = logging.getLogger(__name__)


class ReferenceImageUnavailable(RuntimeError):
    """参考图不存在或无法读取，监控不会启动。"""


class DirectoryListError(OSError):
    """读取目录列表失败，本轮扫描跳过。"""


class _TaskRecord:
    def __init__(self, name: str) -> None:
        self.name = name
        self.started_at: Optional[float] = None
        self.warned = False


class ThreadDispatcher:
    def __init__(
        self,
        handler: Callable[[str], object],
        max_workers: int = 4,
        max_pending: int = 32,
        task_timeout_seconds: float = 60.0,
    ) -> None:
        self.handler = handler
        self.max_pending = max(int(max_pending), 1)
        self.task_timeout_seconds = task_timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max(int(max_workers), 1), thread_name_prefix="refmatch")
        self._pending: Dict[Future, _TaskRecord] = {}
        self._lock = threading.Lock()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def has_capacity(self) -> bool:
        return self.pending_count < self.max_pending

    def submit(self, image_path: str) -> Future:
        record = _TaskRecord(Path(image_path).name)
        future = self._executor.submit(self._run, record, image_path)
        with self._lock:
            self._pending[future] = record
        future.add_done_callback(self._discard)
        return future

    def _run(self, record: _TaskRecord, image_path: str):
        record.started_at = time.monotonic()
        return self.handler(image_path)

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.pop(future, None)

    def reap(self) -> List[str]:
        """返回运行超时的任务名；线程无法强制结束，超时任务会一直占用名额直到完成。"""
        if not self.task_timeout_seconds:
            return []
        now = time.monotonic()
        stalled = []
        with self._lock:
            records = list(self._pending.values())
        for record in records:
            if record.started_at is None or record.warned:
                continue
            if now - record.started_at > self.task_timeout_seconds:
                record.warned = True
                stalled.append(record.name)
                logger.warning(f"任务 {record.name} 已运行超过 {self.task_timeout_seconds} 秒")
        return stalled

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=not wait)


class CeleryDispatcher:
    """参考图路径与阈值随任务一起发送，worker 按此构建流程。"""

    def __init__(self, celery_task, reference_path: Union[str, Path, None] = None, threshold: Optional[float] = None) -> None:
        self.celery_task = celery_task
        # worker 的工作目录可能不同，发送绝对路径
        self.reference_path = str(Path(reference_path).resolve()) if reference_path else None
        self.threshold = threshold

    def has_capacity(self) -> bool:
        return True

    def submit(self, image_path: str):
        result = self.celery_task.delay(str(Path(image_path).resolve()), self.reference_path, self.threshold)
        logger.info(f"已提交任务: {Path(image_path).name}")
        return result

    def reap(self) -> List[str]:
        return []

    def shutdown(self, wait: bool = True) -> None:
        return None


DispatcherFactory = Callable[[np.ndarray], Union[ThreadDispatcher, CeleryDispatcher]]


class DirectoryWatcher:
    INITIALIZING = "initializing"
    SCANNING = "scanning"

    def __init__(
        self,
        directory: Union[str, Path],
        reference_image: Union[str, Path],
        dispatcher_factory: DispatcherFactory,
        extensions: Sequence[str] = (".jpg",),
        processed: Optional[ProcessedSet] = None,
        reference_loader: Callable[[Union[str, Path]], np.ndarray] = load_reference,
    ) -> None:
        self.directory = Path(directory)
        self.reference_image = Path(reference_image)
        self.dispatcher_factory = dispatcher_factory
        self.extensions = tuple(ext.lower() for ext in extensions)
        self.processed = processed if processed is not None else ProcessedSet()
        self.reference_loader = reference_loader
        self.state = self.INITIALIZING
        self.reference: Optional[np.ndarray] = None
        self.dispatcher = None
        self.scans = 0

    def initialize(self) -> None:
        try:
            self.reference = self.reference_loader(self.reference_image)
        except (ImageNotFound, ImageDecodeFailed) as exc:
            raise ReferenceImageUnavailable(f"Reference image not available: {exc}") from exc
        self.dispatcher = self.dispatcher_factory(self.reference)
        self.state = self.SCANNING
        logger.info(f"参考图已加载: {self.reference_image}，开始监控 {self.directory}")

    def is_candidate(self, entry: os.DirEntry) -> bool:
        try:
            if entry.is_dir():
                return False
        except OSError:
            return False
        return entry.name.lower().endswith(self.extensions)

    def candidates(self, entries: Iterable[os.DirEntry]) -> List[os.DirEntry]:
        found = [e for e in entries if self.is_candidate(e) and e.name not in self.processed]
        return sorted(found, key=lambda e: e.name)

    def _list_entries(self) -> List[os.DirEntry]:
        try:
            with os.scandir(self.directory) as it:
                return list(it)
        except OSError as exc:
            raise DirectoryListError(f"Error reading directory {self.directory}: {exc}") from exc

    def run_once(self) -> List[str]:
        """执行一轮扫描，返回本轮派发的文件名。"""
        if self.state != self.SCANNING:
            raise RuntimeError("watcher is not initialized")
        self.scans += 1
        self.dispatcher.reap()
        try:
            entries = self._list_entries()
        except DirectoryListError as exc:
            logger.error(str(exc))
            return []

        dispatched: List[str] = []
        for entry in self.candidates(entries):
            if not self.dispatcher.has_capacity():
                logger.warning("待处理任务已满，剩余文件留到下一轮扫描")
                break
            if not self.processed.try_claim(entry.name):
                continue
            self.dispatcher.submit(entry.path)
            dispatched.append(entry.name)
        if dispatched:
            logger.debug(f"本轮派发 {len(dispatched)} 个文件")
        return dispatched

    def run_forever(self, interval_ms: int = 1000, times: int = 0) -> None:
        """times 为 0 时一直运行，否则执行指定轮数后返回。"""
        try:
            self.initialize()
        except ReferenceImageUnavailable as exc:
            logger.error(str(exc))
            raise

        interval = max(interval_ms, 100) / 1000.0
        count = 0
        while True:
            self.run_once()
            count += 1
            if times and count >= times:
                return
            time.sleep(interval)

    def close(self, wait: bool = True) -> None:
        if self.dispatcher is not None:
            self.dispatcher.shutdown(wait=wait)
        claimed = self.processed.snapshot()
        logger.info(f"监控结束，共认领 {len(claimed)} 个文件")
        logger.debug(f"已认领文件: {sorted(claimed)}")
