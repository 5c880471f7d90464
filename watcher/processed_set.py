"""
已派发文件集合：按文件名记录，整个进程生命周期只增不减。
"""

from __future__ import annotations

import threading
from typing import FrozenSet, Set


class ProcessedSet:
    def __init__(self) -> None:
        self._names: Set[str] = set()
        self._lock = threading.Lock()

    def try_claim(self, filename: str) -> bool:
        """首次认领返回 True 并记录；已认领过返回 False。检查与写入在同一把锁内完成。"""
        with self._lock:
            if filename in self._names:
                return False
            self._names.add(filename)
            return True

    def __contains__(self, filename: object) -> bool:
        with self._lock:
            return filename in self._names

    def __len__(self) -> int:
        with self._lock:
            return len(self._names)

    def snapshot(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._names)
