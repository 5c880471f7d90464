"""
Watcher 侧核心组件：

- `DirectoryWatcher`：扫描目录并派发任务
- `ProcessedSet`：记录已派发的文件名
"""

from .processed_set import ProcessedSet
from .directory_watcher import DirectoryWatcher


__all__ = ["DirectoryWatcher", "ProcessedSet"]
