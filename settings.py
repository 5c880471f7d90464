"""
全局配置：从根目录的 settings.yaml 读取。

每个小节对应一个 dataclass，yaml 中缺省的字段使用 dataclass 默认值。
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml

CONFIG_PATH = Path(__file__).with_name("settings.yaml")


@dataclass
class WatchSettings:
    directory: str = "./img"
    reference_image: str = "img.jpg"
    poll_interval_ms: int = 1000
    extensions: List[str] = field(default_factory=lambda: [".jpg"])


@dataclass
class SimilaritySettings:
    threshold: float = 0.8
    canvas_size: Tuple[int, int] = (300, 300)
    max_value: float = 255.0
    window_size: int = 11
    sigma: float = 1.5

    def __post_init__(self) -> None:
        self.canvas_size = tuple(int(v) for v in self.canvas_size)


@dataclass
class OCRSettings:
    engine: str = "paddle"
    lang: str = "eng"
    timeout_seconds: float = 30.0
    code_length: int = 12
    code_line_index: int = 1


@dataclass
class QueueSettings:
    max_workers: int = 4
    max_pending: int = 32
    task_timeout_seconds: float = 60.0
    broker_url: str = "redis://localhost:6379/0"
    result_backend: str = "redis://localhost:6379/1"
    default_routing_key: str = "refmatch.handle_candidate"
    worker_concurrency: int = 4


@dataclass
class LoggingSettings:
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass
class Settings:
    watch: WatchSettings
    similarity: SimilaritySettings
    ocr: OCRSettings
    queue: QueueSettings
    logging: LoggingSettings


def _merge(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    data = defaults.copy()
    data.update(overrides or {})
    return data


def _section(cls, raw: Dict[str, Any], name: str):
    return cls(**_merge(asdict(cls()), raw.get(name) or {}))


def load_settings(path: Path = CONFIG_PATH) -> Settings:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"配置文件 {path} 不存在")
    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return Settings(
        watch=_section(WatchSettings, raw, "watch"),
        similarity=_section(SimilaritySettings, raw, "similarity"),
        ocr=_section(OCRSettings, raw, "ocr"),
        queue=_section(QueueSettings, raw, "queue"),
        logging=_section(LoggingSettings, raw, "logging"),
    )


settings = load_settings()
