"""
消费者端：Celery Worker。

监控进程负责认领文件，这里只执行单个文件的比较与识别流程。
启动：python -m consumer.worker（默认使用 eventlet 池）。
"""

from __future__ import annotations

# 以脚本启动时在导入 celery 之前打补丁；作为模块导入（监控进程、测试）时不打补丁
if __name__ == "__main__":
    import eventlet

    eventlet.monkey_patch()

import logging
import sys
import threading
from typing import Dict, List, Optional, Tuple

from celery import Celery

from consumer.pipeline import CandidatePipeline, build_pipeline
from settings import settings

app = Celery(
    "refmatch_consumer",
    broker=settings.queue.broker_url,
    backend=settings.queue.result_backend,
)
app.conf.update(
    accept_content=["json"],
    task_serializer="json",
    result_serializer="json",
    task_time_limit=settings.queue.task_timeout_seconds,
)

logger = logging.getLogger(__name__)

# (参考图路径, 阈值) -> 流程
_pipelines: Dict[Tuple[str, float], CandidatePipeline] = {}
_pipeline_lock = threading.Lock()


def _get_pipeline(reference_path: Optional[str] = None, threshold: Optional[float] = None) -> CandidatePipeline:
    """懒加载处理流程，同一参考图与阈值只初始化一次"""
    reference_path = reference_path or settings.watch.reference_image
    threshold = settings.similarity.threshold if threshold is None else float(threshold)
    key = (str(reference_path), threshold)
    with _pipeline_lock:
        pipeline = _pipelines.get(key)
        if pipeline is None:
            logger.info(f"加载参考图: {reference_path}，阈值 {threshold}")
            pipeline = build_pipeline(settings, reference_path, threshold=threshold)
            _pipelines[key] = pipeline
    return pipeline


@app.task(name=settings.queue.default_routing_key)
def handle_candidate_task(
    image_path: str, reference_path: Optional[str] = None, threshold: Optional[float] = None
) -> Optional[str]:
    """处理一个候选图片，返回提取到的编码（没有则为 None）。参考图与阈值由监控进程传入。"""
    result = _get_pipeline(reference_path, threshold).process(image_path)
    return result.code


def _default_worker_args() -> List[str]:
    return [
        "worker",
        "-l",
        "info",
        "-P",
        "eventlet",
        "-c",
        str(settings.queue.worker_concurrency),
    ]


if __name__ == "__main__":
    argv = sys.argv[1:] or _default_worker_args()
    app.worker_main(argv)
