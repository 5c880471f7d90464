"""
单个候选文件的处理流程：读取 -> 与参考图比较 SSIM -> 超过阈值才做 OCR -> 输出编码。

每个文件的错误都在这里记录并吞下，不会影响扫描循环和其它文件。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

import click
import numpy as np

from image_ops import ImageDecodeFailed, ImageNotFound, load_image
from consumer.ocr import OCRFailed, TextExtractor
from consumer.similarity import SimilarityScorer

logger = logging.getLogger(__name__)


@dataclass
class CandidateResult:
    filename: str
    status: str
    score: Optional[float] = None
    code: Optional[str] = None


# status 取值
MATCHED = "matched"
NO_CODE = "no_code"
BELOW_THRESHOLD = "below_threshold"
NOT_FOUND = "not_found"
DECODE_FAILED = "decode_failed"
OCR_FAILED = "ocr_failed"
ERROR = "error"


def load_reference(path: Union[str, Path]) -> np.ndarray:
    """参考图只在启动时读取一次，返回只读数组。"""
    reference = load_image(path)
    reference.setflags(write=False)
    return reference


class CandidatePipeline:
    def __init__(
        self,
        reference: np.ndarray,
        scorer: SimilarityScorer,
        extractor: TextExtractor,
        threshold: float = 0.8,
        emit: Callable[[str], None] = click.echo,
    ) -> None:
        self.reference = reference
        self.scorer = scorer
        self.extractor = extractor
        self.threshold = threshold
        self.emit = emit

    def run(self, image_path: Union[str, Path]) -> CandidateResult:
        """执行完整流程，读取或 OCR 失败时抛出对应异常。"""
        path = Path(image_path)
        candidate = load_image(path)
        score = self.scorer.score(candidate, self.reference)
        if score <= self.threshold:
            logger.info(f"{path.name} 相似度 {score:.4f} 未超过阈值 {self.threshold}")
            return CandidateResult(path.name, BELOW_THRESHOLD, score=score)

        code = self.extractor.extract(path)
        if code is None:
            return CandidateResult(path.name, NO_CODE, score=score)
        self.emit(code)
        logger.info(f"{path.name} 相似度 {score:.4f}，提取编码 {code}")
        return CandidateResult(path.name, MATCHED, score=score, code=code)

    def process(self, image_path: Union[str, Path]) -> CandidateResult:
        """任务入口：所有单文件错误在此记录，不再向外抛出。"""
        name = Path(image_path).name
        try:
            return self.run(image_path)
        except ImageNotFound as exc:
            logger.warning(f"图片不存在，跳过: {exc}")
            return CandidateResult(name, NOT_FOUND)
        except ImageDecodeFailed as exc:
            logger.warning(f"图片无法解码，跳过: {exc}")
            return CandidateResult(name, DECODE_FAILED)
        except OCRFailed as exc:
            logger.error(f"文字识别失败: {exc}")
            return CandidateResult(name, OCR_FAILED)
        except Exception:
            logger.exception(f"处理 {name} 时出现未预期的错误")
            return CandidateResult(name, ERROR)


def build_pipeline(app_settings, reference_path: Union[str, Path, None] = None, **overrides) -> CandidatePipeline:
    """根据配置构建流程；参考图读取失败时抛出 image_ops 中的异常。"""
    reference = load_reference(reference_path or app_settings.watch.reference_image)
    kwargs = dict(
        scorer=SimilarityScorer.from_settings(app_settings.similarity),
        extractor=TextExtractor.from_settings(app_settings.ocr),
        threshold=app_settings.similarity.threshold,
    )
    kwargs.update(overrides)
    return CandidatePipeline(reference, **kwargs)
