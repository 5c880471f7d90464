"""
文字识别：调用外部 OCR 引擎读取图片路径，再按规则挑出目标编码。

引擎只接收文件路径，返回多行纯文本。
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import List, Optional, Sequence, Union

import pytesseract

logger = logging.getLogger(__name__)

ImagePath = Union[str, Path]


class OCRFailed(RuntimeError):
    """OCR 引擎调用失败。"""


def _collect_text(ocr_result: Sequence) -> str:
    """从 PaddleOCR 结果中提取文本，每个识别行占一行。"""
    if not ocr_result:
        return ""
    entry = ocr_result[0]
    if isinstance(entry, dict) or hasattr(entry, "get"):
        texts = entry.get("rec_texts") or []
        return "\n".join(str(t) for t in texts)

    text_segments: List[str] = []
    for block in entry or []:
        if not block or not isinstance(block, (list, tuple)) or len(block) < 2:
            continue
        info = block[1]
        if not info or not isinstance(info, (list, tuple)):
            continue
        text_segments.append(str(info[0]))
    return "\n".join(text_segments)


class OCREngine:
    """OCR 引擎接口。"""

    name = "base"

    def recognize(self, image_path: ImagePath) -> str:  # pragma: no cover - interface only
        raise NotImplementedError


class PaddleEngine(OCREngine):
    name = "paddle"

    def __init__(self, lang: str = "en") -> None:
        self.lang = lang
        self._ocr = None
        # 线程池共享同一个引擎：初始化与 predict 都在这把锁内
        self._lock = threading.Lock()

    def _get_ocr(self):
        """懒加载 OCR 实例，只在首次调用时初始化（调用方需持有 _lock）"""
        if self._ocr is None:
            from paddleocr import PaddleOCR

            logger.info("初始化 PaddleOCR 引擎...")
            self._ocr = PaddleOCR(
                lang=self.lang,
                use_doc_orientation_classify=False,
                use_doc_unwarping=False,
                use_textline_orientation=False,
            )
        return self._ocr

    def recognize(self, image_path: ImagePath) -> str:
        with self._lock:
            ocr_res = self._get_ocr().predict(str(image_path))
        return _collect_text(ocr_res)


class TesseractEngine(OCREngine):
    name = "tesseract"

    def __init__(self, lang: str = "eng", timeout_seconds: float = 0) -> None:
        self.lang = lang
        self.timeout_seconds = timeout_seconds

    def recognize(self, image_path: ImagePath) -> str:
        return pytesseract.image_to_string(
            str(image_path), lang=self.lang, timeout=self.timeout_seconds or 0
        )


# tesseract 与 paddle 的语言代码不同
_PADDLE_LANGS = {"eng": "en", "chi_sim": "ch"}


def build_engine(name: str, lang: str = "eng", timeout_seconds: float = 0) -> OCREngine:
    key = (name or "").lower()
    if key == "paddle":
        return PaddleEngine(lang=_PADDLE_LANGS.get(lang, lang))
    if key == "tesseract":
        return TesseractEngine(lang=lang, timeout_seconds=timeout_seconds)
    raise ValueError(f"Unsupported OCR engine: {name}")


def extract_code(text: Optional[str], *, length: int = 12, line_index: int = 1) -> Optional[str]:
    """取第 line_index 行（默认第二行），长度恰好为 length 时返回，否则返回 None。"""
    if not text:
        return None
    # 只按 "\n" 分行，行尾的 "\r" 去掉
    lines = text.split("\n")
    if len(lines) <= line_index:
        return None
    candidate = lines[line_index]
    if candidate.endswith("\r"):
        candidate = candidate[:-1]
    if len(candidate) != length:
        return None
    return candidate


class TextExtractor:
    def __init__(self, engine: OCREngine, code_length: int = 12, line_index: int = 1) -> None:
        self.engine = engine
        self.code_length = code_length
        self.line_index = line_index

    @classmethod
    def from_settings(cls, ocr_settings) -> "TextExtractor":
        engine = build_engine(
            ocr_settings.engine,
            lang=ocr_settings.lang,
            timeout_seconds=ocr_settings.timeout_seconds,
        )
        return cls(engine, code_length=ocr_settings.code_length, line_index=ocr_settings.code_line_index)

    def recognize(self, image_path: ImagePath) -> str:
        try:
            return self.engine.recognize(image_path) or ""
        except Exception as exc:
            raise OCRFailed(f"{self.engine.name} OCR failed for {image_path}: {exc}") from exc

    def extract(self, image_path: ImagePath) -> Optional[str]:
        text = self.recognize(image_path)
        code = extract_code(text, length=self.code_length, line_index=self.line_index)
        if code is None:
            logger.debug(f"未找到编码: {Path(image_path).name}")
        return code
