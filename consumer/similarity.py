"""
结构相似度 (SSIM) 计算。

两张图先缩放到同一画布，再转灰度，按高斯窗口计算局部均值、方差与协方差，
亮度、对比度、结构三项相乘得到 SSIM 图，取均值作为最终得分。
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Tuple, Union

import cv2
import numpy as np

from image_ops import load_image, resize_to_canvas, to_gray

logger = logging.getLogger(__name__)


def _prepare(image: np.ndarray, canvas_size: Tuple[int, int]) -> np.ndarray:
    resized = resize_to_canvas(image, canvas_size)
    return to_gray(resized).astype(np.float64)


def ssim(
    img_a: np.ndarray,
    img_b: np.ndarray,
    *,
    canvas_size: Tuple[int, int] = (300, 300),
    max_value: float = 255.0,
    window_size: int = 11,
    sigma: float = 1.5,
) -> float:
    a = _prepare(img_a, canvas_size)
    b = _prepare(img_b, canvas_size)

    c1 = (0.01 * max_value) ** 2
    c2 = (0.03 * max_value) ** 2
    window = (window_size, window_size)

    def blur(x: np.ndarray) -> np.ndarray:
        return cv2.GaussianBlur(x, window, sigma, borderType=cv2.BORDER_REFLECT)

    mu_a = blur(a)
    mu_b = blur(b)
    mu_a_sq = mu_a * mu_a
    mu_b_sq = mu_b * mu_b
    mu_ab = mu_a * mu_b

    var_a = blur(a * a) - mu_a_sq
    var_b = blur(b * b) - mu_b_sq
    cov_ab = blur(a * b) - mu_ab

    numerator = (2 * mu_ab + c1) * (2 * cov_ab + c2)
    denominator = (mu_a_sq + mu_b_sq + c1) * (var_a + var_b + c2)
    ssim_map = numerator / denominator
    return float(ssim_map.mean())


class SimilarityScorer:
    def __init__(
        self,
        canvas_size: Tuple[int, int] = (300, 300),
        max_value: float = 255.0,
        window_size: int = 11,
        sigma: float = 1.5,
    ) -> None:
        if window_size < 1 or window_size % 2 == 0:
            raise ValueError("window_size must be a positive odd number")
        self.canvas_size = tuple(canvas_size)
        self.max_value = float(max_value)
        self.window_size = int(window_size)
        self.sigma = float(sigma)

    @classmethod
    def from_settings(cls, similarity_settings) -> "SimilarityScorer":
        return cls(
            canvas_size=similarity_settings.canvas_size,
            max_value=similarity_settings.max_value,
            window_size=similarity_settings.window_size,
            sigma=similarity_settings.sigma,
        )

    def score(self, img_a: np.ndarray, img_b: np.ndarray) -> float:
        return ssim(
            img_a,
            img_b,
            canvas_size=self.canvas_size,
            max_value=self.max_value,
            window_size=self.window_size,
            sigma=self.sigma,
        )

    def compare_files(self, path_a: Union[str, Path], path_b: Union[str, Path]) -> float:
        """读取两张图片并计算 SSIM，读取失败时抛出 image_ops 中的异常。"""
        score = self.score(load_image(path_a), load_image(path_b))
        logger.debug(f"SSIM {Path(path_a).name} vs {Path(path_b).name}: {score:.4f}")
        return score
