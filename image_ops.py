"""
图像通用操作：读取磁盘图片并整理成后续比较可用的数组。

提供：
- 从路径解码图片（区分文件不存在与无法解码）
- 灰度转换
- 缩放到固定画布
"""

from __future__ import annotations

from pathlib import Path
from typing import Tuple, Union

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

ImageSource = Union[str, Path]


class ImageNotFound(FileNotFoundError):
    """图片路径不存在。"""


class ImageDecodeFailed(ValueError):
    """文件存在但无法解码为图片（损坏、格式不支持、空文件）。"""


def load_image(source: ImageSource) -> np.ndarray:
    """读取图片，返回 RGB uint8 数组 (H, W, 3)。"""
    path = Path(source)
    if not path.exists():
        raise ImageNotFound(f"image not found: {path}")
    try:
        with Image.open(path) as img:
            img = ImageOps.exif_transpose(img)
            rgb = img.convert("RGB")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise ImageDecodeFailed(f"unable to read image: {path}") from exc
    return np.array(rgb)


def to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image
    if image.ndim == 3 and image.shape[2] == 1:
        return image[:, :, 0]
    if image.ndim == 3 and image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_RGBA2GRAY)
    if image.ndim == 3 and image.shape[2] == 3:
        return cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
    raise TypeError(f"Unsupported image shape: {image.shape}")


def resize_to_canvas(image: np.ndarray, size: Tuple[int, int] = (300, 300)) -> np.ndarray:
    # cv2 的尺寸顺序为 (width, height)
    width, height = size
    return cv2.resize(image, (int(width), int(height)), interpolation=cv2.INTER_LINEAR)
