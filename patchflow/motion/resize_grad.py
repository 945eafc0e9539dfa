"""
Resize + gradient preprocessing for multi-scale patch search.

resize_grad mirrors an NPP pipeline: bilinear resize of a float32 RGB image
followed by 3x3 Sobel derivatives with replicated borders.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, List, Mapping, Tuple

import cv2
import numpy as np

from patchflow.utils.logger import logger


@dataclass(frozen=True)
class PyramidLevel:
    image: np.ndarray   # (h, w, 3) float32
    grad_x: np.ndarray  # d/dx, same shape as image
    grad_y: np.ndarray  # d/dy, same shape as image
    scale: float


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


def resize_grad(src: np.ndarray,
                scale_x: float,
                scale_y: float) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Resize ``src`` and return ``(resized, grad_x, grad_y)``."""
    if (not isinstance(src, np.ndarray) or src.dtype != np.float32
            or src.ndim != 3 or src.shape[2] != 3):
        raise ValueError("resize_grad: invalid input matrix type")
    if scale_x <= 0 or scale_y <= 0:
        raise ValueError(
            f"resize_grad: scales must be positive, got {scale_x}, {scale_y}")

    height, width = src.shape[:2]
    logger.debug("resize_grad: processing %dx%d image", width, height)
    dst_w = max(1, int(round(width * scale_x)))
    dst_h = max(1, int(round(height * scale_y)))

    compute_time = 0.0
    start = time.perf_counter()
    if (dst_w, dst_h) == (width, height):
        dst = src.copy()
    else:
        dst = cv2.resize(src, (dst_w, dst_h), interpolation=cv2.INTER_LINEAR)
    resize_ms = _elapsed_ms(start)
    compute_time += resize_ms
    logger.debug("resize_grad: resize %.3f ms", resize_ms)

    start = time.perf_counter()
    dst_x = cv2.Sobel(dst, cv2.CV_32F, 1, 0, ksize=3,
                      borderType=cv2.BORDER_REPLICATE)
    dx_ms = _elapsed_ms(start)
    compute_time += dx_ms
    logger.debug("resize_grad: dx %.3f ms", dx_ms)

    start = time.perf_counter()
    dst_y = cv2.Sobel(dst, cv2.CV_32F, 0, 1, ksize=3,
                      borderType=cv2.BORDER_REPLICATE)
    dy_ms = _elapsed_ms(start)
    compute_time += dy_ms
    logger.debug("resize_grad: dy %.3f ms", dy_ms)

    logger.info("resize_grad: %dx%d -> %dx%d in %.3f ms",
                width, height, dst_w, dst_h, compute_time)
    return dst, dst_x, dst_y


def build_pyramid(src: np.ndarray,
                  levels: int,
                  scale: float = 0.5) -> List[PyramidLevel]:
    """Per-level image and gradients, finest level (scale 1.0) first."""
    if levels < 1:
        raise ValueError(f"levels must be >= 1, got {levels}")
    if not 0.0 < scale <= 1.0:
        raise ValueError(f"scale must be in (0, 1], got {scale}")

    pyramid: List[PyramidLevel] = []
    for lvl in range(levels):
        s = scale ** lvl
        image, grad_x, grad_y = resize_grad(src, s, s)
        pyramid.append(PyramidLevel(image, grad_x, grad_y, s))
    return pyramid


def build_pyramid_from_config(src: np.ndarray,
                              config: Mapping[str, Any]) -> List[PyramidLevel]:
    """build_pyramid driven by the ``pyramid`` section of a loaded config."""
    section = config["pyramid"]
    return build_pyramid(src, levels=int(section["levels"]),
                         scale=float(section["scale"]))
