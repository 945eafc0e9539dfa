"""
Per-pixel flow/weight accumulator for patch densification.

Lifecycle: created zeroed in the ``accumulating`` state, written only through
``atomic_add``; ``barrier()`` waits for every queued write and moves to
``sealed``; ``normalize()`` reads a sealed accumulator; ``release()`` drops
the buffers. ``reset()`` zeroes and reopens it for another pass.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
import torch

from patchflow.motion.errors import (
    AccumulatorAllocationError,
    AccumulatorStateError,
    PreconditionError,
)
from patchflow.motion.params import ImageParams
from patchflow.utils.devices import get_device, synchronize
from patchflow.utils.logger import logger

ACCUMULATING = "accumulating"
SEALED = "sealed"
RELEASED = "released"


def _acc_dtype_for_device(device: torch.device) -> torch.dtype:
    """
    Prefer float64 accumulators but fall back to float32 on devices that do
    not support float64, e.g., MPS.
    """
    return torch.float32 if device.type == "mps" else torch.float64


@dataclass(frozen=True)
class DenseFlowField:
    flow: np.ndarray     # (H, W, 2) float32
    weights: np.ndarray  # (H, W) float32, accumulated confidence

    @property
    def coverage(self) -> np.ndarray:
        """Pixels covered by at least one valid patch."""
        return self.weights > 0

    @property
    def coverage_ratio(self) -> float:
        if self.weights.size == 0:
            return 0.0
        return float(self.coverage.mean())


def normalize_flow(flow_acc: torch.Tensor,
                   weights: torch.Tensor,
                   out: Optional[torch.Tensor] = None) -> torch.Tensor:
    """Divide accumulated flow by accumulated weight, pixel by pixel.

    Pixels with zero weight get flow (0, 0). The accumulator tensors are not
    modified, so normalization can be replayed.
    """
    if flow_acc.ndim != 3 or flow_acc.shape[-1] != 2:
        raise PreconditionError(
            f"flow accumulator must be (H, W, 2), got {tuple(flow_acc.shape)}")
    if tuple(weights.shape) != tuple(flow_acc.shape[:2]):
        raise PreconditionError(
            f"weight buffer {tuple(weights.shape)} does not match flow "
            f"buffer {tuple(flow_acc.shape[:2])}")
    if out is not None and tuple(out.shape) != tuple(flow_acc.shape):
        raise PreconditionError(
            f"output buffer {tuple(out.shape)} does not match "
            f"{tuple(flow_acc.shape)}")

    covered = weights > 0
    denom = torch.where(covered, weights, torch.ones_like(weights))
    dense = flow_acc / denom.unsqueeze(-1)
    dense = torch.where(covered.unsqueeze(-1), dense, torch.zeros_like(dense))
    if out is None:
        return dense
    out.copy_(dense)
    return out


class FlowAccumulator:
    def __init__(self,
                 image: ImageParams,
                 device: Optional[Union[str, torch.device]] = None,
                 dtype: Optional[torch.dtype] = None):
        self.image = image
        self.device = torch.device(device if device is not None else get_device())
        self.dtype = dtype or _acc_dtype_for_device(self.device)
        try:
            self.flow = torch.zeros(
                (image.height, image.width, 2), device=self.device, dtype=self.dtype)
            self.weights = torch.zeros(
                (image.height, image.width), device=self.device, dtype=self.dtype)
        except (RuntimeError, MemoryError) as exc:
            self.flow = None
            self.weights = None
            self.state = RELEASED
            raise AccumulatorAllocationError(
                f"cannot allocate {image.width}x{image.height} accumulator "
                f"on {self.device}: {exc}") from exc
        self.state = ACCUMULATING
        logger.debug("Allocated %dx%d %s accumulator on %s",
                     image.width, image.height, self.dtype, self.device)

    def __repr__(self) -> str:
        return (f"FlowAccumulator({self.image.width}x{self.image.height}, "
                f"device={self.device}, state={self.state})")

    def _require(self, state: str, action: str) -> None:
        if self.state != state:
            raise AccumulatorStateError(
                f"cannot {action}: accumulator is {self.state}, "
                f"expected {state}")

    def atomic_add(self,
                   index: torch.Tensor,
                   flow_values: torch.Tensor,
                   weight_values: torch.Tensor) -> None:
        """Add contributions at flat pixel indices ``y * width + x``.

        ``index_add_`` lowers to atomic adds on accelerators, so overlapping
        indices within one call and across calls are summed without races.
        """
        self._require(ACCUMULATING, "scatter")
        self.flow.view(-1, 2).index_add_(0, index, flow_values.to(self.dtype))
        self.weights.view(-1).index_add_(0, index, weight_values.to(self.dtype))

    def barrier(self) -> None:
        """Wait until all scatter writes are visible, then seal."""
        self._require(ACCUMULATING, "seal")
        synchronize(self.device)
        self.state = SEALED

    def normalize(self) -> DenseFlowField:
        self._require(SEALED, "normalize")
        with torch.no_grad():
            dense = normalize_flow(self.flow, self.weights)
        return DenseFlowField(
            flow=dense.to(torch.float32).cpu().numpy(),
            weights=self.weights.to(torch.float32).cpu().numpy(),
        )

    def reset(self) -> None:
        if self.state == RELEASED:
            raise AccumulatorStateError("cannot reset a released accumulator")
        self.flow.zero_()
        self.weights.zero_()
        self.state = ACCUMULATING

    def release(self) -> None:
        self.flow = None
        self.weights = None
        self.state = RELEASED
