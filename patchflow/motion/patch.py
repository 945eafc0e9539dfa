"""
Patch-level motion estimates as produced by an upstream matching stage.

PatchEstimate is the per-patch record; PatchBatch is the struct-of-arrays
form the scatter kernels consume (midpoints, flows, costs, valid), with
validation of every valid patch against the image and pass parameters.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import numpy as np

from patchflow.motion.errors import PreconditionError
from patchflow.motion.params import ImageParams, OptParams


@dataclass(frozen=True)
class PatchEstimate:
    midpoint: Tuple[float, float]  # (x, y)
    flow: Tuple[float, float]      # (flow_x, flow_y)
    cost_diff: np.ndarray          # (patch_size, patch_size), row = y offset
    valid: bool = True


@dataclass(frozen=True)
class PatchBatch:
    midpoints: np.ndarray  # (n, 2) float, columns x, y
    flows: np.ndarray      # (n, 2) float32
    costs: np.ndarray      # (n, P, P) float32
    valid: Optional[np.ndarray] = None  # (n,) bool, all valid when omitted

    def __post_init__(self) -> None:
        midpoints = np.asarray(self.midpoints, dtype=np.float64)
        flows = np.asarray(self.flows, dtype=np.float32)
        costs = np.asarray(self.costs, dtype=np.float32)
        n = midpoints.shape[0] if midpoints.ndim == 2 else -1
        if midpoints.ndim != 2 or midpoints.shape[1] != 2:
            raise PreconditionError(
                f"midpoints must have shape (n, 2), got {midpoints.shape}")
        if flows.shape != (n, 2):
            raise PreconditionError(
                f"flows must have shape ({n}, 2), got {flows.shape}")
        if costs.ndim != 3 or costs.shape[0] != n:
            raise PreconditionError(
                f"costs must have shape ({n}, P, P), got {costs.shape}")
        if self.valid is None:
            valid = np.ones((n,), dtype=bool)
        else:
            valid = np.asarray(self.valid, dtype=bool).reshape(-1)
        if valid.shape != (n,):
            raise PreconditionError(
                f"valid must have shape ({n},), got {valid.shape}")
        object.__setattr__(self, "midpoints", midpoints)
        object.__setattr__(self, "flows", flows)
        object.__setattr__(self, "costs", costs)
        object.__setattr__(self, "valid", valid)

    def __len__(self) -> int:
        return int(self.midpoints.shape[0])

    @property
    def num_valid(self) -> int:
        return int(self.valid.sum())

    @classmethod
    def from_estimates(cls, estimates: Sequence[PatchEstimate]) -> "PatchBatch":
        if len(estimates) == 0:
            return cls.empty()
        valid = np.array([bool(p.valid) for p in estimates], dtype=bool)
        live = [i for i in range(len(estimates)) if valid[i]]
        if not live:
            return cls(np.zeros((len(estimates), 2)),
                       np.zeros((len(estimates), 2)),
                       np.zeros((len(estimates), 1, 1)), valid)

        # invalid rows carry zero placeholders; their fields are never read
        cost_shape = np.shape(estimates[live[0]].cost_diff)
        for i in live:
            if np.shape(estimates[i].cost_diff) != cost_shape:
                raise PreconditionError(
                    "cost maps of a batch must share one shape, got "
                    f"{np.shape(estimates[i].cost_diff)} and {cost_shape}",
                    patch_index=i)
        if len(cost_shape) != 2:
            raise PreconditionError(
                f"cost map must be 2-D, got shape {cost_shape}",
                patch_index=live[0])

        n = len(estimates)
        midpoints = np.zeros((n, 2), dtype=np.float64)
        flows = np.zeros((n, 2), dtype=np.float32)
        costs = np.zeros((n,) + cost_shape, dtype=np.float32)
        for i in live:
            p = estimates[i]
            midpoints[i] = p.midpoint
            flows[i] = p.flow
            costs[i] = np.asarray(p.cost_diff, dtype=np.float32)
        return cls(midpoints, flows, costs, valid)

    @classmethod
    def empty(cls, patch_size: int = 1) -> "PatchBatch":
        return cls(
            midpoints=np.zeros((0, 2), dtype=np.float64),
            flows=np.zeros((0, 2), dtype=np.float32),
            costs=np.zeros((0, patch_size, patch_size), dtype=np.float32),
            valid=np.zeros((0,), dtype=bool),
        )

    def only_valid(self) -> "PatchBatch":
        keep = self.valid
        return PatchBatch(self.midpoints[keep], self.flows[keep],
                          self.costs[keep], self.valid[keep])

    def validate(self, image: ImageParams, opt: OptParams) -> None:
        """Check every valid patch; raise on the first violation.

        Invalid patches are skipped: their contents are never read.
        """
        idx = np.flatnonzero(self.valid)
        if idx.size == 0:
            return
        p = opt.patch_size
        if self.costs.shape[1:] != (p, p):
            raise PreconditionError(
                f"cost map shape {self.costs.shape[1:]} does not match "
                f"patch_size {p}", patch_index=int(idx[0]))

        mids = self.midpoints[idx]
        bad_mid = ~np.isfinite(mids).all(axis=1)
        finite_mids = np.where(np.isfinite(mids), mids, 0.0)
        bad_mid |= (finite_mids[:, 0] < 0) | (finite_mids[:, 0] >= image.width)
        bad_mid |= (finite_mids[:, 1] < 0) | (finite_mids[:, 1] >= image.height)
        _raise_first(bad_mid, idx, lambda i: (
            f"midpoint {tuple(self.midpoints[i])} outside image "
            f"{image.width}x{image.height}"))

        bad_flow = ~np.isfinite(self.flows[idx]).all(axis=1)
        _raise_first(bad_flow, idx, lambda i: (
            f"non-finite flow {tuple(self.flows[i])}"))

        costs = self.costs[idx].reshape(idx.size, -1)
        bad_cost = ~(np.isfinite(costs) & (costs >= 0)).all(axis=1)
        _raise_first(bad_cost, idx, lambda i: (
            "cost map must be finite and non-negative"))


PatchInput = Union[PatchBatch, Sequence[PatchEstimate]]


def as_patch_batch(patches: PatchInput) -> PatchBatch:
    if isinstance(patches, PatchBatch):
        return patches
    return PatchBatch.from_estimates(list(patches))


def _raise_first(mask: np.ndarray, idx: np.ndarray, describe) -> None:
    if mask.any():
        i = int(idx[int(np.argmax(mask))])
        raise PreconditionError(describe(i), patch_index=i)
