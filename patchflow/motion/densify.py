"""
Patch-to-pixel flow densification.

Each valid patch votes its flow vector over its footprint with a per-pixel
confidence derived from its cost-difference map:
  additive: w = 1 / (cost + min_err_val)
  floor:    w = 1 / max(cost, min_err_val)
Votes are summed into a FlowAccumulator and divided out by the summed
confidence once every patch has been scattered.

- densify_patch: scatter one patch into an open accumulator.
- densify_patches: validate, allocate, scatter every patch, barrier.
- densify_flow: densify_patches + normalization, returns a DenseFlowField.
"""

from __future__ import annotations

import threading
import time
from typing import Optional, Union

import torch

from patchflow.motion.accumulator import (
    DenseFlowField,
    FlowAccumulator,
    normalize_flow,
)
from patchflow.motion.errors import DensifyCancelled
from patchflow.motion.params import ImageParams, OptParams
from patchflow.motion.patch import (
    PatchBatch,
    PatchEstimate,
    PatchInput,
    as_patch_batch,
)
from patchflow.utils.logger import logger

__all__ = [
    "confidence_weights",
    "densify_flow",
    "densify_patch",
    "densify_patches",
    "footprint_offsets",
    "normalize_flow",
]


def confidence_weights(cost: torch.Tensor, opt: OptParams) -> torch.Tensor:
    """Per-pixel vote weight; finite for cost >= 0 since min_err_val > 0."""
    if opt.weighting == "floor":
        return 1.0 / torch.clamp(cost, min=opt.min_err_val)
    return 1.0 / (cost + opt.min_err_val)


def footprint_offsets(patch_size: int,
                      device: torch.device) -> tuple[torch.Tensor, torch.Tensor]:
    """Row-major (dy, dx) offsets of a footprint relative to its midpoint.

    Offsets span [-P//2, P - P//2), i.e. [-P/2, P/2) for even P.
    """
    r = torch.arange(patch_size, device=device, dtype=torch.int64) - patch_size // 2
    dy, dx = torch.meshgrid(r, r, indexing="ij")
    return dy.reshape(-1), dx.reshape(-1)


def _scatter_chunk(acc: FlowAccumulator,
                   midpoints: torch.Tensor,
                   flows: torch.Tensor,
                   costs: torch.Tensor,
                   opt: OptParams) -> None:
    """Scatter n already-validated patches in one data-parallel launch.

    midpoints: (n, 2) int64 (x, y); flows: (n, 2); costs: (n, P*P).
    """
    width, height = acc.image.width, acc.image.height
    dy, dx = footprint_offsets(opt.patch_size, acc.device)
    xs = midpoints[:, 0:1] + dx.unsqueeze(0)  # (n, P*P)
    ys = midpoints[:, 1:2] + dy.unsqueeze(0)
    inside = (xs >= 0) & (xs < width) & (ys >= 0) & (ys < height)

    w = confidence_weights(costs, opt)
    index = (ys * width + xs)[inside]
    weight_values = w[inside]
    flow_values = (w.unsqueeze(-1) * flows.unsqueeze(1))[inside]  # (m, 2)
    acc.atomic_add(index, flow_values, weight_values)


def _batch_tensors(batch: PatchBatch, acc: FlowAccumulator):
    mids = torch.from_numpy(batch.midpoints).floor().to(torch.int64)
    flows = torch.from_numpy(batch.flows)
    n, p_rows, p_cols = batch.costs.shape
    costs = torch.from_numpy(batch.costs).reshape(n, p_rows * p_cols)
    return (
        mids.to(acc.device),
        flows.to(device=acc.device, dtype=acc.dtype),
        costs.to(device=acc.device, dtype=acc.dtype),
    )


def densify_patch(acc: FlowAccumulator,
                  patch: PatchEstimate,
                  opt: OptParams) -> bool:
    """Add one patch's vote to ``acc``.

    Returns False when the patch is invalid and was skipped. Raises
    PreconditionError before any write if the patch is malformed.
    """
    if not patch.valid:
        return False
    batch = PatchBatch.from_estimates([patch])
    batch.validate(acc.image, opt)
    with torch.no_grad():
        _scatter_chunk(acc, *_batch_tensors(batch, acc), opt)
    return True


def densify_patches(patches: PatchInput,
                    image: ImageParams,
                    opt: OptParams,
                    device: Optional[Union[str, torch.device]] = None,
                    cancel_event: Optional[threading.Event] = None,
                    ) -> FlowAccumulator:
    """Accumulate every valid patch into a fresh, sealed accumulator.

    All patches are validated before the accumulator exists. On any failure,
    cancellation included, the accumulator is released and the error
    propagates, so no partial accumulation is ever returned.
    """
    batch = as_patch_batch(patches)
    batch.validate(image, opt)
    valid = batch.only_valid()
    n_valid = len(valid)
    logger.debug("Densifying %d/%d valid patches on a %dx%d image",
                  n_valid, len(batch), image.width, image.height)

    acc = FlowAccumulator(image, device=device)
    prev_threads: Optional[int] = None
    if acc.device.type == "cpu" and opt.cpu_num_threads:
        prev_threads = int(torch.get_num_threads())
        torch.set_num_threads(int(opt.cpu_num_threads))

    start = time.perf_counter()
    try:
        with torch.no_grad():
            mids, flows, costs = _batch_tensors(valid, acc)
            for begin in range(0, n_valid, opt.chunk_size):
                if cancel_event is not None and cancel_event.is_set():
                    raise DensifyCancelled(
                        f"cancelled after {begin}/{n_valid} patches")
                end = begin + opt.chunk_size
                _scatter_chunk(acc, mids[begin:end], flows[begin:end],
                               costs[begin:end], opt)
        if cancel_event is not None and cancel_event.is_set():
            raise DensifyCancelled(f"cancelled after {n_valid} patches")
        acc.barrier()
    except BaseException:
        acc.release()
        raise
    finally:
        if prev_threads is not None:
            torch.set_num_threads(prev_threads)

    logger.debug("Scattered %d patches in %.2f ms", n_valid,
                 (time.perf_counter() - start) * 1000.0)
    return acc


def densify_flow(patches: PatchInput,
                 image: ImageParams,
                 opt: OptParams,
                 device: Optional[Union[str, torch.device]] = None,
                 cancel_event: Optional[threading.Event] = None,
                 ) -> DenseFlowField:
    """Run a full pass: accumulate, normalize, release."""
    start = time.perf_counter()
    acc = densify_patches(patches, image, opt, device=device,
                          cancel_event=cancel_event)
    try:
        field = acc.normalize()
    finally:
        acc.release()
    logger.info(
        "Densified %dx%d flow: %.1f%% coverage in %.2f ms",
        image.width, image.height, field.coverage_ratio * 100.0,
        (time.perf_counter() - start) * 1000.0)
    return field

