import threading

import numpy as np
import pytest
import torch

from patchflow.motion.accumulator import FlowAccumulator
from patchflow.motion.densify import (
    confidence_weights,
    densify_flow,
    densify_patch,
    densify_patches,
    footprint_offsets,
)
from patchflow.motion.errors import DensifyCancelled, PreconditionError
from patchflow.motion.params import ImageParams, OptParams
from patchflow.motion.patch import PatchBatch, PatchEstimate


def _patch(x, y, fx, fy, cost, patch_size=2, valid=True):
    cost_map = np.full((patch_size, patch_size), cost, dtype=np.float32) \
        if np.isscalar(cost) else np.asarray(cost, dtype=np.float32)
    return PatchEstimate(midpoint=(x, y), flow=(fx, fy),
                         cost_diff=cost_map, valid=valid)


def test_end_to_end_single_small_patch():
    image = ImageParams(width=4, height=4)
    opt = OptParams(patch_size=2, min_err_val=0.01)
    field = densify_flow([_patch(1, 1, 2.0, -1.0, 0.0)], image, opt,
                         device="cpu")

    covered = [(0, 0), (0, 1), (1, 0), (1, 1)]
    for y in range(4):
        for x in range(4):
            if (x, y) in covered:
                np.testing.assert_allclose(field.flow[y, x], [2.0, -1.0])
                assert field.weights[y, x] == pytest.approx(100.0)
            else:
                assert np.all(field.flow[y, x] == 0.0)
                assert field.weights[y, x] == 0.0
    assert field.coverage.sum() == 4


def test_single_full_cover_patch_is_uniform():
    image = ImageParams(width=4, height=4)
    opt = OptParams(patch_size=4, min_err_val=0.01)
    field = densify_flow([_patch(2, 2, 0.75, -3.5, 0.5, patch_size=4)],
                         image, opt, device="cpu")

    np.testing.assert_allclose(field.flow[..., 0], 0.75, rtol=1e-6)
    np.testing.assert_allclose(field.flow[..., 1], -3.5, rtol=1e-6)
    np.testing.assert_allclose(field.weights, 1.0 / 0.51, rtol=1e-6)


def test_weights_are_conserved_over_overlaps():
    image = ImageParams(width=6, height=5)
    opt = OptParams(patch_size=4, min_err_val=0.1)
    rng = np.random.default_rng(3)
    patches = [
        _patch(x, y, float(fx), float(fy), rng.uniform(0, 2, (4, 4)),
               patch_size=4)
        for (x, y, fx, fy) in [(1, 1, 1, 0), (3, 2, 0, 1), (5, 4, -1, 2),
                               (2.7, 3.2, 0.5, 0.5)]
    ]
    acc = densify_patches(patches, image, opt, device="cpu")

    expected_w = np.zeros((5, 6))
    expected_f = np.zeros((5, 6, 2))
    for p in patches:
        mx, my = int(np.floor(p.midpoint[0])), int(np.floor(p.midpoint[1]))
        for py in range(4):
            for px in range(4):
                x, y = mx - 2 + px, my - 2 + py
                if 0 <= x < 6 and 0 <= y < 5:
                    w = 1.0 / (float(p.cost_diff[py, px]) + 0.1)
                    expected_w[y, x] += w
                    expected_f[y, x] += w * np.asarray(p.flow)

    np.testing.assert_allclose(acc.weights.numpy(), expected_w, rtol=1e-6)
    np.testing.assert_allclose(acc.flow.numpy(), expected_f, rtol=1e-6)

    field = acc.normalize()
    covered = expected_w > 0
    np.testing.assert_allclose(
        field.flow[covered],
        expected_f[covered] / expected_w[covered][:, None], rtol=1e-5)


def test_invalid_patch_has_no_effect():
    image = ImageParams(width=8, height=8)
    opt = OptParams(patch_size=4, min_err_val=0.5)
    good = [_patch(2, 2, 1.0, 1.0, 0.2, 4), _patch(5, 5, -1.0, 0.5, 1.0, 4)]
    # an invalid patch may carry garbage; it is never read
    bad = _patch(-50, np.nan, np.inf, 0.0, -3.0, 4, valid=False)

    with_bad = densify_patches(good + [bad], image, opt, device="cpu")
    without = densify_patches(good, image, opt, device="cpu")

    assert torch.equal(with_bad.flow, without.flow)
    assert torch.equal(with_bad.weights, without.weights)

    acc = FlowAccumulator(image, device="cpu")
    assert densify_patch(acc, bad, opt) is False
    assert not acc.weights.any()


@pytest.mark.parametrize(
    "cost_diff",
    [np.zeros((0,)), np.zeros((3, 3)), np.full((5, 1), np.nan), None],
)
def test_invalid_patch_cost_map_is_never_read(cost_diff):
    image = ImageParams(width=4, height=4)
    opt = OptParams(patch_size=2, min_err_val=0.01)
    good = _patch(1, 1, 2.0, -1.0, 0.0)
    stray = PatchEstimate(midpoint=(1, 1), flow=(0.0, 0.0),
                          cost_diff=cost_diff, valid=False)

    with_stray = densify_patches([stray, good, stray], image, opt,
                                 device="cpu")
    alone = densify_patches([good], image, opt, device="cpu")
    assert torch.equal(with_stray.flow, alone.flow)
    assert torch.equal(with_stray.weights, alone.weights)

    field = densify_flow([good, stray], image, opt, device="cpu")
    assert field.coverage_ratio == pytest.approx(0.25)


def test_uncovered_pixels_keep_default_flow():
    image = ImageParams(width=10, height=10)
    opt = OptParams(patch_size=2, min_err_val=1.0)
    field = densify_flow([_patch(8, 8, 4.0, 4.0, 0.0)], image, opt,
                         device="cpu")
    assert np.all(field.flow[:7, :7] == 0.0)
    assert np.all(field.weights[:7, :7] == 0.0)


def test_empty_patch_set_gives_zero_field():
    image = ImageParams(width=3, height=2)
    field = densify_flow([], image, OptParams(patch_size=2), device="cpu")
    assert field.flow.shape == (2, 3, 2)
    assert not field.flow.any()
    assert field.coverage_ratio == 0.0


def test_footprint_clipped_at_image_border():
    image = ImageParams(width=4, height=4)
    opt = OptParams(patch_size=4, min_err_val=1.0)
    field = densify_flow([_patch(0, 0, 1.0, 2.0, 0.0, 4)], image, opt,
                         device="cpu")
    # footprint [-2, 2) clipped to [0, 2) on both axes
    assert field.coverage.sum() == 4
    assert field.coverage[:2, :2].all()


@pytest.mark.parametrize("weighting", ["additive", "floor"])
def test_weight_stays_finite_as_cost_vanishes(weighting):
    opt = OptParams(patch_size=2, min_err_val=0.01, weighting=weighting)
    costs = torch.tensor([1e-1, 1e-3, 1e-6, 1e-9, 0.0], dtype=torch.float64)
    w = confidence_weights(costs, opt)
    assert torch.isfinite(w).all()
    assert torch.all(w[1:] >= w[:-1])
    assert w[-1].item() == pytest.approx(100.0)


def test_floor_weighting_rule():
    opt = OptParams(patch_size=2, min_err_val=0.5, weighting="floor")
    w = confidence_weights(torch.tensor([2.0, 0.5, 0.1]), opt)
    np.testing.assert_allclose(w.numpy(), [0.5, 2.0, 2.0])


def test_accumulation_is_order_independent():
    image = ImageParams(width=6, height=6)
    opt = OptParams(patch_size=4, min_err_val=0.05)
    p1 = _patch(2, 2, 1.5, -0.5, np.linspace(0, 1, 16).reshape(4, 4), 4)
    p2 = _patch(3, 3, -2.0, 0.25, np.linspace(1, 0, 16).reshape(4, 4), 4)

    forward = FlowAccumulator(image, device="cpu")
    densify_patch(forward, p1, opt)
    densify_patch(forward, p2, opt)
    backward = FlowAccumulator(image, device="cpu")
    densify_patch(backward, p2, opt)
    densify_patch(backward, p1, opt)

    torch.testing.assert_close(forward.flow, backward.flow)
    torch.testing.assert_close(forward.weights, backward.weights)


def test_chunking_matches_single_dispatch():
    image = ImageParams(width=32, height=24)
    rng = np.random.default_rng(0)
    n = 50
    batch = PatchBatch(
        midpoints=np.stack([rng.uniform(0, 32, n), rng.uniform(0, 24, n)], 1),
        flows=rng.normal(size=(n, 2)),
        costs=rng.uniform(0, 3, (n, 8, 8)),
        valid=rng.uniform(size=n) > 0.2,
    )
    one = densify_flow(batch, image, OptParams(patch_size=8, chunk_size=1000),
                       device="cpu")
    many = densify_flow(batch, image, OptParams(patch_size=8, chunk_size=7),
                        device="cpu")
    np.testing.assert_allclose(one.flow, many.flow, rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(one.weights, many.weights, rtol=1e-5)


def test_out_of_range_midpoint_aborts_pass():
    image = ImageParams(width=4, height=4)
    opt = OptParams(patch_size=2, min_err_val=0.01)
    patches = [_patch(1, 1, 1.0, 1.0, 0.0), _patch(4, 1, 1.0, 1.0, 0.0)]
    with pytest.raises(PreconditionError) as excinfo:
        densify_patches(patches, image, opt, device="cpu")
    assert excinfo.value.patch_index == 1


def test_mismatched_cost_map_is_rejected_before_writes():
    image = ImageParams(width=4, height=4)
    opt = OptParams(patch_size=2, min_err_val=0.01)
    acc = FlowAccumulator(image, device="cpu")
    with pytest.raises(PreconditionError):
        densify_patch(acc, _patch(1, 1, 1.0, 1.0, 0.0, patch_size=3), opt)
    with pytest.raises(PreconditionError):
        densify_patch(acc, _patch(1, 1, 1.0, 1.0, -1.0), opt)
    assert not acc.weights.any()
    assert not acc.flow.any()


def test_cancelled_pass_exposes_nothing():
    image = ImageParams(width=4, height=4)
    opt = OptParams(patch_size=2, min_err_val=0.01)
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(DensifyCancelled):
        densify_flow([_patch(1, 1, 1.0, 1.0, 0.0)], image, opt,
                     device="cpu", cancel_event=cancel)


def test_cpu_thread_override_is_restored():
    before = torch.get_num_threads()
    image = ImageParams(width=4, height=4)
    opt = OptParams(patch_size=2, min_err_val=0.01, cpu_num_threads=1)
    densify_flow([_patch(1, 1, 1.0, 1.0, 0.0)], image, opt, device="cpu")
    assert torch.get_num_threads() == before


def test_footprint_offsets_even_and_odd():
    dy, dx = footprint_offsets(2, torch.device("cpu"))
    assert dy.tolist() == [-1, -1, 0, 0]
    assert dx.tolist() == [-1, 0, -1, 0]
    dy, dx = footprint_offsets(3, torch.device("cpu"))
    assert sorted(set(dx.tolist())) == [-1, 0, 1]
