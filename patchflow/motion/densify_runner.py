"""
Standalone densification runner for patch estimates stored in ``.npz`` files.

Usage (CLI):
    python -m patchflow.motion.densify_runner --patches patches.npz \
        --output flow.npz --config densify.yaml

Input keys:
- midpoints (n, 2) x, y; flows (n, 2); costs (n, P, P)
- valid (n,) optional, defaults to all true
- width, height optional scalars; --width/--height override them
Output keys: flow (H, W, 2) float32 and, unless --no-weights, weights (H, W).
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Optional, Tuple

import numpy as np

from patchflow.configs import get_config
from patchflow.motion.accumulator import DenseFlowField
from patchflow.motion.densify import densify_flow
from patchflow.motion.errors import DensifyError, PreconditionError
from patchflow.motion.params import ImageParams, OptParams
from patchflow.motion.patch import PatchBatch
from patchflow.utils.logger import logger, set_level

REQUIRED_KEYS = ("midpoints", "flows", "costs")


def load_patch_batch(path: str | Path) -> Tuple[PatchBatch, Optional[Tuple[int, int]]]:
    """Read a PatchBatch and the stored (width, height), if any."""
    with np.load(str(path)) as data:
        missing = [k for k in REQUIRED_KEYS if k not in data.files]
        if missing:
            raise PreconditionError(
                f"{path}: missing required arrays {missing}")
        batch = PatchBatch(
            midpoints=data["midpoints"],
            flows=data["flows"],
            costs=data["costs"],
            valid=data["valid"] if "valid" in data.files else None,
        )
        size = None
        if "width" in data.files and "height" in data.files:
            size = (int(data["width"]), int(data["height"]))
    return batch, size


def save_dense_flow(path: str | Path,
                    field: DenseFlowField,
                    save_weights: bool = True) -> Path:
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    arrays = {"flow": field.flow}
    if save_weights:
        arrays["weights"] = field.weights
    np.savez_compressed(out_path, **arrays)
    return out_path


def process_patch_file(
    patches_path: str,
    output_path: str,
    width: Optional[int] = None,
    height: Optional[int] = None,
    config_file_or_yaml: Optional[str] = None,
    config_from_args: Optional[dict] = None,
    device: Optional[str] = None,
    save_weights: bool = True,
) -> DenseFlowField:
    """
    Densify the patches in ``patches_path`` and write the flow to ``output_path``.

    Args:
        patches_path: input ``.npz`` with midpoints, flows, costs[, valid].
        output_path: output ``.npz`` path.
        width, height: image size; overrides the size stored in the input.
        config_file_or_yaml: YAML file path or inline YAML layered on defaults.
        config_from_args: dict overrides layered last, e.g. {"densify": {...}}.
        device: torch device; defaults to densify.device, then auto-detect.
        save_weights: also store the accumulated weight field.
    """
    config = get_config(config_file_or_yaml, config_from_args)
    set_level(config["logging"]["level"])
    section = config["densify"]
    opt = OptParams.from_config(section)

    batch, stored_size = load_patch_batch(patches_path)
    if width is None or height is None:
        if stored_size is None:
            raise PreconditionError(
                f"{patches_path}: image size not stored; pass --width/--height")
        width = stored_size[0] if width is None else width
        height = stored_size[1] if height is None else height
    image = ImageParams(width=width, height=height)

    logger.info("Loaded %d patches (%d valid) from %s",
                len(batch), batch.num_valid, patches_path)
    field = densify_flow(batch, image, opt,
                         device=device or section.get("device"))
    out = save_dense_flow(output_path, field, save_weights=save_weights)
    logger.info("Saved dense flow to %s", out)
    return field


def _parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Patch flow densification runner")
    p.add_argument("--patches", required=True,
                   help="Path to input .npz with patch estimates")
    p.add_argument("--output", required=True,
                   help="Path to output .npz for the dense flow")
    p.add_argument("--width", type=int, help="Image width in pixels")
    p.add_argument("--height", type=int, help="Image height in pixels")
    p.add_argument("--config", help="YAML config file or inline YAML")
    p.add_argument("--device", help="Torch device (cpu, cuda, mps)")
    p.add_argument("--patch-size", type=int, help="Patch size override")
    p.add_argument("--min-err-val", type=float, help="Error floor override")
    p.add_argument(
        "--weighting",
        choices=["additive", "floor"],
        help="Confidence rule override",
    )
    p.add_argument(
        "--no-weights",
        dest="save_weights",
        action="store_false",
        help="Do not store the accumulated weight field",
    )
    p.set_defaults(save_weights=True)
    return p.parse_args(argv)


def _config_overrides(args: argparse.Namespace) -> Optional[dict]:
    densify = {}
    if args.patch_size is not None:
        densify["patch_size"] = args.patch_size
    if args.min_err_val is not None:
        densify["min_err_val"] = args.min_err_val
    if args.weighting is not None:
        densify["weighting"] = args.weighting
    return {"densify": densify} if densify else None


def main(argv=None) -> int:
    args = _parse_args(argv)
    try:
        process_patch_file(
            patches_path=args.patches,
            output_path=args.output,
            width=args.width,
            height=args.height,
            config_file_or_yaml=args.config,
            config_from_args=_config_overrides(args),
            device=args.device,
            save_weights=bool(args.save_weights),
        )
    except (DensifyError, ValueError) as exc:
        logger.error("Densification failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
