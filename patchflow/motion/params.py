from __future__ import annotations

from dataclasses import dataclass, fields
from numbers import Integral
from typing import Any, Mapping, Optional

from patchflow.motion.errors import PreconditionError

WEIGHTING_RULES = ("additive", "floor")


@dataclass(frozen=True)
class ImageParams:
    width: int
    height: int

    def __post_init__(self) -> None:
        for name in ("width", "height"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, Integral):
                raise PreconditionError(
                    f"image {name} must be an integer, got {value!r}")
        if self.width <= 0 or self.height <= 0:
            raise PreconditionError(
                f"image size must be positive, got {self.width}x{self.height}"
            )
        object.__setattr__(self, "width", int(self.width))
        object.__setattr__(self, "height", int(self.height))

    @property
    def num_pixels(self) -> int:
        return self.width * self.height

    @property
    def shape(self) -> tuple[int, int]:
        return (self.height, self.width)


@dataclass(frozen=True)
class OptParams:
    """Tunables of one densification pass.

    weighting selects the per-pixel confidence rule:
      additive: 1 / (cost + min_err_val)
      floor:    1 / max(cost, min_err_val)
    """

    patch_size: int = 8
    min_err_val: float = 2.0
    weighting: str = "additive"
    chunk_size: int = 4096
    cpu_num_threads: Optional[int] = None

    def __post_init__(self) -> None:
        if int(self.patch_size) <= 0:
            raise PreconditionError(
                f"patch_size must be positive, got {self.patch_size}")
        if not float(self.min_err_val) > 0.0:
            raise PreconditionError(
                f"min_err_val must be positive, got {self.min_err_val}")
        if self.weighting not in WEIGHTING_RULES:
            raise PreconditionError(
                f"weighting must be one of {WEIGHTING_RULES}, "
                f"got {self.weighting!r}")
        if int(self.chunk_size) <= 0:
            raise PreconditionError(
                f"chunk_size must be positive, got {self.chunk_size}")
        object.__setattr__(self, "patch_size", int(self.patch_size))
        object.__setattr__(self, "min_err_val", float(self.min_err_val))
        object.__setattr__(self, "chunk_size", int(self.chunk_size))

    @classmethod
    def from_config(cls, section: Mapping[str, Any]) -> "OptParams":
        """Build from the ``densify`` config section; unknown keys are ignored."""
        names = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in section.items()
                  if k in names and v is not None}
        return cls(**kwargs)
