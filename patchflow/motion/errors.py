from __future__ import annotations


class DensifyError(RuntimeError):
    """Base exception for flow densification failures."""


class PreconditionError(DensifyError, ValueError):
    """Raised when inputs violate the contract of a densification pass."""

    def __init__(self, message: str, *, patch_index: int | None = None) -> None:
        super().__init__(message)
        self.patch_index = patch_index

    def __str__(self) -> str:
        message = super().__str__()
        if self.patch_index is None:
            return message
        return f"patch {self.patch_index}: {message}"


class AccumulatorAllocationError(DensifyError):
    """Raised when the accumulator buffers cannot be allocated."""


class AccumulatorStateError(DensifyError):
    """Raised when an accumulator is used outside its lifecycle."""


class DensifyCancelled(DensifyError):
    """Raised when a pass is cancelled before the scatter barrier."""
