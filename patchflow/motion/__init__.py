from patchflow.motion.accumulator import DenseFlowField, FlowAccumulator
from patchflow.motion.densify import (
    densify_flow,
    densify_patch,
    densify_patches,
    normalize_flow,
)
from patchflow.motion.errors import (
    AccumulatorAllocationError,
    AccumulatorStateError,
    DensifyCancelled,
    DensifyError,
    PreconditionError,
)
from patchflow.motion.params import ImageParams, OptParams
from patchflow.motion.patch import PatchBatch, PatchEstimate
