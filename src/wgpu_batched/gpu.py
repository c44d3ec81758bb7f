"""
Batched dense matrices on WGPU
"""

# Core API
from .batched_matrix import BatchedMatrix, b_add, b_gemm, b_matmul, b_sub

# Backend
from .gpu_backend import WGPUBackend

# Buffer operations
from .gpu_buffer import (
    create_gpu_buffer,
    destroy_gpu_buffer,
    write_buffer,
)

# Configuration
from .gpu_config import (
    auto_detect_config,
    create_config_for_device,
    create_default_config,
    validate_config,
)

# Device management
from .gpu_device import WGPU_AVAILABLE, create_device, destroy_device

# Errors
from .gpu_errors import (
    BackendFailure,
    BackendMismatch,
    BatchedMatrixError,
    BatchReleased,
    DimensionMismatch,
    OutOfRange,
)
from .gpu_profiling import get_perf_stats
from .gpu_types import (
    BatchedBackend,
    BatchedKernels,
    BufferAllocator,
    Device,
    GPUBuffer,
    GPUConfig,
    PerfStats,
)

__all__ = [
    # Core API
    "BatchedMatrix",
    "b_gemm",
    "b_matmul",
    "b_add",
    "b_sub",
    # Backend
    "WGPUBackend",
    "BatchedBackend",
    "BatchedKernels",
    "BufferAllocator",
    # Types
    "Device",
    "GPUBuffer",
    "GPUConfig",
    "PerfStats",
    # Errors
    "BatchedMatrixError",
    "DimensionMismatch",
    "OutOfRange",
    "BackendFailure",
    "BatchReleased",
    "BackendMismatch",
    # Device
    "WGPU_AVAILABLE",
    "create_device",
    "destroy_device",
    # Config
    "create_default_config",
    "create_config_for_device",
    "auto_detect_config",
    "validate_config",
    # Buffers
    "create_gpu_buffer",
    "destroy_gpu_buffer",
    "write_buffer",
    # Profiling
    "get_perf_stats",
]
