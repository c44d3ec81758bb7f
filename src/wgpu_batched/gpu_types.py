"""Core data types - plain dataclasses and protocols only"""

from dataclasses import dataclass, field
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Set,
    Tuple,
    runtime_checkable,
)

import numpy as np

# ============================================================================
# WGPU TYPE PROTOCOLS
# ============================================================================

# Structural types for the wgpu objects we touch, so nothing here needs
# wgpu importable at type-check time


@runtime_checkable
class WGPUBufferProtocol(Protocol):
    """Structural type for wgpu.GPUBuffer"""

    size: int
    usage: int

    def map_sync(self, mode: int) -> None:
        """Map buffer for CPU access"""
        ...

    def read_mapped(self) -> memoryview:
        """Read mapped buffer contents"""
        ...

    def unmap(self) -> None:
        """Unmap buffer after CPU access"""
        ...

    def destroy(self) -> None:
        """Explicitly destroy buffer"""
        ...


@runtime_checkable
class WGPUQueueProtocol(Protocol):
    """Structural type for wgpu.GPUQueue"""

    def submit(self, command_buffers: Any) -> None:
        """Submit command buffers for execution"""
        ...

    def write_buffer(
        self, buffer: WGPUBufferProtocol, buffer_offset: int, data: Any
    ) -> None:
        """Write data directly to buffer"""
        ...


@runtime_checkable
class WGPUDeviceProtocol(Protocol):
    """Structural type for wgpu.GPUDevice"""

    queue: WGPUQueueProtocol

    def create_buffer(
        self, *, size: int, usage: int, mapped_at_creation: bool = False
    ) -> WGPUBufferProtocol:
        """Create GPU buffer"""
        ...

    def create_buffer_with_data(self, *, data: Any, usage: int) -> WGPUBufferProtocol:
        """Create buffer initialized with data"""
        ...

    def create_shader_module(self, *, code: str) -> Any:
        """Compile shader module from WGSL source"""
        ...

    def create_compute_pipeline(self, *, layout: Any, compute: Any) -> Any:
        """Create compute pipeline"""
        ...

    def create_bind_group(self, *, layout: Any, entries: Any) -> Any:
        """Create bind group for shader resources"""
        ...

    def create_command_encoder(self) -> Any:
        """Create command encoder"""
        ...


WGPUDevice = WGPUDeviceProtocol
WGPUBuffer = WGPUBufferProtocol
WGPUAdapter = Any  # wgpu.GPUAdapter

WGPUCommandEncoder = Any  # wgpu.GPUCommandEncoder
WGPUBindGroup = Any  # wgpu.GPUBindGroup
WGPUComputePipeline = Any  # wgpu.GPUComputePipeline

# ============================================================================
# CONFIGURATION
# ============================================================================


@dataclass
class GPUConfig:
    """
    Centralized GPU configuration for kernel parameters and memory limits.

    This dataclass is immutable - do not modify fields after creation.
    """

    # ========================================================================
    # KERNEL PARAMETERS
    # ========================================================================

    matmul_tile_size: int = 16
    """
    Tile size for the batched GEMM kernel (16x16 default)

    Constraints:
    - Must be power of 2, at most 32
    - Workgroup memory usage: tile_size * tile_size * 2 * 4 bytes
    """

    default_workgroup_size: int = 256
    """Workgroup size for the flat elementwise kernel"""

    # ========================================================================
    # MEMORY LIMITS
    # ========================================================================

    buffer_pool_max_mb: int = 512
    """Maximum total pooled memory in megabytes (0 = unlimited)"""

    buffer_pool_max_buffer_mb: int = 512
    """Maximum size of individual pooled buffers in MB"""

    staging_buffer_max_entries: int = 8
    """Maximum number of different-sized readback staging buffers to cache"""

    # ========================================================================
    # COMPUTE LIMITS
    # ========================================================================

    max_workgroups_per_dim: int = 65535
    """
    Maximum workgroups per dispatch dimension (WebGPU default limit).

    Batches larger than this are split along Z inside the same compute pass.
    """

    max_batch_operations: int = 1000
    """Maximum compute dispatches recorded on one command batch before it must be submitted"""

    # ========================================================================
    # BEHAVIOUR
    # ========================================================================

    checked_buffers: bool = False
    """Default for BatchedMatrix size checking when `checked` is not passed"""

    power_preference: str = "high-performance"
    """Adapter power preference passed to wgpu"""


# ============================================================================
# DEVICE TYPES
# ============================================================================


@dataclass
class Device:
    """
    GPU device wrapper

    This dataclass is immutable - do not modify fields after creation.
    """

    wgpu_device: WGPUDevice
    adapter: Optional[WGPUAdapter] = None
    config: Optional[GPUConfig] = None


@dataclass
class BindGroupEntry:
    """
    Type-safe bind group entry specification

    This dataclass is immutable - do not modify fields after creation.
    """

    binding: int
    buffer: WGPUBuffer
    offset: int
    size: int


# ============================================================================
# GPU BUFFER TYPES
# ============================================================================


@dataclass(eq=False)
class GPUBuffer:
    """
    Flat float32 device buffer holding `size` elements.

    This dataclass is immutable - do not modify fields after creation.
    The underlying GPU buffer contents may be mutated by operations.
    Identity semantics: two handles are equal only if they are the same object.
    """

    buffer: WGPUBuffer
    size: int
    device: Device


# ============================================================================
# BUFFER POOL TYPES
# ============================================================================


@dataclass
class BufferPool:
    """
    Memory pool state for reusable GPU buffers

    MUTATION SEMANTICS:
    - pools: MUTABLE - free buffers keyed by element count
    - in_use: MUTABLE - ids of buffers currently taken
    - total_memory_bytes: MUTABLE - bytes allocated through the pool
    - Other fields: immutable configuration
    """

    device: Device
    max_size: int  # Max elements per pooled buffer
    pools: Dict[int, List[WGPUBuffer]] = field(default_factory=dict)
    in_use: Set[int] = field(default_factory=set)
    total_memory_bytes: int = 0
    max_total_memory_bytes: int = 0  # 0 = unlimited


@dataclass
class StagingPool:
    """
    Readback staging buffers for GPU-to-CPU transfers

    MUTATION SEMANTICS:
    - staging_buffers: MUTABLE - buffers are added during downloads
    - Other fields: immutable configuration
    """

    device: Device
    staging_buffers: Dict[int, WGPUBuffer] = field(default_factory=dict)
    max_entries: int = 8


# ============================================================================
# PIPELINE CACHE TYPES
# ============================================================================


@dataclass
class PipelineCache:
    """
    Cache for compiled GPU pipelines

    MUTATION SEMANTICS:
    - pipelines: MUTABLE - compiled pipelines are cached on first use
    - device: immutable reference
    """

    device: Device
    pipelines: Dict[Tuple[int, str], WGPUComputePipeline] = field(
        default_factory=dict
    )


# ============================================================================
# BATCH OPERATION TYPES
# ============================================================================


@dataclass
class BatchState:
    """
    State for one command batch (a single queue submission)

    MUTATION SEMANTICS:
    - encoder: MUTABLE - set to None after submit_batch is called
    - retained_buffers: MUTABLE - uniforms kept alive until submit
    - scratch_buffers: MUTABLE - pooled packed buffers returned after submit
    - operation_count: MUTABLE - incremented for each recorded operation
    - dispatches: MUTABLE - kernel names dispatched, in record order
    """

    device: Device
    encoder: Optional[WGPUCommandEncoder]
    retained_buffers: List[WGPUBuffer] = field(default_factory=list)
    scratch_buffers: List[GPUBuffer] = field(default_factory=list)
    operation_count: int = 0
    dispatches: List[str] = field(default_factory=list)


# ============================================================================
# PERFORMANCE MONITORING TYPES
# ============================================================================


@dataclass
class KernelTimeStats:
    """
    Statistics for host-side kernel enqueue times

    This dataclass is immutable - do not modify fields after creation.
    """

    count: int
    total_ms: float
    avg_ms: float
    min_ms: float
    max_ms: float


@dataclass
class PerfStats:
    """
    Complete performance statistics snapshot

    This dataclass is immutable - do not modify fields after creation.
    """

    total_submissions: int
    total_dispatches: int
    dispatch_counts: Dict[str, int]
    kernel_times: Dict[str, KernelTimeStats]


@dataclass
class PerfMonitor:
    """
    Performance monitoring state

    MUTATION SEMANTICS:
    - kernel_times: MUTABLE - timing data accumulated per kernel
    - dispatch_counts: MUTABLE - dispatches per kernel
    - submission_count: MUTABLE - incremented on each queue submission
    """

    kernel_times: Dict[str, List[float]] = field(default_factory=dict)
    dispatch_counts: Dict[str, int] = field(default_factory=dict)
    submission_count: int = 0


# ============================================================================
# BACKEND COLLABORATOR PROTOCOLS
# ============================================================================


class BufferAllocator(Protocol):
    """Allocation and host transfer for one backend's buffers"""

    def allocate(self, size: int) -> Any: ...

    def release(self, handle: Any) -> None: ...

    def upload(self, handle: Any, data: np.ndarray) -> None: ...

    def download(self, handle: Any, count: int) -> np.ndarray: ...


class BatchedKernels(Protocol):
    """Whole-batch numeric routines; each call is one logical dispatch"""

    def gemm(
        self,
        a: Sequence[Any],
        b: Sequence[Any],
        out: Sequence[Any],
        m: int,
        n: int,
        k: int,
        transpose_a: bool,
        transpose_b: bool,
        alpha: float,
        beta: float,
        c: Optional[Sequence[Any]] = None,
    ) -> None: ...

    def elementwise(
        self,
        op: str,
        a: Sequence[Any],
        b: Sequence[Any],
        out: Sequence[Any],
        size: int,
    ) -> None: ...


class BatchedBackend(BufferAllocator, BatchedKernels, Protocol):
    """Everything BatchedMatrix needs from its backend"""
