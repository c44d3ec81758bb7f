"""Command batching and batched kernel dispatch

Every batched operation is recorded on one command encoder: gather copies
of the per-element buffers into packed scratch buffers, one compute dispatch
covering the whole batch, and scatter copies into the per-element outputs.
The encoder is submitted once.
"""

import logging
import math
import time
from typing import List, Optional, Sequence

import numpy as np

from .gpu_buffer import BYTES_PER_ELEMENT, pool_release_buffer, pool_take_buffer
from .gpu_device import (
    create_bind_group_entries,
    get_or_create_pipeline,
    wgpu,
)
from .gpu_kernels import (
    get_batched_elementwise_kernel_from_config,
    get_batched_gemm_kernel_from_config,
)
from .gpu_profiling import record_dispatch, record_kernel_time, record_submission
from .gpu_types import (
    BatchState,
    BindGroupEntry,
    BufferPool,
    Device,
    GPUBuffer,
    PerfMonitor,
    PipelineCache,
    WGPUBuffer,
)

logger = logging.getLogger(__name__)

# ============================================================================
# COMMAND BATCH STATE
# ============================================================================


def create_command_batch(device: Device) -> BatchState:
    """Create command batch state for one queue submission"""
    encoder = device.wgpu_device.create_command_encoder()
    return BatchState(device=device, encoder=encoder)


def _create_and_retain_uniform_buffer(
    batch_state: BatchState, data: np.ndarray
) -> WGPUBuffer:
    """Helper: Create uniform buffer and add to retained list"""
    buffer = batch_state.device.wgpu_device.create_buffer_with_data(
        data=data, usage=wgpu.BufferUsage.UNIFORM
    )
    batch_state.retained_buffers.append(buffer)
    return buffer


def _take_scratch(
    pool_state: BufferPool, batch_state: BatchState, size: int
) -> GPUBuffer:
    """Helper: Take a packed scratch buffer that lives until the batch is done"""
    scratch = pool_take_buffer(pool_state, size)
    batch_state.scratch_buffers.append(scratch)
    return scratch


def _check_open(batch_state: BatchState) -> None:
    if batch_state.encoder is None:
        raise RuntimeError("Must call create_command_batch before adding operations")


# ============================================================================
# COPY OPERATIONS
# ============================================================================


def batch_add_gather(
    batch_state: BatchState,
    sources: Sequence[GPUBuffer],
    packed: GPUBuffer,
    count: int,
) -> None:
    """Add copies packing the first `count` elements of each source (mutation).

    Source i lands at element offset i * count of `packed`.

    Args:
        batch_state: Batch state (MUTATED)
        sources: Per-element buffers, in batch order
        packed: Destination, at least len(sources) * count elements
        count: Elements per batch element
    """
    nbytes = count * BYTES_PER_ELEMENT
    for i, source in enumerate(sources):
        _check_open(batch_state)
        batch_state.encoder.copy_buffer_to_buffer(
            source.buffer, 0, packed.buffer, i * nbytes, nbytes
        )
        batch_state.operation_count += 1


def batch_add_scatter(
    batch_state: BatchState,
    packed: GPUBuffer,
    dests: Sequence[GPUBuffer],
    count: int,
) -> None:
    """Add copies unpacking `packed` into per-element buffers (mutation).

    Args:
        batch_state: Batch state (MUTATED)
        packed: Source, at least len(dests) * count elements
        dests: Per-element destination buffers, in batch order
        count: Elements per batch element
    """
    nbytes = count * BYTES_PER_ELEMENT
    for i, dest in enumerate(dests):
        _check_open(batch_state)
        batch_state.encoder.copy_buffer_to_buffer(
            packed.buffer, i * nbytes, dest.buffer, 0, nbytes
        )
        batch_state.operation_count += 1


# ============================================================================
# COMPUTE OPERATIONS
# ============================================================================


def batch_add_compute(
    pipeline_cache: PipelineCache,
    batch_state: BatchState,
    kernel_name: str,
    kernel_code: str,
    params: np.ndarray,
    buffers: List[GPUBuffer],
    workgroups_x: int,
    workgroups_y: int = 1,
    workgroups_z: int = 1,
) -> None:
    """
    Add one compute dispatch to the batch encoder (mutation).

    Args:
        pipeline_cache: Pipeline cache for kernel compilation
        batch_state: Batch state (MUTATED)
        kernel_name: Name recorded for profiling
        kernel_code: WGSL kernel source
        params: Uniform parameter array (binding 0)
        buffers: Storage buffers bound at 1..n
        workgroups_x: Workgroups in X
        workgroups_y: Workgroups in Y
        workgroups_z: Workgroups in Z

    Raises:
        RuntimeError: If batch is closed or its operation limit is exceeded
        ValueError: If a workgroup count exceeds the device limit
    """
    _check_open(batch_state)

    # Copies are not limited, only compute dispatches
    max_ops = batch_state.device.config.max_batch_operations
    if len(batch_state.dispatches) >= max_ops:
        raise RuntimeError(
            f"Batch dispatch limit ({max_ops}) exceeded. "
            f"Call submit_batch() to flush operations."
        )

    max_workgroups = batch_state.device.config.max_workgroups_per_dim

    if (
        workgroups_x > max_workgroups
        or workgroups_y > max_workgroups
        or workgroups_z > max_workgroups
    ):
        raise ValueError(
            f"Workgroup counts ({workgroups_x}, {workgroups_y}, {workgroups_z}) "
            f"exceed maximum ({max_workgroups})"
        )

    params_buffer = _create_and_retain_uniform_buffer(batch_state, params)
    pipeline = get_or_create_pipeline(pipeline_cache, kernel_code)

    entries = [BindGroupEntry(0, params_buffer, 0, params.nbytes)]
    for i, buf in enumerate(buffers):
        entries.append(BindGroupEntry(i + 1, buf.buffer, 0, buf.size * BYTES_PER_ELEMENT))

    bind_group = batch_state.device.wgpu_device.create_bind_group(
        layout=pipeline.get_bind_group_layout(0),
        entries=create_bind_group_entries(entries),
    )

    compute_pass = batch_state.encoder.begin_compute_pass()
    compute_pass.set_pipeline(pipeline)
    compute_pass.set_bind_group(0, bind_group)
    compute_pass.dispatch_workgroups(workgroups_x, workgroups_y, workgroups_z)
    compute_pass.end()

    batch_state.operation_count += 1
    batch_state.dispatches.append(kernel_name)


# ============================================================================
# BATCH SUBMISSION
# ============================================================================


def submit_batch(
    batch_state: BatchState,
    pool_state: BufferPool,
    monitor: Optional[PerfMonitor] = None,
) -> None:
    """Submit all batched operations (mutation).

    Scratch buffers go back to the pool after submission; later submissions
    on the same queue run after this one, so reusing them is safe.

    Args:
        batch_state: Batch state (MUTATED)
        pool_state: Pool the scratch buffers were taken from (MUTATED)
        monitor: Optional performance monitor (MUTATED)

    Raises:
        RuntimeError: If batch not initialized or already submitted
    """
    if batch_state.encoder is None:
        raise RuntimeError("Batch already submitted or not initialized")

    command_buffer = batch_state.encoder.finish()
    batch_state.device.wgpu_device.queue.submit([command_buffer])
    batch_state.encoder = None

    if monitor is not None:
        record_submission(monitor)
        for kernel_name in batch_state.dispatches:
            record_dispatch(monitor, kernel_name)

    _return_scratch(batch_state, pool_state)
    batch_state.retained_buffers.clear()


def abandon_batch(batch_state: BatchState, pool_state: BufferPool) -> None:
    """Drop an unsubmitted batch, returning its scratch buffers (mutation)."""
    batch_state.encoder = None
    _return_scratch(batch_state, pool_state)
    batch_state.retained_buffers.clear()


def _return_scratch(batch_state: BatchState, pool_state: BufferPool) -> None:
    for scratch in batch_state.scratch_buffers:
        pool_release_buffer(pool_state, scratch)
    batch_state.scratch_buffers.clear()


# ============================================================================
# BATCHED KERNELS
# ============================================================================


def run_batched_gemm(
    pipeline_cache: PipelineCache,
    pool_state: BufferPool,
    monitor: PerfMonitor,
    a: Sequence[GPUBuffer],
    b: Sequence[GPUBuffer],
    out: Sequence[GPUBuffer],
    m: int,
    n: int,
    k: int,
    transpose_a: bool = False,
    transpose_b: bool = False,
    alpha: float = 1.0,
    beta: float = 0.0,
    c: Optional[Sequence[GPUBuffer]] = None,
) -> None:
    """Compute out[i] = alpha * op(a[i]) @ op(b[i]) + beta * c[i] for every i.

    op(a[i]) is (m, k) and op(b[i]) is (k, n). All sequences have the same
    length. `c` is read only and required when beta != 0.

    The whole batch is one dispatch (Z = batch index) in one submission.
    Batches longer than max_workgroups_per_dim are split into several Z
    chunks within that submission.
    """
    start = time.perf_counter()
    device = pipeline_cache.device
    config = device.config
    batch = len(a)
    tile = config.matmul_tile_size

    batch_state = create_command_batch(device)
    try:
        packed_a = _take_scratch(pool_state, batch_state, batch * m * k)
        packed_b = _take_scratch(pool_state, batch_state, batch * k * n)
        packed_c = _take_scratch(pool_state, batch_state, batch * m * n)

        batch_add_gather(batch_state, a, packed_a, m * k)
        batch_add_gather(batch_state, b, packed_b, k * n)
        if beta != 0.0:
            batch_add_gather(batch_state, c, packed_c, m * n)

        kernel_code = get_batched_gemm_kernel_from_config(config)
        workgroups_x = math.ceil(n / tile)
        workgroups_y = math.ceil(m / tile)
        chunk = config.max_workgroups_per_dim

        for batch_offset in range(0, batch, chunk):
            params = np.array(
                [m, n, k, batch_offset, int(transpose_a), int(transpose_b), 0, 0],
                dtype=np.uint32,
            )
            params[6:8] = np.array([alpha, beta], dtype=np.float32).view(np.uint32)
            batch_add_compute(
                pipeline_cache,
                batch_state,
                "batched_gemm",
                kernel_code,
                params,
                [packed_a, packed_b, packed_c],
                workgroups_x,
                workgroups_y,
                min(chunk, batch - batch_offset),
            )

        batch_add_scatter(batch_state, packed_c, out, m * n)
        submit_batch(batch_state, pool_state, monitor)
    except Exception:
        abandon_batch(batch_state, pool_state)
        raise

    logger.debug(
        "batched_gemm batch=%d m=%d n=%d k=%d trans=(%s, %s)",
        batch, m, n, k, transpose_a, transpose_b,
    )
    record_kernel_time(monitor, "batched_gemm", (time.perf_counter() - start) * 1000)


def run_batched_elementwise(
    pipeline_cache: PipelineCache,
    pool_state: BufferPool,
    monitor: PerfMonitor,
    op: str,
    a: Sequence[GPUBuffer],
    b: Sequence[GPUBuffer],
    out: Sequence[GPUBuffer],
    size: int,
) -> None:
    """Compute out[i] = a[i] (op) b[i] over the first `size` elements of each.

    One dispatch over len(a) * size elements in one submission.
    """
    start = time.perf_counter()
    device = pipeline_cache.device
    config = device.config
    batch = len(a)
    total = batch * size
    workgroup_size = config.default_workgroup_size
    kernel_name = f"batched_{op}"

    batch_state = create_command_batch(device)
    try:
        kernel_code = get_batched_elementwise_kernel_from_config(config, op)

        packed_a = _take_scratch(pool_state, batch_state, total)
        packed_b = _take_scratch(pool_state, batch_state, total)
        packed_out = _take_scratch(pool_state, batch_state, total)

        batch_add_gather(batch_state, a, packed_a, size)
        batch_add_gather(batch_state, b, packed_b, size)

        groups = math.ceil(total / workgroup_size)
        workgroups_x = min(groups, config.max_workgroups_per_dim)
        workgroups_y = math.ceil(groups / workgroups_x)
        params = np.array(
            [total, workgroups_x * workgroup_size, 0, 0], dtype=np.uint32
        )
        batch_add_compute(
            pipeline_cache,
            batch_state,
            kernel_name,
            kernel_code,
            params,
            [packed_a, packed_b, packed_out],
            workgroups_x,
            workgroups_y,
        )

        batch_add_scatter(batch_state, packed_out, out, size)
        submit_batch(batch_state, pool_state, monitor)
    except Exception:
        abandon_batch(batch_state, pool_state)
        raise

    logger.debug("%s batch=%d size=%d", kernel_name, batch, size)
    record_kernel_time(monitor, kernel_name, (time.perf_counter() - start) * 1000)
