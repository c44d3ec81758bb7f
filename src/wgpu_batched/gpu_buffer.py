"""Buffer creation, pooling and host transfers"""

import logging
from typing import Optional

import numpy as np

from .gpu_device import wgpu
from .gpu_types import BufferPool, Device, GPUBuffer, StagingPool, WGPUBuffer

logger = logging.getLogger(__name__)

BYTES_PER_ELEMENT = 4  # float32

# ============================================================================
# BASIC BUFFER OPERATIONS
# ============================================================================


def _storage_usage() -> int:
    return (
        wgpu.BufferUsage.STORAGE
        | wgpu.BufferUsage.COPY_SRC
        | wgpu.BufferUsage.COPY_DST
    )


def INTERNAL__create_wgpu_buffer(
    device: Device, size: int, data: Optional[np.ndarray] = None
) -> WGPUBuffer:
    """Internal: Create raw storage buffer of `size` float32 elements.

    Args:
        device: GPU device state
        size: Number of elements
        data: Optional array to initialize buffer contents (flattened)

    Returns:
        Raw WGPU buffer object
    """
    if data is not None:
        data_np = np.ascontiguousarray(data, dtype=np.float32).ravel()
        return device.wgpu_device.create_buffer_with_data(
            data=data_np, usage=_storage_usage()
        )

    return device.wgpu_device.create_buffer(
        size=size * BYTES_PER_ELEMENT, usage=_storage_usage()
    )


def create_gpu_buffer(
    device: Device, size: int, data: Optional[np.ndarray] = None
) -> GPUBuffer:
    """Create a flat float32 device buffer.

    The caller owns the result and releases it with destroy_gpu_buffer.

    Args:
        device: GPU device state
        size: Number of elements
        data: Optional array to initialize buffer, must hold exactly `size` elements

    Returns:
        Typed GPU buffer

    Raises:
        ValueError: If size <= 0 or data size doesn't match
    """
    if size <= 0:
        raise ValueError(f"Buffer size must be positive, got {size}")

    if data is not None and np.size(data) != size:
        raise ValueError(
            f"Data holds {np.size(data)} elements, buffer expects {size}"
        )

    buffer = INTERNAL__create_wgpu_buffer(device, size, data)
    return GPUBuffer(buffer=buffer, size=size, device=device)


def destroy_gpu_buffer(gpu_buffer: GPUBuffer) -> None:
    """Destroy a buffer created with create_gpu_buffer.

    The handle must not be used after this call.
    """
    gpu_buffer.buffer.destroy()


def write_buffer(gpu_buffer: GPUBuffer, data: np.ndarray) -> None:
    """Upload host data into a device buffer (mutation).

    The write is queued; it is ordered before any later submission on the
    same queue.

    Args:
        gpu_buffer: Target GPU buffer (MUTATED)
        data: Source array, at most gpu_buffer.size elements

    Raises:
        ValueError: If data has more elements than the buffer
    """
    data_np = np.ascontiguousarray(data, dtype=np.float32).ravel()
    if data_np.size > gpu_buffer.size:
        raise ValueError(
            f"Data holds {data_np.size} elements, buffer holds {gpu_buffer.size}"
        )
    gpu_buffer.device.wgpu_device.queue.write_buffer(gpu_buffer.buffer, 0, data_np)


# ============================================================================
# BUFFER POOL
# ============================================================================


def pool_create(
    device: Device,
    max_buffer_size_mb: Optional[int] = None,
    max_total_memory_mb: Optional[int] = None,
) -> BufferPool:
    """
    Create a memory pool state for reusable GPU buffers

    Buffers are pooled by element count for reuse without reallocation.

    Args:
        device: GPU device state
        max_buffer_size_mb: Maximum size of individual pooled buffers in MB.
                           If None, uses device.config.buffer_pool_max_buffer_mb
        max_total_memory_mb: Maximum total pool memory in MB (0 = unlimited).
                             If None, uses device.config.buffer_pool_max_mb

    Returns:
        Buffer pool state with memory limits enforced
    """
    if max_buffer_size_mb is None:
        max_buffer_size_mb = device.config.buffer_pool_max_buffer_mb

    if max_total_memory_mb is None:
        max_total_memory_mb = device.config.buffer_pool_max_mb

    max_size = max_buffer_size_mb * 1024 * 1024 // BYTES_PER_ELEMENT
    max_total_bytes = (
        max_total_memory_mb * 1024 * 1024 if max_total_memory_mb > 0 else 0
    )

    return BufferPool(
        device=device,
        max_size=max_size,
        max_total_memory_bytes=max_total_bytes,
    )


def pool_take_buffer(pool_state: BufferPool, size: int) -> GPUBuffer:
    """Take buffer from pool or create new.

    SEMANTICS: This is a TAKE operation - buffer ownership transfers to caller.
    Caller must return buffer with pool_release_buffer when done.

    Args:
        pool_state: Buffer pool state (MUTATED)
        size: Number of elements

    Returns:
        GPU buffer owned by caller

    Raises:
        ValueError: If size <= 0
        MemoryError: If pool memory limit exceeded
    """
    if size <= 0:
        raise ValueError(f"Buffer size must be positive, got {size}")

    free = pool_state.pools.get(size)
    if free:
        buffer = free.pop()
        pool_state.in_use.add(id(buffer))
        logger.debug("reusing pooled buffer of %d elements", size)
        return GPUBuffer(buffer=buffer, size=size, device=pool_state.device)

    buffer_bytes = size * BYTES_PER_ELEMENT

    if pool_state.max_total_memory_bytes > 0:
        if (
            pool_state.total_memory_bytes + buffer_bytes
            > pool_state.max_total_memory_bytes
        ):
            raise MemoryError(
                f"Buffer pool memory limit exceeded: "
                f"{pool_state.total_memory_bytes + buffer_bytes} > {pool_state.max_total_memory_bytes}"
            )

    buffer = INTERNAL__create_wgpu_buffer(pool_state.device, size)
    pool_state.in_use.add(id(buffer))
    pool_state.total_memory_bytes += buffer_bytes

    return GPUBuffer(buffer=buffer, size=size, device=pool_state.device)


def pool_release_buffer(pool_state: BufferPool, gpu_buffer: GPUBuffer) -> None:
    """Return buffer to pool for reuse

    SEMANTICS: This is a RELEASE operation - buffer ownership returns to pool.
    Caller must not use the buffer after calling this function. Buffers
    larger than the pooling limit are destroyed instead of kept.

    Args:
        pool_state: Buffer pool state (MUTATED)
        gpu_buffer: GPU buffer to return to pool

    Raises:
        ValueError: If the buffer is not currently taken from this pool
    """
    buffer_id = id(gpu_buffer.buffer)
    if buffer_id not in pool_state.in_use:
        raise ValueError("Buffer was not taken from this pool or was already released")

    pool_state.in_use.remove(buffer_id)
    size = gpu_buffer.size

    if size <= pool_state.max_size:
        pool_state.pools.setdefault(size, []).append(gpu_buffer.buffer)
    else:
        gpu_buffer.buffer.destroy()
        pool_state.total_memory_bytes -= size * BYTES_PER_ELEMENT


def pool_clear(pool_state: BufferPool) -> None:
    """Destroy all free pooled buffers (mutation).

    In-use buffers are not affected.

    Args:
        pool_state: Buffer pool state (MUTATED)
    """
    for size, buffers in pool_state.pools.items():
        for buffer in buffers:
            buffer.destroy()
            pool_state.total_memory_bytes -= size * BYTES_PER_ELEMENT
    pool_state.pools.clear()


# ============================================================================
# STAGING BUFFER POOL
# ============================================================================


def staging_pool_create(
    device: Device, max_entries: Optional[int] = None
) -> StagingPool:
    """
    Create staging buffer pool state for GPU-to-CPU transfers

    Staging buffers are persistent and reused across downloads.

    Args:
        device: GPU device state
        max_entries: Maximum number of different-sized buffers to cache.
                    If None, uses device.config.staging_buffer_max_entries

    Returns:
        Staging pool state
    """
    if max_entries is None:
        max_entries = device.config.staging_buffer_max_entries

    return StagingPool(device=device, max_entries=max_entries)


def INTERNAL__get_staging_buffer(
    pool_state: StagingPool, size_bytes: int
) -> WGPUBuffer:
    """Internal: Get or create a readback staging buffer.

    Staging buffers stay in the pool (not taken out). When the pool is full
    the smallest buffer is evicted.

    Args:
        pool_state: Staging pool state (MUTATED if new buffer created)
        size_bytes: Required size in bytes

    Returns:
        Staging buffer (still owned by pool)
    """
    # Round up to next power of 2 for better reuse
    rounded_size = 2 ** (size_bytes - 1).bit_length()

    if rounded_size not in pool_state.staging_buffers:
        if len(pool_state.staging_buffers) >= pool_state.max_entries:
            smallest_size = min(pool_state.staging_buffers)
            pool_state.staging_buffers.pop(smallest_size).destroy()

        pool_state.staging_buffers[rounded_size] = (
            pool_state.device.wgpu_device.create_buffer(
                size=rounded_size,
                usage=wgpu.BufferUsage.MAP_READ | wgpu.BufferUsage.COPY_DST,
            )
        )

    return pool_state.staging_buffers[rounded_size]


def staging_pool_download(
    pool_state: StagingPool, gpu_buffer: GPUBuffer, count: Optional[int] = None
) -> np.ndarray:
    """Download the first `count` elements of a buffer.

    This is a synchronization point: it waits for all work submitted to the
    queue so far, including work writing `gpu_buffer`.

    Args:
        pool_state: Staging pool state (may be mutated if new staging buffer created)
        gpu_buffer: Source GPU buffer
        count: Number of elements to read (default: whole buffer)

    Returns:
        Flat float32 numpy array
    """
    if count is None:
        count = gpu_buffer.size
    size_bytes = count * BYTES_PER_ELEMENT
    staging = INTERNAL__get_staging_buffer(pool_state, size_bytes)

    wgpu_device = pool_state.device.wgpu_device
    encoder = wgpu_device.create_command_encoder()
    encoder.copy_buffer_to_buffer(gpu_buffer.buffer, 0, staging, 0, size_bytes)
    wgpu_device.queue.submit([encoder.finish()])

    staging.map_sync(wgpu.MapMode.READ)
    try:
        data = np.frombuffer(
            staging.read_mapped(), dtype=np.float32, count=count
        ).copy()
    finally:
        staging.unmap()

    return data


def staging_pool_clear(pool_state: StagingPool) -> None:
    """Destroy all staging buffers (mutation)."""
    for buffer in pool_state.staging_buffers.values():
        buffer.destroy()
    pool_state.staging_buffers.clear()
