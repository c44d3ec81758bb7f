"""WGPU backend context for batched matrices"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional, Sequence

import numpy as np

from .gpu_batch import run_batched_elementwise, run_batched_gemm
from .gpu_buffer import (
    pool_clear,
    pool_create,
    pool_release_buffer,
    pool_take_buffer,
    staging_pool_clear,
    staging_pool_create,
    staging_pool_download,
    write_buffer,
)
from .gpu_device import create_device, create_pipeline_cache, destroy_device
from .gpu_errors import BackendFailure, BatchedMatrixError
from .gpu_kernels import ELEMENTWISE_OPS
from .gpu_profiling import create_perf_monitor, get_perf_stats, reset_perf_monitor
from .gpu_types import Device, GPUBuffer, GPUConfig, PerfStats

logger = logging.getLogger(__name__)


@contextmanager
def _backend_errors(action: str) -> Iterator[None]:
    """Re-raise anything wgpu (or the pools) throw as BackendFailure"""
    try:
        yield
    except BatchedMatrixError:
        raise
    except Exception as e:
        raise BackendFailure(f"{action} failed: {e}") from e


class WGPUBackend:
    """
    Explicit backend context: one device plus its pipeline cache, buffer
    pool, staging pool and performance monitor.

    Work is issued to the device queue and runs in issue order; nothing
    blocks until download(). Independent backends share no state and may
    be used side by side.

    Usage:
        with WGPUBackend.open() as backend:
            a = BatchedMatrix.from_numpy(backend, arrays)
    """

    def __init__(self, device: Device, owns_device: bool = False):
        self.device = device
        self.owns_device = owns_device
        self.pipeline_cache = create_pipeline_cache(device)
        self.buffer_pool = pool_create(device)
        self.staging_pool = staging_pool_create(device)
        self.monitor = create_perf_monitor()
        self.closed = False

    @classmethod
    def open(cls, config: Optional[GPUConfig] = None) -> "WGPUBackend":
        """Create a device and a backend that owns it.

        Raises:
            BackendFailure: If no WGPU device can be created
        """
        device = create_device(config)
        if device is None:
            raise BackendFailure("No WGPU device available")
        logger.info("opened WGPU backend")
        return cls(device, owns_device=True)

    @property
    def config(self) -> GPUConfig:
        return self.device.config

    def close(self) -> None:
        """Free pooled memory and, if owned, the device. Idempotent."""
        if self.closed:
            return
        self.closed = True
        pool_clear(self.buffer_pool)
        staging_pool_clear(self.staging_pool)
        if self.owns_device:
            destroy_device(self.device)
        logger.info("closed WGPU backend")

    def __enter__(self) -> "WGPUBackend":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _check_open(self) -> None:
        if self.closed:
            raise BackendFailure("Backend is closed")

    # ========================================================================
    # BUFFER ALLOCATOR
    # ========================================================================

    def allocate(self, size: int) -> GPUBuffer:
        """Take a float32 buffer of `size` elements from the pool."""
        self._check_open()
        with _backend_errors("allocate"):
            return pool_take_buffer(self.buffer_pool, size)

    def release(self, handle: GPUBuffer) -> None:
        """Return a buffer obtained from allocate().

        After close() the pool is gone and the buffer is destroyed directly.
        """
        if self.closed:
            self.buffer_pool.in_use.discard(id(handle.buffer))
            handle.buffer.destroy()
            return
        with _backend_errors("release"):
            pool_release_buffer(self.buffer_pool, handle)

    def upload(self, handle: GPUBuffer, data: np.ndarray) -> None:
        self._check_open()
        with _backend_errors("upload"):
            write_buffer(handle, data)

    def download(self, handle: GPUBuffer, count: int) -> np.ndarray:
        """Read `count` elements back to the host; waits for queued work."""
        self._check_open()
        with _backend_errors("download"):
            return staging_pool_download(self.staging_pool, handle, count)

    # ========================================================================
    # BATCHED KERNELS
    # ========================================================================

    def gemm(
        self,
        a: Sequence[GPUBuffer],
        b: Sequence[GPUBuffer],
        out: Sequence[GPUBuffer],
        m: int,
        n: int,
        k: int,
        transpose_a: bool,
        transpose_b: bool,
        alpha: float,
        beta: float,
        c: Optional[Sequence[GPUBuffer]] = None,
    ) -> None:
        self._check_open()
        with _backend_errors("batched_gemm"):
            run_batched_gemm(
                self.pipeline_cache,
                self.buffer_pool,
                self.monitor,
                a,
                b,
                out,
                m,
                n,
                k,
                transpose_a,
                transpose_b,
                alpha,
                beta,
                c,
            )

    def elementwise(
        self,
        op: str,
        a: Sequence[GPUBuffer],
        b: Sequence[GPUBuffer],
        out: Sequence[GPUBuffer],
        size: int,
    ) -> None:
        if op not in ELEMENTWISE_OPS:
            raise ValueError(f"Unsupported elementwise op: {op!r}")
        self._check_open()
        with _backend_errors(f"batched_{op}"):
            run_batched_elementwise(
                self.pipeline_cache, self.buffer_pool, self.monitor, op, a, b, out, size
            )

    # ========================================================================
    # PROFILING
    # ========================================================================

    def stats(self) -> PerfStats:
        return get_perf_stats(self.monitor)

    def reset_stats(self) -> None:
        reset_perf_monitor(self.monitor)
