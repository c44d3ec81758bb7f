import numpy as np
import pytest

from wgpu_batched import (
    BackendFailure,
    BatchedMatrix,
    GPUConfig,
    WGPUBackend,
    b_gemm,
)

# ============================================================================
# BACKEND CONTEXT (recording device)
# ============================================================================


def test_allocate_and_release_go_through_pool(fake_device):
    backend = WGPUBackend(fake_device)
    handle = backend.allocate(16)

    assert handle.size == 16
    assert id(handle.buffer) in backend.buffer_pool.in_use

    backend.release(handle)
    assert backend.buffer_pool.in_use == set()
    assert backend.allocate(16).buffer is handle.buffer


def test_double_release_is_a_backend_failure(fake_device):
    backend = WGPUBackend(fake_device)
    handle = backend.allocate(4)
    backend.release(handle)

    with pytest.raises(BackendFailure, match="already released"):
        backend.release(handle)


def test_memory_limit_is_a_backend_failure():
    pytest.importorskip("wgpu")
    from conftest import FakeWGPUDevice
    from wgpu_batched.gpu_types import Device

    device = Device(wgpu_device=FakeWGPUDevice(), config=GPUConfig(buffer_pool_max_mb=1))
    backend = WGPUBackend(device)

    with pytest.raises(BackendFailure, match="memory limit") as info:
        backend.allocate(2 * 1024 * 1024)
    assert isinstance(info.value.__cause__, MemoryError)


def test_upload_writes_float32(fake_device):
    backend = WGPUBackend(fake_device)
    handle = backend.allocate(4)
    backend.upload(handle, np.array([[1.0, 2.0], [3.0, 4.0]]))

    buffer, offset, data = fake_device.wgpu_device.queue.writes[-1]
    assert buffer is handle.buffer
    assert offset == 0
    assert data.dtype == np.float32
    np.testing.assert_array_equal(data, [1, 2, 3, 4])


def test_download_reuses_staging_buffer(fake_device):
    backend = WGPUBackend(fake_device)
    handle = backend.allocate(6)

    first = backend.download(handle, 6)
    second = backend.download(handle, 5)

    np.testing.assert_array_equal(first, np.arange(6, dtype=np.float32))
    np.testing.assert_array_equal(second, np.arange(5, dtype=np.float32))
    assert len(backend.staging_pool.staging_buffers) == 1


def test_kernel_errors_become_backend_failures(fake_device):
    backend = WGPUBackend(fake_device)

    def broken_bind_group(**kwargs):
        raise RuntimeError("validation error")

    fake_device.wgpu_device.create_bind_group = broken_bind_group
    x = BatchedMatrix.from_numpy(backend, [np.eye(2)] * 2)
    live = set(backend.buffer_pool.in_use)

    with pytest.raises(BackendFailure, match="batched_add failed") as info:
        x + x
    assert isinstance(info.value.__cause__, RuntimeError)
    assert backend.buffer_pool.in_use == live


def test_batched_matrix_ops_are_one_submission_each(fake_device):
    backend = WGPUBackend(fake_device)
    a = BatchedMatrix.from_numpy(backend, [np.ones((2, 3))] * 4)
    b = BatchedMatrix.from_numpy(backend, [np.ones((3, 5))] * 4)

    product = a * b
    total = product + product
    transposed = b_gemm(b, b, transpose_b=True)

    assert product.shape == (2, 5)
    assert total.shape == (2, 5)
    assert transposed.shape == (3, 3)
    stats = backend.stats()
    assert stats.total_submissions == 3
    assert stats.dispatch_counts == {"batched_gemm": 2, "batched_add": 1}

    backend.reset_stats()
    assert backend.stats().total_dispatches == 0


def test_closed_backend_rejects_work_but_accepts_release(fake_device):
    backend = WGPUBackend(fake_device)
    batch = BatchedMatrix.from_numpy(backend, [np.eye(2)])
    handle = batch[0]

    backend.close()
    backend.close()

    with pytest.raises(BackendFailure, match="closed"):
        backend.allocate(4)
    with pytest.raises(BackendFailure, match="closed"):
        batch * batch
    batch.release()
    assert handle.buffer.destroyed


def test_elementwise_rejects_unknown_op(fake_device):
    backend = WGPUBackend(fake_device)
    with pytest.raises(ValueError, match="Unsupported"):
        backend.elementwise("mul", [], [], [], 1)


# ============================================================================
# REAL DEVICE
# ============================================================================

F32_ATOL = 1e-6
F32_RTOL = 1e-5

A = np.array([[0.22814838, 0.32118359], [0.92204276, 0.28488466]])
B = np.array([[0.1741319, 0.21628607], [0.19051178, 0.35775104]])
Z = np.array([[0.11387309, 0.21870136]])


def _close(result, expected):
    np.testing.assert_allclose(result, expected, atol=F32_ATOL, rtol=F32_RTOL)


@pytest.mark.gpu
def test_gpu_reference_scenario(gpu_backend):
    a = BatchedMatrix.from_numpy(gpu_backend, [A] * 3)
    b = BatchedMatrix.from_numpy(gpu_backend, [B] * 3)
    z = BatchedMatrix.from_numpy(gpu_backend, [Z] * 3)

    _close((a * b).to_numpy(), np.stack([A @ B] * 3))
    _close((z * b).to_numpy(), np.stack([Z @ B] * 3))
    _close(b_gemm(b, z, False, True).to_numpy(), np.stack([B @ Z.T] * 3))
    _close((a + b).to_numpy(), np.stack([A + B] * 3))
    _close((a - b).to_numpy(), np.stack([A - B] * 3))


@pytest.mark.gpu
@pytest.mark.parametrize("transpose_a", [False, True])
@pytest.mark.parametrize("transpose_b", [False, True])
def test_gpu_gemm_random(gpu_backend, transpose_a, transpose_b):
    rng = np.random.default_rng(4)
    batch, m, k, n = 5, 19, 33, 17
    xs = rng.standard_normal((batch, k, m) if transpose_a else (batch, m, k)).astype(np.float32)
    ys = rng.standard_normal((batch, n, k) if transpose_b else (batch, k, n)).astype(np.float32)
    cs = rng.standard_normal((batch, m, n)).astype(np.float32)

    result = b_gemm(
        BatchedMatrix.from_numpy(gpu_backend, xs),
        BatchedMatrix.from_numpy(gpu_backend, ys),
        transpose_a,
        transpose_b,
        alpha=0.5,
        beta=2.0,
        c=BatchedMatrix.from_numpy(gpu_backend, cs),
    )

    op_x = xs.transpose(0, 2, 1) if transpose_a else xs
    op_y = ys.transpose(0, 2, 1) if transpose_b else ys
    np.testing.assert_allclose(
        result.to_numpy(), 0.5 * op_x @ op_y + 2.0 * cs, atol=1e-4, rtol=1e-4
    )


@pytest.mark.gpu
def test_gpu_one_dispatch_per_operation(gpu_backend):
    xs = np.random.default_rng(5).standard_normal((8, 4, 4))
    x = BatchedMatrix.from_numpy(gpu_backend, xs)
    gpu_backend.reset_stats()

    x * x
    x - x

    stats = gpu_backend.stats()
    assert stats.total_submissions == 2
    assert stats.dispatch_counts == {"batched_gemm": 1, "batched_sub": 1}


@pytest.mark.gpu
def test_gpu_wrapping_caller_buffers(gpu_backend):
    from wgpu_batched import create_gpu_buffer, destroy_gpu_buffer

    device = gpu_backend.device
    raw = [create_gpu_buffer(device, 4, np.full(4, float(i))) for i in range(3)]
    try:
        batch = BatchedMatrix(raw, (2, 2), gpu_backend)
        doubled = (batch + batch).to_numpy()
        for i in range(3):
            _close(doubled[i], np.full((2, 2), 2.0 * i))
        batch.release()
        doubled_again = BatchedMatrix(raw, (2, 2), gpu_backend).to_numpy()
        _close(doubled_again[2], np.full((2, 2), 2.0))
    finally:
        for handle in raw:
            destroy_gpu_buffer(handle)
