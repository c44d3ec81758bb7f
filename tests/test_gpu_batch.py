import numpy as np
import pytest

from wgpu_batched import GPUConfig
from wgpu_batched.gpu_batch import run_batched_elementwise, run_batched_gemm
from wgpu_batched.gpu_buffer import create_gpu_buffer, pool_create
from wgpu_batched.gpu_device import create_pipeline_cache
from wgpu_batched.gpu_profiling import create_perf_monitor, get_perf_stats
from wgpu_batched.gpu_types import Device

from conftest import FakeWGPUDevice


def _state(device):
    return create_pipeline_cache(device), pool_create(device), create_perf_monitor()


def _buffers(device, count, size):
    return [create_gpu_buffer(device, size) for _ in range(count)]


def _log(device):
    (submission,) = device.wgpu_device.queue.submissions
    (commands,) = submission
    return commands


def _params(device):
    return [u.data for u in device.wgpu_device.uniforms]


def test_gemm_is_gather_one_dispatch_scatter(fake_device):
    cache, pool, monitor = _state(fake_device)
    m, k, n = 2, 3, 4
    a = _buffers(fake_device, 3, m * k)
    b = _buffers(fake_device, 3, k * n)
    out = _buffers(fake_device, 3, m * n)

    run_batched_gemm(cache, pool, monitor, a, b, out, m, n, k)

    log = _log(fake_device)
    copies = [entry for entry in log if entry[0] == "copy"]
    dispatches = [entry for entry in log if entry[0] == "dispatch"]

    assert dispatches == [("dispatch", 1, 1, 3)]
    assert len(copies) == 9
    for i in range(3):
        _, src, src_off, _, dst_off, size = copies[i]
        assert (src, src_off, dst_off, size) == (a[i].buffer, 0, i * 24, 24)
        _, _, src_off, dst, dst_off, size = copies[6 + i]
        assert (src_off, dst, dst_off, size) == (i * 32, out[i].buffer, 0, 32)

    stats = get_perf_stats(monitor)
    assert stats.total_submissions == 1
    assert stats.dispatch_counts == {"batched_gemm": 1}
    assert stats.kernel_times["batched_gemm"].count == 1


def test_gemm_params_carry_flags_and_scales(fake_device):
    cache, pool, monitor = _state(fake_device)
    a = _buffers(fake_device, 2, 6)
    b = _buffers(fake_device, 2, 6)
    c = _buffers(fake_device, 2, 4)
    out = _buffers(fake_device, 2, 4)

    run_batched_gemm(cache, pool, monitor, a, b, out, 2, 2, 3, True, False, 2.0, 0.5, c)

    (params,) = _params(fake_device)
    assert list(params[:6]) == [2, 2, 3, 0, 1, 0]
    np.testing.assert_array_equal(params[6:].view(np.float32), [2.0, 0.5])
    copies = [entry for entry in _log(fake_device) if entry[0] == "copy"]
    assert [entry[1] for entry in copies[4:6]] == [h.buffer for h in c]


def test_large_batches_split_along_z_in_one_submission():
    pytest.importorskip("wgpu")
    device = Device(wgpu_device=FakeWGPUDevice(), config=GPUConfig(max_workgroups_per_dim=2))
    cache, pool, monitor = _state(device)
    a = _buffers(device, 5, 4)
    out = _buffers(device, 5, 4)

    run_batched_gemm(cache, pool, monitor, a, a, out, 2, 2, 2)

    dispatches = [entry for entry in _log(device) if entry[0] == "dispatch"]
    assert dispatches == [("dispatch", 1, 1, 2), ("dispatch", 1, 1, 2), ("dispatch", 1, 1, 1)]
    assert [int(p[3]) for p in _params(device)] == [0, 2, 4]
    assert get_perf_stats(monitor).total_submissions == 1


def test_dispatch_limit_returns_scratch():
    pytest.importorskip("wgpu")
    config = GPUConfig(max_workgroups_per_dim=1, max_batch_operations=1)
    device = Device(wgpu_device=FakeWGPUDevice(), config=config)
    cache, pool, monitor = _state(device)
    a = _buffers(device, 2, 1)

    with pytest.raises(RuntimeError, match="dispatch limit"):
        run_batched_gemm(cache, pool, monitor, a, a, _buffers(device, 2, 1), 1, 1, 1)

    assert pool.in_use == set()
    assert device.wgpu_device.queue.submissions == []


def test_elementwise_single_flat_dispatch(fake_device):
    cache, pool, monitor = _state(fake_device)
    a = _buffers(fake_device, 3, 6)
    b = _buffers(fake_device, 3, 6)
    out = _buffers(fake_device, 3, 6)

    run_batched_elementwise(cache, pool, monitor, "sub", a, b, out, 6)

    dispatches = [entry for entry in _log(fake_device) if entry[0] == "dispatch"]
    assert dispatches == [("dispatch", 1, 1, 1)]
    (params,) = _params(fake_device)
    assert list(params) == [18, 256, 0, 0]
    assert "A[idx] - B[idx]" in fake_device.wgpu_device.shaders[0]
    assert get_perf_stats(monitor).dispatch_counts == {"batched_sub": 1}


def test_elementwise_grid_wraps_into_rows():
    pytest.importorskip("wgpu")
    config = GPUConfig(default_workgroup_size=4, max_workgroups_per_dim=2)
    device = Device(wgpu_device=FakeWGPUDevice(), config=config)
    cache, pool, monitor = _state(device)
    a = _buffers(device, 3, 4)

    run_batched_elementwise(cache, pool, monitor, "add", a, a, _buffers(device, 3, 4), 4)

    dispatches = [entry for entry in _log(device) if entry[0] == "dispatch"]
    assert dispatches == [("dispatch", 2, 2, 1)]
    (params,) = _params(device)
    assert list(params[:2]) == [12, 8]


def test_scratch_buffers_are_pooled_between_operations(fake_device):
    cache, pool, monitor = _state(fake_device)
    a = _buffers(fake_device, 2, 4)
    out = _buffers(fake_device, 2, 4)

    run_batched_elementwise(cache, pool, monitor, "add", a, a, out, 4)
    created = len(fake_device.wgpu_device.created)
    run_batched_elementwise(cache, pool, monitor, "add", a, a, out, 4)

    assert len(fake_device.wgpu_device.created) == created
    assert pool.in_use == set()
    assert len(pool.pools[8]) == 3


def test_encoding_failure_returns_scratch(fake_device):
    cache, pool, monitor = _state(fake_device)

    def broken_bind_group(**kwargs):
        raise RuntimeError("validation error")

    fake_device.wgpu_device.create_bind_group = broken_bind_group
    a = _buffers(fake_device, 2, 4)

    with pytest.raises(RuntimeError, match="validation error"):
        run_batched_elementwise(cache, pool, monitor, "add", a, a, _buffers(fake_device, 2, 4), 4)

    assert pool.in_use == set()
    assert fake_device.wgpu_device.queue.submissions == []
    assert get_perf_stats(monitor).total_submissions == 0


def test_pipelines_are_compiled_once(fake_device):
    cache, pool, monitor = _state(fake_device)
    a = _buffers(fake_device, 1, 4)
    for _ in range(3):
        run_batched_gemm(cache, pool, monitor, a, a, _buffers(fake_device, 1, 4), 2, 2, 2)
    assert len(fake_device.wgpu_device.shaders) == 1
