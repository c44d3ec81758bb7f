import numpy as np
import pytest

from wgpu_batched import BackendFailure, BatchedMatrix, GPUConfig
from wgpu_batched.gpu_types import Device

# ============================================================================
# HOST BACKEND
# ============================================================================


class HostBuffer:
    def __init__(self, size):
        self.size = size
        self.data = np.zeros(size, dtype=np.float64)


class HostBackend:
    """float64 numpy stand-in for a device backend, with call accounting"""

    def __init__(self, fail_allocate_after=None, fail_kernels=False):
        self.live = set()
        self.release_count = 0
        self.calls = []
        self.fail_allocate_after = fail_allocate_after
        self.fail_kernels = fail_kernels
        self.allocations = 0

    def allocate(self, size):
        if self.fail_allocate_after is not None and self.allocations >= self.fail_allocate_after:
            raise BackendFailure("out of device memory")
        self.allocations += 1
        handle = HostBuffer(size)
        self.live.add(handle)
        return handle

    def release(self, handle):
        assert handle in self.live, "buffer released twice or never allocated"
        self.live.remove(handle)
        self.release_count += 1

    def upload(self, handle, data):
        data = np.asarray(data, dtype=np.float64).ravel()
        handle.data[: data.size] = data

    def download(self, handle, count):
        return handle.data[:count].copy()

    def gemm(self, a, b, out, m, n, k, transpose_a, transpose_b, alpha, beta, c=None):
        self.calls.append(("gemm", len(a)))
        if self.fail_kernels:
            raise BackendFailure("kernel failed")
        for i in range(len(a)):
            A = a[i].data[: m * k].reshape((k, m) if transpose_a else (m, k))
            B = b[i].data[: k * n].reshape((n, k) if transpose_b else (k, n))
            if transpose_a:
                A = A.T
            if transpose_b:
                B = B.T
            result = alpha * (A @ B)
            if beta != 0.0:
                result = result + beta * c[i].data[: m * n].reshape(m, n)
            out[i].data[: m * n] = result.ravel()

    def elementwise(self, op, a, b, out, size):
        self.calls.append((op, len(a)))
        if self.fail_kernels:
            raise BackendFailure("kernel failed")
        for x, y, z in zip(a, b, out):
            if op == "add":
                z.data[:size] = x.data[:size] + y.data[:size]
            else:
                z.data[:size] = x.data[:size] - y.data[:size]


@pytest.fixture
def backend():
    return HostBackend()


@pytest.fixture
def make_batch():
    """Upload a list of matrices (or one matrix repeated) as an owning batch"""

    def _make(backend, matrices, repeat=None):
        if repeat is not None:
            matrices = [np.asarray(matrices)] * repeat
        return BatchedMatrix.from_numpy(backend, matrices)

    return _make


# ============================================================================
# RECORDING WGPU DEVICE
# ============================================================================


class FakeWGPUBuffer:
    def __init__(self, size, usage=0, data=None):
        self.size = size
        self.usage = usage
        self.data = data
        self.destroyed = False
        self.mapped = False

    def map_sync(self, mode, offset=None, size=None):
        self.mapped = True

    def read_mapped(self, buffer_offset=None, size=None, copy=True):
        return memoryview(np.arange(self.size // 4, dtype=np.float32).tobytes())

    def unmap(self):
        self.mapped = False

    def destroy(self):
        self.destroyed = True


class FakeComputePass:
    def __init__(self, log):
        self.log = log

    def set_pipeline(self, pipeline):
        self.log.append(("set_pipeline", pipeline))

    def set_bind_group(self, index, bind_group):
        self.log.append(("set_bind_group", index))

    def dispatch_workgroups(self, x, y=1, z=1):
        self.log.append(("dispatch", x, y, z))

    def end(self):
        self.log.append(("end_pass",))


class FakeEncoder:
    def __init__(self):
        self.log = []

    def copy_buffer_to_buffer(self, src, src_offset, dst, dst_offset, size):
        self.log.append(("copy", src, src_offset, dst, dst_offset, size))

    def begin_compute_pass(self):
        return FakeComputePass(self.log)

    def finish(self):
        return self.log


class FakePipeline:
    def get_bind_group_layout(self, index):
        return ("layout", index)


class FakeQueue:
    def __init__(self):
        self.submissions = []
        self.writes = []

    def submit(self, command_buffers):
        self.submissions.append(list(command_buffers))

    def write_buffer(self, buffer, offset, data):
        self.writes.append((buffer, offset, np.array(data)))


class FakeWGPUDevice:
    """Records what the batch layer encodes instead of running it"""

    def __init__(self):
        self.queue = FakeQueue()
        self.created = []
        self.uniforms = []
        self.shaders = []
        self.bind_groups = []

    def create_buffer(self, *, size, usage, mapped_at_creation=False):
        buffer = FakeWGPUBuffer(size, usage)
        self.created.append(buffer)
        return buffer

    def create_buffer_with_data(self, *, data, usage):
        data = np.array(data)
        buffer = FakeWGPUBuffer(data.nbytes, usage, data)
        self.uniforms.append(buffer)
        return buffer

    def create_shader_module(self, *, code):
        self.shaders.append(code)
        return code

    def create_compute_pipeline(self, *, layout, compute):
        return FakePipeline()

    def create_bind_group(self, *, layout, entries):
        self.bind_groups.append(entries)
        return entries

    def create_command_encoder(self):
        return FakeEncoder()


@pytest.fixture
def fake_device():
    pytest.importorskip("wgpu")
    return Device(wgpu_device=FakeWGPUDevice(), config=GPUConfig())


# ============================================================================
# REAL WGPU BACKEND
# ============================================================================


@pytest.fixture(scope="module")
def gpu_backend():
    pytest.importorskip("wgpu")
    from wgpu_batched import WGPUBackend

    try:
        backend = WGPUBackend.open(GPUConfig())
    except BackendFailure as e:
        pytest.skip(f"no WGPU adapter: {e}")
    yield backend
    backend.close()
