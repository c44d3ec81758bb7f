"""Error types raised by batched matrix operations"""


class BatchedMatrixError(Exception):
    """Base class for all errors raised by this package"""


class DimensionMismatch(BatchedMatrixError, ValueError):
    """Operand shapes or batch sizes disagree, or a shape is invalid"""


class OutOfRange(BatchedMatrixError, IndexError):
    """A caller-supplied buffer is shorter than its declared shape requires"""


class BackendFailure(BatchedMatrixError, RuntimeError):
    """The numeric backend failed: allocation, device state or kernel error"""


class BatchReleased(BatchedMatrixError, RuntimeError):
    """A batch was used after its buffers were released"""


class BackendMismatch(BatchedMatrixError, ValueError):
    """Operands belong to different backend instances"""
