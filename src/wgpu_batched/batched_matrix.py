"""Batched dense matrices and their arithmetic

A BatchedMatrix is an ordered batch of equally shaped (rows, cols) matrices,
one buffer per batch element, stored row-major. Arithmetic on a batch is one
backend call for the whole batch and returns a new batch that owns freshly
allocated buffers.
"""

import logging
import weakref
from typing import Any, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np

from .gpu_errors import BackendMismatch, BatchReleased, DimensionMismatch, OutOfRange
from .gpu_types import BatchedBackend

logger = logging.getLogger(__name__)


def _release_buffers(backend: BatchedBackend, buffers: Sequence[Any]) -> None:
    for handle in buffers:
        backend.release(handle)


def _allocate_buffers(backend: BatchedBackend, count: int, size: int) -> List[Any]:
    """Allocate `count` buffers; on failure release the ones already taken"""
    buffers = []
    try:
        for _ in range(count):
            buffers.append(backend.allocate(size))
    except Exception:
        _release_buffers(backend, buffers)
        raise
    return buffers


class BatchedMatrix:
    """
    Batch of equally shaped dense matrices, one buffer per element.

    OWNERSHIP:
    - owns=False (default): buffers belong to the caller and are never released here
    - owns=True: buffers are released exactly once, by release(), by leaving a
      `with` block, or when the object is garbage collected

    Batches and their backend are used from one thread; release, including
    the garbage-collection path, is not synchronized. Buffers still owned at
    interpreter exit are left to the backend teardown.

    Buffers are not checked against the shape unless `checked` is set (or the
    backend config sets checked_buffers); an undersized buffer in an unchecked
    batch is the caller's error and surfaces from the backend.

    Args:
        buffers: One buffer handle per batch element, in batch order
        shape: (rows, cols) shared by every element
        backend: Backend that created the buffers and runs the kernels
        owns: Whether this batch releases the buffers
        checked: Raise OutOfRange if a buffer holds fewer than rows * cols elements

    Raises:
        DimensionMismatch: If buffers is empty or shape is not two positive ints
        OutOfRange: If checked and a buffer is too small
    """

    def __init__(
        self,
        buffers: Sequence[Any],
        shape: Tuple[int, int],
        backend: BatchedBackend,
        *,
        owns: bool = False,
        checked: Optional[bool] = None,
    ):
        if len(shape) != 2:
            raise DimensionMismatch(f"Shape must be (rows, cols), got {shape}")
        rows, cols = int(shape[0]), int(shape[1])
        if rows <= 0 or cols <= 0:
            raise DimensionMismatch(f"Shape must be positive, got ({rows}, {cols})")

        buffers = tuple(buffers)
        if not buffers:
            raise DimensionMismatch("A batch needs at least one buffer")

        if checked is None:
            config = getattr(backend, "config", None)
            checked = bool(getattr(config, "checked_buffers", False))

        if checked:
            for i, handle in enumerate(buffers):
                if handle.size < rows * cols:
                    raise OutOfRange(
                        f"Buffer {i} holds {handle.size} elements, "
                        f"shape ({rows}, {cols}) needs {rows * cols}"
                    )

        self._shape = (rows, cols)
        self._buffers: Optional[Tuple[Any, ...]] = buffers
        self._backend = backend
        self._owns = owns
        self._finalizer = (
            weakref.finalize(self, _release_buffers, backend, buffers) if owns else None
        )
        if self._finalizer is not None:
            self._finalizer.atexit = False

    # ========================================================================
    # CONSTRUCTION FROM / TO HOST
    # ========================================================================

    @classmethod
    def from_numpy(
        cls,
        backend: BatchedBackend,
        arrays: Union[np.ndarray, Sequence[np.ndarray]],
    ) -> "BatchedMatrix":
        """Upload host matrices into a new owning batch.

        Args:
            backend: Backend to allocate on
            arrays: (batch, rows, cols) array, or a sequence of equally shaped 2-D arrays

        Raises:
            DimensionMismatch: If arrays are not 2-D, differ in shape, or are empty
        """
        matrices = [np.asarray(x) for x in arrays]
        if not matrices:
            raise DimensionMismatch("A batch needs at least one matrix")

        shape = matrices[0].shape
        for i, x in enumerate(matrices):
            if x.ndim != 2:
                raise DimensionMismatch(f"Matrix {i} is {x.ndim}-D, expected 2-D")
            if x.shape != shape:
                raise DimensionMismatch(
                    f"Matrix {i} has shape {x.shape}, batch shape is {shape}"
                )
        if shape[0] <= 0 or shape[1] <= 0:
            raise DimensionMismatch(f"Shape must be positive, got {shape}")

        buffers = _allocate_buffers(backend, len(matrices), shape[0] * shape[1])
        try:
            for handle, x in zip(buffers, matrices):
                backend.upload(handle, np.ascontiguousarray(x).ravel())
            return cls(buffers, shape, backend, owns=True)
        except Exception:
            _release_buffers(backend, buffers)
            raise

    def to_numpy(self) -> np.ndarray:
        """Download the batch as a (batch, rows, cols) array.

        This waits for every queued operation writing these buffers.
        """
        buffers = self._live_buffers()
        rows, cols = self._shape
        return np.stack(
            [
                np.asarray(self._backend.download(handle, rows * cols)).reshape(
                    rows, cols
                )
                for handle in buffers
            ]
        )

    # ========================================================================
    # ACCESSORS
    # ========================================================================

    @property
    def shape(self) -> Tuple[int, int]:
        return self._shape

    @property
    def rows(self) -> int:
        return self._shape[0]

    @property
    def cols(self) -> int:
        return self._shape[1]

    @property
    def batch_size(self) -> int:
        return len(self._live_buffers())

    @property
    def buffers(self) -> Tuple[Any, ...]:
        """Buffer handles in construction order"""
        return self._live_buffers()

    @property
    def backend(self) -> BatchedBackend:
        return self._backend

    @property
    def owns(self) -> bool:
        return self._owns

    @property
    def released(self) -> bool:
        return self._buffers is None

    def __len__(self) -> int:
        return self.batch_size

    def __getitem__(self, index: int) -> Any:
        return self._live_buffers()[index]

    def __iter__(self) -> Iterator[Any]:
        return iter(self._live_buffers())

    def __repr__(self) -> str:
        state = "released" if self.released else f"batch_size={len(self._buffers)}"
        return (
            f"BatchedMatrix(shape={self._shape}, {state}, "
            f"owns={self._owns})"
        )

    def _live_buffers(self) -> Tuple[Any, ...]:
        if self._buffers is None:
            raise BatchReleased("BatchedMatrix buffers have been released")
        return self._buffers

    # ========================================================================
    # LIFETIME
    # ========================================================================

    def release(self) -> None:
        """Release owned buffers; drop references to borrowed ones. Idempotent."""
        if self._buffers is None:
            return
        self._buffers = None
        if self._finalizer is not None:
            # finalize runs its callback at most once
            self._finalizer()

    def __enter__(self) -> "BatchedMatrix":
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()

    # ========================================================================
    # OPERATORS
    # ========================================================================

    def __add__(self, other: "BatchedMatrix") -> "BatchedMatrix":
        if not isinstance(other, BatchedMatrix):
            return NotImplemented
        return b_add(self, other)

    def __sub__(self, other: "BatchedMatrix") -> "BatchedMatrix":
        if not isinstance(other, BatchedMatrix):
            return NotImplemented
        return b_sub(self, other)

    def __mul__(self, other: "BatchedMatrix") -> "BatchedMatrix":
        if not isinstance(other, BatchedMatrix):
            return NotImplemented
        return b_matmul(self, other)

    __matmul__ = __mul__


# ============================================================================
# VALIDATION
# ============================================================================


def _common_backend(*operands: BatchedMatrix) -> BatchedBackend:
    backend = operands[0].backend
    for operand in operands[1:]:
        if operand.backend is not backend:
            raise BackendMismatch("Operands belong to different backends")
    return backend


def _check_batch_sizes(name: str, *operands: BatchedMatrix) -> int:
    sizes = [operand.batch_size for operand in operands]
    if len(set(sizes)) != 1:
        raise DimensionMismatch(f"{name}: batch sizes differ {sizes}")
    return sizes[0]


def _new_result(
    backend: BatchedBackend, batch_size: int, shape: Tuple[int, int]
) -> BatchedMatrix:
    buffers = _allocate_buffers(backend, batch_size, shape[0] * shape[1])
    logger.debug("allocated result batch of %d x %s", batch_size, shape)
    return BatchedMatrix(buffers, shape, backend, owns=True, checked=False)


# ============================================================================
# BATCHED OPERATIONS
# ============================================================================


def b_gemm(
    a: BatchedMatrix,
    b: BatchedMatrix,
    transpose_a: bool = False,
    transpose_b: bool = False,
    alpha: float = 1.0,
    beta: float = 0.0,
    c: Optional[BatchedMatrix] = None,
) -> BatchedMatrix:
    """Generalized batched multiply.

    result[i] = alpha * op(a[i]) @ op(b[i]) + beta * c[i], where op transposes
    when the matching flag is set. Dimensions are checked on the transposed
    shapes. `c` is required when beta != 0 and is only read.

    Returns:
        New owning batch of shape (rows of op(a), cols of op(b))

    Raises:
        DimensionMismatch: Inner dimensions, batch sizes or accumulator shape disagree
        BackendMismatch: Operands belong to different backends
        BackendFailure: The backend failed; no output buffers are leaked
    """
    a_rows, a_cols = a.shape
    b_rows, b_cols = b.shape
    m, k = (a_cols, a_rows) if transpose_a else (a_rows, a_cols)
    k2, n = (b_cols, b_rows) if transpose_b else (b_rows, b_cols)

    operands = [a, b]
    if beta != 0.0:
        if c is None:
            raise DimensionMismatch("b_gemm: beta != 0 requires an accumulator batch c")
        if c.shape != (m, n):
            raise DimensionMismatch(
                f"b_gemm: accumulator shape {c.shape} != result shape {(m, n)}"
            )
        operands.append(c)

    backend = _common_backend(*operands)
    batch_size = _check_batch_sizes("b_gemm", *operands)

    if k != k2:
        raise DimensionMismatch(
            f"b_gemm: inner dimensions differ, op(a) is {(m, k)}, op(b) is {(k2, n)}"
        )

    result = _new_result(backend, batch_size, (m, n))
    try:
        backend.gemm(
            a.buffers,
            b.buffers,
            result.buffers,
            m,
            n,
            k,
            transpose_a,
            transpose_b,
            alpha,
            beta,
            c.buffers if beta != 0.0 else None,
        )
    except Exception:
        result.release()
        raise

    return result


def b_matmul(a: BatchedMatrix, b: BatchedMatrix) -> BatchedMatrix:
    """result[i] = a[i] @ b[i]"""
    return b_gemm(a, b)


def _elementwise(op: str, a: BatchedMatrix, b: BatchedMatrix) -> BatchedMatrix:
    backend = _common_backend(a, b)
    batch_size = _check_batch_sizes(f"b_{op}", a, b)
    if a.shape != b.shape:
        raise DimensionMismatch(f"b_{op}: shapes differ {a.shape} != {b.shape}")

    result = _new_result(backend, batch_size, a.shape)
    try:
        backend.elementwise(op, a.buffers, b.buffers, result.buffers, a.rows * a.cols)
    except Exception:
        result.release()
        raise

    return result


def b_add(a: BatchedMatrix, b: BatchedMatrix) -> BatchedMatrix:
    """result[i] = a[i] + b[i]"""
    return _elementwise("add", a, b)


def b_sub(a: BatchedMatrix, b: BatchedMatrix) -> BatchedMatrix:
    """result[i] = a[i] - b[i]"""
    return _elementwise("sub", a, b)
