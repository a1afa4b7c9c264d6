from __future__ import annotations

import math
from typing import Callable, Optional, Sequence, Tuple, Union

import numpy as np

from .errors import IndexOutOfRangeError, ShapeMismatchError, UnsupportedOptionError

Arrayable = Union[Sequence[float], Sequence[Sequence[float]], np.ndarray]


def _as_2d(rows: int, cols: int, data: Optional[Arrayable]) -> np.ndarray:
    if rows <= 0 or cols <= 0:
        raise ShapeMismatchError(f"Tensor dimensions must be positive, got {rows}x{cols}")
    if data is None:
        return np.zeros((rows, cols), dtype=np.float64)
    arr = np.asarray(data, dtype=np.float64)
    if arr.size != rows * cols:
        raise ShapeMismatchError(
            f"Cannot build a {rows}x{cols} tensor from {arr.size} values")
    if arr.ndim == 2 and arr.shape != (rows, cols):
        raise ShapeMismatchError(f"Data of shape {arr.shape} does not match {rows}x{cols}")
    # copy so the tensor never aliases caller-owned memory
    return arr.reshape(rows, cols).copy()


def zeros(rows: int, cols: int) -> 'Tensor':
    return Tensor(rows, cols)


def ones(rows: int, cols: int) -> 'Tensor':
    return Tensor(rows, cols, np.ones((rows, cols)))


def full(rows: int, cols: int, value: float) -> 'Tensor':
    return Tensor(rows, cols, np.full((rows, cols), float(value)))


def randn(rows: int, cols: int, scale: float = 1.0,
          rng: Optional[np.random.Generator] = None) -> 'Tensor':
    rng = rng if rng is not None else np.random.default_rng()
    return Tensor(rows, cols, rng.standard_normal((rows, cols)) * scale)


def rand(rows: int, cols: int, rng: Optional[np.random.Generator] = None) -> 'Tensor':
    rng = rng if rng is not None else np.random.default_rng()
    return Tensor(rows, cols, rng.random((rows, cols)))


class Tensor:
    """
    Dense row-major 2-D grid of float64 values.

    Elementwise binary operations require identical shapes and fail fast with
    ShapeMismatchError otherwise. Operations return a new Tensor unless
    ``inplace=True`` is passed, in which case the receiver is mutated and
    returned.
    """

    def __init__(self, rows: int, cols: int, data: Optional[Arrayable] = None):
        self.data: np.ndarray = _as_2d(int(rows), int(cols), data)

    @classmethod
    def from_array(cls, arr: Arrayable) -> 'Tensor':
        arr = np.asarray(arr, dtype=np.float64)
        if arr.ndim == 1:
            arr = arr.reshape(1, -1)
        if arr.ndim != 2:
            raise ShapeMismatchError(f"Expected a 2-D array, got {arr.ndim} dimensions")
        return cls(arr.shape[0], arr.shape[1], arr)

    # ----- utility -----
    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape

    @property
    def rows(self) -> int:
        return self.data.shape[0]

    @property
    def cols(self) -> int:
        return self.data.shape[1]

    @property
    def size(self) -> int:
        return self.data.size

    def copy(self) -> 'Tensor':
        return Tensor(self.rows, self.cols, self.data)

    def to_numpy(self) -> np.ndarray:
        return self.data.copy()

    def sum(self) -> float:
        return float(self.data.sum())

    def mean(self) -> float:
        return float(self.data.mean())

    def max(self) -> float:
        return float(self.data.max())

    def min(self) -> float:
        return float(self.data.min())

    def is_finite(self) -> bool:
        return bool(np.all(np.isfinite(self.data)))

    def equals(self, other: 'Tensor') -> bool:
        return self.shape == other.shape and bool(np.array_equal(self.data, other.data))

    def allclose(self, other: 'Tensor', atol: float = 1e-8) -> bool:
        return self.shape == other.shape and bool(np.allclose(self.data, other.data, atol=atol))

    def __repr__(self) -> str:
        return f"Tensor(shape={self.shape}, data={self.data!r})"

    # ----- element access -----
    def _check_index(self, i: int, j: int):
        if not (0 <= i < self.rows and 0 <= j < self.cols):
            raise IndexOutOfRangeError(
                f"Index ({i}, {j}) out of range for tensor of shape {self.shape}")

    def get(self, i: int, j: int) -> float:
        self._check_index(i, j)
        return float(self.data[i, j])

    def set(self, i: int, j: int, value: float):
        self._check_index(i, j)
        self.data[i, j] = value

    # ----- helpers -----
    def _check_same_shape(self, other: 'Tensor', op: str):
        if self.shape != other.shape:
            raise ShapeMismatchError(f"{op}: shape {self.shape} does not match {other.shape}")

    def _result(self, values: np.ndarray, inplace: bool) -> 'Tensor':
        if inplace:
            self.data[...] = values
            return self
        return Tensor(self.rows, self.cols, values)

    # ----- elementwise ops -----
    def add(self, other: 'Tensor', inplace: bool = False) -> 'Tensor':
        self._check_same_shape(other, 'add')
        return self._result(self.data + other.data, inplace)

    def sub(self, other: 'Tensor', inplace: bool = False) -> 'Tensor':
        self._check_same_shape(other, 'sub')
        return self._result(self.data - other.data, inplace)

    def elementwise_mul(self, other: 'Tensor', inplace: bool = False) -> 'Tensor':
        self._check_same_shape(other, 'elementwise_mul')
        return self._result(self.data * other.data, inplace)

    def scale(self, scalar: float, inplace: bool = False) -> 'Tensor':
        return self._result(self.data * scalar, inplace)

    def add_constant(self, constant: float, inplace: bool = False) -> 'Tensor':
        return self._result(self.data + constant, inplace)

    def elementwise_sqrt(self, inplace: bool = False) -> 'Tensor':
        return self._result(np.sqrt(self.data), inplace)

    def apply_function(self, f: Callable[[int, int, float], float],
                       inplace: bool = False) -> 'Tensor':
        out = np.empty_like(self.data)
        for i in range(self.rows):
            for j in range(self.cols):
                out[i, j] = f(i, j, float(self.data[i, j]))
        return self._result(out, inplace)

    # ----- linear algebra and shapes -----
    def matmul(self, other: 'Tensor') -> 'Tensor':
        if self.cols != other.rows:
            raise ShapeMismatchError(f"matmul: {self.shape} @ {other.shape}")
        return Tensor.from_array(self.data @ other.data)

    def transpose(self) -> 'Tensor':
        return Tensor.from_array(self.data.T)

    def slice(self, row_start: int, row_end: int, col_start: int, col_end: int) -> 'Tensor':
        if not (0 <= row_start < row_end <= self.rows and 0 <= col_start < col_end <= self.cols):
            raise IndexOutOfRangeError(
                f"Slice [{row_start}:{row_end}, {col_start}:{col_end}] outside {self.shape}")
        return Tensor.from_array(self.data[row_start:row_end, col_start:col_end])

    def concatenate(self, other: 'Tensor', axis: int) -> 'Tensor':
        """
        Stack ``other`` below (axis 0) or to the right of (axis 1) this tensor.
        The size along the other axis must match.
        """
        if axis == 0:
            if self.cols != other.cols:
                raise ShapeMismatchError(
                    f"concatenate(axis=0): {self.cols} columns vs {other.cols}")
        elif axis == 1:
            if self.rows != other.rows:
                raise ShapeMismatchError(
                    f"concatenate(axis=1): {self.rows} rows vs {other.rows}")
        else:
            raise UnsupportedOptionError(f"concatenate axis must be 0 or 1, got {axis}")
        return Tensor.from_array(np.concatenate([self.data, other.data], axis=axis))

    def resize(self, new_rows: int, new_cols: int) -> 'Tensor':
        """
        Bilinear resize.

        For each output cell the fractional source coordinate is
        ``i * (src - 1) / (dst - 1)``; the four neighbouring source cells are
        clamped at the upper boundary and blended with bilinear weights.
        """
        if new_rows <= 0 or new_cols <= 0:
            raise ShapeMismatchError(f"Cannot resize to {new_rows}x{new_cols}")
        if (new_rows, new_cols) == self.shape:
            return self.copy()
        out = np.zeros((new_rows, new_cols), dtype=np.float64)
        for i, (y0, y1, dy) in enumerate(_bilinear_taps(self.rows, new_rows)):
            for j, (x0, x1, dx) in enumerate(_bilinear_taps(self.cols, new_cols)):
                out[i, j] = ((1 - dy) * (1 - dx) * self.data[y0, x0]
                             + (1 - dy) * dx * self.data[y0, x1]
                             + dy * (1 - dx) * self.data[y1, x0]
                             + dy * dx * self.data[y1, x1])
        return Tensor(new_rows, new_cols, out)


def _bilinear_taps(src: int, dst: int):
    """(low index, high index, fractional weight) for every destination index"""
    scale = (src - 1) / (dst - 1) if dst > 1 else 0.0
    taps = []
    for i in range(dst):
        pos = i * scale
        lo = min(int(math.floor(pos)), src - 1)
        hi = min(lo + 1, src - 1)
        taps.append((lo, hi, pos - lo))
    return taps


def resize_adjoint(grad: Tensor, src_rows: int, src_cols: int) -> Tensor:
    """
    Transpose of ``Tensor.resize``: scatter a gradient taken at the resized
    shape back onto the ``src_rows x src_cols`` source grid.
    """
    if grad.shape == (src_rows, src_cols):
        return grad.copy()
    out = np.zeros((src_rows, src_cols), dtype=np.float64)
    for i, (y0, y1, dy) in enumerate(_bilinear_taps(src_rows, grad.rows)):
        for j, (x0, x1, dx) in enumerate(_bilinear_taps(src_cols, grad.cols)):
            g = grad.data[i, j]
            out[y0, x0] += (1 - dy) * (1 - dx) * g
            out[y0, x1] += (1 - dy) * dx * g
            out[y1, x0] += dy * (1 - dx) * g
            out[y1, x1] += dy * dx * g
    return Tensor(src_rows, src_cols, out)
