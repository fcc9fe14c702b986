"""
Packed symmetric matrices.

``PackedSymmetricMatrix`` stores an n x n symmetric matrix in n(n+1)/2
float64 entries (upper triangle, column by column):

    idx(i, j) = min(i, j) + max(i, j) * (max(i, j) + 1) / 2

so M(i, j) and M(j, i) are the same physical entry. Factorizations use
torch.linalg (Bunch–Kaufman LDL^T for the general symmetric case, Cholesky
when the caller guarantees positive definiteness) and never return values
from a failed factorization.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
import torch

from electrohead.core.exceptions import FactorizationFailure

__all__ = ["PackedSymmetricMatrix", "LDLFactorization", "packed_index"]

_DTYPE = torch.float64

ArrayLike = Union[torch.Tensor, np.ndarray, Sequence[float]]


def _as_tensor(x: Any) -> torch.Tensor:
    if isinstance(x, torch.Tensor):
        return x.to(_DTYPE)
    return torch.as_tensor(np.asarray(x, dtype=float), dtype=_DTYPE)


def _as_index(x: Any) -> torch.Tensor:
    if isinstance(x, torch.Tensor):
        return x.to(torch.int64)
    return torch.as_tensor(np.asarray(x, dtype=np.int64))


def packed_index(i, j):
    """Packed offset of (i, j); works on ints and integer tensors."""
    if isinstance(i, torch.Tensor) or isinstance(j, torch.Tensor):
        i = _as_index(i)
        j = _as_index(j)
        lo = torch.minimum(i, j)
        hi = torch.maximum(i, j)
        return lo + hi * (hi + 1) // 2
    lo, hi = (i, j) if i <= j else (j, i)
    return lo + hi * (hi + 1) // 2


class PackedSymmetricMatrix:
    """
    Dense symmetric matrix in packed storage.

    The matrix is the assembly target of the head-matrix assembler. Element
    access, block accumulation, BLAS-like products, sub-matrix extraction
    and factorization-based solves are provided.
    """

    def __init__(self, n: int, data: Optional[torch.Tensor] = None):
        n = int(n)
        if n < 0:
            raise ValueError("matrix size must be non-negative")
        self.n = n
        size = n * (n + 1) // 2
        if data is None:
            self.data = torch.zeros(size, dtype=_DTYPE)
        else:
            data = _as_tensor(data).reshape(-1)
            if data.numel() != size:
                raise ValueError(f"packed data must have {size} entries, got {data.numel()}")
            self.data = data

    # ------------------------------------------------------------------
    # construction / conversion
    # ------------------------------------------------------------------

    @classmethod
    def from_dense(cls, matrix: ArrayLike, *, check: bool = False, atol: float = 0.0) -> "PackedSymmetricMatrix":
        """Pack the upper triangle of a square matrix."""
        a = _as_tensor(matrix)
        if a.ndim != 2 or a.shape[0] != a.shape[1]:
            raise ValueError(f"expected a square matrix, got shape {tuple(a.shape)}")
        if check and not torch.allclose(a, a.T, atol=atol, rtol=0.0):
            raise ValueError("matrix is not symmetric")
        n = a.shape[0]
        rows, cols = torch.triu_indices(n, n)
        out = cls(n)
        out.data[packed_index(rows, cols)] = a[rows, cols]
        return out

    @classmethod
    def from_packed(cls, data: ArrayLike) -> "PackedSymmetricMatrix":
        t = _as_tensor(data).reshape(-1)
        n = int(round((np.sqrt(8 * t.numel() + 1) - 1) / 2))
        return cls(n, t.clone())

    def to_dense(self) -> torch.Tensor:
        idx = torch.arange(self.n)
        return self.data[packed_index(idx[:, None], idx[None, :])]

    def numpy(self) -> np.ndarray:
        return self.to_dense().numpy()

    def copy(self) -> "PackedSymmetricMatrix":
        return PackedSymmetricMatrix(self.n, self.data.clone())

    @property
    def shape(self):
        return (self.n, self.n)

    def __len__(self) -> int:
        return self.n

    def __repr__(self) -> str:
        return f"PackedSymmetricMatrix(n={self.n})"

    # ------------------------------------------------------------------
    # element access
    # ------------------------------------------------------------------

    def _check(self, i: int, j: int) -> None:
        if not (0 <= i < self.n and 0 <= j < self.n):
            raise IndexError(f"index ({i}, {j}) out of range for size {self.n}")

    def get(self, i: int, j: int) -> float:
        self._check(i, j)
        return float(self.data[packed_index(i, j)])

    def add(self, i: int, j: int, value: float) -> None:
        self._check(i, j)
        self.data[packed_index(i, j)] += float(value)

    def __getitem__(self, key) -> float:
        i, j = key
        return self.get(int(i), int(j))

    def __setitem__(self, key, value: float) -> None:
        i, j = key
        i, j = int(i), int(j)
        self._check(i, j)
        self.data[packed_index(i, j)] = float(value)

    def add_entries(self, rows: ArrayLike, cols: ArrayLike, values: ArrayLike) -> None:
        """M(rows[k], cols[k]) += values[k]; repeated entries accumulate."""
        r = _as_index(rows).reshape(-1)
        c = _as_index(cols).reshape(-1)
        v = _as_tensor(values).reshape(-1)
        if not (r.numel() == c.numel() == v.numel()):
            raise ValueError("rows, cols and values must have the same length")
        if r.numel() == 0:
            return
        if int(torch.minimum(r, c).min()) < 0 or int(torch.maximum(r, c).max()) >= self.n:
            raise IndexError(f"entries out of range for size {self.n}")
        self.data.index_add_(0, packed_index(r, c), v)

    def add_block(self, rows: ArrayLike, cols: ArrayLike, values: ArrayLike) -> None:
        """
        M(rows[a], cols[b]) += values[a, b].

        A block touching both (i, j) and (j, i) adds twice into the same
        entry; symmetric callers pass only one triangle.
        """
        r = _as_index(rows).reshape(-1)
        c = _as_index(cols).reshape(-1)
        v = _as_tensor(values)
        if tuple(v.shape) != (r.numel(), c.numel()):
            raise ValueError(
                f"values must have shape ({r.numel()}, {c.numel()}), got {tuple(v.shape)}"
            )
        rr = r[:, None].expand(-1, c.numel())
        cc = c[None, :].expand(r.numel(), -1)
        self.add_entries(rr, cc, v)

    def set(self, value: float) -> None:
        self.data.fill_(float(value))

    def row(self, i: int) -> torch.Tensor:
        if not 0 <= i < self.n:
            raise IndexError(f"row {i} out of range for size {self.n}")
        return self.data[packed_index(torch.full((self.n,), i), torch.arange(self.n))]

    getlin = row

    def set_row(self, i: int, values: ArrayLike) -> None:
        """Set row i (and hence column i)."""
        v = _as_tensor(values).reshape(-1)
        if v.numel() != self.n:
            raise ValueError(f"row must have {self.n} entries")
        if not 0 <= i < self.n:
            raise IndexError(f"row {i} out of range for size {self.n}")
        self.data[packed_index(torch.full((self.n,), i), torch.arange(self.n))] = v

    setlin = set_row

    def diagonal(self) -> torch.Tensor:
        idx = torch.arange(self.n)
        return self.data[packed_index(idx, idx)]

    # ------------------------------------------------------------------
    # arithmetic
    # ------------------------------------------------------------------

    def _same_size(self, other: "PackedSymmetricMatrix") -> None:
        if other.n != self.n:
            raise ValueError(f"size mismatch: {self.n} vs {other.n}")

    def __add__(self, other):
        if isinstance(other, PackedSymmetricMatrix):
            self._same_size(other)
            return PackedSymmetricMatrix(self.n, self.data + other.data)
        return PackedSymmetricMatrix(self.n, self.data + float(other))

    def __sub__(self, other):
        if isinstance(other, PackedSymmetricMatrix):
            self._same_size(other)
            return PackedSymmetricMatrix(self.n, self.data - other.data)
        return PackedSymmetricMatrix(self.n, self.data - float(other))

    def __iadd__(self, other):
        if isinstance(other, PackedSymmetricMatrix):
            self._same_size(other)
            self.data += other.data
        else:
            self.data += float(other)
        return self

    def __isub__(self, other):
        if isinstance(other, PackedSymmetricMatrix):
            self._same_size(other)
            self.data -= other.data
        else:
            self.data -= float(other)
        return self

    def __mul__(self, scalar: float) -> "PackedSymmetricMatrix":
        if isinstance(scalar, (PackedSymmetricMatrix, torch.Tensor, np.ndarray)):
            return NotImplemented
        return PackedSymmetricMatrix(self.n, self.data * float(scalar))

    __rmul__ = __mul__

    def __imul__(self, scalar: float):
        self.data *= float(scalar)
        return self

    def __truediv__(self, scalar: float) -> "PackedSymmetricMatrix":
        return PackedSymmetricMatrix(self.n, self.data / float(scalar))

    def __itruediv__(self, scalar: float):
        self.data /= float(scalar)
        return self

    def __neg__(self) -> "PackedSymmetricMatrix":
        return PackedSymmetricMatrix(self.n, -self.data)

    def matvec(self, x: ArrayLike) -> torch.Tensor:
        """y = M x for a vector (n,) or a matrix (n, k); M is unpacked once."""
        v = _as_tensor(x)
        if v.ndim not in (1, 2) or v.shape[0] != self.n:
            raise ValueError(f"operand must have leading dimension {self.n}, got {tuple(v.shape)}")
        dense = self.to_dense()
        if v.ndim == 1:
            return torch.mv(dense, v)
        return dense @ v

    def __matmul__(self, other):
        if isinstance(other, PackedSymmetricMatrix):
            self._same_size(other)
            return self.matvec(other.to_dense())
        return self.matvec(other)

    # ------------------------------------------------------------------
    # sub-matrices
    # ------------------------------------------------------------------

    def submat(self, istart: int, isize: int, jstart: Optional[int] = None, jsize: Optional[int] = None):
        """
        Symmetric sub-matrix of the diagonal range [istart, istart + isize),
        or a dense rectangular tensor for rows [istart, istart + isize) and
        columns [jstart, jstart + jsize).
        """
        if istart < 0 or isize < 0 or istart + isize > self.n:
            raise IndexError("row range out of bounds")
        rows = torch.arange(istart, istart + isize)
        if jstart is None or (jstart == istart and (jsize is None or jsize == isize)):
            sub = self.data[packed_index(rows[:, None], rows[None, :])]
            return PackedSymmetricMatrix.from_dense(sub)
        if jsize is None:
            raise ValueError("jsize is required for a rectangular sub-matrix")
        if jstart < 0 or jsize < 0 or jstart + jsize > self.n:
            raise IndexError("column range out of bounds")
        cols = torch.arange(jstart, jstart + jsize)
        return self.data[packed_index(rows[:, None], cols[None, :])]

    # ------------------------------------------------------------------
    # factorizations
    # ------------------------------------------------------------------

    def factorize(self) -> "LDLFactorization":
        """Bunch–Kaufman LDL^T factorization (LAPACK sytrf)."""
        a = self.to_dense()
        ld, pivots, info = torch.linalg.ldl_factor_ex(a)
        code = int(info)
        if code != 0:
            raise FactorizationFailure(
                "ldl_factor", code, "matrix is singular" if code > 0 else "illegal argument"
            )
        return LDLFactorization(ld, pivots, self.n)

    def solve(self, b: ArrayLike) -> torch.Tensor:
        """Solve M x = b for a vector or a (n, k) block of right-hand sides."""
        return self.factorize().solve(b)

    def solve_many(self, rhs: Sequence[ArrayLike]) -> List[torch.Tensor]:
        fact = self.factorize()
        return [fact.solve(b) for b in rhs]

    def det(self) -> float:
        return self.factorize().det()

    def inverse(self) -> "PackedSymmetricMatrix":
        return self.factorize().inverse()

    def invert(self) -> "PackedSymmetricMatrix":
        """In-place inverse."""
        self.data = self.inverse().data
        return self

    def _cholesky(self) -> torch.Tensor:
        lower, info = torch.linalg.cholesky_ex(self.to_dense())
        code = int(info)
        if code != 0:
            raise FactorizationFailure("cholesky", code, "matrix is not positive definite")
        return lower

    def posdef_inverse(self) -> "PackedSymmetricMatrix":
        """Inverse through a Cholesky factorization (positive definite input)."""
        inv = torch.cholesky_inverse(self._cholesky())
        return PackedSymmetricMatrix.from_dense(0.5 * (inv + inv.T))

    def solve_posdef(self, b: ArrayLike) -> torch.Tensor:
        rhs = _as_tensor(b)
        lower = self._cholesky()
        if rhs.ndim == 1:
            return torch.cholesky_solve(rhs[:, None], lower)[:, 0]
        return torch.cholesky_solve(rhs, lower)

    # ------------------------------------------------------------------
    # diagnostics
    # ------------------------------------------------------------------

    def summary(self, n_leading: int = 5) -> Dict[str, Any]:
        """Dimension, extreme values with their positions, leading block."""
        out: Dict[str, Any] = {"n": self.n}
        if self.n == 0:
            return out
        dense = self.to_dense()
        flat_min = int(torch.argmin(dense))
        flat_max = int(torch.argmax(dense))
        out["min"] = float(dense.reshape(-1)[flat_min])
        out["argmin"] = divmod(flat_min, self.n)
        out["max"] = float(dense.reshape(-1)[flat_max])
        out["argmax"] = divmod(flat_max, self.n)
        k = min(n_leading, self.n)
        out["leading"] = dense[:k, :k].tolist()
        return out

    info = summary


@dataclass
class LDLFactorization:
    """Result of ``PackedSymmetricMatrix.factorize``."""

    ld: torch.Tensor
    pivots: torch.Tensor
    n: int

    def solve(self, b: ArrayLike) -> torch.Tensor:
        rhs = _as_tensor(b)
        if rhs.shape[0] != self.n or rhs.ndim not in (1, 2):
            raise ValueError(f"right-hand side must have leading dimension {self.n}")
        if rhs.ndim == 1:
            return torch.linalg.ldl_solve(self.ld, self.pivots, rhs[:, None])[:, 0]
        return torch.linalg.ldl_solve(self.ld, self.pivots, rhs)

    def det(self) -> float:
        """
        Determinant from the block diagonal factor.

        A positive pivot marks a 1x1 block; two equal negative pivots mark a
        2x2 block d11 * d22 - d21^2. The permutation contributes det(P)^2 = 1.
        """
        piv = self.pivots.tolist()
        ld = self.ld
        out = 1.0
        i = 0
        while i < self.n:
            if piv[i] > 0:
                out *= float(ld[i, i])
                i += 1
            else:
                out *= float(ld[i, i] * ld[i + 1, i + 1] - ld[i + 1, i] ** 2)
                i += 2
        return out

    def inverse(self) -> PackedSymmetricMatrix:
        eye = torch.eye(self.n, dtype=_DTYPE)
        inv = self.solve(eye)
        return PackedSymmetricMatrix.from_dense(0.5 * (inv + inv.T))
