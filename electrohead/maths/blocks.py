"""
Assembly targets and offset views.

Block fillers depend only on the small ``AssemblyTarget`` capability
(``get``, ``add``, ``add_entries``, ``add_block`` with global indices).
Implementations:

  - ``PackedSymmetricMatrix``: the full symmetric head matrix;
  - ``SymmetricBlockMatrix``: the same matrix stored as dense blocks that
    are allocated only for interacting index ranges;
  - ``Block`` / ``SymBlock``: views rebasing global indices onto a local
    dense tensor or packed symmetric matrix (scratch blocks, sub-blocks).
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import numpy as np
import torch

from electrohead.maths.symmatrix import PackedSymmetricMatrix, _as_index, _as_tensor

__all__ = ["AssemblyTarget", "Block", "SymBlock", "SymmetricBlockMatrix"]

Range = Tuple[int, int]


class AssemblyTarget(Protocol):
    def get(self, i: int, j: int) -> float: ...

    def add(self, i: int, j: int, value: float) -> None: ...

    def add_entries(self, rows, cols, values) -> None: ...

    def add_block(self, rows, cols, values) -> None: ...


def _outer(rows, cols, values):
    r = _as_index(rows).reshape(-1)
    c = _as_index(cols).reshape(-1)
    v = _as_tensor(values)
    if tuple(v.shape) != (r.numel(), c.numel()):
        raise ValueError(f"values must have shape ({r.numel()}, {c.numel()}), got {tuple(v.shape)}")
    return r[:, None].expand(-1, c.numel()), c[None, :].expand(r.numel(), -1), v


# ---------------------------------------------------------------------------
# Offset views
# ---------------------------------------------------------------------------


class Block:
    """
    Rectangular dense block addressed with global indices.

    Entry (i, j) lives at ``data[i - row_offset, j - col_offset]``.
    """

    def __init__(self, data: torch.Tensor, row_offset: int = 0, col_offset: int = 0):
        if data.ndim != 2:
            raise ValueError("Block data must be 2-D")
        self.data = data
        self.row_offset = int(row_offset)
        self.col_offset = int(col_offset)

    @classmethod
    def zeros(cls, rows: Range, cols: Range) -> "Block":
        data = torch.zeros(rows[1] - rows[0], cols[1] - cols[0], dtype=torch.float64)
        return cls(data, rows[0], cols[0])

    @property
    def shape(self):
        return tuple(self.data.shape)

    def _local(self, rows: torch.Tensor, cols: torch.Tensor):
        lr = rows - self.row_offset
        lc = cols - self.col_offset
        if lr.numel() and (
            int(lr.min()) < 0
            or int(lr.max()) >= self.data.shape[0]
            or int(lc.min()) < 0
            or int(lc.max()) >= self.data.shape[1]
        ):
            raise IndexError("entries outside of the block")
        return lr, lc

    def get(self, i: int, j: int) -> float:
        lr, lc = self._local(torch.tensor([i]), torch.tensor([j]))
        return float(self.data[lr[0], lc[0]])

    def add(self, i: int, j: int, value: float) -> None:
        self.add_entries([i], [j], [value])

    def add_entries(self, rows, cols, values) -> None:
        r = _as_index(rows).reshape(-1)
        c = _as_index(cols).reshape(-1)
        v = _as_tensor(values).reshape(-1)
        lr, lc = self._local(r, c)
        self.data.index_put_((lr, lc), v.to(self.data.dtype), accumulate=True)

    def add_block(self, rows, cols, values) -> None:
        rr, cc, v = _outer(rows, cols, values)
        self.add_entries(rr, cc, v)


class SymBlock:
    """
    Diagonal-aligned symmetric view: global (i, j) -> local (i - offset, j - offset)
    of a packed symmetric matrix.
    """

    def __init__(self, matrix: PackedSymmetricMatrix, offset: int = 0):
        self.matrix = matrix
        self.offset = int(offset)

    @classmethod
    def zeros(cls, indices: Range) -> "SymBlock":
        return cls(PackedSymmetricMatrix(indices[1] - indices[0]), indices[0])

    def get(self, i: int, j: int) -> float:
        return self.matrix.get(i - self.offset, j - self.offset)

    def add(self, i: int, j: int, value: float) -> None:
        self.matrix.add(i - self.offset, j - self.offset, value)

    def add_entries(self, rows, cols, values) -> None:
        r = _as_index(rows) - self.offset
        c = _as_index(cols) - self.offset
        self.matrix.add_entries(r, c, values)

    def add_block(self, rows, cols, values) -> None:
        rr, cc, v = _outer(rows, cols, values)
        self.add_entries(rr, cc, v)


# ---------------------------------------------------------------------------
# Block-structured symmetric matrix
# ---------------------------------------------------------------------------


class SymmetricBlockMatrix:
    """
    Symmetric matrix stored as dense blocks over pairs of index ranges.

    Only allocated blocks may be written; reading an unallocated block
    yields zero. Requested ranges are split at ``cuts`` so that any two
    ranges are either identical or disjoint. Blocks are stored once per
    unordered pair of ranges; diagonal blocks are kept as full symmetric
    squares.
    """

    def __init__(self, size: int, cuts: Optional[Iterable[int]] = None):
        self.size = int(size)
        cut_set = {0, self.size}
        if cuts is not None:
            cut_set.update(int(c) for c in cuts if 0 <= int(c) <= self.size)
        self._cuts = np.asarray(sorted(cut_set), dtype=np.int64)
        self._blocks: Dict[Tuple[int, int], torch.Tensor] = {}

    @property
    def shape(self):
        return (self.size, self.size)

    @property
    def ranges(self) -> List[Range]:
        return [(int(a), int(b)) for a, b in zip(self._cuts[:-1], self._cuts[1:])]

    @property
    def n_blocks(self) -> int:
        return len(self._blocks)

    def _split(self, rng: Range) -> List[int]:
        start, stop = int(rng[0]), int(rng[1])
        if not (0 <= start <= stop <= self.size):
            raise IndexError(f"range {rng} out of bounds for size {self.size}")
        if start == stop:
            return []
        if start not in self._cuts or stop not in self._cuts:
            raise ValueError(f"range {rng} is not aligned with the block partition")
        first = int(np.searchsorted(self._cuts, start))
        last = int(np.searchsorted(self._cuts, stop))
        return list(range(first, last))

    def add_blocks(self, ranges1: Sequence[Range], ranges2: Sequence[Range]) -> None:
        """Allocate (zeroed) blocks for every pair of ranges."""
        ids1 = [k for r in ranges1 for k in self._split(r)]
        ids2 = [k for r in ranges2 for k in self._split(r)]
        for a in ids1:
            for b in ids2:
                key = (a, b) if a <= b else (b, a)
                if key not in self._blocks:
                    n1 = int(self._cuts[key[0] + 1] - self._cuts[key[0]])
                    n2 = int(self._cuts[key[1] + 1] - self._cuts[key[1]])
                    self._blocks[key] = torch.zeros(n1, n2, dtype=torch.float64)

    def has_block(self, i: int, j: int) -> bool:
        a, b = self._range_id(np.asarray([i])), self._range_id(np.asarray([j]))
        key = (int(a[0]), int(b[0]))
        return (min(key), max(key)) in self._blocks

    def _range_id(self, idx: np.ndarray) -> np.ndarray:
        if idx.size and (idx.min() < 0 or idx.max() >= self.size):
            raise IndexError(f"index out of range for size {self.size}")
        return np.searchsorted(self._cuts, idx, side="right") - 1

    def get(self, i: int, j: int) -> float:
        ri = int(self._range_id(np.asarray([i]))[0])
        rj = int(self._range_id(np.asarray([j]))[0])
        if ri > rj:
            ri, rj, i, j = rj, ri, j, i
        block = self._blocks.get((ri, rj))
        if block is None:
            return 0.0
        return float(block[i - self._cuts[ri], j - self._cuts[rj]])

    def __getitem__(self, key) -> float:
        return self.get(int(key[0]), int(key[1]))

    def add(self, i: int, j: int, value: float) -> None:
        self.add_entries([i], [j], [value])

    def add_entries(self, rows, cols, values) -> None:
        r = _as_index(rows).reshape(-1).numpy()
        c = _as_index(cols).reshape(-1).numpy()
        v = _as_tensor(values).reshape(-1)
        if not (r.size == c.size == v.numel()):
            raise ValueError("rows, cols and values must have the same length")
        if r.size == 0:
            return
        ri = self._range_id(r)
        rj = self._range_id(c)
        swap = ri > rj
        r, c = np.where(swap, c, r), np.where(swap, r, c)
        ri, rj = np.where(swap, rj, ri), np.where(swap, ri, rj)

        keys = ri * len(self._cuts) + rj
        for key in np.unique(keys):
            sel = np.flatnonzero(keys == key)
            a, b = int(ri[sel[0]]), int(rj[sel[0]])
            block = self._blocks.get((a, b))
            if block is None:
                raise IndexError(f"block ({self.ranges[a]}, {self.ranges[b]}) is not allocated")
            lr = torch.from_numpy(r[sel] - self._cuts[a])
            lc = torch.from_numpy(c[sel] - self._cuts[b])
            vals = v[torch.from_numpy(sel)]
            block.index_put_((lr, lc), vals, accumulate=True)
            if a == b:
                off = lr != lc
                block.index_put_((lc[off], lr[off]), vals[off], accumulate=True)

    def add_block(self, rows, cols, values) -> None:
        rr, cc, v = _outer(rows, cols, values)
        self.add_entries(rr, cc, v)

    def to_packed(self) -> PackedSymmetricMatrix:
        out = PackedSymmetricMatrix(self.size)
        for (a, b), block in self._blocks.items():
            rows = torch.arange(int(self._cuts[a]), int(self._cuts[a + 1]))
            cols = torch.arange(int(self._cuts[b]), int(self._cuts[b + 1]))
            out.add_block(rows, cols, torch.triu(block) if a == b else block)
        return out

    def to_dense(self) -> torch.Tensor:
        return self.to_packed().to_dense()

    def __repr__(self) -> str:
        return f"SymmetricBlockMatrix(size={self.size}, n_blocks={self.n_blocks})"
