import numpy as np
import pytest
import torch

from electrohead.maths.blocks import Block, SymBlock, SymmetricBlockMatrix
from electrohead.maths.symmatrix import PackedSymmetricMatrix


def test_block_rebases_global_indices():
    block = Block.zeros((10, 13), (4, 6))
    assert block.shape == (3, 2)

    block.add(11, 5, 2.0)
    block.add_block([10, 12], [4, 5], [[1.0, 2.0], [3.0, 4.0]])
    assert block.get(11, 5) == 2.0
    assert block.data[0, 1] == 2.0
    assert block.data[2, 0] == 3.0

    block.add_entries([12, 12], [5, 5], [1.0, 1.0])
    assert block.get(12, 5) == 6.0

    with pytest.raises(IndexError):
        block.add(9, 4, 1.0)
    with pytest.raises(IndexError):
        block.add(10, 6, 1.0)


def test_symblock_writes_into_packed_matrix():
    view = SymBlock.zeros((5, 8))
    view.add_block([5, 6], [6, 7], [[1.0, 2.0], [3.0, 4.0]])
    dense = view.matrix.to_dense()
    assert dense.shape == (3, 3)
    assert dense[0, 1] == 1.0
    assert dense[1, 0] == 1.0
    assert dense[1, 1] == 3.0
    assert view.get(7, 6) == 4.0


def test_block_matrix_splits_ranges_on_cuts():
    m = SymmetricBlockMatrix(10, cuts=[3, 6])
    assert m.ranges == [(0, 3), (3, 6), (6, 10)]

    m.add_blocks([(0, 6)], [(6, 10)])
    assert m.n_blocks == 2
    assert m.has_block(7, 1)
    assert not m.has_block(0, 0)

    with pytest.raises(ValueError):
        m.add_blocks([(1, 3)], [(0, 3)])


def test_block_matrix_reads_zero_and_refuses_unallocated_writes():
    m = SymmetricBlockMatrix(6, cuts=[3])
    m.add_blocks([(0, 3)], [(3, 6)])
    assert m.get(0, 0) == 0.0

    m.add(4, 1, 2.0)
    assert m.get(1, 4) == 2.0
    assert m[4, 1] == 2.0

    with pytest.raises(IndexError):
        m.add(0, 1, 1.0)


def test_block_matrix_matches_packed_assembly():
    rng = np.random.default_rng(3)
    n = 9
    cuts = [2, 5]
    m = SymmetricBlockMatrix(n, cuts=cuts)
    m.add_blocks([(0, 9)], [(0, 9)])
    packed = PackedSymmetricMatrix(n)

    for _ in range(4):
        rows = rng.choice(n, size=3, replace=False)
        cols = rng.choice(n, size=2, replace=False)
        values = rng.standard_normal((3, 2))
        m.add_block(rows, cols, values)
        packed.add_block(rows, cols, values)

    assert torch.allclose(m.to_dense(), packed.to_dense())
    assert torch.allclose(m.to_packed().data, packed.data)
    for i in range(n):
        for j in range(n):
            assert m.get(i, j) == pytest.approx(packed.get(i, j))
