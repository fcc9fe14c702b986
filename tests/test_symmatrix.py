import numpy as np
import pytest
import torch

from electrohead.core.exceptions import FactorizationFailure
from electrohead.maths.symmatrix import LDLFactorization, PackedSymmetricMatrix, packed_index


def _random_symmetric(n: int, seed: int = 0, shift: float = 0.0) -> torch.Tensor:
    gen = torch.Generator().manual_seed(seed)
    b = torch.randn(n, n, generator=gen, dtype=torch.float64)
    return b + b.T + shift * torch.eye(n, dtype=torch.float64)


def test_packed_index_is_symmetric_and_dense():
    n = 6
    seen = set()
    for i in range(n):
        for j in range(n):
            assert packed_index(i, j) == packed_index(j, i)
            seen.add(packed_index(i, j))
    assert seen == set(range(n * (n + 1) // 2))


def test_dense_roundtrip_and_element_access():
    a = _random_symmetric(5, seed=1)
    m = PackedSymmetricMatrix.from_dense(a)
    assert m.shape == (5, 5)
    assert torch.equal(m.to_dense(), a)

    m[1, 3] = 2.5
    assert m[3, 1] == 2.5
    m.add(3, 1, 0.5)
    assert m.get(1, 3) == pytest.approx(3.0)

    with pytest.raises(IndexError):
        m.get(5, 0)


def test_from_dense_check_rejects_asymmetric():
    a = torch.arange(9, dtype=torch.float64).reshape(3, 3)
    with pytest.raises(ValueError):
        PackedSymmetricMatrix.from_dense(a, check=True)


def test_add_block_accumulates_mirrored_entries():
    m = PackedSymmetricMatrix(4)
    m.add_block([0, 1], [2, 3], torch.ones(2, 2))
    m.add_block([2], [0], [[1.0]])
    dense = m.to_dense()
    assert dense[0, 2] == 2.0
    assert dense[2, 0] == 2.0
    assert dense[1, 3] == 1.0
    assert dense[0, 0] == 0.0

    with pytest.raises(ValueError):
        m.add_block([0, 1], [2], torch.ones(2, 2))


def test_rows_and_diagonal():
    a = _random_symmetric(5, seed=2)
    m = PackedSymmetricMatrix.from_dense(a)
    assert torch.allclose(m.row(2), a[2])
    assert torch.allclose(m.diagonal(), torch.diagonal(a))

    m.set_row(4, torch.arange(5, dtype=torch.float64))
    assert torch.allclose(m.to_dense()[:, 4], torch.arange(5, dtype=torch.float64))

    m.set(1.5)
    assert torch.all(m.to_dense() == 1.5)


def test_arithmetic():
    a = _random_symmetric(4, seed=3)
    b = _random_symmetric(4, seed=4)
    ma, mb = PackedSymmetricMatrix.from_dense(a), PackedSymmetricMatrix.from_dense(b)

    assert torch.allclose((ma + mb).to_dense(), a + b)
    assert torch.allclose((ma - mb).to_dense(), a - b)
    assert torch.allclose((2.0 * ma).to_dense(), 2.0 * a)
    assert torch.allclose((ma / 4.0).to_dense(), a / 4.0)
    assert torch.allclose((-ma).to_dense(), -a)

    mc = ma.copy()
    mc += mb
    mc -= 1.0
    assert torch.allclose(mc.to_dense(), a + b - 1.0)
    assert torch.allclose(ma.to_dense(), a)

    with pytest.raises(ValueError):
        ma + PackedSymmetricMatrix(3)


def test_matvec_matches_dense_product():
    a = _random_symmetric(7, seed=5)
    m = PackedSymmetricMatrix.from_dense(a)
    x = torch.linspace(-1.0, 1.0, 7, dtype=torch.float64)
    assert torch.allclose(m @ x, a @ x)

    xs = torch.randn(7, 3, dtype=torch.float64, generator=torch.Generator().manual_seed(9))
    assert torch.allclose(m @ xs, a @ xs)

    b = _random_symmetric(7, seed=6)
    assert torch.allclose(m @ PackedSymmetricMatrix.from_dense(b), a @ b)


def test_submat():
    a = _random_symmetric(6, seed=7)
    m = PackedSymmetricMatrix.from_dense(a)

    sub = m.submat(1, 3)
    assert isinstance(sub, PackedSymmetricMatrix)
    assert torch.allclose(sub.to_dense(), a[1:4, 1:4])

    rect = m.submat(0, 2, 3, 3)
    assert torch.allclose(rect, a[0:2, 3:6])

    with pytest.raises(IndexError):
        m.submat(4, 3)


def test_ldl_solve_det_inverse_on_indefinite_matrix():
    a = _random_symmetric(8, seed=11)
    m = PackedSymmetricMatrix.from_dense(a)

    fact = m.factorize()
    assert isinstance(fact, LDLFactorization)

    b = torch.arange(8, dtype=torch.float64)
    x = fact.solve(b)
    assert torch.allclose(a @ x, b, atol=1e-9)

    rhs = torch.randn(8, 2, dtype=torch.float64, generator=torch.Generator().manual_seed(1))
    xs = m.solve(rhs)
    assert torch.allclose(a @ xs, rhs, atol=1e-9)
    for xi, bi in zip(m.solve_many([b, 2.0 * b]), [b, 2.0 * b]):
        assert torch.allclose(a @ xi, bi, atol=1e-9)

    assert m.det() == pytest.approx(float(torch.linalg.det(a)), rel=1e-8)

    inv = m.inverse()
    assert torch.allclose(inv.to_dense() @ a, torch.eye(8, dtype=torch.float64), atol=1e-9)

    m.invert()
    assert torch.allclose(m.to_dense(), inv.to_dense())


@pytest.mark.parametrize(
    "rows, expected",
    [
        ([[0.0, 1.0], [1.0, 0.0]], -1.0),
        ([[0.0, 1.0, 2.0], [1.0, 0.0, 3.0], [2.0, 3.0, 0.0]], 12.0),
    ],
)
def test_det_with_two_by_two_pivot_blocks(rows, expected):
    m = PackedSymmetricMatrix.from_dense(torch.tensor(rows, dtype=torch.float64))
    fact = m.factorize()
    # zero diagonal forces Bunch-Kaufman to pick 2x2 blocks
    assert bool((fact.pivots < 0).any())
    assert fact.det() == pytest.approx(expected, rel=1e-12)
    assert m.det() == pytest.approx(expected, rel=1e-12)


def test_posdef_inverse_and_solve():
    a = _random_symmetric(5, seed=12)
    spd = a @ a.T + 5.0 * torch.eye(5, dtype=torch.float64)
    m = PackedSymmetricMatrix.from_dense(spd)

    inv = m.posdef_inverse()
    assert torch.allclose(inv.to_dense() @ spd, torch.eye(5, dtype=torch.float64), atol=1e-10)

    b = torch.ones(5, dtype=torch.float64)
    assert torch.allclose(spd @ m.solve_posdef(b), b, atol=1e-10)


def test_failed_factorizations_raise():
    with pytest.raises(FactorizationFailure) as excinfo:
        PackedSymmetricMatrix(3).factorize()
    assert excinfo.value.routine == "ldl_factor"
    assert excinfo.value.info > 0

    negdef = PackedSymmetricMatrix.from_dense(-torch.eye(3, dtype=torch.float64))
    with pytest.raises(FactorizationFailure) as excinfo:
        negdef.posdef_inverse()
    assert excinfo.value.routine == "cholesky"


def test_summary_reports_extremes():
    m = PackedSymmetricMatrix(3)
    m[0, 2] = 4.0
    m[1, 1] = -2.0
    info = m.summary(n_leading=2)
    assert info["n"] == 3
    assert info["max"] == 4.0
    assert info["argmax"] in ((0, 2), (2, 0))
    assert info["min"] == -2.0
    assert info["argmin"] == (1, 1)
    assert np.asarray(info["leading"]).shape == (2, 2)
