import numpy as np
import pytest
import torch

from electrohead.core.bem_quadrature import Integrator
from electrohead.core.analytics import Dipole, ferguson
from electrohead.core.geometry import Boundary, Domain, Geometry, Interface, OrientedMesh
from electrohead.core.mesh import icosphere
from electrohead.core.operators import (
    DiagonalBlock,
    HeadMatrixBlocks,
    NonDiagonalBlock,
    PartialBlock,
    dipole_potential_derivative_operator,
    dipole_potential_operator,
    ferguson_operator,
)
from electrohead.maths.blocks import Block, SymmetricBlockMatrix
from electrohead.maths.symmatrix import PackedSymmetricMatrix
from electrohead.utils.config import AssemblyConfig

INTEGRATOR = Integrator(3)


def _single_sphere(subdivisions=0):
    mesh = icosphere(1.0, subdivisions=subdivisions, name="scalp")
    interface = Interface("scalp", [OrientedMesh(mesh)])
    return Geometry([Domain("head", [Boundary(interface, inside=True)])]), mesh


def _nested_spheres(inner_sigma=1.0):
    inner = icosphere(0.5, subdivisions=0, name="inner")
    outer = icosphere(1.0, subdivisions=0, name="outer")
    i_in = Interface("inner", [OrientedMesh(inner)])
    i_out = Interface("outer", [OrientedMesh(outer)])
    brain = Domain("brain", [Boundary(i_in, inside=True)], inner_sigma)
    shell = Domain("shell", [Boundary(i_in, inside=False), Boundary(i_out, inside=True)], 1.0)
    return Geometry([brain, shell]), inner, outer


def test_diagonal_s_is_symmetric_and_matches_rectangular_fill():
    geom, mesh = _single_sphere()
    target = PackedSymmetricMatrix(geom.nb_parameters)
    s = DiagonalBlock(mesh, INTEGRATOR).S(2.0, target)

    lo, hi = mesh.triangle_range
    dense = target.to_dense()[lo:hi, lo:hi].numpy()
    np.testing.assert_allclose(dense, 2.0 * s, rtol=1e-14)
    np.testing.assert_array_equal(s, s.T)
    assert np.all(s > 0.0)

    rect = Block.zeros(mesh.triangle_range, mesh.triangle_range)
    full = NonDiagonalBlock(mesh, mesh, INTEGRATOR).S(1.0, rect)
    iu = np.triu_indices(mesh.n_triangles)
    np.testing.assert_allclose(full[iu], s[iu], rtol=1e-14)
    # the rectangular fill is symmetric up to the outer quadrature error
    assert np.abs(full - full.T).max() < 0.05 * np.abs(full).max()


def test_diagonal_n_from_cached_s_equals_scratch():
    geom, mesh = _single_sphere()
    cached = PackedSymmetricMatrix(geom.nb_parameters)
    block = DiagonalBlock(mesh, INTEGRATOR)
    block.set_S_block(1.0, PackedSymmetricMatrix(geom.nb_parameters))
    assert block.s_block is not None
    block.set_N_block(1.5, cached)

    scratch = PackedSymmetricMatrix(geom.nb_parameters)
    DiagonalBlock(mesh, INTEGRATOR).N(1.5, scratch)
    assert torch.allclose(cached.data, scratch.data, rtol=1e-13, atol=0.0)


def test_diagonal_n_matches_explicit_loops():
    geom, mesh = _single_sphere()
    block = DiagonalBlock(mesh, INTEGRATOR)
    s = block.S(1.0, PackedSymmetricMatrix(geom.nb_parameters))
    target = PackedSymmetricMatrix(geom.nb_parameters)
    block.N(1.0, target)

    expected = np.zeros((mesh.n_vertices, mesh.n_vertices))
    for v1 in range(mesh.n_vertices):
        t1s = mesh.vertex_triangles(v1)
        c1s = mesh.corner_of(v1, t1s)
        for v2 in range(mesh.n_vertices):
            t2s = mesh.vertex_triangles(v2)
            c2s = mesh.corner_of(v2, t2s)
            acc = 0.0
            for t1, c1 in zip(t1s, c1s):
                for t2, c2 in zip(t2s, c2s):
                    acc += np.dot(mesh.curl[t1, c1], mesh.curl[t2, c2]) * s[t1, t2]
            expected[v1, v2] = -0.25 * acc

    nv = mesh.n_vertices
    np.testing.assert_allclose(target.to_dense()[:nv, :nv].numpy(), expected, rtol=1e-10, atol=1e-12)


def test_n_annihilates_constants():
    geom, mesh = _single_sphere()
    target = PackedSymmetricMatrix(geom.nb_parameters)
    DiagonalBlock(mesh, INTEGRATOR).N(1.0, target)
    nv = mesh.n_vertices
    n = target.to_dense()[:nv, :nv]
    row_sums = n.sum(dim=1)
    assert torch.allclose(row_sums, torch.zeros_like(row_sums), atol=1e-10 * float(n.abs().max()))


def test_d_rows_sum_to_half_solid_angle():
    geom, mesh = _single_sphere()
    target = Block(torch.zeros(geom.nb_parameters, geom.nb_parameters, dtype=torch.float64))
    DiagonalBlock(mesh, INTEGRATOR).D(1.0, target)
    lo, hi = mesh.triangle_range
    d = target.data[lo:hi, : mesh.n_vertices].numpy()
    # quadrature points lie on the closed surface, which subtends 2π there
    np.testing.assert_allclose(d.sum(axis=1), -2.0 * np.pi * mesh.areas, rtol=1e-10)


def test_add_id_is_the_p0_p1_mass_matrix():
    geom, mesh = _single_sphere()
    target = PackedSymmetricMatrix(geom.nb_parameters)
    DiagonalBlock(mesh, INTEGRATOR).add_id(-0.5, target)
    lo, hi = mesh.triangle_range
    block = target.to_dense()[lo:hi, : mesh.n_vertices].numpy()
    np.testing.assert_allclose(block.sum(axis=1), -0.5 * mesh.areas)
    assert np.count_nonzero(block) == 3 * mesh.n_triangles


def test_cross_mesh_vertex_weights():
    geom, inner, outer = _nested_spheres()
    np.testing.assert_array_equal(NonDiagonalBlock(inner, outer).vertex_weights(), 0.25)

    standalone = icosphere(0.3, subdivisions=0)
    assert not standalone.shares_index_space(inner)
    np.testing.assert_array_equal(NonDiagonalBlock(inner, standalone).vertex_weights(), 0.25)

    same = NonDiagonalBlock(inner, inner).vertex_weights()
    np.testing.assert_array_equal(np.diag(same), 0.5)


def test_barrier_gating():
    geom, inner, outer = _nested_spheres(inner_sigma=0.0)
    assert inner.current_barrier

    target = PackedSymmetricMatrix(geom.nb_indices)
    diag = DiagonalBlock(inner, INTEGRATOR)
    diag.set_S_block(1.0, target)
    diag.set_D_block(1.0, target)
    diag.set_Dstar_block(1.0, target)
    assert torch.count_nonzero(target.data) == 0
    diag.set_N_block(1.0, target)
    assert torch.count_nonzero(target.data) > 0

    target = PackedSymmetricMatrix(geom.nb_indices)
    cross = NonDiagonalBlock(inner, outer, INTEGRATOR)
    cross.set_S_block(1.0, target)
    cross.set_D_block(1.0, target)
    assert torch.count_nonzero(target.data) == 0
    cross.set_Dstar_block(1.0, target)
    lo, hi = outer.triangle_range
    dstar = target.to_dense()[lo:hi, :12]
    assert torch.count_nonzero(dstar) > 0
    assert torch.count_nonzero(target.to_dense()[geom.nb_parameters :]) == 0


def test_head_matrix_blocks_allocate_what_they_fill():
    geom, inner, outer = _nested_spheres()
    cuts = sorted({0, 12, 24, 44, 64})
    target = SymmetricBlockMatrix(geom.nb_parameters, cuts=cuts)
    blocks = HeadMatrixBlocks(NonDiagonalBlock(inner, outer, INTEGRATOR))
    blocks.allocate(target)
    blocks.set_blocks((1.0, 1.0, -1.0), target)

    reference = PackedSymmetricMatrix(geom.nb_parameters)
    HeadMatrixBlocks(NonDiagonalBlock(inner, outer, INTEGRATOR)).set_blocks((1.0, 1.0, -1.0), reference)
    assert torch.allclose(target.to_dense(), reference.to_dense(), rtol=1e-13, atol=0.0)


def test_workers_do_not_change_results():
    geom, mesh = _single_sphere()
    serial = PackedSymmetricMatrix(geom.nb_parameters)
    threaded = PackedSymmetricMatrix(geom.nb_parameters)
    DiagonalBlock(mesh, INTEGRATOR).S(1.0, serial)
    DiagonalBlock(mesh, INTEGRATOR, config=AssemblyConfig(workers=4)).S(1.0, threaded)
    assert torch.equal(serial.data, threaded.data)


def test_partial_block_matches_operator_kernels():
    mesh = icosphere(1.0, subdivisions=1)
    points = np.array([[0.0, 0.0, 0.0], [0.2, -0.1, 0.3]])
    target = Block(torch.zeros(2, mesh.n_vertices, dtype=torch.float64))
    PartialBlock(mesh).add_D(1.0, points, target, rows=[0, 1])
    # hat functions sum to one: P1 moments add up to minus the solid angle
    np.testing.assert_allclose(target.data.sum(dim=1).numpy(), -4.0 * np.pi, rtol=1e-10)

    s_target = Block(torch.zeros(2, mesh.n_triangles, dtype=torch.float64))
    PartialBlock(mesh).S(2.0, points, s_target, rows=[0, 1])
    # ∫ 1/|y| over the unit sphere is 4π
    assert float(s_target.data[0].sum()) / 2.0 == pytest.approx(4.0 * np.pi, rel=0.1)


def test_ferguson_operator_fills_three_rows():
    mesh = icosphere(1.0, subdivisions=0)
    target = Block(torch.zeros(6, mesh.n_vertices, dtype=torch.float64))
    x = np.array([0.0, 0.0, 2.0])
    ferguson_operator(x, mesh, target, row=3, coeff=2.0)
    np.testing.assert_allclose(target.data[3:].numpy(), 2.0 * ferguson(x, mesh).T)
    assert torch.count_nonzero(target.data[:3]) == 0


def test_dipole_operators():
    mesh = icosphere(1.0, subdivisions=1)
    dipole = Dipole([0.0, 0.0, 0.1], [0.0, 0.0, 1.0])

    rhs = torch.zeros(mesh.n_vertices, dtype=torch.float64)
    dipole_potential_derivative_operator(dipole, mesh, rhs, 1.0, INTEGRATOR)
    # the dipole field carries no net flux through a surface enclosing it
    assert abs(float(rhs.sum())) < 0.05 * float(rhs.abs().sum())

    pot = torch.zeros(mesh.n_triangles, dtype=torch.float64)
    dipole_potential_operator(dipole, mesh, pot, 2.0, INTEGRATOR)
    north = mesh.centroids[:, 2] > 0.5
    assert torch.all(pot[torch.from_numpy(north)] > 0.0)
    assert torch.all(pot[torch.from_numpy(mesh.centroids[:, 2] < -0.5)] < 0.0)
