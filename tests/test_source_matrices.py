import json

import numpy as np
import pytest
import torch

from electrohead.core.analytics import Dipole
from electrohead.core.assemble_head import head_matrix
from electrohead.core.assemble_source import (
    InjectionElectrode,
    dipole_internal_potential_matrix,
    dipole_source_matrix,
    eit_source_matrix,
    surf2vol_matrix,
    surf_source_matrix,
)
from electrohead.core.bem_quadrature import Integrator
from electrohead.core.exceptions import GeometryInconsistency, OverlappingSourceMesh
from electrohead.core.geometry import Boundary, Domain, Geometry, Interface, OrientedMesh
from electrohead.core.mesh import icosphere
from electrohead.utils.config import K
from electrohead.utils.logging import JsonlLogger

INTEGRATOR = Integrator(3)


def _single_sphere(conductivity=1.0, subdivisions=1):
    mesh = icosphere(1.0, subdivisions=subdivisions, name="scalp")
    interface = Interface("scalp", [OrientedMesh(mesh)])
    return Geometry([Domain("head", [Boundary(interface, inside=True)], conductivity)]), mesh


def _head_in_air():
    mesh = icosphere(1.0, subdivisions=0, name="scalp")
    interface = Interface("scalp", [OrientedMesh(mesh)])
    head = Domain("head", [Boundary(interface, inside=True)], 1.0)
    air = Domain("air", [Boundary(interface, inside=False)], 0.0)
    return Geometry([head, air]), mesh


def _nested_spheres(inner_sigma=0.33):
    inner = icosphere(0.5, subdivisions=0, name="inner")
    outer = icosphere(1.0, subdivisions=0, name="outer")
    i_in = Interface("inner", [OrientedMesh(inner)])
    i_out = Interface("outer", [OrientedMesh(outer)])
    brain = Domain("brain", [Boundary(i_in, inside=True)], inner_sigma)
    shell = Domain("shell", [Boundary(i_in, inside=False), Boundary(i_out, inside=True)], 1.0)
    return Geometry([brain, shell]), inner, outer


def _events(path):
    return [json.loads(line) for line in (path / "events.jsonl").read_text().splitlines()]


# ---------------------------------------------------------------------------
# internal points
# ---------------------------------------------------------------------------


def test_surf2vol_reproduces_constant_potential(tmp_path):
    geom, mesh = _single_sphere()
    points = np.array([[0.0, 0.0, 0.0], [0.3, 0.2, -0.1], [3.0, 0.0, 0.0], [0.0, -0.5, 0.4]])
    with JsonlLogger(tmp_path) as logger:
        mat = surf2vol_matrix(geom, points, INTEGRATOR, logger=logger)

    assert mat.shape == (3, geom.nb_parameters)
    vertex_part = mat[:, : geom.nb_vertices].sum(dim=1)
    assert torch.allclose(vertex_part, torch.ones(3, dtype=torch.float64), rtol=1e-10)

    dropped = [e for e in _events(tmp_path) if e["msg"] == "Point dropped."]
    assert [e["index"] for e in dropped] == [2]


def test_surf2vol_single_layer_part_scales_with_conductivity():
    points = np.array([[0.1, 0.0, 0.2]])
    geom1, _ = _single_sphere(conductivity=1.0, subdivisions=0)
    geom2, _ = _single_sphere(conductivity=2.0, subdivisions=0)
    m1 = surf2vol_matrix(geom1, points)
    m2 = surf2vol_matrix(geom2, points)
    nv = geom1.nb_vertices
    assert torch.allclose(m2[:, :nv], m1[:, :nv])
    assert torch.allclose(m2[:, nv:], 0.5 * m1[:, nv:])
    assert torch.all(m1[:, nv:] > 0.0)


def test_surf2vol_skips_barrier_triangles():
    geom, mesh = _head_in_air()
    mat = surf2vol_matrix(geom, [[0.0, 0.1, 0.0]])
    assert mat.shape == (1, geom.nb_vertices)
    assert float(mat.sum()) == pytest.approx(1.0, rel=1e-10)


def test_dipole_internal_potential(tmp_path):
    geom, inner, outer = _nested_spheres()
    dipole = Dipole([0.0, 0.0, 0.1], [0.0, 0.0, 1.0])
    points = np.array([[0.0, 0.0, 0.3], [0.0, 0.0, 0.7], [0.0, 0.0, 4.0]])
    with JsonlLogger(tmp_path) as logger:
        mat = dipole_internal_potential_matrix(geom, [dipole], points, logger=logger)

    assert mat.shape == (2, 1)
    assert float(mat[0, 0]) == pytest.approx(K / 0.33 * float(dipole.potential(points[0])))
    # second point lies in another domain
    assert float(mat[1, 0]) == 0.0
    assert any(e["msg"] == "Point dropped." for e in _events(tmp_path))


# ---------------------------------------------------------------------------
# dipoles
# ---------------------------------------------------------------------------


def test_dipole_source_matrix_is_linear_in_moment():
    geom, _ = _single_sphere(subdivisions=0)
    rows = np.array([[0.0, 0.1, 0.0, 0.0, 0.0, 1.0], [0.0, 0.1, 0.0, 0.0, 0.0, 2.0]])
    rhs = dipole_source_matrix(geom, rows, integrator=INTEGRATOR)
    assert rhs.shape == (geom.nb_parameters, 2)
    assert torch.count_nonzero(rhs[:, 0]) > 0
    assert torch.allclose(rhs[:, 1], 2.0 * rhs[:, 0])

    by_name = dipole_source_matrix(geom, Dipole.from_array(rows), "head", INTEGRATOR)
    assert torch.allclose(by_name, rhs)


def test_dipole_source_triangle_rows_scale_with_conductivity():
    dipole = Dipole([0.1, 0.0, 0.0], [1.0, 0.0, 0.0])
    geom1, _ = _single_sphere(1.0, subdivisions=0)
    geom2, _ = _single_sphere(4.0, subdivisions=0)
    r1 = dipole_source_matrix(geom1, [dipole], integrator=INTEGRATOR)
    r2 = dipole_source_matrix(geom2, [dipole], integrator=INTEGRATOR)
    nv = geom1.nb_vertices
    assert torch.allclose(r2[:nv], r1[:nv])
    assert torch.allclose(r2[nv:], 0.25 * r1[nv:])


def test_dipole_in_non_conductive_domain_is_dropped(tmp_path):
    geom, inner, outer = _nested_spheres(inner_sigma=0.0)
    dipoles = [Dipole([0.0, 0.0, 0.0], [0.0, 0.0, 1.0]), Dipole([0.0, 0.0, 0.7], [0.0, 0.0, 1.0])]
    with JsonlLogger(tmp_path) as logger:
        rhs = dipole_source_matrix(geom, dipoles, integrator=INTEGRATOR, logger=logger)

    assert rhs.shape == (geom.nb_parameters, 2)
    assert torch.count_nonzero(rhs[:, 0]) == 0
    assert torch.count_nonzero(rhs[:, 1]) > 0
    dropped = [e for e in _events(tmp_path) if e["msg"] == "Dipole dropped."]
    assert [e["index"] for e in dropped] == [0]


def test_dipole_outside_every_domain_aborts():
    geom, _ = _single_sphere(subdivisions=0)
    dipoles = [Dipole([0.0, 0.0, 0.1], [0.0, 0.0, 1.0]), Dipole([0.0, 0.0, 3.0], [0.0, 0.0, 1.0])]
    with pytest.raises(GeometryInconsistency):
        dipole_source_matrix(geom, dipoles, integrator=INTEGRATOR)
    with pytest.raises(GeometryInconsistency):
        dipole_internal_potential_matrix(geom, dipoles, [[0.0, 0.0, 0.2]])
    with pytest.raises(GeometryInconsistency):
        dipole_source_matrix(geom, dipoles[:1], "skull", INTEGRATOR)


# ---------------------------------------------------------------------------
# surface source
# ---------------------------------------------------------------------------


def test_surf_source_matrix_shape_and_flags():
    geom, inner, outer = _nested_spheres()
    source = icosphere(0.2, subdivisions=0, name="source")
    mat = surf_source_matrix(geom, source, INTEGRATOR)

    assert mat.shape == (geom.nb_parameters, source.n_vertices)
    assert source.outermost and source.current_barrier
    np.testing.assert_array_equal(source.vertex_indices, np.arange(source.n_vertices))
    # only the inner interface bounds the source domain
    assert torch.count_nonzero(mat[:12]) > 0
    assert torch.count_nonzero(mat[12:24]) == 0
    lo, hi = inner.triangle_range
    assert torch.count_nonzero(mat[lo:hi]) > 0
    assert torch.count_nonzero(mat[hi:]) == 0


def test_surf_source_rejects_overlap():
    geom, inner, outer = _nested_spheres()
    with pytest.raises(OverlappingSourceMesh):
        surf_source_matrix(geom, icosphere(0.6, subdivisions=0), INTEGRATOR)
    with pytest.raises(OverlappingSourceMesh):
        surf_source_matrix(geom, inner, INTEGRATOR)


# ---------------------------------------------------------------------------
# electrodes
# ---------------------------------------------------------------------------


def test_injection_electrode_construction():
    _, mesh = _head_in_air()
    point = InjectionElectrode.at_point(mesh, mesh.centroids[3] * 1.01)
    np.testing.assert_array_equal(point.triangles, [3])
    np.testing.assert_allclose(point.coefficients(), 1.0 / mesh.areas[[3]])

    disc = InjectionElectrode.at_point(mesh, mesh.vertices[0], radius=0.9)
    assert disc.triangles.size >= 5
    np.testing.assert_allclose(disc.coefficients().sum() * mesh.areas[disc.triangles].mean(), 1.0)

    with pytest.raises(ValueError):
        InjectionElectrode(mesh, [])
    with pytest.raises(ValueError):
        InjectionElectrode(mesh, [mesh.n_triangles])


def test_eit_columns_inject_unit_current():
    geom, mesh = _head_in_air()
    assert mesh.current_barrier
    assert geom.nb_parameters == mesh.n_vertices

    electrodes = [
        InjectionElectrode(mesh, [0]),
        InjectionElectrode.at_point(mesh, mesh.vertices[5], radius=0.9),
    ]
    mat = eit_source_matrix(geom, electrodes, INTEGRATOR)
    assert mat.shape == (mesh.n_vertices, 2)
    # K ∫ D sums to -1/2 over a face, the mass term adds another -1/2
    np.testing.assert_allclose(mat.sum(dim=0).numpy(), -1.0, rtol=1e-10)


def test_eit_rejects_foreign_electrode_mesh():
    geom, _ = _head_in_air()
    other = icosphere(1.0, subdivisions=0)
    with pytest.raises(ValueError):
        eit_source_matrix(geom, [InjectionElectrode(other, [0])], INTEGRATOR)


def test_head_in_air_system_has_vertex_unknowns_only():
    geom, mesh = _head_in_air()
    m = head_matrix(geom)
    assert m.shape == (mesh.n_vertices, mesh.n_vertices)
    assert torch.all(torch.isfinite(m.to_dense()))
