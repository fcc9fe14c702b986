"""
Right-hand-side and coupling matrices of the symmetric BEM.

All matrices are dense float64 torch tensors whose BEM-side dimension is
``geometry.nb_parameters`` (vertex unknowns, then triangle unknowns of
non-barrier meshes):

  - surf_source_matrix: distributed source on a closed source mesh
    (nb_parameters x nv_source);
  - dipole_source_matrix: current dipoles (nb_parameters x n_dipoles);
  - eit_source_matrix: current injected through electrodes on barrier
    meshes (nb_parameters x n_electrodes);
  - dipole_internal_potential_matrix: infinite-medium dipole potential at
    internal points (n_points_kept x n_dipoles);
  - surf2vol_matrix: potential at internal points from the BEM unknowns
    (n_points_kept x nb_parameters).

Points in a zero-conductivity domain or in no domain at all are dropped
and reported through the logger, as are dipoles in a zero-conductivity
domain. A dipole outside every declared domain raises GeometryInconsistency.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import torch

from electrohead.core.analytics import Dipole
from electrohead.core.exceptions import ConfigurationDegeneracy
from electrohead.core.geometry import Domain, Geometry
from electrohead.core.mesh import Mesh
from electrohead.core.operators import (
    DiagonalBlock,
    NonDiagonalBlock,
    PartialBlock,
    dipole_potential_derivative_operator,
    dipole_potential_operator,
)
from electrohead.maths.blocks import Block
from electrohead.maths.symmatrix import PackedSymmetricMatrix
from electrohead.utils.config import GEOMETRY_EPS, AssemblyConfig, K
from electrohead.utils.logging import JsonlLogger

__all__ = [
    "InjectionElectrode",
    "surf_source_matrix",
    "dipole_source_matrix",
    "eit_source_matrix",
    "dipole_internal_potential_matrix",
    "surf2vol_matrix",
]

DipoleInput = Union[Sequence[Dipole], np.ndarray]


def _as_dipoles(dipoles: DipoleInput) -> List[Dipole]:
    if isinstance(dipoles, Dipole):
        return [dipoles]
    if isinstance(dipoles, np.ndarray):
        return Dipole.from_array(dipoles)
    items = list(dipoles)
    if all(isinstance(d, Dipole) for d in items):
        return items
    return Dipole.from_array(items)


def _conductive_domain(domain: Domain) -> Domain:
    if not domain.is_conductive:
        raise ConfigurationDegeneracy(f"domain {domain.name!r} has zero conductivity")
    return domain


def _setup(config, integrator):
    config = config if config is not None else AssemblyConfig()
    integrator = integrator if integrator is not None else config.make_integrator()
    return config, integrator


# ---------------------------------------------------------------------------
# Surface source
# ---------------------------------------------------------------------------


def surf_source_matrix(
    geometry: Geometry,
    source_mesh: Mesh,
    integrator=None,
    *,
    config: Optional[AssemblyConfig] = None,
    logger: Optional[JsonlLogger] = None,
) -> torch.Tensor:
    """
    Coupling of a distributed source on `source_mesh` with the BEM unknowns.

    The source mesh must lie inside a single conductive domain; it is
    flagged outermost and current barrier and keeps its own index space,
    so columns are its local vertices.
    """
    config, integrator = _setup(config, integrator)
    domain = _conductive_domain(geometry.check(source_mesh))
    source_mesh.outermost = True
    source_mesh.current_barrier = True
    source_mesh.reset_indices()

    n = geometry.nb_parameters
    mat = torch.zeros(n, source_mesh.n_vertices, dtype=torch.float64)
    target = Block(mat)
    L = -1.0 / domain.conductivity

    t0 = time.perf_counter()
    if logger:
        logger.phase_start("surf_source_matrix", domain=domain.name, source=source_mesh.name)
    for boundary, om in domain.meshes():
        mesh = om.mesh
        coeff_n = (K if boundary.inside else -K) * om.orientation
        ops = NonDiagonalBlock(mesh, source_mesh, integrator, config=config, logger=logger)
        ops.N(coeff_n, target)
        # barrier triangles are outside of the system
        if not mesh.current_barrier:
            ops.D(coeff_n * L, target)
    if logger:
        logger.phase_end("surf_source_matrix", elapsed_s=time.perf_counter() - t0)
    return mat


# ---------------------------------------------------------------------------
# Dipoles
# ---------------------------------------------------------------------------


def dipole_source_matrix(
    geometry: Geometry,
    dipoles: DipoleInput,
    domain_name: str = "",
    integrator=None,
    *,
    config: Optional[AssemblyConfig] = None,
    logger: Optional[JsonlLogger] = None,
) -> torch.Tensor:
    """
    One column per dipole. Dipoles may be Dipole records or rows
    [px, py, pz, qx, qy, qz]. Without `domain_name` the domain is located
    from each dipole position.

    A dipole in a zero-conductivity domain is logged as dropped and its
    column stays zero. A dipole outside every declared domain (or an
    unknown `domain_name`) raises GeometryInconsistency and aborts the
    whole call.
    """
    config, integrator = _setup(config, integrator)
    dips = _as_dipoles(dipoles)
    n = geometry.nb_parameters
    rhs = torch.zeros(n, len(dips), dtype=torch.float64)

    if logger:
        logger.phase_start("dipole_source_matrix", n_dipoles=len(dips), domain=domain_name or None)
    for s, dipole in enumerate(dips):
        located = geometry.domain(domain_name) if domain_name else geometry.domain(dipole.position)
        try:
            domain = _conductive_domain(located)
        except ConfigurationDegeneracy as exc:
            if logger:
                logger.dropped("dipole", s, position=dipole.position, reason=str(exc))
            continue

        column = torch.zeros(n, dtype=torch.float64)
        for boundary, om in domain.meshes():
            mesh = om.mesh
            coeff_d = (K if boundary.inside else -K) * om.orientation
            dipole_potential_derivative_operator(dipole, mesh, column, coeff_d, integrator)
            if not mesh.current_barrier:
                dipole_potential_operator(
                    dipole, mesh, column, -coeff_d / domain.conductivity, integrator
                )
        rhs[:, s] = column
    if logger:
        logger.phase_end("dipole_source_matrix", n_dipoles=len(dips))
    return rhs


def dipole_internal_potential_matrix(
    geometry: Geometry,
    dipoles: DipoleInput,
    points,
    domain_name: str = "",
    *,
    logger: Optional[JsonlLogger] = None,
) -> torch.Tensor:
    """
    Infinite-medium potential K/σ V_dipole at internal points lying in the
    dipole's domain (zero elsewhere). Points outside every domain or in a
    non-conductive domain are dropped, as are dipoles in a non-conductive
    domain. A dipole outside every declared domain raises
    GeometryInconsistency and aborts the whole call.
    """
    dips = _as_dipoles(dipoles)
    pts = np.asarray(points, dtype=float).reshape(-1, 3)
    kept, point_domains = _kept_points(geometry, pts, logger)

    mat = torch.zeros(len(kept), len(dips), dtype=torch.float64)
    for s, dipole in enumerate(dips):
        located = geometry.domain(domain_name) if domain_name else geometry.domain(dipole.position)
        try:
            domain = _conductive_domain(located)
        except ConfigurationDegeneracy as exc:
            if logger:
                logger.dropped("dipole", s, position=dipole.position, reason=str(exc))
            continue
        rows = [r for r, d in enumerate(point_domains) if d is domain]
        if not rows:
            continue
        values = K / domain.conductivity * dipole.potential(pts[kept][rows])
        mat[rows, s] = torch.from_numpy(np.asarray(values, dtype=float))
    return mat


# ---------------------------------------------------------------------------
# Electrodes
# ---------------------------------------------------------------------------


@dataclass
class InjectionElectrode:
    """
    Current injection site on a (barrier) mesh of the geometry.

    ``triangles`` are local triangle indices of ``mesh``. A zero ``radius``
    describes a point electrode (intensity spread by 1/area of its
    triangle); otherwise every triangle contributes ``weight``.
    """

    mesh: Mesh
    triangles: Sequence[int]
    weight: float = 1.0
    radius: float = 0.0
    name: str = ""

    def __post_init__(self) -> None:
        self.triangles = np.asarray(self.triangles, dtype=np.int64).reshape(-1)
        if self.triangles.size == 0:
            raise ValueError(f"electrode {self.name!r} has no triangle")
        if self.triangles.min() < 0 or self.triangles.max() >= self.mesh.n_triangles:
            raise ValueError(f"electrode {self.name!r} refers to triangles outside its mesh")

    @classmethod
    def at_point(cls, mesh: Mesh, point, radius: float = 0.0, name: str = "") -> "InjectionElectrode":
        """
        Electrode centred at `point`: the closest triangle for a point
        electrode, else every triangle whose centroid is within `radius`,
        weighted by the inverse of their total area.
        """
        p = np.asarray(point, dtype=float).reshape(3)
        dist = np.linalg.norm(mesh.centroids - p, axis=1)
        if radius <= GEOMETRY_EPS:
            return cls(mesh, [int(np.argmin(dist))], 1.0, 0.0, name)
        tris = np.flatnonzero(dist <= radius)
        if tris.size == 0:
            tris = np.asarray([int(np.argmin(dist))])
        return cls(mesh, tris, 1.0 / float(mesh.areas[tris].sum()), float(radius), name)

    def coefficients(self) -> np.ndarray:
        if self.radius <= GEOMETRY_EPS:
            return 1.0 / self.mesh.areas[self.triangles]
        return np.full(self.triangles.size, float(self.weight))


def eit_source_matrix(
    geometry: Geometry,
    electrodes: Sequence[InjectionElectrode],
    integrator=None,
    *,
    config: Optional[AssemblyConfig] = None,
    logger: Optional[JsonlLogger] = None,
) -> torch.Tensor:
    """
    Injected currents through electrodes placed on current barriers.

    A transmission matrix over all indices (barrier triangles included) is
    built from D, -1/2 Id and -S on pairs whose first mesh is a barrier;
    each electrode column gathers the rows of its injection triangles.
    """
    config, integrator = _setup(config, integrator)
    n = geometry.nb_parameters
    transmat = PackedSymmetricMatrix(geometry.nb_indices)

    if logger:
        logger.phase_start("eit_source_matrix", n_electrodes=len(electrodes))
    for pair in geometry.communicating_mesh_pairs:
        mesh1, mesh2 = pair.mesh1, pair.mesh2
        if not mesh1.current_barrier:
            continue
        orientation = pair.relative_orientation
        ops = NonDiagonalBlock(mesh1, mesh2, integrator, config=config, logger=logger)
        ops.D(K * orientation, transmat)
        if mesh1 is mesh2:
            DiagonalBlock(mesh1, integrator, config=config, logger=logger).add_id(
                -0.5 * orientation, transmat
            )
        else:
            ops.S(-K * orientation * geometry.sigma_inv(mesh1, mesh2), transmat)

    mat = torch.zeros(n, len(electrodes), dtype=torch.float64)
    for e, electrode in enumerate(electrodes):
        if not any(electrode.mesh is m for m in geometry.meshes):
            raise ValueError(f"electrode {electrode.name!r} is not on a mesh of the geometry")
        rows = electrode.mesh.triangle_indices[electrode.triangles]
        for row, coeff in zip(rows.tolist(), electrode.coefficients().tolist()):
            mat[:, e] += transmat.row(row)[:n] * coeff
    if logger:
        logger.phase_end("eit_source_matrix", n_electrodes=len(electrodes))
    return mat


# ---------------------------------------------------------------------------
# Internal points
# ---------------------------------------------------------------------------


def _kept_points(
    geometry: Geometry, points: np.ndarray, logger: Optional[JsonlLogger]
) -> Tuple[List[int], List[Domain]]:
    kept, domains = [], []
    for k, domain in enumerate(geometry.domains_at(points)):
        if domain is None or not domain.is_conductive:
            if logger:
                logger.dropped("point", k, point=points[k], domain=None if domain is None else domain.name)
            continue
        kept.append(k)
        domains.append(domain)
    return kept, domains


def surf2vol_matrix(
    geometry: Geometry,
    points,
    integrator=None,
    *,
    config: Optional[AssemblyConfig] = None,
    logger: Optional[JsonlLogger] = None,
) -> torch.Tensor:
    """
    Potential at internal points from the BEM unknowns (one row per kept
    point, in input order).

    Both kernels are evaluated analytically; ``integrator`` is accepted for
    signature symmetry with the other assemblers.
    """
    config, _ = _setup(config, integrator)
    pts = np.asarray(points, dtype=float).reshape(-1, 3)
    kept, point_domains = _kept_points(geometry, pts, logger)
    mat = torch.zeros(len(kept), geometry.nb_parameters, dtype=torch.float64)
    target = Block(mat)

    t0 = time.perf_counter()
    if logger:
        logger.phase_start("surf2vol_matrix", n_points=len(kept), n_dropped=pts.shape[0] - len(kept))
    for domain in geometry.domains:
        rows = np.asarray([r for r, d in enumerate(point_domains) if d is domain], dtype=np.int64)
        if rows.size == 0:
            continue
        domain_points = pts[np.asarray(kept)[rows]]
        for boundary, om in domain.meshes():
            coeff = boundary.mesh_orientation(om) * K
            block = PartialBlock(om.mesh, config=config, logger=logger)
            block.add_D(-coeff, domain_points, target, rows)
            if not om.mesh.current_barrier:
                block.S(coeff / domain.conductivity, domain_points, target, rows)
    if logger:
        logger.phase_end("surf2vol_matrix", elapsed_s=time.perf_counter() - t0)
    return mat
