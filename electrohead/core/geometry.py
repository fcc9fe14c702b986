"""
Nested-compartment geometry: interfaces, domains and the unknown index space.

A Geometry is built from Domains. Each Domain is bounded by Interfaces
(closed surfaces made of oriented meshes) and states for each of them
whether it lies inside or outside. From this description the Geometry
derives everything the assemblers need:

- the global index space (P1 vertex unknowns first, then P0 triangle
  unknowns of non-barrier meshes, then barrier triangles which are not
  part of the system matrix);
- the ``outermost`` / ``current_barrier`` mesh flags;
- communicating mesh pairs with their relative orientation;
- conductivity jumps σ, σ⁻¹ and the indicator for a pair of meshes;
- the isolated parts requiring independent deflation;
- point location (which domain contains a point).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from electrohead.core.analytics import solid_angle
from electrohead.core.exceptions import GeometryInconsistency, OverlappingSourceMesh
from electrohead.core.mesh import Mesh

__all__ = [
    "OrientedMesh",
    "Interface",
    "Boundary",
    "Domain",
    "MeshPair",
    "Geometry",
]


@dataclass(frozen=True)
class OrientedMesh:
    mesh: Mesh
    orientation: int = 1

    def __post_init__(self) -> None:
        if self.orientation not in (1, -1):
            raise ValueError(f"orientation must be +1 or -1, got {self.orientation!r}")


@dataclass(eq=False)
class Interface:
    """
    Closed surface made of one or more oriented meshes.

    ``orientation * mesh normal`` points outward for every oriented mesh.
    """

    name: str
    oriented_meshes: List[OrientedMesh]

    def __post_init__(self) -> None:
        self.oriented_meshes = [
            om if isinstance(om, OrientedMesh) else OrientedMesh(om) for om in self.oriented_meshes
        ]
        if not self.oriented_meshes:
            raise ValueError(f"interface {self.name!r} has no mesh")

    @property
    def meshes(self) -> List[Mesh]:
        return [om.mesh for om in self.oriented_meshes]

    @property
    def n_vertices(self) -> int:
        return sum(om.mesh.n_vertices for om in self.oriented_meshes)

    @property
    def n_triangles(self) -> int:
        return sum(om.mesh.n_triangles for om in self.oriented_meshes)

    def winding_number(self, points) -> np.ndarray:
        """Σ orientation * solid angle / 4π at `points` (..., 3)."""
        pts = np.asarray(points, dtype=float)
        total = np.zeros(pts.shape[:-1])
        for om in self.oriented_meshes:
            omega = solid_angle(pts[..., None, :], om.mesh.triangle_coordinates)
            total = total + om.orientation * omega.sum(axis=-1)
        return total / (4.0 * np.pi)

    def contains(self, points) -> np.ndarray:
        return self.winding_number(points) > 0.5


@dataclass(frozen=True, eq=False)
class Boundary:
    interface: Interface
    inside: bool

    def mesh_orientation(self, oriented_mesh: OrientedMesh) -> int:
        return oriented_mesh.orientation if self.inside else -oriented_mesh.orientation


@dataclass(eq=False)
class Domain:
    name: str
    boundaries: List[Boundary]
    conductivity: float = 1.0

    def __post_init__(self) -> None:
        if self.conductivity < 0.0:
            raise ValueError(f"domain {self.name!r} has a negative conductivity")
        self.conductivity = float(self.conductivity)

    @property
    def is_conductive(self) -> bool:
        return self.conductivity != 0.0

    @property
    def is_unbounded(self) -> bool:
        return all(not b.inside for b in self.boundaries)

    def meshes(self) -> Iterable[Tuple[Boundary, OrientedMesh]]:
        for boundary in self.boundaries:
            for om in boundary.interface.oriented_meshes:
                yield boundary, om

    def mesh_orientation(self, mesh: Mesh) -> int:
        """Orientation of `mesh` seen from this domain (0 if not a boundary)."""
        for boundary, om in self.meshes():
            if om.mesh is mesh:
                return boundary.mesh_orientation(om)
        return 0

    def contains(self, points) -> np.ndarray:
        pts = np.asarray(points, dtype=float)
        inside = np.ones(pts.shape[:-1], dtype=bool)
        for boundary in self.boundaries:
            inside &= boundary.interface.contains(pts) == boundary.inside
        return inside


@dataclass(frozen=True)
class MeshPair:
    mesh1: Mesh
    mesh2: Mesh
    relative_orientation: int

    def __iter__(self):
        return iter((self.mesh1, self.mesh2))


class Geometry:
    """
    Domains, meshes and the global unknown numbering.

    Parameters
    ----------
    domains:
        Conductive (and non-conductive) compartments.
    meshes:
        Optional explicit mesh order; defaults to first appearance in
        ``domains``. The order fixes the index space and the pair order.
    merge_vertices:
        Vertices of different meshes with identical coordinates become one
        P1 unknown.
    """

    def __init__(
        self,
        domains: Sequence[Domain],
        meshes: Optional[Sequence[Mesh]] = None,
        *,
        merge_vertices: bool = True,
    ):
        self.domains: List[Domain] = list(domains)
        if not self.domains:
            raise GeometryInconsistency("geometry needs at least one domain")
        names = [d.name for d in self.domains]
        if len(set(names)) != len(names):
            raise GeometryInconsistency(f"duplicate domain names: {names}")

        found: List[Mesh] = []
        for d in self.domains:
            for _, om in d.meshes():
                if not any(om.mesh is m for m in found):
                    found.append(om.mesh)
        if meshes is None:
            self.meshes: List[Mesh] = found
        else:
            self.meshes = list(meshes)
            if len(self.meshes) != len(found) or any(
                not any(m is f for f in found) for m in self.meshes
            ):
                raise GeometryInconsistency("meshes must list exactly the domain boundary meshes")

        self._position = {id(m): k for k, m in enumerate(self.meshes)}
        self._mesh_domains: Dict[int, List[Domain]] = {id(m): [] for m in self.meshes}
        for d in self.domains:
            for _, om in d.meshes():
                doms = self._mesh_domains[id(om.mesh)]
                if not any(x is d for x in doms):
                    doms.append(d)

        self._set_flags()
        self._number(merge_vertices)
        self._pairs = self._make_pairs()
        self._parts = self._make_parts()

    # ------------------------------------------------------------------
    # construction
    # ------------------------------------------------------------------

    def _set_flags(self) -> None:
        for mesh in self.meshes:
            doms = self._mesh_domains[id(mesh)]
            if not any(d.is_conductive for d in doms):
                raise GeometryInconsistency(
                    f"mesh {mesh.name!r} does not bound any conductive domain"
                )
            barrier = any(not d.is_conductive for d in doms)
            # a single declared side means the other side is the undeclared exterior
            exterior = len(doms) < 2 or any(d.is_unbounded for d in doms)
            mesh.current_barrier = barrier
            mesh.outermost = barrier or exterior

    def _number(self, merge_vertices: bool) -> None:
        self.index_space = object()
        lookup: Dict[Tuple[float, float, float], int] = {}
        vertex_ids: List[np.ndarray] = []
        positions: List[np.ndarray] = []
        n = 0
        for mesh in self.meshes:
            ids = np.empty(mesh.n_vertices, dtype=np.int64)
            for k, p in enumerate(mesh.vertices):
                key = (float(p[0]), float(p[1]), float(p[2]))
                if merge_vertices and key in lookup:
                    ids[k] = lookup[key]
                else:
                    ids[k] = n
                    lookup[key] = n
                    positions.append(p)
                    n += 1
            if np.unique(ids).size != ids.size:
                raise GeometryInconsistency(f"mesh {mesh.name!r} has duplicate vertices")
            vertex_ids.append(ids)
        self.nb_vertices = n
        self.vertex_positions = np.asarray(positions, dtype=float).reshape(-1, 3)

        start = n
        tri_ids: Dict[int, np.ndarray] = {}
        for mesh in self.meshes:
            if not mesh.current_barrier:
                tri_ids[id(mesh)] = np.arange(start, start + mesh.n_triangles)
                start += mesh.n_triangles
        self.nb_parameters = start
        for mesh in self.meshes:
            if mesh.current_barrier:
                tri_ids[id(mesh)] = np.arange(start, start + mesh.n_triangles)
                start += mesh.n_triangles
        self.nb_indices = start

        for mesh, vids in zip(self.meshes, vertex_ids):
            mesh.set_indices(vids, tri_ids[id(mesh)], self.index_space)

    def _make_pairs(self) -> List[MeshPair]:
        pairs = []
        for i, m1 in enumerate(self.meshes):
            for m2 in self.meshes[i:]:
                orientation = self.oriented(m1, m2)
                if orientation != 0:
                    pairs.append(MeshPair(m1, m2, orientation))
        return pairs

    def _make_parts(self) -> List[List[Mesh]]:
        parent = list(range(len(self.meshes)))

        def find(k: int) -> int:
            while parent[k] != k:
                parent[k] = parent[parent[k]]
                k = parent[k]
            return k

        for d in self.domains:
            if not d.is_conductive:
                continue
            ids = [self._position[id(om.mesh)] for _, om in d.meshes()]
            for k in ids[1:]:
                parent[find(k)] = find(ids[0])

        groups: Dict[int, List[Mesh]] = {}
        for k, mesh in enumerate(self.meshes):
            groups.setdefault(find(k), []).append(mesh)
        return list(groups.values())

    # ------------------------------------------------------------------
    # sizes
    # ------------------------------------------------------------------

    @property
    def nb_triangles(self) -> int:
        return sum(m.n_triangles for m in self.meshes)

    @property
    def nb_current_barrier_triangles(self) -> int:
        return sum(m.n_triangles for m in self.meshes if m.current_barrier)

    @property
    def size(self) -> int:
        """Dimension of the head matrix."""
        return self.nb_parameters

    # ------------------------------------------------------------------
    # mesh / domain lookups
    # ------------------------------------------------------------------

    def mesh(self, name: str) -> Mesh:
        for m in self.meshes:
            if m.name == name:
                return m
        raise KeyError(f"no mesh named {name!r}")

    def domains_of(self, mesh: Mesh) -> List[Domain]:
        return list(self._mesh_domains[id(mesh)])

    def common_domains(self, m1: Mesh, m2: Mesh) -> List[Domain]:
        d2 = self._mesh_domains[id(m2)]
        return [d for d in self._mesh_domains[id(m1)] if any(d is x for x in d2)]

    def _conductive_common(self, m1: Mesh, m2: Mesh) -> List[Domain]:
        return [d for d in self.common_domains(m1, m2) if d.is_conductive]

    def sigma(self, m1: Mesh, m2: Mesh) -> float:
        return float(sum(d.conductivity for d in self._conductive_common(m1, m2)))

    def sigma_inv(self, m1: Mesh, m2: Mesh) -> float:
        return float(sum(1.0 / d.conductivity for d in self._conductive_common(m1, m2)))

    def indicator(self, m1: Mesh, m2: Mesh) -> float:
        return float(len(self._conductive_common(m1, m2)))

    def oriented(self, m1: Mesh, m2: Mesh) -> int:
        """+1 / -1 relative orientation in the first common conductive domain, 0 if none."""
        common = self._conductive_common(m1, m2)
        if not common:
            return 0
        d = common[0]
        return 1 if d.mesh_orientation(m1) == d.mesh_orientation(m2) else -1

    @property
    def communicating_mesh_pairs(self) -> List[MeshPair]:
        return list(self._pairs)

    @property
    def isolated_parts(self) -> List[List[Mesh]]:
        return [list(p) for p in self._parts]

    def outermost_vertices(self, part: Sequence[Mesh]) -> np.ndarray:
        """Distinct global vertex indices of the outermost meshes of `part`, in mesh order."""
        seen: Dict[int, None] = {}
        for mesh in part:
            if mesh.outermost:
                for v in mesh.vertex_indices.tolist():
                    seen.setdefault(v, None)
        return np.fromiter(seen.keys(), dtype=np.int64, count=len(seen))

    # ------------------------------------------------------------------
    # point location
    # ------------------------------------------------------------------

    def domain(self, where) -> Domain:
        """Domain by name, or the domain containing a point."""
        if isinstance(where, str):
            for d in self.domains:
                if d.name == where:
                    return d
            raise GeometryInconsistency(f"no domain named {where!r}")
        point = np.asarray(where, dtype=float).reshape(3)
        for d in self.domains:
            if bool(d.contains(point)):
                return d
        raise GeometryInconsistency(f"point {point.tolist()} is not inside any domain")

    def domains_at(self, points) -> List[Optional[Domain]]:
        """Domain of every point (None where no domain matches)."""
        pts = np.asarray(points, dtype=float).reshape(-1, 3)
        out: List[Optional[Domain]] = [None] * pts.shape[0]
        for d in self.domains:
            mask = d.contains(pts)
            for k in np.flatnonzero(mask):
                if out[k] is None:
                    out[k] = d
        return out

    def check(self, mesh: Mesh) -> Domain:
        """
        Ensure a foreign mesh lies inside a single domain and return it.

        Raises OverlappingSourceMesh otherwise.
        """
        if any(mesh is m for m in self.meshes):
            raise OverlappingSourceMesh(f"mesh {mesh.name!r} is part of the geometry")
        doms = self.domains_at(mesh.vertices)
        first = doms[0]
        if first is None or any(d is not first for d in doms):
            raise OverlappingSourceMesh(
                f"mesh {mesh.name!r} crosses an interface of the geometry"
            )
        # a closed source mesh must not enclose any interface either
        for m in self.meshes:
            omega = solid_angle(m.vertices[:, None, :], mesh.triangle_coordinates).sum(axis=-1)
            if np.any(np.abs(omega) > 2.0 * np.pi):
                raise OverlappingSourceMesh(
                    f"mesh {mesh.name!r} encloses mesh {m.name!r} of the geometry"
                )
        return first

    def __repr__(self) -> str:
        return (
            f"Geometry(domains={[d.name for d in self.domains]}, "
            f"meshes={[m.name for m in self.meshes]}, nb_parameters={self.nb_parameters})"
        )
