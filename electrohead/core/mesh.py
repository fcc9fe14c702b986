"""
Triangulated surface meshes for symmetric BEM assembly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import torch

__all__ = ["Mesh", "icosphere"]


@dataclass(eq=False)
class Mesh:
    """
    Oriented triangulated surface.

    Triangles index the mesh's own vertex array; the vertex order of a
    triangle defines its normal (p1 - p0) x (p2 - p0).

    ``vertex_indices`` / ``triangle_indices`` hold the global unknown indices
    assigned by the owning Geometry. A mesh that is not part of a Geometry
    (a source mesh, for instance) indexes itself: vertices 0..nv-1 and
    triangles 0..nt-1.
    """

    vertices: np.ndarray       # [Nv,3]
    triangles: np.ndarray      # [Nt,3]
    name: str = ""
    outermost: bool = False
    current_barrier: bool = False

    vertex_indices: np.ndarray = field(init=False, repr=False)
    triangle_indices: np.ndarray = field(init=False, repr=False)
    index_space: object = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.vertices = np.ascontiguousarray(np.asarray(self.vertices, dtype=float))
        self.triangles = np.ascontiguousarray(np.asarray(self.triangles, dtype=np.int64))
        if self.vertices.ndim != 2 or self.vertices.shape[1] != 3:
            raise ValueError(f"vertices must have shape (Nv, 3), got {self.vertices.shape!r}")
        if self.triangles.ndim != 2 or self.triangles.shape[1] != 3:
            raise ValueError(f"triangles must have shape (Nt, 3), got {self.triangles.shape!r}")
        if not np.all(np.isfinite(self.vertices)):
            raise ValueError(f"mesh {self.name!r} has non-finite vertex coordinates")
        if self.triangles.size and (
            self.triangles.min() < 0 or self.triangles.max() >= self.vertices.shape[0]
        ):
            raise ValueError(f"mesh {self.name!r} has triangle indices out of range")

        coords = self.vertices[self.triangles]
        cr = np.cross(coords[:, 1] - coords[:, 0], coords[:, 2] - coords[:, 0])
        twice_area = np.linalg.norm(cr, axis=1)
        if np.any(twice_area <= 0.0):
            bad = int(np.flatnonzero(twice_area <= 0.0)[0])
            raise ValueError(f"mesh {self.name!r} has a degenerate triangle (#{bad})")

        self.triangle_coordinates = coords                      # [Nt,3,3]
        self.areas = 0.5 * twice_area                           # [Nt]
        self.normals = cr / twice_area[:, None]                 # [Nt,3]
        self.centroids = coords.mean(axis=1)                    # [Nt,3]

        # Surface curl of the hat functions times the area:
        # curl[t, i] = (p_{i+1} - p_{i+2}) / |T|, the edge opposite corner i.
        curl = np.empty_like(coords)
        for i in range(3):
            curl[:, i] = coords[:, (i + 1) % 3] - coords[:, (i + 2) % 3]
        self.curl = curl / self.areas[:, None, None]            # [Nt,3,3]

        # vertex -> adjacent triangles (CSR)
        flat = self.triangles.reshape(-1)
        order = np.argsort(flat, kind="stable")
        counts = np.bincount(flat, minlength=self.n_vertices)
        self._adj_ptr = np.concatenate([[0], np.cumsum(counts)])
        self._adj_tri = order // 3
        self._adj_corner = order % 3

        self.reset_indices()

    # ------------------------------------------------------------------
    # sizes / indexing
    # ------------------------------------------------------------------

    @property
    def n_vertices(self) -> int:
        return int(self.vertices.shape[0])

    @property
    def n_triangles(self) -> int:
        return int(self.triangles.shape[0])

    def reset_indices(self) -> None:
        """Give the mesh its own dense index space."""
        self.vertex_indices = np.arange(self.n_vertices, dtype=np.int64)
        self.triangle_indices = np.arange(self.n_triangles, dtype=np.int64)
        self.index_space = self

    def set_indices(self, vertex_indices, triangle_indices, index_space: object) -> None:
        vi = np.asarray(vertex_indices, dtype=np.int64)
        ti = np.asarray(triangle_indices, dtype=np.int64)
        if vi.shape != (self.n_vertices,) or ti.shape != (self.n_triangles,):
            raise ValueError("index arrays must match the mesh sizes")
        self.vertex_indices = vi
        self.triangle_indices = ti
        self.index_space = index_space

    def shares_index_space(self, other: "Mesh") -> bool:
        return self.index_space is other.index_space

    @property
    def triangle_range(self) -> Tuple[int, int]:
        """Global [start, stop) of the (contiguous) triangle indices."""
        if self.n_triangles == 0:
            return (0, 0)
        start = int(self.triangle_indices[0])
        stop = start + self.n_triangles
        if not np.array_equal(self.triangle_indices, np.arange(start, stop)):
            raise ValueError(f"triangle indices of mesh {self.name!r} are not contiguous")
        return (start, stop)

    @property
    def vertex_ranges(self) -> List[Tuple[int, int]]:
        """Contiguous runs [start, stop) covering the global vertex indices."""
        idx = np.unique(self.vertex_indices)
        if idx.size == 0:
            return []
        breaks = np.flatnonzero(np.diff(idx) != 1) + 1
        return [(int(run[0]), int(run[-1]) + 1) for run in np.split(idx, breaks)]

    # ------------------------------------------------------------------
    # adjacency
    # ------------------------------------------------------------------

    def vertex_triangles(self, vertex: int) -> np.ndarray:
        """Local indices of the triangles adjacent to local `vertex`."""
        lo, hi = self._adj_ptr[vertex], self._adj_ptr[vertex + 1]
        return self._adj_tri[lo:hi]

    def corner_of(self, vertex: int, triangles: Optional[np.ndarray] = None) -> np.ndarray:
        """Corner position (0..2) of `vertex` in each adjacent triangle."""
        lo, hi = self._adj_ptr[vertex], self._adj_ptr[vertex + 1]
        corners = self._adj_corner[lo:hi]
        if triangles is None:
            return corners
        lookup = dict(zip(self._adj_tri[lo:hi].tolist(), corners.tolist()))
        return np.asarray([lookup[int(t)] for t in triangles], dtype=np.int64)

    def curl_operators(self) -> List[torch.Tensor]:
        """
        Sparse (Nv, Nt) matrices G_k with G_k[v, t] = curl[t, corner(v), k].

        N between two meshes is then -Σ_k G1_k S G2_k^T (before weighting).
        """
        rows = torch.from_numpy(self.triangles.reshape(-1))
        cols = torch.from_numpy(np.repeat(np.arange(self.n_triangles, dtype=np.int64), 3))
        index = torch.stack([rows, cols])
        values = torch.from_numpy(self.curl.reshape(-1, 3))
        return [
            torch.sparse_coo_tensor(
                index, values[:, k].contiguous(), (self.n_vertices, self.n_triangles),
                dtype=torch.float64,
            ).coalesce()
            for k in range(3)
        ]

    def __repr__(self) -> str:
        return (
            f"Mesh(name={self.name!r}, n_vertices={self.n_vertices}, "
            f"n_triangles={self.n_triangles}, outermost={self.outermost}, "
            f"current_barrier={self.current_barrier})"
        )


# ---------------------------------------------------------------------------
# Generators
# ---------------------------------------------------------------------------

_PHI = (1.0 + 5.0 ** 0.5) / 2.0

_ICOSAHEDRON_VERTICES = [
    (-1, _PHI, 0), (1, _PHI, 0), (-1, -_PHI, 0), (1, -_PHI, 0),
    (0, -1, _PHI), (0, 1, _PHI), (0, -1, -_PHI), (0, 1, -_PHI),
    (_PHI, 0, -1), (_PHI, 0, 1), (-_PHI, 0, -1), (-_PHI, 0, 1),
]

_ICOSAHEDRON_FACES = [
    (0, 11, 5), (0, 5, 1), (0, 1, 7), (0, 7, 10), (0, 10, 11),
    (1, 5, 9), (5, 11, 4), (11, 10, 2), (10, 7, 6), (7, 1, 8),
    (3, 9, 4), (3, 4, 2), (3, 2, 6), (3, 6, 8), (3, 8, 9),
    (4, 9, 5), (2, 4, 11), (6, 2, 10), (8, 6, 7), (9, 8, 1),
]


def icosphere(
    radius: float = 1.0,
    center: Sequence[float] = (0.0, 0.0, 0.0),
    subdivisions: int = 1,
    name: str = "",
) -> Mesh:
    """
    Closed sphere mesh with outward normals.

    ``subdivisions`` k gives 10 * 4**k + 2 vertices and 20 * 4**k triangles.
    """
    if radius <= 0.0:
        raise ValueError("radius must be positive")
    if subdivisions < 0:
        raise ValueError("subdivisions must be non-negative")

    verts = [np.asarray(v, dtype=float) / np.linalg.norm(v) for v in _ICOSAHEDRON_VERTICES]
    faces = list(_ICOSAHEDRON_FACES)

    for _ in range(subdivisions):
        cache: Dict[Tuple[int, int], int] = {}

        def midpoint(a: int, b: int) -> int:
            key = (a, b) if a < b else (b, a)
            if key not in cache:
                m = verts[a] + verts[b]
                verts.append(m / np.linalg.norm(m))
                cache[key] = len(verts) - 1
            return cache[key]

        refined = []
        for a, b, c in faces:
            ab, bc, ca = midpoint(a, b), midpoint(b, c), midpoint(c, a)
            refined.extend([(a, ab, ca), (b, bc, ab), (c, ca, bc), (ab, bc, ca)])
        faces = refined

    unit = np.asarray(verts)
    tris = np.asarray(faces, dtype=np.int64)

    # enforce outward orientation
    coords = unit[tris]
    nrm = np.cross(coords[:, 1] - coords[:, 0], coords[:, 2] - coords[:, 0])
    inward = np.einsum("ij,ij->i", nrm, coords.mean(axis=1)) < 0.0
    tris[inward] = tris[inward][:, [0, 2, 1]]

    vertices = np.asarray(center, dtype=float) + radius * unit
    return Mesh(vertices, tris, name=name)
