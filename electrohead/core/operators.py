"""
BEM block operators.

Fillers add kernel contributions into an assembly target addressed with
global unknown indices (see ``electrohead.maths.blocks.AssemblyTarget``):

  - S  (P0 x P0):  S[T1, T2] = ∫_{T1} ∫_{T2} 1/|x - y| dy dx
  - D  (P0 x P1):  D[T1, V]  = ∫_{T1} ∫_{T2∋V} φ_V(y) ∂_{n_y} 1/|x - y| dy dx
  - D* (P0 x P1):  D with the two meshes swapped
  - N  (P1 x P1):  hypersingular operator, obtained from the S block:
        N[V1, V2] = -Σ_{T1∋V1, T2∋V2} w (CB1 . CB2) S[T1, T2] / (|T1| |T2|)
    with CB the edge opposite the vertex and w = 1/4 (1/2 for coincident
    vertices of two different meshes).

Every entry is multiplied by the coefficient given to the filler. Fillers
never clear the target.

DiagonalBlock handles a mesh against itself and fills only the upper
triangle of symmetric sub-blocks (S and N); NonDiagonalBlock handles two
different meshes with full rectangular fills. The unscaled S block
computed by ``set_S_block`` is kept and reused by N.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Generic, List, Optional, Sequence, TypeVar

import numpy as np
import torch

from electrohead.core.analytics import (
    Dipole,
    double_layer_moments,
    dipole_potential,
    dipole_potential_normal_derivative,
    ferguson,
    hat_functions,
    single_layer,
    triangle_normals,
)
from electrohead.core.mesh import Mesh
from electrohead.maths.blocks import AssemblyTarget, Block, SymBlock, SymmetricBlockMatrix
from electrohead.utils.config import AssemblyConfig
from electrohead.utils.logging import JsonlLogger

__all__ = [
    "BlocksBase",
    "DiagonalBlock",
    "NonDiagonalBlock",
    "PartialBlock",
    "HeadMatrixBlocks",
    "ferguson_operator",
    "dipole_potential_operator",
    "dipole_potential_derivative_operator",
]

# Upper bound on (points x triangles) evaluated at once by PartialBlock.
_POINT_CHUNK = 200_000


# ---------------------------------------------------------------------------
# Shared machinery
# ---------------------------------------------------------------------------


class BlocksBase:
    """
    Integrator, configuration and instrumentation shared by block operators.
    """

    def __init__(
        self,
        integrator=None,
        *,
        config: Optional[AssemblyConfig] = None,
        logger: Optional[JsonlLogger] = None,
    ):
        self.config = config if config is not None else AssemblyConfig()
        self.integrator = integrator if integrator is not None else self.config.make_integrator()
        self.logger = logger

    def message(self, op_name: str, mesh1: Mesh, mesh2: Optional[Mesh] = None, **fields) -> None:
        if not (self.config.verbose and self.logger):
            return
        if mesh2 is None:
            self.logger.operator_fill(op_name, mesh=mesh1.name, **fields)
        else:
            self.logger.operator_fill(op_name, mesh1=mesh1.name, mesh2=mesh2.name, **fields)

    def _map_rows(self, fn: Callable[[int], np.ndarray], n_rows: int) -> List[np.ndarray]:
        """Evaluate fn on every row; rows come back in order whatever the worker count."""
        workers = self.config.workers or 1
        if workers <= 1 or n_rows < 2:
            return [fn(i) for i in range(n_rows)]
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(fn, range(n_rows)))

    # ----- kernels over mesh pairs (unscaled, local indices) -----

    def _s_matrix(self, mesh1: Mesh, mesh2: Mesh, upper: bool = False) -> np.ndarray:
        """
        (nt1, nt2) single-layer interactions. With ``upper`` the two meshes are
        the same and only T1 <= T2 is integrated; the result is mirrored.
        """
        tris1 = mesh1.triangle_coordinates
        tris2 = mesh2.triangle_coordinates

        def row(t1: int) -> np.ndarray:
            sources = tris2[t1:] if upper else tris2
            return np.atleast_1d(
                self.integrator.integrate(lambda x: single_layer(x[:, None, :], sources), tris1[t1])
            )

        rows = self._map_rows(row, mesh1.n_triangles)
        out = np.zeros((mesh1.n_triangles, mesh2.n_triangles))
        for t1, values in enumerate(rows):
            if upper:
                out[t1, t1:] = values
            else:
                out[t1] = values
        if upper:
            out = np.triu(out) + np.triu(out, 1).T
        return out

    def _d_matrix(self, test_mesh: Mesh, source_mesh: Mesh) -> np.ndarray:
        """(nt_test, nv_source) double-layer P1 moments integrated over test triangles."""
        tris1 = test_mesh.triangle_coordinates
        tris2 = source_mesh.triangle_coordinates
        corners = source_mesh.triangles

        def row(t1: int) -> np.ndarray:
            moments = self.integrator.integrate(
                lambda x: double_layer_moments(x[:, None, :], tris2), tris1[t1]
            )
            out = np.zeros(source_mesh.n_vertices)
            np.add.at(out, corners, moments)
            return out

        rows = self._map_rows(row, test_mesh.n_triangles)
        if not rows:
            return np.zeros((0, source_mesh.n_vertices))
        return np.stack(rows)

    @staticmethod
    def _n_matrix(mesh1: Mesh, mesh2: Mesh, s_block: np.ndarray) -> np.ndarray:
        """(nv1, nv2) Σ_k G1_k S G2_k^T, before weighting and sign."""
        s = torch.from_numpy(np.ascontiguousarray(s_block))
        out = torch.zeros(mesh1.n_vertices, mesh2.n_vertices, dtype=torch.float64)
        for g1, g2 in zip(mesh1.curl_operators(), mesh2.curl_operators()):
            x = torch.sparse.mm(g2, s.T.contiguous())          # (nv2, nt1)
            out += torch.sparse.mm(g1, x.T.contiguous())       # (nv1, nv2)
        return out.numpy()

    def _d_block(self, test_mesh: Mesh, source_mesh: Mesh, coeff: float, target: AssemblyTarget) -> None:
        d = self._d_matrix(test_mesh, source_mesh)
        target.add_block(test_mesh.triangle_indices, source_mesh.vertex_indices, coeff * d)


# ---------------------------------------------------------------------------
# Same-mesh operators
# ---------------------------------------------------------------------------


class DiagonalBlock(BlocksBase):
    """Operators of a mesh against itself."""

    def __init__(self, mesh: Mesh, integrator=None, *, config=None, logger=None):
        super().__init__(integrator, config=config, logger=logger)
        self.mesh = mesh
        self.s_block: Optional[np.ndarray] = None

    # ----- gated fills used by the head-matrix assembler -----

    def set_S_block(self, coeff: float, target: AssemblyTarget) -> None:
        if not self.mesh.current_barrier:
            self.s_block = self.S(coeff, target)

    def set_N_block(self, coeff: float, target: AssemblyTarget) -> None:
        self.N(coeff, target)

    def set_D_block(self, coeff: float, target: AssemblyTarget) -> None:
        if not self.mesh.current_barrier:
            self.D(coeff, target)

    def set_Dstar_block(self, coeff: float, target: AssemblyTarget) -> None:
        # D* of a mesh with itself is already covered by D.
        return None

    # ----- operators -----

    def S(self, coeff: float, target: AssemblyTarget) -> np.ndarray:
        """Add coeff * S (upper triangle); return the unscaled symmetric block."""
        self.message("S", self.mesh, self.mesh, coeff=coeff)
        s = self._s_matrix(self.mesh, self.mesh, upper=True)
        idx = self.mesh.triangle_indices
        target.add_block(idx, idx, coeff * np.triu(s))
        return s

    def N(self, coeff: float, target: AssemblyTarget) -> None:
        s = self.s_block
        if s is None:
            scratch = SymBlock.zeros(self.mesh.triangle_range)
            self.S(1.0, scratch)
            s = scratch.matrix.numpy()
        self.message("N", self.mesh, self.mesh, coeff=coeff)
        n = -0.25 * self._n_matrix(self.mesh, self.mesh, s)
        idx = self.mesh.vertex_indices
        target.add_block(idx, idx, coeff * np.triu(n))

    def D(self, coeff: float, target: AssemblyTarget) -> None:
        self.message("D", self.mesh, self.mesh, coeff=coeff)
        self._d_block(self.mesh, self.mesh, coeff, target)

    def Dstar(self, coeff: float, target: AssemblyTarget) -> None:
        self.message("D*", self.mesh, self.mesh, coeff=coeff)
        self._d_block(self.mesh, self.mesh, coeff, target)

    def add_id(self, coeff: float, target: AssemblyTarget) -> None:
        """P1/P0 mass matrix: (T, V) += coeff * |T| / 3 for the vertices V of T."""
        self.message("Id", self.mesh, coeff=coeff)
        rows = np.repeat(self.mesh.triangle_indices, 3)
        cols = self.mesh.vertex_indices[self.mesh.triangles].reshape(-1)
        values = np.repeat(self.mesh.areas / 3.0, 3) * coeff
        target.add_entries(rows, cols, values)

    addId = add_id


# ---------------------------------------------------------------------------
# Cross-mesh operators
# ---------------------------------------------------------------------------


class NonDiagonalBlock(BlocksBase):
    """Operators between two meshes (rows on mesh1, columns on mesh2)."""

    def __init__(self, mesh1: Mesh, mesh2: Mesh, integrator=None, *, config=None, logger=None):
        super().__init__(integrator, config=config, logger=logger)
        self.mesh1 = mesh1
        self.mesh2 = mesh2
        self.s_block: Optional[np.ndarray] = None

    # ----- gated fills used by the head-matrix assembler -----

    def set_S_block(self, coeff: float, target: AssemblyTarget) -> None:
        if not self.mesh1.current_barrier and not self.mesh2.current_barrier:
            self.s_block = self.S(coeff, target)

    def set_N_block(self, coeff: float, target: AssemblyTarget) -> None:
        self.N(coeff, target)

    def set_D_block(self, coeff: float, target: AssemblyTarget) -> None:
        if not self.mesh1.current_barrier:
            self.D(coeff, target)

    def set_Dstar_block(self, coeff: float, target: AssemblyTarget) -> None:
        if self.mesh1 is not self.mesh2 and not self.mesh2.current_barrier:
            self.Dstar(coeff, target)

    # ----- operators -----

    def S(self, coeff: float, target: AssemblyTarget) -> np.ndarray:
        """Add coeff * S; return the unscaled (nt1, nt2) block."""
        self.message("S", self.mesh1, self.mesh2, coeff=coeff)
        s = self._s_matrix(self.mesh1, self.mesh2)
        target.add_block(self.mesh1.triangle_indices, self.mesh2.triangle_indices, coeff * s)
        return s

    def vertex_weights(self) -> np.ndarray:
        """1/2 where the two vertices are the same unknown, 1/4 elsewhere."""
        w = np.full((self.mesh1.n_vertices, self.mesh2.n_vertices), 0.25)
        if self.mesh1.shares_index_space(self.mesh2):
            same = self.mesh1.vertex_indices[:, None] == self.mesh2.vertex_indices[None, :]
            w[same] = 0.5
        return w

    def N(self, coeff: float, target: AssemblyTarget) -> None:
        s = self.s_block
        if s is None:
            scratch = Block.zeros(self.mesh1.triangle_range, self.mesh2.triangle_range)
            self.S(1.0, scratch)
            s = scratch.data.numpy()
        self.message("N", self.mesh1, self.mesh2, coeff=coeff)
        n = -self.vertex_weights() * self._n_matrix(self.mesh1, self.mesh2, s)
        target.add_block(self.mesh1.vertex_indices, self.mesh2.vertex_indices, coeff * n)

    def D(self, coeff: float, target: AssemblyTarget) -> None:
        self.message("D", self.mesh1, self.mesh2, coeff=coeff)
        self._d_block(self.mesh1, self.mesh2, coeff, target)

    def Dstar(self, coeff: float, target: AssemblyTarget) -> None:
        self.message("D*", self.mesh1, self.mesh2, coeff=coeff)
        self._d_block(self.mesh2, self.mesh1, coeff, target)


# ---------------------------------------------------------------------------
# Evaluation at arbitrary points
# ---------------------------------------------------------------------------


class PartialBlock(BlocksBase):
    """
    S and D of a whole mesh evaluated at external points.

    Rows of the target are given explicitly (one per point); columns are
    the mesh's global triangle (S) or vertex (D) indices.
    """

    def __init__(self, mesh: Mesh, *, config=None, logger=None):
        super().__init__(None, config=config, logger=logger)
        self.mesh = mesh

    def _chunks(self, n_points: int):
        step = max(1, _POINT_CHUNK // max(1, self.mesh.n_triangles))
        for start in range(0, n_points, step):
            yield slice(start, min(n_points, start + step))

    def add_D(self, coeff: float, points, target: AssemblyTarget, rows: Sequence[int]) -> None:
        pts = np.asarray(points, dtype=float).reshape(-1, 3)
        rows = np.asarray(rows, dtype=np.int64)
        self.message("partial D", self.mesh, n_points=int(pts.shape[0]), coeff=coeff)
        tris = self.mesh.triangle_coordinates
        for sl in self._chunks(pts.shape[0]):
            moments = double_layer_moments(pts[sl, None, :], tris)  # (P, nt, 3)
            local = np.zeros((moments.shape[0], self.mesh.n_vertices))
            for corner in range(3):
                np.add.at(local.T, self.mesh.triangles[:, corner], moments[:, :, corner].T)
            target.add_block(rows[sl], self.mesh.vertex_indices, coeff * local)

    addD = add_D

    def S(self, coeff: float, points, target: AssemblyTarget, rows: Sequence[int]) -> None:
        pts = np.asarray(points, dtype=float).reshape(-1, 3)
        rows = np.asarray(rows, dtype=np.int64)
        self.message("partial S", self.mesh, n_points=int(pts.shape[0]), coeff=coeff)
        tris = self.mesh.triangle_coordinates
        for sl in self._chunks(pts.shape[0]):
            values = single_layer(pts[sl, None, :], tris)  # (P, nt)
            target.add_block(rows[sl], self.mesh.triangle_indices, coeff * values)


# ---------------------------------------------------------------------------
# Pair driver
# ---------------------------------------------------------------------------

BlockType = TypeVar("BlockType", DiagonalBlock, NonDiagonalBlock)


class HeadMatrixBlocks(Generic[BlockType]):
    """Applies S, N, D, D* of one mesh pair in that order."""

    def __init__(self, block: BlockType):
        self.block = block

    def _meshes(self):
        if isinstance(self.block, DiagonalBlock):
            return self.block.mesh, self.block.mesh
        return self.block.mesh1, self.block.mesh2

    def allocate(self, matrix: SymmetricBlockMatrix) -> None:
        """Allocate the blocks this pair writes into a block-structured target."""
        mesh1, mesh2 = self._meshes()
        t1 = [mesh1.triangle_range] if not mesh1.current_barrier else []
        t2 = [mesh2.triangle_range] if not mesh2.current_barrier else []
        v1 = mesh1.vertex_ranges
        v2 = mesh2.vertex_ranges
        matrix.add_blocks(t1, t2)   # S
        matrix.add_blocks(v1, v2)   # N
        matrix.add_blocks(t1, v2)   # D
        if mesh1 is not mesh2:
            matrix.add_blocks(t2, v1)   # D*

    def set_blocks(self, coeffs: Sequence[float], target: AssemblyTarget) -> None:
        s_coeff, n_coeff, d_coeff = coeffs
        self.block.set_S_block(s_coeff, target)
        self.block.set_N_block(n_coeff, target)
        self.block.set_D_block(d_coeff, target)
        self.block.set_Dstar_block(d_coeff, target)


# ---------------------------------------------------------------------------
# Point operators
# ---------------------------------------------------------------------------


def ferguson_operator(x, mesh: Mesh, target: AssemblyTarget, row: int, coeff: float) -> None:
    """Rows row..row+2 += coeff * Ferguson vector of every vertex of `mesh` at `x`."""
    values = ferguson(np.asarray(x, dtype=float).reshape(3), mesh)  # (nv, 3)
    target.add_block(np.arange(row, row + 3), mesh.vertex_indices, coeff * values.T)


def dipole_potential_derivative_operator(
    dipole: Dipole, mesh: Mesh, rhs: torch.Tensor, coeff: float, integrator
) -> None:
    """rhs[V] += coeff * ∫_T φ_V ∂_n V_dipole over the triangles of `mesh`."""

    def kernel(points: np.ndarray, tris: np.ndarray) -> np.ndarray:
        normals, _ = triangle_normals(tris)
        dn = dipole_potential_normal_derivative(points, dipole, normals[:, None, :])
        return hat_functions(points, tris[:, None]) * dn[..., None]

    values = integrator.integrate_batch(kernel, mesh.triangle_coordinates)  # (nt, 3)
    idx = torch.from_numpy(mesh.vertex_indices[mesh.triangles].reshape(-1))
    rhs.index_add_(0, idx, torch.from_numpy(coeff * values.reshape(-1)).to(rhs.dtype))


def dipole_potential_operator(
    dipole: Dipole, mesh: Mesh, rhs: torch.Tensor, coeff: float, integrator
) -> None:
    """rhs[T] += coeff * ∫_T V_dipole over the triangles of `mesh`."""

    def kernel(points: np.ndarray, tris: np.ndarray) -> np.ndarray:
        return dipole_potential(points, dipole)

    values = integrator.integrate_batch(kernel, mesh.triangle_coordinates)  # (nt,)
    idx = torch.from_numpy(mesh.triangle_indices)
    rhs.index_add_(0, idx, torch.from_numpy(coeff * values).to(rhs.dtype))
