"""
Closed-form Laplace kernels on flat triangles.

All kernels integrate 1/|x - y| (the Green's function without its 1/(4π)
prefactor) and are vectorised: evaluation points ``x`` have shape (..., 3)
and triangles ``tri`` have shape (..., 3, 3); leading dimensions broadcast.

Conventions
-----------
- Triangle normal n = (p1 - p0) x (p2 - p0) / |...| (vertex order orients).
- Signed height h = (x - p0) . n.
- ``solid_angle`` is the Van Oosterom–Strackee angle computed from
  Y_i = p_i - x. It is positive when x lies on the -n side, so over a closed
  mesh with outward normals it sums to 4π for interior points.
- ``double_layer_moments`` returns, for each P1 hat function φ_i of the
  triangle, ∫_T φ_i(y) ∂_{n_y}(1/|x - y|) dy. The three moments sum to
  ``-solid_angle``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from electrohead.utils.config import SOLID_ANGLE_EPS

__all__ = [
    "triangle_normals",
    "hat_functions",
    "solid_angle",
    "single_layer",
    "double_layer_moments",
    "AnalyticS",
    "AnalyticD3",
    "ferguson",
    "Dipole",
    "dipole_potential",
    "dipole_potential_normal_derivative",
    "numeric_single_layer",
    "numeric_double_layer_moments",
]


# ---------------------------------------------------------------------------
# Small vector helpers
# ---------------------------------------------------------------------------


def _dot(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return np.sum(a * b, axis=-1)


def _norm(a: np.ndarray) -> np.ndarray:
    return np.sqrt(_dot(a, a))


def triangle_normals(tri: np.ndarray):
    """
    Unit normals and areas of triangles (..., 3, 3).
    """
    tri = np.asarray(tri, dtype=float)
    cr = np.cross(tri[..., 1, :] - tri[..., 0, :], tri[..., 2, :] - tri[..., 0, :])
    twice_area = _norm(cr)
    return cr / twice_area[..., None], 0.5 * twice_area


def hat_functions(y, tri) -> np.ndarray:
    """
    Values (..., 3) of the three P1 hat functions of `tri` at in-plane points `y`.
    """
    y = np.asarray(y, dtype=float)
    tri = np.asarray(tri, dtype=float)
    n, area = triangle_normals(tri)
    out = []
    for i in range(3):
        a = tri[..., (i + 1) % 3, :] - y
        b = tri[..., (i + 2) % 3, :] - y
        out.append(_dot(np.cross(a, b), n) / (2.0 * area))
    return np.stack(out, axis=-1)


# ---------------------------------------------------------------------------
# Solid angle
# ---------------------------------------------------------------------------


def _solid_angle_parts(x: np.ndarray, tri: np.ndarray):
    Y = [tri[..., i, :] - x for i in range(3)]
    R = [_norm(y) for y in Y]
    triple = _dot(Y[0], np.cross(Y[1], Y[2]))
    denom = (
        R[0] * R[1] * R[2]
        + R[0] * _dot(Y[1], Y[2])
        + R[1] * _dot(Y[2], Y[0])
        + R[2] * _dot(Y[0], Y[1])
    )
    omega = 2.0 * np.arctan2(triple, denom)
    # In-plane points: the solid angle is zero (or undefined on the triangle).
    flat = np.abs(triple) <= SOLID_ANGLE_EPS * R[0] * R[1] * R[2]
    omega = np.where(flat, 0.0, omega)
    return Y, R, omega, flat


def solid_angle(x, tri) -> np.ndarray:
    """Signed solid angle subtended by `tri` as seen from `x`."""
    x = np.asarray(x, dtype=float)
    tri = np.asarray(tri, dtype=float)
    return _solid_angle_parts(x, tri)[2]


# ---------------------------------------------------------------------------
# Edge logarithms
# ---------------------------------------------------------------------------


def _edge_terms(x: np.ndarray, tri: np.ndarray, n: np.ndarray):
    """
    Per-edge quantities for edges (p0,p1), (p1,p2), (p2,p0).

    Returns lists of in-plane outward edge normals m_e, signed distances
    d_e = (a - x).m_e and line integrals g_e = ∫_e 1/|x - y| dl.
    """
    ms, ds, gs = [], [], []
    for i in range(3):
        a = tri[..., i, :]
        b = tri[..., (i + 1) % 3, :]
        edge = b - a
        length = _norm(edge)
        t = edge / length[..., None]
        m = np.cross(t, n)

        ya = a - x
        yb = b - x
        ra = _norm(ya)
        rb = _norm(yb)
        sa = _dot(ya, t)
        sb = _dot(yb, t)

        # ln((rb + sb)/(ra + sa)) == ln((ra - sa)/(rb - sb)); pick the form
        # without cancellation.
        with np.errstate(divide="ignore", invalid="ignore"):
            forward = np.log((rb + sb) / (ra + sa))
            backward = np.log((ra - sa) / (rb - sb))
        g = np.where(sa + sb > 0.0, forward, backward)

        ms.append(m)
        ds.append(_dot(ya, m))
        gs.append(g)
    return ms, ds, gs


# ---------------------------------------------------------------------------
# Single layer
# ---------------------------------------------------------------------------


def single_layer(x, tri) -> np.ndarray:
    """
    ∫_T 1/|x - y| dy for a uniform unit density on T.

    Finite everywhere, including on the plane of T. Points on the edges
    themselves are a measure-zero case and give the limit value.
    """
    x = np.asarray(x, dtype=float)
    tri = np.asarray(tri, dtype=float)
    n, _ = triangle_normals(tri)
    h = _dot(x - tri[..., 0, :], n)
    _, _, omega, _ = _solid_angle_parts(x, tri)
    _, ds, gs = _edge_terms(x, tri, n)

    total = h * omega
    for d, g in zip(ds, gs):
        scale = np.abs(d) + np.abs(h) + _norm(tri[..., 1, :] - tri[..., 0, :])
        on_line = np.abs(d) <= SOLID_ANGLE_EPS * scale
        finite_g = np.where(np.isfinite(g), g, 0.0)
        total = total + np.where(on_line, 0.0, d * finite_g)
    return total


# ---------------------------------------------------------------------------
# Double layer (P1 moments)
# ---------------------------------------------------------------------------


def double_layer_moments(x, tri) -> np.ndarray:
    """
    P1 moments (..., 3) of the double-layer kernel ∂_{n_y}(1/|x - y|) over T.

    Zero for points in the plane of T.
    """
    x = np.asarray(x, dtype=float)
    tri = np.asarray(tri, dtype=float)
    n, area = triangle_normals(tri)
    Y, _, omega, flat = _solid_angle_parts(x, tri)
    ms, _, gs = _edge_terms(x, tri, n)

    out = []
    with np.errstate(invalid="ignore"):
        for i in range(3):
            z = np.cross(Y[(i + 1) % 3], Y[(i + 2) % 3])
            acc = omega * _dot(z, n)
            for m, g in zip(ms, gs):
                acc = acc - g * _dot(z, m)
            out.append(-acc / (2.0 * area))
    res = np.stack(out, axis=-1)
    return np.where(flat[..., None], 0.0, res)


@dataclass(frozen=True)
class AnalyticS:
    """Single-layer potential of one triangle, as a callable kernel."""

    triangle: np.ndarray

    def f(self, x) -> np.ndarray:
        return single_layer(x, self.triangle)

    __call__ = f


@dataclass(frozen=True)
class AnalyticD3:
    """P1 double-layer moments of one triangle, as a callable kernel."""

    triangle: np.ndarray

    def f(self, x) -> np.ndarray:
        return double_layer_moments(x, self.triangle)

    __call__ = f


# ---------------------------------------------------------------------------
# Ferguson operator
# ---------------------------------------------------------------------------


def ferguson(x, mesh, vertex: Optional[int] = None) -> np.ndarray:
    """
    Ferguson kernel at points `x` for the P1 basis functions of `mesh`.

    For a vertex V with adjacent triangles T = (V, A, B):
        F_V(x) = Σ_T (A - B) / (2 |T|) * S_T(x)

    Parameters
    ----------
    x : array_like, shape (..., 3)
    mesh : Mesh
    vertex : int, optional
        Local vertex index. When omitted, all vertices are returned.

    Returns
    -------
    ndarray, shape (..., 3) for one vertex, or (..., n_vertices, 3).
    """
    x = np.asarray(x, dtype=float)
    coords = mesh.triangle_coordinates
    if vertex is not None:
        adj = mesh.vertex_triangles(vertex)
        corner = mesh.corner_of(vertex, adj)
        s = single_layer(x[..., None, :], coords[adj])  # (..., k)
        curl = mesh.curl[adj, corner]  # (k, 3), edge / area
        return 0.5 * np.einsum("...k,kd->...d", s, curl)

    s = single_layer(x[..., None, :], coords)  # (..., nt)
    out = np.zeros(x.shape[:-1] + (mesh.n_vertices, 3))
    for corner in range(3):
        contrib = 0.5 * s[..., :, None] * mesh.curl[:, corner, :]  # (..., nt, 3)
        np.add.at(
            np.moveaxis(out, -2, 0),
            mesh.triangles[:, corner],
            np.moveaxis(contrib, -2, 0),
        )
    return out


# ---------------------------------------------------------------------------
# Dipoles
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Dipole:
    """Current dipole: position and moment in R^3."""

    position: np.ndarray
    moment: np.ndarray

    def __post_init__(self) -> None:
        pos = np.asarray(self.position, dtype=float).reshape(3)
        mom = np.asarray(self.moment, dtype=float).reshape(3)
        object.__setattr__(self, "position", pos)
        object.__setattr__(self, "moment", mom)

    def potential(self, x) -> np.ndarray:
        return dipole_potential(x, self)

    @classmethod
    def from_array(cls, dipoles) -> list:
        """Rows [px, py, pz, qx, qy, qz] -> list of dipoles."""
        arr = np.atleast_2d(np.asarray(dipoles, dtype=float))
        if arr.shape[-1] != 6:
            raise ValueError(f"dipole rows must have 6 entries, got shape {arr.shape!r}")
        return [cls(row[:3], row[3:]) for row in arr]


def dipole_potential(x, dipole: Dipole) -> np.ndarray:
    """q . (x - p) / |x - p|^3 (infinite homogeneous medium, without K/σ)."""
    r = np.asarray(x, dtype=float) - dipole.position
    rn = _norm(r)
    return _dot(r, dipole.moment) / rn**3


def dipole_potential_normal_derivative(x, dipole: Dipole, normal) -> np.ndarray:
    """n . grad_x of the dipole potential."""
    r = np.asarray(x, dtype=float) - dipole.position
    normal = np.asarray(normal, dtype=float)
    rn2 = _dot(r, r)
    inv_r3 = rn2 ** -1.5
    qn = _dot(dipole.moment, normal)
    qr = _dot(dipole.moment, r)
    rnrm = _dot(r, normal)
    return qn * inv_r3 - 3.0 * qr * rnrm * inv_r3 / rn2


# ---------------------------------------------------------------------------
# Quadrature counterparts
# ---------------------------------------------------------------------------


def numeric_single_layer(x, tri, integrator) -> float:
    """∫_T 1/|x - y| dy by quadrature with `integrator` (x not on T)."""
    x = np.asarray(x, dtype=float).reshape(3)
    return integrator.integrate(lambda y: 1.0 / _norm(x - y), np.asarray(tri, dtype=float))


def numeric_double_layer_moments(x, tri, integrator) -> np.ndarray:
    """P1 double-layer moments by quadrature with `integrator` (x not on T)."""
    x = np.asarray(x, dtype=float).reshape(3)
    tri = np.asarray(tri, dtype=float)
    n, _ = triangle_normals(tri)

    def kernel(y: np.ndarray) -> np.ndarray:
        r = x - y
        dn = _dot(r, n) / _norm(r) ** 3
        return hat_functions(y, tri) * dn[..., None]

    return integrator.integrate(kernel, tri)
