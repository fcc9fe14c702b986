"""
Quadrature helpers for symmetric Laplace BEM on triangular panels.

This module provides:

  - `barycentric_rule(order)`:
      Symmetric Dunavant rules on the reference triangle, returned as
      barycentric coordinates and weights normalised so that Σ w = 1.
      Orders 0..4 use 1, 3, 6, 7 and 12 points (exact for polynomials of
      degree 1, 2, 4, 5 and 6).

  - `standard_triangle_quadrature(vertices, order)`:
      The same rules mapped onto one or many physical triangles; the
      weights sum to the triangle area.

  - `subdivide_triangle(vertices)`:
      4-way midpoint refinement used by the adaptive integrator.

  - `Integrator(order)`:
      Fixed-order integration of a caller-supplied kernel. The kernel maps
      points of shape (Q, 3) to values of shape (Q, ...) and the result
      keeps the trailing shape, so scalar kernels give scalars, 3-vector
      kernels give 3-vectors and batched kernels give batches.

  - `AdaptiveIntegrator(order, tolerance, max_levels)`:
      Recursive refinement on top of the fixed rule: a triangle is split
      into four children while the refined and coarse values differ by
      more than `tolerance` relative to the coarse value.
"""

from __future__ import annotations

from typing import Callable, Dict, Tuple

import numpy as np

from electrohead.utils.config import DEFAULT_QUADRATURE_ORDER, MAX_QUADRATURE_ORDER

__all__ = [
    "barycentric_rule",
    "standard_triangle_quadrature",
    "subdivide_triangle",
    "Integrator",
    "AdaptiveIntegrator",
]


# ---------------------------------------------------------------------------
# Basic geometry helpers
# ---------------------------------------------------------------------------


def _as_triangle_vertices(vertices) -> np.ndarray:
    """
    Convert input to a (..., 3, 3) float64 array of triangle vertices.
    """
    v = np.asarray(vertices, dtype=float)
    if v.ndim < 2 or v.shape[-2:] != (3, 3):
        raise ValueError(f"vertices must have shape (..., 3, 3), got {v.shape!r}")
    return v


def _triangle_area(verts: np.ndarray) -> np.ndarray:
    """
    Area of triangles given by three vertices in R^3 (vectorised).
    """
    e1 = verts[..., 1, :] - verts[..., 0, :]
    e2 = verts[..., 2, :] - verts[..., 0, :]
    return 0.5 * np.linalg.norm(np.cross(e1, e2), axis=-1)


# ---------------------------------------------------------------------------
# Dunavant rules (barycentric)
# ---------------------------------------------------------------------------


def _orbit3(a: float) -> list:
    b = 1.0 - 2.0 * a
    return [[a, a, b], [a, b, a], [b, a, a]]


def _orbit6(a: float, b: float) -> list:
    c = 1.0 - a - b
    return [[a, b, c], [a, c, b], [b, a, c], [b, c, a], [c, a, b], [c, b, a]]


def _build_rules() -> Dict[int, Tuple[np.ndarray, np.ndarray]]:
    third = 1.0 / 3.0
    rules: Dict[int, Tuple[list, list]] = {}

    # order 0: centroid rule (degree 1)
    rules[0] = ([[third, third, third]], [1.0])

    # order 1: permutations of (2/3, 1/6, 1/6), equal weights (degree 2)
    rules[1] = (_orbit3(1.0 / 6.0), [third] * 3)

    # order 2: 6-point rule (degree 4)
    rules[2] = (
        _orbit3(0.445948490915965) + _orbit3(0.091576213509771),
        [0.223381589678011] * 3 + [0.109951743655322] * 3,
    )

    # order 3: 7-point rule (degree 5)
    rules[3] = (
        [[third, third, third]]
        + _orbit3(0.470142064105115)
        + _orbit3(0.101286507323456),
        [0.225] + [0.132394152788506] * 3 + [0.125939180544827] * 3,
    )

    # order 4: 12-point rule (degree 6)
    rules[4] = (
        _orbit3(0.249286745170910)
        + _orbit3(0.063089014491502)
        + _orbit6(0.053145049844817, 0.310352451033784),
        [0.116786275726379] * 3 + [0.050844906370207] * 3 + [0.082851075618374] * 6,
    )

    out: Dict[int, Tuple[np.ndarray, np.ndarray]] = {}
    for order, (bary, w) in rules.items():
        bary_arr = np.asarray(bary, dtype=float)
        w_arr = np.asarray(w, dtype=float)
        # Tabulated weights carry 15 digits; renormalise so constants integrate exactly.
        out[order] = (bary_arr, w_arr / w_arr.sum())
    return out


_RULES = _build_rules()


def barycentric_rule(order: int = DEFAULT_QUADRATURE_ORDER) -> Tuple[np.ndarray, np.ndarray]:
    """
    Barycentric nodes and normalised weights of the Dunavant rule of `order`.

    Returns
    -------
    bary : ndarray, shape (Q, 3)
        Barycentric coordinates of the nodes (rows sum to 1).
    weights : ndarray, shape (Q,)
        Weights with Σ weights = 1.
    """
    order = int(order)
    if order not in _RULES:
        raise ValueError(
            f"Triangle quadrature of order {order} is not implemented; "
            f"supported orders are 0..{MAX_QUADRATURE_ORDER}."
        )
    bary, w = _RULES[order]
    return bary.copy(), w.copy()


def standard_triangle_quadrature(
    vertices,
    order: int = DEFAULT_QUADRATURE_ORDER,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Dunavant quadrature on one or many physical triangles.

    Parameters
    ----------
    vertices : array_like, shape (..., 3, 3)
        Triangle vertices in R^3.
    order : int, optional
        Rule index in [0, 4].

    Returns
    -------
    points : ndarray, shape (..., Q, 3)
        Quadrature points in physical coordinates.
    weights : ndarray, shape (..., Q)
        Physical weights such that Σ_q weights[..., q] = area.
    """
    verts = _as_triangle_vertices(vertices)
    bary, w_ref = barycentric_rule(order)

    # (Q,3) x (...,3,3) -> (...,Q,3)
    points = np.einsum("qk,...kd->...qd", bary, verts)
    area = _triangle_area(verts)
    weights = area[..., None] * w_ref
    return points, weights


# ---------------------------------------------------------------------------
# Refinement
# ---------------------------------------------------------------------------


def subdivide_triangle(vertices) -> np.ndarray:
    """
    Split a triangle into four children by connecting edge midpoints.

    Children keep the orientation of the parent.

    Returns
    -------
    children : ndarray, shape (4, 3, 3)
    """
    v0, v1, v2 = _as_triangle_vertices(vertices)
    m01 = 0.5 * (v0 + v1)
    m12 = 0.5 * (v1 + v2)
    m20 = 0.5 * (v2 + v0)
    return np.stack(
        [
            np.stack([v0, m01, m20]),
            np.stack([m01, v1, m12]),
            np.stack([m20, m12, v2]),
            np.stack([m01, m12, m20]),
        ]
    )


# ---------------------------------------------------------------------------
# Integrators
# ---------------------------------------------------------------------------

Kernel = Callable[[np.ndarray], np.ndarray]
BatchKernel = Callable[[np.ndarray, np.ndarray], np.ndarray]


class Integrator:
    """
    Fixed-order Dunavant integrator.

    ``integrate(kernel, triangle)`` evaluates ``kernel`` once on the (Q, 3)
    quadrature points of ``triangle``; the kernel returns (Q, ...) values.

    ``integrate_batch(kernel, triangles)`` integrates m triangles at once;
    the kernel receives points (m, Q, 3) together with the (m, 3, 3)
    triangles they belong to and returns (m, Q, ...) values.
    """

    def __init__(self, order: int = DEFAULT_QUADRATURE_ORDER):
        self.order = int(order)
        self._bary, self._weights = barycentric_rule(self.order)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(order={self.order})"

    @property
    def n_points(self) -> int:
        return int(self._weights.shape[0])

    def rule(self, triangles) -> Tuple[np.ndarray, np.ndarray]:
        """Physical points (..., Q, 3) and weights (..., Q) for `triangles`."""
        return standard_triangle_quadrature(triangles, self.order)

    def _apply(self, kernel: Kernel, triangle: np.ndarray) -> np.ndarray:
        points, weights = self.rule(triangle)
        values = np.asarray(kernel(points), dtype=float)
        if values.shape[:1] != weights.shape:
            raise ValueError(
                "kernel must return values with leading dimension "
                f"{weights.shape[0]}, got shape {values.shape!r}"
            )
        return np.tensordot(weights, values, axes=(0, 0))

    def integrate(self, kernel: Kernel, triangle):
        tri = _as_triangle_vertices(triangle)
        if tri.shape != (3, 3):
            raise ValueError(f"triangle must have shape (3, 3), got {tri.shape!r}")
        out = self._apply(kernel, tri)
        return float(out) if out.ndim == 0 else out

    def integrate_batch(self, kernel: BatchKernel, triangles) -> np.ndarray:
        tris = _as_triangle_vertices(triangles)
        if tris.ndim != 3:
            raise ValueError(f"triangles must have shape (m, 3, 3), got {tris.shape!r}")
        points, weights = self.rule(tris)
        values = np.asarray(kernel(points, tris), dtype=float)
        if values.shape[:2] != weights.shape:
            raise ValueError(
                f"kernel must return values with leading shape {weights.shape!r}, "
                f"got {values.shape!r}"
            )
        return np.einsum("mq,mq...->m...", weights, values)


class AdaptiveIntegrator(Integrator):
    """
    Adaptive integrator: recursive 4-way midpoint refinement.

    A triangle is refined while ``|I_children - I_parent| > tolerance * |I_parent|``
    (norms taken over the whole value for vector kernels) and the depth is
    below ``max_levels``.
    """

    def __init__(
        self,
        order: int = DEFAULT_QUADRATURE_ORDER,
        tolerance: float = 1e-4,
        max_levels: int = 10,
    ):
        super().__init__(order)
        if tolerance <= 0.0:
            raise ValueError("tolerance must be positive")
        if max_levels < 0:
            raise ValueError("max_levels must be non-negative")
        self.tolerance = float(tolerance)
        self.max_levels = int(max_levels)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(order={self.order}, "
            f"tolerance={self.tolerance}, max_levels={self.max_levels})"
        )

    def _refine(self, kernel: Kernel, triangle: np.ndarray, coarse: np.ndarray, level: int) -> np.ndarray:
        children = subdivide_triangle(triangle)
        parts = [self._apply(kernel, child) for child in children]
        refined = sum(parts[1:], parts[0])
        if level >= self.max_levels:
            return refined
        if np.linalg.norm(refined - coarse) <= self.tolerance * np.linalg.norm(coarse):
            return refined
        return sum(
            (self._refine(kernel, child, part, level + 1) for child, part in zip(children, parts)),
            np.zeros_like(refined),
        )

    def integrate(self, kernel: Kernel, triangle):
        tri = _as_triangle_vertices(triangle)
        if tri.shape != (3, 3):
            raise ValueError(f"triangle must have shape (3, 3), got {tri.shape!r}")
        coarse = self._apply(kernel, tri)
        out = coarse if self.max_levels == 0 else self._refine(kernel, tri, coarse, 1)
        return float(out) if np.ndim(out) == 0 else out

    def integrate_batch(self, kernel: BatchKernel, triangles) -> np.ndarray:
        tris = _as_triangle_vertices(triangles)
        if tris.ndim != 3:
            raise ValueError(f"triangles must have shape (m, 3, 3), got {tris.shape!r}")
        if tris.shape[0] == 0:
            return super().integrate_batch(kernel, tris)
        results = []
        for k in range(tris.shape[0]):
            parent = tris[k : k + 1]

            def single(points: np.ndarray, parent: np.ndarray = parent) -> np.ndarray:
                return np.asarray(kernel(points[None], parent), dtype=float)[0]

            results.append(np.asarray(self.integrate(single, tris[k]), dtype=float))
        return np.stack(results)
