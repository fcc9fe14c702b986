from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Literal, Optional

# -------------------------
# Physical / numerical constants
# -------------------------
# Laplace Green's function prefactor: G(x, y) = K / |x - y|.
# Kernel integrators return integrals of 1/|x - y|; K enters through the
# operator coefficients chosen by the assemblers.
K: float = 1.0 / (4.0 * math.pi)

# Quadrature order used when no integrator is given explicitly.
DEFAULT_QUADRATURE_ORDER: int = 3
MAX_QUADRATURE_ORDER: int = 4

# Relative threshold under which a point is treated as lying in the plane
# of a triangle (double-layer moments vanish there).
SOLID_ANGLE_EPS: float = 1e-12

# Tolerance used when matching coincident points (vertex merge, electrodes
# given with zero radius, ...).
GEOMETRY_EPS: float = 1e-12


DeflationReference = Literal["first", "mean"]


@dataclass
class AssemblyConfig:
    """Configuration for head/source matrix assembly.

    Parameters
    ----------
    order:
        Dunavant quadrature order in [0, 4] (1, 3, 6, 7 and 12 points).
        Used for the outer (test) integration of S and D blocks.
    adaptive:
        Use recursive 4-way refinement on top of the base rule.
    tolerance:
        Relative tolerance of the adaptive integrator.
    max_levels:
        Maximum refinement depth of the adaptive integrator.
    verbose:
        Emit one ``Operator fill.`` event per block operator call when a
        logger is supplied.
    workers:
        Optional thread count for row-parallel block fills. ``None`` or 1
        keeps everything on the calling thread. Results do not depend on
        this value.
    deflation_reference:
        Diagonal entry used to scale the deflation correction:
          * "first" -> diagonal of the first outermost vertex of the part
          * "mean"  -> mean diagonal over the part's outermost vertices
    """

    order: int = DEFAULT_QUADRATURE_ORDER
    adaptive: bool = False
    tolerance: float = 1e-4
    max_levels: int = 10

    verbose: bool = False
    workers: Optional[int] = None

    deflation_reference: DeflationReference = "first"

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Perform cheap validation of basic parameters."""
        if not (0 <= int(self.order) <= MAX_QUADRATURE_ORDER):
            raise ValueError(
                f"order must be in [0, {MAX_QUADRATURE_ORDER}], got {self.order!r}"
            )
        if not (self.tolerance > 0.0):
            raise ValueError("tolerance must be positive")
        if self.max_levels < 0:
            raise ValueError("max_levels must be non-negative")
        if self.workers is not None and int(self.workers) <= 0:
            raise ValueError("workers must be a positive int or None")
        if self.deflation_reference not in ("first", "mean"):
            raise ValueError(
                "deflation_reference must be 'first' or 'mean', "
                f"got {self.deflation_reference!r}"
            )

    def make_integrator(self):
        """Build the integrator described by this configuration."""
        from electrohead.core.bem_quadrature import AdaptiveIntegrator, Integrator

        if self.adaptive:
            return AdaptiveIntegrator(
                self.order, tolerance=self.tolerance, max_levels=self.max_levels
            )
        return Integrator(self.order)


__all__ = [
    "K",
    "DEFAULT_QUADRATURE_ORDER",
    "MAX_QUADRATURE_ORDER",
    "SOLID_ANGLE_EPS",
    "GEOMETRY_EPS",
    "DeflationReference",
    "AssemblyConfig",
]
