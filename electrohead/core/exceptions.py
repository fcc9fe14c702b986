"""
Error taxonomy for head-matrix and source-matrix assembly.

- GeometryInconsistency: the geometry cannot support the requested
  computation (overlapping source mesh, point outside every domain,
  isolated part without an outermost vertex, ...). Fatal for the core
  assemblers.
- FactorizationFailure: a pivoted LDL^T or Cholesky factorization reported
  a non-zero status. Solves, determinants and inverses are never returned
  from a failed factorization.
- ConfigurationDegeneracy: a source sits in a zero-conductivity domain.
  Batch assemblers catch it, log the dropped source and continue.
"""

from __future__ import annotations


class ElectroheadError(Exception):
    """Base class for all errors raised by electrohead."""


class GeometryInconsistency(ElectroheadError, ValueError):
    pass


class OverlappingSourceMesh(GeometryInconsistency):
    """A source mesh crosses an interface of the head geometry."""


class FactorizationFailure(ElectroheadError, RuntimeError):
    """Raised when a symmetric factorization returns a non-zero info code."""

    def __init__(self, routine: str, info: int, message: str = "") -> None:
        self.routine = routine
        self.info = int(info)
        text = f"{routine} failed with info={self.info}"
        if message:
            text = f"{text}: {message}"
        super().__init__(text)


class ConfigurationDegeneracy(ElectroheadError):
    """A source term lies in a domain whose conductivity is zero."""


__all__ = [
    "ElectroheadError",
    "GeometryInconsistency",
    "OverlappingSourceMesh",
    "FactorizationFailure",
    "ConfigurationDegeneracy",
]
