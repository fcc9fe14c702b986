"""Symmetric BEM assembly for nested conductive compartments.

Public boundaries:

- :mod:`electrohead.core`: meshes, geometry, kernels, block operators and
  the head / source matrix assemblers.
- :mod:`electrohead.maths`: packed symmetric storage, factorizations and
  block-structured targets.
- :mod:`electrohead.utils`: configuration and JSONL event logging.
"""

from electrohead.core.exceptions import (
    ConfigurationDegeneracy,
    ElectroheadError,
    FactorizationFailure,
    GeometryInconsistency,
    OverlappingSourceMesh,
)
from electrohead.core.analytics import Dipole
from electrohead.core.bem_quadrature import AdaptiveIntegrator, Integrator
from electrohead.core.mesh import Mesh, icosphere
from electrohead.core.geometry import Boundary, Domain, Geometry, Interface, OrientedMesh
from electrohead.core.operators import DiagonalBlock, NonDiagonalBlock, PartialBlock
from electrohead.core.assemble_head import deflate, head_matrix
from electrohead.core.assemble_source import (
    InjectionElectrode,
    dipole_internal_potential_matrix,
    dipole_source_matrix,
    eit_source_matrix,
    surf2vol_matrix,
    surf_source_matrix,
)
from electrohead.maths.blocks import SymmetricBlockMatrix
from electrohead.maths.symmatrix import LDLFactorization, PackedSymmetricMatrix
from electrohead.utils.config import K, AssemblyConfig
from electrohead.utils.logging import JsonlLogger

__all__ = [
    "__version__",
    "AdaptiveIntegrator",
    "AssemblyConfig",
    "Boundary",
    "ConfigurationDegeneracy",
    "DiagonalBlock",
    "Dipole",
    "Domain",
    "ElectroheadError",
    "FactorizationFailure",
    "Geometry",
    "GeometryInconsistency",
    "InjectionElectrode",
    "Integrator",
    "Interface",
    "JsonlLogger",
    "K",
    "LDLFactorization",
    "Mesh",
    "NonDiagonalBlock",
    "OrientedMesh",
    "OverlappingSourceMesh",
    "PackedSymmetricMatrix",
    "PartialBlock",
    "SymmetricBlockMatrix",
    "deflate",
    "dipole_internal_potential_matrix",
    "dipole_source_matrix",
    "eit_source_matrix",
    "head_matrix",
    "icosphere",
    "surf2vol_matrix",
    "surf_source_matrix",
]

__version__ = "0.1.0"
