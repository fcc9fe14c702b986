"""
Head-matrix assembly for the symmetric BEM.

For every communicating mesh pair (m1, m2) with relative orientation s:

    S-coeff =  s K σ⁻¹(m1, m2)
    N-coeff =  s K σ(m1, m2)
    D-coeff = -s K indicator(m1, m2)

are applied through DiagonalBlock (m1 is m2) or NonDiagonalBlock, in the
order S, N, D, D*. Each isolated part of the geometry is then deflated so
the floating potential of every part is fixed.
"""

from __future__ import annotations

import time
from typing import List, Literal, Optional, Tuple, Union

import numpy as np

from electrohead.core.exceptions import GeometryInconsistency
from electrohead.core.geometry import Geometry, MeshPair
from electrohead.core.operators import DiagonalBlock, HeadMatrixBlocks, NonDiagonalBlock
from electrohead.maths.blocks import SymmetricBlockMatrix
from electrohead.maths.symmatrix import PackedSymmetricMatrix
from electrohead.utils.config import AssemblyConfig, DeflationReference, K
from electrohead.utils.logging import JsonlLogger, log_runtime_environment

__all__ = ["head_matrix", "deflate", "validate_geometry", "block_partition", "conductivity_coefficients"]

HeadTarget = Union[PackedSymmetricMatrix, SymmetricBlockMatrix]


def validate_geometry(geometry: Geometry) -> None:
    """Every isolated part needs at least one outermost vertex for deflation."""
    if geometry.nb_parameters == 0:
        raise GeometryInconsistency("geometry has no unknowns")
    for part in geometry.isolated_parts:
        if geometry.outermost_vertices(part).size == 0:
            names = [m.name for m in part]
            raise GeometryInconsistency(
                f"isolated part {names} has no outermost vertex; it cannot be deflated"
            )


def block_partition(geometry: Geometry) -> List[int]:
    """Cut points splitting the index space into vertex runs and triangle ranges."""
    cuts = {0, geometry.nb_parameters}
    for mesh in geometry.meshes:
        for start, stop in mesh.vertex_ranges:
            cuts.update((start, stop))
        if not mesh.current_barrier:
            cuts.update(mesh.triangle_range)
    return sorted(cuts)


def conductivity_coefficients(geometry: Geometry, pair: MeshPair) -> Tuple[float, float, float]:
    """(S, N, D) coefficients of a communicating mesh pair."""
    factor = pair.relative_orientation * K
    return (
        factor * geometry.sigma_inv(pair.mesh1, pair.mesh2),
        factor * geometry.sigma(pair.mesh1, pair.mesh2),
        -factor * geometry.indicator(pair.mesh1, pair.mesh2),
    )


def _runs(indices: np.ndarray) -> list:
    idx = np.unique(indices)
    if idx.size == 0:
        return []
    breaks = np.flatnonzero(np.diff(idx) != 1) + 1
    return [(int(r[0]), int(r[-1]) + 1) for r in np.split(idx, breaks)]


def deflate(
    matrix: HeadTarget,
    geometry: Geometry,
    reference: DeflationReference = "first",
    logger: Optional[JsonlLogger] = None,
) -> List[float]:
    """
    Add M(r, r) / n_outer to every entry between outermost vertices of each
    isolated part (upper triangle only, each unordered pair once).

    ``reference`` picks r: "first" uses the first outermost vertex of the
    part, "mean" uses the mean diagonal over its outermost vertices. The
    operation is not idempotent: a second call reads the already shifted
    diagonal. Returns the coefficient used for each part.
    """
    coeffs = []
    for part in geometry.isolated_parts:
        outer = geometry.outermost_vertices(part)
        if outer.size == 0:
            raise GeometryInconsistency(f"isolated part {[m.name for m in part]} has no outermost vertex")
        if reference == "first":
            ref = matrix.get(int(outer[0]), int(outer[0]))
        elif reference == "mean":
            ref = float(np.mean([matrix.get(int(v), int(v)) for v in outer]))
        else:
            raise ValueError(f"unknown deflation reference {reference!r}")
        coeff = ref / outer.size
        matrix.add_block(outer, outer, np.triu(np.full((outer.size, outer.size), coeff)))
        coeffs.append(coeff)
        if logger:
            logger.debug(
                "Part deflated.",
                meshes=[m.name for m in part],
                n_outermost_vertices=int(outer.size),
                reference=reference,
                coeff=coeff,
            )
    return coeffs


def head_matrix(
    geometry: Geometry,
    integrator=None,
    *,
    config: Optional[AssemblyConfig] = None,
    logger: Optional[JsonlLogger] = None,
    target: Literal["packed", "block"] = "packed",
    deflated: bool = True,
) -> HeadTarget:
    """
    Assemble the symmetric BEM system matrix of `geometry`.

    Parameters
    ----------
    geometry:
        Domains, meshes and index space.
    integrator:
        Quadrature integrator; built from ``config`` when omitted.
    config:
        Assembly options (quadrature, verbosity, workers, deflation).
    logger:
        Optional JSONL event logger.
    target:
        "packed" for a PackedSymmetricMatrix, "block" for a
        SymmetricBlockMatrix allocated per mesh pair.
    deflated:
        Apply the deflation of isolated parts (on by default).
    """
    config = config if config is not None else AssemblyConfig()
    integrator = integrator if integrator is not None else config.make_integrator()
    validate_geometry(geometry)

    n = geometry.nb_parameters
    if target == "packed":
        matrix: HeadTarget = PackedSymmetricMatrix(n)
    elif target == "block":
        matrix = SymmetricBlockMatrix(n, cuts=block_partition(geometry))
    else:
        raise ValueError(f"target must be 'packed' or 'block', got {target!r}")

    t0 = time.perf_counter()
    if logger:
        logger.phase_start(
            "head_matrix",
            size=n,
            n_meshes=len(geometry.meshes),
            n_pairs=len(geometry.communicating_mesh_pairs),
            integrator=repr(integrator),
            target=target,
        )
        log_runtime_environment(logger)

    for pair in geometry.communicating_mesh_pairs:
        mesh1, mesh2 = pair.mesh1, pair.mesh2
        coeffs = conductivity_coefficients(geometry, pair)
        if mesh1 is mesh2:
            blocks = HeadMatrixBlocks(DiagonalBlock(mesh1, integrator, config=config, logger=logger))
        else:
            blocks = HeadMatrixBlocks(
                NonDiagonalBlock(mesh1, mesh2, integrator, config=config, logger=logger)
            )
        if isinstance(matrix, SymmetricBlockMatrix):
            blocks.allocate(matrix)
        blocks.set_blocks(coeffs, matrix)
        if logger:
            logger.debug(
                "Mesh pair assembled.",
                mesh1=mesh1.name,
                mesh2=mesh2.name,
                orientation=pair.relative_orientation,
                s_coeff=coeffs[0],
                n_coeff=coeffs[1],
                d_coeff=coeffs[2],
            )

    if deflated:
        if isinstance(matrix, SymmetricBlockMatrix):
            for part in geometry.isolated_parts:
                runs = _runs(geometry.outermost_vertices(part))
                matrix.add_blocks(runs, runs)
        deflate(matrix, geometry, config.deflation_reference, logger=logger)

    if logger:
        packed = matrix if isinstance(matrix, PackedSymmetricMatrix) else matrix.to_packed()
        logger.matrix_summary("head_matrix", packed)
        logger.phase_end("head_matrix", size=n, elapsed_s=time.perf_counter() - t0)
    return matrix
