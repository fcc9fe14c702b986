"""Meshes, geometry, BEM kernels, block operators and assemblers."""
