"""Spatio-temporal reservoir resampling (ReSTIR) core.

This package implements the mathematics behind ReSTIR: streaming weighted
reservoir sampling, reservoir combination for temporal and spatial reuse,
shift mappings with their Jacobian corrections, and double-buffered frame
history. The renderer around it (intersection, shading, image output) is an
external collaborator that supplies candidates and target-function callbacks.

Subpackages:
    core: Samples, reservoirs, combine, shift mappings, history buffers,
        the per-frame pipeline and the Taichi batch field
"""

__version__ = "0.1.0"
