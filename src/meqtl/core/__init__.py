"""Core support modules for meqtl.

This package contains configuration and runtime plumbing:
- config: Configuration dataclasses
- jax_config: JAX precision setup
- memory: Pre-flight memory estimation
- progress: Progress bars
- threading: BLAS thread limits
"""

from meqtl.core.config import MatrixFormat, OutputConfig, ScanConfig
from meqtl.core.jax_config import configure_jax, get_jax_info
from meqtl.core.memory import (
    MemorySnapshot,
    ScanMemoryBreakdown,
    check_memory_available,
    estimate_scan_memory,
    get_memory_snapshot,
    log_memory_snapshot,
)

__all__ = [
    "MatrixFormat",
    "OutputConfig",
    "ScanConfig",
    "configure_jax",
    "get_jax_info",
    "MemorySnapshot",
    "ScanMemoryBreakdown",
    "check_memory_available",
    "estimate_scan_memory",
    "get_memory_snapshot",
    "log_memory_snapshot",
]
