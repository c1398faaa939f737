"""JAX configuration utilities for meqtl.

JAX supplies the regularized incomplete beta function used to turn test
statistics into p-values. Default JAX uses 32-bit floats, which underflow
for the very small p-values a genome-wide scan produces, so 64-bit mode
must be enabled before any p-value is computed.
"""

from __future__ import annotations

from typing import Any

import jax
from loguru import logger


def configure_jax(enable_x64: bool = True) -> None:
    """Configure JAX for meqtl computations.

    JAX picks its default backend itself; only precision is set here.

    Args:
        enable_x64: Enable 64-bit floating point precision. Defaults to True.

    Example:
        >>> configure_jax()
    """
    if enable_x64:
        jax.config.update("jax_enable_x64", True)
        logger.debug("JAX 64-bit precision enabled")


def get_jax_info() -> dict[str, Any]:
    """Get information about the current JAX configuration.

    Returns:
        Dictionary with keys:
            - version: JAX version string
            - backend: Current default backend name (cpu/gpu/tpu)
            - devices: List of available device descriptions
            - x64_enabled: Whether 64-bit precision is enabled
    """
    return {
        "version": jax.__version__,
        "backend": jax.default_backend(),
        "devices": [str(d) for d in jax.devices()],
        "x64_enabled": jax.config.jax_enable_x64,
    }
