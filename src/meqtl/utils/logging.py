"""Logging utilities for meqtl.

This module provides loguru-based logging configuration and the ``##``
run summary log written next to the result tables.
"""

import sys
from datetime import datetime
from pathlib import Path

import psutil
from loguru import logger

import meqtl


def setup_logging(
    verbose: bool = False,
    log_file: Path | None = None,
) -> None:
    """Configure loguru for meqtl.

    Sets up console logging with INFO level (or DEBUG if verbose), and
    optional file logging with JSON serialization.

    Args:
        verbose: If True, set console logging to DEBUG level.
        log_file: Optional path to log file. If provided, DEBUG-level
            logs are written with JSON serialization.
    """
    logger.remove()

    level = "DEBUG" if verbose else "INFO"
    logger.add(
        sys.stdout,
        level=level,
        format="{time:HH:mm:ss} | <level>{level: <8}</level> | {message}",
        colorize=True,
    )

    if log_file:
        logger.add(
            log_file,
            serialize=True,
            level="DEBUG",
        )


def write_run_log(
    output_config: "meqtl.core.config.OutputConfig",
    params: dict,
    timing: dict,
    command_line: str,
) -> Path:
    """Write the run summary log.

    Produces {outdir}/{prefix}.log.txt with ## prefixed lines.

    Args:
        output_config: Output configuration specifying directory and prefix.
        params: Parameters and counts to log (e.g. n_samples, tested pairs).
        timing: Timing information in seconds (expects a 'total' key).
        command_line: The command line used to invoke the program.

    Returns:
        Path to the written log file.

    Example output format:
        ##
        ## meqtl Version = 0.1.0
        ## Date = 2026-01-31T10:30:00
        ##
        ## Command Line Input = meqtl scan -variants snps.txt ...
        ##
        ## Summary Statistics:
        ## n_samples = 16
        ## tested_all = 150000
        ##
        ## Computation Time:
        ## total time = 1.23 seconds
        ##
    """
    output_config.ensure_outdir()

    log_path = output_config.log_path

    with open(log_path, "w") as f:
        f.write("##\n")
        f.write(f"## meqtl Version = {meqtl.__version__}\n")
        f.write(f"## Date = {datetime.now().isoformat()}\n")
        f.write("##\n")

        f.write(f"## Command Line Input = {command_line}\n")
        f.write("##\n")

        f.write("## Summary Statistics:\n")
        for key, value in params.items():
            f.write(f"## {key} = {value}\n")
        f.write("##\n")

        f.write("## Computation Time:\n")
        for key, value in timing.items():
            if isinstance(value, float):
                f.write(f"## {key} time = {value:.2f} seconds\n")
            else:
                f.write(f"## {key} time = {value} seconds\n")
        f.write("##\n")

    return log_path


def log_rss_memory(phase: str, checkpoint: str) -> float:
    """Log current RSS memory usage with phase context.

    Uses loguru's bind() so readings can be filtered by phase and checkpoint.

    Args:
        phase: Workflow phase name (e.g., "preprocess", "scan")
        checkpoint: Checkpoint within phase (e.g., "start", "end")

    Returns:
        Current RSS in GB.
    """
    rss_gb = psutil.Process().memory_info().rss / 1e9
    logger.bind(phase=phase, checkpoint=checkpoint).info(
        f"RSS memory: {rss_gb:.2f}GB (phase={phase}, checkpoint={checkpoint})"
    )
    return rss_gb
