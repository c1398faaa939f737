"""meqtl command-line interface.

This module provides a Typer-based CLI with GEMMA/MatrixEQTL style
single-dash flags (-variants, -traits, -o, -outdir) for running a scan
and writing result tables and a run log.
"""

import sys
import time
from pathlib import Path
from typing import Annotated

import typer

import meqtl
from meqtl.core import MatrixFormat, OutputConfig, ScanConfig
from meqtl.core.config import MODELS
from meqtl.errors import MeqtlError
from meqtl.pipeline import PipelineConfig, PipelineRunner
from meqtl.utils import setup_logging, write_run_log

app = typer.Typer(
    name="meqtl",
    help="meqtl: fast variant x trait association scans (eQTL mapping).",
    add_completion=False,
)

# Store global options set by callback
_global_config: OutputConfig | None = None

_DELIMITERS = {"tab": "\t", "comma": ",", "space": " "}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        from meqtl.core import get_jax_info

        typer.echo(f"meqtl version {meqtl.__version__}")

        info = get_jax_info()
        typer.echo(f"JAX {info['version']} ({info['backend']})")
        typer.echo(f"64-bit precision: {info['x64_enabled']}")
        raise typer.Exit()


@app.callback()
def main(
    outdir: Annotated[
        Path,
        typer.Option("-outdir", help="Output directory"),
    ] = Path("output"),
    output: Annotated[
        str,
        typer.Option("-o", help="Output file prefix"),
    ] = "result",
    verbose: Annotated[
        bool,
        typer.Option("-v", "--verbose", help="Verbose output"),
    ] = False,
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit",
        ),
    ] = None,
) -> None:
    """meqtl: streaming variant x trait association scans.

    Tests every variant against every trait with covariate adjustment,
    optional local/distant classification and FDR correction.
    """
    global _global_config
    _global_config = OutputConfig(outdir=outdir, prefix=output, verbose=verbose)
    setup_logging(verbose=verbose)


@app.command("scan")
def scan_command(
    traits: Annotated[
        Path,
        typer.Option("-traits", help="Trait (expression) matrix file"),
    ],
    variants: Annotated[
        Path | None,
        typer.Option("-variants", help="Variant (genotype) matrix file"),
    ] = None,
    bfile: Annotated[
        Path | None,
        typer.Option("-bfile", help="PLINK binary file prefix (instead of -variants)"),
    ] = None,
    covariates: Annotated[
        Path | None,
        typer.Option("-covariates", help="Covariate matrix file"),
    ] = None,
    variant_positions: Annotated[
        Path | None,
        typer.Option("-variant-pos", help="Variant positions (id chr pos)"),
    ] = None,
    trait_positions: Annotated[
        Path | None,
        typer.Option(
            "-trait-pos",
            help="Trait positions (id chr start end); enables local/distant output",
        ),
    ] = None,
    error_covariance: Annotated[
        Path | None,
        typer.Option("-errcov", help="Sample error covariance matrix file"),
    ] = None,
    model: Annotated[
        str,
        typer.Option("-model", help=f"Model: {', '.join(MODELS)}"),
    ] = "linear",
    pvalue: Annotated[
        float,
        typer.Option("-pvalue", help="P-value threshold (exhaustive mode)"),
    ] = 1e-5,
    pvalue_local: Annotated[
        float,
        typer.Option("-pvalue-local", help="P-value threshold for local pairs"),
    ] = 1e-3,
    pvalue_distant: Annotated[
        float,
        typer.Option("-pvalue-distant", help="P-value threshold for distant pairs"),
    ] = 1e-5,
    radius: Annotated[
        int,
        typer.Option("-radius", help="Local distance radius in base pairs"),
    ] = 1_000_000,
    chunk_size: Annotated[
        int,
        typer.Option("-chunk-size", help="Rows per matrix chunk"),
    ] = 2_000,
    exact_fdr: Annotated[
        bool,
        typer.Option(
            "--exact-fdr/--histogram-fdr",
            help="Exact Benjamini-Hochberg ranks or histogram-estimated ranks",
        ),
    ] = True,
    histograms: Annotated[
        bool,
        typer.Option(
            "--histograms/--no-histograms",
            help="Write p-value histograms per category",
        ),
    ] = True,
    bins: Annotated[
        int,
        typer.Option("-bins", help="Number of p-value histogram bins"),
    ] = 100,
    workers: Annotated[
        int,
        typer.Option("-workers", help="Worker threads for chunk-pair evaluation"),
    ] = 1,
    max_groups: Annotated[
        int,
        typer.Option("-max-groups", help="Maximum variant groups (categorical)"),
    ] = 3,
    sep: Annotated[
        str,
        typer.Option("-sep", help="Field delimiter: tab, comma, space or a character"),
    ] = "tab",
    skip_rows: Annotated[
        int,
        typer.Option("-skip-rows", help="Lines to skip before the header row"),
    ] = 0,
    skip_cols: Annotated[
        int,
        typer.Option("-skip-cols", help="Columns to skip after the id column"),
    ] = 0,
    missing: Annotated[
        str,
        typer.Option("-missing", help="Token for missing values"),
    ] = "NA",
    check_memory: Annotated[
        bool,
        typer.Option(
            "--check-memory/--no-check-memory",
            help="Enable/disable pre-flight memory check (default: enabled)",
        ),
    ] = True,
    mem_budget: Annotated[
        float | None,
        typer.Option("--mem-budget", help="Hard memory budget in GB"),
    ] = None,
    in_memory: Annotated[
        bool,
        typer.Option("--in-memory", help="Load text matrices into memory"),
    ] = False,
    stream_traits: Annotated[
        bool,
        typer.Option(
            "--stream-traits",
            help="Re-read trait chunks per variant chunk instead of holding them",
        ),
    ] = False,
) -> None:
    """Scan every variant against every trait.

    Writes {prefix}.all.txt (or {prefix}.local.txt and {prefix}.distant.txt
    with -trait-pos), per-category p-value histograms and {prefix}.log.txt.
    """
    global _global_config
    if _global_config is None:
        _global_config = OutputConfig()

    scan_config = ScanConfig(
        model=model,
        pvalue_threshold=pvalue,
        pvalue_threshold_local=pvalue_local,
        pvalue_threshold_distant=pvalue_distant,
        distance_radius=radius,
        chunk_size=chunk_size,
        exact_fdr=exact_fdr,
        histogram_enabled=histograms,
        histogram_bins=bins,
        workers=workers,
        max_groups=max_groups,
        stream_traits=stream_traits,
        verbose=_global_config.verbose,
    )
    config = PipelineConfig(
        traits_file=traits,
        variants_file=variants,
        bfile=bfile,
        covariates_file=covariates,
        variant_positions_file=variant_positions,
        trait_positions_file=trait_positions,
        error_covariance_file=error_covariance,
        matrix_format=MatrixFormat(
            delimiter=_DELIMITERS.get(sep, sep),
            skip_rows=skip_rows,
            skip_columns=skip_cols,
            missing=missing,
        ),
        scan=scan_config,
        output_dir=_global_config.outdir,
        output_prefix=_global_config.prefix,
        check_memory=check_memory,
        mem_budget=mem_budget,
        in_memory=in_memory,
    )

    t_start = time.perf_counter()
    command_line = " ".join(sys.argv)

    try:
        result = PipelineRunner(config).run()
    except MeqtlError as e:
        typer.echo(f"Error: {e}", err=True)
        for path in getattr(e, "partial_outputs", []):
            typer.echo(f"Partial output left at {path}", err=True)
        raise typer.Exit(code=1) from None
    except (FileNotFoundError, MemoryError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from None

    summary = result.summary
    total_time = time.perf_counter() - t_start

    for category, path in summary.output_paths.items():
        typer.echo(
            f"{category}: {summary.accepted[category]:,} of "
            f"{summary.tested[category]:,} tested pairs written to {path}"
        )

    params = {
        "n_samples": summary.n_samples,
        "n_variants": summary.n_variants,
        "n_traits": summary.n_traits,
        "n_covariates": summary.n_covariates,
        "model": model,
        "variants_file": str(variants) if variants else None,
        "bfile": str(bfile) if bfile else None,
        "traits_file": str(traits),
        "covariates_file": str(covariates) if covariates else None,
        "fdr": "exact" if exact_fdr else "histogram",
        "skipped_pairs": summary.skipped_pairs,
        "excluded_pairs": summary.excluded_pairs,
    }
    for category in summary.categories:
        params[f"tested_{category}"] = summary.tested[category]
        params[f"accepted_{category}"] = summary.accepted[category]
    timing = {
        "total": total_time,
        "load": result.timing["load_s"],
        "scan": result.timing["scan_s"],
    }

    log_path = write_run_log(_global_config, params, timing, command_line)
    typer.echo(f"Log written to {log_path}")

    typer.echo(f"\nTested {summary.n_tested:,} pairs in {total_time:.2f} seconds")


if __name__ == "__main__":
    app()
