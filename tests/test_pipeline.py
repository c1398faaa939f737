"""Tests for PipelineRunner service class."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import numpy as np
import pytest
from bed_reader import to_bed

from meqtl.core.config import ScanConfig
from meqtl.core.memory import ScanMemoryBreakdown
from meqtl.errors import ConfigError
from meqtl.pipeline import PipelineConfig, PipelineResult, PipelineRunner
from meqtl.scan.output import read_results

from conftest import write_matrix, write_table

pytestmark = pytest.mark.tier1


def _breakdown(total_gb: float, available_gb: float) -> ScanMemoryBreakdown:
    return ScanMemoryBreakdown(
        traits_gb=0.0,
        variant_chunk_gb=0.0,
        block_gb=0.0,
        fdr_retention_gb=0.0,
        total_peak_gb=total_gb,
        available_gb=available_gb,
        sufficient=available_gb >= total_gb * 1.1,
    )


class TestPipelineConfig:
    """Tests for PipelineConfig defaults."""

    def test_defaults(self) -> None:
        """PipelineConfig has expected default values."""
        config = PipelineConfig(traits_file=Path("expr.txt"))
        assert config.variants_file is None
        assert config.bfile is None
        assert config.covariates_file is None
        assert config.scan == ScanConfig()
        assert config.output_dir == Path("output")
        assert config.output_prefix == "result"
        assert config.check_memory is True
        assert config.show_progress is True
        assert config.mem_budget is None
        assert config.in_memory is False

    def test_output_config(self, tmp_path: Path) -> None:
        """output_config follows output_dir and prefix; None means in memory."""
        runner = PipelineRunner(
            PipelineConfig(
                traits_file=Path("e"), output_dir=tmp_path, output_prefix="x"
            )
        )
        assert runner.output_config.result_path("all") == tmp_path / "x.all.txt"
        no_output = PipelineRunner(
            PipelineConfig(traits_file=Path("e"), output_dir=None)
        )
        assert no_output.output_config is None


class TestValidateInputs:
    """Tests for PipelineRunner.validate_inputs."""

    def test_needs_exactly_one_variant_source(self, scan_inputs) -> None:
        """Neither or both of variants_file and bfile is an error."""
        neither = PipelineConfig(traits_file=scan_inputs.traits_file)
        with pytest.raises(ConfigError, match="exactly one"):
            PipelineRunner(neither).validate_inputs()

        both = PipelineConfig(
            traits_file=scan_inputs.traits_file,
            variants_file=scan_inputs.variants_file,
            bfile=Path("study"),
        )
        with pytest.raises(ConfigError, match="exactly one"):
            PipelineRunner(both).validate_inputs()

    def test_missing_plink_files(self, scan_inputs, tmp_path: Path) -> None:
        """validate_inputs raises FileNotFoundError for missing PLINK files."""
        config = PipelineConfig(
            traits_file=scan_inputs.traits_file, bfile=tmp_path / "nonexistent"
        )
        with pytest.raises(FileNotFoundError, match="PLINK .bed file"):
            PipelineRunner(config).validate_inputs()

    def test_missing_trait_file(self, scan_inputs, tmp_path: Path) -> None:
        config = PipelineConfig(
            traits_file=tmp_path / "missing.txt",
            variants_file=scan_inputs.variants_file,
        )
        with pytest.raises(FileNotFoundError, match="Trait matrix file not found"):
            PipelineRunner(config).validate_inputs()

    def test_invalid_threshold(self, scan_inputs) -> None:
        config = PipelineConfig(
            traits_file=scan_inputs.traits_file,
            variants_file=scan_inputs.variants_file,
            scan=ScanConfig(pvalue_threshold=0.0),
        )
        with pytest.raises(ConfigError, match="pvalue_threshold"):
            PipelineRunner(config).validate_inputs()

    def test_error_covariance_model_needs_file(self, scan_inputs) -> None:
        config = PipelineConfig(
            traits_file=scan_inputs.traits_file,
            variants_file=scan_inputs.variants_file,
            scan=ScanConfig(model="linear-error-covariance"),
        )
        with pytest.raises(ConfigError, match="error covariance file"):
            PipelineRunner(config).validate_inputs()

    @pytest.mark.parametrize("which", ["variant", "trait"])
    def test_positions_come_in_pairs(self, scan_inputs, which) -> None:
        """A single position file is rejected rather than silently ignored."""
        kwargs = {
            f"{which}_positions_file": getattr(
                scan_inputs, f"{which}_positions_file"
            )
        }
        config = PipelineConfig(
            traits_file=scan_inputs.traits_file,
            variants_file=scan_inputs.variants_file,
            **kwargs,
        )
        with pytest.raises(ConfigError, match="proximity mode needs both"):
            PipelineRunner(config).validate_inputs()


class TestCheckMemory:
    """Tests for check_memory_requirements."""

    def _runner(self, **kwargs) -> PipelineRunner:
        return PipelineRunner(PipelineConfig(traits_file=Path("e"), **kwargs))

    def test_disabled(self) -> None:
        assert self._runner(check_memory=False).check_memory_requirements(
            10, 10, 10
        ) is None

    def test_over_budget(self) -> None:
        """A budget smaller than the estimate raises MemoryError."""
        with patch(
            "meqtl.pipeline.estimate_scan_memory", return_value=_breakdown(8.0, 100.0)
        ):
            with pytest.raises(MemoryError, match="exceeds budget"):
                self._runner(mem_budget=4.0).check_memory_requirements(10, 10, 10)

    def test_insufficient(self) -> None:
        """Less available memory than the estimate plus margin raises."""
        with (
            patch(
                "meqtl.pipeline.estimate_scan_memory",
                return_value=_breakdown(8.0, 2.0),
            ),
            patch("meqtl.core.memory.psutil.virtual_memory") as mock_vm,
        ):
            mock_vm.return_value.available = 2e9
            with pytest.raises(MemoryError, match="Insufficient memory for scan"):
                self._runner().check_memory_requirements(10, 10, 10)

    def test_small_scan_fits(self) -> None:
        est = self._runner().check_memory_requirements(20, 100, 50)
        assert est.total_peak_gb < 0.1


class TestRun:
    """End-to-end pipeline runs on small text inputs."""

    def test_exhaustive_run(self, scan_inputs, output_dir: Path) -> None:
        """Covariate-adjusted scan writes result.all.txt with the planted hit."""
        config = PipelineConfig(
            traits_file=scan_inputs.traits_file,
            variants_file=scan_inputs.variants_file,
            covariates_file=scan_inputs.covariates_file,
            scan=ScanConfig(pvalue_threshold=1e-6),
            output_dir=output_dir,
            show_progress=False,
        )

        result = PipelineRunner(config).run()

        assert isinstance(result, PipelineResult)
        assert set(result.timing) == {"load_s", "scan_s", "total_s"}
        assert result.summary.n_covariates == 1
        records = read_results(output_dir / "result.all.txt")
        assert ("snp0", "gene0") in {(r.variant, r.trait) for r in records}

    def test_in_memory_matches_chunked(self, scan_inputs) -> None:
        """in_memory and chunk size do not change the results."""
        results = []
        for in_memory, chunk_size in ((False, 2), (True, 100)):
            config = PipelineConfig(
                traits_file=scan_inputs.traits_file,
                variants_file=scan_inputs.variants_file,
                covariates_file=scan_inputs.covariates_file,
                scan=ScanConfig(pvalue_threshold=1.0, chunk_size=chunk_size),
                output_dir=None,
                show_progress=False,
                in_memory=in_memory,
            )
            results.append(PipelineRunner(config).run().summary.records["all"])

        a, b = results
        assert sorted((r.variant, r.trait) for r in a) == sorted(
            (r.variant, r.trait) for r in b
        )
        pa = {(r.variant, r.trait): r.pvalue for r in a}
        pb = {(r.variant, r.trait): r.pvalue for r in b}
        for key, p in pa.items():
            assert pb[key] == pytest.approx(p, rel=1e-10)

    def test_proximity_run(self, scan_inputs, output_dir: Path) -> None:
        config = PipelineConfig(
            traits_file=scan_inputs.traits_file,
            variants_file=scan_inputs.variants_file,
            variant_positions_file=scan_inputs.variant_positions_file,
            trait_positions_file=scan_inputs.trait_positions_file,
            scan=ScanConfig(distance_radius=600, pvalue_threshold_local=1.0),
            output_dir=output_dir,
            show_progress=False,
        )

        summary = PipelineRunner(config).run().summary

        assert (output_dir / "result.local.txt").exists()
        assert (output_dir / "result.distant.txt").exists()
        assert summary.tested["local"] == 2

    def test_error_covariance_run(self, scan_inputs, tmp_path: Path) -> None:
        """An identity error covariance reproduces the plain linear model."""
        n = len(scan_inputs.sample_ids)
        sigma_path = write_matrix(
            tmp_path / "errcov.txt",
            scan_inputs.sample_ids,
            scan_inputs.sample_ids,
            np.eye(n),
        )
        summaries = {}
        for model in ("linear", "linear-error-covariance"):
            config = PipelineConfig(
                traits_file=scan_inputs.traits_file,
                variants_file=scan_inputs.variants_file,
                error_covariance_file=sigma_path,
                scan=ScanConfig(model=model, pvalue_threshold=1.0),
                output_dir=None,
                show_progress=False,
            )
            summaries[model] = PipelineRunner(config).run().summary

        plain = [r.pvalue for r in summaries["linear"].records["all"]]
        whitened = [
            r.pvalue for r in summaries["linear-error-covariance"].records["all"]
        ]
        np.testing.assert_allclose(whitened, plain, rtol=1e-8)

    def test_plink_variants(self, tmp_path: Path) -> None:
        """PLINK genotypes supply both the variant matrix and its positions."""
        rng = np.random.default_rng(12)
        n_samples, n_variants = 30, 4
        genotypes = rng.integers(0, 3, size=(n_samples, n_variants)).astype(
            np.float32
        )
        sample_ids = [f"S{j}" for j in range(n_samples)]
        to_bed(
            tmp_path / "study.bed",
            genotypes,
            properties={
                "iid": sample_ids,
                "sid": [f"rs{i}" for i in range(n_variants)],
                "chromosome": ["1"] * n_variants,
                "bp_position": [100, 200, 5000, 90000],
            },
        )
        traits = rng.normal(size=(1, n_samples)) + genotypes[:, 0]
        write_matrix(tmp_path / "expr.txt", ["gene0"], sample_ids, traits)
        write_table(
            tmp_path / "geneloc.txt",
            ["gene", "chr", "start", "end"],
            [["gene0", "1", 150, 160]],
        )
        config = PipelineConfig(
            traits_file=tmp_path / "expr.txt",
            bfile=tmp_path / "study",
            trait_positions_file=tmp_path / "geneloc.txt",
            scan=ScanConfig(
                distance_radius=1000,
                pvalue_threshold_local=1.0,
                pvalue_threshold_distant=1.0,
            ),
            output_dir=None,
            show_progress=False,
        )

        summary = PipelineRunner(config).run().summary

        assert {r.variant for r in summary.records["local"]} == {"rs0", "rs1"}
        assert {r.variant for r in summary.records["distant"]} == {"rs2", "rs3"}
