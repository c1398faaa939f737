"""Tests for logging setup, the run log and RSS logging."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from loguru import logger

import meqtl
from meqtl.core.config import OutputConfig
from meqtl.utils.logging import log_rss_memory, setup_logging, write_run_log

pytestmark = pytest.mark.tier0


class TestWriteRunLog:
    """Tests for the ## run summary log."""

    def test_writes_sections(self, tmp_path: Path):
        output = OutputConfig(outdir=tmp_path / "out", prefix="run")

        path = write_run_log(
            output,
            {"n_samples": 16, "tested_all": 150, "covariates_file": None},
            {"total": 1.234, "scan": 1},
            "meqtl scan -variants snps.txt -traits expr.txt",
        )

        assert path == tmp_path / "out" / "run.log.txt"
        lines = path.read_text().splitlines()
        assert lines[0] == "##"
        assert lines[1] == f"## meqtl Version = {meqtl.__version__}"
        assert "## Command Line Input = meqtl scan -variants snps.txt" in lines[4]
        assert "## n_samples = 16" in lines
        assert "## covariates_file = None" in lines
        assert "## total time = 1.23 seconds" in lines
        assert "## scan time = 1 seconds" in lines
        assert lines[-1] == "##"


class TestLogRssMemory:
    """Tests for log_rss_memory function."""

    def test_returns_rss_in_gb(self):
        with patch("meqtl.utils.logging.psutil.Process") as mock_process_class:
            mock_process = MagicMock()
            mock_process.memory_info.return_value.rss = 12_345_678_901
            mock_process_class.return_value = mock_process

            rss = log_rss_memory("scan", "after_preprocess")

        assert abs(rss - 12.35) < 0.01

    def test_logs_with_phase_and_checkpoint(self, restore_logging, capsys):
        setup_logging(verbose=True)

        with patch("meqtl.utils.logging.psutil.Process") as mock_process_class:
            mock_process_class.return_value.memory_info.return_value.rss = 5e9
            log_rss_memory("scan", "after_scanning")

        captured = capsys.readouterr()
        assert "RSS memory: 5.00GB" in captured.out
        assert "phase=scan" in captured.out
        assert "checkpoint=after_scanning" in captured.out

    def test_real_rss_measurement(self):
        rss = log_rss_memory("integration", "test")
        assert 0 < rss < 100


def test_setup_logging_file(tmp_path: Path):
    """A log file receives JSON-serialized debug records."""
    log_file = tmp_path / "meqtl.jsonl"
    setup_logging(log_file=log_file)

    logger.debug("written to file only")
    logger.remove()
    setup_logging()

    assert "written to file only" in log_file.read_text()
