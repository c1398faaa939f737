"""Tests for variant and trait position files."""

from pathlib import Path

import numpy as np
import pytest

from meqtl.errors import InputFormatError
from meqtl.io.positions import (
    PositionIndex,
    read_trait_positions,
    read_variant_positions,
)

pytestmark = pytest.mark.tier0


def test_read_variant_positions(tmp_path: Path):
    path = tmp_path / "snpsloc.txt"
    path.write_text("snp\tchr\tpos\nrs1\tchr1\t100\nrs2\tchr2\t2500\n")

    index = read_variant_positions(path)

    assert len(index) == 2
    assert "rs1" in index
    assert index.get("rs2") == ("chr2", 2500, 2500)
    assert index.get("rs3") is None


def test_read_trait_positions(tmp_path: Path):
    path = tmp_path / "geneloc.txt"
    path.write_text("gene\tchr\tstart\tend\ng1\tchr1\t100\t900\n")

    index = read_trait_positions(path)

    assert index.get("g1") == ("chr1", 100, 900)


def test_extra_columns_and_comma(tmp_path: Path):
    path = tmp_path / "geneloc.csv"
    path.write_text("gene,chr,start,end,strand\ng1,1,10,20,+\n")
    index = read_trait_positions(path, delimiter=",")
    assert index.get("g1") == ("1", 10, 20)


def test_lookup_marks_unknown(tmp_path: Path):
    index = PositionIndex({"a": ("chr1", 5, 5), "b": ("chr2", 7, 7)})

    pos = index.lookup(("b", "zzz", "a"))

    assert pos.known.tolist() == [True, False, True]
    assert pos.chrom.tolist() == ["chr2", "", "chr1"]
    np.testing.assert_array_equal(pos.start, [7, 0, 5])


def test_end_before_start(tmp_path: Path):
    path = tmp_path / "geneloc.txt"
    path.write_text("gene\tchr\tstart\tend\ng1\tchr1\t900\t100\n")
    with pytest.raises(InputFormatError, match="precedes"):
        read_trait_positions(path)


def test_short_row(tmp_path: Path):
    path = tmp_path / "snpsloc.txt"
    path.write_text("snp\tchr\tpos\nrs1\tchr1\n")
    with pytest.raises(InputFormatError, match="at least 3"):
        read_variant_positions(path)


def test_bad_coordinate(tmp_path: Path):
    path = tmp_path / "snpsloc.txt"
    path.write_text("snp\tchr\tpos\nrs1\tchr1\tabc\n")
    with pytest.raises(InputFormatError, match="'abc'"):
        read_variant_positions(path)


@pytest.mark.parametrize("token", ["100.7", "inf", "-inf", "nan", "1e400"])
def test_non_integral_coordinate(tmp_path: Path, token: str):
    path = tmp_path / "snpsloc.txt"
    path.write_text(f"snp\tchr\tpos\nrs1\tchr1\t{token}\n")
    with pytest.raises(InputFormatError, match=r"snpsloc.txt:2: .*as an integer"):
        read_variant_positions(path)


def test_integral_float_coordinates(tmp_path: Path):
    path = tmp_path / "geneloc.txt"
    path.write_text("gene\tchr\tstart\tend\ng1\tchr1\t100.0\t2.5e3\n")
    assert read_trait_positions(path).get("g1") == ("chr1", 100, 2500)


def test_undecodable_bytes(tmp_path: Path):
    path = tmp_path / "snpsloc.txt"
    path.write_bytes(b"snp\tchr\tpos\nrs1\tchr1\t1\nrs\xff2\tchr1\t2\n")
    with pytest.raises(InputFormatError, match="snpsloc.txt:3: not valid UTF-8"):
        read_variant_positions(path)


def test_crlf_line_endings(tmp_path: Path):
    path = tmp_path / "snpsloc.txt"
    path.write_bytes(b"snp\tchr\tpos\r\nrs1\tchr1\t100\r\n")
    assert read_variant_positions(path).get("rs1") == ("chr1", 100, 100)


def test_duplicate_id(tmp_path: Path):
    path = tmp_path / "snpsloc.txt"
    path.write_text("snp\tchr\tpos\nrs1\tchr1\t1\nrs1\tchr1\t2\n")
    with pytest.raises(InputFormatError, match="duplicate"):
        read_variant_positions(path)


def test_missing_file(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        read_variant_positions(tmp_path / "missing.txt")
