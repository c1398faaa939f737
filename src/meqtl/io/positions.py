"""Genomic coordinates for variants and traits.

Position files are delimited text with a header row:
- variants: ``id  chr  pos``
- traits:   ``id  chr  start  end``

Extra trailing columns are ignored. Coordinates are integers; chromosome
names are compared as plain strings ("chr1" and "1" are different).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
from bed_reader import open_bed

from meqtl.errors import InputFormatError


@dataclass(frozen=True)
class FeaturePositions:
    """Coordinates for a sequence of features, aligned by index.

    Attributes:
        chrom: Chromosome names ("" where unknown).
        start: Start coordinate (variant position for variants).
        end: End coordinate (equal to start for variants).
        known: False where the feature has no position record.
    """

    chrom: np.ndarray
    start: np.ndarray
    end: np.ndarray
    known: np.ndarray


@dataclass(frozen=True)
class PositionIndex:
    """Map from feature id to (chromosome, start, end).

    Variants are stored as zero-length intervals (start == end == position).
    """

    records: dict[str, tuple[str, int, int]] = field(default_factory=dict)
    name: str = "positions"

    def __len__(self) -> int:
        return len(self.records)

    def __contains__(self, feature_id: str) -> bool:
        return feature_id in self.records

    def get(self, feature_id: str) -> tuple[str, int, int] | None:
        """Return (chrom, start, end) or None when the feature is unknown."""
        return self.records.get(feature_id)

    def lookup(self, feature_ids) -> FeaturePositions:
        """Vectorized lookup for a chunk of feature ids."""
        n = len(feature_ids)
        chrom = np.empty(n, dtype=object)
        start = np.zeros(n, dtype=np.int64)
        end = np.zeros(n, dtype=np.int64)
        known = np.zeros(n, dtype=bool)
        for i, fid in enumerate(feature_ids):
            rec = self.records.get(fid)
            if rec is None:
                chrom[i] = ""
                continue
            chrom[i], start[i], end[i] = rec
            known[i] = True
        return FeaturePositions(chrom=chrom, start=start, end=end, known=known)

    @classmethod
    def from_plink(cls, bfile: Path) -> PositionIndex:
        """Variant positions from a PLINK .bim file (via bed-reader)."""
        bed_file = Path(f"{bfile}.bed")
        if not bed_file.exists():
            raise FileNotFoundError(f"PLINK .bed file not found: {bed_file}")
        with open_bed(bed_file) as bed:
            records = {
                str(sid): (str(chrom), int(pos), int(pos))
                for sid, chrom, pos in zip(
                    bed.sid, bed.chromosome, bed.bp_position, strict=True
                )
            }
        return cls(records, name="variant positions")


def read_variant_positions(path: Path, delimiter: str = "\t") -> PositionIndex:
    """Read a variant position file (id, chr, pos).

    Raises:
        FileNotFoundError: If the file does not exist.
        InputFormatError: On short rows, non-integer positions or repeated ids.
    """
    records = {}
    for line_no, fields in _iter_rows(path, delimiter, min_fields=3):
        fid, chrom = fields[0], fields[1]
        pos = _parse_int(fields[2], path, line_no)
        _store(records, fid, (chrom, pos, pos), path, line_no)
    return PositionIndex(records, name="variant positions")


def read_trait_positions(path: Path, delimiter: str = "\t") -> PositionIndex:
    """Read a trait position file (id, chr, start, end).

    Raises:
        FileNotFoundError: If the file does not exist.
        InputFormatError: On short rows, non-integer coordinates, end < start
            or repeated ids.
    """
    records = {}
    for line_no, fields in _iter_rows(path, delimiter, min_fields=4):
        fid, chrom = fields[0], fields[1]
        start = _parse_int(fields[2], path, line_no)
        end = _parse_int(fields[3], path, line_no)
        if end < start:
            raise InputFormatError(
                f"{path}:{line_no}: interval end {end} precedes start {start}"
            )
        _store(records, fid, (chrom, start, end), path, line_no)
    return PositionIndex(records, name="trait positions")


def _iter_rows(path: Path, delimiter: str, min_fields: int):
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Position file not found: {path}")
    with open(path, "rb") as f:
        header_seen = False
        for line_no, raw in enumerate(f, start=1):
            try:
                stripped = raw.decode("utf-8").rstrip("\r\n")
            except UnicodeDecodeError as e:
                raise InputFormatError(
                    f"{path}:{line_no}: not valid UTF-8 text "
                    f"(byte {e.start + 1}: {e.reason})"
                ) from e
            if not stripped.strip():
                continue
            if not header_seen:
                header_seen = True
                continue
            fields = [x.strip() for x in stripped.split(delimiter)]
            if len(fields) < min_fields:
                raise InputFormatError(
                    f"{path}:{line_no}: expected at least {min_fields} columns, "
                    f"found {len(fields)}"
                )
            yield line_no, fields


def _parse_int(token: str, path: Path, line_no: int) -> int:
    """Parse a coordinate; "2500" and "2.5e3" are accepted, "100.7" is not."""
    try:
        return int(token)
    except ValueError:
        pass
    try:
        value = float(token)
    except ValueError:
        value = None
    # rejects fractions, inf and nan
    if value is None or not value.is_integer():
        raise InputFormatError(
            f"{path}:{line_no}: cannot parse coordinate {token!r} as an integer"
        )
    return int(value)


def _store(records: dict, fid: str, rec: tuple, path: Path, line_no: int) -> None:
    if fid in records:
        raise InputFormatError(f"{path}:{line_no}: duplicate feature id {fid!r}")
    records[fid] = rec
