"""Chunked feature-by-sample matrices.

A ChunkedMatrix is an immutable value object holding feature identifiers,
sample identifiers and a read-only backing source. Chunks of rows are read
on demand, so a matrix can be shared between threads and concurrent scans
without copying and without ever holding the full matrix in memory.

Three backing sources are supported:
- in-memory numpy arrays (``from_array`` / ``ChunkedMatrixBuilder``)
- delimited text files indexed by row byte offset (``load_text_matrix``)
- PLINK binary genotypes via bed-reader (``from_plink``)

Delimited text layout (MatrixEQTL style):
- optional ``skip_rows`` leading lines
- header row: corner cell, ``skip_columns`` ignored cells, sample ids
  (the corner cell may be omitted)
- data rows: feature id, ``skip_columns`` ignored cells, one value per sample
- missing cells are spelled with the configured token (default "NA")
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
from bed_reader import open_bed
from loguru import logger

from meqtl.core.config import MatrixFormat
from meqtl.errors import AlignmentError, InputFormatError


@dataclass(frozen=True)
class MatrixChunk:
    """A contiguous block of rows.

    Attributes:
        data: Float64 array of shape (n_rows, n_samples); NaN marks missing.
        feature_ids: Identifiers of the rows in this chunk.
        start: Index of the first row (inclusive).
        end: Index one past the last row.
    """

    data: np.ndarray
    feature_ids: tuple[str, ...]
    start: int
    end: int

    @property
    def n_rows(self) -> int:
        return self.end - self.start


class _ArraySource:
    def __init__(self, data: np.ndarray):
        self._data = data

    def read(self, start: int, end: int) -> np.ndarray:
        return self._data[start:end]

    def describe(self) -> str:
        return "memory"


class _TextSource:
    """Re-reads rows of a delimited file from pre-indexed byte offsets."""

    def __init__(
        self, path: Path, offsets: np.ndarray, fmt: MatrixFormat, n_samples: int
    ):
        self._path = path
        self._offsets = offsets
        self._fmt = fmt
        self._n_samples = n_samples

    def read(self, start: int, end: int) -> np.ndarray:
        out = np.empty((end - start, self._n_samples), dtype=np.float64)
        if end <= start:
            return out
        first_value = 1 + self._fmt.skip_columns
        with open(self._path, "rb") as f:
            for i in range(start, end):
                f.seek(int(self._offsets[i]))
                where = f"{self._path}, feature row {i + 1}"
                fields = _split(f.readline(), self._fmt.delimiter, where)
                out[i - start] = _parse_values(
                    fields[first_value:], self._fmt.missing, where
                )
        return out

    def describe(self) -> str:
        return str(self._path)


class _PlinkSource:
    """Windowed reads of a PLINK .bed file, transposed to variants x samples."""

    def __init__(self, bed_file: Path):
        self._bed_file = bed_file

    def read(self, start: int, end: int) -> np.ndarray:
        with open_bed(self._bed_file) as bed:
            genotypes = bed.read(index=np.s_[:, start:end], dtype=np.float64)
        return np.ascontiguousarray(genotypes.T)

    def describe(self) -> str:
        return str(self._bed_file)


@dataclass(frozen=True)
class ChunkedMatrix:
    """Immutable feature-by-sample matrix read in row chunks.

    Attributes:
        feature_ids: Row identifiers, unique, in file order.
        sample_ids: Column identifiers, in file order.
        name: Label used in log and error messages.
    """

    feature_ids: tuple[str, ...]
    sample_ids: tuple[str, ...]
    name: str = "matrix"
    _source: object = field(default=None, repr=False, compare=False)

    @property
    def n_features(self) -> int:
        """Number of rows (features)."""
        return len(self.feature_ids)

    @property
    def n_samples(self) -> int:
        """Number of columns (samples)."""
        return len(self.sample_ids)

    @property
    def source(self) -> str:
        """Description of the backing source (file path or "memory")."""
        return self._source.describe()

    def n_chunks(self, chunk_size: int) -> int:
        """Number of chunks produced by iter_chunks(chunk_size)."""
        return (self.n_features + chunk_size - 1) // chunk_size

    def read_rows(self, start: int, end: int) -> np.ndarray:
        """Read rows [start, end) as a float64 array of shape (end-start, n_samples)."""
        end = min(end, self.n_features)
        return self._source.read(start, end)

    def iter_chunks(self, chunk_size: int) -> Iterator[MatrixChunk]:
        """Yield consecutive row chunks of at most chunk_size rows.

        The iterator is lazy and restartable: calling iter_chunks again starts
        a fresh pass over the backing source.

        Args:
            chunk_size: Maximum rows per chunk (positive).

        Yields:
            MatrixChunk covering rows [start, end).
        """
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        for start in range(0, self.n_features, chunk_size):
            end = min(start + chunk_size, self.n_features)
            yield MatrixChunk(
                data=self.read_rows(start, end),
                feature_ids=self.feature_ids[start:end],
                start=start,
                end=end,
            )

    def to_array(self) -> np.ndarray:
        """Read the whole matrix. Intended for small matrices (covariates)."""
        return self.read_rows(0, self.n_features)

    @classmethod
    def from_array(
        cls,
        data: np.ndarray,
        feature_ids: list[str] | None = None,
        sample_ids: list[str] | None = None,
        name: str = "matrix",
    ) -> ChunkedMatrix:
        """Build a matrix backed by a copy of an in-memory array.

        Args:
            data: Array of shape (n_features, n_samples).
            feature_ids: Row identifiers; defaults to "{name}{i}".
            sample_ids: Column identifiers; defaults to "S{j}".
            name: Matrix label.

        Raises:
            InputFormatError: If data is not 2-D or identifiers don't match
                its shape or are duplicated.
        """
        data = np.array(data, dtype=np.float64, copy=True, ndmin=2)
        if data.ndim != 2:
            raise InputFormatError(f"{name}: expected a 2-D array, got {data.ndim}-D")
        n_features, n_samples = data.shape
        if feature_ids is None:
            feature_ids = [f"{name}{i}" for i in range(n_features)]
        if sample_ids is None:
            sample_ids = [f"S{j}" for j in range(n_samples)]

        if len(feature_ids) != n_features:
            raise InputFormatError(
                f"{name}: {len(feature_ids)} feature ids for {n_features} rows"
            )

        builder = ChunkedMatrixBuilder(name, sample_ids)
        for fid, row in zip(feature_ids, data, strict=True):
            builder.add_row(fid, row)
        return builder.build()

    @classmethod
    def empty(cls, sample_ids: list[str] | tuple[str, ...], name: str = "covariates"):
        """A matrix with zero rows over the given samples (no covariates)."""
        return ChunkedMatrixBuilder(name, sample_ids).build()

    @classmethod
    def from_plink(cls, bfile: Path, name: str = "variants") -> ChunkedMatrix:
        """Build a variant matrix backed by PLINK binary files.

        Genotype dosages (0/1/2, NaN for missing) are read per chunk with
        windowed .bed reads. Sample ids are the .fam IIDs, feature ids the
        .bim variant ids.

        Args:
            bfile: Path prefix for PLINK files (without .bed/.bim/.fam).

        Raises:
            FileNotFoundError: If the .bed file does not exist.
            InputFormatError: If variant ids are duplicated.
        """
        bed_file = Path(f"{bfile}.bed")
        if not bed_file.exists():
            raise FileNotFoundError(f"PLINK .bed file not found: {bed_file}")

        with open_bed(bed_file) as bed:
            feature_ids = tuple(str(s) for s in bed.sid)
            sample_ids = tuple(str(s) for s in bed.iid)

        _check_unique(feature_ids, name)
        logger.debug(
            f"{name}: PLINK {bed_file} with {len(feature_ids)} variants, "
            f"{len(sample_ids)} samples"
        )
        return cls(feature_ids, sample_ids, name, _PlinkSource(bed_file))


class ChunkedMatrixBuilder:
    """Row-by-row construction of an in-memory ChunkedMatrix.

    Example:
        >>> builder = ChunkedMatrixBuilder("traits", ["s1", "s2", "s3"])
        >>> builder.add_row("gene1", [0.5, 1.5, 2.0])
        >>> traits = builder.build()
    """

    def __init__(self, name: str, sample_ids: list[str] | tuple[str, ...]):
        self.name = name
        self.sample_ids = tuple(str(s) for s in sample_ids)
        self._feature_ids: list[str] = []
        self._rows: list[np.ndarray] = []

    def add_row(self, feature_id: str, values) -> None:
        """Append one feature row.

        Raises:
            InputFormatError: If the row length differs from the sample count.
        """
        row = np.asarray(values, dtype=np.float64).reshape(-1)
        if row.shape[0] != len(self.sample_ids):
            raise InputFormatError(
                f"{self.name}: row {feature_id!r} has {row.shape[0]} values "
                f"but {len(self.sample_ids)} samples were declared"
            )
        self._feature_ids.append(str(feature_id))
        self._rows.append(row)

    def build(self) -> ChunkedMatrix:
        """Freeze the collected rows into a read-only ChunkedMatrix."""
        feature_ids = tuple(self._feature_ids)
        _check_unique(feature_ids, self.name)
        if self._rows:
            data = np.vstack(self._rows)
        else:
            data = np.empty((0, len(self.sample_ids)), dtype=np.float64)
        data.setflags(write=False)
        return ChunkedMatrix(
            feature_ids, self.sample_ids, self.name, _ArraySource(data)
        )


def load_text_matrix(
    path: Path,
    fmt: MatrixFormat | None = None,
    name: str = "matrix",
    in_memory: bool = False,
) -> ChunkedMatrix:
    """Index (or load) a delimited feature-by-sample text matrix.

    Every row is parsed once so malformed input fails here, before any
    scanning. Unless in_memory is set, only the byte offset of each row is
    kept and chunks are re-read from disk on demand.

    Args:
        path: Path to the delimited text file.
        fmt: File layout; defaults to tab-delimited with "NA" missing token.
        name: Matrix label for log and error messages.
        in_memory: Keep parsed values in memory instead of re-reading.

    Returns:
        ChunkedMatrix over the file.

    Raises:
        FileNotFoundError: If the file does not exist.
        InputFormatError: If the header is missing, a row has the wrong number
            of cells, a value cannot be parsed, or feature ids repeat.
    """
    fmt = fmt or MatrixFormat()
    fmt.validate()
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"{name} file not found: {path}")

    first_value = 1 + fmt.skip_columns
    feature_ids: list[str] = []
    offsets: list[int] = []
    builder: ChunkedMatrixBuilder | None = None
    sample_ids: tuple[str, ...] | None = None
    header: list[str] | None = None
    n_fields = 0

    with open(path, "rb") as f:
        offset = 0
        line_no = 0
        for raw in f:
            line_no += 1
            line_offset = offset
            offset += len(raw)
            if line_no <= fmt.skip_rows:
                continue
            fields = _split(raw, fmt.delimiter, f"{path}:{line_no}")
            if fields == [""]:
                continue

            if header is None:
                header = fields
                continue

            if sample_ids is None:
                # The header may omit the corner cell above the id column
                if len(fields) == len(header) + 1:
                    header = [""] + header
                sample_ids = tuple(header[first_value:])
                n_fields = len(header)
                if in_memory:
                    builder = ChunkedMatrixBuilder(name, sample_ids)

            if len(fields) != n_fields:
                raise InputFormatError(
                    f"{path}:{line_no}: expected {n_fields} cells "
                    f"({len(sample_ids)} samples), found {len(fields)}"
                )
            values = _parse_values(
                fields[first_value:], fmt.missing, f"{path}:{line_no}"
            )
            feature_ids.append(fields[0])
            offsets.append(line_offset)
            if builder is not None:
                builder.add_row(fields[0], values)

    if header is None:
        raise InputFormatError(f"{path}: no header row found")
    if sample_ids is None:
        sample_ids = tuple(header[first_value:])
        if in_memory:
            builder = ChunkedMatrixBuilder(name, sample_ids)

    if builder is not None:
        matrix = builder.build()
    else:
        _check_unique(tuple(feature_ids), name)
        source = _TextSource(
            path, np.asarray(offsets, dtype=np.int64), fmt, len(sample_ids)
        )
        matrix = ChunkedMatrix(tuple(feature_ids), sample_ids, name, source)

    logger.debug(
        f"{name}: indexed {matrix.n_features} features x {matrix.n_samples} samples "
        f"from {path}"
    )
    return matrix


def check_sample_alignment(reference: ChunkedMatrix, *others: ChunkedMatrix) -> None:
    """Require identical sample identifiers in identical order.

    Args:
        reference: Matrix whose sample order is authoritative (variants).
        others: Matrices that must match it (traits, covariates).

    Raises:
        AlignmentError: On a count, membership or order mismatch.
    """
    for other in others:
        if other.n_samples != reference.n_samples:
            raise AlignmentError(
                f"{other.name} has {other.n_samples} samples but "
                f"{reference.name} has {reference.n_samples}"
            )
        if other.sample_ids == reference.sample_ids:
            continue
        if set(other.sample_ids) == set(reference.sample_ids):
            first = next(
                i
                for i, (a, b) in enumerate(
                    zip(reference.sample_ids, other.sample_ids, strict=True)
                )
                if a != b
            )
            raise AlignmentError(
                f"{other.name} lists the same samples as {reference.name} in a "
                f"different order (first difference at column {first + 1}: "
                f"{other.sample_ids[first]!r} vs {reference.sample_ids[first]!r})"
            )
        missing = sorted(set(reference.sample_ids) - set(other.sample_ids))
        raise AlignmentError(
            f"{other.name} sample ids differ from {reference.name}; "
            f"{len(missing)} missing, e.g. {missing[:3]}"
        )


def _split(raw: bytes, delimiter: str, where: str) -> list[str]:
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise InputFormatError(
            f"{where}: not valid UTF-8 text (byte {e.start + 1}: {e.reason})"
        ) from e
    return text.rstrip("\r\n").split(delimiter)


def _parse_values(tokens: list[str], missing: str, where: str) -> np.ndarray:
    values = np.empty(len(tokens), dtype=np.float64)
    for j, token in enumerate(tokens):
        token = token.strip()
        if token == missing or token == "":
            values[j] = np.nan
            continue
        try:
            values[j] = float(token)
        except ValueError as e:
            raise InputFormatError(
                f"{where}, column {j + 1}: cannot parse {token!r} as numeric "
                f"(use {missing!r} for missing)"
            ) from e
    return values


def _check_unique(feature_ids: tuple[str, ...], name: str) -> None:
    seen: set[str] = set()
    dupes: list[str] = []
    for fid in feature_ids:
        if fid in seen:
            dupes.append(fid)
        seen.add(fid)
    if dupes:
        raise InputFormatError(f"{name}: duplicate feature ids, e.g. {dupes[:3]}")
