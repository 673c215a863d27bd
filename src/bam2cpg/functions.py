"""Core functions for bam2cpg."""

import re
import sys
import warnings
from typing import Iterable, Iterator, Optional

# Third party modules
import numpy as np
import scipy.sparse
import pysam

from tqdm import tqdm
from bam2cpg.errors import (
    AlignmentOpenError,
    HeaderReadError,
    IndexLoadError,
    IndexOutOfRangeError,
    UnrecognizedCigarOperationWarning,
)
from bam2cpg.panel import CpGPanel

# CIGAR operations, as pysam encodes them
ALIGNED_OPS = {pysam.CMATCH, pysam.CEQUAL, pysam.CDIFF}  # consume read + reference
READ_ONLY_OPS = {pysam.CINS, pysam.CSOFT_CLIP}
REFERENCE_ONLY_OPS = {pysam.CDEL, pysam.CREF_SKIP}
NO_OP_OPS = {pysam.CHARD_CLIP}

CIGAR_CODES = {
    "M": pysam.CMATCH,
    "I": pysam.CINS,
    "D": pysam.CDEL,
    "N": pysam.CREF_SKIP,
    "S": pysam.CSOFT_CLIP,
    "H": pysam.CHARD_CLIP,
    "P": pysam.CPAD,
    "=": pysam.CEQUAL,
    "X": pysam.CDIFF,
    "B": pysam.CBACK,
}

CIGAR_RE = re.compile(r"(\d+)([MIDNSHP=XB])")


def parse_cigar_string(cigar: str) -> list[tuple[int, int]]:
    """Convert a CIGAR string (e.g. "2S5M1I3M") into pysam-style (op, length) tuples.

    Raises
    -------
        ValueError: If the string is not a valid CIGAR.
    """
    cigartuples = []
    pos = 0
    for match in CIGAR_RE.finditer(cigar):
        if match.start() != pos:
            break
        cigartuples.append((CIGAR_CODES[match.group(2)], int(match.group(1))))
        pos = match.end()

    if pos != len(cigar) or not cigartuples:
        raise ValueError(f"Bad CIGAR: {cigar!r}")
    return cigartuples


def walk_cigar(
    alignment_start: int, cigartuples: Iterable[tuple[int, int]]
) -> Iterator[tuple[int, int]]:
    """
    Walk a CIGAR, yielding a (reference position, read offset) pair for every aligned base.

    Only match/equal/diff operations emit, one pair per base. Insertions and
    soft clips advance the read offset, deletions and reference skips advance the
    reference position, hard clips advance neither. Any other operation is
    reported with an UnrecognizedCigarOperationWarning and otherwise ignored.

    Args
    -------
        alignment_start: 0-based reference position of the first aligned base.
        cigartuples: (operation, length) tuples, as in pysam.AlignedSegment.cigartuples.

    Yields
    -------
        (reference position, read-sequence offset) tuples, both 0-based.
    """
    ref_pos = alignment_start
    read_pos = 0

    for op, length in cigartuples:
        if op in ALIGNED_OPS:
            for _ in range(length):
                yield ref_pos, read_pos
                ref_pos += 1
                read_pos += 1
        elif op in READ_ONLY_OPS:
            read_pos += length
        elif op in REFERENCE_ONLY_OPS:
            ref_pos += length
        elif op in NO_OP_OPS:
            continue
        else:
            warnings.warn(
                f"Unexpected CIGAR operation: {op} (length {length}), skipping",
                UnrecognizedCigarOperationWarning,
                stacklevel=2,
            )


class ModificationCalls:
    """Modification likelihoods for one read, indexed by read-sequence offset."""

    def __init__(self, likelihoods: np.ndarray):
        self.likelihoods = likelihoods

    def __len__(self) -> int:
        return len(self.likelihoods)

    def value_at(self, offset: int) -> int:
        """Return the likelihood (0-255) at a read-sequence offset.

        Raises
        -------
            IndexOutOfRangeError: If the offset is outside the read.
        """
        if not 0 <= offset < len(self.likelihoods):
            raise IndexOutOfRangeError(
                f"Read offset {offset} outside read of length {len(self.likelihoods)}"
            )
        return int(self.likelihoods[offset])


def decode_modification_calls(
    aligned_segment: pysam.AlignedSegment, mod_code: str = "m"
) -> Optional[ModificationCalls]:
    """
    Decode the MM/ML tags of a read into per-base likelihoods.

    Bases without an explicit call (and calls of unknown quality) score 0.

    Args
    -------
        aligned_segment: The read.
        mod_code: Modification code to extract, e.g. "m" (5mC) or "h" (5hmC).

    Returns
    -------
        A ModificationCalls accessor, or None if the read carries no calls for
        this modification.
    """
    if not (aligned_segment.has_tag("MM") or aligned_segment.has_tag("Mm")):
        return None
    if aligned_segment.query_sequence is None:
        return None

    # Dict[(canonical base, strand, modification)] -> [(pos, qual), ...]
    # where pos is in query_sequence coordinates and qual is 256*probability (or -1)
    modified_bases = aligned_segment.modified_bases
    if not modified_bases:
        return None

    calls = [
        (pos, qual)
        for (_, _, code), pos_quals in modified_bases.items()
        if str(code) == mod_code
        for pos, qual in pos_quals
    ]
    if not calls:
        return None

    likelihoods = np.zeros(aligned_segment.query_length, dtype=np.uint8)
    for pos, qual in calls:
        if qual >= 0:
            likelihoods[pos] = qual

    return ModificationCalls(likelihoods)


class LikelihoodMatrix:
    """Sparse reads x CpG sites matrix of modification likelihoods.

    Rows are reads, in the order they are first seen; columns are CpG panel
    columns. A read is identified by (name, chromosome, alignment start), so a
    read returned by several region queries keeps a single row.
    """

    def __init__(self, n_sites: int):
        self.n_sites = n_sites
        self.read_names: list[str] = []
        self.read_key_to_row: dict[tuple, int] = {}
        # (row, column) -> likelihood; only cells actually traversed by a read exist
        self.cells: dict[tuple[int, int], int] = {}

    @property
    def shape(self) -> tuple[int, int]:
        return len(self.read_names), self.n_sites

    def __eq__(self, other) -> bool:
        if not isinstance(other, LikelihoodMatrix):
            return NotImplemented
        return (
            self.n_sites == other.n_sites
            and self.read_names == other.read_names
            and list(self.cells.items()) == list(other.cells.items())
        )

    def has_read(self, read_key: tuple) -> bool:
        return read_key in self.read_key_to_row

    def row_for(self, read_key: tuple, read_name: str) -> int:
        """Return the row of a read, appending a new row the first time it is seen."""
        row = self.read_key_to_row.get(read_key)
        if row is None:
            row = len(self.read_names)
            self.read_key_to_row[read_key] = row
            self.read_names.append(read_name)
        return row

    def set_cell(self, row: int, column: int, likelihood: int) -> None:
        assert 0 <= row < len(self.read_names), "Row index exceeds matrix dimensions"
        assert 0 <= column < self.n_sites, "Column index exceeds matrix dimensions"
        self.cells[(row, column)] = likelihood

    def get(self, row: int, column: int) -> int:
        """Return a cell value; cells never written are 0."""
        return self.cells.get((row, column), 0)

    def to_coo(self) -> scipy.sparse.coo_matrix:
        """Export as a SciPy COO matrix of shape (n_reads, n_sites)."""
        coo_row = [row for row, _ in self.cells]
        coo_col = [col for _, col in self.cells]
        coo_data = list(self.cells.values())

        return scipy.sparse.coo_matrix(
            (
                np.array(coo_data, dtype=np.uint8),
                (np.array(coo_row, dtype=np.int64), np.array(coo_col, dtype=np.int64)),
            ),
            shape=self.shape,
        )

    def to_dense(self) -> np.ndarray:
        return self.to_coo().toarray()


def read_identity(aligned_segment: pysam.AlignedSegment) -> tuple:
    """Key identifying one alignment of one read."""
    return (
        aligned_segment.query_name,
        aligned_segment.reference_name,
        aligned_segment.reference_start,
    )


def add_aligned_segment(
    likelihood_matrix: LikelihoodMatrix,
    aligned_segment: pysam.AlignedSegment,
    cpg_panel: CpGPanel,
    mod_code: str = "m",
) -> str:
    """
    Add one read to the matrix.

    Returns
    -------
        "seen" if the read already has a row, "no_calls" if it carries no
        modification calls (no row is added), otherwise "added".
    """
    read_key = read_identity(aligned_segment)
    if likelihood_matrix.has_read(read_key):
        return "seen"

    modification_calls = decode_modification_calls(aligned_segment, mod_code=mod_code)
    if modification_calls is None:
        return "no_calls"

    row = likelihood_matrix.row_for(read_key, aligned_segment.query_name)  # type: ignore
    chrom = aligned_segment.reference_name

    for ref_pos, read_pos in walk_cigar(
        aligned_segment.reference_start, aligned_segment.cigartuples or []
    ):
        column = cpg_panel.find_reference(chrom, ref_pos)  # type: ignore
        if column is not None:
            likelihood_matrix.set_cell(
                row, column, modification_calls.value_at(read_pos)
            )

    return "added"


def open_alignment_file(input_bam: str) -> pysam.AlignmentFile:
    """
    Open an indexed .bam/.cram file.

    Raises
    -------
        AlignmentOpenError: If the file cannot be opened.
        HeaderReadError: If the file is not an alignment file or has no readable header.
        IndexLoadError: If no index is available.
    """
    try:
        input_bam_object = pysam.AlignmentFile(  # type: ignore # pylint: disable=no-member
            input_bam, "rb", threads=1
        )
    except ValueError as exc:
        raise HeaderReadError(f"Error reading header of: {input_bam} ({exc})") from exc
    except OSError as exc:
        raise AlignmentOpenError(f"Error opening alignment file: {input_bam} ({exc})") from exc

    if not input_bam_object.has_index():
        input_bam_object.close()
        raise IndexLoadError(f"Index missing for bam file?: {input_bam}")

    return input_bam_object


def extract_likelihoods_from_bam(
    input_bam: str,
    cpg_panel: CpGPanel,
    mod_code: str = "m",
    quality_limit: int = 0,
    skip_flagged: bool = False,
    verbose: bool = False,
    debug: bool = False,
) -> LikelihoodMatrix:
    """
    Extract per-read modification likelihoods at each CpG panel site from a .bam file.

    Args
    -------
        input_bam: Path to the input .bam file (must be indexed).
        cpg_panel: The CpG sites to extract.
        mod_code: Modification code from the MM tag (default "m", 5mC).
        quality_limit: Minimum mapping quality to include.
        skip_flagged: Skip duplicate, QC-fail and secondary alignments.
        verbose: Print verbose output.
        debug: Print debug output.

    Returns
    -------
        A LikelihoodMatrix with one row per read carrying modification calls.

    Raises
    -------
        AlignmentOpenError, HeaderReadError, IndexLoadError: If the input cannot be read.
    """
    input_bam_object = open_alignment_file(input_bam)

    if verbose:
        print(f"\tTotal mapped reads: {input_bam_object.mapped:,}\n", file=sys.stderr)

    likelihood_matrix = LikelihoodMatrix(len(cpg_panel))
    skipped_no_calls = set()
    empty_regions = 0

    with input_bam_object:
        for column in tqdm(range(len(cpg_panel)), disable=not verbose, file=sys.stderr):
            chrom, start_pos, stop_pos = cpg_panel.region(column)
            region = f"{chrom}:{start_pos + 1}-{stop_pos}"
            if debug:
                tqdm.write(f"Site: {cpg_panel.column_name(column)} ({region})", file=sys.stderr)

            if chrom in input_bam_object.references:
                aligned_segments = input_bam_object.fetch(
                    contig=chrom, start=start_pos, end=stop_pos
                )
            else:
                tqdm.write(f"Contig {chrom} is not in the alignment header", file=sys.stderr)
                aligned_segments = iter(())

            n_reads = 0
            for aligned_segment in aligned_segments:
                n_reads += 1
                if aligned_segment.is_unmapped:
                    continue
                if aligned_segment.mapping_quality < quality_limit:
                    continue
                if skip_flagged and (
                    aligned_segment.is_duplicate
                    or aligned_segment.is_qcfail
                    or aligned_segment.is_secondary
                ):
                    continue

                status = add_aligned_segment(
                    likelihood_matrix, aligned_segment, cpg_panel, mod_code=mod_code
                )
                if status == "no_calls":
                    skipped_no_calls.add(read_identity(aligned_segment))
                if debug:
                    tqdm.write(f"\tQuery: {aligned_segment.query_name} [{status}]", file=sys.stderr)

            if n_reads == 0:
                empty_regions += 1
                tqdm.write(f"No reads found in region: {region}", file=sys.stderr)

    if verbose:
        print(f"\tReads with calls (rows): {likelihood_matrix.shape[0]:,}", file=sys.stderr)
        print(f"\tReads without {mod_code} calls (skipped): {len(skipped_no_calls):,}", file=sys.stderr)
        print(f"\tPopulated cells: {len(likelihood_matrix.cells):,}", file=sys.stderr)
        print(f"\tSites with no reads: {empty_regions:,}", file=sys.stderr)

    return likelihood_matrix
