"""Stores the panel of CpG sites that become matrix columns."""

import os
from typing import Iterable, Iterator, NamedTuple, Optional

# Third party modules
from tqdm import tqdm
from Bio import SeqIO

from bam2cpg.errors import MalformedInputError


class CpGSite(NamedTuple):
    """A single (chromosome, position) site of interest."""

    chromosome: str
    position: int


def parse_cpg_sites(lines: Iterable[str]) -> Iterator[tuple[str, int]]:
    """Yield (chromosome, position) pairs from chromosome:position lines.

    Blank lines and lines starting with "#" are ignored. The chromosome is
    everything before the *last* colon, so contig names containing colons
    (e.g. HLA alleles) still parse.

    Args
    ----------
    lines : Iterable[str]
        Lines of a CpG sites file.

    Yields
    ----------
    tuple:
        The chromosome and position, e.g. ("chr1", 12345)

    Raises
    -------
    MalformedInputError
        If a line is not of the form chromosome:position.
    """
    for line_number, line in enumerate(lines, start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue

        chromosome, sep, position = line.rpartition(":")
        # int() accepts non-ASCII digits, so restrict to 0-9
        if (
            not sep
            or not chromosome
            or not (position.isascii() and position.isdecimal())
        ):
            raise MalformedInputError(
                f"Line {line_number}: expected chromosome:position, got {line!r}"
            )
        yield chromosome, int(position)


class CpGPanel:
    """An ordered, fixed panel of CpG sites.

    Each site is assigned a column index equal to its load order. Lookups are
    exact on (chromosome, position), in the coordinate convention of the
    panel source (1-based unless zero_based is set).
    """

    def __init__(self, sites: Iterable[tuple[str, int]], zero_based: bool = False):
        """Initialize the panel.

        Args
        ----------
        sites : Iterable[tuple[str, int]]
            (chromosome, position) pairs in column order.
        zero_based : bool, optional
            Positions are 0-based rather than 1-based.

        Raises
        -------
        MalformedInputError
            If the panel is empty or a site is listed twice.
        """
        self.zero_based = zero_based
        # Added to a 0-based reference position to get a panel position
        self.coordinate_offset = 0 if zero_based else 1

        self.sites: list[CpGSite] = []
        self.site_to_column: dict[CpGSite, int] = {}

        for chromosome, position in sites:
            site = CpGSite(chromosome, position)
            if site in self.site_to_column:
                raise MalformedInputError(
                    f"Duplicate CpG site in panel: {chromosome}:{position}"
                )
            if position - self.coordinate_offset < 0:
                raise MalformedInputError(
                    f"Position {chromosome}:{position} is before the start of the contig"
                )
            self.site_to_column[site] = len(self.sites)
            self.sites.append(site)

        if not self.sites:
            raise MalformedInputError("CpG panel is empty")

    @classmethod
    def from_file(cls, path: str, zero_based: bool = False) -> "CpGPanel":
        """Load a panel from a text file of chromosome:position lines.

        Raises
        -------
        MalformedInputError
            If the file cannot be read or a line does not parse.
        """
        try:
            with open(path, "rt", encoding="utf-8") as f:
                return cls(parse_cpg_sites(f), zero_based=zero_based)
        except UnicodeDecodeError as exc:
            raise MalformedInputError(f"CpG sites file is not valid text: {path}") from exc
        except OSError as exc:
            raise MalformedInputError(f"Cannot read CpG sites file: {path}") from exc

    def __len__(self) -> int:
        return len(self.sites)

    def __iter__(self) -> Iterator[CpGSite]:
        return iter(self.sites)

    def find(self, chromosome: str, position: int) -> Optional[int]:
        """Return the column index of a site, or None if it is not in the panel."""
        return self.site_to_column.get(CpGSite(chromosome, position))

    def find_reference(self, chromosome: str, reference_position: int) -> Optional[int]:
        """Like find(), but for a 0-based reference coordinate (as pysam reports)."""
        return self.site_to_column.get(
            CpGSite(chromosome, reference_position + self.coordinate_offset)
        )

    def region(self, column: int) -> tuple[str, int, int]:
        """Return the single-base, 0-based half-open region covering a site."""
        chromosome, position = self.sites[column]
        start = position - self.coordinate_offset
        return chromosome, start, start + 1

    def column_name(self, column: int) -> str:
        """Column header for a site, e.g. chr1_12345."""
        chromosome, position = self.sites[column]
        return f"{chromosome}_{position}"

    def validate_against_fasta(
        self, fasta_source: str, verbose: bool = False
    ) -> list[CpGSite]:
        """Check that each site sits on the C of a CG dinucleotide.

        Only the contigs named in the panel are scanned.

        Args
        ----------
        fasta_source : str
            Path to the reference genome fasta.
        verbose : bool, optional
            Show a progress bar.

        Returns
        --------
        list[CpGSite]
            Sites that are not CpGs in the reference, or whose contig is missing.

        Raises
        -------
        FileNotFoundError
            If the fasta file cannot be read.
        """
        if not os.access(fasta_source, os.R_OK):
            raise FileNotFoundError(
                "Cannot read fasta file: " + os.path.abspath(fasta_source)
            )

        sites_by_chromosome: dict[str, list[CpGSite]] = {}
        for site in self.sites:
            sites_by_chromosome.setdefault(site.chromosome, []).append(site)

        not_cpg = []
        seen_chromosomes = set()
        for seqrecord in tqdm(
            SeqIO.parse(fasta_source, "fasta"),  # type: ignore
            disable=not verbose,
        ):
            if seqrecord.id not in sites_by_chromosome:
                continue
            seen_chromosomes.add(seqrecord.id)
            sequence = seqrecord.seq

            for site in sites_by_chromosome[seqrecord.id]:
                start = site.position - self.coordinate_offset
                if str(sequence[start : start + 2]).upper() != "CG":
                    not_cpg.append(site)

        for chromosome, sites in sites_by_chromosome.items():
            if chromosome not in seen_chromosomes:
                not_cpg.extend(sites)

        # Report in column order
        return sorted(not_cpg, key=lambda s: self.site_to_column[s])
