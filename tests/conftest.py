"""Shared fixtures: a small indexed BAM with MM/ML tags and a matching CpG panel."""

import array

import pysam
import pytest

from bam2cpg.functions import parse_cigar_string

CHROM_LENGTHS = {"chr1": 1000, "chr2": 500}

# 1-based panel sites. chr1:501 has no reads.
CPG_SITES = ["chr1:103", "chr1:107", "chr1:501", "chr2:51"]

# name, chrom, 0-based start, CIGAR, sequence, MM, ML
# Site chr1:103 is reference 102, chr1:107 is reference 106, chr2:51 is reference 50.
READS = [
    # 10M: ref 100-109 <-> read 0-9; Cs at read 2 (ref 102) and 6 (ref 106)
    ("read1", "chr1", 100, "10M", "AACGAACGAA", "C+m,0,0;", [200, 30]),
    # 2S3M2I5M: ref 102 <-> read 4, ref 106 <-> read 10
    ("read2", "chr1", 100, "2S3M2I5M", "GGAACTTAAACA", "C+m,0,0;", [150, 250]),
    # No modification tags
    ("read4", "chr1", 100, "10M", "AACGAACGAA", None, None),
    # 1M3D6M: ref 104, then 105-107 deleted, so ref 106 is never traversed
    ("read3", "chr1", 104, "1M3D6M", "ACAAAAA", "C+m,0;", [99]),
    ("read5", "chr2", 40, "20M", "AAAAAAAAAACGAAAAAAAA", "C+m,0;", [77]),
]


def make_segment(
    header, name, chrom, start, cigar, sequence, mm, ml, flag=0, mapping_quality=60
):
    a = pysam.AlignedSegment(header)
    a.query_name = name
    a.query_sequence = sequence
    a.flag = flag
    a.reference_name = chrom
    a.reference_start = start
    a.mapping_quality = mapping_quality
    a.cigartuples = parse_cigar_string(cigar)
    a.query_qualities = pysam.qualitystring_to_array("I" * len(sequence))
    if mm is not None:
        a.set_tag("MM", mm)
        a.set_tag("ML", array.array("B", ml))
    return a


def write_bam(path, reads, index=True):
    header = pysam.AlignmentHeader.from_dict(
        {
            "HD": {"VN": "1.6", "SO": "coordinate"},
            "SQ": [{"SN": chrom, "LN": length} for chrom, length in CHROM_LENGTHS.items()],
        }
    )
    with pysam.AlignmentFile(str(path), "wb", header=header) as out_bam:
        for read in reads:
            out_bam.write(make_segment(header, *read))
    if index:
        pysam.index(str(path))
    return str(path)


@pytest.fixture
def test_bam(tmp_path):
    """Indexed BAM holding READS."""
    return write_bam(tmp_path / "test.bam", READS)


@pytest.fixture
def cpg_sites_file(tmp_path):
    path = tmp_path / "cpg_sites.txt"
    path.write_text("\n".join(CPG_SITES) + "\n")
    return str(path)
