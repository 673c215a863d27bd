"""bam2cpg: Per-read CpG modification likelihood matrices from aligned reads.

bam2cpg reads the MM/ML base-modification tags of reads in an indexed BAM
file and reports, for a fixed panel of CpG sites, the modification likelihood
(0-255) each read assigns to each site. Read-sequence offsets are mapped onto
the reference by walking each read's CIGAR, so insertions, deletions, clips and
reference skips are accounted for.

Main Components:
    CpGPanel: The ordered set of CpG sites; each site is one matrix column.
    walk_cigar: Maps aligned read offsets to reference positions.
    extract_likelihoods_from_bam: Builds the reads x sites LikelihoodMatrix.

Example:
    Command-line usage::

        $ bam2cpg --cpg-sites cpg_sites.txt --input-bam sample.bam --output matrix.tsv

    Python API usage::

        from bam2cpg.panel import CpGPanel
        from bam2cpg.functions import extract_likelihoods_from_bam
        from bam2cpg.report import write_matrix_tsv

        cpg_panel = CpGPanel.from_file("cpg_sites.txt")
        likelihood_matrix = extract_likelihoods_from_bam(
            input_bam="/path/to/sample.bam",
            cpg_panel=cpg_panel,
        )

        with open("matrix.tsv", "w") as f:
            write_matrix_tsv(likelihood_matrix, cpg_panel, f)

Output Format:
    A tab-separated table with a read_name column followed by one
    chromosome_position column per CpG site. Values are ML likelihoods
    (0-255); 0 where the read has no call at, or does not cover, the site.
"""

__version__ = "0.1"
