# Import modules
import click
import sys
import time

from bam2cpg.errors import Bam2CpgError
from bam2cpg.panel import CpGPanel

from bam2cpg.functions import (
    extract_likelihoods_from_bam,
)
from bam2cpg.report import save_matrix_npz, write_matrix_tsv


def log(message: str) -> None:
    """Status messages go to stderr, since the report may be on stdout."""
    print(message, file=sys.stderr)


def load_panel(
    cpg_sites: str, zero_based: bool, reference_fasta: str, verbose: bool
) -> CpGPanel:
    """Load the CpG panel, optionally checking its sites against a reference fasta."""
    cpg_panel = CpGPanel.from_file(cpg_sites, zero_based=zero_based)
    log(f"Loaded {len(cpg_panel):,} CpG sites")

    if reference_fasta:
        log(f"\nChecking CpG sites against: {reference_fasta}")
        not_cpg = cpg_panel.validate_against_fasta(reference_fasta, verbose=verbose)
        for site in not_cpg:
            log(f"\tWarning: {site.chromosome}:{site.position} is not a CpG in the reference")
        if not not_cpg:
            log("\tAll sites are CpGs.")

    return cpg_panel


@click.command(
    help="Extract per-read modification likelihoods at a panel of CpG sites from an indexed .bam file, as a reads x sites table."
)
@click.version_option()
@click.option(
    "--cpg-sites",
    help="Text file of CpG sites, one chromosome:position per line.",
    required=True,
    type=click.Path(exists=True, file_okay=True, dir_okay=False, readable=True),
)
@click.option(
    "--input-bam",
    help="Input .bam file with MM/ML modification tags (must be indexed).",
    required=True,
    type=click.Path(exists=True, file_okay=True, dir_okay=False, readable=True),
)
@click.option(
    "--output",
    help="Output .tsv file (default: stdout).",
    default="-",
    type=click.Path(dir_okay=False, writable=True, allow_dash=True),
)
@click.option(
    "--npz-output",
    help="Also save the matrix as a SciPy sparse .npz file.",
    required=False,
    type=click.Path(dir_okay=False, writable=True),
)
@click.option(
    "--zero-based",
    help="CpG site positions are 0-based (default: 1-based).",
    is_flag=True,
)
@click.option(
    "--mod-code",
    help="Modification code to extract from the MM tag (default = m, 5mC).",
    default="m",
    type=str,
)
@click.option(
    "--quality-limit",
    help="Minimum mapping quality for aligned reads (default = 0)",
    default=0,
    type=int,
)
@click.option(
    "--skip-flagged",
    help="Skip duplicate, QC-fail and secondary alignments.",
    is_flag=True,
)
@click.option(
    "--reference-fasta",
    help="Reference genome fasta, to warn about panel sites that are not CpGs.",
    required=False,
    type=click.Path(exists=True, file_okay=True, dir_okay=False, readable=True),
)
@click.option("--verbose", help="Verbose output.", is_flag=True)
@click.option(
    "--debug",
    help="Debug mode (per-site and per-read messages).",
    is_flag=True,
    type=bool,
)
def main(
    cpg_sites: str,
    input_bam: str,
    output: str,
    npz_output: str,
    zero_based: bool,
    mod_code: str,
    quality_limit: int,
    skip_flagged: bool,
    reference_fasta: str,
    verbose: bool,
    debug: bool,
) -> None:
    """Bam2Cpg."""
    time_start = time.time()
    # Print run information
    log(f"CpG sites: {cpg_sites}")
    log(f"Input bam: {input_bam}")
    log(f"Modification code: {mod_code}")

    #################################################
    # Load the CpG panel
    #################################################

    try:
        cpg_panel = load_panel(cpg_sites, zero_based, reference_fasta, verbose)
    except Bam2CpgError as e:
        raise click.ClickException(f"Failed to load CpG sites: {e}") from e

    #################################################
    # Extract likelihoods
    #################################################

    log(f"\nExtracting modification likelihoods from: {input_bam}")
    try:
        likelihood_matrix = extract_likelihoods_from_bam(
            input_bam=input_bam,
            cpg_panel=cpg_panel,
            mod_code=mod_code,
            quality_limit=quality_limit,
            skip_flagged=skip_flagged,
            verbose=verbose,
            debug=debug,
        )
    except Bam2CpgError as e:
        raise click.ClickException(f"Failed to read alignments: {e}") from e

    n_reads, n_sites = likelihood_matrix.shape
    log(f"\nMatrix: {n_reads:,} reads x {n_sites:,} CpG sites")

    #################################################
    # Write outputs
    #################################################

    with click.open_file(output, "w") as handle:
        write_matrix_tsv(likelihood_matrix, cpg_panel, handle)

    if npz_output:
        log(f"Writing sparse matrix to: {npz_output}")
        save_matrix_npz(likelihood_matrix, npz_output)

    log(f"\nTotal time elapsed: {time.time() - time_start:.2f} seconds")
    log("\nRun complete.")


if __name__ == "__main__":
    main(prog_name="bam2cpg")  # pylint: disable=no-value-for-parameter
