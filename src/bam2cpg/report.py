"""Render a LikelihoodMatrix as text or as a sparse .npz file."""

from typing import Iterator, TextIO

# Third party modules
import scipy.sparse

from bam2cpg.functions import LikelihoodMatrix
from bam2cpg.panel import CpGPanel


def format_matrix(
    likelihood_matrix: LikelihoodMatrix, cpg_panel: CpGPanel
) -> Iterator[str]:
    """Yield the tab-separated report, one line (without newline) at a time.

    The header is read_name followed by one chromosome_position column per CpG
    site. Each read is one row; cells the read never covered are 0.
    """
    assert likelihood_matrix.shape[1] == len(cpg_panel), "Panel does not match matrix"

    yield "\t".join(
        ["read_name"] + [cpg_panel.column_name(i) for i in range(len(cpg_panel))]
    )
    for row, read_name in enumerate(likelihood_matrix.read_names):
        yield "\t".join(
            [read_name]
            + [str(likelihood_matrix.get(row, col)) for col in range(len(cpg_panel))]
        )


def write_matrix_tsv(
    likelihood_matrix: LikelihoodMatrix, cpg_panel: CpGPanel, handle: TextIO
) -> None:
    for line in format_matrix(likelihood_matrix, cpg_panel):
        handle.write(line + "\n")


def save_matrix_npz(likelihood_matrix: LikelihoodMatrix, output_file: str) -> None:
    """Save the matrix as a compressed SciPy sparse .npz (rows = reads, columns = sites)."""
    scipy.sparse.save_npz(output_file, likelihood_matrix.to_coo(), compressed=True)
