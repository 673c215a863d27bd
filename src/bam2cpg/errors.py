"""Exceptions and warnings raised by bam2cpg."""


class Bam2CpgError(Exception):
    """Base class for fatal bam2cpg errors."""


class MalformedInputError(Bam2CpgError, ValueError):
    """A CpG panel source could not be parsed."""


class AlignmentOpenError(Bam2CpgError, OSError):
    """The alignment file could not be opened."""


class HeaderReadError(Bam2CpgError, ValueError):
    """The alignment file header could not be read."""


class IndexLoadError(Bam2CpgError, FileNotFoundError):
    """The alignment file has no usable index."""


class IndexOutOfRangeError(Bam2CpgError, IndexError):
    """A read-sequence offset fell outside a read's modification calls.

    This signals a logic error in the coordinate walk, not bad input.
    """


class UnrecognizedCigarOperationWarning(UserWarning):
    """A CIGAR operation the walker does not know how to consume."""
