"""Nucleotide sequence utilities.

This module provides the sequence helpers used by fragment enumeration and
the read-start context model:

- Reverse complement
- Integer encoding of nucleotides
- GC indicators and prefix sums
- Spliced transcript sequence assembly

Example:
    >>> from fragbias.utils.sequences import encode_sequence, gc_prefix_sum
    >>> codes = encode_sequence("ACGTN")
    >>> codes.tolist()
    [0, 1, 2, 3, 4]
    >>> gc_prefix_sum("GGAT").tolist()
    [0, 1, 2, 2, 2]
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import numpy as np

if TYPE_CHECKING:
    from fragbias.utils.intervals import ExonSet

# =============================================================================
# Constants
# =============================================================================

BASES = "ACGT"

# Code used for N and any other non-ACGT character
CODE_N = 4

COMPLEMENT_TABLE = str.maketrans(
    "ACGTacgtNnRYSWKMBDHVryswkmbdhv",
    "TGCAtgcaNnYRSWMKVHDByrswmkvhdb",
)

_ENCODE_LOOKUP = np.full(256, CODE_N, dtype=np.uint8)
for _code, _base in enumerate(BASES):
    _ENCODE_LOOKUP[ord(_base)] = _code
    _ENCODE_LOOKUP[ord(_base.lower())] = _code


class SequenceSource(Protocol):
    """Anything that can return genomic sequence for a region."""

    def get_sequence(self, seqid: str, start: int, end: int, strand: str = "+") -> str:
        ...


# =============================================================================
# Complement and Encoding
# =============================================================================


def reverse_complement(sequence: str) -> str:
    """Get the reverse complement of a DNA sequence.

    Handles IUPAC ambiguity codes and preserves case.
    """
    return sequence.translate(COMPLEMENT_TABLE)[::-1]


def encode_sequence(sequence: str) -> np.ndarray:
    """Encode a nucleotide string as uint8 codes (A=0, C=1, G=2, T=3, other=4)."""
    raw = np.frombuffer(sequence.encode("ascii", errors="replace"), dtype=np.uint8)
    return _ENCODE_LOOKUP[raw]


def complement_codes(codes: np.ndarray) -> np.ndarray:
    """Complement encoded bases, keeping N as N."""
    codes = np.asarray(codes, dtype=np.uint8)
    return np.where(codes == CODE_N, CODE_N, 3 - codes).astype(np.uint8)


# =============================================================================
# GC Content
# =============================================================================


def gc_indicator(sequence: str | np.ndarray) -> np.ndarray:
    """Per-base 0/1 indicator of G or C."""
    codes = encode_sequence(sequence) if isinstance(sequence, str) else sequence
    return ((codes == 1) | (codes == 2)).astype(np.int32)


def gc_prefix_sum(sequence: str | np.ndarray) -> np.ndarray:
    """Prefix sum of the GC indicator, length len(sequence) + 1.

    GC count of sequence[a:b] is ``prefix[b] - prefix[a]``.
    """
    indicator = gc_indicator(sequence)
    prefix = np.zeros(len(indicator) + 1, dtype=np.int64)
    np.cumsum(indicator, out=prefix[1:])
    return prefix


# =============================================================================
# Transcript Sequence
# =============================================================================


def spliced_sequence(exon_set: ExonSet, genome: SequenceSource) -> str:
    """Assemble the spliced transcript sequence in 5' to 3' orientation.

    Args:
        exon_set: Transcript structure.
        genome: Sequence source with a ``get_sequence(seqid, start, end)`` method.

    Returns:
        Upper-case transcript sequence.
    """
    pieces = [genome.get_sequence(exon_set.seqid, s, e) for s, e in exon_set.exons]
    sequence = "".join(pieces).upper()
    if exon_set.strand == "-":
        sequence = reverse_complement(sequence)
    return sequence
