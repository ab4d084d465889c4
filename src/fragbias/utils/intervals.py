"""Genomic interval operations and spliced coordinate mapping.

This module provides the interval primitives shared by every other
component:

- A simple half-open interval type
- Interval merging
- ExonSet, the sorted exon structure of one transcript
- IntervalMapper, which maps spliced coordinates onto the genome

Spliced (transcript) coordinates are 0-based and start at the transcript
5' end, so on the minus strand spliced position 0 is the last genomic base
of the last exon.

Example:
    >>> from fragbias.utils.intervals import ExonSet, IntervalMapper
    >>> tx = ExonSet("tx1", "gene1", "chr1", "+", ((100, 200), (300, 400)))
    >>> mapper = IntervalMapper(tx)
    >>> mapper.to_genomic(150)
    350
    >>> mapper.spliced_to_blocks(90, 110)
    [(190, 200), (300, 310)]
"""

from __future__ import annotations

from typing import NamedTuple

import attrs
import numpy as np

# =============================================================================
# Data Structures
# =============================================================================


class Interval(NamedTuple):
    """A simple genomic interval.

    Attributes:
        start: Start position (0-based, inclusive).
        end: End position (0-based, exclusive).
    """

    start: int
    end: int

    @property
    def length(self) -> int:
        """Get interval length."""
        return self.end - self.start


def _validate_exons(instance: "ExonSet", attribute: attrs.Attribute, value: tuple) -> None:
    if not value:
        raise ValueError(f"Transcript {instance.transcript_id} has no exons")
    prev_end = None
    for start, end in value:
        if start < 0 or end <= start:
            raise ValueError(
                f"Transcript {instance.transcript_id}: invalid exon ({start}, {end})"
            )
        if prev_end is not None and start < prev_end:
            raise ValueError(
                f"Transcript {instance.transcript_id}: exons must be sorted and disjoint"
            )
        prev_end = end


def _as_exon_tuple(exons) -> tuple[tuple[int, int], ...]:
    return tuple((int(s), int(e)) for s, e in exons)


@attrs.define(frozen=True, slots=True)
class ExonSet:
    """Sorted, disjoint exons of one transcript.

    Attributes:
        transcript_id: Transcript identifier.
        gene_id: Parent gene identifier.
        seqid: Chromosome/contig identifier.
        strand: Strand (+ or -).
        exons: (start, end) genomic intervals in ascending genomic order,
            0-based half-open.
    """

    transcript_id: str
    gene_id: str
    seqid: str
    strand: str = attrs.field(validator=attrs.validators.in_(("+", "-")))
    exons: tuple[tuple[int, int], ...] = attrs.field(
        converter=_as_exon_tuple, validator=_validate_exons
    )

    @property
    def spliced_length(self) -> int:
        """Total exon length."""
        return sum(end - start for start, end in self.exons)

    @property
    def start(self) -> int:
        """Genomic start of the first exon."""
        return self.exons[0][0]

    @property
    def end(self) -> int:
        """Genomic end of the last exon."""
        return self.exons[-1][1]


# =============================================================================
# Interval Operations
# =============================================================================


def merge_intervals(intervals: list[Interval]) -> list[Interval]:
    """Merge overlapping or touching intervals.

    Args:
        intervals: List of intervals to merge.

    Returns:
        List of merged intervals.
    """
    if not intervals:
        return []

    sorted_intervals = sorted(intervals, key=lambda x: x.start)

    merged = [Interval(*sorted_intervals[0])]
    for current in sorted_intervals[1:]:
        last = merged[-1]
        if current.start <= last.end:
            merged[-1] = Interval(last.start, max(last.end, current.end))
        else:
            merged.append(Interval(*current))

    return merged


def block_introns(blocks: list[tuple[int, int]]) -> tuple[tuple[int, int], ...]:
    """Gaps between consecutive sorted blocks.

    Args:
        blocks: Sorted genomic blocks.

    Returns:
        Tuple of (gap_start, gap_end) for every gap of positive length.
    """
    return tuple(
        (blocks[i][1], blocks[i + 1][0])
        for i in range(len(blocks) - 1)
        if blocks[i][1] < blocks[i + 1][0]
    )


# =============================================================================
# Coordinate Mapping
# =============================================================================


class IntervalMapper:
    """Map spliced coordinates of one transcript onto the genome.

    Attributes:
        exon_set: The transcript structure being mapped.
        length: Spliced transcript length.
    """

    def __init__(self, exon_set: ExonSet) -> None:
        self.exon_set = exon_set
        self.strand = exon_set.strand

        # Exons in transcript (5' to 3') order
        ordered = list(exon_set.exons)
        if self.strand == "-":
            ordered.reverse()
        self._tx_exons = ordered
        self._tx_starts = np.array([s for s, _ in ordered], dtype=np.int64)
        self._tx_ends = np.array([e for _, e in ordered], dtype=np.int64)
        lengths = self._tx_ends - self._tx_starts
        self._offsets = np.concatenate(([0], np.cumsum(lengths)[:-1])).astype(np.int64)
        self.length = int(lengths.sum())

    def to_genomic(self, position: int) -> int:
        """Genomic coordinate of a spliced position.

        Raises:
            IndexError: If position is outside [0, length).
        """
        if not 0 <= position < self.length:
            raise IndexError(
                f"Spliced position {position} outside transcript of length {self.length}"
            )
        return int(self.to_genomic_array(np.array([position]))[0])

    def to_genomic_array(self, positions: np.ndarray) -> np.ndarray:
        """Vectorized to_genomic for positions inside the transcript."""
        positions = np.asarray(positions, dtype=np.int64)
        idx = np.searchsorted(self._offsets, positions, side="right") - 1
        within = positions - self._offsets[idx]
        if self.strand == "+":
            return self._tx_starts[idx] + within
        return self._tx_ends[idx] - 1 - within

    def spliced_to_blocks(self, start: int, end: int) -> list[tuple[int, int]]:
        """Genomic blocks covered by the spliced half-open range [start, end).

        Returns:
            Sorted (start, end) genomic blocks.
        """
        if start < 0 or end > self.length or start >= end:
            raise IndexError(
                f"Spliced range [{start}, {end}) invalid for length {self.length}"
            )

        blocks = []
        for i, (g_start, g_end) in enumerate(self._tx_exons):
            offset = int(self._offsets[i])
            exon_len = g_end - g_start
            a = max(start, offset)
            b = min(end, offset + exon_len)
            if a >= b:
                continue
            if self.strand == "+":
                blocks.append((g_start + a - offset, g_start + b - offset))
            else:
                blocks.append((g_end - (b - offset), g_end - (a - offset)))

        blocks.sort()
        return blocks
