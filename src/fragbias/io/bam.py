"""BAM file handling for paired-end fragment evidence.

Each properly paired fragment is reduced to a FragmentKey: the genomic
signature (outer end + introns crossed) of its 5' and 3' read windows in
transcript orientation. Keys match the window signatures recorded in
fragment-type tables, so counts can be assigned to rows without mapping
alignments into spliced coordinates.

Libraries are treated as unstranded: the orientation of a fragment is the
strand of the gene it is counted for.

Example:
    >>> from fragbias.io.bam import FragmentCounter
    >>> with FragmentCounter("sample.bam") as counter:
    ...     observed = counter.count_region("chr1", 1000, 50000, strand="+")
    ...     library_size = counter.library_size()
"""

from __future__ import annotations

import logging
from collections import Counter
from pathlib import Path
from typing import TYPE_CHECKING, Any, Sequence

import pysam

from fragbias.core.fragtypes import FragmentKey, WindowSignature
from fragbias.utils.intervals import block_introns

if TYPE_CHECKING:
    from fragbias.utils.intervals import ExonSet

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

# CIGAR operations
CIGAR_M = 0  # Match or mismatch
CIGAR_I = 1  # Insertion
CIGAR_D = 2  # Deletion
CIGAR_N = 3  # Skipped region (intron)
CIGAR_S = 4  # Soft clip
CIGAR_H = 5  # Hard clip
CIGAR_EQ = 7  # Sequence match
CIGAR_X = 8  # Sequence mismatch

_REFERENCE_OPS = (CIGAR_M, CIGAR_D, CIGAR_EQ, CIGAR_X)


# =============================================================================
# Read Geometry
# =============================================================================


def read_blocks(read: pysam.AlignedSegment) -> list[tuple[int, int]]:
    """Genomic blocks of a read, split at introns only.

    Deletions extend the current block; insertions and clips consume no
    reference.
    """
    blocks = []
    block_start = read.reference_start
    ref_pos = read.reference_start
    for op, length in read.cigartuples or []:
        if op in _REFERENCE_OPS:
            ref_pos += length
        elif op == CIGAR_N:
            if ref_pos > block_start:
                blocks.append((block_start, ref_pos))
            ref_pos += length
            block_start = ref_pos
    if ref_pos > block_start:
        blocks.append((block_start, ref_pos))
    return blocks


def fragment_key(
    left: list[tuple[int, int]], right: list[tuple[int, int]], strand: str
) -> FragmentKey:
    """FragmentKey of a pair given the blocks of its left- and right-most reads."""
    left_sig = WindowSignature(left[0][0], block_introns(left))
    right_sig = WindowSignature(right[-1][1], block_introns(right))
    if strand == "+":
        return FragmentKey(five=left_sig, three=right_sig)
    return FragmentKey(five=right_sig, three=left_sig)


# =============================================================================
# Fragment Counter
# =============================================================================


class FragmentCounter:
    """Count paired-end fragments by read-window signature.

    Attributes:
        path: Path to the BAM file.
        min_mapq: Minimum mapping quality of both mates.

    Example:
        >>> counter = FragmentCounter("sample.bam", min_mapq=10)
        >>> counts = counter.count_gene(index.isoforms("gene1"))
    """

    def __init__(self, bam_path: Path | str, min_mapq: int = 10) -> None:
        """Open an indexed BAM file.

        Raises:
            FileNotFoundError: If BAM file doesn't exist.
            ValueError: If BAM file is not indexed.
        """
        self.path = Path(bam_path)
        self.min_mapq = min_mapq

        if not self.path.exists():
            raise FileNotFoundError(f"BAM file not found: {self.path}")

        index_paths = [
            self.path.with_suffix(".bam.bai"),
            self.path.with_suffix(".bai"),
            Path(str(self.path) + ".bai"),
        ]
        if not any(p.exists() for p in index_paths):
            raise ValueError(
                f"BAM index not found. Please run: samtools index {self.path}"
            )

        self._bam: pysam.AlignmentFile | None = None
        self._open()

    def _open(self) -> None:
        self._bam = pysam.AlignmentFile(str(self.path), "rb")
        logger.info(f"Opened BAM file: {self.path.name}")

    def __enter__(self) -> FragmentCounter:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        """Close the BAM file."""
        if self._bam is not None:
            self._bam.close()
            self._bam = None

    def library_size(self) -> float:
        """Number of mapped fragments (mapped reads / 2) from the index."""
        if self._bam is None:
            raise RuntimeError("BAM file not open")
        return self._bam.mapped / 2.0

    def _usable(self, read: pysam.AlignedSegment) -> bool:
        return not (
            read.is_unmapped
            or read.mate_is_unmapped
            or not read.is_paired
            or not read.is_proper_pair
            or read.is_secondary
            or read.is_supplementary
            or read.is_duplicate
            or read.mapping_quality < self.min_mapq
        )

    def count_region(
        self, seqid: str, start: int, end: int, strand: str
    ) -> dict[FragmentKey, float]:
        """Count fragments whose two mates both lie in a region.

        Args:
            seqid: Scaffold/chromosome name.
            start: Region start (0-based).
            end: Region end (0-based, exclusive).
            strand: Strand of the gene the fragments are counted for.

        Returns:
            FragmentKey -> count.
        """
        if self._bam is None:
            raise RuntimeError("BAM file not open")

        counts: Counter[FragmentKey] = Counter()
        pending: dict[str, list[tuple[int, int]]] = {}
        skipped = 0

        for read in self._bam.fetch(seqid, start, end):
            if not self._usable(read):
                skipped += 1
                continue
            blocks = read_blocks(read)
            if not blocks or blocks[0][0] < start or blocks[-1][1] > end:
                continue
            mate = pending.pop(read.query_name, None)
            if mate is None:
                pending[read.query_name] = blocks
                continue
            left, right = sorted((mate, blocks), key=lambda b: (b[0][0], b[-1][1]))
            counts[fragment_key(left, right, strand)] += 1

        logger.debug(
            f"{seqid}:{start}-{end}: {sum(counts.values())} fragments, "
            f"{len(pending)} unpaired reads, {skipped} filtered reads"
        )
        return dict(counts)

    def count_gene(self, exon_sets: Sequence[ExonSet]) -> dict[FragmentKey, float]:
        """Count fragments within the genomic span of a gene's isoforms."""
        first = exon_sets[0]
        start = min(e.start for e in exon_sets)
        end = max(e.end for e in exon_sets)
        return self.count_region(first.seqid, start, end, first.strand)
