"""Fragment-type enumeration for single transcripts.

A fragment type is one physically possible paired-end fragment of a
transcript, identified by its spliced start offset and its length. For each
transcript this module enumerates every fragment type within the configured
size range and computes the covariates used by the bias models:

- gc: GC fraction of the spliced fragment sequence
- relpos: relative midpoint position in the transcript
- gc_stretch: indicators for GC-rich windows inside the fragment

GC fractions and stretch indicators are computed from prefix sums over the
spliced sequence, so each fragment costs O(1) after an O(L) pass.

Each table also records, per possible read window, the genomic signature
of that window (outer fragment end and introns crossed). Signatures make
fragment types of different isoforms comparable and let alignment evidence
be matched to rows.

Example:
    >>> from fragbias.core.fragtypes import enumerate_fragment_types
    >>> table = enumerate_fragment_types(exon_set, sequence, read_length=75,
    ...                                  min_size=125, max_size=175)
    >>> len(table), float(table.gc.max()) <= 1.0
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Mapping, NamedTuple, Sequence

import attrs
import numpy as np

from fragbias.utils.intervals import ExonSet, IntervalMapper, block_introns
from fragbias.utils.sequences import encode_sequence, gc_prefix_sum, spliced_sequence

if TYPE_CHECKING:
    from fragbias.config import EnumerationConfig
    from fragbias.utils.sequences import SequenceSource

logger = logging.getLogger(__name__)

_STRETCH_NAME = re.compile(r"GC(\d+)\.(\d+)")

# =============================================================================
# Signatures
# =============================================================================


class WindowSignature(NamedTuple):
    """Genomic signature of one read window.

    Attributes:
        outer: Genomic coordinate of the fragment end bounded by this read
            (start for a left-most read, exclusive end for a right-most read).
        introns: Introns crossed by the read, as (start, end) pairs.
    """

    outer: int
    introns: tuple[tuple[int, int], ...]


class FragmentKey(NamedTuple):
    """Identity of an observed fragment in transcript orientation."""

    five: WindowSignature
    three: WindowSignature


def _readonly(array: np.ndarray) -> np.ndarray:
    array = np.ascontiguousarray(array)
    array.setflags(write=False)
    return array


def stretch_name(window: int, threshold: float) -> str:
    """Column name of a GC-stretch indicator, e.g. ``GC40.80``."""
    return f"GC{window}.{int(round(threshold * 100))}"


def parse_stretch_name(name: str) -> tuple[int, float]:
    """(window, threshold) of a GC-stretch column name.

    Raises:
        ValueError: If the name was not produced by stretch_name.
    """
    match = _STRETCH_NAME.fullmatch(name)
    if match is None:
        raise ValueError(f"Not a GC-stretch column name: {name!r}")
    return int(match.group(1)), int(match.group(2)) / 100


# =============================================================================
# Fragment-Type Table
# =============================================================================


@attrs.define(frozen=True, eq=False)
class FragmentTypeTable:
    """All fragment types of one transcript.

    Rows are ordered by length, then start. Array columns are read-only;
    tables are built once per transcript and shared across samples and
    models.

    Attributes:
        exon_set: Transcript structure.
        read_length: Read length used to build window signatures.
        min_size: Smallest enumerated fragment length.
        max_size: Largest enumerated fragment length.
        sequence: Encoded spliced sequence (A=0, C=1, G=2, T=3, N=4).
        start: Spliced start offset per row.
        length: Fragment length per row.
        gc: GC fraction per row.
        relpos: Relative midpoint position per row.
        gc_stretch: (rows, k) 0/1 matrix of GC-stretch indicators.
        stretch_names: Column names of gc_stretch.
        vlmm5: 5' read-start context score (NaN until scored).
        vlmm3: 3' read-start context score (NaN until scored).
        five_signatures: Window signature for each possible start offset.
        three_signatures: Window signature for each possible end offset,
            indexed by ``end - read_length``.
        vlmm_source: Fingerprint of the context model that produced
            vlmm5 and vlmm3, empty if unscored.
    """

    exon_set: ExonSet
    read_length: int
    min_size: int
    max_size: int
    sequence: np.ndarray = attrs.field(converter=_readonly)
    start: np.ndarray = attrs.field(converter=_readonly)
    length: np.ndarray = attrs.field(converter=_readonly)
    gc: np.ndarray = attrs.field(converter=_readonly)
    relpos: np.ndarray = attrs.field(converter=_readonly)
    gc_stretch: np.ndarray = attrs.field(converter=_readonly)
    stretch_names: tuple[str, ...]
    vlmm5: np.ndarray = attrs.field(converter=_readonly)
    vlmm3: np.ndarray = attrs.field(converter=_readonly)
    five_signatures: tuple[WindowSignature, ...] = ()
    three_signatures: tuple[WindowSignature, ...] = ()
    vlmm_source: str = ""

    def __len__(self) -> int:
        return int(self.start.shape[0])

    def __getstate__(self) -> dict:
        return {f.name: getattr(self, f.name) for f in attrs.fields(type(self))}

    def __setstate__(self, state: dict) -> None:
        # Unpickled arrays come back writeable
        for name, value in state.items():
            if isinstance(value, np.ndarray):
                value = _readonly(value)
            object.__setattr__(self, name, value)

    @property
    def transcript_id(self) -> str:
        return self.exon_set.transcript_id

    @property
    def gene_id(self) -> str:
        return self.exon_set.gene_id

    @property
    def spliced_length(self) -> int:
        return int(self.sequence.shape[0])

    @property
    def end(self) -> np.ndarray:
        """Spliced end offset (exclusive) per row."""
        return self.start + self.length

    @property
    def is_empty(self) -> bool:
        return len(self) == 0

    @property
    def has_vlmm(self) -> bool:
        return len(self) > 0 and not np.isnan(self.vlmm5).any()

    def genomic_bounds(self) -> tuple[np.ndarray, np.ndarray]:
        """Genomic (start, end) envelope of every row."""
        mapper = IntervalMapper(self.exon_set)
        first = mapper.to_genomic_array(self.start)
        last = mapper.to_genomic_array(self.end - 1)
        if self.exon_set.strand == "+":
            return first, last + 1
        return last, first + 1

    def with_vlmm(
        self, vlmm5: np.ndarray, vlmm3: np.ndarray, source: str = ""
    ) -> "FragmentTypeTable":
        """Copy of this table with context scores filled in.

        Args:
            vlmm5: 5' score per row.
            vlmm3: 3' score per row.
            source: Fingerprint of the model that produced the scores.
        """
        if vlmm5.shape != self.start.shape or vlmm3.shape != self.start.shape:
            raise ValueError("VLMM score arrays must have one value per row")
        return attrs.evolve(self, vlmm5=vlmm5, vlmm3=vlmm3, vlmm_source=source)

    def row_index(self, start: np.ndarray, length: np.ndarray) -> np.ndarray:
        """Row index of (start, length) pairs; -1 where no such row exists."""
        start = np.asarray(start, dtype=np.int64)
        length = np.asarray(length, dtype=np.int64)
        L = self.spliced_length
        result = np.full(start.shape, -1, dtype=np.int64)
        if self.is_empty:
            return result

        lengths = np.arange(self.min_size, self.max_size + 1, dtype=np.int64)
        per_length = np.clip(L - lengths + 1, 0, None)
        offsets = np.concatenate(([0], np.cumsum(per_length)[:-1]))

        valid = (
            (length >= self.min_size)
            & (length <= self.max_size)
            & (start >= 0)
            & (start + length <= L)
        )
        li = length[valid] - self.min_size
        result[valid] = offsets[li] + start[valid]
        return result

    def window_codes(
        self, registry: dict[WindowSignature, int]
    ) -> tuple[np.ndarray, np.ndarray]:
        """Integer codes of the 5' and 3' window signatures.

        Signatures missing from ``registry`` are added to it, so isoforms of
        one gene sharing a registry get identical codes for identical
        windows.
        """
        codes5 = np.array(
            [registry.setdefault(sig, len(registry)) for sig in self.five_signatures],
            dtype=np.int64,
        )
        codes3 = np.array(
            [registry.setdefault(sig, len(registry)) for sig in self.three_signatures],
            dtype=np.int64,
        )
        return codes5, codes3

    def counts_from(self, observed: Mapping[FragmentKey, float]) -> np.ndarray:
        """Per-row observed counts from fragment-key evidence.

        Keys that do not correspond to a row of this table are ignored.
        """
        counts = np.zeros(len(self), dtype=np.float64)
        if self.is_empty or not observed:
            return counts

        five_index = {sig: s for s, sig in enumerate(self.five_signatures)}
        three_index = {sig: e for e, sig in enumerate(self.three_signatures)}

        starts, lengths, values = [], [], []
        for key, value in observed.items():
            s = five_index.get(key.five)
            e = three_index.get(key.three)
            if s is None or e is None:
                continue
            starts.append(s)
            lengths.append(e + self.read_length - s)
            values.append(value)

        if not starts:
            return counts
        rows = self.row_index(np.array(starts), np.array(lengths))
        keep = rows >= 0
        np.add.at(counts, rows[keep], np.asarray(values, dtype=np.float64)[keep])
        return counts


# =============================================================================
# Enumeration
# =============================================================================


def _window_signatures(
    mapper: IntervalMapper, read_length: int
) -> tuple[tuple[WindowSignature, ...], tuple[WindowSignature, ...]]:
    L = mapper.length
    plus = mapper.strand == "+"
    five = []
    for s in range(L - read_length + 1):
        blocks = mapper.spliced_to_blocks(s, s + read_length)
        outer = blocks[0][0] if plus else blocks[-1][1]
        five.append(WindowSignature(outer, block_introns(blocks)))
    three = []
    for e in range(read_length, L + 1):
        blocks = mapper.spliced_to_blocks(e - read_length, e)
        outer = blocks[-1][1] if plus else blocks[0][0]
        three.append(WindowSignature(outer, block_introns(blocks)))
    return tuple(five), tuple(three)


def _stretch_matrix(
    prefix: np.ndarray,
    starts: np.ndarray,
    lengths: np.ndarray,
    stretches: Sequence[tuple[int, float]],
) -> np.ndarray:
    L = prefix.shape[0] - 1
    matrix = np.zeros((starts.shape[0], len(stretches)), dtype=np.uint8)
    for k, (window, threshold) in enumerate(stretches):
        if window > L:
            continue
        window_gc = prefix[window:] - prefix[: L - window + 1]
        hits = (window_gc >= threshold * window - 1e-9).astype(np.int64)
        hit_prefix = np.concatenate(([0], np.cumsum(hits)))
        # Windows starting in [s, s + l - window] lie inside the fragment
        last = np.maximum(starts + lengths - window + 1, starts)
        matrix[:, k] = (hit_prefix[last] - hit_prefix[starts]) > 0
    return matrix


def enumerate_fragment_types(
    exon_set: ExonSet,
    sequence: str,
    read_length: int,
    min_size: int,
    max_size: int,
    gc_stretches: Sequence[tuple[int, float]] = (),
) -> FragmentTypeTable:
    """Enumerate every fragment type of a transcript.

    Args:
        exon_set: Transcript structure.
        sequence: Spliced transcript sequence in 5' to 3' orientation.
        read_length: Read length; both read windows must fit in the fragment.
        min_size: Smallest fragment length.
        max_size: Largest fragment length.
        gc_stretches: (window, threshold) pairs for stretch indicators.

    Returns:
        FragmentTypeTable, empty when the transcript is shorter than two
        read lengths or than min_size.

    Raises:
        ValueError: If the sequence length disagrees with the exon structure.
    """
    L = exon_set.spliced_length
    if len(sequence) != L:
        raise ValueError(
            f"{exon_set.transcript_id}: sequence length {len(sequence)} "
            f"!= spliced length {L}"
        )

    codes = encode_sequence(sequence)
    min_size = max(min_size, read_length)
    names = tuple(stretch_name(w, t) for w, t in gc_stretches)
    k = len(gc_stretches)

    lengths_range = np.arange(min_size, min(max_size, L) + 1)
    if L < 2 * read_length or lengths_range.size == 0:
        logger.debug(
            f"{exon_set.transcript_id}: spliced length {L} admits no fragment "
            f"(read_length={read_length}, min_size={min_size})"
        )
        empty_f = np.zeros(0, dtype=np.float64)
        empty_i = np.zeros(0, dtype=np.int64)
        return FragmentTypeTable(
            exon_set=exon_set,
            read_length=read_length,
            min_size=min_size,
            max_size=max_size,
            sequence=codes,
            start=empty_i,
            length=empty_i,
            gc=empty_f,
            relpos=empty_f,
            gc_stretch=np.zeros((0, k), dtype=np.uint8),
            stretch_names=names,
            vlmm5=empty_f,
            vlmm3=empty_f,
        )

    starts = np.concatenate([np.arange(L - l + 1, dtype=np.int64) for l in lengths_range])
    lengths = np.concatenate(
        [np.full(L - l + 1, l, dtype=np.int64) for l in lengths_range]
    )

    prefix = gc_prefix_sum(codes)
    gc = (prefix[starts + lengths] - prefix[starts]) / lengths
    relpos = (starts + lengths / 2.0) / L
    stretch = _stretch_matrix(prefix, starts, lengths, gc_stretches)

    five, three = _window_signatures(IntervalMapper(exon_set), read_length)
    nan = np.full(starts.shape[0], np.nan)

    return FragmentTypeTable(
        exon_set=exon_set,
        read_length=read_length,
        min_size=min_size,
        max_size=max_size,
        sequence=codes,
        start=starts,
        length=lengths,
        gc=gc,
        relpos=relpos,
        gc_stretch=stretch,
        stretch_names=names,
        vlmm5=nan,
        vlmm3=nan.copy(),
        five_signatures=five,
        three_signatures=three,
    )


def enumerate_transcript(
    exon_set: ExonSet,
    genome: SequenceSource,
    config: EnumerationConfig,
) -> FragmentTypeTable:
    """Fetch the spliced sequence once and enumerate its fragment types."""
    sequence = spliced_sequence(exon_set, genome)
    return enumerate_fragment_types(
        exon_set,
        sequence,
        read_length=config.read_length,
        min_size=config.min_size,
        max_size=config.max_size,
        gc_stretches=config.gc_stretches,
    )
