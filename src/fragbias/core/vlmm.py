"""Variable-length Markov model of read-start sequence context.

Random hexamer priming and fragmentation leave a nucleotide preference
around both ends of sequenced fragments. This module models the bases in a
window of ``npre`` bases upstream and ``npost`` bases downstream of each
fragment end with a Markov chain whose order grows along the window (order
0 at the first position, then 1, then ``max_order``), and scores fragment
types by the log-likelihood ratio of their context against an order-0
background.

The 5' window is read in transcript orientation. The 3' window is read in
the orientation of the second read, i.e. reverse complemented.

Contexts seen fewer than ``min_context_count`` times in the training
evidence fall back to the background distribution; Laplace pseudocounts
keep every probability strictly positive.

Example:
    >>> from fragbias.core.vlmm import ContextScorer
    >>> scorer = ContextScorer(config.vlmm)
    >>> params = scorer.fit(tables, counts)
    >>> v5, v3 = params.score(table)
"""

from __future__ import annotations

import hashlib
import logging
from typing import TYPE_CHECKING, Sequence

import attrs
import numpy as np

from fragbias.errors import InsufficientDataError
from fragbias.utils.sequences import CODE_N, complement_codes

if TYPE_CHECKING:
    from fragbias.config import VLMMConfig
    from fragbias.core.fragtypes import FragmentTypeTable

logger = logging.getLogger(__name__)


def _frozen_array(value) -> np.ndarray:
    array = np.array(value, dtype=np.float64)
    array.setflags(write=False)
    return array


def _frozen_tables(value) -> tuple[np.ndarray, ...]:
    return tuple(_frozen_array(t) for t in value)


# =============================================================================
# Models
# =============================================================================


@attrs.define(frozen=True)
class BackgroundModel:
    """Order-0 nucleotide frequencies (A, C, G, T).

    Attributes:
        frequencies: Probabilities summing to one.
    """

    frequencies: np.ndarray = attrs.field(converter=_frozen_array)

    @property
    def log_frequencies(self) -> np.ndarray:
        return np.log(self.frequencies)

    @classmethod
    def uniform(cls) -> "BackgroundModel":
        return cls(np.full(4, 0.25))


@attrs.define(frozen=True)
class VLMMParams:
    """Fitted 5' and 3' context chains.

    Attributes:
        npre: Bases upstream of each fragment end.
        npost: Bases downstream of each fragment end.
        orders: Markov order at each window position.
        five: Emission tables, one (4**order, 4) array per position.
        three: Same for the 3' end.
        background: Order-0 null model.
        n_fallback: Contexts that fell back to the background.
        n_observed: Total evidence weight used in training.
    """

    npre: int
    npost: int
    orders: tuple[int, ...]
    five: tuple[np.ndarray, ...] = attrs.field(converter=_frozen_tables)
    three: tuple[np.ndarray, ...] = attrs.field(converter=_frozen_tables)
    background: BackgroundModel
    n_fallback: int = 0
    n_observed: float = 0.0

    @property
    def width(self) -> int:
        return self.npre + self.npost

    @property
    def fingerprint(self) -> str:
        """Digest of the model parameters, used to tag scored tables."""
        header = (int(self.npre), int(self.npost), *(int(o) for o in self.orders))
        digest = hashlib.sha1(repr(header).encode())
        for table in (*self.five, *self.three, self.background.frequencies):
            digest.update(np.ascontiguousarray(table).tobytes())
        return digest.hexdigest()

    def score(self, table: FragmentTypeTable) -> tuple[np.ndarray, np.ndarray]:
        """Per-row 5' and 3' log-likelihood-ratio scores of a table."""
        if table.is_empty:
            return np.zeros(0), np.zeros(0)
        L = table.spliced_length
        R = table.read_length
        starts = np.arange(L - R + 1)
        ends = np.arange(R, L + 1)
        five_pos = self._score_contexts(
            five_prime_contexts(table.sequence, starts, self.npre, self.npost), self.five
        )
        three_pos = self._score_contexts(
            three_prime_contexts(table.sequence, ends, self.npre, self.npost), self.three
        )
        return five_pos[table.start], three_pos[table.end - R]

    def score_table(self, table: FragmentTypeTable) -> FragmentTypeTable:
        """Copy of ``table`` with vlmm5 and vlmm3 filled in."""
        v5, v3 = self.score(table)
        return table.with_vlmm(v5, v3, source=self.fingerprint)

    def _score_contexts(
        self, contexts: np.ndarray, chain: tuple[np.ndarray, ...]
    ) -> np.ndarray:
        log_bg = self.background.log_frequencies
        total = np.zeros(contexts.shape[0])
        for i, order in enumerate(self.orders):
            index, valid = _context_index(contexts, i, order)
            base = contexts[valid, i]
            probs = chain[i][index[valid], base]
            total[valid] += np.log(probs) - log_bg[base]
        return total


# =============================================================================
# Context Extraction
# =============================================================================


def order_schedule(width: int, max_order: int) -> tuple[int, ...]:
    """Markov order per window position: 0, 1, ..., max_order, max_order, ..."""
    return tuple(min(i, max_order) for i in range(width))


def _padded(sequence: np.ndarray, pad: int) -> np.ndarray:
    filler = np.full(pad, CODE_N, dtype=np.uint8)
    return np.concatenate((filler, np.asarray(sequence, dtype=np.uint8), filler))


def five_prime_contexts(
    sequence: np.ndarray, starts: np.ndarray, npre: int, npost: int
) -> np.ndarray:
    """Context windows around fragment starts, transcript orientation.

    Positions outside the transcript are N.
    """
    width = npre + npost
    padded = _padded(sequence, width)
    offsets = np.arange(-npre, npost)
    return padded[np.asarray(starts)[:, None] + offsets[None, :] + width]


def three_prime_contexts(
    sequence: np.ndarray, ends: np.ndarray, npre: int, npost: int
) -> np.ndarray:
    """Context windows around fragment ends, second-read orientation.

    Window position ``npre`` is the first base of the second read, i.e. the
    complement of the last fragment base.
    """
    width = npre + npost
    padded = _padded(sequence, width)
    offsets = np.arange(npre - 1, npre - 1 - width, -1)
    windows = padded[np.asarray(ends)[:, None] + offsets[None, :] + width]
    return complement_codes(windows)


def _context_index(
    contexts: np.ndarray, position: int, order: int
) -> tuple[np.ndarray, np.ndarray]:
    """Integer index of the preceding ``order`` bases and a validity mask."""
    valid = contexts[:, position] != CODE_N
    index = np.zeros(contexts.shape[0], dtype=np.int64)
    for m in range(1, order + 1):
        prev = contexts[:, position - m].astype(np.int64)
        valid &= prev != CODE_N
        index += np.where(prev == CODE_N, 0, prev) * 4 ** (m - 1)
    return index, valid


# =============================================================================
# Training
# =============================================================================


def build_background(
    tables: Sequence[FragmentTypeTable], pseudocount: float = 1.0
) -> BackgroundModel:
    """Order-0 base frequencies over the sequences of a transcript panel."""
    counts = np.full(4, pseudocount, dtype=np.float64)
    for table in tables:
        counts += np.bincount(table.sequence, minlength=5)[:4]
    return BackgroundModel(counts / counts.sum())


def _accumulate(
    contexts: np.ndarray,
    weights: np.ndarray,
    orders: tuple[int, ...],
    totals: list[np.ndarray],
) -> None:
    for i, order in enumerate(orders):
        index, valid = _context_index(contexts, i, order)
        flat = index[valid] * 4 + contexts[valid, i]
        totals[i] += np.bincount(flat, weights=weights[valid], minlength=4 ** (order + 1)).reshape(
            4**order, 4
        )


def _emission_tables(
    totals: list[np.ndarray],
    background: BackgroundModel,
    pseudocount: float,
    min_context_count: int,
) -> tuple[list[np.ndarray], int]:
    tables = []
    n_fallback = 0
    for counts in totals:
        context_totals = counts.sum(axis=1, keepdims=True)
        probs = (counts + pseudocount) / (context_totals + 4 * pseudocount)
        sparse = context_totals[:, 0] < min_context_count
        probs[sparse] = background.frequencies
        n_fallback += int(sparse.sum())
        tables.append(probs)
    return tables, n_fallback


class ContextScorer:
    """Train VLMM parameters from observed read-start evidence.

    Attributes:
        config: Window, order and smoothing settings.
    """

    def __init__(self, config: VLMMConfig) -> None:
        self.config = config
        self.orders = order_schedule(config.width, config.max_order)

    def fit(
        self,
        tables: Sequence[FragmentTypeTable],
        counts: Sequence[np.ndarray],
        background: BackgroundModel | None = None,
    ) -> VLMMParams:
        """Estimate 5' and 3' chains from observed fragment counts.

        Args:
            tables: Fragment-type tables of the training panel.
            counts: Observed count per row, aligned with ``tables``.
            background: Null model; built from the panel sequences if None.

        Returns:
            Immutable VLMMParams.

        Raises:
            InsufficientDataError: If no fragment was observed at all.
        """
        cfg = self.config
        if background is None:
            background = build_background(tables, cfg.pseudocount)

        five_totals = [np.zeros((4**o, 4)) for o in self.orders]
        three_totals = [np.zeros((4**o, 4)) for o in self.orders]
        observed = 0.0

        for table, table_counts in zip(tables, counts):
            if table.is_empty or not np.any(table_counts > 0):
                continue
            L = table.spliced_length
            # Collapse rows onto the distinct start and end positions
            start_weight = np.bincount(table.start, weights=table_counts, minlength=L + 1)
            end_weight = np.bincount(table.end, weights=table_counts, minlength=L + 1)
            starts = np.flatnonzero(start_weight)
            ends = np.flatnonzero(end_weight)
            _accumulate(
                five_prime_contexts(table.sequence, starts, cfg.npre, cfg.npost),
                start_weight[starts],
                self.orders,
                five_totals,
            )
            _accumulate(
                three_prime_contexts(table.sequence, ends, cfg.npre, cfg.npost),
                end_weight[ends],
                self.orders,
                three_totals,
            )
            observed += float(table_counts.sum())

        if observed == 0:
            raise InsufficientDataError("No observed fragments to train the read-start model")

        five, fallback5 = _emission_tables(
            five_totals, background, cfg.pseudocount, cfg.min_context_count
        )
        three, fallback3 = _emission_tables(
            three_totals, background, cfg.pseudocount, cfg.min_context_count
        )
        n_fallback = fallback5 + fallback3
        if n_fallback:
            logger.info(
                f"Read-start model: {n_fallback} sparse contexts use the background "
                f"distribution ({observed:.0f} fragments observed)"
            )

        return VLMMParams(
            npre=cfg.npre,
            npost=cfg.npost,
            orders=self.orders,
            five=five,
            three=three,
            background=background,
            n_fallback=n_fallback,
            n_observed=observed,
        )
