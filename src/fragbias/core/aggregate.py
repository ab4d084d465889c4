"""Aggregation of abundance results and diagnostic predictions.

- ResultAggregator: isoform x sample matrices of bias-centered abundances
- CoveragePredictor: predicted vs observed per-base coverage of one gene
- gc_bias_table: GC-percentile -> relative emission probability

Example:
    >>> aggregator = ResultAggregator()
    >>> aggregator.add_all(results)
    >>> matrix = aggregator.matrix("all")
    >>> write_matrix_tsv(matrix, "abundance.tsv")
"""

from __future__ import annotations

import logging
from collections import defaultdict
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, NamedTuple

import attrs
import numpy as np

if TYPE_CHECKING:
    from fragbias.core.abundance import AbundanceResult
    from fragbias.core.fit import FitParams, FittedModel
    from fragbias.core.fragtypes import FragmentTypeTable

logger = logging.getLogger(__name__)

# =============================================================================
# Result Aggregation
# =============================================================================


class AbundanceMatrix(NamedTuple):
    """Isoform x sample matrix with row and column labels."""

    model: str
    row_ids: list[str]
    column_ids: list[str]
    values: np.ndarray
    gene_ids: list[str]


class ResultAggregator:
    """Collect per-gene results and build bias-centered matrices.

    Each entry is ``theta * lambda / center`` where ``center`` is the mean
    lambda over every isoform of every processed gene for that sample and
    model. Centering makes fold changes comparable between genes whose bias
    profiles differ.
    """

    def __init__(self) -> None:
        self._results: dict[str, list[AbundanceResult]] = defaultdict(list)

    def add(self, result: AbundanceResult) -> None:
        self._results[result.model].append(result)

    def add_all(self, results: Iterable[AbundanceResult]) -> None:
        for result in results:
            self.add(result)

    @property
    def models(self) -> list[str]:
        return sorted(self._results)

    def centering_factors(self, model: str) -> dict[str, float]:
        """Mean lambda per sample across all processed isoforms."""
        pooled: dict[str, list[np.ndarray]] = defaultdict(list)
        for result in self._results.get(model, []):
            pooled[result.sample_id].append(result.lambda_)
        factors = {}
        for sample, arrays in pooled.items():
            values = np.concatenate(arrays)
            values = values[np.isfinite(values)]
            factors[sample] = float(values.mean()) if values.size else float("nan")
        return factors

    def matrix(self, model: str) -> AbundanceMatrix:
        """Matrix of centered abundances for one model.

        Rows are isoforms in order of first appearance, columns are samples
        sorted by id. Missing (isoform, sample) pairs are NaN; isoforms
        without any fragment type contribute 0.
        """
        results = self._results.get(model, [])
        if not results:
            raise KeyError(f"No results for model '{model}'")

        row_ids: list[str] = []
        gene_ids: list[str] = []
        row_index: dict[str, int] = {}
        for result in results:
            for tid in result.isoform_ids:
                if tid not in row_index:
                    row_index[tid] = len(row_ids)
                    row_ids.append(tid)
                    gene_ids.append(result.gene_id)
        column_ids = sorted({r.sample_id for r in results})
        column_index = {s: j for j, s in enumerate(column_ids)}

        factors = self.centering_factors(model)
        values = np.full((len(row_ids), len(column_ids)), np.nan)
        for result in results:
            center = factors[result.sample_id]
            scaled = np.where(
                np.isfinite(result.lambda_), result.theta * result.lambda_ / center, 0.0
            )
            rows = [row_index[tid] for tid in result.isoform_ids]
            values[rows, column_index[result.sample_id]] = scaled

        return AbundanceMatrix(model, row_ids, column_ids, values, gene_ids)


def write_matrix_tsv(matrix: AbundanceMatrix, path: Path | str) -> None:
    """Write a matrix as TSV with transcript and gene id columns."""
    with open(path, "w") as f:
        f.write("\t".join(["transcript_id", "gene_id"] + matrix.column_ids) + "\n")
        for tid, gid, row in zip(matrix.row_ids, matrix.gene_ids, matrix.values):
            fields = [tid, gid] + [
                "NA" if np.isnan(value) else f"{value:.6g}" for value in row
            ]
            f.write("\t".join(fields) + "\n")


# =============================================================================
# Coverage Prediction
# =============================================================================


@attrs.define(frozen=True)
class CoverageCurve:
    """Predicted and observed per-base coverage in spliced coordinates.

    Attributes:
        transcript_id: Transcript identifier.
        model: Bias model used for prediction.
        theta: Abundance scale fitted to the observed total.
        predicted: Expected fragment coverage per base.
        observed: Observed fragment coverage per base.
    """

    transcript_id: str
    model: str
    theta: float
    predicted: np.ndarray
    observed: np.ndarray


def _coverage(table: FragmentTypeTable, weights: np.ndarray) -> np.ndarray:
    L = table.spliced_length
    delta = np.bincount(table.start, weights=weights, minlength=L + 1)
    delta -= np.bincount(table.end, weights=weights, minlength=L + 1)
    return np.cumsum(delta)[:L]


class CoveragePredictor:
    """Expected fragment coverage of single-isoform genes under a fitted model."""

    def __init__(self, params: FitParams) -> None:
        self.params = params

    def predict(
        self, table: FragmentTypeTable, model: str, counts: np.ndarray
    ) -> CoverageCurve:
        """Predicted and observed coverage of one transcript.

        The predicted curve is scaled so that its fragments sum to the
        observed fragment total.
        """
        counts = np.asarray(counts, dtype=np.float64)
        if table.is_empty:
            empty = np.zeros(table.spliced_length)
            return CoverageCurve(table.transcript_id, model, 0.0, empty, empty.copy())

        rates = self.params.rate(table, model)
        total_rate = rates.sum()
        theta = float(counts.sum() / total_rate) if total_rate > 0 else 0.0
        return CoverageCurve(
            transcript_id=table.transcript_id,
            model=model,
            theta=theta,
            predicted=_coverage(table, theta * rates),
            observed=_coverage(table, counts),
        )


# =============================================================================
# GC Bias Table
# =============================================================================


def gc_bias_table(model: FittedModel, n_points: int = 101) -> tuple[np.ndarray, np.ndarray]:
    """Relative fragment emission probability by GC percentile.

    Args:
        model: Fitted model with a ``gc`` spline term.
        n_points: Grid points over 0..100 percent GC.

    Returns:
        (gc_percent, probability) with max(probability) == 1.

    Raises:
        ConfigurationError: If the model has no GC spline term.
    """
    percent = np.linspace(0.0, 100.0, n_points)
    contribution = model.term_contribution("gc", percent / 100.0)
    probability = np.exp(contribution - contribution.max())
    return percent, probability


def write_gc_table(percent: np.ndarray, probability: np.ndarray, path: Path | str) -> None:
    with open(path, "w") as f:
        f.write("gc_percent\tprobability\n")
        for p, value in zip(percent, probability):
            f.write(f"{p:g}\t{value:.6g}\n")
