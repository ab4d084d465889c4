"""Bias-aware isoform abundance estimation.

For one gene, the fragment types of all isoforms are merged into a union
space keyed by read-window signatures. A fragment type is compatible with an
isoform when the isoform can produce a fragment with the same two read
windows. Given a fitted bias model, every compatible (fragment, isoform) pair
gets a predicted rate ``lambda``; isoform abundances ``theta`` then solve the
Poisson problem

    count_f ~ Poisson(sum_t theta_t * lambda_{t,f})

Single-isoform genes have the closed form ``theta = sum(count) / sum(lambda)``.
Multi-isoform genes are solved by EM, which keeps theta non-negative and
converges to the maximum-likelihood estimate.

Isoforms with identical compatible-fragment sets cannot be told apart. They
are solved as one group and the group abundance is split equally between
members; such groups are listed in ``AbundanceResult.ambiguous``.

Example:
    >>> space = GeneFragmentSpace.build("g1", [table_a, table_b])
    >>> counts = space.counts_from(observed)
    >>> estimator = AbundanceEstimator(config.estimate)
    >>> result = estimator.estimate(space, params, "all", counts)
    >>> dict(zip(result.isoform_ids, result.theta))
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Mapping, Sequence

import attrs
import numpy as np

from fragbias.errors import DegenerateGeometryError

if TYPE_CHECKING:
    from fragbias.config import EstimateConfig
    from fragbias.core.fit import FitParams
    from fragbias.core.fragtypes import FragmentKey, FragmentTypeTable, WindowSignature

logger = logging.getLogger(__name__)

# Units of theta: per million fragments
LIBRARY_SCALE = 1e6


def _frozen_array(value) -> np.ndarray:
    array = np.array(value, dtype=np.float64)
    array.setflags(write=False)
    return array


# =============================================================================
# Union Fragment Space
# =============================================================================


@attrs.define(frozen=True, eq=False)
class GeneFragmentSpace:
    """Union of the fragment types of every isoform of one gene.

    Attributes:
        gene_id: Gene identifier.
        tables: Fragment-type table per isoform.
        codes: Sorted fragment codes of the union rows.
        rows: (n_union, n_isoforms) row index into each isoform's table,
            -1 where the isoform is incompatible.
        registry: Window signature -> integer code.
    """

    gene_id: str
    tables: tuple[FragmentTypeTable, ...]
    codes: np.ndarray
    rows: np.ndarray
    registry: dict[WindowSignature, int]

    @classmethod
    def build(cls, gene_id: str, tables: Sequence[FragmentTypeTable]) -> "GeneFragmentSpace":
        """Merge isoform tables into one compatibility-annotated space.

        Raises:
            DegenerateGeometryError: If no isoform admits any fragment.
        """
        tables = tuple(tables)
        if not tables:
            raise DegenerateGeometryError(f"Gene {gene_id} has no isoforms")

        registry: dict[WindowSignature, int] = {}
        window_codes = [t.window_codes(registry) for t in tables]
        n_signatures = max(len(registry), 1)

        per_isoform = []
        for table, (codes5, codes3) in zip(tables, window_codes):
            if table.is_empty:
                per_isoform.append(np.zeros(0, dtype=np.int64))
                continue
            five = codes5[table.start]
            three = codes3[table.end - table.read_length]
            per_isoform.append(five * n_signatures + three)

        codes = np.unique(np.concatenate(per_isoform))
        if codes.size == 0:
            raise DegenerateGeometryError(
                f"Gene {gene_id}: no isoform is long enough for any fragment type"
            )

        rows = np.full((codes.size, len(tables)), -1, dtype=np.int64)
        for t, isoform_codes in enumerate(per_isoform):
            if isoform_codes.size:
                rows[np.searchsorted(codes, isoform_codes), t] = np.arange(isoform_codes.size)
        rows.setflags(write=False)
        codes.setflags(write=False)
        return cls(gene_id=gene_id, tables=tables, codes=codes, rows=rows, registry=registry)

    def __len__(self) -> int:
        return int(self.codes.shape[0])

    @property
    def isoform_ids(self) -> tuple[str, ...]:
        return tuple(t.transcript_id for t in self.tables)

    @property
    def n_isoforms(self) -> int:
        return len(self.tables)

    @property
    def compatibility(self) -> np.ndarray:
        """(n_union, n_isoforms) boolean compatibility matrix."""
        return self.rows >= 0

    def counts_from(self, observed: Mapping[FragmentKey, float]) -> np.ndarray:
        """Observed count per union row; unmatched fragments are ignored."""
        counts = np.zeros(len(self), dtype=np.float64)
        n_signatures = max(len(self.registry), 1)
        ignored = 0.0
        for key, value in observed.items():
            five = self.registry.get(key.five)
            three = self.registry.get(key.three)
            if five is None or three is None:
                ignored += value
                continue
            code = five * n_signatures + three
            index = int(np.searchsorted(self.codes, code))
            if index < len(self) and self.codes[index] == code:
                counts[index] += value
            else:
                ignored += value
        if ignored:
            logger.debug(f"{self.gene_id}: {ignored:.0f} fragments match no isoform")
        return counts

    def scored(self, params: FitParams) -> "GeneFragmentSpace":
        """Space whose tables carry the read-start scores of one sample.

        Models with a vlmm offset reuse these scores instead of rescoring
        each table.
        """
        if params.vlmm is None:
            return self
        return attrs.evolve(self, tables=tuple(params.score_table(t) for t in self.tables))

    def rate_matrix(self, params: FitParams, model: str) -> np.ndarray:
        """(n_union, n_isoforms) predicted rates, 0 where incompatible."""
        rates = np.zeros(self.rows.shape, dtype=np.float64)
        for t, table in enumerate(self.tables):
            if table.is_empty:
                continue
            compatible = self.rows[:, t] >= 0
            rates[compatible, t] = params.rate(table, model)[self.rows[compatible, t]]
        return rates


# =============================================================================
# Results
# =============================================================================


@attrs.define(frozen=True)
class AbundanceResult:
    """Abundance estimates of one gene, sample and model.

    Attributes:
        gene_id: Gene identifier.
        sample_id: Sample identifier.
        model: Name of the bias model used for lambda.
        isoform_ids: Isoform identifiers, aligned with theta and lambda_.
        theta: Abundance per isoform, per million fragments of library.
        lambda_: Mean predicted rate per isoform over its fragment types.
        library_size: Library size used to scale theta.
        ambiguous: Groups of isoforms with identical compatible fragments.
        n_fragments: Observed fragments assigned to the gene.
        iterations: EM iterations (0 for the closed form).
        converged: Whether EM met its tolerance.
    """

    gene_id: str
    sample_id: str
    model: str
    isoform_ids: tuple[str, ...]
    theta: np.ndarray = attrs.field(converter=_frozen_array)
    lambda_: np.ndarray = attrs.field(converter=_frozen_array)
    library_size: float = LIBRARY_SCALE
    ambiguous: tuple[tuple[str, ...], ...] = ()
    n_fragments: float = 0.0
    iterations: int = 0
    converged: bool = True

    def as_records(self) -> list[dict[str, Any]]:
        """One flat record per isoform."""
        return [
            {
                "gene_id": self.gene_id,
                "transcript_id": tid,
                "sample": self.sample_id,
                "model": self.model,
                "theta": float(theta),
                "lambda": float(lam),
            }
            for tid, theta, lam in zip(self.isoform_ids, self.theta, self.lambda_)
        ]


# =============================================================================
# Solvers
# =============================================================================


def closed_form_theta(counts: np.ndarray, rates: np.ndarray) -> float:
    """Single-isoform maximum-likelihood abundance."""
    total_rate = float(rates.sum())
    if total_rate <= 0:
        return 0.0
    return float(counts.sum()) / total_rate


def poisson_em(
    counts: np.ndarray,
    rates: np.ndarray,
    max_iter: int = 5000,
    tol: float = 1e-10,
) -> tuple[np.ndarray, int, bool]:
    """Non-negative Poisson MLE of ``counts ~ rates @ theta`` by EM.

    Args:
        counts: Observed count per fragment (n,).
        rates: Rate matrix (n, k), zero where incompatible.
        max_iter: Iteration cap.
        tol: Largest relative change in theta declaring convergence.

    Returns:
        (theta, iterations, converged).
    """
    exposure = rates.sum(axis=0)
    active = exposure > 0
    theta = np.zeros(rates.shape[1])
    if not np.any(active) or counts.sum() <= 0:
        return theta, 0, True

    theta[active] = counts.sum() / exposure[active].sum()
    for iteration in range(1, max_iter + 1):
        mu = rates @ theta
        ratio = np.divide(counts, mu, out=np.zeros_like(mu), where=mu > 0)
        new = np.zeros_like(theta)
        new[active] = theta[active] * (ratio @ rates[:, active]) / exposure[active]
        change = np.max(np.abs(new - theta))
        theta = new
        if change <= tol * max(float(theta.max()), np.finfo(float).tiny):
            return theta, iteration, True
    return theta, max_iter, False


def identical_groups(compatibility: np.ndarray) -> list[list[int]]:
    """Group isoform columns with identical compatibility; empty columns excluded."""
    groups: dict[bytes, list[int]] = {}
    for t in range(compatibility.shape[1]):
        column = compatibility[:, t]
        if not column.any():
            continue
        groups.setdefault(np.packbits(column).tobytes(), []).append(t)
    return list(groups.values())


# =============================================================================
# Estimator
# =============================================================================


class AbundanceEstimator:
    """Estimate isoform abundances of one gene under fitted bias models.

    Attributes:
        config: EM and library-size settings.
    """

    def __init__(self, config: EstimateConfig) -> None:
        config.validate()
        self.config = config

    def estimate(
        self,
        space: GeneFragmentSpace,
        params: FitParams,
        model: str,
        counts: np.ndarray,
        library_size: float | None = None,
    ) -> AbundanceResult:
        """Solve isoform abundances for one sample and one model.

        Args:
            space: Union fragment space of the gene.
            params: Fitted parameters of the sample.
            model: Model name in ``params``.
            counts: Observed count per union row.
            library_size: Library size of the sample; configured default if None.

        Returns:
            AbundanceResult; theta is all zero without evidence.

        Raises:
            KeyError: If the model was not fitted for this sample.
        """
        library_size = self.config.library_size if library_size is None else library_size
        counts = np.asarray(counts, dtype=np.float64)
        if counts.shape != (len(space),):
            raise ValueError(
                f"{space.gene_id}: expected {len(space)} counts, got {counts.shape}"
            )

        rates = space.rate_matrix(params, model)
        compatibility = space.compatibility
        n_compatible = compatibility.sum(axis=0)
        with np.errstate(invalid="ignore"):
            lambda_ = np.where(n_compatible > 0, rates.sum(axis=0) / n_compatible, np.nan)

        groups = identical_groups(compatibility)
        ambiguous = tuple(
            tuple(space.isoform_ids[t] for t in group) for group in groups if len(group) > 1
        )
        if ambiguous:
            logger.debug(f"{space.gene_id}: indistinguishable isoforms {ambiguous}")

        theta = np.zeros(space.n_isoforms)
        iterations = 0
        converged = True
        total = float(counts.sum())

        if total > 0 and groups:
            group_rates = np.column_stack([rates[:, g].mean(axis=1) for g in groups])
            if len(groups) == 1:
                group_theta = np.array([closed_form_theta(counts, group_rates[:, 0])])
            else:
                group_theta, iterations, converged = poisson_em(
                    counts, group_rates, self.config.em_max_iter, self.config.em_tol
                )
                if not converged:
                    logger.warning(
                        f"{space.gene_id}/{params.sample_id}/{model}: EM stopped after "
                        f"{iterations} iterations without converging"
                    )
            for group, value in zip(groups, group_theta):
                theta[group] = value / len(group)

        theta /= library_size / LIBRARY_SCALE

        return AbundanceResult(
            gene_id=space.gene_id,
            sample_id=params.sample_id,
            model=model,
            isoform_ids=space.isoform_ids,
            theta=theta,
            lambda_=lambda_,
            library_size=library_size,
            ambiguous=ambiguous,
            n_fragments=total,
            iterations=iterations,
            converged=converged,
        )

    def estimate_gene(
        self,
        gene_id: str,
        tables: Sequence[FragmentTypeTable],
        params: FitParams,
        models: Sequence[str],
        observed: Mapping[FragmentKey, float],
        library_size: float | None = None,
    ) -> list[AbundanceResult]:
        """Estimate every requested model for one gene and one sample.

        A gene whose isoforms admit no fragment type yields zero abundances.
        """
        try:
            space = GeneFragmentSpace.build(gene_id, tables)
        except DegenerateGeometryError as e:
            logger.debug(str(e))
            library_size = self.config.library_size if library_size is None else library_size
            n = len(tables)
            return [
                AbundanceResult(
                    gene_id=gene_id,
                    sample_id=params.sample_id,
                    model=model,
                    isoform_ids=tuple(t.transcript_id for t in tables),
                    theta=np.zeros(n),
                    lambda_=np.full(n, np.nan),
                    library_size=library_size,
                )
                for model in models
            ]

        space = space.scored(params)
        counts = space.counts_from(observed)
        return [
            self.estimate(space, params, model, counts, library_size) for model in models
        ]
