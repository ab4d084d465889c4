"""Per-sample fitting of fragment bias models.

A bias model explains the observed count of every fragment type of a panel
of single-isoform training genes with a Poisson regression:

    log E[count] = gene effect + spline(gc) + spline(relpos) + stretch terms
                   + interactions + offsets

Offsets (log fragment-length density, read-start context score) enter with
a fixed coefficient of 1. They are estimated exactly once per sample and
shared by every model that references them. The gene effect is present
whenever a model has predictor terms and is dropped at prediction time.

Fitting is organized per sample: ``BiasModelFitter.fit_sample`` returns a
``SampleFit`` holding the immutable ``FitParams`` for the models that
succeeded and the error of each model that did not.

Example:
    >>> fitter = BiasModelFitter(config)
    >>> sample_fit = fitter.fit_sample("s1", tables, counts)
    >>> params = sample_fit.params
    >>> rates = params.rate(table, "all")
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, NamedTuple, Sequence

import attrs
import numpy as np

from fragbias.config import READ_LENGTH_TOLERANCE, SPLINE_TERMS, ModelSpec, SplineConfig
from fragbias.core.glm import fit_poisson
from fragbias.core.splines import NaturalSplineBasis, interaction_columns
from fragbias.core.vlmm import BackgroundModel, ContextScorer, VLMMParams, build_background
from fragbias.errors import ConfigurationError, InsufficientDataError
from fragbias.utils.logging import Timer

if TYPE_CHECKING:
    from fragbias.config import Config
    from fragbias.core.fragtypes import FragmentTypeTable

logger = logging.getLogger(__name__)

# =============================================================================
# Data Structures
# =============================================================================


class CoefficientSummary(NamedTuple):
    """One row of a fitted model's coefficient table."""

    term: str
    estimate: float
    std_error: float
    z_value: float


def _frozen_array(value) -> np.ndarray:
    array = np.array(value, dtype=np.float64)
    array.setflags(write=False)
    return array


@attrs.define(frozen=True)
class FittedModel:
    """Coefficients and everything needed to reproduce predictions.

    Attributes:
        spec: The model specification.
        column_names: Names of the design columns, gene columns last.
        coefficients: One coefficient per column.
        std_errors: Standard error per column.
        knots: Spline term -> (interior knots, boundary knots).
        stretch_names: GC-stretch indicator columns the model was fit on.
        gene_ids: Training genes, in the order of the gene columns.
        deviance: Residual deviance.
        iterations: IRLS iterations.
        converged: Whether IRLS converged.
        n_rows: Fragment types used in the fit.
    """

    spec: ModelSpec
    column_names: tuple[str, ...] = ()
    coefficients: np.ndarray = attrs.field(factory=lambda: np.zeros(0), converter=_frozen_array)
    std_errors: np.ndarray = attrs.field(factory=lambda: np.zeros(0), converter=_frozen_array)
    knots: dict[str, tuple[tuple[float, ...], tuple[float, ...]]] = attrs.Factory(dict)
    stretch_names: tuple[str, ...] = ()
    gene_ids: tuple[str, ...] = ()
    deviance: float = float("nan")
    iterations: int = 0
    converged: bool = True
    n_rows: int = 0

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def n_bias_columns(self) -> int:
        """Number of columns that are not gene effects."""
        return len(self.column_names) - len(self.gene_ids)

    @property
    def bias_coefficients(self) -> np.ndarray:
        return self.coefficients[: self.n_bias_columns]

    def bases(self) -> dict[str, NaturalSplineBasis]:
        return {
            term: NaturalSplineBasis(interior, boundary)
            for term, (interior, boundary) in self.knots.items()
        }

    def summary(self) -> list[CoefficientSummary]:
        """Coefficient table (term, estimate, standard error, z value)."""
        rows = []
        for name, est, se in zip(self.column_names, self.coefficients, self.std_errors):
            z = float(est / se) if se > 0 else float("nan")
            rows.append(CoefficientSummary(name, float(est), float(se), z))
        return rows

    def linear_predictor(self, table: FragmentTypeTable) -> np.ndarray:
        """Bias part of the linear predictor, gene effect at its reference (0)."""
        if not self.spec.has_predictors:
            return np.zeros(len(table))
        if tuple(table.stretch_names) != self.stretch_names and "gc_stretch" in self.spec.terms:
            raise ConfigurationError(
                f"Model '{self.name}' was fit on stretch columns {self.stretch_names}, "
                f"table has {table.stretch_names}"
            )
        X, _ = build_design(table, self.spec, self.bases())
        return X @ self.bias_coefficients

    def term_contribution(self, term: str, values: np.ndarray) -> np.ndarray:
        """Contribution of one spline term evaluated on a grid of values."""
        if term not in self.knots or term not in self.spec.terms:
            raise ConfigurationError(f"Model '{self.name}' has no spline term '{term}'")
        basis = self.bases()[term]
        prefix = f"{term}"
        idx = [
            i
            for i, n in enumerate(self.column_names[: self.n_bias_columns])
            if n.startswith(prefix) and ":" not in n and n[len(prefix) :].isdigit()
        ]
        return basis.transform(values) @ self.coefficients[idx]


@attrs.define(frozen=True)
class FitParams:
    """Everything fitted for one sample.

    Attributes:
        sample_id: Sample identifier.
        read_length: Read length of the sample.
        min_size: Smallest fragment length modeled.
        max_size: Largest fragment length modeled.
        fraglen_density: Probability of each length in [min_size, max_size].
        vlmm: Read-start context model, or None if no model uses it.
        background: Order-0 nucleotide background.
        models: Model name -> FittedModel.
    """

    sample_id: str
    read_length: int
    min_size: int
    max_size: int
    fraglen_density: np.ndarray = attrs.field(converter=_frozen_array)
    vlmm: VLMMParams | None
    background: BackgroundModel
    models: dict[str, FittedModel] = attrs.Factory(dict)

    def get_model(self, name: str) -> FittedModel:
        try:
            return self.models[name]
        except KeyError:
            raise KeyError(f"Sample {self.sample_id} has no fitted model '{name}'") from None

    def check_table(self, table: FragmentTypeTable) -> None:
        """Raise ConfigurationError if a table was enumerated with other settings.

        The size range must match exactly; the read length may differ by
        READ_LENGTH_TOLERANCE.
        """
        if (table.min_size, table.max_size) != (self.min_size, self.max_size):
            raise ConfigurationError(
                f"Table of {table.transcript_id} spans fragment lengths "
                f"{table.min_size}-{table.max_size}, sample {self.sample_id} was fitted on "
                f"{self.min_size}-{self.max_size}"
            )
        if abs(table.read_length - self.read_length) > READ_LENGTH_TOLERANCE:
            raise ConfigurationError(
                f"Table of {table.transcript_id} uses {table.read_length} bp reads, "
                f"sample {self.sample_id} was fitted with {self.read_length} bp reads"
            )

    def fraglen_offset(self, table: FragmentTypeTable) -> np.ndarray:
        """Log fragment-length density of every row."""
        self.check_table(table)
        return np.log(self.fraglen_density[table.length - self.min_size])

    def vlmm_offset(self, table: FragmentTypeTable) -> np.ndarray:
        """Sum of 5' and 3' context scores of every row.

        Scores stored on the table are reused only if this sample's
        read-start model produced them.
        """
        if self.vlmm is None:
            raise InsufficientDataError(f"Sample {self.sample_id} has no read-start model")
        self.check_table(table)
        if table.has_vlmm and table.vlmm_source == self.vlmm.fingerprint:
            return table.vlmm5 + table.vlmm3
        v5, v3 = self.vlmm.score(table)
        return v5 + v3

    def score_table(self, table: FragmentTypeTable) -> FragmentTypeTable:
        """Table carrying this sample's context scores, or the table itself."""
        if self.vlmm is None or table.is_empty:
            return table
        if table.has_vlmm and table.vlmm_source == self.vlmm.fingerprint:
            return table
        return self.vlmm.score_table(table)

    def offset(self, table: FragmentTypeTable, spec: ModelSpec) -> np.ndarray:
        total = np.zeros(len(table))
        if "fraglen" in spec.offsets:
            total += self.fraglen_offset(table)
        if "vlmm" in spec.offsets:
            total += self.vlmm_offset(table)
        return total

    def log_rate(self, table: FragmentTypeTable, model: str) -> np.ndarray:
        """Predicted log rate of every row under a fitted model.

        Raises:
            KeyError: If the model was not fitted for this sample.
            ConfigurationError: If the table's enumeration settings differ
                from the fit.
        """
        fitted = self.get_model(model)
        self.check_table(table)
        return fitted.linear_predictor(table) + self.offset(table, fitted.spec)

    def rate(self, table: FragmentTypeTable, model: str) -> np.ndarray:
        """Predicted bias-adjusted rate (lambda) of every row."""
        return np.exp(self.log_rate(table, model))


@attrs.define
class SampleFit:
    """Outcome of fitting all models for one sample.

    Attributes:
        params: Fitted parameters of the models that succeeded.
        failures: Model name -> error message for models that failed.
    """

    params: FitParams
    failures: dict[str, str] = attrs.Factory(dict)

    @property
    def succeeded(self) -> list[str]:
        return list(self.params.models)


# =============================================================================
# Design Matrix
# =============================================================================


def spline_bases(splines: SplineConfig) -> dict[str, NaturalSplineBasis]:
    """Spline bases of the configured knots, one per spline term."""
    bases = {}
    for term in SPLINE_TERMS:
        interior, boundary = splines.knots_for(term)
        bases[term] = NaturalSplineBasis(interior, boundary)
    return bases


def _covariate(table: FragmentTypeTable, term: str) -> np.ndarray:
    return table.gc if term == "gc" else table.relpos


def build_design(
    table: FragmentTypeTable,
    spec: ModelSpec,
    bases: dict[str, NaturalSplineBasis],
    rows: np.ndarray | None = None,
) -> tuple[np.ndarray, list[str]]:
    """Bias columns of the design matrix (no gene effect).

    Args:
        table: Fragment types.
        spec: Model whose terms are expanded.
        bases: Spline basis per spline term.
        rows: Optional subset of row indices.

    Returns:
        (matrix, column names).
    """
    n = len(table) if rows is None else len(rows)
    blocks: list[np.ndarray] = []
    names: list[str] = []
    evaluated: dict[str, np.ndarray] = {}

    for term in spec.predictor_terms:
        if term in SPLINE_TERMS:
            x = _covariate(table, term)
            x = x if rows is None else x[rows]
            columns = bases[term].transform(x)
            evaluated[term] = columns
            blocks.append(columns)
            names.extend(f"{term}{j + 1}" for j in range(columns.shape[1]))
        elif term == "gc_stretch":
            columns = table.gc_stretch if rows is None else table.gc_stretch[rows]
            blocks.append(columns.astype(np.float64))
            names.extend(table.stretch_names)

    for a, b in spec.interactions:
        columns = interaction_columns(evaluated[a], evaluated[b])
        blocks.append(columns)
        names.extend(
            f"{a}{i + 1}:{b}{j + 1}"
            for i in range(evaluated[a].shape[1])
            for j in range(evaluated[b].shape[1])
        )

    if not blocks:
        return np.zeros((n, 0)), names
    return np.hstack(blocks), names


# =============================================================================
# Fitter
# =============================================================================


def fragment_length_density(
    tables: Sequence[FragmentTypeTable],
    counts: Sequence[np.ndarray],
    min_size: int,
    max_size: int,
    pseudocount: float = 1.0,
) -> np.ndarray:
    """Histogram density of observed fragment lengths over [min_size, max_size]."""
    n_bins = max_size - min_size + 1
    hist = np.full(n_bins, pseudocount, dtype=np.float64)
    for table, table_counts in zip(tables, counts):
        if table.is_empty:
            continue
        hist += np.bincount(
            table.length - min_size, weights=table_counts, minlength=n_bins
        )[:n_bins]
    if hist.sum() <= 0:
        raise InsufficientDataError("No fragments to estimate the fragment-length density")
    return hist / hist.sum()


def subsample_rows(
    counts: np.ndarray, ratio: int | None, rng: np.random.Generator
) -> np.ndarray:
    """Keep every positive row and at most ``ratio`` zero rows per positive one."""
    positive = np.flatnonzero(counts > 0)
    zero = np.flatnonzero(counts == 0)
    if ratio is None or zero.size <= ratio * positive.size:
        return np.arange(counts.shape[0])
    chosen = rng.choice(zero, size=ratio * positive.size, replace=False)
    return np.sort(np.concatenate((positive, chosen)))


class BiasModelFitter:
    """Fit the configured bias models for one sample at a time.

    Attributes:
        config: Full run configuration (validated on construction).
        bases: Spline basis per spline term.
    """

    def __init__(self, config: Config) -> None:
        config.validate()
        self.config = config
        self.bases = spline_bases(config.splines)

    def fit_sample(
        self,
        sample_id: str,
        tables: Sequence[FragmentTypeTable],
        counts: Sequence[np.ndarray],
    ) -> SampleFit:
        """Fit every configured model for one sample.

        Args:
            sample_id: Sample identifier.
            tables: Fragment-type tables of single-isoform training genes.
            counts: Observed count per row, aligned with ``tables``.

        Returns:
            SampleFit with FitParams for successful models and failures.

        Raises:
            InsufficientDataError: If no training gene has any evidence.
        """
        if len(tables) != len(counts):
            raise ValueError("tables and counts must have the same length")

        enum_cfg = self.config.enumeration
        fit_cfg = self.config.fit

        kept = [
            (t, np.asarray(c, dtype=np.float64))
            for t, c in zip(tables, counts)
            if not t.is_empty and np.asarray(c).sum() > 0
        ]
        dropped = len(tables) - len(kept)
        if dropped:
            logger.info(f"{sample_id}: {dropped} training transcripts without evidence skipped")
        if not kept:
            raise InsufficientDataError(f"{sample_id}: no training gene has observed fragments")
        kept_tables = [t for t, _ in kept]
        kept_counts = [c for _, c in kept]

        # Offsets shared by every model of this sample
        density = fragment_length_density(
            kept_tables,
            kept_counts,
            enum_cfg.min_size,
            enum_cfg.max_size,
            fit_cfg.fraglen_pseudocount,
        )
        background = build_background(kept_tables, self.config.vlmm.pseudocount)
        vlmm: VLMMParams | None = None
        failures: dict[str, str] = {}
        if fit_cfg.needs_vlmm:
            try:
                vlmm = ContextScorer(self.config.vlmm).fit(kept_tables, kept_counts, background)
            except InsufficientDataError as e:
                logger.warning(f"{sample_id}: read-start model unavailable: {e}")
                for spec in fit_cfg.models:
                    if spec.uses_vlmm:
                        failures[spec.name] = str(e)

        params = FitParams(
            sample_id=sample_id,
            read_length=enum_cfg.read_length,
            min_size=enum_cfg.min_size,
            max_size=enum_cfg.max_size,
            fraglen_density=density,
            vlmm=vlmm,
            background=background,
        )

        rng = np.random.default_rng(fit_cfg.seed)
        rows = [subsample_rows(c, fit_cfg.zero_to_positive, rng) for c in kept_counts]
        y = np.concatenate([c[r] for c, r in zip(kept_counts, rows)])
        fraglen_off = np.concatenate(
            [params.fraglen_offset(t)[r] for t, r in zip(kept_tables, rows)]
        )
        vlmm_off = None
        if vlmm is not None:
            vlmm_off = np.concatenate(
                [params.vlmm_offset(t)[r] for t, r in zip(kept_tables, rows)]
            )

        models: dict[str, FittedModel] = {}
        for spec in fit_cfg.models:
            if spec.name in failures:
                continue
            offset = np.zeros(y.shape[0])
            if "fraglen" in spec.offsets:
                offset += fraglen_off
            if "vlmm" in spec.offsets:
                offset += vlmm_off
            try:
                with Timer(f"{sample_id}/{spec.name} fit", logger):
                    models[spec.name] = self._fit_model(spec, kept_tables, rows, y, offset)
            except InsufficientDataError as e:
                logger.warning(f"{sample_id}: model '{spec.name}' failed: {e}")
                failures[spec.name] = str(e)

        params = attrs.evolve(params, models=models)
        logger.info(
            f"{sample_id}: fitted {len(models)}/{len(fit_cfg.models)} models on "
            f"{len(kept_tables)} genes, {int(y.sum())} fragments"
        )
        return SampleFit(params=params, failures=failures)

    def _fit_model(
        self,
        spec: ModelSpec,
        tables: list[FragmentTypeTable],
        rows: list[np.ndarray],
        y: np.ndarray,
        offset: np.ndarray,
    ) -> FittedModel:
        knots = {
            term: (self.bases[term].interior, self.bases[term].boundary)
            for term in SPLINE_TERMS
            if term in spec.terms
        }
        stretch_names = tables[0].stretch_names if "gc_stretch" in spec.terms else ()

        if not spec.has_predictors:
            return FittedModel(spec=spec, knots=knots, n_rows=int(y.shape[0]))

        gene_ids = sorted({t.gene_id for t in tables})
        gene_index = {g: i for i, g in enumerate(gene_ids)}

        blocks = []
        names: list[str] = []
        gene_column = []
        for table, r in zip(tables, rows):
            X, names = build_design(table, spec, self.bases, r)
            blocks.append(X)
            gene_column.append(np.full(len(r), gene_index[table.gene_id]))
        bias = np.vstack(blocks)
        genes = np.concatenate(gene_column)
        dummies = np.zeros((bias.shape[0], len(gene_ids)))
        dummies[np.arange(bias.shape[0]), genes] = 1.0
        X = np.hstack((bias, dummies))

        fit = fit_poisson(
            X, y, offset, max_iter=self.config.fit.max_iter, tol=self.config.fit.tol
        )
        return FittedModel(
            spec=spec,
            column_names=tuple(names) + tuple(f"gene:{g}" for g in gene_ids),
            coefficients=fit.coefficients,
            std_errors=fit.std_errors,
            knots=knots,
            stretch_names=tuple(stretch_names),
            gene_ids=tuple(gene_ids),
            deviance=fit.deviance,
            iterations=fit.iterations,
            converged=fit.converged,
            n_rows=int(y.shape[0]),
        )


def summary_records(params: FitParams) -> list[dict[str, Any]]:
    """Flat coefficient table of every model of a sample, for TSV output."""
    records = []
    for name, model in params.models.items():
        for row in model.summary():
            records.append({"sample": params.sample_id, "model": name, **row._asdict()})
    return records
