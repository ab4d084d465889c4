"""Batch orchestration of enumeration, fitting and estimation.

Work is fanned out with ParallelExecutor, one task per transcript, sample
or gene. Inputs are immutable before fan-out (fragment-type tables,
FitParams) and every task returns an independent record. A failure of one
unit (model and sample, or gene, sample and model) is recorded in the
results table and never stops the other units.

Example:
    >>> tables = build_fragment_tables(exon_sets, genome, config)
    >>> fits, failures = fit_samples(config, training, sample_counts)
    >>> results = estimate_abundances(config, gene_tables, params, observed, ["all"])
    >>> results.failures
"""

from __future__ import annotations

import logging
from functools import partial
from typing import TYPE_CHECKING, Iterator, Mapping, NamedTuple, Sequence

import attrs
import numpy as np

from fragbias.core.abundance import AbundanceEstimator, AbundanceResult, GeneFragmentSpace
from fragbias.core.aggregate import ResultAggregator
from fragbias.core.fit import BiasModelFitter, SampleFit
from fragbias.config import READ_LENGTH_TOLERANCE
from fragbias.core.fragtypes import enumerate_fragment_types, parse_stretch_name
from fragbias.errors import ConfigurationError, DegenerateGeometryError
from fragbias.parallel.executor import ParallelExecutor
from fragbias.utils.sequences import spliced_sequence

if TYPE_CHECKING:
    from fragbias.config import Config, EnumerationConfig
    from fragbias.core.fit import FitParams
    from fragbias.core.fragtypes import FragmentKey, FragmentTypeTable
    from fragbias.utils.intervals import ExonSet
    from fragbias.utils.sequences import SequenceSource

logger = logging.getLogger(__name__)

# =============================================================================
# Results Table
# =============================================================================


class ResultKey(NamedTuple):
    """Flat key of one abundance result."""

    sample: str
    model: str
    gene: str


class UnitFailure(NamedTuple):
    """A unit of work that failed without stopping the batch.

    Attributes:
        stage: enumerate, fit or estimate.
        sample: Sample id, empty for enumeration.
        model: Model name, empty where not applicable.
        unit: Transcript or gene id, empty for fits.
        error: Error message.
    """

    stage: str
    sample: str
    model: str
    unit: str
    error: str


@attrs.define
class ResultsTable:
    """Abundance results keyed by (sample, model, gene) plus failures."""

    results: dict[ResultKey, AbundanceResult] = attrs.Factory(dict)
    failures: list[UnitFailure] = attrs.Factory(list)

    def add(self, result: AbundanceResult) -> None:
        self.results[ResultKey(result.sample_id, result.model, result.gene_id)] = result

    def get(self, sample: str, model: str, gene: str) -> AbundanceResult:
        return self.results[ResultKey(sample, model, gene)]

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self) -> Iterator[AbundanceResult]:
        return iter(self.results.values())

    def select(
        self, sample: str | None = None, model: str | None = None, gene: str | None = None
    ) -> list[AbundanceResult]:
        """Results matching every given key field."""
        return [
            r
            for key, r in self.results.items()
            if (sample is None or key.sample == sample)
            and (model is None or key.model == model)
            and (gene is None or key.gene == gene)
        ]

    def aggregator(self) -> ResultAggregator:
        aggregator = ResultAggregator()
        aggregator.add_all(self.results.values())
        return aggregator

    def records(self) -> list[dict]:
        """One flat record per (sample, model, isoform)."""
        rows = []
        for result in self.results.values():
            rows.extend(result.as_records())
        return rows


# =============================================================================
# Enumeration
# =============================================================================


def _enumerate_task(config: EnumerationConfig, item: tuple[ExonSet, str]) -> FragmentTypeTable:
    exon_set, sequence = item
    return enumerate_fragment_types(
        exon_set,
        sequence,
        read_length=config.read_length,
        min_size=config.min_size,
        max_size=config.max_size,
        gc_stretches=config.gc_stretches,
    )


def _executor(config: Config) -> ParallelExecutor:
    return ParallelExecutor(
        n_workers=config.parallel.max_workers, backend=config.parallel.backend
    )


def build_fragment_tables(
    exon_sets: Sequence[ExonSet],
    genome: SequenceSource,
    config: Config,
    executor: ParallelExecutor | None = None,
) -> tuple[dict[str, FragmentTypeTable], list[UnitFailure]]:
    """Enumerate fragment types of many transcripts.

    Sequences are fetched from the genome once per transcript before
    fan-out.

    Returns:
        (transcript id -> table, failures). Transcripts too short for any
        fragment get an empty table, not a failure.
    """
    executor = executor or _executor(config)
    items = []
    failures = []
    for exon_set in exon_sets:
        try:
            items.append((exon_set, spliced_sequence(exon_set, genome)))
        except (KeyError, ValueError) as e:
            failures.append(UnitFailure("enumerate", "", "", exon_set.transcript_id, str(e)))

    task_results, _ = executor.map_items(
        partial(_enumerate_task, config.enumeration),
        items,
        ids=[e.transcript_id for e, _ in items],
    )

    tables = {}
    for task in task_results:
        if task.success:
            tables[task.task_id] = task.result
        else:
            failures.append(UnitFailure("enumerate", "", "", task.task_id, task.error or ""))

    n_empty = sum(1 for t in tables.values() if t.is_empty)
    if n_empty:
        logger.info(f"{n_empty} transcripts are too short for any fragment type")
    for failure in failures:
        logger.warning(f"Enumeration failed for {failure.unit}: {failure.error}")
    return tables, failures


def enumeration_from_fits(
    fit_params: Mapping[str, FitParams], base: EnumerationConfig
) -> EnumerationConfig:
    """Enumeration settings matching the samples' fits.

    Read length and size range come from the fits, and GC-stretch columns
    from the fitted models that use them. Other settings are kept from
    ``base``.

    Raises:
        ConfigurationError: If there are no samples, the samples were fitted
            on different size ranges or GC-stretch columns, or their read
            lengths differ by more than READ_LENGTH_TOLERANCE.
    """
    if not fit_params:
        raise ConfigurationError("No fitted samples to take enumeration settings from")
    params = list(fit_params.values())
    first = params[0]

    sizes = {(p.min_size, p.max_size) for p in params}
    if len(sizes) > 1:
        ranges = ", ".join(f"{p.sample_id}={p.min_size}-{p.max_size}" for p in params)
        raise ConfigurationError(f"Samples were fitted on different fragment lengths: {ranges}")
    read_lengths = [p.read_length for p in params]
    if max(read_lengths) - min(read_lengths) > READ_LENGTH_TOLERANCE:
        lengths = ", ".join(f"{p.sample_id}={p.read_length}" for p in params)
        raise ConfigurationError(f"Samples have different read lengths: {lengths}")

    stretch_sets = {
        model.stretch_names
        for p in params
        for model in p.models.values()
        if "gc_stretch" in model.spec.terms
    }
    if len(stretch_sets) > 1:
        raise ConfigurationError(
            f"Fitted models use different GC-stretch columns: {sorted(stretch_sets)}"
        )
    names = stretch_sets.pop() if stretch_sets else ()

    enumeration = attrs.evolve(
        base,
        read_length=first.read_length,
        min_size=first.min_size,
        max_size=first.max_size,
        gc_stretches=tuple(parse_stretch_name(name) for name in names),
    )
    enumeration.validate()
    if enumeration != base:
        logger.info(
            f"Enumerating with fitted settings: {enumeration.read_length} bp reads, "
            f"{enumeration.min_size}-{enumeration.max_size} bp fragments"
        )
    return enumeration


def group_by_gene(
    tables: Mapping[str, FragmentTypeTable],
) -> dict[str, list[FragmentTypeTable]]:
    """Tables of each gene, in insertion order."""
    genes: dict[str, list[FragmentTypeTable]] = {}
    for table in tables.values():
        genes.setdefault(table.gene_id, []).append(table)
    return genes


# =============================================================================
# Fitting
# =============================================================================


def _fit_task(
    fitter: BiasModelFitter,
    tables: Sequence[FragmentTypeTable],
    item: tuple[str, list[np.ndarray]],
) -> SampleFit:
    sample_id, counts = item
    return fitter.fit_sample(sample_id, tables, counts)


def fit_samples(
    config: Config,
    tables: Sequence[FragmentTypeTable],
    sample_counts: Mapping[str, Sequence[np.ndarray]],
    executor: ParallelExecutor | None = None,
) -> tuple[dict[str, FitParams], list[UnitFailure]]:
    """Fit every configured model for every sample.

    Args:
        config: Run configuration.
        tables: Training tables shared by all samples.
        sample_counts: Sample id -> observed counts aligned with ``tables``.
        executor: Executor to use; built from ``config.parallel`` if None.

    Returns:
        (sample id -> FitParams of successful models, failures). A sample
        whose every model failed is absent from the mapping.
    """
    executor = executor or _executor(config)
    fitter = BiasModelFitter(config)
    samples = list(sample_counts)
    task_results, _ = executor.map_items(
        partial(_fit_task, fitter, list(tables)),
        [(s, list(sample_counts[s])) for s in samples],
        ids=samples,
    )

    fits: dict[str, FitParams] = {}
    failures: list[UnitFailure] = []
    for task in task_results:
        if not task.success:
            failures.append(UnitFailure("fit", task.task_id, "", "", task.error or ""))
            logger.warning(f"Fitting failed for sample {task.task_id}: {task.error}")
            continue
        sample_fit: SampleFit = task.result
        for model, error in sample_fit.failures.items():
            failures.append(UnitFailure("fit", task.task_id, model, "", error))
        if sample_fit.params.models:
            fits[task.task_id] = sample_fit.params
    return fits, failures


# =============================================================================
# Estimation
# =============================================================================


def _estimate_task(
    estimator: AbundanceEstimator,
    fit_params: Mapping[str, FitParams],
    models: Sequence[str],
    library_sizes: Mapping[str, float],
    item: tuple[str, list[FragmentTypeTable], Mapping[str, Mapping[FragmentKey, float]]],
) -> tuple[list[AbundanceResult], list[UnitFailure]]:
    gene_id, tables, observed = item
    results: list[AbundanceResult] = []
    failures: list[UnitFailure] = []

    try:
        space = GeneFragmentSpace.build(gene_id, tables)
    except DegenerateGeometryError:
        space = None

    for sample, params in fit_params.items():
        sample_observed = observed.get(sample, {})
        library_size = library_sizes.get(sample)
        if space is None:
            results.extend(
                estimator.estimate_gene(
                    gene_id, tables, params, models, sample_observed, library_size
                )
            )
            continue
        counts = space.counts_from(sample_observed)
        try:
            sample_space = space.scored(params)
        except Exception as e:
            failures.extend(UnitFailure("estimate", sample, m, gene_id, str(e)) for m in models)
            continue
        for model in models:
            try:
                results.append(
                    estimator.estimate(sample_space, params, model, counts, library_size)
                )
            except Exception as e:
                failures.append(UnitFailure("estimate", sample, model, gene_id, str(e)))
    return results, failures


def estimate_abundances(
    config: Config,
    gene_tables: Mapping[str, Sequence[FragmentTypeTable]],
    fit_params: Mapping[str, FitParams],
    observed: Mapping[str, Mapping[str, Mapping[FragmentKey, float]]],
    models: Sequence[str],
    library_sizes: Mapping[str, float] | None = None,
    executor: ParallelExecutor | None = None,
) -> ResultsTable:
    """Estimate isoform abundances for every gene, sample and model.

    Args:
        config: Run configuration.
        gene_tables: Gene id -> isoform tables.
        fit_params: Sample id -> FitParams.
        observed: Sample id -> gene id -> FragmentKey counts.
        models: Model names to evaluate.
        library_sizes: Sample id -> library size; configured default if missing.
        executor: Executor to use; built from ``config.parallel`` if None.

    Returns:
        ResultsTable with per-unit failures. A model fitted for some
        samples only fails per unit for the others.

    Raises:
        ConfigurationError: If a model was not fitted for any sample.
    """
    fitted = {name for params in fit_params.values() for name in params.models}
    unknown = [m for m in models if m not in fitted]
    if unknown:
        raise ConfigurationError(
            f"No sample has a fitted model named {', '.join(unknown)}; "
            f"fitted models: {', '.join(sorted(fitted)) or 'none'}"
        )
    executor = executor or _executor(config)
    estimator = AbundanceEstimator(config.estimate)
    genes = list(gene_tables)
    items = [
        (
            gene,
            list(gene_tables[gene]),
            {sample: observed.get(sample, {}).get(gene, {}) for sample in fit_params},
        )
        for gene in genes
    ]
    task_results, _ = executor.map_items(
        partial(_estimate_task, estimator, dict(fit_params), list(models), dict(library_sizes or {})),
        items,
        ids=genes,
    )

    table = ResultsTable()
    for task in task_results:
        if not task.success:
            table.failures.append(UnitFailure("estimate", "", "", task.task_id, task.error or ""))
            continue
        results, failures = task.result
        for result in results:
            table.add(result)
        table.failures.extend(failures)

    logger.info(
        f"Estimated {len(genes)} genes x {len(fit_params)} samples x {len(models)} models: "
        f"{len(table)} results, {len(table.failures)} failures"
    )
    return table
