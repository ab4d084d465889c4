"""Tests for fragbias.core.aggregate module."""

import numpy as np
import pytest

from fragbias.core.abundance import AbundanceResult
from fragbias.core.aggregate import (
    CoveragePredictor,
    ResultAggregator,
    gc_bias_table,
    write_gc_table,
    write_matrix_tsv,
)
from fragbias.core.fit import FittedModel
from fragbias.config import ModelSpec
from fragbias.errors import ConfigurationError


def make_result(gene, sample, isoforms, theta, lambda_, model="all"):
    return AbundanceResult(
        gene_id=gene,
        sample_id=sample,
        model=model,
        isoform_ids=tuple(isoforms),
        theta=theta,
        lambda_=lambda_,
    )


# =============================================================================
# Aggregation Tests
# =============================================================================


class TestResultAggregator:
    """Tests for bias-centered abundance matrices."""

    def test_single_gene_unchanged(self):
        aggregator = ResultAggregator()
        aggregator.add(make_result("g1", "s1", ["t1"], [2.0], [0.5]))
        matrix = aggregator.matrix("all")
        assert matrix.row_ids == ["t1"]
        assert matrix.column_ids == ["s1"]
        assert matrix.values[0, 0] == pytest.approx(2.0)

    def test_centering_by_mean_lambda(self):
        aggregator = ResultAggregator()
        aggregator.add_all(
            [
                make_result("g1", "s1", ["t1"], [1.0], [1.0]),
                make_result("g2", "s1", ["t2", "t3"], [1.0, 2.0], [3.0, 2.0]),
            ]
        )
        assert aggregator.centering_factors("all") == {"s1": pytest.approx(2.0)}
        matrix = aggregator.matrix("all")
        assert matrix.gene_ids == ["g1", "g2", "g2"]
        assert matrix.values[:, 0] == pytest.approx([0.5, 1.5, 2.0])

    def test_nan_lambda_contributes_zero(self):
        aggregator = ResultAggregator()
        aggregator.add_all(
            [
                make_result("g1", "s1", ["t1"], [1.0], [2.0]),
                make_result("g2", "s1", ["t2"], [0.0], [np.nan]),
            ]
        )
        matrix = aggregator.matrix("all")
        assert aggregator.centering_factors("all")["s1"] == pytest.approx(2.0)
        assert matrix.values[1, 0] == 0.0

    def test_samples_centered_separately(self):
        aggregator = ResultAggregator()
        aggregator.add_all(
            [
                make_result("g1", "s2", ["t1"], [1.0], [4.0]),
                make_result("g1", "s1", ["t1"], [1.0], [1.0]),
                make_result("g2", "s1", ["t2"], [1.0], [3.0]),
            ]
        )
        matrix = aggregator.matrix("all")
        assert matrix.column_ids == ["s1", "s2"]
        assert matrix.values[0].tolist() == pytest.approx([0.5, 1.0])
        # t2 has no s2 result
        assert np.isnan(matrix.values[1, 1])

    def test_models_kept_apart(self):
        aggregator = ResultAggregator()
        aggregator.add(make_result("g1", "s1", ["t1"], [1.0], [1.0], model="null"))
        aggregator.add(make_result("g1", "s1", ["t1"], [3.0], [1.0], model="gc"))
        assert aggregator.models == ["gc", "null"]
        assert aggregator.matrix("gc").values[0, 0] == pytest.approx(3.0)
        with pytest.raises(KeyError):
            aggregator.matrix("all")

    def test_write_tsv(self, tmp_path):
        aggregator = ResultAggregator()
        aggregator.add_all(
            [
                make_result("g1", "s1", ["t1"], [1.0], [1.0]),
                make_result("g2", "s2", ["t2"], [2.0], [1.0]),
            ]
        )
        path = tmp_path / "matrix.tsv"
        write_matrix_tsv(aggregator.matrix("all"), path)
        lines = path.read_text().splitlines()
        assert lines[0] == "transcript_id\tgene_id\ts1\ts2"
        assert lines[1] == "t1\tg1\t1\tNA"
        assert lines[2] == "t2\tg2\tNA\t2"


# =============================================================================
# Coverage Tests
# =============================================================================


class TestCoveragePredictor:
    """Tests for predicted vs observed coverage."""

    def test_observed_coverage(self, isoform_tables, flat_params):
        table = isoform_tables["twins"][0]
        counts = np.zeros(len(table))
        counts[0] = 2.0
        curve = CoveragePredictor(flat_params).predict(table, "null", counts)
        s, e = int(table.start[0]), int(table.end[0])
        assert np.all(curve.observed[s:e] == 2.0)
        assert curve.observed.sum() == 2.0 * (e - s)
        assert curve.observed.shape == (table.spliced_length,)

    def test_predicted_scaled_to_total(self, isoform_tables, flat_params):
        table = isoform_tables["twins"][0]
        rng = np.random.default_rng(9)
        counts = rng.poisson(0.3, len(table)).astype(float)
        curve = CoveragePredictor(flat_params).predict(table, "gc", counts)
        rates = flat_params.rate(table, "gc")
        assert curve.theta == pytest.approx(counts.sum() / rates.sum())
        assert curve.predicted.sum() == pytest.approx(curve.theta * (rates * table.length).sum())
        assert np.all(curve.predicted >= 0)

    def test_null_model_uniform_interior(self, isoform_tables, flat_params):
        """Without bias, coverage is flat away from the transcript ends."""
        table = isoform_tables["twins"][0]
        curve = CoveragePredictor(flat_params).predict(table, "null", np.ones(len(table)))
        middle = curve.predicted[80:220]
        assert np.allclose(middle, middle[0])


# =============================================================================
# GC Table Tests
# =============================================================================


class TestGCBiasTable:
    """Tests for the GC-bias probability table."""

    def test_linear_gc_term(self):
        model = FittedModel(
            spec=ModelSpec("gc", terms=("gc",)),
            column_names=("gc1", "gc2", "gc3", "gc4"),
            coefficients=[1.0, 0.0, 0.0, 0.0],
            std_errors=[0.1] * 4,
            knots={"gc": ((0.4, 0.5, 0.6), (0.0, 1.0))},
        )
        percent, probability = gc_bias_table(model)
        assert percent.shape == (101,)
        assert percent[0] == 0.0 and percent[-1] == 100.0
        assert probability.max() == 1.0
        assert probability[-1] == 1.0
        assert probability[0] == pytest.approx(np.exp(-1.0))

    def test_fitted_model_in_unit_range(self, gc_model):
        _, probability = gc_bias_table(gc_model, n_points=11)
        assert probability.shape == (11,)
        assert probability.max() == 1.0
        assert np.all(probability > 0)

    def test_model_without_gc(self):
        with pytest.raises(ConfigurationError):
            gc_bias_table(FittedModel(spec=ModelSpec("null")))

    def test_write(self, gc_model, tmp_path):
        path = tmp_path / "gc.tsv"
        write_gc_table(*gc_bias_table(gc_model), path)
        lines = path.read_text().splitlines()
        assert lines[0] == "gc_percent\tprobability"
        assert len(lines) == 102
