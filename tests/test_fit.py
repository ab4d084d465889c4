"""Tests for fragbias.core.fit module.

Tests cover:
- Design matrix construction and column naming
- Fragment-length density and zero-row sub-sampling
- Per-sample fitting of offset-only and regression models
- Per-model failure isolation
- Prediction from FitParams
"""

from unittest.mock import patch

import attrs
import numpy as np
import pytest

from fragbias.config import ModelSpec, SplineConfig
from fragbias.core.fit import (
    BiasModelFitter,
    build_design,
    fragment_length_density,
    spline_bases,
    subsample_rows,
    summary_records,
)
from fragbias.core.fragtypes import enumerate_fragment_types
from fragbias.core.vlmm import ContextScorer
from fragbias.errors import ConfigurationError, InsufficientDataError
from fragbias.utils.intervals import ExonSet

from conftest import random_sequence


# =============================================================================
# Design Matrix Tests
# =============================================================================


class TestBuildDesign:
    """Tests for bias columns of the design matrix."""

    @pytest.fixture
    def table(self):
        sequence = random_sequence(120, seed=5)
        exon_set = ExonSet("tx", "g", "chr1", "+", ((0, 120),))
        return enumerate_fragment_types(
            exon_set, sequence, 20, 40, 60, gc_stretches=((10, 0.8), (20, 0.8))
        )

    @pytest.fixture
    def bases(self):
        return spline_bases(SplineConfig())

    def test_spline_and_stretch_columns(self, table, bases):
        spec = ModelSpec("m", terms=("gc", "relpos", "gc_stretch"))
        X, names = build_design(table, spec, bases)
        assert X.shape == (len(table), 10)
        assert names == [
            "gc1", "gc2", "gc3", "gc4",
            "relpos1", "relpos2", "relpos3", "relpos4",
            "GC10.80", "GC20.80",
        ]
        assert np.array_equal(X[:, 8:], table.gc_stretch)

    def test_interaction_columns(self, table, bases):
        spec = ModelSpec("m", terms=("gc", "relpos"), interactions=[("gc", "relpos")])
        X, names = build_design(table, spec, bases)
        assert X.shape == (len(table), 24)
        assert names[8] == "gc1:relpos1"
        assert names[-1] == "gc4:relpos4"
        assert np.allclose(X[:, 8], X[:, 0] * X[:, 4])

    def test_row_subset(self, table, bases):
        spec = ModelSpec("m", terms=("gc",))
        full, _ = build_design(table, spec, bases)
        rows = np.array([3, 7, 11])
        subset, _ = build_design(table, spec, bases, rows)
        assert np.array_equal(subset, full[rows])

    def test_no_predictors(self, table, bases):
        X, names = build_design(table, ModelSpec("null"), bases)
        assert X.shape == (len(table), 0)
        assert names == []


# =============================================================================
# Offset and Sampling Tests
# =============================================================================


class TestOffsetsAndSampling:
    """Tests for the fragment-length density and zero sub-sampling."""

    def test_density_is_normalized(self, training_panel):
        density = fragment_length_density(
            training_panel["tables"], training_panel["counts"], 40, 60
        )
        assert density.shape == (21,)
        assert density.sum() == pytest.approx(1.0)
        assert np.all(density > 0)

    def test_density_follows_counts(self, training_panel):
        table = training_panel["tables"][0]
        counts = (table.length == 45).astype(float) * 10
        density = fragment_length_density([table], [counts], 40, 60, pseudocount=0.0)
        assert density[5] == 1.0

    def test_density_needs_evidence(self, training_panel):
        table = training_panel["tables"][0]
        with pytest.raises(InsufficientDataError):
            fragment_length_density([table], [np.zeros(len(table))], 40, 60, pseudocount=0.0)

    def test_subsample_keeps_positives(self):
        counts = np.zeros(1000)
        counts[[5, 50, 500]] = 1
        rows = subsample_rows(counts, 20, np.random.default_rng(0))
        assert len(rows) == 63
        assert set([5, 50, 500]) <= set(rows.tolist())
        assert np.all(np.diff(rows) > 0)

    def test_subsample_disabled(self):
        counts = np.zeros(100)
        counts[0] = 1
        assert len(subsample_rows(counts, None, np.random.default_rng(0))) == 100

    def test_subsample_is_seeded(self):
        counts = np.zeros(1000)
        counts[:10] = 1
        a = subsample_rows(counts, 5, np.random.default_rng(3))
        b = subsample_rows(counts, 5, np.random.default_rng(3))
        assert np.array_equal(a, b)


# =============================================================================
# Fitter Tests
# =============================================================================


class TestBiasModelFitter:
    """Tests for per-sample model fitting."""

    @pytest.fixture
    def sample_fit(self, small_config, training_panel):
        fitter = BiasModelFitter(small_config)
        return fitter.fit_sample("s1", training_panel["tables"], training_panel["counts"])

    def test_all_models_fitted(self, sample_fit, small_config):
        assert sample_fit.failures == {}
        assert set(sample_fit.params.models) == {m.name for m in small_config.fit.models}
        assert sample_fit.params.vlmm is not None

    def test_offset_only_models_have_no_coefficients(self, sample_fit, training_panel):
        params = sample_fit.params
        table = training_panel["tables"][0]
        assert len(params.models["null"].coefficients) == 0
        assert np.all(params.rate(table, "null") == 1.0)
        expected = params.fraglen_density[table.length - params.min_size]
        assert np.allclose(params.rate(table, "fraglen"), expected)

    def test_gene_columns(self, sample_fit):
        model = sample_fit.params.models["gc"]
        assert model.gene_ids == tuple(sorted(f"gtrain{i}" for i in range(6)))
        assert model.column_names[-6:] == tuple(f"gene:gtrain{i}" for i in range(6))
        assert model.n_bias_columns == 8
        assert model.bias_coefficients.shape == (8,)

    def test_gc_effect_recovered(self, sample_fit):
        """Simulated counts rise with GC; so does the fitted GC term."""
        model = sample_fit.params.models["gc"]
        contribution = model.term_contribution("gc", np.array([0.35, 0.5, 0.65]))
        assert contribution[2] > contribution[1] > contribution[0]
        # Simulated slope is 2 per unit GC
        assert contribution[2] - contribution[0] == pytest.approx(0.6, abs=0.25)

    def test_prediction_drops_gene_effect(self, sample_fit, training_panel):
        params = sample_fit.params
        model = params.models["gc"]
        table = training_panel["tables"][2]
        X, _ = build_design(table, model.spec, model.bases())
        expected = X @ model.bias_coefficients + params.fraglen_offset(table)
        assert np.allclose(params.log_rate(table, "gc"), expected)

    def test_vlmm_offset_added(self, sample_fit, training_panel):
        params = sample_fit.params
        table = training_panel["tables"][1]
        v5, v3 = params.vlmm.score(table)
        diff = np.log(params.rate(table, "fraglen_vlmm")) - np.log(params.rate(table, "fraglen"))
        assert np.allclose(diff, v5 + v3)

    def test_read_start_model_fitted_once(self, small_config, training_panel):
        with patch.object(
            ContextScorer, "fit", autospec=True, side_effect=ContextScorer.fit
        ) as mock_fit:
            BiasModelFitter(small_config).fit_sample(
                "s1", training_panel["tables"], training_panel["counts"]
            )
        assert mock_fit.call_count == 1

    def test_genes_without_evidence_are_skipped(self, small_config, training_panel):
        counts = list(training_panel["counts"])
        counts[0] = np.zeros_like(counts[0])
        sample_fit = BiasModelFitter(small_config).fit_sample(
            "s1", training_panel["tables"], counts
        )
        assert "gene:gtrain0" not in sample_fit.params.models["gc"].column_names

    def test_no_evidence_raises(self, small_config, training_panel):
        zeros = [np.zeros(len(t)) for t in training_panel["tables"]]
        with pytest.raises(InsufficientDataError):
            BiasModelFitter(small_config).fit_sample("s1", training_panel["tables"], zeros)

    def test_length_mismatch(self, small_config, training_panel):
        with pytest.raises(ValueError):
            BiasModelFitter(small_config).fit_sample(
                "s1", training_panel["tables"], training_panel["counts"][:2]
            )

    def test_rank_deficient_model_fails_alone(self, small_config, training_panel):
        """An all-zero stretch column fails its model, not the sample."""
        genome = training_panel["genome"]
        tables = []
        for exon_set in training_panel["exon_sets"]:
            sequence = genome.get_sequence("chr1", *exon_set.exons[0])
            # An A every 20 bases rules out any 40 bp all-GC window
            sequence = "".join("A" if i % 20 == 0 else b for i, b in enumerate(sequence))
            tables.append(
                enumerate_fragment_types(
                    attrs.evolve(exon_set, strand="+"),
                    sequence,
                    20,
                    40,
                    60,
                    gc_stretches=((40, 1.0),),
                )
            )
        config = attrs.evolve(
            small_config,
            fit=attrs.evolve(
                small_config.fit,
                models=[
                    ModelSpec("fraglen", offsets=("fraglen",)),
                    ModelSpec("stretch", terms=("gc_stretch",), offsets=("fraglen",)),
                ],
            ),
        )
        sample_fit = BiasModelFitter(config).fit_sample("s1", tables, training_panel["counts"])

        assert list(sample_fit.params.models) == ["fraglen"]
        assert "stretch" in sample_fit.failures
        assert "rank" in sample_fit.failures["stretch"]

    def test_summary_records(self, sample_fit):
        records = summary_records(sample_fit.params)
        gc_rows = [r for r in records if r["model"] == "gc"]
        assert len(gc_rows) == len(sample_fit.params.models["gc"].column_names)
        assert {"sample", "model", "term", "estimate", "std_error", "z_value"} <= set(gc_rows[0])
        assert not [r for r in records if r["model"] == "null"]

    def test_unknown_model(self, sample_fit):
        with pytest.raises(KeyError):
            sample_fit.params.get_model("missing")


# =============================================================================
# Prediction Guard Tests
# =============================================================================


class TestFitParamsTables:
    """Tests for tables that do not match the fitted enumeration."""

    @pytest.fixture
    def sequence(self) -> str:
        return random_sequence(300, seed=11)

    def make_table(self, sequence, read_length=20, min_size=40, max_size=60):
        exon_set = ExonSet("tx", "g", "chr1", "+", ((0, len(sequence)),))
        return enumerate_fragment_types(exon_set, sequence, read_length, min_size, max_size)

    def test_longer_fragments_rejected(self, flat_params, sequence):
        """Lengths beyond the fitted range have no density to fall back on."""
        table = self.make_table(sequence, max_size=200)
        with pytest.raises(ConfigurationError, match="40-200"):
            flat_params.fraglen_offset(table)
        with pytest.raises(ConfigurationError):
            flat_params.rate(table, "null")

    def test_other_read_length_rejected(self, flat_params, sequence):
        with pytest.raises(ConfigurationError, match="30 bp reads"):
            flat_params.rate(self.make_table(sequence, read_length=30), "gc")

    def test_read_length_tolerance(self, flat_params, sequence):
        near = self.make_table(sequence, read_length=21)
        assert np.all(np.isfinite(flat_params.rate(near, "gc")))

    def test_vlmm_scores_of_other_sample_ignored(self, flat_params, training_panel, small_config):
        tables = training_panel["tables"]
        scorer = ContextScorer(small_config.vlmm)
        vlmm_a = scorer.fit(tables, training_panel["counts"])
        # Evidence only on the fragments starting at even offsets
        skewed = [np.where(t.start % 2 == 0, 3.0, 0.0) for t in tables]
        vlmm_b = scorer.fit(tables, skewed)
        params_b = attrs.evolve(flat_params, sample_id="s2", vlmm=vlmm_b)

        table = tables[0]
        own = params_b.vlmm_offset(table)
        assert np.allclose(params_b.vlmm_offset(vlmm_a.score_table(table)), own)
        assert not np.allclose(vlmm_a.score(table)[0] + vlmm_a.score(table)[1], own)

        scored = params_b.score_table(table)
        assert scored.vlmm_source == vlmm_b.fingerprint
        assert params_b.score_table(scored) is scored
        with patch.object(type(vlmm_b), "score", autospec=True) as mock_score:
            assert np.allclose(params_b.vlmm_offset(scored), own)
        mock_score.assert_not_called()
