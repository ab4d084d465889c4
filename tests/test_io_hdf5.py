"""Tests for fragbias.io.hdf5 module."""

from pathlib import Path

import attrs
import h5py
import numpy as np
import pytest

from fragbias.core.fit import BiasModelFitter
from fragbias.io.hdf5 import (
    FitParamsFormatError,
    list_samples,
    load_fit_params,
    save_fit_params,
)


@pytest.fixture
def fitted_params(small_config, training_panel):
    """FitParams of every small_config model, read-start model included."""
    sample_fit = BiasModelFitter(small_config).fit_sample(
        "s1", training_panel["tables"], training_panel["counts"]
    )
    return sample_fit.params


class TestRoundTrip:
    """Tests for saving and reloading fit parameters."""

    def test_predictions_identical(self, tmp_path: Path, fitted_params, training_panel):
        path = tmp_path / "fits.h5"
        save_fit_params(fitted_params, path)
        loaded = load_fit_params(path, "s1")

        assert loaded.sample_id == "s1"
        assert (loaded.read_length, loaded.min_size, loaded.max_size) == (20, 40, 60)
        assert list(loaded.models) == list(fitted_params.models)
        table = training_panel["tables"][3]
        for name in fitted_params.models:
            assert np.allclose(loaded.rate(table, name), fitted_params.rate(table, name))
        # Tables scored before saving are reused after loading
        assert loaded.vlmm.fingerprint == fitted_params.vlmm.fingerprint

    def test_model_metadata(self, tmp_path: Path, fitted_params):
        path = tmp_path / "fits.h5"
        save_fit_params(fitted_params, path)
        original = fitted_params.models["gc"]
        loaded = load_fit_params(path, "s1").models["gc"]
        assert loaded.spec == original.spec
        assert loaded.column_names == original.column_names
        assert loaded.gene_ids == original.gene_ids
        assert loaded.knots == original.knots
        assert np.array_equal(loaded.std_errors, original.std_errors)
        assert loaded.converged == original.converged

    def test_vlmm_tables(self, tmp_path: Path, fitted_params):
        path = tmp_path / "fits.h5"
        save_fit_params(fitted_params, path)
        vlmm = load_fit_params(path, "s1").vlmm
        assert vlmm.orders == fitted_params.vlmm.orders
        for a, b in zip(vlmm.five + vlmm.three, fitted_params.vlmm.five + fitted_params.vlmm.three):
            assert np.array_equal(a, b)

    def test_without_vlmm(self, tmp_path: Path, flat_params):
        path = tmp_path / "flat.h5"
        save_fit_params(flat_params, path)
        loaded = load_fit_params(path, "s1")
        assert loaded.vlmm is None
        assert loaded.models["null"].coefficients.shape == (0,)

    def test_many_samples(self, tmp_path: Path, flat_params):
        path = tmp_path / "fits.h5"
        save_fit_params(flat_params, path)
        save_fit_params(attrs.evolve(flat_params, sample_id="s2"), path)
        # Saving again replaces the sample
        save_fit_params(flat_params, path)
        assert sorted(list_samples(path)) == ["s1", "s2"]
        assert sorted(load_fit_params(path, "s2").models) == ["gc", "null"]


class TestErrors:
    """Tests for invalid files and samples."""

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_fit_params(tmp_path / "missing.h5", "s1")
        with pytest.raises(FileNotFoundError):
            list_samples(tmp_path / "missing.h5")

    def test_missing_sample(self, tmp_path: Path, flat_params):
        path = tmp_path / "fits.h5"
        save_fit_params(flat_params, path)
        with pytest.raises(KeyError):
            load_fit_params(path, "s9")

    def test_foreign_file(self, tmp_path: Path):
        path = tmp_path / "other.h5"
        with h5py.File(path, "w") as f:
            f.create_dataset("predictions", data=np.zeros(3))
        with pytest.raises(FitParamsFormatError):
            load_fit_params(path, "s1")
