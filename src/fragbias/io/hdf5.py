"""HDF5 persistence of fitted bias parameters.

Fitting is a one-time cost per sample; FitParams are written to HDF5 and
read back by later estimation runs. One file may hold many samples.

Layout::

    /<sample_id>                  attrs: read_length, min_size, max_size
        fraglen_density           (max_size - min_size + 1,)
        background                (4,)
        vlmm/                     attrs: npre, npost, orders, n_fallback, n_observed
            five/<i>, three/<i>   (4**order, 4) emission tables
        models/                   attrs: order
          <name>/                 attrs: spec, knots, stretch_names, deviance, ...
            column_names, gene_ids, coefficients, std_errors

Example:
    >>> from fragbias.io.hdf5 import save_fit_params, load_fit_params
    >>> save_fit_params(params, "fits.h5")
    >>> params = load_fit_params("fits.h5", "sample1")
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import h5py
import numpy as np

from fragbias.config import ModelSpec
from fragbias.core.fit import FitParams, FittedModel
from fragbias.core.vlmm import BackgroundModel, VLMMParams

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


class FitParamsFormatError(ValueError):
    """Raised when an HDF5 file does not hold fragbias fit parameters."""

    pass


# =============================================================================
# Writing
# =============================================================================


def _write_strings(group: h5py.Group, name: str, values: tuple[str, ...]) -> None:
    dataset = group.create_dataset(name, shape=(len(values),), dtype=h5py.string_dtype())
    if values:
        dataset[:] = list(values)


def _write_model(group: h5py.Group, model: FittedModel) -> None:
    group.attrs["spec"] = json.dumps(model.spec.to_dict())
    group.attrs["knots"] = json.dumps(
        {term: [list(interior), list(boundary)] for term, (interior, boundary) in model.knots.items()}
    )
    group.attrs["stretch_names"] = json.dumps(list(model.stretch_names))
    group.attrs["deviance"] = model.deviance
    group.attrs["iterations"] = model.iterations
    group.attrs["converged"] = model.converged
    group.attrs["n_rows"] = model.n_rows
    _write_strings(group, "column_names", model.column_names)
    _write_strings(group, "gene_ids", model.gene_ids)
    group.create_dataset("coefficients", data=model.coefficients)
    group.create_dataset("std_errors", data=model.std_errors)


def save_fit_params(params: FitParams, path: Path | str) -> None:
    """Write one sample's FitParams, replacing any previous copy."""
    path = Path(path)
    with h5py.File(path, "a") as f:
        f.attrs["format"] = "fragbias-fitparams"
        f.attrs["version"] = FORMAT_VERSION
        if params.sample_id in f:
            del f[params.sample_id]
        group = f.create_group(params.sample_id)
        group.attrs["read_length"] = params.read_length
        group.attrs["min_size"] = params.min_size
        group.attrs["max_size"] = params.max_size
        group.create_dataset("fraglen_density", data=params.fraglen_density)
        group.create_dataset("background", data=params.background.frequencies)

        if params.vlmm is not None:
            vlmm = group.create_group("vlmm")
            vlmm.attrs["npre"] = params.vlmm.npre
            vlmm.attrs["npost"] = params.vlmm.npost
            vlmm.attrs["orders"] = np.array(params.vlmm.orders, dtype=np.int64)
            vlmm.attrs["n_fallback"] = params.vlmm.n_fallback
            vlmm.attrs["n_observed"] = params.vlmm.n_observed
            for end, tables in (("five", params.vlmm.five), ("three", params.vlmm.three)):
                end_group = vlmm.create_group(end)
                for i, table in enumerate(tables):
                    end_group.create_dataset(str(i), data=table)

        models = group.create_group("models")
        # HDF5 lists groups alphabetically; keep the configured model order
        models.attrs["order"] = json.dumps(list(params.models))
        for name, model in params.models.items():
            _write_model(models.create_group(name), model)

    logger.debug(f"Saved fit parameters of {params.sample_id} to {path}")


# =============================================================================
# Reading
# =============================================================================


def _read_strings(dataset: h5py.Dataset) -> tuple[str, ...]:
    return tuple(v.decode() if isinstance(v, bytes) else str(v) for v in dataset[()])


def _read_model(group: h5py.Group) -> FittedModel:
    knots = {
        term: (tuple(interior), tuple(boundary))
        for term, (interior, boundary) in json.loads(group.attrs["knots"]).items()
    }
    return FittedModel(
        spec=ModelSpec(**json.loads(group.attrs["spec"])),
        column_names=_read_strings(group["column_names"]),
        coefficients=group["coefficients"][()],
        std_errors=group["std_errors"][()],
        knots=knots,
        stretch_names=tuple(json.loads(group.attrs["stretch_names"])),
        gene_ids=_read_strings(group["gene_ids"]),
        deviance=float(group.attrs["deviance"]),
        iterations=int(group.attrs["iterations"]),
        converged=bool(group.attrs["converged"]),
        n_rows=int(group.attrs["n_rows"]),
    )


def _read_vlmm(group: h5py.Group, background: BackgroundModel) -> VLMMParams:
    orders = tuple(int(o) for o in group.attrs["orders"])

    def tables(end: str) -> list[np.ndarray]:
        return [group[end][str(i)][()] for i in range(len(orders))]

    return VLMMParams(
        npre=int(group.attrs["npre"]),
        npost=int(group.attrs["npost"]),
        orders=orders,
        five=tables("five"),
        three=tables("three"),
        background=background,
        n_fallback=int(group.attrs["n_fallback"]),
        n_observed=float(group.attrs["n_observed"]),
    )


def _check_format(f: h5py.File, path: Path) -> None:
    if f.attrs.get("format") != "fragbias-fitparams":
        raise FitParamsFormatError(f"{path} is not a fragbias fit parameter file")


def list_samples(path: Path | str) -> list[str]:
    """Sample ids stored in a fit parameter file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Fit parameter file not found: {path}")
    with h5py.File(path, "r") as f:
        _check_format(f, path)
        return list(f.keys())


def load_fit_params(path: Path | str, sample_id: str) -> FitParams:
    """Read one sample's FitParams.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        KeyError: If the sample is not in the file.
        FitParamsFormatError: If the file has the wrong format.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Fit parameter file not found: {path}")

    with h5py.File(path, "r") as f:
        _check_format(f, path)
        if sample_id not in f:
            raise KeyError(f"Sample {sample_id} not found in {path}")
        group = f[sample_id]
        background = BackgroundModel(group["background"][()])
        vlmm = _read_vlmm(group["vlmm"], background) if "vlmm" in group else None
        order = json.loads(group["models"].attrs["order"])
        models = {name: _read_model(group["models"][name]) for name in order}
        return FitParams(
            sample_id=sample_id,
            read_length=int(group.attrs["read_length"]),
            min_size=int(group.attrs["min_size"]),
            max_size=int(group.attrs["max_size"]),
            fraglen_density=group["fraglen_density"][()],
            vlmm=vlmm,
            background=background,
            models=models,
        )

