"""Configuration management for fragbias.

This module holds every tunable of a fit or estimation run. Configuration
can come from:
- Default values
- A YAML configuration file
- Command-line overrides applied by the CLI

All sections are validated by ``Config.validate``, which raises
ConfigurationError before any enumeration or fitting starts.

Example:
    >>> from fragbias.config import Config
    >>> config = Config.load("fragbias.yaml")
    >>> config.enumeration.read_length
    75
    >>> [m.name for m in config.fit.models]
    ['null', 'fraglen', 'fraglen_vlmm', 'gc', 'all']
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import attr
import attrs
import yaml

from fragbias.errors import ConfigurationError

# =============================================================================
# Default Configuration Values
# =============================================================================

# Fragment enumeration defaults
DEFAULT_READ_LENGTH = 75
DEFAULT_MIN_SIZE = 100
DEFAULT_MAX_SIZE = 300
DEFAULT_GC_STRETCHES = ((20, 0.8), (20, 0.9), (40, 0.8), (40, 0.9))

# Samples estimated together may differ by this much in read length
READ_LENGTH_TOLERANCE = 1

# Read-start context model defaults
DEFAULT_VLMM_NPRE = 8
DEFAULT_VLMM_NPOST = 12
DEFAULT_VLMM_MAX_ORDER = 2
DEFAULT_VLMM_PSEUDOCOUNT = 1.0
DEFAULT_MIN_CONTEXT_COUNT = 5

# Spline knots
DEFAULT_GC_KNOTS = (0.4, 0.5, 0.6)
DEFAULT_GC_BOUNDARY = (0.0, 1.0)
DEFAULT_RELPOS_KNOTS = (0.25, 0.5, 0.75)
DEFAULT_RELPOS_BOUNDARY = (0.0, 1.0)

# Regression fitting
DEFAULT_ZERO_TO_POSITIVE = 20
DEFAULT_FRAGLEN_PSEUDOCOUNT = 1.0
DEFAULT_GLM_MAX_ITER = 50
DEFAULT_GLM_TOL = 1e-8

# Abundance estimation
DEFAULT_LIBRARY_SIZE = 1e6
DEFAULT_EM_MAX_ITER = 5000
DEFAULT_EM_TOL = 1e-10

# Parallel processing
DEFAULT_MAX_WORKERS = 1

# Recognized model vocabulary
SPLINE_TERMS = ("gc", "relpos")
INDICATOR_TERMS = ("gc_stretch",)
RECOGNIZED_TERMS = SPLINE_TERMS + INDICATOR_TERMS + ("gene",)
RECOGNIZED_OFFSETS = ("fraglen", "vlmm")


def _to_tuple(value: Any) -> tuple:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(value)


def _to_pairs(value: Any) -> tuple[tuple[str, str], ...]:
    if value is None:
        return ()
    return tuple(tuple(pair) for pair in value)


def _to_stretches(value: Any) -> tuple[tuple[int, float], ...]:
    return tuple((int(w), float(t)) for w, t in value)


# =============================================================================
# Configuration Classes
# =============================================================================


@attrs.define
class EnumerationConfig:
    """Configuration for fragment-type enumeration.

    Attributes:
        read_length: Read length shared by all samples (tolerance +/- 1 bp).
        min_size: Smallest fragment length enumerated.
        max_size: Largest fragment length enumerated.
        gc_stretches: (window, threshold) pairs for GC-stretch indicators.
    """

    read_length: int = DEFAULT_READ_LENGTH
    min_size: int = DEFAULT_MIN_SIZE
    max_size: int = DEFAULT_MAX_SIZE
    gc_stretches: tuple[tuple[int, float], ...] = attrs.field(
        default=DEFAULT_GC_STRETCHES, converter=_to_stretches
    )

    def validate(self) -> None:
        """Raise ConfigurationError on inconsistent sizes or stretches."""
        if self.read_length <= 0:
            raise ConfigurationError(f"read_length must be positive, got {self.read_length}")
        if self.min_size < self.read_length:
            raise ConfigurationError(
                f"min_size ({self.min_size}) must be at least read_length ({self.read_length})"
            )
        if self.max_size < self.min_size:
            raise ConfigurationError(
                f"max_size ({self.max_size}) must be >= min_size ({self.min_size})"
            )
        for window, threshold in self.gc_stretches:
            if not 0 < window <= self.min_size:
                raise ConfigurationError(
                    f"GC-stretch window {window} must be in (0, min_size={self.min_size}]"
                )
            if not 0.0 < threshold <= 1.0:
                raise ConfigurationError(f"GC-stretch threshold {threshold} must be in (0, 1]")


@attrs.define
class VLMMConfig:
    """Configuration for the read-start context model.

    Attributes:
        npre: Bases modeled upstream of each fragment end.
        npost: Bases modeled downstream of each fragment end.
        max_order: Highest Markov order used inside the window.
        pseudocount: Laplace pseudocount added to every emission count.
        min_context_count: Contexts seen fewer times fall back to background.
    """

    npre: int = DEFAULT_VLMM_NPRE
    npost: int = DEFAULT_VLMM_NPOST
    max_order: int = DEFAULT_VLMM_MAX_ORDER
    pseudocount: float = DEFAULT_VLMM_PSEUDOCOUNT
    min_context_count: int = DEFAULT_MIN_CONTEXT_COUNT

    @property
    def width(self) -> int:
        """Total context window width."""
        return self.npre + self.npost

    def validate(self, read_length: int | None = None) -> None:
        """Raise ConfigurationError on an unusable window."""
        if self.npre < 0 or self.npost <= 0:
            raise ConfigurationError("VLMM window needs npre >= 0 and npost > 0")
        if not 0 <= self.max_order <= 3:
            raise ConfigurationError(f"VLMM max_order must be in [0, 3], got {self.max_order}")
        if self.pseudocount <= 0:
            raise ConfigurationError("VLMM pseudocount must be positive")
        if read_length is not None and self.npost > read_length:
            raise ConfigurationError(
                f"VLMM npost ({self.npost}) cannot exceed read_length ({read_length})"
            )


@attrs.define
class SplineConfig:
    """Knot placement for the natural cubic spline terms.

    Attributes:
        gc_knots: Interior knots of the GC spline.
        gc_boundary: Boundary knots of the GC spline.
        relpos_knots: Interior knots of the relative-position spline.
        relpos_boundary: Boundary knots of the relative-position spline.
    """

    gc_knots: tuple[float, ...] = attrs.field(default=DEFAULT_GC_KNOTS, converter=_to_tuple)
    gc_boundary: tuple[float, ...] = attrs.field(
        default=DEFAULT_GC_BOUNDARY, converter=_to_tuple
    )
    relpos_knots: tuple[float, ...] = attrs.field(
        default=DEFAULT_RELPOS_KNOTS, converter=_to_tuple
    )
    relpos_boundary: tuple[float, ...] = attrs.field(
        default=DEFAULT_RELPOS_BOUNDARY, converter=_to_tuple
    )

    def knots_for(self, term: str) -> tuple[tuple[float, ...], tuple[float, float]]:
        """(interior, boundary) knots of a spline term."""
        if term == "gc":
            return self.gc_knots, (self.gc_boundary[0], self.gc_boundary[1])
        if term == "relpos":
            return self.relpos_knots, (self.relpos_boundary[0], self.relpos_boundary[1])
        raise ConfigurationError(f"'{term}' is not a spline term")

    def validate(self) -> None:
        """Raise ConfigurationError when knots are misplaced."""
        for term in SPLINE_TERMS:
            interior, boundary = (
                (self.gc_knots, self.gc_boundary)
                if term == "gc"
                else (self.relpos_knots, self.relpos_boundary)
            )
            if len(boundary) != 2 or not boundary[0] < boundary[1]:
                raise ConfigurationError(f"{term} boundary knots must be two increasing values")
            if list(interior) != sorted(set(interior)):
                raise ConfigurationError(f"{term} interior knots must be strictly increasing")
            for knot in interior:
                if not boundary[0] < knot < boundary[1]:
                    raise ConfigurationError(
                        f"{term} knot {knot} lies outside boundary {tuple(boundary)}"
                    )


@attrs.define(frozen=True)
class ModelSpec:
    """A named bias model: which predictors and offsets are active.

    The gene fixed effect is added automatically whenever ``terms`` is
    non-empty. Offsets enter the linear predictor with coefficient 1.

    Attributes:
        name: Model name used as the key in results.
        terms: Active predictor terms (subset of gc, relpos, gc_stretch).
        offsets: Active offsets (subset of fraglen, vlmm).
        interactions: Pairs of spline terms whose tensor product is added.
    """

    name: str
    terms: tuple[str, ...] = attrs.field(default=(), converter=_to_tuple)
    offsets: tuple[str, ...] = attrs.field(default=(), converter=_to_tuple)
    interactions: tuple[tuple[str, str], ...] = attrs.field(default=(), converter=_to_pairs)

    @property
    def predictor_terms(self) -> tuple[str, ...]:
        """Terms other than the gene effect."""
        return tuple(t for t in self.terms if t != "gene")

    @property
    def has_predictors(self) -> bool:
        """Whether any coefficient has to be estimated."""
        return bool(self.predictor_terms)

    @property
    def uses_vlmm(self) -> bool:
        return "vlmm" in self.offsets

    def validate(self) -> None:
        """Reject unknown terms, offsets and interactions."""
        for term in self.terms:
            if term not in RECOGNIZED_TERMS:
                raise ConfigurationError(
                    f"Model '{self.name}': unrecognized term '{term}' "
                    f"(expected one of {', '.join(RECOGNIZED_TERMS)})"
                )
        for offset in self.offsets:
            if offset not in RECOGNIZED_OFFSETS:
                raise ConfigurationError(
                    f"Model '{self.name}': unrecognized offset '{offset}' "
                    f"(expected one of {', '.join(RECOGNIZED_OFFSETS)})"
                )
        if len(set(self.terms)) != len(self.terms) or len(set(self.offsets)) != len(self.offsets):
            raise ConfigurationError(f"Model '{self.name}': duplicated term or offset")
        for pair in self.interactions:
            if len(pair) != 2 or pair[0] == pair[1]:
                raise ConfigurationError(
                    f"Model '{self.name}': interaction {pair} must name two distinct terms"
                )
            for term in pair:
                if term not in SPLINE_TERMS:
                    raise ConfigurationError(
                        f"Model '{self.name}': interaction term '{term}' must be a spline term"
                    )
                if term not in self.terms:
                    raise ConfigurationError(
                        f"Model '{self.name}': interaction term '{term}' is not active"
                    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "terms": list(self.terms),
            "offsets": list(self.offsets),
            "interactions": [list(p) for p in self.interactions],
        }


DEFAULT_MODELS = (
    ModelSpec("null"),
    ModelSpec("fraglen", offsets=("fraglen",)),
    ModelSpec("fraglen_vlmm", offsets=("fraglen", "vlmm")),
    ModelSpec("gc", terms=("gc", "relpos"), offsets=("fraglen",)),
    ModelSpec(
        "all",
        terms=("gc", "relpos", "gc_stretch"),
        offsets=("fraglen", "vlmm"),
    ),
)


def _to_models(value: Any) -> list[ModelSpec]:
    models = []
    for item in value:
        models.append(item if isinstance(item, ModelSpec) else ModelSpec(**item))
    return models


@attrs.define
class FitConfig:
    """Configuration for bias model fitting.

    Attributes:
        models: Named model specifications to fit per sample.
        zero_to_positive: Zero-count fragment types kept per observed one,
            per training gene. None keeps every fragment type.
        fraglen_pseudocount: Pseudocount added to each length bin.
        max_iter: IRLS iteration cap.
        tol: Relative deviance change declaring convergence.
        seed: Seed for zero-count sub-sampling.
    """

    models: list[ModelSpec] = attrs.field(
        factory=lambda: list(DEFAULT_MODELS), converter=_to_models
    )
    zero_to_positive: int | None = DEFAULT_ZERO_TO_POSITIVE
    fraglen_pseudocount: float = DEFAULT_FRAGLEN_PSEUDOCOUNT
    max_iter: int = DEFAULT_GLM_MAX_ITER
    tol: float = DEFAULT_GLM_TOL
    seed: int = 0

    @property
    def needs_vlmm(self) -> bool:
        return any(m.uses_vlmm for m in self.models)

    def get_model(self, name: str) -> ModelSpec:
        for model in self.models:
            if model.name == name:
                return model
        raise ConfigurationError(f"Unknown model '{name}'")

    def validate(self) -> None:
        if not self.models:
            raise ConfigurationError("At least one model must be configured")
        names = [m.name for m in self.models]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Duplicated model names: {names}")
        for model in self.models:
            model.validate()
        if self.zero_to_positive is not None and self.zero_to_positive < 1:
            raise ConfigurationError("zero_to_positive must be >= 1 or None")
        if self.fraglen_pseudocount < 0:
            raise ConfigurationError("fraglen_pseudocount must be non-negative")


@attrs.define
class EstimateConfig:
    """Configuration for isoform abundance estimation.

    Attributes:
        library_size: Default library size when a sample has none.
        em_max_iter: EM iteration cap for multi-isoform genes.
        em_tol: Largest relative change in theta declaring convergence.
    """

    library_size: float = DEFAULT_LIBRARY_SIZE
    em_max_iter: int = DEFAULT_EM_MAX_ITER
    em_tol: float = DEFAULT_EM_TOL

    def validate(self) -> None:
        if self.library_size <= 0:
            raise ConfigurationError("library_size must be positive")


@attrs.define
class ParallelConfig:
    """Configuration for parallel processing.

    Attributes:
        max_workers: Maximum number of parallel workers.
        backend: serial, threads or processes.
    """

    max_workers: int = DEFAULT_MAX_WORKERS
    backend: str = "processes"

    def validate(self) -> None:
        if self.backend not in ("serial", "threads", "processes"):
            raise ConfigurationError(f"Unknown parallel backend '{self.backend}'")
        if self.max_workers < 1:
            raise ConfigurationError("max_workers must be >= 1")


@attrs.define
class Config:
    """Main configuration container for fragbias.

    Attributes:
        enumeration: Fragment-type enumeration settings.
        vlmm: Read-start context model settings.
        splines: Spline knot placement.
        fit: Bias model fitting settings.
        estimate: Abundance estimation settings.
        parallel: Parallel processing settings.
    """

    enumeration: EnumerationConfig = attrs.Factory(EnumerationConfig)
    vlmm: VLMMConfig = attrs.Factory(VLMMConfig)
    splines: SplineConfig = attrs.Factory(SplineConfig)
    fit: FitConfig = attrs.Factory(FitConfig)
    estimate: EstimateConfig = attrs.Factory(EstimateConfig)
    parallel: ParallelConfig = attrs.Factory(ParallelConfig)

    def validate(self) -> "Config":
        """Validate every section; returns self for chaining."""
        self.enumeration.validate()
        self.vlmm.validate(self.enumeration.read_length)
        self.splines.validate()
        self.fit.validate()
        self.estimate.validate()
        self.parallel.validate()
        return self

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Build a configuration from a nested dictionary.

        Raises:
            ConfigurationError: On unknown sections or keys.
        """
        sections = {
            "enumeration": EnumerationConfig,
            "vlmm": VLMMConfig,
            "splines": SplineConfig,
            "fit": FitConfig,
            "estimate": EstimateConfig,
            "parallel": ParallelConfig,
        }
        kwargs = {}
        for key, value in (data or {}).items():
            if key not in sections:
                raise ConfigurationError(f"Unknown configuration section '{key}'")
            try:
                kwargs[key] = sections[key](**(value or {}))
            except TypeError as e:
                raise ConfigurationError(f"Invalid '{key}' section: {e}") from e
        return cls(**kwargs)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load and validate configuration from a YAML file.

        Args:
            path: Path to configuration file. If None, returns defaults.

        Raises:
            FileNotFoundError: If configuration file doesn't exist.
            ConfigurationError: If configuration file is invalid.
        """
        if path is None:
            return cls().validate()

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Cannot parse {path}: {e}") from e

        if data is not None and not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a mapping at top level")
        return cls.from_dict(data or {}).validate()

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to a plain dictionary."""
        data = attr.asdict(self, retain_collection_types=False)
        data["fit"]["models"] = [m.to_dict() for m in self.fit.models]
        data["enumeration"]["gc_stretches"] = [
            list(s) for s in self.enumeration.gc_stretches
        ]
        for key in ("gc_knots", "gc_boundary", "relpos_knots", "relpos_boundary"):
            data["splines"][key] = list(data["splines"][key])
        return data

    def save(self, path: Path | str) -> None:
        """Save configuration as YAML."""
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)
