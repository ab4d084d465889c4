"""Core numerical logic for fragbias.

- Fragment-type enumeration with GC, position and GC-stretch covariates
- Read-start context model (VLMM)
- Natural spline Poisson bias models
- Isoform abundance estimation
- Aggregation, coverage prediction and GC-bias tables

Example:
    >>> from fragbias.core import BiasModelFitter, AbundanceEstimator
"""

from fragbias.core.abundance import AbundanceEstimator, AbundanceResult, GeneFragmentSpace
from fragbias.core.aggregate import (
    CoveragePredictor,
    ResultAggregator,
    gc_bias_table,
)
from fragbias.core.fit import BiasModelFitter, FitParams, FittedModel
from fragbias.core.fragtypes import (
    FragmentKey,
    FragmentTypeTable,
    WindowSignature,
    enumerate_fragment_types,
)
from fragbias.core.vlmm import ContextScorer, VLMMParams

__all__: list[str] = [
    "AbundanceEstimator",
    "AbundanceResult",
    "BiasModelFitter",
    "ContextScorer",
    "CoveragePredictor",
    "FitParams",
    "FittedModel",
    "FragmentKey",
    "FragmentTypeTable",
    "GeneFragmentSpace",
    "ResultAggregator",
    "VLMMParams",
    "WindowSignature",
    "enumerate_fragment_types",
    "gc_bias_table",
]
