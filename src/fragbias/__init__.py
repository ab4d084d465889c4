"""fragbias: bias-aware isoform quantification for paired-end RNA-seq.

fragbias models sequence-dependent fragment bias (GC content, read-start
context, fragment length, position in the transcript) with per-sample
Poisson regressions and uses the fitted models to estimate isoform
abundances.

Example:
    >>> import fragbias
    >>> fragbias.__version__
    '0.1.0'

Modules:
    core: Enumeration, read-start model, bias fitting, abundance estimation
    io: FASTA, GFF3/GTF, BAM and HDF5 adapters
    parallel: Parallel map over transcripts, samples and genes
    utils: Intervals, sequences and logging
"""

__version__ = "0.1.0"

__all__ = [
    "__version__",
]
