"""Utility functions for fragbias.

- Interval operations and spliced/genomic coordinate mapping
- Sequence encoding and GC prefix sums
- Logging configuration

Example:
    >>> from fragbias.utils import ExonSet, IntervalMapper
    >>> mapper = IntervalMapper(ExonSet("tx1", "g1", "chr1", "+", [(0, 100), (200, 300)]))
    >>> mapper.to_genomic(150)
    250
"""

from fragbias.utils.intervals import ExonSet, IntervalMapper

__all__ = [
    "ExonSet",
    "IntervalMapper",
]
