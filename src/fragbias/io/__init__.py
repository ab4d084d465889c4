"""Input/Output adapters for fragbias.

This package connects the numerical core to its external collaborators:

- fasta: Genome access (pyfaidx)
- gff: GFF3/GTF annotation loading into a flat transcript index
- bam: Paired-end fragment counting (pysam)
- hdf5: Persistence of fitted bias parameters (h5py)
"""

from fragbias.io.fasta import GenomeAccessor
from fragbias.io.gff import TranscriptIndex, load_annotation
from fragbias.io.hdf5 import list_samples, load_fit_params, save_fit_params

__all__ = [
    "GenomeAccessor",
    "TranscriptIndex",
    "list_samples",
    "load_annotation",
    "load_fit_params",
    "save_fit_params",
]
