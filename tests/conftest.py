"""Pytest configuration and shared fixtures for fragbias tests.

This module contains fixtures that are shared across multiple test modules.

Fixtures are organized by type:
- Genome fixtures: In-memory and on-disk synthetic genomes
- Transcript fixtures: ExonSets on both strands
- Model fixtures: Small configurations and hand-built fit parameters
- Training fixtures: Enumerated tables with simulated fragment counts
"""

from pathlib import Path

import numpy as np
import pytest

from fragbias.config import (
    Config,
    EnumerationConfig,
    FitConfig,
    ModelSpec,
    VLMMConfig,
)
from fragbias.core.fit import FitParams, FittedModel
from fragbias.core.fragtypes import FragmentKey, enumerate_fragment_types
from fragbias.core.vlmm import BackgroundModel
from fragbias.utils.intervals import ExonSet
from fragbias.utils.sequences import reverse_complement, spliced_sequence

# Small geometry used throughout: 20 bp reads, 40-60 bp fragments
READ_LENGTH = 20
MIN_SIZE = 40
MAX_SIZE = 60


# =============================================================================
# Helpers
# =============================================================================


class InMemoryGenome:
    """Dictionary-backed genome with the GenomeAccessor interface."""

    def __init__(self, sequences: dict[str, str]) -> None:
        self.sequences = dict(sequences)

    def get_sequence(self, seqid: str, start: int, end: int, strand: str = "+") -> str:
        sequence = self.sequences[seqid][start:end]
        if strand == "-":
            sequence = reverse_complement(sequence)
        return sequence


def random_sequence(length: int, seed: int = 0, gc: float = 0.5) -> str:
    """Reproducible random DNA with a target GC fraction."""
    rng = np.random.default_rng(seed)
    p = [(1 - gc) / 2, gc / 2, gc / 2, (1 - gc) / 2]
    return "".join(rng.choice(list("ACGT"), size=length, p=p))


def gc_content(sequence: str) -> float:
    """GC fraction counted base by base."""
    if not sequence:
        return 0.0
    return sum(base in "GCgc" for base in sequence) / len(sequence)


def fragment_key_of(table, row: int) -> FragmentKey:
    """FragmentKey that an aligned pair of the given row would produce."""
    start = int(table.start[row])
    end = int(table.end[row])
    return FragmentKey(
        table.five_signatures[start], table.three_signatures[end - table.read_length]
    )


def write_fasta(path: Path, sequences: dict[str, str]) -> Path:
    with open(path, "w") as f:
        for seqid, seq in sequences.items():
            f.write(f">{seqid}\n")
            # Write in 80-character lines
            for i in range(0, len(seq), 80):
                f.write(seq[i : i + 80] + "\n")
    return path


@pytest.fixture
def make_genome():
    """Factory for in-memory genomes."""
    return InMemoryGenome


@pytest.fixture
def key_of():
    """Function mapping (table, row) to the FragmentKey of that row."""
    return fragment_key_of


# =============================================================================
# Genome Fixtures
# =============================================================================


@pytest.fixture
def genome() -> InMemoryGenome:
    """A 3 kb random chromosome ``chr1``."""
    return InMemoryGenome({"chr1": random_sequence(3000, seed=7)})


@pytest.fixture
def synthetic_fasta(tmp_path: Path) -> Path:
    """Create a synthetic FASTA file for testing.

    Creates a small genome with two scaffolds:
    - chr1: 4000 bp
    - chr2: 500 bp
    """
    # Generate reproducible sequences
    np.random.seed(42)

    sequences = {
        "chr1": "".join(np.random.choice(list("ACGT"), 4000)),
        "chr2": "".join(np.random.choice(list("ACGT"), 500)),
    }
    return write_fasta(tmp_path / "test_genome.fa", sequences)


@pytest.fixture
def synthetic_gff3(tmp_path: Path) -> Path:
    """GFF3 with three single-isoform genes and one two-isoform gene."""
    gff_path = tmp_path / "test_annotations.gff3"

    content = """\
##gff-version 3
##sequence-region chr1 1 4000
chr1\ttest\tgene\t101\t400\t.\t+\t.\tID=gene1;Name=TestGene1
chr1\ttest\tmRNA\t101\t400\t.\t+\t.\tID=mRNA1;Parent=gene1
chr1\ttest\texon\t101\t400\t.\t+\t.\tID=exon1;Parent=mRNA1
chr1\ttest\tgene\t1001\t1300\t.\t-\t.\tID=gene2;Name=TestGene2
chr1\ttest\tmRNA\t1001\t1300\t.\t-\t.\tID=mRNA2;Parent=gene2
chr1\ttest\texon\t1001\t1300\t.\t-\t.\tID=exon2;Parent=mRNA2
chr1\ttest\tgene\t1501\t1800\t.\t+\t.\tID=gene3;Name=TestGene3
chr1\ttest\tmRNA\t1501\t1800\t.\t+\t.\tID=mRNA3;Parent=gene3
chr1\ttest\texon\t1501\t1800\t.\t+\t.\tID=exon3;Parent=mRNA3
chr1\ttest\tgene\t2001\t3000\t.\t+\t.\tID=gene4;Name=TestGene4
chr1\ttest\tmRNA\t2001\t3000\t.\t+\t.\tID=mRNA4a;Parent=gene4
chr1\ttest\texon\t2001\t2200\t.\t+\t.\tID=exon4a1;Parent=mRNA4a
chr1\ttest\texon\t2401\t2600\t.\t+\t.\tID=exon4a2;Parent=mRNA4a
chr1\ttest\texon\t2801\t3000\t.\t+\t.\tID=exon4a3;Parent=mRNA4a
chr1\ttest\tCDS\t2001\t2200\t.\t+\t0\tID=cds4a1;Parent=mRNA4a
chr1\ttest\tmRNA\t2001\t3000\t.\t+\t.\tID=mRNA4b;Parent=gene4
chr1\ttest\texon\t2001\t2200\t.\t+\t.\tID=exon4b1;Parent=mRNA4b
chr1\ttest\texon\t2801\t3000\t.\t+\t.\tID=exon4b2;Parent=mRNA4b
"""
    gff_path.write_text(content)
    return gff_path


# =============================================================================
# Transcript Fixtures
# =============================================================================


@pytest.fixture
def plus_exon_set() -> ExonSet:
    """Two-exon plus-strand transcript, 90 bp spliced."""
    return ExonSet("tx_plus", "gene_plus", "chr1", "+", ((100, 130), (200, 260)))


@pytest.fixture
def minus_exon_set() -> ExonSet:
    """Same exons on the minus strand."""
    return ExonSet("tx_minus", "gene_minus", "chr1", "-", ((100, 130), (200, 260)))


@pytest.fixture
def isoform_exon_sets() -> dict[str, list[ExonSet]]:
    """Genes with distinguishable, identical and disjoint isoforms."""
    return {
        "skip": [
            ExonSet("tx_long", "skip", "chr1", "+", ((100, 300), (500, 700), (900, 1100))),
            ExonSet("tx_short", "skip", "chr1", "+", ((100, 300), (900, 1100))),
        ],
        "twins": [
            ExonSet("tx_a", "twins", "chr1", "+", ((1200, 1500),)),
            ExonSet("tx_b", "twins", "chr1", "+", ((1200, 1500),)),
        ],
        "apart": [
            ExonSet("tx_c", "apart", "chr1", "-", ((1600, 1900),)),
            ExonSet("tx_d", "apart", "chr1", "-", ((2200, 2500),)),
        ],
    }


@pytest.fixture
def isoform_tables(isoform_exon_sets, genome) -> dict[str, list]:
    """Fragment-type tables of ``isoform_exon_sets`` in the small geometry."""
    return {
        gene: [
            enumerate_fragment_types(
                e,
                spliced_sequence(e, genome),
                read_length=READ_LENGTH,
                min_size=MIN_SIZE,
                max_size=MAX_SIZE,
            )
            for e in exon_sets
        ]
        for gene, exon_sets in isoform_exon_sets.items()
    }


# =============================================================================
# Model Fixtures
# =============================================================================


@pytest.fixture
def small_config() -> Config:
    """Configuration for the small geometry with five fast models."""
    return Config(
        enumeration=EnumerationConfig(
            read_length=READ_LENGTH,
            min_size=MIN_SIZE,
            max_size=MAX_SIZE,
            gc_stretches=((10, 0.8),),
        ),
        vlmm=VLMMConfig(npre=2, npost=4, min_context_count=1),
        fit=FitConfig(
            models=[
                ModelSpec("null"),
                ModelSpec("fraglen", offsets=("fraglen",)),
                ModelSpec("fraglen_vlmm", offsets=("fraglen", "vlmm")),
                ModelSpec("gc", terms=("gc", "relpos"), offsets=("fraglen",)),
                ModelSpec("gc_vlmm", terms=("gc",), offsets=("fraglen", "vlmm")),
            ],
            zero_to_positive=None,
        ),
    ).validate()


@pytest.fixture
def gc_model() -> FittedModel:
    """Hand-built model with a GC spline and no gene effect."""
    return FittedModel(
        spec=ModelSpec("gc", terms=("gc",)),
        column_names=("gc1", "gc2", "gc3", "gc4"),
        coefficients=[1.0, -0.5, 0.3, 0.2],
        std_errors=[0.1, 0.1, 0.1, 0.1],
        knots={"gc": ((0.4, 0.5, 0.6), (0.0, 1.0))},
    )


@pytest.fixture
def flat_params(gc_model) -> FitParams:
    """Fit parameters with a uniform length density and no read-start model."""
    n_bins = MAX_SIZE - MIN_SIZE + 1
    return FitParams(
        sample_id="s1",
        read_length=READ_LENGTH,
        min_size=MIN_SIZE,
        max_size=MAX_SIZE,
        fraglen_density=np.full(n_bins, 1.0 / n_bins),
        vlmm=None,
        background=BackgroundModel.uniform(),
        models={"null": FittedModel(spec=ModelSpec("null")), "gc": gc_model},
    )


# =============================================================================
# Training Fixtures
# =============================================================================

# Simulated log-linear GC effect of the training panel
GC_SLOPE = 2.0


@pytest.fixture
def training_panel(small_config) -> dict:
    """Six single-exon training genes with Poisson counts.

    Genes differ in GC content (0.30 to 0.70) and expression; counts follow
    ``scale_g * exp(GC_SLOPE * (gc - 0.5))`` per fragment type.

    Returns:
        Dictionary with genome, exon_sets, tables and counts.
    """
    blocks = [random_sequence(1000, seed=100 + i, gc=0.30 + 0.08 * i) for i in range(6)]
    genome = InMemoryGenome({"chr1": "".join(blocks)})
    rng = np.random.default_rng(42)

    exon_sets, tables, counts = [], [], []
    for i in range(6):
        strand = "+" if i % 2 == 0 else "-"
        exon_set = ExonSet(
            f"train{i}", f"gtrain{i}", "chr1", strand, ((i * 1000 + 100, i * 1000 + 400),)
        )
        table = enumerate_fragment_types(
            exon_set,
            spliced_sequence(exon_set, genome),
            read_length=small_config.enumeration.read_length,
            min_size=small_config.enumeration.min_size,
            max_size=small_config.enumeration.max_size,
            gc_stretches=small_config.enumeration.gc_stretches,
        )
        scale = 0.2 + 0.05 * i
        mu = scale * np.exp(GC_SLOPE * (table.gc - 0.5))
        exon_sets.append(exon_set)
        tables.append(table)
        counts.append(rng.poisson(mu).astype(np.float64))

    return {"genome": genome, "exon_sets": exon_sets, "tables": tables, "counts": counts}


# =============================================================================
# Marker Configuration
# =============================================================================


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
