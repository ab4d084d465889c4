"""FASTA access to the reference genome.

Uses pyfaidx for indexed random access. Sequences are fetched once per
transcript (exon by exon) before fragment enumeration, so the accessor is
never touched inside the enumeration loop.

Example:
    >>> from fragbias.io.fasta import GenomeAccessor
    >>> with GenomeAccessor("genome.fa") as genome:
    ...     seq = genome.get_sequence("chr1", 1000, 2000)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Literal

import pyfaidx

from fragbias.utils.sequences import reverse_complement

Strand = Literal["+", "-"]

logger = logging.getLogger(__name__)


class GenomeAccessor:
    """Indexed FASTA access using pyfaidx.

    Attributes:
        path: Path to the FASTA file.

    Example:
        >>> genome = GenomeAccessor("genome.fa")
        >>> genome.get_sequence("chr1", 1000, 2000, strand="-")
    """

    def __init__(self, fasta_path: Path | str) -> None:
        """Open the FASTA file, creating a .fai index if needed.

        Raises:
            FileNotFoundError: If the FASTA file doesn't exist.
        """
        self.path = Path(fasta_path)
        if not self.path.exists():
            raise FileNotFoundError(f"FASTA file not found: {self.path}")

        self._fasta: pyfaidx.Fasta | None = pyfaidx.Fasta(
            str(self.path),
            sequence_always_upper=True,
            read_ahead=10000,
            rebuild=False,
        )
        self._lengths = {seqid: len(self._fasta[seqid]) for seqid in self._fasta.keys()}

        logger.info(
            f"Opened FASTA: {self.path.name}, {len(self._lengths)} sequences, "
            f"{sum(self._lengths.values()):,} bp total"
        )

    @property
    def scaffold_lengths(self) -> dict[str, int]:
        """Return {seqid: length} mapping."""
        return self._lengths.copy()

    def __enter__(self) -> GenomeAccessor:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        """Close the FASTA file."""
        if self._fasta is not None:
            self._fasta.close()
            self._fasta = None

    def __contains__(self, seqid: str) -> bool:
        return seqid in self._lengths

    def get_length(self, seqid: str) -> int:
        if seqid not in self._lengths:
            raise KeyError(f"Unknown scaffold: {seqid}")
        return self._lengths[seqid]

    def get_sequence(
        self,
        seqid: str,
        start: int,
        end: int,
        strand: Strand = "+",
    ) -> str:
        """Get sequence for region (0-based, half-open coordinates).

        Args:
            seqid: Scaffold/chromosome name.
            start: Start position (0-based, inclusive).
            end: End position (0-based, exclusive).
            strand: Strand (+ or -). Returns reverse complement if "-".

        Raises:
            KeyError: If seqid not in FASTA.
            ValueError: If coordinates are invalid.
        """
        if self._fasta is None:
            raise RuntimeError("FASTA file not opened")

        scaffold_length = self.get_length(seqid)
        if start < 0:
            raise ValueError(f"Start position cannot be negative: {start}")
        if end > scaffold_length:
            raise ValueError(
                f"End position {end} exceeds scaffold length {scaffold_length}"
            )
        if start >= end:
            raise ValueError(f"Start ({start}) must be less than end ({end})")

        sequence = str(self._fasta[seqid][start:end])
        if strand == "-":
            sequence = reverse_complement(sequence)
        return sequence
