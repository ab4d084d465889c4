"""GFF3/GTF annotation loading.

Annotations are reduced to a flat index: one ExonSet per transcript plus a
transcript-to-gene map. No gene/transcript object graph is built.

GFF3 exons point at transcripts through ``Parent``; transcripts point at
genes the same way. GTF exons carry ``gene_id`` and ``transcript_id``
attributes directly. The format is detected per line from the attribute
syntax.

Example:
    >>> from fragbias.io.gff import load_annotation
    >>> index = load_annotation("genes.gff3")
    >>> index.single_isoform_genes()[:3]
    ['gene1', 'gene4', 'gene7']
    >>> [t.transcript_id for t in index.isoforms("gene2")]
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from pathlib import Path
from typing import Any

import attrs

from fragbias.utils.intervals import ExonSet, Interval, merge_intervals

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

# GFF3 column indices
COL_SEQID = 0
COL_TYPE = 2
COL_START = 3
COL_END = 4
COL_STRAND = 6
COL_ATTRIBUTES = 8

FEATURE_TYPES_TRANSCRIPT = {"mRNA", "transcript", "ncRNA", "lnc_RNA"}
FEATURE_TYPES_EXON = {"exon"}

_GTF_ATTRIBUTE = re.compile(r'\s*([^\s;]+)\s+"?([^";]*)"?\s*;?')


# =============================================================================
# Attribute Parsing
# =============================================================================


def parse_attributes(attr_string: str) -> dict[str, str]:
    """Parse a GFF3 (key=value;) or GTF (key "value";) attribute string."""
    attributes: dict[str, str] = {}
    if not attr_string or attr_string == ".":
        return attributes

    if "=" not in attr_string.split(";")[0]:
        for key, value in _GTF_ATTRIBUTE.findall(attr_string):
            attributes.setdefault(key, value)
        return attributes

    for item in attr_string.split(";"):
        item = item.strip()
        if not item or "=" not in item:
            continue
        key, value = item.split("=", 1)
        value = value.replace("%3B", ";").replace("%3D", "=").replace("%26", "&")
        value = value.replace("%2C", ",")
        attributes[key] = value
    return attributes


def _parse_line(line: str) -> dict[str, Any] | None:
    line = line.strip()
    if not line or line.startswith("#"):
        return None

    parts = line.split("\t")
    if len(parts) < 9:
        logger.warning(f"Malformed annotation line (expected 9 columns): {line[:50]}...")
        return None

    try:
        return {
            "seqid": parts[COL_SEQID],
            "type": parts[COL_TYPE],
            # 1-based closed -> 0-based half-open
            "start": int(parts[COL_START]) - 1,
            "end": int(parts[COL_END]),
            "strand": parts[COL_STRAND],
            "attributes": parse_attributes(parts[COL_ATTRIBUTES]),
        }
    except ValueError as e:
        logger.warning(f"Error parsing annotation line: {e}")
        return None


# =============================================================================
# Transcript Index
# =============================================================================


@attrs.define
class TranscriptIndex:
    """Flat transcript and gene index.

    Attributes:
        transcripts: Transcript id -> ExonSet.
        gene_to_transcripts: Gene id -> transcript ids in file order.
    """

    transcripts: dict[str, ExonSet] = attrs.Factory(dict)
    gene_to_transcripts: dict[str, list[str]] = attrs.Factory(dict)

    @classmethod
    def from_exon_sets(cls, exon_sets: list[ExonSet]) -> "TranscriptIndex":
        index = cls()
        for exon_set in exon_sets:
            index.add(exon_set)
        return index

    def add(self, exon_set: ExonSet) -> None:
        if exon_set.transcript_id in self.transcripts:
            raise ValueError(f"Duplicate transcript id {exon_set.transcript_id}")
        self.transcripts[exon_set.transcript_id] = exon_set
        self.gene_to_transcripts.setdefault(exon_set.gene_id, []).append(
            exon_set.transcript_id
        )

    def __len__(self) -> int:
        return len(self.transcripts)

    def __contains__(self, transcript_id: str) -> bool:
        return transcript_id in self.transcripts

    @property
    def gene_ids(self) -> list[str]:
        return list(self.gene_to_transcripts)

    def gene_of(self, transcript_id: str) -> str:
        return self.transcripts[transcript_id].gene_id

    def isoforms(self, gene_id: str) -> list[ExonSet]:
        """ExonSets of one gene.

        Raises:
            KeyError: If the gene is unknown.
        """
        return [self.transcripts[t] for t in self.gene_to_transcripts[gene_id]]

    def single_isoform_genes(self) -> list[str]:
        """Genes with exactly one annotated transcript."""
        return [g for g, tids in self.gene_to_transcripts.items() if len(tids) == 1]


# =============================================================================
# Loading
# =============================================================================


def load_annotation(path: Path | str) -> TranscriptIndex:
    """Load exon structures from a GFF3 or GTF file.

    Overlapping or touching exons of one transcript are merged. Transcripts
    without exons or with an unknown strand are skipped with a warning.

    Raises:
        FileNotFoundError: If the file doesn't exist.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Annotation file not found: {path}")

    transcript_gene: dict[str, str] = {}
    transcript_loc: dict[str, tuple[str, str]] = {}
    exons: dict[str, list[Interval]] = defaultdict(list)

    with open(path) as f:
        for line in f:
            feature = _parse_line(line)
            if feature is None:
                continue
            ftype = feature["type"]
            attributes = feature["attributes"]

            if ftype in FEATURE_TYPES_TRANSCRIPT:
                tx_id = attributes.get("ID", attributes.get("transcript_id"))
                gene_id = attributes.get("Parent", attributes.get("gene_id", ""))
                if tx_id:
                    transcript_gene[tx_id] = gene_id.split(",")[0] or tx_id

            elif ftype in FEATURE_TYPES_EXON:
                if "transcript_id" in attributes:
                    parents = [attributes["transcript_id"]]
                    if "gene_id" in attributes:
                        transcript_gene.setdefault(parents[0], attributes["gene_id"])
                else:
                    parents = [p for p in attributes.get("Parent", "").split(",") if p]
                for tx_id in parents:
                    exons[tx_id].append(Interval(feature["start"], feature["end"]))
                    transcript_loc.setdefault(tx_id, (feature["seqid"], feature["strand"]))

    index = TranscriptIndex()
    skipped = 0
    for tx_id, tx_exons in exons.items():
        seqid, strand = transcript_loc[tx_id]
        if strand not in ("+", "-"):
            skipped += 1
            continue
        merged = merge_intervals(tx_exons)
        index.add(
            ExonSet(
                transcript_id=tx_id,
                gene_id=transcript_gene.get(tx_id, tx_id),
                seqid=seqid,
                strand=strand,
                exons=[(iv.start, iv.end) for iv in merged],
            )
        )

    if skipped:
        logger.warning(f"Skipped {skipped} transcripts without a strand")
    logger.info(
        f"Loaded {len(index)} transcripts in {len(index.gene_to_transcripts)} genes "
        f"from {path.name}"
    )
    return index
