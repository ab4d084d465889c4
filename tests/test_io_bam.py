"""Unit tests for fragbias.io.bam module.

Tests cover:
- CIGAR parsing into genomic blocks
- Fragment keys and their agreement with fragment-type tables
- FragmentCounter filtering and mate pairing

Note: These tests use mocking since creating real BAM files requires
complex setup.
"""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from fragbias.core.fragtypes import FragmentKey, WindowSignature, enumerate_fragment_types
from fragbias.io.bam import (
    CIGAR_D,
    CIGAR_I,
    CIGAR_M,
    CIGAR_N,
    CIGAR_S,
    FragmentCounter,
    fragment_key,
    read_blocks,
)
from fragbias.utils.intervals import IntervalMapper

from conftest import random_sequence


def make_read(
    name: str,
    start: int,
    cigar: list[tuple[int, int]],
    mapq: int = 60,
    **flags,
) -> MagicMock:
    """Mock aligned read with sensible default flags."""
    read = MagicMock()
    read.query_name = name
    read.reference_start = start
    read.cigartuples = cigar
    read.mapping_quality = mapq
    read.is_unmapped = flags.get("is_unmapped", False)
    read.mate_is_unmapped = flags.get("mate_is_unmapped", False)
    read.is_paired = flags.get("is_paired", True)
    read.is_proper_pair = flags.get("is_proper_pair", True)
    read.is_secondary = flags.get("is_secondary", False)
    read.is_supplementary = flags.get("is_supplementary", False)
    read.is_duplicate = flags.get("is_duplicate", False)
    return read


# =============================================================================
# CIGAR Parsing Tests
# =============================================================================


class TestReadBlocks:
    """Tests for splitting alignments into genomic blocks."""

    def test_simple_match(self):
        assert read_blocks(make_read("r", 100, [(CIGAR_M, 20)])) == [(100, 120)]

    def test_spliced(self):
        read = make_read("r", 100, [(CIGAR_M, 10), (CIGAR_N, 50), (CIGAR_M, 10)])
        assert read_blocks(read) == [(100, 110), (160, 170)]

    def test_deletion_extends_block(self):
        read = make_read("r", 100, [(CIGAR_M, 5), (CIGAR_D, 3), (CIGAR_M, 5)])
        assert read_blocks(read) == [(100, 113)]

    def test_insertion_and_clip_consume_no_reference(self):
        read = make_read("r", 100, [(CIGAR_S, 4), (CIGAR_M, 5), (CIGAR_I, 2), (CIGAR_M, 5)])
        assert read_blocks(read) == [(100, 110)]

    def test_no_cigar(self):
        assert read_blocks(make_read("r", 100, None)) == []


# =============================================================================
# Fragment Key Tests
# =============================================================================


class TestFragmentKey:
    """Tests for fragment keys of read pairs."""

    def test_plus_strand(self):
        key = fragment_key([(100, 120)], [(150, 160), (200, 210)], "+")
        assert key.five == WindowSignature(100, ())
        assert key.three == WindowSignature(210, ((160, 200),))

    def test_minus_strand_swaps_ends(self):
        key = fragment_key([(100, 120)], [(150, 170)], "-")
        assert key == FragmentKey(WindowSignature(170, ()), WindowSignature(100, ()))

    @pytest.mark.parametrize("fixture_name", ["plus_exon_set", "minus_exon_set"])
    def test_agrees_with_tables(self, fixture_name, request, key_of):
        """Aligned mates of a fragment type produce that row's key."""
        exon_set = request.getfixturevalue(fixture_name)
        table = enumerate_fragment_types(exon_set, random_sequence(90), 20, 40, 60)
        mapper = IntervalMapper(exon_set)
        R = table.read_length
        for row in range(0, len(table), 37):
            s, e = int(table.start[row]), int(table.end[row])
            first = mapper.spliced_to_blocks(s, s + R)
            second = mapper.spliced_to_blocks(e - R, e)
            left, right = (first, second) if exon_set.strand == "+" else (second, first)
            assert fragment_key(left, right, exon_set.strand) == key_of(table, row)


# =============================================================================
# FragmentCounter Tests
# =============================================================================


class TestFragmentCounter:
    """Tests for counting paired fragments."""

    @pytest.fixture
    def bam_path(self, tmp_path: Path) -> Path:
        path = tmp_path / "sample.bam"
        path.write_bytes(b"")
        (tmp_path / "sample.bam.bai").write_bytes(b"")
        return path

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            FragmentCounter(tmp_path / "missing.bam")

    def test_missing_index(self, tmp_path: Path):
        path = tmp_path / "noindex.bam"
        path.write_bytes(b"")
        with pytest.raises(ValueError, match="index"):
            FragmentCounter(path)

    @patch("fragbias.io.bam.pysam.AlignmentFile")
    def test_count_region(self, mock_alignment_file, bam_path):
        reads = [
            make_read("pair", 100, [(CIGAR_M, 20)]),
            make_read("pair", 150, [(CIGAR_M, 10), (CIGAR_N, 40), (CIGAR_M, 10)]),
            make_read("lowq", 110, [(CIGAR_M, 20)], mapq=0),
            make_read("lowq", 160, [(CIGAR_M, 20)]),
            make_read("dup", 120, [(CIGAR_M, 20)], is_duplicate=True),
            make_read("orphan", 130, [(CIGAR_M, 20)]),
            make_read("outside", 10, [(CIGAR_M, 20)]),
            make_read("outside", 140, [(CIGAR_M, 20)]),
        ]
        mock_bam = MagicMock()
        mock_bam.fetch.return_value = iter(reads)
        mock_alignment_file.return_value = mock_bam

        with FragmentCounter(bam_path) as counter:
            counts = counter.count_region("chr1", 50, 300, "+")

        mock_bam.fetch.assert_called_once_with("chr1", 50, 300)
        expected = FragmentKey(WindowSignature(100, ()), WindowSignature(210, ((160, 200),)))
        assert counts == {expected: 1}

    @patch("fragbias.io.bam.pysam.AlignmentFile")
    def test_mate_order_irrelevant(self, mock_alignment_file, bam_path):
        mock_bam = MagicMock()
        mock_bam.fetch.return_value = iter(
            [make_read("p", 150, [(CIGAR_M, 20)]), make_read("p", 100, [(CIGAR_M, 20)])]
        )
        mock_alignment_file.return_value = mock_bam
        with FragmentCounter(bam_path) as counter:
            counts = counter.count_region("chr1", 0, 300, "-")
        assert counts == {FragmentKey(WindowSignature(170, ()), WindowSignature(100, ())): 1}

    @patch("fragbias.io.bam.pysam.AlignmentFile")
    def test_library_size(self, mock_alignment_file, bam_path):
        mock_bam = MagicMock()
        mock_bam.mapped = 2000
        mock_alignment_file.return_value = mock_bam
        counter = FragmentCounter(bam_path)
        assert counter.library_size() == 1000.0
        counter.close()
        mock_bam.close.assert_called_once()
        with pytest.raises(RuntimeError):
            counter.library_size()

    @patch("fragbias.io.bam.pysam.AlignmentFile")
    def test_count_gene_uses_gene_span(self, mock_alignment_file, bam_path, isoform_exon_sets):
        mock_bam = MagicMock()
        mock_bam.fetch.return_value = iter([])
        mock_alignment_file.return_value = mock_bam
        with FragmentCounter(bam_path) as counter:
            assert counter.count_gene(isoform_exon_sets["skip"]) == {}
        mock_bam.fetch.assert_called_once_with("chr1", 100, 1100)
