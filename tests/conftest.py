"""
Pytest fixtures and configuration for filter_clipped testing.

Provides helpers for building alignment records and SAM/BAM files with pysam,
plus shared threshold configurations.
"""

import sys
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pysam
import pytest

# Add bin directory to Python path so we can import the module under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

from filter_clipped import FilterConfig

REFERENCE_SEQUENCE = "ATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCG"

# (query_name, cigar, sequence length, flag, reference_start)
# Under FilterConfig(0.1, 0.1, 0.1) only "clean_fwd" and "clean_rev" pass.
CLIP_READS: list[tuple[str, list[tuple[int, int]] | None, int, int, int]] = [
    ("clean_fwd", [(0, 10)], 10, 0, 0),  # 10M
    ("trailing_soft_2", [(0, 8), (4, 2)], 10, 0, 5),  # 8M2S: right=0.2
    ("leading_soft_1", [(4, 1), (0, 9)], 10, 0, 10),  # 1S9M: total == 0.1
    ("clean_rev", [(0, 10)], 10, 16, 15),  # 10M reverse
    ("leading_hard_5", [(5, 5), (0, 10)], 10, 0, 20),  # 5H10M: left=0.5
    ("paired_rev_clipped", [(4, 2), (0, 6), (4, 2)], 10, 1 | 2 | 16, 25),  # 2S6M2S
    ("hard_then_soft", [(5, 3), (4, 1), (0, 20)], 21, 0, 30),  # 3H1S20M: left=total=3/21
]


def make_read(
    query_name: str,
    cigartuples: list[tuple[int, int]] | None,
    seq_len: int,
    flag: int = 0,
    reference_start: int = 0,
    reference_id: int = 0,
) -> pysam.AlignedSegment:
    """Build an AlignedSegment with a synthetic sequence of `seq_len` bases."""
    read = pysam.AlignedSegment()
    read.query_name = query_name
    read.flag = flag
    if seq_len > 0:
        read.query_sequence = (REFERENCE_SEQUENCE * 2)[:seq_len]
        read.query_qualities = [30] * seq_len
    read.reference_id = reference_id
    read.reference_start = reference_start
    read.cigartuples = cigartuples
    read.mapping_quality = 0 if flag & 4 else 60
    read.set_tag("RG", "grp1")
    return read


def create_sam_header() -> dict[str, Any]:
    """Create a minimal SAM header for testing."""
    return {
        "HD": {"VN": "1.6", "SO": "unsorted"},
        "SQ": [{"SN": "test_reference", "LN": len(REFERENCE_SEQUENCE)}],
        "RG": [{"ID": "grp1", "SM": "sample1"}],
        "PG": [{"ID": "test", "PN": "filter_clipped_test", "VN": "0.1.0"}],
    }


def write_alignment_file(path: Path, reads: list[pysam.AlignedSegment]) -> Path:
    """Write `reads` in order to a SAM or BAM file chosen by extension."""
    mode = "wb" if path.suffix == ".bam" else "w"
    with pysam.AlignmentFile(str(path), mode, header=create_sam_header()) as out:
        for read in reads:
            out.write(read)
    return path


def read_alignment_file(path: Path) -> list[pysam.AlignedSegment]:
    with pysam.AlignmentFile(str(path), "r") as inp:
        return list(inp)


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def reference_fasta(temp_dir: Path) -> Path:
    """Create a simple reference FASTA file for testing."""
    ref_path = temp_dir / "reference.fasta"
    with open(ref_path, "w") as f:
        f.write(">test_reference\n")
        f.write(f"{REFERENCE_SEQUENCE}\n")
    return ref_path


@pytest.fixture
def clip_reads() -> list[pysam.AlignedSegment]:
    """A mix of clean and clipped alignments, see CLIP_READS."""
    return [
        make_read(name, cigar, seq_len, flag, start)
        for name, cigar, seq_len, flag, start in CLIP_READS
    ]


@pytest.fixture
def clip_bam_file(temp_dir: Path, clip_reads: list[pysam.AlignedSegment]) -> Path:
    return write_alignment_file(temp_dir / "clipped.bam", clip_reads)


@pytest.fixture
def clip_sam_file(temp_dir: Path, clip_reads: list[pysam.AlignedSegment]) -> Path:
    return write_alignment_file(temp_dir / "clipped.sam", clip_reads)


@pytest.fixture
def trailing_clipped_bam_file(temp_dir: Path) -> Path:
    """Ten alignments of 10 bases, each with a 2-base 3' soft clip (8M2S)."""
    reads = [
        make_read(f"read_{i:02d}", [(0, 8), (4, 2)], 10, 0, i)
        for i in range(10)
    ]
    return write_alignment_file(temp_dir / "trailing.bam", reads)


@pytest.fixture
def empty_sam_file(temp_dir: Path) -> Path:
    """Create an empty SAM file with header only."""
    return write_alignment_file(temp_dir / "empty.sam", [])


@pytest.fixture
def default_config() -> FilterConfig:
    return FilterConfig(left_threshold=0.1, right_threshold=0.1, both_threshold=0.1)


@pytest.fixture
def lenient_config() -> FilterConfig:
    return FilterConfig(left_threshold=0.2, right_threshold=0.2, both_threshold=0.3)


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
