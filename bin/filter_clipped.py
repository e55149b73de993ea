#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pysam",
# ]
# ///
"""
Remove alignments with a high number of clipped bases.

Some aligners score very loosely and write alignments carrying large soft- or
hard-clipped ends into BAM files. This tool gates each alignment on the
fraction of its stored sequence that was clipped from the 5' end, the 3' end,
and both ends together, and then keeps, drops, or marks it unaligned.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING

import pysam
from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

__version__ = "0.1.0"

# ------------------------------- CONSTANTS -------------------------------- #

# CIGAR op codes used for clipping (pysam numbering)
SOFT_CLIP = 4
HARD_CLIP = 5

# Sentinel for "no reference" / "no position" in SAM/BAM
UNMAPPED_SENTINEL: int = -1

# Path that stands for stdin (input) or stdout (output)
STDIO_PATH = "-"

DEFAULT_FRACTION: float = 0.1

# Emit a progress debug line after processing this many records
DEBUG_EVERY: int = 100_000


# --------------------------------- ERRORS ---------------------------------- #


class FilterClippedError(Exception):
    """Base class for every fatal condition of a filtering run."""


class InvalidThresholdError(FilterClippedError, ValueError):
    """A configured fraction lies outside [0, 1]."""


class SourceOpenError(FilterClippedError):
    """The input alignment file cannot be opened for reading."""


class SinkOpenError(FilterClippedError):
    """The output alignment file cannot be opened for writing."""


class RecordReadError(FilterClippedError):
    """A malformed or truncated record was met while streaming the input."""


class RecordWriteError(FilterClippedError):
    """The output rejected a record."""


class ZeroLengthSequenceError(FilterClippedError, ZeroDivisionError):
    """A clip fraction was requested for a record without stored sequence."""


# ------------------------------- DATA TYPES -------------------------------- #


class Action(Enum):
    """What happens to a record after the thresholds have been evaluated."""

    KEEP = auto()
    DROP = auto()
    REWRITE_UNALIGNED = auto()


@dataclass(frozen=True)
class FilterConfig:
    """
    Thresholds and output behavior for one run.

    - left_threshold / right_threshold: maximum clipped fraction allowed on the
      5' / 3' end, inclusive.
    - both_threshold: maximum fraction of clipped bases over both ends,
      exclusive.
    - inverse: write only the alignments failing the thresholds.
    - unalign: write every alignment, marking failing ones unmapped. Overrides
      inverse.
    """

    left_threshold: float = DEFAULT_FRACTION
    right_threshold: float = DEFAULT_FRACTION
    both_threshold: float = DEFAULT_FRACTION
    inverse: bool = False
    unalign: bool = False

    def __post_init__(self) -> None:
        for name in ("left_threshold", "right_threshold", "both_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                msg = f"{name}={value} is not within 0 and 1"
                raise InvalidThresholdError(msg)


@dataclass(frozen=True)
class RunOutcome:
    """Counters reported at the end of a run."""

    records_read: int = 0
    records_written: int = 0
    records_rewritten: int = 0

    @property
    def records_dropped(self) -> int:
        """Records read but not written."""
        return self.records_read - self.records_written


# ----------------------------- LOGGING SETUP ------------------------------- #

_LEVEL_BY_DELTA = {
    2: "DEBUG",
    1: "INFO",
    0: "SUCCESS",
    -1: "WARNING",
    -2: "ERROR",
}


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Log to stderr, starting at SUCCESS. Each -v moves one level louder
    (INFO, DEBUG, TRACE), each -q one level quieter (WARNING, ERROR, CRITICAL).
    stdout is left alone because it may carry the output BAM.
    """
    logger.remove()
    delta = verbose - quiet
    if delta >= 3:  # noqa: PLR2004
        level_str = "TRACE"
    elif delta <= -3:  # noqa: PLR2004
        level_str = "CRITICAL"
    else:
        level_str = _LEVEL_BY_DELTA[delta]
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# ---------------------------- CLIP STATISTICS ------------------------------ #


def clip_fraction(n_bases: int, seq_len: int) -> float:
    """Return `n_bases / seq_len`; a zero-length sequence has no fraction."""
    if seq_len == 0:
        msg = f"Cannot compute a clipped fraction of {n_bases} bases for a zero-length sequence"
        raise ZeroLengthSequenceError(msg)
    return n_bases / seq_len


@dataclass(frozen=True)
class ClipInput:
    """Raw clip counts and stored sequence length of one alignment."""

    leading_soft: int = 0
    leading_hard: int = 0
    trailing_soft: int = 0
    trailing_hard: int = 0
    sequence_length: int = 0

    @classmethod
    def from_alignment(cls, aln: pysam.AlignedSegment) -> ClipInput:
        """
        Read clip counts from the outermost CIGAR op at each end. Only that op
        counts, so 5H3S... has a leading hard clip of 5 and no soft clip.
        """
        cig = aln.cigartuples or []
        leading_soft, leading_hard = _end_clips(cig)
        trailing_soft, trailing_hard = _end_clips(cig[::-1])
        return cls(
            leading_soft=leading_soft,
            leading_hard=leading_hard,
            trailing_soft=trailing_soft,
            trailing_hard=trailing_hard,
            sequence_length=aln.query_length or 0,
        )


def _end_clips(cig: Sequence[tuple[int, int]]) -> tuple[int, int]:
    """Return (soft, hard) clip lengths at the start of `cig`."""
    if not cig:
        return 0, 0
    first_op, first_len = cig[0]
    if first_op == SOFT_CLIP:
        return first_len, 0
    if first_op == HARD_CLIP:
        return 0, first_len
    return 0, 0


@dataclass(frozen=True)
class ClipStat:
    """
    Clipping summary of one alignment.

    `left`/`right` take the larger of the soft and hard clip on that end, since
    both describe the same trimmed region. `total_clipped` is the sum of all
    four raw counts and is therefore not always `left + right`.
    """

    left: int
    right: int
    total_clipped: int

    @classmethod
    def from_clip_input(cls, clips: ClipInput) -> ClipStat:
        return cls(
            left=max(clips.leading_soft, clips.leading_hard),
            right=max(clips.trailing_soft, clips.trailing_hard),
            total_clipped=(
                clips.leading_soft
                + clips.leading_hard
                + clips.trailing_soft
                + clips.trailing_hard
            ),
        )

    def left_fraction(self, seq_len: int) -> float:
        """Fraction of 5' clipped bases relative to the sequence length."""
        return clip_fraction(self.left, seq_len)

    def right_fraction(self, seq_len: int) -> float:
        """Fraction of 3' clipped bases relative to the sequence length."""
        return clip_fraction(self.right, seq_len)

    def total_fraction(self, seq_len: int) -> float:
        """Fraction of all clipped bases relative to the sequence length."""
        return clip_fraction(self.total_clipped, seq_len)


# ---------------------------- DECISION POLICY ------------------------------ #


def passes_thresholds(
    clip_stat: ClipStat,
    sequence_length: int,
    config: FilterConfig,
) -> bool:
    """
    True when the total clipped fraction is strictly below `both_threshold` and
    each single-end fraction is at most its threshold. A record without stored
    sequence cannot pass.
    """
    if sequence_length == 0:
        logger.debug(f"Zero-length sequence fails all thresholds: {clip_stat}")
        return False
    return (
        clip_stat.total_fraction(sequence_length) < config.both_threshold
        and clip_stat.left_fraction(sequence_length) <= config.left_threshold
        and clip_stat.right_fraction(sequence_length) <= config.right_threshold
    )


def emit_decision(passes: bool, config: FilterConfig) -> Action:  # noqa: FBT001
    """Map a pass/fail result to an Action; `unalign` wins over `inverse`."""
    if config.unalign:
        return Action.KEEP if passes else Action.REWRITE_UNALIGNED
    if config.inverse:
        return Action.DROP if passes else Action.KEEP
    return Action.KEEP if passes else Action.DROP


def mark_unaligned(aln: pysam.AlignedSegment) -> None:
    """
    Turn `aln` into an unmapped record in-place: unmapped flag set, reverse and
    proper-pair flags cleared, reference id and position set to -1. Sequence,
    qualities and tags are not touched.
    """
    aln.is_unmapped = True
    aln.is_reverse = False
    aln.is_proper_pair = False
    aln.reference_id = UNMAPPED_SENTINEL
    aln.reference_start = UNMAPPED_SENTINEL


# ----------------------------- I/O UTILITIES ------------------------------- #


def _io_mode(path: str, write: bool) -> str:  # noqa: FBT001
    """
    Determine pysam open mode from the filename extension. Unrecognized paths
    (and stdin) are read with format autodetection and written as BAM.
    """
    lower = path.lower()
    if lower.endswith(".sam"):
        return "w" if write else "r"
    if lower.endswith(".bam"):
        return "wb" if write else "rb"
    if lower.endswith(".cram"):
        return "wc" if write else "rc"
    return "wb" if write else "r"


def open_alignment(
    path: str,
    write: bool,  # noqa: FBT001
    template: pysam.AlignmentFile | None = None,
    reference: str | None = None,
) -> pysam.AlignmentFile:
    """
    Open SAM/BAM/CRAM (or stdin/stdout for '-') with the matching mode. When
    writing, the header is copied from `template` unchanged.
    """
    mode = _io_mode(path, write)

    kwargs = {}
    if path.lower().endswith(".cram"):
        if reference is None:
            logger.warning(
                f"Opening CRAM without explicit reference: {path}. "
                "Decoding may fail unless the reference is resolvable.",
            )
        else:
            kwargs["reference_filename"] = reference

    action = "write" if write else "read"
    logger.debug(f"Opening for {action}: {path} (mode={mode})")
    if write:
        if template is None:
            msg = f"Writing to '{path}' requires a template AlignmentFile"
            raise ValueError(msg)
        return pysam.AlignmentFile(path, mode, template=template, **kwargs)
    return pysam.AlignmentFile(path, mode, **kwargs)


def open_source(path: str, reference: str | None = None) -> pysam.AlignmentFile:
    try:
        return open_alignment(path, write=False, reference=reference)
    except (OSError, ValueError) as exc:
        msg = f"Cannot open input alignment file '{path}': {exc}"
        raise SourceOpenError(msg) from exc


def open_sink(
    path: str,
    template: pysam.AlignmentFile,
    reference: str | None = None,
) -> pysam.AlignmentFile:
    try:
        return open_alignment(path, write=True, template=template, reference=reference)
    except (OSError, ValueError) as exc:
        msg = f"Cannot open output alignment file '{path}': {exc}"
        raise SinkOpenError(msg) from exc


def iter_records(inp: pysam.AlignmentFile) -> Iterator[pysam.AlignedSegment]:
    """Yield records in file order, turning htslib read failures into RecordReadError."""
    records = iter(inp)
    index = 0
    while True:
        try:
            aln = next(records)
        except StopIteration:
            return
        except (OSError, ValueError) as exc:
            msg = f"Failed to read alignment record #{index + 1}: {exc}"
            raise RecordReadError(msg) from exc
        index += 1
        yield aln


def write_record(outp: pysam.AlignmentFile, aln: pysam.AlignedSegment) -> None:
    try:
        outp.write(aln)
    except (OSError, ValueError) as exc:
        msg = f"Failed to write alignment '{aln.query_name}': {exc}"
        raise RecordWriteError(msg) from exc


# ------------------------------ CORE LOGIC --------------------------------- #


def process_stream(
    inp: pysam.AlignmentFile,
    outp: pysam.AlignmentFile,
    config: FilterConfig,
) -> RunOutcome:
    """
    Stream input -> output, one record at a time and in input order.

    Each record is summarized into a ClipStat, tested against the thresholds
    of `config`, and then written unchanged, dropped, or marked unmapped and
    written. Any read or write failure aborts the run.

    Returns:
        RunOutcome with the number of records read, written, and rewritten
        to unaligned.
    """
    read = 0
    written = 0
    rewritten = 0

    for aln in iter_records(inp):
        read += 1
        if read % DEBUG_EVERY == 0:
            logger.debug(
                f"Progress: read={read}, written={written}, unaligned={rewritten}",
            )

        clips = ClipInput.from_alignment(aln)
        clip_stat = ClipStat.from_clip_input(clips)
        passes = passes_thresholds(clip_stat, clips.sequence_length, config)
        action = emit_decision(passes, config)
        logger.trace(
            f"'{aln.query_name}': {clip_stat} seq_len={clips.sequence_length} "
            f"passes={passes} action={action.name}",
        )

        match action:
            case Action.DROP:
                continue
            case Action.REWRITE_UNALIGNED:
                mark_unaligned(aln)
                rewritten += 1
            case Action.KEEP:
                pass

        write_record(outp, aln)
        written += 1

    outcome = RunOutcome(
        records_read=read,
        records_written=written,
        records_rewritten=rewritten,
    )
    logger.info(
        f"Process totals: read={outcome.records_read}, written={outcome.records_written}, "
        f"dropped={outcome.records_dropped}, unaligned={outcome.records_rewritten}",
    )
    return outcome


def run(
    in_path: str,
    out_path: str,
    config: FilterConfig,
    reference: str | None = None,
) -> RunOutcome:
    """Open the input and output, filter every record, and close both."""
    logger.info(f"Reading from alignment file: {in_path}")
    logger.info(f"Writing to alignment file: {out_path}")
    logger.info(
        f"Thresholds: trailing clipped: {config.right_threshold}, "
        f"leading clipped: {config.left_threshold}, total clipped: {config.both_threshold}",
    )

    input_alignment = open_source(in_path, reference=reference)
    try:
        output_alignment = open_sink(out_path, input_alignment, reference=reference)
    except SinkOpenError:
        input_alignment.close()
        raise

    try:
        return process_stream(input_alignment, output_alignment, config)
    finally:
        output_alignment.close()
        input_alignment.close()


# --------------------------------- CLI ------------------------------------- #


def check_fraction(val: str) -> float:
    """argparse type: a float between 0 and 1 inclusive."""
    try:
        f_val = float(val)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc
    if not 0.0 <= f_val <= 1.0:
        msg = f"{val} is not within 0 and 1"
        raise argparse.ArgumentTypeError(msg)
    return f_val


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="filter-clipped",
        description=(
            "Remove alignments with high number of clipped bases. Sometimes an aligner "
            "has a very loose scoring method and writes alignments with abundant "
            "soft/hard-clipped bases into BAM files. This program filters them out by "
            "gating the number of clipped bases relative to the read sequence length."
        ),
    )

    # Thresholds
    p.add_argument(
        "-l",
        "--left-side",
        type=check_fraction,
        default=DEFAULT_FRACTION,
        help="Maximum fraction of bases clipped from the left side (5' end)",
    )
    p.add_argument(
        "-r",
        "--right-side",
        type=check_fraction,
        default=DEFAULT_FRACTION,
        help="Maximum fraction of bases clipped from the right side (3' end)",
    )
    p.add_argument(
        "-b",
        "--both-end",
        type=check_fraction,
        default=DEFAULT_FRACTION,
        help="Maximum fraction of total bases clipped (exclusive)",
    )

    # I/O
    p.add_argument(
        "-i",
        "--in-bam",
        dest="in_path",
        required=True,
        help="Input SAM/BAM/CRAM ('-' for stdin)",
    )
    p.add_argument(
        "-o",
        "--out-bam",
        dest="out_path",
        default=STDIO_PATH,
        help="Output SAM/BAM/CRAM ('-' for BAM on stdout, the default)",
    )
    p.add_argument(
        "--ref",
        dest="reference",
        default=None,
        help="Reference FASTA (required/recommended for CRAM read/write)",
    )

    # Output behavior
    p.add_argument(
        "--inverse",
        action="store_true",
        help="Keep only the failed (high-clipped-fraction) alignments",
    )
    p.add_argument(
        "-u",
        "--unalign",
        action="store_true",
        help="Mark failed alignments unmapped instead of removing them; ignores --inverse",
    )

    # Verbosity: -v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    return p


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    # silence htslib complaints about missing indexes, which are never needed here
    pysam.set_verbosity(0)

    try:
        config = FilterConfig(
            left_threshold=args.left_side,
            right_threshold=args.right_side,
            both_threshold=args.both_end,
            inverse=bool(args.inverse),
            unalign=bool(args.unalign),
        )
        if config.unalign and config.inverse:
            logger.warning("--unalign is set; ignoring --inverse")
        logger.debug(f"FilterConfig: {config}")

        outcome = run(args.in_path, args.out_path, config, reference=args.reference)
    except FilterClippedError as exc:
        logger.error(str(exc))
        sys.exit(1)

    logger.success(
        f"Read {outcome.records_read} alignments; Written {outcome.records_written} "
        f"alignments; Making {outcome.records_rewritten} to unaligned",
    )


if __name__ == "__main__":
    main()
