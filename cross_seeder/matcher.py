"""
File Matching for Cross-Seeder
Compares the file-size multisets of a held torrent and a candidate release.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_SIZE_TOLERANCE = 0.02


class DecisionKind(Enum):
    """Outcome of comparing a candidate against a searchee."""
    MATCH = "MATCH"                              # Sizes and names identical
    MATCH_SIZE_ONLY = "MATCH_SIZE_ONLY"          # Same byte layout, renamed files
    SIZE_MISMATCH = "SIZE_MISMATCH"
    FILE_COUNT_MISMATCH = "FILE_COUNT_MISMATCH"

    @property
    def is_match(self) -> bool:
        """True for decisions that allow the candidate to be injected."""
        if self is DecisionKind.MATCH or self is DecisionKind.MATCH_SIZE_ONLY:
            return True
        if self is DecisionKind.SIZE_MISMATCH or self is DecisionKind.FILE_COUNT_MISMATCH:
            return False
        raise ValueError(f"Unhandled decision kind: {self}")


@dataclass(frozen=True)
class FileInfo:
    """A single file entry: display name and size in bytes."""
    name: str
    size: int


@dataclass
class MatchResult:
    """Result of a size-multiset comparison."""
    decision: DecisionKind
    matched: bool
    confidence: float
    matched_files: int
    total_files: int
    details: str = ""


@dataclass
class PreFilterResult:
    """Result of the cheap size-tolerance check."""
    passed: bool
    reason: Optional[str] = None


def match_by_sizes(
    source_files: Sequence[FileInfo],
    candidate_files: Sequence[FileInfo],
) -> MatchResult:
    """
    Compare two file lists as multisets of sizes.

    Candidate files are assigned one-to-one to unconsumed source files of
    identical size, in candidate order. When several source files share a
    size, the one with the same name is preferred so multi-episode packs
    pair correctly.

    Args:
        source_files: Files of the torrent already held by the client
        candidate_files: Files decoded from the candidate's metadata

    Returns:
        MatchResult describing the relationship
    """
    if not candidate_files:
        if not source_files:
            return MatchResult(
                decision=DecisionKind.MATCH,
                matched=True,
                confidence=1.0,
                matched_files=0,
                total_files=0,
                details="Both file lists are empty",
            )
        return MatchResult(
            decision=DecisionKind.SIZE_MISMATCH,
            matched=False,
            confidence=0.0,
            matched_files=0,
            total_files=0,
            details="Candidate has no files",
        )

    if len(source_files) != len(candidate_files):
        return MatchResult(
            decision=DecisionKind.FILE_COUNT_MISMATCH,
            matched=False,
            confidence=0.0,
            matched_files=0,
            total_files=len(candidate_files),
            details=(
                f"File count mismatch: source={len(source_files)}, "
                f"candidate={len(candidate_files)}"
            ),
        )

    available: List[FileInfo] = list(source_files)
    matched_count = 0

    for candidate in candidate_files:
        same_size = [i for i, f in enumerate(available) if f.size == candidate.size]
        if not same_size:
            continue

        chosen = same_size[0]
        if len(same_size) > 1:
            for i in same_size:
                if available[i].name == candidate.name:
                    chosen = i
                    break

        del available[chosen]
        matched_count += 1

    total = len(candidate_files)

    if matched_count == total:
        candidate_pairs = {(f.name, f.size) for f in candidate_files}
        names_match = all((f.name, f.size) in candidate_pairs for f in source_files)
        return MatchResult(
            decision=DecisionKind.MATCH if names_match else DecisionKind.MATCH_SIZE_ONLY,
            matched=True,
            confidence=1.0,
            matched_files=matched_count,
            total_files=total,
            details=(
                "Perfect match (names + sizes)" if names_match
                else "Size-only match (names differ)"
            ),
        )

    return MatchResult(
        decision=DecisionKind.SIZE_MISMATCH,
        matched=False,
        confidence=matched_count / total,
        matched_files=matched_count,
        total_files=total,
        details=f"Only {matched_count}/{total} files matched",
    )


def fuzzy_size_match(
    source_size: int, candidate_size: int, tolerance: float = DEFAULT_SIZE_TOLERANCE
) -> bool:
    """Check if candidate_size is within tolerance of source_size."""
    lower = source_size * (1 - tolerance)
    upper = source_size * (1 + tolerance)
    return lower <= candidate_size <= upper


def pre_filter(
    source_name: str,
    source_size: int,
    candidate_name: str,
    candidate_size: Optional[int],
    tolerance: float = DEFAULT_SIZE_TOLERANCE,
) -> PreFilterResult:
    """
    Cheaply reject candidates whose advertised size is clearly wrong.

    Unknown candidate sizes pass. A source size of zero passes as well,
    since no relative difference can be computed against it.
    """
    if candidate_size is None or source_size <= 0:
        return PreFilterResult(passed=True)

    if fuzzy_size_match(source_size, candidate_size, tolerance):
        return PreFilterResult(passed=True)

    diff = abs(candidate_size - source_size) / source_size
    reason = (
        f"Size mismatch: {diff * 100:.1f}% size difference "
        f"(tolerance: {tolerance * 100:g}%)"
    )
    logger.debug(f"Pre-filter rejected {candidate_name!r} for {source_name!r}: {reason}")
    return PreFilterResult(passed=False, reason=reason)
