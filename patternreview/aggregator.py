"""Finding aggregation: deduplicate raw matches into canonical findings."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable

from patternreview.models import Finding, RawMatch, ReviewSummary, Strategy
from patternreview.registry import PatternRegistry

logger = logging.getLogger(__name__)

_STRATEGY_PREFERENCE = {Strategy.LEXICAL: 2, Strategy.STRUCTURAL: 1, Strategy.SEMANTIC: 0}


def _richness(m: RawMatch, text: str) -> tuple:
    # Longest text wins; ties prefer anchored, deterministic matches, then
    # the text itself so the choice never depends on arrival order
    return (
        len(text),
        not m.low_confidence,
        not m.file_level,
        _STRATEGY_PREFERENCE[m.strategy],
        text,
    )


def _richest(matches: list[RawMatch], attr: str) -> str:
    candidates = [m for m in matches if getattr(m, attr)]
    if not candidates:
        return ""
    best = max(candidates, key=lambda m: _richness(m, getattr(m, attr)))
    return getattr(best, attr)


class FindingAggregator:
    """Groups raw matches by (pattern_id, file_path, line) and builds findings.

    Aggregation is order-insensitive: the same multiset of raw matches yields
    the same findings regardless of the order workers produced them.
    """

    def __init__(self, registry: PatternRegistry, merge_window: int = 0) -> None:
        self.registry = registry
        self.merge_window = merge_window

    def aggregate(self, matches: Iterable[RawMatch]) -> list[Finding]:
        groups: dict[tuple[str, str, int], list[RawMatch]] = defaultdict(list)
        for m in matches:
            groups[(m.pattern_id, m.file_path, m.line)].append(m)

        # Opt-in clustering; the default 0 reports every line on its own
        if self.merge_window > 0:
            groups = self._apply_window(groups)

        findings: list[Finding] = []
        for (pattern_id, file_path, line), group in groups.items():
            pattern = self.registry.get(pattern_id)
            if pattern is None:
                logger.warning("Dropping matches for unknown pattern %s", pattern_id)
                continue
            findings.append(
                Finding(
                    pattern_id=pattern_id,
                    file_path=file_path,
                    line=line,
                    severity=pattern.severity,
                    category=pattern.category,
                    title=pattern.title,
                    description=pattern.description,
                    snippet=_richest(group, "snippet"),
                    detail=_richest(group, "detail"),
                    suggested_fix=pattern.fix,
                    estimated_fix_minutes=pattern.estimated_fix_minutes,
                    breaking_change_risk=pattern.breaking_change_risk,
                    strategies=frozenset(m.strategy for m in group),
                    low_confidence=all(m.low_confidence for m in group),
                    file_level=all(m.file_level for m in group),
                    bad_example=pattern.bad_example,
                    good_example=pattern.good_example,
                )
            )

        findings.sort(key=lambda f: (f.severity.rank, f.file_path, f.line, f.pattern_id))
        logger.info(
            "Aggregated %d raw match group(s) into %d finding(s)", len(groups), len(findings)
        )
        return findings

    def _apply_window(
        self, groups: dict[tuple[str, str, int], list[RawMatch]]
    ) -> dict[tuple[str, str, int], list[RawMatch]]:
        """Collapse same-pattern, same-file lines within the window onto the lowest line."""
        by_pair: dict[tuple[str, str], list[int]] = defaultdict(list)
        for pattern_id, file_path, line in groups:
            by_pair[(pattern_id, file_path)].append(line)

        merged: dict[tuple[str, str, int], list[RawMatch]] = {}
        for (pattern_id, file_path), lines in by_pair.items():
            anchor = None
            for line in sorted(lines):
                if anchor is None or line - anchor > self.merge_window:
                    anchor = line
                    merged[(pattern_id, file_path, anchor)] = []
                merged[(pattern_id, file_path, anchor)].extend(
                    groups[(pattern_id, file_path, line)]
                )
        return merged


def summarize(findings: list[Finding], hourly_rate: float) -> ReviewSummary:
    """Per-severity counts, total fix time and the derived cost estimate."""
    return ReviewSummary.from_findings(findings, hourly_rate)
