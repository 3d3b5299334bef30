"""Detection strategies: lexical, structural and semantic matchers.

Every strategy answers one question for one (pattern, file) pair and returns
RawMatch objects. None of them keep state between calls, so one instance can
be shared by all engine workers.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from patternreview.models import (
    ChangeSetFile,
    ExclusionRule,
    LexicalRule,
    Pattern,
    RawMatch,
    RunDiagnostics,
    Strategy,
    StructuralRule,
)
from patternreview.structure import SyntaxNode, structure_for

logger = logging.getLogger(__name__)

SNIPPET_MAX_CHARS = 200


class DetectionStrategy(Protocol):
    """A matcher for one detection technique."""

    kind: Strategy

    def evaluate(self, pattern: Pattern, file: ChangeSetFile) -> list[RawMatch]:
        """Return zero or more raw matches; must not block indefinitely."""
        ...


# ── Lexical ──────────────────────────────────────────────────────────────────


def excluded_lines(lines: list[str], exclusions: tuple[ExclusionRule, ...]) -> set[int]:
    """1-based line numbers covered by any exclusion region (delimiters included)."""
    excluded: set[int] = set()
    for rule in exclusions:
        i = 0
        while i < len(lines):
            start = rule.start.search(lines[i])
            if not start:
                i += 1
                continue
            # Region closes on the same line when the end delimiter follows the start
            if rule.end.search(lines[i], start.end()):
                excluded.add(i + 1)
                i += 1
                continue
            j = i + 1
            while j < len(lines) and not rule.end.search(lines[j]):
                j += 1
            excluded.update(range(i + 1, min(j, len(lines) - 1) + 2))
            i = j + 1
    return excluded


class LexicalStrategy:
    """Regex rules against file text, line by line or over the whole content."""

    kind = Strategy.LEXICAL

    def evaluate(self, pattern: Pattern, file: ChangeSetFile) -> list[RawMatch]:
        lines = file.content.splitlines()
        excluded = excluded_lines(lines, pattern.lexical_exclusions)
        matches: list[RawMatch] = []

        for rule in pattern.lexical_rules:
            if rule.multiline:
                matches.extend(self._search_content(pattern, file, rule, excluded))
            else:
                matches.extend(self._search_lines(pattern, file, rule, lines, excluded))
        return matches

    def _search_lines(
        self,
        pattern: Pattern,
        file: ChangeSetFile,
        rule: LexicalRule,
        lines: list[str],
        excluded: set[int],
    ) -> list[RawMatch]:
        found: list[RawMatch] = []
        for line_no, text in enumerate(lines, start=1):
            if line_no in excluded:
                continue
            for m in rule.regex.finditer(text):
                captured = m.group(rule.capture)
                if captured is None:
                    continue
                found.append(
                    RawMatch(
                        pattern_id=pattern.id,
                        file_path=file.path,
                        line=line_no,
                        strategy=Strategy.LEXICAL,
                        snippet=text.strip()[:SNIPPET_MAX_CHARS],
                        detail=f"Matched /{rule.text}/: {captured.strip()}"[:SNIPPET_MAX_CHARS],
                    )
                )
                break  # one hit per line per rule
        return found

    def _search_content(
        self,
        pattern: Pattern,
        file: ChangeSetFile,
        rule: LexicalRule,
        excluded: set[int],
    ) -> list[RawMatch]:
        content = file.content
        # Offsets where each line starts, for offset -> line lookups
        starts = [0]
        for i, ch in enumerate(content):
            if ch == "\n":
                starts.append(i + 1)

        def line_of(offset: int) -> int:
            return bisect.bisect_right(starts, offset)

        found: list[RawMatch] = []
        for m in rule.regex.finditer(content):
            if m.group(rule.capture) is None:
                continue
            first = line_of(m.start())
            last = line_of(max(m.start(), m.end() - 1))
            if any(n in excluded for n in range(first, last + 1)):
                continue
            anchor = line_of(m.start(rule.capture))
            text = m.group(rule.capture)
            found.append(
                RawMatch(
                    pattern_id=pattern.id,
                    file_path=file.path,
                    line=anchor,
                    strategy=Strategy.LEXICAL,
                    snippet=m.group(0).strip()[:SNIPPET_MAX_CHARS],
                    detail=f"Matched /{rule.text}/ across lines {first}-{last}: "
                    f"{text.strip()[:80]}",
                )
            )
        return found


# ── Structural ───────────────────────────────────────────────────────────────


def node_matches(rule: StructuralRule, node: SyntaxNode) -> bool:
    """True when `node` has the shape described by `rule`."""
    if rule.node not in ("*", node.kind):
        return False
    if rule.name is not None and not rule.name.search(node.name):
        return False
    if rule.text is not None and not rule.text.search(node.text):
        return False
    if node.branches < rule.min_branches:
        return False
    if rule.literals_any and not (node.literals & rule.literals_any):
        return False
    return all(
        any(node_matches(sub, d) for d in node.descendants()) for sub in rule.contains
    )


class StructuralStrategy:
    """Walks the syntax tree looking for the pattern's predicate.

    Raises StructuralUnavailable (via structure_for) when the file has no tree.
    """

    kind = Strategy.STRUCTURAL

    def evaluate(self, pattern: Pattern, file: ChangeSetFile) -> list[RawMatch]:
        rule = pattern.structural_rule
        if rule is None:
            return []
        tree = structure_for(file)

        matches: list[RawMatch] = []
        for node in tree.walk():
            if not node_matches(rule, node):
                continue
            label = f"{node.kind} '{node.name}'" if node.name else node.kind
            matches.append(
                RawMatch(
                    pattern_id=pattern.id,
                    file_path=file.path,
                    line=max(node.line, 1),
                    strategy=Strategy.STRUCTURAL,
                    snippet=node.text[:SNIPPET_MAX_CHARS],
                    detail=f"{label} at line {node.line} matches the structural rule",
                )
            )
        return matches


# ── Semantic ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Judgment:
    """One candidate returned by the judgment collaborator."""

    confidence: float
    detail: str = ""
    line: Optional[int] = None


class Judge(Protocol):
    """External semantic judgment capability (an LLM, a human, a fake)."""

    def judge(self, prompt: str, file: ChangeSetFile) -> list[Judgment]:
        """Return candidates for `file`, or raise JudgmentError."""
        ...


class SemanticStrategy:
    """Delegates to a Judge and keeps candidates at or above the threshold."""

    kind = Strategy.SEMANTIC

    def __init__(
        self,
        judge: Judge,
        confidence_threshold: float,
        diagnostics: Optional[RunDiagnostics] = None,
    ) -> None:
        self.judge = judge
        self.confidence_threshold = confidence_threshold
        self.diagnostics = diagnostics

    def evaluate(self, pattern: Pattern, file: ChangeSetFile) -> list[RawMatch]:
        if not pattern.semantic_prompt:
            return []

        lines = file.content.splitlines()
        matches: list[RawMatch] = []
        for j in self.judge.judge(pattern.semantic_prompt, file):
            # NaN compares false both ways, so test for the passing case
            if not j.confidence >= self.confidence_threshold:
                logger.debug(
                    "Discarding semantic candidate for %s in %s (confidence %.2f < %.2f)",
                    pattern.id, file.path, j.confidence, self.confidence_threshold,
                )
                if self.diagnostics is not None:
                    self.diagnostics.count("judgment_below_threshold")
                continue

            anchored = j.line is not None and 1 <= j.line <= max(len(lines), 1)
            line = j.line if anchored else 1
            snippet = lines[line - 1].strip() if anchored and lines else ""
            matches.append(
                RawMatch(
                    pattern_id=pattern.id,
                    file_path=file.path,
                    line=line,
                    strategy=Strategy.SEMANTIC,
                    snippet=snippet[:SNIPPET_MAX_CHARS],
                    detail=j.detail,
                    file_level=not anchored,
                    confidence=j.confidence,
                )
            )
        return matches
