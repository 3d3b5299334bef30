"""Data models for the pattern review engine."""

from __future__ import annotations

import json
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from patternreview.structure import SyntaxNode


class Severity(str, Enum):
    """Severity levels for anti-pattern findings."""

    CRITICAL = "critical"  # Always blocks the merge
    HIGH = "high"  # Blocks only when the run is configured to
    MEDIUM = "medium"
    LOW = "low"

    def __str__(self) -> str:
        return self.value

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
}


class Category(str, Enum):
    """Where in the code base an anti-pattern lives."""

    ARCHITECTURAL = "architectural"
    FILE_LEVEL = "file-level"
    ONE_LINER = "one-liner"
    INTEGRATION = "integration"

    def __str__(self) -> str:
        return self.value


class DetectionMethod(str, Enum):
    LEXICAL = "lexical"
    STRUCTURAL = "structural"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"

    def __str__(self) -> str:
        return self.value


class Risk(str, Enum):
    """Breaking-change risk of applying the suggested fix."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    def __str__(self) -> str:
        return self.value


class Strategy(str, Enum):
    """A single detection technique."""

    LEXICAL = "lexical"
    STRUCTURAL = "structural"
    SEMANTIC = "semantic"

    def __str__(self) -> str:
        return self.value


# ── Pattern definitions ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class LexicalRule:
    """One regex rule. `capture` selects the group that anchors the hit."""

    regex: re.Pattern
    capture: int | str = 0
    multiline: bool = False

    @property
    def text(self) -> str:
        return self.regex.pattern


@dataclass(frozen=True)
class ExclusionRule:
    """A region of the file (start line .. end line) lexical rules must skip."""

    start: re.Pattern
    end: re.Pattern


@dataclass(frozen=True)
class StructuralRule:
    """Predicate over a syntax tree node; `contains` must hold for descendants."""

    node: str
    name: Optional[re.Pattern] = None
    text: Optional[re.Pattern] = None
    min_branches: int = 0
    literals_any: frozenset[str] = frozenset()
    contains: tuple["StructuralRule", ...] = ()


@dataclass(frozen=True)
class Pattern:
    """A named anti-pattern rule. Immutable once loaded into a registry."""

    id: str
    title: str
    severity: Severity
    category: Category
    detection_method: DetectionMethod
    estimated_fix_minutes: int
    breaking_change_risk: Risk
    applicable_file_globs: tuple[str, ...]
    lexical_rules: tuple[LexicalRule, ...] = ()
    lexical_exclusions: tuple[ExclusionRule, ...] = ()
    structural_rule: Optional[StructuralRule] = None
    semantic_prompt: Optional[str] = None
    description: str = ""
    fix: str = ""
    bad_example: str = ""
    good_example: str = ""
    source: Optional[str] = None

    @property
    def strategies(self) -> tuple[Strategy, ...]:
        """Strategies this pattern can run, in a fixed order."""
        out: list[Strategy] = []
        if self.lexical_rules:
            out.append(Strategy.LEXICAL)
        if self.structural_rule is not None:
            out.append(Strategy.STRUCTURAL)
        if self.semantic_prompt:
            out.append(Strategy.SEMANTIC)
        return tuple(out)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "severity": str(self.severity),
            "category": str(self.category),
            "detection_method": str(self.detection_method),
            "estimated_fix_minutes": self.estimated_fix_minutes,
            "breaking_change_risk": str(self.breaking_change_risk),
            "applicable_file_globs": list(self.applicable_file_globs),
            "strategies": [str(s) for s in self.strategies],
            "description": self.description,
            "fix": self.fix,
            "bad_example": self.bad_example,
            "good_example": self.good_example,
            "source": self.source,
        }


# ── Change-set ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class LineRange:
    """Inclusive range of changed lines in the new version of a file."""

    start: int
    end: int

    def __contains__(self, line: object) -> bool:
        return isinstance(line, int) and self.start <= line <= self.end


@dataclass(frozen=True)
class ChangeSetFile:
    """One file of the reviewed change-set. Read-only after construction."""

    path: str
    content: str
    hunks: tuple[LineRange, ...] = ()
    structure: Optional["SyntaxNode"] = None

    @property
    def lines(self) -> list[str]:
        return self.content.splitlines()

    def is_changed(self, line: int) -> bool:
        return any(line in hunk for hunk in self.hunks)


# ── Matches and findings ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class RawMatch:
    """Output of a single strategy run. Consumed by the aggregator."""

    pattern_id: str
    file_path: str
    line: int
    strategy: Strategy
    snippet: str = ""
    detail: str = ""
    file_level: bool = False  # unanchored semantic hit attached to line 1
    low_confidence: bool = False
    confidence: Optional[float] = None


@dataclass(frozen=True)
class Finding:
    """A canonical, deduplicated issue. Identity is (pattern_id, file_path, line)."""

    pattern_id: str
    file_path: str
    line: int
    severity: Severity
    category: Category
    title: str
    description: str
    snippet: str
    detail: str
    suggested_fix: str
    estimated_fix_minutes: int
    breaking_change_risk: Risk
    strategies: frozenset[Strategy]
    low_confidence: bool = False
    file_level: bool = False
    bad_example: str = ""
    good_example: str = ""

    @property
    def key(self) -> tuple[str, str, int]:
        return (self.pattern_id, self.file_path, self.line)

    @property
    def dedup_key(self) -> str:
        return f"{self.pattern_id}:{self.file_path}:{self.line}"

    def to_issue(self) -> dict:
        """Issue entry of the output report."""
        return {
            "pattern": self.pattern_id,
            "title": self.title,
            "severity": str(self.severity),
            "category": str(self.category),
            "file": self.file_path,
            "line": self.line,
            "description": self.description or self.detail or self.title,
            "detail": self.detail,
            "snippet": self.snippet,
            "suggested_fix": self.suggested_fix,
            "bad_example": self.bad_example,
            "good_example": self.good_example,
            "time_minutes": self.estimated_fix_minutes,
            "breaking_change_risk": str(self.breaking_change_risk),
            "strategies": sorted(str(s) for s in self.strategies),
            "low_confidence": self.low_confidence,
            "file_level": self.file_level,
        }


@dataclass(frozen=True)
class ReviewSummary:
    """Aggregate statistics derived from a finding set."""

    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    total_minutes: int = 0
    hourly_rate: float = 0.0

    @classmethod
    def from_findings(cls, findings: list[Finding], hourly_rate: float) -> ReviewSummary:
        counts = {s: 0 for s in Severity}
        for f in findings:
            counts[f.severity] += 1
        return cls(
            critical=counts[Severity.CRITICAL],
            high=counts[Severity.HIGH],
            medium=counts[Severity.MEDIUM],
            low=counts[Severity.LOW],
            total_minutes=sum(f.estimated_fix_minutes for f in findings),
            hourly_rate=hourly_rate,
        )

    @property
    def total_issues(self) -> int:
        return self.critical + self.high + self.medium + self.low

    @property
    def total_time_hours(self) -> float:
        return self.total_minutes / 60

    @property
    def estimated_cost_savings(self) -> float:
        return self.total_time_hours * self.hourly_rate

    def to_dict(self) -> dict:
        return {
            "critical": self.critical,
            "high": self.high,
            "medium": self.medium,
            "low": self.low,
            "total_time_hours": round(self.total_time_hours, 4),
            "estimated_cost_savings": round(self.estimated_cost_savings, 2),
        }


@dataclass
class RunDiagnostics:
    """Counters for everything that was skipped or failed without aborting the run.

    Workers record into the same instance, so every mutation goes through the lock.
    """

    patterns_loaded: int = 0
    registry_warnings: list[str] = field(default_factory=list)
    strategy_errors: int = 0
    structural_unavailable: int = 0
    judgment_errors: int = 0
    judgment_below_threshold: int = 0
    skipped_files: int = 0
    messages: list[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record(self, counter: str, message: str) -> None:
        with self._lock:
            setattr(self, counter, getattr(self, counter) + 1)
            self.messages.append(message)

    def count(self, counter: str, n: int = 1) -> None:
        with self._lock:
            setattr(self, counter, getattr(self, counter) + n)

    @property
    def skipped_rules(self) -> int:
        return (
            len(self.registry_warnings)
            + self.strategy_errors
            + self.structural_unavailable
            + self.judgment_errors
        )

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "patterns_loaded": self.patterns_loaded,
                "skipped_rules": self.skipped_rules,
                "skipped_files": self.skipped_files,
                "registry_warnings": list(self.registry_warnings),
                "strategy_errors": self.strategy_errors,
                "structural_unavailable": self.structural_unavailable,
                "judgment_errors": self.judgment_errors,
                "judgment_below_threshold": self.judgment_below_threshold,
                "messages": list(self.messages),
            }


@dataclass(frozen=True)
class CommentPayload:
    """A rendered review comment, ready for the publisher."""

    dedup_key: str
    body: str
    file_path: Optional[str] = None
    line: Optional[int] = None
    pattern_id: Optional[str] = None
    severity: Optional[Severity] = None
    blocking: bool = False

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "dedup_key": self.dedup_key,
            "body": self.body,
            "file": self.file_path,
            "line": self.line,
            "pattern": self.pattern_id,
            "severity": str(self.severity) if self.severity else None,
            "blocking": self.blocking,
        }
        return {k: v for k, v in d.items() if v is not None}


@dataclass
class ReviewReport:
    """Complete result of one review run."""

    change_set_id: str
    findings: list[Finding] = field(default_factory=list)
    summary: ReviewSummary = field(default_factory=ReviewSummary)
    blocking: list[str] = field(default_factory=list)  # dedup keys
    diagnostics: RunDiagnostics = field(default_factory=RunDiagnostics)
    payloads: list[CommentPayload] = field(default_factory=list)
    summary_payload: Optional[CommentPayload] = None
    state: str = "idle"
    dry_run: bool = False
    published: bool = False
    reviewed_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @property
    def total_issues(self) -> int:
        return len(self.findings)

    @property
    def has_blocking(self) -> bool:
        return bool(self.blocking)

    def to_dict(self) -> dict:
        return {
            "change_set_id": self.change_set_id,
            "total_issues": self.total_issues,
            "issues": [
                {**f.to_issue(), "blocking": f.dedup_key in self.blocking}
                for f in self.findings
            ],
            "summary": self.summary.to_dict(),
            "blocking": list(self.blocking),
            "state": self.state,
            "dry_run": self.dry_run,
            "published": self.published,
            "reviewed_at": self.reviewed_at,
            "diagnostics": self.diagnostics.to_dict(),
            "comments": [p.to_dict() for p in self.payloads],
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)
