"""Severity policy: which findings block a merge."""

from __future__ import annotations

from enum import Enum

from patternreview.models import Finding, Severity


class Classification(str, Enum):
    BLOCKING = "blocking"
    ADVISORY = "advisory"

    def __str__(self) -> str:
        return self.value


class SeverityPolicy:
    """critical always blocks, high blocks only with block_on_high, the rest never."""

    def __init__(self, block_on_high: bool = False) -> None:
        self.block_on_high = block_on_high

    def classify(self, finding: Finding) -> Classification:
        if finding.severity == Severity.CRITICAL:
            return Classification.BLOCKING
        if finding.severity == Severity.HIGH and self.block_on_high:
            return Classification.BLOCKING
        return Classification.ADVISORY

    def is_blocking(self, finding: Finding) -> bool:
        return self.classify(finding) == Classification.BLOCKING

    def partition(self, findings: list[Finding]) -> tuple[list[Finding], list[Finding]]:
        """Split into (blocking, advisory), preserving order."""
        blocking = [f for f in findings if self.is_blocking(f)]
        advisory = [f for f in findings if not self.is_blocking(f)]
        return blocking, advisory

    def has_blocking(self, findings: list[Finding]) -> bool:
        return any(self.is_blocking(f) for f in findings)

    def blocking_minutes(self, findings: list[Finding]) -> int:
        """Estimated fix time of everything that must be addressed before merge."""
        return sum(f.estimated_fix_minutes for f in findings if self.is_blocking(f))

    def verdict(self, findings: list[Finding]) -> str:
        blocking, advisory = self.partition(findings)
        if blocking:
            return f"CHANGES REQUESTED: {len(blocking)} blocking issue(s) must be addressed"
        if advisory:
            return f"APPROVED WITH SUGGESTIONS: {len(advisory)} advisory issue(s)"
        return "APPROVED: no anti-patterns detected"
