"""Shared fixtures and collaborator fakes for the test suite."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any, Optional

import pytest

from patternreview.collaborators import MemoryPublisher, StaticFetcher
from patternreview.config import ReviewConfig
from patternreview.errors import JudgmentError, PublishError
from patternreview.models import ChangeSetFile
from patternreview.registry import PatternRegistry
from patternreview.strategies import Judgment

BUNDLED_PATTERNS = Path(__file__).resolve().parent.parent / "patterns"


# ── Pattern factories ────────────────────────────────────────────────────────


def pattern_dict(**overrides: Any) -> dict[str, Any]:
    """A valid lexical pattern mapping; override any field."""
    data: dict[str, Any] = {
        "id": "admin-role-check",
        "title": "Manual admin role check",
        "severity": "critical",
        "category": "architectural",
        "detection_method": "lexical",
        "estimated_fix_minutes": 30,
        "breaking_change_risk": "medium",
        "applicable_file_globs": ["*.ex"],
        "lexical": [{"pattern": r'role == "admin"'}],
        "description": "Authorization decided inline.",
        "fix": "Use a policy module.",
    }
    data.update(overrides)
    return {k: v for k, v in data.items() if v is not None}


def numbered_content(lines: dict[int, str], total: int) -> str:
    """File text with the given 1-based lines set and everything else filler."""
    return "\n".join(lines.get(n, f"# filler {n}") for n in range(1, total + 1)) + "\n"


@pytest.fixture
def make_pattern():
    return pattern_dict


@pytest.fixture
def registry_of():
    def _build(*patterns: dict[str, Any]) -> PatternRegistry:
        registry = PatternRegistry.load(list(patterns))
        assert not registry.warnings, registry.warnings
        return registry

    return _build


@pytest.fixture
def admin_file() -> ChangeSetFile:
    """Elixir file with `role == "admin"` on line 12."""
    return ChangeSetFile(
        path="lib/app/accounts.ex",
        content=numbered_content({12: '    if user.role == "admin" do'}, 20),
    )


@pytest.fixture
def config() -> ReviewConfig:
    return ReviewConfig(max_workers=2, pattern_sources=(str(BUNDLED_PATTERNS),))


# ── Collaborator fakes ───────────────────────────────────────────────────────


class FakeJudge:
    """Returns canned judgments, optionally per file path."""

    def __init__(
        self,
        judgments: Optional[list[Judgment]] = None,
        by_path: Optional[dict[str, list[Judgment]]] = None,
    ) -> None:
        self.judgments = judgments or []
        self.by_path = by_path or {}
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def judge(self, prompt: str, file: ChangeSetFile) -> list[Judgment]:
        with self._lock:
            self.calls.append((prompt, file.path))
        return list(self.by_path.get(file.path, self.judgments))


class FailingJudge:
    def judge(self, prompt: str, file: ChangeSetFile) -> list[Judgment]:
        raise JudgmentError("model unavailable", stage="detecting")


class SlowJudge:
    def __init__(self, seconds: float) -> None:
        self.seconds = seconds

    def judge(self, prompt: str, file: ChangeSetFile) -> list[Judgment]:
        time.sleep(self.seconds)
        return [Judgment(confidence=1.0, line=1)]


class FailingPublisher:
    def __init__(self) -> None:
        self.calls = 0

    def publish(self, change_set_id, payloads, summary) -> None:
        self.calls += 1
        raise PublishError("comment API returned 502", stage="publishing")


class BlockingFetcher:
    """Sets the cancel event while fetching, as a user abort would."""

    def __init__(self, files: list[ChangeSetFile], cancel: threading.Event) -> None:
        self.files = files
        self.cancel = cancel

    def fetch(self, change_set_id: str) -> list[ChangeSetFile]:
        self.cancel.set()
        return list(self.files)


@pytest.fixture
def fake_judge() -> FakeJudge:
    return FakeJudge()


@pytest.fixture
def memory_publisher() -> MemoryPublisher:
    return MemoryPublisher()


@pytest.fixture
def static_fetcher(admin_file: ChangeSetFile) -> StaticFetcher:
    return StaticFetcher({"pr-1": [admin_file]})
