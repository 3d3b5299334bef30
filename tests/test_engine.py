"""Tests for the detection engine: combination rules, containment, parallelism."""

from __future__ import annotations

import threading

import pytest

from conftest import FailingJudge, FakeJudge, SlowJudge, numbered_content, pattern_dict
from patternreview.config import ReviewConfig
from patternreview.engine import DetectionEngine
from patternreview.errors import ReviewCancelled
from patternreview.models import ChangeSetFile, LineRange, RunDiagnostics, Strategy
from patternreview.registry import PatternRegistry
from patternreview.strategies import Judgment


def hybrid_semantic(**overrides):
    return pattern_dict(
        id="role-hybrid",
        detection_method="hybrid",
        semantic="Is authorization decided inline?",
        **overrides,
    )


class ExplodingJudge:
    def judge(self, prompt, file):
        raise RuntimeError("unexpected bug")


class TestCombination:
    def test_semantic_hit_without_deterministic_support_is_low_confidence(self, admin_file):
        judge = FakeJudge(
            [Judgment(confidence=0.9, line=12), Judgment(confidence=0.9, line=5)]
        )
        engine = DetectionEngine(PatternRegistry.load([hybrid_semantic()]), judge)

        matches = engine.evaluate_pair(engine.registry.get("role-hybrid"), admin_file)

        by_key = {(m.line, m.strategy): m for m in matches}
        assert not by_key[(12, Strategy.SEMANTIC)].low_confidence
        assert by_key[(5, Strategy.SEMANTIC)].low_confidence
        assert not by_key[(12, Strategy.LEXICAL)].low_confidence

    def test_hybrid_with_only_unanchored_hits_is_dropped(self):
        judge = FakeJudge([Judgment(confidence=0.9, line=None)])
        engine = DetectionEngine(PatternRegistry.load([hybrid_semantic()]), judge)
        f = ChangeSetFile("lib/clean.ex", "defmodule Clean do\nend\n")

        assert engine.evaluate_pair(engine.registry.get("role-hybrid"), f) == []

    def test_semantic_only_pattern_keeps_file_level_hit(self):
        pattern = pattern_dict(id="smell", detection_method="semantic", semantic="Smell?")
        judge = FakeJudge([Judgment(confidence=0.9, line=None)])
        engine = DetectionEngine(PatternRegistry.load([pattern]), judge)
        f = ChangeSetFile("lib/a.ex", "x\n")

        [m] = engine.evaluate_pair(engine.registry.get("smell"), f)
        assert m.file_level and m.line == 1 and m.low_confidence

    def test_changed_lines_only_filters_untouched_lines(self):
        content = numbered_content({3: 'role == "admin"', 9: 'role == "admin"'}, 10)
        f = ChangeSetFile("lib/a.ex", content, hunks=(LineRange(8, 10),))
        registry = PatternRegistry.load([pattern_dict()])

        everything = DetectionEngine(registry).detect([f])
        changed = DetectionEngine(registry, config=ReviewConfig(changed_lines_only=True)).detect([f])

        assert [m.line for m in everything] == [3, 9]
        assert [m.line for m in changed] == [9]

    def test_changed_lines_only_keeps_files_without_hunks(self, admin_file):
        registry = PatternRegistry.load([pattern_dict()])
        engine = DetectionEngine(registry, config=ReviewConfig(changed_lines_only=True))
        assert [m.line for m in engine.detect([admin_file])] == [12]


class TestContainment:
    def test_judgment_error_keeps_other_strategies(self, admin_file):
        diagnostics = RunDiagnostics()
        engine = DetectionEngine(
            PatternRegistry.load([hybrid_semantic()]), FailingJudge(), diagnostics=diagnostics
        )

        matches = engine.detect([admin_file])

        assert [(m.line, m.strategy) for m in matches] == [(12, Strategy.LEXICAL)]
        assert diagnostics.judgment_errors == 1
        assert "role-hybrid on lib/app/accounts.ex [semantic]" in diagnostics.messages[0]

    def test_unexpected_strategy_exception_is_counted(self, admin_file):
        diagnostics = RunDiagnostics()
        engine = DetectionEngine(
            PatternRegistry.load([hybrid_semantic()]), ExplodingJudge(), diagnostics=diagnostics
        )

        matches = engine.detect([admin_file])

        assert len(matches) == 1
        assert diagnostics.strategy_errors == 1
        assert "RuntimeError" in diagnostics.messages[0]

    def test_structural_unavailable_is_recorded_once_per_pattern(self, admin_file):
        pattern = pattern_dict(
            id="hybrid-struct", detection_method="hybrid", structural={"node": "call"}
        )
        diagnostics = RunDiagnostics()
        engine = DetectionEngine(PatternRegistry.load([pattern]), diagnostics=diagnostics)

        matches = engine.detect([admin_file])

        assert [m.strategy for m in matches] == [Strategy.LEXICAL]
        assert diagnostics.structural_unavailable == 1

    def test_semantic_rule_without_judge_is_skipped(self, admin_file):
        diagnostics = RunDiagnostics()
        engine = DetectionEngine(PatternRegistry.load([hybrid_semantic()]), diagnostics=diagnostics)

        assert len(engine.detect([admin_file])) == 1
        assert diagnostics.judgment_errors == 1
        assert "no judgment collaborator" in diagnostics.messages[0]

    def test_semantic_timeout_counts_as_judgment_error(self, admin_file):
        diagnostics = RunDiagnostics()
        engine = DetectionEngine(
            PatternRegistry.load([hybrid_semantic()]),
            SlowJudge(1.0),
            config=ReviewConfig(semantic_timeout_seconds=0.05),
            diagnostics=diagnostics,
        )

        matches = engine.detect([admin_file])

        assert [m.strategy for m in matches] == [Strategy.LEXICAL]
        assert diagnostics.judgment_errors == 1
        assert "timed out" in diagnostics.messages[0]

    def test_stuck_judge_calls_fail_fast_instead_of_queueing(self, admin_file):
        patterns = [
            pattern_dict(
                id=f"role-hybrid-{suffix}",
                detection_method="hybrid",
                semantic="Is authorization decided inline?",
            )
            for suffix in ("a", "b")
        ]
        diagnostics = RunDiagnostics()
        engine = DetectionEngine(
            PatternRegistry.load(patterns),
            SlowJudge(0.5),
            config=ReviewConfig(max_workers=1, semantic_timeout_seconds=0.05),
            diagnostics=diagnostics,
        )

        matches = engine.detect([admin_file])

        assert {m.strategy for m in matches} == {Strategy.LEXICAL}
        assert diagnostics.judgment_errors == 2
        assert "timed out" in diagnostics.messages[0]
        assert "unresponsive" in diagnostics.messages[1]

    def test_failing_file_is_skipped_not_fatal(self, admin_file, monkeypatch):
        diagnostics = RunDiagnostics()
        engine = DetectionEngine(PatternRegistry.load([pattern_dict()]), diagnostics=diagnostics)
        other = ChangeSetFile("lib/other.ex", admin_file.content)
        original = engine.evaluate_file

        def flaky(file, cancel_event=None):
            if file.path == "lib/other.ex":
                raise MemoryError("file too large")
            return original(file, cancel_event)

        monkeypatch.setattr(engine, "evaluate_file", flaky)
        matches = engine.detect([admin_file, other])

        assert [m.file_path for m in matches] == ["lib/app/accounts.ex"]
        assert diagnostics.skipped_files == 1


class TestScheduling:
    def _files(self, n):
        return [
            ChangeSetFile(f"lib/f{i}.ex", numbered_content({i + 1: 'role == "admin"'}, n + 1))
            for i in range(n)
        ]

    def test_result_is_independent_of_worker_count(self):
        registry = PatternRegistry.load([pattern_dict(), pattern_dict(id="other", lexical=["filler"])])
        files = self._files(8)

        serial = DetectionEngine(registry, config=ReviewConfig(max_workers=1)).detect(files)
        parallel = DetectionEngine(registry, config=ReviewConfig(max_workers=8)).detect(files)

        assert serial == parallel
        assert len(serial) > 8

    def test_patterns_only_apply_to_matching_globs(self):
        registry = PatternRegistry.load([pattern_dict(applicable_file_globs=["*.py"])])
        assert DetectionEngine(registry).detect(self._files(2)) == []

    def test_empty_change_set(self):
        registry = PatternRegistry.load([pattern_dict()])
        assert DetectionEngine(registry).detect([]) == []

    def test_cancellation_raises(self):
        registry = PatternRegistry.load([pattern_dict()])
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(ReviewCancelled) as exc_info:
            DetectionEngine(registry).detect(self._files(3), cancel)
        assert exc_info.value.stage == "detecting"
