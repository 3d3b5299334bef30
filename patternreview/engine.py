"""Detection engine: run every applicable strategy for every (pattern, file)."""

from __future__ import annotations

import dataclasses
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Optional

from patternreview.config import ReviewConfig
from patternreview.errors import JudgmentError, ReviewCancelled, StructuralUnavailable
from patternreview.models import (
    ChangeSetFile,
    DetectionMethod,
    Pattern,
    RawMatch,
    RunDiagnostics,
    Strategy,
)
from patternreview.registry import PatternRegistry
from patternreview.strategies import (
    DetectionStrategy,
    Judge,
    LexicalStrategy,
    SemanticStrategy,
    StructuralStrategy,
)
from patternreview.structure import structure_for

logger = logging.getLogger(__name__)


class DetectionEngine:
    """Evaluates a change-set against a registry snapshot.

    Files are evaluated in parallel on a bounded pool. Strategy failures are
    contained per (pattern, file, strategy) and only show up in diagnostics.
    """

    def __init__(
        self,
        registry: PatternRegistry,
        judge: Optional[Judge] = None,
        config: Optional[ReviewConfig] = None,
        diagnostics: Optional[RunDiagnostics] = None,
    ) -> None:
        self.registry = registry
        self.config = config or ReviewConfig()
        self.diagnostics = diagnostics if diagnostics is not None else RunDiagnostics()
        self.judge = judge
        self._strategies: dict[Strategy, DetectionStrategy] = {
            Strategy.LEXICAL: LexicalStrategy(),
            Strategy.STRUCTURAL: StructuralStrategy(),
        }
        if judge is not None:
            self._strategies[Strategy.SEMANTIC] = SemanticStrategy(
                judge, self.config.confidence_threshold, self.diagnostics
            )
        self._semantic_pool: Optional[ThreadPoolExecutor] = None
        self._abandoned_limit = 0
        self._abandoned: set[Future] = set()
        self._abandoned_lock = threading.Lock()

    # ── Run ──────────────────────────────────────────────────────────────

    def detect(
        self,
        files: list[ChangeSetFile],
        cancel_event: Optional[threading.Event] = None,
    ) -> list[RawMatch]:
        """Evaluate all files and return the collected raw matches.

        Raises:
            ReviewCancelled: `cancel_event` was set before every file finished
        """
        if not files:
            return []

        workers = max(1, min(len(files), self.config.max_workers))
        logger.info("Detecting across %d file(s) with %d worker(s)", len(files), workers)

        collected: list[RawMatch] = []
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="detect")
        if Strategy.SEMANTIC in self._strategies:
            # Timed-out judge calls keep their thread; one spare per worker holds them
            self._abandoned_limit = workers
            self._semantic_pool = ThreadPoolExecutor(
                max_workers=workers * 2, thread_name_prefix="judge"
            )
        try:
            pending: set[Future] = {
                pool.submit(self._evaluate_file_contained, f, cancel_event) for f in files
            }
            while pending:
                done, pending = wait(pending, timeout=0.5, return_when=FIRST_COMPLETED)
                for fut in done:
                    collected.extend(fut.result())
                if cancel_event is not None and cancel_event.is_set():
                    for fut in pending:
                        fut.cancel()
                    raise ReviewCancelled(
                        f"Detection cancelled with {len(pending)} file(s) unfinished",
                        stage="detecting",
                    )
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
            if self._semantic_pool is not None:
                with self._abandoned_lock:
                    still_running = len(self._abandoned)
                    self._abandoned = set()
                if still_running:
                    logger.info(
                        "%d timed-out judge call(s) still running; their results are discarded",
                        still_running,
                    )
                self._semantic_pool.shutdown(wait=False, cancel_futures=True)
                self._semantic_pool = None

        collected.sort(key=lambda m: (m.file_path, m.line, m.pattern_id, m.strategy.value))
        return collected

    def _evaluate_file_contained(
        self, file: ChangeSetFile, cancel_event: Optional[threading.Event]
    ) -> list[RawMatch]:
        try:
            return self.evaluate_file(file, cancel_event)
        except Exception as e:
            logger.warning("Evaluation of %s failed: %s", file.path, e)
            self.diagnostics.record("skipped_files", f"{file.path}: {e}")
            return []

    # ── Per file ─────────────────────────────────────────────────────────

    def evaluate_file(
        self,
        file: ChangeSetFile,
        cancel_event: Optional[threading.Event] = None,
    ) -> list[RawMatch]:
        """Run every applicable pattern against one file."""
        patterns = self.registry.select(file.path)
        if not patterns:
            return []

        # Build the syntax tree once per file, not once per pattern
        structural_error: Optional[StructuralUnavailable] = None
        if file.structure is None and any(p.structural_rule for p in patterns):
            try:
                file = dataclasses.replace(file, structure=structure_for(file))
            except StructuralUnavailable as e:
                structural_error = e

        matches: list[RawMatch] = []
        for pattern in patterns:
            if cancel_event is not None and cancel_event.is_set():
                break
            matches.extend(self.evaluate_pair(pattern, file, structural_error))
        return matches

    def evaluate_pair(
        self,
        pattern: Pattern,
        file: ChangeSetFile,
        structural_error: Optional[StructuralUnavailable] = None,
    ) -> list[RawMatch]:
        """Run the pattern's strategies on one file and apply the combination rule."""
        combined: list[RawMatch] = []

        for kind in pattern.strategies:
            where = f"{pattern.id} on {file.path} [{kind}]"
            if kind == Strategy.STRUCTURAL and structural_error is not None:
                logger.debug("Structural strategy skipped for %s: %s", where, structural_error)
                self.diagnostics.record(
                    "structural_unavailable", f"{where}: {structural_error.message}"
                )
                continue
            strategy = self._strategies.get(kind)
            if strategy is None:
                self.diagnostics.record(
                    "judgment_errors", f"{where}: no judgment collaborator configured"
                )
                continue
            try:
                if kind == Strategy.SEMANTIC:
                    combined.extend(self._evaluate_semantic(strategy, pattern, file))
                else:
                    combined.extend(strategy.evaluate(pattern, file))
            except StructuralUnavailable as e:
                self.diagnostics.record("structural_unavailable", f"{where}: {e.message}")
            except JudgmentError as e:
                logger.warning("Semantic judgment failed for %s: %s", where, e)
                self.diagnostics.record("judgment_errors", f"{where}: {e}")
            except Exception as e:
                logger.warning("Strategy failed for %s: %s", where, e, exc_info=True)
                self.diagnostics.record("strategy_errors", f"{where}: {type(e).__name__}: {e}")

        return self._combine(pattern, file, combined)

    def _evaluate_semantic(
        self, strategy: DetectionStrategy, pattern: Pattern, file: ChangeSetFile
    ) -> list[RawMatch]:
        timeout = self.config.semantic_timeout_seconds
        if self._semantic_pool is None:
            # Called outside detect(), e.g. evaluate_pair() directly
            return strategy.evaluate(pattern, file)
        with self._abandoned_lock:
            if len(self._abandoned) >= self._abandoned_limit:
                raise JudgmentError(
                    f"Judge unresponsive: {len(self._abandoned)} call(s) still running past the timeout",
                    stage="detecting",
                )
        future = self._semantic_pool.submit(strategy.evaluate, pattern, file)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeout as e:
            if not future.cancel():
                with self._abandoned_lock:
                    self._abandoned.add(future)
                future.add_done_callback(self._release_abandoned)
            raise JudgmentError(
                f"Semantic judgment timed out after {timeout:.0f}s", stage="detecting", cause=e
            ) from e

    def _release_abandoned(self, future: Future) -> None:
        with self._abandoned_lock:
            self._abandoned.discard(future)

    def _combine(
        self, pattern: Pattern, file: ChangeSetFile, matches: list[RawMatch]
    ) -> list[RawMatch]:
        if not matches:
            return []

        if pattern.detection_method == DetectionMethod.HYBRID and all(
            m.file_level for m in matches
        ):
            logger.debug(
                "Dropping unanchored hybrid hits for %s in %s", pattern.id, file.path
            )
            return []

        deterministic_lines = {m.line for m in matches if m.strategy != Strategy.SEMANTIC}
        out: list[RawMatch] = []
        for m in matches:
            if m.strategy == Strategy.SEMANTIC and m.line not in deterministic_lines:
                m = dataclasses.replace(m, low_confidence=True)
            if self.config.changed_lines_only and file.hunks and not (
                m.file_level or file.is_changed(m.line)
            ):
                continue
            out.append(m)
        return out
