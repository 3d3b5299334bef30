"""Review orchestrator: fetch → detect → aggregate → classify → render → publish."""

from __future__ import annotations

import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from patternreview.aggregator import FindingAggregator, summarize
from patternreview.collaborators import ChangeSetFetcher, Publisher
from patternreview.config import ReviewConfig
from patternreview.engine import DetectionEngine
from patternreview.errors import (
    ConfigError,
    PipelineError,
    ReviewCancelled,
    ReviewError,
)
from patternreview.models import ReviewReport, RunDiagnostics
from patternreview.policy import SeverityPolicy
from patternreview.registry import PatternRegistry
from patternreview.renderer import FeedbackRenderer
from patternreview.strategies import Judge

logger = logging.getLogger(__name__)

EXIT_CLEAN = 0
EXIT_BLOCKING = 1
EXIT_FATAL = 2
EXIT_CONFIG = 3


class RunState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    DETECTING = "detecting"
    AGGREGATING = "aggregating"
    CLASSIFYING = "classifying"
    RENDERING = "rendering"
    PUBLISHING = "publishing"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value


class ReviewOrchestrator:
    """Sequences one review run and owns all of its state.

    Stages run strictly one after another; only detection is parallel.
    Nothing is published unless every stage before Publishing completed
    without cancellation.
    """

    def __init__(
        self,
        registry: PatternRegistry,
        fetcher: ChangeSetFetcher,
        publisher: Optional[Publisher] = None,
        judge: Optional[Judge] = None,
        renderer: Optional[FeedbackRenderer] = None,
        config: Optional[ReviewConfig] = None,
    ) -> None:
        self.config = config or ReviewConfig()
        if publisher is None and not self.config.dry_run:
            raise ConfigError("A publisher is required unless dry_run is set", stage="config")
        self.registry = registry
        self.fetcher = fetcher
        self.publisher = publisher
        self.judge = judge
        self.renderer = renderer or FeedbackRenderer()
        self.policy = SeverityPolicy(block_on_high=self.config.block_on_high)
        self.state = RunState.IDLE
        self.history: list[RunState] = [RunState.IDLE]

    def _transition(self, state: RunState) -> None:
        logger.debug("Review state %s -> %s", self.state, state)
        self.state = state
        self.history.append(state)

    def _check_cancelled(self, cancel_event: threading.Event, timed_out: threading.Event) -> None:
        if cancel_event.is_set():
            reason = "timed out" if timed_out.is_set() else "cancelled"
            raise ReviewCancelled(f"Review {reason} during {self.state}", stage=str(self.state))

    # ── Run ──────────────────────────────────────────────────────────────

    def run(
        self, change_set_id: str, cancel_event: Optional[threading.Event] = None
    ) -> ReviewReport:
        """Run the whole pipeline for one change-set.

        Raises:
            PipelineError: fetching or publishing failed (stage and cause attached)
            ReviewCancelled: the run was cancelled or hit run_timeout_seconds
        """
        if self.state != RunState.IDLE:
            # Each run starts from a clean state machine
            self.state = RunState.IDLE
            self.history = [RunState.IDLE]

        cancel = cancel_event if cancel_event is not None else threading.Event()
        timed_out = threading.Event()
        timer: Optional[threading.Timer] = None
        if self.config.run_timeout_seconds:
            def _expire() -> None:
                timed_out.set()
                cancel.set()

            timer = threading.Timer(self.config.run_timeout_seconds, _expire)
            timer.daemon = True
            timer.start()

        logger.info(
            "Review %s starting: %d pattern(s), dry_run=%s",
            change_set_id, len(self.registry), self.config.dry_run,
        )
        try:
            report = self._run_stages(change_set_id, cancel, timed_out)
        except ReviewCancelled as e:
            self._transition(RunState.CANCELLED)
            logger.warning("Review %s cancelled: %s", change_set_id, e)
            raise
        except PipelineError as e:
            self._transition(RunState.ERROR)
            logger.error("Review %s failed: %s", change_set_id, e)
            raise
        except Exception as e:
            stage = str(self.state)
            self._transition(RunState.ERROR)
            logger.error("Review %s failed in %s: %s", change_set_id, stage, e, exc_info=True)
            raise PipelineError(f"Unexpected failure during {stage}", stage=stage, cause=e) from e
        finally:
            if timer is not None:
                timer.cancel()

        logger.info(
            "Review %s done: %d finding(s), %d blocking, published=%s",
            change_set_id, report.total_issues, len(report.blocking), report.published,
        )
        return report

    def _run_stages(
        self, change_set_id: str, cancel: threading.Event, timed_out: threading.Event
    ) -> ReviewReport:
        diagnostics = RunDiagnostics(
            patterns_loaded=len(self.registry),
            registry_warnings=list(self.registry.warnings),
        )

        self._transition(RunState.FETCHING)
        self._check_cancelled(cancel, timed_out)
        try:
            files = self.fetcher.fetch(change_set_id)
        except Exception as e:
            raise PipelineError(
                f"Fetching change-set {change_set_id!r} failed", stage="fetching", cause=e
            ) from e

        self._transition(RunState.DETECTING)
        self._check_cancelled(cancel, timed_out)
        engine = DetectionEngine(self.registry, self.judge, self.config, diagnostics)
        try:
            raw = engine.detect(files, cancel)
        except ReviewCancelled:
            self._check_cancelled(cancel, timed_out)
            raise

        self._transition(RunState.AGGREGATING)
        self._check_cancelled(cancel, timed_out)
        aggregator = FindingAggregator(self.registry, self.config.merge_window)
        findings = aggregator.aggregate(raw)
        summary = summarize(findings, self.config.hourly_rate)

        self._transition(RunState.CLASSIFYING)
        self._check_cancelled(cancel, timed_out)
        blocking_keys = [f.dedup_key for f in findings if self.policy.is_blocking(f)]
        blocking_set = set(blocking_keys)

        self._transition(RunState.RENDERING)
        self._check_cancelled(cancel, timed_out)
        payloads = [self.renderer.render(f, blocking=f.dedup_key in blocking_set) for f in findings]
        summary_payload = self.renderer.render_summary(
            summary,
            change_set_id=change_set_id,
            verdict=self.policy.verdict(findings),
            blocking_minutes=self.policy.blocking_minutes(findings),
        )

        report = ReviewReport(
            change_set_id=change_set_id,
            findings=findings,
            summary=summary,
            blocking=blocking_keys,
            diagnostics=diagnostics,
            payloads=payloads,
            summary_payload=summary_payload,
            dry_run=self.config.dry_run,
        )

        # Last point at which cancellation discards the run
        self._check_cancelled(cancel, timed_out)
        if self.config.dry_run:
            logger.info(
                "Dry run: %d comment(s) rendered for %s, not published",
                len(payloads), change_set_id,
            )
        else:
            self._transition(RunState.PUBLISHING)
            try:
                self.publisher.publish(change_set_id, payloads, summary_payload)
            except Exception as e:
                raise PipelineError(
                    f"Publishing review of {change_set_id!r} failed", stage="publishing", cause=e
                ) from e
            report.published = True

        self._transition(RunState.DONE)
        report.state = str(RunState.DONE)
        return report


# ── Exit codes ───────────────────────────────────────────────────────────────


def exit_code_for(result: Union[ReviewReport, BaseException]) -> int:
    """0 clean, 1 blocking findings, 2 fatal pipeline error, 3 invalid configuration."""
    if isinstance(result, ConfigError):
        return EXIT_CONFIG
    if isinstance(result, BaseException):
        return EXIT_FATAL
    return EXIT_BLOCKING if result.has_blocking else EXIT_CLEAN


def review(
    change_set_id: str,
    fetcher: ChangeSetFetcher,
    publisher: Optional[Publisher] = None,
    judge: Optional[Judge] = None,
    config: Optional[ReviewConfig] = None,
    config_path: Optional[Union[str, Path]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> tuple[int, Union[ReviewReport, ReviewError]]:
    """Load config, registry and templates, run once, and map the outcome to an exit code."""
    try:
        if config is None:
            config = ReviewConfig.from_yaml(config_path) if config_path else ReviewConfig()
        registry = PatternRegistry.load(config.pattern_sources)
        renderer = (
            FeedbackRenderer.from_yaml(config.templates_path)
            if config.templates_path
            else FeedbackRenderer()
        )
        orchestrator = ReviewOrchestrator(
            registry, fetcher, publisher, judge=judge, renderer=renderer, config=config
        )
        report = orchestrator.run(change_set_id, cancel_event)
    except ReviewError as e:
        logger.error("Review of %s aborted: %s", change_set_id, e)
        return exit_code_for(e), e
    return exit_code_for(report), report
