"""Error taxonomy for the review pipeline.

Recoverable errors (RegistryError for a single definition,
StructuralUnavailable, JudgmentError) are caught inside the pipeline and
surface only as diagnostics. Boundary failures (fetch, publish) and
configuration errors abort the run.
"""

from __future__ import annotations

from typing import Any, Optional


class ReviewError(Exception):
    """Base class for every error raised by the review engine."""

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        cause: Optional[BaseException] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.stage = stage
        self.cause = cause
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.stage:
            parts.insert(0, f"[{self.stage}]")
        if self.cause is not None:
            parts.append(f"(caused by {type(self.cause).__name__}: {self.cause})")
        return " ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
        }
        if self.stage:
            d["stage"] = self.stage
        if self.cause is not None:
            d["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        if self.details:
            d["details"] = self.details
        return d


class ConfigError(ReviewError):
    """Invalid run configuration. The run never starts."""


class RegistryError(ReviewError):
    """A pattern definition (or a whole source) could not be loaded."""

    def __init__(self, message: str, source: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, stage=kwargs.pop("stage", "registry"), **kwargs)
        self.source = source


class StructuralUnavailable(ReviewError):
    """The file has no usable structural representation."""


class JudgmentError(ReviewError):
    """The semantic judgment collaborator failed or timed out."""


class FetchError(ReviewError):
    """The change-set could not be fetched (network, auth, not found)."""


class PublishError(ReviewError):
    """Comment payloads could not be published."""


class PipelineError(ReviewError):
    """A fatal failure that moved the orchestrator to the Error state."""


class ReviewCancelled(PipelineError):
    """The run was cancelled or timed out; no output was published."""
