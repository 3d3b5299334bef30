"""Configuration for the pattern review engine."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from patternreview.errors import ConfigError

# ── Server Config ────────────────────────────────────────────────────────────
SERVER_NAME = "pattern-review-mcp"
SERVER_VERSION = "0.3.0"
SERVER_HOST = "127.0.0.1"
SERVER_PORT = 8089

# ── Bedrock Config ───────────────────────────────────────────────────────────
BEDROCK_PROFILE = "bedrock"
BEDROCK_REGION = "eu-west-1"
BEDROCK_MODEL_ID = "eu.anthropic.claude-sonnet-4-6"
BEDROCK_MAX_TOKENS = 4096

# ── File Chunking ────────────────────────────────────────────────────────────
# Max chars of file content per judgment call (~4 chars per token, leaves
# room for the pattern prompt and the response)
FILE_CHUNK_MAX_CHARS = 24_000

# ── Usage Logging ────────────────────────────────────────────────────────────
USAGE_LOG_PATH = "usage.log"

# ── Pattern Library ──────────────────────────────────────────────────────────
# Bundled Elixir/Phoenix pattern definitions shipped next to the package
DEFAULT_PATTERNS_DIR = str(Path(__file__).resolve().parent.parent / "patterns")
PATTERN_FILE_SUFFIXES = (".md", ".yaml", ".yml")

# ── Review Defaults ──────────────────────────────────────────────────────────
DEFAULT_MAX_WORKERS = 4
DEFAULT_CONFIDENCE_THRESHOLD = 0.7
DEFAULT_HOURLY_RATE = 100.0
DEFAULT_SEMANTIC_TIMEOUT_SECONDS = 90.0
DEFAULT_MERGE_WINDOW = 0

# ── Publishing ───────────────────────────────────────────────────────────────
# JsonFilePublisher writes one {change_set_id}.json per change-set here
REVIEW_OUTPUT_DIR = "reviews"


@dataclass(frozen=True)
class ReviewConfig:
    """Per-run settings. Build with from_mapping()/from_yaml() to get validation."""

    max_workers: int = DEFAULT_MAX_WORKERS
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD
    block_on_high: bool = False
    hourly_rate: float = DEFAULT_HOURLY_RATE
    dry_run: bool = False
    merge_window: int = DEFAULT_MERGE_WINDOW
    semantic_timeout_seconds: float = DEFAULT_SEMANTIC_TIMEOUT_SECONDS
    run_timeout_seconds: Optional[float] = None
    changed_lines_only: bool = False
    pattern_sources: tuple[str, ...] = (DEFAULT_PATTERNS_DIR,)
    templates_path: Optional[str] = None

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        problems: list[str] = []
        if not isinstance(self.max_workers, int) or self.max_workers < 1:
            problems.append(f"max_workers must be a positive integer, got {self.max_workers!r}")
        if not _is_number(self.confidence_threshold) or not 0.0 <= self.confidence_threshold <= 1.0:
            problems.append(
                f"confidence_threshold must be within [0, 1], got {self.confidence_threshold!r}"
            )
        if not _is_number(self.hourly_rate) or self.hourly_rate < 0:
            problems.append(f"hourly_rate must be >= 0, got {self.hourly_rate!r}")
        if not isinstance(self.merge_window, int) or self.merge_window < 0:
            problems.append(f"merge_window must be an integer >= 0, got {self.merge_window!r}")
        if not _is_number(self.semantic_timeout_seconds) or self.semantic_timeout_seconds <= 0:
            problems.append(
                f"semantic_timeout_seconds must be > 0, got {self.semantic_timeout_seconds!r}"
            )
        if self.run_timeout_seconds is not None and (
            not _is_number(self.run_timeout_seconds) or self.run_timeout_seconds <= 0
        ):
            problems.append(
                f"run_timeout_seconds must be > 0 or null, got {self.run_timeout_seconds!r}"
            )
        for name in ("block_on_high", "dry_run", "changed_lines_only"):
            if not isinstance(getattr(self, name), bool):
                problems.append(f"{name} must be a boolean, got {getattr(self, name)!r}")
        if not self.pattern_sources:
            problems.append("pattern_sources must name at least one source")
        if problems:
            raise ConfigError("; ".join(problems), stage="config")

    @classmethod
    def from_mapping(cls, data: Optional[dict[str, Any]]) -> ReviewConfig:
        """Build a config from a plain mapping, rejecting unknown keys."""
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigError(
                f"Configuration must be a mapping, got {type(data).__name__}",
                stage="config",
            )
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(
                f"Unknown configuration keys: {', '.join(unknown)}", stage="config"
            )
        kwargs = dict(data)
        if "pattern_sources" in kwargs:
            sources = kwargs["pattern_sources"]
            if isinstance(sources, str):
                sources = [sources]
            if not isinstance(sources, (list, tuple)):
                raise ConfigError("pattern_sources must be a list of paths", stage="config")
            kwargs["pattern_sources"] = tuple(str(s) for s in sources)
        try:
            return cls(**kwargs)
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}", stage="config", cause=e) from e

    @classmethod
    def from_yaml(cls, path: str | Path) -> ReviewConfig:
        """Load a YAML config file. Relative pattern sources resolve against its directory."""
        path = Path(path)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except OSError as e:
            raise ConfigError(f"Cannot read config file {path}", stage="config", cause=e) from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Config file {path} is not valid YAML", stage="config", cause=e) from e

        if isinstance(data, dict):
            sources = data.get("pattern_sources")
            if isinstance(sources, str):
                sources = [sources]
            if isinstance(sources, list):
                data["pattern_sources"] = [
                    str(p) if Path(p).is_absolute() else str(path.parent / p)
                    for p in map(str, sources)
                ]
            templates = data.get("templates_path")
            if isinstance(templates, str) and not Path(templates).is_absolute():
                data["templates_path"] = str(path.parent / templates)
        return cls.from_mapping(data)

    def with_overrides(self, **overrides: Any) -> ReviewConfig:
        """Return a validated copy with some fields replaced."""
        current = {f.name: getattr(self, f.name) for f in fields(self)}
        current.update({k: v for k, v in overrides.items() if v is not None})
        return ReviewConfig.from_mapping(current)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
