"""Pattern registry: load, validate and index anti-pattern definitions."""

from __future__ import annotations

import fnmatch
import logging
import re
from collections.abc import Iterable, Iterator
from pathlib import Path, PurePosixPath
from typing import Any, Optional, Union

from patternreview.config import PATTERN_FILE_SUFFIXES
from patternreview.errors import RegistryError
from patternreview.models import (
    Category,
    DetectionMethod,
    ExclusionRule,
    LexicalRule,
    Pattern,
    Risk,
    Severity,
    StructuralRule,
)
from patternreview.pattern_docs import load_pattern_file

logger = logging.getLogger(__name__)

PatternSource = Union[str, Path, dict]

REQUIRED_FIELDS = (
    "id",
    "title",
    "severity",
    "category",
    "detection_method",
    "estimated_fix_minutes",
    "breaking_change_risk",
    "applicable_file_globs",
)

# Spellings used by older pattern libraries
_CATEGORY_ALIASES = {
    "one-liners": "one-liner",
    "one_liner": "one-liner",
    "integrations": "integration",
    "file_level": "file-level",
}

_SKIPPED_FILES = {"readme.md", "index.md"}


class PatternRegistry:
    """Immutable, validated set of patterns for one run."""

    def __init__(self, patterns: Iterable[Pattern], warnings: Iterable[str] = ()) -> None:
        ordered = sorted(patterns, key=lambda p: (p.severity.rank, p.id))
        self._patterns: tuple[Pattern, ...] = tuple(ordered)
        self._by_id = {p.id: p for p in self._patterns}
        self._warnings: tuple[str, ...] = tuple(warnings)

    # ── Loading ──────────────────────────────────────────────────────────

    @classmethod
    def load(cls, sources: Iterable[PatternSource]) -> PatternRegistry:
        """Load every definition reachable from `sources`.

        Sources are directories (scanned recursively), definition files, or
        already-parsed mappings. A malformed definition is skipped with a
        warning; a source that does not exist fails the whole load.

        Raises:
            RegistryError: a source path is missing or unreadable
        """
        patterns: list[Pattern] = []
        warnings: list[str] = []
        seen: set[str] = set()

        for raw, origin in _expand_sources(sources):
            try:
                data = load_pattern_file(raw) if isinstance(raw, Path) else raw
                pattern = build_pattern(data, source=origin)
                if pattern.id in seen:
                    raise RegistryError(f"Duplicate pattern id '{pattern.id}'", source=origin)
            except RegistryError as e:
                warning = f"{e.source or origin}: {e.message}"
                logger.warning("Skipping pattern definition %s", warning)
                warnings.append(warning)
                continue
            except Exception as e:
                warning = f"{origin}: {type(e).__name__}: {e}"
                logger.warning("Skipping pattern definition %s", warning, exc_info=True)
                warnings.append(warning)
                continue
            seen.add(pattern.id)
            patterns.append(pattern)

        logger.info(
            "Pattern registry loaded: %d active, %d skipped", len(patterns), len(warnings)
        )
        return cls(patterns, warnings)

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def patterns(self) -> tuple[Pattern, ...]:
        return self._patterns

    @property
    def warnings(self) -> tuple[str, ...]:
        return self._warnings

    def get(self, pattern_id: str) -> Optional[Pattern]:
        return self._by_id.get(pattern_id)

    def select(self, file_path: str) -> list[Pattern]:
        """Patterns applicable to `file_path`, critical first, then by id."""
        return [
            p for p in self._patterns
            if any(glob_matches(file_path, g) for g in p.applicable_file_globs)
        ]

    def __len__(self) -> int:
        return len(self._patterns)

    def __iter__(self) -> Iterator[Pattern]:
        return iter(self._patterns)

    def __contains__(self, pattern_id: object) -> bool:
        return pattern_id in self._by_id


def glob_matches(path: str, glob: str) -> bool:
    """Match a repo-relative path against a glob.

    `**/` may match zero directories, and a glob without a slash matches the
    file name anywhere in the tree.
    """
    norm = path.replace("\\", "/")
    if norm.startswith("./"):
        norm = norm[2:]
    if fnmatch.fnmatchcase(norm, glob):
        return True
    if glob.startswith("**/") and fnmatch.fnmatchcase(norm, glob[3:]):
        return True
    if "/" not in glob:
        return fnmatch.fnmatchcase(PurePosixPath(norm).name, glob)
    return False


def _expand_sources(sources: Iterable[PatternSource]) -> Iterator[tuple[Any, str]]:
    for index, source in enumerate(sources):
        if isinstance(source, dict):
            yield source, f"<inline:{index}>"
            continue

        path = Path(source)
        if path.is_dir():
            files = sorted(
                p for p in path.rglob("*")
                if p.is_file()
                and p.suffix in PATTERN_FILE_SUFFIXES
                and p.name.lower() not in _SKIPPED_FILES
            )
            for f in files:
                yield f, str(f)
        elif path.is_file():
            yield path, str(path)
        else:
            raise RegistryError(f"Pattern source not found: {path}", source=str(path))


# ── Validation ───────────────────────────────────────────────────────────────


def build_pattern(data: Any, source: Optional[str] = None) -> Pattern:
    """Validate a raw mapping and build a Pattern.

    Raises:
        RegistryError: any invariant is violated
    """
    if not isinstance(data, dict):
        raise RegistryError("Pattern definition must be a mapping", source=source)

    missing = [f for f in REQUIRED_FIELDS if data.get(f) in (None, "", [])]
    if missing:
        raise RegistryError(
            f"Missing required header field(s): {', '.join(missing)}", source=source
        )

    pattern_id = str(data["id"]).strip()
    severity = _enum(Severity, data["severity"], "severity", source)
    category_raw = str(data["category"]).strip().lower()
    category = _enum(Category, _CATEGORY_ALIASES.get(category_raw, category_raw), "category", source)
    method = _enum(DetectionMethod, data["detection_method"], "detection_method", source)
    risk = _enum(Risk, data["breaking_change_risk"], "breaking_change_risk", source)

    minutes = data["estimated_fix_minutes"]
    if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes <= 0:
        raise RegistryError(
            f"estimated_fix_minutes must be a positive integer, got {minutes!r}", source=source
        )

    globs = data["applicable_file_globs"]
    if isinstance(globs, str):
        globs = [globs]
    if not isinstance(globs, list) or not all(isinstance(g, str) and g.strip() for g in globs):
        raise RegistryError("applicable_file_globs must be a list of glob strings", source=source)

    lexical = tuple(
        _lexical_rule(r, source) for r in _rule_list(data.get("lexical"), "lexical", source)
    )
    exclusions = tuple(
        _exclusion(e, source)
        for e in _rule_list(data.get("lexical_exclusions"), "lexical_exclusions", source)
    )
    structural = (
        _structural_rule(data["structural"], source) if data.get("structural") else None
    )
    semantic = data.get("semantic")
    if semantic is not None and not isinstance(semantic, str):
        raise RegistryError("semantic must be prompt text", source=source)
    semantic = semantic.strip() if semantic else None

    present = {
        DetectionMethod.LEXICAL: bool(lexical),
        DetectionMethod.STRUCTURAL: structural is not None,
        DetectionMethod.SEMANTIC: bool(semantic),
    }
    if method == DetectionMethod.HYBRID:
        if sum(present.values()) < 2:
            raise RegistryError(
                "hybrid patterns need at least two of lexical, structural, semantic rules",
                source=source,
            )
    elif not present[method]:
        raise RegistryError(f"{method} pattern has no {method} rule", source=source)

    # Only the strategies named by the method run, except hybrid which runs all present
    if method != DetectionMethod.HYBRID:
        lexical = lexical if method == DetectionMethod.LEXICAL else ()
        structural = structural if method == DetectionMethod.STRUCTURAL else None
        semantic = semantic if method == DetectionMethod.SEMANTIC else None

    return Pattern(
        id=pattern_id,
        title=str(data["title"]).strip(),
        severity=severity,
        category=category,
        detection_method=method,
        estimated_fix_minutes=minutes,
        breaking_change_risk=risk,
        applicable_file_globs=tuple(g.strip() for g in globs),
        lexical_rules=lexical,
        lexical_exclusions=exclusions,
        structural_rule=structural,
        semantic_prompt=semantic,
        description=str(data.get("description") or "").strip(),
        fix=str(data.get("fix") or "").strip(),
        bad_example=str(data.get("bad_example") or "").strip("\n"),
        good_example=str(data.get("good_example") or "").strip("\n"),
        source=source,
    )


def _enum(enum_cls: Any, value: Any, field_name: str, source: Optional[str]) -> Any:
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise RegistryError(
            f"{field_name} must be one of {allowed}, got {value!r}", source=source
        ) from None


def _rule_list(value: Any, field_name: str, source: Optional[str]) -> list[Any]:
    """A single rule (string or mapping) counts as a one-element list."""
    if value is None or value == "":
        return []
    if isinstance(value, (str, dict)):
        return [value]
    if not isinstance(value, list):
        raise RegistryError(
            f"{field_name} must be a rule or a list of rules, got {value!r}", source=source
        )
    return value


def _compile(text: Any, flags: int, what: str, source: Optional[str]) -> re.Pattern:
    if not isinstance(text, str) or not text:
        raise RegistryError(f"{what} must be a non-empty regex string", source=source)
    try:
        return re.compile(text, flags)
    except re.error as e:
        raise RegistryError(f"Invalid {what} /{text}/: {e}", source=source, cause=e) from e


def _lexical_rule(raw: Any, source: Optional[str]) -> LexicalRule:
    if isinstance(raw, str):
        raw = {"pattern": raw}
    if not isinstance(raw, dict):
        raise RegistryError("Lexical rule must be a regex string or mapping", source=source)

    multiline = bool(raw.get("multiline", False))
    flags = re.MULTILINE if multiline else 0
    if raw.get("ignore_case"):
        flags |= re.IGNORECASE
    regex = _compile(raw.get("pattern"), flags, "lexical pattern", source)

    capture = raw.get("capture", 0)
    if isinstance(capture, bool) or not isinstance(capture, (int, str)):
        raise RegistryError("capture must be a group index or name", source=source)
    if isinstance(capture, int) and not 0 <= capture <= regex.groups:
        raise RegistryError(
            f"capture group {capture} does not exist in /{regex.pattern}/", source=source
        )
    if isinstance(capture, str) and capture not in regex.groupindex:
        raise RegistryError(
            f"capture group '{capture}' does not exist in /{regex.pattern}/", source=source
        )
    return LexicalRule(regex=regex, capture=capture, multiline=multiline)


def _exclusion(raw: Any, source: Optional[str]) -> ExclusionRule:
    if not isinstance(raw, dict):
        raise RegistryError("Lexical exclusion must be a mapping with start/end", source=source)
    start = _compile(raw.get("start"), 0, "exclusion start", source)
    end = _compile(raw.get("end", raw.get("start")), 0, "exclusion end", source)
    return ExclusionRule(start=start, end=end)


def _structural_rule(raw: Any, source: Optional[str]) -> StructuralRule:
    if not isinstance(raw, dict) or not raw.get("node"):
        raise RegistryError("Structural rule must be a mapping with a 'node' kind", source=source)

    contains_raw = raw.get("contains") or []
    if isinstance(contains_raw, dict):
        contains_raw = [contains_raw]
    if not isinstance(contains_raw, list):
        raise RegistryError("structural 'contains' must be a mapping or list", source=source)

    literals = raw.get("literals_any") or []
    if not isinstance(literals, list):
        raise RegistryError("literals_any must be a list", source=source)

    min_branches = raw.get("min_branches", 0)
    if isinstance(min_branches, bool) or not isinstance(min_branches, int) or min_branches < 0:
        raise RegistryError("min_branches must be a non-negative integer", source=source)

    return StructuralRule(
        node=str(raw["node"]),
        name=_compile(raw["name"], 0, "structural name", source) if raw.get("name") else None,
        text=_compile(raw["text"], 0, "structural text", source) if raw.get("text") else None,
        min_branches=min_branches,
        literals_any=frozenset(str(v) for v in literals),
        contains=tuple(_structural_rule(c, source) for c in contains_raw),
    )
