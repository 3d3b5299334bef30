"""Feedback rendering: findings and summaries to review comment payloads."""

from __future__ import annotations

import html
import logging
import re
from pathlib import Path
from string import Template
from typing import Optional, Union

import yaml

from patternreview.errors import ConfigError
from patternreview.models import CommentPayload, Finding, ReviewSummary, Severity

logger = logging.getLogger(__name__)

SEVERITY_EMOJI = {
    Severity.CRITICAL: "🚨",
    Severity.HIGH: "⚠️",
    Severity.MEDIUM: "⚡",
    Severity.LOW: "💡",
}

GENERIC_TEMPLATE = """\
### $emoji $title

**Severity**: $SEVERITY | **Category**: $category | **Pattern**: `$pattern`$blocking_badge

**Location**: `$file:$line`

$description
$detail_block$snippet_block$examples_block
**Suggested fix**: $fix

*Estimated fix time: $minutes min | Breaking-change risk: $risk | Detected by: $strategies*
"""

# Keys are "category/severity" or "category"
DEFAULT_TEMPLATES: dict[str, str] = {
    "architectural/critical": """\
### $emoji Architectural issue: $title

> **Blocking.** This pattern weakens the application's architecture and must be fixed before merge.

**Location**: `$file:$line` | **Pattern**: `$pattern`

$description
$detail_block$snippet_block$examples_block
**Suggested fix**: $fix

*Estimated fix time: $minutes min | Breaking-change risk: $risk | Detected by: $strategies*
""",
    "one-liner": """\
**$emoji $title** (`$pattern`, $severity) at `$file:$line`$blocking_badge
$snippet_block
**Fix**: $fix *(~$minutes min)*
""",
}

SUMMARY_TEMPLATE = """\
## Anti-pattern review: $change_set_id

**$verdict**

| Severity | Count |
|----------|-------|
| 🚨 Critical | $critical |
| ⚠️ High | $high |
| ⚡ Medium | $medium |
| 💡 Low | $low |
| **Total** | **$total** |

Estimated remediation time: **$hours h** (blocking: $blocking_hours h).
Estimated cost savings from catching these in review: **$$$savings** at $$$rate/h.
"""

_MD_SPECIAL = re.compile(r"([\\`*_{}\[\]()#+!|~])")
_LINE_START_SPECIAL = re.compile(r"^(\s*)(?:([-=])|(\d+)\.)", re.MULTILINE)


def _escape_line_start(m: re.Match) -> str:
    if m.group(2):
        return f"{m.group(1)}\\{m.group(2)}"
    return f"{m.group(1)}{m.group(3)}\\."


def escape_markdown(text: str) -> str:
    """Neutralise Markdown and HTML so interpolated text renders literally."""
    escaped = _MD_SPECIAL.sub(r"\\\1", html.escape(text, quote=False))
    # Mentions last: the entity's "#" must stay unescaped
    escaped = escaped.replace("@", "&#64;")
    return _LINE_START_SPECIAL.sub(_escape_line_start, escaped)


def code_block(snippet: str, language: str = "") -> str:
    """Fence a snippet with more backticks than it contains in a row."""
    longest = max((len(run) for run in re.findall(r"`+", snippet)), default=0)
    fence = "`" * max(3, longest + 1)
    return f"{fence}{language}\n{snippet}\n{fence}"


def _language_for(path: str) -> str:
    ext = path.rsplit(".", 1)[-1] if "." in path else ""
    return {
        "ex": "elixir",
        "exs": "elixir",
        "heex": "html",
        "py": "python",
        "ts": "typescript",
        "js": "javascript",
        "rb": "ruby",
        "go": "go",
    }.get(ext, "")


class FeedbackRenderer:
    """Pure renderer: no I/O after construction, never fails on a missing template."""

    def __init__(
        self,
        templates: Optional[dict[str, str]] = None,
        summary_template: Optional[str] = None,
    ) -> None:
        merged = dict(DEFAULT_TEMPLATES)
        merged.update(templates or {})
        self._templates = {k.strip().lower(): Template(v) for k, v in merged.items()}
        self._generic = Template(self._templates_raw_generic(merged))
        self._summary = Template(summary_template or SUMMARY_TEMPLATE)

    @staticmethod
    def _templates_raw_generic(merged: dict[str, str]) -> str:
        return merged.get("default") or merged.get("generic") or GENERIC_TEMPLATE

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> FeedbackRenderer:
        """Load template overrides: {templates: {key: text}, summary: text}.

        Raises:
            ConfigError: unreadable or malformed template file
        """
        path = Path(path)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot load templates from {path}", stage="config", cause=e) from e
        if not isinstance(data, dict):
            raise ConfigError(f"Template file {path} must be a mapping", stage="config")
        templates = data.get("templates") or {}
        if not isinstance(templates, dict) or not all(
            isinstance(v, str) for v in templates.values()
        ):
            raise ConfigError(f"'templates' in {path} must map keys to text", stage="config")
        summary = data.get("summary")
        if summary is not None and not isinstance(summary, str):
            raise ConfigError(f"'summary' in {path} must be text", stage="config")
        return cls(templates=templates, summary_template=summary)

    def template_for(self, finding: Finding) -> Template:
        """Lookup by category/severity, then category, then the generic template."""
        for key in (f"{finding.category}/{finding.severity}", str(finding.category)):
            template = self._templates.get(key)
            if template is not None:
                return template
        return self._generic

    def render(
        self,
        finding: Finding,
        template: Optional[Union[Template, str]] = None,
        blocking: bool = False,
    ) -> CommentPayload:
        if template is None:
            template = self.template_for(finding)
        elif isinstance(template, str):
            template = Template(template)

        detail = finding.detail.strip()
        language = _language_for(finding.file_path)
        snippet_block = (
            "\n" + code_block(finding.snippet, language) + "\n"
            if finding.snippet
            else ""
        )
        examples_block = "".join(
            f"\n**{label}**:\n{code_block(code, language)}\n"
            for label, code in (("Bad", finding.bad_example), ("Good", finding.good_example))
            if code
        )
        note = " *(file-level, low confidence)*" if finding.file_level and finding.low_confidence else (
            " *(low confidence)*" if finding.low_confidence else ""
        )
        fields = {
            "emoji": SEVERITY_EMOJI.get(finding.severity, "ℹ️"),
            "title": escape_markdown(finding.title),
            "severity": str(finding.severity),
            "SEVERITY": str(finding.severity).upper(),
            "category": str(finding.category),
            "pattern": finding.pattern_id.replace("`", "'"),
            "file": finding.file_path.replace("`", "'"),
            "line": str(finding.line),
            "description": escape_markdown(finding.description or finding.title) + note,
            "detail": escape_markdown(detail),
            "detail_block": f"\n{escape_markdown(detail)}\n" if detail else "",
            "snippet_block": snippet_block,
            "examples_block": examples_block,
            "fix": escape_markdown(finding.suggested_fix or "See the pattern documentation."),
            "minutes": str(finding.estimated_fix_minutes),
            "risk": str(finding.breaking_change_risk),
            "strategies": ", ".join(sorted(str(s) for s in finding.strategies)),
            "blocking_badge": " | **BLOCKING**" if blocking else "",
        }
        return CommentPayload(
            dedup_key=finding.dedup_key,
            body=template.safe_substitute(fields),
            file_path=finding.file_path,
            line=finding.line,
            pattern_id=finding.pattern_id,
            severity=finding.severity,
            blocking=blocking,
        )

    def render_summary(
        self,
        summary: ReviewSummary,
        change_set_id: str = "",
        verdict: str = "",
        blocking_minutes: int = 0,
    ) -> CommentPayload:
        fields = {
            "change_set_id": escape_markdown(change_set_id or "change-set"),
            "verdict": escape_markdown(verdict),
            "critical": str(summary.critical),
            "high": str(summary.high),
            "medium": str(summary.medium),
            "low": str(summary.low),
            "total": str(summary.total_issues),
            "hours": f"{summary.total_time_hours:.1f}",
            "blocking_hours": f"{blocking_minutes / 60:.1f}",
            "savings": f"{summary.estimated_cost_savings:,.2f}",
            "rate": f"{summary.hourly_rate:,.2f}",
        }
        return CommentPayload(
            dedup_key=f"summary:{change_set_id}",
            body=self._summary.safe_substitute(fields),
        )
