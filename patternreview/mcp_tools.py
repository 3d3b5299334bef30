"""MCP tool definitions for the pattern review engine."""

from __future__ import annotations

import asyncio
import json
import logging
import traceback
from typing import Optional

from fastmcp import Context, FastMCP

from patternreview.collaborators import DiffFetcher, JsonFilePublisher, StaticFetcher, file_from_dict
from patternreview.config import ReviewConfig
from patternreview.diff_parser import diff_stats, parse_diff
from patternreview.errors import ReviewError
from patternreview.judge import BedrockJudge
from patternreview.orchestrator import exit_code_for, review
from patternreview.registry import PatternRegistry, glob_matches

logger = logging.getLogger(__name__)


def _error_response(tool_name: str, error: Exception) -> str:
    """Build a structured JSON error response for MCP tool failures."""
    logger.error("Tool %s failed: %s\n%s", tool_name, error, traceback.format_exc())
    body = {
        "verdict": "ERROR",
        "summary": f"Tool '{tool_name}' failed: {error}",
        "exit_code": exit_code_for(error),
        "total_issues": 0,
        "issues": [],
        "error": str(error),
    }
    if isinstance(error, ReviewError):
        body["error_detail"] = error.to_dict()
    return json.dumps(body, indent=2)


def _make_progress_bridge(ctx: Context, loop: asyncio.AbstractEventLoop):
    """Create a sync callback that sends MCP log notifications while the judge streams.

    Log notifications don't need a progressToken from the client, and they
    keep the connection alive during long Bedrock calls.
    """
    call_count = 0

    def on_progress(chars_so_far: int, elapsed: float, message: str) -> None:
        nonlocal call_count
        call_count += 1
        try:
            future = asyncio.run_coroutine_threadsafe(
                ctx.log(
                    message=f"[judge] {message}",
                    level="info",
                    logger_name="patternreview.llm",
                ),
                loop,
            )
            future.result(timeout=2.0)
        except Exception as e:
            logger.warning("Log notification failed (call #%d): %s", call_count, e)

    return on_progress


def _config(dry_run: bool, block_on_high: bool) -> ReviewConfig:
    return ReviewConfig().with_overrides(dry_run=dry_run, block_on_high=block_on_high)


def _report_json(exit_code: int, outcome, extra: Optional[dict] = None) -> str:
    if isinstance(outcome, ReviewError):
        # Already logged by review(); report it in the tool error shape
        return json.dumps(
            {
                "verdict": "ERROR",
                "summary": f"Review aborted: {outcome}",
                "exit_code": exit_code,
                "total_issues": 0,
                "issues": [],
                "error": str(outcome),
                "error_detail": outcome.to_dict(),
            },
            indent=2,
        )
    body = outcome.to_dict()
    body["exit_code"] = exit_code
    if outcome.summary_payload is not None:
        body["summary_comment"] = outcome.summary_payload.body
    body.update(extra or {})
    return json.dumps(body, indent=2)


def register_tools(mcp: FastMCP) -> None:
    """Register all review tools on the given FastMCP server instance."""

    @mcp.tool()
    async def review_change_set(
        files_json: str,
        ctx: Context,
        change_set_id: str = "local",
        dry_run: bool = True,
        block_on_high: bool = False,
        semantic: bool = False,
    ) -> str:
        """Detect anti-patterns in a set of files and return the review report.

        Args:
            files_json: JSON array of files, each
                        {"path": ..., "content": ..., "hunks": [[start, end], ...]}
                        where hunks (optional) are the changed line ranges
            change_set_id: Identifier of the change-set (e.g. a PR number)
            dry_run: Render comments without publishing them (default true)
            block_on_high: Treat high-severity findings as merge-blocking
            semantic: Also run semantic rules through the Bedrock judge
        """
        try:
            items = json.loads(files_json)
            if not isinstance(items, list):
                raise ValueError("files_json must be a JSON array")
            files = [file_from_dict(item) for item in items]

            config = _config(dry_run, block_on_high)
            judge = None
            if semantic:
                judge = BedrockJudge(on_progress=_make_progress_bridge(ctx, asyncio.get_running_loop()))
            exit_code, outcome = await asyncio.to_thread(
                review,
                change_set_id,
                StaticFetcher({change_set_id: files}),
                None if dry_run else JsonFilePublisher(),
                judge,
                config,
            )
            return _report_json(exit_code, outcome)
        except Exception as e:
            return _error_response("review_change_set", e)

    @mcp.tool()
    async def review_diff(
        diff: str,
        ctx: Context,
        change_set_id: str = "local",
        contents_json: Optional[str] = None,
        dry_run: bool = True,
        block_on_high: bool = False,
        semantic: bool = False,
    ) -> str:
        """Detect anti-patterns in the files touched by a unified diff.

        Only the lines the diff shows are known unless full file contents are
        supplied, so multi-line rules work best with contents_json.
        The response also carries `diff_stats`: files changed, lines added and
        removed, and the new, deleted and renamed paths.

        Args:
            diff: Unified diff (e.g. from `git diff main...HEAD`)
            change_set_id: Identifier of the change-set
            contents_json: Optional JSON object mapping path to full new file content
            dry_run: Render comments without publishing them (default true)
            block_on_high: Treat high-severity findings as merge-blocking
            semantic: Also run semantic rules through the Bedrock judge
        """
        try:
            contents = json.loads(contents_json) if contents_json else None
            if contents is not None and not isinstance(contents, dict):
                raise ValueError("contents_json must be a JSON object")

            config = _config(dry_run, block_on_high)
            judge = None
            if semantic:
                judge = BedrockJudge(on_progress=_make_progress_bridge(ctx, asyncio.get_running_loop()))
            exit_code, outcome = await asyncio.to_thread(
                review,
                change_set_id,
                DiffFetcher({change_set_id: diff}, contents),
                None if dry_run else JsonFilePublisher(),
                judge,
                config,
            )
            return _report_json(exit_code, outcome, {"diff_stats": diff_stats(parse_diff(diff))})
        except Exception as e:
            return _error_response("review_diff", e)

    @mcp.tool()
    async def list_patterns(file_path: Optional[str] = None) -> str:
        """List the loaded anti-pattern definitions.

        Args:
            file_path: Optional path; only patterns applicable to it are listed
        """
        try:
            registry = await asyncio.to_thread(
                PatternRegistry.load, ReviewConfig().pattern_sources
            )
            patterns = registry.select(file_path) if file_path else list(registry)
            return json.dumps(
                {
                    "total": len(patterns),
                    "patterns": [
                        {
                            "id": p.id,
                            "title": p.title,
                            "severity": str(p.severity),
                            "category": str(p.category),
                            "detection_method": str(p.detection_method),
                            "globs": list(p.applicable_file_globs),
                        }
                        for p in patterns
                    ],
                    "warnings": list(registry.warnings),
                },
                indent=2,
            )
        except Exception as e:
            return _error_response("list_patterns", e)

    @mcp.tool()
    async def get_pattern(pattern_id: str, file_path: Optional[str] = None) -> str:
        """Show one pattern definition in full.

        Args:
            pattern_id: The pattern id (see list_patterns)
            file_path: Optional path to check the pattern's globs against
        """
        try:
            registry = await asyncio.to_thread(
                PatternRegistry.load, ReviewConfig().pattern_sources
            )
            pattern = registry.get(pattern_id)
            if pattern is None:
                raise KeyError(f"Unknown pattern '{pattern_id}'")
            body = pattern.to_dict()
            body["semantic_prompt"] = pattern.semantic_prompt
            body["lexical_rules"] = [r.text for r in pattern.lexical_rules]
            if file_path is not None:
                body["applies_to_file"] = any(
                    glob_matches(file_path, g) for g in pattern.applicable_file_globs
                )
            return json.dumps(body, indent=2)
        except Exception as e:
            return _error_response("get_pattern", e)
