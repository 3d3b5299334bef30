"""Tests for the MCP tool functions, called directly without a transport."""

from __future__ import annotations

import asyncio
import json

import pytest

from conftest import numbered_content
from patternreview.mcp_tools import register_tools


class ToolCollector:
    """Stands in for FastMCP: keeps the decorated tool functions by name."""

    def __init__(self) -> None:
        self.tools = {}

    def tool(self):
        def decorator(fn):
            self.tools[fn.__name__] = fn
            return fn

        return decorator


@pytest.fixture
def tools():
    collector = ToolCollector()
    register_tools(collector)
    return collector.tools


def call(tools, name, *args, **kwargs):
    return json.loads(asyncio.run(tools[name](*args, **kwargs)))


def test_all_tools_registered(tools):
    assert set(tools) == {"review_change_set", "review_diff", "list_patterns", "get_pattern"}


def test_review_change_set_with_bundled_patterns(tools):
    files = [
        {
            "path": "lib/app/accounts.ex",
            "content": numbered_content({12: '    if user.role == "admin" do'}, 20),
        }
    ]
    report = call(tools, "review_change_set", json.dumps(files), None, change_set_id="pr-5")

    assert report["exit_code"] == 1
    assert report["dry_run"] is True
    assert report["published"] is False
    [issue] = [i for i in report["issues"] if i["pattern"] == "manual-role-checks"]
    assert issue["line"] == 12 and issue["blocking"] is True
    assert "Anti-pattern review: pr-5" in report["summary_comment"]


def test_review_change_set_rejects_bad_input(tools):
    report = call(tools, "review_change_set", '{"path": "a.ex"}', None)
    assert report["verdict"] == "ERROR"
    assert report["exit_code"] == 2


def test_review_diff(tools):
    diff = (
        "--- /dev/null\n"
        "+++ b/lib/app/debug.ex\n"
        "@@ -0,0 +1,3 @@\n"
        "+defmodule App.Debug do\n"
        "+  def run(x), do: IO.inspect(x)\n"
        "+end\n"
    )
    report = call(tools, "review_diff", diff, None, change_set_id="pr-6")
    assert report["exit_code"] == 0
    assert [i["pattern"] for i in report["issues"]] == ["io-inspect-left-in-code"]
    assert report["diff_stats"]["files_changed"] == 1
    assert report["diff_stats"]["lines_added"] == 3
    assert report["diff_stats"]["new_files"] == ["lib/app/debug.ex"]


def test_list_patterns_filtered_by_path(tools):
    listing = call(tools, "list_patterns", "app/roles.py")
    ids = [p["id"] for p in listing["patterns"]]
    assert "python-string-role-dispatch" in ids
    assert "manual-role-checks" not in ids
    assert listing["warnings"] == []


def test_get_pattern(tools):
    body = call(tools, "get_pattern", "global-pubsub-topics", "lib/app/orders.ex")
    assert body["severity"] == "high"
    assert body["applies_to_file"] is True
    assert body["lexical_rules"]

    missing = call(tools, "get_pattern", "nope")
    assert missing["verdict"] == "ERROR"
