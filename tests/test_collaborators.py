"""Tests for fetchers and publishers."""

from __future__ import annotations

import json
import subprocess

import pytest

from patternreview import collaborators
from patternreview.collaborators import (
    DiffFetcher,
    GitFetcher,
    JsonFilePublisher,
    MemoryPublisher,
    StaticFetcher,
    file_from_dict,
)
from patternreview.errors import FetchError, PublishError
from patternreview.models import CommentPayload, LineRange

NEW_FILE_DIFF = (
    "diff --git a/lib/a.ex b/lib/a.ex\n"
    "new file mode 100644\n"
    "--- /dev/null\n"
    "+++ b/lib/a.ex\n"
    "@@ -0,0 +1,2 @@\n"
    "+defmodule A do\n"
    "+end\n"
)


def payload(key: str, body: str = "body") -> CommentPayload:
    return CommentPayload(dedup_key=key, body=body, file_path="lib/a.ex", line=1)


SUMMARY = CommentPayload(dedup_key="summary:pr-1", body="summary")


class TestFileFromDict:
    def test_full_description(self):
        f = file_from_dict(
            {
                "path": "lib/a.ex",
                "content": "x\n",
                "hunks": [[3, 5], [9]],
                "structure": {"kind": "module", "line": 1},
            }
        )
        assert f.hunks == (LineRange(3, 5), LineRange(9, 9))
        assert f.structure.kind == "module"

    @pytest.mark.parametrize(
        "data",
        [
            {"content": "x"},
            {"path": "a.ex", "content": 3},
            {"path": "a.ex", "hunks": [["a", "b"]]},
            {"path": "a.ex", "hunks": [[]]},
            ["a.ex"],
        ],
    )
    def test_invalid_descriptions(self, data):
        with pytest.raises(FetchError):
            file_from_dict(data)

    def test_bad_structure_only_drops_the_tree(self):
        f = file_from_dict({"path": "a.ex", "content": "x", "structure": {"line": 1}})
        assert f.structure is None


class TestFetchers:
    def test_static_fetcher_returns_a_copy(self, admin_file):
        fetcher = StaticFetcher({"pr-1": [admin_file]})
        files = fetcher.fetch("pr-1")
        files.clear()
        assert fetcher.fetch("pr-1") == [admin_file]

    def test_static_fetcher_unknown_id(self):
        with pytest.raises(FetchError, match="not found"):
            StaticFetcher({}).fetch("pr-9")

    def test_diff_fetcher_from_mapping(self):
        [f] = DiffFetcher({"pr-1": NEW_FILE_DIFF}).fetch("pr-1")
        assert f.path == "lib/a.ex"
        assert f.content == "defmodule A do\nend\n"
        assert f.hunks == (LineRange(1, 2),)

    def test_diff_fetcher_from_directory(self, tmp_path):
        (tmp_path / "pr-2.diff").write_text(NEW_FILE_DIFF)
        assert len(DiffFetcher(tmp_path).fetch("pr-2")) == 1
        with pytest.raises(FetchError, match="Cannot read diff"):
            DiffFetcher(tmp_path).fetch("pr-3")

    def test_diff_fetcher_from_callable_with_contents(self):
        fetcher = DiffFetcher(lambda cs_id: NEW_FILE_DIFF, contents={"lib/a.ex": "full text\n"})
        [f] = fetcher.fetch("anything")
        assert f.content == "full text\n"

    def test_diff_fetcher_wraps_callable_failures(self):
        def broken(cs_id):
            raise ConnectionError("host unreachable")

        with pytest.raises(FetchError) as exc_info:
            DiffFetcher(broken).fetch("pr-1")
        assert isinstance(exc_info.value.cause, ConnectionError)

    def test_diff_fetcher_unknown_id(self):
        with pytest.raises(FetchError, match="No diff"):
            DiffFetcher({}).fetch("pr-1")


class TestGitFetcher:
    def test_reads_diff_and_new_contents(self, monkeypatch):
        calls = []

        def fake_run(cmd, **kwargs):
            calls.append(cmd)
            out = NEW_FILE_DIFF if cmd[3] == "diff" else "defmodule A do\n  # full\nend\n"
            return subprocess.CompletedProcess(cmd, 0, stdout=out, stderr="")

        monkeypatch.setattr(collaborators.subprocess, "run", fake_run)

        [f] = GitFetcher("/repo", base="develop").fetch("feature")

        assert f.content == "defmodule A do\n  # full\nend\n"
        assert calls[0][:3] == ["git", "-C", "/repo"]
        assert "develop...feature" in calls[0]
        assert calls[1][3:] == ["show", "feature:lib/a.ex"]

    def test_git_failure_becomes_fetch_error(self, monkeypatch):
        def fake_run(cmd, **kwargs):
            raise subprocess.CalledProcessError(128, cmd, stderr="fatal: bad revision")

        monkeypatch.setattr(collaborators.subprocess, "run", fake_run)
        with pytest.raises(FetchError, match="bad revision"):
            GitFetcher().fetch("nope")


class TestPublishers:
    def test_memory_publisher_keys_by_dedup_key(self):
        publisher = MemoryPublisher()
        publisher.publish("pr-1", [payload("a"), payload("b")], SUMMARY)
        publisher.publish("pr-1", [payload("a", "updated")], SUMMARY)
        assert publisher.calls == 2
        assert {p.dedup_key: p.body for p in publisher.published("pr-1")} == {
            "a": "updated",
            "b": "body",
        }
        assert publisher.published("pr-2") == []

    def test_json_publisher_merges_on_republish(self, tmp_path):
        publisher = JsonFilePublisher(tmp_path / "out")
        publisher.publish("pr-1", [payload("a"), payload("b")], SUMMARY)
        publisher.publish("pr-1", [payload("b", "again"), payload("c")], SUMMARY)

        document = json.loads(publisher.path_for("pr-1").read_text())

        assert sorted(document["comments"]) == ["a", "b", "c"]
        assert document["comments"]["b"]["body"] == "again"
        assert document["summary"]["body"] == "summary"
        assert not list((tmp_path / "out").glob("*.tmp"))

    def test_json_publisher_sanitises_file_names(self, tmp_path):
        assert JsonFilePublisher(tmp_path).path_for("feature/x y").name == "feature_x_y.json"

    def test_json_publisher_failure(self, tmp_path):
        blocker = tmp_path / "out"
        blocker.write_text("not a directory")
        with pytest.raises(PublishError) as exc_info:
            JsonFilePublisher(blocker).publish("pr-1", [payload("a")], SUMMARY)
        assert exc_info.value.stage == "publishing"

    def test_json_publisher_removes_temp_file_when_write_fails(self, tmp_path, monkeypatch):
        def broken_dump(obj, fh, **kwargs):
            fh.write('{"partial": ')
            raise TypeError("Object of type set is not JSON serializable")

        monkeypatch.setattr(collaborators.json, "dump", broken_dump)
        out = tmp_path / "out"

        with pytest.raises(PublishError):
            JsonFilePublisher(out).publish("pr-1", [payload("a")], SUMMARY)

        assert list(out.iterdir()) == []
