"""Fetching and publishing collaborators.

The orchestrator only depends on the two protocols below. The concrete
classes cover local use: an in-memory change-set, a diff (string, file, or
live git repository), an in-memory comment sink and a JSON file sink.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import tempfile
import threading
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Optional, Protocol, Union

from patternreview.config import REVIEW_OUTPUT_DIR
from patternreview.diff_parser import diff_to_change_set
from patternreview.errors import FetchError, PublishError, StructuralUnavailable
from patternreview.models import ChangeSetFile, CommentPayload, LineRange
from patternreview.structure import SyntaxNode

logger = logging.getLogger(__name__)


class ChangeSetFetcher(Protocol):
    def fetch(self, change_set_id: str) -> list[ChangeSetFile]:
        """Return the files of the change-set, or raise FetchError."""
        ...


class Publisher(Protocol):
    def publish(
        self,
        change_set_id: str,
        payloads: Sequence[CommentPayload],
        summary: CommentPayload,
    ) -> None:
        """Publish comments; must be idempotent by dedup_key. Raises PublishError."""
        ...


# ── Fetchers ─────────────────────────────────────────────────────────────────


class StaticFetcher:
    """Serves change-sets from memory."""

    def __init__(self, change_sets: Mapping[str, Sequence[ChangeSetFile]]) -> None:
        self._change_sets = {k: list(v) for k, v in change_sets.items()}

    def fetch(self, change_set_id: str) -> list[ChangeSetFile]:
        try:
            return list(self._change_sets[change_set_id])
        except KeyError:
            raise FetchError(f"Change-set {change_set_id!r} not found", stage="fetching") from None


def file_from_dict(data: Mapping) -> ChangeSetFile:
    """Build a file from `{path, content, hunks?: [[start, end], ...], structure?}`.

    Raises:
        FetchError: the mapping is not a valid file description
    """
    if not isinstance(data, Mapping) or not isinstance(data.get("path"), str):
        raise FetchError("Each file needs a string 'path'", stage="fetching")
    content = data.get("content", "")
    if not isinstance(content, str):
        raise FetchError(f"'content' of {data['path']} must be a string", stage="fetching")
    try:
        hunks = tuple(
            LineRange(int(h[0]), int(h[1] if len(h) > 1 else h[0])) for h in data.get("hunks") or ()
        )
    except (TypeError, ValueError, IndexError) as e:
        raise FetchError(
            f"'hunks' of {data['path']} must be [start, end] pairs", stage="fetching", cause=e
        ) from e
    structure = None
    if data.get("structure") is not None:
        try:
            structure = SyntaxNode.from_dict(data["structure"])
        except StructuralUnavailable as e:
            # A bad tree only disables structural rules for this file
            logger.warning("Ignoring structure of %s: %s", data["path"], e.message)
    return ChangeSetFile(path=data["path"], content=content, hunks=hunks, structure=structure)


DiffSource = Union[Mapping[str, str], str, Path, Callable[[str], str]]


class DiffFetcher:
    """Builds change-sets from unified diffs.

    `source` is a mapping of change_set_id to diff text, a directory holding
    `<change_set_id>.diff` files, or a callable returning the diff text.
    `contents` optionally supplies full new-version file text per path.
    """

    def __init__(self, source: DiffSource, contents: Optional[Mapping[str, str]] = None) -> None:
        self.source = source
        self.contents = dict(contents or {})

    def _diff_text(self, change_set_id: str) -> str:
        if isinstance(self.source, Mapping):
            if change_set_id not in self.source:
                raise FetchError(f"No diff for change-set {change_set_id!r}", stage="fetching")
            return self.source[change_set_id]
        if callable(self.source):
            return self.source(change_set_id)
        path = Path(self.source) / f"{change_set_id}.diff"
        return path.read_text(encoding="utf-8")

    def fetch(self, change_set_id: str) -> list[ChangeSetFile]:
        try:
            diff_text = self._diff_text(change_set_id)
        except FetchError:
            raise
        except Exception as e:
            raise FetchError(
                f"Cannot read diff for change-set {change_set_id!r}", stage="fetching", cause=e
            ) from e
        files = diff_to_change_set(diff_text, self.contents)
        logger.info("Fetched %d file(s) for %s from diff", len(files), change_set_id)
        return files


class GitFetcher:
    """Reads a change-set from a local git repository.

    The change_set_id is a ref (branch, tag or sha); the change-set is
    everything it changed since its merge base with `base`.
    """

    def __init__(self, repo_path: Union[str, Path] = ".", base: str = "main", timeout: float = 60.0) -> None:
        self.repo_path = Path(repo_path)
        self.base = base
        self.timeout = timeout

    def _git(self, *args: str) -> str:
        try:
            proc = subprocess.run(
                ["git", "-C", str(self.repo_path), *args],
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            raise FetchError(
                f"git {args[0]} failed: {e.stderr.strip() or e}", stage="fetching", cause=e
            ) from e
        except (OSError, subprocess.TimeoutExpired) as e:
            raise FetchError(f"git {args[0]} failed", stage="fetching", cause=e) from e
        return proc.stdout

    def fetch(self, change_set_id: str) -> list[ChangeSetFile]:
        diff_text = self._git("diff", "--no-color", "--no-ext-diff", f"{self.base}...{change_set_id}")
        contents: dict[str, str] = {}
        for f in diff_to_change_set(diff_text):
            contents[f.path] = self._git("show", f"{change_set_id}:{f.path}")
        files = diff_to_change_set(diff_text, contents)
        logger.info(
            "Fetched %d file(s) for %s against %s in %s",
            len(files), change_set_id, self.base, self.repo_path,
        )
        return files


# ── Publishers ───────────────────────────────────────────────────────────────


class MemoryPublisher:
    """Keeps published comments in memory, one entry per dedup_key."""

    def __init__(self) -> None:
        self.comments: dict[str, dict[str, CommentPayload]] = {}
        self.summaries: dict[str, CommentPayload] = {}
        self.calls = 0
        self._lock = threading.Lock()

    def publish(
        self,
        change_set_id: str,
        payloads: Sequence[CommentPayload],
        summary: CommentPayload,
    ) -> None:
        with self._lock:
            self.calls += 1
            existing = self.comments.setdefault(change_set_id, {})
            for p in payloads:
                existing[p.dedup_key] = p
            self.summaries[change_set_id] = summary

    def published(self, change_set_id: str) -> list[CommentPayload]:
        return list(self.comments.get(change_set_id, {}).values())


class JsonFilePublisher:
    """Writes `<output_dir>/<change_set_id>.json`, merging comments by dedup_key."""

    def __init__(self, output_dir: Union[str, Path] = REVIEW_OUTPUT_DIR) -> None:
        self.output_dir = Path(output_dir)

    def path_for(self, change_set_id: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in change_set_id)
        return self.output_dir / f"{safe or 'change-set'}.json"

    def publish(
        self,
        change_set_id: str,
        payloads: Sequence[CommentPayload],
        summary: CommentPayload,
    ) -> None:
        path = self.path_for(change_set_id)
        tmp: Optional[str] = None
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            comments: dict[str, dict] = {}
            if path.exists():
                comments = json.loads(path.read_text(encoding="utf-8")).get("comments", {})
            for p in payloads:
                comments[p.dedup_key] = p.to_dict()
            document = {
                "change_set_id": change_set_id,
                "summary": summary.to_dict(),
                "comments": comments,
            }
            fd, tmp = tempfile.mkstemp(dir=self.output_dir, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(document, fh, indent=2)
            os.replace(tmp, path)
        except (OSError, ValueError, TypeError) as e:
            if tmp is not None and os.path.exists(tmp):
                os.unlink(tmp)
            raise PublishError(
                f"Cannot write review output {path}", stage="publishing", cause=e
            ) from e
        logger.info("Published %d comment(s) for %s to %s", len(payloads), change_set_id, path)
