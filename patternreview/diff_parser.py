"""Diff parsing: unified diff to change-set files with changed-line ranges."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from patternreview.models import ChangeSetFile, LineRange

logger = logging.getLogger(__name__)

_HUNK_HEADER = re.compile(r"^@@\s+-(\d+)(?:,(\d+))?\s+\+(\d+)(?:,(\d+))?\s+@@(.*)")


@dataclass
class DiffHunk:
    """One hunk; line numbers refer to the new version of the file."""

    new_start: int
    new_count: int
    header: str = ""
    added_lines: list[tuple[int, str]] = field(default_factory=list)
    context_lines: list[tuple[int, str]] = field(default_factory=list)
    removed_count: int = 0


@dataclass
class DiffFile:
    """Parsed diff for a single file."""

    old_path: Optional[str]
    new_path: Optional[str]
    hunks: list[DiffHunk] = field(default_factory=list)
    is_new: bool = False
    is_deleted: bool = False
    is_renamed: bool = False
    is_binary: bool = False

    @property
    def path(self) -> str:
        return self.new_path or self.old_path or "<unknown>"

    @property
    def added_line_count(self) -> int:
        return sum(len(h.added_lines) for h in self.hunks)

    @property
    def removed_line_count(self) -> int:
        return sum(h.removed_count for h in self.hunks)

    def changed_ranges(self) -> tuple[LineRange, ...]:
        """Runs of consecutive added lines, merged into inclusive ranges."""
        numbers = sorted({n for h in self.hunks for n, _ in h.added_lines})
        ranges: list[LineRange] = []
        for n in numbers:
            if ranges and n == ranges[-1].end + 1:
                ranges[-1] = LineRange(ranges[-1].start, n)
            else:
                ranges.append(LineRange(n, n))
        return tuple(ranges)

    def visible_content(self) -> str:
        """Best-effort new-file text from the lines the diff shows.

        Exact for new files. For modified files, lines outside the hunks are
        unknown and left blank so line numbers still line up.
        """
        known: dict[int, str] = {}
        for h in self.hunks:
            known.update(h.context_lines)
            known.update(h.added_lines)
        if not known:
            return ""
        last = max(known)
        return "\n".join(known.get(n, "") for n in range(1, last + 1)) + "\n"


def _strip_prefix(path: str, prefix: str) -> Optional[str]:
    if path == "/dev/null":
        return None
    return path[len(prefix):] if path.startswith(prefix) else path


def parse_diff(diff_text: str) -> list[DiffFile]:
    """Parse a unified diff (git or plain `diff -u`) into DiffFile objects.

    Hunk bodies are consumed by their header counts, so removed lines that
    happen to start with "--" are never mistaken for file headers.
    """
    files: list[DiffFile] = []
    current_file: Optional[DiffFile] = None
    current_hunk: Optional[DiffHunk] = None
    new_line_no = 0
    old_left = new_left = 0

    for line in diff_text.splitlines():
        if current_hunk is not None:
            if line.startswith("+"):
                current_hunk.added_lines.append((new_line_no, line[1:]))
                new_line_no += 1
                new_left -= 1
            elif line.startswith("-"):
                current_hunk.removed_count += 1
                old_left -= 1
            elif line.startswith("\\"):
                pass  # "\ No newline at end of file"
            elif line.startswith(" ") or line == "":
                current_hunk.context_lines.append((new_line_no, line[1:]))
                new_line_no += 1
                old_left -= 1
                new_left -= 1
            else:
                current_hunk = None
            if current_hunk is not None:
                if old_left <= 0 and new_left <= 0:
                    current_hunk = None
                continue

        if line.startswith("diff --git"):
            parts = line.split()
            if len(parts) >= 4:
                current_file = DiffFile(
                    old_path=_strip_prefix(parts[2], "a/"),
                    new_path=_strip_prefix(parts[3], "b/"),
                )
                files.append(current_file)
            continue

        if line.startswith("--- "):
            source = line[4:].split("\t")[0]
            if current_file is None or current_file.hunks:
                # Plain `diff -u` output: no "diff --git" line before the headers
                current_file = DiffFile(old_path=_strip_prefix(source, "a/"), new_path=None)
                files.append(current_file)
            if source == "/dev/null":
                current_file.is_new = True
            continue

        if current_file is None:
            continue

        if line.startswith("+++ "):
            target = line[4:].split("\t")[0]
            if target == "/dev/null":
                current_file.is_deleted = True
            else:
                current_file.new_path = _strip_prefix(target, "b/")
            continue
        if line.startswith("new file"):
            current_file.is_new = True
            continue
        if line.startswith("deleted file"):
            current_file.is_deleted = True
            continue
        if line.startswith("rename from") or line.startswith("rename to"):
            current_file.is_renamed = True
            continue
        if line.startswith("Binary files"):
            current_file.is_binary = True
            continue

        hunk_match = _HUNK_HEADER.match(line)
        if hunk_match:
            old_left = int(hunk_match.group(2) or 1)
            new_start = int(hunk_match.group(3))
            new_left = int(hunk_match.group(4) or 1)
            current_hunk = DiffHunk(
                new_start=new_start,
                new_count=new_left,
                header=hunk_match.group(5).strip(),
            )
            current_file.hunks.append(current_hunk)
            new_line_no = new_start
            if old_left <= 0 and new_left <= 0:
                current_hunk = None

    return files


def diff_to_change_set(
    diff_text: str, contents: Optional[dict[str, str]] = None
) -> list[ChangeSetFile]:
    """Turn a diff into reviewable files.

    `contents` maps paths to full new-version text; without it the text is
    rebuilt from the diff itself. Deleted and binary files are skipped.
    """
    contents = contents or {}
    out: list[ChangeSetFile] = []
    for f in parse_diff(diff_text):
        if f.is_deleted or f.is_binary:
            logger.debug("Skipping %s file %s", "deleted" if f.is_deleted else "binary", f.path)
            continue
        content = contents.get(f.path)
        if content is None:
            content = f.visible_content()
        out.append(ChangeSetFile(path=f.path, content=content, hunks=f.changed_ranges()))
    return out


def diff_stats(files: list[DiffFile]) -> dict:
    """Summary statistics for parsed diff files."""
    return {
        "files_changed": len(files),
        "lines_added": sum(f.added_line_count for f in files),
        "lines_removed": sum(f.removed_line_count for f in files),
        "new_files": [f.path for f in files if f.is_new],
        "deleted_files": [f.path for f in files if f.is_deleted],
        "renamed_files": [f.path for f in files if f.is_renamed],
    }
