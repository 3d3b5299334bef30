"""File chunking: split large files into LLM-friendly line windows."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from patternreview.config import FILE_CHUNK_MAX_CHARS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileChunk:
    """A contiguous window of a file; start_line is 1-based."""

    start_line: int
    lines: tuple[str, ...]

    @property
    def end_line(self) -> int:
        return self.start_line + len(self.lines) - 1

    def numbered(self) -> str:
        """The window with right-aligned absolute line numbers, as sent to the judge."""
        width = len(str(self.end_line))
        return "\n".join(
            f"{n:>{width}} | {text}" for n, text in enumerate(self.lines, start=self.start_line)
        )


def chunk_lines(content: str, max_chars: int = FILE_CHUNK_MAX_CHARS) -> list[FileChunk]:
    """Split file content into windows of at most ~max_chars.

    Prefers splitting at a blank line (between functions/modules) if one
    exists in the last 20% of the window. A single line longer than the
    limit gets a window of its own.
    """
    lines = content.splitlines()
    if not lines:
        return []

    chunks: list[FileChunk] = []
    start_idx = 0
    current_chars = 0
    last_blank_idx: int | None = None

    for i, line in enumerate(lines):
        line_len = len(line) + 1
        if current_chars + line_len > max_chars and i > start_idx:
            split_at = i
            threshold = start_idx + int((i - start_idx) * 0.8)
            if last_blank_idx is not None and last_blank_idx >= threshold:
                split_at = last_blank_idx + 1
            chunks.append(FileChunk(start_idx + 1, tuple(lines[start_idx:split_at])))
            start_idx = split_at
            current_chars = sum(len(l) + 1 for l in lines[start_idx:i])
            last_blank_idx = None

        current_chars += line_len
        if not line.strip():
            last_blank_idx = i

    if start_idx < len(lines):
        chunks.append(FileChunk(start_idx + 1, tuple(lines[start_idx:])))

    if len(chunks) > 1:
        logger.debug("Split %d lines into %d chunk(s)", len(lines), len(chunks))
    return chunks
