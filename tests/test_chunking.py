"""Tests for file chunking."""

from __future__ import annotations

from patternreview.chunking import FileChunk, chunk_lines


def test_empty_content():
    assert chunk_lines("") == []


def test_small_file_is_one_chunk():
    [chunk] = chunk_lines("a\nb\nc\n")
    assert chunk.start_line == 1
    assert chunk.end_line == 3


def test_numbered_uses_absolute_line_numbers():
    assert FileChunk(9, ("a", "b")).numbered() == " 9 | a\n10 | b"


def test_chunks_cover_every_line_once_in_order():
    lines = [f"line {n:03d}" for n in range(1, 41)]
    chunks = chunk_lines("\n".join(lines), max_chars=60)

    assert len(chunks) > 1
    assert [line for c in chunks for line in c.lines] == lines
    for prev, nxt in zip(chunks, chunks[1:]):
        assert nxt.start_line == prev.end_line + 1
    assert all(sum(len(l) + 1 for l in c.lines) <= 60 for c in chunks)


def test_prefers_splitting_after_a_blank_line():
    lines = ["x" * 9] * 4 + [""] + ["y" * 8, "zzzz"]
    chunks = chunk_lines("\n".join(lines), max_chars=50)
    assert chunks[0].end_line == 5
    assert chunks[1].start_line == 6


def test_oversized_line_gets_its_own_chunk():
    chunks = chunk_lines("x" * 100 + "\ny\n", max_chars=10)
    assert [(c.start_line, c.end_line) for c in chunks] == [(1, 1), (2, 2)]
