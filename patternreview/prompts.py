"""System prompt and user message builder for semantic pattern judgment."""

from __future__ import annotations

from patternreview.chunking import FileChunk

JUDGE_SYSTEM = """You are a senior reviewer checking source code for ONE specific anti-pattern.

Your traits:
- You only report the anti-pattern you are asked about, never anything else
- You cite the exact line where the problem is visible
- You are conservative: when the code is ambiguous, lower your confidence instead of guessing
- You never report code that already follows the recommended fix

You must respond ONLY with valid JSON. No markdown, no commentary outside the JSON structure.

Respond with this exact JSON structure:
{
  "findings": [
    {
      "line": 42,
      "confidence": 0.85,
      "detail": "One or two sentences: what on this line exhibits the anti-pattern"
    }
  ]
}

Rules:
- "line" is the number shown in the left margin of the excerpt. Use null only if the
  problem is spread across the file and no single line is representative.
- "confidence" is a number between 0 and 1.
- Return {"findings": []} when the anti-pattern is absent."""


def build_judgment_message(question: str, file_path: str, chunk: FileChunk, total_lines: int) -> str:
    """User message for one pattern question over one file window."""
    parts = [
        "## Anti-pattern to look for",
        question.strip(),
        "",
        f"## File: {file_path}",
    ]
    if chunk.start_line > 1 or chunk.end_line < total_lines:
        parts.append(
            f"(excerpt: lines {chunk.start_line}-{chunk.end_line} of {total_lines})"
        )
    parts.extend(["```", chunk.numbered(), "```", "", "Report every occurrence as JSON."])
    return "\n".join(parts)
