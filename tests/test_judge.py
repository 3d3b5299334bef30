"""Tests for the Bedrock judge with the model call mocked out."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from patternreview.errors import JudgmentError
from patternreview.judge import BedrockJudge
from patternreview.llm import StreamResult
from patternreview.models import ChangeSetFile
from patternreview.prompts import JUDGE_SYSTEM


def result(text: str, stop_reason: str = "end_turn") -> StreamResult:
    return StreamResult(text=text, stop_reason=stop_reason, input_tokens=10, output_tokens=5)


def test_single_window_judgment():
    f = ChangeSetFile("lib/a.ex", "a\nb\nc\n")
    response = result(
        '{"findings": [{"line": 2, "confidence": 0.9, "detail": "x"},'
        ' {"line": 50, "confidence": 0.8}]}'
    )
    with patch("patternreview.llm.invoke", return_value=response) as invoke:
        judgments = BedrockJudge().judge("Is it bad?", f)

    assert [(j.line, j.confidence) for j in judgments] == [(2, 0.9), (None, 0.8)]
    system, message = invoke.call_args.args
    assert system == JUDGE_SYSTEM
    assert "Is it bad?" in message
    assert "## File: lib/a.ex" in message
    assert "2 | b" in message
    assert "excerpt" not in message


def test_large_file_is_judged_per_window():
    f = ChangeSetFile("lib/big.ex", "\n".join(f"line {n:02d}" for n in range(1, 21)))
    with patch("patternreview.llm.invoke", return_value=result('{"findings": []}')) as invoke:
        assert BedrockJudge(chunk_chars=40).judge("Q?", f) == []

    assert invoke.call_count == 4
    first_message = invoke.call_args_list[0].args[1]
    assert "(excerpt: lines 1-5 of 20)" in first_message


def test_model_failure_becomes_judgment_error():
    f = ChangeSetFile("lib/a.ex", "a\n")
    with patch("patternreview.llm.invoke", side_effect=RuntimeError("throttled")):
        with pytest.raises(JudgmentError, match="throttled"):
            BedrockJudge().judge("Q?", f)


def test_empty_file_makes_no_calls():
    with patch("patternreview.llm.invoke") as invoke:
        assert BedrockJudge().judge("Q?", ChangeSetFile("lib/a.ex", "")) == []
    invoke.assert_not_called()


def test_truncated_response_is_salvaged():
    f = ChangeSetFile("lib/a.ex", "a\nb\n")
    truncated = result('{"findings": [{"line": 1, "confidence": 0.75}, {"li', "max_tokens")
    with patch("patternreview.llm.invoke", return_value=truncated):
        [j] = BedrockJudge().judge("Q?", f)
    assert j.line == 1
