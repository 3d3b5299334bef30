"""Bedrock-backed semantic judge."""

from __future__ import annotations

import logging
from typing import Optional

from patternreview import llm
from patternreview.chunking import chunk_lines
from patternreview.config import BEDROCK_MAX_TOKENS, BEDROCK_MODEL_ID, FILE_CHUNK_MAX_CHARS
from patternreview.errors import JudgmentError
from patternreview.llm_parsing import parse_judgments
from patternreview.models import ChangeSetFile
from patternreview.prompts import JUDGE_SYSTEM, build_judgment_message
from patternreview.strategies import Judgment

logger = logging.getLogger(__name__)


class BedrockJudge:
    """Asks a Bedrock model whether a file exhibits a pattern.

    Large files are judged window by window. Window-relative answers are
    already absolute because the excerpt carries real line numbers; lines
    outside the window are discarded as unanchored.
    """

    def __init__(
        self,
        model_id: str = BEDROCK_MODEL_ID,
        max_tokens: int = BEDROCK_MAX_TOKENS,
        chunk_chars: int = FILE_CHUNK_MAX_CHARS,
        on_progress: Optional[llm.ProgressCallback] = None,
    ) -> None:
        self.model_id = model_id
        self.max_tokens = max_tokens
        self.chunk_chars = chunk_chars
        self.on_progress = on_progress

    def judge(self, prompt: str, file: ChangeSetFile) -> list[Judgment]:
        chunks = chunk_lines(file.content, self.chunk_chars)
        total_lines = len(file.lines)
        judgments: list[Judgment] = []

        for chunk in chunks:
            message = build_judgment_message(prompt, file.path, chunk, total_lines)
            try:
                result = llm.invoke(
                    JUDGE_SYSTEM,
                    message,
                    label=file.path,
                    model_id=self.model_id,
                    max_tokens=self.max_tokens,
                    on_progress=self.on_progress,
                )
            except RuntimeError as e:
                raise JudgmentError(str(e), stage="detecting", cause=e) from e

            for j in parse_judgments(result.text, truncated=result.truncated):
                if j.line is not None and not chunk.start_line <= j.line <= chunk.end_line:
                    logger.debug(
                        "Judge cited line %d outside window %d-%d of %s",
                        j.line, chunk.start_line, chunk.end_line, file.path,
                    )
                    j = Judgment(confidence=j.confidence, detail=j.detail, line=None)
                judgments.append(j)

        return judgments
