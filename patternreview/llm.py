"""Bedrock inference client for semantic pattern judgment."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig

from patternreview.config import (
    BEDROCK_MAX_TOKENS,
    BEDROCK_MODEL_ID,
    BEDROCK_PROFILE,
    BEDROCK_REGION,
    USAGE_LOG_PATH,
)

logger = logging.getLogger(__name__)

# (chars_so_far, elapsed_seconds, message) -> None
ProgressCallback = Callable[[int, float, str], None]

_STREAM_ERROR_KEYS = (
    "internalServerException",
    "modelStreamErrorException",
    "throttlingException",
    "validationException",
)

_client = None
_client_lock = threading.Lock()
_usage_logger: Optional[logging.Logger] = None


@dataclass
class StreamResult:
    text: str
    stop_reason: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0

    @property
    def truncated(self) -> bool:
        return self.stop_reason == "max_tokens"


# ── Usage log ────────────────────────────────────────────────────────────────


def _get_usage_logger() -> logging.Logger:
    """Lazy-init a dedicated TSV file logger for token usage."""
    global _usage_logger
    if _usage_logger is not None:
        return _usage_logger

    usage = logging.getLogger("patternreview.usage")
    usage.setLevel(logging.INFO)
    usage.propagate = False

    log_path = Path(USAGE_LOG_PATH)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    needs_header = not log_path.exists() or log_path.stat().st_size == 0

    if not usage.handlers:
        handler = logging.FileHandler(str(log_path), mode="a")
        handler.setFormatter(logging.Formatter("%(message)s"))
        usage.addHandler(handler)
    if needs_header:
        usage.info("timestamp\tmodel\tpattern\tinput_tokens\toutput_tokens\tlatency_ms")

    _usage_logger = usage
    return usage


def _log_usage(label: str, model_id: str, result: StreamResult) -> None:
    logger.info(
        "Bedrock usage [%s]: input=%d output=%d latency=%dms model=%s",
        label, result.input_tokens, result.output_tokens, result.latency_ms, model_id,
    )
    _get_usage_logger().info(
        "%s\t%s\t%s\t%d\t%d\t%d",
        datetime.now(timezone.utc).isoformat(),
        model_id,
        label,
        result.input_tokens,
        result.output_tokens,
        result.latency_ms,
    )


# ── Bedrock client ───────────────────────────────────────────────────────────


def _get_client():
    """Lazy-init the Bedrock Runtime client; workers share one instance."""
    global _client
    with _client_lock:
        if _client is None:
            session = boto3.Session(profile_name=BEDROCK_PROFILE, region_name=BEDROCK_REGION)
            _client = session.client(
                "bedrock-runtime",
                config=BotoConfig(
                    retries={"max_attempts": 2, "mode": "adaptive"},
                    read_timeout=120,
                    connect_timeout=10,
                    max_pool_connections=8,
                    tcp_keepalive=True,
                ),
            )
            logger.info(
                "Bedrock client initialized: profile=%s region=%s",
                BEDROCK_PROFILE, BEDROCK_REGION,
            )
    return _client


def _consume_stream(
    events, label: str, start: float, on_progress: Optional[ProgressCallback]
) -> StreamResult:
    result = StreamResult(text="", stop_reason="unknown")
    parts: list[str] = []
    total_chars = 0

    for event in events:
        if "chunk" not in event:
            for key in _STREAM_ERROR_KEYS:
                if key in event:
                    message = event[key].get("message", str(event[key]))
                    logger.error("Bedrock stream error [%s]: %s: %s", label, key, message)
                    raise RuntimeError(f"Bedrock stream error ({key}): {message}")
            logger.warning("Unknown non-chunk event in stream: %s", list(event.keys()))
            continue

        try:
            chunk = json.loads(event["chunk"]["bytes"])
        except (json.JSONDecodeError, KeyError) as e:
            logger.warning("Malformed stream chunk, skipping: %s", e)
            continue

        kind = chunk.get("type", "")
        if kind == "content_block_delta":
            delta = chunk.get("delta", {})
            if delta.get("type") == "text_delta":
                text = delta.get("text", "")
                parts.append(text)
                total_chars += len(text)
                if on_progress and len(parts) % 20 == 0:
                    elapsed = time.monotonic() - start
                    try:
                        on_progress(total_chars, elapsed, f"[{label}] {total_chars} chars, {elapsed:.0f}s")
                    except Exception as cb_err:
                        logger.warning("on_progress callback raised: %s", cb_err)
        elif kind == "message_delta":
            result.stop_reason = chunk.get("delta", {}).get("stop_reason", "unknown")
            result.output_tokens = chunk.get("usage", {}).get("output_tokens", 0)
        elif kind == "message_start":
            result.input_tokens = chunk.get("message", {}).get("usage", {}).get("input_tokens", 0)

    result.text = "".join(parts)
    return result


def invoke(
    system_prompt: str,
    user_message: str,
    label: str = "judge",
    model_id: str = BEDROCK_MODEL_ID,
    max_tokens: int = BEDROCK_MAX_TOKENS,
    temperature: float = 0.0,
    on_progress: Optional[ProgressCallback] = None,
) -> StreamResult:
    """
    Send a streaming inference request to Bedrock and collect the response.

    Args:
        system_prompt: The judge persona and response schema
        user_message: The pattern question plus the numbered file window
        label: Tag for usage logging (the judge passes the file path)
        model_id: Bedrock model or inference profile id
        max_tokens: Maximum tokens in the response
        temperature: Sampling temperature; 0 keeps judgments repeatable
        on_progress: Optional streaming progress callback

    Returns:
        StreamResult with the text and stop reason ('end_turn', 'max_tokens', ...)

    Raises:
        RuntimeError: If the Bedrock call or its response stream fails
    """
    client = _get_client()
    body = {
        "anthropic_version": "bedrock-2023-05-31",
        "max_tokens": max_tokens,
        "temperature": temperature,
        "system": system_prompt,
        "messages": [{"role": "user", "content": user_message}],
    }

    start = time.monotonic()
    logger.debug("Bedrock stream starting [%s] model=%s", label, model_id)
    try:
        response = client.invoke_model_with_response_stream(
            modelId=model_id,
            contentType="application/json",
            accept="application/json",
            body=json.dumps(body),
        )
        result = _consume_stream(response["body"], label, start, on_progress)
    except RuntimeError:
        raise
    except Exception as e:
        latency_ms = int((time.monotonic() - start) * 1000)
        logger.error("Bedrock inference failed after %dms [%s]: %s", latency_ms, label, e)
        raise RuntimeError(f"Bedrock inference failed: {e}") from e

    result.latency_ms = int((time.monotonic() - start) * 1000)
    _log_usage(label, model_id, result)

    if result.truncated:
        logger.warning(
            "Response truncated (hit max_tokens=%d) for %s; salvaging partial output",
            max_tokens, label,
        )
    if not result.text:
        logger.warning("Empty response from Bedrock stream for %s", label)
    return result
