"""JSON-RPC response decoding.

Two independent stages:

1. ``parse_rpc_envelope``: HTTP body (plain JSON or SSE framing) to the
   JSON-RPC ``result``, failing on a top-level ``error``.
2. ``unwrap_tool_payload``: a tool ``result`` whose ``content[0].text`` is
   itself a JSON-encoded business response, failing on ``success: false``.

The second stage is a quirk of tool-calling endpoints and is optional for
other RPC targets.
"""

from __future__ import annotations

import json
from typing import Any

import structlog

from voice_agents.domain.exceptions import MalformedResponseError, RemoteCallError

logger = structlog.get_logger(__name__)

_SSE_DATA_PREFIX = "data:"


def extract_sse_data(body: str) -> str | None:
    """Content of the first ``data:`` line, or None when the body is not SSE."""
    for line in body.splitlines():
        if line.startswith(_SSE_DATA_PREFIX):
            return line[len(_SSE_DATA_PREFIX):].strip()
    return None


def parse_rpc_envelope(body: str) -> Any:
    """Decode the outer JSON-RPC response and return its ``result``.

    Raises:
        RemoteCallError: the response carries a JSON-RPC ``error``.
        MalformedResponseError: the body is not a JSON-RPC response object.
    """
    data_line = extract_sse_data(body)
    source = data_line if data_line is not None else body
    try:
        envelope = json.loads(source)
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(
            f"Response is not valid JSON: {exc.msg}", raw=body[:500]
        ) from exc

    if not isinstance(envelope, dict):
        raise MalformedResponseError(
            f"Expected a JSON-RPC object, got {type(envelope).__name__}", raw=body[:500]
        )

    error = envelope.get("error")
    if error is not None:
        if isinstance(error, dict):
            message = str(error.get("message") or error)
        else:
            message = str(error)
        raise RemoteCallError(message)

    if "result" not in envelope:
        raise MalformedResponseError(
            "JSON-RPC response has neither 'result' nor 'error'", raw=body[:500]
        )
    return envelope["result"]


def unwrap_tool_payload(result: Any) -> Any:
    """Decode the JSON string nested at ``result.content[0].text``.

    Returns ``data`` from the inner object, or the whole inner object when
    it has no ``data``.  A result without nested text is returned as-is; so
    is one whose text is not JSON (logged).

    Raises:
        RemoteCallError: the inner object reports ``success: false``.
    """
    text = _first_content_text(result)
    if text is None:
        return result

    try:
        inner = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.warning("rpc_inner_payload_not_json", error=exc.msg, preview=text[:120])
        return result

    if not isinstance(inner, dict):
        return inner

    if inner.get("success") is False:
        data = inner.get("data")
        message = data.get("message") if isinstance(data, dict) else None
        raise RemoteCallError(str(message or inner.get("message") or "Remote call reported failure"))

    data = inner.get("data")
    return data if data is not None else inner


def _first_content_text(result: Any) -> str | None:
    if not isinstance(result, dict):
        return None
    content = result.get("content")
    if not isinstance(content, list) or not content:
        return None
    first = content[0]
    if not isinstance(first, dict):
        return None
    text = first.get("text")
    return text if isinstance(text, str) and text else None
