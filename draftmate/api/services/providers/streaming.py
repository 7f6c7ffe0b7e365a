"""Framing helpers for streamed responses.

Vendors stream either server-sent events (``data: {...}`` lines) or a JSON
array / newline-delimited JSON that only becomes parseable once enough lines
have arrived. Both are handled here so the per-vendor wire formats only deal
with payload shapes.
"""

from __future__ import annotations

import json
from typing import Any, Iterable, Iterator

SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"
FENCE = "```"
JSON_FENCE = "```json"


def sse_data(line: str) -> str | None:
    """SSE の1行から data ペイロードを取り出す。data 行でなければ None."""
    if not line.startswith(SSE_DATA_PREFIX):
        return None
    payload = line[len(SSE_DATA_PREFIX) :]
    if payload.startswith(" "):
        payload = payload[1:]
    return payload


def iter_sse_events(lines: Iterable[str]) -> Iterator[dict[str, Any]]:
    """Decode ``data:`` lines into JSON objects until ``[DONE]``.

    ``event:``/comment/blank lines and undecodable payloads are skipped.
    """
    for line in lines:
        payload = sse_data(line)
        if payload is None:
            continue
        payload = payload.strip()
        if payload == SSE_DONE:
            return
        if not payload:
            continue
        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            continue
        if isinstance(event, dict):
            yield event


class JsonFragmentBuffer:
    """Accumulates lines until they form a complete JSON value.

    Array framing (``[{...},\\n{...}]``) is handled by ignoring the enclosing
    brackets and separating commas, so each element is released as soon as it
    is complete instead of at the end of the stream.
    """

    def __init__(self) -> None:
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, line: str) -> list[dict[str, Any]]:
        self._buffer += line
        text = self._buffer.strip()
        # そのまま → 先頭の "[" / "," を外す → 末尾の "]" / "," も外す
        unframed = text[1:].lstrip() if text.startswith(("[", ",")) else text
        trimmed = (
            unframed[:-1].rstrip() if unframed.endswith(("]", ",")) else unframed
        )
        for candidate in (text, unframed, trimmed):
            if not candidate:
                self._buffer = ""
                return []
            try:
                value = json.loads(candidate)
            except json.JSONDecodeError:
                continue
            self._buffer = ""
            if isinstance(value, list):
                return [item for item in value if isinstance(item, dict)]
            return [value] if isinstance(value, dict) else []
        return []


def strip_code_fences(text: str) -> str:
    """Remove markdown code fences wrapped around a JSON payload."""
    return text.replace(JSON_FENCE, "").replace(FENCE, "").strip()


class FenceFilter:
    """Streaming counterpart of :func:`strip_code_fences`.

    A fence may be split across fragments (``"``"`` + ``"`json"``), so any
    tail that could still grow into a fence is held back until the next
    fragment or :meth:`flush`.
    """

    def __init__(self) -> None:
        self._pending = ""
        self._started = False

    def feed(self, fragment: str) -> str:
        self._pending += fragment
        hold = _partial_fence_suffix(self._pending)
        # 末尾の空白も次の断片まで保留し、最後なら flush で捨てる
        ready = self._pending[: len(self._pending) - hold].rstrip()
        self._pending = self._pending[len(ready) :]
        return self._emit(ready)

    def flush(self) -> str:
        rest, self._pending = self._pending, ""
        return self._emit(rest).rstrip()

    def _emit(self, text: str) -> str:
        cleaned = text.replace(JSON_FENCE, "").replace(FENCE, "")
        if not self._started:
            cleaned = cleaned.lstrip()
            if cleaned:
                self._started = True
        return cleaned


def _partial_fence_suffix(text: str) -> int:
    """Length of the longest suffix of ``text`` that is a proper prefix of ``\\`\\`\\`json``."""
    for size in range(min(len(JSON_FENCE) - 1, len(text)), 0, -1):
        if JSON_FENCE.startswith(text[-size:]):
            return size
    return 0
