"""
Recovering a JSON object from raw model output.

Provider output frequently wraps valid JSON in prose or markdown fences,
appends commentary after the object, or breaks string literals with raw
newlines and invalid escapes. Extraction and both repair passes share one
string-state scanner so they always agree on what is inside a string.

Parse chain (parse_json_text):
  1. strip fences, extract the first balanced {...}
  2. json.loads
  3. escape raw newlines inside strings, json.loads
  4. drop invalid escapes from step 3's output, json.loads
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterator
from enum import Enum
from typing import Any, NamedTuple, Optional

from structgen.errors import ParseError

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)

# Characters allowed after a backslash inside a JSON string
VALID_ESCAPES = frozenset('"\\/bfnrtu')


class ScanState(str, Enum):
    OUTSIDE = "outside-string"
    IN_STRING = "inside-string"
    ESCAPED = "inside-string-escaped"


def _next_state(state: ScanState, ch: str) -> ScanState:
    if state is ScanState.OUTSIDE:
        return ScanState.IN_STRING if ch == '"' else ScanState.OUTSIDE
    if state is ScanState.ESCAPED:
        return ScanState.IN_STRING
    if ch == "\\":
        return ScanState.ESCAPED
    if ch == '"':
        return ScanState.OUTSIDE
    return ScanState.IN_STRING


def scan(text: str, start: int = 0) -> Iterator[tuple[int, str, ScanState]]:
    """Yield (index, char, state the char is read in) from `start` onward."""
    state = ScanState.OUTSIDE
    for i in range(start, len(text)):
        ch = text[i]
        yield i, ch, state
        state = _next_state(state, ch)


def strip_code_fences(text: str) -> str:
    """Content of the first ``` / ```json block, or the trimmed text if there is none."""
    trimmed = text.strip()
    match = _FENCE_RE.search(trimmed)
    if match and match.group(1):
        return match.group(1).strip()
    return trimmed


def find_balanced_object(text: str) -> Optional[str]:
    """First complete top-level {...} in text, ignoring braces inside strings."""
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    for i, ch, state in scan(text, start):
        if state is not ScanState.OUTSIDE:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def extract_json_object(text: str) -> Optional[str]:
    """Locate the first balanced JSON object in arbitrary provider output."""
    return find_balanced_object(strip_code_fences(text))


def escape_raw_newlines(text: str) -> str:
    """Repair pass A: raw LF inside a string becomes \\n, raw CR is dropped."""
    out: list[str] = []
    for _, ch, state in scan(text):
        if state is ScanState.IN_STRING:
            if ch == "\n":
                out.append("\\n")
                continue
            if ch == "\r":
                continue
        out.append(ch)
    return "".join(out)


def drop_invalid_escapes(text: str) -> str:
    """Repair pass B: a backslash before a non-JSON escape char is dropped, the char kept."""
    out: list[str] = []
    last = len(text) - 1
    for i, ch, state in scan(text):
        if state is ScanState.IN_STRING and ch == "\\" and i < last and text[i + 1] not in VALID_ESCAPES:
            continue
        out.append(ch)
    return "".join(out)


class ParsedJson(NamedTuple):
    value: Any
    stage: str


# json.loads raises RecursionError on pathologically deep nesting
_DECODE_ERRORS = (ValueError, RecursionError)


def _preview(text: str, max_len: int = 200) -> str:
    return text[:max_len]


def _decode_reason(exc: BaseException) -> str:
    if isinstance(exc, json.JSONDecodeError):
        return f"{exc.msg} at line {exc.lineno} column {exc.colno}"
    if isinstance(exc, RecursionError):
        return "nesting too deep"
    return str(exc)


def parse_json_text(raw: str) -> ParsedJson:
    """Run the extraction/repair chain over raw output. Raises ParseError."""
    if not raw or not raw.strip():
        raise ParseError("Provider returned empty output", stage="extract")

    unfenced = strip_code_fences(raw)
    candidate = find_balanced_object(unfenced) or unfenced

    try:
        return ParsedJson(json.loads(candidate), "direct")
    except _DECODE_ERRORS:
        pass

    newline_fixed = escape_raw_newlines(candidate)
    try:
        return ParsedJson(json.loads(newline_fixed), "newline-repair")
    except _DECODE_ERRORS:
        pass

    escape_fixed = drop_invalid_escapes(newline_fixed)
    try:
        return ParsedJson(json.loads(escape_fixed), "escape-repair")
    except _DECODE_ERRORS as e:
        raise ParseError(
            f"Output is not valid JSON after repair ({_decode_reason(e)})",
            stage="escape-repair",
            preview=_preview(raw),
        ) from e
