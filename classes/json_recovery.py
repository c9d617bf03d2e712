# classes/json_recovery.py

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

import commentjson
from json_repair import repair_json

from classes.errors import RecoveryError

logger = logging.getLogger("draftguard_backend")

_FENCED_BLOCK_RE = re.compile(r"```[A-Za-z]*\s*([\s\S]*?)\s*```")
_LEADING_FENCE_RE = re.compile(r"^\s*```[A-Za-z]*\s*")
_TRAILING_FENCE_RE = re.compile(r"\s*```\s*$")

_PARTIAL_LITERAL_RE = re.compile(r"[\[:,]\s*((?:t|tr|tru|f|fa|fal|fals|n|nu|nul))$")
_PARTIAL_NUMBER_RE = re.compile(r"(?:(?<=[0-9])[eE][+-]?|(?<=[0-9])\.|(?<=[\[:,])\s*-)$")

# An unterminated string opened this close to the end is treated as a cut-off member.
OPEN_STRING_WINDOW = 50
# ...and the enclosing object is dropped if it starts this close to the end.
INCOMPLETE_MEMBER_WINDOW = 200


@dataclass
class RecoveredJson:
    raw_text: str
    cleaned_text: str
    value: Any
    repaired: bool = False
    strategy: str = "strict"


@dataclass
class _ScanState:
    end: Optional[int] = None
    stack: List[Tuple[str, int]] = field(default_factory=list)
    in_string: bool = False
    string_start: Optional[int] = None
    escape_pending: bool = False
    last_string: Optional[Tuple[int, int]] = None


def strip_code_fences(raw_text: str) -> str:
    """
    Extract the interior of the first fenced block (```json ... ``` or ``` ... ```);
    without a complete block, drop stray leading/trailing fence markers.
    """
    text = (raw_text or "").strip()
    if "```" not in text:
        return text
    match = _FENCED_BLOCK_RE.search(text)
    if match:
        return match.group(1).strip()
    text = _LEADING_FENCE_RE.sub("", text)
    return _TRAILING_FENCE_RE.sub("", text).strip()


def _scan(text: str, start: int = 0) -> _ScanState:
    """
    Walk from `start`, tracking string/escape state so braces and brackets inside
    string literals are never counted. Stops at the character that closes the
    container opened at `start`.
    """
    state = _ScanState()
    for i in range(start, len(text)):
        ch = text[i]
        if state.escape_pending:
            state.escape_pending = False
            continue
        if state.in_string:
            if ch == "\\":
                state.escape_pending = True
            elif ch == '"':
                state.in_string = False
                state.last_string = (state.string_start, i)
            continue
        if ch == '"':
            state.in_string = True
            state.string_start = i
        elif ch in "{[":
            state.stack.append((ch, i))
        elif ch in "}]":
            if state.stack:
                state.stack.pop()
            if not state.stack:
                state.end = i
                return state
    return state


def _trim_dangling_tail(text: str) -> str:
    """
    Drop whatever trails the last complete member: commas, keys without values,
    bare keys, half-written literals and numbers.
    """
    while True:
        s = text.rstrip()
        if s.endswith(","):
            text = s[:-1]
            continue

        m = _PARTIAL_LITERAL_RE.search(s)
        if m:
            text = s[:m.start(1)]
            continue
        m = _PARTIAL_NUMBER_RE.search(s)
        if m:
            text = s[:m.start()]
            continue

        state = _scan(s)
        if s.endswith(":") and state.last_string:
            text = s[:state.last_string[0]]
            continue

        top = state.stack[-1][0] if state.stack else None
        if top == "{" and s.endswith('"') and state.last_string and state.last_string[1] == len(s) - 1:
            before = s[:state.last_string[0]].rstrip()
            if before.endswith("{") or before.endswith(","):
                text = before
                continue
        return s


def repair_truncated(candidate: str) -> str:
    """
    Close a JSON object that was cut off mid-way.

    An open string that started within the last OPEN_STRING_WINDOW chars drops the
    innermost open (non-root) object when it starts within INCOMPLETE_MEMBER_WINDOW
    chars of the end; otherwise the string is closed in place. Open containers are
    then closed in reverse order of opening.
    """
    text = candidate
    state = _scan(text)
    if state.end is not None:
        return text[:state.end + 1]

    if state.in_string:
        cut = None
        if state.string_start is not None and state.string_start >= len(text) - OPEN_STRING_WINDOW:
            open_objects = [pos for ch, pos in state.stack[1:] if ch == "{"]
            if open_objects and open_objects[-1] >= len(text) - INCOMPLETE_MEMBER_WINDOW:
                cut = open_objects[-1]
        if cut is not None:
            text = text[:cut]
        else:
            if state.escape_pending:
                text = text[:-1]
            text += '"'

    text = _trim_dangling_tail(text)
    state = _scan(text)
    if state.end is not None:
        return text[:state.end + 1]

    closers = "".join("}" if ch == "{" else "]" for ch, _ in reversed(state.stack))
    logger.warning(
        f"[JSON RECOVERY] JSON appeared incomplete, closed {len(closers)} open container(s) with '{closers}'"
    )
    return text + closers


def _byte_offset(text: str, pos: Optional[int]) -> Optional[int]:
    if pos is None:
        return None
    return len(text[:pos].encode("utf-8"))


def _load_candidate(text: str) -> Tuple[str, Any, str]:
    """
    Strict json first, then comment-tolerant json, then json_repair.
    Whatever comes back is re-serialized so the returned text is always valid JSON.
    """
    try:
        return text, json.loads(text), "strict"
    except json.JSONDecodeError as e:
        first_error = e

    try:
        value = commentjson.loads(text)
        if isinstance(value, dict):
            return json.dumps(value, ensure_ascii=False), value, "comments"
    except Exception as e:
        logger.debug(f"[JSON RECOVERY] comment-tolerant parse failed: {e}")

    repaired = repair_json(text)
    try:
        value = json.loads(repaired) if repaired else None
    except json.JSONDecodeError:
        value = None
    if isinstance(value, dict) and value:
        return json.dumps(value, ensure_ascii=False), value, "json_repair"

    raise RecoveryError(
        f"Malformed JSON: parse still fails after repair attempt: {first_error.msg} "
        f"(line {first_error.lineno} column {first_error.colno})",
        text=text,
        offset=_byte_offset(text, first_error.pos),
    )


def recover(raw_text: str) -> RecoveredJson:
    """
    Best-effort recovery of a JSON object from raw model output: fence stripping,
    object boundary location, brace-balanced extraction, truncation repair.
    Raises RecoveryError when no syntactically valid object can be produced.
    """
    if raw_text is None or not raw_text.strip():
        raise RecoveryError("No content received: empty model output", text=raw_text or "")

    text = strip_code_fences(raw_text)
    start = text.find("{")
    if start == -1:
        raise RecoveryError("Malformed JSON: no opening brace found", text=text)

    state = _scan(text, start)
    repaired = state.end is None
    if repaired:
        candidate = repair_truncated(text[start:].rstrip())
    else:
        candidate = text[start:state.end + 1]

    cleaned, value, strategy = _load_candidate(candidate)
    if strategy != "strict":
        repaired = True
    return RecoveredJson(
        raw_text=raw_text,
        cleaned_text=cleaned,
        value=value,
        repaired=repaired,
        strategy=strategy,
    )


def recover_json(raw_text: str) -> str:
    return recover(raw_text).cleaned_text
