# classes/response_validation.py

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Type, TypeVar, Union

import pydantic
from pydantic import BaseModel, TypeAdapter

from classes.errors import RecoveryError, ValidationError
from classes.json_recovery import recover

logger = logging.getLogger("draftguard_backend")

T = TypeVar("T")

_NO_FALLBACK: Any = object()
_SNIPPET = 500


@dataclass(frozen=True)
class ResponseShape:
    """
    Declared shape for a model response. `strict` shapes are the normal case;
    `permissive` is the explicit opt-in for loosely typed "record of string to
    anything" responses.
    """
    kind: Literal["strict", "permissive"]
    adapter: TypeAdapter
    name: str = ""


def strict_shape(schema: Union[Type[BaseModel], Any], name: str = "") -> ResponseShape:
    adapter = schema if isinstance(schema, TypeAdapter) else TypeAdapter(schema)
    return ResponseShape("strict", adapter, name or getattr(schema, "__name__", "") or repr(schema))


def permissive_shape(name: str = "json_object") -> ResponseShape:
    return ResponseShape("permissive", TypeAdapter(Dict[str, Any]), name)


SchemaLike = Union[ResponseShape, TypeAdapter, Type[BaseModel]]


def _as_shape(schema: SchemaLike) -> ResponseShape:
    if isinstance(schema, ResponseShape):
        return schema
    return strict_shape(schema)


def _describe_issues(error: pydantic.ValidationError) -> List[Dict[str, Any]]:
    issues = []
    for err in error.errors(include_url=False):
        loc = err.get("loc") or ()
        path = ".".join(str(p) for p in loc) or "<root>"
        actual = err.get("input")
        if isinstance(actual, (list, dict, str)):
            actual_desc = f"{type(actual).__name__} of length {len(actual)}"
        else:
            actual_desc = type(actual).__name__
        issues.append({
            "path": path,
            "message": err.get("msg", ""),
            "type": err.get("type", ""),
            "actual": actual_desc,
        })
    return issues


def _log_failure(context: str, raw_text: str, reason: str, offset: int | None = None, issues=None) -> None:
    raw_text = raw_text or ""
    logger.error(
        f"[AI-RESPONSE] {reason} ({context})\n"
        f"raw length: {len(raw_text)} | error byte offset: {offset}\n"
        f"first {_SNIPPET} chars: {raw_text[:_SNIPPET]}\n"
        f"last {_SNIPPET} chars: {raw_text[-_SNIPPET:]}"
    )
    for issue in issues or []:
        logger.error(f"[AI-RESPONSE]   {issue['path']}: {issue['message']} (type={issue['type']}, got {issue['actual']})")


def parse_and_validate(
    raw_text: str,
    schema: SchemaLike,
    *,
    context: str = "AI response",
    fallback: Any = _NO_FALLBACK,
) -> Any:
    """
    Recover JSON from raw model text and validate it against `schema` without
    coercion (strict JSON-mode validation: "5" is not an int, 1 is not a str).

    On recovery failure or shape mismatch returns `fallback` when one was supplied
    (the discarded error is logged), otherwise raises RecoveryError / ValidationError.
    """
    shape = _as_shape(schema)

    try:
        recovered = recover(raw_text)
    except RecoveryError as e:
        _log_failure(context, raw_text, f"JSON recovery failed: {e}", offset=e.offset)
        if fallback is not _NO_FALLBACK:
            logger.warning(f"[AI-RESPONSE] Using fallback value for {context}")
            return fallback
        raise

    try:
        return shape.adapter.validate_json(recovered.cleaned_text, strict=True)
    except pydantic.ValidationError as e:
        issues = _describe_issues(e)
        summary = "; ".join(
            f"{i['path']}: {i['message']} (got {i['actual']})" for i in issues
        )
        _log_failure(context, raw_text, f"Schema validation failed against {shape.name}", issues=issues)
        if fallback is not _NO_FALLBACK:
            logger.warning(f"[AI-RESPONSE] Using fallback value for {context}")
            return fallback
        raise ValidationError(
            f"AI response did not match expected shape ({context}): {summary}",
            context=context,
            issues=issues,
        ) from e


def validate_ai_text(
    raw: str,
    *,
    context: str = "AI response",
    fallback: str | None = None,
    min_length: int = 0,
) -> str:
    """
    Validate that the model returned non-empty plain text.
    """
    s = (raw or "").strip()
    if len(s) <= min_length:
        if fallback is not None:
            logger.warning(f"[AI-RESPONSE] Empty or too short text ({context}), using fallback")
            return fallback
        raise ValidationError(
            f"No content received: AI returned empty or too short text ({context})",
            context=context,
            issues=[{"path": "<root>", "message": f"text length {len(s)} <= {min_length}", "type": "too_short", "actual": "str"}],
        )
    return s
