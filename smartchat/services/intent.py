from __future__ import annotations

import json
import re

from pydantic import ValidationError as PydanticValidationError

from smartchat.core.errors import IntentError
from smartchat.domain.chat import QueryIntent


_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
# Two-character escapes the model sometimes emits outside of JSON strings.
_LITERAL_ESCAPE_RE = re.compile(r"\\[nrt]")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")


def extract_intent(raw: str) -> QueryIntent:
    """Read the model's ``{summary, query, is_query}`` object out of free text."""
    if not raw:
        raise IntentError("empty model output")
    text = _FENCE_RE.sub("", raw)
    text = _LITERAL_ESCAPE_RE.sub(" ", text)
    text = _CONTROL_RE.sub(" ", text)
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise IntentError("no JSON object in model output")
    try:
        payload = json.loads(text[start : end + 1])
    except ValueError as exc:
        raise IntentError("model output is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise IntentError("model output is not a JSON object")
    try:
        intent = QueryIntent.model_validate(payload)
    except PydanticValidationError as exc:
        raise IntentError("model output does not match the intent shape") from exc
    if intent.is_query and not intent.query.strip():
        raise IntentError("query intent without a query")
    return intent
