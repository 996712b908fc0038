"""Turn loosely structured vision-model output into a typed nutrition result.

Models are asked for bare JSON but regularly wrap it in markdown fences or
prose, leave keys out, or send numbers as strings. The parser looks for the
first JSON object that names a food and then checks each field on its own,
so one broken number never costs the whole result.
"""

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Iterator, Literal, Optional, Union

from jsonschema import Draft202012Validator
from pydantic import BaseModel

from .errors import ParseError


Confidence = Literal["low", "medium", "high"]

FOOD_NAME_MAX_LEN = 120
# Stored in int4 columns after rounding.
NUMBER_MAX = 1_000_000
NUMERIC_FIELDS = ("calories", "protein", "weight")

_FIELD_VALIDATORS = {
    "food_name": Draft202012Validator(
        {"type": "string", "minLength": 1, "pattern": r"\S"}
    ),
    "number": Draft202012Validator({"type": "number", "minimum": 0, "maximum": NUMBER_MAX}),
    "confidence": Draft202012Validator({"enum": ["low", "medium", "high"]}),
}

_FENCED_BLOCK_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_NUMERIC_STRING_RE = re.compile(r"^\s*(\d+(?:[.,]\d+)?)\s*$")


class FoodAnalysis(BaseModel):
    food_name: str
    calories: Optional[float] = None
    protein: Optional[float] = None
    weight: Optional[float] = None
    confidence: Optional[Confidence] = None


@dataclass(frozen=True)
class ParseOk:
    analysis: FoodAnalysis
    ok: Literal[True] = True


@dataclass(frozen=True)
class ParseFailed:
    reason: str
    ok: Literal[False] = False


ParseOutcome = Union[ParseOk, ParseFailed]


def _load_object(text: str) -> Optional[dict[str, Any]]:
    candidate = text.strip()
    if not candidate:
        return None
    for attempt in (candidate, _TRAILING_COMMA_RE.sub(r"\1", candidate)):
        try:
            parsed = json.loads(attempt)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
        return None
    return None


def _balanced_spans(text: str) -> Iterator[str]:
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for idx, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and depth > 0:
            in_string = True
        elif char == "{":
            if depth == 0:
                start = idx
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                yield text[start:idx + 1]


def _candidate_objects(raw: str) -> Iterator[dict[str, Any]]:
    whole = _load_object(raw)
    if whole is not None:
        yield whole
    for block in _FENCED_BLOCK_RE.findall(raw):
        parsed = _load_object(block)
        if parsed is not None:
            yield parsed
    for span in _balanced_spans(raw):
        parsed = _load_object(span)
        if parsed is not None:
            yield parsed


def locate_payload(raw: str) -> Optional[dict[str, Any]]:
    """First object carrying ``food_name``, else the first object found."""
    first: Optional[dict[str, Any]] = None
    for candidate in _candidate_objects(raw):
        if "food_name" in candidate:
            return candidate
        if first is None:
            first = candidate
    return first


def _coerce_number(value: Any) -> Optional[float]:
    if isinstance(value, str):
        match = _NUMERIC_STRING_RE.match(value)
        if not match:
            return None
        value = float(match.group(1).replace(",", "."))
    if not _FIELD_VALIDATORS["number"].is_valid(value) or not math.isfinite(value):
        return None
    return float(value)


def _coerce_confidence(value: Any) -> Optional[Confidence]:
    if isinstance(value, str):
        value = value.strip().lower()
    if not _FIELD_VALIDATORS["confidence"].is_valid(value):
        return None
    return value


def parse_analysis(raw: Optional[str]) -> ParseOutcome:
    if not isinstance(raw, str):
        return ParseFailed("empty_output")

    payload = locate_payload(raw)
    if payload is None:
        return ParseFailed("no_json_payload")

    food_name = payload.get("food_name")
    if not _FIELD_VALIDATORS["food_name"].is_valid(food_name):
        return ParseFailed("missing_food_name")

    numbers = {field: _coerce_number(payload.get(field)) for field in NUMERIC_FIELDS}
    return ParseOk(
        FoodAnalysis(
            food_name=food_name.strip()[:FOOD_NAME_MAX_LEN].rstrip(),
            confidence=_coerce_confidence(payload.get("confidence")),
            **numbers,
        )
    )


def extract_analysis(raw: Optional[str]) -> FoodAnalysis:
    outcome = parse_analysis(raw)
    if isinstance(outcome, ParseFailed):
        raise ParseError(details={"reason": outcome.reason})
    return outcome.analysis
