"""
Tolerant parsing of model verdicts.

Model output is often almost-JSON: wrapped in <think> tags or code fences,
surrounded by prose, truncated mid-object, or carrying trailing commas.
Each stage below is a pure function; `load_verdict_payload` tries them in
order of increasing tolerance and `parse_verdict` normalises the result.
"""
import logging
import re
from typing import Any

import orjson
from json_repair import repair_json
from pydantic import ValidationError

from .errors import VerdictParseError
from .models import Citation, Verdict

logger = logging.getLogger(__name__)


# ---------- Stages ----------
def strip_wrappers(raw: str) -> str:
    """Remove <think>...</think> blocks and stray think tags, then trim."""
    if not raw:
        return ""
    raw = re.sub(r"<think>.*?</think>", "", raw, flags=re.DOTALL)
    raw = re.sub(r"</?think>", "", raw)
    return raw.strip()


def parse_strict(text: str) -> Any:
    try:
        return orjson.loads(text)
    except orjson.JSONDecodeError as e:
        raise VerdictParseError(f"Invalid JSON: {e}") from e


def extract_fenced_block(text: str) -> str | None:
    m = re.search(r"```(?:json|JSON)?\s*(.*?)(?:```|\Z)", text, flags=re.DOTALL)
    if not m or not m.group(1).strip():
        return None
    return m.group(1).strip()


def extract_json_object(text: str) -> str | None:
    """
    First balanced {...} object, skipping braces inside strings. An object that
    never closes is returned from its opening brace to the end of the text.
    """
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return text[start:]


def repair_brackets(text: str) -> str:
    """Drop trailing commas, close an open string and append missing closers."""
    text = re.sub(r",\s*([}\]])", r"\1", text.rstrip())
    stack: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack and stack[-1] == ch:
            stack.pop()
    if in_string:
        text += '"'
    text = re.sub(r",\s*$", "", text)
    return text + "".join(reversed(stack))


def load_verdict_payload(raw: str) -> dict | None:
    """
    1) strict parse
    2) fenced block
    3) first balanced object
    4) bracket repair
    5) json-repair
    Returns the first dict any stage yields, or None.
    """
    cleaned = strip_wrappers(raw)
    if not cleaned:
        return None

    candidates = [cleaned]
    fenced = extract_fenced_block(cleaned)
    if fenced:
        candidates.append(fenced)
    obj = extract_json_object(fenced or cleaned)
    if obj:
        candidates += [obj, repair_brackets(obj)]

    for candidate in candidates:
        try:
            data = parse_strict(candidate)
        except VerdictParseError:
            continue
        if isinstance(data, dict):
            return data

    try:
        data = repair_json(obj or cleaned, return_objects=True)
    except Exception as e:
        logger.debug("json-repair could not recover verdict: %s", e)
        return None
    return data if isinstance(data, dict) and data else None


# ---------- Normalisation ----------
_STATUS_WORDS = {
    "compliant": "compliant",
    "fully compliant": "compliant",
    "full": "compliant",
    "met": "compliant",
    "partial": "partial",
    "partially compliant": "partial",
    "partially": "partial",
    "partially met": "partial",
    "missing": "missing",
    "non-compliant": "missing",
    "non compliant": "missing",
    "noncompliant": "missing",
    "not compliant": "missing",
    "not met": "missing",
    "none": "missing",
}


def _first(data: dict, *keys: str, default=None):
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return default


def normalise_status(value: Any) -> str | None:
    if value is None:
        return None
    return _STATUS_WORDS.get(str(value).strip().lower().replace("_", " "))


def normalise_score(value: Any, default: int = 0) -> int:
    """Accept 85, 0.85, "71.4%" or "(5/7)*100 = 71.4"; clamp to 0..100."""
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, (int, float)):
        score = float(value)
    else:
        nums = re.findall(r"\d+(?:\.\d+)?", str(value))
        if not nums:
            return default
        score = float(nums[-1])
    if 0 < score < 1:
        score *= 100
    return int(round(max(0.0, min(score, 100.0))))


def _optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    m = re.search(r"\d+", str(value))
    return int(m.group(0)) if m else None


def _citation(item: Any) -> Citation | None:
    if isinstance(item, str):
        return Citation(text=item) if item.strip() else None
    if not isinstance(item, dict):
        return None
    text = _first(item, "evidenceText", "evidence_text", "text", "quote")
    if not text or not str(text).strip():
        return None
    hint = _first(item, "documentName", "document_name", "documentHint", "document")
    return Citation(
        text=str(text).strip(),
        document_hint=str(hint) if hint else None,
        page_hint=_optional_int(_first(item, "pageNumber", "page_number", "pageHint", "page")),
        line_start=_optional_int(_first(item, "lineStart", "line_start")),
        line_end=_optional_int(_first(item, "lineEnd", "line_end")),
        confidence=normalise_score(item.get("confidence")),
        relevance=normalise_score(_first(item, "relevanceScore", "relevance_score", "relevance")),
    )


def parse_verdict(raw: str) -> Verdict | None:
    data = load_verdict_payload(raw)
    if data is None:
        return None
    status = normalise_status(_first(data, "status", "compliance_state", "complianceStatus"))
    if status is None:
        return None

    evidence = _first(data, "evidenceItems", "evidence_items", "evidence", default=[])
    if isinstance(evidence, (str, dict)):
        evidence = [evidence]
    citations = [c for c in (_citation(item) for item in evidence or []) if c is not None]

    reasoning = _first(data, "reasoning", "rationale", default="")
    if isinstance(reasoning, list):
        reasoning = " ".join(str(r) for r in reasoning)
    reasoning = re.sub(r"<think>.*?</think>\s*", "", str(reasoning), flags=re.DOTALL).strip()

    try:
        return Verdict(
            status=status,
            confidence=normalise_score(_first(data, "confidenceScore", "confidence_score", "confidence")),
            reasoning=reasoning or "No reasoning provided by the model.",
            evidence=citations,
        )
    except ValidationError as e:
        logger.debug("Verdict failed validation: %s", e)
        return None


def degraded_verdict(reason: str) -> Verdict:
    return Verdict(status="missing", confidence=0, reasoning=reason, evidence=[])
