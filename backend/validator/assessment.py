from __future__ import annotations

import json
import re
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from validator.requirements import Requirement


AssessmentStatus = Literal["met", "partially_met", "not_met"]

MISSING_PLACEHOLDER = "[not provided by model]"
NOT_APPLICABLE = "N/A"

_STATUS_ALIASES = {
    "met": "met",
    "pass": "met",
    "passed": "met",
    "satisfactory": "met",
    "partially_met": "partially_met",
    "partial": "partially_met",
    "partly_met": "partially_met",
    "not_met": "not_met",
    "notmet": "not_met",
    "unmet": "not_met",
    "fail": "not_met",
    "failed": "not_met",
}
_TEXT_FIELDS = ("reasoning", "mapped_content", "unmapped_content", "recommendations")


class DeclaredCitation(BaseModel):
    document: str = ""
    pages: list[int] = Field(default_factory=list)
    excerpt: str = ""


class SmartQuestion(BaseModel):
    question: str = Field(..., min_length=1)
    benchmark_answer: str = Field(..., min_length=1)


class AssessmentOutput(BaseModel):
    status: AssessmentStatus
    reasoning: str = Field(..., min_length=1)
    mapped_content: str
    unmapped_content: str
    recommendations: str
    citations: list[DeclaredCitation] = Field(default_factory=list)
    smart_question: SmartQuestion | None = None


class ParsedAssessment(BaseModel):
    output: AssessmentOutput
    degraded: bool = False
    diagnostics: list[str] = Field(default_factory=list)


def normalize_status(value: Any) -> AssessmentStatus | None:
    key = "_".join(re.findall(r"[a-z]+", str(value or "").lower()))
    return _STATUS_ALIASES.get(key)  # type: ignore[return-value]


def parse_json_object(raw: str) -> dict[str, object] | None:
    candidate = raw.strip()
    attempts = [candidate]
    fenced = re.search(r"```(?:json)?\s*(.*?)\s*```", candidate, flags=re.IGNORECASE | re.DOTALL)
    if fenced:
        attempts.append(fenced.group(1))
    start = candidate.find("{")
    end = candidate.rfind("}")
    if start != -1 and end > start:
        attempts.append(candidate[start : end + 1])

    for attempt in attempts:
        try:
            payload = json.loads(attempt)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload
    return None


def _coerce_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        return "\n".join(str(item).strip() for item in value if str(item).strip())
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=True)
    return str(value).strip()


def _coerce_declared_citations(value: Any) -> list[dict[str, object]]:
    if not isinstance(value, list):
        return []
    citations: list[dict[str, object]] = []
    for item in value:
        if not isinstance(item, dict):
            continue
        pages: list[int] = []
        raw_pages = item.get("pages", item.get("page_numbers", []))
        if not isinstance(raw_pages, list):
            raw_pages = [raw_pages]
        for page in raw_pages:
            try:
                pages.append(int(page))
            except (TypeError, ValueError):
                continue
        citations.append(
            {
                "document": str(item.get("document") or item.get("document_name") or ""),
                "pages": pages,
                "excerpt": str(item.get("excerpt") or item.get("text") or ""),
            }
        )
    return citations


def fallback_assessment(reasoning: str, *, diagnostic: str) -> ParsedAssessment:
    """A ``not_met`` result for a requirement that produced no usable model output."""
    return ParsedAssessment(
        output=AssessmentOutput(
            status="not_met",
            reasoning=reasoning,
            mapped_content="",
            unmapped_content="No evidence returned for this requirement.",
            recommendations="Re-run validation for this requirement once the retrieval service is available.",
        ),
        degraded=True,
        diagnostics=[diagnostic],
    )


def parse_assessment(raw_text: str | None, requirement: Requirement) -> ParsedAssessment:
    """Parse model output against the fixed output contract.

    Fields that are missing or invalid are replaced with explicit placeholders and the result is
    marked degraded; output that is not a JSON object becomes a ``not_met`` result.
    """
    if raw_text is None or not raw_text.strip():
        return fallback_assessment(
            "No evidence returned: the retrieval response contained no model output.",
            diagnostic="empty_response",
        )

    payload = parse_json_object(raw_text)
    if payload is None:
        return fallback_assessment(
            "No evidence returned: the model response could not be parsed as a JSON object.",
            diagnostic="unparsable_response",
        )

    diagnostics: list[str] = []
    repaired: dict[str, object] = {}

    status = normalize_status(payload.get("status"))
    if status is None:
        diagnostics.append(f"invalid status {payload.get('status')!r}; recorded as not_met")
        status = "not_met"
    repaired["status"] = status

    for field in _TEXT_FIELDS:
        text = _coerce_text(payload.get(field))
        if text is None or (field == "reasoning" and not text):
            diagnostics.append(f"missing field: {field}")
            text = MISSING_PLACEHOLDER
        repaired[field] = text

    if "citations" in payload and not isinstance(payload.get("citations"), list):
        diagnostics.append("invalid field: citations")
    repaired["citations"] = _coerce_declared_citations(payload.get("citations"))

    if requirement.wants_question:
        repaired["smart_question"] = _repair_smart_question(payload.get("smart_question"), status, diagnostics)

    try:
        output = AssessmentOutput.model_validate(repaired)
    except ValidationError as err:
        issues = [issue["msg"] for issue in err.errors()]
        return fallback_assessment(
            "No evidence returned: the model response did not match the output contract.",
            diagnostic="contract_violation: " + "; ".join(issues),
        )
    return ParsedAssessment(output=output, degraded=bool(diagnostics), diagnostics=diagnostics)


def _repair_smart_question(value: Any, status: str, diagnostics: list[str]) -> dict[str, str]:
    if status == "met":
        return {"question": NOT_APPLICABLE, "benchmark_answer": NOT_APPLICABLE}

    question = answer = None
    if isinstance(value, dict):
        question = _coerce_text(value.get("question"))
        answer = _coerce_text(value.get("benchmark_answer"))
    if not question:
        diagnostics.append("missing field: smart_question.question")
        question = MISSING_PLACEHOLDER
    if not answer:
        diagnostics.append("missing field: smart_question.benchmark_answer")
        answer = MISSING_PLACEHOLDER
    return {"question": question, "benchmark_answer": answer}
