from __future__ import annotations

import logging
from typing import Callable, Literal, get_args

from pydantic import BaseModel, Field, ValidationError

from validator.db import query_unit_requirements

logger = logging.getLogger("validator.requirements")


RequirementCategory = Literal[
    "knowledge_evidence",
    "performance_evidence",
    "foundation_skills",
    "elements_criteria",
    "assessment_conditions",
    "assessment_instructions",
]
DocumentType = Literal["unit_assessment", "learner_guide"]

UNIT_SPECIFIC_CATEGORIES: tuple[RequirementCategory, ...] = (
    "knowledge_evidence",
    "performance_evidence",
    "foundation_skills",
    "elements_criteria",
)
FIXED_CATEGORIES: tuple[RequirementCategory, ...] = ("assessment_conditions", "assessment_instructions")
QUESTION_CATEGORIES: frozenset[str] = frozenset({"knowledge_evidence", "performance_evidence", "foundation_skills"})

CATEGORY_LABELS: dict[str, str] = {
    "knowledge_evidence": "Knowledge Evidence",
    "performance_evidence": "Performance Evidence",
    "foundation_skills": "Foundation Skills",
    "elements_criteria": "Elements and Performance Criteria",
    "assessment_conditions": "Assessment Conditions",
    "assessment_instructions": "Assessment Instructions",
}

_DOCUMENT_TYPE_ALIASES = {
    "unit": "unit_assessment",
    "assessment": "unit_assessment",
    "unit_assessment": "unit_assessment",
    "learner_guide": "learner_guide",
    "learnerguide": "learner_guide",
    "guide": "learner_guide",
}


class RequirementResolutionError(RuntimeError):
    """Raised when a requirement category cannot be loaded from the reference store."""

    def __init__(self, category: str, cause: str) -> None:
        super().__init__(f"Failed to load {CATEGORY_LABELS.get(category, category)} requirements: {cause}")
        self.category = category


class UnitReference(BaseModel):
    code: str = Field(..., min_length=1)
    url: str | None = None
    title: str | None = None


class Requirement(BaseModel):
    category: RequirementCategory
    number: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)
    element_text: str | None = None

    @property
    def key(self) -> str:
        return f"{self.category}:{self.number}"

    @property
    def wants_question(self) -> bool:
        return self.category in QUESTION_CATEGORIES


def _fixed(category: RequirementCategory, items: list[tuple[str, str]]) -> tuple[Requirement, ...]:
    return tuple(
        Requirement(category=category, number=str(index), text=f"{title}: {check}")
        for index, (title, check) in enumerate(items, start=1)
    )


ASSESSMENT_CONDITIONS = _fixed(
    "assessment_conditions",
    [
        (
            "Assessment Environment",
            "The document specifies whether skills are demonstrated in a real or simulated workplace "
            "environment that reflects real-world industry conditions.",
        ),
        (
            "Necessary Resources",
            "All required tools, equipment and materials are explicitly listed.",
        ),
        (
            "Supervision and Observation Requirements",
            "The qualified assessor's role is specified, including whether third-party supervisors are "
            "allowed and what qualifications they need.",
        ),
        (
            "Supplemental Evidence",
            "Any additional evidence required (third-party reports, journals, logbooks) is identified with "
            "collection guidelines.",
        ),
        (
            "Compliance with Standards",
            "The assessment aligns with ASQA, NQF or other relevant regulatory standards.",
        ),
        (
            "Qualification-Specific Requirements",
            "Assessment conditions are tailored to the qualification and its industry.",
        ),
        (
            "Feedback and Review Procedures",
            "There is a clear process for feedback to candidates and review of assessment decisions.",
        ),
    ],
)

ASSESSMENT_INSTRUCTIONS = _fixed(
    "assessment_instructions",
    [
        (
            "Purpose and Overview",
            "The assessment purpose is clearly stated with an overview of what will be assessed.",
        ),
        (
            "Instructions Clarity",
            "Instructions are clear, written in plain English and free from ambiguity.",
        ),
        (
            "Task Requirements",
            "It is clear what the candidate needs to do, and requirements are specific and measurable.",
        ),
        (
            "Submission Requirements",
            "Submission formats, methods and timeframes are clearly specified.",
        ),
        (
            "Assessment Criteria",
            "Assessment criteria are communicated so candidates know how they will be judged.",
        ),
        (
            "Resources and Materials",
            "Required resources and accessible materials are clearly listed.",
        ),
        (
            "Support and Assistance",
            "It is clear how candidates can get help, including contact details.",
        ),
    ],
)

FIXED_REQUIREMENTS: dict[str, tuple[Requirement, ...]] = {
    "assessment_conditions": ASSESSMENT_CONDITIONS,
    "assessment_instructions": ASSESSMENT_INSTRUCTIONS,
}


def normalize_document_type(value: str) -> DocumentType:
    normalized = "_".join(str(value or "").strip().lower().replace("-", " ").split())
    resolved = _DOCUMENT_TYPE_ALIASES.get(normalized)
    if resolved is None:
        allowed = ", ".join(get_args(DocumentType))
        raise ValueError(f"Unsupported document type '{value}'. Use one of: {allowed}.")
    return resolved  # type: ignore[return-value]


RequirementQuery = Callable[..., list[dict[str, object]]]


class RequirementsResolver:
    """Loads the ordered requirement set for a unit of competency.

    Unit-specific categories are looked up by canonical unit URL first and by unit code only
    when the URL lookup returns no rows. A category that misses on both keys is left out. A
    lookup that raises aborts resolution so that an incomplete set is never returned.
    """

    def __init__(self, query: RequirementQuery | None = None) -> None:
        self._query = query or query_unit_requirements

    def resolve(self, unit: UnitReference, document_type: str) -> list[Requirement]:
        normalize_document_type(document_type)
        requirements: list[Requirement] = []
        lookup_sources: dict[str, str] = {}

        for category in UNIT_SPECIFIC_CATEGORIES:
            rows, source = self._load_category(category, unit)
            lookup_sources[category] = source
            try:
                loaded = [self._to_requirement(category, row) for row in rows]
            except ValidationError as exc:
                raise RequirementResolutionError(category, "reference row is missing a number or text") from exc
            seen_keys: set[str] = set()
            for requirement in loaded:
                if requirement.key in seen_keys:
                    logger.warning(
                        "requirement_duplicate_skipped",
                        extra={"event": "requirement_duplicate_skipped", "requirement_key": requirement.key},
                    )
                    continue
                seen_keys.add(requirement.key)
                requirements.append(requirement)

        for category in FIXED_CATEGORIES:
            requirements.extend(FIXED_REQUIREMENTS[category])
            lookup_sources[category] = "fixed"

        logger.info(
            "requirements_resolved",
            extra={
                "event": "requirements_resolved",
                "unit_code": unit.code,
                "requirement_count": len(requirements),
                "lookup_sources": lookup_sources,
            },
        )
        return requirements

    def _load_category(self, category: str, unit: UnitReference) -> tuple[list[dict[str, object]], str]:
        try:
            if unit.url:
                rows = self._query(category, unit_url=unit.url)
                if rows:
                    return rows, "url"
            rows = self._query(category, unit_code=unit.code)
        except Exception as exc:
            logger.error(
                "requirements_query_failed",
                extra={
                    "event": "requirements_query_failed",
                    "unit_code": unit.code,
                    "category": category,
                    "error": str(exc),
                },
            )
            raise RequirementResolutionError(category, str(exc)) from exc
        return rows, ("code" if rows else "missing")

    @staticmethod
    def _to_requirement(category: RequirementCategory, row: dict[str, object]) -> Requirement:
        element_text = str(row.get("element_text") or "").strip() or None
        return Requirement(
            category=category,
            number=str(row.get("number", "")).strip(),
            text=str(row.get("text", "")).strip(),
            element_text=element_text,
        )
