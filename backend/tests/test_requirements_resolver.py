import pytest

from validator.db import insert_unit_requirements
from validator.prompts import PromptBuilder
from validator.requirements import (
    ASSESSMENT_CONDITIONS,
    ASSESSMENT_INSTRUCTIONS,
    RequirementResolutionError,
    RequirementsResolver,
    UnitReference,
    normalize_document_type,
)
from validator.sessions import SessionContext

UNIT_URL = "https://training.gov.au/Training/Details/BSBWHS311"


def _session() -> SessionContext:
    return SessionContext(
        session_id="session-1",
        namespace="session-abc",
        unit=UnitReference(code="BSBWHS311"),
        document_type="unit_assessment",
    )


class FakeRequirementQuery:
    def __init__(self, rows_by_key: dict[tuple[str, str, str], list[dict[str, object]]]) -> None:
        self.rows_by_key = rows_by_key
        self.calls: list[tuple[str, str, str]] = []

    def __call__(self, category: str, *, unit_url: str | None = None, unit_code: str | None = None):
        key = (category, "url", unit_url) if unit_url is not None else (category, "code", unit_code)
        self.calls.append(key)  # type: ignore[arg-type]
        return list(self.rows_by_key.get(key, []))  # type: ignore[arg-type]


def _rows(prefix: str, count: int) -> list[dict[str, object]]:
    return [{"number": f"{index}", "text": f"{prefix} requirement {index}"} for index in range(1, count + 1)]


def test_code_fallback_used_only_when_url_lookup_is_empty() -> None:
    query = FakeRequirementQuery(
        {
            ("knowledge_evidence", "url", UNIT_URL): [],
            ("knowledge_evidence", "code", "BSBWHS311"): _rows("ke", 3),
            ("performance_evidence", "url", UNIT_URL): _rows("pe", 2),
            ("performance_evidence", "code", "BSBWHS311"): _rows("stale pe", 5),
        }
    )
    resolver = RequirementsResolver(query)

    requirements = resolver.resolve(UnitReference(code="BSBWHS311", url=UNIT_URL), "unit_assessment")

    knowledge = [item for item in requirements if item.category == "knowledge_evidence"]
    performance = [item for item in requirements if item.category == "performance_evidence"]
    assert [item.text for item in knowledge] == ["ke requirement 1", "ke requirement 2", "ke requirement 3"]
    assert [item.text for item in performance] == ["pe requirement 1", "pe requirement 2"]
    assert ("performance_evidence", "code", "BSBWHS311") not in query.calls


def test_category_missing_on_both_keys_is_excluded_and_fixed_sets_are_appended() -> None:
    query = FakeRequirementQuery({("elements_criteria", "code", "BSBWHS311"): _rows("pc", 1)})
    resolver = RequirementsResolver(query)

    requirements = resolver.resolve(UnitReference(code="BSBWHS311", url=UNIT_URL), "learner_guide")

    categories = [item.category for item in requirements]
    assert "knowledge_evidence" not in categories
    assert categories[0] == "elements_criteria"
    assert requirements[1:] == [*ASSESSMENT_CONDITIONS, *ASSESSMENT_INSTRUCTIONS]
    assert len(ASSESSMENT_CONDITIONS) == 7
    assert len(ASSESSMENT_INSTRUCTIONS) == 7


def test_query_failure_fails_closed_with_category() -> None:
    def broken_query(category: str, **_: object) -> list[dict[str, object]]:
        if category == "foundation_skills":
            raise RuntimeError("connection reset")
        return []

    resolver = RequirementsResolver(broken_query)

    with pytest.raises(RequirementResolutionError) as excinfo:
        resolver.resolve(UnitReference(code="BSBWHS311"), "unit_assessment")

    assert excinfo.value.category == "foundation_skills"
    assert "connection reset" in str(excinfo.value)


def test_duplicate_numbers_keep_first_row() -> None:
    query = FakeRequirementQuery(
        {
            ("knowledge_evidence", "code", "BSBWHS311"): [
                {"number": "1", "text": "first"},
                {"number": "1", "text": "second"},
                {"number": "2", "text": "third"},
            ]
        }
    )

    requirements = RequirementsResolver(query).resolve(UnitReference(code="BSBWHS311"), "unit_assessment")

    knowledge = [item for item in requirements if item.category == "knowledge_evidence"]
    assert [(item.number, item.text) for item in knowledge] == [("1", "first"), ("2", "third")]


def test_resolution_from_reference_table_is_deterministic(isolated_db) -> None:
    insert_unit_requirements(
        [
            {"category": "elements_criteria", "number": "1.2", "text": "Second", "unit_code": "BSBWHS311", "sort_order": 2},
            {
                "category": "elements_criteria",
                "number": "1.1",
                "text": "First",
                "element_text": "Identify hazards",
                "unit_code": "BSBWHS311",
                "sort_order": 1,
            },
            {"category": "knowledge_evidence", "number": "1", "text": "Hazard types", "unit_url": UNIT_URL},
        ]
    )
    resolver = RequirementsResolver()
    unit = UnitReference(code="BSBWHS311", url=UNIT_URL)

    first = resolver.resolve(unit, "unit_assessment")
    second = resolver.resolve(unit, "unit_assessment")

    assert first == second
    assert [item.key for item in first[:3]] == [
        "knowledge_evidence:1",
        "elements_criteria:1.1",
        "elements_criteria:1.2",
    ]
    assert first[1].element_text == "Identify hazards"


def test_normalize_document_type_accepts_aliases() -> None:
    assert normalize_document_type("Learner Guide") == "learner_guide"
    assert normalize_document_type("unit") == "unit_assessment"
    with pytest.raises(ValueError):
        normalize_document_type("workbook")


def test_requirement_text_keeps_its_inner_layout() -> None:
    stored = "Identify hazards:\n  - manual handling\n  - noise  and vibration"
    query = FakeRequirementQuery(
        {("knowledge_evidence", "code", "BSBWHS311"): [{"number": " 4 ", "text": f"  {stored}\n"}]}
    )

    requirements = RequirementsResolver(query).resolve(UnitReference(code="BSBWHS311"), "unit_assessment")
    prompt = PromptBuilder().build(requirements[0], _session())

    assert (requirements[0].number, requirements[0].text) == ("4", stored)
    assert stored in prompt
