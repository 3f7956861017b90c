import json

from validator.assessment import MISSING_PLACEHOLDER, NOT_APPLICABLE, normalize_status, parse_assessment
from validator.prompts import PromptBuilder
from validator.requirements import ASSESSMENT_CONDITIONS, Requirement, UnitReference
from validator.sessions import SessionContext


def _context(document_type: str = "unit_assessment") -> SessionContext:
    return SessionContext(
        session_id="session-1",
        namespace="session-abc",
        unit=UnitReference(code="BSBWHS311", title="Assist with maintaining workplace safety"),
        document_type=document_type,  # type: ignore[arg-type]
    )


KNOWLEDGE = Requirement(
    category="knowledge_evidence",
    number="3",
    text="Hazard identification and risk control procedures",
)
CRITERION = Requirement(
    category="elements_criteria",
    number="1.2",
    text="Identify hazards in the work area",
    element_text="Assist with the identification of hazards",
)


def test_prompt_embeds_requirement_verbatim_and_scopes_evidence() -> None:
    prompt = PromptBuilder().build(CRITERION, _context())

    assert "Requirement 1.2: Identify hazards in the work area" in prompt
    assert "Element: Assist with the identification of hazards" in prompt
    assert "BSBWHS311 - Assist with maintaining workplace safety" in prompt
    assert "session namespace 'session-abc'" in prompt
    assert "smart_question" not in prompt


def test_prompt_is_deterministic_and_framed_by_document_type() -> None:
    builder = PromptBuilder()

    assessment_prompt = builder.build(KNOWLEDGE, _context("unit_assessment"))
    guide_prompt = builder.build(KNOWLEDGE, _context("learner_guide"))

    assert assessment_prompt == builder.build(KNOWLEDGE, _context("unit_assessment"))
    assert "assessment tool" in assessment_prompt
    assert "learner guide" in guide_prompt
    assert '"smart_question"' in assessment_prompt


def test_parse_assessment_accepts_fenced_json_and_status_aliases() -> None:
    raw = "```json\n" + json.dumps(
        {
            "status": "Partially Met",
            "reasoning": "Questions 4 and 5 cover hazards but not risk controls (Assessment.pdf p.3).",
            "mapped_content": "Q4, Q5",
            "unmapped_content": "Risk control hierarchy",
            "recommendations": "Add a question on the hierarchy of control.",
            "citations": [{"document": "Assessment.pdf", "pages": [3, "4"], "excerpt": "Q4"}],
            "smart_question": {"question": "List the hierarchy of control.", "benchmark_answer": "Elimination..."},
        }
    ) + "\n```"

    parsed = parse_assessment(raw, KNOWLEDGE)

    assert parsed.degraded is False
    assert parsed.output.status == "partially_met"
    assert parsed.output.citations[0].pages == [3, 4]
    assert parsed.output.smart_question is not None
    assert parsed.output.smart_question.question == "List the hierarchy of control."


def test_parse_assessment_marks_missing_fields_as_degraded() -> None:
    parsed = parse_assessment(json.dumps({"status": "not met", "reasoning": "Nothing found."}), KNOWLEDGE)

    assert parsed.degraded is True
    assert parsed.output.status == "not_met"
    assert parsed.output.mapped_content == MISSING_PLACEHOLDER
    assert "missing field: mapped_content" in parsed.diagnostics
    assert "missing field: smart_question.question" in parsed.diagnostics


def test_met_question_category_gets_not_applicable_question() -> None:
    payload = {
        "status": "met",
        "reasoning": "Covered.",
        "mapped_content": "Q1",
        "unmapped_content": "",
        "recommendations": "",
    }

    parsed = parse_assessment(json.dumps(payload), KNOWLEDGE)

    assert parsed.degraded is False
    assert parsed.output.smart_question is not None
    assert parsed.output.smart_question.question == NOT_APPLICABLE


def test_non_question_category_never_carries_smart_question() -> None:
    payload = {
        "status": "not_met",
        "reasoning": "No resources list.",
        "mapped_content": "",
        "unmapped_content": "Resource list",
        "recommendations": "Add one.",
        "smart_question": {"question": "ignored", "benchmark_answer": "ignored"},
    }

    parsed = parse_assessment(json.dumps(payload), ASSESSMENT_CONDITIONS[1])

    assert parsed.output.smart_question is None


def test_unparsable_and_empty_output_fall_back_to_not_met() -> None:
    unparsable = parse_assessment("The requirement appears to be met.", KNOWLEDGE)
    empty = parse_assessment("   ", KNOWLEDGE)

    assert unparsable.output.status == "not_met"
    assert unparsable.degraded is True
    assert unparsable.diagnostics == ["unparsable_response"]
    assert empty.diagnostics == ["empty_response"]
    assert empty.output.reasoning.startswith("No evidence returned")


def test_normalize_status() -> None:
    assert normalize_status("MET") == "met"
    assert normalize_status("partially-met") == "partially_met"
    assert normalize_status("maybe") is None
