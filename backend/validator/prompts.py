from __future__ import annotations

from validator.requirements import CATEGORY_LABELS, Requirement
from validator.sessions import SessionContext


_INTRO = {
    "unit_assessment": (
        "You are an expert RTO (Registered Training Organisation) validator. You are reviewing an "
        "assessment tool for a unit of competency."
    ),
    "learner_guide": (
        "You are an expert RTO (Registered Training Organisation) validator. You are reviewing a "
        "learner guide (training material) for a unit of competency."
    ),
}

_TASKS: dict[str, dict[str, str]] = {
    "knowledge_evidence": {
        "unit_assessment": (
            "Find assessment questions that directly assess this knowledge evidence requirement. "
            "Quote the question numbers and text you map to it."
        ),
        "learner_guide": (
            "Find content that teaches or explains this knowledge evidence requirement well enough for a "
            "learner to answer questions about it."
        ),
    },
    "performance_evidence": {
        "unit_assessment": (
            "Find practical tasks, observations or projects that require the candidate to demonstrate this "
            "performance evidence requirement, including the required number of occasions where stated."
        ),
        "learner_guide": (
            "Find content, worked examples or practice activities that prepare a learner to perform this "
            "performance evidence requirement."
        ),
    },
    "foundation_skills": {
        "unit_assessment": (
            "Find tasks or questions in which the candidate must apply this foundation skill (reading, writing, "
            "oral communication, numeracy, learning, problem solving, technology) in context."
        ),
        "learner_guide": (
            "Find content that develops or explains how this foundation skill is applied in the workplace."
        ),
    },
    "elements_criteria": {
        "unit_assessment": (
            "Find assessment tasks that cover this performance criterion within its element. Check that the "
            "task evidence would show the criterion being met, not just mentioned."
        ),
        "learner_guide": (
            "Find content that explains how to carry out this performance criterion within its element."
        ),
    },
    "assessment_conditions": {
        "unit_assessment": (
            "Check whether the assessment documents state this assessment condition clearly enough for an "
            "assessor to apply it."
        ),
        "learner_guide": (
            "Check whether the learner guide informs learners about this assessment condition."
        ),
    },
    "assessment_instructions": {
        "unit_assessment": (
            "Check whether the candidate and assessor instructions satisfy this instruction area."
        ),
        "learner_guide": (
            "Check whether the learner guide gives learners guidance that satisfies this instruction area."
        ),
    },
}

_STATUS_GUIDE = (
    "Assign exactly one status:\n"
    "- met: the requirement is fully addressed by the documents\n"
    "- partially_met: some evidence exists but gaps remain\n"
    "- not_met: no adequate evidence was found"
)


def _requirement_block(requirement: Requirement) -> str:
    label = CATEGORY_LABELS[requirement.category]
    lines = [f"Category: {label}", f"Requirement {requirement.number}: {requirement.text}"]
    if requirement.element_text:
        lines.insert(1, f"Element: {requirement.element_text}")
    return "\n".join(lines)


def _output_contract(requirement: Requirement) -> str:
    fields = [
        '  "status": "met" | "partially_met" | "not_met"',
        '  "reasoning": string explaining the decision with document names and page numbers',
        '  "mapped_content": string quoting or describing the evidence that addresses the requirement',
        '  "unmapped_content": string describing what is missing, or "" when nothing is missing',
        '  "citations": array of {"document": string, "pages": [int], "excerpt": string}',
        '  "recommendations": string with specific changes to close any gap, or "" when met',
    ]
    if requirement.wants_question:
        fields.append(
            '  "smart_question": {"question": string, "benchmark_answer": string} '
            "(a new question or task that would fully address the requirement, with the expected "
            'learner response; use "N/A" for both when status is met)'
        )
    return "Return a single JSON object and nothing else, with exactly these keys:\n{\n" + ",\n".join(fields) + "\n}"


class PromptBuilder:
    """Renders the instruction text sent to the retrieval model for one requirement."""

    def build(self, requirement: Requirement, session: SessionContext) -> str:
        unit = session.unit
        unit_line = f"Unit of competency: {unit.code}"
        if unit.title:
            unit_line += f" - {unit.title}"

        sections = [
            _INTRO[session.document_type],
            unit_line,
            "Requirement (verbatim):\n" + _requirement_block(requirement),
            "Task:\n" + _TASKS[requirement.category][session.document_type],
            (
                "Evidence scope:\n"
                f"Use only documents retrieved from the file search store for session namespace "
                f"'{session.namespace}'. Do not use general knowledge or any other source as evidence. "
                "If the documents do not contain evidence, say so and set status to not_met."
            ),
            _STATUS_GUIDE,
            _output_contract(requirement),
        ]
        return "\n\n".join(sections)


def build_prompt(requirement: Requirement, session: SessionContext) -> str:
    return PromptBuilder().build(requirement, session)
