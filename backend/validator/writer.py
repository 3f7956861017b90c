from __future__ import annotations

import logging
from typing import Iterable, Literal

from pydantic import BaseModel

from validator import db
from validator.assessment import ParsedAssessment
from validator.grounding import Citation
from validator.metrics import QualityMetrics, QualityThresholds, compute_quality_metrics
from validator.requirements import Requirement
from validator.sessions import SessionContext, SessionStore

logger = logging.getLogger("validator.writer")


OutcomeState = Literal["persisted", "pending_retry", "discarded"]


class RequirementOutcome(BaseModel):
    requirement_key: str
    state: OutcomeState
    result_id: str | None = None
    error: str | None = None

    @property
    def terminal(self) -> bool:
        return self.state == "persisted"


class ResultWriter:
    """Persists requirement results and settles the session once all requirements have joined."""

    def __init__(self, store: SessionStore, thresholds: QualityThresholds) -> None:
        self._store = store
        self._thresholds = thresholds

    def persist(
        self,
        session: SessionContext,
        requirement: Requirement,
        parsed: ParsedAssessment,
        citations: list[Citation],
        metrics: QualityMetrics,
        *,
        generation: int,
        position: int = 0,
    ) -> tuple[dict[str, object] | None, bool]:
        """Write one result row. Returns ``(None, False)`` if the session left ``validating``."""
        output = parsed.output
        row, created = db.insert_result_superseding(
            {
                "session_id": session.session_id,
                "requirement_key": requirement.key,
                "category": requirement.category,
                "position": position,
                "generation": generation,
                "status": output.status,
                "reasoning": output.reasoning,
                "mapped_content": output.mapped_content,
                "unmapped_content": output.unmapped_content,
                "recommendations": output.recommendations,
                "smart_question": output.smart_question.model_dump() if output.smart_question else None,
                "citations": [citation.model_dump() for citation in citations],
                "metrics": metrics.model_dump(),
                "degraded": parsed.degraded,
                "diagnostics": parsed.diagnostics,
            },
            require_session_status="validating",
        )
        if row is None:
            logger.info(
                "result_discarded",
                extra={
                    "event": "result_discarded",
                    "session_id": session.session_id,
                    "requirement_key": requirement.key,
                    "generation": generation,
                },
            )
            return None, False
        event = "result_persisted" if created else "result_persist_skipped"
        logger.info(
            event,
            extra={
                "event": event,
                "session_id": session.session_id,
                "requirement_key": requirement.key,
                "generation": generation,
                "result_id": row["id"],
                "status": row["status"],
                "degraded": parsed.degraded,
            },
        )
        return row, created

    def session_metrics(self, session_id: str, requirement_keys: Iterable[str] | None = None) -> QualityMetrics:
        """Aggregate metrics over the current results of a session.

        When ``requirement_keys`` is given, every listed requirement counts towards coverage and
        one without a current result contributes no citations.
        """
        citation_lists: dict[str, list[Citation]] = {key: [] for key in requirement_keys or ()}
        for row in db.list_results(session_id):
            citation_lists[str(row["requirement_key"])] = [
                Citation.model_validate(item) for item in row.get("citations") or []
            ]
        return compute_quality_metrics(citation_lists, self._thresholds)

    def finalize(self, session_id: str, outcomes: list[RequirementOutcome]) -> str:
        """Settle session status after every requirement has finished its attempt.

        ``validated`` when every requirement has a persisted result; otherwise the session stays
        ``validating`` with the partial-failure marker set so the pending requirements can be retried.
        """
        if self._store.is_cancelled(session_id):
            logger.info("session_finalize_skipped_cancelled", extra={"event": "session_finalize_skipped_cancelled"})
            return "cancelled"

        metrics = self.session_metrics(session_id, [outcome.requirement_key for outcome in outcomes])
        db.set_session_quality_metrics(session_id, metrics.model_dump())

        pending = [outcome.requirement_key for outcome in outcomes if not outcome.terminal]
        if pending:
            self._store.mark_partial_failure(session_id, True)
            logger.warning(
                "session_partially_validated",
                extra={
                    "event": "session_partially_validated",
                    "session_id": session_id,
                    "pending_requirements": pending,
                },
            )
            return self._store.status(session_id)

        if self._store.transition(session_id, "validated", expected=("validating",)):
            logger.info(
                "session_validated",
                extra={
                    "event": "session_validated",
                    "session_id": session_id,
                    "requirement_count": len(outcomes),
                    "citation_coverage": metrics.citation_coverage,
                    "average_confidence": metrics.average_confidence,
                },
            )
        return self._store.status(session_id)

    def fail_session(self, session_id: str, error: str) -> bool:
        """Category-level failure: the session fails and no requirement results are written."""
        return self._store.fail(session_id, error)
