from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
import logging
import threading
import time
from typing import Callable, TypeVar

from pydantic import BaseModel, Field

from validator import db
from validator.assessment import ParsedAssessment, fallback_assessment, parse_assessment
from validator.config import Settings
from validator.events import BeginValidation, Event, EventBus
from validator.grounding import Citation, CitationExtractor
from validator.metrics import QualityMetrics, QualityThresholds, compute_quality_metrics
from validator.observability import bind_session
from validator.prompts import PromptBuilder
from validator.requirements import Requirement, RequirementResolutionError, RequirementsResolver
from validator.retrieval import RetrievalQueryExecutor, RetrievalServiceError, RetrievalTimeoutError
from validator.sessions import SessionContext, SessionStore, SessionTransitionError
from validator.writer import RequirementOutcome, ResultWriter

logger = logging.getLogger("validator.pipeline")

T = TypeVar("T")


class WorkItem(BaseModel):
    position: int
    requirement: Requirement
    generation: int = 1


class ValidationPlan(BaseModel):
    context: SessionContext
    requirement_count: int
    work: list[WorkItem] = Field(default_factory=list)
    settled: list[RequirementOutcome] = Field(default_factory=list)


class PipelineReport(BaseModel):
    session_id: str
    status: str
    requirement_count: int = 0
    outcomes: list[RequirementOutcome] = Field(default_factory=list)
    error: str | None = None


class ValidationPipeline:
    """Resolve requirements, query each one, and settle the session.

    Requirement queries run on a bounded thread pool and always join before the session
    status is settled.
    """

    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        *,
        resolver: RequirementsResolver | None = None,
        prompt_builder: PromptBuilder | None = None,
        executor: RetrievalQueryExecutor | None = None,
        extractor: CitationExtractor | None = None,
        writer: ResultWriter | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._thresholds = QualityThresholds.from_settings(settings)
        self._resolver = resolver or RequirementsResolver()
        self._prompt_builder = prompt_builder or PromptBuilder()
        self._executor = executor or RetrievalQueryExecutor(settings)
        self._extractor = extractor or CitationExtractor()
        self._writer = writer or ResultWriter(store, self._thresholds)

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def writer(self) -> ResultWriter:
        return self._writer

    @property
    def resolver(self) -> RequirementsResolver:
        return self._resolver

    def session_metrics(self, session_id: str) -> QualityMetrics:
        """Session-wide metrics over every resolved requirement, answered or not."""
        context = self._store.context(session_id)
        requirements = self._resolver.resolve(context.unit, context.document_type)
        return self._writer.session_metrics(session_id, [requirement.key for requirement in requirements])

    def run(self, session_id: str) -> PipelineReport:
        """Validate every requirement of a ``validating`` session that has no current result yet.

        Requirements that already have a result are left alone, so an interrupted run resumes
        where it stopped.
        """
        with bind_session(session_id):
            session = self._store.get(session_id)
            if session["status"] != "validating":
                logger.info(
                    "pipeline_run_skipped",
                    extra={"event": "pipeline_run_skipped", "session_id": session_id, "status": session["status"]},
                )
                return PipelineReport(session_id=session_id, status=str(session["status"]))

            context = SessionContext.from_row(session)
            try:
                requirements = self._resolver.resolve(context.unit, context.document_type)
            except RequirementResolutionError as exc:
                self._writer.fail_session(session_id, str(exc))
                return PipelineReport(session_id=session_id, status=self._store.status(session_id), error=str(exc))

            plan = ValidationPlan(context=context, requirement_count=len(requirements))
            for position, requirement in enumerate(requirements):
                current = db.get_current_result(session_id, requirement.key)
                if current is None:
                    plan.work.append(WorkItem(position=position, requirement=requirement))
                else:
                    plan.settled.append(_settled(requirement, current))
            return self.execute(plan)

    def prepare_revalidation(self, session_id: str, requirement_keys: list[str] | None = None) -> ValidationPlan:
        """Plan a re-run of selected requirements (all when ``requirement_keys`` is None).

        Each selected requirement gets the next generation and its prior result is superseded
        once the new one lands. Moves the session back to ``validating``.
        """
        with bind_session(session_id):
            context = self._store.context(session_id)
            requirements = self._resolver.resolve(context.unit, context.document_type)

            known = {requirement.key for requirement in requirements}
            selected = set(requirement_keys) if requirement_keys is not None else known
            unknown = sorted(selected - known)
            if unknown:
                raise ValueError(f"Unknown requirement keys: {', '.join(unknown)}")

            self._store.require_transition(session_id, "validating", expected=("validated", "failed"))

            plan = ValidationPlan(context=context, requirement_count=len(requirements))
            for position, requirement in enumerate(requirements):
                current = db.get_current_result(session_id, requirement.key)
                if requirement.key in selected or current is None:
                    generation = int(current["generation"]) + 1 if current else 1  # type: ignore[call-overload]
                    plan.work.append(WorkItem(position=position, requirement=requirement, generation=generation))
                else:
                    plan.settled.append(_settled(requirement, current))
            logger.info(
                "revalidation_planned",
                extra={
                    "event": "revalidation_planned",
                    "session_id": session_id,
                    "requirement_keys": sorted(selected),
                },
            )
            return plan

    def revalidate(self, session_id: str, requirement_keys: list[str] | None = None) -> PipelineReport:
        return self.execute(self.prepare_revalidation(session_id, requirement_keys))

    def prepare_retry(self, session_id: str) -> None:
        """Make a session with pending requirements, or a failed one, runnable again."""
        session = self._store.get(session_id)
        if session["status"] == "failed":
            if any(operation["status"] == "failed" for operation in db.list_session_operations(session_id)):
                raise SessionTransitionError(
                    f"Session '{session_id}' failed during indexing; restart indexing instead of validation."
                )
            self._store.require_transition(session_id, "validating", expected=("failed",))
        elif not (session["status"] == "validating" and session.get("partial_failure")):
            raise SessionTransitionError(
                f"Session '{session_id}' has no pending requirements to retry (status '{session['status']}')."
            )

    def retry_pending(self, session_id: str) -> PipelineReport:
        self.prepare_retry(session_id)
        return self.run(session_id)

    def execute(self, plan: ValidationPlan) -> PipelineReport:
        context = plan.context
        started = time.perf_counter()
        outcomes = list(plan.settled)
        with bind_session(context.session_id):
            if plan.work:
                max_workers = max(1, min(self._settings.validation_max_concurrency, len(plan.work)))
                with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="requirement") as pool:
                    futures = [pool.submit(self._process_requirement, context, item) for item in plan.work]
                    # Leaving the block waits for in-flight queries, including after a cancellation.
                outcomes.extend(future.result() for future in futures)

            status = self._writer.finalize(context.session_id, outcomes)
            logger.info(
                "pipeline_run_completed",
                extra={
                    "event": "pipeline_run_completed",
                    "session_id": context.session_id,
                    "status": status,
                    "requirement_count": plan.requirement_count,
                    "processed": len(plan.work),
                    "pending": sum(1 for outcome in outcomes if not outcome.terminal),
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
        return PipelineReport(
            session_id=context.session_id,
            status=status,
            requirement_count=plan.requirement_count,
            outcomes=outcomes,
        )

    def _process_requirement(self, context: SessionContext, item: WorkItem) -> RequirementOutcome:
        requirement = item.requirement
        with bind_session(context.session_id):
            try:
                if self._store.is_cancelled(context.session_id):
                    return RequirementOutcome(requirement_key=requirement.key, state="discarded")

                parsed, citations = self._assess(context, requirement)
                metrics = compute_quality_metrics([citations], self._thresholds)
                row, _ = self._writer.persist(
                    context,
                    requirement,
                    parsed,
                    citations,
                    metrics,
                    generation=item.generation,
                    position=item.position,
                )
            except RetrievalServiceError as exc:
                logger.error(
                    "requirement_retrieval_failed",
                    extra={
                        "event": "requirement_retrieval_failed",
                        "session_id": context.session_id,
                        "requirement_key": requirement.key,
                        "error": str(exc),
                    },
                )
                return RequirementOutcome(requirement_key=requirement.key, state="pending_retry", error=str(exc))
            except Exception as exc:
                logger.exception(
                    "requirement_processing_failed",
                    extra={
                        "event": "requirement_processing_failed",
                        "session_id": context.session_id,
                        "requirement_key": requirement.key,
                    },
                )
                return RequirementOutcome(requirement_key=requirement.key, state="pending_retry", error=str(exc))

            if row is None:
                return RequirementOutcome(requirement_key=requirement.key, state="discarded")
            return RequirementOutcome(requirement_key=requirement.key, state="persisted", result_id=str(row["id"]))

    def _assess(self, context: SessionContext, requirement: Requirement) -> tuple[ParsedAssessment, list[Citation]]:
        prompt = self._prompt_builder.build(requirement, context)
        try:
            response = self._executor.query(prompt, context.store_name or context.namespace)
        except RetrievalTimeoutError as exc:
            parsed = fallback_assessment(
                f"Retrieval timed out after {exc.attempts} attempts; no evidence could be retrieved for "
                f"this requirement. Last error: {exc.last_error}",
                diagnostic="retrieval_timeout",
            )
            return parsed, []

        if response.malformed:
            parsed = fallback_assessment(
                "No evidence returned: the retrieval service response was malformed.",
                diagnostic="malformed_response: " + "; ".join(response.diagnostics),
            )
            return parsed, []
        return parse_assessment(response.text, requirement), self._extractor.extract(response)


def _settled(requirement: Requirement, current: dict[str, object]) -> RequirementOutcome:
    return RequirementOutcome(requirement_key=requirement.key, state="persisted", result_id=str(current["id"]))


class ValidationJobRunningError(RuntimeError):
    """Raised when a session already has a validation job in flight."""


class ValidationDispatcher:
    """Runs pipeline jobs in the background, at most one per session at a time.

    Begin-validation events start a plain ``run`` for the session. Finished jobs are
    forgotten, so ``future_for`` only reports work that is queued or running.
    """

    def __init__(self, pipeline: ValidationPipeline, bus: EventBus, *, max_workers: int = 2) -> None:
        self._pipeline = pipeline
        self._pool = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="validation")
        self._futures: dict[str, Future[PipelineReport]] = {}
        # Reentrant: prepare callbacks publish session events while the lock is held.
        self._lock = threading.RLock()
        self._unsubscribe = bus.subscribe("begin_validation", self._on_event)

    def _on_event(self, event: Event) -> None:
        if isinstance(event, BeginValidation):
            self.submit(event.session_id)

    def submit(
        self,
        session_id: str,
        job: Callable[[], PipelineReport] | None = None,
    ) -> Future[PipelineReport]:
        """Start ``job`` (a plain run by default) unless one is already active, which is returned."""
        with self._lock:
            existing = self._active(session_id)
            if existing is not None:
                return existing
            return self._start(session_id, job or (lambda: self._pipeline.run(session_id)))

    def submit_exclusive(
        self,
        session_id: str,
        prepare: Callable[[], T],
        job: Callable[[T], PipelineReport],
    ) -> tuple[T, Future[PipelineReport]]:
        """Run ``prepare`` and start ``job`` with its result, refusing if the session is busy.

        No other job for the session can start between the two steps. Errors raised by
        ``prepare`` propagate and nothing is started.
        """
        with self._lock:
            if self._active(session_id) is not None:
                raise ValidationJobRunningError(f"A validation run is already in progress for session '{session_id}'.")
            prepared = prepare()
            return prepared, self._start(session_id, lambda: job(prepared))

    def future_for(self, session_id: str) -> Future[PipelineReport] | None:
        with self._lock:
            return self._active(session_id)

    def shutdown(self, *, wait: bool = True) -> None:
        self._unsubscribe()
        self._pool.shutdown(wait=wait)

    def _active(self, session_id: str) -> Future[PipelineReport] | None:
        future = self._futures.get(session_id)
        return future if future is not None and not future.done() else None

    def _start(self, session_id: str, job: Callable[[], PipelineReport]) -> Future[PipelineReport]:
        future = self._pool.submit(job)
        self._futures[session_id] = future
        future.add_done_callback(lambda done, sid=session_id: self._on_done(sid, done))
        return future

    def _on_done(self, session_id: str, future: Future[PipelineReport]) -> None:
        with self._lock:
            if self._futures.get(session_id) is future:
                del self._futures[session_id]
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error(
                "pipeline_run_failed",
                extra={"event": "pipeline_run_failed", "session_id": session_id, "error": str(exc)},
            )
