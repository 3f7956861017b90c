from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from fastapi import HTTPException

from validator.config import Settings
from validator.detector import IndexingCompletionDetector
from validator.events import EventBus
from validator.indexing import IndexingService
from validator.pipeline import ValidationDispatcher, ValidationPipeline
from validator.requirements import RequirementsResolver
from validator.retrieval import FileSearchClient, RetrievalQueryExecutor
from validator.sessions import SessionNotFoundError, SessionStore

logger = logging.getLogger("validator.api")


@dataclass
class ValidatorServices:
    settings: Settings
    bus: EventBus
    store: SessionStore
    detector: IndexingCompletionDetector
    resolver: RequirementsResolver
    pipeline: ValidationPipeline
    dispatcher: ValidationDispatcher
    indexing: IndexingService

    def close(self, *, wait: bool = True) -> None:
        self.dispatcher.shutdown(wait=wait)


ServicesGetter = Callable[[], ValidatorServices]


def build_services(
    settings: Settings,
    *,
    file_search_client: FileSearchClient | Any | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ValidatorServices:
    """Wire the session store, detector, pipeline and indexing service around one event bus."""
    client = file_search_client or FileSearchClient(settings)
    bus = EventBus()
    store = SessionStore(bus)
    detector = IndexingCompletionDetector(store)
    resolver = RequirementsResolver()
    pipeline = ValidationPipeline(
        settings,
        store,
        resolver=resolver,
        executor=RetrievalQueryExecutor(settings, client, sleep=sleep),
    )
    dispatcher = ValidationDispatcher(pipeline, bus, max_workers=settings.validation_dispatch_workers)
    indexing = IndexingService(settings, store, detector, client, sleep=sleep)
    logger.info(
        "services_built",
        extra={
            "event": "services_built",
            "model": settings.gemini_model,
            "max_concurrency": settings.validation_max_concurrency,
        },
    )
    return ValidatorServices(
        settings=settings,
        bus=bus,
        store=store,
        detector=detector,
        resolver=resolver,
        pipeline=pipeline,
        dispatcher=dispatcher,
        indexing=indexing,
    )


def require_session(services: ValidatorServices, session_id: str) -> dict[str, object]:
    try:
        return services.store.get(session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Session not found") from exc


def serialize_session_for_api(session: Mapping[str, object]) -> dict[str, object]:
    return {
        "id": str(session.get("id", "")),
        "unit_code": str(session.get("unit_code", "")),
        "unit_url": session.get("unit_url"),
        "unit_title": session.get("unit_title"),
        "document_type": str(session.get("document_type", "")),
        "namespace": str(session.get("namespace", "")),
        "status": str(session.get("status", "")),
        "error": session.get("error"),
        "partial_failure": bool(session.get("partial_failure")),
        "quality_metrics": session.get("quality_metrics"),
        "created_at": str(session.get("created_at", "")),
        "updated_at": str(session.get("updated_at", "")),
    }


def serialize_document_for_api(document: Mapping[str, object]) -> dict[str, object]:
    return {
        "id": str(document.get("id", "")),
        "session_id": str(document.get("session_id", "")),
        "file_name": str(document.get("file_name", "")),
        "content_type": str(document.get("content_type", "")),
        "indexing_status": str(document.get("indexing_status", "")),
        "created_at": str(document.get("created_at", "")),
    }


def serialize_operation_for_api(operation: Mapping[str, object]) -> dict[str, object]:
    return {
        "id": str(operation.get("id", "")),
        "document_id": str(operation.get("document_id", "")),
        "file_name": operation.get("file_name"),
        "status": str(operation.get("status", "")),
        "error": operation.get("error"),
        "updated_at": str(operation.get("updated_at", "")),
    }


def serialize_result_for_api(result: Mapping[str, object]) -> dict[str, object]:
    return {
        "id": str(result.get("id", "")),
        "requirement_key": str(result.get("requirement_key", "")),
        "category": str(result.get("category", "")),
        "generation": int(result.get("generation", 1) or 1),  # type: ignore[call-overload]
        "status": str(result.get("status", "")),
        "reasoning": str(result.get("reasoning", "")),
        "mapped_content": str(result.get("mapped_content", "")),
        "unmapped_content": str(result.get("unmapped_content", "")),
        "recommendations": str(result.get("recommendations", "")),
        "smart_question": result.get("smart_question"),
        "citations": result.get("citations") or [],
        "metrics": result.get("metrics"),
        "degraded": bool(result.get("degraded")),
        "diagnostics": result.get("diagnostics") or [],
        "supersedes": result.get("supersedes"),
        "superseded_by": result.get("superseded_by"),
        "created_at": str(result.get("created_at", "")),
    }
