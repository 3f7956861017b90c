from __future__ import annotations

from pathlib import Path

from fastapi import APIRouter, BackgroundTasks, File, HTTPException, Query, UploadFile

from validator.api.contracts import RevalidateRequest, SessionCreateRequest
from validator.api.services.runtime import (
    ServicesGetter,
    require_session,
    serialize_document_for_api,
    serialize_operation_for_api,
    serialize_result_for_api,
    serialize_session_for_api,
)
from validator.db import list_results, list_session_documents, list_session_events, list_session_operations
from validator.indexing import IndexingError
from validator.pipeline import ValidationJobRunningError
from validator.requirements import RequirementResolutionError, UnitReference, normalize_document_type
from validator.sessions import SessionTransitionError
from validator.storage import StorageError


def build_sessions_router(*, get_services: ServicesGetter) -> APIRouter:
    router = APIRouter()

    @router.post("/sessions", status_code=201)
    def create_session_endpoint(payload: SessionCreateRequest) -> dict[str, object]:
        try:
            document_type = normalize_document_type(payload.document_type)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        unit = UnitReference(code=payload.unit_code, url=payload.unit_url, title=payload.unit_title)
        session = get_services().store.create(unit, document_type)
        return serialize_session_for_api(session)

    @router.get("/sessions/{session_id}")
    def get_session_endpoint(session_id: str) -> dict[str, object]:
        session = require_session(get_services(), session_id)
        return {
            **serialize_session_for_api(session),
            "documents": [serialize_document_for_api(document) for document in list_session_documents(session_id)],
            "indexing_operations": [
                serialize_operation_for_api(operation) for operation in list_session_operations(session_id)
            ],
        }

    @router.post("/sessions/{session_id}/documents", status_code=201)
    async def upload_documents(session_id: str, files: list[UploadFile] = File(...)) -> dict[str, object]:
        services = get_services()
        require_session(services, session_id)
        settings = services.settings

        if len(files) > settings.max_upload_files:
            raise HTTPException(
                status_code=413,
                detail=f"Too many files in one upload (max {settings.max_upload_files}).",
            )

        buffered: list[tuple[str, str, bytes]] = []
        for upload in files:
            safe_name = Path(upload.filename or "upload.bin").name or "upload.bin"
            content = await upload.read(settings.max_upload_file_bytes + 1)
            if len(content) > settings.max_upload_file_bytes:
                raise HTTPException(
                    status_code=413,
                    detail=f"File '{safe_name}' exceeds max size of {settings.max_upload_file_bytes} bytes.",
                )
            if not content:
                raise HTTPException(status_code=422, detail=f"File '{safe_name}' is empty.")
            buffered.append((safe_name, upload.content_type or "application/octet-stream", content))

        saved: list[dict[str, object]] = []
        for safe_name, content_type, content in buffered:
            try:
                document = services.indexing.register_document(
                    session_id,
                    file_name=safe_name,
                    content_type=content_type,
                    content=content,
                )
            except SessionTransitionError as exc:
                raise HTTPException(status_code=409, detail=str(exc)) from exc
            except StorageError as exc:
                raise HTTPException(status_code=500, detail=str(exc)) from exc
            saved.append(serialize_document_for_api(document))
        return {"session_id": session_id, "documents": saved}

    @router.post("/sessions/{session_id}/indexing", status_code=202)
    def start_indexing(session_id: str, background_tasks: BackgroundTasks) -> dict[str, object]:
        services = get_services()
        require_session(services, session_id)
        try:
            operations = services.indexing.start_indexing(session_id)
        except SessionTransitionError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except IndexingError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

        if any(operation["status"] == "running" for operation in operations):
            background_tasks.add_task(services.indexing.poll_session, session_id)
        session = services.store.get(session_id)
        return {
            "session_id": session_id,
            "status": session["status"],
            "indexing_operations": [serialize_operation_for_api(operation) for operation in operations],
        }

    @router.get("/sessions/{session_id}/results")
    def get_results(
        session_id: str,
        include_superseded: bool = Query(default=False),
    ) -> dict[str, object]:
        session = require_session(get_services(), session_id)
        results = list_results(session_id, include_superseded=include_superseded)
        return {
            "session_id": session_id,
            "status": session["status"],
            "results": [serialize_result_for_api(result) for result in results],
        }

    @router.get("/sessions/{session_id}/metrics")
    def get_metrics(session_id: str) -> dict[str, object]:
        services = get_services()
        session = require_session(services, session_id)
        try:
            metrics = services.pipeline.session_metrics(session_id)
        except RequirementResolutionError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"session_id": session_id, "status": session["status"], "metrics": metrics.model_dump()}

    @router.get("/sessions/{session_id}/events")
    def get_events(session_id: str, after: int = Query(default=0, ge=0)) -> dict[str, object]:
        require_session(get_services(), session_id)
        events = list_session_events(session_id, after_sequence=after)
        return {
            "session_id": session_id,
            "events": [
                {
                    "sequence_no": event["sequence_no"],
                    "event_type": event["event_type"],
                    "payload": event["payload"],
                    "created_at": event["created_at"],
                }
                for event in events
            ],
        }

    @router.post("/sessions/{session_id}/cancel")
    def cancel_session(session_id: str) -> dict[str, object]:
        services = get_services()
        session = require_session(services, session_id)
        if not services.store.cancel(session_id):
            raise HTTPException(
                status_code=409,
                detail=f"Session cannot be cancelled from status '{services.store.status(session_id)}'.",
            )
        return {"session_id": session_id, "previous_status": session["status"], "status": "cancelled"}

    @router.post("/sessions/{session_id}/retry", status_code=202)
    def retry_session(session_id: str) -> dict[str, object]:
        services = get_services()
        require_session(services, session_id)
        try:
            services.dispatcher.submit_exclusive(
                session_id,
                lambda: services.pipeline.prepare_retry(session_id),
                lambda _: services.pipeline.run(session_id),
            )
        except (SessionTransitionError, ValidationJobRunningError) as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {"session_id": session_id, "status": services.store.status(session_id)}

    @router.post("/sessions/{session_id}/revalidate", status_code=202)
    def revalidate_session(session_id: str, payload: RevalidateRequest | None = None) -> dict[str, object]:
        services = get_services()
        require_session(services, session_id)
        requirement_keys = payload.requirement_keys if payload else None
        try:
            plan, _ = services.dispatcher.submit_exclusive(
                session_id,
                lambda: services.pipeline.prepare_revalidation(session_id, requirement_keys),
                services.pipeline.execute,
            )
        except (SessionTransitionError, ValidationJobRunningError) as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except RequirementResolutionError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return {
            "session_id": session_id,
            "status": services.store.status(session_id),
            "requirement_keys": [item.requirement.key for item in plan.work],
        }

    return router
