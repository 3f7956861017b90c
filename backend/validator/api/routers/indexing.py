from __future__ import annotations

from fastapi import APIRouter, HTTPException

from validator.api.contracts import OperationStatusRequest
from validator.api.services.runtime import ServicesGetter, serialize_operation_for_api
from validator.db import get_indexing_operation
from validator.detector import IndexingOperationNotFoundError


def build_indexing_router(*, get_services: ServicesGetter) -> APIRouter:
    router = APIRouter()

    @router.post("/indexing-operations/{operation_id}/status")
    def notify_indexing_status(operation_id: str, payload: OperationStatusRequest) -> dict[str, object]:
        services = get_services()
        try:
            outcome = services.detector.on_operation_status_changed(
                operation_id,
                payload.status,
                error=payload.error,
            )
        except IndexingOperationNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Indexing operation not found") from exc

        operation = get_indexing_operation(operation_id)
        assert operation is not None
        return {
            "operation": serialize_operation_for_api(operation),
            "outcome": outcome,
            "session_status": services.store.status(str(operation["session_id"])),
        }

    return router
