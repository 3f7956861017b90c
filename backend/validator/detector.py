from __future__ import annotations

import logging
from typing import Literal, get_args

from validator import db
from validator.events import BeginValidation
from validator.sessions import SessionStore

logger = logging.getLogger("validator.detector")


OperationStatus = Literal["pending", "running", "completed", "failed"]
DetectionOutcome = Literal["waiting", "validation_started", "session_failed", "no_op"]

_DOCUMENT_STATUS_BY_OPERATION = {
    "pending": "indexing",
    "running": "indexing",
    "completed": "indexed",
    "failed": "failed",
}


class IndexingOperationNotFoundError(LookupError):
    """Raised when a status notification names an unknown indexing operation."""


class IndexingCompletionDetector:
    """Decides, once per session, when every document has finished indexing.

    Notifications may arrive more than once and from several threads. Only the caller whose
    compare-and-set moves the session from ``indexing`` to ``validating`` publishes the
    :class:`BeginValidation` event; every other caller observes a no-op.
    """

    def __init__(self, store: SessionStore) -> None:
        self._store = store

    def on_operation_status_changed(
        self,
        operation_id: str,
        new_status: str,
        *,
        error: str | None = None,
    ) -> DetectionOutcome:
        if new_status not in get_args(OperationStatus):
            raise ValueError(f"Unsupported indexing operation status '{new_status}'.")

        operation = db.get_indexing_operation(operation_id)
        if operation is None:
            raise IndexingOperationNotFoundError(f"Indexing operation '{operation_id}' not found.")

        recorded = db.update_indexing_operation_status(operation_id, new_status, error=error)
        if recorded:
            db.update_document_indexing(str(operation["document_id"]), _DOCUMENT_STATUS_BY_OPERATION[new_status])
        else:
            logger.info(
                "indexing_status_ignored",
                extra={
                    "event": "indexing_status_ignored",
                    "operation_id": operation_id,
                    "current_status": operation["status"],
                    "new_status": new_status,
                },
            )
        return self.evaluate_session(str(operation["session_id"]))

    def evaluate_session(self, session_id: str) -> DetectionOutcome:
        operations = db.list_session_operations(session_id)
        if not operations:
            return "waiting"

        failed = [operation for operation in operations if operation["status"] == "failed"]
        if failed:
            first = failed[0]
            cause = str(first.get("error") or "unknown error")
            message = f"Indexing failed for document '{first['file_name']}' ({first['document_id']}): {cause}"
            if self._store.fail(session_id, message):
                logger.warning(
                    "session_indexing_failed",
                    extra={
                        "event": "session_indexing_failed",
                        "session_id": session_id,
                        "document_id": first["document_id"],
                        "operation_id": first["id"],
                    },
                )
                return "session_failed"
            return "no_op"

        if any(operation["status"] != "completed" for operation in operations):
            return "waiting"

        if not self._store.transition(session_id, "validating", expected=("indexing",)):
            return "no_op"

        db.append_session_event(session_id, "begin_validation", {"operation_count": len(operations)})
        logger.info(
            "validation_begin_emitted",
            extra={"event": "validation_begin_emitted", "session_id": session_id, "operation_count": len(operations)},
        )
        self._store.bus.publish(BeginValidation(session_id=session_id))
        return "validation_started"
