from __future__ import annotations

import logging
import time
from typing import Any, Callable

from validator import db
from validator.config import Settings
from validator.detector import IndexingCompletionDetector
from validator.observability import bind_session
from validator.retrieval import FileSearchClient, RetrievalServiceError, TransientRetrievalError
from validator.sessions import SessionStore, SessionTransitionError
from validator.storage import StorageError, load_document_bytes, save_document_bytes

logger = logging.getLogger("validator.indexing")


class IndexingError(RuntimeError):
    """Raised when documents cannot be submitted for indexing."""


class IndexingService:
    """Submits session documents to the session's dedicated file search store and tracks the
    resulting long-running operations until they settle."""

    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        detector: IndexingCompletionDetector,
        client: FileSearchClient | Any | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings
        self._store = store
        self._detector = detector
        self._client = client or FileSearchClient(settings)
        self._sleep = sleep

    def register_document(
        self,
        session_id: str,
        *,
        file_name: str,
        content_type: str,
        content: bytes,
    ) -> dict[str, object]:
        status = self._store.status(session_id)
        if status not in {"pending", "failed"}:
            raise SessionTransitionError(f"Documents cannot be added to a session in status '{status}'.")
        storage_path = save_document_bytes(
            settings=self._settings,
            session_id=session_id,
            file_name=file_name,
            content_type=content_type,
            content=content,
        )
        document = db.create_document(
            session_id=session_id,
            file_name=file_name,
            content_type=content_type,
            storage_path=storage_path,
        )
        db.append_session_event(session_id, "document_registered", {"document_id": document["id"], "file_name": file_name})
        return document

    def ensure_session_store(self, session_id: str) -> str:
        session = self._store.get(session_id)
        existing = session.get("store_name")
        if existing:
            return str(existing)
        created = self._client.create_store(str(session["namespace"]))
        store_name = str(created.get("name") or "").strip()
        if not store_name:
            raise IndexingError("File search store creation returned no store name.")
        db.set_session_store_name(session_id, store_name)
        logger.info(
            "session_store_created",
            extra={"event": "session_store_created", "session_id": session_id, "store_name": store_name},
        )
        return store_name

    def start_indexing(self, session_id: str) -> list[dict[str, object]]:
        """Upload every unindexed document and move the session into ``indexing``.

        Also used to retry a session that failed during indexing; previously failed operations
        are reset and resubmitted.
        """
        with bind_session(session_id):
            documents = db.list_session_documents(session_id)
            if not documents:
                raise IndexingError(f"Session '{session_id}' has no documents to index.")

            self._store.require_transition(session_id, "indexing", expected=("pending", "failed"))
            db.reset_failed_operations(session_id)
            try:
                store_name = self.ensure_session_store(session_id)
            except (RetrievalServiceError, IndexingError) as exc:
                self._store.fail(session_id, f"Could not create file search store: {exc}")
                raise IndexingError(str(exc)) from exc

            for document in documents:
                if self._store.status(session_id) != "indexing":
                    break
                operation = db.get_indexing_operation_for_document(str(document["id"]))
                if operation is None:
                    operation = db.create_indexing_operation(session_id=session_id, document_id=str(document["id"]))
                if operation["status"] != "pending":
                    continue
                self._submit_document(document, operation, store_name)
            # Documents indexed by an earlier attempt may already cover the whole session.
            self._detector.evaluate_session(session_id)
            return db.list_session_operations(session_id)

    def _submit_document(self, document: dict[str, object], operation: dict[str, object], store_name: str) -> None:
        operation_id = str(operation["id"])
        try:
            content = load_document_bytes(settings=self._settings, storage_path=str(document["storage_path"]))
            response = self._client.upload_to_store(
                store_name,
                file_name=str(document["file_name"]),
                content=content,
                mime_type=str(document["content_type"]),
            )
        except (StorageError, RetrievalServiceError) as exc:
            logger.error(
                "document_upload_failed",
                extra={"event": "document_upload_failed", "document_id": document["id"], "error": str(exc)},
            )
            self._detector.on_operation_status_changed(operation_id, "failed", error=str(exc))
            return

        external_name = str(response.get("name") or "").strip() or None
        db.update_indexing_operation_status(operation_id, "running", external_name=external_name)
        db.update_document_indexing(str(document["id"]), "indexing", index_store_ref=store_name)
        logger.info(
            "document_upload_submitted",
            extra={
                "event": "document_upload_submitted",
                "document_id": document["id"],
                "operation_id": operation_id,
                "external_name": external_name,
            },
        )
        if response.get("done"):
            self._settle(operation_id, response)

    def poll_operation(self, operation_id: str) -> str:
        """Poll one operation a bounded number of times and report its final status."""
        operation = db.get_indexing_operation(operation_id)
        if operation is None:
            raise IndexingError(f"Indexing operation '{operation_id}' not found.")
        if operation["status"] in {"completed", "failed"}:
            return str(operation["status"])
        external_name = operation.get("external_name")
        if not external_name:
            self._detector.on_operation_status_changed(operation_id, "failed", error="Operation has no external name.")
            return "failed"

        max_polls = max(1, self._settings.indexing_poll_max_attempts)
        for poll in range(1, max_polls + 1):
            try:
                state = self._client.get_operation(str(external_name))
            except TransientRetrievalError as exc:
                logger.warning(
                    "indexing_poll_retry",
                    extra={"event": "indexing_poll_retry", "operation_id": operation_id, "poll": poll, "error": str(exc)},
                )
            except RetrievalServiceError as exc:
                self._detector.on_operation_status_changed(operation_id, "failed", error=str(exc))
                return "failed"
            else:
                if state.get("done"):
                    return self._settle(operation_id, state)
            if poll < max_polls:
                self._sleep(self._settings.indexing_poll_interval_seconds)

        error = f"Indexing did not complete after {max_polls} status checks."
        self._detector.on_operation_status_changed(operation_id, "failed", error=error)
        return "failed"

    def poll_session(self, session_id: str) -> dict[str, str]:
        with bind_session(session_id):
            results: dict[str, str] = {}
            for operation in db.list_session_operations(session_id):
                if operation["status"] == "running":
                    results[str(operation["id"])] = self.poll_operation(str(operation["id"]))
            return results

    def _settle(self, operation_id: str, state: dict[str, Any]) -> str:
        error = state.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            self._detector.on_operation_status_changed(operation_id, "failed", error=str(message or "indexing failed"))
            return "failed"
        self._detector.on_operation_status_changed(operation_id, "completed")
        return "completed"
