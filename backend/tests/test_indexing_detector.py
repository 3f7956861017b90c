from concurrent.futures import ThreadPoolExecutor

import pytest

from validator import db
from validator.detector import IndexingCompletionDetector, IndexingOperationNotFoundError
from validator.events import EventBus
from validator.requirements import UnitReference
from validator.sessions import SessionStore, SessionTransitionError


def _indexing_session(store: SessionStore, file_names: list[str]) -> tuple[str, list[str]]:
    session = store.create(UnitReference(code="BSBWHS311"), "unit_assessment")
    session_id = str(session["id"])
    operation_ids = []
    for file_name in file_names:
        document = db.create_document(
            session_id=session_id,
            file_name=file_name,
            content_type="application/pdf",
            storage_path=f"/tmp/{file_name}",
        )
        operation = db.create_indexing_operation(session_id=session_id, document_id=str(document["id"]), status="running")
        operation_ids.append(str(operation["id"]))
    store.require_transition(session_id, "indexing")
    return session_id, operation_ids


def _begin_events(bus: EventBus) -> list[str]:
    started: list[str] = []
    bus.subscribe("begin_validation", lambda event: started.append(event.session_id))
    return started


def test_duplicate_completed_notifications_start_validation_once(isolated_db) -> None:
    bus = EventBus()
    store = SessionStore(bus)
    detector = IndexingCompletionDetector(store)
    started = _begin_events(bus)
    session_id, (operation_id,) = _indexing_session(store, ["assessment.pdf"])

    first = detector.on_operation_status_changed(operation_id, "completed")
    second = detector.on_operation_status_changed(operation_id, "completed")

    assert first == "validation_started"
    assert second == "no_op"
    assert started == [session_id]
    assert store.status(session_id) == "validating"
    transitions = [
        event for event in db.list_session_events(session_id) if event["event_type"] == "status_changed"
    ]
    assert [event["payload"]["to"] for event in transitions] == ["indexing", "validating"]


def test_concurrent_completion_reports_produce_one_transition(isolated_db) -> None:
    bus = EventBus()
    store = SessionStore(bus)
    detector = IndexingCompletionDetector(store)
    started = _begin_events(bus)
    session_id, operation_ids = _indexing_session(store, ["a.pdf", "b.pdf", "c.pdf"])

    with ThreadPoolExecutor(max_workers=6) as pool:
        outcomes = list(
            pool.map(lambda op: detector.on_operation_status_changed(op, "completed"), operation_ids * 2)
        )

    assert outcomes.count("validation_started") == 1
    assert started == [session_id]


def test_waits_until_every_document_completes(isolated_db) -> None:
    store = SessionStore(EventBus())
    detector = IndexingCompletionDetector(store)
    session_id, (first, second) = _indexing_session(store, ["a.pdf", "b.pdf"])

    assert detector.on_operation_status_changed(first, "completed") == "waiting"
    assert store.status(session_id) == "indexing"
    assert detector.on_operation_status_changed(second, "completed") == "validation_started"


def test_failed_document_fails_session_and_names_it(isolated_db) -> None:
    bus = EventBus()
    store = SessionStore(bus)
    detector = IndexingCompletionDetector(store)
    started = _begin_events(bus)
    session_id, (ok_operation, bad_operation) = _indexing_session(store, ["guide.pdf", "broken.docx"])

    detector.on_operation_status_changed(ok_operation, "completed")
    outcome = detector.on_operation_status_changed(bad_operation, "failed", error="unsupported file")

    session = store.get(session_id)
    assert outcome == "session_failed"
    assert session["status"] == "failed"
    assert "broken.docx" in str(session["error"])
    assert "unsupported file" in str(session["error"])
    assert started == []


def test_terminal_operation_status_is_sticky(isolated_db) -> None:
    store = SessionStore(EventBus())
    detector = IndexingCompletionDetector(store)
    session_id, (first, second) = _indexing_session(store, ["a.pdf", "b.pdf"])

    detector.on_operation_status_changed(first, "completed")
    detector.on_operation_status_changed(first, "running")

    operation = db.get_indexing_operation(first)
    assert operation is not None
    assert operation["status"] == "completed"
    assert store.status(session_id) == "indexing"


def test_unknown_operation_and_status_are_rejected(isolated_db) -> None:
    store = SessionStore(EventBus())
    detector = IndexingCompletionDetector(store)
    _, (operation_id,) = _indexing_session(store, ["a.pdf"])

    with pytest.raises(IndexingOperationNotFoundError):
        detector.on_operation_status_changed("missing", "completed")
    with pytest.raises(ValueError):
        detector.on_operation_status_changed(operation_id, "done")


def test_session_store_rejects_illegal_transitions(isolated_db) -> None:
    store = SessionStore(EventBus())
    session = store.create(UnitReference(code="BSBWHS311"), "unit_assessment")
    session_id = str(session["id"])

    with pytest.raises(SessionTransitionError):
        store.require_transition(session_id, "validated")
    assert store.cancel(session_id) is True
    assert store.cancel(session_id) is False
    assert store.transition(session_id, "indexing") is False
    assert store.status(session_id) == "cancelled"
