import json
import logging
from uuid import UUID

from fastapi.testclient import TestClient

from validator.main import app
from validator.observability import ContextFilter, JsonFormatter, bind_session, sanitize_for_logging


def test_health_endpoint(isolated_db) -> None:
    with TestClient(app) as client:
        response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_ready_endpoint_checks_database_and_storage(isolated_db) -> None:
    with TestClient(app) as client:
        response = client.get("/ready")
    assert response.status_code == 200
    checks = response.json()["checks"]
    assert checks["db"]["ok"] is True
    assert checks["storage"] == {"ok": True, "backend": "local"}


def test_request_id_header_is_generated_when_missing(isolated_db) -> None:
    with TestClient(app) as client:
        response = client.get("/health")
    request_id = response.headers.get("X-Request-ID")
    assert request_id is not None
    UUID(request_id)


def test_request_id_header_is_preserved_when_provided(isolated_db) -> None:
    with TestClient(app) as client:
        response = client.get("/health", headers={"X-Request-ID": "demo-request-123"})
    assert response.headers.get("X-Request-ID") == "demo-request-123"


def test_request_started_log_redacts_sensitive_query_values(isolated_db, caplog) -> None:
    with TestClient(app) as client:
        with caplog.at_level(logging.INFO, logger="validator.api"):
            response = client.get("/health?key=AIzaSyExample&email=user@example.org&unit_code=BSBWHS311")
    assert response.status_code == 200

    started = [record for record in caplog.records if getattr(record, "event", None) == "request_started"]
    assert started
    query = started[-1].query
    assert query["key"] == "[REDACTED]"
    assert query["email"] == "[REDACTED]"
    assert query["unit_code"] == "BSBWHS311"


def test_sanitize_for_logging_redacts_api_keys_in_text() -> None:
    google_key = "AIza" + "A" * 35
    payload = {
        "url": "https://generativelanguage.googleapis.com/v1beta/models/m:generateContent?key=secret123&alt=json",
        "notes": f"configured with {google_key}, contact ops@example.org, Bearer abc.def",
        "x-goog-api-key": "plain-value",
    }

    sanitized = sanitize_for_logging(payload)

    assert "secret123" not in sanitized["url"]
    assert "key=[REDACTED]&alt=json" in sanitized["url"]
    assert google_key not in sanitized["notes"]
    assert "[REDACTED_API_KEY]" in sanitized["notes"]
    assert "[REDACTED_EMAIL]" in sanitized["notes"]
    assert "Bearer [REDACTED]" in sanitized["notes"]
    assert sanitized["x-goog-api-key"] == "[REDACTED]"


def test_json_formatter_includes_bound_session_id() -> None:
    record = logging.LogRecord("validator.pipeline", logging.INFO, __file__, 1, "pipeline_run_completed", None, None)
    record.event = "pipeline_run_completed"
    record.api_key = "should-not-leak"

    with bind_session("session-42"):
        ContextFilter().filter(record)
    payload = json.loads(JsonFormatter().format(record))

    assert payload["session_id"] == "session-42"
    assert payload["event"] == "pipeline_run_completed"
    assert payload["api_key"] == "[REDACTED]"
