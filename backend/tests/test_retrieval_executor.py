import json

import httpx
import pytest

from validator.config import Settings
from validator.retrieval import (
    FileSearchClient,
    RetrievalQueryExecutor,
    RetrievalServiceError,
    RetrievalTimeoutError,
    TransientRetrievalError,
)


def _settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "gemini_api_key": "test-key",
        "retrieval_max_attempts": 3,
        "retrieval_backoff_base_seconds": 1.0,
        "retrieval_backoff_max_seconds": 30.0,
    }
    values.update(overrides)
    return Settings(**values)  # type: ignore[arg-type]


def _candidate_payload(text: str) -> dict[str, object]:
    return {
        "candidates": [
            {
                "content": {"parts": [{"text": text}]},
                "groundingMetadata": {
                    "groundingChunks": [
                        {"fileSearchChunk": {"documentName": "Assessment.pdf", "pageNumbers": [2], "chunkText": "Q2"}}
                    ],
                    "groundingSupports": [{"groundingChunkIndices": [0], "confidenceScores": [0.9]}],
                },
            }
        ]
    }


class FakeGenerateClient:
    def __init__(self, outcomes: list[object]) -> None:
        self.outcomes = outcomes
        self.calls: list[tuple[str, str]] = []

    def generate_content(self, store_name: str, prompt: str) -> object:
        self.calls.append((store_name, prompt))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def test_query_retries_transient_errors_with_capped_backoff() -> None:
    sleeps: list[float] = []
    client = FakeGenerateClient(
        [
            TransientRetrievalError("HTTP 503"),
            TransientRetrievalError("HTTP 429"),
            _candidate_payload('{"status": "met"}'),
        ]
    )
    executor = RetrievalQueryExecutor(_settings(), client, sleep=sleeps.append, jitter=lambda low, high: 0.0)

    response = executor.query("prompt", "session-abc")

    assert response.attempts == 3
    assert response.malformed is False
    assert response.text == '{"status": "met"}'
    assert sleeps == [1.0, 2.0]
    assert client.calls[0][0] == "fileSearchStores/session-abc"


def test_query_raises_timeout_after_exhausting_attempts() -> None:
    sleeps: list[float] = []
    client = FakeGenerateClient([TransientRetrievalError("timed out")] * 3)
    executor = RetrievalQueryExecutor(_settings(), client, sleep=sleeps.append, jitter=lambda low, high: 0.0)

    with pytest.raises(RetrievalTimeoutError) as excinfo:
        executor.query("prompt", "fileSearchStores/session-abc")

    assert excinfo.value.attempts == 3
    assert "timed out" in excinfo.value.last_error
    assert len(sleeps) == 2
    assert client.calls[0][0] == "fileSearchStores/session-abc"


def test_backoff_is_capped() -> None:
    executor = RetrievalQueryExecutor(
        _settings(retrieval_backoff_max_seconds=5.0),
        FakeGenerateClient([]),
        jitter=lambda low, high: high,
    )

    assert executor.backoff_seconds(1) == 2.0
    assert executor.backoff_seconds(4) == 5.0


def test_non_transient_errors_are_not_retried() -> None:
    client = FakeGenerateClient([RetrievalServiceError("HTTP 400")])
    executor = RetrievalQueryExecutor(_settings(), client, sleep=lambda _: None)

    with pytest.raises(RetrievalServiceError):
        executor.query("prompt", "session-abc")
    assert len(client.calls) == 1


@pytest.mark.parametrize(
    "raw",
    [
        None,
        {"candidates": []},
        {"candidates": [{"content": {"parts": []}, "finishReason": "SAFETY"}]},
    ],
)
def test_malformed_responses_become_zero_evidence(raw: object) -> None:
    response = RetrievalQueryExecutor.parse_response(raw)

    assert response.malformed is True
    assert response.text is None
    assert response.diagnostics


def test_file_search_client_maps_http_errors() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path.endswith(":generateContent"):
            body = json.loads(request.content)
            assert body["tools"][0]["file_search"]["file_search_store_names"] == ["fileSearchStores/s1"]
            return httpx.Response(503, json={"error": {"message": "overloaded"}})
        return httpx.Response(404, json={"error": {"message": "missing"}})

    client = FileSearchClient(_settings(), httpx.Client(transport=httpx.MockTransport(handler)))

    with pytest.raises(TransientRetrievalError):
        client.generate_content("s1", "prompt")
    with pytest.raises(RetrievalServiceError) as excinfo:
        client.get_operation("operations/op-1")

    assert not isinstance(excinfo.value, TransientRetrievalError)
    assert seen[0].headers["x-goog-api-key"] == "test-key"
    assert "key=" not in str(seen[0].url)


def test_file_search_client_requires_api_key() -> None:
    client = FileSearchClient(_settings(gemini_api_key=""), httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200))))

    with pytest.raises(RetrievalServiceError):
        client.create_store("session-abc")


def test_file_search_client_returns_generate_payload() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_candidate_payload("{}"))

    client = FileSearchClient(_settings(), httpx.Client(transport=httpx.MockTransport(handler)))
    executor = RetrievalQueryExecutor(_settings(), client, sleep=lambda _: None)

    response = executor.query("prompt", "session-abc")

    assert response.text == "{}"
    assert response.grounding_metadata["groundingChunks"][0]["fileSearchChunk"]["documentName"] == "Assessment.pdf"
