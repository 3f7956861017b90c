from __future__ import annotations

import json
import logging
import random
import time
from typing import Any, Callable

import httpx
from pydantic import BaseModel, Field

from validator.config import Settings

logger = logging.getLogger("validator.retrieval")

STORE_PREFIX = "fileSearchStores/"
_RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


class RetrievalServiceError(RuntimeError):
    """Raised when the retrieval service rejects a request."""


class TransientRetrievalError(RetrievalServiceError):
    """Raised for failures worth retrying: timeouts, rate limits and server errors."""


class RetrievalTimeoutError(RetrievalServiceError):
    """Raised when a query keeps failing transiently after the final attempt."""

    def __init__(self, attempts: int, last_error: str) -> None:
        super().__init__(f"Retrieval query failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class RetrievalResponse(BaseModel):
    text: str | None = None
    grounding_metadata: dict[str, Any] = Field(default_factory=dict)
    attempts: int = 1
    malformed: bool = False
    diagnostics: list[str] = Field(default_factory=list)


def store_resource_name(namespace_or_store: str) -> str:
    value = namespace_or_store.strip()
    if not value:
        raise ValueError("Isolation namespace is required.")
    return value if value.startswith(STORE_PREFIX) else f"{STORE_PREFIX}{value}"


class FileSearchClient:
    """Thin synchronous client for the Gemini File Search REST API."""

    def __init__(self, settings: Settings, http_client: httpx.Client | None = None) -> None:
        self._settings = settings
        self._http = http_client or httpx.Client(timeout=settings.gemini_request_timeout_seconds)

    def close(self) -> None:
        self._http.close()

    def create_store(self, display_name: str) -> dict[str, Any]:
        response = self._request(
            "POST",
            f"{self._settings.gemini_api_base_url}/fileSearchStores",
            json={"displayName": display_name},
        )
        return self._json_object(response)

    def upload_to_store(
        self,
        store_name: str,
        *,
        file_name: str,
        content: bytes,
        mime_type: str,
    ) -> dict[str, Any]:
        metadata = {"displayName": file_name, "mimeType": mime_type}
        response = self._request(
            "POST",
            f"{self._settings.gemini_upload_base_url}/{store_resource_name(store_name)}:uploadToFileSearchStore",
            headers={"X-Goog-Upload-Protocol": "multipart"},
            files={
                "metadata": (None, json.dumps(metadata), "application/json"),
                "file": (file_name, content, mime_type or "application/octet-stream"),
            },
        )
        return self._json_object(response)

    def get_operation(self, operation_name: str) -> dict[str, Any]:
        response = self._request("GET", f"{self._settings.gemini_api_base_url}/{operation_name}")
        return self._json_object(response)

    def generate_content(self, store_name: str, prompt: str) -> Any:
        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "tools": [{"file_search": {"file_search_store_names": [store_resource_name(store_name)]}}],
            "generationConfig": {
                "temperature": self._settings.gemini_temperature,
                "response_mime_type": "application/json",
            },
        }
        response = self._request(
            "POST",
            f"{self._settings.gemini_api_base_url}/models/{self._settings.gemini_model}:generateContent",
            json=body,
        )
        try:
            return response.json()
        except ValueError:
            return None

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if not self._settings.gemini_api_key:
            raise RetrievalServiceError("GEMINI_API_KEY is not configured.")
        headers = {"x-goog-api-key": self._settings.gemini_api_key, **kwargs.pop("headers", {})}
        try:
            response = self._http.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientRetrievalError(f"Request to retrieval service timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientRetrievalError(f"Transport error calling retrieval service: {exc}") from exc

        if response.status_code in _RETRYABLE_STATUS_CODES:
            raise TransientRetrievalError(f"Retrieval service returned HTTP {response.status_code}.")
        if response.status_code >= 400:
            raise RetrievalServiceError(
                f"Retrieval service returned HTTP {response.status_code}: {response.text[:300]}"
            )
        return response

    @staticmethod
    def _json_object(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise RetrievalServiceError("Retrieval service returned a non-JSON body.") from exc
        if not isinstance(payload, dict):
            raise RetrievalServiceError("Retrieval service returned a non-object JSON body.")
        return payload


class RetrievalQueryExecutor:
    """Runs one grounded query against a session's dedicated file search store.

    Transient failures are retried with capped exponential backoff plus jitter. Responses
    without usable candidates are returned as ``malformed`` zero-evidence responses.
    """

    def __init__(
        self,
        settings: Settings,
        client: FileSearchClient | Any | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self._settings = settings
        self._client = client or FileSearchClient(settings)
        self._sleep = sleep
        self._jitter = jitter

    @property
    def client(self) -> FileSearchClient | Any:
        return self._client

    def backoff_seconds(self, attempt: int) -> float:
        base = self._settings.retrieval_backoff_base_seconds
        delay = base * (2 ** (attempt - 1)) + self._jitter(0.0, base)
        return min(delay, self._settings.retrieval_backoff_max_seconds)

    def query(self, prompt_text: str, isolation_namespace: str) -> RetrievalResponse:
        store_name = store_resource_name(isolation_namespace)
        max_attempts = max(1, self._settings.retrieval_max_attempts)
        last_error = ""

        for attempt in range(1, max_attempts + 1):
            started = time.perf_counter()
            try:
                raw = self._client.generate_content(store_name, prompt_text)
            except TransientRetrievalError as exc:
                last_error = str(exc)
                logger.warning(
                    "retrieval_query_retry",
                    extra={
                        "event": "retrieval_query_retry",
                        "store_name": store_name,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "error": last_error,
                    },
                )
                if attempt < max_attempts:
                    self._sleep(self.backoff_seconds(attempt))
                continue

            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            parsed = self.parse_response(raw)
            parsed.attempts = attempt
            logger.info(
                "retrieval_query_completed",
                extra={
                    "event": "retrieval_query_completed",
                    "store_name": store_name,
                    "attempt": attempt,
                    "duration_ms": duration_ms,
                    "prompt_chars": len(prompt_text),
                    "response_chars": len(parsed.text or ""),
                    "malformed": parsed.malformed,
                },
            )
            return parsed

        logger.error(
            "retrieval_query_exhausted",
            extra={
                "event": "retrieval_query_exhausted",
                "store_name": store_name,
                "attempts": max_attempts,
                "error": last_error,
            },
        )
        raise RetrievalTimeoutError(max_attempts, last_error)

    @staticmethod
    def parse_response(raw: Any) -> RetrievalResponse:
        if not isinstance(raw, dict):
            return RetrievalResponse(malformed=True, diagnostics=["response body is not a JSON object"])

        candidates = raw.get("candidates")
        if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
            return RetrievalResponse(malformed=True, diagnostics=["response has no candidates"])

        candidate = candidates[0]
        content = candidate.get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        texts: list[str] = []
        if isinstance(parts, list):
            for part in parts:
                if isinstance(part, dict) and isinstance(part.get("text"), str) and part["text"].strip():
                    texts.append(part["text"])

        grounding = candidate.get("groundingMetadata")
        if not isinstance(grounding, dict):
            grounding = {}

        if not texts:
            reason = candidate.get("finishReason")
            diagnostic = "candidate has no text parts"
            if reason:
                diagnostic += f" (finishReason={reason})"
            return RetrievalResponse(grounding_metadata=grounding, malformed=True, diagnostics=[diagnostic])

        return RetrievalResponse(text="\n".join(texts).strip(), grounding_metadata=grounding)
