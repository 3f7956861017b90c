from __future__ import annotations

import logging
from pathlib import Path
import time
from uuid import uuid4

from validator.config import Settings

logger = logging.getLogger("validator.storage")

_S3_SCHEME = "s3://"


class StorageError(RuntimeError):
    """Raised when document blob storage read/write fails."""


def normalize_backend(value: str) -> str:
    normalized = (value or "").strip().lower()
    if normalized in {"local", "filesystem", "fs"}:
        return "local"
    if normalized == "s3":
        return "s3"
    raise StorageError(f"Unsupported STORAGE_BACKEND '{value}'. Use 'local' or 's3'.")


def _split_s3_uri(uri: str) -> tuple[str, str]:
    bucket, _, key = uri.strip()[len(_S3_SCHEME):].partition("/")
    if not bucket.strip() or not key.strip():
        raise StorageError(f"Invalid S3 URI: '{uri}' (expected s3://<bucket>/<key>)")
    return bucket.strip(), key.strip()


def _s3_key(settings: Settings, *parts: str) -> str:
    prefix = str(settings.s3_prefix or "").strip().strip("/")
    return "/".join(([prefix] if prefix else []) + list(parts))


def _s3_bucket(settings: Settings) -> str:
    bucket = str(settings.s3_bucket or "").strip()
    if not bucket:
        raise StorageError("S3 storage backend selected but S3_BUCKET is not configured.")
    return bucket


def s3_client(settings: Settings):
    try:
        import boto3  # type: ignore
    except ImportError as exc:
        raise StorageError("boto3 is required for the S3 storage backend.") from exc
    return boto3.client("s3", region_name=settings.aws_region)


def save_document_bytes(
    *,
    settings: Settings,
    session_id: str,
    file_name: str,
    content_type: str,
    content: bytes,
) -> str:
    """Store an uploaded assessment document and return the path or ``s3://`` URI it lives at.

    Names are reduced to their basename and prefixed with a uuid, so two uploads of the
    same file never collide.
    """
    object_name = f"{uuid4()}_{Path(file_name).name or 'upload.bin'}"

    if normalize_backend(settings.storage_backend) == "local":
        destination = Path(settings.storage_root) / session_id / object_name
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(content)
        location = str(destination)
    else:
        bucket = _s3_bucket(settings)
        key = _s3_key(settings, "sessions", session_id, object_name)
        try:
            s3_client(settings).put_object(
                Bucket=bucket,
                Key=key,
                Body=content,
                ContentType=content_type or "application/octet-stream",
            )
        except StorageError:
            raise
        except Exception as exc:  # pragma: no cover - depends on AWS runtime integration
            raise StorageError(f"Failed to write document to S3 (bucket={bucket}, key={key}): {exc}") from exc
        location = f"{_S3_SCHEME}{bucket}/{key}"

    logger.info(
        "document_blob_stored",
        extra={"event": "document_blob_stored", "session_id": session_id, "bytes": len(content), "location": location},
    )
    return location


def load_document_bytes(*, settings: Settings, storage_path: str) -> bytes:
    raw = str(storage_path or "").strip()
    if not raw:
        raise StorageError("Missing storage path.")

    if not raw.lower().startswith(_S3_SCHEME):
        path = Path(raw)
        if not path.is_file():
            raise StorageError(f"Stored file not found at '{raw}'.")
        return path.read_bytes()

    bucket, key = _split_s3_uri(raw)
    try:
        body = s3_client(settings).get_object(Bucket=bucket, Key=key).get("Body")
    except StorageError:
        raise
    except Exception as exc:  # pragma: no cover - depends on AWS runtime integration
        raise StorageError(f"Failed to read document from S3 (bucket={bucket}, key={key}): {exc}") from exc
    if body is None:
        raise StorageError(f"S3 get_object returned no body (bucket={bucket}, key={key}).")
    return body.read()


def probe_storage(settings: Settings) -> dict[str, object]:
    """Write, read back and compare a small marker object. Raises StorageError on mismatch."""
    backend = normalize_backend(settings.storage_backend)
    token = f"{time.time()}-{uuid4()}"

    if backend == "local":
        probe = Path(settings.storage_root) / ".ready_probe"
        probe.parent.mkdir(parents=True, exist_ok=True)
        probe.write_text(token, encoding="utf-8")
        try:
            matches = probe.read_text(encoding="utf-8") == token
        finally:
            probe.unlink(missing_ok=True)
        if not matches:
            raise StorageError("Local storage probe mismatch.")
        return {"ok": True, "backend": "local"}

    bucket = _s3_bucket(settings)
    key = _s3_key(settings, "readyz", settings.app_env, "validator.txt")
    client = s3_client(settings)
    client.put_object(Bucket=bucket, Key=key, Body=token.encode("utf-8"), ContentType="text/plain")
    body = client.get_object(Bucket=bucket, Key=key).get("Body")
    if body is None or body.read().decode("utf-8", errors="replace") != token:
        raise StorageError("S3 storage probe mismatch.")
    return {"ok": True, "backend": "s3", "bucket": bucket, "key": key}
