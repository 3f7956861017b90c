import io

import pytest

from validator import storage
from validator.config import Settings


class FakeS3Client:
    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], bytes] = {}
        self.calls: list[str] = []

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, ContentType: str) -> None:
        self.calls.append(f"put:{Bucket}/{Key}:{ContentType}")
        self.objects[(Bucket, Key)] = Body

    def get_object(self, *, Bucket: str, Key: str) -> dict[str, object]:
        self.calls.append(f"get:{Bucket}/{Key}")
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)])}


def test_s3_backend_round_trip(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = FakeS3Client()
    monkeypatch.setattr(storage, "s3_client", lambda settings: fake)
    settings = Settings(storage_backend="s3", s3_bucket="validator-test", s3_prefix="/docs/")

    uri = storage.save_document_bytes(
        settings=settings,
        session_id="s1",
        file_name="../Assessment.pdf",
        content_type="application/pdf",
        content=b"%PDF",
    )

    assert uri.startswith("s3://validator-test/docs/sessions/s1/")
    assert uri.endswith("_Assessment.pdf")
    assert storage.load_document_bytes(settings=settings, storage_path=uri) == b"%PDF"


def test_local_backend_rejects_missing_files(tmp_path) -> None:
    settings = Settings(storage_root=str(tmp_path))

    with pytest.raises(storage.StorageError):
        storage.load_document_bytes(settings=settings, storage_path=str(tmp_path / "missing.pdf"))


def test_unknown_backend_and_bad_uri_are_rejected() -> None:
    with pytest.raises(storage.StorageError):
        storage.normalize_backend("gcs")
    with pytest.raises(storage.StorageError):
        storage.load_document_bytes(settings=Settings(), storage_path="s3://bucket-only")


def test_probe_storage_round_trips_marker_object(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    fake = FakeS3Client()
    monkeypatch.setattr(storage, "s3_client", lambda settings: fake)

    s3_check = storage.probe_storage(Settings(storage_backend="s3", s3_bucket="validator-test", s3_prefix="", app_env="test"))
    local_check = storage.probe_storage(Settings(storage_root=str(tmp_path / "blobs")))

    assert s3_check["key"] == "readyz/test/validator.txt"
    assert fake.calls == ["put:validator-test/readyz/test/validator.txt:text/plain", "get:validator-test/readyz/test/validator.txt"]
    assert local_check == {"ok": True, "backend": "local"}
    assert not (tmp_path / "blobs" / ".ready_probe").exists()
