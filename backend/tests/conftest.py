from pathlib import Path

import pytest

from validator.api.routers.system import reset_ready_cache
from validator.config import settings
from validator.db import init_db


@pytest.fixture
def isolated_db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setattr(settings, "database_url", f"sqlite:///{tmp_path}/test.db")
    monkeypatch.setattr(settings, "storage_root", str(tmp_path / "uploads"))
    monkeypatch.setattr(settings, "storage_backend", "local")
    init_db()
    reset_ready_cache()
    return tmp_path
