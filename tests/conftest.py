from __future__ import annotations

from pathlib import Path

import pytest

from warung_pos.store import WarungDatabase


@pytest.fixture(autouse=True)
def _no_external_services(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ("KOLOSAL_API_KEY", "OPENAI_API_KEY", "openai_api_key", "WARUNG_DB_PATH", "LOG_FILE"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    (tmp_path / "README.md").write_text("test marker", encoding="utf-8")
    return tmp_path


@pytest.fixture
def db(project_root: Path) -> WarungDatabase:
    return WarungDatabase(root_dir=str(project_root))
