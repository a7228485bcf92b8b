from __future__ import annotations

from pathlib import Path

import pytest

from warung_pos.config import load_db_path, load_kolosal, load_openai, load_shop_profile
from warung_pos.paths import audio_dir, find_project_root


def test_dotenv_is_found_from_subdirectory(project_root: Path) -> None:
    (project_root / ".env").write_text(
        "KOLOSAL_API_KEY=from-dotenv\nKOLOSAL_API_URL=https://kolosal.example/\nWARUNG_SHOP_NAME=Warung Bu Sri\n",
        encoding="utf-8",
    )
    nested = project_root / "src" / "deep"
    nested.mkdir(parents=True)

    kolosal = load_kolosal(str(nested))
    assert kolosal.api_key == "from-dotenv"
    assert kolosal.api_url == "https://kolosal.example"
    assert load_shop_profile(str(nested)).name == "Warung Bu Sri"
    assert find_project_root(str(nested)) == str(project_root)


def test_environment_wins_over_dotenv(project_root: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (project_root / ".env").write_text("KOLOSAL_API_KEY=from-dotenv\n", encoding="utf-8")
    monkeypatch.setenv("KOLOSAL_API_KEY", "from-env")
    assert load_kolosal(str(project_root)).api_key == "from-env"


def test_defaults_without_configuration(project_root: Path) -> None:
    speech = load_openai(str(project_root))
    assert speech.api_key is None
    assert (speech.model, speech.voice) == ("tts-1", "nova")
    assert load_shop_profile(str(project_root)).name == "WARUNG DREAM HIGHER"
    assert load_db_path(str(project_root)) is None
    assert audio_dir(str(project_root)) == str(project_root / "var" / "audio")
