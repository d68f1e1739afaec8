from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from prompt_fragments.config import Settings, get_settings
from prompt_fragments.generation_log import GenerationLog
from prompt_fragments.models import FragmentDraft
from prompt_fragments.store import FragmentStore


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def data_dir(tmp_path) -> Path:
    return tmp_path / "data"


@pytest.fixture
def settings(data_dir) -> Settings:
    return Settings(data_dir=data_dir, lock_timeout=2.0)


@pytest.fixture
def store(settings) -> FragmentStore:
    return FragmentStore.from_settings(settings)


@pytest.fixture
def generation_log(settings) -> GenerationLog:
    return GenerationLog.from_settings(settings)


@pytest.fixture
def phases_config(data_dir) -> Path:
    data_dir.mkdir(parents=True, exist_ok=True)
    path = data_dir / "phases.json"
    path.write_text(
        json.dumps(
            [
                {"id": "1", "name": "Discovery", "description": "Explore the problem"},
                {"id": "3", "name": "Build", "description": "Implement the plan"},
            ]
        ),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def fragment_draft() -> FragmentDraft:
    return FragmentDraft(
        text="You are a careful reviewer.",
        tags=["review", "tone"],
        created_by="alice",
        ai_version_compatibility=["gpt-4o"],
        associated_model_type="chat",
        rating=4.5,
    )
