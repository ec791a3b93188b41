import copy
import json
import os
from pathlib import Path
from typing import Any, Dict

import pytest

FIXTURES_DIR = Path(__file__).parent / "fixtures"


def load_fixture_text(name: str) -> str:
    """Helper to read an .af fixture by file name from tests/fixtures."""
    path = FIXTURES_DIR / name
    assert path.exists(), f"Fixture not found: {path}"
    return path.read_text(encoding="utf-8")


@pytest.fixture
def minimal_text() -> str:
    return load_fixture_text("minimal.af")


@pytest.fixture
def minimal_doc(minimal_text) -> Dict[str, Any]:
    return json.loads(minimal_text)


@pytest.fixture
def research_text() -> str:
    return load_fixture_text("research_agent.af")


@pytest.fixture
def research_doc(research_text) -> Dict[str, Any]:
    return json.loads(research_text)


@pytest.fixture
def complete_doc(minimal_doc) -> Dict[str, Any]:
    """Minimal fixture with every field auto-fix would otherwise supply."""
    doc = copy.deepcopy(minimal_doc)
    doc["llm_config"]["provider"] = "openai"
    return doc


@pytest.fixture(autouse=True)
def _clean_af_env(monkeypatch):
    """Keep AF_* variables from the developer's shell out of every test."""
    for key in list(os.environ):
        if key.startswith("AF_"):
            monkeypatch.delenv(key, raising=False)
