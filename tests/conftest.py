import pathlib
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))


@pytest.fixture(autouse=True)
def _settings_env(monkeypatch):
    """Keep tests independent of any developer `.env` credentials."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    from agent_hub.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
