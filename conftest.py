import pytest

import config
import loot_matcher
import session_api


@pytest.fixture(autouse=True)
def isolated_storage(tmp_path, monkeypatch):
    """Every test gets its own sqlite file and log file."""
    monkeypatch.setattr(config, "DB_PATH", str(tmp_path / "loot_test.db"))
    monkeypatch.setattr(config, "LOG_PATH", str(tmp_path / "ocr_log.txt"))
    monkeypatch.setattr(loot_matcher, "_loot_tables", None)
    monkeypatch.setattr(session_api, "_manager", None)
    yield tmp_path
