import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import config  # noqa: E402
import database  # noqa: E402
import utils  # noqa: E402


def test_capture_region_defaults_when_unset():
    assert config.get_capture_region() == {'x': 427, 'y': 1136, 'width': 394, 'height': 261}


def test_capture_region_roundtrip_with_display():
    config.set_capture_region((10, 20, 300, 200), display=2)
    assert config.get_capture_region() == {'x': 10, 'y': 20, 'width': 300, 'height': 200, 'display': '2'}


def test_malformed_capture_region_falls_back():
    database.save_setting('capture_region', '{"x": 1, "y": 2}')
    assert config.get_capture_region()['width'] == 394
    database.save_setting('capture_region', 'not json')
    assert config.get_capture_region()['x'] == 427
    database.save_setting('capture_region', '{"x": 1, "y": 2, "width": 0, "height": 5}')
    assert config.get_capture_region()['height'] == 261


def test_debug_mode_setting():
    assert config.get_debug_mode() is False
    assert config.get_debug_mode(default=True) is True
    config.set_debug_mode(True)
    assert config.get_debug_mode() is True
    config.set_debug_mode(False)
    assert config.get_debug_mode(default=True) is False


def test_state_roundtrip():
    assert database.load_state('last_grind_location', 'none') == 'none'
    database.save_state('last_grind_location', '{"name": "Hystria Ruins", "id": 3}')
    assert database.load_state('last_grind_location') == '{"name": "Hystria Ruins", "id": 3}'


def test_session_history_newest_first():
    first = database.save_session_summary(
        {'location': 'Polly\'s Forest', 'duration_ms': 1000, 'itemCount': 2, 'silver': 0,
         'loot': {'Memory Fragment': 2}},
        started_at_ms=1_700_000_000_000, ended_at_ms=1_700_000_001_000,
    )
    second = database.save_session_summary({'location': 'Hystria Ruins', 'loot': {}})
    assert first is not None and second is not None

    sessions = database.fetch_recent_sessions(limit=5)
    assert [s['location'] for s in sessions] == ['Hystria Ruins', "Polly's Forest"]
    assert sessions[1]['loot'] == {'Memory Fragment': 2}
    assert sessions[1]['duration_ms'] == 1000
    assert sessions[0]['started_at'] is None
    assert database.fetch_recent_sessions(limit=1)[0]['id'] == second


def test_log_text_rotates_large_file(monkeypatch):
    monkeypatch.setattr(utils, "LOG_MAX_BYTES", 10)
    utils.log_text("first entry that is long enough")
    utils.log_text("second")
    assert os.path.exists(config.LOG_PATH + ".old")
    with open(config.LOG_PATH, encoding="utf-8") as f:
        content = f.read()
    assert "second" in content
    assert "first entry" not in content


def test_log_debug_appends_tagged_line():
    utils.log_debug("[SYNC] Baseline initialized (0 items)")
    with open(config.LOG_PATH, encoding="utf-8") as f:
        assert "[DEBUG] [SYNC] Baseline initialized" in f.read()
