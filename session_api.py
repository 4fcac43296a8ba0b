"""
Session API - result-returning entry points for a UI or CLI.

All handlers return {'success': bool, 'error'?: str, ...} and never raise.
The process owns exactly one LootSessionTracker, created on first use by
`get_session_manager()`.
"""

import json
import threading

import config
from database import save_state, load_state, fetch_recent_sessions
from loot_matcher import LootMatcher
from ocr_engines import ScreenRecognizer, get_engine_info
from tracker import LootSessionTracker
from utils import log_debug

_manager = None
_manager_lock = threading.Lock()


def get_session_manager() -> LootSessionTracker:
    global _manager
    with _manager_lock:
        if _manager is None:
            debug = config.get_debug_mode(False)
            _manager = LootSessionTracker(
                recognizer=ScreenRecognizer(debug=debug),
                matcher=LootMatcher(),
                debug=debug,
            )
        return _manager


def set_session_manager(manager) -> None:
    """Install a preconfigured tracker (fakes in tests, custom engines)."""
    global _manager
    with _manager_lock:
        _manager = manager


def _failure(exc) -> dict:
    return {'success': False, 'error': str(exc)}


async def start_session(options: dict = None) -> dict:
    """options: {ocrRegion?, captureInterval?, location?, locationId?}"""
    options = options or {}
    try:
        manager = get_session_manager()
        location = options.get('location')
        location_id = options.get('locationId')
        if location is None:
            last = get_last_location()
            if last:
                location, location_id = last.get('name'), last.get('id')
        result = await manager.start(
            region=options.get('ocrRegion'),
            cadence_ms=options.get('captureInterval'),
            location={'name': location, 'id': location_id} if location else None,
        )
    except Exception as exc:
        log_debug(f"[SESSION] start_session failed: {exc}")
        return _failure(exc)

    if result.get('success') and location:
        save_state('last_grind_location', json.dumps({'name': location, 'id': location_id}))
    return result


async def stop_session() -> dict:
    try:
        return await get_session_manager().stop()
    except Exception as exc:
        log_debug(f"[SESSION] stop_session failed: {exc}")
        return _failure(exc)


def get_status() -> dict:
    try:
        status = get_session_manager().get_status()
        status['engines'] = get_engine_info()
        return {'success': True, 'status': status}
    except Exception as exc:
        return _failure(exc)


def get_stats() -> dict:
    try:
        return {'success': True, 'stats': get_session_manager().get_stats()}
    except Exception as exc:
        return _failure(exc)


def get_summary() -> dict:
    try:
        manager = get_session_manager()
        summary = manager.build_summary() if manager.is_active() else manager.last_summary
        return {'success': True, 'summary': summary}
    except Exception as exc:
        return _failure(exc)


def get_current_session() -> dict:
    try:
        return {'success': True, 'session': get_session_manager().get_current_session()}
    except Exception as exc:
        return _failure(exc)


def update_capture_interval(interval_ms) -> dict:
    try:
        return get_session_manager().update_capture_interval(interval_ms)
    except Exception as exc:
        return _failure(exc)


async def test_capture(region=None) -> dict:
    try:
        return await get_session_manager().preview_capture(region)
    except Exception as exc:
        return _failure(exc)


def is_active() -> dict:
    try:
        return {'success': True, 'isActive': get_session_manager().is_active()}
    except Exception as exc:
        return _failure(exc)


def recent_sessions(limit: int = 10) -> dict:
    return {'success': True, 'sessions': fetch_recent_sessions(limit)}


def get_last_location():
    raw = load_state('last_grind_location')
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    return data if isinstance(data, dict) and data.get('name') else None
