import os
import json

# -----------------------
# Konfiguration
# -----------------------
DB_PATH = os.getenv('LOOT_DB_PATH', 'bdo_loot_tracker.db')
LOG_PATH = os.getenv('LOOT_LOG_PATH', 'ocr_log.txt')
LOOT_TABLES_JSON = os.getenv('LOOT_TABLES_JSON', os.path.join(os.path.dirname(os.path.abspath(__file__)), 'config', 'loot_tables.json'))

# Loot-Fenster unten links (x, y, width, height) - wird genutzt wenn keine Region gespeichert ist
DEFAULT_REGION = (427, 1136, 394, 261)

# -----------------------
# Session-Timer
# -----------------------
# 50ms Capture-Takt: schneller als ein OCR-Durchlauf, Backlog ist erwartet
CAPTURE_INTERVAL_MS = max(1, int(os.getenv('LOOT_CAPTURE_INTERVAL_MS', '50') or '50'))
MIN_CAPTURE_INTERVAL_MS = 16    # 60 FPS
MAX_CAPTURE_INTERVAL_MS = 5000
STATE_SYNC_INTERVAL_MS = 500
STOP_TIMEOUT_MS = 5000
STOP_POLL_INTERVAL_MS = 500

# -----------------------
# Deduplizierung (alle Zeiten in ms)
# -----------------------
DEDUP_WINDOW_MS = 6000
DEDUP_MIN_CONFIDENCE = 0.50
DEDUP_TIME_PROXIMITY_MS = 2200
DEDUP_VERTICAL_PX = 5
DEDUP_VERTICAL_MS = 1200
DEDUP_CONFIDENCE_DELTA = 0.032
DEDUP_CONFIDENCE_MS = 950
DEDUP_BBOX_X_PX = 11
DEDUP_BBOX_Y_PX = 6
DEDUP_BBOX_MS = 1100
DEDUP_HISTORY_MAX = 100

# Rolling average of processing time: keep 100 samples, trim to 50 on overflow
PROCESSING_SAMPLES_MAX = 100
PROCESSING_SAMPLES_TRIM = 50

# -----------------------
# OCR-Engines
# -----------------------
#   paddle   = PaddleOCR (primär, beste Game-UI-Performance)
#   easyocr  = EasyOCR (fallback)
#   tesseract = Tesseract (final fallback, Wortboxen)
OCR_ENGINE = os.getenv('LOOT_OCR_ENGINE', 'paddle').strip().lower() or 'paddle'
OCR_FALLBACK_ENABLED = os.getenv('LOOT_OCR_FALLBACK', '1') not in ('0', 'false', 'no')
USE_GPU = os.getenv('LOOT_USE_GPU', '0') in ('1', 'true', 'yes')
OCR_CONFIDENCE_FLOOR = 0.3  # Engine-seitig, die Dedup-Schwelle (0.50) greift danach
TESS_PATH = os.getenv('TESSERACT_CMD', '')

# Mindest-Menge fuer erkannte Loot-Zeilen ("Item x 0" ist UI-Rauschen)
MIN_ITEM_QUANTITY = 1
MAX_ITEM_QUANTITY = 5000


# -----------------------
# Persistente Einstellungen (tracker_settings)
# -----------------------
def _load_setting(key: str, default=None):
    from database import load_setting
    return load_setting(key, default)


def _save_setting(key: str, value: str) -> None:
    from database import save_setting
    save_setting(key, value)


def _default_region_dict() -> dict:
    x, y, width, height = DEFAULT_REGION
    return {'x': x, 'y': y, 'width': width, 'height': height}


def get_capture_region() -> dict:
    """Stored capture region as {x, y, width, height[, display]}; DEFAULT_REGION when unset or malformed."""
    raw = _load_setting('capture_region')
    if not raw:
        return _default_region_dict()
    try:
        parsed = json.loads(raw)
        region = {k: int(parsed[k]) for k in ('x', 'y', 'width', 'height')}
        if region['width'] <= 0 or region['height'] <= 0:
            return _default_region_dict()
        if parsed.get('display'):
            region['display'] = str(parsed['display'])
        return region
    except Exception:
        return _default_region_dict()


def set_capture_region(region, display=None) -> None:
    x, y, width, height = (int(v) for v in tuple(region)[:4])
    payload = {'x': x, 'y': y, 'width': width, 'height': height}
    if display:
        payload['display'] = str(display)
    _save_setting('capture_region', json.dumps(payload))


def get_debug_mode(default: bool = False) -> bool:
    raw = _load_setting('debug_mode')
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in ('1', 'true', 'yes', 'on')


def set_debug_mode(enabled: bool) -> None:
    _save_setting('debug_mode', '1' if enabled else '0')
