import re

from config import MIN_ITEM_QUANTITY, MAX_ITEM_QUANTITY
from models import RecognizedTextEvent

# -----------------------
# Performance: Pre-compiled Regex Patterns
# -----------------------
# Trailing quantity suffix of a pickup line: "Black Stone (Armor) x 1", "Memory Fragment x2"
_QUANTITY_SUFFIX_PATTERN = re.compile(r"\s+[x×\*]\s*([0-9][0-9,\.]*)\s*$", re.IGNORECASE)
# Loose multiplier anywhere in the line (OCR sometimes appends noise after the quantity)
_QUANTITY_ANYWHERE_PATTERN = re.compile(r"(?:^|\s)[x×\*]\s*([0-9][0-9,\.]*)\b", re.IGNORECASE)
_WHITESPACE_PATTERN = re.compile(r"\s+")


def normalize_loot_text(text) -> str:
    """Duplicate-comparison key: quantity suffix stripped, whitespace collapsed, lower-cased.

    Quantity differences alone never distinguish two pickups, so
    "Ogre Ring x 1" and "ogre ring  x2" share one key.
    """
    if not text:
        return ""
    s = _WHITESPACE_PATTERN.sub(" ", str(text)).strip()
    s = _QUANTITY_SUFFIX_PATTERN.sub("", s)
    return s.strip().lower()


def _to_int(raw: str):
    digits = re.sub(r"[^0-9]", "", raw or "")
    if not digits:
        return None
    try:
        return int(digits)
    except ValueError:
        return None


def extract_quantity(text):
    """Quantity from a pickup line, None if absent or outside MIN/MAX_ITEM_QUANTITY."""
    if not text:
        return None
    s = _WHITESPACE_PATTERN.sub(" ", str(text)).strip()
    m = _QUANTITY_SUFFIX_PATTERN.search(s) or _QUANTITY_ANYWHERE_PATTERN.search(s)
    if not m:
        return None
    qty = _to_int(m.group(1))
    if qty is None or qty < MIN_ITEM_QUANTITY or qty > MAX_ITEM_QUANTITY:
        return None
    return qty


def strip_quantity(text) -> str:
    """Item part of a pickup line with original casing."""
    if not text:
        return ""
    s = _WHITESPACE_PATTERN.sub(" ", str(text)).strip()
    return _QUANTITY_SUFFIX_PATTERN.sub("", s).strip()


def coerce_bbox(raw):
    """Return a 4-point polygon as tuple of (x, y) float pairs, or None.

    Accepts [[x,y]x4] from PaddleOCR/EasyOCR; anything else counts as missing.
    """
    if raw is None:
        return None
    try:
        points = [(float(p[0]), float(p[1])) for p in raw]
    except (TypeError, ValueError, IndexError):
        return None
    if len(points) != 4:
        return None
    return tuple(points)


def events_from_recognition(response, timestamp: float) -> list[RecognizedTextEvent]:
    """Convert a recognition payload ({success, items:[{originalText, confidence, bbox?}]}) into events.

    Entries without text are dropped; confidence is clamped to [0, 1].
    """
    if not response or not response.get('success'):
        return []
    events = []
    for item in response.get('items') or []:
        if not isinstance(item, dict):
            continue
        text = item.get('originalText')
        if text is None:
            text = item.get('text')
        text = _WHITESPACE_PATTERN.sub(" ", str(text or "")).strip()
        if not text:
            continue
        try:
            conf = float(item.get('confidence', 0.0))
        except (TypeError, ValueError):
            conf = 0.0
        conf = min(1.0, max(0.0, conf))
        events.append(RecognizedTextEvent(
            text=text,
            confidence=conf,
            bbox=coerce_bbox(item.get('bbox')),
            timestamp=float(timestamp),
        ))
    return events
