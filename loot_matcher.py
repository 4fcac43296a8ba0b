#!/usr/bin/env python3
"""
Loot Matcher - template matching of recognized lines against loot tables

Maps recognized text to canonical item names of the current grind
location and owns the accumulated loot of the running session.
Provides:
- Loot table loading (config/loot_tables.json, cached)
- Exact + fuzzy (rapidfuzz) item matching
- Session accumulation (item -> count, silver)

Every public method returns a result dict instead of raising.
"""

import json
import time
from pathlib import Path
from typing import Dict, List, Optional

from rapidfuzz import fuzz, process

import config
from models import LootMatch
from parsing import extract_quantity, strip_quantity
from utils import log_debug

FUZZY_SCORE_CUTOFF = 85
FUZZY_CONFIDENCE_FACTOR = 0.8

# Singleton pattern for cached data
_loot_tables: Optional[Dict[str, dict]] = None


def load_loot_tables(force_reload: bool = False, path: Optional[str] = None) -> Dict[str, dict]:
    """
    Load loot_tables.json and return {location_id: {name, items:[...]}}.
    Uses singleton caching for performance.
    """
    global _loot_tables

    if not force_reload and path is None and _loot_tables is not None:
        return _loot_tables

    json_path = Path(path or config.LOOT_TABLES_JSON)
    if not json_path.exists():
        raise FileNotFoundError(f"loot_tables.json not found at {json_path}")

    with open(json_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    if 'locations' not in data:
        raise ValueError("loot_tables.json missing 'locations' key")

    tables = {str(k): v for k, v in data['locations'].items()}
    if path is None:
        _loot_tables = tables
    return tables


def get_items_for_location(location_id) -> List[str]:
    tables = load_loot_tables()
    location = tables.get(str(location_id)) or {}
    return [name for name in location.get('items', []) if name]


class LootMatcher:
    """Template-matching engine: validated item/quantity pairs and accumulated loot."""

    def __init__(self, loot_table_loader=None, clock=None) -> None:
        self._load_items = loot_table_loader or get_items_for_location
        self._clock = clock or (lambda: time.time() * 1000)
        self.location: Optional[str] = None
        self.location_id = None
        self.loot_table_items: List[str] = []
        self._lowered: Dict[str, str] = {}
        self.loot: Dict[str, int] = {}
        self.silver = 0
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None

    # -----------------------
    # Session
    # -----------------------
    def set_grind_location(self, name: str, location_id=None) -> dict:
        if not name:
            return {'success': False, 'error': 'No grind location given'}
        self.location = name
        self.location_id = location_id
        if location_id is not None:
            try:
                items = list(self._load_items(location_id))
            except Exception as exc:
                log_debug(f"[MATCH] Failed to load loot table for location {location_id}: {exc}")
                return {'success': False, 'error': f"Failed to load loot table: {exc}"}
            self.loot_table_items = items
            self._lowered = {item.lower(): item for item in items}
        print(f"Grind location set to: {name} ({len(self.loot_table_items)} items in loot table)")
        return {'success': True}

    def start_session(self) -> dict:
        if not self.location:
            return {'success': False, 'error': 'No grind location set'}
        self.start_time = self._clock()
        self.end_time = None
        self.loot = {}
        self.silver = 0
        print(f"Started loot tracking session at {self.location}")
        return {'success': True}

    def is_session_active(self) -> bool:
        return self.start_time is not None and self.end_time is None

    def reset_session(self) -> None:
        self.loot = {}
        self.silver = 0
        self.start_time = None
        self.end_time = None

    def end_session(self) -> dict:
        self.end_time = self._clock()
        summary = self.get_session_summary()
        log_debug(f"[MATCH] Session ended: {summary}")
        return summary

    def add_silver(self, amount: int) -> None:
        self.silver += int(amount)

    def get_current_session(self) -> dict:
        return {
            'location': self.location,
            'loot': dict(self.loot),
            'silver': self.silver,
            'startTime': self.start_time,
            'endTime': self.end_time,
        }

    def get_session_summary(self) -> dict:
        if self.start_time is None:
            duration = 0
        else:
            end = self.end_time if self.end_time is not None else self._clock()
            duration = int(end - self.start_time)
        return {
            'location': self.location,
            'duration_ms': duration,
            'loot': dict(self.loot),
            'silver': self.silver,
            'totalValue': self.silver,  # reserved: item values are not priced yet
            'itemCount': sum(self.loot.values()),
        }

    # -----------------------
    # Matching
    # -----------------------
    def _match_name(self, text: str):
        """(item name, method) for one recognized line, or (None, None)."""
        lowered = text.lower()
        # Längste Namen zuerst: "Black Stone (Armor)" vor "Black Stone"
        for key in sorted(self._lowered, key=len, reverse=True):
            if key in lowered:
                return self._lowered[key], 'exact'

        candidate = strip_quantity(text).lower()
        if not candidate:
            return None, None
        best = process.extractOne(candidate, list(self._lowered), scorer=fuzz.WRatio,
                                  score_cutoff=FUZZY_SCORE_CUTOFF)
        if best:
            return self._lowered[best[0]], 'fuzzy'
        return None, None

    def match_items(self, ocr_results) -> List[LootMatch]:
        matches = []
        if not self._lowered:
            log_debug("[MATCH] No loot table items loaded for matching")
            return matches

        for result in ocr_results:
            text = str(result.get('text') or '').strip()
            if not text:
                continue
            conf = float(result.get('confidence') or 0.0)
            name, method = self._match_name(text)
            if not name:
                log_debug(f"[MATCH] No match for '{text}'")
                continue
            matches.append(LootMatch(
                item=name,
                quantity=extract_quantity(text) or 1,
                confidence=conf if method == 'exact' else conf * FUZZY_CONFIDENCE_FACTOR,
                method=method,
                original_text=text,
                bbox=list(result.get('bbox') or []),
            ))
        return matches

    def process_ocr_results(self, ocr_results) -> dict:
        """Match deduplicated lines and add the matches to the session."""
        if not self.is_session_active():
            return {'success': False, 'itemsFound': 0, 'error': 'No active session. Start a session first.'}
        try:
            matches = self.match_items(ocr_results)
        except Exception as exc:
            return {'success': False, 'itemsFound': 0, 'error': f"Failed to process OCR results: {exc}"}

        for match in matches:
            total = self.loot.get(match.item, 0) + match.quantity
            self.loot[match.item] = total
            print(f"+{match.quantity}x {match.item} (Total: {total}) [{match.method}, {match.confidence * 100:.1f}%]")

        return {
            'success': True,
            'itemsFound': len(matches),
            'items': [{'item': m.item, 'quantity': m.quantity} for m in matches],
        }
