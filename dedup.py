"""Multi-factor deduplication of recognized loot lines.

The same on-screen pickup message is usually recognized several times in a
row (capture/recognition jitter), while the same item can also legitimately
drop again a few seconds later. `dedupe` decides which is which using the
normalized text plus timing, vertical position, confidence and bounding box.
"""
from __future__ import annotations

from typing import Iterable, Optional, Sequence

from config import (
    DEDUP_WINDOW_MS,
    DEDUP_MIN_CONFIDENCE,
    DEDUP_TIME_PROXIMITY_MS,
    DEDUP_VERTICAL_PX,
    DEDUP_VERTICAL_MS,
    DEDUP_CONFIDENCE_DELTA,
    DEDUP_CONFIDENCE_MS,
    DEDUP_BBOX_X_PX,
    DEDUP_BBOX_Y_PX,
    DEDUP_BBOX_MS,
    DEDUP_HISTORY_MAX,
)
from models import DedupHistoryEntry, RecognizedTextEvent
from parsing import normalize_loot_text

REASON_LOW_CONFIDENCE = 'low_confidence'
REASON_EMPTY = 'empty_text'
REASON_TIME = 'time_proximity'
REASON_VERTICAL = 'vertical_position'
REASON_CONFIDENCE = 'confidence_match'
REASON_BBOX = 'bbox_position'


def duplicate_reasons(event: RecognizedTextEvent, entry: DedupHistoryEntry) -> list[str]:
    """All rules under which `event` duplicates `entry` (same normalized text assumed)."""
    elapsed = abs(event.timestamp - entry.timestamp)
    reasons = []
    if elapsed < DEDUP_TIME_PROXIMITY_MS:
        reasons.append(REASON_TIME)
    if abs(event.y - entry.y) < DEDUP_VERTICAL_PX and elapsed < DEDUP_VERTICAL_MS:
        reasons.append(REASON_VERTICAL)
    if abs(event.confidence - entry.confidence) < DEDUP_CONFIDENCE_DELTA and elapsed < DEDUP_CONFIDENCE_MS:
        reasons.append(REASON_CONFIDENCE)
    corner = event.top_left
    if corner is not None and entry.top_left is not None and elapsed < DEDUP_BBOX_MS:
        if (abs(corner[0] - entry.top_left[0]) < DEDUP_BBOX_X_PX
                and abs(corner[1] - entry.top_left[1]) < DEDUP_BBOX_Y_PX):
            reasons.append(REASON_BBOX)
    return reasons


def _prune(history: Iterable[DedupHistoryEntry], now: float, max_age: float) -> list[DedupHistoryEntry]:
    return [e for e in history if now - e.timestamp <= max_age]


def dedupe(
    new_events: Sequence[RecognizedTextEvent],
    history: Sequence[DedupHistoryEntry] = (),
    now: Optional[float] = None,
    decisions: Optional[list] = None,
) -> tuple[list[RecognizedTextEvent], tuple[DedupHistoryEntry, ...]]:
    """Return (accepted events, updated history).

    Events are evaluated in order; an accepted event joins the comparison
    set immediately, so a line recognized twice within one frame counts once.
    History is kept for twice the dedup window and capped at
    DEDUP_HISTORY_MAX entries, oldest dropped first. If `decisions` is a list,
    one (event, accepted, reasons) tuple per input event is appended to it.
    """
    if now is None:
        stamps = [e.timestamp for e in new_events]
        if stamps:
            now = max(stamps)
        elif history:
            now = max(e.timestamp for e in history)
        else:
            now = 0.0

    retained = _prune(history, now, 2 * DEDUP_WINDOW_MS)
    accepted: list[RecognizedTextEvent] = []

    for event in new_events:
        key = normalize_loot_text(event.text)
        if not key:
            reasons = [REASON_EMPTY]
        elif event.confidence < DEDUP_MIN_CONFIDENCE:
            reasons = [REASON_LOW_CONFIDENCE]
        else:
            reasons = []
            for entry in retained:
                if entry.normalized_text != key:
                    continue
                if abs(event.timestamp - entry.timestamp) > DEDUP_WINDOW_MS:
                    continue
                reasons = duplicate_reasons(event, entry)
                if reasons:
                    break

        if decisions is not None:
            decisions.append((event, not reasons, reasons))
        if reasons:
            continue

        accepted.append(event)
        retained.append(DedupHistoryEntry(
            normalized_text=key,
            timestamp=event.timestamp,
            y=event.y,
            confidence=event.confidence,
            top_left=event.top_left,
        ))

    retained = _prune(retained, now, 2 * DEDUP_WINDOW_MS)
    if len(retained) > DEDUP_HISTORY_MAX:
        retained = retained[-DEDUP_HISTORY_MAX:]
    return accepted, tuple(retained)


class Deduplicator:
    """Holds the rolling history for one session around the pure `dedupe`."""

    def __init__(self, logger=None) -> None:
        self.history: tuple[DedupHistoryEntry, ...] = ()
        self._log = logger

    def reset(self) -> None:
        self.history = ()

    def __len__(self) -> int:
        return len(self.history)

    def filter(self, events: Sequence[RecognizedTextEvent], now: Optional[float] = None) -> list[RecognizedTextEvent]:
        decisions: list = []
        accepted, self.history = dedupe(events, self.history, now=now, decisions=decisions)
        if self._log is not None:
            for event, ok, reasons in decisions:
                if ok:
                    self._log(f"[DEDUP] ALLOWED '{event.text}' (conf={event.confidence:.2f}, y={event.y:.0f})")
                else:
                    self._log(f"[DEDUP] BLOCKED '{event.text}' ({', '.join(reasons)})")
        return accepted
