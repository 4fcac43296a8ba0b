"""Periodic diff of the matcher's accumulated loot against the last snapshot.

The matcher owns the authoritative counts and has no push notifications, so
changes are discovered by polling. One poll per STATE_SYNC_INTERVAL_MS
coalesces every pickup inside that interval into a single emission.
"""
from __future__ import annotations

import time
from typing import Callable, Optional

from utils import log_debug

SOURCE = 'template_matching'


def loot_total(loot) -> int:
    total = 0
    for count in (loot or {}).values():
        try:
            total += int(count)
        except (TypeError, ValueError):
            continue
    return total


def diff_loot(previous, current) -> list[dict]:
    """Per-item increases between two snapshots, in current-map order. Decreases are ignored."""
    previous = previous or {}
    deltas = []
    for name, count in (current or {}).items():
        try:
            delta = int(count) - int(previous.get(name, 0) or 0)
        except (TypeError, ValueError):
            continue
        if delta > 0:
            deltas.append({'name': name, 'quantity': delta})
    return deltas


class LootReconciler:
    """Reads `matcher.get_current_session()['loot']` and emits deltas.

    `emit(event_name, payload)` receives 'loot detected' and
    'session summary update'. `summary_fn()` builds the summary payload.
    """

    def __init__(self, matcher, emit: Callable[[str, dict], None], summary_fn: Optional[Callable[[], dict]] = None,
                 clock: Callable[[], float] = None, debug: bool = False) -> None:
        self.matcher = matcher
        self.emit = emit
        self.summary_fn = summary_fn
        self.clock = clock or (lambda: time.time() * 1000)
        self.debug = debug
        self.snapshot: Optional[dict] = None
        self.updates_emitted = 0
        self.items_surfaced = 0

    def reset(self) -> None:
        self.snapshot = None
        self.updates_emitted = 0
        self.items_surfaced = 0

    def poll(self) -> Optional[dict]:
        """One reconciliation tick. Returns the emitted loot payload or None.

        Read failures are logged and skipped; the stored snapshot stays untouched.
        """
        try:
            session = self.matcher.get_current_session() or {}
            current = dict(session.get('loot') or {})
        except Exception as exc:
            log_debug(f"[SYNC] Failed to read accumulated loot: {exc}")
            return None

        if self.snapshot is None:
            self.snapshot = current
            if self.debug:
                log_debug(f"[SYNC] Baseline initialized ({loot_total(current)} items)")
            return None

        previous_total = loot_total(self.snapshot)
        current_total = loot_total(current)

        if current_total < previous_total:
            # Not expected: the matcher never removes loot mid-session.
            log_debug(
                f"[SYNC] WARNING accumulated loot shrank {previous_total} -> {current_total}; "
                f"re-baselining without emitting"
            )
            self.snapshot = current
            return None

        if current_total == previous_total:
            if current != self.snapshot:
                if self.debug:
                    log_debug("[SYNC] Loot composition changed at equal total; snapshot replaced silently")
                self.snapshot = current
            return None

        items = diff_loot(self.snapshot, current)
        timestamp = self.clock()
        payload = {'items': items, 'timestamp': timestamp, 'source': SOURCE}
        self.snapshot = current
        self.updates_emitted += 1
        self.items_surfaced += sum(i['quantity'] for i in items)

        self.emit('loot detected', payload)
        summary = self.summary_fn() if self.summary_fn else {'loot': dict(current)}
        self.emit('session summary update', {'summary': summary, 'timestamp': timestamp})
        if self.debug:
            log_debug(f"[SYNC] +{current_total - previous_total} items: {items}")
        return payload
