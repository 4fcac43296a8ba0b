from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Optional

from config import PROCESSING_SAMPLES_MAX, PROCESSING_SAMPLES_TRIM


@dataclass
class SessionStats:
    """Per-session counters. Diagnostic only; the session outcome always comes
    from the matcher's accumulated loot, never from these numbers."""
    captures_performed: int = 0
    successful_captures: int = 0
    failed_captures: int = 0
    items_detected: int = 0
    last_capture_time: Optional[float] = None
    session_start_time: Optional[float] = None
    average_processing_time: float = 0.0
    # debug totals
    ocr_detections: int = 0
    template_matches: int = 0
    session_updates: int = 0
    _samples: list = field(default_factory=list, repr=False)

    def record_processing_time(self, elapsed_ms: float) -> None:
        self._samples.append(float(elapsed_ms))
        if len(self._samples) > PROCESSING_SAMPLES_MAX:
            del self._samples[:-PROCESSING_SAMPLES_TRIM]
        self.average_processing_time = sum(self._samples) / len(self._samples)

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    def as_dict(self) -> dict:
        data = asdict(self)
        data.pop('_samples', None)
        return {
            'capturesPerformed': data['captures_performed'],
            'successfulCaptures': data['successful_captures'],
            'failedCaptures': data['failed_captures'],
            'itemsDetected': data['items_detected'],
            'lastCaptureTime': data['last_capture_time'],
            'sessionStartTime': data['session_start_time'],
            'averageProcessingTime': round(data['average_processing_time'], 2),
        }

    def debug_counters(self, stats_item_count: int = 0) -> dict:
        return {
            'ocrDetections': self.ocr_detections,
            'templateMatches': self.template_matches,
            'sessionUpdates': self.session_updates,
            'statsItemCount': stats_item_count,
        }
