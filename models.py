"""Data containers shared by the capture queue, deduplicator and reconciler."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class CaptureRegion:
    """Screen rectangle fed to the recognition engine. Immutable per session."""
    x: int
    y: int
    width: int
    height: int
    display: Optional[str] = None

    @classmethod
    def from_mapping(cls, data) -> "CaptureRegion":
        """Build a region from a dict or (x, y, w, h) sequence.

        Backwards selections (negative width/height) are flipped, negative
        coordinates clamp to 0. Raises ValueError when the result is empty.
        """
        if isinstance(data, CaptureRegion):
            return data
        display = None
        try:
            if isinstance(data, dict):
                x, y = float(data['x']), float(data['y'])
                width, height = float(data['width']), float(data['height'])
                display = data.get('display')
            else:
                values = tuple(data)
                x, y, width, height = (float(v) for v in values[:4])
                if len(values) > 4:
                    display = values[4]
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid capture region: {data!r}") from exc

        if width < 0:
            x, width = x + width, -width
        if height < 0:
            y, height = y + height, -height
        width, height = int(round(width)), int(round(height))
        if width <= 0 or height <= 0:
            raise ValueError(
                f"Invalid capture region: x={x}, y={y}, width={width}, height={height}. "
                "Width and height must be positive."
            )
        return cls(
            x=int(round(max(0.0, x))),
            y=int(round(max(0.0, y))),
            width=width,
            height=height,
            display=str(display) if display else None,
        )

    def as_dict(self) -> dict:
        data = {'x': self.x, 'y': self.y, 'width': self.width, 'height': self.height}
        if self.display:
            data['display'] = self.display
        return data


@dataclass(frozen=True)
class RecognizedTextEvent:
    """One recognized text fragment; timestamp in ms on the session clock."""
    text: str
    confidence: float
    bbox: Optional[tuple] = None
    timestamp: float = 0.0

    @property
    def top_left(self) -> Optional[tuple[float, float]]:
        if not self.bbox:
            return None
        return float(self.bbox[0][0]), float(self.bbox[0][1])

    @property
    def y(self) -> float:
        corner = self.top_left
        return corner[1] if corner else 0.0

    def as_engine_payload(self) -> dict:
        return {
            'text': self.text,
            'confidence': self.confidence,
            'bbox': [list(p) for p in self.bbox] if self.bbox else [],
        }


@dataclass(frozen=True)
class DedupHistoryEntry:
    normalized_text: str
    timestamp: float
    y: float
    confidence: float
    top_left: Optional[tuple[float, float]] = None


@dataclass(frozen=True)
class QueuedTask:
    region: CaptureRegion
    enqueue_time: float
    task_id: int


@dataclass
class LootMatch:
    item: str
    quantity: int
    confidence: float
    method: str  # 'exact' | 'fuzzy'
    original_text: str
    bbox: list = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            'item': self.item,
            'quantity': self.quantity,
            'confidence': self.confidence,
            'method': self.method,
            'originalText': self.original_text,
            'bbox': self.bbox,
        }
