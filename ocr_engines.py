#!/usr/bin/env python3
"""
OCR Engines Module - Recognition adapter for the loot window

Unterstützt mehrere OCR-Engines:
1. PaddleOCR (primär - beste Game-UI-Performance)
2. EasyOCR (fallback)
3. Tesseract (final fallback, Zeilen aus Wortboxen)

Jede Engine liefert Zeilen als {originalText, confidence, bbox} mit einem
4-Punkt-Polygon relativ zur Capture-Region. `ScreenRecognizer.recognize`
kapselt Capture + Preprocessing + OCR in einen Aufruf pro Region.
"""

import re
import time
from typing import Optional, List

import config
from utils import capture_region, preprocess, log_debug, write_debug_capture


# -----------------------
# Engine Initialization Status
# -----------------------
_paddle_reader = None
_paddle_available = False
_easyocr_reader = None
_easyocr_available = False

_WHITESPACE_NORMALIZE_PATTERN = re.compile(r'\s+')


def init_paddle_ocr(use_gpu: bool = False, lang: str = 'en') -> bool:
    """
    Initialisiert PaddleOCR mit Parametern für Game-UI.

    Returns:
        True wenn erfolgreich initialisiert
    """
    global _paddle_reader, _paddle_available

    if _paddle_available and _paddle_reader is not None:
        return True

    try:
        from paddleocr import PaddleOCR

        _paddle_reader = PaddleOCR(
            lang=lang,
            use_gpu=use_gpu,
            use_angle_cls=False,      # Kein Text-Rotation im Loot-Fenster
            det_db_thresh=0.3,
            det_db_box_thresh=0.5,
            det_db_unclip_ratio=1.6,
            rec_batch_num=6,
        )
        _paddle_available = True
        mode = "GPU" if use_gpu else "CPU"
        print(f"[OK] PaddleOCR initialized ({mode} mode)")
        return True
    except Exception as e:
        _paddle_available = False
        print(f"[WARNING] PaddleOCR initialization failed: {e}")
        return False


def init_easyocr(use_gpu: bool = False, lang: List[str] = None) -> bool:
    """Initialisiert EasyOCR (fallback)."""
    global _easyocr_reader, _easyocr_available

    if _easyocr_available and _easyocr_reader is not None:
        return True

    try:
        import easyocr

        _easyocr_reader = easyocr.Reader(
            lang or ['en'],
            gpu=use_gpu,
            verbose=False,
            quantize=not use_gpu,
            cudnn_benchmark=use_gpu,
        )
        _easyocr_available = True
        mode = "GPU" if use_gpu else "CPU"
        print(f"[OK] EasyOCR initialized ({mode} mode)")
        return True
    except Exception as e:
        _easyocr_available = False
        print(f"[WARNING] EasyOCR initialization failed: {e}")
        return False


def _line(text, conf, bbox) -> Optional[dict]:
    text = _WHITESPACE_NORMALIZE_PATTERN.sub(' ', str(text or '')).strip()
    if not text:
        return None
    try:
        polygon = [[float(p[0]), float(p[1])] for p in bbox]
    except (TypeError, ValueError, IndexError):
        polygon = []
    return {
        'originalText': text,
        'confidence': float(conf),
        'bbox': polygon if len(polygon) == 4 else None,
    }


def _to_rgb(img):
    import cv2

    if img.ndim == 2:
        return cv2.cvtColor(img, cv2.COLOR_GRAY2RGB)
    if img.shape[2] == 4:
        return cv2.cvtColor(img, cv2.COLOR_BGRA2RGB)
    return cv2.cvtColor(img, cv2.COLOR_BGR2RGB)


def ocr_with_paddle(img, confidence_threshold: float = 0.5) -> List[dict]:
    """PaddleOCR. Format: [([[x1,y1],[x2,y2],[x3,y3],[x4,y4]], (text, confidence))]"""
    if not _paddle_available or _paddle_reader is None:
        return []

    result = _paddle_reader.ocr(_to_rgb(img))
    if not result or not result[0]:
        return []

    parsed = []
    for entry in result[0]:
        if len(entry) != 2:
            continue
        bbox, (text, conf) = entry
        if conf >= confidence_threshold:
            line = _line(text, conf, bbox)
            if line:
                parsed.append(line)
    return parsed


def ocr_with_easyocr(img, confidence_threshold: float = 0.3) -> List[dict]:
    """EasyOCR. Format: [(bbox, text, confidence)]"""
    if not _easyocr_available or _easyocr_reader is None:
        return []

    result = _easyocr_reader.readtext(
        _to_rgb(img),
        detail=1,
        paragraph=False,         # eine Zeile pro Loot-Meldung
        contrast_ths=0.35,
        adjust_contrast=0.5,
        text_threshold=0.72,
        low_text=0.42,
        link_threshold=0.42,
        mag_ratio=1.0,
        batch_size=1,
    )

    parsed = []
    for entry in result:
        if len(entry) != 3:
            continue
        bbox, text, conf = entry
        if conf >= confidence_threshold:
            line = _line(text, conf, bbox)
            if line:
                parsed.append(line)
    return parsed


def ocr_with_tesseract(img, confidence_threshold: float = 0.3) -> List[dict]:
    """Tesseract. Wörter werden per (block, par, line) zu Zeilen mit umschließender Box gruppiert."""
    import pytesseract
    from PIL import Image

    if config.TESS_PATH:
        pytesseract.pytesseract.tesseract_cmd = config.TESS_PATH

    data = pytesseract.image_to_data(
        Image.fromarray(img),
        config='--psm 6',
        output_type=pytesseract.Output.DICT,
    )

    lines = {}
    for i, word in enumerate(data.get('text', [])):
        word = (word or '').strip()
        try:
            conf = float(data['conf'][i])
        except (TypeError, ValueError):
            conf = -1.0
        if not word or conf < 0:
            continue
        key = (data['block_num'][i], data['par_num'][i], data['line_num'][i])
        left, top = data['left'][i], data['top'][i]
        right, bottom = left + data['width'][i], top + data['height'][i]
        entry = lines.setdefault(key, {'words': [], 'confs': [], 'box': [left, top, right, bottom]})
        entry['words'].append(word)
        entry['confs'].append(conf / 100.0)
        box = entry['box']
        box[0], box[1] = min(box[0], left), min(box[1], top)
        box[2], box[3] = max(box[2], right), max(box[3], bottom)

    parsed = []
    for key in sorted(lines):
        entry = lines[key]
        conf = sum(entry['confs']) / len(entry['confs'])
        if conf < confidence_threshold:
            continue
        x1, y1, x2, y2 = entry['box']
        line = _line(' '.join(entry['words']), conf, [[x1, y1], [x2, y1], [x2, y2], [x1, y2]])
        if line:
            parsed.append(line)
    return parsed


def _engine_order(engine: str, fallback_enabled: bool) -> List[str]:
    if engine == 'easyocr':
        engines = ['easyocr', 'paddle', 'tesseract']
    elif engine == 'tesseract':
        engines = ['tesseract', 'paddle', 'easyocr']
    else:
        engines = ['paddle', 'easyocr', 'tesseract']
    return engines if fallback_enabled else engines[:1]


def ocr_auto(img,
             engine: str = 'paddle',
             fallback_enabled: bool = True,
             confidence_threshold: float = 0.3) -> List[dict]:
    """
    Automatische OCR mit Multi-Engine-Fallback.

    Returns:
        Zeilen der ersten Engine, die Text liefert. Leere Liste wenn keine.

    Raises:
        RuntimeError wenn alle versuchten Engines mit Fehler abbrechen.
    """
    errors = []
    for eng in _engine_order(engine, fallback_enabled):
        try:
            if eng == 'paddle':
                if not init_paddle_ocr(config.USE_GPU):
                    continue
                result = ocr_with_paddle(img, confidence_threshold)
            elif eng == 'easyocr':
                if not init_easyocr(config.USE_GPU):
                    continue
                result = ocr_with_easyocr(img, confidence_threshold)
            else:
                result = ocr_with_tesseract(img, confidence_threshold)
        except Exception as e:
            log_debug(f"[OCR] {eng} error: {e}")
            errors.append(f"{eng}: {e}")
            continue
        if result:
            return result
    if errors and len(errors) == len(_engine_order(engine, fallback_enabled)):
        raise RuntimeError("; ".join(errors))
    return []


def get_engine_info() -> dict:
    return {
        'paddle': {'available': _paddle_available, 'initialized': _paddle_reader is not None},
        'easyocr': {'available': _easyocr_available, 'initialized': _easyocr_reader is not None},
        'tesseract': {'available': True, 'initialized': True},
    }


class ScreenRecognizer:
    """Recognition engine adapter: one call per region.

    `recognize(region)` returns {success, items:[{originalText, confidence, bbox}],
    itemsFound, error?, stats}. It never raises.
    """

    def __init__(self, engine: str = None, fallback_enabled: bool = None,
                 confidence_threshold: float = None, debug: bool = False) -> None:
        self.engine = engine or config.OCR_ENGINE
        self.fallback_enabled = config.OCR_FALLBACK_ENABLED if fallback_enabled is None else fallback_enabled
        self.confidence_threshold = (
            config.OCR_CONFIDENCE_FLOOR if confidence_threshold is None else confidence_threshold
        )
        self.debug = debug

    def warm_up(self) -> bool:
        """Load the primary engine up front so the first capture is not slowed by model loading."""
        if self.engine == 'easyocr':
            return init_easyocr(config.USE_GPU)
        if self.engine == 'paddle':
            return init_paddle_ocr(config.USE_GPU) or (self.fallback_enabled and init_easyocr(config.USE_GPU))
        return True

    def recognize(self, region) -> dict:
        total_start = time.perf_counter()
        try:
            img = capture_region(region)
        except Exception as exc:
            log_debug(f"[OCR] Screenshot failed: {exc}")
            return {'success': False, 'items': [], 'itemsFound': 0, 'error': f"Screenshot error: {exc}"}
        capture_ms = (time.perf_counter() - total_start) * 1000

        if self.debug:
            write_debug_capture(img)

        try:
            proc = preprocess(img, adaptive=True)
            ocr_start = time.perf_counter()
            items = ocr_auto(
                proc,
                engine=self.engine,
                fallback_enabled=self.fallback_enabled,
                confidence_threshold=self.confidence_threshold,
            )
            ocr_ms = (time.perf_counter() - ocr_start) * 1000
        except Exception as exc:
            log_debug(f"[OCR] Recognition failed: {exc}")
            return {'success': False, 'items': [], 'itemsFound': 0, 'error': str(exc)}

        total_ms = (time.perf_counter() - total_start) * 1000
        if self.debug:
            log_debug(
                f"[OCR] {len(items)} lines in {total_ms:.1f}ms "
                f"(capture: {capture_ms:.1f}ms, OCR: {ocr_ms:.1f}ms)"
            )
        return {
            'success': True,
            'items': items,
            'itemsFound': len(items),
            'stats': {'total_time': total_ms, 'capture_time': capture_ms, 'ocr_time': ocr_ms},
        }

