import datetime
import os

import config

LOG_MAX_BYTES = 10 * 1024 * 1024


def _log_path() -> str:
    # read at call time so tests/CLI can redirect the log file
    return config.LOG_PATH


def log_text(text):
    """Logging mit automatischer Rotation bei 10MB Limit (verhindert unbegrenztes Wachstum)"""
    path = _log_path()
    try:
        if os.path.exists(path):
            size = os.path.getsize(path)
            if size > LOG_MAX_BYTES:
                # Rotate: .txt → .txt.old (überschreibt alte Rotation)
                try:
                    os.replace(path, f"{path}.old")
                except OSError:
                    try:
                        os.remove(path)
                    except OSError:
                        pass

        with open(path, "a", encoding="utf-8") as f:
            f.write(f"{datetime.datetime.now().isoformat()}:\n{text}\n\n")
    except Exception:
        pass


def log_debug(message: str):
    """Append a debug line to the OCR log with timestamp (for development diagnostics)."""
    try:
        ts = datetime.datetime.now().isoformat()
        with open(_log_path(), "a", encoding="utf-8") as f:
            f.write(f"{ts} [DEBUG] {message}\n")
    except Exception:
        pass


def capture_region(region):
    """Grab a screen rectangle as a BGR numpy array. `region` is a CaptureRegion."""
    import cv2
    import mss
    import numpy as np

    with mss.mss() as sct:
        left, top = region.x, region.y
        if region.display:
            # display id -> mss monitor index (1-based, 0 = all monitors)
            try:
                mon_info = sct.monitors[int(region.display)]
                left += mon_info["left"]
                top += mon_info["top"]
            except (ValueError, IndexError, KeyError):
                pass
        mon = {"left": left, "top": top, "width": region.width, "height": region.height}
        sct_img = sct.grab(mon)
        arr = np.array(sct_img)  # BGRA
        img = cv2.cvtColor(arr, cv2.COLOR_BGRA2BGR)
    return img


def preprocess(img, adaptive=True, fast_mode=False):
    """
    Preprocessing für das Loot-Fenster.

    Args:
        img: Input image (BGR oder Grayscale)
        adaptive: Nutze CLAHE (sanft, clipLimit 1.5)
        fast_mode: Nur Kontrast-Anpassung, kein CLAHE

    Returns:
        Grayscale image optimiert für OCR
    """
    import cv2

    if img.ndim == 3:
        gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    else:
        gray = img.copy()

    if fast_mode:
        return cv2.convertScaleAbs(gray, alpha=1.3, beta=15)

    if adaptive:
        clahe = cv2.createCLAHE(clipLimit=1.5, tileGridSize=(8, 8))
        gray = clahe.apply(gray)

    # KEINE Binarisierung - zerstört farbigen Loot-Text
    return cv2.convertScaleAbs(gray, alpha=1.2, beta=10)


def write_debug_capture(img_bgr, path="debug_capture.png") -> None:
    """Persist the latest captured frame so investigation always has fresh material."""
    try:
        import cv2
        from PIL import Image

        Image.fromarray(cv2.cvtColor(img_bgr, cv2.COLOR_BGR2RGB)).save(path)
    except Exception as save_err:
        log_debug(f"[DEBUG] Failed to write debug capture: {save_err}")
