from __future__ import annotations

from pathlib import Path

import numpy as np
from PIL import Image, ImageOps


def _to_u8(arr: np.ndarray) -> np.ndarray:
    """Integer inputs wider than 8 bits are read as 16-bit; floats as [0, 1]."""
    if arr.dtype == np.uint8:
        return arr
    if np.issubdtype(arr.dtype, np.integer):
        return (np.clip(arr, 0, 65535).astype(np.uint32) >> 8).astype(np.uint8)
    return np.round(np.clip(arr, 0.0, 1.0) * 255.0).astype(np.uint8)


def _read_cv2(p: Path) -> np.ndarray | None:
    try:
        import cv2  # type: ignore
    except ImportError:
        return None
    # ANYDEPTH keeps 16-bit samples so they can be scaled instead of clipped;
    # COLOR expands gray, drops alpha and applies the EXIF orientation.
    img = cv2.imread(str(p), cv2.IMREAD_COLOR | cv2.IMREAD_ANYDEPTH)
    if img is None:
        return None
    return _to_u8(img)


def _read_pillow(p: Path) -> np.ndarray:
    with Image.open(p) as im:
        im = ImageOps.exif_transpose(im)
        if im.mode in ("I", "I;16", "I;16B", "I;16L"):
            gray = _to_u8(np.asarray(im))
            return np.repeat(gray[:, :, None], 3, axis=2)
        rgb = np.asarray(im.convert("RGB"), dtype=np.uint8)
    return np.ascontiguousarray(rgb[:, :, ::-1])


def load_bgr_u8(path: str | Path) -> np.ndarray:
    """
    Load a video frame or still as (H,W,3) BGR uint8.

    OpenCV decodes when it is installed and supports the format, Pillow
    otherwise. Both backends return the same array for grayscale, alpha and
    16-bit inputs: gray is replicated, alpha dropped, 16-bit samples keep
    their high byte, and the EXIF orientation is applied.
    """
    p = Path(path)
    if not p.is_file():
        raise FileNotFoundError(str(p))
    img = _read_cv2(p)
    if img is not None:
        return img
    return _read_pillow(p)
