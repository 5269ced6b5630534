from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from tangramtrack.core import image_io
from tangramtrack.core.image_io import load_bgr_u8


def _write_rgb(path: Path, arr: np.ndarray) -> None:
    img = Image.fromarray(arr.astype(np.uint8))
    if path.suffix.lower() == ".webp":
        img.save(path, lossless=True)
    else:
        img.save(path)


def test_load_bgr_u8_png_and_webp(tmp_path: Path) -> None:
    arr = np.zeros((8, 8, 3), dtype=np.uint8)
    arr[..., 0] = 200  # red channel

    p_png = tmp_path / "a.png"
    p_webp = tmp_path / "a.webp"
    _write_rgb(p_png, arr)
    _write_rgb(p_webp, arr)

    for p in (p_png, p_webp):
        img = load_bgr_u8(p)
        assert img.shape == (8, 8, 3)
        assert img.dtype == np.uint8
        assert np.all(img[..., 2] == 200)
        assert np.all(img[..., 0] == 0)


def test_load_bgr_u8_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_bgr_u8(tmp_path / "missing.png")


def _write_gray16_and_rgba(tmp_path: Path) -> tuple[Path, Path]:
    gray = np.full((6, 5), 200 * 257, dtype=np.uint16)
    p_gray = tmp_path / "gray16.png"
    Image.fromarray(gray).save(p_gray)

    rgba = np.zeros((6, 5, 4), dtype=np.uint8)
    rgba[..., 0] = 10
    rgba[..., 1] = 20
    rgba[..., 2] = 30
    rgba[..., 3] = 40
    p_rgba = tmp_path / "rgba.png"
    Image.fromarray(rgba).save(p_rgba)
    return p_gray, p_rgba


def _check_gray16_and_rgba(p_gray: Path, p_rgba: Path) -> None:
    img = load_bgr_u8(p_gray)
    assert img.shape == (6, 5, 3)
    assert img.dtype == np.uint8
    assert np.all(img == 200)

    img = load_bgr_u8(p_rgba)
    assert img.shape == (6, 5, 3)
    assert np.all(img[..., 0] == 30)
    assert np.all(img[..., 1] == 20)
    assert np.all(img[..., 2] == 10)


def test_load_bgr_u8_gray16_and_alpha_with_opencv(tmp_path: Path) -> None:
    pytest.importorskip("cv2")
    _check_gray16_and_rgba(*_write_gray16_and_rgba(tmp_path))


def test_load_bgr_u8_gray16_and_alpha_with_pillow(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(image_io, "_read_cv2", lambda p: None)
    _check_gray16_and_rgba(*_write_gray16_and_rgba(tmp_path))
