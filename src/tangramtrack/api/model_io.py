from __future__ import annotations

import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any

import numpy as np

from tangramtrack.core.image_io import load_bgr_u8
from tangramtrack.types import TangramModel

logger = logging.getLogger(__name__)


class ModelLoadError(RuntimeError):
    pass


class LabelFormatError(ValueError):
    pass


def _to_vertices(x: Any, name: str) -> np.ndarray:
    try:
        v = np.asarray(x, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise ModelLoadError(f"{name}: vertices must be numeric") from exc
    if v.ndim != 2 or v.shape[1] != 2 or v.shape[0] < 3:
        raise ModelLoadError(f"{name}: vertices must be a list of at least 3 [x, y] pairs")
    if not np.all(np.isfinite(v)):
        raise ModelLoadError(f"{name}: non-finite vertex coordinates")
    return v


def _rgb_to_bgr(rgb: Any, name: str) -> tuple[int, int, int]:
    try:
        r, g, b = (int(round(float(c))) for c in rgb)
    except (TypeError, ValueError) as exc:
        raise ModelLoadError(f"{name}: color must be [r, g, b]") from exc
    return (int(np.clip(b, 0, 255)), int(np.clip(g, 0, 255)), int(np.clip(r, 0, 255)))


def load_tangram_models(path: Path) -> dict[str, TangramModel]:
    """
    Load canonical piece models from JSON:

      {"tangram_square": {"type": "square", "vertices": [[x, y], ...], "color": [r, g, b]}, ...}

    `color` is optional. Any failure raises `ModelLoadError`.
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ModelLoadError(f"models file not found: {path}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ModelLoadError(f"cannot read models file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ModelLoadError(f"invalid JSON in {path}: {exc}") from exc
    if not isinstance(data, dict) or not data:
        raise ModelLoadError(f"{path}: expected a non-empty JSON object of models")

    models: dict[str, TangramModel] = {}
    for name, entry in data.items():
        if not isinstance(entry, dict):
            raise ModelLoadError(f"{name}: model entry must be an object")
        if "type" not in entry or "vertices" not in entry:
            raise ModelLoadError(f"{name}: model entry needs 'type' and 'vertices'")
        color = _rgb_to_bgr(entry["color"], name) if "color" in entry else (128, 128, 128)
        models[str(name)] = TangramModel(
            name=str(name),
            type=str(entry["type"]),
            vertices=_to_vertices(entry["vertices"], name),
            color_bgr=color,
        )
    logger.info("loaded %d tangram models from %s", len(models), path)
    return models


def _read_mtl_kd(path: Path) -> tuple[float, float, float] | None:
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        parts = line.strip().split()
        if len(parts) >= 4 and parts[0] == "Kd":
            try:
                return float(parts[1]), float(parts[2]), float(parts[3])
            except ValueError:
                logger.warning("unparsable Kd line in %s: %r", path, line)
                return None
    return None


def load_model_colors_from_assets(models: dict[str, TangramModel], assets_dir: Path) -> dict[str, TangramModel]:
    """Override display colors with the first `Kd r g b` line of `<name>.mtl` (0-1 floats)."""
    assets_dir = Path(assets_dir)
    out = dict(models)
    for name, model in models.items():
        for mtl in (assets_dir / f"{name}.mtl", assets_dir / name / f"{name}.mtl"):
            if not mtl.is_file():
                continue
            kd = _read_mtl_kd(mtl)
            if kd is not None:
                r, g, b = (int(round(np.clip(c, 0.0, 1.0) * 255.0)) for c in kd)
                out[name] = replace(model, color_bgr=(b, g, r))
                logger.debug("color for %s from %s: rgb=(%d, %d, %d)", name, mtl, r, g, b)
            break
    return out


def load_polygon_labels(path: Path, width: int, height: int) -> list[tuple[int, np.ndarray]]:
    """
    Read a YOLO segmentation label file (`cls x1 y1 x2 y2 ...`, normalized
    coordinates) and return (class_id, (N,2) pixel polygon) per line.
    """
    if width <= 0 or height <= 0:
        raise ValueError("width and height must be > 0")
    scale = np.array([float(width), float(height)], dtype=np.float64)
    out: list[tuple[int, np.ndarray]] = []
    for lineno, line in enumerate(Path(path).read_text(encoding="utf-8").splitlines(), start=1):
        parts = line.split()
        if not parts:
            continue
        try:
            cls = int(parts[0])
            coords = np.asarray([float(v) for v in parts[1:]], dtype=np.float64)
        except ValueError as exc:
            raise LabelFormatError(f"{path}:{lineno}: non-numeric label entry") from exc
        if coords.size < 6 or coords.size % 2 != 0:
            raise LabelFormatError(f"{path}:{lineno}: expected an even number (>= 6) of coordinates")
        out.append((cls, coords.reshape(-1, 2) * scale))
    return out


def load_test_case(test_dir: Path, image_name: str) -> tuple[np.ndarray, list[tuple[int, np.ndarray]]]:
    """Load `<dir>/images/<name>.{jpg,png}` and its polygons from `<dir>/labels/<name>.txt`."""
    test_dir = Path(test_dir)
    image_path = None
    for ext in (".jpg", ".png", ".jpeg"):
        candidate = test_dir / "images" / f"{image_name}{ext}"
        if candidate.is_file():
            image_path = candidate
            break
    if image_path is None:
        raise FileNotFoundError(f"no image named {image_name!r} in {test_dir / 'images'}")
    image = load_bgr_u8(image_path)
    h, w = image.shape[:2]
    polygons = load_polygon_labels(test_dir / "labels" / f"{image_name}.txt", w, h)
    return image, polygons
