from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import numpy as np

from tangramtrack.core.geometry import pose_transform
from tangramtrack.types import BASolution, TangramModel, model_name_for_class


def plane_model_polygons(solution: BASolution, models: dict[str, TangramModel]) -> dict[int, np.ndarray]:
    """
    Model vertices of every observed piece placed in the shared plane by
    scale and pose, with Y flipped (plane Y up).
    """
    out: dict[int, np.ndarray] = {}
    for cid, pose in sorted(solution.poses.items()):
        name = model_name_for_class(cid)
        if name is None or name not in models:
            continue
        plane = pose_transform(models[name].vertices, solution.scale, pose.as_array())
        plane[:, 1] = -plane[:, 1]
        out[int(cid)] = plane
    return out


def save_plane_polygons(path: Path, solution: BASolution, models: dict[str, TangramModel]) -> Path:
    polys = plane_model_polygons(solution, models)
    doc: dict[str, Any] = {
        "schema_version": "tangramtrack.plane_polygons.v0",
        "scale": float(solution.scale),
        "homography_locked": bool(solution.homography_locked),
        "pieces": {
            str(cid): {"model": model_name_for_class(cid), "vertices": poly.tolist()} for cid, poly in polys.items()
        },
    }
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(doc, indent=2, sort_keys=True), encoding="utf-8")
    return path
