from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pytest

from tangramtrack.core.geometry import pose_transform, project_points
from tangramtrack.types import PIECE_CLASSES, BAInputs, Pose, TangramModel

R2 = float(np.sqrt(2.0))

# Canonical tangram pieces (model units; the square of the full puzzle has side 4).
MODEL_VERTICES: dict[str, list[list[float]]] = {
    "tangram_parallelogram": [[0.0, 0.0], [2.0, 0.0], [3.0, 1.0], [1.0, 1.0]],
    "tangram_square": [[0.0, 0.0], [R2, 0.0], [R2, R2], [0.0, R2]],
    "tangram_triangle_lrg": [[0.0, 0.0], [2 * R2, 0.0], [0.0, 2 * R2]],
    "tangram_triangle_lrg2": [[0.0, 0.0], [2 * R2, 0.0], [0.0, 2 * R2]],
    "tangram_triangle_med": [[0.0, 0.0], [2.0, 0.0], [0.0, 2.0]],
    "tangram_triangle_sml": [[0.0, 0.0], [R2, 0.0], [0.0, R2]],
    "tangram_triangle_sml2": [[0.0, 0.0], [R2, 0.0], [0.0, R2]],
}

SCENE_POSES: dict[int, Pose] = {
    0: Pose(0.3, -3.0, -3.0),
    1: Pose(0.8, 1.0, -3.0),
    2: Pose(0.0, -3.5, 0.5),
    3: Pose(2.0, 2.5, 1.0),
    4: Pose(-0.5, -0.5, 2.5),
    5: Pose(1.2, 3.0, -1.0),
    6: Pose(-2.5, 0.0, -0.5),
}


def make_models() -> dict[str, TangramModel]:
    return {
        name: TangramModel(name=name, type=PIECE_CLASSES[cid][1], vertices=np.asarray(MODEL_VERTICES[name]))
        for cid, (name, _, _) in PIECE_CLASSES.items()
    }


@dataclass
class Scene:
    H: np.ndarray
    scale: float
    poses: dict[int, Pose]
    models: dict[str, TangramModel]

    def model_for(self, cid: int) -> TangramModel:
        return self.models[PIECE_CLASSES[cid][0]]

    def polygon(self, cid: int, roll: int = 0) -> np.ndarray:
        model = self.model_for(cid)
        plane = pose_transform(model.vertices, self.scale, self.poses[cid].as_array())
        return np.roll(project_points(self.H, plane), -roll, axis=0)

    def polygons(self, ids: list[int] | None = None, roll: int = 0) -> list[tuple[int, np.ndarray]]:
        ids = sorted(self.poses) if ids is None else ids
        return [(cid, self.polygon(cid, roll)) for cid in ids]

    def inputs(self, ids: list[int] | None = None, roll: int = 0, **kwargs) -> BAInputs:
        polys = self.polygons(ids, roll)
        return BAInputs(
            detected_points=[p for _, p in polys],
            model_points=[self.model_for(cid).vertices for cid, _ in polys],
            shape_types=[self.model_for(cid).type for cid, _ in polys],
            class_ids=[cid for cid, _ in polys],
            **kwargs,
        )


@pytest.fixture
def tangram_models() -> dict[str, TangramModel]:
    return make_models()


@pytest.fixture
def models_json(tmp_path: Path) -> Path:
    doc = {
        name: {"type": PIECE_CLASSES[cid][1], "vertices": MODEL_VERTICES[name], "color": [200, 100, 50]}
        for cid, (name, _, _) in PIECE_CLASSES.items()
    }
    p = tmp_path / "tangram_models.json"
    p.write_text(json.dumps(doc), encoding="utf-8")
    return p


@pytest.fixture
def similarity_scene(tangram_models) -> Scene:
    H = np.array([[40.0, 0.0, 320.0], [0.0, 40.0, 240.0], [0.0, 0.0, 1.0]])
    return Scene(H=H, scale=1.0, poses=dict(SCENE_POSES), models=tangram_models)


@pytest.fixture
def perspective_scene(tangram_models) -> Scene:
    H = np.array([[40.0, 3.0, 320.0], [-2.0, 38.0, 240.0], [1e-3, 2e-3, 1.0]])
    return Scene(H=H, scale=1.0, poses=dict(SCENE_POSES), models=tangram_models)
