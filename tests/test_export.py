from __future__ import annotations

import json
from pathlib import Path

import numpy as np

from tangramtrack.api.export import plane_model_polygons, save_plane_polygons
from tangramtrack.types import BASolution, Pose


def test_plane_polygons_apply_scale_pose_and_flip_y(tangram_models) -> None:
    sol = BASolution(H=np.eye(3), scale=2.0, poses={1: Pose(0.0, 1.0, 2.0), 42: Pose()})
    polys = plane_model_polygons(sol, tangram_models)
    assert list(polys) == [1]
    expected = 2.0 * tangram_models["tangram_square"].vertices + np.array([1.0, 2.0])
    expected[:, 1] *= -1.0
    assert np.allclose(polys[1], expected)


def test_plane_polygons_rotation(tangram_models) -> None:
    sol = BASolution(H=np.eye(3), scale=1.0, poses={4: Pose(np.pi / 2, 0.0, 0.0)})
    tri = plane_model_polygons(sol, tangram_models)[4]
    # (2, 0) rotates to (0, 2), then Y flips.
    assert np.allclose(tri[1], [0.0, -2.0])


def test_save_plane_polygons(tmp_path: Path, tangram_models) -> None:
    sol = BASolution(H=np.eye(3), scale=1.0, poses={0: Pose(), 5: Pose(0.1, 0.0, 0.0)}, homography_locked=True)
    out = save_plane_polygons(tmp_path / "sub" / "plane.json", sol, tangram_models)
    doc = json.loads(out.read_text(encoding="utf-8"))
    assert doc["schema_version"] == "tangramtrack.plane_polygons.v0"
    assert doc["homography_locked"] is True
    assert sorted(doc["pieces"]) == ["0", "5"]
    assert doc["pieces"]["5"]["model"] == "tangram_triangle_sml"
    assert len(doc["pieces"]["0"]["vertices"]) == 4
