from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import pytest

from tangramtrack.api.model_io import ModelLoadError
from tangramtrack.api.pipeline import TangramPipeline
from tangramtrack.config import PipelineConfig
from tangramtrack.core.masks import N_PROTOS, PROTO_SIZE
from tangramtrack.types import Detection

FRAME = np.zeros((480, 640, 3), dtype=np.uint8)
DT = 1.0 / 30.0


def test_pipeline_requires_models(tmp_path: Path) -> None:
    with pytest.raises(ModelLoadError):
        TangramPipeline(tmp_path / "missing.json")


def test_process_frame_with_polygons(models_json: Path, similarity_scene) -> None:
    pipeline = TangramPipeline(models_json)
    assert len(pipeline.models) == 7

    polygons = similarity_scene.polygons([0, 1, 2, 3, 5, 6])
    polygons += [
        (9, similarity_scene.polygon(2)),  # unknown class
        (2, similarity_scene.polygon(3)),  # duplicate class id
        (4, np.zeros((4, 2))),  # vertex count does not match the model
    ]
    sol = pipeline.process_frame_with_polygons(FRAME, polygons)
    assert sorted(sol.poses) == [0, 1, 2, 3, 5, 6]
    assert sol.mean_error < 1e-3
    assert pipeline.last_solution is sol

    detected = pipeline.last_detected_points
    assert sorted(detected) == [0, 1, 2, 3, 5, 6]
    assert np.array_equal(detected[2], similarity_scene.polygon(2))


def test_skipped_pieces_are_reported_as_warnings(models_json: Path, similarity_scene, caplog) -> None:
    pytest.importorskip("cv2")
    pipeline = TangramPipeline(models_json)
    detections = [
        Detection(class_id=11, bbox=(0.0, 0.0, 10.0, 10.0), mask_coeffs=np.zeros(N_PROTOS)),
        Detection(class_id=2, bbox=(100.0, 100.0, 40.0, 40.0), mask_coeffs=np.ones(N_PROTOS)),
    ]
    protos = np.full((N_PROTOS, PROTO_SIZE, PROTO_SIZE), -10.0, dtype=np.float32)
    with caplog.at_level(logging.WARNING, logger="tangramtrack.api.pipeline"):
        sol = pipeline.process_frame(FRAME, detections, protos, timestamp=0.0)
        pipeline.process_frame_with_polygons(FRAME, [(9, similarity_scene.polygon(2))], timestamp=DT)
    assert sol.poses == {}
    warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
    assert "skipping detection of unknown class 11" in warnings
    assert "no usable polygon for class 2" in warnings
    assert "skipping polygon of unknown class 9" in warnings


def test_default_timestamps_advance_by_frame_dt(models_json: Path, similarity_scene) -> None:
    pipeline = TangramPipeline(models_json, config=PipelineConfig(frame_dt=0.1))
    for _ in range(3):
        pipeline.process_frame_with_polygons(FRAME, similarity_scene.polygons())
    assert pipeline.tracked.tracker.timestamp == pytest.approx(0.2)


def test_toggle_locking_resets(models_json: Path, similarity_scene) -> None:
    pipeline = TangramPipeline(models_json)
    for _ in range(5):
        sol = pipeline.process_frame_with_polygons(FRAME, similarity_scene.polygons())
    assert sol.homography_locked

    pipeline.toggle_locking(False)
    assert pipeline.last_solution is None
    assert pipeline.last_detected_points == {}
    assert not pipeline.tracked.has_initialized_tracker
    assert not pipeline.tracked.is_locking_enabled
    for _ in range(6):
        sol = pipeline.process_frame_with_polygons(FRAME, similarity_scene.polygons())
        assert not sol.homography_locked

    pipeline.toggle_locking(True)
    assert pipeline.tracked.is_locking_enabled


def _render_protos(polygons: list[tuple[int, np.ndarray]]) -> np.ndarray:
    cv2 = pytest.importorskip("cv2")
    protos = np.full((N_PROTOS, PROTO_SIZE, PROTO_SIZE), -10.0, dtype=np.float32)
    for cid, poly in polygons:
        # frame pixel = 4 * proto pixel + 2 for a 640x640 frame
        p160 = (poly - 2.0) / 4.0
        pts = np.round(p160 * 16.0).astype(np.int32).reshape(-1, 1, 2)
        cv2.fillPoly(protos[cid], [pts], 10.0, lineType=cv2.LINE_8, shift=4)
    return protos


@pytest.mark.integration
def test_pipeline_masks_to_poses(models_json: Path, similarity_scene) -> None:
    scene = similarity_scene
    scene.H = np.array([[60.0, 0.0, 320.0], [0.0, 60.0, 320.0], [0.0, 0.0, 1.0]])
    polygons = scene.polygons()
    protos = _render_protos(polygons)
    detections = []
    for cid, poly in polygons:
        coeffs = np.zeros(N_PROTOS, dtype=np.float32)
        coeffs[cid] = 1.0
        (x0, y0), (x1, y1) = poly.min(axis=0), poly.max(axis=0)
        detections.append(Detection(class_id=cid, bbox=(x0, y0, x1 - x0, y1 - y0), mask_coeffs=coeffs))
    detections.append(Detection(class_id=11, bbox=(0.0, 0.0, 10.0, 10.0), mask_coeffs=np.zeros(N_PROTOS)))

    pipeline = TangramPipeline(models_json)
    frame = np.zeros((640, 640, 3), dtype=np.uint8)
    sol = pipeline.process_frame(frame, detections, protos, timestamp=0.0)

    assert len(sol.poses) >= 6
    assert sol.mean_error < 8.0
    assert "refine" in sol.timings
    for cid, pts in pipeline.last_detected_points.items():
        truth = dict(polygons)[cid]
        for v in truth:
            assert np.min(np.linalg.norm(pts - v, axis=1)) < 12.0
