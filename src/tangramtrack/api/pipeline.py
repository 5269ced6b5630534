from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Sequence
from pathlib import Path

import numpy as np

from tangramtrack.api.model_io import load_model_colors_from_assets, load_tangram_models
from tangramtrack.ba.tracked import TrackedBA
from tangramtrack.config import PipelineConfig
from tangramtrack.core.masks import generate_mask
from tangramtrack.core.refinement import MaskRefiner
from tangramtrack.types import BAInputs, BASolution, Detection, TangramModel, model_name_for_class

logger = logging.getLogger(__name__)


class TangramPipeline:
    """
    Detections of one video stream -> plane homography, scale and piece poses.

    Per frame: YOLO-seg mask -> refined polygon -> frame pixels -> tracked
    bundle adjustment. Not thread-safe; use one instance per stream.
    """

    def __init__(
        self,
        models_path: Path,
        assets_dir: Path | None = None,
        config: PipelineConfig | None = None,
    ) -> None:
        self.config = config or PipelineConfig()
        models = load_tangram_models(Path(models_path))
        if assets_dir is not None:
            models = load_model_colors_from_assets(models, Path(assets_dir))
        self._models = models
        self.refiner = MaskRefiner()
        self.tracked = TrackedBA(self.config.tracking, self.config.solver, self.config.filter)
        self._last_solution: BASolution | None = None
        self._last_detected_points: dict[int, np.ndarray] = {}
        self._last_timestamp: float | None = None

    @property
    def models(self) -> dict[str, TangramModel]:
        return dict(self._models)

    @property
    def last_solution(self) -> BASolution | None:
        return self._last_solution

    @property
    def last_detected_points(self) -> dict[int, np.ndarray]:
        return {k: v.copy() for k, v in self._last_detected_points.items()}

    def reset(self) -> None:
        self.tracked.reset()
        self._last_solution = None
        self._last_detected_points = {}
        self._last_timestamp = None

    def toggle_locking(self, enabled: bool) -> None:
        self.reset()
        self.tracked.set_locking_enabled(enabled)
        logger.info("homography locking %s", "enabled" if enabled else "disabled")

    def model_for_class(self, class_id: int) -> TangramModel | None:
        name = model_name_for_class(class_id)
        return None if name is None else self._models.get(name)

    def _next_timestamp(self, timestamp: float | None) -> float:
        if timestamp is None:
            timestamp = 0.0 if self._last_timestamp is None else self._last_timestamp + self.config.frame_dt
        self._last_timestamp = float(timestamp)
        return self._last_timestamp

    def process_frame(
        self,
        frame: np.ndarray,
        detections: Sequence[Detection],
        proto_masks: np.ndarray,
        timestamp: float | None = None,
    ) -> BASolution:
        height, width = np.asarray(frame).shape[:2]
        size = np.array([width, height], dtype=np.float64)
        t0 = time.perf_counter()
        polygons: list[tuple[int, np.ndarray]] = []
        for det in detections:
            model = self.model_for_class(det.class_id)
            if model is None:
                logger.warning("skipping detection of unknown class %s", det.class_id)
                continue
            mask = generate_mask(proto_masks, det.mask_coeffs, self.config.mask_threshold)
            result = self.refiner.refine(det, mask, expected_n=model.vertices.shape[0])
            if not result.usable:
                logger.warning("no usable polygon for class %d", det.class_id)
                continue
            polygons.append((int(det.class_id), result.polygon_norm * size))
        refine_ms = (time.perf_counter() - t0) * 1e3

        solution = self.process_frame_with_polygons(frame, polygons, timestamp)
        solution.timings["refine"] = refine_ms
        return solution

    def process_frame_with_polygons(
        self,
        frame: np.ndarray | None,
        polygons: Iterable[tuple[int, np.ndarray]],
        timestamp: float | None = None,
    ) -> BASolution:
        """Run tracking on pixel polygons directly, bypassing mask refinement."""
        detected: list[np.ndarray] = []
        model_pts: list[np.ndarray] = []
        shapes: list[str] = []
        class_ids: list[int] = []
        for cid, poly in polygons:
            cid = int(cid)
            model = self.model_for_class(cid)
            if model is None:
                logger.warning("skipping polygon of unknown class %s", cid)
                continue
            if cid in class_ids:
                logger.debug("duplicate class %d in frame; keeping the first", cid)
                continue
            poly = np.asarray(poly, dtype=np.float64).reshape(-1, 2)
            if poly.shape[0] != model.vertices.shape[0]:
                logger.warning(
                    "class %d: %d vertices detected, model has %d; skipped",
                    cid,
                    poly.shape[0],
                    model.vertices.shape[0],
                )
                continue
            detected.append(poly)
            model_pts.append(model.vertices)
            shapes.append(model.type)
            class_ids.append(cid)

        inputs = BAInputs(detected_points=detected, model_points=model_pts, shape_types=shapes, class_ids=class_ids)
        solution = self.tracked.process_frame(inputs, self._next_timestamp(timestamp))
        self._last_detected_points = dict(zip(class_ids, detected, strict=True))
        self._last_solution = solution
        logger.debug(
            "frame: pieces=%d mean_error=%.3f locked=%s quality=%.3f",
            len(class_ids),
            solution.mean_error,
            solution.homography_locked,
            solution.tracking_quality,
        )
        return solution
