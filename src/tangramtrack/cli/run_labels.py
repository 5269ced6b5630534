from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from tangramtrack.api.model_io import load_test_case
from tangramtrack.api.pipeline import TangramPipeline
from tangramtrack.config import PipelineConfig

logger = logging.getLogger(__name__)


def list_label_images(test_dir: Path) -> list[str]:
    return sorted(p.stem for p in (Path(test_dir) / "labels").glob("*.txt"))


def frame_record(image_name: str, index: int, solution) -> dict[str, Any]:
    d = solution.to_dict()
    return {
        "frame": int(index),
        "image": image_name,
        "H": d["H"],
        "scale": d["scale"],
        "poses": d["poses"],
        "errors": d["errors"],
        "locked": d["homography_locked"],
        "quality": d["tracking_quality"],
    }


def run_labels(
    *,
    models_path: Path,
    test_dir: Path,
    image_names: list[str] | None = None,
    config: PipelineConfig | None = None,
    locking: bool = True,
    out_jsonl: Path | None = None,
) -> list[dict[str, Any]]:
    """
    Feed ground-truth label polygons of a test directory through the tracker
    (one frame per image, in order) and collect one record per frame.
    """
    pipeline = TangramPipeline(models_path, config=config)
    pipeline.toggle_locking(locking)
    names = image_names if image_names else list_label_images(test_dir)
    if not names:
        logger.warning("no label files found under %s", Path(test_dir) / "labels")

    records: list[dict[str, Any]] = []
    for i, name in enumerate(names):
        image, polygons = load_test_case(test_dir, name)
        solution = pipeline.process_frame_with_polygons(image, polygons)
        records.append(frame_record(name, i, solution))
        logger.info(
            "%s: pieces=%d mean_error=%.3f locked=%s",
            name,
            len(solution.poses),
            solution.mean_error,
            solution.homography_locked,
        )

    if out_jsonl is not None:
        out_jsonl = Path(out_jsonl)
        out_jsonl.parent.mkdir(parents=True, exist_ok=True)
        with out_jsonl.open("w", encoding="utf-8") as f:
            for rec in records:
                f.write(json.dumps(rec, sort_keys=True) + "\n")
    return records
