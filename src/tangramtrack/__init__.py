from tangramtrack import config
from tangramtrack.api import (
    LabelFormatError,
    ModelLoadError,
    TangramPipeline,
    load_polygon_labels,
    load_tangram_models,
    load_test_case,
    plane_model_polygons,
    save_plane_polygons,
)
from tangramtrack.ba import BundleAdjustment, KalmanTracker, TrackedBA
from tangramtrack.types import BAInputs, BASolution, Correspondence, Detection, Pose, TangramModel

__all__ = [
    "config",
    "TangramPipeline",
    "ModelLoadError",
    "LabelFormatError",
    "load_tangram_models",
    "load_polygon_labels",
    "load_test_case",
    "plane_model_polygons",
    "save_plane_polygons",
    "BundleAdjustment",
    "KalmanTracker",
    "TrackedBA",
    "BAInputs",
    "BASolution",
    "Correspondence",
    "Detection",
    "Pose",
    "TangramModel",
]
