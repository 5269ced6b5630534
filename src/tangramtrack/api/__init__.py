from tangramtrack.api.export import plane_model_polygons, save_plane_polygons
from tangramtrack.api.model_io import (
    LabelFormatError,
    ModelLoadError,
    load_model_colors_from_assets,
    load_polygon_labels,
    load_tangram_models,
    load_test_case,
)
from tangramtrack.api.pipeline import TangramPipeline

__all__ = [
    "TangramPipeline",
    "ModelLoadError",
    "LabelFormatError",
    "load_tangram_models",
    "load_model_colors_from_assets",
    "load_polygon_labels",
    "load_test_case",
    "plane_model_polygons",
    "save_plane_polygons",
]
