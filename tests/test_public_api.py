from __future__ import annotations


def test_public_api_exports() -> None:
    import tangramtrack as tt

    assert hasattr(tt, "TangramPipeline")
    assert hasattr(tt, "TrackedBA")
    assert hasattr(tt, "BundleAdjustment")
    assert hasattr(tt, "KalmanTracker")
    assert hasattr(tt, "load_tangram_models")
    assert hasattr(tt, "plane_model_polygons")
    assert issubclass(tt.ModelLoadError, RuntimeError)
    assert issubclass(tt.LabelFormatError, ValueError)
    assert issubclass(tt.config.ConfigValidationError, ValueError)
