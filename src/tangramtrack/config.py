from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal


class ConfigValidationError(ValueError):
    pass


Loss = Literal["linear", "huber", "soft_l1", "cauchy", "arctan"]


@dataclass(frozen=True)
class SolverConfig:
    """
    Bundle adjustment knobs.

    - `f_scale`: robustness scale (pixels) used to rank correspondences
    - `lambda_h`, `lambda_s`: weights of the homography / scale priors
    - `few_pieces_prior_boost`: prior multiplier when fewer than
      `min_pieces_for_free_h` pieces are visible
    """

    f_scale: float = 10.0
    lambda_h: float = 1.0
    lambda_s: float = 1.0
    min_pieces_for_free_h: int = 3
    few_pieces_prior_boost: float = 100.0
    loss: Loss = "linear"


@dataclass(frozen=True)
class FilterConfig:
    process_noise_scale: float = 0.01
    measurement_noise_scale: float = 1.0


@dataclass(frozen=True)
class TrackingConfig:
    locking_enabled: bool = True
    frames_needed_for_lock: int = 5
    lock_error_threshold: float = 5.0
    unlock_error_threshold: float = 15.0
    error_rejection_threshold: float = 2.0
    h_update_min_improvement: float = 0.05
    h_update_max_norm: float = 0.10
    max_iterations: int = 100
    outlier_weight: float = 0.1
    adaptive_error_scale: float = 5.0


@dataclass(frozen=True)
class PipelineConfig:
    tracking: TrackingConfig = field(default_factory=TrackingConfig)
    solver: SolverConfig = field(default_factory=SolverConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    mask_threshold: float = 0.5
    frame_dt: float = 1.0 / 30.0


_LOSSES = ("linear", "huber", "soft_l1", "cauchy", "arctan")


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigValidationError(msg)


def _positive(section: dict[str, Any], key: str, default: float, where: str) -> float:
    value = float(section.get(key, default))
    _require(value > 0.0, f"{where}.{key} must be > 0")
    return value


def load_pipeline_config(path: Path) -> PipelineConfig:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigValidationError(f"invalid JSON in {path}: {exc}") from exc
    return parse_pipeline_config(data)


def parse_pipeline_config(data: dict[str, Any]) -> PipelineConfig:
    schema_version = data.get("schema_version")
    _require(schema_version == "tangramtrack.config.v0", "schema_version must be tangramtrack.config.v0")

    tracking = data.get("tracking", {})
    solver = data.get("solver", {})
    filt = data.get("filter", {})
    _require(isinstance(tracking, dict), "tracking must be an object")
    _require(isinstance(solver, dict), "solver must be an object")
    _require(isinstance(filt, dict), "filter must be an object")

    td = TrackingConfig()
    frames_needed = int(tracking.get("frames_needed_for_lock", td.frames_needed_for_lock))
    _require(frames_needed >= 1, "tracking.frames_needed_for_lock must be >= 1")
    lock_thr = _positive(tracking, "lock_error_threshold", td.lock_error_threshold, "tracking")
    unlock_thr = _positive(tracking, "unlock_error_threshold", td.unlock_error_threshold, "tracking")
    _require(unlock_thr > lock_thr, "tracking.unlock_error_threshold must be > lock_error_threshold")
    max_iterations = int(tracking.get("max_iterations", td.max_iterations))
    _require(max_iterations >= 1, "tracking.max_iterations must be >= 1")
    min_improvement = float(tracking.get("h_update_min_improvement", td.h_update_min_improvement))
    _require(min_improvement >= 0.0, "tracking.h_update_min_improvement must be >= 0")
    outlier_weight = float(tracking.get("outlier_weight", td.outlier_weight))
    _require(0.0 < outlier_weight <= 1.0, "tracking.outlier_weight must be in (0, 1]")

    tracking_cfg = TrackingConfig(
        locking_enabled=bool(tracking.get("locking_enabled", td.locking_enabled)),
        frames_needed_for_lock=frames_needed,
        lock_error_threshold=lock_thr,
        unlock_error_threshold=unlock_thr,
        error_rejection_threshold=_positive(
            tracking, "error_rejection_threshold", td.error_rejection_threshold, "tracking"
        ),
        h_update_min_improvement=min_improvement,
        h_update_max_norm=_positive(tracking, "h_update_max_norm", td.h_update_max_norm, "tracking"),
        max_iterations=max_iterations,
        outlier_weight=outlier_weight,
        adaptive_error_scale=_positive(tracking, "adaptive_error_scale", td.adaptive_error_scale, "tracking"),
    )

    sd = SolverConfig()
    loss = str(solver.get("loss", sd.loss))
    _require(loss in _LOSSES, f"solver.loss must be one of {_LOSSES}")
    min_pieces = int(solver.get("min_pieces_for_free_h", sd.min_pieces_for_free_h))
    _require(min_pieces >= 0, "solver.min_pieces_for_free_h must be >= 0")
    lambda_h = float(solver.get("lambda_h", sd.lambda_h))
    lambda_s = float(solver.get("lambda_s", sd.lambda_s))
    _require(lambda_h >= 0.0 and lambda_s >= 0.0, "solver.lambda_h / lambda_s must be >= 0")
    solver_cfg = SolverConfig(
        f_scale=_positive(solver, "f_scale", sd.f_scale, "solver"),
        lambda_h=lambda_h,
        lambda_s=lambda_s,
        min_pieces_for_free_h=min_pieces,
        few_pieces_prior_boost=_positive(solver, "few_pieces_prior_boost", sd.few_pieces_prior_boost, "solver"),
        loss=loss,  # type: ignore[arg-type]
    )

    fd = FilterConfig()
    filter_cfg = FilterConfig(
        process_noise_scale=_positive(filt, "process_noise_scale", fd.process_noise_scale, "filter"),
        measurement_noise_scale=_positive(filt, "measurement_noise_scale", fd.measurement_noise_scale, "filter"),
    )

    mask_threshold = float(data.get("mask_threshold", 0.5))
    _require(0.0 <= mask_threshold < 1.0, "mask_threshold must be in [0, 1)")
    frame_dt = _positive(data, "frame_dt", 1.0 / 30.0, "config")

    return PipelineConfig(
        tracking=tracking_cfg,
        solver=solver_cfg,
        filter=filter_cfg,
        mask_threshold=mask_threshold,
        frame_dt=frame_dt,
    )
