from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import numpy as np

from tangramtrack.ba.bundle_adjustment import BundleAdjustment
from tangramtrack.ba.correspondence import ReprojectionCost, select_best_pose
from tangramtrack.ba.kalman import KalmanTracker
from tangramtrack.ba.parameterization import SCALE_INDEX, pose_slice
from tangramtrack.config import FilterConfig, SolverConfig, TrackingConfig
from tangramtrack.core.geometry import h_to_params
from tangramtrack.types import BAInputs, BASolution, Correspondence, Pose

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoseSelectionResult:
    pose: Pose
    correspondence: Correspondence | None
    cost: float


class TrackedBA:
    """
    Per-frame driver around `BundleAdjustment` and `KalmanTracker`.

    State machine: unlocked -> locked once the mean piece error stays below
    `lock_error_threshold` for `frames_needed_for_lock` consecutive frames;
    locked -> unlocked when it exceeds `unlock_error_threshold`. While locked,
    H and scale are frozen and only piece poses are optimized.

    One instance per video stream; calls must be serialized by the caller.
    """

    def __init__(
        self,
        config: TrackingConfig | None = None,
        solver_config: SolverConfig | None = None,
        filter_config: FilterConfig | None = None,
    ) -> None:
        self.config = config or TrackingConfig()
        self.solver_config = solver_config or SolverConfig()
        self.filter_config = filter_config or FilterConfig()
        self._ba = BundleAdjustment(self.solver_config)
        self._locking_enabled = bool(self.config.locking_enabled)
        self.reset()

    def reset(self) -> None:
        self._tracker = KalmanTracker(
            process_noise_scale=self.filter_config.process_noise_scale,
            measurement_noise_scale=self.filter_config.measurement_noise_scale,
        )
        self._previous_mean_error = -1.0
        self._accepted_H: np.ndarray | None = None
        self._accepted_scale = 1.0
        self._homography_locked = False
        self._locked_H: np.ndarray | None = None
        self._locked_scale = 1.0
        self._frames_stable = 0
        self._last_timestamp: float | None = None
        self._last_used_warm_start = False
        self._last_optimization_time_ms = 0.0

    def set_locking_enabled(self, enabled: bool) -> None:
        self._locking_enabled = bool(enabled)
        if not self._locking_enabled:
            self._homography_locked = False
            self._locked_H = None
            self._frames_stable = 0

    @property
    def is_locking_enabled(self) -> bool:
        return self._locking_enabled

    @property
    def is_homography_locked(self) -> bool:
        return self._homography_locked

    @property
    def has_initialized_tracker(self) -> bool:
        return self._tracker.is_initialized

    @property
    def tracker(self) -> KalmanTracker:
        return self._tracker

    @property
    def last_used_warm_start(self) -> bool:
        return self._last_used_warm_start

    @property
    def last_optimization_time_ms(self) -> float:
        return self._last_optimization_time_ms

    @property
    def accepted_homography(self) -> np.ndarray | None:
        return None if self._accepted_H is None else self._accepted_H.copy()

    @property
    def accepted_scale(self) -> float:
        return self._accepted_scale

    @property
    def frames_stable(self) -> int:
        return self._frames_stable

    @property
    def previous_mean_error(self) -> float:
        return self._previous_mean_error

    def select_best_pose_and_correspondence(
        self,
        detected: np.ndarray,
        model: np.ndarray,
        shape_type: str,
        H: np.ndarray,
        scale: float,
        init_pose: Pose | None,
    ) -> PoseSelectionResult:
        cost = ReprojectionCost(detected, model, shape_type, weight=1.0, f_scale=self.solver_config.f_scale)
        sel = select_best_pose(
            cost,
            h_to_params(H),
            scale,
            None if init_pose is None else init_pose.as_array(),
        )
        return PoseSelectionResult(
            pose=Pose.from_array(sel.pose),
            correspondence=cost.correspondence(sel.candidate_index),
            cost=sel.cost,
        )

    def build_adaptive_measurement_covariance(self, errors: dict[int, float]) -> np.ndarray:
        """
        Diagonal measurement covariance: base variances inflated by
        1 + (err / adaptive_error_scale)^2, per piece for the pose slots and
        from the mean error for H and scale.
        """
        variances = self._tracker.base_measurement_variances()
        s = self.config.adaptive_error_scale
        for cid, err in errors.items():
            variances[pose_slice(cid)] *= 1.0 + (float(err) / s) ** 2
        if errors:
            mean_err = float(np.mean(list(errors.values())))
            variances[: SCALE_INDEX + 1] *= 1.0 + (mean_err / s) ** 2
        return np.diag(variances)

    def _warm_start(self, inputs: BAInputs) -> tuple[np.ndarray | None, float, dict[int, Pose]]:
        given: dict[int, Pose] = {}
        if inputs.has_initial_guess and inputs.poses_init is not None:
            given = {int(c): p for c, p in zip(inputs.class_ids, inputs.poses_init, strict=True)}

        if self._tracker.is_initialized:
            H, scale, poses = self._tracker.get_state()
        elif self._accepted_H is not None:
            H, scale, poses = self._accepted_H, self._accepted_scale, given
        elif inputs.has_initial_guess:
            H, scale, poses = np.asarray(inputs.H_init, dtype=np.float64), float(inputs.scale_init), given
        else:
            self._last_used_warm_start = False
            return None, 1.0, {}
        self._last_used_warm_start = True

        if self._homography_locked and self._locked_H is not None:
            H, scale = self._locked_H, self._locked_scale
        elif not scale > 0.0:
            scale = self._accepted_scale
        return H, float(scale), poses

    def _emit_without_observations(self, timings: dict[str, float], t_start: float) -> BASolution:
        if self._homography_locked and self._locked_H is not None:
            H, scale = self._locked_H.copy(), self._locked_scale
        elif self._tracker.is_initialized:
            H, scale, _ = self._tracker.get_state()
        elif self._accepted_H is not None:
            H, scale = self._accepted_H.copy(), self._accepted_scale
        else:
            H, scale = np.eye(3), 1.0
        timings["total"] = (time.perf_counter() - t_start) * 1e3
        return BASolution(
            H=H,
            scale=float(scale),
            tracking_quality=self._tracker.get_tracking_quality(),
            homography_locked=self._homography_locked,
            timings=timings,
        )

    def process_frame(self, inputs: BAInputs, timestamp: float) -> BASolution:
        cfg = self.config
        t_start = time.perf_counter()
        timings: dict[str, float] = {}

        t0 = time.perf_counter()
        if self._tracker.is_initialized and self._last_timestamp is not None:
            self._tracker.predict(float(timestamp) - self._last_timestamp)
        self._last_timestamp = float(timestamp)
        timings["predict"] = (time.perf_counter() - t0) * 1e3

        t0 = time.perf_counter()
        H_ws, s_ws, poses_ws = self._warm_start(inputs)
        weights = inputs.piece_weights()
        poses_init: list[Pose] | None = None
        if H_ws is not None:
            poses_init = []
            for i, cid in enumerate(inputs.class_ids):
                sel = self.select_best_pose_and_correspondence(
                    inputs.detected_points[i],
                    inputs.model_points[i],
                    inputs.shape_types[i],
                    H_ws,
                    s_ws,
                    poses_ws.get(int(cid)),
                )
                poses_init.append(sel.pose)
                if sel.correspondence is not None and sel.cost > cfg.error_rejection_threshold:
                    weights[i] *= cfg.outlier_weight
                    logger.debug("piece %d down-weighted as outlier (cost %.3f)", int(cid), sel.cost)
        timings["warm_start"] = (time.perf_counter() - t0) * 1e3

        if inputs.n_pieces == 0:
            return self._emit_without_observations(timings, t_start)

        t0 = time.perf_counter()
        solution = self._ba.solve(
            BAInputs(
                detected_points=inputs.detected_points,
                model_points=inputs.model_points,
                shape_types=inputs.shape_types,
                class_ids=inputs.class_ids,
                weights=weights,
                has_initial_guess=H_ws is not None,
                H_init=H_ws,
                scale_init=s_ws,
                poses_init=poses_init,
                fix_homography=self._homography_locked,
            ),
            cfg.max_iterations,
        )
        self._last_optimization_time_ms = (time.perf_counter() - t0) * 1e3
        timings["optimize"] = self._last_optimization_time_ms
        if not solution.errors:
            return self._emit_without_observations(timings, t_start)
        mean_error = solution.mean_error

        t0 = time.perf_counter()
        if self._homography_locked:
            accept_h = False
        elif self._locking_enabled and self._accepted_H is not None and self._previous_mean_error > 0.0:
            improvement = (self._previous_mean_error - mean_error) / self._previous_mean_error
            dh = float(np.linalg.norm(h_to_params(solution.H) - h_to_params(self._accepted_H)))
            accept_h = improvement >= cfg.h_update_min_improvement and dh < cfg.h_update_max_norm
            logger.debug(
                "H gate: improvement=%.3f |dh|=%.4g -> %s", improvement, dh, "accept" if accept_h else "keep"
            )
        else:
            accept_h = True

        if accept_h:
            self._accepted_H = solution.H.copy()
            self._accepted_scale = float(solution.scale)
        elif not self._homography_locked:
            assert self._accepted_H is not None
            fallback = poses_init or [Pose() for _ in inputs.class_ids]
            solution = self._ba.solve(
                BAInputs(
                    detected_points=inputs.detected_points,
                    model_points=inputs.model_points,
                    shape_types=inputs.shape_types,
                    class_ids=inputs.class_ids,
                    weights=weights,
                    has_initial_guess=True,
                    H_init=self._accepted_H,
                    scale_init=self._accepted_scale,
                    poses_init=[solution.poses.get(int(c), fallback[i]) for i, c in enumerate(inputs.class_ids)],
                    fix_homography=True,
                ),
                cfg.max_iterations,
            )
            mean_error = solution.mean_error
        timings["gate"] = (time.perf_counter() - t0) * 1e3

        t0 = time.perf_counter()
        if self._homography_locked and self._locked_H is not None:
            H_meas, s_meas = self._locked_H, self._locked_scale
        else:
            assert self._accepted_H is not None
            H_meas, s_meas = self._accepted_H, self._accepted_scale
        if not self._tracker.is_initialized:
            self._tracker.initialize(H_meas, s_meas, solution.poses, float(timestamp))
        else:
            self._tracker.update(
                H_meas, s_meas, solution.poses, self.build_adaptive_measurement_covariance(solution.errors)
            )
        timings["filter"] = (time.perf_counter() - t0) * 1e3

        self._previous_mean_error = mean_error
        if self._locking_enabled:
            self._update_lock_state(mean_error)

        H_f, s_f, poses_f = self._tracker.get_state()
        if self._homography_locked and self._locked_H is not None:
            H_out, s_out = self._locked_H.copy(), self._locked_scale
        else:
            H_out, s_out = H_f, s_f if s_f > 0.0 else self._accepted_scale

        timings["total"] = (time.perf_counter() - t_start) * 1e3
        return BASolution(
            H=H_out,
            scale=float(s_out),
            poses={cid: poses_f[cid] for cid in solution.poses},
            errors=dict(solution.errors),
            correspondences=dict(solution.correspondences),
            tracking_quality=self._tracker.get_tracking_quality(),
            homography_locked=self._homography_locked,
            timings=timings,
        )

    def _update_lock_state(self, mean_error: float) -> None:
        cfg = self.config
        if self._homography_locked:
            if mean_error > cfg.unlock_error_threshold:
                self._homography_locked = False
                self._locked_H = None
                self._frames_stable = 0
                logger.info("homography unlocked (mean error %.2f > %.2f)", mean_error, cfg.unlock_error_threshold)
            return

        if mean_error < cfg.lock_error_threshold:
            self._frames_stable += 1
        else:
            self._frames_stable = 0
        if self._frames_stable >= cfg.frames_needed_for_lock and self._accepted_H is not None:
            self._homography_locked = True
            self._locked_H = self._accepted_H.copy()
            self._locked_scale = self._accepted_scale
            logger.info("homography locked after %d stable frames", self._frames_stable)
