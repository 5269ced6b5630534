from __future__ import annotations

import logging
import time

import numpy as np

from tangramtrack.ba.correspondence import (
    ReprojectionCost,
    h_prior_residual,
    scale_prior_residual,
    select_best_pose,
)
from tangramtrack.config import SolverConfig
from tangramtrack.core.geometry import h_to_params, params_to_h, polygon_area
from tangramtrack.types import BAInputs, BASolution, Pose

logger = logging.getLogger(__name__)

MIN_SCALE = 1e-6


def cold_start_scale(costs: list[ReprojectionCost]) -> float:
    """Scale that matches the total detected area to the total model area (H = I)."""
    det_area = 0.0
    model_area = 0.0
    for c in costs:
        if c.n_candidates == 0:
            continue
        det_area += abs(polygon_area(c.detected))
        model_area += abs(polygon_area(c.model))
    if det_area <= 0.0 or model_area <= 0.0:
        return 1.0
    return float(np.sqrt(det_area / model_area))


def _jac_sparsity(costs: list[ReprojectionCost], free_h: bool, h_prior: bool, s_prior: bool):
    from scipy.sparse import lil_matrix  # type: ignore

    n_global = 9 if free_h else 0
    n_params = n_global + 3 * len(costs)
    n_rows = sum(c.n_residuals for c in costs) + (8 if h_prior else 0) + (1 if s_prior else 0)
    A = lil_matrix((n_rows, n_params), dtype=int)
    row = 0
    for i, c in enumerate(costs):
        rows = slice(row, row + c.n_residuals)
        if free_h:
            A[rows, 0:9] = 1
        A[rows, n_global + 3 * i : n_global + 3 * i + 3] = 1
        row += c.n_residuals
    if h_prior:
        for k in range(8):
            A[row + k, k] = 1
        row += 8
    if s_prior:
        A[row, 8] = 1
    return A


class BundleAdjustment:
    """
    Joint robust refinement of the shared homography (8 params), the global
    scale and one (theta, tx, ty) pose per piece.

    Residuals come from `ReprojectionCost` blocks (with the correspondence
    re-searched at every evaluation) plus optional H / scale priors toward
    the initial values. The number of function evaluations is capped at
    `max_iterations`, so a solve is bounded even when it does not converge.
    """

    def __init__(self, config: SolverConfig | None = None) -> None:
        self.config = config or SolverConfig()

    def _costs(self, inputs: BAInputs) -> list[ReprojectionCost]:
        return [
            ReprojectionCost(det, model, shape, weight=w, f_scale=self.config.f_scale)
            for det, model, shape, w in zip(
                inputs.detected_points,
                inputs.model_points,
                inputs.shape_types,
                inputs.piece_weights(),
                strict=True,
            )
        ]

    def _initial_state(
        self, inputs: BAInputs, costs: list[ReprojectionCost]
    ) -> tuple[np.ndarray, float, list[np.ndarray]]:
        if inputs.has_initial_guess or inputs.fix_homography:
            h0 = h_to_params(inputs.H_init)
            s0 = float(inputs.scale_init)
        else:
            h0 = h_to_params(np.eye(3))
            s0 = cold_start_scale(costs)
        if not s0 > 0.0:
            raise ValueError("scale_init must be > 0")

        if inputs.poses_init is not None and (inputs.has_initial_guess or inputs.fix_homography):
            poses0 = [p.as_array() for p in inputs.poses_init]
        else:
            poses0 = [select_best_pose(c, h0, s0).pose for c in costs]
        return h0, s0, poses0

    def solve(self, inputs: BAInputs, max_iterations: int = 100) -> BASolution:
        from scipy.optimize import least_squares  # type: ignore

        t_start = time.perf_counter()
        cfg = self.config
        costs = self._costs(inputs)
        h0, s0, poses0 = self._initial_state(inputs, costs)
        n = len(costs)
        if n == 0:
            return BASolution(H=params_to_h(h0), scale=s0, timings={"ba_solve": 0.0})

        boost = cfg.few_pieces_prior_boost if n < cfg.min_pieces_for_free_h else 1.0
        lam_h = cfg.lambda_h * boost
        lam_s = cfg.lambda_s * boost
        free_h = not inputs.fix_homography
        use_h_prior = free_h and lam_h > 0.0
        use_s_prior = free_h and lam_s > 0.0

        head = [h0, np.array([s0])] if free_h else []
        x0 = np.concatenate(head + [np.asarray(p, dtype=np.float64).reshape(3) for p in poses0])

        def unpack(x: np.ndarray) -> tuple[np.ndarray, float, np.ndarray]:
            if free_h:
                return x[:8], float(x[8]), x[9:].reshape(n, 3)
            return h0, s0, x.reshape(n, 3)

        def fun(x: np.ndarray) -> np.ndarray:
            h, s, P = unpack(x)
            parts = [c(h, s, P[i]) for i, c in enumerate(costs)]
            if use_h_prior:
                parts.append(h_prior_residual(h, h0, lam_h))
            if use_s_prior:
                parts.append(scale_prior_residual(s, s0, lam_s))
            return np.concatenate(parts)

        r0 = fun(x0)
        if not np.all(np.isfinite(r0)):
            logger.warning("non-finite residuals at the initial point; returning the initial state")
            x_opt = x0
        else:
            lb = np.full(x0.shape, -np.inf)
            if free_h:
                lb[8] = MIN_SCALE
                x0[8] = max(x0[8], 2.0 * MIN_SCALE)
            sol = least_squares(
                fun,
                x0,
                method="trf",
                loss=cfg.loss,
                f_scale=float(cfg.f_scale),
                max_nfev=int(max_iterations),
                jac_sparsity=_jac_sparsity(costs, free_h, use_h_prior, use_s_prior),
                bounds=(lb, np.full(x0.shape, np.inf)),
                x_scale="jac",
            )
            x_opt = sol.x
            logger.debug(
                "ba solve: pieces=%d free_h=%s cost=%.4g nfev=%d status=%d",
                n,
                free_h,
                float(sol.cost),
                int(sol.nfev),
                int(sol.status),
            )

        h, s, P = unpack(x_opt)
        solution = BASolution(H=params_to_h(h), scale=float(s))
        for i, (cid, c) in enumerate(zip(inputs.class_ids, costs, strict=True)):
            err, cand = c.vertex_error(h, s, P[i])
            if cand < 0:
                continue
            cid = int(cid)
            solution.poses[cid] = Pose.from_array(P[i])
            solution.errors[cid] = err
            corr = c.correspondence(cand)
            if corr is not None:
                solution.correspondences[cid] = corr
        solution.timings["ba_solve"] = (time.perf_counter() - t_start) * 1e3
        return solution
