from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from tangramtrack.core.geometry import backproject_points, fit_rigid_2d, params_to_h, pose_transform, project_points
from tangramtrack.types import Correspondence


REFLECTABLE_SHAPES = ("triangle", "parallelogram", "square")


def admits_reflection(shape_type: str, n: int) -> bool:
    return shape_type in REFLECTABLE_SHAPES or n in (3, 4)


def get_candidate_mappings(points: np.ndarray, shape_type: str) -> list[np.ndarray]:
    """
    Candidate vertex orderings of a detected polygon.

    Candidate k < n is the polygon rolled so that vertex k comes first. For
    shapes admitting a mirror symmetry, candidate n + k is the reversed
    polygon rolled by k (2n candidates in total). Empty input gives [].
    """
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    n = pts.shape[0]
    if n == 0:
        return []
    cands = [np.roll(pts, -k, axis=0) for k in range(n)]
    if admits_reflection(shape_type, n):
        rev = pts[::-1]
        cands.extend(np.roll(rev, -k, axis=0) for k in range(n))
    return cands


def candidate_correspondence(index: int, n: int) -> Correspondence:
    index = int(index)
    return Correspondence(shift=index % n, reflected=index >= n, mirrored_model=False)


def huber_rho(s2):
    """s2 below 1 passes through, above 1 grows as 2 sqrt(s2) - 1 (C1 at 1)."""
    s2 = np.asarray(s2, dtype=np.float64)
    out = np.where(s2 <= 1.0, s2, 2.0 * np.sqrt(np.maximum(s2, 1.0)) - 1.0)
    return float(out) if out.ndim == 0 else out


@dataclass(frozen=True)
class CostEvaluation:
    residuals: np.ndarray  # (2n,) interleaved x,y, weighted but not robustified
    candidate_index: int  # -1 when there is no observation
    robust_cost: float

    @property
    def observed(self) -> bool:
        return self.candidate_index >= 0


class ReprojectionCost:
    """
    Residual block of one piece as a function of (h8, scale, pose).

    Every evaluation projects the canonical vertices, scores each candidate
    ordering of the detected vertices with the Huber-shaped cost and returns
    the linear weighted residuals of the cheapest one. The evaluation only
    uses numpy ufuncs, so the parameters may be any numpy-compatible scalars.
    """

    def __init__(
        self,
        detected: np.ndarray,
        model: np.ndarray,
        shape_type: str,
        weight: float = 1.0,
        f_scale: float = 10.0,
    ) -> None:
        self.detected = np.asarray(detected, dtype=np.float64).reshape(-1, 2)
        self.model = np.asarray(model, dtype=np.float64).reshape(-1, 2)
        if self.detected.shape[0] and self.detected.shape[0] != self.model.shape[0]:
            raise ValueError(
                f"detected polygon has {self.detected.shape[0]} vertices, model has {self.model.shape[0]}"
            )
        if weight < 0.0:
            raise ValueError("weight must be >= 0")
        if f_scale <= 0.0:
            raise ValueError("f_scale must be > 0")
        self.shape_type = str(shape_type)
        self.weight_sqrt = float(np.sqrt(weight))
        self.f_scale = float(f_scale)
        cands = get_candidate_mappings(self.detected, self.shape_type)
        self._candidates = np.stack(cands, axis=0) if cands else np.zeros((0, self.model.shape[0], 2))

    @property
    def n_residuals(self) -> int:
        return 2 * self.model.shape[0]

    @property
    def n_candidates(self) -> int:
        return int(self._candidates.shape[0])

    @property
    def candidates(self) -> np.ndarray:
        return self._candidates

    def project(self, h8: np.ndarray, scale: float, pose: np.ndarray) -> np.ndarray:
        plane = pose_transform(self.model, scale, pose)
        return project_points(params_to_h(h8), plane)

    def evaluate(self, h8: np.ndarray, scale: float, pose: np.ndarray) -> CostEvaluation:
        if self.n_candidates == 0:
            return CostEvaluation(np.zeros(self.n_residuals), -1, 0.0)
        proj = self.project(h8, scale, pose)
        deltas = (proj[None, :, :] - self._candidates) * self.weight_sqrt  # (K,n,2)
        r = deltas / self.f_scale
        costs = np.sum(huber_rho(r * r), axis=(1, 2))
        best = int(np.argmin(costs))
        return CostEvaluation(deltas[best].reshape(-1), best, float(costs[best]))

    def __call__(self, h8: np.ndarray, scale: float, pose: np.ndarray) -> np.ndarray:
        return self.evaluate(h8, scale, pose).residuals

    def correspondence(self, candidate_index: int) -> Correspondence | None:
        if candidate_index < 0:
            return None
        return candidate_correspondence(candidate_index, self.model.shape[0])

    def vertex_error(self, h8: np.ndarray, scale: float, pose: np.ndarray) -> tuple[float, int]:
        """
        Mean Euclidean vertex distance (pixels, unweighted) under the winning
        correspondence, and that correspondence's candidate index.
        """
        ev = self.evaluate(h8, scale, pose)
        if not ev.observed:
            return 0.0, -1
        proj = self.project(h8, scale, pose)
        d = proj - self._candidates[ev.candidate_index]
        return float(np.mean(np.hypot(d[:, 0], d[:, 1]))), ev.candidate_index


def h_prior_residual(h8: np.ndarray, h_prior: np.ndarray, lambda_h: float) -> np.ndarray:
    h8 = np.asarray(h8, dtype=np.float64).reshape(8)
    h_prior = np.asarray(h_prior, dtype=np.float64).reshape(8)
    return np.sqrt(float(lambda_h)) * (h8 - h_prior)


def scale_prior_residual(scale: float, scale_prior: float, lambda_s: float) -> np.ndarray:
    return np.array([np.sqrt(float(lambda_s)) * (float(scale) - float(scale_prior))])


@dataclass(frozen=True)
class PoseSelection:
    pose: np.ndarray  # (theta, tx, ty)
    candidate_index: int
    cost: float  # mean robust cost per vertex


def select_best_pose(
    cost: ReprojectionCost,
    h8: np.ndarray,
    scale: float,
    init_pose: np.ndarray | None = None,
) -> PoseSelection:
    """
    Pick the best (pose, correspondence) pair for one piece under a fixed
    homography and scale.

    Hypotheses are `init_pose` (if given) and, for every candidate ordering, the
    rigid fit of the scaled model onto the detected vertices back-projected
    into the plane. Each hypothesis is scored with the full correspondence
    search; the cheapest wins.
    """
    fallback = np.zeros(3) if init_pose is None else np.asarray(init_pose, dtype=np.float64).reshape(3)
    if cost.n_candidates == 0:
        return PoseSelection(fallback, -1, 0.0)

    n = cost.model.shape[0]
    H = params_to_h(h8)
    scaled_model = cost.model * float(scale)
    hypotheses: list[np.ndarray] = []
    if init_pose is not None:
        hypotheses.append(fallback)
    for cand in cost.candidates:
        cand_plane = backproject_points(H, cand)
        if not np.all(np.isfinite(cand_plane)):
            continue
        theta, t = fit_rigid_2d(scaled_model, cand_plane)
        hypotheses.append(np.array([theta, t[0], t[1]], dtype=np.float64))
    if not hypotheses:
        return PoseSelection(fallback, -1, 0.0)

    best: PoseSelection | None = None
    for pose in hypotheses:
        ev = cost.evaluate(h8, scale, pose)
        c = ev.robust_cost / n
        if best is None or c < best.cost:
            best = PoseSelection(pose, ev.candidate_index, c)
    assert best is not None
    return best
