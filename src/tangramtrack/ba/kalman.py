from __future__ import annotations

import logging
from collections.abc import Mapping

import numpy as np
from filterpy.kalman import KalmanFilter

from tangramtrack.ba.parameterization import (
    POSE_OFFSET,
    SCALE_INDEX,
    n_states,
    pack_params_tracked,
    pose_slice,
    unpack_params_tracked,
)
from tangramtrack.core.geometry import wrap_angle
from tangramtrack.types import N_PIECES, Pose

logger = logging.getLogger(__name__)

# Base variances per parameter kind. Process noise is base * process_noise_scale * dt,
# the default measurement noise is base * measurement_noise_scale.
H_BASE_VARIANCES = (1e-4, 1e-4, 1.0, 1e-4, 1e-4, 1.0, 1e-10, 1e-10)
SCALE_BASE_VARIANCE = 1e-4
POSE_BASE_VARIANCES = (1e-3, 1.0, 1.0)
UNSEEN_VARIANCE = 1e6
MAX_INNOVATION_HISTORY = 10


def base_variances(n_objects: int = N_PIECES) -> np.ndarray:
    return np.concatenate(
        [
            np.asarray(H_BASE_VARIANCES, dtype=np.float64),
            [SCALE_BASE_VARIANCE],
            np.tile(np.asarray(POSE_BASE_VARIANCES, dtype=np.float64), int(n_objects)),
        ]
    )


class KalmanTracker:
    """
    Constant-value Kalman filter over [H (8), scale, 7 x (theta, tx, ty)].

    The measurement is an optimizer solution that observes the homography,
    the scale and the poses of the pieces seen in that frame directly; slots
    of pieces absent from a measurement are left untouched. Predict/update
    run on a filterpy `KalmanFilter` with an identity transition; each update
    passes the selection matrix of the observed slots.
    """

    def __init__(
        self,
        process_noise_scale: float = 0.01,
        measurement_noise_scale: float = 1.0,
        n_objects: int = N_PIECES,
    ) -> None:
        if process_noise_scale <= 0.0 or measurement_noise_scale <= 0.0:
            raise ValueError("noise scales must be > 0")
        self.process_noise_scale = float(process_noise_scale)
        self.measurement_noise_scale = float(measurement_noise_scale)
        self.n_objects = int(n_objects)
        self._n = n_states(self.n_objects)
        self._base = base_variances(self.n_objects)
        self._initialized = False
        self.kf = self._new_filter()
        self._timestamp = 0.0
        self._observed: set[int] = set()
        self._innovation_history: list[float] = []

    def _new_filter(self) -> KalmanFilter:
        kf = KalmanFilter(dim_x=self._n, dim_z=self._n)
        kf.F = np.eye(self._n)
        kf.H = np.eye(self._n)
        kf.x = np.zeros((self._n, 1))
        kf.P = np.eye(self._n) * UNSEEN_VARIANCE
        kf.R = np.diag(self.base_measurement_variances())
        kf.Q = np.zeros((self._n, self._n))
        return kf

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def timestamp(self) -> float:
        return self._timestamp

    @property
    def observed_objects(self) -> frozenset[int]:
        return frozenset(self._observed)

    @property
    def state(self) -> np.ndarray:
        return self.kf.x[:, 0].copy()

    @property
    def covariance(self) -> np.ndarray:
        return self.kf.P.copy()

    @property
    def innovation_history(self) -> list[float]:
        return list(self._innovation_history)

    def base_measurement_variances(self) -> np.ndarray:
        return self._base * self.measurement_noise_scale

    def _theta_indices(self) -> np.ndarray:
        return np.arange(POSE_OFFSET, self._n, 3)

    def initialize(self, H: np.ndarray, scale: float, poses: Mapping[int, Pose], timestamp: float) -> None:
        seed = self.base_measurement_variances()
        for cid in range(self.n_objects):
            if cid not in poses:
                seed[pose_slice(cid)] = UNSEEN_VARIANCE
        self.kf = self._new_filter()
        self.kf.x = pack_params_tracked(H, scale, poses, self.n_objects).reshape(-1, 1)
        self.kf.P = np.diag(seed)
        self._timestamp = float(timestamp)
        self._observed = {int(c) for c in poses}
        self._innovation_history = []
        self._initialized = True

    def predict(self, dt: float) -> None:
        if not self._initialized:
            return
        dt = max(0.0, float(dt))
        self.kf.predict(Q=np.diag(self._base * self.process_noise_scale * dt))
        self._timestamp += dt

    def _measurement_noise(self, measurement_cov: np.ndarray | None, idx: np.ndarray) -> np.ndarray:
        if measurement_cov is None or np.size(measurement_cov) == 0:
            return np.diag(self.base_measurement_variances()[idx])
        R = np.asarray(measurement_cov, dtype=np.float64)
        if R.shape == (self._n,):
            return np.diag(R[idx])
        if R.shape == (self._n, self._n):
            return R[np.ix_(idx, idx)]
        raise ValueError(f"measurement_cov must be ({self._n},) or ({self._n},{self._n}), got {R.shape}")

    def update(
        self,
        H_meas: np.ndarray,
        scale_meas: float,
        poses_meas: Mapping[int, Pose],
        measurement_cov: np.ndarray | None = None,
    ) -> None:
        if not self._initialized:
            self.initialize(H_meas, scale_meas, poses_meas, self._timestamp)
            return

        ids = sorted(int(c) for c in poses_meas)
        idx = np.concatenate(
            [np.arange(SCALE_INDEX + 1)] + [np.arange(POSE_OFFSET + 3 * c, POSE_OFFSET + 3 * c + 3) for c in ids]
        ).astype(int)
        R = self._measurement_noise(measurement_cov, idx)
        H_sel = np.eye(self._n)[idx]

        # Angles are moved onto the branch nearest the prediction so the
        # filter's innovation z - Hx is already wrapped.
        x_obs = self.kf.x[idx, 0]
        z = pack_params_tracked(H_meas, scale_meas, poses_meas, self.n_objects)[idx]
        is_theta = np.isin(idx, self._theta_indices())
        z[is_theta] = x_obs[is_theta] + wrap_angle(z[is_theta] - x_obs[is_theta])

        self.kf.update(z.reshape(-1, 1), R=R, H=H_sel)
        thetas = self._theta_indices()
        self.kf.x[thetas, 0] = wrap_angle(self.kf.x[thetas, 0])
        self.kf.P = 0.5 * (self.kf.P + self.kf.P.T)

        self._observed.update(ids)
        y = self.kf.y[:, 0]
        nis = float(y @ np.linalg.solve(self.kf.S, y))
        magnitude = float(np.sqrt(max(nis, 0.0) / max(y.size, 1)))
        self._innovation_history.append(magnitude)
        if len(self._innovation_history) > MAX_INNOVATION_HISTORY:
            self._innovation_history.pop(0)
        logger.debug("kalman update: %d components, innovation %.4g", y.size, magnitude)

    def get_state(self) -> tuple[np.ndarray, float, dict[int, Pose]]:
        if not self._initialized:
            raise RuntimeError("tracker is not initialized")
        return unpack_params_tracked(self.state, self.n_objects, observed=self._observed)

    def get_tracking_quality(self) -> float:
        """
        Score in [0, 1]: 1 / (1 + recency-weighted mean innovation). Recent
        innovations weigh twice as much as the oldest ones kept.
        """
        if not self._initialized:
            return 0.0
        if not self._innovation_history:
            return 1.0
        hist = np.asarray(self._innovation_history, dtype=np.float64)
        w = np.linspace(1.0, 2.0, hist.size)
        return float(1.0 / (1.0 + np.average(hist, weights=w)))
