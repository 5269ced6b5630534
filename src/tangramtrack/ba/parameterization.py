from __future__ import annotations

from collections.abc import Iterable, Mapping

import numpy as np

from tangramtrack.core.geometry import h_to_params, params_to_h
from tangramtrack.types import N_PIECES, Pose

N_H = 8
SCALE_INDEX = 8
POSE_OFFSET = 9


def n_states(n_objects: int = N_PIECES) -> int:
    return POSE_OFFSET + 3 * int(n_objects)


def pose_slice(class_id: int) -> slice:
    start = POSE_OFFSET + 3 * int(class_id)
    return slice(start, start + 3)


def pack_params_tracked(
    H: np.ndarray,
    scale: float,
    poses: Mapping[int, Pose],
    n_objects: int = N_PIECES,
) -> np.ndarray:
    """
    Fixed-size state vector: [h00..h21 (8), scale, (theta, tx, ty) per slot].
    A pose lands in slot `class_id`; empty slots are zero.
    """
    x = np.zeros((n_states(n_objects),), dtype=np.float64)
    x[:N_H] = h_to_params(H)
    x[SCALE_INDEX] = float(scale)
    for cid, pose in poses.items():
        cid = int(cid)
        if not 0 <= cid < n_objects:
            raise ValueError(f"class id {cid} outside [0, {n_objects})")
        x[pose_slice(cid)] = (pose.theta, pose.tx, pose.ty)
    return x


def unpack_params_tracked(
    x: np.ndarray,
    n_objects: int = N_PIECES,
    observed: Iterable[int] | None = None,
) -> tuple[np.ndarray, float, dict[int, Pose]]:
    """Inverse of `pack_params_tracked`; `observed` limits which slots are returned."""
    x = np.asarray(x, dtype=np.float64).reshape(-1)
    if x.size != n_states(n_objects):
        raise ValueError(f"state vector must have {n_states(n_objects)} entries, got {x.size}")
    ids = range(n_objects) if observed is None else sorted(int(i) for i in observed)
    poses = {cid: Pose.from_array(x[pose_slice(cid)]) for cid in ids}
    return params_to_h(x[:N_H]), float(x[SCALE_INDEX]), poses
