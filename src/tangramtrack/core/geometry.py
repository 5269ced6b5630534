from __future__ import annotations

import numpy as np


PERSPECTIVE_EPS = 1e-8


def h_to_params(H: np.ndarray) -> np.ndarray:
    """
    Gauge-fix a homography (H[2,2] = 1) and return its 8 free parameters,
    row-major: h00 h01 h02 h10 h11 h12 h20 h21.
    """
    H = np.asarray(H, dtype=np.float64).reshape(3, 3)
    w = H[2, 2]
    if abs(w) > 1e-12 and w != 1.0:
        H = H / w
    return H.reshape(-1)[:8].copy()


def params_to_h(p: np.ndarray) -> np.ndarray:
    p = np.asarray(p, dtype=np.float64).reshape(-1)
    if p.size != 8:
        raise ValueError("expected 8 homography parameters")
    return np.append(p, 1.0).reshape(3, 3)


def rotation_2d(theta: float) -> np.ndarray:
    c = np.cos(theta)
    s = np.sin(theta)
    return np.array([[c, -s], [s, c]])


def pose_transform(points: np.ndarray, scale: float, pose: np.ndarray) -> np.ndarray:
    """
    Model units -> shared plane: p_plane = R(theta) (scale * p) + t.

    `pose` is (theta, tx, ty).
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    theta, tx, ty = pose[0], pose[1], pose[2]
    c = np.cos(theta)
    s = np.sin(theta)
    mx = points[:, 0] * scale
    my = points[:, 1] * scale
    return np.stack([c * mx - s * my + tx, s * mx + c * my + ty], axis=-1)


def project_points(H: np.ndarray, points: np.ndarray) -> np.ndarray:
    """
    Shared plane -> image pixels. Perspective denominators smaller than
    `PERSPECTIVE_EPS` in magnitude are clamped to `PERSPECTIVE_EPS`, keeping
    their sign (zero counts as positive).
    """
    H = np.asarray(H, dtype=np.float64).reshape(3, 3)
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    x = points[:, 0]
    y = points[:, 1]
    w = H[2, 0] * x + H[2, 1] * y + H[2, 2]
    w = np.where(np.abs(w) < PERSPECTIVE_EPS, np.where(w < 0.0, -PERSPECTIVE_EPS, PERSPECTIVE_EPS), w)
    u = (H[0, 0] * x + H[0, 1] * y + H[0, 2]) / w
    v = (H[1, 0] * x + H[1, 1] * y + H[1, 2]) / w
    return np.stack([u, v], axis=-1)


def backproject_points(H: np.ndarray, uv: np.ndarray) -> np.ndarray:
    """Image pixels -> shared plane (inverse of `project_points`)."""
    H = np.asarray(H, dtype=np.float64).reshape(3, 3)
    try:
        H_inv = np.linalg.inv(H)
    except np.linalg.LinAlgError:
        H_inv = np.linalg.pinv(H)
    return project_points(H_inv, uv)


def wrap_angle(a):
    """Wrap to [-pi, pi)."""
    return (np.asarray(a, dtype=np.float64) + np.pi) % (2.0 * np.pi) - np.pi


def fit_rigid_2d(src: np.ndarray, dst: np.ndarray) -> tuple[float, np.ndarray]:
    """
    Least-squares proper rotation + translation with R src + t ~ dst.
    Returns (theta, t).
    """
    src = np.asarray(src, dtype=np.float64).reshape(-1, 2)
    dst = np.asarray(dst, dtype=np.float64).reshape(-1, 2)
    if src.shape != dst.shape or src.shape[0] == 0:
        raise ValueError("src and dst must be non-empty and have matching shapes")
    cs = src.mean(axis=0)
    cd = dst.mean(axis=0)
    a = src - cs
    b = dst - cd
    num = float(np.sum(a[:, 0] * b[:, 1] - a[:, 1] * b[:, 0]))
    den = float(np.sum(a[:, 0] * b[:, 0] + a[:, 1] * b[:, 1]))
    theta = float(np.arctan2(num, den))
    t = cd - rotation_2d(theta) @ cs
    return theta, t


def polygon_area(points: np.ndarray) -> float:
    """
    Signed shoelace area. In image coordinates (y down) a polygon that is
    clockwise on screen has a positive area.
    """
    p = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if p.shape[0] < 3:
        return 0.0
    x = p[:, 0]
    y = p[:, 1]
    return 0.5 * float(np.sum(x * np.roll(y, -1) - np.roll(x, -1) * y))


def ensure_clockwise(points: np.ndarray) -> np.ndarray:
    p = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if polygon_area(p) < 0.0:
        return p[::-1].copy()
    return p.copy()


def order_points_clockwise(points: np.ndarray) -> np.ndarray:
    """
    Sort vertices by angle around their centroid (clockwise on screen).
    Robust to self-intersecting input, unlike the area-sign test.
    """
    p = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if p.shape[0] < 3:
        return p.copy()
    c = p.mean(axis=0)
    ang = np.arctan2(p[:, 1] - c[1], p[:, 0] - c[0])
    return p[np.argsort(ang, kind="stable")].copy()
