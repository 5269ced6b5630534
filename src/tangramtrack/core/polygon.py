from __future__ import annotations

import cv2
import numpy as np


_EPS_LADDER = (0.005, 0.01, 0.015, 0.02, 0.03, 0.04, 0.05, 0.07, 0.1)


def _approx(contour: np.ndarray, eps: float) -> np.ndarray:
    return cv2.approxPolyDP(contour, float(eps), True).reshape(-1, 2)


def simplify_polygon(contour: np.ndarray, target_n: int, search_iters: int = 32) -> np.ndarray:
    """
    Simplify a closed contour to `target_n` vertices with approxPolyDP.

    A fixed ladder of epsilons (fractions of the perimeter) is tried first,
    then a binary search on epsilon. If no epsilon yields exactly `target_n`
    vertices, the closest approximation found is returned (ties prefer the
    result with more vertices, which keeps all true corners).
    """
    c = np.asarray(contour).reshape(-1, 1, 2)
    if c.dtype != np.int32 and c.dtype != np.float32:
        c = c.astype(np.float32)
    if c.shape[0] <= max(int(target_n), 3):
        return c.reshape(-1, 2).astype(np.float64)

    target_n = int(target_n)
    peri = float(cv2.arcLength(c, True))
    best = c.reshape(-1, 2)
    best_key = (abs(best.shape[0] - target_n), 0)

    def consider(approx: np.ndarray) -> bool:
        nonlocal best, best_key
        key = (abs(approx.shape[0] - target_n), 0 if approx.shape[0] >= target_n else 1)
        if key < best_key:
            best, best_key = approx, key
        return approx.shape[0] == target_n

    for frac in _EPS_LADDER:
        if consider(_approx(c, frac * peri)):
            return best.astype(np.float64)

    lo, hi = 0.0, 0.2 * peri
    for _ in range(int(search_iters)):
        mid = 0.5 * (lo + hi)
        approx = _approx(c, mid)
        if consider(approx):
            break
        # Larger epsilon -> fewer vertices.
        if approx.shape[0] > target_n:
            lo = mid
        else:
            hi = mid
    return best.astype(np.float64)


def largest_outer_contour(mask_u8: np.ndarray) -> np.ndarray | None:
    contours, _ = cv2.findContours(mask_u8, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_NONE)
    if not contours:
        return None
    c = max(contours, key=cv2.contourArea)
    if cv2.contourArea(c) <= 0.0:
        return None
    return c


def fill_polygon(shape: tuple[int, int], points: np.ndarray) -> np.ndarray:
    out = np.zeros(shape, dtype=np.uint8)
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if pts.shape[0] >= 3:
        cv2.fillPoly(out, [np.round(pts).astype(np.int32)], 255)
    return out
