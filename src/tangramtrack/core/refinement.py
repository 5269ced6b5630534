from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

import cv2
import numpy as np

from tangramtrack.core.geometry import order_points_clockwise
from tangramtrack.core.polygon import fill_polygon, largest_outer_contour, simplify_polygon
from tangramtrack.types import Detection, RefinementResult, expected_vertices_for_class

logger = logging.getLogger(__name__)

MODEL_INPUT_SIZE = 640


@dataclass
class _Segment:
    p1: np.ndarray
    p2: np.ndarray
    angle: float  # direction in [0, pi)
    c: float  # signed offset of the normal form n.p + c = 0
    length: float
    score: float


@dataclass
class _Cluster:
    segments: list[_Segment] = field(default_factory=list)
    angles: list[float] = field(default_factory=list)
    cs: list[float] = field(default_factory=list)
    angle_median: float = 0.0
    c_median: float = 0.0
    score_sum: float = 0.0
    length_sum: float = 0.0

    def line(self) -> np.ndarray:
        return _line_from_angle_offset(self.angle_median, self.c_median)


def _normal(angle: float) -> np.ndarray:
    return np.array([-np.sin(angle), np.cos(angle)])


def _line_from_angle_offset(angle: float, c: float) -> np.ndarray:
    n = _normal(angle)
    return np.array([n[0], n[1], c], dtype=np.float64)


def _angle_offset(p1: np.ndarray, p2: np.ndarray) -> tuple[float, float]:
    d = p2 - p1
    angle = float(np.arctan2(d[1], d[0])) % np.pi
    c = -float(_normal(angle) @ p1)
    return angle, c


def _aligned(angle: float, c: float, ref_angle: float) -> tuple[float, float]:
    """Express (angle, c) near `ref_angle`; crossing the 0/pi seam flips the normal."""
    diff = angle - ref_angle
    if diff > np.pi / 2:
        return angle - np.pi, -c
    if diff < -np.pi / 2:
        return angle + np.pi, -c
    return angle, c


def intersect_lines(l1: np.ndarray, l2: np.ndarray) -> np.ndarray | None:
    """Intersection of a1 x + b1 y + c1 = 0 and a2 x + b2 y + c2 = 0."""
    det = l1[0] * l2[1] - l2[0] * l1[1]
    if abs(det) < 1e-9:
        return None
    x = (l1[1] * l2[2] - l2[1] * l1[2]) / det
    y = (l2[0] * l1[2] - l1[0] * l2[2]) / det
    return np.array([x, y], dtype=np.float64)


def canny_auto(gray: np.ndarray, sigma: float = 0.33) -> np.ndarray:
    """
    Canny with thresholds (1 -/+ sigma) * v, where v is the median intensity
    of the non-background pixels.
    """
    fg = gray[gray > 0]
    v = float(np.median(fg)) if fg.size else 128.0
    lower = int(max(0.0, (1.0 - sigma) * v))
    upper = int(min(255.0, (1.0 + sigma) * v))
    if upper <= lower:
        upper = min(255, lower + 1)
    return cv2.Canny(gray, lower, upper)


class MaskRefiner:
    """
    Probability mask -> polygon with exactly the expected vertex count.

    Corners are intersections of fitted edge lines rather than raw contour
    vertices; contour vertices are the fallback wherever no reliable line is
    found.
    """

    def __init__(
        self,
        *,
        upsample: int = 4,
        pad_px: int = 4,
        canny_sigma: float = 0.33,
        binarize_level: float = 0.5,
        angle_tol_deg: float = 6.0,
        edge_match_angle_deg: float = 12.0,
    ) -> None:
        if upsample < 1:
            raise ValueError("upsample must be >= 1")
        self.upsample = int(upsample)
        self.pad_px = int(pad_px)
        self.canny_sigma = float(canny_sigma)
        self.binarize_level = float(binarize_level)
        self.angle_tol = np.deg2rad(float(angle_tol_deg))
        self.edge_match_angle = np.deg2rad(float(edge_match_angle_deg))

    def _roi(self, detection: Detection, shape: tuple[int, int]) -> tuple[int, int, int, int]:
        h, w = shape
        s = w / float(MODEL_INPUT_SIZE)
        x, y, bw, bh = (float(v) for v in detection.bbox)
        x0 = int(np.floor(x * s)) - self.pad_px
        y0 = int(np.floor(y * s)) - self.pad_px
        x1 = int(np.ceil((x + bw) * s)) + self.pad_px
        y1 = int(np.ceil((y + bh) * s)) + self.pad_px
        return max(0, x0), max(0, y0), min(w, x1), min(h, y1)

    def _empty(self, shape: tuple[int, int], timings: dict[str, float]) -> RefinementResult:
        return RefinementResult(
            polygon_norm=np.zeros((0, 2), dtype=np.float64),
            refined_mask_160=np.zeros(shape, dtype=np.uint8),
            timings=timings,
        )

    def refine(self, detection: Detection, mask_160: np.ndarray, expected_n: int = 0) -> RefinementResult:
        t_start = time.perf_counter()
        timings: dict[str, float] = {}
        mask = np.asarray(mask_160, dtype=np.float32)
        if mask.ndim != 2:
            raise ValueError("mask_160 must be a 2D array")
        if expected_n <= 0:
            expected_n = expected_vertices_for_class(detection.class_id)
        if expected_n < 3:
            logger.warning("no expected vertex count for class %s", detection.class_id)
            return self._empty(mask.shape, timings)

        x0, y0, x1, y1 = self._roi(detection, mask.shape)
        if x1 - x0 < 2 or y1 - y0 < 2:
            return self._empty(mask.shape, timings)
        roi = mask[y0:y1, x0:x1]
        U = self.upsample
        roi_up = cv2.resize(roi, (roi.shape[1] * U, roi.shape[0] * U), interpolation=cv2.INTER_LINEAR)
        binary = (roi_up > self.binarize_level).astype(np.uint8) * 255

        t0 = time.perf_counter()
        contour = largest_outer_contour(binary)
        if contour is None:
            timings["total"] = (time.perf_counter() - t_start) * 1e3
            return self._empty(mask.shape, timings)
        approx = simplify_polygon(contour, expected_n)
        timings["contour"] = (time.perf_counter() - t0) * 1e3

        t0 = time.perf_counter()
        # edges come from the probability map so the thresholds follow mask confidence
        prob = np.clip(cv2.GaussianBlur(roi_up, (5, 5), 0), 0.0, 1.0)
        smooth = np.round(prob * 255.0).astype(np.uint8)
        edges = canny_auto(smooth, self.canny_sigma)
        gx = cv2.Sobel(smooth, cv2.CV_32F, 1, 0, ksize=3)
        gy = cv2.Sobel(smooth, cv2.CV_32F, 0, 1, ksize=3)
        grad_mag = cv2.magnitude(gx, gy)
        timings["edges"] = (time.perf_counter() - t0) * 1e3

        t0 = time.perf_counter()
        roi_diag = float(np.hypot(*binary.shape))
        primary, secondary = self._fit_lines_hough(edges, expected_n, roi_diag, grad_mag)
        timings["hough"] = (time.perf_counter() - t0) * 1e3

        t0 = time.perf_counter()
        corners = self._corners_from_lines(approx, primary, secondary, roi_diag)
        timings["corners"] = (time.perf_counter() - t0) * 1e3

        offset = np.array([x0, y0], dtype=np.float64)

        def to_160(p: np.ndarray) -> np.ndarray:
            return (np.asarray(p, dtype=np.float64) + 0.5) / U - 0.5 + offset

        corners_160 = to_160(corners)
        h, w = mask.shape
        polygon_norm = (corners_160 + 0.5) / np.array([w, h], dtype=np.float64)
        polygon_norm = np.clip(polygon_norm, 0.0, 1.0)
        if polygon_norm.shape[0] == expected_n:
            polygon_norm = order_points_clockwise(polygon_norm)

        def segs_160(clusters: list[_Cluster]) -> list[tuple[tuple[int, int], tuple[int, int]]]:
            out = []
            for cl in clusters:
                for s in cl.segments:
                    a = np.round(to_160(s.p1)).astype(int)
                    b = np.round(to_160(s.p2)).astype(int)
                    out.append(((int(a[0]), int(a[1])), (int(b[0]), int(b[1]))))
            return out

        def lines_160(clusters: list[_Cluster]) -> list[np.ndarray]:
            out = []
            for cl in clusters:
                n = _normal(cl.angle_median)
                p_up = -cl.c_median * n
                d = np.array([np.cos(cl.angle_median), np.sin(cl.angle_median)])
                a = to_160(p_up)
                b = to_160(p_up + d)
                ang, c = _angle_offset(a, b)
                out.append(_line_from_angle_offset(ang, c))
            return out

        timings["total"] = (time.perf_counter() - t_start) * 1e3
        return RefinementResult(
            polygon_norm=polygon_norm,
            refined_mask_160=fill_polygon(mask.shape, polygon_norm * np.array([w, h]) - 0.5),
            lines=lines_160(primary),
            secondary_lines=lines_160(secondary),
            line_segments=segs_160(primary),
            secondary_line_segments=segs_160(secondary),
            timings=timings,
        )

    def _fit_lines_hough(
        self,
        edges: np.ndarray,
        expected_n: int,
        roi_diag: float,
        grad_mag: np.ndarray,
    ) -> tuple[list[_Cluster], list[_Cluster]]:
        raw = cv2.HoughLinesP(
            edges,
            rho=1.0,
            theta=np.pi / 360.0,
            threshold=max(8, int(0.04 * roi_diag)),
            minLineLength=max(6.0, 0.08 * roi_diag),
            maxLineGap=max(3.0, 0.02 * roi_diag),
        )
        if raw is None:
            return [], []

        h, w = grad_mag.shape
        segments: list[_Segment] = []
        for x1, y1, x2, y2 in raw.reshape(-1, 4):
            p1 = np.array([x1, y1], dtype=np.float64)
            p2 = np.array([x2, y2], dtype=np.float64)
            length = float(np.hypot(*(p2 - p1)))
            if length < 1.0:
                continue
            n_samples = max(2, int(length))
            ts = np.linspace(0.0, 1.0, n_samples)
            xs = np.clip(np.round(p1[0] + ts * (p2[0] - p1[0])).astype(int), 0, w - 1)
            ys = np.clip(np.round(p1[1] + ts * (p2[1] - p1[1])).astype(int), 0, h - 1)
            support = float(np.mean(grad_mag[ys, xs]))
            angle, c = _angle_offset(p1, p2)
            segments.append(_Segment(p1=p1, p2=p2, angle=angle, c=c, length=length, score=length * (1.0 + support)))

        offset_tol = 0.03 * roi_diag + 2.0
        clusters: list[_Cluster] = []
        for seg in sorted(segments, key=lambda s: -s.score):
            target = None
            for cl in clusters:
                a, c = _aligned(seg.angle, seg.c, cl.angle_median)
                if abs(a - cl.angle_median) < self.angle_tol and abs(c - cl.c_median) < offset_tol:
                    target = cl
                    break
            if target is None:
                target = _Cluster(angle_median=seg.angle, c_median=seg.c)
                clusters.append(target)
            # Samples are stored in the frame of the cluster's first segment.
            a, c = _aligned(seg.angle, seg.c, target.segments[0].angle if target.segments else seg.angle)
            target.segments.append(seg)
            target.angles.append(a)
            target.cs.append(c)
            target.score_sum += seg.score
            target.length_sum += seg.length
            target.angle_median = float(np.median(target.angles))
            target.c_median = float(np.median(target.cs))
            # Representative angle in [0, pi).
            if target.angle_median < 0.0:
                target.angle_median += np.pi
                target.c_median = -target.c_median
            elif target.angle_median >= np.pi:
                target.angle_median -= np.pi
                target.c_median = -target.c_median

        clusters.sort(key=lambda cl: -cl.score_sum)
        return clusters[:expected_n], clusters[expected_n:]

    def _match_edge(self, p: np.ndarray, q: np.ndarray, clusters: list[_Cluster], tol: float) -> np.ndarray | None:
        if float(np.hypot(*(q - p))) < 1e-6:
            return None
        angle, c = _angle_offset(p, q)
        best = None
        best_d = np.inf
        for cl in clusters:
            a, cc = _aligned(cl.angle_median, cl.c_median, angle)
            da = abs(a - angle)
            dc = abs(cc - c)
            if da > self.edge_match_angle or dc > tol:
                continue
            d = da / self.edge_match_angle + dc / tol
            if d < best_d:
                best_d = d
                best = cl.line()
        return best

    def _corners_from_lines(
        self,
        approx: np.ndarray,
        primary: list[_Cluster],
        secondary: list[_Cluster],
        roi_diag: float,
    ) -> np.ndarray:
        n = approx.shape[0]
        if n < 3 or not (primary or secondary):
            return approx.astype(np.float64)

        tol = 0.08 * roi_diag + 2.0
        edge_lines: list[np.ndarray | None] = []
        for i in range(n):
            p = approx[i]
            q = approx[(i + 1) % n]
            line = self._match_edge(p, q, primary, tol)
            if line is None:
                line = self._match_edge(p, q, secondary, tol)
            edge_lines.append(line)

        max_shift = 0.1 * roi_diag + 2.0
        corners = approx.astype(np.float64).copy()
        for k in range(n):
            l_in = edge_lines[k - 1]
            l_out = edge_lines[k]
            if l_in is None or l_out is None:
                continue
            # Near-parallel neighbours give unstable intersections.
            if abs(l_in[0] * l_out[1] - l_out[0] * l_in[1]) < 0.2:
                continue
            x = intersect_lines(l_in, l_out)
            if x is None or float(np.hypot(*(x - corners[k]))) > max_shift:
                continue
            corners[k] = x
        return corners
