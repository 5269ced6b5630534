from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np


# class id -> (model name, shape type, vertex count)
PIECE_CLASSES: dict[int, tuple[str, str, int]] = {
    0: ("tangram_parallelogram", "parallelogram", 4),
    1: ("tangram_square", "square", 4),
    2: ("tangram_triangle_lrg", "triangle", 3),
    3: ("tangram_triangle_lrg2", "triangle", 3),
    4: ("tangram_triangle_med", "triangle", 3),
    5: ("tangram_triangle_sml", "triangle", 3),
    6: ("tangram_triangle_sml2", "triangle", 3),
}

N_PIECES = len(PIECE_CLASSES)


def model_name_for_class(class_id: int) -> str | None:
    entry = PIECE_CLASSES.get(int(class_id))
    return None if entry is None else entry[0]


def shape_type_for_class(class_id: int) -> str | None:
    entry = PIECE_CLASSES.get(int(class_id))
    return None if entry is None else entry[1]


def expected_vertices_for_class(class_id: int) -> int:
    entry = PIECE_CLASSES.get(int(class_id))
    return 0 if entry is None else entry[2]


@dataclass(frozen=True)
class Pose:
    """Rigid 2D transform of one piece in the shared plane (before H)."""

    theta: float = 0.0
    tx: float = 0.0
    ty: float = 0.0

    def as_array(self) -> np.ndarray:
        return np.array([self.theta, self.tx, self.ty], dtype=np.float64)

    @classmethod
    def from_array(cls, p: np.ndarray) -> "Pose":
        p = np.asarray(p, dtype=np.float64).reshape(3)
        return cls(theta=float(p[0]), tx=float(p[1]), ty=float(p[2]))


@dataclass(frozen=True)
class Correspondence:
    """
    Discrete alignment between detected and canonical vertex orders.

    `shift` is the cyclic rotation applied to the (possibly reversed) detected
    polygon; `reflected` is set when the detected order was reversed.
    """

    shift: int = 0
    reflected: bool = False
    mirrored_model: bool = False


@dataclass(frozen=True)
class Detection:
    class_id: int
    bbox: tuple[float, float, float, float]  # x, y, w, h in model input pixels (640x640)
    mask_coeffs: np.ndarray  # (32,)


@dataclass(frozen=True)
class TangramModel:
    name: str
    type: str
    vertices: np.ndarray  # (N,2) model units
    color_bgr: tuple[int, int, int] = (128, 128, 128)


@dataclass(frozen=True)
class RefinementResult:
    polygon_norm: np.ndarray  # (N,2) in [0,1]; empty when the piece is unusable
    refined_mask_160: np.ndarray  # (160,160) uint8
    lines: list[np.ndarray] = field(default_factory=list)  # primary (a,b,c)
    secondary_lines: list[np.ndarray] = field(default_factory=list)
    line_segments: list[tuple[tuple[int, int], tuple[int, int]]] = field(default_factory=list)
    secondary_line_segments: list[tuple[tuple[int, int], tuple[int, int]]] = field(default_factory=list)
    timings: dict[str, float] = field(default_factory=dict)

    @property
    def usable(self) -> bool:
        return self.polygon_norm.shape[0] >= 3


@dataclass
class BAInputs:
    """
    Per-piece observations for one bundle adjustment solve.

    All per-piece lists share the same order. `weights` defaults to 1.0 per
    piece; `poses_init` is only read when `has_initial_guess` is set.
    """

    detected_points: list[np.ndarray]  # (n_i,2) pixels
    model_points: list[np.ndarray]  # (n_i,2) model units
    shape_types: list[str]
    class_ids: list[int]
    weights: list[float] | None = None
    has_initial_guess: bool = False
    H_init: np.ndarray | None = None
    scale_init: float = 1.0
    poses_init: list[Pose] | None = None
    fix_homography: bool = False

    def __post_init__(self) -> None:
        n = len(self.class_ids)
        if not (len(self.detected_points) == len(self.model_points) == len(self.shape_types) == n):
            raise ValueError("detected_points, model_points, shape_types and class_ids must have equal length")
        if self.weights is not None and len(self.weights) != n:
            raise ValueError("weights must have one entry per piece")
        if self.poses_init is not None and len(self.poses_init) != n:
            raise ValueError("poses_init must have one entry per piece")
        if (self.has_initial_guess or self.fix_homography) and self.H_init is None:
            raise ValueError("H_init is required with an initial guess or a fixed homography")

    @property
    def n_pieces(self) -> int:
        return len(self.class_ids)

    def piece_weights(self) -> list[float]:
        if self.weights is None:
            return [1.0] * self.n_pieces
        return [float(w) for w in self.weights]


@dataclass
class BASolution:
    """
    Result of one frame. `poses`, `errors` and `correspondences` are keyed by
    class id; a missing key means the piece was not observed this frame.
    """

    H: np.ndarray
    scale: float
    poses: dict[int, Pose] = field(default_factory=dict)
    errors: dict[int, float] = field(default_factory=dict)
    correspondences: dict[int, Correspondence] = field(default_factory=dict)
    tracking_quality: float = 0.0
    homography_locked: bool = False
    timings: dict[str, float] = field(default_factory=dict)

    @property
    def mean_error(self) -> float:
        if not self.errors:
            return float("nan")
        return float(np.mean(list(self.errors.values())))

    def to_dict(self) -> dict:
        return {
            "H": np.asarray(self.H, dtype=np.float64).tolist(),
            "scale": float(self.scale),
            "poses": {str(k): [p.theta, p.tx, p.ty] for k, p in sorted(self.poses.items())},
            "errors": {str(k): float(v) for k, v in sorted(self.errors.items())},
            "correspondences": {
                str(k): {"shift": c.shift, "reflected": c.reflected, "mirrored_model": c.mirrored_model}
                for k, c in sorted(self.correspondences.items())
            },
            "tracking_quality": float(self.tracking_quality),
            "homography_locked": bool(self.homography_locked),
            "timings": {k: float(v) for k, v in self.timings.items()},
        }
