"""
Plane + piece-pose estimation.

A single homography maps the shared tangram plane to the image; each piece
contributes a rigid pose in that plane. `BundleAdjustment` solves one frame,
`KalmanTracker` smooths the state over time and `TrackedBA` drives both.
"""

from tangramtrack.ba.bundle_adjustment import BundleAdjustment
from tangramtrack.ba.kalman import KalmanTracker
from tangramtrack.ba.tracked import TrackedBA

__all__ = ["BundleAdjustment", "KalmanTracker", "TrackedBA"]
