from __future__ import annotations

import numpy as np

from tangramtrack.ba.bundle_adjustment import BundleAdjustment, cold_start_scale
from tangramtrack.ba.correspondence import ReprojectionCost
from tangramtrack.types import BAInputs, Pose


def _gt_guess(scene, **kwargs) -> BAInputs:
    ids = sorted(scene.poses)
    return scene.inputs(
        has_initial_guess=True,
        H_init=scene.H,
        scale_init=scene.scale,
        poses_init=[scene.poses[c] for c in ids],
        **kwargs,
    )


def test_solve_from_ground_truth_has_zero_error(perspective_scene) -> None:
    sol = BundleAdjustment().solve(_gt_guess(perspective_scene))
    assert sorted(sol.errors) == list(range(7))
    assert max(sol.errors.values()) < 1e-6
    assert set(sol.poses) == set(sol.correspondences) == set(sol.errors)
    assert "ba_solve" in sol.timings


def test_solve_converges_from_perturbed_poses(perspective_scene) -> None:
    rng = np.random.default_rng(0)
    ids = sorted(perspective_scene.poses)
    poses_init = [
        Pose.from_array(perspective_scene.poses[c].as_array() + rng.normal(scale=[0.05, 0.1, 0.1])) for c in ids
    ]
    inputs = perspective_scene.inputs(
        has_initial_guess=True,
        H_init=perspective_scene.H,
        scale_init=1.0,
        poses_init=poses_init,
    )
    sol = BundleAdjustment().solve(inputs, max_iterations=200)
    assert sol.mean_error < 0.05


def test_cold_start_on_similarity_scene(similarity_scene) -> None:
    costs = [
        ReprojectionCost(similarity_scene.polygon(c), similarity_scene.model_for(c).vertices, "triangle")
        for c in (2, 4, 5)
    ]
    assert np.isclose(cold_start_scale(costs), 40.0)

    sol = BundleAdjustment().solve(similarity_scene.inputs())
    assert len(sol.errors) == 7
    assert sol.mean_error < 1e-4
    assert np.isclose(sol.scale, 40.0, rtol=1e-6)


def test_fixed_homography_is_returned_unchanged(perspective_scene) -> None:
    sol = BundleAdjustment().solve(_gt_guess(perspective_scene, fix_homography=True))
    assert np.array_equal(sol.H, perspective_scene.H)
    assert sol.scale == perspective_scene.scale
    assert sol.mean_error < 1e-6


def test_zero_pieces_returns_initial_state() -> None:
    inputs = BAInputs(detected_points=[], model_points=[], shape_types=[], class_ids=[])
    sol = BundleAdjustment().solve(inputs)
    assert np.array_equal(sol.H, np.eye(3))
    assert sol.scale == 1.0
    assert sol.poses == {}


def test_unobserved_piece_is_not_reported(perspective_scene) -> None:
    inputs = _gt_guess(perspective_scene)
    inputs.detected_points[3] = np.zeros((0, 2))
    sol = BundleAdjustment().solve(inputs)
    cid = inputs.class_ids[3]
    assert cid not in sol.poses
    assert cid not in sol.errors
    assert len(sol.errors) == 6
