"""
Unit tests for the five-point relative pose finder
"""

import threading

import numpy as np
import pytest

from monoreloc.geom.se3 import angle_between_deg, rot_y, rotation_angle_deg
from monoreloc.modules.five_point import FivePointRelposFinder
from monoreloc.system.config import FivePointConfig
from monoreloc.system.result import Reason

from conftest import make_frame, make_texture, project, two_view_scene


@pytest.fixture
def finder(camera):
    return FivePointRelposFinder(camera, FivePointConfig(seed=7))


class TestSyntheticMotion:
    @pytest.mark.parametrize("scale", [0.2, 1.0, 3.0])
    def test_recovers_rotation_and_direction(self, finder, camera, true_motion, scale):
        R, t = true_motion
        pts_q, pts_k = two_view_scene(camera.K, R, scale * t, n=80)
        res = finder.estimate_from_correspondences(pts_q, pts_k, matched_id=3)

        assert res.success, res.reason
        assert res.reason is Reason.OK
        assert res.matched_id == 3
        assert rotation_angle_deg(res.R.T @ R) < 1.0
        assert angle_between_deg(res.t, t) < 1.0
        # scale is not observable: only the direction is returned
        assert np.linalg.norm(res.t) == pytest.approx(1.0)
        assert res.inlier_count >= 76
        assert res.parallax_deg > 0.5

    def test_eight_correspondences_are_enough(self, camera, true_motion):
        R, t = true_motion
        finder = FivePointRelposFinder(camera, FivePointConfig(min_inliers=8, seed=1))
        pts_q, pts_k = two_view_scene(camera.K, R, t, n=8, seed=5)
        res = finder.estimate_from_correspondences(pts_q, pts_k)
        assert res.success, res.reason
        assert rotation_angle_deg(res.R.T @ R) < 1.0
        assert angle_between_deg(res.t, t) < 1.0
        assert res.inlier_count == 8

    def test_outliers_are_rejected(self, finder, camera, true_motion):
        R, t = true_motion
        pts_q, pts_k = two_view_scene(camera.K, R, t, n=100, seed=2)
        rng = np.random.default_rng(11)
        bad = rng.choice(100, 25, replace=False)
        pts_q = pts_q.copy()
        pts_q[bad] = rng.uniform([0, 0], [640, 480], (25, 2))

        res = finder.estimate_from_correspondences(pts_q, pts_k)
        assert res.success, res.reason
        assert rotation_angle_deg(res.R.T @ R) < 1.0
        assert angle_between_deg(res.t, t) < 1.0
        assert 70 <= res.inlier_count <= 80

    def test_random_correspondences_fail_verification(self, finder):
        rng = np.random.default_rng(4)
        pts_q = rng.uniform([0, 0], [640, 480], (60, 2))
        pts_k = rng.uniform([0, 0], [640, 480], (60, 2))
        res = finder.estimate_from_correspondences(pts_q, pts_k)
        assert not res.success
        assert res.reason in (Reason.VERIFICATION_FAILED, Reason.DEGENERATE)

    def test_iteration_budget(self, camera):
        finder = FivePointRelposFinder(camera, FivePointConfig(max_iterations=3, seed=0))
        rng = np.random.default_rng(9)
        pts_q = rng.uniform([0, 0], [640, 480], (60, 2))
        pts_k = rng.uniform([0, 0], [640, 480], (60, 2))
        res = finder.estimate_from_correspondences(pts_q, pts_k)
        assert res.iterations <= 3


class TestDegenerate:
    def test_fewer_than_five_points(self, finder, camera, true_motion):
        R, t = true_motion
        pts_q, pts_k = two_view_scene(camera.K, R, t, n=4)
        res = finder.estimate_from_correspondences(pts_q, pts_k)
        assert not res.success
        assert res.reason is Reason.DEGENERATE_INPUT

    def test_empty_and_mismatched(self, finder):
        assert finder.estimate_from_correspondences(np.zeros((0, 2)), np.zeros((0, 2))).reason is Reason.DEGENERATE_INPUT
        res = finder.estimate_from_correspondences(np.zeros((6, 2)), np.zeros((7, 2)))
        assert res.reason is Reason.DEGENERATE_INPUT

    def test_non_finite_points_dropped(self, finder, camera, true_motion):
        R, t = true_motion
        pts_q, pts_k = two_view_scene(camera.K, R, t, n=6)
        pts_q[:2] = np.nan
        res = finder.estimate_from_correspondences(pts_q, pts_k)
        assert res.reason is Reason.DEGENERATE_INPUT

    def test_collinear_points(self, finder, camera, true_motion):
        R, t = true_motion
        s = np.linspace(0.0, 1.0, 30)
        X = np.column_stack([-1.0 + 2.0 * s, -0.5 + s, 5.0 + 2.0 * s])
        pts_k = project(camera.K, X)
        pts_q = project(camera.K, (R @ X.T).T + t)
        res = finder.estimate_from_correspondences(pts_q, pts_k)
        assert not res.success
        assert res.reason is Reason.DEGENERATE

    def test_pure_rotation(self, finder, camera):
        R = rot_y(np.radians(4.0))
        pts_q, pts_k = two_view_scene(camera.K, R, np.zeros(3), n=60)
        res = finder.estimate_from_correspondences(pts_q, pts_k)
        assert not res.success
        assert res.reason is Reason.DEGENERATE

    def test_collinear_points_without_motion(self, finder, camera):
        s = np.linspace(0.0, 1.0, 30)
        X = np.column_stack([-1.0 + 2.0 * s, -0.5 + s, 5.0 + 2.0 * s])
        pts = project(camera.K, X)
        res = finder.estimate_from_correspondences(pts.copy(), pts)
        assert not res.success
        assert res.reason is Reason.DEGENERATE

    def test_pure_rotation_few_correspondences(self, finder, camera):
        R = rot_y(np.radians(4.0))
        pts_q, pts_k = two_view_scene(camera.K, R, np.zeros(3), n=10, seed=8)
        res = finder.estimate_from_correspondences(pts_q, pts_k)
        assert not res.success
        assert res.reason is Reason.DEGENERATE

    def test_tiny_baseline(self, finder, camera):
        pts_q, pts_k = two_view_scene(camera.K, rot_y(np.radians(3.0)), np.array([1e-4, 0.0, 0.0]), n=60)
        res = finder.estimate_from_correspondences(pts_q, pts_k)
        assert not res.success
        assert res.reason is Reason.DEGENERATE


class TestCoincidentViews:
    def test_identical_points_give_identity(self, finder, camera, true_motion):
        R, t = true_motion
        _, pts_k = two_view_scene(camera.K, R, t, n=40)
        res = finder.estimate_from_correspondences(pts_k.copy(), pts_k)
        assert res.success
        assert np.allclose(res.R, np.eye(3))
        assert np.allclose(res.t, 0.0)
        assert res.inlier_count == 40

    def test_same_frame_via_orb(self, small_camera):
        finder = FivePointRelposFinder(small_camera, FivePointConfig(seed=0))
        img = make_texture(seed=21)
        q = make_frame(1, img, keyframe=False)
        kf = make_frame(0, img)
        res = finder.estimate(q, kf)
        assert res.success, res.reason
        assert res.matched_id == 0
        assert rotation_angle_deg(res.R) < 1e-6
        assert res.inlier_count >= 0.9 * res.num_correspondences
        assert res.num_correspondences >= 15


class TestCancellation:
    def test_cancel_before_start(self, finder, camera, true_motion):
        R, t = true_motion
        pts_q, pts_k = two_view_scene(camera.K, R, t, n=60)
        ev = threading.Event()
        ev.set()
        res = finder.estimate_from_correspondences(pts_q, pts_k, cancel=ev)
        assert not res.success
        assert res.reason is Reason.CANCELLED
        assert res.iterations == 0


class TestFeatureCache:
    def test_cache_is_bounded(self, small_camera):
        finder = FivePointRelposFinder(small_camera, FivePointConfig(feature_cache=2, seed=0))
        img = make_texture(seed=3)
        q = make_frame(100, img, keyframe=False)
        for i in range(4):
            finder.estimate(q, make_frame(i, img))
        assert list(finder._cache.keys()) == [2, 3]
