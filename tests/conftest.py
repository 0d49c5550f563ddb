"""
Shared fixtures: a textured synthetic image, a camera and a synthetic
two-view scene with known relative motion.
"""

import cv2
import numpy as np
import pytest

from monoreloc.geom.camera import PinholeCamera
from monoreloc.geom.se3 import rot_x, rot_y, rot_z
from monoreloc.system.frame import Frame


def make_texture(h=240, w=320, seed=0, block=6):
    """Blocky random texture (strong corners for ORB), lightly blurred."""
    rng = np.random.default_rng(seed)
    small = rng.integers(0, 256, (h // block + 1, w // block + 1), dtype=np.uint8)
    img = cv2.resize(small, (w // block * block + block, h // block * block + block),
                     interpolation=cv2.INTER_NEAREST)[:h, :w]
    return cv2.GaussianBlur(img, (0, 0), 0.8)


def make_frame(frame_id, img, *, keyframe=True, levels=4):
    return Frame.from_image(frame_id, img, levels=levels, is_keyframe=keyframe)


def project(K, X):
    x = (K @ X.T).T
    return x[:, :2] / x[:, 2:3]


def two_view_scene(K, R, t, n=60, seed=1):
    """
    Points in front of the keyframe camera, seen again by a query camera at
    X_q = R X_kf + t. Returns (pts_query, pts_keyframe) in pixels.
    """
    rng = np.random.default_rng(seed)
    X = np.column_stack([
        rng.uniform(-2.0, 2.0, n),
        rng.uniform(-1.5, 1.5, n),
        rng.uniform(4.0, 8.0, n),
    ])
    Xq = (R @ X.T).T + np.asarray(t).reshape(1, 3)
    assert np.all(Xq[:, 2] > 0)
    return project(K, Xq), project(K, X)


@pytest.fixture
def camera():
    return PinholeCamera(width=640, height=480, fx=500.0, fy=500.0, cx=320.0, cy=240.0)


@pytest.fixture
def small_camera():
    return PinholeCamera(width=320, height=240, fx=300.0, fy=300.0, cx=160.0, cy=120.0)


@pytest.fixture
def true_motion():
    R = rot_y(np.radians(6.0)) @ rot_x(np.radians(-3.0)) @ rot_z(np.radians(2.0))
    t = np.array([0.6, 0.1, 0.15])
    return R, t


@pytest.fixture
def texture():
    return make_texture()
