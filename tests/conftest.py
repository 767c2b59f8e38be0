"""
pytest configuration: shared fixtures for synthetic features and scenes.
"""

import numpy as np
import pytest

from vislam.core.geometry import identity_quaternion, pose_matrices
from vislam.core.keyframe import KeyFrame, KeyframePose
from vislam.core.types import CameraIntrinsics, Frame, Keypoint


def random_descriptors(count, seed=0):
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(count, 32), dtype=np.uint8)


def flip_bits(descriptor, num_bits, seed=0):
    """Copy of a descriptor with `num_bits` distinct bits flipped."""
    rng = np.random.default_rng(seed)
    bits = np.unpackbits(np.asarray(descriptor, dtype=np.uint8))
    positions = rng.choice(bits.size, num_bits, replace=False)
    bits[positions] ^= 1
    return np.packbits(bits)


def make_frame(descriptors, timestamp=0.0, seed=0):
    """Frame with random pixel positions for the given descriptors."""
    rng = np.random.default_rng(seed)
    keypoints = [Keypoint(float(x), float(y)) for x, y in rng.uniform(0, 640, size=(len(descriptors), 2))]
    return Frame(keypoints, descriptors, timestamp)


def make_keyframe(descriptors, timestamp=0.0, position=(0.0, 0.0, 0.0), rotation=None,
                  intrinsics=None, seed=0):
    intrinsics = intrinsics or CameraIntrinsics(500.0, 500.0, 320.0, 240.0)
    rotation = identity_quaternion() if rotation is None else rotation
    frame = make_frame(descriptors, timestamp, seed)
    return KeyFrame.from_frame(frame, KeyframePose(position, rotation), intrinsics)


class SyntheticScene:
    """Landmarks with fixed descriptors, observable from arbitrary camera poses."""

    def __init__(self, num_points=60, seed=0):
        rng = np.random.default_rng(seed)
        self.points = np.column_stack([
            rng.uniform(-2.0, 2.0, num_points),
            rng.uniform(-1.5, 1.5, num_points),
            rng.uniform(4.0, 8.0, num_points),
        ])
        self.descriptors = random_descriptors(num_points, seed + 1)
        self.intrinsics = CameraIntrinsics(500.0, 500.0, 320.0, 240.0)

    def project(self, position, rotation=None):
        rotation = identity_quaternion() if rotation is None else rotation
        transform, _ = pose_matrices(position, rotation)
        camera_points = (transform[:3, :3] @ self.points.T).T + transform[:3, 3]
        pixels = (self.intrinsics.matrix @ camera_points.T).T
        return pixels[:, :2] / pixels[:, 2:3]

    def frame_at(self, position, timestamp, rotation=None):
        pixels = self.project(position, rotation)
        keypoints = [Keypoint(float(x), float(y)) for x, y in pixels]
        return Frame(keypoints, self.descriptors.copy(), timestamp)


@pytest.fixture
def intrinsics():
    return CameraIntrinsics(500.0, 500.0, 320.0, 240.0)


@pytest.fixture
def scene():
    return SyntheticScene()


@pytest.fixture
def descriptors():
    return random_descriptors(80, seed=7)
