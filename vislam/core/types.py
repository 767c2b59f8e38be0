"""
Value types exchanged between the SLAM components.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np

from vislam.core.geometry import identity_quaternion

DESCRIPTOR_BYTES = 32  # 256-bit binary descriptors


def as_descriptor_array(descriptors) -> np.ndarray:
    """
    Coerce descriptors to a contiguous (N, 32) uint8 array.

    Accepts uint8 rows of 32 bytes, uint32 rows of 8 words, or a flat
    byte buffer. None becomes an empty (0, 32) array.
    """
    if descriptors is None:
        return np.zeros((0, DESCRIPTOR_BYTES), dtype=np.uint8)

    descriptors = np.asarray(descriptors)
    if descriptors.dtype == np.uint32:
        descriptors = np.ascontiguousarray(descriptors).view(np.uint8)
    elif descriptors.dtype != np.uint8:
        descriptors = descriptors.astype(np.uint8)

    if descriptors.size % DESCRIPTOR_BYTES != 0:
        raise ValueError(
            f"Descriptor buffer of {descriptors.size} bytes is not a multiple of {DESCRIPTOR_BYTES}")
    return np.ascontiguousarray(descriptors.reshape(-1, DESCRIPTOR_BYTES))


class SLAMState(str, Enum):
    NOT_INITIALIZED = 'not-initialized'
    INITIALIZING = 'initializing'
    TRACKING = 'tracking'
    LOST = 'lost'
    RELOCALIZED = 'relocalized'  # Reserved, not entered by the current pipeline


@dataclass
class CameraIntrinsics:
    """Pinhole intrinsics with optional distortion coefficients."""
    fx: float
    fy: float
    cx: float
    cy: float
    distortion: Optional[Tuple[float, ...]] = None

    @classmethod
    def from_fov(cls, width, height, fov_degrees=60.0):
        """Estimate intrinsics from the image size and horizontal field of view."""
        focal = width / (2.0 * np.tan(np.deg2rad(fov_degrees) / 2.0))
        return cls(fx=focal, fy=focal, cx=width / 2.0, cy=height / 2.0)

    @classmethod
    def from_matrix(cls, K, distortion=None):
        K = np.asarray(K, dtype=np.float64)
        return cls(fx=K[0, 0], fy=K[1, 1], cx=K[0, 2], cy=K[1, 2],
                   distortion=tuple(distortion) if distortion is not None else None)

    @property
    def matrix(self):
        """3x3 camera matrix K."""
        return np.array([
            [self.fx, 0.0, self.cx],
            [0.0, self.fy, self.cy],
            [0.0, 0.0, 1.0],
        ])

    @property
    def dist_coeffs(self):
        if self.distortion is None:
            return np.zeros((4, 1))
        return np.asarray(self.distortion, dtype=np.float64).reshape(-1, 1)

    def to_dict(self):
        return {
            'fx': float(self.fx), 'fy': float(self.fy),
            'cx': float(self.cx), 'cy': float(self.cy),
            'distortion': list(self.distortion) if self.distortion is not None else None,
        }

    @classmethod
    def from_dict(cls, data):
        distortion = data.get('distortion')
        return cls(fx=data['fx'], fy=data['fy'], cx=data['cx'], cy=data['cy'],
                   distortion=tuple(distortion) if distortion is not None else None)


@dataclass
class Keypoint:
    x: float
    y: float
    octave: int = 0
    angle: float = 0.0


@dataclass
class Frame:
    """
    Features detected in one camera frame.

    Attributes:
        keypoints: Detected keypoints
        descriptors: (N, 32) uint8 binary descriptors parallel to keypoints
        timestamp: Capture time in seconds
    """
    keypoints: List[Keypoint]
    descriptors: np.ndarray
    timestamp: float

    def __post_init__(self):
        self.descriptors = as_descriptor_array(self.descriptors)
        if len(self.descriptors) and len(self.descriptors) != len(self.keypoints):
            raise ValueError(f"Frame has {len(self.keypoints)} keypoints but "
                             f"{len(self.descriptors)} descriptors")

    @property
    def points(self):
        """(N, 2) float array of keypoint pixel coordinates."""
        if not self.keypoints:
            return np.zeros((0, 2))
        return np.array([[kp.x, kp.y] for kp in self.keypoints], dtype=np.float64)

    def __len__(self):
        return len(self.keypoints)


@dataclass
class CameraPose:
    """Live tracking state of the camera."""
    position: np.ndarray = field(default_factory=lambda: np.zeros(3))
    rotation: np.ndarray = field(default_factory=identity_quaternion)
    velocity: np.ndarray = field(default_factory=lambda: np.zeros(3))
    angular_velocity: np.ndarray = field(default_factory=lambda: np.zeros(3))
    timestamp: float = 0.0

    def copy(self, **changes):
        values = {
            'position': np.array(self.position, dtype=np.float64),
            'rotation': np.array(self.rotation, dtype=np.float64),
            'velocity': np.array(self.velocity, dtype=np.float64),
            'angular_velocity': np.array(self.angular_velocity, dtype=np.float64),
            'timestamp': self.timestamp,
        }
        values.update(changes)
        return CameraPose(**values)


@dataclass
class IMUMeasurement:
    timestamp: float  # seconds
    acceleration: np.ndarray  # m/s^2, device frame
    angular_velocity: np.ndarray  # rad/s, device frame

    def __post_init__(self):
        self.acceleration = np.asarray(self.acceleration, dtype=np.float64)
        self.angular_velocity = np.asarray(self.angular_velocity, dtype=np.float64)


@dataclass
class TrackingResult:
    success: bool
    pose: CameraPose
    state: SLAMState
    num_tracked_features: int = 0
    num_inliers: int = 0
    reprojection_error: float = float('inf')
    reason: Optional[str] = None


@dataclass
class LoopClosureCandidate:
    query_id: int
    candidate_id: int
    similarity: float
    match_count: int = 0
    inliers: int = 0


@dataclass
class SLAMStats:
    state: SLAMState = SLAMState.NOT_INITIALIZED
    num_keyframes: int = 0
    num_map_points: int = 0
    num_tracked_features: int = 0
    tracking_time: float = 0.0  # milliseconds
    mapping_time: float = 0.0  # milliseconds
    fps: float = 0.0
    drift_estimate: float = 0.0
    num_loop_closures: int = 0
