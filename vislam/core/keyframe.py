from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from vislam.core.geometry import identity_quaternion, pose_matrices
from vislam.core.types import CameraIntrinsics, Frame, DESCRIPTOR_BYTES


@dataclass
class KeyframeFeature:
    """A detected feature frozen into a keyframe."""
    x: float
    y: float
    octave: int
    angle: float
    descriptor: np.ndarray
    map_point_id: Optional[int] = None

    def to_dict(self):
        return {
            'x': float(self.x),
            'y': float(self.y),
            'octave': int(self.octave),
            'angle': float(self.angle),
            'descriptor': [int(b) for b in self.descriptor],
            'mapPointId': self.map_point_id,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            x=data['x'], y=data['y'],
            octave=data.get('octave', 0), angle=data.get('angle', 0.0),
            descriptor=np.array(data['descriptor'], dtype=np.uint8),
            map_point_id=data.get('mapPointId'),
        )


@dataclass
class KeyframePose:
    """
    Frozen pose of a keyframe.

    Attributes:
        position: Camera center in world coordinates
        rotation: Camera-to-world orientation quaternion (x, y, z, w)
        transform: 4x4 world-to-camera matrix
        inverse: 4x4 camera-to-world matrix
    """
    position: np.ndarray
    rotation: np.ndarray
    transform: np.ndarray = field(default=None, repr=False)
    inverse: np.ndarray = field(default=None, repr=False)

    def __post_init__(self):
        self.position = np.array(self.position, dtype=np.float64)
        self.rotation = np.array(self.rotation, dtype=np.float64)
        if self.transform is None or self.inverse is None:
            self.transform, self.inverse = pose_matrices(self.position, self.rotation)

    @classmethod
    def origin(cls):
        return cls(np.zeros(3), identity_quaternion())


class KeyFrame:
    """
    A keyframe stores:
    - Camera pose
    - Camera intrinsic parameters
    - Detected features (keypoints, descriptors, bound map points)
    - Observed map point ids
    - Covisible keyframe ids (kept in sync with the Map's covisibility graph)
    """
    def __init__(self, timestamp, pose: KeyframePose, features: List[KeyframeFeature],
                 intrinsics: CameraIntrinsics, map_points=None, covisible_keyframes=None, id=None):
        """
        Initialize a keyframe.

        Args:
            timestamp: Capture time in seconds
            pose: Frozen camera pose
            features: Features detected in the frame
            intrinsics: Snapshot of the camera intrinsics
            map_points: Ids of observed map points
            covisible_keyframes: Ids of covisible keyframes
            id: Assigned by the Map when the keyframe is added
        """
        self.id = id
        self.timestamp = timestamp
        self.pose = pose
        self.features = features
        self.intrinsics = intrinsics
        self.map_points = list(map_points or [])
        self.covisible_keyframes = list(covisible_keyframes or [])

        if features:
            self._descriptors = np.vstack([f.descriptor for f in features]).astype(np.uint8)
        else:
            self._descriptors = np.zeros((0, DESCRIPTOR_BYTES), dtype=np.uint8)

    @classmethod
    def from_frame(cls, frame: Frame, pose: KeyframePose, intrinsics: CameraIntrinsics,
                   max_features=None):
        """
        Freeze a frame into a keyframe candidate (without id).

        Args:
            frame: Frame holding keypoints and descriptors
            pose: Pose to freeze
            intrinsics: Camera intrinsics snapshot
            max_features: Keep at most this many features
        """
        count = len(frame.keypoints)
        if max_features is not None:
            count = min(count, max_features)
        features = []
        for i in range(count):
            kp = frame.keypoints[i]
            if i < len(frame.descriptors):
                descriptor = frame.descriptors[i].copy()
            else:
                descriptor = np.zeros(DESCRIPTOR_BYTES, dtype=np.uint8)
            features.append(KeyframeFeature(kp.x, kp.y, kp.octave, kp.angle, descriptor))
        return cls(frame.timestamp, pose, features, intrinsics)

    @property
    def descriptors(self):
        """(N, 32) uint8 descriptors of the features, in feature order."""
        return self._descriptors

    @property
    def points(self):
        if not self.features:
            return np.zeros((0, 2))
        return np.array([[f.x, f.y] for f in self.features], dtype=np.float64)

    def get_camera_center(self):
        return self.pose.position

    def add_map_point(self, feature_idx, map_point_id):
        """
        Binds a feature to a map point and records the observation.

        Args:
            feature_idx: Index of the feature in this keyframe
            map_point_id: The corresponding MapPoint id
        """
        self.features[feature_idx].map_point_id = map_point_id
        if map_point_id not in self.map_points:
            self.map_points.append(map_point_id)

    def remove_map_point(self, map_point_id):
        """Drops a map point and unbinds any feature pointing to it."""
        if map_point_id in self.map_points:
            self.map_points.remove(map_point_id)
        for feature in self.features:
            if feature.map_point_id == map_point_id:
                feature.map_point_id = None

    def get_feature_index(self, map_point_id):
        for idx, feature in enumerate(self.features):
            if feature.map_point_id == map_point_id:
                return idx
        return None

    def to_dict(self):
        return {
            'id': self.id,
            'timestamp': self.timestamp,
            'pose': {
                'position': [float(v) for v in self.pose.position],
                'rotation': [float(v) for v in self.pose.rotation],
            },
            'features': [f.to_dict() for f in self.features],
            'covisibleKeyframes': list(self.covisible_keyframes),
            'mapPoints': list(self.map_points),
            'intrinsics': self.intrinsics.to_dict() if self.intrinsics is not None else None,
        }

    @classmethod
    def from_dict(cls, data, default_intrinsics=None) -> 'KeyFrame':
        intrinsics = data.get('intrinsics')
        return cls(
            timestamp=data['timestamp'],
            pose=KeyframePose(data['pose']['position'], data['pose']['rotation']),
            features=[KeyframeFeature.from_dict(f) for f in data.get('features', [])],
            intrinsics=CameraIntrinsics.from_dict(intrinsics) if intrinsics else default_intrinsics,
            map_points=data.get('mapPoints', []),
            covisible_keyframes=data.get('covisibleKeyframes', []),
            id=data['id'],
        )

    def __repr__(self):
        return (f"KeyFrame(id={self.id}, features={len(self.features)}, "
                f"map_points={len(self.map_points)})")
