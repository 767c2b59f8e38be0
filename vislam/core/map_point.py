import time
from enum import Enum
from typing import List

import cv2
import numpy as np

FOUND_RATIO_BAD = 0.25  # Found/visible ratio below which a point is marked bad
MIN_VISIBLE_FOR_QUALITY = 10  # Sightings needed before the found ratio is trusted


class TrackingQuality(str, Enum):
    GOOD = 'good'
    TENTATIVE = 'tentative'
    BAD = 'bad'


def hamming_distance(desc1, desc2):
    """Number of differing bits between two binary descriptors."""
    return int(cv2.norm(np.asarray(desc1, dtype=np.uint8),
                        np.asarray(desc2, dtype=np.uint8), cv2.NORM_HAMMING))


class MapPoint:
    """
    Represents a 3D map point in the world coordinate system

    Each map point stores:
    - 3D position in world coordinates
    - Mean viewing direction (surface normal)
    - Representative binary descriptor
    - Ids of the keyframes observing it
    - Tracking statistics used to grade its quality
    """
    def __init__(self, position, descriptor, observations=None, normal=None,
                 min_distance=0.0, max_distance=float('inf'),
                 tracking_state=TrackingQuality.TENTATIVE, created_at=None, id=None):
        """
        Initialize a map point with its 3D position and descriptor.

        Args:
            position: 3D position in world coordinates (array of shape (3,))
            descriptor: Representative binary descriptor (32 uint8 values)
            observations: Ids of the keyframes observing this point
            normal: Mean viewing direction, zero vector if unknown
            min_distance: Minimum scale-invariant observation distance
            max_distance: Maximum scale-invariant observation distance
            tracking_state: Initial quality tag
            created_at: Creation time in seconds (defaults to now)
            id: Assigned by the Map when the point is added
        """
        self.id = id
        self.position = np.array(position, dtype=np.float64)
        self.descriptor = np.array(descriptor, dtype=np.uint8).reshape(-1)
        self.observations = []  # Keyframe ids, no duplicates
        for keyframe_id in observations or []:
            self.add_observation(keyframe_id)
        self.normal = np.zeros(3) if normal is None else np.array(normal, dtype=np.float64)
        self.min_distance = float(min_distance)
        self.max_distance = float(max_distance)
        self.tracking_state = TrackingQuality(tracking_state)
        self.created_at = time.time() if created_at is None else created_at

        # Tracking stats
        self.visible_count = 0  # Times the point was expected in a tracked frame
        self.found_count = 0  # Times it was actually matched

    def add_observation(self, keyframe_id) -> bool:
        """Record that a keyframe observes this point. Returns False if already known."""
        if keyframe_id in self.observations:
            return False
        self.observations.append(keyframe_id)
        return True

    def remove_observation(self, keyframe_id):
        if keyframe_id in self.observations:
            self.observations.remove(keyframe_id)

    @property
    def is_bad(self):
        return self.tracking_state == TrackingQuality.BAD or not self.observations

    def update_normal(self, camera_centers):
        """
        Recompute the mean viewing direction from the observing camera centers.

        Args:
            camera_centers: Iterable of 3D camera centers observing this point
        """
        directions = []
        for center in camera_centers:
            ray = self.position - np.asarray(center, dtype=np.float64)
            norm = np.linalg.norm(ray)
            if norm > 0:
                directions.append(ray / norm)
        if not directions:
            return
        mean_direction = np.mean(directions, axis=0)
        norm = np.linalg.norm(mean_direction)
        if norm > 0:
            self.normal = mean_direction / norm

    def update_descriptor(self, descriptors: List[np.ndarray]):
        """
        Pick as representative the observed descriptor with the minimum summed
        Hamming distance to all the others.

        Args:
            descriptors: Descriptors observed for this map point
        """
        if not descriptors:
            return
        if len(descriptors) == 1:
            self.descriptor = np.array(descriptors[0], dtype=np.uint8)
            return

        stacked = np.asarray(descriptors, dtype=np.uint8)
        bits = np.unpackbits(stacked, axis=1)
        # Pairwise Hamming distances via bit disagreement counts
        distances = (bits[:, None, :] != bits[None, :, :]).sum(axis=2)
        best = int(np.argmin(distances.sum(axis=1)))
        self.descriptor = stacked[best].copy()

    def set_scale_invariance_limits(self, min_distance, max_distance):
        self.min_distance = float(min_distance)
        self.max_distance = float(max_distance)

    def is_within_observation_range(self, distance):
        """True if the camera distance is within [min_distance, max_distance]."""
        return self.min_distance <= distance <= self.max_distance

    def increase_visible(self):
        self.visible_count += 1

    def increase_found(self):
        self.found_count += 1

    def get_found_ratio(self):
        if self.visible_count == 0:
            return 0.0
        return self.found_count / self.visible_count

    def update_quality(self, min_observations):
        """
        Promote tentative points with enough observations and demote points
        that are rarely matched when they should be visible.

        Returns:
            The resulting quality tag
        """
        if self.tracking_state == TrackingQuality.BAD:
            return self.tracking_state
        if (self.visible_count >= MIN_VISIBLE_FOR_QUALITY
                and self.get_found_ratio() < FOUND_RATIO_BAD):
            self.tracking_state = TrackingQuality.BAD
        elif len(self.observations) >= min_observations:
            self.tracking_state = TrackingQuality.GOOD
        return self.tracking_state

    def to_dict(self):
        return {
            'id': self.id,
            'position': [float(v) for v in self.position],
            'descriptor': [int(b) for b in self.descriptor],
            'observations': list(self.observations),
            'normal': [float(v) for v in self.normal],
            'minDistance': self.min_distance,
            'maxDistance': self.max_distance if np.isfinite(self.max_distance) else None,
            'trackingState': self.tracking_state.value,
            'createdAt': self.created_at,
        }

    @classmethod
    def from_dict(cls, data) -> 'MapPoint':
        max_distance = data.get('maxDistance')
        return cls(
            position=data['position'],
            descriptor=data['descriptor'],
            observations=data.get('observations', []),
            normal=data.get('normal'),
            min_distance=data.get('minDistance', 0.0),
            max_distance=float('inf') if max_distance is None else max_distance,
            tracking_state=data.get('trackingState', TrackingQuality.TENTATIVE.value),
            created_at=data.get('createdAt'),
            id=data['id'],
        )

    def __repr__(self):
        return (f"MapPoint(id={self.id}, observations={len(self.observations)}, "
                f"state={self.tracking_state.value})")


def distance_limits(distance, octave, scale_factor=1.2, num_levels=8):
    """
    Scale-invariance distance range for a point first seen at an octave.

    Returns:
        (min_distance, max_distance)
    """
    max_distance = distance * scale_factor ** octave
    min_distance = max_distance / scale_factor ** (num_levels - 1)
    return min_distance, max_distance

