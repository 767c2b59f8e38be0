import hashlib
import json
import logging
import threading
import time
import uuid
from collections import Counter
from typing import Dict, List, Optional, Set

import numpy as np

from vislam.core.keyframe import KeyFrame
from vislam.core.map_point import MapPoint
from vislam.core.types import CameraIntrinsics
from vislam.errors import MapCorruptedError

MAP_FORMAT_VERSION = '1.0.0'
COVISIBILITY_THRESHOLD = 15  # Shared map points needed for a covisibility edge

KEYFRAME_SIZE_ESTIMATE = 1024  # bytes
MAP_POINT_SIZE_ESTIMATE = 128  # bytes

DEFAULT_INTRINSICS = CameraIntrinsics(fx=800.0, fy=800.0, cx=640.0, cy=360.0)


def compute_checksum(map_payload) -> str:
    """SHA-256 over the canonical JSON encoding of the map payload."""
    canonical = json.dumps(map_payload, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


class Map:
    """
    Represents the global map storing KeyFrames, MapPoints and the
    covisibility graph between keyframes.

    The covisibility graph is an adjacency table keyed by keyframe id: an
    edge (A, B) exists in both directions iff A and B jointly observe at
    least `covisibility_threshold` map points. All mutations hold the map
    lock, so readers on other threads see whole updates.
    """
    def __init__(self, name='SLAM Map', map_id=None, covisibility_threshold=COVISIBILITY_THRESHOLD,
                 logger=None):
        """Initialize an empty map."""
        self.id = map_id or uuid.uuid4().hex
        self.name = name
        self.created_at = time.time()
        self.last_updated_at = self.created_at
        self.metadata = {'version': MAP_FORMAT_VERSION}
        self.covisibility_threshold = covisibility_threshold
        self.logger = logger or logging.getLogger(__name__)

        self.keyframes: Dict[int, KeyFrame] = {}  # keyframe_id -> KeyFrame, insertion ordered
        self.map_points: Dict[int, MapPoint] = {}  # map_point_id -> MapPoint
        self.covisibility_graph: Dict[int, Set[int]] = {}  # keyframe_id -> neighbor ids
        self.next_keyframe_id = 0
        self.next_map_point_id = 0

        self._lock = threading.RLock()

    @property
    def lock(self):
        """Re-entrant lock guarding every table of the map."""
        return self._lock

    def _touch(self):
        self.last_updated_at = time.time()

    def add_keyframe(self, keyframe: KeyFrame) -> KeyFrame:
        """
        Assign the next id to a keyframe, insert it and link it into the
        covisibility graph.

        Map point ids listed on the keyframe gain it as an observer; ids
        of unknown map points are dropped.

        Args:
            keyframe: KeyFrame without an id

        Returns:
            The inserted KeyFrame
        """
        with self._lock:
            keyframe.id = self.next_keyframe_id
            self.next_keyframe_id += 1

            self.keyframes[keyframe.id] = keyframe
            self.covisibility_graph[keyframe.id] = set()
            keyframe.covisible_keyframes = []

            known = []
            for map_point_id in keyframe.map_points:
                map_point = self.map_points.get(map_point_id)
                if map_point is not None and map_point_id not in known:
                    map_point.add_observation(keyframe.id)
                    known.append(map_point_id)
            keyframe.map_points = known

            self.update_covisibility(keyframe.id)
            self._touch()
            return keyframe

    def add_map_point(self, map_point: MapPoint) -> MapPoint:
        """
        Add a new MapPoint to the map and assign it a unique id.

        Args:
            map_point: MapPoint whose observations name existing keyframes

        Returns:
            The inserted MapPoint

        Raises:
            ValueError: If the point has no observations or observes an unknown keyframe.
        """
        with self._lock:
            if not map_point.observations:
                raise ValueError("A map point needs at least one observing keyframe")
            missing = [kf_id for kf_id in map_point.observations if kf_id not in self.keyframes]
            if missing:
                raise ValueError(f"Map point observes unknown keyframes: {missing}")

            map_point.id = self.next_map_point_id
            self.next_map_point_id += 1
            self.map_points[map_point.id] = map_point

            for keyframe_id in map_point.observations:
                keyframe = self.keyframes[keyframe_id]
                if map_point.id not in keyframe.map_points:
                    keyframe.map_points.append(map_point.id)

            self._touch()
            return map_point

    def add_observation(self, map_point_id, keyframe_id, feature_idx=None):
        """
        Record that a keyframe observes an existing map point.

        Args:
            map_point_id: Id of the observed MapPoint
            keyframe_id: Id of the observing KeyFrame
            feature_idx: Feature of the keyframe to bind, if any
        """
        with self._lock:
            map_point = self.map_points[map_point_id]
            keyframe = self.keyframes[keyframe_id]
            map_point.add_observation(keyframe_id)
            if feature_idx is not None:
                keyframe.add_map_point(feature_idx, map_point_id)
            elif map_point_id not in keyframe.map_points:
                keyframe.map_points.append(map_point_id)
            self._touch()

    def get_keyframe(self, keyframe_id) -> Optional[KeyFrame]:
        return self.keyframes.get(keyframe_id)

    def get_map_point(self, map_point_id) -> Optional[MapPoint]:
        return self.map_points.get(map_point_id)

    def get_all_keyframes(self) -> List[KeyFrame]:
        with self._lock:
            return list(self.keyframes.values())

    def get_all_map_points(self) -> List[MapPoint]:
        with self._lock:
            return list(self.map_points.values())

    def get_recent_keyframes(self, count) -> List[KeyFrame]:
        """The `count` most recently added keyframes, oldest first."""
        with self._lock:
            if count <= 0:
                return []
            return list(self.keyframes.values())[-count:]

    def get_last_keyframe(self) -> Optional[KeyFrame]:
        recent = self.get_recent_keyframes(1)
        return recent[0] if recent else None

    def get_covisible_keyframes(self, keyframe_id) -> List[KeyFrame]:
        with self._lock:
            neighbors = self.covisibility_graph.get(keyframe_id, set())
            return [self.keyframes[kf_id] for kf_id in sorted(neighbors) if kf_id in self.keyframes]

    def get_nearby_keyframes(self, position, radius) -> List[KeyFrame]:
        """Keyframes whose camera center lies within `radius` of `position`."""
        with self._lock:
            keyframes = list(self.keyframes.values())
            if not keyframes:
                return []
            centers = np.array([kf.pose.position for kf in keyframes])
            distances = np.linalg.norm(centers - np.asarray(position, dtype=np.float64), axis=1)
            return [kf for kf, d in zip(keyframes, distances) if d <= radius]

    def count_shared_map_points(self, keyframe_id_a, keyframe_id_b):
        with self._lock:
            a = self.keyframes.get(keyframe_id_a)
            b = self.keyframes.get(keyframe_id_b)
            if a is None or b is None:
                return 0
            return len(set(a.map_points) & set(b.map_points))

    def _link(self, a, b):
        self.covisibility_graph[a].add(b)
        self.covisibility_graph[b].add(a)
        for src, dst in ((a, b), (b, a)):
            neighbors = self.keyframes[src].covisible_keyframes
            if dst not in neighbors:
                neighbors.append(dst)

    def _unlink(self, a, b):
        self.covisibility_graph.get(a, set()).discard(b)
        self.covisibility_graph.get(b, set()).discard(a)
        for src, dst in ((a, b), (b, a)):
            keyframe = self.keyframes.get(src)
            if keyframe is not None and dst in keyframe.covisible_keyframes:
                keyframe.covisible_keyframes.remove(dst)

    def update_covisibility(self, keyframe_id):
        """
        Recompute the covisibility edges of one keyframe against all others,
        adding and removing edges on both endpoints.

        Returns:
            Number of covisible keyframes after the update
        """
        with self._lock:
            keyframe = self.keyframes.get(keyframe_id)
            if keyframe is None:
                return 0

            shared = Counter()
            for map_point_id in keyframe.map_points:
                map_point = self.map_points.get(map_point_id)
                if map_point is None:
                    continue
                for other_id in map_point.observations:
                    if other_id != keyframe_id:
                        shared[other_id] += 1

            for other_id in list(self.keyframes):
                if other_id == keyframe_id:
                    continue
                if shared[other_id] >= self.covisibility_threshold:
                    self._link(keyframe_id, other_id)
                else:
                    self._unlink(keyframe_id, other_id)

            return len(self.covisibility_graph[keyframe_id])

    def update_map_point(self, map_point_id):
        """
        Refresh a map point's representative descriptor and mean normal
        from the keyframes observing it.
        """
        with self._lock:
            map_point = self.map_points.get(map_point_id)
            if map_point is None:
                return

            descriptors = []
            centers = []
            for keyframe_id in map_point.observations:
                keyframe = self.keyframes.get(keyframe_id)
                if keyframe is None:
                    continue
                centers.append(keyframe.pose.position)
                feature_idx = keyframe.get_feature_index(map_point_id)
                if feature_idx is not None:
                    descriptors.append(keyframe.features[feature_idx].descriptor)

            map_point.update_descriptor(descriptors)
            map_point.update_normal(centers)

    def remove_map_point(self, map_point_id):
        """Removes a map point and all keyframe references to it."""
        with self._lock:
            map_point = self.map_points.pop(map_point_id, None)
            if map_point is None:
                return

            affected = []
            for keyframe_id in map_point.observations:
                keyframe = self.keyframes.get(keyframe_id)
                if keyframe is not None:
                    keyframe.remove_map_point(map_point_id)
                    affected.append(keyframe_id)

            for keyframe_id in affected:
                self.update_covisibility(keyframe_id)
            self._touch()

    def remove_keyframe(self, keyframe_id):
        """
        Removes a keyframe, severs its covisibility edges and prunes map
        points that no longer have any observer.

        Returns:
            Ids of the map points pruned along with it
        """
        with self._lock:
            keyframe = self.keyframes.get(keyframe_id)
            if keyframe is None:
                return []

            for neighbor_id in list(self.covisibility_graph.get(keyframe_id, set())):
                self._unlink(keyframe_id, neighbor_id)
            del self.covisibility_graph[keyframe_id]

            pruned = []
            for map_point_id in list(keyframe.map_points):
                map_point = self.map_points.get(map_point_id)
                if map_point is None:
                    continue
                map_point.remove_observation(keyframe_id)
                if not map_point.observations:
                    del self.map_points[map_point_id]
                    pruned.append(map_point_id)

            del self.keyframes[keyframe_id]
            self._touch()
            return pruned

    def cull_bad_map_points(self):
        """
        Removes map points tagged bad or left without observations.

        Returns:
            Number of map points removed
        """
        with self._lock:
            bad = [mp_id for mp_id, mp in self.map_points.items() if mp.is_bad]
            for map_point_id in bad:
                self.remove_map_point(map_point_id)
            if bad:
                self.logger.debug("Culled %d bad map points", len(bad))
            return len(bad)

    def cull_old_keyframes(self, max_keyframes):
        """
        Removes the oldest keyframes beyond `max_keyframes`.

        Returns:
            Ids of the removed keyframes
        """
        with self._lock:
            excess = len(self.keyframes) - max_keyframes
            if excess <= 0:
                return []
            removed = list(self.keyframes)[:excess]
            for keyframe_id in removed:
                self.remove_keyframe(keyframe_id)
            self.logger.debug("Culled %d old keyframes", len(removed))
            return removed

    def update_tracking_counts(self, visible_ids, found_ids, min_observations):
        """Bump visible/found counters of map points seen by the tracker and regrade them."""
        with self._lock:
            found_ids = set(found_ids)
            for map_point_id in visible_ids:
                map_point = self.map_points.get(map_point_id)
                if map_point is None:
                    continue
                map_point.increase_visible()
                if map_point_id in found_ids:
                    map_point.increase_found()
                map_point.update_quality(min_observations)

    def is_covisibility_symmetric(self):
        with self._lock:
            for a, neighbors in self.covisibility_graph.items():
                for b in neighbors:
                    if a not in self.covisibility_graph.get(b, set()):
                        return False
            return True

    def get_bounds(self):
        """Axis-aligned bounds of keyframe centers and map points, or None if empty."""
        with self._lock:
            points = [kf.pose.position for kf in self.keyframes.values()]
            points.extend(mp.position for mp in self.map_points.values())
            if not points:
                return None
            points = np.array(points)
            return {'min': points.min(axis=0).tolist(), 'max': points.max(axis=0).tolist()}

    def get_stats(self):
        """Counts and a rough in-memory size estimate."""
        with self._lock:
            num_keyframes = len(self.keyframes)
            num_map_points = len(self.map_points)
            num_connections = sum(len(n) for n in self.covisibility_graph.values()) // 2
            size_bytes = (num_keyframes * KEYFRAME_SIZE_ESTIMATE
                          + num_map_points * MAP_POINT_SIZE_ESTIMATE)
            return {
                'num_keyframes': num_keyframes,
                'num_map_points': num_map_points,
                'num_connections': num_connections,
                'map_size_kb': size_bytes / 1024.0,
            }

    def get_name(self):
        return self.name

    def set_name(self, name):
        self.name = name
        self._touch()

    def clear(self):
        """Drops all content. Ids restart at 0."""
        with self._lock:
            self.keyframes.clear()
            self.map_points.clear()
            self.covisibility_graph.clear()
            self.next_keyframe_id = 0
            self.next_map_point_id = 0
            self._touch()

    def serialize(self):
        """
        Flatten the map into the JSON-compatible wire format.

        Returns:
            {'version', 'map': {...}, 'compressed', 'checksum'}
        """
        with self._lock:
            metadata = dict(self.metadata)
            bounds = self.get_bounds()
            if bounds is not None:
                metadata['bounds'] = bounds
            payload = {
                'id': self.id,
                'name': self.name,
                'createdAt': self.created_at,
                'lastUpdatedAt': self.last_updated_at,
                'metadata': metadata,
                'keyframes': [kf.to_dict() for kf in self.keyframes.values()],
                'mapPoints': [mp.to_dict() for mp in self.map_points.values()],
            }
        return {
            'version': MAP_FORMAT_VERSION,
            'map': payload,
            'compressed': False,
            'checksum': compute_checksum(payload),
        }

    @classmethod
    def deserialize(cls, data, logger=None) -> 'Map':
        """
        Rebuild a map from the wire format.

        A version mismatch is logged and loading continues best-effort.

        Raises:
            MapCorruptedError: If a non-empty checksum does not match the payload.
        """
        logger = logger or logging.getLogger(__name__)
        version = data.get('version')
        if version != MAP_FORMAT_VERSION:
            logger.warning("Map version mismatch: %s != %s, loading anyway",
                           version, MAP_FORMAT_VERSION)

        payload = data['map']
        checksum = data.get('checksum')
        if checksum and compute_checksum(payload) != checksum:
            raise MapCorruptedError(f"Checksum mismatch for map {payload.get('id')}")

        slam_map = cls(name=payload.get('name', 'SLAM Map'), map_id=payload.get('id'), logger=logger)
        slam_map.created_at = payload.get('createdAt', slam_map.created_at)
        slam_map.metadata = dict(payload.get('metadata') or {'version': MAP_FORMAT_VERSION})
        slam_map.metadata.pop('bounds', None)

        for kf_data in payload.get('keyframes', []):
            keyframe = KeyFrame.from_dict(kf_data, default_intrinsics=DEFAULT_INTRINSICS)
            slam_map.keyframes[keyframe.id] = keyframe
            slam_map.covisibility_graph[keyframe.id] = set()

        for mp_data in payload.get('mapPoints', []):
            map_point = MapPoint.from_dict(mp_data)
            map_point.observations = [kf_id for kf_id in map_point.observations
                                      if kf_id in slam_map.keyframes]
            if not map_point.observations:
                continue
            slam_map.map_points[map_point.id] = map_point

        for keyframe in slam_map.keyframes.values():
            keyframe.map_points = [mp_id for mp_id in keyframe.map_points
                                   if mp_id in slam_map.map_points]
            for feature in keyframe.features:
                if feature.map_point_id is not None and feature.map_point_id not in slam_map.map_points:
                    feature.map_point_id = None
            neighbors = keyframe.covisible_keyframes
            keyframe.covisible_keyframes = []
            for neighbor_id in neighbors:
                if neighbor_id in slam_map.keyframes and neighbor_id != keyframe.id:
                    slam_map._link(keyframe.id, neighbor_id)

        slam_map.next_keyframe_id = max(slam_map.keyframes, default=-1) + 1
        slam_map.next_map_point_id = max(slam_map.map_points, default=-1) + 1
        slam_map.last_updated_at = payload.get('lastUpdatedAt', slam_map.created_at)
        return slam_map

    def __repr__(self):
        return (f"Map(id={self.id}, name={self.name!r}, keyframes={len(self.keyframes)}, "
                f"map_points={len(self.map_points)})")
