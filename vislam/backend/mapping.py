import logging
import time

import cv2
import numpy as np

from vislam.core.geometry import projection_matrix
from vislam.core.keyframe import KeyFrame, KeyframePose
from vislam.core.map_point import MapPoint, distance_limits
from vislam.frontend.feature_matcher import FeatureMatcher


class Mapper:
    """
    Local mapping: turns tracked frames into keyframes, grows the map by
    triangulating matches against reference keyframes, culls the map and
    drives loop closure detection.
    """
    def __init__(self, slam_map, keyframe_manager, intrinsics, loop_detector=None,
                 max_features=500, max_keyframes=100, min_observations=3, max_reprojection_error=3.0,
                 max_mapping_time=20.0, enable_triangulation=True, matcher=None, logger=None):
        """
        Args:
            slam_map: Map to grow
            keyframe_manager: KeyframeManager deciding keyframe creation
            intrinsics: CameraIntrinsics snapshot given to new keyframes
            loop_detector: Optional LoopClosureDetector
            max_features: Features kept per keyframe
            max_keyframes: Keyframe cap, oldest keyframes are culled beyond it
            min_observations: Observations for a map point to be graded good
            max_reprojection_error: Pixel error bound for triangulated points
            max_mapping_time: Budget in milliseconds for triangulation per keyframe
            enable_triangulation: Create map points from reference keyframes
        """
        self.map = slam_map
        self.keyframe_manager = keyframe_manager
        self.intrinsics = intrinsics
        self.loop_detector = loop_detector
        self.max_features = max_features
        self.max_keyframes = max_keyframes
        self.min_observations = min_observations
        self.max_reprojection_error = max_reprojection_error
        self.max_mapping_time = max_mapping_time
        self.enable_triangulation = enable_triangulation
        self.matcher = matcher or FeatureMatcher(match_threshold=50, ratio_threshold=0.8)
        self.logger = logger or logging.getLogger(__name__)

        self.frame_count = 0
        self.loop_closures = []

    def _register(self, keyframe):
        self.keyframe_manager.register_keyframe(keyframe)
        if self.loop_detector is not None:
            self.loop_detector.add_keyframe(keyframe)

    def initialize_map(self, frame):
        """
        Create the first keyframe of the map at the world origin.

        Args:
            frame: Frame holding the initial features

        Returns:
            The inserted KeyFrame
        """
        candidate = KeyFrame.from_frame(frame, KeyframePose.origin(), self.intrinsics, self.max_features)
        keyframe = self.map.add_keyframe(candidate)
        self._register(keyframe)
        self.logger.info("Map initialized with keyframe %d (%d features)",
                         keyframe.id, len(keyframe.features))
        return keyframe

    def try_create_keyframe(self, frame, pose, num_tracked_features):
        """
        Create a keyframe from a tracked frame if the keyframe policy asks for one.

        Args:
            frame: Tracked frame
            pose: CameraPose estimated for the frame
            num_tracked_features: Matches found by the tracker

        Returns:
            The new KeyFrame, or None if no keyframe was created
        """
        self.frame_count += 1
        candidate = KeyFrame.from_frame(frame, KeyframePose(pose.position, pose.rotation),
                                        self.intrinsics, self.max_features)
        if not self.keyframe_manager.should_create_keyframe(candidate, num_tracked_features):
            return None

        start = time.perf_counter()
        with self.map.lock:
            keyframe = self.map.add_keyframe(candidate)
            self.keyframe_manager.register_keyframe(keyframe)
            if self.enable_triangulation:
                self._create_map_points(keyframe, start)
            removed = self._cull()

        if self.loop_detector is not None:
            for keyframe_id in removed:
                self.loop_detector.remove_keyframe(keyframe_id)
            self.loop_detector.add_keyframe(keyframe)
            self.loop_closures.extend(self.loop_detector.detect_loop_closure(keyframe, self.frame_count))

        self.logger.debug("Created keyframe %d (%d map points total)",
                          keyframe.id, len(self.map.map_points))
        return keyframe

    def _create_map_points(self, keyframe, start):
        """Fuse and triangulate matches against the best reference keyframes."""
        others = [kf for kf in self.map.get_all_keyframes() if kf.id != keyframe.id]
        references = self.keyframe_manager.select_reference_keyframes(
            keyframe.pose.position, keyframe.pose.rotation, others)

        fused = 0
        created = 0
        for reference in references:
            if (time.perf_counter() - start) * 1000.0 > self.max_mapping_time:
                self.logger.debug("Mapping budget exhausted after %d map points", created)
                break

            pairs = []
            used = set()  # Reference features already claimed by a query feature
            for match in self.matcher.match(keyframe.descriptors, reference.descriptors):
                feature = keyframe.features[match.query_idx]
                if feature.map_point_id is not None or match.train_idx in used:
                    continue
                used.add(match.train_idx)
                map_point_id = reference.features[match.train_idx].map_point_id
                map_point = self.map.get_map_point(map_point_id) if map_point_id is not None else None
                if map_point is not None:
                    self.map.add_observation(map_point_id, keyframe.id, match.query_idx)
                    self.map.update_map_point(map_point_id)
                    map_point.update_quality(self.min_observations)
                    fused += 1
                else:
                    pairs.append((match.query_idx, match.train_idx))

            if pairs:
                created += self._triangulate(keyframe, reference, pairs)

        if fused or created:
            self.map.update_covisibility(keyframe.id)
            self.logger.debug("Keyframe %d: fused %d, triangulated %d map points",
                              keyframe.id, fused, created)

    def _triangulate(self, keyframe, reference, pairs):
        P1 = projection_matrix(keyframe.intrinsics.matrix, keyframe.pose.transform)
        P2 = projection_matrix(reference.intrinsics.matrix, reference.pose.transform)

        pts1 = np.array([[keyframe.features[i].x, keyframe.features[i].y] for i, _ in pairs]).T
        pts2 = np.array([[reference.features[j].x, reference.features[j].y] for _, j in pairs]).T
        points_4d = cv2.triangulatePoints(P1, P2, pts1, pts2)

        created = 0
        for k, (i, j) in enumerate(pairs):
            w = points_4d[3, k]
            if abs(w) < 1e-9:
                continue
            position = points_4d[:3, k] / w
            if not (self._is_valid_view(P1, keyframe.pose.transform, position, pts1[:, k])
                    and self._is_valid_view(P2, reference.pose.transform, position, pts2[:, k])):
                continue

            feature = keyframe.features[i]
            distance = np.linalg.norm(position - keyframe.pose.position)
            min_distance, max_distance = distance_limits(distance, feature.octave)
            map_point = MapPoint(position, feature.descriptor, observations=[reference.id, keyframe.id],
                                 min_distance=min_distance, max_distance=max_distance)
            map_point.update_normal([reference.pose.position, keyframe.pose.position])

            map_point = self.map.add_map_point(map_point)
            keyframe.add_map_point(i, map_point.id)
            reference.add_map_point(j, map_point.id)
            self.map.update_map_point(map_point.id)
            created += 1
        return created

    def _is_valid_view(self, P, transform, position, observed):
        """Positive depth and reprojection error within bounds."""
        depth = transform[2, :3] @ position + transform[2, 3]
        if depth <= 0:
            return False
        projected = P @ np.append(position, 1.0)
        pixel = projected[:2] / projected[2]
        return np.linalg.norm(pixel - observed) <= self.max_reprojection_error

    def _cull(self):
        self.map.cull_bad_map_points()
        return self.map.cull_old_keyframes(self.max_keyframes)

    def get_loop_closures(self):
        return list(self.loop_closures)

    def update_intrinsics(self, intrinsics):
        self.intrinsics = intrinsics

    def reset(self):
        """Rebuild policy memory and the loop database from the keyframes in the map."""
        self.frame_count = 0
        self.loop_closures = []
        self.keyframe_manager.reset()
        if self.loop_detector is not None:
            self.loop_detector.clear()
        for keyframe in self.map.get_all_keyframes():
            self._register(keyframe)
