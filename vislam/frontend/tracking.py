"""
Frame-to-map tracking and relocalization.

Each frame is matched against the most recent keyframe. When enough of the
matched keyframe features are bound to map points, the pose is re-estimated
with EPnP inside RANSAC; otherwise the prior pose is kept and only its
timestamp advances.
"""

import logging

import cv2
import numpy as np
from scipy.spatial.transform import Rotation as R

from vislam.core.geometry import (
    pose_from_rvec_tvec,
    quaternion_conjugate,
    quaternion_multiply,
    normalize_quaternion,
)
from vislam.core.types import CameraPose, SLAMState, TrackingResult
from vislam.frontend.feature_matcher import FeatureMatcher

MIN_PNP_CORRESPONDENCES = 6
PNP_RANSAC_ITERATIONS = 100
PNP_CONFIDENCE = 0.99
RELOCALIZATION_WINDOW = 10  # Most recent keyframes searched when lost

DEFAULT_REPROJECTION_ERROR = 1.0  # Reported when the pose is carried over
RELOCALIZATION_REPROJECTION_ERROR = 2.0


class Tracker:
    def __init__(self, slam_map, intrinsics, min_matches=50, max_reprojection_error=3.0,
                 min_observations=3, matcher=None, logger=None):
        """
        Localizes incoming frames against the map.

        Args:
            slam_map: Map to track against (read only, apart from point statistics)
            intrinsics: CameraIntrinsics of the current camera
            min_matches: Matches required to count a frame as tracked
            max_reprojection_error: RANSAC inlier threshold in pixels
            min_observations: Observations for a map point to be graded good
            matcher: FeatureMatcher to use (Hamming 50, ratio 0.8 by default)
        """
        self.map = slam_map
        self.intrinsics = intrinsics
        self.min_matches = min_matches
        self.max_reprojection_error = max_reprojection_error
        self.min_observations = min_observations
        self.matcher = matcher or FeatureMatcher(match_threshold=50, ratio_threshold=0.8, cross_check=False)
        self.logger = logger or logging.getLogger(__name__)

        self.current_pose = None
        self.state = SLAMState.LOST

    def _failure(self, reason, num_tracked=0):
        self.state = SLAMState.LOST
        if self.current_pose is not None:
            pose = self.current_pose.copy()
        else:
            pose = CameraPose()
        self.logger.debug("Tracking failed: %s", reason)
        return TrackingResult(success=False, pose=pose, state=SLAMState.LOST,
                              num_tracked_features=num_tracked, num_inliers=0,
                              reprojection_error=float('inf'), reason=reason)

    def track_frame(self, frame) -> TrackingResult:
        """
        Track a frame against the most recent keyframe.

        Args:
            frame: Frame with keypoints, descriptors and timestamp

        Returns:
            TrackingResult; on failure the state is LOST and no exception is raised
        """
        reference = self.map.get_last_keyframe()
        if reference is None:
            return self._failure('map is empty')
        if len(frame.descriptors) == 0:
            return self._failure('frame has no descriptors')

        matches = self.matcher.match(frame.descriptors, reference.descriptors)
        if len(matches) < self.min_matches:
            return self._failure(f'insufficient matches ({len(matches)} < {self.min_matches})',
                                 num_tracked=len(matches))

        prior = self.current_pose
        if prior is None:
            prior = CameraPose(position=reference.pose.position.copy(),
                               rotation=reference.pose.rotation.copy(),
                               timestamp=reference.timestamp)

        estimate = self._estimate_pose(frame, reference, matches, prior)
        if estimate is not None:
            pose, num_inliers, error = estimate
        else:
            # Not enough 2D-3D correspondences: carry the prior pose forward
            pose = prior.copy(timestamp=frame.timestamp)
            num_inliers, error = len(matches), DEFAULT_REPROJECTION_ERROR

        self.current_pose = pose
        self.state = SLAMState.TRACKING
        return TrackingResult(success=True, pose=pose.copy(), state=SLAMState.TRACKING,
                              num_tracked_features=len(matches), num_inliers=num_inliers,
                              reprojection_error=error)

    def _estimate_pose(self, frame, reference, matches, prior):
        """
        EPnP + RANSAC over matched features whose reference feature is bound
        to a map point.

        Returns:
            (pose, num_inliers, mean_reprojection_error) or None
        """
        object_points = []
        image_points = []
        map_point_ids = []
        with self.map.lock:
            for match in matches:
                map_point_id = reference.features[match.train_idx].map_point_id
                if map_point_id is None:
                    continue
                map_point = self.map.get_map_point(map_point_id)
                if map_point is None:
                    continue
                keypoint = frame.keypoints[match.query_idx]
                object_points.append(map_point.position)
                image_points.append((keypoint.x, keypoint.y))
                map_point_ids.append(map_point_id)

        if len(object_points) < MIN_PNP_CORRESPONDENCES:
            return None

        object_points = np.array(object_points, dtype=np.float64)
        image_points = np.array(image_points, dtype=np.float64)
        camera_matrix = self.intrinsics.matrix
        dist_coeffs = self.intrinsics.dist_coeffs

        try:
            ok, rvec, tvec, inliers = cv2.solvePnPRansac(
                object_points, image_points, camera_matrix, dist_coeffs,
                iterationsCount=PNP_RANSAC_ITERATIONS,
                reprojectionError=self.max_reprojection_error,
                confidence=PNP_CONFIDENCE,
                flags=cv2.SOLVEPNP_EPNP)
        except cv2.error as e:
            self.logger.warning("PnP solver failed: %s", e)
            return None

        if not ok or inliers is None or len(inliers) < MIN_PNP_CORRESPONDENCES:
            self.logger.debug("PnP rejected: %s inliers", 0 if inliers is None else len(inliers))
            return None

        inliers = inliers.ravel()
        projected, _ = cv2.projectPoints(object_points[inliers], rvec, tvec, camera_matrix, dist_coeffs)
        errors = np.linalg.norm(projected.reshape(-1, 2) - image_points[inliers], axis=1)

        position, rotation = pose_from_rvec_tvec(rvec, tvec)
        pose = CameraPose(position=position, rotation=rotation, timestamp=frame.timestamp)
        dt = frame.timestamp - prior.timestamp
        if dt > 0:
            pose.velocity = (position - prior.position) / dt
            delta = quaternion_multiply(quaternion_conjugate(normalize_quaternion(prior.rotation)), rotation)
            pose.angular_velocity = R.from_quat(normalize_quaternion(delta)).as_rotvec() / dt

        self.map.update_tracking_counts(map_point_ids, [map_point_ids[i] for i in inliers],
                                        self.min_observations)
        return pose, len(inliers), float(np.mean(errors))

    def relocalize(self, frame) -> TrackingResult:
        """
        Recover from tracking loss by matching against the most recent keyframes.

        On success the pose of the best matching keyframe is adopted.
        """
        if len(frame.descriptors) == 0:
            return self._failure('frame has no descriptors')

        candidates = self.map.get_recent_keyframes(RELOCALIZATION_WINDOW)
        if not candidates:
            return self._failure('map is empty')

        best_keyframe = None
        best_count = 0
        for keyframe in candidates:
            count = len(self.matcher.match(frame.descriptors, keyframe.descriptors))
            if count > best_count:
                best_keyframe, best_count = keyframe, count

        if best_keyframe is None or best_count < self.min_matches:
            return self._failure(f'relocalization failed (best {best_count} < {self.min_matches})',
                                 num_tracked=best_count)

        self.current_pose = CameraPose(position=best_keyframe.pose.position.copy(),
                                       rotation=best_keyframe.pose.rotation.copy(),
                                       timestamp=frame.timestamp)
        self.state = SLAMState.TRACKING
        self.logger.info("Relocalized against keyframe %d with %d matches", best_keyframe.id, best_count)
        return TrackingResult(success=True, pose=self.current_pose.copy(), state=SLAMState.TRACKING,
                              num_tracked_features=best_count, num_inliers=best_count,
                              reprojection_error=RELOCALIZATION_REPROJECTION_ERROR)

    def update_pose(self, pose):
        """Overwrite the current estimate, e.g. with a fused visual-inertial pose."""
        self.current_pose = pose.copy()

    def get_current_pose(self):
        return self.current_pose.copy() if self.current_pose is not None else None

    def get_state(self):
        return self.state

    def update_intrinsics(self, intrinsics):
        self.intrinsics = intrinsics

    def reset(self):
        self.current_pose = None
        self.state = SLAMState.LOST
