import logging

import numpy as np

from vislam.core.geometry import angle_between, forward_vector, relative_rotation_angle

FEATURE_RATIO_THRESHOLD = 0.5  # New keyframe when tracked features fall below this share
MIN_BASELINE = 0.3  # meters, reference keyframes closer than this give poor triangulation
MAX_BASELINE = 3.0  # meters
MAX_REFERENCE_KEYFRAMES = 3


class KeyframeManager:
    def __init__(self, translation_threshold=0.1, rotation_threshold=0.2, min_interval=0.2,
                 max_keyframes=100, logger=None):
        """
        Decides when the current frame should become a keyframe.

        Args:
            translation_threshold (float): Translation from the last keyframe (m) that triggers a keyframe.
            rotation_threshold (float): Relative rotation angle (rad) that triggers a keyframe.
            min_interval (float): Minimum time (s) between keyframes.
            max_keyframes (int): Keyframe cap enforced by the mapper.
        """
        self.translation_threshold = translation_threshold
        self.rotation_threshold = rotation_threshold
        self.min_interval = min_interval
        self.max_keyframes = max_keyframes
        self.logger = logger or logging.getLogger(__name__)

        self.last_keyframe = None
        self.last_keyframe_timestamp = None
        self.num_keyframes_registered = 0

    def should_create_keyframe(self, candidate, num_tracked_features):
        """
        Determines if the candidate qualifies as a new keyframe.

        Args:
            candidate (KeyFrame): Candidate keyframe holding the current pose and timestamp.
            num_tracked_features (int): Features tracked in the current frame.

        Returns:
            bool: True if a keyframe should be created.
        """
        if self.last_keyframe is None:
            return True

        if candidate.timestamp - self.last_keyframe_timestamp < self.min_interval:
            return False

        translation = np.linalg.norm(candidate.pose.position - self.last_keyframe.pose.position)
        if translation > self.translation_threshold:
            self.logger.debug("Keyframe needed: translation %.3f m", translation)
            return True

        rotation = relative_rotation_angle(self.last_keyframe.pose.rotation, candidate.pose.rotation)
        if rotation > self.rotation_threshold:
            self.logger.debug("Keyframe needed: rotation %.3f rad", rotation)
            return True

        last_feature_count = len(self.last_keyframe.features)
        if last_feature_count > 0 and num_tracked_features / last_feature_count < FEATURE_RATIO_THRESHOLD:
            self.logger.debug("Keyframe needed: tracked features dropped to %d/%d",
                              num_tracked_features, last_feature_count)
            return True

        return False

    def register_keyframe(self, keyframe):
        """Remember the keyframe as the latest one."""
        self.last_keyframe = keyframe
        self.last_keyframe_timestamp = keyframe.timestamp
        self.num_keyframes_registered += 1

    def compute_overlap_score(self, keyframe, position, rotation):
        """
        Score in [0, 1] estimating how much of the view at (position, rotation)
        a keyframe shares: 0.6 * proximity + 0.4 * viewing-direction similarity.
        """
        distance = np.linalg.norm(keyframe.pose.position - np.asarray(position, dtype=np.float64))
        if distance < 0.5:
            distance_score = 1.0 - distance / 0.5
        elif distance < 2.0:
            distance_score = 0.5
        else:
            distance_score = max(0.0, 1.0 - distance / 10.0)

        viewing_angle = angle_between(forward_vector(keyframe.pose.rotation), forward_vector(rotation))
        angle_score = max(0.0, 1.0 - viewing_angle / np.pi)

        return 0.6 * distance_score + 0.4 * angle_score

    def get_best_overlap_keyframes(self, position, rotation, keyframes, count=MAX_REFERENCE_KEYFRAMES):
        """Keyframes ranked by overlap score, best first."""
        scored = [(self.compute_overlap_score(kf, position, rotation), kf) for kf in keyframes]
        scored.sort(key=lambda item: item[0], reverse=True)
        return [kf for _, kf in scored[:count]]

    def select_reference_keyframes(self, position, rotation, keyframes, count=MAX_REFERENCE_KEYFRAMES):
        """
        Picks keyframes with a usable triangulation baseline, preferring wide
        baselines (0.7 weight) and view overlap (0.3 weight).

        Returns:
            Up to `count` keyframes, best first
        """
        position = np.asarray(position, dtype=np.float64)
        scored = []
        for keyframe in keyframes:
            baseline = np.linalg.norm(keyframe.pose.position - position)
            if baseline < MIN_BASELINE or baseline > MAX_BASELINE:
                continue
            overlap = self.compute_overlap_score(keyframe, position, rotation)
            scored.append((0.7 * min(baseline / 1.0, 1.0) + 0.3 * overlap, keyframe))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [kf for _, kf in scored[:count]]

    def get_stats(self):
        return {
            'num_keyframes_registered': self.num_keyframes_registered,
            'last_keyframe_id': self.last_keyframe.id if self.last_keyframe is not None else None,
            'last_keyframe_timestamp': self.last_keyframe_timestamp,
        }

    def reset(self):
        self.last_keyframe = None
        self.last_keyframe_timestamp = None
        self.num_keyframes_registered = 0
