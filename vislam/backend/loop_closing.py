"""
Loop closure detection: bag-of-words place recognition followed by a
geometric consistency check on matched features.

Detected loops are reported only; no pose-graph correction is applied.
"""

import logging
from concurrent.futures import ThreadPoolExecutor

import cv2
import numpy as np

from vislam.core.types import LoopClosureCandidate
from vislam.frontend.feature_matcher import FeatureMatcher
from vislam.utils.bow_database import BoWDatabase, cosine_similarity


class LoopClosureDetector:
    def __init__(self, min_interval=10, similarity_threshold=0.75, min_covisible_keyframes=3,
                 num_candidates=5, geometric_verification=True, min_matches=15, ransac_threshold=3.0,
                 min_time_separation=3.0, ransac_iterations=100, num_threads=1, vocabulary=None,
                 seed=0, logger=None):
        """
        Initializes the LoopClosureDetector.

        Args:
            min_interval: Frames between two detection runs
            similarity_threshold: Minimum BoW cosine similarity of a candidate
            min_covisible_keyframes: Minimum shared words for a keyframe to become a candidate
            num_candidates: Candidates kept after similarity ranking
            geometric_verification: Verify candidates with feature matching + RANSAC
            min_matches: Verified inliers required to accept a loop
            ransac_threshold: Pixel distance under which a correspondence is an inlier
            min_time_separation: Seconds between query and candidate keyframes
            ransac_iterations: RANSAC trials per candidate
            num_threads: Workers used to verify candidates
            vocabulary: Optional trained Vocabulary for word quantization
            seed: Seed of the RANSAC sampler
        """
        self.min_interval = min_interval
        self.similarity_threshold = similarity_threshold
        self.min_covisible_keyframes = min_covisible_keyframes
        self.num_candidates = num_candidates
        self.geometric_verification = geometric_verification
        self.min_matches = min_matches
        self.ransac_threshold = ransac_threshold
        self.min_time_separation = min_time_separation
        self.ransac_iterations = ransac_iterations
        self.num_threads = max(1, int(num_threads))
        self.seed = seed
        self.logger = logger or logging.getLogger(__name__)

        self.database = BoWDatabase(vocabulary)
        self.matcher = FeatureMatcher(match_threshold=50, ratio_threshold=0.7)
        self.keyframes = {}  # keyframe_id -> KeyFrame
        self.last_check_frame = 0
        self.num_detections = 0
        self.num_verifications = 0

    def add_keyframe(self, keyframe):
        """Index a keyframe's bag-of-words vector."""
        self.database.add(keyframe.id, self.database.compute_bow(keyframe.descriptors))
        self.keyframes[keyframe.id] = keyframe

    def remove_keyframe(self, keyframe_id):
        self.database.remove(keyframe_id)
        self.keyframes.pop(keyframe_id, None)

    def _gather_candidates(self, keyframe, bow):
        candidates = []
        hits = self.database.shared_word_counts(bow, exclude=keyframe.id)
        for candidate_id, shared_words in hits.items():
            if shared_words < self.min_covisible_keyframes:
                continue
            candidate = self.keyframes.get(candidate_id)
            if candidate is None:
                continue
            if abs(keyframe.timestamp - candidate.timestamp) < self.min_time_separation:
                continue
            similarity = cosine_similarity(bow, self.database.get(candidate_id))
            if similarity >= self.similarity_threshold:
                candidates.append(LoopClosureCandidate(keyframe.id, candidate_id, similarity))

        candidates.sort(key=lambda c: (-c.similarity, c.candidate_id))
        return candidates[:self.num_candidates]

    def detect_loop_closure(self, keyframe, frame_number):
        """
        Look for previously mapped places that look like the keyframe.

        Args:
            keyframe: The newly inserted keyframe
            frame_number: Running frame counter of the mapper

        Returns:
            Accepted LoopClosureCandidate list, best similarity first
        """
        if frame_number - self.last_check_frame < self.min_interval:
            return []
        self.last_check_frame = frame_number

        bow = self.database.get(keyframe.id)
        if bow is None:
            bow = self.database.compute_bow(keyframe.descriptors)

        candidates = self._gather_candidates(keyframe, bow)
        if not candidates:
            return []

        if self.geometric_verification:
            if self.num_threads > 1 and len(candidates) > 1:
                with ThreadPoolExecutor(max_workers=self.num_threads) as executor:
                    results = list(executor.map(
                        lambda c: self.verify(keyframe, self.keyframes[c.candidate_id]), candidates))
            else:
                results = [self.verify(keyframe, self.keyframes[c.candidate_id]) for c in candidates]

            accepted = []
            for candidate, (match_count, inliers) in zip(candidates, results):
                candidate.match_count = match_count
                candidate.inliers = inliers
                if inliers >= self.min_matches:
                    self.num_verifications += 1
                    accepted.append(candidate)
        else:
            accepted = candidates

        for candidate in accepted:
            self.logger.info("Loop closure detected: keyframe %d -> %d (similarity %.3f, inliers %d)",
                             candidate.query_id, candidate.candidate_id,
                             candidate.similarity, candidate.inliers)
        self.num_detections += len(accepted)
        return accepted

    def verify(self, query, candidate):
        """
        Geometric verification of a candidate.

        Returns:
            (match_count, inliers)
        """
        matches = self.matcher.match(query.descriptors, candidate.descriptors)
        if len(matches) < self.min_matches:
            return len(matches), 0

        src = np.array([[query.features[m.query_idx].x, query.features[m.query_idx].y] for m in matches])
        dst = np.array([[candidate.features[m.train_idx].x, candidate.features[m.train_idx].y]
                        for m in matches])
        rng = np.random.default_rng([self.seed, query.id, candidate.id])
        return len(matches), self._count_ransac_inliers(src, dst, rng)

    def _count_ransac_inliers(self, src, dst, rng):
        """
        Best consensus of 2D affine models fitted to random 3-point samples.
        """
        n = len(src)
        if n < 3:
            return 0

        best = 0
        for _ in range(self.ransac_iterations):
            idx = rng.choice(n, 3, replace=False)
            sample = src[idx]
            edges = sample[1:] - sample[0]
            if abs(edges[0, 0] * edges[1, 1] - edges[0, 1] * edges[1, 0]) < 1e-6:
                continue  # Collinear sample
            A = cv2.getAffineTransform(sample.astype(np.float32), dst[idx].astype(np.float32))
            projected = src @ A[:, :2].T + A[:, 2]
            inliers = int(np.count_nonzero(np.linalg.norm(projected - dst, axis=1) < self.ransac_threshold))
            if inliers > best:
                best = inliers
                if best == n:
                    break
        return best

    def get_stats(self):
        return {
            'num_detections': self.num_detections,
            'num_verifications': self.num_verifications,
            'database_size': len(self.database),
            'vocabulary_size': self.database.vocabulary_size,
        }

    def clear(self):
        self.database.clear()
        self.keyframes.clear()
        self.last_check_frame = 0
        self.num_detections = 0
        self.num_verifications = 0
