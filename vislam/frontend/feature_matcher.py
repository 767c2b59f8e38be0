from dataclasses import dataclass
from typing import List

import cv2
import numpy as np

from vislam.core.types import as_descriptor_array

DEFAULT_MATCH_THRESHOLD = 50  # Maximum Hamming distance for a match
DEFAULT_RATIO_THRESHOLD = 0.8  # Lowe's ratio test


@dataclass
class FeatureMatch:
    query_idx: int
    train_idx: int
    distance: float


class FeatureMatcher:
    def __init__(self, match_threshold=DEFAULT_MATCH_THRESHOLD, ratio_threshold=DEFAULT_RATIO_THRESHOLD,
                 cross_check=False):
        """
        Brute-force matcher for 256-bit binary descriptors.

        :param match_threshold: Absolute upper bound on the accepted Hamming distance.
        :param ratio_threshold: Best distance must be below ratio * second-best distance.
        :param cross_check: Keep only mutually nearest pairs.
        """
        self.match_threshold = match_threshold
        self.ratio_threshold = ratio_threshold
        self.cross_check = cross_check
        self.bf = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)

    def update_config(self, match_threshold=None, ratio_threshold=None, cross_check=None):
        if match_threshold is not None:
            self.match_threshold = match_threshold
        if ratio_threshold is not None:
            self.ratio_threshold = ratio_threshold
        if cross_check is not None:
            self.cross_check = cross_check

    def _nearest(self, query, train):
        """
        For each query row, the best train index and the best/second-best distances.
        A missing second neighbor counts as infinitely far.
        """
        knn_matches = self.bf.knnMatch(query, train, k=2)
        nearest = []
        for candidates in knn_matches:
            if not candidates:
                continue
            best = candidates[0]
            second_distance = candidates[1].distance if len(candidates) > 1 else float('inf')
            nearest.append((best.queryIdx, best.trainIdx, best.distance, second_distance))
        return nearest

    def _accept(self, best_distance, second_distance):
        return (best_distance < self.ratio_threshold * second_distance
                and best_distance < self.match_threshold)

    def match(self, query_descriptors, train_descriptors) -> List[FeatureMatch]:
        """
        Matches descriptors with the ratio test and the absolute threshold.

        :param query_descriptors: (N, 32) uint8 descriptors of the current frame.
        :param train_descriptors: (M, 32) uint8 descriptors to search.
        :return: Accepted matches sorted by ascending distance.
        """
        query = as_descriptor_array(query_descriptors)
        train = as_descriptor_array(train_descriptors)
        if len(query) == 0 or len(train) == 0:
            return []

        matches = [
            FeatureMatch(q, t, d)
            for q, t, d, second in self._nearest(query, train)
            if self._accept(d, second)
        ]

        if self.cross_check:
            backward = {t: q for t, q, d, second in self._nearest(train, query)}
            matches = [m for m in matches if backward.get(m.train_idx) == m.query_idx]

        matches.sort(key=lambda m: m.distance)
        return matches


def hamming_distance_matrix(descriptors1, descriptors2):
    """Pairwise Hamming distances between two descriptor sets."""
    bits1 = np.unpackbits(as_descriptor_array(descriptors1), axis=1)
    bits2 = np.unpackbits(as_descriptor_array(descriptors2), axis=1)
    return (bits1[:, None, :] != bits2[None, :, :]).sum(axis=2)
