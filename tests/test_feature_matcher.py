import numpy as np

from vislam.core.map_point import hamming_distance
from vislam.frontend.feature_matcher import FeatureMatcher, hamming_distance_matrix

from conftest import flip_bits, random_descriptors


class TestHammingDistance:
    def setup_method(self):
        self.descriptors = random_descriptors(12, seed=3)

    def test_identity_and_symmetry(self):
        a, b = self.descriptors[0], self.descriptors[1]
        assert hamming_distance(a, a) == 0
        assert hamming_distance(a, b) == hamming_distance(b, a)

    def test_counts_flipped_bits(self):
        a = self.descriptors[0]
        assert hamming_distance(a, flip_bits(a, 17)) == 17

    def test_triangle_inequality(self):
        d = hamming_distance_matrix(self.descriptors, self.descriptors)
        n = len(self.descriptors)
        for i in range(n):
            for j in range(n):
                for k in range(n):
                    assert d[i, k] <= d[i, j] + d[j, k]

    def test_matrix_agrees_with_cv2_norm(self):
        d = hamming_distance_matrix(self.descriptors[:4], self.descriptors[4:8])
        for i in range(4):
            for j in range(4):
                assert d[i, j] == hamming_distance(self.descriptors[i], self.descriptors[4 + j])


class TestFeatureMatcher:
    def setup_method(self):
        self.matcher = FeatureMatcher(match_threshold=50, ratio_threshold=0.8)
        self.train = random_descriptors(40, seed=11)

    def test_identical_descriptors_match_themselves(self):
        matches = self.matcher.match(self.train, self.train)
        assert len(matches) == 40
        assert all(m.query_idx == m.train_idx and m.distance == 0 for m in matches)

    def test_matches_sorted_by_distance(self):
        query = np.array([flip_bits(d, i % 20, seed=i) for i, d in enumerate(self.train)])
        matches = self.matcher.match(query, self.train)
        distances = [m.distance for m in matches]
        assert distances == sorted(distances)

    def test_absolute_threshold(self):
        train = self.train[:1]
        near = flip_bits(train[0], 10)[None, :]
        far = flip_bits(train[0], 60)[None, :]
        # A lone train descriptor has no second neighbor; only the threshold applies
        assert len(self.matcher.match(near, train)) == 1
        assert self.matcher.match(far, train) == []

    def test_ratio_rejects_ambiguous_duplicates(self):
        train = np.vstack([self.train[0], self.train[0]])
        assert self.matcher.match(self.train[:1], train) == []
        assert self.matcher.match(flip_bits(self.train[0], 5)[None, :], train) == []

    def test_cross_check_keeps_mutual_nearest(self):
        train = self.train[:1]
        query = np.vstack([flip_bits(train[0], 10, seed=1), flip_bits(train[0], 5, seed=2)])
        assert len(self.matcher.match(query, train)) == 2

        matcher = FeatureMatcher(cross_check=True)
        matches = matcher.match(query, train)
        assert [(m.query_idx, m.train_idx) for m in matches] == [(1, 0)]

    def test_empty_inputs(self):
        empty = np.zeros((0, 32), dtype=np.uint8)
        assert self.matcher.match(empty, self.train) == []
        assert self.matcher.match(self.train, empty) == []
        assert self.matcher.match(None, self.train) == []

    def test_accepts_uint32_words(self):
        words = self.train.view(np.uint32)
        assert words.shape == (40, 8)
        assert len(self.matcher.match(words, self.train)) == 40

    def test_deterministic(self):
        query = random_descriptors(40, seed=12)
        first = self.matcher.match(query, self.train)
        second = self.matcher.match(query, self.train)
        assert first == second

    def test_update_config(self):
        self.matcher.update_config(match_threshold=5)
        near = flip_bits(self.train[0], 10)[None, :]
        assert self.matcher.match(near, self.train[:1]) == []
