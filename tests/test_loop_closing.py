import numpy as np

from vislam.backend.loop_closing import LoopClosureDetector
from vislam.core.keyframe import KeyFrame, KeyframeFeature, KeyframePose
from vislam.utils.bow_database import BoWDatabase, cosine_similarity, hash_word

from conftest import random_descriptors


def keyframe_with(keyframe_id, timestamp, descriptors, points, intrinsics):
    features = [KeyframeFeature(float(x), float(y), 0, 0.0, d) for (x, y), d in zip(points, descriptors)]
    return KeyFrame(timestamp, KeyframePose.origin(), features, intrinsics, id=keyframe_id)


class TestBoWDatabase:
    def setup_method(self):
        self.database = BoWDatabase()

    def test_hash_word_is_big_endian(self):
        assert hash_word(np.array([1, 2, 3, 4] + [0] * 28, dtype=np.uint8)) == 0x01020304

    def test_self_similarity_is_one(self):
        bow = self.database.compute_bow(random_descriptors(50, seed=1))
        assert np.isclose(cosine_similarity(bow, bow), 1.0)

    def test_similarity_range(self):
        for seed in range(5):
            a = self.database.compute_bow(random_descriptors(30, seed=seed))
            b = self.database.compute_bow(np.vstack([random_descriptors(15, seed=seed),
                                                     random_descriptors(15, seed=seed + 100)]))
            similarity = cosine_similarity(a, b)
            assert 0.0 <= similarity <= 1.0

    def test_empty_vector(self):
        empty = self.database.compute_bow(np.zeros((0, 32), dtype=np.uint8))
        assert empty.magnitude == 0.0
        assert cosine_similarity(empty, self.database.compute_bow(random_descriptors(5))) == 0.0

    def test_term_frequency_weights(self):
        descriptors = np.vstack([random_descriptors(1, seed=1)] * 3 + [random_descriptors(1, seed=2)])
        bow = self.database.compute_bow(descriptors)
        assert sorted(bow.words.values()) == [0.25, 0.75]

    def test_inverted_index(self):
        descriptors = random_descriptors(20, seed=4)
        self.database.add(0, self.database.compute_bow(descriptors))
        self.database.add(1, self.database.compute_bow(descriptors[:10]))
        query = self.database.compute_bow(descriptors)
        assert self.database.shared_word_counts(query, exclude=0) == {1: 10}
        ranked = self.database.query(query, top_k=2)
        assert ranked[0][0] == 0

        self.database.remove(0)
        assert 0 not in self.database
        assert len(self.database) == 1
        assert self.database.vocabulary_size == 10


class TestLoopClosureDetector:
    def setup_method(self):
        rng = np.random.default_rng(0)
        self.descriptors = random_descriptors(40, seed=21)
        self.points = rng.uniform(0, 640, size=(40, 2))

    def make_detector(self, **kwargs):
        kwargs.setdefault('min_interval', 1)
        return LoopClosureDetector(**kwargs)

    def test_detects_revisited_place(self, intrinsics):
        detector = self.make_detector()
        old = keyframe_with(0, 0.0, self.descriptors, self.points, intrinsics)
        new = keyframe_with(5, 10.0, self.descriptors, self.points + 3.0, intrinsics)
        detector.add_keyframe(old)
        detector.add_keyframe(new)

        loops = detector.detect_loop_closure(new, frame_number=10)
        assert len(loops) == 1
        loop = loops[0]
        assert (loop.query_id, loop.candidate_id) == (5, 0)
        assert np.isclose(loop.similarity, 1.0)
        assert loop.match_count == 40
        assert loop.inliers == 40
        assert detector.get_stats()['num_detections'] == 1
        assert detector.get_stats()['num_verifications'] == 1

    def test_respects_min_interval(self, intrinsics):
        detector = self.make_detector(min_interval=10)
        old = keyframe_with(0, 0.0, self.descriptors, self.points, intrinsics)
        new = keyframe_with(1, 10.0, self.descriptors, self.points, intrinsics)
        detector.add_keyframe(old)
        detector.add_keyframe(new)
        assert detector.detect_loop_closure(new, frame_number=5) == []
        assert len(detector.detect_loop_closure(new, frame_number=10)) == 1
        # Checked at frame 10, the next check is due at frame 20
        assert detector.detect_loop_closure(new, frame_number=15) == []

    def test_ignores_temporally_close_keyframes(self, intrinsics):
        detector = self.make_detector()
        old = keyframe_with(0, 0.0, self.descriptors, self.points, intrinsics)
        new = keyframe_with(1, 1.0, self.descriptors, self.points, intrinsics)
        detector.add_keyframe(old)
        detector.add_keyframe(new)
        assert detector.detect_loop_closure(new, frame_number=10) == []

    def test_geometric_verification_rejects_scrambled_layout(self, intrinsics):
        detector = self.make_detector()
        rng = np.random.default_rng(1)
        old = keyframe_with(0, 0.0, self.descriptors, self.points, intrinsics)
        new = keyframe_with(1, 10.0, self.descriptors, rng.uniform(0, 640, size=(40, 2)), intrinsics)
        detector.add_keyframe(old)
        detector.add_keyframe(new)
        assert detector.detect_loop_closure(new, frame_number=10) == []
        assert detector.get_stats()['num_verifications'] == 0

        unverified = self.make_detector(geometric_verification=False)
        unverified.add_keyframe(old)
        unverified.add_keyframe(new)
        assert len(unverified.detect_loop_closure(new, frame_number=10)) == 1

    def test_dissimilar_keyframes(self, intrinsics):
        detector = self.make_detector()
        old = keyframe_with(0, 0.0, random_descriptors(40, seed=5), self.points, intrinsics)
        new = keyframe_with(1, 10.0, self.descriptors, self.points, intrinsics)
        detector.add_keyframe(old)
        detector.add_keyframe(new)
        assert detector.detect_loop_closure(new, frame_number=10) == []

    def test_removed_keyframe_is_not_a_candidate(self, intrinsics):
        detector = self.make_detector()
        old = keyframe_with(0, 0.0, self.descriptors, self.points, intrinsics)
        new = keyframe_with(1, 10.0, self.descriptors, self.points, intrinsics)
        detector.add_keyframe(old)
        detector.add_keyframe(new)
        detector.remove_keyframe(0)
        assert detector.detect_loop_closure(new, frame_number=10) == []

    def test_parallel_verification_matches_serial(self, intrinsics):
        results = []
        for threads in (1, 4):
            detector = self.make_detector(num_threads=threads)
            for keyframe_id, timestamp in ((0, 0.0), (1, 5.0), (2, 10.0)):
                detector.add_keyframe(keyframe_with(keyframe_id, timestamp, self.descriptors, self.points,
                                                    intrinsics))
            query = keyframe_with(3, 20.0, self.descriptors, self.points, intrinsics)
            detector.add_keyframe(query)
            loops = detector.detect_loop_closure(query, frame_number=10)
            results.append([(c.candidate_id, c.inliers) for c in loops])
        assert results[0] == results[1]
        assert [candidate_id for candidate_id, _ in results[0]] == [0, 1, 2]

    def test_candidate_limit(self, intrinsics):
        detector = self.make_detector(num_candidates=2)
        for keyframe_id, timestamp in ((0, 0.0), (1, 5.0), (2, 10.0)):
            detector.add_keyframe(keyframe_with(keyframe_id, timestamp, self.descriptors, self.points, intrinsics))
        query = keyframe_with(3, 20.0, self.descriptors, self.points, intrinsics)
        detector.add_keyframe(query)
        assert len(detector.detect_loop_closure(query, frame_number=10)) == 2

    def test_clear(self, intrinsics):
        detector = self.make_detector()
        detector.add_keyframe(keyframe_with(0, 0.0, self.descriptors, self.points, intrinsics))
        detector.clear()
        assert detector.get_stats()['database_size'] == 0
