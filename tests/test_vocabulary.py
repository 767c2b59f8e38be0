import numpy as np
import pytest

from vislam.utils.bow_database import BoWDatabase, cosine_similarity
from vislam.vocabulary.vocabulary import Vocabulary, descriptors_to_bits

from conftest import flip_bits, random_descriptors


@pytest.fixture
def training_sets():
    """Descriptor sets drawn around a few prototypes, as repeated scenes produce."""
    prototypes = random_descriptors(4, seed=30)
    sets = []
    for image in range(6):
        rows = [flip_bits(prototypes[i % 4], 8, seed=image * 100 + i) for i in range(40)]
        sets.append(np.array(rows))
    return sets


class TestVocabulary:
    def test_bits_unpacking(self):
        bits = descriptors_to_bits(np.full((2, 32), 255, dtype=np.uint8))
        assert bits.shape == (2, 256)
        assert bits.dtype == np.float32
        assert np.all(bits == 1.0)

    def test_untrained_transform_raises(self):
        with pytest.raises(ValueError):
            Vocabulary().transform(random_descriptors(3))

    def test_train_requires_descriptors(self):
        with pytest.raises(ValueError):
            Vocabulary().train([np.zeros((0, 32), dtype=np.uint8)])

    def test_words_are_dense_and_deterministic(self, training_sets):
        vocabulary = Vocabulary(k=4, depth=2).train(training_sets)
        assert vocabulary.is_trained
        assert vocabulary.size > 1

        words = vocabulary.transform(training_sets[0])
        assert words.shape == (40,)
        assert words.min() >= 0 and words.max() < vocabulary.size
        np.testing.assert_array_equal(words, vocabulary.transform(training_sets[0]))

    def test_save_and_load(self, training_sets, tmp_path):
        vocabulary = Vocabulary(k=4, depth=2).train(training_sets)
        path = tmp_path / 'vocabulary.pkl'
        vocabulary.save(path)

        loaded = Vocabulary.load(path)
        assert loaded.size == vocabulary.size
        np.testing.assert_array_equal(loaded.transform(training_sets[1]), vocabulary.transform(training_sets[1]))

    def test_database_with_vocabulary(self, training_sets):
        database = BoWDatabase(Vocabulary(k=4, depth=1).train(training_sets))
        a = database.compute_bow(training_sets[0])
        b = database.compute_bow(training_sets[1])
        # Both images show the same prototypes, so their word histograms overlap
        assert cosine_similarity(a, b) > 0.5
        assert np.isclose(cosine_similarity(a, a), 1.0)
