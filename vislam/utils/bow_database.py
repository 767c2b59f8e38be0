from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Dict, Set

import numpy as np

from vislam.core.types import as_descriptor_array


@dataclass
class BowVector:
    """Term-frequency normalized word histogram with its cached L2 magnitude."""
    words: Dict[int, float] = field(default_factory=dict)
    magnitude: float = 0.0


def hash_word(descriptor):
    """Visual word from the first four descriptor bytes, read big-endian."""
    b = descriptor
    return (int(b[0]) << 24) | (int(b[1]) << 16) | (int(b[2]) << 8) | int(b[3])


def cosine_similarity(a: BowVector, b: BowVector):
    """Cosine similarity of two BoW vectors, 0 if either is empty."""
    if a.magnitude == 0 or b.magnitude == 0:
        return 0.0
    if len(a.words) > len(b.words):
        a, b = b, a
    dot = sum(weight * b.words[word] for word, weight in a.words.items() if word in b.words)
    return float(min(1.0, max(0.0, dot / (a.magnitude * b.magnitude))))


class BoWDatabase:
    def __init__(self, vocabulary=None):
        """
        Bag-of-Words database for place recognition.

        :param vocabulary: Trained Vocabulary. Without one, descriptors are
            hashed to words from their first four bytes.
        """
        self.vocabulary = vocabulary
        self.bow_vectors: Dict[int, BowVector] = {}  # keyframe_id -> BowVector
        self.inverted_index: Dict[int, Set[int]] = defaultdict(set)  # word -> keyframe ids

    @property
    def vocabulary_size(self):
        """Number of distinct words indexed so far."""
        return len(self.inverted_index)

    def __len__(self):
        return len(self.bow_vectors)

    def __contains__(self, keyframe_id):
        return keyframe_id in self.bow_vectors

    def words_for(self, descriptors):
        descriptors = as_descriptor_array(descriptors)
        if len(descriptors) == 0:
            return []
        if self.vocabulary is not None:
            return [int(w) for w in self.vocabulary.transform(descriptors)]
        return [hash_word(d) for d in descriptors]

    def compute_bow(self, descriptors) -> BowVector:
        """
        Build the term-frequency normalized BoW vector of a descriptor set.

        :param descriptors: (N, 32) uint8 descriptors.
        """
        words = self.words_for(descriptors)
        if not words:
            return BowVector()
        counts = Counter(words)
        total = float(len(words))
        weights = {word: count / total for word, count in counts.items()}
        magnitude = float(np.sqrt(sum(w * w for w in weights.values())))
        return BowVector(weights, magnitude)

    def add(self, keyframe_id, bow: BowVector):
        """Store a keyframe's BoW vector and index its words."""
        if keyframe_id in self.bow_vectors:
            self.remove(keyframe_id)
        self.bow_vectors[keyframe_id] = bow
        for word in bow.words:
            self.inverted_index[word].add(keyframe_id)

    def remove(self, keyframe_id):
        bow = self.bow_vectors.pop(keyframe_id, None)
        if bow is None:
            return
        for word in bow.words:
            keyframes = self.inverted_index.get(word)
            if keyframes is None:
                continue
            keyframes.discard(keyframe_id)
            if not keyframes:
                del self.inverted_index[word]

    def get(self, keyframe_id):
        return self.bow_vectors.get(keyframe_id)

    def shared_word_counts(self, bow: BowVector, exclude=None) -> Counter:
        """
        Count, per stored keyframe, the words it shares with a query vector.

        :param bow: Query BoW vector.
        :param exclude: Keyframe id to skip (usually the query itself).
        """
        hits = Counter()
        for word in bow.words:
            for keyframe_id in self.inverted_index.get(word, ()):
                if keyframe_id != exclude:
                    hits[keyframe_id] += 1
        return hits

    def query(self, bow: BowVector, top_k=5, exclude=None):
        """
        Rank stored keyframes by cosine similarity to a query vector.

        :return: List of (keyframe_id, similarity) sorted by similarity.
        """
        scores = [(kf_id, cosine_similarity(bow, self.bow_vectors[kf_id]))
                  for kf_id in self.shared_word_counts(bow, exclude)]
        scores.sort(key=lambda x: x[1], reverse=True)
        return scores[:top_k]

    def clear(self):
        self.bow_vectors.clear()
        self.inverted_index.clear()
