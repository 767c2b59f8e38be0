import logging
import pickle

import numpy as np
from scipy.spatial.distance import cdist
from sklearn.cluster import MiniBatchKMeans

from vislam.core.types import as_descriptor_array

logger = logging.getLogger(__name__)


def descriptors_to_bits(descriptors):
    """Unpack (N, 32) uint8 descriptors into (N, 256) float bit vectors."""
    return np.unpackbits(as_descriptor_array(descriptors), axis=1).astype(np.float32)


class Vocabulary:
    """
    Hierarchical visual vocabulary (vocabulary tree).

    Each level splits its descriptors into `k` clusters with MiniBatchKMeans
    over unpacked descriptor bits, down to `depth` levels. Leaves are the
    visual words, numbered densely from 0.
    """
    def __init__(self, k=10, depth=3, random_state=0):
        """
        :param k: Number of clusters per tree level.
        :param depth: Depth of the vocabulary tree.
        :param random_state: Seed for k-means, for reproducible trees.
        """
        self.k = k
        self.depth = depth
        self.random_state = random_state
        self.root = None
        self.num_words = 0

    @property
    def is_trained(self):
        return self.root is not None

    @property
    def size(self):
        return self.num_words

    def train(self, descriptor_sets):
        """
        Build the tree from descriptors of many images.

        :param descriptor_sets: Iterable of (N_i, 32) descriptor arrays.
        :return: self
        """
        arrays = [as_descriptor_array(d) for d in descriptor_sets if d is not None and len(d) > 0]
        if not arrays:
            raise ValueError("Cannot train a vocabulary without descriptors")

        bits = descriptors_to_bits(np.vstack(arrays))
        logger.info("Training vocabulary (k=%d, depth=%d) on %d descriptors",
                    self.k, self.depth, len(bits))
        self.num_words = 0
        self.root = self._build(bits, level=0)
        logger.info("Vocabulary trained with %d words", self.num_words)
        return self

    def _new_leaf(self):
        leaf = {'word': self.num_words}
        self.num_words += 1
        return leaf

    def _build(self, bits, level):
        unique = np.unique(bits, axis=0)
        if level >= self.depth or len(unique) < self.k:
            return self._new_leaf()

        kmeans = MiniBatchKMeans(n_clusters=self.k, batch_size=1024, n_init=3,
                                 random_state=self.random_state).fit(bits)
        labels = kmeans.labels_
        children = []
        for cluster in range(self.k):
            members = bits[labels == cluster]
            if len(members) == 0:
                children.append(self._new_leaf())
            else:
                children.append(self._build(members, level + 1))
        return {'centers': kmeans.cluster_centers_, 'children': children}

    def transform(self, descriptors):
        """
        Quantize descriptors to word ids by descending the tree.

        :param descriptors: (N, 32) uint8 descriptors.
        :return: (N,) int array of word ids.
        """
        if not self.is_trained:
            raise ValueError("Vocabulary has not been trained")
        bits = descriptors_to_bits(descriptors)
        words = np.empty(len(bits), dtype=np.int64)
        for i, vector in enumerate(bits):
            node = self.root
            while 'word' not in node:
                distances = cdist(vector[None, :], node['centers'], metric='euclidean')
                node = node['children'][int(np.argmin(distances))]
            words[i] = node['word']
        return words

    def save(self, path):
        with open(path, 'wb') as f:
            pickle.dump({'k': self.k, 'depth': self.depth, 'random_state': self.random_state,
                         'root': self.root, 'num_words': self.num_words}, f)
        logger.info("Vocabulary saved to %s", path)

    @classmethod
    def load(cls, path):
        with open(path, 'rb') as f:
            state = pickle.load(f)
        vocabulary = cls(k=state['k'], depth=state['depth'], random_state=state['random_state'])
        vocabulary.root = state['root']
        vocabulary.num_words = state['num_words']
        logger.info("Vocabulary with %d words loaded from %s", vocabulary.num_words, path)
        return vocabulary
