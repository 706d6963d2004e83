#Code by Christopher Kaelin, 2025
# This code is licensed under the MIT License - see the LICENSE file for details.
'''
Visual vocabulary creation.

All descriptors of a database are stacked (in entry order) and clustered once; the cluster centres are
the visual words. The flat assignment vector coming back from the clusterer is then consumed in the
same entry order to give each entry its word histogram, so the two loops must never be reordered.

Two clusterers are available: full k-means (k-means++ seeding, best of `attempts` runs) and
MiniBatchKMeans fed with partial_fit for collections too large to cluster in one go.
'''
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List

import numpy as np
from sklearn.cluster import KMeans, MiniBatchKMeans

from bovw.errors import DimensionMismatchError, EmptyInputError

logger = logging.getLogger(__name__)


class Clusterer(ABC):
    @abstractmethod
    def cluster(self, data, k):
        """Return (centroids k x D float32, labels N int) for the rows of data."""


class KMeansClusterer(Clusterer):
    def __init__(self, iterations=1000, attempts=1, seed=42):
        self.iterations = iterations
        self.attempts = attempts
        self.seed = seed

    def cluster(self, data, k):
        kmeans = KMeans(n_clusters=k,
                        init="k-means++",
                        n_init=self.attempts,  # best of `attempts` runs is kept
                        max_iter=self.iterations,
                        random_state=self.seed)
        labels = kmeans.fit_predict(data)
        return kmeans.cluster_centers_.astype(np.float32), labels.astype(np.int64)


class MiniBatchKMeansClusterer(Clusterer):
    def __init__(self, iterations=100, batch_size=4096, seed=42):
        self.iterations = iterations
        self.batch_size = batch_size
        self.seed = seed

    def cluster(self, data, k):
        # n_init must be 1: partial_fit keeps updating a single model
        kmeans = MiniBatchKMeans(n_clusters=k,
                                 random_state=self.seed,
                                 batch_size=self.batch_size,
                                 n_init=1,
                                 max_iter=self.iterations,
                                 compute_labels=False)
        # First batch must hold at least k rows so the centres can be seeded
        first = max(self.batch_size, k)
        kmeans.partial_fit(data[:first])
        for start in range(first, data.shape[0], self.batch_size):
            kmeans.partial_fit(data[start:start + self.batch_size])
        labels = kmeans.predict(data)
        return kmeans.cluster_centers_.astype(np.float32), labels.astype(np.int64)


def make_clusterer(config):
    if config.clusterer == "minibatch":
        return MiniBatchKMeansClusterer(iterations=config.iterations, seed=config.seed)
    return KMeansClusterer(iterations=config.iterations, attempts=config.attempts, seed=config.seed)


@dataclass
class Vocabulary:
    centroids: np.ndarray         # W x D
    assignments: np.ndarray       # one word index per stacked descriptor row
    word_histograms: List[np.ndarray]  # one W-length count vector per input descriptor set

    @property
    def word_count(self):
        return self.centroids.shape[0]


def stack_descriptors(descriptor_sets):
    """Concatenate descriptor matrices in the given order. Empty sets contribute no rows."""
    non_empty = [d for d in descriptor_sets if d is not None and d.size > 0]
    if not non_empty:
        raise EmptyInputError("no descriptors to build a dictionary from")

    width = non_empty[0].shape[1]
    for d in non_empty:
        if d.shape[1] != width:
            raise DimensionMismatchError("descriptor", width, d.shape[1])
    return np.vstack(non_empty).astype(np.float32)


def split_assignments(assignments, row_counts, word_count):
    """Turn the flat assignment vector back into one word histogram per descriptor set."""
    histograms = []
    idx = 0
    for rows in row_counts:
        labels = assignments[idx:idx + rows]
        histograms.append(np.bincount(labels, minlength=word_count).astype(np.int32))
        idx += rows
    return histograms


def build_vocabulary(descriptor_sets, word_count, clusterer):
    """
    Cluster every descriptor of every set into word_count visual words.

    descriptor_sets: list of (rows x D) arrays, one per entry, in entry order.
    Returns a Vocabulary whose word_histograms line up with descriptor_sets.
    """
    data = stack_descriptors(descriptor_sets)
    if data.shape[0] < word_count:
        raise EmptyInputError(f"only {data.shape[0]} descriptors for a dictionary of {word_count} words")

    logger.info("Clustering %d descriptors of width %d into %d words", data.shape[0], data.shape[1], word_count)
    centroids, assignments = clusterer.cluster(data, word_count)

    row_counts = [0 if d is None else d.shape[0] for d in descriptor_sets]
    histograms = split_assignments(assignments, row_counts, word_count)
    return Vocabulary(centroids=centroids, assignments=assignments, word_histograms=histograms)
