"""Shared fixtures: synthetic extractors, keypoints and a small two-class database."""

from __future__ import annotations

import cv2
import numpy as np
import pytest

from bovw.config import ClassifierConfig, DatabaseConfig, FeatureConfig, VocabularyConfig
from bovw.database import RecognitionDatabase
from bovw.features import FeatureExtractor

DESCRIPTOR_WIDTH = 8


class CountingExtractor(FeatureExtractor):
    """Detector whose keypoint count is a known decreasing function of the threshold: 1000 - 50 * t."""

    name = "counting"
    default_threshold = 10
    min_threshold = 1
    max_threshold = 50
    initial_step = 0.01
    descriptor_size = 4

    def __init__(self) -> None:
        self.detect_calls = 0

    def detect(self, image, threshold):
        self.detect_calls += 1
        n = max(0, int(1000 - 50 * threshold))
        h, w = image.shape[:2]
        return [cv2.KeyPoint(float(i % w), float((i // w) % h), 3.0) for i in range(n)]

    def compute(self, image, keypoints):
        value = float(image.mean())
        return list(keypoints), np.full((len(keypoints), self.descriptor_size), value, dtype=np.float32)


def make_keypoints(points, size: float = 3.0):
    return [cv2.KeyPoint(float(x), float(y), size) for x, y in points]


def cluster_descriptors(rng, centers, per_center: int, jitter: float = 0.05):
    rows = [c + rng.normal(0.0, jitter, size=(per_center, len(c))) for c in centers]
    return np.vstack(rows).astype(np.float32)


@pytest.fixture()
def rng():
    return np.random.default_rng(7)


@pytest.fixture()
def counting_extractor() -> CountingExtractor:
    return CountingExtractor()


@pytest.fixture()
def word_centers():
    """Four well separated descriptor centres; the first two belong to "grass", the last two to "rock"."""
    centers = np.zeros((4, DESCRIPTOR_WIDTH), dtype=np.float32)
    centers[1, 0] = 10.0
    centers[2, 1] = 100.0
    centers[3, 1] = 100.0
    centers[3, 2] = 10.0
    return centers


@pytest.fixture()
def toy_config() -> DatabaseConfig:
    return DatabaseConfig(
        name="toy",
        features=FeatureConfig(adjuster_min=3, adjuster_max=6),
        vocabulary=VocabularyConfig(word_count=4, iterations=100, attempts=5, seed=0),
        word_classifier=ClassifierConfig(kernel="linear"),
    )


def fill_toy_entries(db: RecognitionDatabase, rng, centers, per_center: int = 10) -> None:
    """Two entries per class, each with descriptors jittered around its class's two centres."""
    for i, (label, pair) in enumerate([("grass", centers[:2]), ("grass", centers[:2]),
                                       ("rock", centers[2:]), ("rock", centers[2:])]):
        descriptors = cluster_descriptors(rng, pair, per_center)
        keypoints = make_keypoints([(j % 10, j // 10) for j in range(len(descriptors))])
        db.add_entry(f"{label}.{i:02d}", label, keypoints=keypoints, descriptors=descriptors,
                     height=32, width=32)


@pytest.fixture()
def toy_database(toy_config, rng, word_centers, counting_extractor) -> RecognitionDatabase:
    db = RecognitionDatabase(toy_config, extractor=counting_extractor)
    fill_toy_entries(db, rng, word_centers)
    return db
