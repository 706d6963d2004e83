#Code by Christopher Kaelin, 2025
# This code is licensed under the MIT License - see the LICENSE file for details.
'''
Histogram encoding: turns descriptors into bag-of-visual-words counts against a codebook,
plus the colour histogram used by the colour classifier.

Every encoder goes through nearest_words so the three call sites (whole entry, masked entry and
circular neighbourhood) share one tie-breaking rule: the lowest word index wins.
'''
import logging
from dataclasses import dataclass
from typing import List, Tuple

import cv2
import numpy as np

from bovw.errors import DimensionMismatchError, MissingVocabularyError

logger = logging.getLogger(__name__)

# Upper bound on the (rows, W, D) float32 difference temporary in nearest_words
DISTANCE_BLOCK_BYTES = 32 * 1024 * 1024

# Circular neighbourhood radius control
CIRCULAR_ALPHA = 0.25
CIRCULAR_MAX_ITERATIONS = 100


def distance_block_rows(word_count, width):
    """Descriptor rows per distance block so the difference temporary stays within DISTANCE_BLOCK_BYTES."""
    return max(1, DISTANCE_BLOCK_BYTES // (word_count * width * 4))


def nearest_words(descriptors, codebook):
    """
    Index of the nearest codebook row (squared Euclidean distance) for every descriptor row.
    Ties go to the lowest index, so repeated calls give identical labels.
    """
    if codebook is None or codebook.size == 0:
        raise MissingVocabularyError("no dictionary")

    codebook = np.asarray(codebook, dtype=np.float32)
    descriptors = np.asarray(descriptors, dtype=np.float32)
    if descriptors.size == 0:
        return np.zeros(0, dtype=np.int64)
    if descriptors.ndim != 2 or descriptors.shape[1] != codebook.shape[1]:
        actual = descriptors.shape[1] if descriptors.ndim == 2 else descriptors.size
        raise DimensionMismatchError("descriptor", codebook.shape[1], actual)

    labels = np.empty(descriptors.shape[0], dtype=np.int64)
    rows = distance_block_rows(codebook.shape[0], codebook.shape[1])
    for start in range(0, descriptors.shape[0], rows):
        block = descriptors[start:start + rows]
        # Direct differences rather than the |a|^2 - 2ab + |b|^2 expansion: exact ties stay exact
        dists = ((block[:, None, :] - codebook[None, :, :]) ** 2).sum(axis=2)
        labels[start:start + block.shape[0]] = np.argmin(dists, axis=1)
    return labels


def counts_from_labels(labels, word_count):
    return np.bincount(np.asarray(labels, dtype=np.int64), minlength=word_count).astype(np.int32)


def encode(descriptors, codebook):
    """Word histogram of length W; its total equals the number of descriptor rows."""
    labels = nearest_words(descriptors, codebook)
    return counts_from_labels(labels, len(codebook))


def encode_masked(descriptors, codebook, keypoints, mask):
    """
    Like encode, but only keypoints whose pixel in mask (indexed [row, col]) is non-zero are counted.
    """
    if mask.ndim != 2:
        raise DimensionMismatchError("mask", 2, mask.ndim)
    if len(keypoints) != len(descriptors):
        raise DimensionMismatchError("keypoint list", len(descriptors), len(keypoints))

    rows, cols = mask.shape
    keep = np.zeros(len(keypoints), dtype=bool)
    for i, kp in enumerate(keypoints):
        x, y = int(kp.pt[0]), int(kp.pt[1])
        if 0 <= y < rows and 0 <= x < cols and mask[y, x] != 0:
            keep[i] = True

    descriptors = np.asarray(descriptors, dtype=np.float32)
    return encode(descriptors[keep], codebook)


@dataclass
class CircularHistogram:
    histogram: np.ndarray
    points: List[Tuple[float, float]]
    radius: float
    hit_target: bool


def encode_circular(keypoints, word_labels, word_count, center, radius, min_words, max_words):
    """
    Grow or shrink a circle around center = (x, y) until it holds between min_words and max_words keypoints,
    then histogram the precomputed word labels of the keypoints inside it.

    The adapted radius is returned in the result so the caller can start the next neighbourhood from it.
    If the band is not reached within CIRCULAR_MAX_ITERATIONS the result has hit_target=False and an empty histogram.
    """
    mid = round((max_words - min_words) / 2.0) + min_words
    cx, cy = float(center[0]), float(center[1])

    if len(keypoints):
        pts = np.array([kp.pt for kp in keypoints], dtype=np.float32)
        dist = np.sqrt((pts[:, 0] - cx) ** 2 + (pts[:, 1] - cy) ** 2)
    else:
        pts = np.zeros((0, 2), dtype=np.float32)
        dist = np.zeros(0, dtype=np.float32)

    radius = float(radius)
    hit = False
    inside = dist < radius
    for _ in range(CIRCULAR_MAX_ITERATIONS):
        inside = dist < radius
        count = int(inside.sum())
        if min_words <= count <= max_words:
            hit = True
            break
        radius = radius + CIRCULAR_ALPHA * (mid - count)

    if not hit:
        return CircularHistogram(np.zeros(word_count, dtype=np.int32), [], radius, False)

    labels = np.asarray(word_labels, dtype=np.int64)[inside]
    points = [(float(x), float(y)) for x, y in pts[inside]]
    return CircularHistogram(counts_from_labels(labels, word_count), points, radius, True)


def color_histogram(image_bgr, bins, mask=None):
    """Unnormalised B, G and R histograms over [0, 256), concatenated into one float32 row of 3*bins."""
    channels = image_bgr.shape[2] if image_bgr.ndim == 3 else 1
    if channels != 3:
        raise DimensionMismatchError("colour image channels", 3, channels)
    parts = []
    for channel in range(3):
        hist = cv2.calcHist([image_bgr], [channel], mask, [bins], [0, 256])
        parts.append(hist.reshape(-1))
    return np.concatenate(parts).astype(np.float32)
