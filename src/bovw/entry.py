#Code by Christopher Kaelin, 2025
# This code is licensed under the MIT License - see the LICENSE file for details.
'''
Per-image records and the label table of a recognition database.
'''
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import numpy as np

from bovw.errors import DimensionMismatchError


@dataclass
class RecognitionEntry:
    """One labeled image: its features, its histograms and where it came from."""

    name: str
    label_id: int
    image_path: Optional[Path] = None
    comment: str = ""
    height: int = 0
    width: int = 0
    keypoints: List = field(default_factory=list)
    descriptors: Optional[np.ndarray] = None
    word_histogram: Optional[np.ndarray] = None
    color_histogram: Optional[np.ndarray] = None
    threshold: Optional[float] = None  # detector threshold the features were produced with

    @property
    def keypoint_count(self):
        return len(self.keypoints)

    @property
    def has_features(self):
        return self.descriptors is not None and self.descriptors.shape[0] > 0

    def set_features(self, keypoints, descriptors, height, width, threshold=None):
        if descriptors is None:
            descriptors = np.zeros((0, 0), dtype=np.float32)
        descriptors = np.asarray(descriptors, dtype=np.float32)
        if descriptors.shape[0] != len(keypoints):
            raise DimensionMismatchError(f"descriptor rows for {self.name}", len(keypoints), descriptors.shape[0])
        self.keypoints = list(keypoints)
        self.descriptors = descriptors
        self.height = int(height)
        self.width = int(width)
        self.threshold = threshold


class LabelTable:
    """
    Two-way map between label names and dense ids, assigned in first-seen order.
    """

    def __init__(self):
        self._ids = {}
        self._names = []

    def add(self, name):
        """Return the id for name, registering it if it was not seen before."""
        if name not in self._ids:
            self._ids[name] = len(self._names)
            self._names.append(name)
        return self._ids[name]

    def id_of(self, name):
        return self._ids[name]

    def name_of(self, label_id):
        return self._names[label_id]

    @property
    def names(self):
        return list(self._names)

    def __contains__(self, name):
        return name in self._ids

    def __len__(self):
        return len(self._names)
