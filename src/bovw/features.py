#Code by Christopher Kaelin, 2025
# This code is licensed under the MIT License - see the LICENSE file for details.
'''
Keypoint detection and description.

Two detector families are supported, SIFT and ORB, behind the FeatureExtractor interface so the rest of the
pipeline never touches cv2 feature objects directly. Both families take a sensitivity threshold where a higher
value gives fewer keypoints (SIFT contrast threshold, ORB FAST threshold), which is what the adjuster relies on.

Descriptors are always returned as float32 so SIFT and ORB codebooks are built and searched the same way.
'''
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List

import cv2
import numpy as np

from bovw.adjuster import adjust_threshold
from bovw.errors import ConfigurationError, ImageReadError

logger = logging.getLogger(__name__)

# Percentage of pixels clipped at each end of every channel by auto_levels
AUTO_LEVELS_CLIP = 1.5


class FeatureExtractor(ABC):
    name = ""
    default_threshold = 0.0
    min_threshold = 0.0
    max_threshold = 0.0
    initial_step = 0.0  # threshold change per surplus keypoint on the adjuster's first step
    learn_rate = 0.75  # adjuster learn rate when the setup does not give one
    descriptor_size = 0

    @abstractmethod
    def detect(self, image, threshold):
        """Keypoints found in image at the given sensitivity threshold."""

    @abstractmethod
    def compute(self, image, keypoints):
        """(keypoints, descriptors) for the given keypoints. Keypoints the family cannot describe are dropped."""

    def clamp(self, threshold):
        return min(max(threshold, self.min_threshold), self.max_threshold)


def _gray(image):
    if image.ndim == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    return image


def _as_float_descriptors(descriptors, width):
    if descriptors is None:
        return np.zeros((0, width), dtype=np.float32)
    return descriptors.astype(np.float32)


class SiftExtractor(FeatureExtractor):
    name = "sift"
    default_threshold = 0.04
    min_threshold = 0.0001
    max_threshold = 0.5
    initial_step = 0.00001
    learn_rate = 1e-7
    descriptor_size = 128

    def __init__(self, octave_layers=3):
        self.octave_layers = octave_layers

    def _create(self, threshold):
        return cv2.SIFT_create(nOctaveLayers=self.octave_layers, contrastThreshold=float(threshold))

    def detect(self, image, threshold):
        return list(self._create(threshold).detect(_gray(image), None))

    def compute(self, image, keypoints):
        if not keypoints:
            return [], np.zeros((0, self.descriptor_size), dtype=np.float32)
        keypoints, descriptors = self._create(self.default_threshold).compute(_gray(image), keypoints)
        return list(keypoints), _as_float_descriptors(descriptors, self.descriptor_size)


class OrbExtractor(FeatureExtractor):
    name = "orb"
    default_threshold = 20
    min_threshold = 1
    max_threshold = 255
    initial_step = 0.01
    learn_rate = 0.05
    descriptor_size = 32

    # Large enough that the FAST threshold, not the feature cap, decides the count
    MAX_FEATURES = 100000

    def __init__(self, octaves=4):
        self.octaves = octaves

    def _create(self, threshold):
        return cv2.ORB_create(nfeatures=self.MAX_FEATURES, nlevels=self.octaves,
                              fastThreshold=int(round(threshold)))

    def detect(self, image, threshold):
        return list(self._create(threshold).detect(_gray(image), None))

    def compute(self, image, keypoints):
        if not keypoints:
            return [], np.zeros((0, self.descriptor_size), dtype=np.float32)
        keypoints, descriptors = self._create(self.default_threshold).compute(_gray(image), keypoints)
        return list(keypoints), _as_float_descriptors(descriptors, self.descriptor_size)


def make_extractor(config):
    if config.feature_type == "sift":
        return SiftExtractor(octave_layers=config.octave_layers)
    if config.feature_type == "orb":
        return OrbExtractor(octaves=config.octaves)
    raise ConfigurationError(f"Unknown feature type: {config.feature_type}")


def read_image(path):
    image = cv2.imread(str(path))
    if image is None:
        raise ImageReadError(f"could not read image {path}")
    return image


def auto_levels(image, clip_percent=AUTO_LEVELS_CLIP):
    """Stretch every channel so that clip_percent of the pixels saturate at each end."""
    channels = cv2.split(image) if image.ndim == 3 else [image]
    stretched = []
    for channel in channels:
        low, high = np.percentile(channel, (clip_percent, 100.0 - clip_percent))
        if high <= low:
            stretched.append(channel.copy())
            continue
        scaled = (channel.astype(np.float32) - low) * (255.0 / (high - low))
        stretched.append(np.clip(np.rint(scaled), 0, 255).astype(np.uint8))
    return cv2.merge(stretched) if len(stretched) > 1 else stretched[0]


@dataclass
class ExtractionResult:
    keypoints: List
    descriptors: np.ndarray
    threshold: float
    hit_target: bool


def shift_keypoints(keypoints, dx, dy):
    for kp in keypoints:
        kp.pt = (kp.pt[0] + dx, kp.pt[1] + dy)
    return keypoints


def _adjusted(image, extractor, config, threshold):
    result = adjust_threshold(
        lambda t: extractor.detect(image, t),
        initial=threshold,
        target_min=config.adjuster_min,
        target_max=config.adjuster_max,
        max_iterations=config.adjuster_iterations,
        learn_rate=config.adjuster_learn_rate or extractor.learn_rate,
        min_allowable=extractor.min_threshold,
        max_allowable=extractor.max_threshold,
        initial_step=extractor.initial_step,
    )
    keypoints, descriptors = extractor.compute(image, result.keypoints)
    return ExtractionResult(keypoints, descriptors, result.threshold, result.hit_target)


def _grid(image, extractor, config, threshold):
    # x is the column, y is the row; only whole grid_step x grid_step tiles are visited
    step = config.grid_step
    height, width = image.shape[:2]
    if height < step or width < step:
        return _adjusted(image, extractor, config, threshold)

    all_keypoints = []
    all_descriptors = []
    hit = True
    for y0 in range(0, height - step + 1, step):
        for x0 in range(0, width - step + 1, step):
            tile = image[y0:y0 + step, x0:x0 + step]
            result = _adjusted(tile, extractor, config, threshold)
            threshold = result.threshold  # carried over to the next tile
            hit = hit and result.hit_target
            all_keypoints.extend(shift_keypoints(result.keypoints, x0, y0))
            all_descriptors.append(result.descriptors)

    descriptors = np.vstack(all_descriptors).astype(np.float32)
    return ExtractionResult(all_keypoints, descriptors, threshold, hit)


def extract_features(image, extractor, config, threshold=None):
    """
    Detect and describe keypoints in a BGR image according to a FeatureConfig.

    threshold is the starting detector threshold (defaults to the configured or family threshold);
    the returned ExtractionResult.threshold is where the adjuster ended up.
    """
    if threshold is None:
        threshold = config.threshold if config.threshold is not None else extractor.default_threshold
    threshold = extractor.clamp(threshold)

    if config.auto_levels:
        image = auto_levels(image)

    if config.adjuster_on and config.grid_on:
        return _grid(image, extractor, config, threshold)
    if config.adjuster_on:
        return _adjusted(image, extractor, config, threshold)

    keypoints = extractor.detect(image, threshold)
    keypoints, descriptors = extractor.compute(image, keypoints)
    return ExtractionResult(keypoints, descriptors, threshold, True)
