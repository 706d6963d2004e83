#Code by Christopher Kaelin, 2025
# This code is licensed under the MIT License - see the LICENSE file for details.
'''
Sliding-window localisation.

A grid of points `step` pixels apart is laid over the image. At each point the circle around it is grown or
shrunk until it holds an adjuster-band's worth of keypoints, the words inside are classified, and the
predicted class gets one vote on every pixel of that disk. Each pixel finally goes to the class with the most votes.

Vote maps are uint8 and saturate at 255. The grid is walked sequentially because the adapted radius
of one point is the starting radius of the next.
'''
import logging
from dataclasses import dataclass

import cv2
import numpy as np

from bovw.entry import RecognitionEntry
from bovw.errors import EmptyInputError, MissingClassifierError, MissingVocabularyError
from bovw.features import extract_features, read_image
from bovw.histogram import encode_circular, nearest_words

logger = logging.getLogger(__name__)

# Weight of the class colour in the overlay, the image gets the rest
OVERLAY_ALPHA = 0.25


@dataclass
class VoteResult:
    votes: np.ndarray  # (classes, rows, cols) uint8
    radius: float
    evaluated: int
    skipped: int


class SlidingWindowVoter:
    def __init__(self, database):
        self.database = database

    def _check(self):
        db = self.database
        if db.centroids is None:
            raise MissingVocabularyError("no dictionary")
        if db.word_classifier is None:
            raise MissingClassifierError("no word classifier")
        if not db.entries or db.entries[0].width == 0:
            raise EmptyInputError("database has no entry to size the starting radius from")

    def vote(self, entry: RecognitionEntry, step: int) -> VoteResult:
        self._check()
        if step <= 0:
            raise ValueError("step must be positive")
        db = self.database
        rows, cols = entry.height, entry.width
        word_count = db.centroids.shape[0]
        classes = len(db.labels)

        votes = np.zeros((classes, rows, cols), dtype=np.uint8)
        descriptors = entry.descriptors if entry.descriptors is not None else np.zeros((0, db.centroids.shape[1]))
        word_labels = nearest_words(descriptors, db.centroids)

        # Start from half the width of a training image
        radius = db.entries[0].width / 2.0
        band = (db.config.features.adjuster_min, db.config.features.adjuster_max)
        evaluated = skipped = 0

        for y in range(0, rows + 1, step):
            for x in range(0, cols + 1, step):
                circle = encode_circular(entry.keypoints, word_labels, word_count, (x, y), radius, *band)
                radius = circle.radius
                if not circle.hit_target:
                    skipped += 1
                    continue

                label = db.word_classifier.predict(circle.histogram)
                if 0 <= label < classes:
                    self._vote_disk(votes[label], x, y, radius)
                evaluated += 1

        if skipped:
            logger.debug("%s: %d of %d grid points never reached the word band",
                         entry.name, skipped, skipped + evaluated)
        return VoteResult(votes=votes, radius=radius, evaluated=evaluated, skipped=skipped)

    @staticmethod
    def _vote_disk(plane, x, y, radius):
        mask = np.zeros(plane.shape, dtype=np.uint8)
        cv2.circle(mask, (int(x), int(y)), max(int(radius), 0), 255, -1)
        inside = (mask != 0) & (plane < 255)
        plane[inside] += 1


def winning_classes(votes):
    """Per-pixel class with the most votes; ties and unvoted pixels go to the lowest class index."""
    return np.argmax(votes, axis=0)


def overlay(image, winners, colors):
    """Blend one BGR colour per class (0.25) over the image (0.75)."""
    palette = np.asarray(colors, dtype=np.uint8).reshape(-1, 3)
    painted = palette[winners]
    return cv2.addWeighted(painted, OVERLAY_ALPHA, image, 1.0 - OVERLAY_ALPHA, 0)


def localize_image(database, image_path, step, threshold=None):
    """Extract adjusted features from an image file, vote over it and return (winners, overlay image, VoteResult)."""
    image = read_image(image_path)
    features = database.config.features
    result = extract_features(image, database.extractor, features, threshold)

    entry = RecognitionEntry(name=str(image_path), label_id=0)
    entry.set_features(result.keypoints, result.descriptors, image.shape[0], image.shape[1], result.threshold)

    votes = SlidingWindowVoter(database).vote(entry, step)
    winners = winning_classes(votes.votes)
    colors = [database.label_color(i) for i in range(len(database.labels))]
    return winners, overlay(image, winners, colors), votes
