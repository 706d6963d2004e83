#Code by Christopher Kaelin, 2025
# This code is licensed under the MIT License - see the LICENSE file for details.
'''
Recognition database: one labeled image collection and the pipeline run over it.

    populate_features -> populate_vocabulary -> train_classifier -> classify_*

Stage operations return a StageOutcome instead of raising, so a driver script can report which
prerequisite is missing and carry on with the next setup. Classification operations return a value
and therefore raise the typed errors from bovw.errors.

Per-entry problems (unreadable image, wrong histogram width) skip that entry with a warning.
'''
import logging
import time
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path

import numpy as np
from joblib import Parallel, delayed
from tqdm import tqdm

from bovw import histogram
from bovw.cache import FeatureCache
from bovw.classifier import Classifier, make_classifier, validate_row
from bovw.config import DatabaseConfig
from bovw.entry import LabelTable, RecognitionEntry
from bovw.errors import (DimensionMismatchError, EmptyInputError, ImageReadError, MissingClassifierError,
                         MissingVocabularyError, RecognitionError)
from bovw.evaluation import ConfusionTally
from bovw.features import extract_features, make_extractor, read_image
from bovw.vocabulary import build_vocabulary, make_clusterer

logger = logging.getLogger(__name__)

# Used for labels without a configured display colour (BGR)
DEFAULT_COLORS = [
    (0, 0, 255), (0, 255, 0), (255, 0, 0), (0, 255, 255),
    (255, 0, 255), (255, 255, 0), (0, 128, 255), (128, 0, 128),
]


class DatabaseState(IntEnum):
    UNCONFIGURED = 0
    FEATURES_POPULATED = 1
    VOCABULARY_BUILT = 2
    HISTOGRAMS_ENCODED = 3
    CLASSIFIER_TRAINED = 4
    READY = 5


@dataclass
class StageOutcome:
    success: bool
    message: str = ""
    elapsed: float = 0.0

    def __bool__(self):
        return self.success


def _encode_entry(name, descriptors, centroids):
    # Module level so joblib workers can pickle it
    try:
        return histogram.encode(descriptors, centroids)
    except DimensionMismatchError as e:
        logger.warning("Skipping word histogram for %s: %s", name, e)
        return None


class RecognitionDatabase:
    def __init__(self, config: DatabaseConfig, extractor=None, clusterer=None, cache=None):
        self.config = config
        self.name = config.name
        self.labels = LabelTable()
        self.entries = []

        self.extractor = extractor if extractor is not None else make_extractor(config.features)
        self.clusterer = clusterer if clusterer is not None else make_clusterer(config.vocabulary)
        self.cache = cache if cache is not None else FeatureCache(config.cache_dir)

        self.centroids = None
        self.word_classifier = None
        self.color_classifier = None
        self.state = DatabaseState.UNCONFIGURED
        self.timings = {}

        for spec in config.entries:
            self.add_entry(spec.name, spec.label, image_path=Path(config.image_dir) / spec.file,
                           comment=spec.comment)

    @classmethod
    def from_file(cls, path, **kwargs):
        return cls(DatabaseConfig.from_file(path), **kwargs)

    def add_entry(self, name, label, image_path=None, comment="", keypoints=None, descriptors=None,
                  height=0, width=0):
        """Register a labeled image. Features may be supplied directly instead of being extracted."""
        entry = RecognitionEntry(name=name, label_id=self.labels.add(label), image_path=image_path, comment=comment)
        if descriptors is not None:
            entry.set_features(keypoints if keypoints is not None else [], descriptors, height, width)
        self.entries.append(entry)
        return entry

    @property
    def word_count(self):
        return self.config.vocabulary.word_count

    @property
    def color_width(self):
        return self.config.color_histograms.width

    def label_name(self, label_id):
        return self.labels.name_of(label_id)

    def label_color(self, label_id):
        if label_id < len(self.config.label_colors):
            return self.config.label_colors[label_id]
        return DEFAULT_COLORS[label_id % len(DEFAULT_COLORS)]

    def _advance(self, state):
        self.state = max(self.state, state)

    def _run_stage(self, stage, func):
        start = time.perf_counter()
        try:
            message = func()
        except RecognitionError as e:
            elapsed = time.perf_counter() - start
            logger.error("%s: %s failed: %s", self.name, stage, e)
            return StageOutcome(False, str(e), elapsed)
        elapsed = time.perf_counter() - start
        self.timings[stage] = elapsed
        logger.info("%s: %s done in %.3f s%s", self.name, stage, elapsed, f" ({message})" if message else "")
        return StageOutcome(True, message or "", elapsed)

    # ------------------------------------------------------------------
    # Features
    # ------------------------------------------------------------------
    def populate_features(self, force=False):
        """
        Extract (or load from cache) keypoints and descriptors for every entry.
        force re-extracts from the images, ignoring features already loaded and the feature cache.
        """
        return self._run_stage("features", lambda: self._populate_features(force))

    def _populate_features(self, force):
        if not self.entries:
            raise EmptyInputError("no entries in database")

        features = self.config.features
        use_cache = features.cache and self.cache.enabled
        threshold = None
        loaded = generated = skipped = hits = 0

        for entry in tqdm(self.entries, desc=f"{self.name} features"):
            if entry.descriptors is not None and not force:
                continue

            if use_cache and not force:
                record = self.cache.load_features(entry.name, expected_cols=self.extractor.descriptor_size)
                if record is not None:
                    entry.set_features(record.keypoints, record.descriptors, record.height, record.width)
                    loaded += 1
                    continue

            if entry.image_path is None:
                logger.warning("Skipping %s: no image and no cached features", entry.name)
                skipped += 1
                continue
            try:
                image = read_image(entry.image_path)
            except ImageReadError as e:
                logger.warning("Skipping %s: %s", entry.name, e)
                skipped += 1
                continue

            if not features.adjuster_memory:
                threshold = None
            result = extract_features(image, self.extractor, features, threshold)
            if features.adjuster_memory:
                threshold = result.threshold
            hits += int(result.hit_target)

            height, width = image.shape[:2]
            entry.set_features(result.keypoints, result.descriptors, height, width, result.threshold)
            generated += 1

            if use_cache:
                self.cache.store_features(entry.name, entry.keypoints, entry.descriptors, height, width)

        if features.adjuster_on and generated:
            logger.info("%s: adjuster hit its band for %d of %d entries", self.name, hits, generated)

        self._advance(DatabaseState.FEATURES_POPULATED)
        return f"{generated} generated, {loaded} from cache, {skipped} skipped"

    # ------------------------------------------------------------------
    # Dictionary + word histograms
    # ------------------------------------------------------------------
    def populate_vocabulary(self):
        """Build (or load) the dictionary and fill every entry's word histogram."""
        return self._run_stage("dictionary", self._populate_vocabulary)

    def _descriptor_width(self):
        for entry in self.entries:
            if entry.has_features:
                return entry.descriptors.shape[1]
        return None

    def _populate_vocabulary(self):
        if self.state < DatabaseState.FEATURES_POPULATED:
            raise EmptyInputError("features have not been populated")
        if not self.entries:
            raise EmptyInputError("no entries in database")

        use_cache = self.config.vocabulary.cache and self.cache.enabled
        width = self._descriptor_width()

        centroids = None
        if use_cache:
            centroids = self.cache.load_vocabulary(self.name, self.word_count)
            if centroids is not None and width is not None and centroids.shape[1] != width:
                logger.debug("Cached dictionary for %s has width %d, descriptors have %d",
                             self.name, centroids.shape[1], width)
                centroids = None

        if centroids is not None:
            self.centroids = centroids
            self._advance(DatabaseState.VOCABULARY_BUILT)
            start = time.perf_counter()
            histograms = self.encode_entries(self.entries)
            self.timings["word_histograms"] = time.perf_counter() - start
            source = "loaded from cache"
        else:
            vocabulary = build_vocabulary([e.descriptors for e in self.entries], self.word_count, self.clusterer)
            self.centroids = vocabulary.centroids
            self._advance(DatabaseState.VOCABULARY_BUILT)
            histograms = vocabulary.word_histograms
            source = "built"
            if use_cache:
                self.cache.store_vocabulary(self.name, self.centroids)

        for entry, hist in zip(self.entries, histograms):
            # Entries without keypoints (unreadable or featureless images) get no histogram and stay out of training
            entry.word_histogram = hist if entry.has_features else None

        self._advance(DatabaseState.HISTOGRAMS_ENCODED)
        return f"{self.centroids.shape[0]} words {source}"

    def encode_entries(self, entries):
        """
        Word histograms for entries against this dictionary, in entry order.
        None where an entry could not be encoded.
        """
        if self.centroids is None:
            raise MissingVocabularyError("no dictionary")
        jobs = (delayed(_encode_entry)(e.name, e.descriptors if e.descriptors is not None else np.zeros((0, 0)),
                                       self.centroids)
                for e in tqdm(entries, desc=f"{self.name} word histograms"))
        return Parallel(n_jobs=self.config.n_jobs)(jobs)

    # ------------------------------------------------------------------
    # Colour histograms
    # ------------------------------------------------------------------
    def populate_color_histograms(self):
        return self._run_stage("color_histograms", self._populate_color_histograms)

    def _populate_color_histograms(self):
        if not self.entries:
            raise EmptyInputError("no entries in database")

        bins = self.config.color_histograms.bins
        use_cache = self.config.color_histograms.cache and self.cache.enabled
        loaded = generated = skipped = 0

        for entry in tqdm(self.entries, desc=f"{self.name} colour histograms"):
            if use_cache:
                hist = self.cache.load_color_histogram(entry.name, self.color_width)
                if hist is not None:
                    entry.color_histogram = hist
                    loaded += 1
                    continue
            if entry.image_path is None:
                logger.warning("Skipping colour histogram for %s: no image", entry.name)
                skipped += 1
                continue
            try:
                image = read_image(entry.image_path)
            except ImageReadError as e:
                logger.warning("Skipping colour histogram for %s: %s", entry.name, e)
                skipped += 1
                continue

            entry.color_histogram = histogram.color_histogram(image, bins)
            generated += 1
            if use_cache:
                self.cache.store_color_histogram(entry.name, entry.color_histogram)

        return f"{generated} generated, {loaded} from cache, {skipped} skipped"

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------
    def train_classifier(self, input="words"):
        stage = "word_classifier" if input == "words" else "color_classifier"
        return self._run_stage(stage, lambda: self._train_classifier(input))

    def _training_rows(self, input):
        if input == "words":
            width = self.word_count
            rows = [(e, e.word_histogram) for e in self.entries]
        else:
            width = self.color_width
            rows = [(e, e.color_histogram) for e in self.entries]

        features, labels = [], []
        for entry, hist in rows:
            try:
                features.append(validate_row(hist, width))
            except DimensionMismatchError as e:
                logger.warning("Leaving %s out of training: %s", entry.name, e)
                continue
            labels.append(entry.label_id)
        if not features:
            raise EmptyInputError(f"no {input} histograms to train on")
        return np.vstack(features), np.array(labels, dtype=np.int64)

    def _train_classifier(self, input):
        if input == "words":
            if self.centroids is None or self.state < DatabaseState.HISTOGRAMS_ENCODED:
                raise MissingVocabularyError("no dictionary")
            config = self.config.word_classifier
        elif input == "color":
            config = self.config.color_classifier
        else:
            raise ValueError(f"unknown classifier input {input!r}")
        if config is None:
            raise MissingClassifierError(f"no {input} classifier configured")

        features, labels = self._training_rows(input)
        classifier = make_classifier(config).train(features, labels)

        if input == "words":
            self.word_classifier = classifier
            self._advance(DatabaseState.CLASSIFIER_TRAINED)
        else:
            self.color_classifier = classifier
        if self.word_classifier is not None and (self.config.color_classifier is None or
                                                 self.color_classifier is not None):
            self._advance(DatabaseState.READY)
        return f"{features.shape[0]} rows, {len(np.unique(labels))} classes"

    def save_classifier(self, path, input="words"):
        classifier = self.word_classifier if input == "words" else self.color_classifier
        if classifier is None:
            raise MissingClassifierError(f"no {input} classifier")
        classifier.save(path)

    def load_classifier(self, path, input="words"):
        classifier = Classifier.load(path)
        if input == "words":
            self.word_classifier = classifier
            if self.centroids is not None:
                self._advance(DatabaseState.CLASSIFIER_TRAINED)
        else:
            self.color_classifier = classifier
        return classifier

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------
    def _require_words(self):
        if self.centroids is None:
            raise MissingVocabularyError("no dictionary")
        if self.word_classifier is None:
            raise MissingClassifierError("no word classifier")

    def classify_entry(self, entry):
        """Label id for an entry (from any database) encoded against this dictionary."""
        self._require_words()
        if entry.descriptors is None:
            raise EmptyInputError(f"entry {entry.name} has no descriptors")
        hist = histogram.encode(entry.descriptors, self.centroids)
        return self.word_classifier.predict(hist)

    def classify_entry_color(self, entry):
        if self.color_classifier is None:
            raise MissingClassifierError("no color classifier")
        if entry.color_histogram is None:
            raise EmptyInputError(f"entry {entry.name} has no colour histogram")
        return self.color_classifier.predict(validate_row(entry.color_histogram, self.color_width))

    def classify_image(self, image, threshold=None):
        """
        Extract adjusted features from a raw BGR image and classify it.
        Returns (label id, final detector threshold) so the threshold can seed the next call.
        """
        self._require_words()
        features = self.config.features.model_copy(update={"adjuster_on": True, "grid_on": False})
        result = extract_features(image, self.extractor, features, threshold)
        if result.descriptors.shape[0] == 0:
            raise EmptyInputError("no keypoints found in image")
        hist = histogram.encode(result.descriptors, self.centroids)
        return self.word_classifier.predict(hist), result.threshold

    def classify_against(self, other, input="words"):
        """
        Classify every entry of `other` with this database's dictionary and classifier.
        Labels are compared by name, so the two databases may number their labels differently.
        """
        if not other.entries:
            raise EmptyInputError(f"database {other.name} has no entries")
        if input == "words":
            self._require_words()
            classify = self.classify_entry
        else:
            if self.color_classifier is None:
                raise MissingClassifierError("no color classifier")
            classify = self.classify_entry_color

        tally = ConfusionTally(source=other.name, target=self.name)
        start = time.perf_counter()
        for entry in tqdm(other.entries, desc=f"{other.name} vs {self.name} ({input})"):
            entry_start = time.perf_counter()
            try:
                predicted = self.label_name(classify(entry))
            except (EmptyInputError, DimensionMismatchError) as e:
                logger.warning("Could not classify %s: %s", entry.name, e)
                predicted = ""
            tally.record(entry.name, other.label_name(entry.label_id), predicted,
                         time.perf_counter() - entry_start)
        tally.elapsed = time.perf_counter() - start

        self.timings["word_verify" if input == "words" else "color_verify"] = tally.elapsed
        logger.info("%s vs %s (%s): %d/%d correct in %.3f s", other.name, self.name, input,
                    tally.total_matches, tally.total, tally.elapsed)
        return tally
