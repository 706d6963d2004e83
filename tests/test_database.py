"""End-to-end tests of the recognition database pipeline."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock

import cv2
import numpy as np
import pytest

from bovw import histogram
from bovw.cache import FeatureCache
from bovw.config import ClassifierConfig, ColorHistogramConfig, DatabaseConfig, FeatureConfig, VocabularyConfig
from bovw.database import DEFAULT_COLORS, DatabaseState, RecognitionDatabase
from bovw.errors import MissingClassifierError, MissingVocabularyError
from conftest import CountingExtractor, fill_toy_entries

GRASS_BGR = (0, 150, 0)
ROCK_BGR = (200, 200, 200)


def _trained(db: RecognitionDatabase) -> RecognitionDatabase:
    assert db.populate_features()
    assert db.populate_vocabulary()
    assert db.train_classifier()
    return db


# ----------------------------------------------------------------------
# Synthetic descriptors
# ----------------------------------------------------------------------
class TestPipeline:
    def test_stages_advance_state(self, toy_database) -> None:
        outcome = toy_database.populate_features()
        assert outcome.success
        assert outcome.message == "0 generated, 0 from cache, 0 skipped"
        assert toy_database.state == DatabaseState.FEATURES_POPULATED

        assert toy_database.populate_vocabulary()
        assert toy_database.state == DatabaseState.HISTOGRAMS_ENCODED
        assert toy_database.centroids.shape == (4, 8)

        assert toy_database.train_classifier()
        assert toy_database.state == DatabaseState.READY
        assert set(toy_database.timings) >= {"features", "dictionary", "word_classifier"}

    def test_word_histograms_count_every_descriptor(self, toy_database) -> None:
        toy_database.populate_features()
        toy_database.populate_vocabulary()

        for entry in toy_database.entries:
            assert entry.word_histogram.shape == (4,)
            assert entry.word_histogram.sum() == entry.keypoint_count == 20

    def test_classes_use_disjoint_words(self, toy_database) -> None:
        toy_database.populate_features()
        toy_database.populate_vocabulary()

        grass = sum(e.word_histogram for e in toy_database.entries[:2])
        rock = sum(e.word_histogram for e in toy_database.entries[2:])
        assert not np.any((grass > 0) & (rock > 0))

    def test_parallel_encoding_keeps_entry_order(self, toy_config, rng, word_centers) -> None:
        db = RecognitionDatabase(toy_config.model_copy(update={"n_jobs": 2}), extractor=CountingExtractor())
        fill_toy_entries(db, rng, word_centers)
        db.populate_features()
        db.populate_vocabulary()

        encoded = db.encode_entries(db.entries)

        assert len(encoded) == 4
        for entry, hist in zip(db.entries, encoded):
            np.testing.assert_array_equal(hist, histogram.encode(entry.descriptors, db.centroids))

    def test_self_classification_is_perfect(self, toy_database) -> None:
        _trained(toy_database)

        tally = toy_database.classify_against(toy_database)

        assert tally.accuracy() == 1.0
        for label in ("grass", "rock"):
            assert tally.match_count[label] == tally.truth_count[label] == 2
        assert "word_verify" in toy_database.timings

    def test_classify_against_other_database(self, toy_database, toy_config, rng, word_centers,
                                             counting_extractor) -> None:
        _trained(toy_database)
        # "sand" is registered first so the other database numbers grass and rock differently
        other = RecognitionDatabase(toy_config.model_copy(update={"name": "other"}), extractor=counting_extractor)
        other.labels.add("sand")
        fill_toy_entries(other, rng, word_centers)

        tally = toy_database.classify_against(other)

        assert tally.source == "other"
        assert tally.target == "toy"
        assert tally.total == 4
        assert tally.accuracy() == 1.0


class TestStageFailures:
    def test_vocabulary_before_features(self, toy_database) -> None:
        outcome = toy_database.populate_vocabulary()

        assert not outcome
        assert "features" in outcome.message
        assert toy_database.state == DatabaseState.UNCONFIGURED

    def test_empty_database(self, toy_config) -> None:
        db = RecognitionDatabase(toy_config, extractor=CountingExtractor())
        outcome = db.populate_features()

        assert not outcome
        assert "no entries" in outcome.message

    def test_training_without_dictionary(self, toy_database) -> None:
        toy_database.populate_features()
        outcome = toy_database.train_classifier()

        assert not outcome
        assert outcome.message == "no dictionary"

    def test_classify_before_training(self, toy_database) -> None:
        with pytest.raises(MissingVocabularyError):
            toy_database.classify_entry(toy_database.entries[0])

    def test_classify_without_classifier(self, toy_database) -> None:
        toy_database.populate_features()
        toy_database.populate_vocabulary()
        with pytest.raises(MissingClassifierError):
            toy_database.classify_entry(toy_database.entries[0])

    def test_unconfigured_color_classifier(self, toy_database) -> None:
        outcome = toy_database.train_classifier(input="color")
        assert not outcome
        assert "no color classifier configured" in outcome.message


class TestVocabularyCache:
    def _config(self, toy_config, tmp_path: Path, word_count: int = 4) -> DatabaseConfig:
        vocabulary = toy_config.vocabulary.model_copy(update={"cache": True, "word_count": word_count})
        return toy_config.model_copy(update={"cache_dir": tmp_path, "vocabulary": vocabulary})

    def test_cached_dictionary_skips_clustering(self, toy_config, tmp_path: Path, rng, word_centers) -> None:
        first = RecognitionDatabase(self._config(toy_config, tmp_path), extractor=CountingExtractor())
        fill_toy_entries(first, rng, word_centers)
        first.populate_features()
        first.populate_vocabulary()
        assert (tmp_path / "toy.dic").is_file()

        clusterer = MagicMock()
        second = RecognitionDatabase(self._config(toy_config, tmp_path), extractor=CountingExtractor(),
                                     clusterer=clusterer)
        for entry in first.entries:
            second.add_entry(entry.name, first.label_name(entry.label_id), keypoints=entry.keypoints,
                             descriptors=entry.descriptors, height=entry.height, width=entry.width)
        second.populate_features()
        outcome = second.populate_vocabulary()

        clusterer.cluster.assert_not_called()
        assert "loaded from cache" in outcome.message
        assert np.array_equal(second.centroids, first.centroids)
        for a, b in zip(first.entries, second.entries):
            assert np.array_equal(a.word_histogram, b.word_histogram)
        assert "word_histograms" in second.timings

    def test_word_count_change_rebuilds(self, toy_config, tmp_path: Path, rng, word_centers) -> None:
        first = RecognitionDatabase(self._config(toy_config, tmp_path), extractor=CountingExtractor())
        fill_toy_entries(first, rng, word_centers)
        first.populate_features()
        first.populate_vocabulary()

        second = RecognitionDatabase(self._config(toy_config, tmp_path, word_count=2), extractor=CountingExtractor())
        fill_toy_entries(second, rng, word_centers)
        second.populate_features()
        outcome = second.populate_vocabulary()

        assert "built" in outcome.message
        assert second.centroids.shape == (2, 8)
        assert FeatureCache(tmp_path).load_vocabulary("toy", 2) is not None
        assert FeatureCache(tmp_path).load_vocabulary("toy", 4) is None


class TestClassifierPersistence:
    def test_save_and_load(self, toy_database, tmp_path: Path) -> None:
        _trained(toy_database)
        path = tmp_path / "toy.words.joblib"
        expected = [toy_database.classify_entry(e) for e in toy_database.entries]

        toy_database.save_classifier(path)
        toy_database.word_classifier = None
        toy_database.load_classifier(path)

        assert [toy_database.classify_entry(e) for e in toy_database.entries] == expected

    def test_save_without_classifier(self, toy_database, tmp_path: Path) -> None:
        with pytest.raises(MissingClassifierError):
            toy_database.save_classifier(tmp_path / "none.joblib")


class TestLabelColors:
    def test_configured_then_default(self, toy_config) -> None:
        config = toy_config.model_copy(update={"label_colors": ((1, 2, 3),)})
        db = RecognitionDatabase(config, extractor=CountingExtractor())
        db.labels.add("grass")
        db.labels.add("rock")

        assert db.label_color(0) == (1, 2, 3)
        assert db.label_color(1) == DEFAULT_COLORS[1]


# ----------------------------------------------------------------------
# Images on disk
# ----------------------------------------------------------------------
def _write_setup(tmp_path: Path, files, extra=None) -> Path:
    images = tmp_path / "images"
    images.mkdir(exist_ok=True)
    for name, color in files.items():
        if color is not None:
            cv2.imwrite(str(images / name), np.full((40, 40, 3), color, dtype=np.uint8))

    setup = {
        "name": "field",
        "image_dir": "images",
        "cache_dir": "cache",
        "features": {"auto_levels": False, "cache": True},
        "dictionary": {"word_count": 2, "attempts": 3, "seed": 0},
        "histograms": {"bins": 8},
        "classifiers": [{"input": "words", "kernel": "linear"},
                        {"input": "color", "kernel": "linear"}],
        "entries": [{"file": name, "label": name.split(".")[0]} for name in files],
    }
    setup.update(extra or {})
    path = tmp_path / "field.json"
    path.write_text(json.dumps(setup))
    return path


@pytest.fixture()
def field_setup(tmp_path: Path) -> Path:
    return _write_setup(tmp_path, {"grass.01.png": GRASS_BGR, "grass.02.png": GRASS_BGR,
                                   "rock.01.png": ROCK_BGR, "rock.02.png": ROCK_BGR})


class TestImageDatabase:
    def test_entries_come_from_setup(self, field_setup) -> None:
        db = RecognitionDatabase.from_file(field_setup, extractor=CountingExtractor())

        assert [e.name for e in db.entries] == ["grass.01", "grass.02", "rock.01", "rock.02"]
        assert db.labels.names == ["grass", "rock"]
        assert db.entries[0].image_path == field_setup.parent / "images" / "grass.01.png"

    def test_features_are_cached(self, field_setup) -> None:
        first_extractor = CountingExtractor()
        first = RecognitionDatabase.from_file(field_setup, extractor=first_extractor)
        outcome = first.populate_features()

        assert outcome.message == "4 generated, 0 from cache, 0 skipped"
        assert first_extractor.detect_calls == 4
        assert first.entries[0].keypoint_count == 500
        assert (first.entries[0].height, first.entries[0].width) == (40, 40)
        assert (field_setup.parent / "cache" / "grass.01.key").is_file()

        second_extractor = CountingExtractor()
        second = RecognitionDatabase.from_file(field_setup, extractor=second_extractor)
        outcome = second.populate_features()

        assert outcome.message == "0 generated, 4 from cache, 0 skipped"
        assert second_extractor.detect_calls == 0
        assert np.array_equal(second.entries[2].descriptors, first.entries[2].descriptors)

    def test_missing_image_is_skipped(self, tmp_path: Path) -> None:
        setup = _write_setup(tmp_path, {"grass.01.png": GRASS_BGR, "rock.01.png": None})
        db = RecognitionDatabase.from_file(setup, extractor=CountingExtractor())

        outcome = db.populate_features()

        assert outcome.success
        assert outcome.message.endswith("1 skipped")
        assert db.entries[1].descriptors is None

    def test_skipped_entry_stays_out_of_training(self, tmp_path: Path) -> None:
        files = {"grass.01.png": GRASS_BGR, "grass.02.png": GRASS_BGR, "rock.01.png": ROCK_BGR,
                 "rock.02.png": ROCK_BGR, "rock.03.png": None}
        extra = {"dictionary": {"word_count": 2, "attempts": 3, "seed": 0, "cache": True}}
        setup = _write_setup(tmp_path, files, extra)

        db = RecognitionDatabase.from_file(setup, extractor=CountingExtractor())
        assert db.populate_features().message == "4 generated, 0 from cache, 1 skipped"
        assert db.populate_vocabulary()
        assert db.entries[4].word_histogram is None
        assert db.train_classifier().message.startswith("4 rows")

        # Same again with the dictionary loaded from the cache
        cached = RecognitionDatabase.from_file(setup, extractor=CountingExtractor())
        cached.populate_features()
        assert "loaded from cache" in cached.populate_vocabulary().message
        assert cached.entries[4].word_histogram is None
        assert cached.train_classifier().message.startswith("4 rows")

    def test_force_re_extracts_loaded_features(self, field_setup) -> None:
        extractor = CountingExtractor()
        db = RecognitionDatabase.from_file(field_setup, extractor=extractor)
        db.populate_features()

        assert db.populate_features().message == "0 generated, 0 from cache, 0 skipped"
        assert extractor.detect_calls == 4

        # The feature cache is filled by now, force still goes back to the images
        assert db.populate_features(force=True).message == "4 generated, 0 from cache, 0 skipped"
        assert extractor.detect_calls == 8

    @pytest.mark.parametrize("memory", [True, False])
    def test_adjuster_memory_carries_threshold(self, tmp_path: Path, memory) -> None:
        features = {"auto_levels": False, "adjuster_on": True, "adjuster_min": 100, "adjuster_max": 200,
                    "adjuster_memory": memory}
        setup = _write_setup(tmp_path, {"grass.01.png": GRASS_BGR, "rock.01.png": ROCK_BGR}, {"features": features})
        extractor = CountingExtractor()
        db = RecognitionDatabase.from_file(setup, extractor=extractor)

        assert db.populate_features()

        first, second = db.entries
        assert 100 <= first.keypoint_count <= 200
        assert second.threshold == first.threshold
        # Starting at 10 (500 keypoints) takes nine detector runs to reach the band
        if memory:
            assert extractor.detect_calls == 9 + 1
        else:
            assert extractor.detect_calls == 9 + 9

    def test_word_pipeline_and_classify_image(self, field_setup) -> None:
        db = _trained(RecognitionDatabase.from_file(field_setup, extractor=CountingExtractor()))

        assert db.classify_against(db).accuracy() == 1.0

        image = np.full((40, 40, 3), ROCK_BGR, dtype=np.uint8)
        label, threshold = db.classify_image(image)
        assert db.label_name(label) == "rock"
        assert 1 <= threshold <= 50

    def test_color_pipeline(self, field_setup) -> None:
        db = RecognitionDatabase.from_file(field_setup, extractor=CountingExtractor())

        assert db.populate_color_histograms()
        assert db.entries[0].color_histogram.shape == (24,)
        assert (field_setup.parent / "cache" / "rock.02.col").is_file()
        assert db.train_classifier(input="color")

        tally = db.classify_against(db, input="color")
        assert tally.accuracy() == 1.0
        assert "color_verify" in db.timings

    def test_ready_needs_every_configured_classifier(self, field_setup) -> None:
        db = _trained(RecognitionDatabase.from_file(field_setup, extractor=CountingExtractor()))
        assert db.state == DatabaseState.CLASSIFIER_TRAINED

        db.populate_color_histograms()
        db.train_classifier(input="color")
        assert db.state == DatabaseState.READY


class TestConfigObjects:
    def test_default_components_follow_config(self) -> None:
        config = DatabaseConfig(name="plain", features=FeatureConfig(feature_type="sift"),
                                vocabulary=VocabularyConfig(clusterer="minibatch"),
                                color_histograms=ColorHistogramConfig(bins=16),
                                color_classifier=ClassifierConfig(input="color"))
        db = RecognitionDatabase(config)

        assert db.extractor.name == "sift"
        assert type(db.clusterer).__name__ == "MiniBatchKMeansClusterer"
        assert db.cache.enabled is False
        assert db.color_width == 48
