#Code by Christopher Kaelin, 2025
# This code is licensed under the MIT License - see the LICENSE file for details.
'''
Immutable configuration for one recognition database.

A database is described by a JSON setup file with one section per pipeline stage:

    {
      "name": "LittleDogTrain",
      "image_dir": "images/LittleDogTrain",
      "cache_dir": "database/LittleDogTrain",
      "features":   {"feature_type": "orb", "adjuster_on": true, "cache": true},
      "dictionary": {"word_count": 40, "iterations": 1000},
      "histograms": {"bins": 32},
      "classifiers": [{"backend": "svm", "input": "words", "kernel": "poly"}],
      "entries": [{"label": "grass", "file": "grass.01.jpg"}],
      "display": {"colors": [{"r": 0, "g": 255, "b": 0}]}
    }

Relative paths are resolved against the directory holding the setup file.
'''
import json
import logging
from pathlib import Path
from typing import ClassVar, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from bovw.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Same upper bound the setup reader has always enforced for words and k-means iterations
MAX_COUNT = 1000000


def _describe(section, error):
    problems = []
    for item in error.errors():
        loc = ".".join(str(part) for part in (section, *item["loc"]) if part != "")
        problems.append(f"{loc}: {item['msg']}" if loc else item["msg"])
    return "; ".join(problems)


class _Section(BaseModel):
    """Frozen, validated settings block. Any validation failure is raised as ConfigurationError."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    section: ClassVar[str] = ""

    def __init__(self, **data):
        try:
            super().__init__(**data)
        except ValidationError as e:
            raise ConfigurationError(_describe(self.section, e)) from None


class FeatureConfig(_Section):
    """Detector family, adjuster and grid settings for feature extraction."""

    section: ClassVar[str] = "features"

    feature_type: Literal["sift", "orb"] = "orb"
    threshold: Optional[float] = Field(default=None, gt=0)  # None -> the family's default sensitivity
    octaves: int = Field(default=4, gt=0)
    octave_layers: int = Field(default=3, gt=0)
    auto_levels: bool = True

    adjuster_on: bool = False
    adjuster_min: int = Field(default=400, ge=0)
    adjuster_max: int = Field(default=600, ge=0)
    adjuster_iterations: int = Field(default=10, gt=0)
    adjuster_learn_rate: Optional[float] = Field(default=None, gt=0)  # None -> the family's learn rate
    adjuster_memory: bool = False

    grid_on: bool = False
    grid_step: int = Field(default=512, gt=0)

    cache: bool = False

    @model_validator(mode="after")
    def check_band(self):
        if self.adjuster_min > self.adjuster_max:
            raise ValueError("adjuster_min must not exceed adjuster_max")
        return self


class VocabularyConfig(_Section):
    """k-means dictionary settings."""

    section: ClassVar[str] = "dictionary"

    word_count: int = Field(default=40, gt=0, le=MAX_COUNT)
    iterations: int = Field(default=1000, gt=0, le=MAX_COUNT)
    attempts: int = Field(default=1, gt=0)
    clusterer: Literal["kmeans", "minibatch"] = "kmeans"
    seed: int = 42
    cache: bool = False


class ColorHistogramConfig(_Section):
    section: ClassVar[str] = "histograms"

    bins: int = Field(default=256, gt=0, le=256)
    cache: bool = True

    @property
    def width(self):
        return 3 * self.bins


class ClassifierConfig(_Section):
    """Which opaque model to train and on which per-entry histogram."""

    section: ClassVar[str] = "classifiers"

    backend: Literal["svm", "xgboost"] = "svm"
    input: Literal["words", "color"] = "words"

    # SVM, polynomial C-SVC by default
    kernel: Literal["linear", "poly", "rbf", "sigmoid"] = "poly"
    degree: int = Field(default=3, gt=0, lt=20)
    gamma: float = Field(default=0.5, gt=0, lt=10)
    c: float = Field(default=1.0, gt=0)

    # XGBoost
    n_estimators: int = Field(default=200, gt=0)
    max_depth: int = Field(default=5, gt=0)
    learning_rate: float = Field(default=0.1, gt=0)

    seed: int = 42


class EntrySpec(_Section):
    """One labeled image listed in a setup file."""

    section: ClassVar[str] = "entries"

    file: str = Field(min_length=1)
    label: str = Field(min_length=1)
    comment: str = ""

    @property
    def name(self):
        return Path(self.file).stem


class DatabaseConfig(_Section):
    name: str = Field(min_length=1)
    image_dir: Path = Path(".")
    cache_dir: Optional[Path] = None
    entries: Tuple[EntrySpec, ...] = ()
    label_colors: Tuple[Tuple[int, int, int], ...] = ()  # BGR, indexed by label id
    features: FeatureConfig = Field(default_factory=FeatureConfig)
    vocabulary: VocabularyConfig = Field(default_factory=VocabularyConfig)
    color_histograms: ColorHistogramConfig = Field(default_factory=ColorHistogramConfig)
    word_classifier: Optional[ClassifierConfig] = Field(default_factory=ClassifierConfig)
    color_classifier: Optional[ClassifierConfig] = None
    n_jobs: int = 1

    @field_validator("n_jobs")
    @classmethod
    def check_jobs(cls, value):
        if value == 0:
            raise ValueError("n_jobs must be non-zero (use -1 for all cores)")
        return value

    @model_validator(mode="after")
    def check_consistency(self):
        if self.word_classifier is not None and self.word_classifier.input != "words":
            raise ValueError("word_classifier must use input 'words'")
        if self.color_classifier is not None and self.color_classifier.input != "color":
            raise ValueError("color_classifier must use input 'color'")
        # Entry names key the cache files, so two files with the same stem would share features
        seen = {}
        for entry in self.entries:
            if entry.name in seen:
                raise ValueError(f"entries {seen[entry.name]!r} and {entry.file!r} share the name {entry.name!r}")
            seen[entry.name] = entry.file
        return self

    @classmethod
    def from_file(cls, path):
        """Read a JSON setup file into a validated DatabaseConfig."""
        path = Path(path)
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"setup file does not exist: {path}") from None
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"could not parse setup file {path}: {e}") from None
        return cls.from_dict(data, base_dir=path.parent)

    @classmethod
    def from_dict(cls, data, base_dir=Path(".")):
        if not isinstance(data, dict):
            raise ConfigurationError("setup must be a JSON object")

        known = {"name", "image_dir", "cache_dir", "n_jobs", "features", "dictionary",
                 "histograms", "classifiers", "entries", "display"}
        for key in data:
            if key not in known:
                logger.warning("Unknown setup key %r ignored", key)

        name = data.get("name", "")
        base_dir = Path(base_dir)
        image_dir = base_dir / data.get("image_dir", name or ".")
        cache_dir = data.get("cache_dir")
        if cache_dir is not None:
            cache_dir = base_dir / cache_dir

        word_classifier = None
        color_classifier = None
        for section in data.get("classifiers", [{}]):
            classifier = _build_section(ClassifierConfig, section)
            if classifier.input == "words":
                word_classifier = classifier
            else:
                color_classifier = classifier

        entries = tuple(_build_section(EntrySpec, e) for e in data.get("entries", []))

        colors = []
        for color in data.get("display", {}).get("colors", []):
            # Stored BGR to match the image channel order
            colors.append((color.get("b", 255), color.get("g", 255), color.get("r", 255)))

        return cls(
            name=name,
            image_dir=image_dir,
            cache_dir=cache_dir,
            entries=entries,
            label_colors=tuple(colors),
            features=_build_section(FeatureConfig, data.get("features", {})),
            vocabulary=_build_section(VocabularyConfig, data.get("dictionary", {})),
            color_histograms=_build_section(ColorHistogramConfig, data.get("histograms", {})),
            word_classifier=word_classifier,
            color_classifier=color_classifier,
            n_jobs=data.get("n_jobs", 1),
        )


def _build_section(cls, section):
    if not isinstance(section, dict):
        raise ConfigurationError(f"{cls.section} must be a JSON object")
    kwargs = {}
    for key, value in section.items():
        if key in cls.model_fields:
            kwargs[key] = value
        else:
            logger.warning("Unknown %s setting %r ignored", cls.section, key)
    return cls(**kwargs)
