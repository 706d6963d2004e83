#Code by Christopher Kaelin, 2025
# This code is licensed under the MIT License - see the LICENSE file for details.
'''
This package provides a Bag of Visual Words (BoVW) model for image recognition.
It includes adaptive-threshold feature extraction, visual vocabulary creation, histogram encoding,
classifier training and sliding-window localisation, with an on-disk cache for features and dictionaries.
'''
from bovw.config import (ClassifierConfig, ColorHistogramConfig, DatabaseConfig, EntrySpec, FeatureConfig,
                         VocabularyConfig)
from bovw.database import DatabaseState, RecognitionDatabase, StageOutcome
from bovw.errors import (CacheFormatError, ConfigurationError, DimensionMismatchError, EmptyInputError,
                         ImageReadError, MissingClassifierError, MissingVocabularyError, RecognitionError)
from bovw.voter import SlidingWindowVoter

__version__ = "0.2.0"
