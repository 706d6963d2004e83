#Code by Christopher Kaelin, 2025
# This code is licensed under the MIT License - see the LICENSE file for details.
'''
Exception types raised by the recognition pipeline.
Cache misses and stale cache files are not errors: the cache layer returns None and the caller regenerates.
'''


class RecognitionError(Exception):
    """Base class for every error raised by the bovw package."""


class ConfigurationError(RecognitionError):
    """Missing or out-of-range detector, vocabulary, histogram or classifier setting."""


class EmptyInputError(RecognitionError):
    """No entries (or no descriptors) to process."""


class DimensionMismatchError(RecognitionError):
    """A histogram or descriptor row does not have the expected width."""

    def __init__(self, what, expected, actual):
        self.expected = expected
        self.actual = actual
        super().__init__(f"{what}: expected width {expected}, got {actual}")


class MissingVocabularyError(RecognitionError):
    """Raised when encoding is requested before a vocabulary exists."""


class MissingClassifierError(RecognitionError):
    """Raised when prediction is requested before a classifier was trained."""


class ImageReadError(RecognitionError):
    """An image file could not be decoded."""


class CacheFormatError(RecognitionError):
    """A cache record is truncated or malformed."""
