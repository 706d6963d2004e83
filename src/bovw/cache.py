#Code by Christopher Kaelin, 2025
# This code is licensed under the MIT License - see the LICENSE file for details.
'''
On-disk cache for per-entry features, per-entry colour histograms and the database dictionary.

Files live in one cache directory:
    <entry name>.key   features (keypoints + descriptors)
    <entry name>.col   colour histogram
    <database>.dic     dictionary (codebook)

A cached record is only trusted when its declared shape matches what the caller expects
(dictionary rows == configured word count, colour columns == 3 * bins, descriptor width == extractor width).
Anything else (missing file, stale shape, truncated record) is a miss and the caller regenerates,
then overwrites the stale file. Writes are best-effort: a failed write is logged and forgotten.
'''
import logging
import os
import threading
from collections import namedtuple
from pathlib import Path

from bovw import storage
from bovw.errors import CacheFormatError

logger = logging.getLogger(__name__)

CacheKey = namedtuple("CacheKey", ["name", "kind"])

EXTENSIONS = {
    "features": "key",
    "color": "col",
    "dictionary": "dic",
}


class FeatureCache:
    def __init__(self, cache_dir, enabled=True):
        self.cache_dir = Path(cache_dir) if cache_dir is not None else None
        self.enabled = enabled and self.cache_dir is not None
        self._locks = {}
        self._locks_guard = threading.Lock()

    def path_for(self, key):
        return self.cache_dir / f"{key.name}.{EXTENSIONS[key.kind]}"

    def _lock_for(self, key):
        with self._locks_guard:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    # --- Generic load/store ---
    def try_load(self, key, reader, accept=None):
        """
        Read the record for key with reader(file). Returns None on a miss, a malformed record,
        or when accept(record) rejects the record's shape.
        """
        if not self.enabled:
            return None
        path = self.path_for(key)
        if not path.is_file():
            return None
        try:
            with self._lock_for(key):
                with open(path, "rb") as f:
                    record = reader(f)
        except (OSError, CacheFormatError) as e:
            logger.debug("Ignoring unreadable cache file %s: %s", path, e)
            return None
        if accept is not None and not accept(record):
            logger.debug("Ignoring stale cache file %s", path)
            return None
        return record

    def store(self, key, writer):
        """Write a record with writer(file). Returns False (and logs) if it could not be persisted."""
        if not self.enabled:
            return False
        path = self.path_for(key)
        tmp_path = path.with_name(path.name + ".tmp")
        with self._lock_for(key):
            try:
                self.cache_dir.mkdir(parents=True, exist_ok=True)
                with open(tmp_path, "wb") as f:
                    writer(f)
                os.replace(tmp_path, path)
            except (OSError, CacheFormatError) as e:
                logger.warning("Could not write cache file %s: %s", path, e)
                return False
            finally:
                # Only left behind when the write failed
                if tmp_path.exists():
                    tmp_path.unlink()
        return True

    # --- Typed helpers ---
    def load_features(self, name, expected_cols=None):
        def accept(record):
            return expected_cols is None or record.descriptors.shape[1] == expected_cols
        return self.try_load(CacheKey(name, "features"), storage.read_features, accept)

    def store_features(self, name, keypoints, descriptors, height, width):
        if len(keypoints) == 0:
            # Nothing worth caching, an empty record would only be regenerated anyway
            return False
        return self.store(CacheKey(name, "features"),
                          lambda f: storage.write_features(f, keypoints, descriptors, height, width))

    def load_vocabulary(self, db_name, word_count):
        return self.try_load(CacheKey(db_name, "dictionary"), storage.read_vocabulary,
                             lambda centroids: centroids.shape[0] == word_count)

    def store_vocabulary(self, db_name, centroids):
        return self.store(CacheKey(db_name, "dictionary"), lambda f: storage.write_vocabulary(f, centroids))

    def load_color_histogram(self, name, expected_cols):
        return self.try_load(CacheKey(name, "color"), storage.read_color_histogram,
                             lambda hist: hist.size == expected_cols)

    def store_color_histogram(self, name, histogram):
        return self.store(CacheKey(name, "color"), lambda f: storage.write_color_histogram(f, histogram))
