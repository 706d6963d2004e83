#Code by Christopher Kaelin, 2025
# This code is licensed under the MIT License - see the LICENSE file for details.
'''
Binary record formats for the on-disk cache. All values are little-endian.

Vocabulary (.dic):     int32 rows, int32 cols, then rows*cols float32 in row-major order.
Features (.key):       int32 rows, int32 cols, int32 image height, int32 image width, then per keypoint
                       angle f32, class_id i32, octave i32, x f32, y f32, response f32, size f32,
                       followed by that keypoint's cols descriptor values (f32).
Colour histogram (.col): int32 cols, then cols float32.
'''
from dataclasses import dataclass
from typing import List

import cv2
import numpy as np

from bovw.errors import CacheFormatError

HEADER_DTYPE = np.dtype("<i4")


def keypoint_record_dtype(cols):
    # One interleaved keypoint + descriptor record
    return np.dtype([
        ("angle", "<f4"),
        ("class_id", "<i4"),
        ("octave", "<i4"),
        ("x", "<f4"),
        ("y", "<f4"),
        ("response", "<f4"),
        ("size", "<f4"),
        ("descriptor", "<f4", (cols,)),
    ])


@dataclass
class FeatureRecord:
    keypoints: List
    descriptors: np.ndarray
    height: int
    width: int


def _read_exact(f, count, dtype, what):
    dtype = np.dtype(dtype)
    nbytes = count * dtype.itemsize
    data = f.read(nbytes)
    if len(data) != nbytes:
        raise CacheFormatError(f"truncated {what}: expected {nbytes} bytes, got {len(data)}")
    return np.frombuffer(data, dtype=dtype, count=count)


def _read_header(f, count, what):
    header = _read_exact(f, count, HEADER_DTYPE, f"{what} header")
    if (header < 0).any():
        raise CacheFormatError(f"negative size in {what} header: {header.tolist()}")
    return [int(v) for v in header]


# --- Vocabulary ---
def write_vocabulary(f, centroids):
    centroids = np.asarray(centroids, dtype="<f4")
    rows, cols = centroids.shape
    f.write(np.array([rows, cols], dtype=HEADER_DTYPE).tobytes())
    f.write(np.ascontiguousarray(centroids).tobytes())


def read_vocabulary(f):
    rows, cols = _read_header(f, 2, "vocabulary")
    values = _read_exact(f, rows * cols, "<f4", "vocabulary")
    return values.reshape(rows, cols).astype(np.float32)


# --- Per-entry features ---
def write_features(f, keypoints, descriptors, height, width):
    descriptors = np.asarray(descriptors, dtype=np.float32)
    if descriptors.ndim != 2:
        descriptors = descriptors.reshape(len(keypoints), -1)
    rows, cols = descriptors.shape
    if rows != len(keypoints):
        raise CacheFormatError(f"{len(keypoints)} keypoints but {rows} descriptor rows")

    records = np.zeros(rows, dtype=keypoint_record_dtype(cols))
    records["angle"] = [kp.angle for kp in keypoints]
    records["class_id"] = [kp.class_id for kp in keypoints]
    records["octave"] = [kp.octave for kp in keypoints]
    records["x"] = [kp.pt[0] for kp in keypoints]
    records["y"] = [kp.pt[1] for kp in keypoints]
    records["response"] = [kp.response for kp in keypoints]
    records["size"] = [kp.size for kp in keypoints]
    records["descriptor"] = descriptors

    f.write(np.array([rows, cols, height, width], dtype=HEADER_DTYPE).tobytes())
    f.write(records.tobytes())


def read_features(f):
    rows, cols, height, width = _read_header(f, 4, "feature")
    records = _read_exact(f, rows, keypoint_record_dtype(cols), "feature records")

    keypoints = []
    for r in records:
        # Positional: the keyword names changed between OpenCV releases
        keypoints.append(cv2.KeyPoint(float(r["x"]), float(r["y"]), float(r["size"]), float(r["angle"]),
                                      float(r["response"]), int(r["octave"]), int(r["class_id"])))
    descriptors = np.array(records["descriptor"], dtype=np.float32).reshape(rows, cols)
    return FeatureRecord(keypoints=keypoints, descriptors=descriptors, height=height, width=width)


# --- Colour histogram ---
def write_color_histogram(f, histogram):
    histogram = np.asarray(histogram, dtype="<f4").reshape(-1)
    f.write(np.array([histogram.size], dtype=HEADER_DTYPE).tobytes())
    f.write(histogram.tobytes())


def read_color_histogram(f):
    (cols,) = _read_header(f, 1, "colour histogram")
    return _read_exact(f, cols, "<f4", "colour histogram").astype(np.float32)
