#Code by Christopher Kaelin, 2025
# This code is licensed under the MIT License - see the LICENSE file for details.
'''
Classifier wrappers. The model itself (sklearn SVC or XGBoost) is opaque; this module only assembles the
design matrix from per-entry histograms, checks widths, and maps predictions back to label ids.
'''
import logging
from abc import ABC, abstractmethod

import joblib
import numpy as np
import xgboost as xgb
from sklearn.svm import SVC

from bovw.errors import DimensionMismatchError, EmptyInputError, MissingClassifierError

logger = logging.getLogger(__name__)


def validate_row(histogram, width):
    """Return the histogram as a float32 row, raising DimensionMismatchError if it is not `width` long."""
    if histogram is None:
        raise DimensionMismatchError("histogram", width, 0)
    row = np.asarray(histogram, dtype=np.float32).reshape(-1)
    if row.size != width:
        raise DimensionMismatchError("histogram", width, row.size)
    return row


def build_design_matrix(histograms, width):
    """Stack histograms (in the given order) into an N x width float32 matrix."""
    if len(histograms) == 0:
        raise EmptyInputError("no histograms to build a design matrix from")
    return np.vstack([validate_row(h, width) for h in histograms])


class Classifier(ABC):
    def __init__(self):
        self.model = None
        self.width = None

    @property
    def is_trained(self):
        return self.model is not None

    def train(self, features, labels):
        features = np.asarray(features, dtype=np.float32)
        labels = np.asarray(labels, dtype=np.int64).reshape(-1)
        if features.shape[0] == 0:
            raise EmptyInputError("no training rows")
        if features.shape[0] != labels.shape[0]:
            raise DimensionMismatchError("label vector", features.shape[0], labels.shape[0])
        if np.unique(labels).size < 2:
            raise EmptyInputError("training needs at least two classes")

        self.width = features.shape[1]
        self.model = self._fit(features, labels)
        return self

    def predict(self, histogram):
        """Label id for one histogram."""
        return int(self.predict_many(np.asarray(histogram).reshape(1, -1))[0])

    def predict_many(self, features):
        if not self.is_trained:
            raise MissingClassifierError("no classifier")
        features = np.asarray(features, dtype=np.float32)
        if features.ndim != 2 or features.shape[1] != self.width:
            raise DimensionMismatchError("histogram", self.width, features.shape[-1])
        return self._predict(features).astype(np.int64)

    def save(self, path):
        if not self.is_trained:
            raise MissingClassifierError("no classifier to save")
        joblib.dump(self, path)
        logger.info("Saved %s to %s", type(self).__name__, path)

    @staticmethod
    def load(path):
        return joblib.load(path)

    @abstractmethod
    def _fit(self, features, labels):
        pass

    @abstractmethod
    def _predict(self, features):
        pass


class SvmClassifier(Classifier):
    def __init__(self, kernel="poly", degree=3, gamma=0.5, c=1.0, seed=42):
        super().__init__()
        self.kernel = kernel
        self.degree = degree
        self.gamma = gamma
        self.c = c
        self.seed = seed

    def _fit(self, features, labels):
        model = SVC(kernel=self.kernel, degree=self.degree, gamma=self.gamma, C=self.c, random_state=self.seed)
        model.fit(features, labels)
        return model

    def _predict(self, features):
        return self.model.predict(features)


class XgboostClassifier(Classifier):
    def __init__(self, n_estimators=200, max_depth=5, learning_rate=0.1, seed=42):
        super().__init__()
        self.n_estimators = n_estimators
        self.max_depth = max_depth
        self.learning_rate = learning_rate
        self.seed = seed
        self.classes = None

    def _fit(self, features, labels):
        # XGBoost wants labels 0..n-1, label ids in a training set may have gaps
        self.classes, encoded = np.unique(labels, return_inverse=True)
        params = dict(n_estimators=self.n_estimators,
                      max_depth=self.max_depth,
                      learning_rate=self.learning_rate,
                      tree_method="hist",
                      device="cpu",
                      random_state=self.seed)
        if self.classes.size > 2:
            params.update(objective="multi:softprob", num_class=int(self.classes.size), eval_metric="mlogloss")
        else:
            params.update(objective="binary:logistic", eval_metric="logloss")
        model = xgb.XGBClassifier(**params)
        model.fit(features, encoded)
        return model

    def _predict(self, features):
        return self.classes[np.asarray(self.model.predict(features), dtype=np.int64)]


def make_classifier(config):
    if config.backend == "xgboost":
        return XgboostClassifier(n_estimators=config.n_estimators, max_depth=config.max_depth,
                                 learning_rate=config.learning_rate, seed=config.seed)
    return SvmClassifier(kernel=config.kernel, degree=config.degree, gamma=config.gamma, c=config.c,
                         seed=config.seed)
