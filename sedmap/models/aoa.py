"""
Area of applicability (AOA) of a trained model.

Predictors are standardized with the training mean/std and multiplied
by the model's relative feature importances. The dissimilarity index
(DI) of a location is its distance to the nearest training sample in
that weighted space, divided by the mean pairwise distance between
training samples. The threshold is the upper whisker (largest value not
above Q75 + 1.5 IQR) of the training DI, where each training sample's DI
is measured to its nearest training sample in another CV fold (or to its
nearest other training sample when no folds are given).

References:
    Meyer & Pebesma (2021). Predicting into unknown space? Estimating
        the area of applicability of spatial prediction models.
        Methods in Ecology and Evolution 12(9).
"""

import logging
from dataclasses import dataclass

import numpy as np
from scipy.spatial import cKDTree
from scipy.spatial.distance import pdist

from sedmap.errors import IllPosedError

logger = logging.getLogger(__name__)


@dataclass
class AOAResult:
    di: np.ndarray          # NaN where any predictor is missing
    inside: np.ndarray      # False where DI is NaN or above threshold
    threshold: float


def upper_whisker(values):
    """Largest value not above Q75 + 1.5 IQR."""
    values = np.asarray(values, dtype=np.float64)
    q25, q75 = np.percentile(values, [25, 75])
    boundary = q75 + 1.5 * (q75 - q25)
    return float(values[values <= boundary].max())


class AOAModel:
    """
    Dissimilarity index and applicability threshold from training data.

    Usage:
        aoa = AOAModel().fit(X_train, model.feature_importances_, folds)
        result = aoa.predict(X_cells)
    """

    def __init__(self):
        self.predictors = None
        self.mean_ = None
        self.std_ = None
        self.weights_ = None
        self.d_bar_ = None
        self.train_di_ = None
        self.threshold_ = None
        self._tree = None

    def _transform(self, values):
        return (values - self.mean_) / self.std_ * self.weights_

    def fit(self, X_train, importances, folds=None):
        """
        Parameters
        ----------
        X_train : DataFrame, shape (N, P)
            Training predictors of the final model (complete rows).
        importances : array-like, shape (P,)
            Feature importances of the final model, aligned with columns.
        folds : sequence of (train_idx, val_idx), optional
            CV folds; the training DI then ignores same-fold neighbours.
        """
        self.predictors = list(X_train.columns)
        values = X_train.to_numpy(dtype=np.float64)
        assert np.isfinite(values).all(), "AOA training data contains missing values"
        n = len(values)
        if n < 2:
            raise IllPosedError("AOA needs at least 2 training samples")

        self.mean_ = values.mean(axis=0)
        std = values.std(axis=0, ddof=1)
        self.std_ = np.where(std > 0, std, 1.0)

        w = np.clip(np.asarray(importances, dtype=np.float64), 0.0, None)
        assert len(w) == values.shape[1], "Importances do not match predictors"
        self.weights_ = w / w.sum() if w.sum() > 0 else np.full(len(w), 1.0 / len(w))

        train_w = self._transform(values)
        self.d_bar_ = float(pdist(train_w).mean())
        if not self.d_bar_ > 0:
            raise IllPosedError("All training samples coincide in predictor space")
        self._tree = cKDTree(train_w)

        nearest = np.full(n, np.nan)
        if folds is not None:
            for train_idx, val_idx in folds:
                if len(val_idx) == 0:
                    continue
                if len(train_idx) == 0:
                    raise IllPosedError("A fold has no training samples for the AOA")
                d, _ = cKDTree(train_w[train_idx]).query(train_w[val_idx], k=1)
                nearest[val_idx] = d
        else:
            d, _ = self._tree.query(train_w, k=2)
            nearest = d[:, 1]
        assert np.isfinite(nearest).all(), "Folds do not cover every training sample"

        self.train_di_ = nearest / self.d_bar_
        self.threshold_ = upper_whisker(self.train_di_)
        logger.info("AOA threshold %.4f (mean pairwise distance %.4f)",
                    self.threshold_, self.d_bar_)
        return self

    def predict(self, X_new):
        """
        DI and inside/outside flag for new locations.

        Rows with any missing predictor get DI NaN and inside False.
        """
        values = np.asarray(X_new[self.predictors], dtype=np.float64)
        valid = np.isfinite(values).all(axis=1)
        di = np.full(len(values), np.nan)
        if valid.any():
            d, _ = self._tree.query(self._transform(values[valid]), k=1)
            di[valid] = d / self.d_bar_
        inside = np.zeros(len(values), dtype=bool)
        inside[valid] = di[valid] <= self.threshold_
        return AOAResult(di=di, inside=inside, threshold=self.threshold_)


def aoa_summary(result):
    """Percent of locations with defined DI that fall inside the AOA."""
    valid = np.isfinite(result.di)
    n_valid = int(valid.sum())
    pct = float(result.inside[valid].mean()) * 100 if n_valid else float("nan")
    return {
        "n_valid": n_valid,
        "n_inside": int(result.inside.sum()),
        "pct_inside": pct,
        "threshold": result.threshold,
    }
