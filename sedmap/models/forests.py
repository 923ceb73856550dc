"""
Random forest regressor wrapper for one log-ratio response.

`mtry` is the number of predictors sampled at each split (sklearn
`max_features` as an int); it is clamped to the number of predictors
the model is fitted on.
"""

import numpy as np
from sklearn.ensemble import RandomForestRegressor


class RandomForestModel:
    """
    Single-output Random Forest regression in log-ratio space.
    """

    def __init__(self, n_estimators=500, mtry=2, min_samples_leaf=1,
                 n_jobs=1, random_state=42):
        self.n_estimators = n_estimators
        self.mtry = mtry
        self.min_samples_leaf = min_samples_leaf
        self.n_jobs = n_jobs
        self.random_state = random_state
        self.model = None
        self.predictors = None

    def fit(self, X_train, y_train):
        """Fit on a DataFrame (column names kept) or ndarray."""
        X = np.asarray(X_train, dtype=np.float64)
        self.predictors = list(getattr(X_train, "columns", range(X.shape[1])))
        self.model = RandomForestRegressor(
            n_estimators=self.n_estimators,
            max_features=max(1, min(int(self.mtry), X.shape[1])),
            min_samples_leaf=self.min_samples_leaf,
            n_jobs=self.n_jobs,
            random_state=self.random_state,
        )
        self.model.fit(X, np.asarray(y_train, dtype=np.float64))
        return self

    def predict(self, X):
        """Predict the log-ratio response."""
        return self.model.predict(np.asarray(X, dtype=np.float64))

    def get_params_dict(self):
        return {
            "model": "RandomForest",
            "n_estimators": self.n_estimators,
            "mtry": self.mtry,
            "min_samples_leaf": self.min_samples_leaf,
        }

    @property
    def feature_importances_(self):
        """Feature importance (mean decrease in impurity), shape (n_features,)."""
        return self.model.feature_importances_
