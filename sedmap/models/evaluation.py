"""
Validation metrics for out-of-fold log-ratio predictions and
simplex checks for back-transformed fractions.
"""

import numpy as np
from sklearn.metrics import mean_squared_error, r2_score


def validation_metrics(y_true, y_pred):
    """
    MSE, RMSE and R² of predicted vs observed response.

    Parameters
    ----------
    y_true, y_pred : ndarray, shape (N,)

    Returns
    -------
    dict with keys mse, rmse, r2, n
    """
    y_true = np.asarray(y_true, dtype=np.float64)
    y_pred = np.asarray(y_pred, dtype=np.float64)
    assert y_true.shape == y_pred.shape, \
        f"Shapes differ: {y_true.shape} vs {y_pred.shape}"
    mse = float(mean_squared_error(y_true, y_pred))
    if len(y_true) > 1 and np.var(y_true) > 0:
        r2 = float(r2_score(y_true, y_pred))
    else:
        r2 = float("nan")
    return {"mse": mse, "rmse": float(np.sqrt(mse)), "r2": r2, "n": int(len(y_true))}


def cv_score(y_true, y_pred, metric="r2"):
    """
    Score used to compare candidate subsets, oriented so larger is better.

    metric="r2" returns R², metric="rmse" returns -RMSE.
    """
    m = validation_metrics(y_true, y_pred)
    if metric == "r2":
        return m["r2"]
    if metric == "rmse":
        return -m["rmse"]
    raise ValueError(f"Unknown metric: {metric}")


def simplex_validity(fractions, tol=1e-6):
    """
    Check back-transformed fraction grids (or columns) lie on the simplex.

    Parameters
    ----------
    fractions : dict of name -> ndarray, all the same shape
    tol : float
        Tolerance for the sum-to-one check.

    Returns
    -------
    dict with keys:
        n_valid_cells : cells with all parts finite
        pct_valid_sum : % of those with |sum - 1| < tol
        pct_valid_range : % of those with every part in [0, 1]
        max_abs_sum_error : largest |sum - 1|
    """
    stacked = np.stack([np.asarray(v, dtype=np.float64) for v in fractions.values()])
    finite = np.isfinite(stacked).all(axis=0)
    n = int(finite.sum())
    if n == 0:
        return {"n_valid_cells": 0, "pct_valid_sum": float("nan"),
                "pct_valid_range": float("nan"), "max_abs_sum_error": float("nan")}

    parts = stacked[:, finite]
    err = np.abs(parts.sum(axis=0) - 1.0)
    in_range = ((parts >= -tol) & (parts <= 1.0 + tol)).all(axis=0)
    return {
        "n_valid_cells": n,
        "pct_valid_sum": float((err < tol).mean()) * 100,
        "pct_valid_range": float(in_range.mean()) * 100,
        "max_abs_sum_error": float(err.max()),
    }
