"""
Regression matrix: one row per sample, the response, and the predictor
values sampled from the raster stack at the sample position.
"""

import logging

import numpy as np

logger = logging.getLogger(__name__)

COORD_COLUMNS = ["x", "y"]


def build_regression_matrix(samples, stack, responses):
    """
    Sample the predictor stack at every sample position.

    Parameters
    ----------
    samples : DataFrame
        Needs x, y and the response columns (working CRS == stack CRS).
    stack : PredictorStack
    responses : list of str
        Response column names (e.g. ["alrM", "alrG"]).

    Returns
    -------
    DataFrame
        Columns: station (when present), x, y, responses..., predictors...,
        complete (bool, True when no predictor or response is NaN).
    """
    keep = [c for c in ["station"] if c in samples.columns]
    base = samples[keep + COORD_COLUMNS + list(responses)].reset_index(drop=True)
    values = stack.sample(base["x"].to_numpy(), base["y"].to_numpy())

    df = base.join(values)
    cols = list(responses) + stack.names
    df["complete"] = np.isfinite(df[cols].to_numpy(dtype=np.float64)).all(axis=1)
    return df


def drop_incomplete(df, predictors, response=None):
    """
    Keep rows with finite values for `predictors` (and `response`).

    Returns a copy with a fresh RangeIndex so positional fold indices
    address rows directly.
    """
    cols = list(predictors) + ([response] if response else [])
    ok = np.isfinite(df[cols].to_numpy(dtype=np.float64)).all(axis=1)
    n_drop = int((~ok).sum())
    if n_drop:
        logger.info("Excluded %d of %d samples with missing predictor values",
                    n_drop, len(df))
    return df.loc[ok].reset_index(drop=True)
