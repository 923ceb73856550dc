"""
Multicollinearity-aware decorrelation of the confirmed predictor set.

A correlation threshold `th` starts at 1 and decreases in fixed steps.
For each `th`, the pairwise elimination runs from the full set: while
the most correlated pair exceeds `th`, the member of that pair more
correlated with everything else is dropped. The first `th` whose
survivors all have a variance inflation factor below the bound wins.

The elimination order does not depend on `th` (only where it stops),
so a smaller `th` always keeps a subset of a larger one.
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from statsmodels.stats.outliers_influence import variance_inflation_factor
from statsmodels.tools.tools import add_constant

from sedmap.errors import IllPosedError, InputValidationError

logger = logging.getLogger(__name__)


@dataclass
class DecorrelationResult:
    predictors: list
    max_vif: float
    threshold: float
    vif: pd.Series
    history: pd.DataFrame       # threshold, n_predictors, max_vif
    dropped_constant: list


def compute_vif(X):
    """
    Variance inflation factor of every column of X.

    VIF_i = 1 / (1 - R²_i), R²_i from regressing column i on the others
    (with intercept). A single column has VIF 1.

    Returns
    -------
    pd.Series indexed by column name
    """
    cols = list(X.columns)
    if len(cols) == 0:
        return pd.Series(dtype=float)
    if len(cols) == 1:
        return pd.Series([1.0], index=cols)

    exog = add_constant(X.to_numpy(dtype=np.float64), has_constant="add")
    with np.errstate(divide="ignore", invalid="ignore"):
        vifs = [variance_inflation_factor(exog, i + 1) for i in range(len(cols))]
    vifs = np.where(np.isfinite(vifs), vifs, np.inf)
    return pd.Series(vifs, index=cols)


def correlation_prune(X, th):
    """
    Drop one member of the most correlated pair until max |r| <= th.

    The dropped member is the one with the larger mean absolute
    correlation to the other survivors; ties drop the later column.

    Returns
    -------
    list of surviving column names (input order)
    """
    corr = X.corr().abs().to_numpy(copy=True)
    np.fill_diagonal(corr, 0.0)
    corr = np.nan_to_num(corr, nan=0.0)
    alive = np.ones(len(X.columns), dtype=bool)

    while alive.sum() > 1:
        sub = np.where(alive[:, None] & alive[None, :], corr, -1.0)
        flat = int(np.argmax(sub))
        i, j = divmod(flat, sub.shape[1])
        if sub[i, j] <= th:
            break
        n_other = alive.sum() - 1
        mean_i = corr[i, alive].sum() / n_other
        mean_j = corr[j, alive].sum() / n_other
        if mean_i == mean_j:
            drop = max(i, j)
        else:
            drop = i if mean_i > mean_j else j
        alive[drop] = False

    return [c for c, keep in zip(X.columns, alive) if keep]


def select_decorrelated(X, max_vif=2.5, step=0.01, start=1.0):
    """
    Search the correlation threshold downward until max VIF < `max_vif`.

    Parameters
    ----------
    X : DataFrame
        Confirmed predictors, complete rows.
    max_vif : float
        Acceptability bound for every survivor's VIF.
    step : float
        Decrement of the correlation threshold.

    Returns
    -------
    DecorrelationResult

    Raises
    ------
    InputValidationError
        If X has no columns.
    IllPosedError
        If the threshold reaches 0 and the survivors still exceed the bound.
    """
    if X.shape[1] == 0:
        raise InputValidationError("No predictors to decorrelate")

    std = X.std(axis=0, ddof=0)
    constant = std.index[~(std > 0)].tolist()
    if constant:
        logger.warning("Dropping constant predictors before VIF search: %s", constant)
        X = X.drop(columns=constant)
    if X.shape[1] == 0:
        raise InputValidationError("All predictors are constant")

    rows = []
    k = 0
    th = start
    while th >= 0.0:
        survivors = correlation_prune(X, th)
        vif = compute_vif(X[survivors])
        achieved = float(vif.max())
        rows.append({"threshold": th, "n_predictors": len(survivors),
                     "max_vif": achieved})
        if achieved < max_vif:
            logger.info(
                "Decorrelation: th=%.2f keeps %d of %d predictors (max VIF %.2f)",
                th, len(survivors), X.shape[1], achieved,
            )
            return DecorrelationResult(
                predictors=survivors,
                max_vif=achieved,
                threshold=th,
                vif=vif,
                history=pd.DataFrame(rows),
                dropped_constant=constant,
            )
        k += 1
        th = round(start - k * step, 10)

    raise IllPosedError(
        f"VIF search exhausted the threshold range: at th=0 the survivors "
        f"{survivors} still have max VIF {achieved:.2f} >= {max_vif}"
    )
