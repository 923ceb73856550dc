"""
Boruta all-relevant predictor pre-selection.

Selection is driven by `boruta.BorutaPy` around a random forest: each
iteration adds permuted "shadow" copies of the active predictors, and a
real predictor scores a hit when its importance beats the best shadow.
Hit counts are tested against a fair coin (binomial test, Bonferroni
corrected): significantly many hits -> Confirmed, significantly few ->
Rejected. Predictors still undecided after `max_iter` are Tentative.

This module adds the verdict table, forced predictors and the policy
for Tentative predictors on top of the library.

References:
    Kursa & Rudnicki (2010). Feature Selection with the Boruta Package.
        Journal of Statistical Software 36(11).
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from boruta import BorutaPy
from sklearn.ensemble import RandomForestRegressor

from sedmap.errors import InputValidationError

logger = logging.getLogger(__name__)

CONFIRMED = "Confirmed"
TENTATIVE = "Tentative"
REJECTED = "Rejected"

TENTATIVE_POLICIES = ("drop", "keep")


@dataclass
class BorutaResult:
    """Predictor verdict set plus the per-iteration importance history."""

    verdicts: pd.DataFrame      # predictor, decision, rank, mean/median importance
    importance_history: pd.DataFrame
    n_iterations: int

    def names(self, decision):
        return self.verdicts.loc[self.verdicts["decision"] == decision,
                                 "predictor"].tolist()

    @property
    def confirmed(self):
        return self.names(CONFIRMED)

    @property
    def tentative(self):
        return self.names(TENTATIVE)

    @property
    def rejected(self):
        return self.names(REJECTED)


def boruta_select(X, y, alpha=0.05, max_iter=500, n_estimators=300,
                  seed=42, n_jobs=-1, forced=()):
    """
    Run the Boruta pre-selection.

    Parameters
    ----------
    X : DataFrame, shape (N, P)
        Complete predictor columns (no NaN).
    y : array-like, shape (N,)
    alpha : float
        Significance level before Bonferroni correction.
    max_iter : int
        Maximum number of Boruta iterations.
    forced : iterable of str
        Predictors returned as Confirmed whatever their test outcome.
        When every predictor is forced no forest is fitted.

    Returns
    -------
    BorutaResult

    Raises
    ------
    InputValidationError
        If a forced predictor is not a column of X.
    """
    names = list(X.columns)
    values = X.to_numpy(dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    assert len(values) == len(y), "X and y lengths differ"
    assert np.isfinite(values).all(), "Boruta input contains missing values"

    forced = set(forced)
    unknown = forced - set(names)
    if unknown:
        raise InputValidationError(f"Forced predictors not in X: {sorted(unknown)}")
    is_forced = np.array([n in forced for n in names], dtype=bool)

    P = len(names)
    if is_forced.all():
        decisions = np.full(P, CONFIRMED, dtype=object)
        ranks = np.ones(P, dtype=int)
        history = pd.DataFrame(columns=names, dtype=float)
    else:
        rf = RandomForestRegressor(max_features="sqrt", n_jobs=n_jobs,
                                   random_state=seed)
        selector = BorutaPy(rf, n_estimators=n_estimators, alpha=alpha,
                            two_step=False, max_iter=max_iter,
                            random_state=seed, verbose=0)
        selector.fit(values, y)

        decisions = np.full(P, REJECTED, dtype=object)
        decisions[selector.support_weak_] = TENTATIVE
        decisions[selector.support_] = CONFIRMED
        decisions[is_forced] = CONFIRMED
        ranks = np.asarray(selector.ranking_, dtype=int)
        ranks[is_forced] = 1
        # first row of the library's history is a zero placeholder
        history = pd.DataFrame(np.asarray(selector.importance_history_)[1:],
                               columns=names)

    if len(history):
        mean_imp = history.mean(axis=0).to_numpy()
        median_imp = history.median(axis=0).to_numpy()
    else:
        mean_imp = np.full(P, np.nan)
        median_imp = np.full(P, np.nan)

    verdicts = pd.DataFrame({
        "predictor": names,
        "decision": decisions,
        "rank": ranks,
        "mean_importance": mean_imp,
        "median_importance": median_imp,
    })
    counts = verdicts["decision"].value_counts()
    logger.info(
        "Boruta finished after %d iterations: %d confirmed, %d tentative, %d rejected",
        len(history), counts.get(CONFIRMED, 0), counts.get(TENTATIVE, 0),
        counts.get(REJECTED, 0),
    )
    return BorutaResult(verdicts=verdicts, importance_history=history,
                        n_iterations=len(history))


def confirmed_predictors(result, tentative_policy="drop"):
    """
    Predictor names carried forward to decorrelation.

    tentative_policy="drop" keeps Confirmed only, "keep" adds Tentative.
    Order follows the verdict table (input column order).
    """
    if tentative_policy not in TENTATIVE_POLICIES:
        raise InputValidationError(f"Unknown tentative policy: {tentative_policy}")
    accepted = {CONFIRMED} if tentative_policy == "drop" else {CONFIRMED, TENTATIVE}
    mask = result.verdicts["decision"].isin(accepted)
    return result.verdicts.loc[mask, "predictor"].tolist()
