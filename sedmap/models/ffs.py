"""
Forward feature selection (FFS) with spatial block cross-validation.

Search:
  1. Score every pair of candidate predictors; keep the best pair.
  2. Try adding each remaining predictor to the current best subset;
     keep the best extension only if it improves the score, else stop.

Every (subset, mtry) candidate is scored by fitting a random forest on
each fold's training rows and predicting its validation rows; the
candidate score is the mean of the per-fold scores. All fold fits of
one search step run as independent joblib jobs. Results come back in
submission order and are aggregated by (subset, mtry) key, so the
chosen model does not depend on worker completion order.

The number of subsets scored is at most C(n,2) + sum_{i=1}^{n-2} i,
each multiplied by the mtry grid size and the number of folds.
"""

import logging
from dataclasses import dataclass, field
from itertools import combinations

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from sedmap.errors import IllPosedError, InputValidationError
from sedmap.models.evaluation import cv_score, validation_metrics
from sedmap.models.forests import RandomForestModel

logger = logging.getLogger(__name__)


@dataclass
class CandidateModel:
    """Winning predictor subset, its hyperparameter and validation output."""

    predictors: list
    mtry: int
    score: float
    metric: str
    model: RandomForestModel = None
    oof_predictions: np.ndarray = None
    fold_scores: list = field(default_factory=list)
    metrics: dict = field(default_factory=dict)


@dataclass
class FFSResult:
    best: CandidateModel
    history: pd.DataFrame       # every scored candidate
    best_scores: list           # running best score per accepted step
    n_subsets_evaluated: int


def evaluation_count(n):
    """Upper bound on subsets scored for n candidate predictors."""
    if n < 2:
        return 0
    return n * (n - 1) // 2 + (n - 2) * (n - 1) // 2


def mtry_values(mtry_grid, n_predictors):
    """Grid values clamped to [1, n_predictors], duplicates removed, order kept."""
    out = []
    for m in mtry_grid:
        m = max(1, min(int(m), n_predictors))
        if m not in out:
            out.append(m)
    return out


# =====================================================================
# Fold-level work
# =====================================================================

def _fit_predict_fold(X_train, y_train, X_val, mtry, n_estimators, seed):
    """Worker: fit on one fold's training slice, predict its validation slice."""
    model = RandomForestModel(n_estimators=n_estimators, mtry=mtry,
                              n_jobs=1, random_state=seed)
    model.fit(X_train, y_train)
    return model.predict(X_val)


def _score_candidates(X, y, candidates, folds, metric, n_estimators, seed, n_jobs):
    """
    Cross-validate every (subset, mtry) candidate over all folds.

    Returns
    -------
    list of dict, one per candidate, in `candidates` order:
        predictors, mtry, score, fold_scores, oof
    """
    values = X.to_numpy(dtype=np.float64)
    col = {name: i for i, name in enumerate(X.columns)}

    jobs = []
    keys = []
    for c_idx, (subset, mtry) in enumerate(candidates):
        cols = [col[p] for p in subset]
        for f_idx, (train_idx, val_idx) in enumerate(folds):
            jobs.append(delayed(_fit_predict_fold)(
                values[np.ix_(train_idx, cols)],
                y[train_idx],
                values[np.ix_(val_idx, cols)],
                mtry, n_estimators, seed,
            ))
            keys.append((c_idx, f_idx))

    predictions = Parallel(n_jobs=n_jobs)(jobs)

    results = []
    for c_idx, (subset, mtry) in enumerate(candidates):
        results.append({"predictors": list(subset), "mtry": mtry,
                        "oof": np.full(len(y), np.nan), "fold_scores": []})
    for (c_idx, f_idx), pred in zip(keys, predictions):
        val_idx = folds[f_idx][1]
        res = results[c_idx]
        res["oof"][val_idx] = pred
        res["fold_scores"].append(cv_score(y[val_idx], pred, metric))

    for res in results:
        scores = np.asarray(res["fold_scores"], dtype=np.float64)
        if not np.isfinite(scores).all():
            raise IllPosedError(
                f"Non-finite {metric} in some fold for predictors "
                f"{res['predictors']} (mtry={res['mtry']}); folds are too small "
                f"or have constant response"
            )
        res["score"] = float(scores.mean())
    return results


def cross_validate_subset(X, y, predictors, mtry, folds, metric="r2",
                          n_estimators=500, seed=42, n_jobs=1):
    """
    Spatial CV of one predictor subset.

    Returns
    -------
    dict with predictors, mtry, score, fold_scores, oof
    """
    y = np.asarray(y, dtype=np.float64)
    return _score_candidates(X, y, [(tuple(predictors), int(mtry))], folds,
                             metric, n_estimators, seed, n_jobs)[0]


# =====================================================================
# Search
# =====================================================================

def _best_of(results):
    """Highest score; the first in enumeration order wins ties."""
    best = results[0]
    for res in results[1:]:
        if res["score"] > best["score"]:
            best = res
    return best


def forward_feature_selection(X, y, predictors, folds, mtry_grid=(2,),
                              metric="r2", n_estimators=500, seed=42,
                              n_jobs=-2, warn_evaluations=2000):
    """
    Greedy forward search over predictor subsets.

    Parameters
    ----------
    X : DataFrame
        Complete regression matrix rows (RangeIndex), containing `predictors`.
    y : array-like, shape (N,)
        Log-ratio response.
    predictors : list of str
        Candidate set (decorrelated predictors), at least 2.
    folds : sequence of (train_idx, val_idx)
        Spatial fold assignment over the rows of X.
    mtry_grid : sequence of int
        Values tried for the number of predictors sampled per split.
    metric : "r2" or "rmse"

    Returns
    -------
    FFSResult
    """
    predictors = list(predictors)
    if len(predictors) < 2:
        raise InputValidationError(
            f"Forward selection needs at least 2 candidate predictors, "
            f"got {predictors}"
        )
    y = np.asarray(y, dtype=np.float64)
    X = X[predictors]
    assert len(X) == len(y), "X and y lengths differ"
    assert np.isfinite(X.to_numpy(dtype=np.float64)).all(), \
        "Forward selection input contains missing values"

    n_eval = evaluation_count(len(predictors))
    n_fits = n_eval * len(mtry_grid) * len(folds)
    logger.info("FFS: %d candidate predictors -> up to %d subsets (%d model fits)",
                len(predictors), n_eval, n_fits)
    if n_eval > warn_evaluations:
        logger.warning(
            "FFS will score up to %d subsets; the search cost grows "
            "quadratically with the number of predictors", n_eval,
        )

    def candidates_for(subsets):
        return [(s, m) for s in subsets for m in mtry_values(mtry_grid, len(s))]

    history = []
    step = 0

    def record(results, chosen):
        for res in results:
            history.append({
                "step": step,
                "predictors": ",".join(res["predictors"]),
                "n_predictors": len(res["predictors"]),
                "mtry": res["mtry"],
                "score": res["score"],
                "selected": res is chosen,
            })

    pairs = list(combinations(predictors, 2))
    results = _score_candidates(X, y, candidates_for(pairs), folds, metric,
                                n_estimators, seed, n_jobs)
    best = _best_of(results)
    record(results, best)
    n_subsets = len(pairs)
    best_scores = [best["score"]]
    logger.info("FFS step %d: best pair %s (mtry=%d, %s=%.4f)",
                step, best["predictors"], best["mtry"], metric, best["score"])

    while True:
        remaining = [p for p in predictors if p not in best["predictors"]]
        if not remaining:
            break
        step += 1
        subsets = [tuple(best["predictors"]) + (p,) for p in remaining]
        results = _score_candidates(X, y, candidates_for(subsets), folds, metric,
                                    n_estimators, seed, n_jobs)
        n_subsets += len(subsets)
        challenger = _best_of(results)
        improved = challenger["score"] > best["score"]
        record(results, challenger if improved else None)
        if not improved:
            logger.info("FFS step %d: no extension improves %s=%.4f, stopping",
                        step, metric, best["score"])
            break
        best = challenger
        best_scores.append(best["score"])
        logger.info("FFS step %d: added %s (mtry=%d, %s=%.4f)",
                    step, best["predictors"][-1], best["mtry"], metric, best["score"])

    final = RandomForestModel(n_estimators=n_estimators, mtry=best["mtry"],
                              n_jobs=n_jobs, random_state=seed)
    final.fit(X[best["predictors"]], y)

    oof = best["oof"]
    validated = np.isfinite(oof)
    candidate = CandidateModel(
        predictors=best["predictors"],
        mtry=best["mtry"],
        score=best["score"],
        metric=metric,
        model=final,
        oof_predictions=oof,
        fold_scores=list(best["fold_scores"]),
        metrics=validation_metrics(y[validated], oof[validated]),
    )
    return FFSResult(
        best=candidate,
        history=pd.DataFrame(history),
        best_scores=best_scores,
        n_subsets_evaluated=n_subsets,
    )
