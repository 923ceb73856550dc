"""
Spatial block cross-validation folds for point samples.

Geographic space is tiled into square blocks whose edge length is the
autocorrelation range times a multiplier. Whole blocks are assigned to
folds, so spatially near samples always share a fold and never appear
on both sides of a train/validation split.

Usage:
    from sedmap.splitting import build_spatial_folds, fold_summary

    sf = build_spatial_folds(x, y, autocorr_range=1800.0,
                             multiplier=1.0, n_folds=10, seed=42)
    for train_idx, val_idx in sf.folds:
        ...
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone

import numpy as np
import pandas as pd

from sedmap.errors import IllPosedError


@dataclass(frozen=True)
class SpatialFolds:
    """Fold assignment derived from spatial blocks."""

    assignments: np.ndarray     # fold index 0..k-1 per sample
    folds: tuple                # ((train_idx, val_idx), ...)
    block_ids: np.ndarray       # block id per sample
    block_size: float
    n_folds: int
    seed: int


# =====================================================================
# Block assignment
# =====================================================================

def assign_spatial_blocks(x, y, block_size, origin=None):
    """
    Assign each sample to a square block of edge `block_size`.

    Parameters
    ----------
    x, y : ndarray, shape (N,)
        Projected coordinates (working CRS units).
    block_size : float
        Block edge length.
    origin : (float, float), optional
        Lower-left corner of the block grid; default the sample minimum.

    Returns
    -------
    block_ids : ndarray of int, shape (N,)
        Row-major block identifier.
    n_block_cols : int
    n_block_rows : int
    """
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    if not np.isfinite(block_size) or block_size <= 0:
        raise IllPosedError(f"Block size must be positive and finite, got {block_size}")
    if origin is None:
        origin = (x.min(), y.min())

    col_idx = np.floor((x - origin[0]) / block_size).astype(int)
    row_idx = np.floor((y - origin[1]) / block_size).astype(int)
    assert (col_idx >= 0).all() and (row_idx >= 0).all(), \
        "Samples lie below/left of the block grid origin"

    n_block_cols = int(col_idx.max()) + 1
    n_block_rows = int(row_idx.max()) + 1
    block_ids = row_idx * n_block_cols + col_idx
    return block_ids, n_block_cols, n_block_rows


# =====================================================================
# Fold builders
# =====================================================================

def _folds_from_assignments(fold_assignments, n_folds):
    folds = []
    for fold_idx in range(n_folds):
        val_mask = fold_assignments == fold_idx
        train_idx = np.where(~val_mask)[0]
        val_idx = np.where(val_mask)[0]
        folds.append((train_idx, val_idx))
    return tuple(folds)


def build_block_folds(block_ids, n_folds, seed):
    """
    Seeded, sample-count balanced assignment of whole blocks to folds.

    Blocks are visited in a seeded random order; each goes to the fold
    currently holding the fewest samples (lowest index on ties).

    Returns
    -------
    folds : tuple of (train_idx, val_idx)
    fold_assignments : ndarray of int, shape (N,)

    Raises
    ------
    IllPosedError
        If there are fewer occupied blocks than folds.
    """
    block_ids = np.asarray(block_ids)
    unique_blocks, counts = np.unique(block_ids, return_counts=True)
    if len(unique_blocks) < n_folds:
        raise IllPosedError(
            f"Only {len(unique_blocks)} occupied blocks for {n_folds} folds; "
            f"reduce the block size or the number of folds"
        )

    rng = np.random.default_rng(seed)
    order = rng.permutation(len(unique_blocks))

    fold_weight = np.zeros(n_folds, dtype=int)
    block_to_fold = {}
    for b in order:
        target = int(np.argmin(fold_weight))
        block_to_fold[unique_blocks[b]] = target
        fold_weight[target] += counts[b]

    fold_assignments = np.array([block_to_fold[b] for b in block_ids], dtype=int)
    assert (fold_assignments >= 0).all(), "Some samples not assigned to any fold"
    return _folds_from_assignments(fold_assignments, n_folds), fold_assignments


def build_spatial_folds(x, y, autocorr_range, multiplier=1.0, n_folds=10, seed=42,
                        block_size=None):
    """
    Blocks of edge `autocorr_range * multiplier` (or an explicit
    `block_size`) assigned to `n_folds` folds.

    Returns
    -------
    SpatialFolds
    """
    if block_size is None:
        block_size = float(autocorr_range) * float(multiplier)
    block_ids, _, _ = assign_spatial_blocks(x, y, block_size)
    folds, assignments = build_block_folds(block_ids, n_folds, seed)
    return SpatialFolds(
        assignments=assignments,
        folds=folds,
        block_ids=block_ids,
        block_size=float(block_size),
        n_folds=n_folds,
        seed=seed,
    )


# =====================================================================
# Diagnostics
# =====================================================================

def fold_summary(spatial_folds):
    """
    Per-fold sample count, block count and balance deviation.

    Returns
    -------
    pd.DataFrame with columns:
        fold, n_samples, n_blocks, weight_deviation_pct
    """
    assignments = spatial_folds.assignments
    target = len(assignments) / spatial_folds.n_folds
    rows = []
    for fold_idx in range(spatial_folds.n_folds):
        mask = assignments == fold_idx
        n = int(mask.sum())
        rows.append({
            "fold": fold_idx,
            "n_samples": n,
            "n_blocks": int(len(np.unique(spatial_folds.block_ids[mask]))),
            "weight_deviation_pct": round(abs(n - target) / target * 100, 1),
        })
    return pd.DataFrame(rows)


def save_split_metadata(path, spatial_folds, *, autocorr_range, multiplier,
                        n_samples):
    """Save split configuration as JSON for reproducibility."""
    meta = {
        "strategy": "seeded_balanced_blocks",
        "autocorr_range": autocorr_range,
        "block_multiplier": multiplier,
        "block_size": spatial_folds.block_size,
        "n_folds": spatial_folds.n_folds,
        "seed": spatial_folds.seed,
        "n_samples": n_samples,
        "n_blocks": int(len(np.unique(spatial_folds.block_ids))),
        "fold_sizes": np.bincount(spatial_folds.assignments,
                                  minlength=spatial_folds.n_folds).tolist(),
        "created_utc": datetime.now(timezone.utc).isoformat(),
    }
    with open(path, "w") as f:
        json.dump(meta, f, indent=2)
    print(f"  Saved: {path}")
