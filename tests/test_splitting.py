"""
Unit tests for sedmap/splitting.py invariants.

Tests verify structural correctness of the spatial block fold
assignment, not model performance.
Run with: python -m pytest tests/test_splitting.py -v
"""

import sys
import os
import json
import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from sedmap.errors import IllPosedError
from sedmap.splitting import (
    assign_spatial_blocks,
    build_block_folds,
    build_spatial_folds,
    fold_summary,
    save_split_metadata,
)


# -- Fixtures ---------------------------------------------------------------

N = 400
EXTENT = 10_000.0
BLOCK = 1_000.0
N_FOLDS = 5
SEED = 42


@pytest.fixture
def points():
    rng = np.random.default_rng(SEED)
    return rng.uniform(0, EXTENT, N), rng.uniform(0, EXTENT, N)


# -- Helpers -----------------------------------------------------------------

def _check_fold_invariants(folds, n):
    """Assert basic fold invariants: partition, no overlap, coverage."""
    all_val = []
    for i, (train_idx, val_idx) in enumerate(folds):
        assert len(np.intersect1d(train_idx, val_idx)) == 0, \
            f"fold {i}: train/validation overlap"
        assert len(train_idx) + len(val_idx) == n, \
            f"fold {i}: train+validation != n ({len(train_idx)}+{len(val_idx)} != {n})"
        assert len(train_idx) > 0, f"fold {i}: empty train"
        assert len(val_idx) > 0, f"fold {i}: empty validation"
        all_val.append(val_idx)
    all_val = np.concatenate(all_val)
    assert len(all_val) == n, "validation sets do not cover every sample once"
    assert len(np.unique(all_val)) == n, "a sample is validated twice"


# -- Block assignment -------------------------------------------------------

class TestBlocks:
    def test_ids(self):
        x = np.array([0.0, 999.0, 1000.0, 0.0, 2500.0])
        y = np.array([0.0, 0.0, 0.0, 1500.0, 1500.0])
        ids, n_cols, n_rows = assign_spatial_blocks(x, y, 1000.0)
        assert (n_cols, n_rows) == (3, 2)
        np.testing.assert_array_equal(ids, [0, 0, 1, 3, 5])

    @pytest.mark.parametrize("size", [0.0, -5.0, np.inf, np.nan])
    def test_bad_block_size(self, points, size):
        x, y = points
        with pytest.raises(IllPosedError):
            assign_spatial_blocks(x, y, size)


# -- Fold builders ----------------------------------------------------------

class TestSpatialFolds:
    def test_invariants(self, points):
        x, y = points
        sf = build_spatial_folds(x, y, autocorr_range=BLOCK, n_folds=N_FOLDS, seed=SEED)
        _check_fold_invariants(sf.folds, N)
        assert sf.block_size == BLOCK
        assert len(sf.assignments) == N

    def test_block_integrity(self, points):
        x, y = points
        sf = build_spatial_folds(x, y, autocorr_range=BLOCK, n_folds=N_FOLDS, seed=SEED)
        for block in np.unique(sf.block_ids):
            assert len(np.unique(sf.assignments[sf.block_ids == block])) == 1

    def test_multiplier(self, points):
        x, y = points
        sf = build_spatial_folds(x, y, autocorr_range=BLOCK, multiplier=2.0,
                                 n_folds=N_FOLDS, seed=SEED)
        assert sf.block_size == 2 * BLOCK

    def test_explicit_block_size(self, points):
        x, y = points
        sf = build_spatial_folds(x, y, autocorr_range=None, n_folds=N_FOLDS,
                                 seed=SEED, block_size=2500.0)
        assert sf.block_size == 2500.0

    def test_deterministic(self, points):
        x, y = points
        a = build_spatial_folds(x, y, BLOCK, n_folds=N_FOLDS, seed=SEED)
        b = build_spatial_folds(x, y, BLOCK, n_folds=N_FOLDS, seed=SEED)
        np.testing.assert_array_equal(a.assignments, b.assignments)

    def test_seed_changes_assignment(self, points):
        x, y = points
        a = build_spatial_folds(x, y, BLOCK, n_folds=N_FOLDS, seed=1)
        b = build_spatial_folds(x, y, BLOCK, n_folds=N_FOLDS, seed=2)
        assert not np.array_equal(a.assignments, b.assignments)

    def test_balance(self, points):
        x, y = points
        sf = build_spatial_folds(x, y, BLOCK, n_folds=N_FOLDS, seed=SEED)
        sizes = np.bincount(sf.assignments, minlength=N_FOLDS)
        # greedy placement keeps folds within one block of each other
        max_block = np.bincount(sf.block_ids).max()
        assert sizes.max() - sizes.min() <= max_block

    def test_fewer_blocks_than_folds(self):
        with pytest.raises(IllPosedError, match="blocks"):
            build_block_folds(np.array([0, 0, 1, 1, 2]), n_folds=4, seed=SEED)

    def test_one_sample_per_fold(self):
        folds, assignments = build_block_folds(np.array([7, 3, 5]), n_folds=3, seed=SEED)
        _check_fold_invariants(folds, 3)
        assert sorted(assignments.tolist()) == [0, 1, 2]


# -- Diagnostics ------------------------------------------------------------

class TestDiagnostics:
    def test_fold_summary(self, points):
        x, y = points
        sf = build_spatial_folds(x, y, BLOCK, n_folds=N_FOLDS, seed=SEED)
        summary = fold_summary(sf)
        assert list(summary.columns) == ["fold", "n_samples", "n_blocks",
                                         "weight_deviation_pct"]
        assert summary["n_samples"].sum() == N
        assert summary["n_blocks"].sum() == len(np.unique(sf.block_ids))

    def test_save_metadata(self, points, tmp_path):
        x, y = points
        sf = build_spatial_folds(x, y, BLOCK, n_folds=N_FOLDS, seed=SEED)
        path = tmp_path / "split.json"
        save_split_metadata(str(path), sf, autocorr_range=BLOCK, multiplier=1.0,
                            n_samples=N)
        meta = json.loads(path.read_text())
        assert meta["n_folds"] == N_FOLDS
        assert sum(meta["fold_sizes"]) == N
        assert meta["seed"] == SEED
