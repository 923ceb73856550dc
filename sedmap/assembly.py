"""
Back-transform gridded log-ratio predictions to fraction grids.

Cells outside the valid mask (AOI, missing predictors, optionally the
AOA) are NaN in every output grid, never zero.
"""

import numpy as np

from sedmap.transforms import alr_inverse_grid, alr_inverse_mud


def predictions_to_grid(values, shape, valid):
    """
    Scatter per-cell predictions into a NaN-filled grid.

    Parameters
    ----------
    values : ndarray, shape (valid.sum(),)
        Predictions for the valid cells, row-major order.
    shape : (H, W)
    valid : ndarray of bool, shape (H, W)
    """
    valid = np.asarray(valid, dtype=bool)
    assert valid.shape == tuple(shape), f"Mask shape {valid.shape} != {shape}"
    grid = np.full(shape, np.nan)
    grid[valid] = values
    return grid


def assemble_fractions(alr_m, alr_g, valid_mask=None):
    """
    Gravel/sand/mud proportion grids from alrM and alrG grids.

    Returns
    -------
    dict : "gravel" | "sand" | "mud" -> 2D ndarray in [0, 1], NaN outside mask
    """
    fractions = alr_inverse_grid(alr_m, alr_g)
    if valid_mask is not None:
        valid_mask = np.asarray(valid_mask, dtype=bool)
        for name in fractions:
            fractions[name] = np.where(valid_mask, fractions[name], np.nan)
    return fractions


def assemble_mud(alr_m, valid_mask=None):
    """Mud proportion grid for the mud-only channel."""
    mud = alr_inverse_mud(alr_m)
    if valid_mask is not None:
        mud = np.where(np.asarray(valid_mask, dtype=bool), mud, np.nan)
    return {"mud": mud}
