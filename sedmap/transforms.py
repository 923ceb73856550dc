"""
Compositional data transforms for sediment grain-size fractions.

Implements the ALR (Additive Log-Ratio) transform with sand as the
reference part, mapping (gravel, sand, mud) fractions on the simplex
to/from unconstrained Euclidean space, plus the mud-only variant
used when only the mud fraction is modelled.

Usage:
    from sedmap.transforms import alr_forward, alr_inverse

    z = alr_forward(gsm)          # (N, 3) -> (N, 2) [alrM, alrG]
    gsm_hat = alr_inverse(z)      # (N, 2) -> (N, 3) proportions

Column order everywhere is (gravel, sand, mud).

References:
    Aitchison (1986). The Statistical Analysis of Compositional Data.
"""

import numpy as np

from sedmap.errors import InputValidationError

PARTS = ("gravel", "sand", "mud")
GRAVEL, SAND, MUD = 0, 1, 2
ALR_COLUMNS = ("alrM", "alrG")


# =====================================================================
# Helpers
# =====================================================================

def closure(x):
    """
    Project rows onto the simplex by dividing by row sums.

    Parameters
    ----------
    x : ndarray, shape (N, D)
        Non-negative values (percentages, or exp of log-ratios).

    Returns
    -------
    y : ndarray, shape (N, D)
        Rows summing to 1.
    """
    x = np.asarray(x, dtype=np.float64)
    return x / x.sum(axis=1, keepdims=True)


def _as_rows(y, D):
    y = np.asarray(y, dtype=np.float64)
    if y.ndim == 1:
        y = y.reshape(1, -1)
    if y.shape[1] != D:
        raise InputValidationError(
            f"Expected {D} columns {PARTS[:D] if D == 3 else ''}, got shape {y.shape}"
        )
    return y


def _require_positive(values, what):
    """Raise if any entry is zero, negative or non-finite."""
    bad = ~(np.isfinite(values) & (values > 0))
    if bad.any():
        rows = np.where(bad)[0]
        raise InputValidationError(
            f"{what} must be strictly positive for the log-ratio; "
            f"{len(rows)} offending row(s), first: {rows[:10].tolist()}"
        )


# =====================================================================
# ALR transform (gravel, sand, mud), sand as reference
# =====================================================================

def alr_forward(y):
    """
    ALR forward transform with sand as the denominator.

    alrM = ln(mud / sand), alrG = ln(gravel / sand).

    Parameters
    ----------
    y : ndarray, shape (N, 3) or (3,)
        Fractions in column order (gravel, sand, mud); percent or
        proportion, the ratios are scale-free.

    Returns
    -------
    z : ndarray, shape (N, 2)
        Columns [alrM, alrG].

    Raises
    ------
    InputValidationError
        If sand, mud or gravel is zero or negative in any row.
    """
    y = _as_rows(y, 3)
    _require_positive(y[:, SAND], "Sand (reference) fraction")
    _require_positive(y[:, MUD], "Mud fraction")
    _require_positive(y[:, GRAVEL], "Gravel fraction")

    alr_m = np.log(y[:, MUD] / y[:, SAND])
    alr_g = np.log(y[:, GRAVEL] / y[:, SAND])
    return np.column_stack([alr_m, alr_g])


def alr_inverse(z):
    """
    ALR inverse transform.

    mud = e^alrM / (e^alrM + e^alrG + 1), gravel = e^alrG / (...),
    sand = 1 - mud - gravel.

    Parameters
    ----------
    z : ndarray, shape (N, 2)
        Columns [alrM, alrG]. NaN rows stay NaN.

    Returns
    -------
    y : ndarray, shape (N, 3)
        Proportions (gravel, sand, mud) summing to 1.
    """
    z = np.asarray(z, dtype=np.float64)
    if z.ndim == 1:
        z = z.reshape(1, -1)
    assert z.shape[1] == 2, f"Expected (N, 2) [alrM, alrG], got {z.shape}"

    exp_m = np.exp(z[:, 0])
    exp_g = np.exp(z[:, 1])
    denom = exp_m + exp_g + 1.0

    mud = exp_m / denom
    gravel = exp_g / denom
    sand = 1.0 - mud - gravel
    return np.column_stack([gravel, sand, mud])


def alr_inverse_grid(alr_m, alr_g):
    """
    Pixelwise ALR inverse over two co-registered 2D grids.

    Returns
    -------
    dict : part name -> 2D ndarray of proportions (NaN where any input is NaN)
    """
    alr_m = np.asarray(alr_m, dtype=np.float64)
    alr_g = np.asarray(alr_g, dtype=np.float64)
    assert alr_m.shape == alr_g.shape, \
        f"Grid shapes differ: {alr_m.shape} vs {alr_g.shape}"

    flat = alr_inverse(np.column_stack([alr_m.ravel(), alr_g.ravel()]))
    return {
        name: flat[:, i].reshape(alr_m.shape)
        for i, name in enumerate(PARTS)
    }


# =====================================================================
# Mud-only transform
# =====================================================================

def alr_forward_mud(y):
    """
    Mud-only log-ratio: alrM = ln(mud / (sand + gravel)).

    Parameters
    ----------
    y : ndarray, shape (N, 3)
        Fractions (gravel, sand, mud).

    Returns
    -------
    z : ndarray, shape (N,)
    """
    y = _as_rows(y, 3)
    coarse = y[:, SAND] + y[:, GRAVEL]
    _require_positive(coarse, "Sand + gravel (reference) fraction")
    _require_positive(y[:, MUD], "Mud fraction")
    return np.log(y[:, MUD] / coarse)


def alr_inverse_mud(z):
    """Mud proportion from the mud-only log-ratio (logistic)."""
    z = np.asarray(z, dtype=np.float64)
    exp_m = np.exp(z)
    return exp_m / (exp_m + 1.0)
