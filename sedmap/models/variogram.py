"""
Spatial autocorrelation range from an empirical semivariogram.

Computes a Matheron semivariogram of the response values, fits
spherical, exponential and gaussian models (all with nugget) by
pair-count weighted least squares and keeps the family with the
smallest weighted SSE. The fitted (practical) range sizes the spatial
cross-validation blocks.
"""

import logging
from dataclasses import dataclass

import numpy as np
from scipy.optimize import curve_fit
from scipy.spatial.distance import pdist

from sedmap.errors import IllPosedError

logger = logging.getLogger(__name__)


# =====================================================================
# Model families, params = (nugget, partial sill, a)
# =====================================================================

def spherical_model(h, nugget, psill, a):
    """γ(h) = n + c (1.5 h/a - 0.5 (h/a)^3) for h <= a, n + c beyond."""
    h = np.asarray(h, dtype=np.float64)
    ratio = np.minimum(h / a, 1.0)
    return nugget + psill * (1.5 * ratio - 0.5 * ratio ** 3)


def exponential_model(h, nugget, psill, a):
    """γ(h) = n + c (1 - exp(-h/a)); practical range 3a."""
    h = np.asarray(h, dtype=np.float64)
    return nugget + psill * (1.0 - np.exp(-h / a))


def gaussian_model(h, nugget, psill, a):
    """γ(h) = n + c (1 - exp(-(h/a)^2)); practical range sqrt(3) a."""
    h = np.asarray(h, dtype=np.float64)
    return nugget + psill * (1.0 - np.exp(-(h / a) ** 2))


VARIOGRAM_MODELS = {
    "spherical": (spherical_model, 1.0),
    "exponential": (exponential_model, 3.0),
    "gaussian": (gaussian_model, np.sqrt(3.0)),
}


@dataclass
class VariogramFit:
    model: str
    nugget: float
    psill: float
    range: float            # practical range, same units as coordinates
    sse: float
    lags: np.ndarray
    gamma: np.ndarray
    counts: np.ndarray

    @property
    def sill(self):
        return self.nugget + self.psill

    def predict(self, h):
        func, factor = VARIOGRAM_MODELS[self.model]
        return func(h, self.nugget, self.psill, self.range / factor)


# =====================================================================
# Empirical variogram
# =====================================================================

def empirical_variogram(coords, values, n_lags=15, max_lag=None, min_pairs=10):
    """
    Matheron estimator γ(h) = 1/(2|N(h)|) Σ (z_i - z_j)².

    Parameters
    ----------
    coords : ndarray, shape (N, 2)
    values : ndarray, shape (N,)
    n_lags : int
        Number of equal-width distance bins.
    max_lag : float, optional
        Largest lag; default half the largest pairwise distance.
    min_pairs : int
        Bins with fewer pairs are dropped.

    Returns
    -------
    lags, gamma, counts : ndarrays over retained bins
        Mean pair distance, semivariance and pair count per bin.
    """
    coords = np.asarray(coords, dtype=np.float64)
    values = np.asarray(values, dtype=np.float64)
    dist = pdist(coords)
    semi = 0.5 * pdist(values.reshape(-1, 1), metric="sqeuclidean")

    if max_lag is None:
        max_lag = dist.max() / 2.0
    edges = np.linspace(0.0, max_lag, n_lags + 1)
    bin_idx = np.digitize(dist, edges) - 1
    in_range = (bin_idx >= 0) & (bin_idx < n_lags) & (dist > 0)

    counts = np.bincount(bin_idx[in_range], minlength=n_lags)
    gamma_sum = np.bincount(bin_idx[in_range], weights=semi[in_range], minlength=n_lags)
    lag_sum = np.bincount(bin_idx[in_range], weights=dist[in_range], minlength=n_lags)

    keep = counts >= min_pairs
    with np.errstate(invalid="ignore", divide="ignore"):
        gamma = gamma_sum[keep] / counts[keep]
        lags = lag_sum[keep] / counts[keep]
    return lags, gamma, counts[keep]


# =====================================================================
# Model fitting
# =====================================================================

def _fit_one(name, lags, gamma, counts, max_dist):
    func, factor = VARIOGRAM_MODELS[name]
    g_max = float(gamma.max())
    p0 = [0.1 * g_max, 0.9 * g_max, lags.max() / (2.0 * factor)]
    bounds = ([0.0, 0.0, 1e-9 * max_dist], [2.0 * g_max, 2.0 * g_max, 3.0 * max_dist])
    popt, _ = curve_fit(
        func, lags, gamma, p0=p0, bounds=bounds,
        sigma=1.0 / np.sqrt(counts), maxfev=10000,
    )
    resid = gamma - func(lags, *popt)
    sse = float(np.sum(counts * resid ** 2))
    nugget, psill, a = (float(p) for p in popt)
    return VariogramFit(name, nugget, psill, a * factor, sse, lags, gamma, counts)


def fit_variogram(lags, gamma, counts, models=("spherical", "exponential", "gaussian"),
                  max_dist=None):
    """
    Fit every model family and keep the smallest weighted SSE.

    Raises
    ------
    IllPosedError
        When no family converges, or the best fit has no spatial
        structure (zero partial sill) or a range that is not positive,
        not finite, or beyond `max_dist`.
    """
    if len(lags) < 3:
        raise IllPosedError(
            f"Only {len(lags)} usable lag bins; need at least 3 to fit a variogram"
        )
    if max_dist is None:
        max_dist = 2.0 * float(lags.max())

    fits = []
    for name in models:
        if name not in VARIOGRAM_MODELS:
            raise ValueError(f"Unknown variogram model: {name}")
        try:
            fits.append(_fit_one(name, lags, gamma, counts, max_dist))
        except (RuntimeError, ValueError) as exc:
            logger.warning("Variogram model %s failed to fit: %s", name, exc)

    if not fits:
        raise IllPosedError("No variogram model family converged")

    best = min(fits, key=lambda f: f.sse)
    if not best.psill > 0:
        raise IllPosedError(
            f"Best variogram ({best.model}) is pure nugget: no spatial structure"
        )
    if not np.isfinite(best.range) or best.range <= 0:
        raise IllPosedError(f"Degenerate variogram range {best.range}")
    if best.range > max_dist:
        raise IllPosedError(
            f"Variogram range {best.range:.1f} exceeds the sampled extent "
            f"{max_dist:.1f}; the response looks like a trend, not a stationary field"
        )
    logger.info("Variogram: %s, nugget=%.4g, sill=%.4g, range=%.1f",
                best.model, best.nugget, best.sill, best.range)
    return best


def estimate_autocorrelation_range(coords, values, n_lags=15, min_pairs=10,
                                   models=("spherical", "exponential", "gaussian"),
                                   min_samples=10):
    """
    Empirical variogram + model fit in one call.

    Returns
    -------
    VariogramFit
        `.range` is the distance beyond which samples are treated as
        spatially independent.
    """
    coords = np.asarray(coords, dtype=np.float64)
    values = np.asarray(values, dtype=np.float64)
    ok = np.isfinite(values) & np.isfinite(coords).all(axis=1)
    coords, values = coords[ok], values[ok]

    if len(values) < min_samples:
        raise IllPosedError(
            f"{len(values)} samples are too few for a variogram (min {min_samples})"
        )
    if np.var(values) == 0:
        raise IllPosedError("Response is constant; variogram undefined")

    max_dist = float(pdist(coords).max())
    if max_dist == 0:
        raise IllPosedError("All samples share one position")

    lags, gamma, counts = empirical_variogram(coords, values, n_lags=n_lags,
                                              min_pairs=min_pairs)
    return fit_variogram(lags, gamma, counts, models=models, max_dist=max_dist)
