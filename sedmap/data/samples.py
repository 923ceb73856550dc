"""
Sediment sample records: validation, synthetic categorical samples,
log-ratio columns and sample I/O.

Two provenances are supported:
  - "measured":    lab grain-size analyses with gravel/sand/mud percent.
  - "categorical": stations carrying only a coarse Folk class label; their
                   fractions are drawn from constrained uniform
                   distributions inside the class' region of the Folk
                   (1954) gravel-sand-mud triangle.

Usage:
    from sedmap.data.samples import (
        load_samples, synthesize_categorical_samples, add_log_ratio_columns,
    )
"""

import logging
import os
from dataclasses import asdict, dataclass

import geopandas as gpd
import numpy as np
import pandas as pd

from sedmap.errors import InputValidationError
from sedmap.transforms import alr_forward, alr_forward_mud

logger = logging.getLogger(__name__)

FRACTION_COLUMNS = ["gravel", "sand", "mud"]

# Folk (1954) classes: (gravel % low, gravel % high,
#                       sand/(sand+mud) low, sand/(sand+mud) high)
FOLK_CLASS_RANGES = {
    "M":    (0.0, 0.05, 0.0, 0.1),
    "sM":   (0.0, 0.05, 0.1, 0.5),
    "mS":   (0.0, 0.05, 0.5, 0.9),
    "S":    (0.0, 0.05, 0.9, 1.0),
    "(g)M": (0.05, 5.0, 0.0, 0.1),
    "(g)sM": (0.05, 5.0, 0.1, 0.5),
    "(g)mS": (0.05, 5.0, 0.5, 0.9),
    "(g)S": (0.05, 5.0, 0.9, 1.0),
    "gM":   (5.0, 30.0, 0.0, 0.5),
    "gmS":  (5.0, 30.0, 0.5, 0.9),
    "gS":   (5.0, 30.0, 0.9, 1.0),
    "mG":   (30.0, 80.0, 0.0, 0.5),
    "msG":  (30.0, 80.0, 0.5, 0.9),
    "sG":   (30.0, 80.0, 0.9, 1.0),
    "G":    (80.0, 100.0, 0.0, 1.0),
}


@dataclass(frozen=True)
class Sample:
    """A point observation of seafloor sediment composition (percent)."""

    station: str
    source: str
    x: float
    y: float
    crs: str
    gravel: float
    sand: float
    mud: float


# =====================================================================
# Validation
# =====================================================================

def validate_fractions(frame, sum_tolerance=1.0):
    """
    Check gravel/sand/mud columns: non-negative, summing to 100.

    Raises
    ------
    InputValidationError
        Listing offending stations when any row fails.
    """
    missing = [c for c in FRACTION_COLUMNS if c not in frame.columns]
    if missing:
        raise InputValidationError(f"Sample table lacks columns {missing}")

    values = frame[FRACTION_COLUMNS].to_numpy(dtype=np.float64)
    if not np.isfinite(values).all():
        bad = frame.index[~np.isfinite(values).all(axis=1)]
        raise InputValidationError(f"Non-finite fractions at rows {list(bad[:10])}")

    negative = (values < 0).any(axis=1)
    if negative.any():
        raise InputValidationError(
            f"Negative fractions at rows {list(frame.index[negative][:10])}"
        )

    off = np.abs(values.sum(axis=1) - 100.0) > sum_tolerance
    if off.any():
        raise InputValidationError(
            f"{int(off.sum())} sample(s) do not sum to 100 +/- {sum_tolerance}: "
            f"rows {list(frame.index[off][:10])}"
        )


def samples_to_frame(samples):
    """Convert a sequence of Sample records to a DataFrame."""
    return pd.DataFrame([asdict(s) for s in samples])


def frame_to_geodataframe(frame, crs=None):
    """Point GeoDataFrame from a DataFrame with x/y columns."""
    if crs is None:
        crs = frame["crs"].iloc[0]
    return gpd.GeoDataFrame(
        frame.copy(),
        geometry=gpd.points_from_xy(frame["x"], frame["y"]),
        crs=crs,
    )


def reproject_samples(gdf, crs):
    """
    Return a copy of `gdf` in `crs` with refreshed x/y columns.

    The input frame is left untouched.
    """
    out = gdf.to_crs(crs)
    out["x"] = out.geometry.x
    out["y"] = out.geometry.y
    out["crs"] = str(crs)
    return out


# =====================================================================
# Synthetic categorical samples
# =====================================================================

def draw_class_fractions(folk_class, rng, min_sand_ratio=0.01, min_part_pct=0.01):
    """
    Draw one (gravel, sand, mud) triple in percent for a Folk class.

    Gravel is uniform inside the class' gravel band, the sand share of
    the remaining sand+mud is uniform inside the class' ratio band.
    Both bands are clipped so that every part stays strictly positive.
    """
    if folk_class not in FOLK_CLASS_RANGES:
        raise InputValidationError(f"Unknown sediment class: {folk_class!r}")
    g_lo, g_hi, r_lo, r_hi = FOLK_CLASS_RANGES[folk_class]

    g_lo = max(g_lo, min_part_pct)
    g_hi = min(g_hi, 100.0 - 2 * min_part_pct)
    r_lo = max(r_lo, min_sand_ratio)
    r_hi = min(r_hi, 1.0 - min_sand_ratio)

    gravel = rng.uniform(g_lo, g_hi)
    ratio = rng.uniform(r_lo, r_hi)
    sand = (100.0 - gravel) * ratio
    mud = 100.0 - gravel - sand
    return gravel, sand, mud


def synthesize_categorical_samples(frame, rng, class_column="folk_class",
                                   min_sand_ratio=0.01, min_part_pct=0.01):
    """
    Assign fractions to class-labelled stations.

    Parameters
    ----------
    frame : DataFrame
        Must carry `class_column`; other columns are kept.
    rng : numpy.random.Generator
        Explicit seeded random source.

    Returns
    -------
    DataFrame
        Copy of `frame` with gravel/sand/mud columns and source="categorical".
    """
    out = frame.copy()
    draws = [
        draw_class_fractions(c, rng, min_sand_ratio, min_part_pct)
        for c in out[class_column]
    ]
    draws = np.array(draws, dtype=np.float64).reshape(-1, 3)
    out["gravel"] = draws[:, 0]
    out["sand"] = draws[:, 1]
    out["mud"] = draws[:, 2]
    out["source"] = "categorical"
    return out


# =====================================================================
# Log-ratio columns
# =====================================================================

def replace_zero_parts(frame, replacement=0.01):
    """
    Multiplicative replacement of zero gravel or mud percentages.

    Zeros become `replacement` and the non-zero parts of that row are
    scaled down so the row still sums to 100. Sand is never replaced:
    a zero reference fraction stays an error for the log-ratio.
    """
    out = frame.copy()
    values = out[FRACTION_COLUMNS].to_numpy(dtype=np.float64)
    zero = values == 0
    zero[:, 1] = False
    n_zero = zero.sum(axis=1)
    rows = n_zero > 0
    if rows.any():
        total_replaced = n_zero[rows] * replacement
        scale = 1.0 - total_replaced / 100.0
        fixed = values[rows] * scale[:, None]
        fixed[zero[rows]] = replacement
        values[rows] = fixed
        logger.info("Replaced zero gravel/mud parts in %d sample(s)", int(rows.sum()))
    out[FRACTION_COLUMNS] = values
    return out


def check_log_ratio_denominators(frame):
    """
    Require sand > 0 (both channels) and sand + gravel > 0 (mud-only).

    Raises InputValidationError naming the offending stations, so a run
    stops before any channel is fitted.
    """
    sand = frame["sand"].to_numpy(dtype=np.float64)
    coarse = sand + frame["gravel"].to_numpy(dtype=np.float64)
    bad = (sand <= 0) | (coarse <= 0)
    if bad.any():
        if "station" in frame.columns:
            names = frame.loc[bad, "station"].astype(str).tolist()
        else:
            names = [str(i) for i in frame.index[bad]]
        raise InputValidationError(
            f"{len(names)} sample(s) with zero sand, log-ratio undefined: {names[:10]}"
        )


def add_log_ratio_columns(frame, mud_only=False):
    """
    Return a copy with ALR response columns.

    mud_only=False: alrM = ln(mud/sand), alrG = ln(gravel/sand)
    mud_only=True:  alrM = ln(mud/(sand+gravel))
    """
    out = frame.copy()
    values = out[FRACTION_COLUMNS].to_numpy(dtype=np.float64)
    if mud_only:
        out["alrM"] = alr_forward_mud(values)
    else:
        z = alr_forward(values)
        out["alrM"] = z[:, 0]
        out["alrG"] = z[:, 1]
    return out


# =====================================================================
# I/O
# =====================================================================

def load_samples(path, crs, source="measured", x_col="x", y_col="y",
                 src_crs=None):
    """
    Read a sample file into a GeoDataFrame in `crs`.

    CSV files need x/y columns in `src_crs` (defaults to `crs`); any
    other extension is read with geopandas.
    """
    ext = os.path.splitext(path)[1].lower()
    if ext == ".csv":
        df = pd.read_csv(path)
        gdf = gpd.GeoDataFrame(
            df,
            geometry=gpd.points_from_xy(df[x_col], df[y_col]),
            crs=src_crs or crs,
        )
    else:
        gdf = gpd.read_file(path)

    if "source" not in gdf.columns:
        gdf["source"] = source
    if "station" not in gdf.columns:
        gdf["station"] = [f"{source}_{i}" for i in range(len(gdf))]

    gdf = reproject_samples(gdf, crs)
    logger.info("Loaded %d %s samples from %s", len(gdf), source, path)
    return gdf


def write_samples(gdf, path):
    """Write samples (with derived log-ratio columns) to CSV or a vector file."""
    ext = os.path.splitext(path)[1].lower()
    if ext == ".csv":
        pd.DataFrame(gdf.drop(columns="geometry", errors="ignore")).to_csv(path, index=False)
    else:
        gdf.to_file(path)
    print(f"  Saved: {path}")
