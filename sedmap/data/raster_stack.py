"""
Predictor raster stack: named, co-registered 2D grids.

All layers share one CRS, affine transform and shape. The stack is
read-only once built; masking or subsetting returns a new stack.

Usage:
    from sedmap.data.raster_stack import PredictorStack, write_raster

    stack = PredictorStack.from_rasters({"depth": "depth.tif", ...})
    values = stack.sample(xs, ys)        # DataFrame, one column per layer
    cells = stack.to_frame()             # DataFrame, one row per cell
"""

import logging
import os

import numpy as np
import pandas as pd
import rasterio
from rasterio.features import geometry_mask
from rasterio.transform import rowcol

from sedmap.errors import InputValidationError

logger = logging.getLogger(__name__)


class PredictorStack:
    """
    Mapping predictor name -> 2D float grid, all on the same pixel grid.

    Parameters
    ----------
    layers : dict of str -> ndarray (H, W)
    transform : affine.Affine
    crs : rasterio CRS or str
    """

    def __init__(self, layers, transform, crs):
        if not layers:
            raise InputValidationError("Predictor stack needs at least one layer")
        shapes = {name: np.shape(arr) for name, arr in layers.items()}
        ref_shape = next(iter(shapes.values()))
        mismatched = {n: s for n, s in shapes.items() if s != ref_shape}
        if mismatched or len(ref_shape) != 2:
            raise InputValidationError(
                f"Layers are not co-registered: reference shape {ref_shape}, "
                f"mismatched {mismatched}"
            )
        self.layers = {
            name: np.array(arr, dtype=np.float64) for name, arr in layers.items()
        }
        for arr in self.layers.values():
            arr.setflags(write=False)
        self.transform = transform
        self.crs = crs

    # -----------------------------------------------------------------
    # Construction
    # -----------------------------------------------------------------

    @classmethod
    def from_rasters(cls, paths):
        """
        Read single-band rasters (name -> path), nodata mapped to NaN.

        Raises InputValidationError when CRS, transform or shape differ.
        """
        layers = {}
        ref = None
        for name, path in paths.items():
            with rasterio.open(path) as src:
                meta = (src.crs, src.transform, src.width, src.height)
                if ref is None:
                    ref = meta
                elif meta != ref:
                    raise InputValidationError(
                        f"Raster '{name}' ({path}) is not co-registered with the "
                        f"first layer: {meta} vs {ref}"
                    )
                arr = src.read(1, masked=True).astype(np.float64)
                layers[name] = arr.filled(np.nan)
        logger.info("Loaded %d predictor layers of shape %s", len(layers),
                    (ref[3], ref[2]))
        return cls(layers, ref[1], ref[0])

    @classmethod
    def from_directory(cls, directory, pattern=".tif"):
        """All rasters in `directory`, named by file stem."""
        paths = {
            os.path.splitext(f)[0]: os.path.join(directory, f)
            for f in sorted(os.listdir(directory))
            if f.lower().endswith(pattern)
        }
        return cls.from_rasters(paths)

    # -----------------------------------------------------------------
    # Accessors
    # -----------------------------------------------------------------

    @property
    def names(self):
        return list(self.layers.keys())

    @property
    def shape(self):
        return next(iter(self.layers.values())).shape

    def subset(self, names):
        """New stack restricted to `names` (in that order)."""
        unknown = [n for n in names if n not in self.layers]
        if unknown:
            raise InputValidationError(f"Unknown predictors: {unknown}")
        return PredictorStack({n: self.layers[n] for n in names},
                              self.transform, self.crs)

    def mask(self, keep):
        """New stack with cells where `keep` is False set to NaN."""
        keep = np.asarray(keep, dtype=bool)
        assert keep.shape == self.shape, \
            f"Mask shape {keep.shape} != stack shape {self.shape}"
        return PredictorStack(
            {n: np.where(keep, arr, np.nan) for n, arr in self.layers.items()},
            self.transform, self.crs,
        )

    def sample(self, xs, ys):
        """
        Predictor values at map positions (nearest cell).

        Points falling outside the grid get NaN in every column.

        Returns
        -------
        DataFrame, shape (N, n_layers)
        """
        xs = np.asarray(xs, dtype=np.float64)
        ys = np.asarray(ys, dtype=np.float64)
        rows, cols = rowcol(self.transform, xs, ys)
        rows = np.asarray(rows, dtype=int)
        cols = np.asarray(cols, dtype=int)
        h, w = self.shape
        inside = (rows >= 0) & (rows < h) & (cols >= 0) & (cols < w)
        r = np.clip(rows, 0, h - 1)
        c = np.clip(cols, 0, w - 1)

        data = {}
        for name, arr in self.layers.items():
            vals = arr[r, c].copy()
            vals[~inside] = np.nan
            data[name] = vals
        return pd.DataFrame(data)

    def to_frame(self):
        """Row-major per-cell DataFrame, one column per layer."""
        return pd.DataFrame({n: arr.ravel() for n, arr in self.layers.items()})

    def valid_mask(self, names=None):
        """True where every (selected) layer has a finite value."""
        names = names or self.names
        valid = np.ones(self.shape, dtype=bool)
        for n in names:
            valid &= np.isfinite(self.layers[n])
        return valid


# =====================================================================
# Raster helpers
# =====================================================================

def rasterize_aoi(geometries, stack):
    """Boolean grid, True for cells whose centre lies inside the AOI geometries."""
    return geometry_mask(
        geometries,
        out_shape=stack.shape,
        transform=stack.transform,
        invert=True,
    )


def write_raster(path, array, transform, crs, nodata=np.nan, dtype="float32"):
    """Write a single-band GeoTIFF; NaN cells are stored as `nodata`."""
    data = np.asarray(array).astype(dtype)
    profile = {
        "driver": "GTiff",
        "height": data.shape[0],
        "width": data.shape[1],
        "count": 1,
        "dtype": dtype,
        "crs": crs,
        "transform": transform,
        "nodata": nodata,
        "compress": "deflate",
    }
    with rasterio.open(path, "w", **profile) as dst:
        dst.write(data, 1)
    print(f"  Saved: {path}")
    return path
