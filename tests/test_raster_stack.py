"""
Unit tests for sedmap/data/raster_stack.py and the regression matrix.

Run with:  python -m pytest tests/test_raster_stack.py -v
"""

import sys
import os
import numpy as np
import pandas as pd
import pytest
import rasterio
from rasterio.transform import from_origin
from shapely.geometry import box

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from sedmap.data.raster_stack import PredictorStack, rasterize_aoi, write_raster
from sedmap.data.regression_matrix import build_regression_matrix, drop_incomplete
from sedmap.errors import InputValidationError

H, W = 4, 5
CELL = 100.0
CRS = "EPSG:32633"
TRANSFORM = from_origin(0.0, H * CELL, CELL, CELL)


# -- Fixtures ---------------------------------------------------------------

@pytest.fixture
def stack():
    depth = np.arange(H * W, dtype=float).reshape(H, W)
    slope = depth * 2.0
    slope[0, 0] = np.nan
    return PredictorStack({"depth": depth, "slope": slope}, TRANSFORM, CRS)


# -- Construction -----------------------------------------------------------

class TestConstruction:
    def test_shape_and_names(self, stack):
        assert stack.shape == (H, W)
        assert stack.names == ["depth", "slope"]

    def test_mismatched_shapes(self):
        with pytest.raises(InputValidationError, match="co-registered"):
            PredictorStack({"a": np.zeros((H, W)), "b": np.zeros((H, W + 1))},
                           TRANSFORM, CRS)

    def test_empty(self):
        with pytest.raises(InputValidationError):
            PredictorStack({}, TRANSFORM, CRS)

    def test_read_only_copy(self):
        source = np.zeros((H, W))
        stack = PredictorStack({"a": source}, TRANSFORM, CRS)
        source[0, 0] = 5.0
        assert stack.layers["a"][0, 0] == 0.0
        with pytest.raises(ValueError):
            stack.layers["a"][0, 0] = 1.0

    def test_from_rasters_roundtrip(self, stack, tmp_path):
        paths = {}
        for name in stack.names:
            paths[name] = write_raster(str(tmp_path / f"{name}.tif"),
                                       stack.layers[name], TRANSFORM, CRS)
        loaded = PredictorStack.from_directory(str(tmp_path))
        assert loaded.names == ["depth", "slope"]
        np.testing.assert_allclose(loaded.layers["depth"], stack.layers["depth"])
        assert np.isnan(loaded.layers["slope"][0, 0])

    def test_from_rasters_not_coregistered(self, tmp_path):
        a = write_raster(str(tmp_path / "a.tif"), np.zeros((H, W)), TRANSFORM, CRS)
        shifted = from_origin(50.0, H * CELL, CELL, CELL)
        b = write_raster(str(tmp_path / "b.tif"), np.zeros((H, W)), shifted, CRS)
        with pytest.raises(InputValidationError, match="not co-registered"):
            PredictorStack.from_rasters({"a": a, "b": b})


# -- Access -----------------------------------------------------------------

class TestAccess:
    def test_sample_cell_centres(self, stack):
        # cell (row 1, col 2) has centre (250, 250)
        values = stack.sample([250.0], [250.0])
        assert values.loc[0, "depth"] == 1 * W + 2

    def test_sample_outside_is_nan(self, stack):
        values = stack.sample([-50.0, 250.0], [250.0, 10_000.0])
        assert values.isna().all().all()

    def test_to_frame_row_major(self, stack):
        frame = stack.to_frame()
        assert len(frame) == H * W
        np.testing.assert_array_equal(frame["depth"].to_numpy(), np.arange(H * W))

    def test_mask(self, stack):
        keep = np.ones((H, W), dtype=bool)
        keep[:, 0] = False
        masked = stack.mask(keep)
        assert np.isnan(masked.layers["depth"][:, 0]).all()
        assert not np.isnan(stack.layers["depth"][:, 0]).any()

    def test_valid_mask(self, stack):
        valid = stack.valid_mask()
        assert not valid[0, 0]
        assert valid.sum() == H * W - 1
        assert stack.valid_mask(["depth"]).all()

    def test_subset(self, stack):
        assert stack.subset(["slope"]).names == ["slope"]
        with pytest.raises(InputValidationError):
            stack.subset(["missing"])

    def test_rasterize_aoi(self, stack):
        keep = rasterize_aoi([box(0.0, 0.0, 200.0, H * CELL)], stack)
        assert keep.shape == (H, W)
        assert keep[:, :2].all()
        assert not keep[:, 2:].any()


class TestWriteRaster:
    def test_uint8_nodata(self, tmp_path):
        path = write_raster(str(tmp_path / "aoa.tif"),
                            np.array([[1, 0], [255, 1]]), TRANSFORM, CRS,
                            nodata=255, dtype="uint8")
        with rasterio.open(path) as src:
            assert src.nodata == 255
            assert src.dtypes[0] == "uint8"
            np.testing.assert_array_equal(src.read(1), [[1, 0], [255, 1]])


# -- Regression matrix ------------------------------------------------------

class TestRegressionMatrix:
    def test_build_and_drop(self, stack):
        samples = pd.DataFrame({
            "station": ["in", "nan_slope", "outside"],
            "x": [250.0, 50.0, -500.0],
            "y": [250.0, 350.0, 0.0],
            "alrM": [0.1, 0.2, 0.3],
        })
        rm = build_regression_matrix(samples, stack, ["alrM"])
        assert list(rm.columns) == ["station", "x", "y", "alrM", "depth", "slope",
                                    "complete"]
        assert rm["complete"].tolist() == [True, False, False]

        kept = drop_incomplete(rm, stack.names, "alrM")
        assert kept["station"].tolist() == ["in"]
        assert list(kept.index) == [0]
