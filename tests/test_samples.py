"""
Unit tests for sedmap/data/samples.py: validation, synthetic categorical
samples, zero replacement and log-ratio columns.

Run with:  python -m pytest tests/test_samples.py -v
"""

import sys
import os
import numpy as np
import pandas as pd
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from sedmap.data.samples import (
    FOLK_CLASS_RANGES,
    Sample,
    add_log_ratio_columns,
    check_log_ratio_denominators,
    draw_class_fractions,
    frame_to_geodataframe,
    load_samples,
    replace_zero_parts,
    reproject_samples,
    samples_to_frame,
    synthesize_categorical_samples,
    validate_fractions,
    write_samples,
)
from sedmap.errors import InputValidationError

SEED = 42


# -- Fixtures ---------------------------------------------------------------

@pytest.fixture
def measured():
    return pd.DataFrame({
        "station": ["a", "b", "c"],
        "x": [500000.0, 501000.0, 502000.0],
        "y": [6000000.0, 6001000.0, 6002000.0],
        "gravel": [10.0, 0.0, 5.0],
        "sand": [50.0, 60.0, 25.0],
        "mud": [40.0, 40.0, 70.0],
    })


@pytest.fixture
def categorical():
    classes = list(FOLK_CLASS_RANGES) * 4
    return pd.DataFrame({
        "station": [f"c{i}" for i in range(len(classes))],
        "x": np.arange(len(classes), dtype=float),
        "y": np.zeros(len(classes)),
        "folk_class": classes,
    })


# -- Validation -------------------------------------------------------------

class TestValidateFractions:
    def test_accepts_valid(self, measured):
        validate_fractions(measured)

    def test_rejects_bad_sum(self, measured):
        measured.loc[0, "mud"] = 30.0
        with pytest.raises(InputValidationError, match="sum to 100"):
            validate_fractions(measured)

    def test_tolerance(self, measured):
        measured.loc[0, "mud"] = 40.5
        validate_fractions(measured, sum_tolerance=1.0)

    def test_rejects_negative(self, measured):
        measured.loc[1, "gravel"] = -1.0
        measured.loc[1, "sand"] = 61.0
        with pytest.raises(InputValidationError, match="Negative"):
            validate_fractions(measured)

    def test_missing_column(self, measured):
        with pytest.raises(InputValidationError, match="lacks"):
            validate_fractions(measured.drop(columns="mud"))


# -- Synthetic categorical samples ------------------------------------------

class TestCategoricalSynthesis:
    def test_deterministic(self, categorical):
        a = synthesize_categorical_samples(categorical, np.random.default_rng(SEED))
        b = synthesize_categorical_samples(categorical, np.random.default_rng(SEED))
        pd.testing.assert_frame_equal(a, b)

    def test_fractions_valid(self, categorical):
        out = synthesize_categorical_samples(categorical, np.random.default_rng(SEED))
        validate_fractions(out, sum_tolerance=1e-9)
        assert (out[["gravel", "sand", "mud"]] > 0).all().all()
        assert (out["source"] == "categorical").all()

    def test_draw_inside_class_region(self):
        rng = np.random.default_rng(SEED)
        for cls, (g_lo, g_hi, r_lo, r_hi) in FOLK_CLASS_RANGES.items():
            for _ in range(20):
                gravel, sand, mud = draw_class_fractions(cls, rng)
                assert g_lo <= gravel <= g_hi, cls
                ratio = sand / (sand + mud)
                assert r_lo - 1e-12 <= ratio <= r_hi + 1e-12, cls
                assert sand > 0

    def test_unknown_class(self):
        with pytest.raises(InputValidationError, match="Unknown sediment class"):
            draw_class_fractions("XYZ", np.random.default_rng(SEED))

    def test_log_ratios_finite(self, categorical):
        out = synthesize_categorical_samples(categorical, np.random.default_rng(SEED))
        z = add_log_ratio_columns(out)
        assert np.isfinite(z[["alrM", "alrG"]].to_numpy()).all()


# -- Zero replacement / log-ratio columns -----------------------------------

class TestLogRatioColumns:
    def test_zero_gravel_raises_without_replacement(self, measured):
        with pytest.raises(InputValidationError):
            add_log_ratio_columns(measured)

    def test_replace_zero_parts(self, measured):
        out = replace_zero_parts(measured, replacement=0.01)
        np.testing.assert_allclose(out[["gravel", "sand", "mud"]].sum(axis=1), 100.0)
        assert out.loc[1, "gravel"] == pytest.approx(0.01)
        pd.testing.assert_series_equal(out.loc[0, ["gravel", "sand", "mud"]],
                                       measured.loc[0, ["gravel", "sand", "mud"]],
                                       check_dtype=False)
        # input untouched
        assert measured.loc[1, "gravel"] == 0.0

    def test_sand_zero_not_replaced(self, measured):
        measured.loc[0, ["gravel", "sand", "mud"]] = [50.0, 0.0, 50.0]
        out = replace_zero_parts(measured)
        assert out.loc[0, "sand"] == 0.0

    def test_denominator_check_names_station(self, measured):
        measured.loc[2, ["gravel", "sand", "mud"]] = [0.0, 0.0, 100.0]
        check_log_ratio_denominators(measured.iloc[:2])
        with pytest.raises(InputValidationError, match="'c'"):
            check_log_ratio_denominators(replace_zero_parts(measured))

    def test_columns(self, measured):
        out = add_log_ratio_columns(replace_zero_parts(measured))
        assert {"alrM", "alrG"} <= set(out.columns)
        assert out.loc[0, "alrM"] == pytest.approx(np.log(40 / 50))

    def test_mud_only(self, measured):
        out = add_log_ratio_columns(measured, mud_only=True)
        assert "alrG" not in out.columns
        assert out.loc[1, "alrM"] == pytest.approx(np.log(40 / 60))


# -- Records and I/O --------------------------------------------------------

class TestSampleIO:
    def test_samples_to_frame(self):
        frame = samples_to_frame([
            Sample("s1", "measured", 10.0, 55.0, "EPSG:4326", 5.0, 45.0, 50.0),
        ])
        assert frame.loc[0, "station"] == "s1"
        gdf = frame_to_geodataframe(frame)
        assert str(gdf.crs) == "EPSG:4326"

    def test_reproject_keeps_input(self, measured):
        gdf = frame_to_geodataframe(measured, crs="EPSG:32633")
        out = reproject_samples(gdf, "EPSG:4326")
        assert gdf.loc[0, "x"] == 500000.0
        assert out.loc[0, "x"] == pytest.approx(out.geometry.x[0])
        assert -180 <= out.loc[0, "x"] <= 180

    def test_csv_roundtrip(self, measured, tmp_path):
        path = tmp_path / "samples.csv"
        measured.to_csv(path, index=False)
        gdf = load_samples(str(path), "EPSG:32633")
        assert len(gdf) == 3
        assert (gdf["source"] == "measured").all()
        out_path = tmp_path / "out.csv"
        write_samples(add_log_ratio_columns(replace_zero_parts(gdf)), str(out_path))
        back = pd.read_csv(out_path)
        assert "geometry" not in back.columns
        assert "alrM" in back.columns
