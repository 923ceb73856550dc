"""
Run the seafloor sediment mapping pipeline for every configured channel.

Outputs (per channel, <date> = run date YYYYMMDD):
  outputs/<channel>_<part>_<date>.tif             -- gravel/sand/mud fractions
  outputs/<channel>_aoa_<date>.tif                -- 1 inside, 0 outside, 255 no-data
  outputs/<channel>_split_<date>.json             -- spatial block fold metadata
  outputs/<channel>_<response>_di_<date>.tif      -- dissimilarity index
  outputs/<channel>_<response>_oof_<date>.csv     -- out-of-fold predictions
  outputs/<channel>_<response>_model_<date>.joblib
  outputs/<channel>_<response>_ffs_<date>.csv     -- forward selection history
  outputs/<channel>_<date>_summary.json
  outputs/<channel>_<date>_log.txt                -- plain-text run log
  outputs/samples_<date>.csv                      -- samples + log-ratio columns

Usage:
  python scripts/run_pipeline.py
  python scripts/run_pipeline.py --config config/pipeline_config.yml
"""

import argparse
import logging
import os
import sys
from datetime import datetime

import geopandas as gpd
import numpy as np
import pandas as pd

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from sedmap.config import CONFIG_PATH, PROJECT_ROOT, PipelineConfig, load_config
from sedmap.data.raster_stack import PredictorStack, rasterize_aoi
from sedmap.data.samples import (
    add_log_ratio_columns,
    check_log_ratio_denominators,
    load_samples,
    replace_zero_parts,
    synthesize_categorical_samples,
    validate_fractions,
    write_samples,
)
from sedmap.errors import SedmapError
from sedmap.pipeline import run_channel, run_log, write_channel_outputs

logger = logging.getLogger("sedmap.run")


def _path(cfg_dict, key):
    return os.path.join(PROJECT_ROOT, cfg_dict["paths"][key])


def load_all_samples(cfg_dict, cfg):
    """Measured + synthesized categorical samples in the working CRS."""
    crs_cfg = cfg_dict["crs"]
    measured = load_samples(
        _path(cfg_dict, "samples_measured"), cfg.working_crs, source="measured",
        src_crs=crs_cfg.get("samples_measured"),
    )
    validate_fractions(measured, cfg.sum_tolerance)
    measured = replace_zero_parts(measured, cfg.zero_replacement)
    print(f"  {len(measured)} measured samples")

    parts = [measured]
    cat_path = cfg_dict["paths"].get("samples_categorical")
    if cat_path and os.path.exists(os.path.join(PROJECT_ROOT, cat_path)):
        categorical = load_samples(
            _path(cfg_dict, "samples_categorical"), cfg.working_crs,
            source="categorical", src_crs=crs_cfg.get("samples_categorical"),
        )
        rng = np.random.default_rng(cfg.sample_seed)
        categorical = synthesize_categorical_samples(
            categorical, rng,
            min_sand_ratio=cfg.min_sand_ratio,
            min_part_pct=cfg.min_part_pct,
        )
        print(f"  {len(categorical)} categorical samples (synthetic fractions)")
        parts.append(categorical)

    samples = pd.concat(parts, ignore_index=True)
    check_log_ratio_denominators(samples)
    return gpd.GeoDataFrame(samples, geometry="geometry", crs=cfg.working_crs)


def load_stack(cfg_dict):
    """Predictor stack masked to the area of interest."""
    stack = PredictorStack.from_directory(_path(cfg_dict, "predictors_dir"))
    aoi = gpd.read_file(_path(cfg_dict, "aoi")).to_crs(stack.crs)
    keep = rasterize_aoi(aoi.geometry, stack)
    print(f"  {len(stack.names)} predictors, grid {stack.shape}, "
          f"{int(keep.sum())} cells inside AOI")
    return stack.mask(keep)


def main(config_path=CONFIG_PATH):
    print("=" * 70)
    print("Seafloor sediment composition mapping")
    print("=" * 70)

    cfg_dict = load_config(config_path)
    cfg = PipelineConfig.from_dict(cfg_dict)
    out_dir = os.path.join(PROJECT_ROOT, cfg_dict["paths"]["output_dir"])
    os.makedirs(out_dir, exist_ok=True)
    run_date = datetime.now().strftime("%Y%m%d")

    print("\n[1/3] Loading samples...")
    samples = load_all_samples(cfg_dict, cfg)

    print("\n[2/3] Loading predictor stack...")
    stack = load_stack(cfg_dict)

    print(f"\n[3/3] Running {len(cfg.channels)} channel(s)...")
    failures = []
    for channel in cfg.channels:
        print(f"\n  -- {channel.name} ({', '.join(channel.responses)}) --")
        log_path = os.path.join(out_dir, f"{channel.name}_{run_date}_log.txt")
        with run_log(log_path):
            try:
                result = run_channel(cfg, channel, samples, stack)
                write_channel_outputs(result, out_dir, run_date, stack)
                print(f"  {channel.name}: {result.summary['pct_inside_aoa']:.1f}% "
                      f"of valid pixels inside AOA")
            except SedmapError as exc:
                logger.exception("Channel %s failed", channel.name)
                print(f"  {channel.name} FAILED: {exc}")
                failures.append(channel.name)
        print(f"  Saved: {log_path}")

    try:
        frame = add_log_ratio_columns(samples)
        frame["alrM_mud"] = add_log_ratio_columns(samples, mud_only=True)["alrM"]
        write_samples(frame, os.path.join(out_dir, f"samples_{run_date}.csv"))
    except SedmapError as exc:
        logger.exception("Samples file not written")
        print(f"  samples FAILED: {exc}")
        failures.append("samples")

    if failures:
        print(f"\nFailed channels: {', '.join(failures)}")
        sys.exit(1)
    print("\nDone.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--config", default=CONFIG_PATH,
                        help="YAML run configuration")
    args = parser.parse_args()
    main(args.config)
