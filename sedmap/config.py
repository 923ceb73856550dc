"""
Centralized configuration loader for the sediment mapping pipeline.

Usage:
    from sedmap.config import CFG, PROJECT_ROOT, PipelineConfig

    cfg = PipelineConfig.from_dict(CFG)
    cfg.n_folds, cfg.ffs_mtry_grid
"""

import os
from dataclasses import dataclass, field, replace

import yaml

from sedmap.errors import InputValidationError

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
CONFIG_PATH = os.path.join(PROJECT_ROOT, "config", "pipeline_config.yml")


def load_config(path=CONFIG_PATH):
    """Read a YAML run configuration into a plain dict."""
    with open(path, "r") as f:
        return yaml.safe_load(f)


CFG = load_config()

# Convenience paths
RAW_DIR = os.path.join(PROJECT_ROOT, "data", "raw")
OUTPUT_DIR = os.path.join(PROJECT_ROOT, CFG["paths"]["output_dir"])


@dataclass(frozen=True)
class ChannelSpec:
    """One response channel: a name, its ALR response columns, mud-only flag."""

    name: str
    responses: tuple
    mud_only: bool = False


@dataclass(frozen=True)
class PipelineConfig:
    """
    Immutable run configuration passed explicitly through every stage.

    Build it from a YAML dict with `PipelineConfig.from_dict(CFG)`, and
    derive variants with `cfg.with_overrides(n_folds=2)`.
    """

    working_crs: str = "EPSG:32633"
    channels: tuple = field(default_factory=lambda: (
        ChannelSpec("gsm", ("alrM", "alrG"), False),
    ))

    sum_tolerance: float = 1.0
    min_sand_ratio: float = 0.01
    min_part_pct: float = 0.01
    zero_replacement: float = 0.01
    sample_seed: int = 42

    boruta_alpha: float = 0.05
    boruta_max_iter: int = 500
    boruta_n_estimators: int = 300
    boruta_tentative_policy: str = "drop"
    boruta_seed: int = 42
    forced_predictors: tuple = ()

    max_vif: float = 2.5
    vif_step: float = 0.01

    variogram_n_lags: int = 15
    variogram_min_pairs: int = 10
    variogram_models: tuple = ("spherical", "exponential", "gaussian")

    n_folds: int = 10
    block_multiplier: float = 1.0
    split_seed: int = 42
    block_size: float = None

    ffs_metric: str = "r2"
    ffs_mtry_grid: tuple = (2, 3, 4, 5, 6)
    ffs_n_estimators: int = 500
    ffs_seed: int = 42
    n_jobs: int = -2
    ffs_warn_evaluations: int = 2000

    aoa_use_cv_folds: bool = True
    mask_outside_aoa: bool = False

    def __post_init__(self):
        if self.boruta_tentative_policy not in ("drop", "keep"):
            raise InputValidationError(
                f"Unknown tentative policy: {self.boruta_tentative_policy}")
        if self.ffs_metric not in ("r2", "rmse"):
            raise InputValidationError(f"Unknown FFS metric: {self.ffs_metric}")
        if self.n_folds < 2:
            raise InputValidationError("Need at least 2 folds")
        if not 0 < self.vif_step < 1:
            raise InputValidationError("vif_step must lie in (0, 1)")

    @classmethod
    def from_dict(cls, cfg):
        """Flatten a CFG mapping (see config/pipeline_config.yml)."""
        channels = tuple(
            ChannelSpec(c["name"], tuple(c["responses"]), bool(c.get("mud_only", False)))
            for c in cfg.get("channels", [])
        )
        smp = cfg.get("samples", {})
        bor = cfg.get("boruta", {})
        dec = cfg.get("decorrelation", {})
        var = cfg.get("variogram", {})
        spl = cfg.get("split", {})
        ffs = cfg.get("ffs", {})
        aoa = cfg.get("aoa", {})
        defaults = cls()
        return cls(
            working_crs=cfg.get("crs", {}).get("working", defaults.working_crs),
            channels=channels or defaults.channels,
            sum_tolerance=float(smp.get("sum_tolerance", defaults.sum_tolerance)),
            min_sand_ratio=float(smp.get("min_sand_ratio", defaults.min_sand_ratio)),
            min_part_pct=float(smp.get("min_part_pct", defaults.min_part_pct)),
            zero_replacement=float(smp.get("zero_replacement", defaults.zero_replacement)),
            sample_seed=int(smp.get("seed", defaults.sample_seed)),
            boruta_alpha=float(bor.get("alpha", defaults.boruta_alpha)),
            boruta_max_iter=int(bor.get("max_iter", defaults.boruta_max_iter)),
            boruta_n_estimators=int(bor.get("n_estimators", defaults.boruta_n_estimators)),
            boruta_tentative_policy=bor.get("tentative_policy", defaults.boruta_tentative_policy),
            boruta_seed=int(bor.get("seed", defaults.boruta_seed)),
            forced_predictors=tuple(bor.get("forced", None) or ()),
            max_vif=float(dec.get("max_vif", defaults.max_vif)),
            vif_step=float(dec.get("step", defaults.vif_step)),
            variogram_n_lags=int(var.get("n_lags", defaults.variogram_n_lags)),
            variogram_min_pairs=int(var.get("min_pairs", defaults.variogram_min_pairs)),
            variogram_models=tuple(var.get("models", defaults.variogram_models)),
            n_folds=int(spl.get("n_folds", defaults.n_folds)),
            block_multiplier=float(spl.get("block_multiplier", defaults.block_multiplier)),
            split_seed=int(spl.get("seed", defaults.split_seed)),
            block_size=spl.get("block_size", defaults.block_size),
            ffs_metric=ffs.get("metric", defaults.ffs_metric),
            ffs_mtry_grid=tuple(int(m) for m in ffs.get("mtry_grid", defaults.ffs_mtry_grid)),
            ffs_n_estimators=int(ffs.get("n_estimators", defaults.ffs_n_estimators)),
            ffs_seed=int(ffs.get("seed", defaults.ffs_seed)),
            n_jobs=int(ffs.get("n_jobs", defaults.n_jobs)),
            ffs_warn_evaluations=int(ffs.get("warn_evaluations", defaults.ffs_warn_evaluations)),
            aoa_use_cv_folds=bool(aoa.get("use_cv_folds", defaults.aoa_use_cv_folds)),
            mask_outside_aoa=bool(aoa.get("mask_outside_aoa", defaults.mask_outside_aoa)),
        )

    def with_overrides(self, **kwargs):
        """Return a copy with some fields replaced."""
        return replace(self, **kwargs)
