"""
Per-channel orchestration of the sediment mapping pipeline.

    samples -> log-ratio responses -> regression matrix
            -> variogram range -> spatial block folds
            -> per response: Boruta -> VIF decorrelation -> FFS -> AOA
            -> gridded predictions -> back-transformed fraction grids

Every stage receives the immutable PipelineConfig and explicit inputs;
`run_channel` returns a ChannelResult bundle and writes nothing.
`write_channel_outputs` persists the bundle once all fitting is done.

Usage:
    from sedmap.pipeline import run_channel, write_channel_outputs

    result = run_channel(cfg, channel, samples, stack)
    paths = write_channel_outputs(result, out_dir, "20260101", stack)
"""

import json
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field

import joblib
import numpy as np
import pandas as pd

from sedmap.assembly import assemble_fractions, assemble_mud, predictions_to_grid
from sedmap.data.raster_stack import write_raster
from sedmap.data.regression_matrix import build_regression_matrix, drop_incomplete
from sedmap.data.samples import add_log_ratio_columns, validate_fractions
from sedmap.errors import IllPosedError
from sedmap.features.boruta import boruta_select, confirmed_predictors
from sedmap.features.decorrelation import select_decorrelated
from sedmap.models.aoa import AOAModel, AOAResult, aoa_summary
from sedmap.models.evaluation import simplex_validity
from sedmap.models.ffs import forward_feature_selection
from sedmap.models.variogram import estimate_autocorrelation_range
from sedmap.splitting import build_spatial_folds, fold_summary, save_split_metadata

logger = logging.getLogger(__name__)


@dataclass
class ResponseResult:
    """Everything produced for one log-ratio response (alrM or alrG)."""

    response: str
    boruta: object
    decorrelation: object
    ffs: object
    aoa_model: AOAModel
    prediction_grid: np.ndarray
    di_grid: np.ndarray
    aoa_grid: np.ndarray        # bool, False where DI undefined

    @property
    def model(self):
        return self.ffs.best


@dataclass
class ChannelResult:
    """Output artifact bundle of one response channel."""

    channel: object
    regression_matrix: pd.DataFrame
    variogram: object
    spatial_folds: object
    responses: dict
    fractions: dict
    aoa_inside: np.ndarray
    aoa_defined: np.ndarray
    summary: dict = field(default_factory=dict)


# =====================================================================
# Stages
# =====================================================================

def _fold_assignment(cfg, rm, response):
    """Variogram range (unless a block size is configured) and spatial folds."""
    variogram = None
    if cfg.block_size is None:
        variogram = estimate_autocorrelation_range(
            rm[["x", "y"]].to_numpy(), rm[response].to_numpy(),
            n_lags=cfg.variogram_n_lags,
            min_pairs=cfg.variogram_min_pairs,
            models=cfg.variogram_models,
        )
        autocorr_range = variogram.range
    else:
        autocorr_range = float(cfg.block_size) / cfg.block_multiplier

    spatial_folds = build_spatial_folds(
        rm["x"].to_numpy(), rm["y"].to_numpy(),
        autocorr_range=autocorr_range,
        multiplier=cfg.block_multiplier,
        n_folds=cfg.n_folds,
        seed=cfg.split_seed,
    )
    logger.info("Spatial folds: block size %.1f, fold sizes %s",
                spatial_folds.block_size,
                fold_summary(spatial_folds)["n_samples"].tolist())
    return variogram, spatial_folds


def _select_and_fit(cfg, rm, response, predictors, spatial_folds):
    """Boruta -> decorrelation -> FFS for one response."""
    boruta = boruta_select(
        rm[predictors], rm[response],
        alpha=cfg.boruta_alpha,
        max_iter=cfg.boruta_max_iter,
        n_estimators=cfg.boruta_n_estimators,
        seed=cfg.boruta_seed,
        n_jobs=cfg.n_jobs,
        forced=[p for p in cfg.forced_predictors if p in predictors],
    )
    accepted = confirmed_predictors(boruta, cfg.boruta_tentative_policy)
    if not accepted:
        raise IllPosedError(f"Boruta confirmed no predictor for {response}")

    decorrelation = select_decorrelated(rm[accepted], max_vif=cfg.max_vif,
                                        step=cfg.vif_step)
    if len(decorrelation.predictors) < 2:
        raise IllPosedError(
            f"Only {decorrelation.predictors} survive decorrelation for "
            f"{response}; forward selection needs at least 2 predictors"
        )

    ffs = forward_feature_selection(
        rm, rm[response].to_numpy(), decorrelation.predictors,
        spatial_folds.folds,
        mtry_grid=cfg.ffs_mtry_grid,
        metric=cfg.ffs_metric,
        n_estimators=cfg.ffs_n_estimators,
        seed=cfg.ffs_seed,
        n_jobs=cfg.n_jobs,
        warn_evaluations=cfg.ffs_warn_evaluations,
    )
    return boruta, decorrelation, ffs


def _predict_grid(stack, best, aoa_model):
    """Gridded prediction, DI and AOA flag for the winning model."""
    shape = stack.shape
    cells = stack.to_frame()[best.predictors]
    valid = np.isfinite(cells.to_numpy(dtype=np.float64)).all(axis=1)

    values = best.model.predict(cells.loc[valid]) if valid.any() else []
    grid = predictions_to_grid(values, shape, valid.reshape(shape))
    aoa = aoa_model.predict(cells)
    return grid, aoa.di.reshape(shape), aoa.inside.reshape(shape)


def run_channel(cfg, channel, samples, stack):
    """
    Run one response channel end to end.

    Parameters
    ----------
    cfg : PipelineConfig
    channel : ChannelSpec
    samples : DataFrame
        Samples in the stack's CRS, with x, y, gravel, sand, mud columns.
    stack : PredictorStack
        AOI-masked predictor grids.

    Returns
    -------
    ChannelResult
    """
    logger.info("=== Channel %s (responses %s) ===", channel.name,
                list(channel.responses))
    validate_fractions(samples, cfg.sum_tolerance)
    frame = add_log_ratio_columns(samples, mud_only=channel.mud_only)

    predictors = stack.names
    rm = build_regression_matrix(frame, stack, channel.responses)
    rm = drop_incomplete(rm, predictors + list(channel.responses))
    if len(rm) < cfg.n_folds:
        raise IllPosedError(
            f"{len(rm)} complete samples are too few for {cfg.n_folds} folds"
        )

    variogram, spatial_folds = _fold_assignment(cfg, rm, channel.responses[0])

    responses = {}
    for response in channel.responses:
        logger.info("--- Response %s ---", response)
        boruta, decorrelation, ffs = _select_and_fit(
            cfg, rm, response, predictors, spatial_folds)
        best = ffs.best

        aoa_model = AOAModel().fit(
            rm[best.predictors], best.model.feature_importances_,
            folds=spatial_folds.folds if cfg.aoa_use_cv_folds else None,
        )
        pred_grid, di_grid, aoa_grid = _predict_grid(stack, best, aoa_model)
        responses[response] = ResponseResult(
            response=response,
            boruta=boruta,
            decorrelation=decorrelation,
            ffs=ffs,
            aoa_model=aoa_model,
            prediction_grid=pred_grid,
            di_grid=di_grid,
            aoa_grid=aoa_grid,
        )

    aoa_defined = np.logical_and.reduce(
        [np.isfinite(r.di_grid) for r in responses.values()])
    aoa_inside = np.logical_and.reduce(
        [r.aoa_grid for r in responses.values()])

    valid = np.logical_and.reduce(
        [np.isfinite(r.prediction_grid) for r in responses.values()])
    if cfg.mask_outside_aoa:
        valid &= aoa_inside

    if channel.mud_only:
        fractions = assemble_mud(responses["alrM"].prediction_grid, valid)
    else:
        fractions = assemble_fractions(responses["alrM"].prediction_grid,
                                       responses["alrG"].prediction_grid, valid)

    result = ChannelResult(
        channel=channel,
        regression_matrix=rm,
        variogram=variogram,
        spatial_folds=spatial_folds,
        responses=responses,
        fractions=fractions,
        aoa_inside=aoa_inside,
        aoa_defined=aoa_defined,
    )
    result.summary = channel_summary(result)
    for line in format_run_log(result):
        logger.info(line)
    return result


# =====================================================================
# Reporting
# =====================================================================

def channel_summary(result):
    """JSON-serializable summary of a channel run."""
    n_defined = int(result.aoa_defined.sum())
    pct_inside = (float(result.aoa_inside[result.aoa_defined].mean()) * 100
                  if n_defined else float("nan"))
    summary = {
        "channel": result.channel.name,
        "n_samples": int(len(result.regression_matrix)),
        "block_size": result.spatial_folds.block_size,
        "n_folds": result.spatial_folds.n_folds,
        "pct_inside_aoa": pct_inside,
        "simplex": (simplex_validity(result.fractions)
                    if not result.channel.mud_only else None),
        "responses": {},
    }
    if result.variogram is not None:
        summary["variogram"] = {
            "model": result.variogram.model,
            "nugget": result.variogram.nugget,
            "sill": result.variogram.sill,
            "range": result.variogram.range,
        }
    for name, r in result.responses.items():
        best = r.model
        summary["responses"][name] = {
            "confirmed": r.boruta.confirmed,
            "tentative": r.boruta.tentative,
            "rejected": r.boruta.rejected,
            "decorrelated": r.decorrelation.predictors,
            "max_vif": r.decorrelation.max_vif,
            "vif_threshold": r.decorrelation.threshold,
            "selected": best.predictors,
            "mtry": best.mtry,
            "cv_score": best.score,
            "metric": best.metric,
            "model": best.model.get_params_dict(),
            **best.metrics,
            **{f"aoa_{k}": v for k, v in aoa_summary(AOAResult(
                di=r.di_grid.ravel(), inside=r.aoa_grid.ravel(),
                threshold=r.aoa_model.threshold_)).items()},
        }
    return summary


def format_run_log(result):
    """Plain-text run log lines for a channel."""
    s = result.summary
    lines = [
        f"Channel: {s['channel']}",
        f"Samples used: {s['n_samples']}",
    ]
    if "variogram" in s:
        v = s["variogram"]
        lines.append(f"Variogram: {v['model']} nugget={v['nugget']:.4g} "
                     f"sill={v['sill']:.4g} range={v['range']:.1f}")
    lines.append(f"Spatial blocks: size={s['block_size']:.1f}, folds={s['n_folds']}")
    for name, r in s["responses"].items():
        lines += [
            f"[{name}] Boruta confirmed: {', '.join(r['confirmed']) or '-'}",
            f"[{name}] Boruta tentative: {', '.join(r['tentative']) or '-'}",
            f"[{name}] Boruta rejected: {', '.join(r['rejected']) or '-'}",
            f"[{name}] Decorrelated (th={r['vif_threshold']:.2f}, "
            f"max VIF={r['max_vif']:.2f}): {', '.join(r['decorrelated'])}",
            f"[{name}] Selected predictors: {', '.join(r['selected'])}",
            f"[{name}] Final model: {r['model']}",
            f"[{name}] CV {r['metric']}={r['cv_score']:.4f}",
            f"[{name}] MSE={r['mse']:.4f} RMSE={r['rmse']:.4f} R2={r['r2']:.4f}",
            f"[{name}] Inside AOA: {r['aoa_pct_inside']:.1f}% of valid pixels",
        ]
    lines.append(f"Inside combined AOA: {s['pct_inside_aoa']:.1f}% of valid pixels")
    return lines


@contextmanager
def run_log(path, level=logging.INFO):
    """Attach a plain-text file handler to the package logger while active."""
    handler = logging.FileHandler(path, mode="w")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(asctime)s - %(message)s"))
    pkg_logger = logging.getLogger("sedmap")
    previous = pkg_logger.level
    pkg_logger.addHandler(handler)
    pkg_logger.setLevel(level)
    try:
        yield path
    finally:
        pkg_logger.removeHandler(handler)
        pkg_logger.setLevel(previous)
        handler.close()


# =====================================================================
# Outputs
# =====================================================================

def write_channel_outputs(result, out_dir, run_date, stack):
    """
    Write fraction grids, DI/AOA grids, out-of-fold predictions, the
    fitted models and a JSON summary. Returns the written paths.
    """
    os.makedirs(out_dir, exist_ok=True)
    name = result.channel.name
    transform, crs = stack.transform, stack.crs
    paths = []

    for part, grid in result.fractions.items():
        paths.append(write_raster(os.path.join(out_dir, f"{name}_{part}_{run_date}.tif"),
                                  grid, transform, crs))

    aoa = np.where(result.aoa_defined, result.aoa_inside.astype(np.uint8), 255)
    paths.append(write_raster(os.path.join(out_dir, f"{name}_aoa_{run_date}.tif"),
                              aoa, transform, crs, nodata=255, dtype="uint8"))

    rm = result.regression_matrix
    split_path = os.path.join(out_dir, f"{name}_split_{run_date}.json")
    # no variogram when a fixed block size is configured
    autocorr_range = result.variogram.range if result.variogram is not None else None
    save_split_metadata(
        split_path, result.spatial_folds,
        autocorr_range=autocorr_range,
        multiplier=(result.spatial_folds.block_size / autocorr_range
                    if autocorr_range else None),
        n_samples=len(rm),
    )
    paths.append(split_path)

    for response, r in result.responses.items():
        paths.append(write_raster(
            os.path.join(out_dir, f"{name}_{response}_di_{run_date}.tif"),
            r.di_grid, transform, crs))

        oof = pd.DataFrame({
            "x": rm["x"],
            "y": rm["y"],
            "fold": result.spatial_folds.assignments,
            "observed": rm[response],
            "predicted": r.model.oof_predictions,
        })
        if "station" in rm.columns:
            oof.insert(0, "station", rm["station"])
        oof_path = os.path.join(out_dir, f"{name}_{response}_oof_{run_date}.csv")
        oof.to_csv(oof_path, index=False)
        paths.append(oof_path)

        model_path = os.path.join(out_dir, f"{name}_{response}_model_{run_date}.joblib")
        joblib.dump({"predictors": r.model.predictors, "mtry": r.model.mtry,
                     "model": r.model.model, "aoa": r.aoa_model}, model_path)
        paths.append(model_path)

        hist_path = os.path.join(out_dir, f"{name}_{response}_ffs_{run_date}.csv")
        r.ffs.history.to_csv(hist_path, index=False)
        paths.append(hist_path)

    summary_path = os.path.join(out_dir, f"{name}_{run_date}_summary.json")
    with open(summary_path, "w") as f:
        json.dump(result.summary, f, indent=2, default=float)
    paths.append(summary_path)
    return paths
