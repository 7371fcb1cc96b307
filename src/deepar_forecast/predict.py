from __future__ import annotations

import os
from typing import Any, Dict, List, Mapping

import numpy as np
import pandas as pd
import torch
from torch.utils.data import DataLoader

from .config import PipelineConfig, load_yaml
from .dependency import bootstrap, build_network
from .models.deepar import DeepARPredictionNetwork
from .data.dataset import DeepARDataset
from .utils import io as io_utils
from .utils.logging import console, print_forecast_preview, progress
from .utils.torch_opt import move_to_device


def _validate_signature(signature: Mapping[str, Any], cfg: PipelineConfig) -> None:
    errors: List[str] = []
    window_sig = signature.get("window") or {}
    for key in ("context_length", "prediction_length"):
        sig_val = window_sig.get(key)
        current = getattr(cfg.window, key)
        if sig_val is not None and int(sig_val) != int(current):
            errors.append(
                f"Configured window.{key}={current} differs from checkpoint value {sig_val}"
            )
    model_sig = signature.get("model") or {}
    for key in ("num_layers", "hidden_size"):
        sig_val = model_sig.get(key)
        current = getattr(cfg.model, key)
        if sig_val is not None and int(sig_val) != int(current):
            errors.append(f"Configured model.{key}={current} differs from checkpoint value {sig_val}")
    sig_distr = model_sig.get("distr_output")
    if sig_distr is not None and str(sig_distr) != cfg.model.distr_output:
        errors.append(
            f"Configured model.distr_output={cfg.model.distr_output} differs from checkpoint value {sig_distr}"
        )
    sig_lags = model_sig.get("lags")
    if sig_lags is not None and [int(v) for v in sig_lags] != cfg.resolved_lags():
        errors.append(f"Configured lags {cfg.resolved_lags()} differ from checkpoint lags {sig_lags}")
    data_sig = signature.get("data") or {}
    sig_freq = data_sig.get("freq")
    if sig_freq is not None and str(sig_freq) != cfg.data.freq:
        errors.append(f"Configured data.freq={cfg.data.freq} differs from checkpoint value {sig_freq}")
    if errors:
        raise ValueError(
            "\n".join(
                [
                    "Checkpoint signature does not match the configuration:",
                    *[f"- {err}" for err in errors],
                ]
            )
        )


def _resolve_trained_config(active_cfg: PipelineConfig) -> PipelineConfig:
    """Trained config with the prediction-time sections of ``active_cfg``."""

    art = active_cfg.raw["artifacts"]
    cfg_path = os.path.join(art["dir"], art["config_file"])
    if not os.path.exists(cfg_path):
        console().print(
            f"[yellow]{cfg_path} not found; using the active configuration as-is.[/yellow]"
        )
        return active_cfg
    trained = load_yaml(cfg_path)
    active = active_cfg.to_dict()
    trained["predict"] = active["predict"]
    trained["artifacts"] = active["artifacts"]
    trained.setdefault("data", {})["predict_csv"] = active["data"].get("predict_csv")
    trained.setdefault("train", {})["device"] = active["train"]["device"]
    return PipelineConfig.from_mapping(trained)


def samples_to_frame(
    item_ids: List[str],
    starts: List[pd.Timestamp],
    samples: np.ndarray,
    freq: str,
    quantiles: List[float],
) -> pd.DataFrame:
    """Long-format forecast table from ``[N, S, P]`` sample paths."""

    horizon = samples.shape[-1]
    mean = samples.mean(axis=1)
    qs = np.quantile(samples, quantiles, axis=1) if quantiles else np.empty((0,) + mean.shape)
    frames = []
    for i, (item_id, start) in enumerate(zip(item_ids, starts)):
        payload: Dict[str, Any] = {
            "id": item_id,
            "date": pd.date_range(start, periods=horizon, freq=freq),
            "mean": mean[i],
        }
        for q, values in zip(quantiles, qs):
            payload[f"q{q:g}"] = values[i]
        frames.append(pd.DataFrame(payload))
    return pd.concat(frames, ignore_index=True)


def predict_once(cfg: PipelineConfig | Dict[str, Any]) -> str:
    if isinstance(cfg, PipelineConfig):
        active_cfg = cfg
    elif isinstance(cfg, dict):
        active_cfg = PipelineConfig.from_mapping(cfg)
    else:
        raise TypeError("cfg must be a PipelineConfig or mapping")
    pipeline_cfg = _resolve_trained_config(active_cfg)
    cfg_used = pipeline_cfg.to_dict()
    art = cfg_used["artifacts"]
    art_dir = art["dir"]

    signature_path = os.path.join(art_dir, art["signature_file"])
    if not os.path.exists(signature_path):
        raise FileNotFoundError(f"Model signature not found: {signature_path}")
    signature = io_utils.load_json(signature_path)
    _validate_signature(signature, active_cfg)

    device = bootstrap(cfg_used)
    console().print(f"[bold green]Predict device:[/bold green] {device}")

    meta = io_utils.load_pickle(os.path.join(art_dir, art["encoders_file"]))
    data_cfg = pipeline_cfg.data
    data_sig = signature["data"]
    csv_path = data_cfg.predict_csv or data_cfg.train_csv
    df = io_utils.read_long_csv(csv_path, encoding=data_cfg.encoding)
    entries = io_utils.build_series_entries(
        df,
        date_col=data_cfg.date_col,
        id_col=data_cfg.id_col,
        target_col=data_cfg.target_col,
        freq=data_cfg.freq,
        static_cat_cols=meta["static_cat_cols"],
        static_real_cols=meta["static_real_cols"],
        encoders=meta["encoders"],
        fill_missing_dates=data_cfg.fill_missing_dates,
    )

    model = build_network(
        DeepARPredictionNetwork,
        pipeline_cfg,
        cardinality=data_sig["cardinality"],
        num_feat_static_real=int(data_sig["num_feat_static_real"]),
        num_time_features=int(data_sig["num_time_features"]),
    )
    state = torch.load(os.path.join(art_dir, art["model_file"]), map_location="cpu")
    model.load_state_dict(state)
    model.to(device).eval()

    dataset = DeepARDataset(
        entries,
        freq=data_cfg.freq,
        context_length=model.context_length,
        prediction_length=model.prediction_length,
        history_length=model.history_length,
        mode="test",
        time_feature_config=data_cfg.time_features.to_dict(),
    )
    loader = DataLoader(dataset, batch_size=pipeline_cfg.predict.batch_size, shuffle=False)

    sample_batches: List[np.ndarray] = []
    with progress() as bar:
        task = bar.add_task("Sampling", total=len(loader))
        for batch in loader:
            samples = model(*move_to_device(batch, device))
            sample_batches.append(samples.cpu().numpy())
            bar.advance(task)
    samples = np.concatenate(sample_batches, axis=0)

    forecast = samples_to_frame(
        [dataset.item_id(i) for i in range(len(dataset))],
        [dataset.forecast_start(i) for i in range(len(dataset))],
        samples,
        data_cfg.freq,
        pipeline_cfg.predict.quantiles,
    )
    out_path = pipeline_cfg.predict.output_path
    os.makedirs(os.path.dirname(out_path) or ".", exist_ok=True)
    forecast.to_csv(out_path, index=False)
    print_forecast_preview(forecast)
    console().print(f"[green]Saved forecast:[/green] {out_path}")
    return out_path


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser()
    parser.add_argument("--config", type=str, default="configs/default.yaml")
    parser.add_argument("--override", nargs="*", default=[])
    args = parser.parse_args()
    cfg = PipelineConfig.from_files(args.config, overrides=args.override)
    predict_once(cfg)


if __name__ == "__main__":
    main()
