from __future__ import annotations

import os
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import torch
from torch import nn
from torch.utils.data import DataLoader
from tqdm import tqdm

from .config import PipelineConfig, save_yaml
from .dependency import bootstrap, build_network
from .losses import DistributionLoss
from .models.deepar import DeepARTrainingNetwork
from .data.dataset import BUNDLE_FIELDS, DeepARDataset
from .data.split import make_holdout_entries
from .utils import io as io_utils
from .utils.logging import console, print_config, print_metrics
from .utils.metrics import rmsse_mean, smape_mean, weighted_quantile_loss
from .utils.time_features import num_time_features
from .utils.torch_opt import amp_autocast, clean_state_dict, move_to_device


logger = logging.getLogger(__name__)


def _build_dataloader(
    dataset: DeepARDataset,
    batch_size: int,
    shuffle: bool,
    num_workers: int = 0,
    pin_memory: bool = False,
) -> DataLoader:
    return DataLoader(
        dataset,
        batch_size=batch_size,
        shuffle=shuffle,
        num_workers=num_workers,
        pin_memory=pin_memory,
        drop_last=False,
    )


def _batch_stats(batch: Tuple[torch.Tensor, ...]) -> Dict[str, float]:
    stats: Dict[str, float] = {}
    for name, tensor in zip(BUNDLE_FIELDS, batch):
        if not tensor.is_floating_point():
            continue
        finite = torch.isfinite(tensor)
        stats[f"{name}.nonfinite"] = float((~finite).sum().item())
        if finite.any():
            stats[f"{name}.max_abs"] = float(tensor[finite].abs().max().item())
    return stats


def _check_finite_loss(loss: torch.Tensor, batch: Tuple[torch.Tensor, ...], step: int) -> None:
    if torch.isfinite(loss):
        return
    stats = _batch_stats(batch)
    logger.error("Non-finite training loss %s at step %d; batch stats: %s", loss.item(), step, stats)
    raise FloatingPointError(
        f"Training loss became non-finite ({loss.item()}) at step {step}"
    )


@torch.no_grad()
def _eval_metrics(
    model: DeepARTrainingNetwork,
    loader: DataLoader,
    device: torch.device,
    loss_fn: DistributionLoss,
    amp: bool = False,
    quantiles: Sequence[float] = (0.1, 0.5, 0.9),
    num_samples: int = 50,
) -> Dict[str, float]:
    """Validation NLL plus point and quantile metrics.

    sMAPE is computed on the prediction window and RMSSE on the whole
    one-step-ahead window (context tail plus prediction window). The
    weighted quantile loss uses one-step-ahead samples of the prediction
    window. Points with zero loss weight (missing values and left padding)
    are left out of every metric.
    """

    model.eval()
    total_nll = 0.0
    total_count = 0
    labels: List[np.ndarray] = []
    observed: List[np.ndarray] = []
    means: List[np.ndarray] = []
    draws: List[np.ndarray] = []
    horizon = model.prediction_length
    for batch in loader:
        batch = move_to_device(batch, device)
        with amp_autocast(amp and device.type == "cuda"):
            params, scale, loss_weights = model(*batch)
        target = model.training_target(batch[3], batch[6])
        per_series = loss_fn(params, scale, target, loss_weights)
        total_nll += float(per_series.sum().item())
        total_count += int(per_series.numel())
        distr = model.distribution(params, scale)
        labels.append(target.cpu().numpy())
        observed.append(loss_weights.cpu().numpy())
        means.append(distr.mean.cpu().numpy())
        # [S, B, T] -> [B, S, horizon]
        draws.append(distr.sample(num_samples)[..., -horizon:].transpose(0, 1).cpu().numpy())
    model.train()
    if total_count == 0:
        return {
            "nll": float("nan"),
            "smape": float("nan"),
            "rmsse": float("nan"),
            "wql": float("nan"),
        }
    y_true = np.concatenate(labels, axis=0)
    y_mean = np.concatenate(means, axis=0)
    y_obs = np.concatenate(observed, axis=0)
    return {
        "nll": total_nll / total_count,
        "smape": smape_mean(
            y_true[:, -horizon:], y_mean[:, -horizon:], observed=y_obs[:, -horizon:]
        ),
        "rmsse": rmsse_mean(y_true, y_mean, axis=1, observed=y_obs),
        "wql": weighted_quantile_loss(
            y_true[:, -horizon:],
            np.concatenate(draws, axis=0),
            quantiles,
            observed=y_obs[:, -horizon:],
        ),
    }


def _build_scheduler(
    optim: torch.optim.Optimizer, sched_cfg: Dict[str, Any], epochs: int
) -> Tuple[Optional[Any], str]:
    sched_type = str(sched_cfg.get("type") or "none")
    if sched_type == "ReduceLROnPlateau":
        scheduler = torch.optim.lr_scheduler.ReduceLROnPlateau(
            optim,
            mode="min",
            factor=float(sched_cfg.get("factor", 0.1)),
            patience=int(sched_cfg.get("patience", 10)),
            threshold=float(sched_cfg.get("threshold", 1e-4)),
            min_lr=float(sched_cfg.get("min_lr", 0.0)),
        )
    elif sched_type == "StepLR":
        scheduler = torch.optim.lr_scheduler.StepLR(
            optim,
            step_size=int(sched_cfg.get("step_size", 10)),
            gamma=float(sched_cfg.get("gamma", 0.1)),
        )
    elif sched_type == "cosine":
        scheduler = torch.optim.lr_scheduler.CosineAnnealingLR(
            optim,
            T_max=max(1, int(sched_cfg.get("T_max", epochs))),
            eta_min=float(sched_cfg.get("eta_min", 1e-5)),
        )
    elif sched_type == "none":
        scheduler = None
    else:
        raise ValueError(
            "train.lr_scheduler.type must be one of {'ReduceLROnPlateau', 'StepLR', 'cosine', 'none'}"
        )
    return scheduler, sched_type


def train_once(cfg: PipelineConfig | Dict[str, Any]) -> Tuple[float, Dict]:
    # --- bootstrap
    if isinstance(cfg, PipelineConfig):
        pipeline_cfg = cfg
    elif isinstance(cfg, dict):
        pipeline_cfg = PipelineConfig.from_mapping(cfg)
    else:
        raise TypeError("cfg must be a PipelineConfig or mapping")
    cfg = pipeline_cfg.to_dict()
    data_cfg = pipeline_cfg.data
    train_cfg = pipeline_cfg.train
    prediction_length = pipeline_cfg.window.prediction_length

    device = bootstrap(cfg)
    console().print(f"[bold green]Device:[/bold green] {device}")
    print_config(cfg)

    # --- data loading
    df = io_utils.read_long_csv(data_cfg.train_csv, encoding=data_cfg.encoding)
    encoders = io_utils.fit_category_encoders(df, data_cfg.static_cat_cols)
    cardinality = io_utils.cardinality_from_encoders(encoders, data_cfg.static_cat_cols)
    entries = io_utils.build_series_entries(
        df,
        date_col=data_cfg.date_col,
        id_col=data_cfg.id_col,
        target_col=data_cfg.target_col,
        freq=data_cfg.freq,
        static_cat_cols=data_cfg.static_cat_cols,
        static_real_cols=data_cfg.static_real_cols,
        encoders=encoders,
        fill_missing_dates=data_cfg.fill_missing_dates,
    )
    num_feat_static_real = max(1, len(data_cfg.static_real_cols))
    tf_cfg = data_cfg.time_features.to_dict()
    n_time_features = num_time_features(tf_cfg, data_cfg.freq)
    console().print(
        f"[bold]Loaded {len(entries)} series[/bold] (cardinality={cardinality}, time features={n_time_features})"
    )

    if train_cfg.val_strategy == "holdout":
        trn_entries, val_entries = make_holdout_entries(entries, prediction_length)
    else:
        trn_entries, val_entries = entries, []
    if not any(len(e.target) >= prediction_length for e in trn_entries):
        raise ValueError(
            f"No training series has at least window.prediction_length={prediction_length} values"
            + (" after holding out the validation window" if val_entries else "")
        )

    # --- model
    model = build_network(
        DeepARTrainingNetwork,
        pipeline_cfg,
        cardinality=cardinality,
        num_feat_static_real=num_feat_static_real,
        num_time_features=n_time_features,
    ).to(device)
    console().print(
        f"[cyan]Lags:[/cyan] {model.lags}  [cyan]history length:[/cyan] {model.history_length}"
    )
    loss_fn = DistributionLoss(model.distr_output)

    dataset_kwargs = dict(
        freq=data_cfg.freq,
        context_length=model.context_length,
        prediction_length=model.prediction_length,
        history_length=model.history_length,
        time_feature_config=tf_cfg,
    )
    ds_train = DeepARDataset(
        trn_entries,
        mode="train",
        num_instances=train_cfg.num_instances,
        seed=int(cfg["tuning"]["seed"]),
        **dataset_kwargs,
    )
    dl_train = _build_dataloader(
        ds_train, train_cfg.batch_size, True, train_cfg.num_workers, train_cfg.pin_memory
    )
    dl_val: Optional[DataLoader] = None
    if val_entries:
        ds_val = DeepARDataset(val_entries, mode="validation", **dataset_kwargs)
        dl_val = _build_dataloader(
            ds_val, train_cfg.batch_size, False, train_cfg.num_workers, train_cfg.pin_memory
        )

    # --- optimizer / scheduler
    optim = torch.optim.AdamW(
        model.parameters(), lr=train_cfg.lr, weight_decay=train_cfg.weight_decay
    )
    epochs = train_cfg.epochs
    scheduler, sched_type = _build_scheduler(optim, cfg["train"].get("lr_scheduler") or {}, epochs)
    use_amp = train_cfg.amp and device.type == "cuda"
    grad_scaler = torch.amp.GradScaler(device.type, enabled=use_amp)

    # --- training loop
    best_nll = float("inf")
    best_metrics: Dict[str, float] = {}
    best_state = None
    best_epoch = 0
    patience = 0
    patience_limit = train_cfg.early_stopping_patience
    grad_clip = train_cfg.grad_clip_norm
    step = 0
    for ep in range(1, epochs + 1):
        if ep > 1:
            ds_train.resample()
        if len(ds_train) == 0:
            console().print(f"[yellow]Epoch {ep}: no training instances sampled; skipping.[/yellow]")
            continue
        model.train()
        losses: List[float] = []
        for batch in tqdm(dl_train, desc=f"Epoch {ep}/{epochs}", leave=False):
            batch = move_to_device(batch, device)
            with amp_autocast(use_amp):
                params, scale, loss_weights = model(*batch)
            target = model.training_target(batch[3], batch[6])
            loss = loss_fn(params, scale, target, loss_weights).mean()
            _check_finite_loss(loss, batch, step)
            optim.zero_grad(set_to_none=True)
            grad_scaler.scale(loss).backward()
            if grad_clip > 0:
                grad_scaler.unscale_(optim)
                nn.utils.clip_grad_norm_(model.parameters(), grad_clip)
            grad_scaler.step(optim)
            grad_scaler.update()
            losses.append(float(loss.item()))
            step += 1

        train_loss = float(np.mean(losses))
        if dl_val is not None:
            metrics = _eval_metrics(
                model,
                dl_val,
                device,
                loss_fn,
                amp=use_amp,
                quantiles=pipeline_cfg.predict.quantiles,
            )
        else:
            metrics = {"nll": train_loss}
        val_nll = metrics["nll"]
        console().print(
            f"[bold]Epoch {ep}[/bold] loss={train_loss:.6f}  "
            + "  ".join(f"val_{k}={v:.6f}" for k, v in metrics.items())
        )
        if scheduler is not None:
            if sched_type == "ReduceLROnPlateau":
                scheduler.step(val_nll)
            else:
                scheduler.step()
        if val_nll < best_nll:
            best_nll = val_nll
            best_metrics = dict(metrics)
            best_state = clean_state_dict(model.state_dict())
            best_epoch = ep
            patience = 0
        else:
            patience += 1
            if patience_limit is not None and patience > patience_limit:
                console().print(
                    f"[yellow]Early stopping at epoch {ep}; best epoch was {best_epoch} with val_nll={best_nll:.6f}[/yellow]"
                )
                break

    if best_state is None:
        raise RuntimeError("Training produced no finite validation score; no model was saved")
    console().print(f"[bold]Best epoch {best_epoch} with val_nll={best_nll:.6f}[/bold]")
    print_metrics(best_metrics)

    # --- save artifacts
    art_cfg = cfg["artifacts"]
    art_dir = art_cfg["dir"]
    os.makedirs(art_dir, exist_ok=True)
    model_path = os.path.join(art_dir, art_cfg["model_file"])
    cfg_path = os.path.join(art_dir, art_cfg["config_file"])
    signature_path = os.path.join(art_dir, art_cfg["signature_file"])
    encoders_path = os.path.join(art_dir, art_cfg["encoders_file"])
    torch.save(best_state, model_path)
    save_yaml(cfg, cfg_path)
    io_utils.save_pickle(
        {
            "encoders": encoders,
            "static_cat_cols": list(data_cfg.static_cat_cols),
            "static_real_cols": list(data_cfg.static_real_cols),
            "item_ids": [e.item_id for e in entries],
        },
        encoders_path,
    )
    signature_payload = {
        "signature_version": 1,
        "window": pipeline_cfg.window.to_dict(),
        "model": {
            "num_layers": model.num_layers,
            "hidden_size": model.hidden_size,
            "distr_output": pipeline_cfg.model.distr_output,
            "lags": list(model.lags),
            "embedding_dimension": list(model.embedder.embedding_dims),
            "scaling": pipeline_cfg.model.scaling,
        },
        "data": {
            "freq": data_cfg.freq,
            "cardinality": list(cardinality),
            "num_feat_static_real": num_feat_static_real,
            "num_time_features": n_time_features,
        },
    }
    io_utils.save_json(signature_payload, signature_path)
    console().print(
        f"[green]Saved:[/green] {model_path}, {cfg_path}, {signature_path}, {encoders_path}"
    )
    return best_nll, {
        "model": model_path,
        "config": cfg_path,
        "signature": signature_path,
        "encoders": encoders_path,
        "metrics": best_metrics,
    }


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser()
    parser.add_argument("--config", type=str, default="configs/default.yaml")
    parser.add_argument("--override", nargs="*", default=[])
    args = parser.parse_args()
    cfg = PipelineConfig.from_files(args.config, overrides=args.override)
    best_nll, paths = train_once(cfg)
    console().print(f"[bold magenta]Final best NLL: {best_nll:.6f}[/bold magenta]")


if __name__ == "__main__":
    main()
