from __future__ import annotations

from typing import Sequence, Type, TypeVar

import torch
from .config import PipelineConfig
from .models.deepar import DeepARNetwork
from .utils.logging import console
from .utils.seed import seed_everything

NetworkT = TypeVar("NetworkT", bound=DeepARNetwork)


def bootstrap(cfg: dict) -> torch.device:
    want = cfg["train"]["device"]
    if want == "cuda" and not torch.cuda.is_available():
        console().print("[yellow]CUDA not available; falling back to CPU.[/yellow]")
    device = torch.device("cuda:0" if (want == "cuda" and torch.cuda.is_available()) else "cpu")
    deterministic = bool(cfg["train"].get("deterministic", False))
    torch.set_float32_matmul_precision(cfg["train"].get("matmul_precision", "highest"))
    seed_everything(int(cfg.get("tuning", {}).get("seed", 2025)), deterministic=deterministic)
    return device


def build_network(
    network_cls: Type[NetworkT],
    cfg: PipelineConfig,
    *,
    cardinality: Sequence[int],
    num_feat_static_real: int,
    num_time_features: int,
) -> NetworkT:
    """Instantiate a DeepAR network from the model and window sections."""
    model_cfg = cfg.model
    return network_cls(
        context_length=cfg.window.context_length,
        prediction_length=cfg.window.prediction_length,
        num_feat_dynamic_real=num_time_features,
        num_feat_static_real=num_feat_static_real,
        cardinality=cardinality,
        embedding_dimension=model_cfg.embedding_dimension,
        num_layers=model_cfg.num_layers,
        hidden_size=model_cfg.hidden_size,
        dropout=model_cfg.dropout,
        lags_seq=cfg.resolved_lags(),
        distr_output=model_cfg.distr_output,
        scaling=model_cfg.scaling,
        minimum_scale=model_cfg.minimum_scale,
        default_scale=model_cfg.default_scale,
        num_parallel_samples=model_cfg.num_parallel_samples,
    )
