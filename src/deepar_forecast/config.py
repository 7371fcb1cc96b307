from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
import copy
import os
import textwrap
import yaml
from gluonts.time_feature import get_lags_for_frequency

from .models.distribution_output import DISTRIBUTION_OUTPUTS
from .utils.time_features import FEATURE_EXTRACTORS, time_features_from_frequency_str


def _deep_set(d: Dict[str, Any], path: Iterable[str], value: Any) -> None:
    cur = d
    path = list(path)
    for p in path[:-1]:
        if p not in cur or not isinstance(cur[p], dict):
            cur[p] = {}
        cur = cur[p]
    cur[path[-1]] = value


def _parse_scalar(s: str) -> Any:
    # booleans, null, ints, floats and inline lists via the YAML loader
    try:
        return yaml.safe_load(s)
    except yaml.YAMLError:
        return s


def load_yaml(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def save_yaml(obj: Dict[str, Any], path: str) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(obj, f, allow_unicode=True, sort_keys=False)


def apply_overrides(cfg: Dict[str, Any], overrides: Iterable[str]) -> Dict[str, Any]:
    """
    Apply CLI overrides like a.b.c=value into nested dict.
    """
    out = copy.deepcopy(cfg)
    for item in overrides:
        if "=" not in item:
            raise ValueError(f"Override '{item}' must have the form key.path=value")
        key, val = item.split("=", 1)
        path = key.strip().split(".")
        _deep_set(out, path, _parse_scalar(val.strip()))
    return out


def _optional_int_list(value: Any, name: str) -> Optional[List[int]]:
    if value is None:
        return None
    if not isinstance(value, (list, tuple)):
        raise ValueError(f"{name} must be a list or null")
    return [int(v) for v in value]


@dataclass(frozen=True)
class TimeFeatureConfig:
    features: Optional[List[str]] = None  # None: derived from data.freq
    encoding: Any = "normalized"
    add_age: bool = True

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any] | None) -> "TimeFeatureConfig":
        data = dict(mapping or {})
        feats = data.get("features")
        if feats is not None and not isinstance(feats, list):
            raise ValueError("data.time_features.features must be a list or null")
        return cls(
            features=None if feats is None else [str(f) for f in feats],
            encoding=data.get("encoding", "normalized"),
            add_age=bool(data.get("add_age", True)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "features": None if self.features is None else list(self.features),
            "encoding": self.encoding,
            "add_age": self.add_age,
        }


@dataclass(frozen=True)
class WindowConfig:
    """Context and horizon lengths shared across training and inference."""

    context_length: int
    prediction_length: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "context_length", int(self.context_length))
        object.__setattr__(self, "prediction_length", int(self.prediction_length))

    @property
    def total_length(self) -> int:
        return int(self.context_length + self.prediction_length)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "context_length": int(self.context_length),
            "prediction_length": int(self.prediction_length),
        }


@dataclass(frozen=True)
class ModelConfig:
    num_layers: int
    hidden_size: int
    dropout: float
    embedding_dimension: Optional[List[int]]
    lags_seq: Optional[List[int]]
    scaling: bool
    minimum_scale: float
    default_scale: Optional[float]
    distr_output: str
    num_parallel_samples: int

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any]) -> "ModelConfig":
        data = dict(mapping)
        default_scale = data.get("default_scale")
        return cls(
            num_layers=int(data.get("num_layers", 2)),
            hidden_size=int(data.get("hidden_size", 40)),
            dropout=float(data.get("dropout", 0.1)),
            embedding_dimension=_optional_int_list(
                data.get("embedding_dimension"), "model.embedding_dimension"
            ),
            lags_seq=_optional_int_list(data.get("lags_seq"), "model.lags_seq"),
            scaling=bool(data.get("scaling", True)),
            minimum_scale=float(data.get("minimum_scale", 1e-10)),
            default_scale=None if default_scale is None else float(default_scale),
            distr_output=str(data.get("distr_output", "student_t")).lower(),
            num_parallel_samples=int(data.get("num_parallel_samples", 100)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "num_layers": int(self.num_layers),
            "hidden_size": int(self.hidden_size),
            "dropout": float(self.dropout),
            "embedding_dimension": self.embedding_dimension,
            "lags_seq": self.lags_seq,
            "scaling": bool(self.scaling),
            "minimum_scale": float(self.minimum_scale),
            "default_scale": self.default_scale,
            "distr_output": self.distr_output,
            "num_parallel_samples": int(self.num_parallel_samples),
        }


@dataclass(frozen=True)
class DataConfig:
    train_csv: str
    predict_csv: Optional[str]
    date_col: str
    id_col: str
    target_col: str
    static_cat_cols: List[str]
    static_real_cols: List[str]
    freq: str
    fill_missing_dates: bool
    encoding: str
    time_features: TimeFeatureConfig = field(default_factory=TimeFeatureConfig)

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any]) -> "DataConfig":
        data = dict(mapping)
        predict_csv = data.get("predict_csv")
        return cls(
            train_csv=str(data.get("train_csv", "")),
            predict_csv=None if predict_csv in {None, ""} else str(predict_csv),
            date_col=str(data.get("date_col", "date")),
            id_col=str(data.get("id_col", "id")),
            target_col=str(data.get("target_col", "target")),
            static_cat_cols=[str(c) for c in data.get("static_cat_cols") or []],
            static_real_cols=[str(c) for c in data.get("static_real_cols") or []],
            freq=str(data.get("freq", "D")),
            fill_missing_dates=bool(data.get("fill_missing_dates", True)),
            encoding=str(data.get("encoding", "utf-8")),
            time_features=TimeFeatureConfig.from_mapping(data.get("time_features")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "train_csv": self.train_csv,
            "predict_csv": self.predict_csv,
            "date_col": self.date_col,
            "id_col": self.id_col,
            "target_col": self.target_col,
            "static_cat_cols": list(self.static_cat_cols),
            "static_real_cols": list(self.static_real_cols),
            "freq": self.freq,
            "fill_missing_dates": self.fill_missing_dates,
            "encoding": self.encoding,
            "time_features": self.time_features.to_dict(),
        }


@dataclass(frozen=True)
class TrainConfig:
    device: str
    epochs: int
    batch_size: int
    num_instances: float
    lr: float
    weight_decay: float
    grad_clip_norm: float
    early_stopping_patience: Optional[int]
    amp: bool
    deterministic: bool
    matmul_precision: str
    num_workers: int
    pin_memory: bool
    val_strategy: str

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any]) -> "TrainConfig":
        data = dict(mapping)
        val_cfg = dict(data.get("val") or {})
        patience = data.get("early_stopping_patience")
        return cls(
            device=str(data.get("device", "cpu")),
            epochs=int(data.get("epochs", 1)),
            batch_size=int(data.get("batch_size", 32)),
            num_instances=float(data.get("num_instances", 1.0)),
            lr=float(data.get("lr", 1e-3)),
            weight_decay=float(data.get("weight_decay", 0.0)),
            grad_clip_norm=float(data.get("grad_clip_norm", 0.0)),
            early_stopping_patience=None if patience is None else int(patience),
            amp=bool(data.get("amp", False)),
            deterministic=bool(data.get("deterministic", False)),
            matmul_precision=str(data.get("matmul_precision", "highest")),
            num_workers=int(data.get("num_workers", 0)),
            pin_memory=bool(data.get("pin_memory", False)),
            val_strategy=str(val_cfg.get("strategy", "holdout")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device": self.device,
            "epochs": int(self.epochs),
            "batch_size": int(self.batch_size),
            "num_instances": float(self.num_instances),
            "lr": float(self.lr),
            "weight_decay": float(self.weight_decay),
            "grad_clip_norm": float(self.grad_clip_norm),
            "early_stopping_patience": self.early_stopping_patience,
            "amp": self.amp,
            "deterministic": self.deterministic,
            "matmul_precision": self.matmul_precision,
            "num_workers": int(self.num_workers),
            "pin_memory": self.pin_memory,
            "val": {"strategy": self.val_strategy},
        }


@dataclass(frozen=True)
class PredictConfig:
    output_path: str
    quantiles: List[float]
    batch_size: int

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any] | None) -> "PredictConfig":
        data = dict(mapping or {})
        return cls(
            output_path=str(data.get("output_path", "outputs/forecast.csv")),
            quantiles=[float(q) for q in data.get("quantiles", [0.1, 0.5, 0.9])],
            batch_size=int(data.get("batch_size", 64)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "output_path": self.output_path,
            "quantiles": list(self.quantiles),
            "batch_size": int(self.batch_size),
        }


_ARTIFACT_DEFAULTS = {
    "dir": "artifacts",
    "model_file": "deepar.pt",
    "config_file": "config_used.yaml",
    "signature_file": "model_signature.json",
    "encoders_file": "encoders.pkl",
}

_TUNING_DEFAULTS = {
    "seed": 2025,
    "sampler": "tpe",
    "pruner": "median",
    "timeout_min": None,
}


@dataclass(frozen=True)
class PipelineConfig:
    """Normalised configuration with validation across dependent sections."""

    raw: Dict[str, Any]
    window: WindowConfig
    model: ModelConfig
    data: DataConfig
    train: TrainConfig
    predict: PredictConfig

    @classmethod
    def from_files(
        cls, config_path: str, overrides: Iterable[str] | None = None
    ) -> "PipelineConfig":
        base = load_yaml(config_path)
        if overrides:
            base = apply_overrides(base, overrides)
        return cls.from_mapping(base)

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any]) -> "PipelineConfig":
        base = copy.deepcopy(mapping)
        window_raw = dict(base.get("window") or {})
        if "prediction_length" not in window_raw:
            raise ValueError("Configuration must specify window.prediction_length")
        prediction_length = window_raw["prediction_length"]
        context_length = window_raw.get("context_length")
        window_cfg = WindowConfig(
            context_length=prediction_length if context_length is None else context_length,
            prediction_length=prediction_length,
        )
        model_cfg = ModelConfig.from_mapping(base.get("model") or {})
        data_cfg = DataConfig.from_mapping(base.get("data") or {})
        train_cfg = TrainConfig.from_mapping(base.get("train") or {})
        predict_cfg = PredictConfig.from_mapping(base.get("predict"))

        base["window"] = window_cfg.to_dict()
        base.setdefault("model", {}).update(model_cfg.to_dict())
        base.setdefault("data", {}).update(data_cfg.to_dict())
        base.setdefault("train", {}).update(train_cfg.to_dict())
        base["predict"] = predict_cfg.to_dict()
        for key, value in _ARTIFACT_DEFAULTS.items():
            base.setdefault("artifacts", {}).setdefault(key, value)
        for key, value in _TUNING_DEFAULTS.items():
            base.setdefault("tuning", {}).setdefault(key, value)

        instance = cls(
            raw=base,
            window=window_cfg,
            model=model_cfg,
            data=data_cfg,
            train=train_cfg,
            predict=predict_cfg,
        )
        instance.validate()
        return instance

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self.raw)

    def apply_overrides(self, overrides: Iterable[str]) -> "PipelineConfig":
        if not overrides:
            return self
        new_raw = apply_overrides(self.to_dict(), overrides)
        return PipelineConfig.from_mapping(new_raw)

    def resolved_lags(self) -> List[int]:
        if self.model.lags_seq is not None:
            return sorted(set(self.model.lags_seq))
        return get_lags_for_frequency(self.data.freq)

    def validate(self) -> None:
        errors: List[str] = []
        if self.window.context_length <= 0:
            errors.append("window.context_length must be positive")
        if self.window.prediction_length <= 0:
            errors.append("window.prediction_length must be positive")
        if self.model.num_layers <= 0:
            errors.append("model.num_layers must be positive")
        if self.model.hidden_size <= 0:
            errors.append("model.hidden_size must be positive")
        if not 0.0 <= self.model.dropout < 1.0:
            errors.append("model.dropout must be in [0, 1)")
        if self.model.distr_output not in DISTRIBUTION_OUTPUTS:
            errors.append(
                f"model.distr_output must be one of {sorted(DISTRIBUTION_OUTPUTS)}"
            )
        if self.model.minimum_scale <= 0:
            errors.append("model.minimum_scale must be strictly positive")
        if self.model.default_scale is not None and self.model.default_scale <= 0:
            errors.append("model.default_scale must be strictly positive when set")
        if self.model.num_parallel_samples <= 0:
            errors.append("model.num_parallel_samples must be positive")
        if self.model.lags_seq is not None:
            if not self.model.lags_seq or min(self.model.lags_seq) <= 0:
                errors.append("model.lags_seq must be a non-empty list of positive integers")
        else:
            try:
                get_lags_for_frequency(self.data.freq)
            except Exception as err:
                errors.append(f"data.freq: cannot derive default lags for '{self.data.freq}' ({err})")
        num_cat = max(1, len(self.data.static_cat_cols))
        if self.model.embedding_dimension is not None and len(
            self.model.embedding_dimension
        ) != num_cat:
            errors.append(
                f"model.embedding_dimension must list {num_cat} sizes (one per static categorical column)"
            )
        tf_cfg = self.data.time_features
        if tf_cfg.features is None:
            try:
                time_features_from_frequency_str(self.data.freq)
            except ValueError as err:
                errors.append(f"data.time_features: {err}")
        else:
            unknown = [f for f in tf_cfg.features if f not in FEATURE_EXTRACTORS]
            if unknown:
                errors.append(f"data.time_features.features has unknown entries {unknown}")
        if self.train.epochs <= 0:
            errors.append("train.epochs must be positive")
        if self.train.batch_size <= 0:
            errors.append("train.batch_size must be positive")
        if self.train.num_instances <= 0:
            errors.append("train.num_instances must be positive")
        if self.train.val_strategy not in {"holdout", "none"}:
            errors.append("train.val.strategy must be one of {'holdout', 'none'}")
        if any(not 0.0 < q < 1.0 for q in self.predict.quantiles):
            errors.append("predict.quantiles must lie strictly between 0 and 1")
        if self.predict.batch_size <= 0:
            errors.append("predict.batch_size must be positive")
        if errors:
            raise ValueError(
                "\n".join(
                    [
                        "Configuration validation failed with the following issues:",
                        *[f"- {err}" for err in errors],
                    ]
                )
            )

    def describe(self) -> str:
        payload = {
            "window": self.window.to_dict(),
            "model": self.model.to_dict(),
            "data": self.data.to_dict(),
            "train": self.train.to_dict(),
            "predict": self.predict.to_dict(),
        }
        return textwrap.indent(yaml.safe_dump(payload, sort_keys=False), prefix="  ")
