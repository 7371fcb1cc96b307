from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import torch
from torch.utils.data import Dataset

from ..utils.time_features import build_time_features
from .samplers import (
    ExpectedNumInstanceSampler,
    InstanceSampler,
    TestSplitSampler,
    ValidationSplitSampler,
)

BUNDLE_FIELDS: Tuple[str, ...] = (
    "feat_static_cat",
    "feat_static_real",
    "past_time_feat",
    "past_target",
    "past_observed_values",
    "future_time_feat",
    "future_target",
    "future_observed_values",
)
PREDICTION_FIELDS: Tuple[str, ...] = BUNDLE_FIELDS[:6]


@dataclass
class SeriesEntry:
    """One univariate series with its static covariates.

    ``target`` holds NaN where the value is missing.
    """

    item_id: str
    start: pd.Timestamp
    target: np.ndarray
    feat_static_cat: np.ndarray = field(default_factory=lambda: np.zeros(1, dtype=np.int64))
    feat_static_real: np.ndarray = field(default_factory=lambda: np.zeros(1, dtype=np.float32))

    def __post_init__(self) -> None:
        self.start = pd.Timestamp(self.start)
        self.target = np.asarray(self.target, dtype=np.float32).reshape(-1)
        self.feat_static_cat = np.asarray(self.feat_static_cat, dtype=np.int64).reshape(-1)
        self.feat_static_real = np.asarray(self.feat_static_real, dtype=np.float32).reshape(-1)


def _slice_past(values: np.ndarray, t: int, length: int) -> np.ndarray:
    """``values[t - length:t]`` left-padded with zeros when ``t < length``."""
    start = t - length
    if start >= 0:
        return values[start:t]
    pad = np.zeros((-start,) + values.shape[1:], dtype=values.dtype)
    return np.concatenate([pad, values[:t]], axis=0)


class DeepARDataset(Dataset):
    """Window series into DeepAR input bundles.

    Each item is a tuple of tensors ordered as :data:`BUNDLE_FIELDS`
    (``mode`` ``"train"``/``"validation"``) or :data:`PREDICTION_FIELDS`
    (``mode`` ``"test"``). Missing target values and the left padding of short
    histories are zero-filled and marked unobserved.
    """

    def __init__(
        self,
        entries: Sequence[SeriesEntry],
        *,
        freq: str,
        context_length: int,
        prediction_length: int,
        history_length: int,
        mode: str = "train",
        instance_sampler: Optional[InstanceSampler] = None,
        time_feature_config: Mapping[str, Any] | None = None,
        num_instances: float = 1.0,
        seed: Optional[int] = None,
    ) -> None:
        super().__init__()
        if mode not in {"train", "validation", "test"}:
            raise ValueError("mode must be one of {'train', 'validation', 'test'}")
        if history_length < context_length:
            raise ValueError("history_length must be at least context_length")
        self.entries = list(entries)
        self.freq = freq
        self.context_length = int(context_length)
        self.prediction_length = int(prediction_length)
        self.history_length = int(history_length)
        self.mode = mode
        if instance_sampler is None:
            if mode == "train":
                instance_sampler = ExpectedNumInstanceSampler(
                    num_instances=num_instances,
                    min_future=self.prediction_length,
                    rng=np.random.default_rng(seed),
                )
            elif mode == "validation":
                instance_sampler = ValidationSplitSampler(min_future=self.prediction_length)
            else:
                instance_sampler = TestSplitSampler()
        self.instance_sampler = instance_sampler

        tf_cfg = dict(time_feature_config or {})
        self._targets: List[np.ndarray] = []
        self._observed: List[np.ndarray] = []
        self._time_feats: List[np.ndarray] = []
        for entry in self.entries:
            observed = np.isfinite(entry.target)
            self._targets.append(np.where(observed, entry.target, 0.0).astype(np.float32))
            self._observed.append(observed.astype(np.float32))
            index = pd.date_range(
                entry.start, periods=len(entry.target) + self.prediction_length, freq=freq
            )
            self._time_feats.append(build_time_features(index, tf_cfg, freq=freq))
        self.num_time_features = (
            int(self._time_feats[0].shape[1]) if self._time_feats else 0
        )
        self.instances: List[Tuple[int, int]] = []
        self.resample()

    def resample(self) -> None:
        """Draw a fresh set of ``(entry, split point)`` instances."""
        self.instances = [
            (i, int(t))
            for i, target in enumerate(self._targets)
            for t in self.instance_sampler(target)
        ]

    def __len__(self) -> int:
        return len(self.instances)

    def forecast_start(self, idx: int) -> pd.Timestamp:
        """Timestamp of the first future step of instance ``idx``."""
        entry_idx, t = self.instances[idx]
        entry = self.entries[entry_idx]
        return pd.date_range(entry.start, periods=t + 1, freq=self.freq)[-1]

    def item_id(self, idx: int) -> str:
        return self.entries[self.instances[idx][0]].item_id

    def __getitem__(self, idx: int) -> Tuple[torch.Tensor, ...]:
        entry_idx, t = self.instances[idx]
        entry = self.entries[entry_idx]
        target = self._targets[entry_idx]
        observed = self._observed[entry_idx]
        time_feat = self._time_feats[entry_idx]
        horizon = self.prediction_length

        items: Dict[str, np.ndarray] = {
            "feat_static_cat": entry.feat_static_cat,
            "feat_static_real": entry.feat_static_real,
            "past_time_feat": _slice_past(time_feat, t, self.history_length),
            "past_target": _slice_past(target, t, self.history_length),
            "past_observed_values": _slice_past(observed, t, self.history_length),
            "future_time_feat": time_feat[t : t + horizon],
        }
        if self.mode != "test":
            items["future_target"] = target[t : t + horizon]
            items["future_observed_values"] = observed[t : t + horizon]
            fields = BUNDLE_FIELDS
        else:
            fields = PREDICTION_FIELDS
        return tuple(torch.from_numpy(np.ascontiguousarray(items[name])) for name in fields)
