from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from pandas.tseries.frequencies import to_offset

EncodingType = Union[str, Mapping[str, str]]

# pandas renamed several offset aliases (``ME``, ``h``, ``min`` ...); map them
# back onto a single base name per unit.
_BASE_ALIASES = {
    "ME": "M",
    "MS": "M",
    "BM": "M",
    "BME": "M",
    "QE": "Q",
    "QS": "Q",
    "BQ": "Q",
    "BQE": "Q",
    "A": "Y",
    "AS": "Y",
    "YE": "Y",
    "YS": "Y",
    "h": "H",
    "T": "min",
    "s": "S",
}


def norm_freq_str(freq_str: str) -> Tuple[int, str]:
    """Return ``(multiple, base)`` for a pandas frequency string."""

    try:
        offset = to_offset(freq_str)
    except ValueError as err:
        raise ValueError(f"Invalid frequency string '{freq_str}'") from err
    base = offset.name.split("-")[0]
    return int(offset.n), _BASE_ALIASES.get(base, base)


def _extract_second(index: pd.DatetimeIndex) -> Tuple[np.ndarray, int]:
    values = index.second.to_numpy()
    return values.astype(np.int64, copy=False), 60


def _extract_minute(index: pd.DatetimeIndex) -> Tuple[np.ndarray, int]:
    values = index.minute.to_numpy()
    return values.astype(np.int64, copy=False), 60


def _extract_hour(index: pd.DatetimeIndex) -> Tuple[np.ndarray, int]:
    values = index.hour.to_numpy()
    return values.astype(np.int64, copy=False), 24


def _extract_day_of_week(index: pd.DatetimeIndex) -> Tuple[np.ndarray, int]:
    values = index.dayofweek.to_numpy()
    return values.astype(np.int64, copy=False), 7


def _extract_day_of_month(index: pd.DatetimeIndex) -> Tuple[np.ndarray, int]:
    values = index.day.to_numpy() - 1
    return values.astype(np.int64, copy=False), 31


def _extract_day_of_year(index: pd.DatetimeIndex) -> Tuple[np.ndarray, int]:
    values = index.dayofyear.to_numpy() - 1
    return values.astype(np.int64, copy=False), 366


def _extract_week_of_year(index: pd.DatetimeIndex) -> Tuple[np.ndarray, int]:
    week = index.isocalendar().week
    values = week.to_numpy() - 1
    return values.astype(np.int64, copy=False), 53


def _extract_month(index: pd.DatetimeIndex) -> Tuple[np.ndarray, int]:
    values = index.month.to_numpy() - 1
    return values.astype(np.int64, copy=False), 12


FEATURE_EXTRACTORS = {
    "second_of_minute": _extract_second,
    "minute_of_hour": _extract_minute,
    "hour_of_day": _extract_hour,
    "day_of_week": _extract_day_of_week,
    "day_of_month": _extract_day_of_month,
    "day_of_year": _extract_day_of_year,
    "week_of_year": _extract_week_of_year,
    "month_of_year": _extract_month,
}

# Calendar features that vary within one seasonal cycle of each base unit.
FEATURES_BY_FREQUENCY: Dict[str, List[str]] = {
    "Y": [],
    "Q": ["month_of_year"],
    "M": ["month_of_year"],
    "W": ["day_of_month", "week_of_year"],
    "D": ["day_of_week", "day_of_month", "day_of_year"],
    "B": ["day_of_week", "day_of_month", "day_of_year"],
    "H": ["hour_of_day", "day_of_week", "day_of_month", "day_of_year"],
    "min": ["minute_of_hour", "hour_of_day", "day_of_week", "day_of_month", "day_of_year"],
    "S": [
        "second_of_minute",
        "minute_of_hour",
        "hour_of_day",
        "day_of_week",
        "day_of_month",
        "day_of_year",
    ],
}


def time_features_from_frequency_str(freq_str: str) -> List[str]:
    """Names of the calendar features suited to ``freq_str``."""

    _, base = norm_freq_str(freq_str)
    if base not in FEATURES_BY_FREQUENCY:
        supported = ", ".join(sorted(FEATURES_BY_FREQUENCY))
        raise ValueError(
            f"Unsupported frequency '{freq_str}'. Supported base frequencies: {supported}"
        )
    return list(FEATURES_BY_FREQUENCY[base])


def _resolve_encoding(feature: str, encoding: EncodingType) -> str:
    if isinstance(encoding, Mapping):
        enc_val = encoding.get(feature, encoding.get("default", "normalized"))
    else:
        enc_val = encoding
    enc_str = str(enc_val).lower()
    if enc_str not in {"normalized", "cyclical", "onehot"}:
        raise ValueError(
            f"Unsupported encoding '{enc_val}' for feature '{feature}'. Expected 'normalized', 'cyclical', or 'onehot'."
        )
    return enc_str


def _encode_component(values: np.ndarray, period: int, encoding: str) -> np.ndarray:
    mod_values = np.mod(values.reshape(-1), period)
    if encoding == "cyclical":
        angles = 2.0 * np.pi * (mod_values.astype(np.float32) / float(period))
        return np.stack([np.sin(angles), np.cos(angles)], axis=1).astype(np.float32)
    if encoding == "onehot":
        onehot = np.zeros((mod_values.size, int(period)), dtype=np.float32)
        if mod_values.size > 0:
            onehot[np.arange(mod_values.size), mod_values.astype(np.int64)] = 1.0
        return onehot
    # normalized: spread the cycle over [-0.5, 0.5]
    numeric = mod_values.astype(np.float32) / float(max(period - 1, 1)) - 0.5
    return numeric.reshape(-1, 1)


def age_feature(length: int, log_scale: bool = True) -> np.ndarray:
    """Distance from the first observation, ``log10(2 + t)`` by default."""

    age = np.arange(length, dtype=np.float32)
    if log_scale:
        age = np.log10(2.0 + age)
    return age.reshape(-1, 1)


def _as_datetime_index(index: Union[pd.DatetimeIndex, Sequence]) -> pd.DatetimeIndex:
    if isinstance(index, pd.DatetimeIndex):
        return index
    return pd.to_datetime(np.asarray(index))


def build_time_features(
    index: Union[pd.DatetimeIndex, Sequence],
    config: Mapping[str, object] | None,
    *,
    freq: Optional[str] = None,
    return_names: bool = False,
) -> Union[np.ndarray, Tuple[np.ndarray, List[str]]]:
    """Construct the dynamic covariates of one series.

    Args:
        index: Datetime index of the series, starting at its first observation.
        config: Mapping with optional keys ``features`` (``None`` selects the
            defaults of ``freq``), ``encoding`` and ``add_age``.
        freq: Series frequency used when ``features`` is not given.
        return_names: Also return the column names.

    Returns:
        ``float32`` array ``[len(index), feature_dim]`` (and the names when
        requested). The age feature, when enabled, is the last column.
    """

    cfg = dict(config or {})
    idx = _as_datetime_index(index)
    features = cfg.get("features")
    if features is None:
        if freq is None:
            raise ValueError("freq is required when time feature names are not configured")
        features = time_features_from_frequency_str(freq)
    encoding_cfg: EncodingType = cfg.get("encoding", "normalized")

    matrices: List[np.ndarray] = []
    names: List[str] = []
    for feature in features:
        extractor = FEATURE_EXTRACTORS.get(feature)
        if extractor is None:
            raise ValueError(f"Unsupported time feature '{feature}'.")
        values, period = extractor(idx)
        encoding = _resolve_encoding(feature, encoding_cfg)
        matrices.append(_encode_component(values, period, encoding))
        if encoding == "cyclical":
            names.extend([f"{feature}_sin", f"{feature}_cos"])
        elif encoding == "onehot":
            names.extend([f"{feature}_{i}" for i in range(period)])
        else:
            names.append(feature)

    if bool(cfg.get("add_age", True)):
        matrices.append(age_feature(len(idx)))
        names.append("age")

    if matrices:
        matrix = np.hstack(matrices).astype(np.float32, copy=False)
    else:
        matrix = np.zeros((len(idx), 0), dtype=np.float32)
    if return_names:
        return matrix, names
    return matrix


def num_time_features(config: Mapping[str, object] | None, freq: str) -> int:
    """Width of :func:`build_time_features` without materialising an index."""

    index = pd.date_range("2000-01-01", periods=1, freq=freq)
    return int(build_time_features(index, config, freq=freq).shape[1])


__all__ = [
    "FEATURE_EXTRACTORS",
    "age_feature",
    "build_time_features",
    "norm_freq_str",
    "num_time_features",
    "time_features_from_frequency_str",
]
