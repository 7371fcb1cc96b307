from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Sequence
import os
import json
import pickle
import logging

import numpy as np
import pandas as pd

from ..data.dataset import SeriesEntry


logger = logging.getLogger(__name__)


def read_long_csv(path: str, encoding: str = "utf-8") -> pd.DataFrame:
    if not os.path.exists(path):
        raise FileNotFoundError(f"CSV file not found: {path}")
    return pd.read_csv(path, encoding=encoding)


def _require_columns(df: pd.DataFrame, columns: Sequence[str]) -> None:
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns {missing}; available: {list(df.columns)}")


def pivot_long_to_wide(
    df: pd.DataFrame,
    date_col: str,
    id_col: str,
    target_col: str,
    freq: str,
    fill_missing_dates: bool = True,
) -> pd.DataFrame:
    """Pivot ``(date, id, target)`` rows to a ``[date, id]`` frame.

    Missing observations stay NaN so that they are treated as unobserved.
    """
    _require_columns(df, [date_col, id_col, target_col])
    df = df[[date_col, id_col, target_col]].copy()
    df[date_col] = pd.to_datetime(df[date_col])
    df[id_col] = df[id_col].astype(str)
    if df.duplicated([date_col, id_col]).any():
        raise ValueError(f"Duplicate ({date_col}, {id_col}) rows found in input data")
    wide = df.pivot(index=date_col, columns=id_col, values=target_col).sort_index()
    if fill_missing_dates:
        full_idx = pd.date_range(wide.index.min(), wide.index.max(), freq=freq)
        if len(full_idx) != len(wide.index) or not full_idx.equals(wide.index):
            extra = wide.index.difference(full_idx)
            if len(extra) > 0:
                logger.warning(
                    "%d timestamps are off the '%s' grid and will be dropped", len(extra), freq
                )
            wide = wide.reindex(full_idx)
    wide = wide.sort_index(axis=1)
    wide.index.name = None
    wide.columns.name = None
    return wide.astype(float)


def fit_category_encoders(
    df: pd.DataFrame, columns: Sequence[str]
) -> Dict[str, List[str]]:
    """Sorted category labels per static categorical column."""
    _require_columns(df, columns)
    return {c: sorted(df[c].astype(str).unique().tolist()) for c in columns}


def encode_categories(
    values: pd.Series, categories: Sequence[str], column: str
) -> np.ndarray:
    lookup = {label: code for code, label in enumerate(categories)}
    labels = values.astype(str)
    unknown = sorted(set(labels) - set(lookup))
    if unknown:
        logger.warning(
            "Column '%s' has %d categories unseen during training; mapping them to code 0",
            column,
            len(unknown),
        )
    return labels.map(lambda v: lookup.get(v, 0)).to_numpy(dtype=np.int64)


def cardinality_from_encoders(
    encoders: Mapping[str, Sequence[str]], columns: Sequence[str]
) -> List[int]:
    if not columns:
        # a single dummy category keeps the embedding input non-empty
        return [1]
    return [len(encoders[c]) for c in columns]


def _static_frame(df: pd.DataFrame, id_col: str, columns: Sequence[str]) -> pd.DataFrame:
    static = df[[id_col, *columns]].copy()
    static[id_col] = static[id_col].astype(str)
    counts = static.groupby(id_col)[list(columns)].nunique(dropna=False)
    varying = [c for c in columns if (counts[c] > 1).any()]
    if varying:
        logger.warning("Static columns %s vary within a series; using the first value", varying)
    return static.groupby(id_col)[list(columns)].first()


def build_series_entries(
    df: pd.DataFrame,
    *,
    date_col: str,
    id_col: str,
    target_col: str,
    freq: str,
    static_cat_cols: Sequence[str] = (),
    static_real_cols: Sequence[str] = (),
    encoders: Optional[Mapping[str, Sequence[str]]] = None,
    fill_missing_dates: bool = True,
) -> List[SeriesEntry]:
    """Turn a long-format frame into one :class:`SeriesEntry` per id.

    Each series starts at its first non-missing value. Without static
    columns, a dummy categorical code 0 and a dummy real value 0.0 are used.
    """
    wide = pivot_long_to_wide(
        df, date_col, id_col, target_col, freq=freq, fill_missing_dates=fill_missing_dates
    )
    encoders = dict(encoders or {})
    if static_cat_cols:
        cat_frame = _static_frame(df, id_col, static_cat_cols)
        cat_codes = {
            c: pd.Series(
                encode_categories(cat_frame[c], encoders[c], c), index=cat_frame.index
            )
            for c in static_cat_cols
        }
    if static_real_cols:
        real_frame = _static_frame(df, id_col, static_real_cols).astype(float)

    entries: List[SeriesEntry] = []
    for item_id in wide.columns:
        values = wide[item_id]
        first_valid = values.first_valid_index()
        if first_valid is None:
            logger.warning("Series '%s' has no observed values; skipping", item_id)
            continue
        values = values.loc[first_valid:]
        if static_cat_cols:
            feat_cat = np.array([cat_codes[c][item_id] for c in static_cat_cols], dtype=np.int64)
        else:
            feat_cat = np.zeros(1, dtype=np.int64)
        if static_real_cols:
            feat_real = real_frame.loc[item_id].to_numpy(dtype=np.float32)
        else:
            feat_real = np.zeros(1, dtype=np.float32)
        entries.append(
            SeriesEntry(
                item_id=str(item_id),
                start=pd.Timestamp(first_valid),
                target=values.to_numpy(dtype=np.float32),
                feat_static_cat=feat_cat,
                feat_static_real=feat_real,
            )
        )
    if not entries:
        raise ValueError("No usable series found in input data")
    return entries


def save_pickle(obj: object, path: str) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "wb") as f:
        pickle.dump(obj, f)


def load_pickle(path: str) -> object:
    with open(path, "rb") as f:
        return pickle.load(f)


def save_json(obj: dict, path: str) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, ensure_ascii=False, indent=2)


def load_json(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)
