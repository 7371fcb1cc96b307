from pathlib import Path
import sys

import numpy as np
import pandas as pd
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from deepar_forecast.utils import io as io_utils  # noqa: E402


def _frame() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "date": ["2024-01-01", "2024-01-02", "2024-01-04", "2024-01-02", "2024-01-03", "2024-01-04"],
            "id": ["a", "a", "a", "b", "b", "b"],
            "store": ["x", "x", "x", "y", "y", "y"],
            "size": [1.5, 1.5, 1.5, 3.0, 3.0, 3.0],
            "target": [1.0, 2.0, 4.0, 5.0, np.nan, 7.0],
        }
    )


def test_pivot_fills_calendar_gaps_with_nan():
    wide = io_utils.pivot_long_to_wide(_frame(), "date", "id", "target", freq="D")
    assert list(wide.columns) == ["a", "b"]
    assert len(wide) == 4
    assert np.isnan(wide.loc[pd.Timestamp("2024-01-03"), "a"])


def test_build_entries_with_static_features():
    df = _frame()
    encoders = io_utils.fit_category_encoders(df, ["store"])
    entries = io_utils.build_series_entries(
        df,
        date_col="date",
        id_col="id",
        target_col="target",
        freq="D",
        static_cat_cols=["store"],
        static_real_cols=["size"],
        encoders=encoders,
    )
    a, b = entries
    assert a.item_id == "a"
    assert a.start == pd.Timestamp("2024-01-01")
    np.testing.assert_array_equal(np.isnan(a.target), [False, False, True, False])
    # b starts at its first observation
    assert b.start == pd.Timestamp("2024-01-02")
    assert len(b.target) == 3
    assert a.feat_static_cat.tolist() == [0] and b.feat_static_cat.tolist() == [1]
    assert b.feat_static_real.tolist() == pytest.approx([3.0])
    assert io_utils.cardinality_from_encoders(encoders, ["store"]) == [2]


def test_entries_without_static_columns_get_dummy_features():
    entries = io_utils.build_series_entries(
        _frame(), date_col="date", id_col="id", target_col="target", freq="D"
    )
    assert all(e.feat_static_cat.tolist() == [0] for e in entries)
    assert all(e.feat_static_real.tolist() == [0.0] for e in entries)
    assert io_utils.cardinality_from_encoders({}, []) == [1]


def test_unseen_categories_map_to_zero():
    codes = io_utils.encode_categories(pd.Series(["b", "zzz", "a"]), ["a", "b"], "store")
    assert codes.tolist() == [1, 0, 0]


def test_missing_columns_and_duplicates_raise():
    df = _frame()
    with pytest.raises(ValueError, match="Missing required columns"):
        io_utils.pivot_long_to_wide(df, "date", "id", "sales", freq="D")
    dup = pd.concat([df, df.iloc[:1]])
    with pytest.raises(ValueError, match="Duplicate"):
        io_utils.pivot_long_to_wide(dup, "date", "id", "target", freq="D")
