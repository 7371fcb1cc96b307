from pathlib import Path
import sys

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from deepar_forecast.config import PipelineConfig  # noqa: E402
from deepar_forecast.models.deepar import DeepARNetwork  # noqa: E402
from deepar_forecast.utils.time_features import norm_freq_str  # noqa: E402


def _config(freq: str) -> PipelineConfig:
    return PipelineConfig.from_mapping({"window": {"prediction_length": 3}, "data": {"freq": freq}})


def test_daily_lags_cover_weekly_and_monthly_cycles():
    lags = _config("D").resolved_lags()
    assert lags[:7] == [1, 2, 3, 4, 5, 6, 7]
    for lag in (14, 21, 28, 30, 60):
        assert lag in lags
    assert lags == sorted(set(lags))
    assert max(lags) <= 1200


def test_multiple_of_base_frequency_shrinks_seasonal_lags():
    lags = _config("2D").resolved_lags()
    assert 7 in lags  # two weeks
    assert 15 in lags  # one month


def test_configured_lags_take_precedence():
    cfg = PipelineConfig.from_mapping(
        {"window": {"prediction_length": 3}, "model": {"lags_seq": [7, 1, 7, 2]}}
    )
    assert cfg.resolved_lags() == [1, 2, 7]


def test_network_derives_lags_from_frequency():
    net = DeepARNetwork(
        context_length=5,
        prediction_length=2,
        num_feat_dynamic_real=0,
        num_feat_static_real=1,
        cardinality=[1],
        freq="D",
    )
    assert net.lags == _config("D").resolved_lags()
    assert net.lags_seq[0] == 0


@pytest.mark.parametrize("freq,expected", [("D", (1, "D")), ("3h", (3, "H")), ("W-SUN", (1, "W"))])
def test_norm_freq_str(freq, expected):
    assert norm_freq_str(freq) == expected


def test_unsupported_frequency_raises():
    with pytest.raises(ValueError, match="data.freq"):
        _config("ns")
    with pytest.raises(ValueError, match="Cannot derive default lags"):
        DeepARNetwork(
            context_length=5,
            prediction_length=2,
            num_feat_dynamic_real=0,
            num_feat_static_real=1,
            cardinality=[1],
            freq="ns",
        )
