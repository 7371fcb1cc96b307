from pathlib import Path
import sys

import numpy as np
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from deepar_forecast.data import samplers  # noqa: E402
from deepar_forecast.data.samplers import (  # noqa: E402
    ExpectedNumInstanceSampler,
    ValidationSplitSampler,
)


def test_expected_num_instances_stay_within_bounds():
    sampler = ExpectedNumInstanceSampler(
        num_instances=5.0, min_past=3, min_future=4, rng=np.random.default_rng(0)
    )
    ts = np.arange(50, dtype=np.float32)
    counts = []
    for _ in range(200):
        idx = sampler(ts)
        assert np.all(idx >= 3)
        assert np.all(idx <= 50 - 4)
        counts.append(idx.size)
    assert np.mean(counts) == pytest.approx(5.0, abs=0.5)


def test_expected_num_instances_scale_with_series_length():
    sampler = ExpectedNumInstanceSampler(num_instances=2.0, rng=np.random.default_rng(1))
    short, long = np.zeros(20), np.zeros(200)
    short_total = long_total = 0
    for _ in range(300):
        short_total += sampler(short).size
        long_total += sampler(long).size
    assert long_total > 5 * short_total


def test_series_shorter_than_bounds_yield_nothing():
    sampler = ExpectedNumInstanceSampler(num_instances=1.0, min_future=10)
    assert sampler(np.zeros(5)).size == 0
    assert ValidationSplitSampler(min_past=4, min_future=4)(np.zeros(6)).size == 0


def test_validation_and_test_split_points():
    ts = np.zeros(30)
    assert ValidationSplitSampler(min_future=7)(ts).tolist() == [23]
    assert samplers.TestSplitSampler()(ts).tolist() == [30]
    assert samplers.TestSplitSampler(min_past=31)(ts).size == 0


def test_num_instances_must_be_positive():
    with pytest.raises(ValueError):
        ExpectedNumInstanceSampler(num_instances=0)
