from pathlib import Path
import sys

import numpy as np
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from deepar_forecast.utils.metrics import (  # noqa: E402
    rmsse,
    rmsse_mean,
    smape_mean,
    weighted_quantile_loss,
)


def test_smape_ignores_zero_actuals():
    y_true = np.array([[0.0, 2.0, 4.0]])
    y_pred = np.array([[5.0, 2.0, 2.0]])
    assert smape_mean(y_true, y_pred) == pytest.approx((0.0 + 2.0 * 2.0 / 6.0) / 2)
    assert smape_mean(np.zeros((2, 2)), np.ones((2, 2))) == 0.0


def test_rmsse_scales_by_actual_differences():
    y_true = np.array([[1.0, 2.0, 3.0, 4.0], [5.0, 5.0, 5.0, 5.0]])
    y_pred = y_true + np.array([[2.0, 2.0, 2.0, 2.0], [1.0, 1.0, 1.0, 1.0]])
    scores = rmsse(y_true, y_pred)
    assert scores.tolist() == pytest.approx([2.0, 1.0])
    assert rmsse_mean(y_true, y_pred) == pytest.approx(1.5)


def test_weighted_quantile_loss_zero_for_exact_samples():
    y_true = np.array([[1.0, 2.0], [3.0, 4.0]])
    samples = np.repeat(y_true[:, None, :], 10, axis=1)
    assert weighted_quantile_loss(y_true, samples, [0.1, 0.5, 0.9]) == pytest.approx(0.0)


def test_weighted_quantile_loss_median_equals_scaled_absolute_error():
    y_true = np.array([[2.0, 2.0]])
    samples = np.full((1, 5, 2), 3.0)
    # 2 * 0.5 * |diff| summed, over sum |y|
    assert weighted_quantile_loss(y_true, samples, [0.5]) == pytest.approx(2.0 / 4.0)


def test_masked_points_do_not_enter_rmsse():
    y_true = np.array([[50.0, 50.0, 0.0, 50.0]])
    y_pred = np.array([[49.0, 51.0, 20.0, 50.0]])
    observed = np.array([[1.0, 1.0, 0.0, 1.0]])
    # only the first difference survives and it is zero
    assert rmsse(y_true, y_pred, observed=observed).tolist() == [1.0]

    y_true = np.array([[1.0, 3.0, 0.0, 7.0, 9.0]])
    y_pred = np.array([[2.0, 3.0, 5.0, 7.0, 10.0]])
    observed = np.array([[1.0, 1.0, 0.0, 1.0, 1.0]])
    expected = np.sqrt((2.0 / 4.0) / ((4.0 + 4.0) / 2.0))
    assert rmsse(y_true, y_pred, observed=observed)[0] == pytest.approx(expected)


def test_fully_unobserved_series_are_skipped_in_mean():
    y_true = np.array([[1.0, 2.0, 3.0], [0.0, 0.0, 0.0]])
    y_pred = np.array([[2.0, 3.0, 4.0], [5.0, 5.0, 5.0]])
    observed = np.array([[1.0, 1.0, 1.0], [0.0, 0.0, 0.0]])
    scores = rmsse(y_true, y_pred, observed=observed)
    assert scores[0] == pytest.approx(1.0)
    assert np.isnan(scores[1])
    assert rmsse_mean(y_true, y_pred, observed=observed) == pytest.approx(1.0)


def test_smape_and_quantile_loss_ignore_unobserved_points():
    y_true = np.array([[2.0, 0.0, 4.0]])
    y_pred = np.array([[2.0, 9.0, 4.0]])
    observed = np.array([[1.0, 0.0, 1.0]])
    assert smape_mean(y_true, y_pred, observed=observed) == pytest.approx(0.0)

    samples = np.repeat(y_pred[:, None, :], 5, axis=1)
    assert weighted_quantile_loss(y_true, samples, [0.5], observed=observed) == pytest.approx(0.0)
    assert weighted_quantile_loss(y_true, samples, [0.5]) > 0.0
