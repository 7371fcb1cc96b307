from __future__ import annotations

from typing import Optional, Sequence

import numpy as np


def _observed_mask(y_true: np.ndarray, observed: Optional[np.ndarray]) -> np.ndarray:
    if observed is None:
        return np.ones(y_true.shape, dtype=bool)
    observed = np.asarray(observed)
    assert observed.shape == y_true.shape, "observed must match y_true"
    return observed > 0


def smape_mean(
    y_true: np.ndarray,
    y_pred: np.ndarray,
    eps: float = 1e-8,
    observed: Optional[np.ndarray] = None,
) -> float:
    """Mean symmetric MAPE across all series.

    Only observed points where the actual value magnitude exceeds ``eps``
    contribute to the final mean.
    """
    assert y_true.shape == y_pred.shape, "y_true and y_pred must have same shape"
    mask = (np.abs(y_true) > eps) & _observed_mask(y_true, observed)
    if not np.any(mask):
        return 0.0
    denom = np.abs(y_true) + np.abs(y_pred)
    smape = 2.0 * np.abs(y_pred - y_true)[mask] / denom[mask]
    return float(np.mean(smape))


def rmsse(
    y_true: np.ndarray,
    y_pred: np.ndarray,
    axis: int = 1,
    observed: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Root mean squared scaled error per series.

    The squared error is scaled by the mean squared one-step difference of
    ``y_true`` itself. With an ``observed`` mask, unobserved points are left
    out of the error and every difference touching them is left out of the
    scaling term. Series whose scaling term is zero (constant along ``axis``)
    score 1; series without any observed point score NaN.
    """
    y_true = np.asarray(y_true, dtype=np.float64)
    y_pred = np.asarray(y_pred, dtype=np.float64)
    assert y_true.shape == y_pred.shape, "y_true and y_pred must have same shape"
    weights = _observed_mask(y_true, observed).astype(np.float64)
    y_true = np.moveaxis(y_true, axis, -1)
    y_pred = np.moveaxis(y_pred, axis, -1)
    weights = np.moveaxis(weights, axis, -1)

    count = weights.sum(axis=-1)
    diff_weights = weights[..., 1:] * weights[..., :-1]
    diff_count = diff_weights.sum(axis=-1)
    with np.errstate(divide="ignore", invalid="ignore"):
        sq_err = np.where(weights > 0, (y_true - y_pred) ** 2, 0.0)
        mean_square = np.sum(sq_err, axis=-1) / count
        scale_denom = (
            np.sum(np.where(diff_weights > 0, np.diff(y_true, axis=-1) ** 2, 0.0), axis=-1)
            / diff_count
        )
        score = np.sqrt(mean_square / scale_denom)
    score = np.where((diff_count == 0) | (scale_denom == 0), 1.0, score)
    return np.where(count == 0, np.nan, score)


def rmsse_mean(
    y_true: np.ndarray,
    y_pred: np.ndarray,
    axis: int = 1,
    observed: Optional[np.ndarray] = None,
) -> float:
    scores = rmsse(y_true, y_pred, axis=axis, observed=observed)
    scores = scores[np.isfinite(scores)]
    return float(np.mean(scores)) if scores.size else float("nan")


def weighted_quantile_loss(
    y_true: np.ndarray,
    samples: np.ndarray,
    quantiles: Sequence[float],
    observed: Optional[np.ndarray] = None,
) -> float:
    """Mean weighted quantile loss of sample forecasts.

    Args:
        y_true: Actuals ``[N, H]``.
        samples: Sample paths ``[N, S, H]``.
        quantiles: Quantile levels in ``(0, 1)``.
        observed: Optional ``[N, H]`` mask; unobserved points are dropped
            from both the loss and the normaliser.
    """
    y_true = np.asarray(y_true, dtype=np.float64)
    samples = np.asarray(samples, dtype=np.float64)
    weights = _observed_mask(y_true, observed).astype(np.float64)
    denom = np.sum(np.where(weights > 0, np.abs(y_true), 0.0))
    if denom == 0:
        denom = 1.0
    losses = []
    for q in quantiles:
        pred = np.quantile(samples, q, axis=1)
        diff = y_true - pred
        pinball = np.maximum(q * diff, (q - 1.0) * diff)
        losses.append(2.0 * np.sum(np.where(weights > 0, pinball, 0.0)) / denom)
    return float(np.mean(losses))
