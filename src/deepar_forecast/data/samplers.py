from __future__ import annotations

from typing import Optional, Tuple

import numpy as np


class InstanceSampler:
    """Choose split points of a series for training or evaluation windows.

    A split point ``t`` separates the past ``ts[..., :t]`` from the future
    ``ts[..., t:]``. Admissible points lie in
    ``[min_past, len(ts) - min_future]``.
    """

    def __init__(self, axis: int = -1, min_past: int = 0, min_future: int = 0) -> None:
        self.axis = int(axis)
        self.min_past = int(min_past)
        self.min_future = int(min_future)

    def _get_bounds(self, ts: np.ndarray) -> Tuple[int, int]:
        return self.min_past, ts.shape[self.axis] - self.min_future

    def __call__(self, ts: np.ndarray) -> np.ndarray:
        raise NotImplementedError


class ExpectedNumInstanceSampler(InstanceSampler):
    """Sample about ``num_instances`` split points per series on average.

    A running average of the admissible window length over every series seen
    so far sets the per-point inclusion probability
    ``num_instances / avg_length``, so long series yield proportionally more
    instances than short ones.
    """

    def __init__(
        self,
        num_instances: float,
        axis: int = -1,
        min_past: int = 0,
        min_future: int = 0,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        super().__init__(axis=axis, min_past=min_past, min_future=min_future)
        if float(num_instances) <= 0:
            raise ValueError("num_instances must be positive")
        self.num_instances = float(num_instances)
        self.total_length = 0
        self.n = 0
        self.rng = rng if rng is not None else np.random.default_rng()

    def __call__(self, ts: np.ndarray) -> np.ndarray:
        a, b = self._get_bounds(ts)
        window_size = b - a + 1
        if window_size <= 0:
            return np.array([], dtype=np.int64)

        self.n += 1
        self.total_length += window_size
        avg_length = self.total_length / self.n
        prob = self.num_instances / avg_length
        (indices,) = np.where(self.rng.random(window_size) < prob)
        return (indices + a).astype(np.int64)


class ValidationSplitSampler(InstanceSampler):
    """The last admissible split point, leaving ``min_future`` steps to score."""

    def __call__(self, ts: np.ndarray) -> np.ndarray:
        a, b = self._get_bounds(ts)
        return np.array([b] if a <= b else [], dtype=np.int64)


class TestSplitSampler(InstanceSampler):
    """Split at the end of the series to forecast beyond the observed data."""

    def __call__(self, ts: np.ndarray) -> np.ndarray:
        length = ts.shape[self.axis]
        return np.array([length] if length >= self.min_past else [], dtype=np.int64)
