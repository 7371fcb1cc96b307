from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, Optional

import pytest
import torch

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from deepar_forecast.models.deepar import (  # noqa: E402
    DeepARPredictionNetwork,
    DeepARTrainingNetwork,
)
from deepar_forecast.models.distribution_output import DistributionOutput  # noqa: E402
from deepar_forecast.models.distributions import Distribution  # noqa: E402


CONTEXT, HORIZON, TIME_FEATS = 6, 4, 2


def _network_kwargs(**overrides):
    kwargs = dict(
        context_length=CONTEXT,
        prediction_length=HORIZON,
        num_feat_dynamic_real=TIME_FEATS,
        num_feat_static_real=1,
        cardinality=[3, 5],
        num_layers=2,
        hidden_size=8,
        dropout=0.0,
        lags_seq=[1, 2, 4],
        distr_output="negative_binomial",
        num_parallel_samples=7,
    )
    kwargs.update(overrides)
    return kwargs


def _bundle(batch: int, history: int, with_future: bool = True):
    torch.manual_seed(0)
    items = [
        torch.randint(0, 3, (batch, 2)),
        torch.randn(batch, 1),
        torch.randn(batch, history, TIME_FEATS),
        torch.randint(0, 10, (batch, history)).float(),
        torch.ones(batch, history),
        torch.randn(batch, HORIZON, TIME_FEATS),
    ]
    if with_future:
        items += [torch.randint(0, 10, (batch, HORIZON)).float(), torch.ones(batch, HORIZON)]
    return items


def test_history_length_and_input_size():
    net = DeepARTrainingNetwork(**_network_kwargs())
    assert net.history_length == CONTEXT + 3
    assert net.lags_seq == [0, 1, 3]
    # lags + embeddings (2 + 3) + static real + log scale + time features
    assert net.rnn_input_size == 3 + 5 + 1 + 1 + TIME_FEATS


def test_lags_default_to_frequency():
    net = DeepARTrainingNetwork(**_network_kwargs(lags_seq=None, freq="D"))
    assert net.lags[:7] == list(range(1, 8))
    assert net.history_length == CONTEXT + max(net.lags) - 1


def test_training_network_shapes_and_loss_weights():
    net = DeepARTrainingNetwork(**_network_kwargs())
    bundle = _bundle(3, net.history_length)
    bundle[4][0, -2] = 0.0  # unobserved value inside the context
    params, scale, weights = net(*bundle)

    steps = CONTEXT + HORIZON - 1
    assert set(params) == {"mu", "alpha"}
    assert params["mu"].shape == (3, steps)
    assert scale.shape == (3, 1)
    assert weights.shape == (3, steps)
    assert weights[0, CONTEXT - 3].item() == 0.0
    target = net.training_target(bundle[3], bundle[6])
    assert target.shape == (3, steps)
    assert torch.equal(target[:, -HORIZON:], bundle[6])


def test_prediction_network_sample_shape():
    torch.manual_seed(0)
    net = DeepARPredictionNetwork(**_network_kwargs())
    samples = net(*_bundle(2, net.history_length, with_future=False))
    assert samples.shape == (2, 7, HORIZON)
    assert torch.all(samples >= 0)
    assert net(*_bundle(2, net.history_length, with_future=False), num_parallel_samples=3).shape == (
        2,
        3,
        HORIZON,
    )


def test_training_checkpoint_loads_into_prediction_network():
    train_net = DeepARTrainingNetwork(**_network_kwargs())
    pred_net = DeepARPredictionNetwork(**_network_kwargs())
    pred_net.load_state_dict(train_net.state_dict())


def test_short_history_raises():
    net = DeepARTrainingNetwork(**_network_kwargs())
    with pytest.raises(ValueError, match="history length"):
        net(*_bundle(2, net.history_length - 1))


class _Counter(Distribution):
    """Deterministic stand-in that emits consecutive integers as samples."""

    arg_names = ("mu",)
    calls = 0

    def log_prob(self, x):
        return torch.zeros_like(x)

    def sample(self, num_samples: Optional[int] = None):
        _Counter.calls += 1
        return torch.full_like(self.params["mu"], float(100 + _Counter.calls))

    @property
    def mean(self):
        return self.params["mu"]


class _CounterOutput(DistributionOutput):
    distr_cls = _Counter
    args_dim = {"mu": 1}

    def domain_map(self, mu: torch.Tensor) -> Dict[str, torch.Tensor]:
        return {"mu": mu.squeeze(-1)}


def test_each_step_feeds_back_previous_sample():
    _Counter.calls = 0
    net = DeepARPredictionNetwork(
        **_network_kwargs(distr_output=_CounterOutput(), scaling=False, num_parallel_samples=3)
    )
    recorded = []
    net.rnn.register_forward_hook(lambda module, args, output: recorded.append(args[0].clone()))

    bundle = _bundle(2, net.history_length, with_future=False)
    samples = net(*bundle)

    assert samples.shape == (2, 3, HORIZON)
    assert samples[0, 0].tolist() == [101.0, 102.0, 103.0, 104.0]
    # first call unrolls the context, one call per later step
    assert len(recorded) == HORIZON
    flat = samples.reshape(-1, HORIZON)
    for k in range(1, HORIZON):
        lag_one = recorded[k][:, 0, 0]
        assert torch.equal(lag_one, flat[:, k - 1])
        # lag 2 reads one step further back: context tail for k=1, sample after
        lag_two = recorded[k][:, 0, 1]
        if k == 1:
            expected = bundle[3].repeat_interleave(3, dim=0)[:, -1]
        else:
            expected = flat[:, k - 2]
        assert torch.equal(lag_two, expected)
