import math
from pathlib import Path
import sys
from typing import Dict

import torch

# Ensure the project src is on the path for imports
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from deepar_forecast.losses import DistributionLoss
from deepar_forecast.models.deepar import DeepARPredictionNetwork, DeepARTrainingNetwork
from deepar_forecast.utils.seed import seed_everything

CONTEXT, HORIZON = 8, 4
NET_KWARGS = dict(
    context_length=CONTEXT,
    prediction_length=HORIZON,
    num_feat_dynamic_real=1,
    num_feat_static_real=1,
    cardinality=[2],
    num_layers=2,
    hidden_size=8,
    dropout=0.1,
    lags_seq=[1, 2, 4],
    distr_output="student_t",
    num_parallel_samples=5,
)


def _windows() -> tuple:
    t = torch.arange(64, dtype=torch.float32)
    series = torch.stack([2.0 + torch.sin(2 * math.pi * t / 8.0), 5.0 + torch.cos(2 * math.pi * t / 6.0)])
    history = CONTEXT + 3
    starts = range(0, series.shape[1] - history - HORIZON + 1, 4)
    past, future, cats = [], [], []
    for row in range(series.shape[0]):
        for s in starts:
            past.append(series[row, s : s + history])
            future.append(series[row, s + history : s + history + HORIZON])
            cats.append(row)
    past_target = torch.stack(past)
    future_target = torch.stack(future)
    batch = past_target.shape[0]
    return (
        torch.tensor(cats).unsqueeze(-1),
        torch.zeros(batch, 1),
        torch.linspace(-0.5, 0.5, history).expand(batch, history).unsqueeze(-1),
        past_target,
        torch.ones_like(past_target),
        torch.zeros(batch, HORIZON, 1),
        future_target,
        torch.ones_like(future_target),
    )


def _run_short_training(seed: int) -> tuple:
    seed_everything(seed, deterministic=True)
    model = DeepARTrainingNetwork(**NET_KWARGS)
    loss_fn = DistributionLoss(model.distr_output)
    optimizer = torch.optim.Adam(model.parameters(), lr=0.01)
    data = _windows()
    history = []
    batch_size = 8
    n = data[0].shape[0]
    for _ in range(3):
        perm = torch.randperm(n)
        total_loss = 0.0
        count = 0
        for j in range(0, n, batch_size):
            batch = tuple(x[perm[j : j + batch_size]] for x in data)
            optimizer.zero_grad()
            params, scale, weights = model(*batch)
            loss = loss_fn(params, scale, model.training_target(batch[3], batch[6]), weights).mean()
            loss.backward()
            optimizer.step()
            total_loss += float(loss.detach())
            count += 1
        history.append(total_loss / max(count, 1))

    state: Dict[str, torch.Tensor] = {k: v.detach().clone() for k, v in model.state_dict().items()}
    predictor = DeepARPredictionNetwork(**NET_KWARGS)
    predictor.load_state_dict(state)
    predictor.eval()
    samples = predictor(*data[:6])
    return torch.tensor(history, dtype=torch.float64), state, samples


def test_deterministic_training_reproducible():
    prev_deterministic = torch.backends.cudnn.deterministic
    prev_benchmark = torch.backends.cudnn.benchmark
    prev_algorithms = torch.are_deterministic_algorithms_enabled()
    prev_warn_only = torch.is_deterministic_algorithms_warn_only_enabled()

    try:
        losses_a, state_a, samples_a = _run_short_training(2024)
        losses_b, state_b, samples_b = _run_short_training(2024)
    finally:
        if prev_algorithms:
            torch.use_deterministic_algorithms(True, warn_only=prev_warn_only)
        else:
            torch.use_deterministic_algorithms(False)
        torch.backends.cudnn.deterministic = prev_deterministic
        torch.backends.cudnn.benchmark = prev_benchmark

    assert torch.all(torch.isfinite(losses_a))
    torch.testing.assert_close(losses_a, losses_b)
    assert state_a.keys() == state_b.keys()
    for key in state_a:
        torch.testing.assert_close(state_a[key], state_b[key])
    torch.testing.assert_close(samples_a, samples_b)
