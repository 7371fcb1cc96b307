from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple, Union

import torch
from gluonts.time_feature import get_lags_for_frequency
from torch import nn

from .distribution_output import DistributionOutput, get_distribution_output
from .feature import FeatureEmbedder, default_embedding_dimension
from .scaler import MeanScaler, NOPScaler

LSTMState = Tuple[torch.Tensor, torch.Tensor]


def lagged_sequence_values(
    indices: Sequence[int],
    prior_sequence: torch.Tensor,
    sequence: torch.Tensor,
) -> torch.Tensor:
    """Gather lagged copies of ``sequence`` on a new trailing axis.

    ``prior_sequence`` ``[B, T_p]`` and ``sequence`` ``[B, S]`` are joined
    along time; for every offset ``i`` the output channel holds, at each
    position of ``sequence``, the joined value ``i`` steps earlier. Offset 0
    is the value itself.

    Returns:
        Tensor ``[B, S, len(indices)]``.

    Raises:
        ValueError: if an offset reaches beyond the start of ``prior_sequence``.
    """

    max_index = max(indices)
    if max_index > prior_sequence.shape[1]:
        raise ValueError(
            f"lags cannot go further than history length, found lag {max_index} "
            f"while history length is only {prior_sequence.shape[1]}"
        )
    full_sequence = torch.cat((prior_sequence, sequence), dim=1)
    seq_len = sequence.shape[1]
    lags_values = []
    for lag_index in indices:
        begin = -lag_index - seq_len
        end = -lag_index if lag_index > 0 else None
        lags_values.append(full_sequence[:, begin:end])
    return torch.stack(lags_values, dim=-1)


def _take_last(x: torch.Tensor, num: int) -> torch.Tensor:
    return x[:, x.shape[1] - num :]


class DeepARNetwork(nn.Module):
    """Shared components of the DeepAR training and prediction networks.

    The LSTM input at every step concatenates the lagged (scaled) target, the
    static features (embedded categoricals, real features and ``log(scale)``)
    and the dynamic time features. Training and prediction subclasses share
    parameter names so a checkpoint of one loads into the other.
    """

    def __init__(
        self,
        *,
        context_length: int,
        prediction_length: int,
        num_feat_dynamic_real: int,
        num_feat_static_real: int,
        cardinality: Sequence[int],
        embedding_dimension: Optional[Sequence[int]] = None,
        num_layers: int = 2,
        hidden_size: int = 40,
        dropout: float = 0.1,
        lags_seq: Optional[Sequence[int]] = None,
        freq: Optional[str] = None,
        distr_output: Union[str, DistributionOutput] = "student_t",
        scaling: bool = True,
        minimum_scale: float = 1e-10,
        default_scale: Optional[float] = None,
        num_parallel_samples: int = 100,
    ) -> None:
        super().__init__()
        self.context_length = int(context_length)
        self.prediction_length = int(prediction_length)
        if self.context_length <= 0 or self.prediction_length <= 0:
            raise ValueError("context_length and prediction_length must be positive")
        if lags_seq is None:
            if freq is None:
                raise ValueError("Either lags_seq or freq must be provided")
            try:
                lags_seq = get_lags_for_frequency(freq)
            except Exception as err:
                raise ValueError(f"Cannot derive default lags for frequency '{freq}'") from err
        lags = sorted({int(lag) for lag in lags_seq})
        if not lags or lags[0] <= 0:
            raise ValueError("lags_seq must contain positive integers")
        self.lags: List[int] = lags
        # Offsets relative to the step being predicted.
        self.lags_seq: List[int] = [lag - 1 for lag in lags]
        self.history_length = self.context_length + max(self.lags_seq)

        self.cardinality = [int(c) for c in cardinality]
        if embedding_dimension is None:
            embedding_dimension = [default_embedding_dimension(c) for c in self.cardinality]
        self.embedder = FeatureEmbedder(self.cardinality, list(embedding_dimension))
        self.num_feat_static_real = int(num_feat_static_real)
        self.num_feat_dynamic_real = int(num_feat_dynamic_real)

        if scaling:
            self.scaler: nn.Module = MeanScaler(
                dim=1, keepdim=True, minimum_scale=minimum_scale, default_scale=default_scale
            )
        else:
            self.scaler = NOPScaler(dim=1, keepdim=True)

        if isinstance(distr_output, str):
            distr_output = get_distribution_output(distr_output)
        self.distr_output = distr_output
        self.num_parallel_samples = int(num_parallel_samples)

        self.num_layers = int(num_layers)
        self.hidden_size = int(hidden_size)
        self.rnn = nn.LSTM(
            input_size=self.rnn_input_size,
            hidden_size=self.hidden_size,
            num_layers=self.num_layers,
            dropout=float(dropout) if self.num_layers > 1 else 0.0,
            batch_first=True,
        )
        self.param_proj = self.distr_output.get_args_proj(self.hidden_size)

    @property
    def num_static_features(self) -> int:
        return self.embedder.output_dim + self.num_feat_static_real + 1

    @property
    def rnn_input_size(self) -> int:
        return len(self.lags_seq) + self.num_static_features + self.num_feat_dynamic_real

    def unroll_lagged_rnn(
        self,
        feat_static_cat: torch.Tensor,
        feat_static_real: torch.Tensor,
        past_time_feat: torch.Tensor,
        past_target: torch.Tensor,
        past_observed_values: torch.Tensor,
        future_time_feat: torch.Tensor,
        future_target: Optional[torch.Tensor] = None,
    ) -> Tuple[
        Dict[str, torch.Tensor], torch.Tensor, torch.Tensor, torch.Tensor, LSTMState
    ]:
        """Run the LSTM over the context (and, when given, the future target).

        Returns:
            ``(params, scale, output, static_feat, state)`` where ``params``
            maps parameter names to ``[B, S]`` tensors, ``scale`` is
            ``[B, 1]``, ``static_feat`` is ``[B, num_static_features]`` and
            ``state`` is the final LSTM ``(h, c)`` pair.
        """

        context_length = self.context_length
        context = past_target[:, -context_length:]
        observed_context = past_observed_values[:, -context_length:]
        _, scale = self.scaler(context, observed_context)

        prior_input = past_target[:, :-context_length] / scale
        if future_target is None:
            inputs = context / scale
        else:
            inputs = torch.cat((context, future_target[:, :-1]), dim=1) / scale

        embedded_cat = self.embedder(feat_static_cat)
        static_feat = torch.cat(
            (embedded_cat, feat_static_real.to(scale.dtype), torch.log(scale)), dim=1
        )
        expanded_static_feat = static_feat.unsqueeze(1).expand(-1, inputs.shape[1], -1)

        time_feat = torch.cat(
            (_take_last(past_time_feat, context_length - 1), future_time_feat), dim=1
        )
        features = torch.cat((expanded_static_feat, time_feat), dim=-1)
        lags = lagged_sequence_values(self.lags_seq, prior_input, inputs)
        rnn_input = torch.cat((lags, features), dim=-1)

        output, new_state = self.rnn(rnn_input)
        params = self.param_proj(output)
        return params, scale, output, static_feat, new_state

    def distribution(
        self, params: Dict[str, torch.Tensor], scale: Optional[torch.Tensor] = None
    ):
        return self.distr_output.distribution(params, scale=scale)


class DeepARTrainingNetwork(DeepARNetwork):
    """One-step-ahead parameters over ``context_length + prediction_length - 1`` steps."""

    def forward(
        self,
        feat_static_cat: torch.Tensor,
        feat_static_real: torch.Tensor,
        past_time_feat: torch.Tensor,
        past_target: torch.Tensor,
        past_observed_values: torch.Tensor,
        future_time_feat: torch.Tensor,
        future_target: torch.Tensor,
        future_observed_values: torch.Tensor,
    ) -> Tuple[Dict[str, torch.Tensor], torch.Tensor, torch.Tensor]:
        params, scale, _, _, _ = self.unroll_lagged_rnn(
            feat_static_cat,
            feat_static_real,
            past_time_feat,
            past_target,
            past_observed_values,
            future_time_feat,
            future_target,
        )
        loss_weights = torch.cat(
            (
                _take_last(past_observed_values, self.context_length - 1),
                future_observed_values,
            ),
            dim=1,
        )
        return params, scale, loss_weights

    def training_target(
        self, past_target: torch.Tensor, future_target: torch.Tensor
    ) -> torch.Tensor:
        """Targets aligned with the parameters returned by :meth:`forward`."""
        return torch.cat(
            (_take_last(past_target, self.context_length - 1), future_target), dim=1
        )


class DeepARPredictionNetwork(DeepARNetwork):
    """Autoregressive sampler producing ``[B, num_parallel_samples, prediction_length]``."""

    @torch.no_grad()
    def forward(
        self,
        feat_static_cat: torch.Tensor,
        feat_static_real: torch.Tensor,
        past_time_feat: torch.Tensor,
        past_target: torch.Tensor,
        past_observed_values: torch.Tensor,
        future_time_feat: torch.Tensor,
        num_parallel_samples: Optional[int] = None,
    ) -> torch.Tensor:
        num_samples = int(num_parallel_samples or self.num_parallel_samples)
        params, scale, _, static_feat, state = self.unroll_lagged_rnn(
            feat_static_cat,
            feat_static_real,
            past_time_feat,
            past_target,
            past_observed_values,
            future_time_feat[:, :1],
        )

        repeated_scale = scale.repeat_interleave(num_samples, dim=0)
        repeated_static_feat = static_feat.repeat_interleave(num_samples, dim=0).unsqueeze(1)
        repeated_past_target = past_target.repeat_interleave(num_samples, dim=0) / repeated_scale
        repeated_time_feat = future_time_feat.repeat_interleave(num_samples, dim=0)
        repeated_state = tuple(s.repeat_interleave(num_samples, dim=1) for s in state)
        repeated_params = {
            name: value[:, -1:].repeat_interleave(num_samples, dim=0)
            for name, value in params.items()
        }

        next_sample = self.distribution(repeated_params, scale=repeated_scale).sample()
        future_samples = [next_sample]

        for k in range(1, self.prediction_length):
            scaled_next_sample = next_sample / repeated_scale
            next_features = torch.cat(
                (repeated_static_feat, repeated_time_feat[:, k : k + 1]), dim=-1
            )
            next_lags = lagged_sequence_values(
                self.lags_seq, repeated_past_target, scaled_next_sample
            )
            rnn_input = torch.cat((next_lags, next_features), dim=-1)
            output, repeated_state = self.rnn(rnn_input, repeated_state)
            repeated_past_target = torch.cat((repeated_past_target, scaled_next_sample), dim=1)
            step_params = self.param_proj(output)
            next_sample = self.distribution(step_params, scale=repeated_scale).sample()
            future_samples.append(next_sample)

        samples = torch.cat(future_samples, dim=1)
        return samples.reshape(-1, num_samples, self.prediction_length)
