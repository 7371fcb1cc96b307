from __future__ import annotations

from typing import Optional, Tuple

import torch
from torch import nn


class Scaler(nn.Module):
    """Base class for per-series scaling along a time axis.

    Calling the module with ``data`` and the matching ``observed_indicator``
    returns ``(data / scale, scale)``. With ``keepdim=True`` the scale keeps a
    singleton time axis so that it broadcasts against ``[B, T]`` tensors.
    """

    def __init__(self, dim: int = 1, keepdim: bool = True) -> None:
        super().__init__()
        if int(dim) <= 0:
            raise ValueError(
                f"Cannot compute scale along dim = {dim} (batch dimension), please provide dim > 0"
            )
        self.dim = int(dim)
        self.keepdim = bool(keepdim)

    def compute_scale(
        self, data: torch.Tensor, observed_indicator: torch.Tensor
    ) -> torch.Tensor:
        raise NotImplementedError

    def forward(
        self, data: torch.Tensor, observed_indicator: torch.Tensor
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        scale = self.compute_scale(data, observed_indicator)
        scaled = data / scale
        if not self.keepdim:
            scale = scale.squeeze(self.dim)
        return scaled, scale


class MeanScaler(Scaler):
    """Scale by the mean absolute observed value of each series.

    Series without any observed value fall back to ``default_scale`` when it
    is set, otherwise to the mean absolute observed value of the whole batch.
    The result is floored at ``minimum_scale`` so it is always strictly
    positive.
    """

    def __init__(
        self,
        dim: int = 1,
        keepdim: bool = True,
        minimum_scale: float = 1e-10,
        default_scale: Optional[float] = None,
    ) -> None:
        super().__init__(dim=dim, keepdim=keepdim)
        if float(minimum_scale) <= 0.0:
            raise ValueError("minimum_scale must be strictly positive")
        self.minimum_scale = float(minimum_scale)
        self.default_scale = None if default_scale is None else float(default_scale)

    def compute_scale(
        self, data: torch.Tensor, observed_indicator: torch.Tensor
    ) -> torch.Tensor:
        observed = observed_indicator.to(data.dtype)
        num_observed = observed.sum(dim=self.dim, keepdim=True)
        sum_observed = (data.abs() * observed).sum(dim=self.dim, keepdim=True)
        scale = sum_observed / torch.clamp(num_observed, min=1.0)

        if self.default_scale is None:
            batch_sum = sum_observed.sum(dim=0, keepdim=True)
            batch_observations = torch.clamp(num_observed.sum(dim=0, keepdim=True), min=1.0)
            default_scale = (batch_sum / batch_observations).expand_as(scale)
        else:
            default_scale = torch.full_like(scale, self.default_scale)

        scale = torch.where(num_observed > 0, scale, default_scale)
        return torch.clamp(scale, min=self.minimum_scale)


class NOPScaler(Scaler):
    """Identity scaling: the scale is one everywhere."""

    def compute_scale(
        self, data: torch.Tensor, observed_indicator: torch.Tensor
    ) -> torch.Tensor:
        return torch.ones_like(data).mean(dim=self.dim, keepdim=True)
