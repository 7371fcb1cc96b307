from __future__ import annotations

from typing import Dict, Optional

import torch
from torch import nn

from .models.distribution_output import DistributionOutput


def weighted_average(
    x: torch.Tensor, weights: Optional[torch.Tensor] = None, dim: Optional[int] = None
) -> torch.Tensor:
    """Average of ``x`` weighted by ``weights`` along ``dim``.

    Elements with zero weight contribute exactly zero, even when ``x`` holds
    NaN or inf there. The denominator is clamped at one.
    """

    if weights is None:
        return x.mean() if dim is None else x.mean(dim=dim)
    weights = weights.to(x.dtype)
    weighted = torch.where(weights != 0, x * weights, torch.zeros_like(x))
    if dim is None:
        return weighted.sum() / torch.clamp(weights.sum(), min=1.0)
    return weighted.sum(dim=dim) / torch.clamp(weights.sum(dim=dim), min=1.0)


class DistributionLoss(nn.Module):
    """Weighted negative log-likelihood of targets under projected parameters.

    Returns one loss per series ``[B]``: the NLL summed over observed steps
    and divided by the number of observed steps.
    """

    def __init__(self, distr_output: DistributionOutput) -> None:
        super().__init__()
        self.distr_output = distr_output

    def forward(
        self,
        params: Dict[str, torch.Tensor],
        scale: Optional[torch.Tensor],
        target: torch.Tensor,
        weights: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        distr = self.distr_output.distribution(params, scale=scale)
        nll = -distr.log_prob(target.to(torch.float32))
        return weighted_average(nll, weights, dim=1)
