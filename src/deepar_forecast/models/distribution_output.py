from __future__ import annotations

from typing import Callable, Dict, Mapping, Optional, Type

import torch
import torch.nn.functional as F
from torch import nn

from .distributions import AffineTransformed, Distribution, Gaussian, NegativeBinomial, StudentT


def _positive(x: torch.Tensor) -> torch.Tensor:
    return F.softplus(x) + torch.finfo(x.dtype).eps


class ArgProj(nn.Module):
    """Project hidden states onto the raw parameters of a distribution.

    Each parameter gets its own linear layer; ``domain_map`` squeezes the
    trailing axis and maps every raw projection into its valid domain.
    """

    def __init__(
        self,
        in_features: int,
        args_dim: Mapping[str, int],
        domain_map: Callable[..., Dict[str, torch.Tensor]],
    ) -> None:
        super().__init__()
        self.args_dim = dict(args_dim)
        self.proj = nn.ModuleDict(
            {name: nn.Linear(int(in_features), int(dim)) for name, dim in self.args_dim.items()}
        )
        self.domain_map = domain_map

    def forward(self, x: torch.Tensor) -> Dict[str, torch.Tensor]:
        # Likelihoods are evaluated in float32 even under autocast.
        raw = {name: layer(x).float() for name, layer in self.proj.items()}
        return self.domain_map(**raw)


class DistributionOutput:
    """Binds a distribution family to its projection head."""

    distr_cls: Type[Distribution]
    args_dim: Dict[str, int]

    def get_args_proj(self, in_features: int) -> ArgProj:
        return ArgProj(in_features, self.args_dim, self.domain_map)

    def domain_map(self, **raw: torch.Tensor) -> Dict[str, torch.Tensor]:
        raise NotImplementedError

    def distribution(
        self,
        params: Mapping[str, torch.Tensor],
        loc: Optional[torch.Tensor] = None,
        scale: Optional[torch.Tensor] = None,
    ) -> Distribution:
        distr = self.distr_cls(params)
        if loc is None and scale is None:
            return distr
        return AffineTransformed(distr, loc=loc, scale=scale)


class NegativeBinomialOutput(DistributionOutput):
    distr_cls = NegativeBinomial
    args_dim = {"mu": 1, "alpha": 1}

    def domain_map(self, mu: torch.Tensor, alpha: torch.Tensor) -> Dict[str, torch.Tensor]:
        return {"mu": _positive(mu).squeeze(-1), "alpha": _positive(alpha).squeeze(-1)}

    def distribution(
        self,
        params: Mapping[str, torch.Tensor],
        loc: Optional[torch.Tensor] = None,
        scale: Optional[torch.Tensor] = None,
    ) -> Distribution:
        # Counts cannot be shifted or stretched; the scale rescales the mean.
        if loc is not None:
            raise ValueError("NegativeBinomialOutput does not support a location shift")
        distr = self.distr_cls(params)
        if scale is None:
            return distr
        return self.distr_cls({"mu": distr.mu * scale, "alpha": distr.alpha})


class StudentTOutput(DistributionOutput):
    distr_cls = StudentT
    args_dim = {"mu": 1, "sigma": 1, "nu": 1}

    def domain_map(
        self, mu: torch.Tensor, sigma: torch.Tensor, nu: torch.Tensor
    ) -> Dict[str, torch.Tensor]:
        return {
            "mu": mu.squeeze(-1),
            "sigma": _positive(sigma).squeeze(-1),
            "nu": (2.0 + F.softplus(nu)).squeeze(-1),
        }


class NormalOutput(DistributionOutput):
    distr_cls = Gaussian
    args_dim = {"mu": 1, "sigma": 1}

    def domain_map(self, mu: torch.Tensor, sigma: torch.Tensor) -> Dict[str, torch.Tensor]:
        return {"mu": mu.squeeze(-1), "sigma": _positive(sigma).squeeze(-1)}


DISTRIBUTION_OUTPUTS: Dict[str, Type[DistributionOutput]] = {
    "negative_binomial": NegativeBinomialOutput,
    "student_t": StudentTOutput,
    "normal": NormalOutput,
}


def get_distribution_output(name: str) -> DistributionOutput:
    key = str(name).lower()
    if key not in DISTRIBUTION_OUTPUTS:
        raise ValueError(
            f"Unknown distribution output '{name}'. Expected one of {sorted(DISTRIBUTION_OUTPUTS)}"
        )
    return DISTRIBUTION_OUTPUTS[key]()
