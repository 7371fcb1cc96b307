from __future__ import annotations

import math
from typing import Dict, Mapping, Optional, Tuple

import torch

LOG_2PI = math.log(2.0 * math.pi)


def negative_binomial_log_likelihood(
    y: torch.Tensor, mu: torch.Tensor, alpha: torch.Tensor
) -> torch.Tensor:
    """Element-wise NB log-likelihood in the mean/dispersion parametrisation.

    ``Var[y] = mu + alpha * mu**2``. No clamping is applied: non-positive
    ``mu`` or ``alpha`` yield NaN.
    """

    y = y.to(mu.dtype)
    inv_alpha = torch.reciprocal(alpha)
    log1p_alpha_mu = torch.log1p(alpha * mu)
    return (
        torch.lgamma(y + inv_alpha)
        - torch.lgamma(inv_alpha)
        - torch.lgamma(y + 1.0)
        - inv_alpha * log1p_alpha_mu
        + y * (torch.log(alpha) + torch.log(mu) - log1p_alpha_mu)
    )


class Distribution:
    """Distribution parametrised by a mapping of named tensors.

    Subclasses list their required parameter names in ``arg_names``; a
    missing parameter is rejected at construction time.
    """

    arg_names: Tuple[str, ...] = ()

    def __init__(self, params: Mapping[str, torch.Tensor]) -> None:
        missing = [name for name in self.arg_names if name not in params]
        if missing:
            raise ValueError(
                f"{type(self).__name__} requires parameters {list(self.arg_names)}; missing {missing}"
            )
        self.params: Dict[str, torch.Tensor] = {name: params[name] for name in self.arg_names}

    @property
    def batch_shape(self) -> torch.Size:
        return self.params[self.arg_names[0]].shape

    @staticmethod
    def _sample_shape(num_samples: Optional[int]) -> torch.Size:
        return torch.Size() if num_samples is None else torch.Size((int(num_samples),))

    def log_prob(self, x: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def sample(self, num_samples: Optional[int] = None) -> torch.Tensor:
        """Draw samples shaped ``batch_shape`` or ``[num_samples, *batch_shape]``."""
        raise NotImplementedError

    @property
    def mean(self) -> torch.Tensor:
        raise NotImplementedError


class NegativeBinomial(Distribution):
    """Negative binomial over counts with mean ``mu`` and dispersion ``alpha``."""

    arg_names = ("mu", "alpha")

    def __init__(self, params: Mapping[str, torch.Tensor]) -> None:
        super().__init__(params)
        self.mu = self.params["mu"]
        self.alpha = self.params["alpha"]

    def log_prob(self, x: torch.Tensor) -> torch.Tensor:
        return negative_binomial_log_likelihood(x, self.mu, self.alpha)

    def sample(self, num_samples: Optional[int] = None) -> torch.Tensor:
        # Gamma-Poisson mixture: lambda ~ Gamma(1/alpha, scale=alpha*mu).
        with torch.no_grad():
            gamma = torch.distributions.Gamma(
                concentration=torch.reciprocal(self.alpha),
                rate=torch.reciprocal(self.alpha * self.mu),
            )
            lam = gamma.sample(self._sample_shape(num_samples))
            return torch.poisson(lam)

    @property
    def mean(self) -> torch.Tensor:
        return self.mu


class StudentT(Distribution):
    """Student-t with location ``mu``, scale ``sigma`` and ``nu`` degrees of freedom."""

    arg_names = ("mu", "sigma", "nu")

    def __init__(self, params: Mapping[str, torch.Tensor]) -> None:
        super().__init__(params)
        self.mu = self.params["mu"]
        self.sigma = self.params["sigma"]
        self.nu = self.params["nu"]

    def log_prob(self, x: torch.Tensor) -> torch.Tensor:
        nu, mu, sigma = self.nu, self.mu, self.sigma
        z = (x.to(mu.dtype) - mu) / sigma
        return (
            torch.lgamma((nu + 1.0) / 2.0)
            - torch.lgamma(nu / 2.0)
            - 0.5 * torch.log(math.pi * nu)
            - torch.log(sigma)
            - (nu + 1.0) / 2.0 * torch.log1p(z * z / nu)
        )

    def sample(self, num_samples: Optional[int] = None) -> torch.Tensor:
        with torch.no_grad():
            distr = torch.distributions.StudentT(df=self.nu, loc=self.mu, scale=self.sigma)
            return distr.sample(self._sample_shape(num_samples))

    @property
    def mean(self) -> torch.Tensor:
        return torch.where(self.nu > 1.0, self.mu, torch.full_like(self.mu, float("nan")))


class Gaussian(Distribution):
    """Normal distribution with mean ``mu`` and standard deviation ``sigma``."""

    arg_names = ("mu", "sigma")

    def __init__(self, params: Mapping[str, torch.Tensor]) -> None:
        super().__init__(params)
        self.mu = self.params["mu"]
        self.sigma = self.params["sigma"]

    def log_prob(self, x: torch.Tensor) -> torch.Tensor:
        z = (x.to(self.mu.dtype) - self.mu) / self.sigma
        return -0.5 * (z**2 + 2.0 * torch.log(self.sigma) + LOG_2PI)

    def sample(self, num_samples: Optional[int] = None) -> torch.Tensor:
        with torch.no_grad():
            shape = self._sample_shape(num_samples) + self.mu.shape
            eps = torch.randn(shape, dtype=self.mu.dtype, device=self.mu.device)
            return self.mu + self.sigma * eps

    @property
    def mean(self) -> torch.Tensor:
        return self.mu


class AffineTransformed(Distribution):
    """Distribution of ``loc + scale * X`` for a base distribution ``X``."""

    def __init__(
        self,
        base_distribution: Distribution,
        loc: Optional[torch.Tensor] = None,
        scale: Optional[torch.Tensor] = None,
    ) -> None:
        self.base_distribution = base_distribution
        self.params = base_distribution.params
        self.arg_names = base_distribution.arg_names
        self.loc = loc
        self.scale = scale

    def log_prob(self, x: torch.Tensor) -> torch.Tensor:
        z = x
        if self.loc is not None:
            z = z - self.loc
        if self.scale is not None:
            z = z / self.scale
        log_p = self.base_distribution.log_prob(z)
        if self.scale is not None:
            log_p = log_p - torch.log(torch.abs(self.scale))
        return log_p

    def _forward(self, x: torch.Tensor) -> torch.Tensor:
        if self.scale is not None:
            x = x * self.scale
        if self.loc is not None:
            x = x + self.loc
        return x

    def sample(self, num_samples: Optional[int] = None) -> torch.Tensor:
        return self._forward(self.base_distribution.sample(num_samples))

    @property
    def mean(self) -> torch.Tensor:
        return self._forward(self.base_distribution.mean)


__all__ = [
    "AffineTransformed",
    "Distribution",
    "Gaussian",
    "NegativeBinomial",
    "StudentT",
    "negative_binomial_log_likelihood",
]
