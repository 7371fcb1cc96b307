from pathlib import Path
import sys

import pytest
import torch

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from deepar_forecast.models.distribution_output import (  # noqa: E402
    NegativeBinomialOutput,
    NormalOutput,
    StudentTOutput,
    get_distribution_output,
)
from deepar_forecast.models.distributions import AffineTransformed, NegativeBinomial  # noqa: E402


@pytest.mark.parametrize(
    "output, names",
    [
        (NegativeBinomialOutput(), {"mu", "alpha"}),
        (StudentTOutput(), {"mu", "sigma", "nu"}),
        (NormalOutput(), {"mu", "sigma"}),
    ],
)
def test_args_proj_shapes_and_domains(output, names):
    torch.manual_seed(0)
    proj = output.get_args_proj(8)
    params = proj(torch.randn(4, 5, 8) * 10)

    assert set(params) == names
    for value in params.values():
        assert value.shape == (4, 5)
    for positive in names - {"mu"}:
        assert torch.all(params[positive] > 0)
    if "nu" in params:
        assert torch.all(params["nu"] > 2.0)
    if isinstance(output, NegativeBinomialOutput):
        assert torch.all(params["mu"] > 0)


def test_negative_binomial_output_scales_mean():
    params = {"mu": torch.tensor([[1.0, 2.0]]), "alpha": torch.tensor([[0.3, 0.3]])}
    distr = NegativeBinomialOutput().distribution(params, scale=torch.tensor([[10.0]]))
    assert isinstance(distr, NegativeBinomial)
    assert torch.allclose(distr.mean, torch.tensor([[10.0, 20.0]]))
    assert torch.allclose(distr.alpha, params["alpha"])


def test_real_valued_outputs_wrap_in_affine_transform():
    params = {"mu": torch.zeros(2, 3), "sigma": torch.ones(2, 3)}
    distr = NormalOutput().distribution(params, scale=torch.full((2, 1), 4.0))
    assert isinstance(distr, AffineTransformed)
    assert torch.allclose(distr.mean, torch.zeros(2, 3))
    assert NormalOutput().distribution(params).mean.shape == (2, 3)


def test_get_distribution_output_by_name():
    assert isinstance(get_distribution_output("Student_T"), StudentTOutput)
    with pytest.raises(ValueError, match="Unknown distribution output"):
        get_distribution_output("poisson")
