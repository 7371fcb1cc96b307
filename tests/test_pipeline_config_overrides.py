from pathlib import Path
import sys

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from deepar_forecast.config import PipelineConfig, apply_overrides  # noqa: E402


def test_window_and_model_overrides_are_applied() -> None:
    overrides = [
        "window.context_length=14",
        "window.prediction_length=5",
        "model.distr_output=Student_T",
        "model.lags_seq=[1,2,7]",
        "train.lr=0.01",
    ]
    cfg = PipelineConfig.from_files("configs/default.yaml", overrides=overrides)

    assert cfg.window.context_length == 14
    assert cfg.window.prediction_length == 5
    assert cfg.model.distr_output == "student_t"
    assert cfg.resolved_lags() == [1, 2, 7]
    assert cfg.train.lr == pytest.approx(0.01)

    cfg_dict = cfg.to_dict()
    assert cfg_dict["window"] == {"context_length": 14, "prediction_length": 5}
    assert cfg_dict["model"]["lags_seq"] == [1, 2, 7]
    assert cfg_dict["artifacts"]["model_file"] == "deepar.pt"


def test_context_length_defaults_to_prediction_length() -> None:
    cfg = PipelineConfig.from_mapping({"window": {"prediction_length": 9}})
    assert cfg.window.context_length == 9
    assert cfg.resolved_lags()[:7] == [1, 2, 3, 4, 5, 6, 7]


def test_validation_collects_all_errors() -> None:
    with pytest.raises(ValueError) as excinfo:
        PipelineConfig.from_files(
            "configs/default.yaml",
            overrides=[
                "window.context_length=0",
                "model.distr_output=poisson",
                "predict.quantiles=[0.5,1.5]",
            ],
        )
    message = str(excinfo.value)
    assert "window.context_length must be positive" in message
    assert "model.distr_output" in message
    assert "predict.quantiles" in message


def test_unsupported_frequency_is_reported() -> None:
    with pytest.raises(ValueError, match="data.freq"):
        PipelineConfig.from_mapping({"window": {"prediction_length": 3}, "data": {"freq": "ns"}})


def test_override_requires_key_value_pairs() -> None:
    with pytest.raises(ValueError, match="key.path=value"):
        apply_overrides({}, ["train.lr"])
    assert apply_overrides({}, ["a.b=null", "a.c=true"]) == {"a": {"b": None, "c": True}}


def test_apply_overrides_returns_new_config() -> None:
    cfg = PipelineConfig.from_files("configs/default.yaml")
    updated = cfg.apply_overrides(["model.hidden_size=16"])
    assert updated.model.hidden_size == 16
    assert cfg.model.hidden_size == 40
    assert "hidden_size: 16" in updated.describe()
