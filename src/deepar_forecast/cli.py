from __future__ import annotations

import argparse
import copy
from typing import Dict, Any

import optuna

from .config import PipelineConfig, load_yaml, save_yaml
from .train import train_once
from .predict import predict_once
from .utils.logging import console
from .utils import io as io_utils


def _apply_trial_to_cfg(cfg: Dict[str, Any], space: Dict[str, Any], trial: optuna.Trial) -> Dict[str, Any]:
    out = copy.deepcopy(cfg)
    for key, spec in space.items():
        t = spec.get("type")
        if t == "int":
            val = trial.suggest_int(
                key, low=int(spec["low"]), high=int(spec["high"]), step=int(spec.get("step", 1))
            )
        elif t == "float":
            val = trial.suggest_float(
                key, low=float(spec["low"]), high=float(spec["high"]), log=bool(spec.get("log", False))
            )
        elif t == "categorical":
            val = trial.suggest_categorical(key, spec["choices"])
        else:
            raise ValueError(f"Unknown search space type '{t}' for '{key}'")
        cur = out
        path = key.split(".")
        for p in path[:-1]:
            if p not in cur or not isinstance(cur[p], dict):
                cur[p] = {}
            cur = cur[p]
        cur[path[-1]] = val
    return out


def _trial_dir(art_dir: str, number: int) -> str:
    return f"{art_dir}/trials/{number:04d}"


def cmd_train(args: argparse.Namespace) -> None:
    cfg = PipelineConfig.from_files(args.config, overrides=args.override)
    train_once(cfg)


def cmd_predict(args: argparse.Namespace) -> None:
    cfg = PipelineConfig.from_files(args.config, overrides=args.override)
    predict_once(cfg)


def cmd_tune(args: argparse.Namespace) -> None:
    base_cfg = PipelineConfig.from_files(args.config, overrides=args.override)
    base = base_cfg.to_dict()
    space = load_yaml(args.space)
    tuning = base["tuning"]

    if tuning["sampler"] == "tpe_multivariate":
        sampler = optuna.samplers.TPESampler(multivariate=True, seed=tuning["seed"])
    else:
        sampler = optuna.samplers.TPESampler(seed=tuning["seed"])
    if tuning["pruner"] == "median":
        pruner = optuna.pruners.MedianPruner()
    else:
        pruner = optuna.pruners.NopPruner()

    timeout = None
    if tuning["timeout_min"] is not None:
        timeout = int(tuning["timeout_min"]) * 60

    art_dir = base["artifacts"]["dir"]

    def objective(trial: optuna.Trial) -> float:
        cfg_dict = _apply_trial_to_cfg(base, space, trial)
        # keep trial checkpoints apart from the main artifacts
        cfg_dict["artifacts"]["dir"] = _trial_dir(art_dir, trial.number)
        trial_cfg = PipelineConfig.from_mapping(cfg_dict)
        val_nll, _ = train_once(trial_cfg)
        trial.report(val_nll, step=1)
        if trial.should_prune():
            raise optuna.TrialPruned()
        return val_nll

    study = optuna.create_study(direction="minimize", sampler=sampler, pruner=pruner)
    study.optimize(objective, n_trials=int(args.n_trials), timeout=timeout)

    console().print(f"[bold magenta]Best value: {study.best_value:.6f}[/bold magenta]")
    console().print(f"[bold]Best params:[/bold] {study.best_trial.params}")

    io_utils.save_json(study.best_trial.params, f"{art_dir}/best_params.json")
    best_cfg = copy.deepcopy(base)
    for key, val in study.best_trial.params.items():
        cur = best_cfg
        path = key.split(".")
        for p in path[:-1]:
            cur = cur.setdefault(p, {})
        cur[path[-1]] = val
    # the best trial owns the checkpoint this config describes
    best_cfg.setdefault("artifacts", {})["dir"] = _trial_dir(art_dir, study.best_trial.number)
    best_cfg_normalized = PipelineConfig.from_mapping(best_cfg).to_dict()
    save_yaml(best_cfg_normalized, f"{art_dir}/best_config.yaml")


def main() -> None:
    parser = argparse.ArgumentParser(prog="deepar-forecast")
    sub = parser.add_subparsers(dest="cmd")

    p_train = sub.add_parser("train", help="fit a DeepAR model and save artifacts")
    p_train.add_argument("--config", type=str, default="configs/default.yaml")
    p_train.add_argument("--override", nargs="*", default=[])
    p_train.set_defaults(func=cmd_train)

    p_pred = sub.add_parser("predict", help="sample forecasts from saved artifacts")
    p_pred.add_argument("--config", type=str, default="configs/default.yaml")
    p_pred.add_argument("--override", nargs="*", default=[])
    p_pred.set_defaults(func=cmd_predict)

    p_tune = sub.add_parser("tune", help="optuna search over configs/search_space.yaml")
    p_tune.add_argument("--config", type=str, default="configs/default.yaml")
    p_tune.add_argument("--space", type=str, default="configs/search_space.yaml")
    p_tune.add_argument("--n-trials", type=int, default=30)
    p_tune.add_argument("--override", nargs="*", default=[])
    p_tune.set_defaults(func=cmd_tune)

    args = parser.parse_args()
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
