from __future__ import annotations

from typing import Mapping

import pandas as pd
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, BarColumn, TimeElapsedColumn, TimeRemainingColumn, MofNCompleteColumn, TextColumn

_console = Console()


def console() -> Console:
    return _console


def progress() -> Progress:
    return Progress(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        TimeRemainingColumn(),
        console=_console,
        transient=True,
    )


def print_config(cfg: dict, title: str = "Config") -> None:
    table = Table(title=title)
    table.add_column("Key", style="cyan", no_wrap=True)
    table.add_column("Value", style="magenta")

    def _walk(prefix: str, d: dict) -> None:
        for k, v in d.items():
            key = f"{prefix}.{k}" if prefix else k
            if isinstance(v, dict):
                _walk(key, v)
            else:
                table.add_row(key, str(v))

    _walk("", cfg)
    _console.print(table)


def print_metrics(metrics: Mapping[str, float], title: str = "Validation metrics") -> None:
    table = Table(title=title)
    table.add_column("Metric", style="cyan", no_wrap=True)
    table.add_column("Value", style="magenta", justify="right")
    for name, value in metrics.items():
        table.add_row(name, f"{float(value):.6f}")
    _console.print(table)


def print_forecast_preview(df: pd.DataFrame, max_rows: int = 10) -> None:
    """Render the first rows of a long-format forecast frame."""
    table = Table(title=f"Forecast preview ({len(df)} rows)")
    for column in df.columns:
        table.add_column(str(column), style="cyan" if column in {"id", "date"} else "magenta")
    for row in df.head(max_rows).itertuples(index=False):
        table.add_row(*[f"{v:.4f}" if isinstance(v, float) else str(v) for v in row])
    _console.print(table)
