from __future__ import annotations

from dataclasses import replace
from typing import List, Sequence, Tuple

from .dataset import SeriesEntry


def make_holdout_entries(
    entries: Sequence[SeriesEntry], holdout_length: int
) -> Tuple[List[SeriesEntry], List[SeriesEntry]]:
    """Split every series into a training prefix and a full validation copy.

    Training entries drop the last ``holdout_length`` values; validation keeps
    the whole series so the held-out tail is scored with its full history.
    """
    assert holdout_length > 0
    trn = [replace(entry, target=entry.target[:-holdout_length]) for entry in entries]
    return trn, list(entries)
