from __future__ import annotations

import contextlib
from typing import Dict, Sequence, Tuple

import torch
from torch import Tensor


def amp_autocast(enabled: bool):
    """
    autocast context for float16 mixed precision on CUDA.
    """
    if enabled and torch.cuda.is_available():
        return torch.amp.autocast("cuda", dtype=torch.float16)
    return contextlib.nullcontext()


def clean_state_dict(state: Dict[str, Tensor]) -> Dict[str, Tensor]:
    """Detached CPU copy of a state dict."""
    return {k: v.detach().cpu() for k, v in state.items()}


def move_to_device(
    batch: Sequence[Tensor], device: torch.device
) -> Tuple[Tensor, ...]:
    return tuple(x.to(device, non_blocking=True) for x in batch)
