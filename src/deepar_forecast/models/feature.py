from __future__ import annotations

from typing import List, Sequence

import torch
from torch import nn


def default_embedding_dimension(cardinality: int) -> int:
    return min(50, (int(cardinality) + 1) // 2)


class FeatureEmbedder(nn.Module):
    """Embed each static categorical column with its own table.

    ``features`` is an integer tensor ``[..., num_features]``; the output
    concatenates the per-column embeddings on the last axis.
    """

    def __init__(self, cardinalities: Sequence[int], embedding_dims: Sequence[int]) -> None:
        super().__init__()
        if len(cardinalities) != len(embedding_dims):
            raise ValueError(
                f"Got {len(cardinalities)} cardinalities but {len(embedding_dims)} embedding dimensions"
            )
        if any(int(c) <= 0 for c in cardinalities):
            raise ValueError("Categorical cardinalities must be positive")
        self.cardinalities: List[int] = [int(c) for c in cardinalities]
        self.embedding_dims: List[int] = [int(d) for d in embedding_dims]
        self._embedders = nn.ModuleList(
            [nn.Embedding(c, d) for c, d in zip(self.cardinalities, self.embedding_dims)]
        )

    @property
    def output_dim(self) -> int:
        return int(sum(self.embedding_dims))

    def forward(self, features: torch.Tensor) -> torch.Tensor:
        num_features = len(self._embedders)
        if features.shape[-1] != num_features:
            raise ValueError(
                f"Expected {num_features} categorical features, got {features.shape[-1]}"
            )
        if num_features > 1:
            slices = torch.chunk(features, num_features, dim=-1)
        else:
            slices = (features,)
        return torch.cat(
            [embed(cat.squeeze(-1).long()) for embed, cat in zip(self._embedders, slices)],
            dim=-1,
        )
