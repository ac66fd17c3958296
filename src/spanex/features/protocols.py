from __future__ import annotations

from typing import Optional, Protocol, Sequence, runtime_checkable

import torch

from spanex.types import ActionScore, Example

Tensor = torch.Tensor


@runtime_checkable
class WeightTable(Protocol):
    """
    Read-only view of a learner's hashed parameter table.

    The feature matrix builder only needs two things from it:
      - mask: table size - 1; raw feature indices are truncated with `index & mask`
      - lookup(indices): the weight stored at each (already masked) index

    Dense and sparse storage differ only in how lookup() finds the value.
    """

    @property
    def mask(self) -> int:
        ...

    def lookup(self, indices: Tensor) -> Tensor:
        """
        Args:
            indices: int64 tensor of masked indices, shape (n,)

        Returns:
            weights: float tensor of shape (n,)
        """
        ...


@runtime_checkable
class BaseLearner(Protocol):
    """
    Minimal interface of the scorer that sits underneath the explorer.

    predict() returns one ActionScore per action example (lower score = better,
    the scores are predicted costs). learn() updates the model; learners whose
    update also yields fresh predictions set `learn_returns_prediction` and
    return them, everyone else returns None.
    """
    learn_returns_prediction: bool

    def learn(self, examples: Sequence[Example]) -> Optional[list[ActionScore]]:
        ...

    def predict(self, examples: Sequence[Example]) -> list[ActionScore]:
        ...


def is_weight_table(obj: object) -> bool:
    """Return True if obj satisfies the WeightTable protocol."""
    return isinstance(obj, WeightTable)


__all__ = ["WeightTable", "BaseLearner", "is_weight_table"]
