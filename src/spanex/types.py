from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

# namespace -> [(hashed feature index, feature value), ...]
Features = dict[str, list[tuple[int, float]]]


@dataclass
class Example:
    """
    One line of a multi-line contextual bandit example.

    A batch is an ordered list of Examples. If the first one has `shared=True`
    it carries context features common to every action and does not become a
    row of the feature matrix. Every other Example is an action; its position
    among the non-shared examples is its action id.
    """
    features: Features = field(default_factory=dict)
    shared: bool = False


@dataclass
class ActionScore:
    """A (action id, predicted score) pair. Mutable: cold start rewrites scores in place."""
    action: int
    score: float


def split_shared(examples: Sequence[Example]) -> tuple[list[Example], Optional[Example]]:
    """
    Separate the optional leading shared example from the action examples.

    Returns:
        (actions, shared) where shared is None if the batch has no shared example.
    """
    if len(examples) == 0:
        return [], None

    shared = examples[0] if examples[0].shared else None
    actions = list(examples[1:]) if shared is not None else list(examples)

    for i, ex in enumerate(actions):
        if ex.shared:
            raise ValueError(f"only the first example may be shared, got a shared example at action {i}")

    return actions, shared


__all__ = ["Features", "Example", "ActionScore", "split_shared"]
