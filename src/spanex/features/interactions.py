from __future__ import annotations

from typing import Iterator, Mapping, Sequence

FNV_PRIME = 16777619
MASK64 = (1 << 64) - 1

Interaction = Sequence[str]


def interaction_order(interactions: Sequence[Interaction]) -> int:
    """Largest number of namespaces combined by any interaction (0 if there are none)."""
    return max((len(term) for term in interactions), default=0)


def _combine(
    namespaces: Mapping[str, Sequence[tuple[int, float]]],
    term: Interaction,
    permutations: bool,
) -> Iterator[tuple[int, float]]:
    lists = [namespaces.get(ns) for ns in term]
    if any(not feats for feats in lists):
        return

    # Depth-first over one feature per namespace. For a namespace repeated in
    # the term (e.g. "aa"), positions must be non-decreasing unless permutations
    # are requested, so (x_i, x_j) and (x_j, x_i) are not both generated.
    def walk(depth: int, start: int, index: int, value: float) -> Iterator[tuple[int, float]]:
        feats = lists[depth]
        for pos in range(start, len(feats)):
            fidx, fval = feats[pos]
            if depth == 0:
                h = int(fidx) & MASK64
            else:
                h = ((index * FNV_PRIME) ^ int(fidx)) & MASK64
            v = value * float(fval)
            if depth == len(lists) - 1:
                yield h, v
                continue
            same_next = (not permutations) and term[depth + 1] == term[depth]
            yield from walk(depth + 1, pos if same_next else 0, h, v)

    yield from walk(0, 0, 0, 1.0)


def foreach_feature(
    namespaces: Mapping[str, Sequence[tuple[int, float]]],
    interactions: Sequence[Interaction] = (),
    *,
    permutations: bool = False,
) -> Iterator[tuple[int, float]]:
    """
    Enumerate every feature activation of one example.

    Yields (raw_index, value) for:
      - each linear feature of each namespace
      - each interaction term: one feature per namespace listed in the term,
        value = product of the values, index = FNV-style hash of the indices

    An interaction is any sequence of namespace names, so "ab" and ("a", "b")
    are the same quadratic term. Raw indices are unmasked 64-bit values.
    """
    for feats in namespaces.values():
        for fidx, fval in feats:
            yield int(fidx) & MASK64, float(fval)

    for term in interactions:
        if len(term) < 2:
            raise ValueError(f"interactions must combine at least 2 namespaces, got {term!r}")
        yield from _combine(namespaces, term, permutations)


__all__ = ["FNV_PRIME", "MASK64", "Interaction", "interaction_order", "foreach_feature"]
