from __future__ import annotations

import logging
from typing import Optional, Sequence

import torch

from spanex.features.interactions import Interaction, foreach_feature
from spanex.features.protocols import WeightTable
from spanex.types import Example, Features, split_shared

Tensor = torch.Tensor

logger = logging.getLogger(__name__)


def merge_shared(action: Example, shared: Optional[Example]) -> Features:
    """
    Namespaces of an action with the shared example's namespaces appended.

    Builds a new mapping; neither example is modified.
    """
    merged: Features = {ns: list(feats) for ns, feats in action.features.items()}
    if shared is not None:
        for ns, feats in shared.features.items():
            merged.setdefault(ns, []).extend(feats)
    return merged


def empty_matrix(dtype: torch.dtype = torch.float32) -> Tensor:
    """The 0x0 sparse matrix reported for batches without any nonzero activation."""
    return torch.sparse_coo_tensor(
        torch.zeros((2, 0), dtype=torch.int64),
        torch.zeros(0, dtype=dtype),
        (0, 0),
    ).coalesce()


def build_feature_matrix(
    examples: Sequence[Example],
    weights: WeightTable,
    *,
    interactions: Sequence[Interaction] = (),
    permutations: bool = False,
    dtype: torch.dtype = torch.float32,
) -> tuple[Tensor, bool]:
    """
    Assemble the sparse action-by-feature matrix A for one batch.

    Row r is the r-th action example (the shared example, if any, is not a row;
    its namespaces are merged into every action). Entry (r, c) accumulates
    feature_value * weight[c] over every activation of row r whose masked index
    is c. Only nonzero products are kept, and duplicate (r, c) pairs from
    overlapping interactions are summed when the tensor is coalesced.

    Returns:
        (A, non_degenerate): A is a coalesced sparse COO tensor of shape
        (num_actions, max_col + 1), or 0x0 when nothing nonzero was found.
    """
    actions, shared = split_shared(examples)
    mask = int(weights.mask)

    rows: list[int] = []
    cols: list[int] = []
    vals: list[float] = []
    for row, action in enumerate(actions):
        for raw_index, value in foreach_feature(merge_shared(action, shared), interactions, permutations=permutations):
            if value != 0.0:
                rows.append(row)
                cols.append(raw_index & mask)
                vals.append(value)

    if not vals:
        logger.debug("feature matrix is empty for %d actions", len(actions))
        return empty_matrix(dtype), False

    row_t = torch.tensor(rows, dtype=torch.int64)
    col_t = torch.tensor(cols, dtype=torch.int64)
    w = weights.lookup(col_t).to(dtype=dtype)
    val_t = torch.tensor(vals, dtype=dtype) * w

    keep = val_t != 0
    if not bool(keep.any()):
        logger.debug("feature matrix is empty for %d actions (all weights are zero)", len(actions))
        return empty_matrix(dtype), False

    row_t, col_t, val_t = row_t[keep], col_t[keep], val_t[keep]
    n_cols = int(col_t.max().item()) + 1

    A = torch.sparse_coo_tensor(
        torch.stack([row_t, col_t], dim=0),
        val_t,
        (len(actions), n_cols),
    ).coalesce()
    return A, True


__all__ = ["merge_shared", "empty_matrix", "build_feature_matrix"]
