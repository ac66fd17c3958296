from __future__ import annotations

"""
C-approximate volume spanner over the rows of the low-rank action embedding.

Given the (num_actions x k) embedding U, pick `rank` rows whose spanned volume
|det X| cannot be grown by more than a factor c by swapping in any other row.
This is the approximate barycentric spanner construction used for large action
spaces in SquareCB-style exploration (Zhu et al., "Contextual Bandits with Large
Action Spaces: Made Practical", ICML 2022):

  1. Basis: start from X = I. For each basis slot i, pick the row y maximizing
     |det X with row i replaced by y|, and put it in slot i.
  2. Swaps: sweep the slots; if some row y would grow |det X| by more than c in
     slot i, swap it in and start the next sweep. Stop when a full sweep finds
     nothing (locally c-optimal) or after floor(rank * ln(rank) / ln(c)) + 1 sweeps.

Replacing row i of X by y multiplies det X by y . X^{-1}[:, i], so volumes are
compared as ratios through a column of the inverse and |det X| itself is never
needed. X^{-1} is kept current with Sherman-Morrison rank-one updates.
"""

import logging
import math
from typing import Optional, Protocol, runtime_checkable

import torch

Tensor = torch.Tensor

logger = logging.getLogger(__name__)


def effective_rank(S: Tensor, mass: float = 0.99) -> int:
    """
    Number of leading singular values needed to exceed `mass` of their total sum.

    At least 1 for a non-empty S, 0 for an empty one. If the running sum never
    exceeds the threshold (e.g. all zeros) every value is counted.
    """
    n = int(S.numel())
    if n == 0:
        return 0

    values = [float(v) for v in S.reshape(-1).tolist()]
    threshold = float(mass) * sum(values)
    running = 0.0
    for count, v in enumerate(values, start=1):
        running += v
        if running > threshold:
            return count
    return n


@runtime_checkable
class SpannerProtocol(Protocol):
    """What the explorer needs from a spanner implementation."""

    def compute_spanner(self, U: Tensor, rank: int, shrink_factors: Tensor) -> None:
        ...

    def is_action_in_spanner(self, action_id: int) -> bool:
        ...

    def spanner_size(self) -> int:
        ...

    @property
    def num_tracked_actions(self) -> int:
        ...


class OneRankSpanner:
    """
    C-approximate spanner maintained with rank-one inverse updates.

    Args:
        c: approximation factor, > 1. Larger is faster and looser.
        d: largest rank the spanner will be asked for.
        max_sweeps: override for the swap-sweep bound.
    """

    def __init__(self, c: float, d: int, *, max_sweeps: Optional[int] = None) -> None:
        if not float(c) > 1.0:
            raise ValueError(f"c must be > 1, got {c}")
        if int(d) < 1:
            raise ValueError(f"d must be >= 1, got {d}")
        if max_sweeps is not None and int(max_sweeps) < 0:
            raise ValueError(f"max_sweeps must be >= 0 or None, got {max_sweeps}")

        self.c = float(c)
        self.d = int(d)
        self.max_sweeps = None if max_sweeps is None else int(max_sweeps)

        self._in_spanner = torch.zeros(0, dtype=torch.bool)
        self._basis: list[int] = []
        self._converged = True

    # --- queries -------------------------------------------------------------

    def is_action_in_spanner(self, action_id: int) -> bool:
        a = int(action_id)
        return 0 <= a < int(self._in_spanner.shape[0]) and bool(self._in_spanner[a])

    def spanner_size(self) -> int:
        """Number of distinct actions selected by the last compute_spanner()."""
        return int(self._in_spanner.sum().item())

    @property
    def num_tracked_actions(self) -> int:
        """Actions covered by the membership bookkeeping (= rows of the last U)."""
        return int(self._in_spanner.shape[0])

    @property
    def basis(self) -> tuple[int, ...]:
        """Selected action ids in basis-slot order."""
        return tuple(self._basis)

    @property
    def converged(self) -> bool:
        """False if the last swap phase stopped on the sweep bound rather than on local optimality."""
        return self._converged

    def sweep_bound(self, rank: int) -> int:
        if self.max_sweeps is not None:
            return self.max_sweeps
        if rank <= 1:
            return 0
        return int(rank * math.log(rank) / math.log(self.c))

    # --- computation ---------------------------------------------------------

    @staticmethod
    def _replace_row(X: Tensor, X_inv: Tensor, i: int, y: Tensor) -> None:
        """Set X[i] = y and update X_inv in place (Sherman-Morrison)."""
        delta = y - X[i]
        col = X_inv[:, i].clone()
        denom = 1.0 + delta @ col
        X_inv -= torch.outer(col, delta @ X_inv) / denom
        X[i] = y

    def compute_spanner(self, U: Tensor, rank: int, shrink_factors: Tensor) -> None:
        """
        Select up to `rank` rows of U (each scaled by its shrink factor).

        Args:
            U: (num_actions, k) embedding; only the first `rank` columns are used
            rank: effective rank, clamped to [0, min(d, k)]
            shrink_factors: (num_actions,) row scales
        """
        if U.ndim != 2:
            raise ValueError(f"U must be a 2D matrix, got shape {tuple(U.shape)}")
        num_actions = int(U.shape[0])
        if int(shrink_factors.shape[0]) != num_actions:
            raise ValueError(
                f"shrink_factors length {shrink_factors.shape[0]} must match U rows {num_actions}"
            )

        self._in_spanner = torch.zeros(num_actions, dtype=torch.bool)
        self._basis = []
        self._converged = True

        rank = max(0, min(int(rank), self.d, int(U.shape[1])))
        if rank == 0:
            return
        if rank >= num_actions:
            self._in_spanner[:] = True
            self._basis = list(range(num_actions))
            return

        points = U[:, :rank].to(torch.float64) * shrink_factors.to(torch.float64).unsqueeze(1)
        scale = float(torch.linalg.vector_norm(points, dim=1).max().item())
        tol = torch.finfo(U.dtype).eps ** 0.5 * max(scale, 1.0)

        X = torch.eye(rank, dtype=torch.float64)
        X_inv = torch.eye(rank, dtype=torch.float64)
        slots: list[int] = []

        for i in range(rank):
            volumes = (points @ X_inv[:, i]).abs()
            best = int(torch.argmax(volumes).item())
            if float(volumes[best].item()) <= tol:
                # The remaining directions carry no volume; keep what we have.
                logger.debug("spanner basis stopped at %d of %d rows", i, rank)
                break
            self._replace_row(X, X_inv, i, points[best])
            slots.append(best)

        bound = self.sweep_bound(len(slots))
        sweeps = 0
        improved = True
        while improved and sweeps <= bound:
            improved = False
            for i in range(len(slots)):
                volumes = (points @ X_inv[:, i]).abs()
                best = int(torch.argmax(volumes).item())
                if float(volumes[best].item()) > self.c:
                    self._replace_row(X, X_inv, i, points[best])
                    slots[i] = best
                    improved = True
                    break
            sweeps += 1
        self._converged = not improved

        self._basis = slots
        self._in_spanner[torch.tensor(slots, dtype=torch.int64)] = True


__all__ = ["effective_rank", "SpannerProtocol", "OneRankSpanner"]
