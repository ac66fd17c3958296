from __future__ import annotations

from dataclasses import dataclass

import torch

Tensor = torch.Tensor


@dataclass(frozen=True)
class ShrinkFactorConfig:
    """
    Per-action row scaling used when a SquareCB-style policy sits downstream.

    With apply_shrink_factor, action a is scaled by

        sqrt(1 + d + gamma / (4 d) * (score_a - min_score)),   gamma = gamma_scale * t ** gamma_exponent

    where t is the round counter and d the target rank. Actions that look worse
    (higher predicted cost) get larger rows and so weigh more in the spanner's
    volume, which counters the pull towards the greedy action. Every factor is
    >= sqrt(1 + d). Without it all factors are 1.
    """
    gamma_scale: float = 1.0
    gamma_exponent: float = 0.0
    apply_shrink_factor: bool = False

    def gamma(self, counter: int) -> float:
        t = float(counter)
        if self.gamma_exponent < 0 and t == 0.0:
            # 0 ** negative is undefined; round 0 behaves like round 1.
            t = 1.0
        return float(self.gamma_scale) * t ** float(self.gamma_exponent)

    def calculate_shrink_factor(
        self,
        counter: int,
        max_actions: int,
        scores: Tensor,
        *,
        dtype: torch.dtype = torch.float32,
    ) -> Tensor:
        """
        Args:
            counter: round counter (number of learn calls so far)
            max_actions: target rank d, >= 1
            scores: (num_actions,) predicted scores in action order

        Returns:
            (num_actions,) shrink factors in action order
        """
        if int(max_actions) < 1:
            raise ValueError(f"max_actions must be >= 1, got {max_actions}")
        if scores.ndim != 1:
            raise ValueError(f"scores must be 1D, got shape {tuple(scores.shape)}")

        if not self.apply_shrink_factor or scores.numel() == 0:
            return torch.ones(int(scores.shape[0]), dtype=dtype)

        d = float(max_actions)
        s = scores.to(torch.float64)
        gap = s - s.min()
        factors = torch.sqrt(1.0 + d + (self.gamma(counter) / (4.0 * d)) * gap)
        return factors.to(dtype)


__all__ = ["ShrinkFactorConfig"]
