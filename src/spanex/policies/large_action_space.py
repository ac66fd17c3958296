from __future__ import annotations

import logging
from dataclasses import dataclass, field
from os import PathLike
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

import torch

from spanex.features.interactions import Interaction, interaction_order
from spanex.features.matrix import build_feature_matrix
from spanex.features.protocols import BaseLearner, WeightTable
from spanex.linalg.projection import derive_seed
from spanex.linalg.svd import (
    LowRankEngine,
    LowRankFactors,
    OnePassSVDConfig,
    SVDConfig,
    make_svd_engine,
    parse_svd_config,
)
from spanex.shrink import ShrinkFactorConfig
from spanex.spanner import OneRankSpanner, SpannerProtocol, effective_rank
from spanex.types import ActionScore, Example, split_shared

Tensor = torch.Tensor

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 1


@dataclass(frozen=True)
class LargeActionSpaceConfig:
    """
    Configuration for LargeActionSpaceExplorer.

    Notes
    -----
    - `max_actions` is the target rank d: batches with at most d actions are
      passed through untouched, larger ones are cut down to a spanner of at
      most d actions plus the best action.
    - `gamma_scale`, `gamma_exponent` and `apply_shrink_factor` mirror the
      downstream SquareCB policy; leave shrinking off for e-greedy.
    - `svd` selects the low-rank engine (one-pass by default).
    - `interactions`/`permutations` must match the ones the base learner uses,
      since the feature matrix is built from the same weight table.
    - `seed` fixes the projection seed; None draws one from torch's RNG.
    - Only cost regression ("mtr") labels are supported.
    """
    max_actions: int = 20
    spanner_c: float = 2.0
    spanner_max_sweeps: Optional[int] = None

    gamma_scale: float = 1.0
    gamma_exponent: float = 0.0
    apply_shrink_factor: bool = False

    svd: SVDConfig = field(default_factory=OnePassSVDConfig)

    interactions: tuple[Interaction, ...] = ()
    permutations: bool = False

    seed: Optional[int] = None
    cb_type: str = "mtr"


def parse_large_action_space_config(obj: Mapping[str, Any]) -> LargeActionSpaceConfig:
    """
    Build a LargeActionSpaceConfig from a dict-like payload (JSON/YAML/CLI).

    A "squarecb" entry ({"gamma_scale": ..., "gamma_exponent": ...}) turns on
    shrink factors with those parameters. A cb_type other than "mtr" is reset
    to "mtr" with a warning.

    Example:
      parse_large_action_space_config({
          "max_actions": 30,
          "spanner_c": 2,
          "svd": {"kind": "two_pass"},
          "squarecb": {"gamma_scale": 10.0, "gamma_exponent": 0.5},
      })
    """
    cb_type = str(obj.get("cb_type", "mtr"))
    if cb_type != "mtr":
        logger.warning(
            "Only cb_type 'mtr' is supported with large action spaces, resetting to mtr. Input was: %r",
            cb_type,
        )
        cb_type = "mtr"

    squarecb = obj.get("squarecb")
    apply_shrink = bool(obj.get("apply_shrink_factor", False))
    gamma_scale = float(obj.get("gamma_scale", 1.0))
    gamma_exponent = float(obj.get("gamma_exponent", 0.0))
    if squarecb is not None:
        apply_shrink = True
        if isinstance(squarecb, Mapping):
            gamma_scale = float(squarecb.get("gamma_scale", gamma_scale))
            gamma_exponent = float(squarecb.get("gamma_exponent", gamma_exponent))

    svd_obj = obj.get("svd", {"kind": "one_pass"})
    max_sweeps = obj.get("spanner_max_sweeps")
    seed = obj.get("seed")

    return LargeActionSpaceConfig(
        max_actions=int(obj.get("max_actions", 20)),
        spanner_c=float(obj.get("spanner_c", 2.0)),
        spanner_max_sweeps=None if max_sweeps is None else int(max_sweeps),
        gamma_scale=gamma_scale,
        gamma_exponent=gamma_exponent,
        apply_shrink_factor=apply_shrink,
        svd=parse_svd_config(svd_obj),
        interactions=tuple(tuple(term) for term in obj.get("interactions", ())),
        permutations=bool(obj.get("permutations", False)),
        seed=None if seed is None else int(seed),
        cb_type=cb_type,
    )


class LargeActionSpaceExplorer:
    """
    Large action space filter between a cost regressor and an exploration policy.

    Per call (learn or predict), on the prediction list of the base learner:

      - Bypass:    num_actions <= d, nothing to do.
      - ColdStart: the low-rank engine finds no usable subspace (typically a
                   fresh model whose weights are all zero): every score is set
                   to 1 / num_actions and no action is removed.
      - Filtered:  shrink factors -> sparse feature matrix -> randomized low-rank
                   embedding U -> effective rank -> c-approximate spanner of U's
                   rows. Only spanner members and the best (lowest score) action
                   stay in the list. A masking stage downstream is expected to
                   add the others back with zero probability.

    Persistent state is a single round counter, incremented once per learn()
    call. It drives the shrink-factor schedule and, together with the
    construction seed, the per-round projection seed.

    Owned resources: the low-rank engine may hold a worker pool; call close()
    (or use the explorer as a context manager) when done.
    """

    def __init__(
        self,
        base: BaseLearner,
        weights: WeightTable,
        *,
        config: LargeActionSpaceConfig,
        dtype: torch.dtype = torch.float32,
        spanner: Optional[SpannerProtocol] = None,
        engine: Optional[LowRankEngine] = None,
    ) -> None:
        # --- Validate config early (fail fast) ---
        if config.max_actions < 1:
            raise ValueError(f"config.max_actions must be >= 1, got {config.max_actions}")
        if not config.spanner_c > 1.0:
            raise ValueError(f"config.spanner_c must be > 1, got {config.spanner_c}")
        if config.gamma_scale < 0:
            raise ValueError(f"config.gamma_scale must be >= 0, got {config.gamma_scale}")
        if config.cb_type != "mtr":
            raise ValueError(f"config.cb_type must be 'mtr', got {config.cb_type!r}")
        if not isinstance(weights, WeightTable):
            raise TypeError("weights must provide .mask and .lookup(indices)")

        svd_cfg = config.svd
        if getattr(svd_cfg, "use_explicit_simd", False) and interaction_order(config.interactions) > 2:
            logger.warning(
                "explicit vectorized one-pass kernel only supports up to quadratic interactions; disabling it"
            )
            svd_cfg = OnePassSVDConfig(
                thread_pool_size=svd_cfg.thread_pool_size,
                block_size=svd_cfg.block_size,
                use_explicit_simd=False,
            )

        self.config = config
        self.base = base
        self.weights = weights
        self.dtype = dtype

        self.shrink = ShrinkFactorConfig(
            gamma_scale=float(config.gamma_scale),
            gamma_exponent=float(config.gamma_exponent),
            apply_shrink_factor=bool(config.apply_shrink_factor),
        )
        self.engine: LowRankEngine = (
            engine if engine is not None else make_svd_engine(svd_cfg, d=int(config.max_actions), dtype=dtype)
        )
        self.spanner: SpannerProtocol = (
            spanner
            if spanner is not None
            else OneRankSpanner(config.spanner_c, config.max_actions, max_sweeps=config.spanner_max_sweeps)
        )

        if config.seed is not None:
            self._seed = int(config.seed)
        else:
            self._seed = int(torch.randint(1, 2**31 - 1, ()).item())

        self._counter = 0  # number of learn() calls; the only persisted state

        # Last call's factors, kept for inspection only.
        self.last_factors: Optional[LowRankFactors] = None

    @property
    def max_actions(self) -> int:
        return int(self.config.max_actions)

    @property
    def counter(self) -> int:
        return int(self._counter)

    @property
    def seed(self) -> int:
        return int(self._seed)

    def round_seed(self) -> int:
        """Projection seed of the current round."""
        return derive_seed(self._seed, self._counter)

    def __enter__(self) -> "LargeActionSpaceExplorer":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self.engine.close()

    # --- pipeline ------------------------------------------------------------

    def _scores_by_action(self, preds: Sequence[ActionScore], num_actions: int) -> Tensor:
        scores = torch.zeros(num_actions, dtype=torch.float64)
        seen = torch.zeros(num_actions, dtype=torch.bool)
        for p in preds:
            a = int(p.action)
            if not 0 <= a < num_actions:
                raise RuntimeError(f"prediction refers to action {a}, but the batch has {num_actions} actions")
            scores[a] = float(p.score)
            seen[a] = True
        if not bool(seen.all()):
            raise RuntimeError("predictions do not cover every action of the batch")
        return scores

    @staticmethod
    def best_action(preds: Sequence[ActionScore]) -> int:
        """Action with the lowest score; ties go to the first one in prediction order."""
        best = preds[0]
        for p in preds[1:]:
            if p.score < best.score:
                best = p
        return int(best.action)

    def update_example_prediction(self, examples: Sequence[Example], preds: list[ActionScore]) -> list[ActionScore]:
        """
        Apply the bypass / cold start / filtering logic to preds in place.

        Returns:
            preds (the same list object)
        """
        num_actions = len(preds)
        d = self.max_actions
        if num_actions <= d:
            logger.debug("bypass: %d actions <= max_actions %d", num_actions, d)
            return preds

        actions, _ = split_shared(examples)
        if len(actions) != num_actions:
            raise RuntimeError(
                f"got {num_actions} predictions for {len(actions)} action examples"
            )

        scores = self._scores_by_action(preds, num_actions)
        shrink_factors = self.shrink.calculate_shrink_factor(self._counter, d, scores, dtype=self.dtype)

        A, non_degenerate = build_feature_matrix(
            examples,
            self.weights,
            interactions=self.config.interactions,
            permutations=self.config.permutations,
            dtype=self.dtype,
        )
        factors = self.engine.factorize(A, shrink_factors, seed=self.round_seed())
        self.last_factors = factors

        # U is empty before anything has been learned.
        if factors.is_empty:
            logger.debug(
                "cold start: no usable subspace (non_degenerate=%s), uniform over %d actions",
                non_degenerate,
                num_actions,
            )
            prob = 1.0 / num_actions
            for p in preds:
                p.score = prob
            return preds

        rank = min(d, effective_rank(factors.S))
        self.spanner.compute_spanner(factors.U, rank, shrink_factors)
        if self.spanner.num_tracked_actions != num_actions:
            raise RuntimeError(
                f"spanner tracks {self.spanner.num_tracked_actions} actions, batch has {num_actions}"
            )

        best = self.best_action(preds)
        preds[:] = [p for p in preds if p.action == best or self.spanner.is_action_in_spanner(p.action)]
        logger.debug(
            "filtered: %d -> %d actions (effective rank %d, spanner size %d)",
            num_actions,
            len(preds),
            rank,
            self.spanner.spanner_size(),
        )
        return preds

    def predict(self, examples: Sequence[Example]) -> list[ActionScore]:
        """Base prediction followed by the filtering pipeline."""
        preds = self.base.predict(examples)
        return self.update_example_prediction(examples, preds)

    def learn(self, examples: Sequence[Example]) -> Optional[list[ActionScore]]:
        """
        Forward to the base learner's learn(); filter its predictions if it
        returned any. The round counter advances exactly once either way.
        """
        preds = self.base.learn(examples)
        try:
            if self.base.learn_returns_prediction and preds is not None:
                preds = self.update_example_prediction(examples, preds)
        finally:
            self._counter += 1
        return preds

    # --- persistence ---------------------------------------------------------

    def state_dict(self) -> dict[str, object]:
        return {"version": CHECKPOINT_VERSION, "counter": int(self._counter)}

    def load_state_dict(self, state: Mapping[str, object]) -> None:
        """Restore the round counter. A payload without one is a fresh model (counter 0)."""
        version = int(state.get("version", CHECKPOINT_VERSION))  # type: ignore[arg-type]
        if version != CHECKPOINT_VERSION:
            raise ValueError(f"Unsupported checkpoint version {version}, expected {CHECKPOINT_VERSION}")
        counter = int(state.get("counter", 0))  # type: ignore[arg-type]
        if counter < 0:
            raise ValueError(f"counter must be >= 0, got {counter}")
        self._counter = counter

    def save(self, path: str | PathLike[str]) -> None:
        """Write the explorer's persisted state (the round counter) to path."""
        torch.save(self.state_dict(), str(Path(path)))

    def load(self, path: str | PathLike[str], *, map_location: str | torch.device | None = None) -> None:
        state = torch.load(str(Path(path)), map_location=map_location)
        if not isinstance(state, Mapping):
            raise ValueError(f"Invalid checkpoint at {path}: expected a mapping")
        self.load_state_dict(state)


__all__ = [
    "CHECKPOINT_VERSION",
    "LargeActionSpaceConfig",
    "parse_large_action_space_config",
    "LargeActionSpaceExplorer",
]
