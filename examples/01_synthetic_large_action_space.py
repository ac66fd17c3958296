# examples/01_synthetic_large_action_space.py
"""
Synthetic large action space example with regret.

An epsilon-greedy policy over a linear cost regressor, with and without the
large action space filter in between:
  1) plain: explore uniformly over all actions
  2) filtered: explore uniformly over the spanner (at most --max-actions actions)
     plus the greedy action

Actions are hashed sparse feature vectors that live close to a low-dimensional
subspace, which is the setting where a small spanner covers the action space well.

Run:
  python examples/01_synthetic_large_action_space.py
  python examples/01_synthetic_large_action_space.py --help
  python examples/01_synthetic_large_action_space.py --actions 500 --max-actions 10
  python examples/01_synthetic_large_action_space.py --two-pass
  python examples/01_synthetic_large_action_space.py --thread-pool-size 4 --log-level DEBUG

  # sanity-check save/load of the round counter at the end of the run
  python examples/01_synthetic_large_action_space.py --sanity-check-save-load

Notes:
  - Costs are in [0, 1]; lower is better. Regret is measured against the expected cost.
  - Only the round counter is checkpointed; the weight table belongs to the learner.
"""

from __future__ import annotations

import argparse
import logging
import random
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import torch

from spanex.features.interactions import foreach_feature
from spanex.features.matrix import merge_shared
from spanex.features.weights import DenseWeights
from spanex.linalg.svd import OnePassSVDConfig, TwoPassSVDConfig
from spanex.policies.large_action_space import LargeActionSpaceConfig, LargeActionSpaceExplorer
from spanex.types import ActionScore, Example, split_shared

logger = logging.getLogger("examples.synthetic_large_action_space")


# -------------------------
# Synthetic environment
# -------------------------


@dataclass(frozen=True)
class SyntheticEnvConfig:
    n_actions: int = 200
    latent_dim: int = 6
    features_per_action: int = 8
    context_dim: int = 4
    env_noise_std: float = 0.05
    seed: int = 0


class SyntheticEnv:
    """
    Each action a owns a latent vector v_a in R^latent_dim and a handful of hashed
    features. Expected cost:
        m(x, a) = sigmoid(v_a^T (W x) + b)
    where x is the context. Observed cost adds Normal(0, env_noise_std^2) and is
    clipped to [0, 1].
    """

    def __init__(self, cfg: SyntheticEnvConfig) -> None:
        self.cfg = cfg
        g = torch.Generator(device="cpu").manual_seed(cfg.seed)

        self.latent = torch.randn(cfg.n_actions, cfg.latent_dim, generator=g)
        self.W = torch.randn(cfg.latent_dim, cfg.context_dim, generator=g)
        self.b = float(torch.randn((), generator=g).item())

        # Each latent coordinate maps to a fixed hashed feature; actions also get a
        # few sparse noise features of their own.
        self.latent_ids = torch.randint(0, 2**31, (cfg.latent_dim,), generator=g).tolist()
        self.noise_ids = torch.randint(0, 2**31, (cfg.n_actions, cfg.features_per_action), generator=g).tolist()
        self.noise_vals = (0.05 * torch.randn(cfg.n_actions, cfg.features_per_action, generator=g)).tolist()

    def sample_context(self, generator: torch.Generator) -> torch.Tensor:
        return torch.randn(self.cfg.context_dim, generator=generator)

    def examples(self, x: torch.Tensor) -> list[Example]:
        """Shared context example followed by one example per action."""
        shared = Example({"x": [(10_000 + j, float(v)) for j, v in enumerate(x.tolist())]}, shared=True)
        out = [shared]
        for a in range(self.cfg.n_actions):
            latent = [(i, float(v)) for i, v in zip(self.latent_ids, self.latent[a].tolist())]
            noise = list(zip(self.noise_ids[a], self.noise_vals[a]))
            out.append(Example({"a": latent + noise}))
        return out

    def mean_cost(self, x: torch.Tensor) -> torch.Tensor:
        """Expected cost of every action for context x, shape (n_actions,)."""
        return torch.sigmoid(self.latent @ (self.W @ x) + self.b)

    def observe_cost(self, mean: float, generator: torch.Generator) -> float:
        noise = float(torch.randn((), generator=generator).item()) * self.cfg.env_noise_std
        return min(1.0, max(0.0, mean + noise))


# -------------------------
# Base learner
# -------------------------


class LinearCostRegressor:
    """
    Squared-loss linear regressor over hashed features with quadratic interactions
    between the action namespace "a" and the context namespace "x".

    Before learn() the caller sets `label = (action, cost)`; learn() takes one SGD
    step on that action and returns fresh predictions.
    """

    learn_returns_prediction = True

    def __init__(self, weights: DenseWeights, *, interactions: Sequence[str], lr: float) -> None:
        self.weights = weights
        self.interactions = tuple(interactions)
        self.lr = float(lr)
        self.label: Optional[tuple[int, float]] = None

    def _features(self, action: Example, shared: Optional[Example]) -> tuple[torch.Tensor, torch.Tensor]:
        feats = list(foreach_feature(merge_shared(action, shared), self.interactions))
        idx = torch.tensor([i & self.weights.mask for i, _ in feats], dtype=torch.int64)
        val = torch.tensor([v for _, v in feats], dtype=self.weights.dtype)
        return idx, val

    def predict(self, examples: Sequence[Example]) -> list[ActionScore]:
        actions, shared = split_shared(examples)
        preds = []
        for a, ex in enumerate(actions):
            idx, val = self._features(ex, shared)
            preds.append(ActionScore(a, float((self.weights.lookup(idx) * val).sum().item())))
        return preds

    def learn(self, examples: Sequence[Example]) -> Optional[list[ActionScore]]:
        if self.label is None:
            raise RuntimeError("learn() called without a label")
        action, cost = self.label
        actions, shared = split_shared(examples)
        idx, val = self._features(actions[action], shared)
        pred = float((self.weights.lookup(idx) * val).sum().item())
        self.weights.update(idx, -self.lr * (pred - cost) * val)
        self.label = None
        return self.predict(examples)


# -------------------------
# Policy
# -------------------------


def epsilon_greedy(preds: Sequence[ActionScore], epsilon: float, rng: random.Random) -> int:
    """Greedy (lowest score) with probability 1 - epsilon, else uniform over preds."""
    if rng.random() < epsilon:
        return int(preds[rng.randrange(len(preds))].action)
    return LargeActionSpaceExplorer.best_action(preds)


class Agent:
    def __init__(
        self,
        name: str,
        *,
        num_bits: int,
        interactions: Sequence[str],
        lr: float,
        epsilon: float,
        seed: int,
        explorer_cfg: Optional[LargeActionSpaceConfig],
    ) -> None:
        self.name = name
        self.epsilon = float(epsilon)
        self.rng = random.Random(seed)
        self.weights = DenseWeights(num_bits)
        self.base = LinearCostRegressor(self.weights, interactions=interactions, lr=lr)
        self.explorer = (
            LargeActionSpaceExplorer(self.base, self.weights, config=explorer_cfg) if explorer_cfg is not None else None
        )
        self.candidates: list[int] = []

    def select_action(self, examples: list[Example]) -> int:
        preds = self.explorer.predict(examples) if self.explorer is not None else self.base.predict(examples)
        self.candidates.append(len(preds))
        return epsilon_greedy(preds, self.epsilon, self.rng)

    def update(self, examples: list[Example], action: int, cost: float) -> None:
        self.base.label = (action, cost)
        if self.explorer is not None:
            self.explorer.learn(examples)
        else:
            self.base.learn(examples)

    def close(self) -> None:
        if self.explorer is not None:
            self.explorer.close()


# -------------------------
# Utilities
# -------------------------


def moving_avg(x: list[float], window: int) -> float:
    if not x:
        return 0.0
    w = min(window, len(x))
    return float(sum(x[-w:]) / w)


# -------------------------
# Main
# -------------------------


def main() -> None:
    """
    Run the synthetic simulation, plain e-greedy vs filtered e-greedy.

    Command-line arguments
    ----------------------
    --horizon : int (default: 500)
        Number of rounds. Each round samples a context, scores every action,
        picks one, observes its cost and takes one learning step.

    --actions : int (default: 200)
        Number of candidate actions per round.

    --max-actions : int (default: 8)
        Target rank d of the filter; rounds with more actions are cut down to at
        most d spanner actions plus the greedy one.

    --spanner-c : float (default: 2.0)
        Approximation factor of the spanner, > 1.

    --two-pass : flag
        Use the two-pass randomized SVD instead of the one-pass sketch.

    --thread-pool-size : int or None (default: None)
        Worker threads of the one-pass engine; None picks a default from the CPU count.

    --epsilon : float (default: 0.1)
        Exploration probability of both agents.

    --sanity-check-save-load : flag
        Save the filter's round counter at the end, reload it into a fresh
        explorer and check it matches.
    """
    p = argparse.ArgumentParser()
    p.add_argument("--horizon", type=int, default=500)
    p.add_argument("--actions", type=int, default=200)
    p.add_argument("--seed", type=int, default=0)
    p.add_argument("--env-noise-std", type=float, default=0.05)

    p.add_argument("--num-bits", type=int, default=18)
    p.add_argument("--lr", type=float, default=0.05)
    p.add_argument("--epsilon", type=float, default=0.1)

    p.add_argument("--max-actions", type=int, default=8)
    p.add_argument("--spanner-c", type=float, default=2.0)
    p.add_argument("--two-pass", action="store_true")
    p.add_argument("--thread-pool-size", type=int, default=None)

    p.add_argument("--log-level", type=str, default="INFO", choices=["DEBUG", "INFO", "WARNING"])
    p.add_argument(
        "--save-path",
        type=str,
        default="examples/data/large_action_space_state.pt",
        help="Where to save the round counter (used by the sanity check).",
    )
    p.add_argument("--sanity-check-save-load", action="store_true")

    args = p.parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")

    torch.manual_seed(args.seed)
    ctx_gen = torch.Generator().manual_seed(args.seed + 1)
    noise_gen = torch.Generator().manual_seed(args.seed + 2)

    env = SyntheticEnv(
        SyntheticEnvConfig(n_actions=int(args.actions), env_noise_std=float(args.env_noise_std), seed=int(args.seed))
    )

    interactions = ["ax"]
    svd_cfg = (
        TwoPassSVDConfig()
        if args.two_pass
        else OnePassSVDConfig(thread_pool_size=args.thread_pool_size)
    )
    explorer_cfg = LargeActionSpaceConfig(
        max_actions=int(args.max_actions),
        spanner_c=float(args.spanner_c),
        svd=svd_cfg,
        interactions=tuple(tuple(term) for term in interactions),
        seed=int(args.seed),
    )

    common = dict(num_bits=int(args.num_bits), interactions=interactions, lr=float(args.lr), epsilon=float(args.epsilon))
    agents = [
        Agent("plain", seed=args.seed + 3, explorer_cfg=None, **common),
        Agent("filtered", seed=args.seed + 4, explorer_cfg=explorer_cfg, **common),
    ]
    regrets: dict[str, list[float]] = {a.name: [] for a in agents}

    horizon = int(args.horizon)
    try:
        for t in range(1, horizon + 1):
            x = env.sample_context(ctx_gen)
            examples = env.examples(x)
            means = env.mean_cost(x)
            best_mean = float(means.min().item())

            for agent in agents:
                a = agent.select_action(examples)
                mean = float(means[a].item())
                agent.update(examples, a, env.observe_cost(mean, noise_gen))
                regrets[agent.name].append(mean - best_mean)

            if t in {10, 50, 100} or (t % 100 == 0) or (t == horizon):
                parts = [
                    f"{a.name} cum_reg={sum(regrets[a.name]):8.2f} cands={moving_avg(a.candidates, 100):6.1f}"
                    for a in agents
                ]
                logger.info("[t=%4d] %s", t, " | ".join(parts))

        filtered = agents[1].explorer
        if args.sanity_check_save_load and filtered is not None:
            ckpt_path = Path(args.save_path)
            ckpt_path.parent.mkdir(parents=True, exist_ok=True)
            filtered.save(ckpt_path)

            fresh = LargeActionSpaceExplorer(agents[1].base, agents[1].weights, config=explorer_cfg)
            fresh.load(ckpt_path, map_location="cpu")
            ok = fresh.counter == filtered.counter and fresh.round_seed() == filtered.round_seed()
            fresh.close()
            logger.info(
                "save/load: counter before=%d after=%d (%s)",
                filtered.counter,
                fresh.counter,
                "OK" if ok else "MISMATCH",
            )
    finally:
        for agent in agents:
            agent.close()

    print("\nFinal:")
    for agent in agents:
        print(f"  {agent.name:8s} cumulative regret: {sum(regrets[agent.name]):.3f}")
        print(f"  {agent.name:8s} avg candidates per round: {moving_avg(agent.candidates, horizon):.1f}")


if __name__ == "__main__":
    main()
