import logging
from typing import Optional, Sequence

import pytest
import torch

from spanex.features.interactions import foreach_feature
from spanex.features.matrix import merge_shared
from spanex.features.protocols import BaseLearner
from spanex.features.weights import DenseWeights
from spanex.linalg.svd import LowRankFactors, OnePassSVD, OnePassSVDConfig, TwoPassSVD, TwoPassSVDConfig
from spanex.policies.large_action_space import (
    LargeActionSpaceConfig,
    LargeActionSpaceExplorer,
    parse_large_action_space_config,
)
from spanex.types import ActionScore, Example, split_shared


class LinearCostLearner:
    """Linear scorer over a DenseWeights table; learn() nudges every active weight."""

    def __init__(self, weights: DenseWeights, *, learn_returns_prediction: bool = True, lr: float = 0.1) -> None:
        self.weights = weights
        self.learn_returns_prediction = learn_returns_prediction
        self.lr = lr
        self.learn_calls = 0

    def _score(self, examples: Sequence[Example]) -> list[ActionScore]:
        actions, shared = split_shared(examples)
        preds = []
        for a, ex in enumerate(actions):
            feats = list(foreach_feature(merge_shared(ex, shared)))
            idx = torch.tensor([i for i, _ in feats], dtype=torch.int64)
            x = torch.tensor([v for _, v in feats])
            preds.append(ActionScore(a, float((self.weights.lookup(idx) * x).sum())))
        return preds

    def predict(self, examples: Sequence[Example]) -> list[ActionScore]:
        return self._score(examples)

    def learn(self, examples: Sequence[Example]) -> Optional[list[ActionScore]]:
        self.learn_calls += 1
        actions, shared = split_shared(examples)
        for ex in actions:
            feats = list(foreach_feature(merge_shared(ex, shared)))
            idx = torch.tensor([i for i, _ in feats], dtype=torch.int64)
            x = torch.tensor([v for _, v in feats])
            self.weights.update(idx, self.lr * x)
        return self._score(examples) if self.learn_returns_prediction else None


class EmptyEngine:
    """Low-rank engine that never finds a subspace."""

    def __init__(self) -> None:
        self.calls = 0
        self.closed = False

    def factorize(self, A, shrink_factors, *, seed):
        self.calls += 1
        return LowRankFactors.empty()

    def close(self) -> None:
        self.closed = True


def _batch(num_actions: int, *, seed: int = 0, shared: bool = True, num_features: int = 5) -> list[Example]:
    g = torch.Generator().manual_seed(seed)
    examples = []
    if shared:
        examples.append(Example({"u": [(1000, 1.0), (1001, 0.5)]}, shared=True))
    for _ in range(num_actions):
        idx = torch.randint(0, 256, (num_features,), generator=g).tolist()
        val = torch.randn(num_features, generator=g).tolist()
        examples.append(Example({"a": list(zip(idx, val))}))
    return examples


def _random_weights(num_bits: int = 10, seed: int = 0) -> DenseWeights:
    g = torch.Generator().manual_seed(seed)
    w = DenseWeights(num_bits)
    w.update(torch.arange(1 << num_bits), torch.randn(1 << num_bits, generator=g))
    return w


def _explorer(weights, *, base=None, **cfg) -> LargeActionSpaceExplorer:
    cfg.setdefault("seed", 7)
    cfg.setdefault("svd", OnePassSVDConfig(thread_pool_size=0))
    base = base if base is not None else LinearCostLearner(weights)
    return LargeActionSpaceExplorer(base, weights, config=LargeActionSpaceConfig(**cfg))


def test_protocols():
    assert isinstance(LinearCostLearner(DenseWeights(4)), BaseLearner)


def test_bypass_leaves_predictions_untouched():
    weights = _random_weights()
    base = LinearCostLearner(weights)
    examples = _batch(2)
    with _explorer(weights, base=base, max_actions=3) as explorer:
        out = explorer.predict(examples)
        expected = base.predict(examples)

    assert [(p.action, p.score) for p in out] == [(p.action, p.score) for p in expected]
    assert explorer.last_factors is None


def test_cold_start_is_uniform_and_keeps_every_action():
    weights = DenseWeights(10)  # nothing learned yet
    with _explorer(weights, max_actions=3) as explorer:
        out = explorer.predict(_batch(10))

    assert len(out) == 10
    assert [p.action for p in out] == list(range(10))
    assert all(p.score == 1.0 / 10 for p in out)
    assert explorer.last_factors is not None and explorer.last_factors.is_empty


def test_empty_engine_forces_cold_start():
    weights = _random_weights()
    engine = EmptyEngine()
    explorer = LargeActionSpaceExplorer(
        LinearCostLearner(weights),
        weights,
        config=LargeActionSpaceConfig(max_actions=2, seed=1),
        engine=engine,
    )
    out = explorer.predict(_batch(6))
    explorer.close()

    assert engine.calls == 1 and engine.closed
    assert len(out) == 6
    assert all(p.score == pytest.approx(1.0 / 6) for p in out)


@pytest.mark.parametrize("num_actions,d", [(5, 3), (40, 3), (60, 8)])
def test_filtered_output_is_spanner_plus_best(num_actions, d):
    weights = _random_weights(seed=num_actions)
    base = LinearCostLearner(weights)
    examples = _batch(num_actions, seed=num_actions)
    original = base.predict(examples)
    best = LargeActionSpaceExplorer.best_action(original)

    with _explorer(weights, base=base, max_actions=d) as explorer:
        out = explorer.predict(examples)
        spanner = explorer.spanner

    kept = [p.action for p in out]
    assert best in kept
    assert len(kept) == spanner.spanner_size() + (0 if spanner.is_action_in_spanner(best) else 1)
    assert len(kept) <= d + 1
    assert len(kept) < num_actions
    for a in kept:
        assert a == best or spanner.is_action_in_spanner(a)
    # survivors keep their original order and scores
    assert kept == sorted(kept)
    scores = {p.action: p.score for p in original}
    assert all(p.score == scores[p.action] for p in out)


def test_two_pass_with_shrink_factors_keeps_best_action():
    weights = _random_weights(seed=3)
    base = LinearCostLearner(weights)
    examples = _batch(30, seed=3)
    best = LargeActionSpaceExplorer.best_action(base.predict(examples))

    with _explorer(
        weights,
        base=base,
        max_actions=4,
        svd=TwoPassSVDConfig(power_iterations=1),
        apply_shrink_factor=True,
        gamma_scale=10.0,
        gamma_exponent=0.5,
    ) as explorer:
        assert isinstance(explorer.engine, TwoPassSVD)
        out = explorer.predict(examples)

    assert best in [p.action for p in out]
    assert len(out) <= 5


def test_filtering_is_deterministic_given_seed_and_counter():
    weights = _random_weights(seed=11)
    examples = _batch(50, seed=11)

    runs = []
    for pool in (0, 3):
        with _explorer(weights, max_actions=5, svd=OnePassSVDConfig(thread_pool_size=pool, block_size=4)) as explorer:
            runs.append([p.action for p in explorer.predict(examples)])
    assert runs[0] == runs[1]


def test_best_action_takes_first_of_ties():
    preds = [ActionScore(4, 1.0), ActionScore(2, 0.5), ActionScore(9, 0.5), ActionScore(1, 3.0)]
    assert LargeActionSpaceExplorer.best_action(preds) == 2


def test_learn_advances_counter_once_per_call():
    weights = _random_weights(seed=2)
    examples = _batch(20, seed=2)

    with _explorer(weights, max_actions=4) as explorer:
        assert explorer.counter == 0
        seed0 = explorer.round_seed()
        out = explorer.learn(examples)
        assert out is not None and len(out) <= 5
        assert explorer.counter == 1
        assert explorer.round_seed() != seed0

    quiet = LinearCostLearner(weights, learn_returns_prediction=False)
    with _explorer(weights, base=quiet, max_actions=4) as explorer:
        assert explorer.learn(examples) is None
        assert explorer.learn(examples) is None
        assert explorer.counter == 2
        assert quiet.learn_calls == 2


def test_prediction_count_mismatch_raises():
    weights = _random_weights()
    examples = _batch(10)
    preds = [ActionScore(a, float(a)) for a in range(9)]
    with _explorer(weights, max_actions=3) as explorer:
        with pytest.raises(RuntimeError):
            explorer.update_example_prediction(examples, preds)


def test_save_and_load_round_counter(tmp_path):
    weights = _random_weights()
    examples = _batch(8)
    path = tmp_path / "las.pt"

    with _explorer(weights, max_actions=3) as explorer:
        for _ in range(3):
            explorer.learn(examples)
        explorer.save(path)
        assert explorer.state_dict()["counter"] == 3

    with _explorer(weights, max_actions=3) as restored:
        assert restored.counter == 0
        restored.load(path)
        assert restored.counter == 3

        restored.load_state_dict({})
        assert restored.counter == 0

        with pytest.raises(ValueError):
            restored.load_state_dict({"version": 99, "counter": 1})
        with pytest.raises(ValueError):
            restored.load_state_dict({"counter": -1})


def test_config_validation():
    weights = _random_weights()
    with pytest.raises(ValueError):
        _explorer(weights, max_actions=0)
    with pytest.raises(ValueError):
        _explorer(weights, spanner_c=1.0)
    with pytest.raises(TypeError):
        LargeActionSpaceExplorer(LinearCostLearner(weights), object(), config=LargeActionSpaceConfig(seed=1))


def test_explicit_kernel_is_disabled_for_cubic_interactions(caplog):
    weights = _random_weights()
    with caplog.at_level(logging.WARNING):
        explorer = _explorer(
            weights,
            interactions=(("a", "b", "c"),),
            svd=OnePassSVDConfig(thread_pool_size=0, use_explicit_simd=True),
        )
    assert isinstance(explorer.engine, OnePassSVD)
    assert explorer.engine.use_explicit_simd is False
    assert "disabling" in caplog.text
    explorer.close()

    quadratic = _explorer(
        weights,
        interactions=(("a", "b"),),
        svd=OnePassSVDConfig(thread_pool_size=0, use_explicit_simd=True),
    )
    assert quadratic.engine.use_explicit_simd is True
    quadratic.close()


def test_parse_config_coerces_cb_type_and_reads_squarecb(caplog):
    with caplog.at_level(logging.WARNING):
        cfg = parse_large_action_space_config(
            {
                "max_actions": 30,
                "spanner_c": 3,
                "cb_type": "dr",
                "svd": {"kind": "two_pass"},
                "squarecb": {"gamma_scale": 10.0, "gamma_exponent": 0.5},
                "interactions": ["ab"],
                "seed": 5,
            }
        )
    assert "resetting to mtr" in caplog.text
    assert cfg.cb_type == "mtr"
    assert cfg.max_actions == 30
    assert cfg.spanner_c == 3.0
    assert isinstance(cfg.svd, TwoPassSVDConfig)
    assert cfg.apply_shrink_factor is True
    assert cfg.gamma_scale == 10.0 and cfg.gamma_exponent == 0.5
    assert cfg.interactions == (("a", "b"),)
    assert cfg.seed == 5

    plain = parse_large_action_space_config({})
    assert plain.apply_shrink_factor is False
    assert isinstance(plain.svd, OnePassSVDConfig)
    assert plain.max_actions == 20
