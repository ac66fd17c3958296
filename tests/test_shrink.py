import math

import pytest
import torch

from spanex.shrink import ShrinkFactorConfig


def test_disabled_shrink_is_all_ones():
    cfg = ShrinkFactorConfig(gamma_scale=10.0, gamma_exponent=0.5, apply_shrink_factor=False)
    out = cfg.calculate_shrink_factor(7, 3, torch.tensor([0.1, 5.0, -2.0, 3.0]))
    assert out.shape == (4,)
    assert torch.equal(out, torch.ones(4))


def test_enabled_shrink_formula_and_lower_bound():
    cfg = ShrinkFactorConfig(gamma_scale=2.0, gamma_exponent=0.5, apply_shrink_factor=True)
    # gamma = 2 * 4 ** 0.5 = 4, d = 3
    assert cfg.gamma(4) == pytest.approx(4.0)

    scores = torch.tensor([1.0, 7.0, 1.0, 4.0], dtype=torch.float64)
    out = cfg.calculate_shrink_factor(4, 3, scores, dtype=torch.float64)

    floor = math.sqrt(1.0 + 3.0)
    assert float(out[0]) == pytest.approx(floor)
    assert float(out[2]) == pytest.approx(floor)
    assert float(out[1]) == pytest.approx(math.sqrt(4.0 + 4.0 / 12.0 * 6.0))
    assert float(out[3]) == pytest.approx(math.sqrt(4.0 + 4.0 / 12.0 * 3.0))
    assert bool((out >= floor - 1e-12).all())


def test_negative_exponent_at_round_zero_is_finite():
    cfg = ShrinkFactorConfig(gamma_scale=1.0, gamma_exponent=-0.5, apply_shrink_factor=True)
    assert cfg.gamma(0) == pytest.approx(1.0)
    out = cfg.calculate_shrink_factor(0, 2, torch.tensor([0.0, 1.0]))
    assert torch.isfinite(out).all()


def test_invalid_inputs_raise():
    cfg = ShrinkFactorConfig(apply_shrink_factor=True)
    with pytest.raises(ValueError):
        cfg.calculate_shrink_factor(0, 0, torch.zeros(3))
    with pytest.raises(ValueError):
        cfg.calculate_shrink_factor(0, 2, torch.zeros(2, 2))
