import numpy as np
import pytest

from core import SimulationConfig, sample_blended_return, simulate_path


def _make_config(**overrides) -> SimulationConfig:
    values = dict(
        iterations=1,
        equities_pct=60,
        bonds_pct=30,
        cash_pct=10,
        starting_balance=1_000.0,
        annual_withdrawal=100.0,
        years_in_retirement=3,
        inflation_rate=0.0,
    )
    values.update(overrides)
    return SimulationConfig(**values)


def _fixed(rate):
    return lambda equities, bonds, cash: rate


def test_fixed_return_recurrence():
    path = simulate_path(_make_config(), sampler=_fixed(0.05))

    assert list(path.balances) == pytest.approx([1_000.0, 950.0, 897.5, 842.375])
    assert path.final_balance == pytest.approx(842.375)
    assert path.succeeded


def test_withdrawal_inflates_each_year():
    path = simulate_path(_make_config(inflation_rate=10), sampler=_fixed(0.0))

    assert list(path.balances) == pytest.approx([1_000.0, 900.0, 790.0, 669.0])


def test_zero_years_keeps_only_starting_balance():
    path = simulate_path(_make_config(years_in_retirement=0))

    assert list(path.balances) == [1_000.0]
    assert path.final_balance == 1_000.0
    assert path.succeeded


def test_zero_starting_balance_fails():
    path = simulate_path(_make_config(starting_balance=0.0), sampler=_fixed(0.07))

    assert not path.succeeded
    assert path.final_balance == 0.0


def test_depleted_path_never_recovers():
    # losses then strong gains: once the balance hits zero it must stay there
    rates = iter([-0.9, 0.5, 0.5, 0.5, 0.5])
    cfg = _make_config(years_in_retirement=5)
    path = simulate_path(cfg, sampler=lambda *_: next(rates))

    assert path.balances[1] == 0.0
    assert np.all(path.balances[1:] == 0.0)
    assert not path.succeeded


def test_random_paths_floor_and_stay_depleted():
    cfg = _make_config(
        starting_balance=500_000.0, annual_withdrawal=60_000.0, years_in_retirement=30
    )
    for _ in range(200):
        path = simulate_path(cfg)
        balances = path.balances
        assert len(balances) == 31
        assert np.all(balances >= 0)
        zeros = np.flatnonzero(balances == 0)
        if zeros.size:
            assert np.all(balances[zeros[0]:] == 0)
        assert path.succeeded == (path.final_balance > 0)
        assert path.final_balance == balances[-1]


def test_blended_return_weights_allocation():
    draws = np.array([sample_blended_return(0.0, 0.0, 100.0) for _ in range(5_000)])

    # cash only: mean 2%, standard deviation 1%
    assert draws.mean() == pytest.approx(0.02, abs=0.001)
    assert draws.std() == pytest.approx(0.01, abs=0.001)


def test_blended_return_ignores_unnormalized_weights():
    # weights are applied as given; with nothing allocated the return is zero
    assert sample_blended_return(0.0, 0.0, 0.0) == 0.0
