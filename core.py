"""Core functionality for Monte Carlo retirement simulations."""

from __future__ import annotations

import json
import logging
import math
import os
import time
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Callable, Optional, Tuple

import numpy as np
from numba import njit


logger = logging.getLogger(__name__)


# Historical annual arithmetic returns by asset class.  Draws for the three
# classes are independent; no cross-asset correlation is modeled.
EQUITIES_MEAN = 0.10
EQUITIES_STD_DEV = 0.18
BONDS_MEAN = 0.05
BONDS_STD_DEV = 0.06
CASH_MEAN = 0.02
CASH_STD_DEV = 0.01

ASSET_CLASS_STATS = {
    "equities": {"mean": EQUITIES_MEAN, "std_dev": EQUITIES_STD_DEV},
    "bonds": {"mean": BONDS_MEAN, "std_dev": BONDS_STD_DEV},
    "cash": {"mean": CASH_MEAN, "std_dev": CASH_STD_DEV},
}

# Preset allocations as (equities, bonds, cash) percentages
RISK_PROFILES = {
    "conservative": (30.0, 60.0, 10.0),
    "moderate": (60.0, 30.0, 10.0),
    "aggressive": (80.0, 15.0, 5.0),
    "very_aggressive": (95.0, 5.0, 0.0),
}

# Success rate floors for each interpretation label, highest first
SUCCESS_RATE_LABELS = [
    (90.0, "Excellent", "Highly robust plan"),
    (75.0, "Good", "Generally acceptable"),
    (50.0, "Fair", "Moderate risk"),
    (0.0, "At Risk", "Plan needs improvement"),
]

BAND_PERCENTILES = (5, 25, 50, 75, 95)

FULL_ITERATIONS = 1_000_000
QUICK_ITERATIONS = 10_000

# Upper bound on whole trajectories held for the per-year bands.  Above it the
# bands are computed from a uniform reservoir of paths.
DEFAULT_MAX_RETAINED_PATHS = 250_000

DEFAULT_INPUTS = {
    "iterations": QUICK_ITERATIONS,
    "equities_pct": 60.0,
    "bonds_pct": 30.0,
    "cash_pct": 10.0,
    "starting_balance": 1_000_000.0,
    "annual_withdrawal": 40_000.0,
    "years_in_retirement": 30,
    "inflation_rate": 3.0,
}

CONFIG_FILE = "config.json"


class SimulationCancelled(Exception):
    """Raised when a simulation observes its cancel event."""


def parse_percent(val: str) -> float:
    """Convert a percentage string like '10%' to a float 0.10."""

    try:
        pct = float(val.strip().rstrip("%")) / 100
    except ValueError as exc:  # pragma: no cover - error path simple
        raise ValueError(f"Invalid percentage: {val!r}") from exc
    if not 0 <= pct <= 1:
        raise ValueError("Percentage must be between 0% and 100%")
    return pct


def parse_rate(val: str) -> float:
    """Convert a rate string like '3%' or '-1%' to a float with no range check."""

    try:
        return float(val.strip().rstrip("%")) / 100
    except ValueError as exc:
        raise ValueError(f"Invalid rate: {val!r}") from exc


def parse_dollars(val: str) -> float:
    """Convert a currency string like '$1,234' to a float 1234.0."""

    try:
        amt = float(val.replace("$", "").replace(",", "").strip())
    except ValueError as exc:  # pragma: no cover - error path simple
        raise ValueError(f"Invalid dollar amount: {val!r}") from exc
    if amt < 0:
        raise ValueError("Dollar amount cannot be negative")
    return amt


def to_decimal(value: float) -> Decimal:
    """Wrap a float result as a Decimal without its binary expansion."""
    return Decimal(repr(float(value)))


@dataclass
class SimulationConfig:
    iterations: int
    equities_pct: float
    bonds_pct: float
    cash_pct: float
    starting_balance: float
    annual_withdrawal: float
    years_in_retirement: int
    inflation_rate: float
    seed: Optional[int] = None
    max_retained_paths: int = DEFAULT_MAX_RETAINED_PATHS
    retain_final_balances: bool = True

    def __post_init__(self) -> None:
        # Decimal and string inputs cross into float here; the engine never
        # sees the caller's precise representation.
        self.iterations = int(self.iterations)
        self.years_in_retirement = int(self.years_in_retirement)
        self.max_retained_paths = int(self.max_retained_paths)
        self.equities_pct = float(self.equities_pct)
        self.bonds_pct = float(self.bonds_pct)
        self.cash_pct = float(self.cash_pct)
        self.starting_balance = float(self.starting_balance)
        self.annual_withdrawal = float(self.annual_withdrawal)
        self.inflation_rate = float(self.inflation_rate)

        if self.iterations <= 0:
            raise ValueError("Number of simulations must be positive")
        if min(self.equities_pct, self.bonds_pct, self.cash_pct) < 0:
            raise ValueError("Allocation percentages cannot be negative")
        total = self.equities_pct + self.bonds_pct + self.cash_pct
        if abs(total - 100.0) > 0.01:
            raise ValueError(f"Allocation must total 100% (got {total:g}%)")
        if self.starting_balance < 0:
            raise ValueError("Starting balance cannot be negative")
        if self.annual_withdrawal < 0:
            raise ValueError("Annual withdrawal cannot be negative")
        if self.years_in_retirement < 0:
            raise ValueError("Years in retirement cannot be negative")
        if self.max_retained_paths <= 0:
            raise ValueError("max_retained_paths must be positive")

    @property
    def allocation(self) -> Tuple[float, float, float]:
        return self.equities_pct, self.bonds_pct, self.cash_pct


@dataclass(frozen=True, eq=False)
class SimulationPath:
    balances: np.ndarray
    final_balance: float
    succeeded: bool


@dataclass(frozen=True)
class PercentileBands:
    p5: Tuple[float, ...]
    p25: Tuple[float, ...]
    p50: Tuple[float, ...]
    p75: Tuple[float, ...]
    p95: Tuple[float, ...]

    def as_dict(self) -> dict:
        return {f"p{p}": list(getattr(self, f"p{p}")) for p in BAND_PERCENTILES}


@dataclass(frozen=True)
class SimulationResults:
    success_rate: float
    median_final_balance: float
    worst_case: float
    best_case: float
    percentile_bands: PercentileBands
    iterations: int
    years_in_retirement: int
    # Sorted final balances; O(iterations) so it is never part of summary()
    # and is left out of equality and hashing
    all_final_balances: Optional[np.ndarray] = field(default=None, repr=False, compare=False)

    def summary(self) -> dict:
        """Return a JSON-ready copy without the final-balance distribution."""
        return {
            "success_rate": self.success_rate,
            "median_final_balance": self.median_final_balance,
            "worst_case": self.worst_case,
            "best_case": self.best_case,
            "percentile_bands": self.percentile_bands.as_dict(),
            "iterations": self.iterations,
            "years_in_retirement": self.years_in_retirement,
        }

    def without_distribution(self) -> "SimulationResults":
        return replace(self, all_final_balances=None)

    def to_decimal(self) -> dict:
        """Convert the aggregated statistics back to Decimal values."""
        return {
            "success_rate": to_decimal(self.success_rate),
            "median_final_balance": to_decimal(self.median_final_balance),
            "worst_case": to_decimal(self.worst_case),
            "best_case": to_decimal(self.best_case),
            "percentile_bands": {
                key: [to_decimal(v) for v in values]
                for key, values in self.percentile_bands.as_dict().items()
            },
        }


# ----------------------------------------------------------------------
# Sampling
# ----------------------------------------------------------------------
@njit(cache=True)
def _seed(seed: int) -> None:
    # Seeds the generator used by compiled code in the calling thread.
    np.random.seed(seed)


@njit(cache=True)
def sample_standard_normal() -> float:
    """Draw from N(0, 1) with the Box-Muller transform."""
    u1 = 0.0
    u2 = 0.0
    # log(0) is undefined; redraw exact zeros
    while u1 == 0.0:
        u1 = np.random.random()
    while u2 == 0.0:
        u2 = np.random.random()
    return np.sqrt(-2.0 * np.log(u1)) * np.cos(2.0 * np.pi * u2)


@njit(cache=True)
def sample_blended_return(equities_pct: float, bonds_pct: float, cash_pct: float) -> float:
    """Return one simulated year's portfolio return for the given allocation."""
    equities = EQUITIES_MEAN + sample_standard_normal() * EQUITIES_STD_DEV
    bonds = BONDS_MEAN + sample_standard_normal() * BONDS_STD_DEV
    cash = CASH_MEAN + sample_standard_normal() * CASH_STD_DEV
    return (
        equities_pct / 100.0 * equities
        + bonds_pct / 100.0 * bonds
        + cash_pct / 100.0 * cash
    )


def blended_return_stats(
    equities_pct: float, bonds_pct: float, cash_pct: float
) -> Tuple[float, float]:
    """Expected annual mean and volatility of the blend (independent classes)."""
    weights = np.array([equities_pct, bonds_pct, cash_pct], dtype=np.float64) / 100
    means = np.array([EQUITIES_MEAN, BONDS_MEAN, CASH_MEAN])
    stds = np.array([EQUITIES_STD_DEV, BONDS_STD_DEV, CASH_STD_DEV])
    mean = float(np.dot(weights, means))
    volatility = float(np.sqrt(np.sum(weights**2 * stds**2)))
    return mean, volatility


# ----------------------------------------------------------------------
# Path simulation
# ----------------------------------------------------------------------
@njit(cache=True)
def _apply_returns(
    returns: np.ndarray,
    starting_balance: float,
    first_withdrawal: float,
    inflation_rate: float,
    out: np.ndarray,
) -> float:
    """Run the yearly growth/withdrawal recurrence, writing balances to ``out``."""
    balance = starting_balance
    withdrawal = first_withdrawal
    growth = 1.0 + inflation_rate / 100.0
    out[0] = balance
    for year in range(returns.shape[0]):
        balance = balance * (1.0 + returns[year])
        balance -= withdrawal
        # A depleted portfolio stays at zero for the rest of the horizon
        if balance < 0.0:
            balance = 0.0
        out[year + 1] = balance
        withdrawal *= growth
    return balance


@njit(cache=True)
def _simulate_chunk(
    n_paths: int,
    equities_pct: float,
    bonds_pct: float,
    cash_pct: float,
    starting_balance: float,
    first_withdrawal: float,
    inflation_rate: float,
    out: np.ndarray,
) -> None:
    years = out.shape[1] - 1
    returns = np.empty(years)
    for i in range(n_paths):
        for year in range(years):
            returns[year] = sample_blended_return(equities_pct, bonds_pct, cash_pct)
        _apply_returns(
            returns, starting_balance, first_withdrawal, inflation_rate, out[i]
        )


def _simulate_chunk_with_sampler(
    n_paths: int, cfg: SimulationConfig, sampler: Callable, out: np.ndarray
) -> None:
    """Python-level chunk runner for injected samplers."""
    returns = np.empty(cfg.years_in_retirement)
    for i in range(n_paths):
        for year in range(cfg.years_in_retirement):
            returns[year] = sampler(*cfg.allocation)
        _apply_returns(
            returns, cfg.starting_balance, cfg.annual_withdrawal, cfg.inflation_rate, out[i]
        )


def simulate_path(cfg: SimulationConfig, sampler: Optional[Callable] = None) -> SimulationPath:
    """Simulate one retirement lifetime year by year."""
    sampler = sampler or sample_blended_return
    out = np.empty((1, cfg.years_in_retirement + 1))
    _simulate_chunk_with_sampler(1, cfg, sampler, out)
    balances = out[0]
    final_balance = float(balances[-1])
    return SimulationPath(
        balances=balances, final_balance=final_balance, succeeded=final_balance > 0
    )


# ----------------------------------------------------------------------
# Aggregation
# ----------------------------------------------------------------------
def percentile(values, p: float, assume_sorted: bool = False) -> float:
    """Linearly interpolated percentile ``p`` (0-100) of ``values``."""
    n = len(values)
    if n == 0:
        return 0.0
    data = values if assume_sorted else np.sort(np.asarray(values, dtype=np.float64))
    index = (p / 100) * (n - 1)
    lower = math.floor(index)
    upper = math.ceil(index)
    weight = index - lower
    return float(data[lower] * (1 - weight) + data[upper] * weight)


def percentile_bands(balances_by_path: np.ndarray) -> PercentileBands:
    """Cross-path 5/25/50/75/95 percentile balance for every year."""
    by_year = np.sort(np.asarray(balances_by_path, dtype=np.float64), axis=0)
    bands = {}
    for p in BAND_PERCENTILES:
        bands[f"p{p}"] = tuple(
            percentile(by_year[:, year], p, assume_sorted=True)
            for year in range(by_year.shape[1])
        )
    return PercentileBands(**bands)


@njit(cache=True)
def _reservoir_fold(retained: np.ndarray, chunk: np.ndarray, n_chunk: int, seen: int) -> None:
    """Fold whole trajectories into a uniform reservoir (Algorithm R)."""
    capacity = retained.shape[0]
    for i in range(n_chunk):
        idx = seen + i
        if idx < capacity:
            retained[idx, :] = chunk[i, :]
        else:
            j = np.random.randint(0, idx + 1)
            if j < capacity:
                retained[j, :] = chunk[i, :]


def rate_interpretation(success_rate: float) -> Tuple[str, str]:
    """Return the (label, description) for a success rate percentage."""
    rate = max(0.0, min(100.0, success_rate))
    for floor, label, description in SUCCESS_RATE_LABELS:
        if rate >= floor:
            return label, description
    return SUCCESS_RATE_LABELS[-1][1:]


def simulate(
    cfg: SimulationConfig,
    progress_callback: Optional[Callable[[int], None]] = None,
    cancel_event=None,
    sampler: Optional[Callable] = None,
) -> SimulationResults:
    """Run the Monte Carlo simulation and aggregate the outcome distribution.

    Paths are simulated in chunks of roughly 1% of ``cfg.iterations``.  After
    each chunk ``progress_callback`` receives the whole percentage completed,
    only when it has increased.  ``cancel_event`` (anything with ``is_set()``)
    is checked before every chunk; when set, :class:`SimulationCancelled` is
    raised and nothing is aggregated.
    """

    n_sims = cfg.iterations
    n_years = cfg.years_in_retirement
    if cfg.seed is not None:
        _seed(cfg.seed)

    chunk_size = max(1, n_sims // 100)
    chunk = np.empty((chunk_size, n_years + 1))
    retained = np.empty((min(n_sims, cfg.max_retained_paths), n_years + 1))
    final_balances = np.empty(n_sims)
    success_count = 0

    logger.info(
        "Starting %d simulations over %d years (allocation %g/%g/%g)",
        n_sims,
        n_years,
        *cfg.allocation,
    )
    start = time.time()
    completed = 0
    last_percent = 0
    while completed < n_sims:
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Cancellation requested at simulation %d/%d", completed, n_sims)
            raise SimulationCancelled(f"cancelled after {completed} of {n_sims} paths")

        n = min(chunk_size, n_sims - completed)
        if sampler is None:
            _simulate_chunk(
                n,
                cfg.equities_pct,
                cfg.bonds_pct,
                cfg.cash_pct,
                cfg.starting_balance,
                cfg.annual_withdrawal,
                cfg.inflation_rate,
                chunk,
            )
        else:
            _simulate_chunk_with_sampler(n, cfg, sampler, chunk)

        finals = chunk[:n, -1]
        final_balances[completed:completed + n] = finals
        success_count += int(np.count_nonzero(finals > 0))
        _reservoir_fold(retained, chunk, n, completed)
        completed += n

        percent = (100 * completed) // n_sims
        if percent > last_percent:
            last_percent = percent
            logger.debug("Simulated %d/%d paths (%d%%)", completed, n_sims, percent)
            if progress_callback is not None:
                progress_callback(percent)

    final_balances.sort()
    final_balances.flags.writeable = False
    results = SimulationResults(
        success_rate=100.0 * success_count / n_sims,
        median_final_balance=percentile(final_balances, 50, assume_sorted=True),
        worst_case=percentile(final_balances, 5, assume_sorted=True),
        best_case=percentile(final_balances, 95, assume_sorted=True),
        percentile_bands=percentile_bands(retained),
        iterations=n_sims,
        years_in_retirement=n_years,
        all_final_balances=final_balances if cfg.retain_final_balances else None,
    )
    logger.info(
        "Finished %d simulations in %.2fs: %.1f%% success",
        n_sims,
        time.time() - start,
        results.success_rate,
    )
    return results


# ----------------------------------------------------------------------
# Saved configuration
# ----------------------------------------------------------------------
def config_from_dict(data: dict, **overrides) -> SimulationConfig:
    """Build a SimulationConfig from saved inputs layered over the defaults."""
    values = dict(DEFAULT_INPUTS)
    values.update({k: v for k, v in data.items() if k in DEFAULT_INPUTS})
    values.update(overrides)
    return SimulationConfig(**values)


def load_config() -> dict:
    """Load saved configuration if available."""

    if os.path.exists(CONFIG_FILE):
        with open(CONFIG_FILE) as f:
            return json.load(f)
    return {}


def save_config(cfg: SimulationConfig, results: Optional[SimulationResults] = None) -> None:
    """Persist the inputs and, if given, a trimmed summary of the results."""

    data = {
        "simulation": {
            "iterations": cfg.iterations,
            "equities_pct": cfg.equities_pct,
            "bonds_pct": cfg.bonds_pct,
            "cash_pct": cfg.cash_pct,
            "starting_balance": cfg.starting_balance,
            "annual_withdrawal": cfg.annual_withdrawal,
            "years_in_retirement": cfg.years_in_retirement,
            "inflation_rate": cfg.inflation_rate,
        },
    }
    if results is not None:
        data["last_results"] = results.summary()
    with open(CONFIG_FILE, "w") as f:
        json.dump(data, f, indent=2)
