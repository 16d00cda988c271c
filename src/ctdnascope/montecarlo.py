"""Monte-Carlo significance test for ctDNA detection.

Under the null hypothesis every informative read pair shows the alt allele only through
background error, so the number of alt reads of a test unit is Binomial(n_i, r_i). The test
simulates the sum over units ``n_iterations`` times and counts how often it reaches the
observed alt count.

Reproducibility: iterations are split into fixed-size chunks and chunk ``i`` always draws from
``SeedSequence(seed).spawn(n_chunks)[i]``. The p-value for a given seed therefore does not depend
on the number of workers. Without a seed, results vary between runs.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

import numpy as np

from .errors import InvalidInput, InvalidThreshold
from .models import STATUS_NEGATIVE, STATUS_POSITIVE, STATUS_UNDETERMINED

logger = logging.getLogger(__name__)

DEFAULT_ITERATIONS = 10_000
DEFAULT_CHUNK_SIZE = 10_000


@dataclass(frozen=True)
class MonteCarloResult:
    p_value: float
    alt_count: int
    informative_reads: int
    background_rate: float  # informative-read weighted mean of unit rates
    status: str
    n_iterations: int
    n_exceeding: int
    seed: Optional[int]
    alpha: float
    informative_reads_threshold: int

    def to_dict(self) -> dict:
        return {
            "p_value": float(self.p_value),
            "alt_count": int(self.alt_count),
            "informative_reads": int(self.informative_reads),
            "background_rate": float(self.background_rate),
            "status": self.status,
            "n_iterations": int(self.n_iterations),
            "n_exceeding": int(self.n_exceeding),
            "seed": self.seed,
            "alpha": float(self.alpha),
            "informative_reads_threshold": int(self.informative_reads_threshold),
        }


def call_status(p_value: float, informative_reads: int, *, alpha: float, informative_reads_threshold: int) -> str:
    """UNDETERMINED below the informative-read threshold, else POSITIVE if p < alpha."""
    if informative_reads < informative_reads_threshold:
        return STATUS_UNDETERMINED
    return STATUS_POSITIVE if p_value < alpha else STATUS_NEGATIVE


def _as_array(x: Union[int, float, Sequence], dtype: type) -> np.ndarray:
    return np.atleast_1d(np.asarray(x, dtype=dtype))


def _count_chunk(
    seed_seq: np.random.SeedSequence,
    size: int,
    trials: np.ndarray,
    rates: np.ndarray,
    observed: int,
) -> int:
    rng = np.random.default_rng(seed_seq)
    draws = rng.binomial(trials, rates, size=(size, trials.size)).sum(axis=1)
    return int(np.count_nonzero(draws >= observed))


def simulate_exceedances(
    observed: int,
    trials: Sequence[int],
    rates: Sequence[float],
    *,
    n_iterations: int = DEFAULT_ITERATIONS,
    seed: Optional[int] = None,
    n_workers: int = 1,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> int:
    """Number of null simulations whose summed alt count is >= observed."""
    t = _as_array(trials, np.int64)
    r = _as_array(rates, np.float64)
    chunk_size = max(1, int(chunk_size))
    n_chunks = (n_iterations + chunk_size - 1) // chunk_size
    sizes = [chunk_size] * (n_chunks - 1) + [n_iterations - chunk_size * (n_chunks - 1)]
    children = chunk_seeds(seed, n_iterations, chunk_size)

    if n_workers > 1 and n_chunks > 1:
        with ThreadPoolExecutor(max_workers=n_workers) as ex:
            parts = list(ex.map(lambda a: _count_chunk(a[0], a[1], t, r, observed), zip(children, sizes)))
    else:
        parts = [_count_chunk(ss, size, t, r, observed) for ss, size in zip(children, sizes)]
    return int(sum(parts))


def monte_carlo_test(
    alt_count: int,
    informative_reads: Union[int, Sequence[int]],
    background_rate: Union[float, Sequence[float]],
    *,
    n_iterations: int = DEFAULT_ITERATIONS,
    seed: Optional[int] = None,
    alpha: float = 0.05,
    informative_reads_threshold: int = 10_000,
    n_workers: int = 1,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> MonteCarloResult:
    """Empirical p-value that ``alt_count`` alt reads arise from background error alone.

    Parameters
    ----------
    alt_count:
        Observed alt-supporting read pairs (summed over units).
    informative_reads:
        Informative read pairs; a sequence gives one entry per independent test unit.
    background_rate:
        Background rate, scalar or one per unit (e.g. phase-adjusted).
    n_iterations:
        Number of null simulations N. p = (1 + #exceeding) / (1 + N).
    seed:
        Seed for reproducible results.
    alpha:
        Significance level for the POSITIVE call.
    informative_reads_threshold:
        Below this many informative reads the status is UNDETERMINED regardless of p.
    """
    trials = _as_array(informative_reads, np.int64)
    rates = _as_array(background_rate, np.float64)
    if rates.size == 1 and trials.size > 1:
        rates = np.full(trials.size, float(rates[0]))
    if rates.size != trials.size:
        raise InvalidInput(
            f"Got {trials.size} informative read counts but {rates.size} background rates"
        )
    if np.any(trials < 0):
        raise InvalidInput("informative_reads must be >= 0")
    if np.any(np.isnan(rates)) or np.any(rates < 0.0) or np.any(rates > 1.0):
        raise InvalidThreshold(f"background_rate must be in [0, 1], got {rates.tolist()}")
    if int(n_iterations) < 1:
        raise InvalidThreshold(f"n_iterations must be >= 1, got {n_iterations}")
    if not (0.0 < float(alpha) < 1.0):
        raise InvalidThreshold(f"alpha must be in (0, 1), got {alpha}")
    if int(informative_reads_threshold) < 0:
        raise InvalidThreshold("informative_reads_threshold must be >= 0")

    total_informative = int(trials.sum())
    alt_count = int(alt_count)
    if alt_count < 0:
        raise InvalidInput("alt_count must be >= 0")
    if alt_count > total_informative:
        raise InvalidInput(
            f"alt_count ({alt_count}) exceeds informative_reads ({total_informative})"
        )

    n_exceeding = simulate_exceedances(
        alt_count,
        trials,
        rates,
        n_iterations=int(n_iterations),
        seed=seed,
        n_workers=n_workers,
        chunk_size=chunk_size,
    )
    p_value = (1.0 + n_exceeding) / (1.0 + int(n_iterations))

    if total_informative > 0:
        mean_rate = float((trials * rates).sum() / total_informative)
    else:
        mean_rate = float(rates.mean()) if rates.size else 0.0
    status = call_status(
        p_value,
        total_informative,
        alpha=float(alpha),
        informative_reads_threshold=int(informative_reads_threshold),
    )
    logger.info(
        "Monte-Carlo: alt=%d informative=%d rate=%.3g N=%d exceeding=%d p=%.4g status=%s",
        alt_count,
        total_informative,
        mean_rate,
        n_iterations,
        n_exceeding,
        p_value,
        status,
    )
    return MonteCarloResult(
        p_value=p_value,
        alt_count=alt_count,
        informative_reads=total_informative,
        background_rate=mean_rate,
        status=status,
        n_iterations=int(n_iterations),
        n_exceeding=n_exceeding,
        seed=seed,
        alpha=float(alpha),
        informative_reads_threshold=int(informative_reads_threshold),
    )


def chunk_seeds(seed: Optional[int], n_iterations: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[np.random.SeedSequence]:
    """Per-chunk seed sequences used by :func:`simulate_exceedances` (useful for external workers)."""
    n_chunks = (n_iterations + chunk_size - 1) // chunk_size
    return np.random.SeedSequence(seed).spawn(n_chunks)
