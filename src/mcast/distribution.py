"""
Score reservoir and GC-binned exponential score distributions.

Match scores seen during a scan are sampled into a fixed-size reservoir.
The reservoir is sorted by GC content, split into equal-count bins and an
exponential distribution is fitted to the scores of each bin; p-values of
matches come from the bin their GC content falls into.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from dataclasses import field as dc_field
from typing import List, Optional

import numpy as np
from scipy import stats

from mcast.matches import Match, MatchHeap

MAX_GC_BINS = 100
MIN_SCORES_PER_BIN = 1000

logger = logging.getLogger(__name__)


class ScoreReservoir:
    """Uniform reservoir sample of match scores.

    After ``k`` offers every offered score is held with probability
    ``min(1, capacity / k)``. Stored samples get increasing serial numbers
    that carry on across scans into the same reservoir.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"Reservoir capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.scores = np.zeros(capacity, dtype=np.float64)
        self.lengths = np.zeros(capacity, dtype=np.int64)
        self.nhits = np.zeros(capacity, dtype=np.int64)
        self.spans = np.zeros(capacity, dtype=np.int64)
        self.gcs = np.zeros(capacity, dtype=np.float64)
        self.serials = np.zeros(capacity, dtype=np.int64)
        self.n = 0
        self.serial_no = 0
        self.num_scores_seen = 0
        self.total_length = 0

    def is_full(self) -> bool:
        return self.n >= self.capacity

    def offer(
        self,
        score: float,
        length: int,
        nhits: int,
        span: int,
        gc: float,
        rng: np.random.Generator,
    ) -> bool:
        """Count a score and store it if the sampling draw selects it."""
        self.num_scores_seen += 1
        if self.n < self.capacity:
            idx = self.n
            self.n += 1
        else:
            idx = int(self.num_scores_seen * rng.random())
            if idx >= self.capacity:
                return False

        self.scores[idx] = score
        self.lengths[idx] = length
        self.nhits[idx] = nhits
        self.spans[idx] = span
        self.gcs[idx] = gc
        self.serials[idx] = self.serial_no
        self.serial_no += 1
        return True

    @property
    def sampled_scores(self) -> np.ndarray:
        return self.scores[: self.n]

    @property
    def sampled_gcs(self) -> np.ndarray:
        return self.gcs[: self.n]


@dataclass
class EvdSet:
    """Exponential score distributions, one per GC bin."""

    mu: np.ndarray = dc_field(default_factory=lambda: np.zeros(0))
    mean_gc: np.ndarray = dc_field(default_factory=lambda: np.zeros(0))
    counts: np.ndarray = dc_field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    boundaries: np.ndarray = dc_field(default_factory=lambda: np.zeros(0))
    N: int = 0
    outliers: int = 0
    min_e: float = math.inf
    sum_log_e: float = 0.0

    @property
    def n(self) -> int:
        return int(self.counts.sum())

    @property
    def is_empty(self) -> bool:
        return self.mu.size == 0

    def bin(self, gc: float) -> int:
        if self.mu.size <= 1:
            return 0
        return int(np.searchsorted(self.boundaries, gc, side="right"))

    def pvalue(self, score: float, gc: float) -> float:
        """Probability of a score at least this large at this GC content."""
        if self.is_empty:
            return 1.0
        mu = self.mu[self.bin(gc)]
        if mu <= 0:
            return 1.0 if score <= 0 else 0.0
        return float(stats.expon.sf(score, scale=mu))

    def pvalues(self, scores: np.ndarray, gcs: np.ndarray) -> np.ndarray:
        if self.is_empty:
            return np.ones(len(scores))
        bins = np.searchsorted(self.boundaries, gcs, side="right") if self.mu.size > 1 else np.zeros(len(gcs), int)
        mu = self.mu[bins]
        safe_mu = np.where(mu > 0, mu, 1.0)
        pv = stats.expon.sf(scores, scale=safe_mu)
        return np.where(mu > 0, pv, np.where(np.asarray(scores) <= 0, 1.0, 0.0))


def calc_distr(reservoir: ScoreReservoir) -> EvdSet:
    """Fit one exponential per equal-count GC bin of the reservoir."""
    n = reservoir.n
    if n == 0:
        logger.warning("No scores available to fit a score distribution.")
        return EvdSet()

    order = np.argsort(reservoir.sampled_gcs, kind="stable")
    gcs = reservoir.sampled_gcs[order]
    scores = reservoir.sampled_scores[order]

    n_bins = max(1, min(MAX_GC_BINS, n // MIN_SCORES_PER_BIN))
    score_chunks = np.array_split(scores, n_bins)
    gc_chunks = np.array_split(gcs, n_bins)

    mu = np.zeros(n_bins)
    mean_gc = np.zeros(n_bins)
    counts = np.zeros(n_bins, dtype=np.int64)
    for k, (chunk, gc_chunk) in enumerate(zip(score_chunks, gc_chunks, strict=False)):
        chunk = np.maximum(chunk, 0.0)
        if chunk.mean() > 0:
            _, mu[k] = stats.expon.fit(chunk, floc=0)
        mean_gc[k] = gc_chunk.mean()
        counts[k] = chunk.size

    boundaries = np.array(
        [(gc_chunks[k][-1] + gc_chunks[k + 1][0]) / 2.0 for k in range(n_bins - 1)], dtype=np.float64
    )

    logger.debug(f"Fitted {n_bins} GC bin(s) from {n} scores; mu range {mu.min():.4g}-{mu.max():.4g}")
    return EvdSet(mu=mu, mean_gc=mean_gc, counts=counts, boundaries=boundaries)


def calc_init_distr(reservoir: ScoreReservoir, heap: MatchHeap, dp_thresh: float) -> EvdSet:
    """Fit a provisional distribution and re-score every stored match with it."""
    evd = calc_distr(reservoir)

    def update(match: Match) -> None:
        match.gc_bin = evd.bin(match.gc)
        match.pvalue = evd.pvalue(match.score - dp_thresh, match.gc)

    heap.rescore(update)
    logger.info(f"Initial score distribution fitted from {reservoir.n} scores; {len(heap)} matches re-scored.")
    return evd


def estimate_pi0(
    pvalues: np.ndarray,
    rng: np.random.Generator,
    num_lambdas: int = 100,
    max_lambda: float = 0.5,
    num_bootstraps: int = 100,
) -> float:
    """Bootstrap estimate of the fraction of null p-values."""
    pvalues = np.asarray(pvalues, dtype=np.float64)
    n = pvalues.size
    if n == 0:
        return 1.0

    lambdas = np.arange(num_lambdas) * (max_lambda / num_lambdas)

    def pi0_curve(values: np.ndarray) -> np.ndarray:
        above = n - np.searchsorted(np.sort(values), lambdas, side="right")
        return above / (n * (1.0 - lambdas))

    pi0 = pi0_curve(pvalues)
    min_pi0 = pi0.min()

    mse = np.zeros(num_lambdas)
    for _ in range(num_bootstraps):
        sample = rng.choice(pvalues, size=n, replace=True)
        mse += (pi0_curve(sample) - min_pi0) ** 2

    estimate = float(min(1.0, pi0[int(np.argmin(mse))]))
    return estimate if estimate > 0 else 1.0


def compute_qvalues(pvalues: np.ndarray, num_tests: int, pi0: float = 1.0) -> np.ndarray:
    """Storey q-values for ascending p-values drawn from ``num_tests`` tests."""
    pvalues = np.asarray(pvalues, dtype=np.float64)
    if pvalues.size == 0:
        return pvalues.copy()
    num_tests = max(num_tests, pvalues.size)
    ranks = np.arange(1, pvalues.size + 1)
    q = pi0 * pvalues * num_tests / ranks
    q = np.minimum.accumulate(q[::-1])[::-1]
    return np.minimum(q, 1.0)


def calc_pq_values(
    matches: List[Match],
    evd: EvdSet,
    reservoir: ScoreReservoir,
    dp_thresh: float,
    seed: Optional[int] = 0,
) -> List[Match]:
    """Assign p-, E- and q-values to matches and sort them by p-value.

    E-values scale p-values by ``evd.N``, the number of scores observed in
    the real scan. The reservoir sample estimates the null fraction used for
    q-values. ``evd.outliers`` counts matches with E < 1 and
    ``evd.sum_log_e`` sums their log E-values.
    """

    sampled = np.sort(evd.pvalues(reservoir.sampled_scores, reservoir.sampled_gcs))

    for match in matches:
        match.gc_bin = evd.bin(match.gc)
        match.pvalue = evd.pvalue(match.score - dp_thresh, match.gc)
        match.evalue = evd.N * match.pvalue

    matches = sorted(matches, key=lambda m: m.pvalue)
    pvalues = np.array([m.pvalue for m in matches], dtype=np.float64)

    rng = np.random.default_rng(seed)
    pi0 = estimate_pi0(sampled, rng)
    qvalues = compute_qvalues(pvalues, evd.N, pi0)
    for match, q in zip(matches, qvalues, strict=False):
        match.qvalue = float(q)

    evalues = pvalues * evd.N
    small = evalues[(evalues < 1.0) & (evalues > 0)]
    evd.outliers = int(np.count_nonzero(evalues < 1.0))
    evd.min_e = float(evalues.min()) if evalues.size else math.inf
    evd.sum_log_e = float(np.log(small).sum()) if small.size else 0.0

    logger.info(f"Estimated pi0={pi0:.3g} from {sampled.size} sampled scores; {len(matches)} matches scored.")
    return matches
