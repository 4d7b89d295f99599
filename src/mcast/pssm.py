"""Scaled PSSMs, p-value tables and the gap costs derived from them."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field as dc_field
from typing import List, Optional, Tuple

import numpy as np

from mcast.functions import (
    LOG_ZERO,
    extend_with_wildcard,
    freqs_to_log_odds,
    score_distribution,
    site_scores,
    survival_table,
)
from mcast.models import MotifSelection

PSSM_RANGE = 100
MIN_DP_THRESH = 1e-6
NO_GAP_COST = 1e17


@dataclass(frozen=True)
class PriorDistribution:
    """Distribution of position specific prior values over equal-width bins."""

    min_prior: float
    max_prior: float
    probabilities: np.ndarray = dc_field(hash=False, compare=False)

    @property
    def bin_centers(self) -> np.ndarray:
        n = self.probabilities.size
        width = (self.max_prior - self.min_prior) / n
        return self.min_prior + (np.arange(n) + 0.5) * width

    def median(self) -> float:
        """Median prior, used wherever a position has no prior of its own."""
        cdf = np.cumsum(self.probabilities)
        idx = int(np.searchsorted(cdf, 0.5 * cdf[-1]))
        return float(self.bin_centers[min(idx, self.probabilities.size - 1)])


def prior_log_odds(priors, alpha: float):
    """Log-odds contribution of a prior probability of a site."""
    p = np.clip(alpha * np.asarray(priors, dtype=np.float64), 1e-10, 1.0 - 1e-10)
    return np.log2(p / (1.0 - p))


@dataclass(frozen=True)
class Pssm:
    """Integer-scaled PSSM of one branch plus its p-value lookup table.

    A site's scaled score ``s`` (optionally plus a scaled prior term) maps
    to ``pv_table[s - offset] = P(S >= s)`` under the background.
    """

    matrix: np.ndarray = dc_field(hash=False, compare=False)
    scale: float = 1.0
    pv_table: np.ndarray = dc_field(hash=False, compare=False, default=None)
    offset: int = 0

    @property
    def width(self) -> int:
        return int(self.matrix.shape[1])

    def pvalues(self, scores: np.ndarray) -> np.ndarray:
        idx = np.clip(scores - self.offset, 0, self.pv_table.size - 1)
        return self.pv_table[idx]

    def hit_statistics(self, pthresh: float) -> Tuple[float, float]:
        """Return (probability of a hit, expected hit score given a hit)."""
        pv = self.pv_table
        mass = pv - np.append(pv[1:], 0.0)
        hits = (pv <= pthresh) & (pv > 0)
        q = float(mass[hits].sum())
        if q <= 0:
            return 0.0, 0.0
        e = float((mass[hits] * np.log2(pthresh / pv[hits])).sum() / q)
        return q, e


def build_pssm(
    log_odds: np.ndarray,
    background: np.ndarray,
    prior_dist: Optional[PriorDistribution] = None,
    alpha: float = 1.0,
) -> Pssm:
    """Scale a log-odds matrix and tabulate its score distribution."""

    col_min = log_odds.min(axis=0)
    spread = float(log_odds.max(axis=0).sum() - col_min.sum())
    scale = PSSM_RANGE / spread if spread > 0 else 1.0
    scaled = np.rint((log_odds - col_min) * scale).astype(np.int64)

    dist = score_distribution(scaled, background)
    offset = 0

    if prior_dist is not None:
        prior_scores = np.rint(prior_log_odds(prior_dist.bin_centers, alpha) * scale).astype(np.int64)
        weights = prior_dist.probabilities / prior_dist.probabilities.sum()
        offset = int(prior_scores.min())
        combined = np.zeros(dist.size + int(prior_scores.max()) - offset, dtype=np.float64)
        for shift, weight in zip(prior_scores - offset, weights, strict=False):
            combined[shift : shift + dist.size] += weight * dist
        dist = combined

    return Pssm(
        matrix=extend_with_wildcard(scaled),
        scale=scale,
        pv_table=survival_table(dist),
        offset=offset,
    )


class PssmSet:
    """PSSMs for every HMM branch, in branch order."""

    def __init__(
        self,
        pssms: List[Pssm],
        motif_pthresh: float,
        prior_dist: Optional[PriorDistribution] = None,
        alpha: float = 1.0,
    ):
        self.pssms = pssms
        self.motif_pthresh = motif_pthresh
        self.prior_dist = prior_dist
        self.alpha = alpha
        self.default_prior = prior_dist.median() if prior_dist is not None else None

    @property
    def uses_priors(self) -> bool:
        return self.prior_dist is not None

    def __len__(self) -> int:
        return len(self.pssms)

    def score_matrix(self, codes: np.ndarray, priors: Optional[np.ndarray] = None) -> np.ndarray:
        """Hit scores of every branch at every start position of a prepared sequence.

        Entry ``[b, p]`` is ``log2(motif_pthresh / pv)`` when the site of
        branch ``b`` starting at ``p`` has ``pv <= motif_pthresh`` and
        ``LOG_ZERO`` otherwise.
        """

        seq_len = codes.shape[0]
        out = np.full((len(self.pssms), seq_len), LOG_ZERO, dtype=np.float64)
        prior_term = None
        if self.uses_priors:
            if priors is None:
                priors = np.full(seq_len, self.default_prior)
            else:
                priors = np.where(np.isnan(priors), self.default_prior, priors)
            prior_term = prior_log_odds(priors, self.alpha)

        for b, pssm in enumerate(self.pssms):
            raw = site_scores(codes, pssm.matrix)
            valid = raw >= 0
            scores = raw[valid]
            if prior_term is not None:
                scores = scores + np.rint(prior_term[valid] * pssm.scale).astype(np.int64)
            pv = pssm.pvalues(scores)
            hit = (pv <= self.motif_pthresh) & (pv > 0)
            row = np.full(scores.size, LOG_ZERO)
            row[hit] = np.log2(self.motif_pthresh / pv[hit])
            out[b, valid] = row
        return out


def build_pssm_set(
    selection: MotifSelection,
    background: np.ndarray,
    motif_pthresh: float,
    prior_dist: Optional[PriorDistribution] = None,
    alpha: float = 1.0,
) -> PssmSet:
    """Build one PSSM per HMM branch against the scanning background."""
    pssms = []
    for branch in selection.branches:
        log_odds = freqs_to_log_odds(branch.motif.frequencies, background)
        pssms.append(build_pssm(log_odds, background, prior_dist=prior_dist, alpha=alpha))
    return PssmSet(pssms, motif_pthresh, prior_dist=prior_dist, alpha=alpha)


def score_set_statistics(pssms: PssmSet) -> Tuple[float, float]:
    """Expected hit score and expected number of positions between hits."""
    total_q = 0.0
    weighted_e = 0.0
    for pssm in pssms.pssms:
        q, e = pssm.hit_statistics(pssms.motif_pthresh)
        total_q += q
        weighted_e += q * e

    if total_q <= 0:
        return 0.0, np.inf
    total_q = min(total_q, 1.0)
    e_hit_score = weighted_e / total_q
    egap = (1.0 - total_q) / total_q
    return e_hit_score, egap


def compute_gap_costs(pssms: PssmSet, max_gap: int, egcost: float = 1.0) -> Tuple[float, float, float]:
    """Return ``(dp_thresh, gap_open, gap_extend)`` for the scan.

    The threshold is the score of ``max_gap`` expected-gap positions worth
    of hits; a gap of ``max_gap`` positions then costs exactly one
    threshold, so hits further apart are better reported separately.
    """

    logger = logging.getLogger(__name__)
    e_hit_score, egap = score_set_statistics(pssms)

    if egap == 0:
        dp_thresh = NO_GAP_COST
    else:
        dp_thresh = egcost * max_gap * e_hit_score / egap
    dp_thresh = max(dp_thresh, MIN_DP_THRESH)

    if max_gap == 0:
        gap_extend = NO_GAP_COST
    else:
        gap_extend = dp_thresh / max_gap
    gap_open = gap_extend

    logger.info(
        f"Expected hit score {e_hit_score:.4g}, expected gap {egap:.4g}; "
        f"dp_thresh={dp_thresh:.4g}, gap_open={gap_open:.4g}, gap_extend={gap_extend:.4g}"
    )
    return dp_thresh, gap_open, gap_extend
