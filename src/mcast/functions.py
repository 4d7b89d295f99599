import numpy as np
from numba import njit

LOG_ZERO = -1.0e10
LOG_SMALL = -0.5e10

WILDCARD_CODE = 4


def freqs_to_log_odds(freqs: np.ndarray, background: np.ndarray) -> np.ndarray:
    """Convert a (4, w) frequency matrix to base-2 log-odds against a background."""

    log_odds = np.log2((freqs + 0.0001) / background[:, None])
    return log_odds


def pcm_to_pfm(pcm):
    """Convert Position Count Matrix to Position Frequency Matrix."""
    number_of_sites = pcm.sum(axis=0)
    nuc_pseudo = 0.25
    pfm = (pcm + nuc_pseudo) / (number_of_sites + 1)
    return pfm


def extend_with_wildcard(matrix: np.ndarray) -> np.ndarray:
    """Append a wildcard row holding the column minimum of a (4, w) matrix."""
    ext = np.empty((5, matrix.shape[1]), dtype=matrix.dtype)
    ext[:4] = matrix
    ext[4] = matrix.min(axis=0)
    return ext


def score_distribution(scaled: np.ndarray, background: np.ndarray) -> np.ndarray:
    """Exact distribution of the integer site score under an order-0 background.

    ``scaled`` is a non-negative integer (4, w) matrix. The returned array holds
    ``P(S = s)`` for ``s = 0 .. sum of column maxima``.
    """

    dist = np.ones(1, dtype=np.float64)
    for j in range(scaled.shape[1]):
        column = scaled[:, j]
        new_dist = np.zeros(dist.size + int(column.max()), dtype=np.float64)
        for a in range(4):
            shift = int(column[a])
            new_dist[shift : shift + dist.size] += background[a] * dist
        dist = new_dist
    return dist


def survival_table(dist: np.ndarray) -> np.ndarray:
    """Convert a probability mass table into ``P(S >= s)``."""
    pv = np.cumsum(dist[::-1])[::-1]
    return np.minimum(pv, 1.0)


@njit(cache=True)
def _site_scores_jit(codes, pssm, out):
    """Integer PSSM score of every site fully inside the boundary symbols."""
    seq_len = codes.shape[0]
    width = pssm.shape[1]

    for p in range(seq_len):
        out[p] = -1

    for p in range(1, seq_len - width):
        score = 0
        for j in range(width):
            score += pssm[codes[p + j], j]
        out[p] = score

    return out


def site_scores(codes: np.ndarray, pssm: np.ndarray) -> np.ndarray:
    """Score all sites of a prepared sequence; invalid starts are -1."""
    out = np.empty(codes.shape[0], dtype=np.int64)
    return _site_scores_jit(codes, pssm, out)


@njit(cache=True)
def _repeated_match_jit(motif_scores, chain_branch, chain_pos, pred_ptr, pred_idx, pred_cost, seq_len, dp, trace):
    """Fill the Viterbi matrices of the star HMM over one prepared sequence."""
    n_states = pred_ptr.shape[0] - 1

    for s in range(n_states):
        dp[s, 0] = LOG_ZERO
        trace[s, 0] = 0
    dp[0, 0] = 0.0

    for j in range(1, seq_len):
        for s in range(n_states):
            best = LOG_ZERO
            best_pred = 0
            for k in range(pred_ptr[s], pred_ptr[s + 1]):
                p = pred_idx[k]
                val = dp[p, j - 1] + pred_cost[k]
                if val > best:
                    best = val
                    best_pred = p

            b = chain_branch[s]
            if b >= 0 and chain_pos[s] == 0:
                best += motif_scores[b, j]

            if best < LOG_ZERO:
                best = LOG_ZERO
            dp[s, j] = best
            trace[s, j] = best_pred


@njit(cache=True)
def _traceback_jit(dp, trace, seq_len):
    """Recover the state path ending in the start state and its per-position gains."""
    path = np.zeros(seq_len, dtype=np.int64)
    steps = np.zeros(seq_len, dtype=np.float64)

    state = 0
    path[seq_len - 1] = 0
    for j in range(seq_len - 1, 0, -1):
        prev = trace[state, j]
        steps[j] = dp[state, j] - dp[prev, j - 1]
        path[j - 1] = prev
        state = prev

    return path, steps


@njit(cache=True)
def _gc_prefix_jit(codes):
    """Prefix counts of C/G symbols; entry i covers positions [0, i)."""
    n = codes.shape[0]
    prefix = np.zeros(n + 1, dtype=np.int64)
    for i in range(n):
        c = codes[i]
        prefix[i + 1] = prefix[i] + (1 if (c == 1 or c == 2) else 0)
    return prefix


def gc_prefix_sums(codes: np.ndarray) -> np.ndarray:
    return _gc_prefix_jit(codes)

