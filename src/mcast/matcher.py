"""Repeated-match Viterbi scan over framed sequence segments."""

from __future__ import annotations

from typing import List, Optional, Tuple

import numpy as np

from mcast.functions import _repeated_match_jit, _traceback_jit
from mcast.models import LogMotifHMM

OVERLAP_SIZE = 1000
MAX_MATRIX_SIZE = 10_000_000

Interval = Tuple[int, int, float]


class ScanSession:
    """DP buffers shared by every scan of one run.

    The buffers grow to the longest segment seen and are never shrunk.
    """

    def __init__(self, num_states: int):
        self.num_states = num_states
        self.dp = np.zeros((num_states, 0), dtype=np.float64)
        self.trace = np.zeros((num_states, 0), dtype=np.int64)

    def ensure_capacity(self, seq_len: int) -> None:
        if self.dp.shape[1] < seq_len:
            self.dp = np.zeros((self.num_states, seq_len), dtype=np.float64)
            self.trace = np.zeros((self.num_states, seq_len), dtype=np.int64)


def default_max_chars(num_states: int) -> int:
    return max(1, MAX_MATRIX_SIZE // num_states)


def repeated_match_algorithm(
    session: ScanSession, log_hmm: LogMotifHMM, motif_scores: np.ndarray, seq_len: int
) -> Tuple[np.ndarray, np.ndarray]:
    """Run the Viterbi pass and trace back from the start state at the last position.

    Returns the state of every position and the score gained at each
    position along the path.
    """

    session.ensure_capacity(seq_len)
    hmm = log_hmm.hmm
    _repeated_match_jit(
        motif_scores,
        hmm.chain_branch,
        hmm.chain_pos,
        log_hmm.pred_ptr,
        log_hmm.pred_idx,
        log_hmm.pred_cost,
        seq_len,
        session.dp,
        session.trace,
    )
    return _traceback_jit(session.dp, session.trace, seq_len)


def match_runs(path: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Start and end (inclusive) of every maximal run of non-start states."""
    inside = (path != 0).astype(np.int8)
    edges = np.diff(np.concatenate(([0], inside, [0])))
    starts = np.flatnonzero(edges == 1)
    ends = np.flatnonzero(edges == -1) - 1
    return starts, ends


def find_next_match(
    path: np.ndarray,
    steps: np.ndarray,
    start_pos: int,
    dp_thresh: float,
    runs: Optional[Tuple[np.ndarray, np.ndarray]] = None,
) -> Optional[Interval]:
    """Next match at or after ``start_pos`` as ``(start, end, score)``.

    A run already in progress at ``start_pos`` is cut at the cursor. The
    score is the path gain over the match plus ``dp_thresh``.
    """

    starts, ends = runs if runs is not None else match_runs(path)
    k = int(np.searchsorted(ends, start_pos, side="left"))
    if k >= ends.size:
        return None
    start = max(int(starts[k]), start_pos)
    end = int(ends[k])
    score = float(steps[start : end + 1].sum()) + dp_thresh
    return start, end, score


def collect_segment_matches(
    path: np.ndarray,
    steps: np.ndarray,
    start_pos: int,
    is_complete: bool,
    overlap: int,
    dp_thresh: float,
) -> Tuple[List[Interval], int]:
    """Matches to report from one segment and the cursor for the next.

    In an incomplete segment, a match starting in the final ``overlap``
    positions is left for the next segment. A match starting exactly at
    the cursor continues one already reported and is skipped.
    """

    seq_len = path.size
    runs = match_runs(path)
    intervals: List[Interval] = []

    while True:
        found = find_next_match(path, steps, start_pos, dp_thresh, runs)
        if found is None:
            break
        start, end, _ = found
        if not is_complete and start > seq_len - overlap:
            break
        if start == start_pos:
            start_pos = end + 1
            continue
        start_pos = end + 1
        intervals.append(found)

    return intervals, start_pos
