"""Cluster matches, their motif hits, and the bounded match heap."""

from __future__ import annotations

import heapq
import itertools
import math
from dataclasses import dataclass
from dataclasses import field as dc_field
from typing import Callable, List, Optional, Tuple

import numpy as np

from mcast.models import LogMotifHMM

GC_WINDOW = 500
FLANK_LENGTH = 10


@dataclass(frozen=True)
class MotifHit:
    """One motif occurrence inside a match (0-based inclusive coordinates)."""

    motif_id: str
    motif_index: int
    strand: str
    start: int
    stop: int
    pvalue: float
    sequence: str


@dataclass
class Match:
    """A cluster of motif hits reported by the repeated-match scan.

    ``start``/``stop`` are absolute 0-based inclusive coordinates; ``score``
    is the Viterbi gain of the cluster plus the scan threshold.
    """

    seq_name: str
    seq_length: int
    seq_start: int
    start: int
    stop: int
    sequence: str
    lflank: str
    rflank: str
    hits: List[MotifHit] = dc_field(default_factory=list)
    score: float = 0.0
    gc: float = math.nan
    gc_bin: int = 0
    pvalue: float = math.nan
    evalue: float = math.nan
    qvalue: float = math.nan

    @property
    def length(self) -> int:
        return self.stop - self.start + 1


def window_gc(gc_prefix: np.ndarray, start: int, end: int, seq_len: int) -> float:
    """GC fraction of the window reaching ``GC_WINDOW`` positions past each end."""
    window_start = max(0, start - GC_WINDOW)
    window_end = min(seq_len - 1, end + GC_WINDOW)
    if window_end <= window_start:
        return 0.0
    return float(gc_prefix[window_end] - gc_prefix[window_start]) / (window_end - window_start)


def build_match(
    segment,
    interval: Tuple[int, int, float],
    path: np.ndarray,
    motif_scores: np.ndarray,
    log_hmm: LogMotifHMM,
    motif_pthresh: float,
    gc: float = math.nan,
    gc_bin: int = 0,
    pvalue: float = math.nan,
) -> Match:
    """Turn a run of match states into a ``Match`` with its hits and flanks.

    ``interval`` is ``(start, end, score)`` in framed-segment coordinates,
    where position 0 is the leading boundary symbol.
    """

    start, end, score = interval
    text = segment.text
    seq_len = len(text)
    offset = segment.offset
    hmm = log_hmm.hmm

    hits = []
    for i in range(start, end + 1):
        state = path[i]
        if hmm.chain_pos[state] != 0:
            continue
        b = int(hmm.chain_branch[state])
        branch = hmm.branches[b]
        width = branch.motif.width
        hit_start = offset + i - 1
        hit_score = float(motif_scores[b, i])
        hits.append(
            MotifHit(
                motif_id=branch.motif.id,
                motif_index=branch.index,
                strand=branch.strand,
                start=hit_start,
                stop=hit_start + width - 1,
                pvalue=2.0 ** (-hit_score) * motif_pthresh,
                sequence=text[i : i + width],
            )
        )

    lflank_len = max(0, min(FLANK_LENGTH, start - 1))
    rflank_len = max(0, min(FLANK_LENGTH, seq_len - end - 2))

    return Match(
        seq_name=segment.name,
        seq_length=seq_len - 2,
        seq_start=offset,
        start=offset + start - 1,
        stop=offset + end - 1,
        sequence=text[start : end + 1],
        lflank=text[start - lflank_len : start],
        rflank=text[end + 1 : end + 1 + rflank_len],
        hits=hits,
        score=score,
        gc=gc,
        gc_bin=gc_bin,
        pvalue=pvalue,
    )


class MatchHeap:
    """Bounded heap whose root is the least significant match.

    A missing p-value counts as the worst; ties go to the lower score, then
    to the earlier insertion.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"Match heap capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._heap: List[Tuple[float, float, int, Match]] = []
        self._counter = itertools.count()

    @staticmethod
    def _priority(match: Match) -> Tuple[float, float]:
        p = 2.0 if math.isnan(match.pvalue) else match.pvalue
        return -p, match.score

    def push(self, match: Match) -> None:
        neg_p, score = self._priority(match)
        heapq.heappush(self._heap, (neg_p, score, next(self._counter), match))

    def pop(self) -> Match:
        return heapq.heappop(self._heap)[-1]

    def peek(self) -> Optional[Match]:
        return self._heap[0][-1] if self._heap else None

    def __len__(self) -> int:
        return len(self._heap)

    def is_full(self) -> bool:
        return len(self._heap) >= self.capacity

    def drain(self) -> List[Match]:
        """Remove and return every match, least significant first."""
        out = []
        while self._heap:
            out.append(self.pop())
        return out

    def rescore(self, update: Callable[[Match], None]) -> None:
        """Apply ``update`` to every match and restore heap order."""
        for match in self.drain():
            update(match)
            self.push(match)


def purge_match_heap(heap: MatchHeap) -> float:
    """Drop the worse half of the heap and return the smallest discarded p-value.

    After the first half is popped, matches tied with the last discarded
    p-value are popped too, so everything kept is strictly more
    significant than the returned value.
    """

    min_discarded = 1.0
    for _ in range(len(heap) // 2):
        match = heap.pop()
        if not math.isnan(match.pvalue):
            min_discarded = match.pvalue

    while len(heap) > 0:
        root = heap.peek()
        if math.isnan(root.pvalue) or root.pvalue >= min_discarded:
            heap.pop()
            if not math.isnan(root.pvalue):
                min_discarded = root.pvalue
        else:
            break

    return min_discarded
