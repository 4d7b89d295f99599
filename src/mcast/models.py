"""
Motif and HMM Models
====================

Immutable motif containers and the star-topology motif HMM used for
cluster scanning.

The HMM has one start state (outside any match), one spacer state and,
for every accepted motif, two chains of match states: one for the motif
and one for its reverse complement. Branches are ordered
``[m1+, m1-, m2+, m2-, ...]``. Probability-space transitions describe the
topology; ``to_log_hmm`` turns them into the additive costs that make the
Viterbi path report many non-overlapping clusters in a single pass.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field as dc_field
from typing import List, Optional

import numpy as np

from mcast.functions import LOG_ZERO

START_STATE = 0
SPACER_STATE = 1


@dataclass(frozen=True)
class Motif:
    """Immutable DNA motif.

    Attributes
    ----------
    id : str
        Motif identifier
    alt_id : str
        Alternate name (may be empty)
    frequencies : np.ndarray
        Letter frequencies of shape (4, width), rows A, C, G, T
    strand : str
        '+' for the motif as read, '-' for its reverse complement
    nsites : float
        Number of sites the motif was built from, if known
    evalue : float
        Discovery E-value, if known
    """

    id: str
    frequencies: np.ndarray = dc_field(hash=False, compare=False)
    alt_id: str = ""
    strand: str = "+"
    nsites: Optional[float] = None
    evalue: Optional[float] = None

    @property
    def width(self) -> int:
        return int(self.frequencies.shape[1])

    def reverse_complement(self) -> "Motif":
        """Return the opposite-strand twin of this motif."""
        return Motif(
            id=self.id,
            frequencies=np.ascontiguousarray(self.frequencies[::-1, ::-1]),
            alt_id=self.alt_id,
            strand="-" if self.strand == "+" else "+",
            nsites=self.nsites,
            evalue=self.evalue,
        )


@dataclass(frozen=True)
class MotifBranch:
    """One strand of an accepted motif as it appears in the HMM."""

    motif: Motif
    number: int
    index: int

    @property
    def strand(self) -> str:
        return "+" if self.number > 0 else "-"


@dataclass(frozen=True)
class MotifSelection:
    """Motifs accepted for scanning together with skip counts."""

    branches: List[MotifBranch]
    motifs: List[Motif]
    skipped_width: int = 0
    skipped_total: int = 0

    @property
    def num_motifs(self) -> int:
        return len(self.motifs)


def select_motifs(motifs: List[Motif], max_total_width: int = -1) -> MotifSelection:
    """Number, filter and order motifs for the star HMM.

    Motif ``k`` of the input (1-based, skipped motifs included) becomes
    ``+k`` and its reverse complement ``-k``. Motifs narrower than two
    columns are skipped, as are motifs that push the running total width
    past ``max_total_width`` (``-1`` means no limit).
    """

    logger = logging.getLogger(__name__)

    candidates = []
    accepted = []
    skipped_width = 0
    skipped_total = 0
    total_width = 0

    for number, motif in enumerate(motifs, start=1):
        if motif.width < 2:
            skipped_width += 1
            continue
        total_width += motif.width
        if max_total_width != -1 and total_width > max_total_width:
            skipped_total += 1
            continue
        accepted.append((number, motif))
        candidates.append((number, motif))
        candidates.append((-number, motif.reverse_complement()))

    if skipped_width > 0:
        logger.warning(f"Skipped {skipped_width} motif(s) narrower than 2 columns.")
    if skipped_total > 0:
        logger.warning(f"Skipped {skipped_total} motif(s) exceeding the total width limit of {max_total_width}.")

    if not accepted:
        raise ValueError("No motifs left to scan with after filtering.")

    candidates.sort(key=lambda item: (abs(item[0]), item[0] < 0))
    accepted_index = {number: i + 1 for i, (number, _) in enumerate(accepted)}

    branches = [
        MotifBranch(motif=motif, number=number, index=accepted_index[abs(number)]) for number, motif in candidates
    ]

    logger.info(f"Using {len(accepted)} motif(s) ({len(branches)} HMM branches).")
    return MotifSelection(
        branches=branches,
        motifs=[m for _, m in accepted],
        skipped_width=skipped_width,
        skipped_total=skipped_total,
    )


@dataclass(frozen=True)
class MotifHMM:
    """Probability-space star HMM.

    ``transitions[i, j]`` is the probability of moving from state ``i`` to
    state ``j``. ``chain_branch[s]`` is the branch of a match state (-1 for
    the start and spacer states) and ``chain_pos[s]`` its column.
    """

    branches: List[MotifBranch]
    transitions: np.ndarray = dc_field(hash=False, compare=False)
    chain_branch: np.ndarray = dc_field(hash=False, compare=False)
    chain_pos: np.ndarray = dc_field(hash=False, compare=False)
    branch_starts: np.ndarray = dc_field(hash=False, compare=False)
    background: np.ndarray = dc_field(hash=False, compare=False)

    @property
    def num_states(self) -> int:
        return int(self.transitions.shape[0])

    @property
    def branch_widths(self) -> np.ndarray:
        return np.array([b.motif.width for b in self.branches], dtype=np.int64)

    def branch_ends(self) -> np.ndarray:
        return self.branch_starts + self.branch_widths - 1

    def with_background(self, background: np.ndarray) -> "MotifHMM":
        """Return a copy of the HMM using a different background distribution."""
        background = np.asarray(background, dtype=np.float64)
        if background.shape != (4,):
            raise ValueError(f"Background must have 4 entries, got shape {background.shape}")
        return MotifHMM(
            branches=self.branches,
            transitions=self.transitions,
            chain_branch=self.chain_branch,
            chain_pos=self.chain_pos,
            branch_starts=self.branch_starts,
            background=background / background.sum(),
        )


def build_star_hmm(selection: MotifSelection, background: np.ndarray) -> MotifHMM:
    """Build the star-topology HMM for the selected motif branches."""

    branches = selection.branches
    widths = [b.motif.width for b in branches]
    num_states = 2 + sum(widths)

    branch_starts = np.zeros(len(branches), dtype=np.int64)
    chain_branch = np.full(num_states, -1, dtype=np.int64)
    chain_pos = np.full(num_states, -1, dtype=np.int64)

    state = 2
    for b, width in enumerate(widths):
        branch_starts[b] = state
        chain_branch[state : state + width] = b
        chain_pos[state : state + width] = np.arange(width)
        state += width

    branch_ends = branch_starts + np.array(widths, dtype=np.int64) - 1
    allowed = np.zeros((num_states, num_states), dtype=bool)

    allowed[START_STATE, START_STATE] = True
    allowed[START_STATE, branch_starts] = True
    allowed[SPACER_STATE, SPACER_STATE] = True
    allowed[SPACER_STATE, branch_starts] = True
    for b in range(len(branches)):
        for s in range(branch_starts[b], branch_ends[b]):
            allowed[s, s + 1] = True
        end = branch_ends[b]
        allowed[end, START_STATE] = True
        allowed[end, SPACER_STATE] = True
        allowed[end, branch_starts] = True

    transitions = allowed / allowed.sum(axis=1, keepdims=True)

    return MotifHMM(
        branches=branches,
        transitions=transitions,
        chain_branch=chain_branch,
        chain_pos=chain_pos,
        branch_starts=branch_starts,
        background=np.asarray(background, dtype=np.float64),
    )


@dataclass(frozen=True)
class LogMotifHMM:
    """Scanning form of the star HMM.

    Predecessors of state ``s`` are ``pred_idx[pred_ptr[s]:pred_ptr[s + 1]]``
    in ascending state order, with additive transition scores in
    ``pred_cost``.
    """

    hmm: MotifHMM
    pred_ptr: np.ndarray = dc_field(hash=False, compare=False)
    pred_idx: np.ndarray = dc_field(hash=False, compare=False)
    pred_cost: np.ndarray = dc_field(hash=False, compare=False)
    dp_thresh: float = 0.0
    gap_open: float = 0.0
    gap_extend: float = 0.0

    @property
    def num_states(self) -> int:
        return self.hmm.num_states

    @property
    def branches(self) -> List[MotifBranch]:
        return self.hmm.branches

    def transition(self, src: int, dst: int) -> float:
        """Additive score of moving from ``src`` to ``dst``."""
        lo, hi = self.pred_ptr[dst], self.pred_ptr[dst + 1]
        preds = self.pred_idx[lo:hi]
        hit = np.nonzero(preds == src)[0]
        if hit.size == 0:
            return LOG_ZERO
        return float(self.pred_cost[lo + hit[0]])


def to_log_hmm(hmm: MotifHMM, dp_thresh: float, gap_open: float, gap_extend: float) -> LogMotifHMM:
    """Convert the HMM into predecessor lists carrying the scanning costs.

    Entering a match from the start state costs ``dp_thresh``, opening a
    spacer costs ``gap_open`` and each further spacer position costs
    ``gap_extend``. All other permitted transitions are free.
    """

    num_states = hmm.num_states
    is_end = np.zeros(num_states, dtype=bool)
    is_end[hmm.branch_ends()] = True
    is_begin = np.zeros(num_states, dtype=bool)
    is_begin[hmm.branch_starts] = True

    pred_ptr = np.zeros(num_states + 1, dtype=np.int64)
    pred_idx = []
    pred_cost = []

    for dst in range(num_states):
        preds = np.nonzero(hmm.transitions[:, dst] > 0)[0]
        for src in preds:
            if src == START_STATE and is_begin[dst]:
                cost = -dp_thresh
            elif is_end[src] and dst == SPACER_STATE:
                cost = -gap_open
            elif src == SPACER_STATE and dst == SPACER_STATE:
                cost = -gap_extend
            else:
                cost = 0.0
            pred_idx.append(int(src))
            pred_cost.append(cost)
        pred_ptr[dst + 1] = len(pred_idx)

    return LogMotifHMM(
        hmm=hmm,
        pred_ptr=pred_ptr,
        pred_idx=np.array(pred_idx, dtype=np.int64),
        pred_cost=np.array(pred_cost, dtype=np.float64),
        dp_thresh=float(dp_thresh),
        gap_open=float(gap_open),
        gap_extend=float(gap_extend),
    )
