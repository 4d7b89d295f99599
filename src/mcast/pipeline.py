"""
Scanning pipeline: read motifs and sequences, find motif clusters,
calibrate their significance and write the results.
"""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from dataclasses import field as dc_field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import numpy as np

from mcast.distribution import EvdSet, ScoreReservoir, calc_init_distr, calc_pq_values
from mcast.functions import LOG_SMALL, gc_prefix_sums
from mcast.io import (
    FastaSegmentReader,
    SegmentReader,
    read_background,
    read_motifs,
    read_prior_distribution,
    read_priors,
    write_gff,
    write_tsv,
    write_xml,
)
from mcast.matcher import (
    ScanSession,
    collect_segment_matches,
    default_max_chars,
    repeated_match_algorithm,
)
from mcast.matches import Match, MatchHeap, build_match, purge_match_heap, window_gc
from mcast.models import LogMotifHMM, Motif, build_star_hmm, select_motifs, to_log_hmm
from mcast.pssm import PssmSet, build_pssm_set, compute_gap_costs
from mcast.synthetic import generate_synth_evd

if TYPE_CHECKING:
    from mcast.api import McastConfig


@dataclass
class ScanOutcome:
    """Summary of one pass of ``McastScanner.read_and_score``."""

    min_pvalue_discarded: float = 1.0
    num_seqs: int = 0
    evd_init: Optional[EvdSet] = None


@dataclass
class McastResult:
    """Everything a run produces, in reporting order."""

    matches: List[Match]
    motifs: List[Motif]
    background: np.ndarray
    evd: EvdSet
    dp_thresh: float
    gap_open: float
    gap_extend: float
    num_scores_seen: int
    num_seqs: int
    total_length: int
    output_pthresh: float
    all_matches: List[Match] = dc_field(default_factory=list)
    settings: Dict[str, Any] = dc_field(default_factory=dict)


class McastScanner:
    """
    Repeated-match scanner over a stream of sequence segments.

    The same scanner serves the real sequences (with a match heap) and the
    random calibration sequences (reservoir only), sharing its DP buffers.
    """

    def __init__(
        self,
        log_hmm: LogMotifHMM,
        pssms: PssmSet,
        max_chars: Optional[int] = None,
        overlap_size: int = 1000,
        session: Optional[ScanSession] = None,
    ):
        self.logger = logging.getLogger(__name__)
        self.log_hmm = log_hmm
        self.pssms = pssms
        self.max_chars = max_chars or default_max_chars(log_hmm.num_states)
        self.overlap_size = overlap_size
        self.session = session or ScanSession(log_hmm.num_states)
        if self.max_chars <= self.overlap_size:
            raise ValueError(
                f"Segment length ({self.max_chars}) must be larger than the overlap ({self.overlap_size})."
            )

    def read_and_score(
        self,
        reader: SegmentReader,
        reservoir: ScoreReservoir,
        rng: np.random.Generator,
        heap: Optional[MatchHeap] = None,
    ) -> ScanOutcome:
        """Scan every sequence of ``reader``.

        Every match score is offered to ``reservoir``. With a ``heap``,
        matches are also stored: once the reservoir fills, a provisional
        distribution gives them p-values, and the heap is purged whenever
        it reaches capacity.
        """

        dp_thresh = self.log_hmm.dp_thresh
        chain_pos = self.log_hmm.hmm.chain_pos
        outcome = ScanOutcome()

        start_pos = 0
        segment = reader.next_sequence(self.max_chars)
        while segment is not None:
            codes = segment.prepare()
            seq_len = codes.size
            motif_scores = self.pssms.score_matrix(codes, segment.prepared_priors())
            path, steps = repeated_match_algorithm(self.session, self.log_hmm, motif_scores, seq_len)
            gc_prefix = gc_prefix_sums(codes)

            intervals, start_pos = collect_segment_matches(
                path, steps, start_pos, segment.is_complete, self.overlap_size, dp_thresh
            )

            for start, end, score in intervals:
                viterbi = score - dp_thresh
                if viterbi <= LOG_SMALL:
                    continue

                gc = window_gc(gc_prefix, start, end, seq_len)
                nhits = int(np.count_nonzero(chain_pos[path[start : end + 1]] == 0))
                reservoir.offer(viterbi, seq_len - 2, nhits, end - start + 1, gc, rng)

                if heap is None:
                    continue

                if outcome.evd_init is None and reservoir.is_full():
                    outcome.evd_init = calc_init_distr(reservoir, heap, dp_thresh)

                if outcome.evd_init is not None:
                    pvalue = outcome.evd_init.pvalue(viterbi, gc)
                    gc_bin = outcome.evd_init.bin(gc)
                else:
                    pvalue = math.nan
                    gc_bin = 0

                if math.isnan(pvalue) or pvalue < outcome.min_pvalue_discarded:
                    match = build_match(
                        segment,
                        (start, end, score),
                        path,
                        motif_scores,
                        self.log_hmm,
                        self.pssms.motif_pthresh,
                        gc=gc,
                        gc_bin=gc_bin,
                        pvalue=pvalue,
                    )
                    heap.push(match)
                    if heap.is_full():
                        outcome.min_pvalue_discarded = purge_match_heap(heap)
                        self.logger.debug(
                            f"Purged match heap; smallest discarded p-value {outcome.min_pvalue_discarded:.3g}"
                        )

            if not segment.is_complete:
                previous_offset = segment.offset
                segment = reader.extend(segment, self.max_chars, self.overlap_size)
                removed = segment.offset - previous_offset
                reservoir.total_length += removed
                start_pos = max(0, start_pos - removed)
            else:
                reservoir.total_length += len(segment.raw)
                outcome.num_seqs += 1
                self.logger.debug(f"Finished sequence {segment.name}; {reservoir.num_scores_seen} matches so far.")
                segment = reader.next_sequence(self.max_chars)
                start_pos = 0

        return outcome


def prepare_output_dir(output_dir: str, allow_clobber: bool) -> None:
    """Create the output directory, refusing to reuse one unless clobbering is allowed."""
    if os.path.exists(output_dir):
        if not allow_clobber:
            raise FileExistsError(f"Output directory {output_dir} already exists; use --oc to overwrite it.")
        if not os.path.isdir(output_dir):
            raise NotADirectoryError(f"Output path {output_dir} exists and is not a directory.")
    os.makedirs(output_dir, exist_ok=True)


def filter_matches(matches: List[Match], ethresh: float, pthresh: float, qthresh: float) -> List[Match]:
    return [m for m in matches if m.evalue <= ethresh and m.pvalue <= pthresh and m.qvalue <= qthresh]


def run_pipeline(config: "McastConfig") -> McastResult:
    """Run a complete scan described by ``config``."""
    logger = logging.getLogger(__name__)

    if not config.text_only:
        prepare_output_dir(config.output_dir, config.allow_clobber)

    motifs, background = read_motifs(str(config.motif_path), config.motif_format)
    logger.info(f"Read {len(motifs)} motif(s) from {config.motif_path}")

    selection = select_motifs(motifs, config.max_total_width)
    hmm = build_star_hmm(selection, background)
    if config.background_path is not None:
        hmm = hmm.with_background(read_background(str(config.background_path)))

    prior_dist = read_prior_distribution(str(config.prior_dist_path)) if config.prior_dist_path else None
    priors = (
        read_priors(str(config.psp_path), parse_genomic_coord=config.parse_genomic_coord) if config.psp_path else None
    )

    pssms = build_pssm_set(selection, hmm.background, config.motif_pthresh, prior_dist=prior_dist, alpha=config.alpha)
    dp_thresh, gap_open, gap_extend = compute_gap_costs(pssms, config.max_gap)
    log_hmm = to_log_hmm(hmm, dp_thresh, gap_open, gap_extend)

    scanner = McastScanner(log_hmm, pssms, max_chars=config.max_chars, overlap_size=config.overlap_size)
    rng = np.random.default_rng(config.seed)
    reservoir = ScoreReservoir(config.max_stored_scores)
    heap = MatchHeap(config.max_stored_scores)

    with FastaSegmentReader(
        config.sequence_path,
        parse_genomic_coord=config.parse_genomic_coord,
        hard_mask=config.hard_mask,
        priors=priors,
    ) as reader:
        outcome = scanner.read_and_score(reader, reservoir, rng, heap)
    logger.info(
        f"Scanned {outcome.num_seqs} sequence(s) ({reservoir.total_length} bp); "
        f"{reservoir.num_scores_seen} match(es) found."
    )

    evd = EvdSet()
    matches: List[Match] = []
    if len(heap) > 0:
        evd, _ = generate_synth_evd(scanner, reservoir, rng, config.max_stored_scores, config.calibration)
        evd.N = reservoir.num_scores_seen
        matches = calc_pq_values(heap.drain(), evd, reservoir, dp_thresh, seed=config.seed)
    else:
        logger.warning("No matches were found in the sequences.")

    output_pthresh = config.output_pthresh
    if outcome.min_pvalue_discarded < output_pthresh:
        output_pthresh = outcome.min_pvalue_discarded
        logger.info(f"Smallest p-value discarded: {output_pthresh:.3g}")

    reported = filter_matches(matches, config.output_ethresh, output_pthresh, config.output_qthresh)
    logger.info(f"Reporting {len(reported)} of {len(matches)} match(es).")

    result = McastResult(
        matches=reported,
        motifs=selection.motifs,
        background=hmm.background,
        evd=evd,
        dp_thresh=dp_thresh,
        gap_open=gap_open,
        gap_extend=gap_extend,
        num_scores_seen=reservoir.num_scores_seen,
        num_seqs=outcome.num_seqs,
        total_length=reservoir.total_length,
        output_pthresh=output_pthresh,
        all_matches=matches,
        settings=config.settings(),
    )
    write_results(result, config)
    return result


def write_results(result: McastResult, config: "McastConfig") -> None:
    """Write TSV, GFF and XML results, or only TSV to standard output in text mode."""
    if config.text_only:
        write_tsv(result.matches)
        return

    write_tsv(result.matches, os.path.join(config.output_dir, "mcast.tsv"))
    write_gff(result.matches, os.path.join(config.output_dir, "mcast.gff"))
    write_xml(result, os.path.join(config.output_dir, "mcast.xml"))
    logger = logging.getLogger(__name__)
    logger.info(f"Results written to {config.output_dir}")
