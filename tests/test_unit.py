"""
Unit tests for key computational functions in mcast.

These tests validate the correctness of individual functions from:
- mcast/functions.py
- mcast/models.py
- mcast/pssm.py
- mcast/io.py
- mcast/matches.py
- mcast/matcher.py
- mcast/distribution.py
- mcast/synthetic.py
- mcast/api.py
"""

import logging
import math

import joblib
import numpy as np
import pytest
from conftest import MOTIF1_CONSENSUS, sharp_motif

from mcast.api import create_config
from mcast.distribution import (
    EvdSet,
    ScoreReservoir,
    calc_distr,
    calc_pq_values,
    compute_qvalues,
    estimate_pi0,
)
from mcast.functions import (
    LOG_ZERO,
    freqs_to_log_odds,
    gc_prefix_sums,
    pcm_to_pfm,
    score_distribution,
    site_scores,
    survival_table,
)
from mcast.io import (
    UNIFORM_BACKGROUND,
    ArraySegmentReader,
    FastaSegmentReader,
    PositionPriors,
    SequenceSegment,
    parse_genomic_coordinates,
    read_background,
    read_meme,
    read_motifs,
    read_prior_distribution,
    read_psp,
    read_transfac,
    read_wig,
    write_meme,
)
from mcast.matcher import collect_segment_matches, find_next_match, match_runs
from mcast.matches import Match, MatchHeap, purge_match_heap, window_gc
from mcast.models import SPACER_STATE, START_STATE, Motif, build_star_hmm, select_motifs, to_log_hmm
from mcast.pssm import (
    NO_GAP_COST,
    PriorDistribution,
    build_pssm,
    build_pssm_set,
    compute_gap_costs,
    prior_log_odds,
)
from mcast.synthetic import (
    CalibrationConfig,
    complementary_indices,
    gc_background,
    generate_synth_evd,
    generate_synthetic_sequence,
)


def make_match(pvalue, score=1.0, start=0):
    return Match(
        seq_name="s",
        seq_length=100,
        seq_start=0,
        start=start,
        stop=start + 5,
        sequence="ACGTAC",
        lflank="",
        rflank="",
        score=score,
        pvalue=pvalue,
    )


# ---------------------------------------------------------------------------
# functions
# ---------------------------------------------------------------------------


def test_freqs_to_log_odds_uniform_background():
    """Log-odds are base-2 ratios against the background"""
    freqs = np.array([[0.5, 0.25], [0.5, 0.25], [0.0, 0.25], [0.0, 0.25]])
    log_odds = freqs_to_log_odds(freqs, UNIFORM_BACKGROUND)

    expected = np.log2((freqs + 0.0001) / 0.25)
    np.testing.assert_allclose(log_odds, expected, rtol=1e-12)


def test_pcm_to_pfm_basic():
    """Test basic PCM to PFM conversion"""
    pcm = np.array([[2, 3], [1, 1], [1, 0], [0, 0]], dtype=float)

    pfm = pcm_to_pfm(pcm)

    np.testing.assert_allclose(pfm.sum(axis=0), [1.0, 1.0], rtol=1e-12)
    np.testing.assert_allclose(pfm[:, 0], (pcm[:, 0] + 0.25) / 5.0)


def test_score_distribution_sums_to_one():
    """Convolved score distribution is a probability mass function"""
    scaled = np.array([[0, 3], [1, 0], [2, 1], [0, 2]], dtype=np.int64)
    background = np.array([0.1, 0.2, 0.3, 0.4])

    dist = score_distribution(scaled, background)

    assert dist.size == 2 + 3 + 1
    np.testing.assert_allclose(dist.sum(), 1.0)
    # Only A then C reaches the maximum score of 2 + 3
    np.testing.assert_allclose(dist[-1], 0.3 * 0.1)


def test_survival_table_is_monotone():
    """Survival table starts at 1 and never increases"""
    dist = np.array([0.5, 0.25, 0.125, 0.125])
    pv = survival_table(dist)

    np.testing.assert_allclose(pv, [1.0, 0.5, 0.25, 0.125])
    assert np.all(np.diff(pv) <= 0)


def test_site_scores_respects_boundaries():
    """Sites touching the boundary symbols are invalid"""
    codes = SequenceSegment("s", "ACGTAC").prepare()
    pssm = np.zeros((5, 2), dtype=np.int64)
    pssm[0, 0] = 5  # A in the first column

    scores = site_scores(codes, pssm)

    assert scores.size == 8
    assert scores[0] == -1
    # valid starts are 1..5, the last complete site is "AC" at raw position 4
    assert scores[-2] == -1 and scores[-1] == -1
    np.testing.assert_array_equal(scores[1:6], [5, 0, 0, 0, 5])


def test_gc_prefix_sums_counts_c_and_g():
    """Prefix entry i counts C/G symbols before position i"""
    codes = SequenceSegment("s", "ACGTN").prepare()
    prefix = gc_prefix_sums(codes)

    np.testing.assert_array_equal(prefix, [0, 0, 0, 1, 2, 2, 2, 2])


# ---------------------------------------------------------------------------
# models
# ---------------------------------------------------------------------------


def test_reverse_complement_flips_strand_and_matrix():
    """Reverse complement reverses columns and swaps complementary rows"""
    motif = sharp_motif("m", "GAT")
    rc = motif.reverse_complement()

    assert rc.strand == "-"
    assert rc.id == motif.id
    # GAT reverse complement is ATC
    assert "".join("ACGT"[i] for i in rc.frequencies.argmax(axis=0)) == "ATC"
    assert rc.reverse_complement().strand == "+"


def test_select_motifs_orders_branches_and_skips():
    """Narrow motifs are skipped but keep their numbering"""
    narrow = Motif(id="narrow", frequencies=np.full((4, 1), 0.25))
    motifs = [narrow, sharp_motif("a", "ACGT"), sharp_motif("b", "GGCC")]

    selection = select_motifs(motifs)

    assert selection.skipped_width == 1
    assert selection.num_motifs == 2
    assert [b.number for b in selection.branches] == [2, -2, 3, -3]
    assert [b.strand for b in selection.branches] == ["+", "-", "+", "-"]
    assert [b.index for b in selection.branches] == [1, 1, 2, 2]


def test_select_motifs_max_total_width():
    """Motifs pushing the running width past the limit are skipped"""
    motifs = [sharp_motif("a", "ACGT"), sharp_motif("b", "GGCCAA"), sharp_motif("c", "TT")]

    selection = select_motifs(motifs, max_total_width=7)

    assert [m.id for m in selection.motifs] == ["a"]
    assert selection.skipped_total == 2


def test_select_motifs_none_left():
    """Selecting nothing is an error"""
    with pytest.raises(ValueError):
        select_motifs([Motif(id="n", frequencies=np.full((4, 1), 0.25))])


def test_star_hmm_topology():
    """States, row-stochastic transitions and chain layout of the star HMM"""
    selection = select_motifs([sharp_motif("m", "AC")])
    hmm = build_star_hmm(selection, UNIFORM_BACKGROUND)

    assert hmm.num_states == 6
    np.testing.assert_allclose(hmm.transitions.sum(axis=1), 1.0)
    np.testing.assert_array_equal(hmm.branch_starts, [2, 4])
    np.testing.assert_array_equal(hmm.branch_ends(), [3, 5])
    np.testing.assert_array_equal(hmm.chain_branch, [-1, -1, 0, 0, 1, 1])
    np.testing.assert_array_equal(hmm.chain_pos, [-1, -1, 0, 1, 0, 1])
    # start state may stay or enter either branch
    np.testing.assert_allclose(hmm.transitions[START_STATE, [0, 2, 4]], 1.0 / 3.0)


def test_with_background_normalizes():
    """Replacing the background renormalizes it"""
    hmm = build_star_hmm(select_motifs([sharp_motif("m", "AC")]), UNIFORM_BACKGROUND)
    updated = hmm.with_background(np.array([2.0, 1.0, 1.0, 0.0]))

    np.testing.assert_allclose(updated.background, [0.5, 0.25, 0.25, 0.0])
    with pytest.raises(ValueError):
        hmm.with_background(np.ones(3))


def test_log_hmm_transition_costs():
    """Scanning costs of the log-space HMM"""
    hmm = build_star_hmm(select_motifs([sharp_motif("m", "AC")]), UNIFORM_BACKGROUND)
    log_hmm = to_log_hmm(hmm, dp_thresh=2.0, gap_open=0.5, gap_extend=0.1)

    assert log_hmm.transition(START_STATE, 2) == -2.0
    assert log_hmm.transition(START_STATE, START_STATE) == 0.0
    assert log_hmm.transition(3, SPACER_STATE) == -0.5
    assert log_hmm.transition(SPACER_STATE, SPACER_STATE) == -0.1
    assert log_hmm.transition(SPACER_STATE, 4) == 0.0
    assert log_hmm.transition(3, 4) == 0.0
    assert log_hmm.transition(2, 3) == 0.0
    assert log_hmm.transition(START_STATE, 3) == LOG_ZERO
    assert log_hmm.transition(START_STATE, SPACER_STATE) == LOG_ZERO


# ---------------------------------------------------------------------------
# pssm
# ---------------------------------------------------------------------------


def test_build_pssm_pvalue_table():
    """Scaled PSSM of a sharp motif has exact tail probabilities"""
    motif = sharp_motif("m", "AC")
    pssm = build_pssm(freqs_to_log_odds(motif.frequencies, UNIFORM_BACKGROUND), UNIFORM_BACKGROUND)

    assert pssm.width == 2
    assert pssm.matrix.shape == (5, 2)
    assert pssm.pv_table[0] == pytest.approx(1.0)
    assert pssm.pv_table[-1] == pytest.approx(1.0 / 16.0)
    assert pssm.pvalues(np.array([10_000]))[0] == pytest.approx(1.0 / 16.0)
    # wildcard row scores as the column minimum
    np.testing.assert_array_equal(pssm.matrix[4], pssm.matrix[:4].min(axis=0))


def test_hit_statistics_sharp_motif():
    """Only the consensus site passes a strict threshold"""
    motif = sharp_motif("m", MOTIF1_CONSENSUS)
    pssm = build_pssm(freqs_to_log_odds(motif.frequencies, UNIFORM_BACKGROUND), UNIFORM_BACKGROUND)

    q, e = pssm.hit_statistics(0.0005)
    assert q == pytest.approx(0.25**6, rel=1e-6)
    assert e == pytest.approx(math.log2(0.0005 / 0.25**6), rel=1e-6)

    assert pssm.hit_statistics(1e-9) == (0.0, 0.0)


def test_score_matrix_hits_only_consensus():
    """Hit scores appear only where a site passes the motif threshold"""
    selection = select_motifs([sharp_motif("m", MOTIF1_CONSENSUS)])
    pssms = build_pssm_set(selection, UNIFORM_BACKGROUND, 0.0005)
    codes = SequenceSegment("s", "CCC" + MOTIF1_CONSENSUS + "CCC").prepare()

    scores = pssms.score_matrix(codes)

    assert scores.shape == (2, codes.size)
    hits = np.argwhere(scores > LOG_ZERO)
    np.testing.assert_array_equal(hits, [[0, 4]])
    assert scores[0, 4] == pytest.approx(math.log2(0.0005 / 0.25**6), rel=1e-6)


def test_compute_gap_costs_relations():
    """A gap of max_gap positions costs exactly the threshold"""
    selection = select_motifs([sharp_motif("a", MOTIF1_CONSENSUS), sharp_motif("b", "TTGACGCA")])
    pssms = build_pssm_set(selection, UNIFORM_BACKGROUND, 0.0005)

    dp_thresh, gap_open, gap_extend = compute_gap_costs(pssms, max_gap=50)
    assert dp_thresh > 0
    assert gap_open == gap_extend
    assert gap_extend * 50 == pytest.approx(dp_thresh)

    _, _, no_gap = compute_gap_costs(pssms, max_gap=0)
    assert no_gap == NO_GAP_COST


def test_compute_gap_costs_floor():
    """Without any possible hits the threshold falls back to its floor"""
    selection = select_motifs([sharp_motif("a", MOTIF1_CONSENSUS)])
    pssms = build_pssm_set(selection, UNIFORM_BACKGROUND, 1e-12)

    dp_thresh, _, _ = compute_gap_costs(pssms, max_gap=50)
    assert dp_thresh == pytest.approx(1e-6)


def test_prior_distribution_median_and_log_odds():
    """Median prior and the clipped prior log-odds"""
    dist = PriorDistribution(0.0, 1.0, np.array([0.1, 0.1, 0.6, 0.2]))

    np.testing.assert_allclose(dist.bin_centers, [0.125, 0.375, 0.625, 0.875])
    assert dist.median() == pytest.approx(0.625)
    assert prior_log_odds(0.5, 1.0) == pytest.approx(0.0)
    assert np.isfinite(prior_log_odds(np.array([0.0, 1.0]), 1.0)).all()


def test_pssm_with_priors_shifts_table():
    """Convolving with a prior distribution keeps a proper survival table"""
    motif = sharp_motif("m", "ACG")
    dist = PriorDistribution(0.01, 0.5, np.array([0.5, 0.3, 0.2]))
    pssm = build_pssm(freqs_to_log_odds(motif.frequencies, UNIFORM_BACKGROUND), UNIFORM_BACKGROUND, dist, 1.0)

    assert pssm.offset < 0
    assert pssm.pv_table[0] == pytest.approx(1.0)
    assert np.all(np.diff(pssm.pv_table) <= 1e-12)


# ---------------------------------------------------------------------------
# io
# ---------------------------------------------------------------------------


def test_read_meme_with_header_fields(temp_dir):
    """MEME reader picks up background, names and header fields"""
    path = temp_dir / "m.meme"
    path.write_text(
        "MEME version 4\n\n"
        "ALPHABET= ACGT\n\n"
        "Background letter frequencies\n"
        "A 0.3 C 0.2 G 0.2 T 0.3\n\n"
        "MOTIF M1 alt1\n"
        "letter-probability matrix: alength= 4 w= 2 nsites= 15 E= 1.2e-3\n"
        " 0.7 0.1 0.1 0.1\n"
        " 0.1 0.1 0.1 0.7\n\n"
        "MOTIF M2\n"
        "letter-probability matrix: alength= 4 w= 3\n"
        " 0.25 0.25 0.25 0.25\n"
        " 0.25 0.25 0.25 0.25\n"
        " 0.25 0.25 0.25 0.25\n"
    )

    motifs, background = read_meme(str(path))

    np.testing.assert_allclose(background, [0.3, 0.2, 0.2, 0.3])
    assert [m.id for m in motifs] == ["M1", "M2"]
    assert motifs[0].alt_id == "alt1"
    assert motifs[0].width == 2
    assert motifs[0].nsites == 15.0
    assert motifs[0].evalue == pytest.approx(1.2e-3)
    assert motifs[1].nsites is None
    np.testing.assert_allclose(motifs[0].frequencies[:, 1], [0.1, 0.1, 0.1, 0.7])


def test_read_meme_rejects_protein(temp_dir):
    """Non-DNA alphabets are refused"""
    path = temp_dir / "p.meme"
    path.write_text("MEME version 4\n\nALPHABET= ACDEFGHIKLMNPQRSTVWY\n\n")
    with pytest.raises(ValueError):
        read_meme(str(path))


def test_write_meme_then_read(temp_dir, test_motifs):
    """Motifs written to MEME come back with the same matrices"""
    path = temp_dir / "out.meme"
    write_meme(test_motifs, str(path))

    motifs, _ = read_meme(str(path))
    assert [m.id for m in motifs] == ["MOTIF_A", "MOTIF_B"]
    assert motifs[1].alt_id == "beta"
    np.testing.assert_allclose(motifs[1].frequencies, test_motifs[1].frequencies, atol=1e-6)


def test_read_transfac(temp_dir):
    """TRANSFAC counts become frequencies, ID names the motif"""
    path = temp_dir / "m.dat"
    path.write_text(
        "AC  M00001\n"
        "XX\n"
        "ID  TEST_MOTIF\n"
        "XX\n"
        "P0      A      C      G      T\n"
        "01      1      2      3      4\n"
        "02      10     0      0      0\n"
        "XX\n"
        "//\n"
        "AC  M00002\n"
        "P0      A      C      G      T\n"
        "01      0      0      5      5\n"
        "02      5      5      0      0\n"
        "//\n"
    )

    motifs = read_transfac(str(path))

    assert [m.id for m in motifs] == ["TEST_MOTIF", "M00002"]
    assert motifs[0].alt_id == "M00001"
    assert motifs[0].width == 2
    np.testing.assert_allclose(motifs[0].frequencies.sum(axis=0), 1.0)
    np.testing.assert_allclose(motifs[0].frequencies[:, 1], [10.25 / 11, 0.25 / 11, 0.25 / 11, 0.25 / 11])


def test_read_background_uses_order_zero(temp_dir):
    """Only single-letter entries of a Markov background are used"""
    path = temp_dir / "bg.txt"
    path.write_text("# order 0\nA 0.3\nC 0.2\nG 0.2\nT 0.3\n# order 1\nAA 0.09\nAC 0.06\n")

    np.testing.assert_allclose(read_background(str(path)), [0.3, 0.2, 0.2, 0.3])


def test_read_motifs_dispatch(temp_dir, test_motifs):
    """Pickled motif lists load with a uniform background"""
    pkl = temp_dir / "motifs.pkl"
    joblib.dump(test_motifs, pkl)

    motifs, background = read_motifs(str(pkl))
    assert [m.id for m in motifs] == ["MOTIF_A", "MOTIF_B"]
    np.testing.assert_allclose(background, 0.25)

    with pytest.raises(FileNotFoundError):
        read_motifs(str(temp_dir / "missing.meme"))
    other = temp_dir / "motifs.txt"
    other.write_text("MOTIF x\n")
    with pytest.raises(ValueError):
        read_motifs(str(other), "jaspar")


def test_sequence_segment_prepare_and_hard_mask():
    """Lower case is scanned normally unless hard masking is on"""
    soft = SequenceSegment("s", "ACgtN").prepare()
    hard = SequenceSegment("s", "ACgtN", hard_mask=True).prepare()

    np.testing.assert_array_equal(soft, [4, 0, 1, 2, 3, 4, 4])
    np.testing.assert_array_equal(hard, [4, 0, 1, 4, 4, 4, 4])


def test_parse_genomic_coordinates():
    """name:start-end headers give a 0-based offset"""
    assert parse_genomic_coordinates("chr1:101-200") == ("chr1", 100)
    assert parse_genomic_coordinates("plain_name") == ("plain_name", 0)


def test_fasta_segment_reader_windows(temp_dir):
    """Segments slide with the requested overlap and report completion"""
    path = temp_dir / "s.fa"
    path.write_text(">first\nACGT\nACGT\nAC\n>second\nGGGG\n")

    with FastaSegmentReader(path) as reader:
        seg = reader.next_sequence(6)
        assert (seg.name, seg.raw, seg.offset, seg.is_complete) == ("first", "ACGTAC", 0, False)

        seg = reader.extend(seg, 6, 2)
        assert (seg.raw, seg.offset, seg.is_complete) == ("ACGTAC", 4, True)

        seg = reader.next_sequence(6)
        assert (seg.name, seg.raw, seg.is_complete) == ("second", "GGGG", True)

        assert reader.next_sequence(6) is None


def test_fasta_reader_skips_unread_rest(temp_dir):
    """Moving to the next sequence drops what is left of the current one"""
    path = temp_dir / "s.fa"
    path.write_text(">a desc\nAAAA\nAAAA\n>b\nCC\n")

    with FastaSegmentReader(path, parse_genomic_coord=True) as reader:
        seg = reader.next_sequence(3)
        assert seg.name == "a" and not seg.is_complete
        seg = reader.next_sequence(3)
        assert seg.name == "b" and seg.raw == "CC"


def test_array_segment_reader_genomic_offset():
    """In-memory reader applies genomic coordinates"""
    reader = ArraySegmentReader([("chr2:11-20", "ACGTACGTAC")], parse_genomic_coord=True)
    seg = reader.next_sequence(100)

    assert seg.name == "chr2"
    assert seg.offset == 10
    assert seg.is_complete


def test_read_psp_and_position_priors(temp_dir):
    """PSP priors are looked up by name and padded with NaN"""
    path = temp_dir / "p.psp"
    path.write_text(">seq1\n0.1 0.2\n0.3\n")

    priors = read_psp(str(path))
    np.testing.assert_allclose(priors.tracks["seq1"], [0.1, 0.2, 0.3])
    np.testing.assert_allclose(priors.values("seq1", 1, 4), [0.2, 0.3, np.nan, np.nan])
    assert np.isnan(priors.values("other", 0, 2)).all()


def test_read_wig_step_formats(temp_dir):
    """variableStep and fixedStep blocks use 1-based positions"""
    path = temp_dir / "p.wig"
    path.write_text(
        "track type=wiggle_0\n"
        "variableStep chrom=chr1 span=2\n"
        "3 0.5\n"
        "fixedStep chrom=chr2 start=2 step=2\n"
        "0.1\n"
        "0.2\n"
    )

    priors = read_wig(str(path))
    np.testing.assert_allclose(priors.tracks["chr1"], [np.nan, np.nan, 0.5, 0.5])
    np.testing.assert_allclose(priors.tracks["chr2"], [np.nan, 0.1, np.nan, 0.2])


def test_read_prior_distribution(temp_dir):
    """Prior distribution file: min, max, then bin probabilities"""
    path = temp_dir / "dist.txt"
    path.write_text("0.0\n1.0\n0.2\n0.3\n0.5\n")

    dist = read_prior_distribution(str(path))
    assert (dist.min_prior, dist.max_prior) == (0.0, 1.0)
    np.testing.assert_allclose(dist.probabilities, [0.2, 0.3, 0.5])

    bad = temp_dir / "bad.txt"
    bad.write_text("0.0\n1.0\n")
    with pytest.raises(ValueError):
        read_prior_distribution(str(bad))


def test_segment_priors_follow_offsets():
    """Segment priors cover the raw window and pad the boundary symbols"""
    priors = PositionPriors({"s": np.array([0.1, 0.2, 0.3, 0.4])})
    reader = ArraySegmentReader([("s", "ACGT")], priors=priors)
    seg = reader.next_sequence(3)
    seg = reader.extend(seg, 3, 1)

    prepared = seg.prepared_priors()
    assert seg.offset == 2
    np.testing.assert_allclose(prepared, [np.nan, 0.3, 0.4, np.nan])


def test_psp_tracks_on_genomic_headers(temp_dir):
    """PSP headers drop their coordinates and stay relative to the sequence"""
    path = temp_dir / "p.psp"
    path.write_text(">chr1:1001-1010\n0.1 0.2 0.3 0.4 0.5\n0.6 0.7 0.8 0.9 1.0\n")

    priors = read_psp(str(path), parse_genomic_coord=True)
    assert list(priors.tracks) == ["chr1"]

    reader = ArraySegmentReader([("chr1:1001-1010", "ACGTACGTAC")], parse_genomic_coord=True, priors=priors)
    seg = reader.next_sequence(6)
    assert (seg.name, seg.offset) == ("chr1", 1000)
    np.testing.assert_allclose(seg.priors, [0.1, 0.2, 0.3, 0.4, 0.5, 0.6])

    seg = reader.extend(seg, 6, 2)
    assert seg.offset == 1004
    assert seg.is_complete
    np.testing.assert_allclose(seg.priors, [0.5, 0.6, 0.7, 0.8, 0.9, 1.0])

    raw_headers = read_psp(str(path))
    assert list(raw_headers.tracks) == ["chr1:1001-1010"]


def test_wig_tracks_use_absolute_positions():
    """WIG priors are indexed by genomic position"""
    priors = PositionPriors({"chr1": np.arange(20, dtype=np.float64)})
    reader = ArraySegmentReader([("chr1:11-15", "ACGTA")], parse_genomic_coord=True, priors=priors)

    seg = reader.next_sequence(10)
    np.testing.assert_allclose(seg.priors, [10.0, 11.0, 12.0, 13.0, 14.0])


def test_missing_prior_track_warns(caplog):
    """A sequence without a prior track is logged and gets NaN priors"""
    priors = PositionPriors({"other": np.ones(4)}, relative=True)
    reader = ArraySegmentReader([("seq1", "ACGT")], priors=priors)

    with caplog.at_level(logging.WARNING):
        seg = reader.next_sequence(10)

    assert "No position specific priors for sequence seq1" in caplog.text
    assert np.isnan(seg.priors).all()


# ---------------------------------------------------------------------------
# matches
# ---------------------------------------------------------------------------


def test_match_heap_root_is_least_significant():
    """Missing p-values sit at the root, then the largest p-value"""
    heap = MatchHeap(10)
    for p in (0.01, 0.5, math.nan, 0.2):
        heap.push(make_match(p))

    assert math.isnan(heap.pop().pvalue)
    assert heap.pop().pvalue == 0.5
    assert [m.pvalue for m in heap.drain()] == [0.2, 0.01]


def test_match_heap_ties_break_on_score():
    """Equal p-values pop the lower score first"""
    heap = MatchHeap(10)
    heap.push(make_match(0.1, score=5.0))
    heap.push(make_match(0.1, score=2.0))

    assert heap.pop().score == 2.0


def test_purge_keeps_only_better_matches():
    """Everything kept after a purge beats the smallest discarded p-value"""
    heap = MatchHeap(10)
    for p in (0.1, 0.2, 0.3, 0.3, 0.3, 0.3, 0.4, 0.05, 0.01, 0.9):
        heap.push(make_match(p))
    assert heap.is_full()

    min_discarded = purge_match_heap(heap)

    assert min_discarded == 0.3
    kept = [m.pvalue for m in heap.drain()]
    assert len(kept) <= 5
    assert all(p < min_discarded for p in kept)


def test_match_heap_rescore():
    """Re-scoring restores heap order"""
    heap = MatchHeap(5)
    heap.push(make_match(math.nan, score=1.0))
    heap.push(make_match(math.nan, score=3.0))

    def update(match):
        match.pvalue = 1.0 / match.score

    heap.rescore(update)
    assert heap.peek().score == 1.0
    assert len(heap) == 2


def test_window_gc_clips_to_sequence():
    """GC window is clipped at both ends of the framed sequence"""
    codes = SequenceSegment("s", "GGGGAAAA").prepare()
    prefix = gc_prefix_sums(codes)

    assert window_gc(prefix, 1, 2, codes.size) == pytest.approx(4 / 9)


# ---------------------------------------------------------------------------
# matcher
# ---------------------------------------------------------------------------


def test_match_runs_and_next_match():
    """Runs of non-start states and their scores"""
    path = np.array([0, 0, 2, 3, 0, 2, 1, 1, 3, 0])
    steps = np.array([0.0, 0.0, 1.0, 0.0, 0.0, 2.0, -0.1, -0.1, 0.5, 0.0])

    starts, ends = match_runs(path)
    np.testing.assert_array_equal(starts, [2, 5])
    np.testing.assert_array_equal(ends, [3, 8])

    start, end, score = find_next_match(path, steps, 0, dp_thresh=0.5)
    assert (start, end) == (2, 3)
    assert score == pytest.approx(1.5)

    start, end, score = find_next_match(path, steps, 4, dp_thresh=0.5)
    assert (start, end) == (5, 8)
    assert score == pytest.approx(2.8)

    assert find_next_match(path, steps, 9, dp_thresh=0.5) is None


def test_collect_segment_matches_defers_overlap():
    """Matches starting in the overlap of an incomplete segment wait for the next one"""
    path = np.zeros(20, dtype=np.int64)
    path[2:4] = 2
    path[15:17] = 2
    steps = np.zeros(20)

    intervals, cursor = collect_segment_matches(path, steps, 0, False, 8, 1.0)
    assert [(s, e) for s, e, _ in intervals] == [(2, 3)]
    assert cursor == 4

    intervals, cursor = collect_segment_matches(path, steps, 0, True, 8, 1.0)
    assert [(s, e) for s, e, _ in intervals] == [(2, 3), (15, 16)]
    assert cursor == 17


def test_collect_segment_matches_skips_match_at_cursor():
    """A match starting exactly at the cursor is passed over"""
    path = np.array([0, 2, 3, 0, 0, 2, 3, 0])
    steps = np.zeros(8)

    intervals, cursor = collect_segment_matches(path, steps, 1, True, 2, 1.0)
    assert [(s, e) for s, e, _ in intervals] == [(5, 6)]
    assert cursor == 7


# ---------------------------------------------------------------------------
# distribution
# ---------------------------------------------------------------------------


def test_reservoir_counts_and_capacity():
    """Reservoir holds at most its capacity but counts every offer"""
    rng = np.random.default_rng(0)
    reservoir = ScoreReservoir(5)
    for i in range(20):
        reservoir.offer(float(i), 100, 1, 10, 0.5, rng)

    assert reservoir.is_full()
    assert reservoir.n == 5
    assert reservoir.num_scores_seen == 20
    assert reservoir.sampled_scores.size == 5

    with pytest.raises(ValueError):
        ScoreReservoir(0)


def test_reservoir_serials_carry_across_scans():
    """Stored samples are numbered in storage order over every scan"""
    rng = np.random.default_rng(0)
    reservoir = ScoreReservoir(10)
    for i in range(3):
        reservoir.offer(float(i), 100, 1, 10, 0.5, rng)
    for i in range(4):
        reservoir.offer(float(i), 100, 1, 10, 0.5, rng)

    np.testing.assert_array_equal(reservoir.serials[: reservoir.n], np.arange(7))
    assert reservoir.serial_no == 7


def test_reservoir_is_uniform():
    """Every offered score is kept with probability capacity / offers"""
    rng = np.random.default_rng(42)
    trials = 2000
    kept = np.zeros(100)
    for _ in range(trials):
        reservoir = ScoreReservoir(10)
        for i in range(100):
            reservoir.offer(float(i), 1, 1, 1, 0.5, rng)
        kept[reservoir.sampled_scores.astype(int)] += 1

    freq = kept / trials
    assert abs(freq[0] - 0.1) < 0.04
    assert abs(freq[50] - 0.1) < 0.04
    assert abs(freq[99] - 0.1) < 0.04
    assert abs(freq.mean() - 0.1) < 1e-9


def test_evd_pvalue_exponential():
    """P-values follow the fitted exponential tail"""
    evd = EvdSet(mu=np.array([2.0]), mean_gc=np.array([0.5]), counts=np.array([10]), boundaries=np.zeros(0))

    assert evd.pvalue(2.0, 0.3) == pytest.approx(math.exp(-1.0))
    assert evd.pvalue(0.0, 0.3) == pytest.approx(1.0)
    np.testing.assert_allclose(evd.pvalues(np.array([2.0, 4.0]), np.array([0.1, 0.9])), np.exp([-1.0, -2.0]))
    assert EvdSet().pvalue(5.0, 0.5) == 1.0


def test_calc_distr_gc_bins():
    """Scores are binned by GC with midpoint boundaries"""
    rng = np.random.default_rng(3)
    reservoir = ScoreReservoir(2500)
    for i in range(2500):
        gc = 0.3 if i % 2 == 0 else 0.6
        scale = 1.0 if gc < 0.5 else 3.0
        reservoir.offer(float(rng.exponential(scale)), 1000, 1, 10, gc, rng)

    evd = calc_distr(reservoir)

    assert evd.mu.size == 2
    assert evd.n == 2500
    assert evd.boundaries[0] == pytest.approx(0.45)
    assert evd.bin(0.2) == 0 and evd.bin(0.7) == 1
    assert evd.mu[0] == pytest.approx(1.0, rel=0.15)
    assert evd.mu[1] == pytest.approx(3.0, rel=0.15)


def test_calc_distr_empty():
    """An empty reservoir gives an empty distribution"""
    assert calc_distr(ScoreReservoir(3)).is_empty


def test_compute_qvalues_monotone():
    """q-values are non-decreasing and capped at one"""
    q = compute_qvalues(np.array([0.01, 0.02, 0.03]), num_tests=3, pi0=1.0)
    np.testing.assert_allclose(q, [0.03, 0.03, 0.03])

    q = compute_qvalues(np.array([0.001, 0.5, 0.9]), num_tests=100, pi0=1.0)
    assert np.all(np.diff(q) >= 0)
    assert q.max() <= 1.0


def test_calc_pq_values_summary():
    """E-values scale p-values by N; outliers are the matches with E < 1"""
    rng = np.random.default_rng(0)
    reservoir = ScoreReservoir(50)
    for _ in range(50):
        reservoir.offer(float(rng.exponential(1.0)), 100, 1, 10, 0.5, rng)
    evd = EvdSet(mu=np.array([1.0]), mean_gc=np.array([0.5]), counts=np.array([50]), boundaries=np.zeros(0), N=10)

    matches = [make_match(math.nan, score=s) for s in (1.0, 5.0, 3.0)]
    for m in matches:
        m.gc = 0.5

    scored = calc_pq_values(matches, evd, reservoir, dp_thresh=0.0)

    assert [m.score for m in scored] == [5.0, 3.0, 1.0]
    np.testing.assert_allclose([m.pvalue for m in scored], np.exp([-5.0, -3.0, -1.0]))
    np.testing.assert_allclose([m.evalue for m in scored], 10 * np.exp([-5.0, -3.0, -1.0]))
    assert all(0 < m.qvalue <= 1 for m in scored)
    assert evd.outliers == 2
    assert evd.min_e == pytest.approx(10 * math.exp(-5.0))
    assert evd.sum_log_e == pytest.approx(2 * math.log(10) - 8.0)


def test_estimate_pi0_uniform_pvalues():
    """Uniform p-values estimate a null fraction near one"""
    rng = np.random.default_rng(0)
    pvalues = rng.random(2000)

    pi0 = estimate_pi0(pvalues, np.random.default_rng(1))
    assert 0.8 < pi0 <= 1.0
    assert estimate_pi0(np.array([]), rng) == 1.0


# ---------------------------------------------------------------------------
# synthetic
# ---------------------------------------------------------------------------


def test_complementary_indices():
    """Index of A, C, G and T in complementary alphabets"""
    assert complementary_indices("ACGT") == (0, 1, 2, 3)
    with pytest.raises(ValueError):
        complementary_indices("ACDE")


def test_gc_background_and_sequence():
    """Random sequences have roughly the requested GC content"""
    np.testing.assert_allclose(gc_background(0.6), [0.2, 0.3, 0.3, 0.2])

    seq = generate_synthetic_sequence(np.random.default_rng(5), 20000, 0.7)
    assert len(seq) == 20000
    assert set(seq) <= set("ACGT")
    gc = (seq.count("G") + seq.count("C")) / len(seq)
    assert gc == pytest.approx(0.7, abs=0.02)


def test_calibration_config_rounds():
    """Maximum rounds follow from the base-pair budget"""
    assert CalibrationConfig(seq_length=1000, max_bp=50000).max_rounds == 50


class FixedRateScanner:
    """Stand-in scanner reporting the same number of scores for every random sequence."""

    def __init__(self, per_round):
        self.per_round = per_round
        self.lengths = []

    def read_and_score(self, reader, reservoir, rng, heap=None):
        segment = reader.next_sequence(10**9)
        self.lengths.append(len(segment.raw))
        for _ in range(self.per_round):
            reservoir.offer(1.0 + rng.random(), len(segment.raw), 1, 10, 0.5, rng)

    @property
    def rounds(self):
        return len(self.lengths)


def run_calibration(per_round, **config):
    scanner = FixedRateScanner(per_round)
    evd, synth = generate_synth_evd(
        scanner, ScoreReservoir(10), np.random.default_rng(0), 10000, CalibrationConfig(seq_length=100, **config)
    )
    return scanner, evd, synth


def test_calibration_stops_after_min_rounds_with_enough_scores(caplog):
    """Enough scores end calibration, but never before the minimum round count"""
    with caplog.at_level(logging.WARNING):
        scanner, evd, synth = run_calibration(100, want=50, max_bp=1e6, min_rounds=3, give_up_round=1000)

    assert scanner.rounds == 3
    assert scanner.lengths == [100, 100, 100]
    assert synth.num_scores_seen == 300
    assert not evd.is_empty
    assert "Giving up" not in caplog.text


def test_calibration_gives_up_on_slow_progress(caplog):
    """Progress below the round budget share stops calibration at the give-up round"""
    with caplog.at_level(logging.WARNING):
        scanner, _, synth = run_calibration(10, want=1000, max_bp=2000, min_rounds=1, give_up_round=5)

    assert scanner.rounds == 5
    assert synth.num_scores_seen == 50
    assert "Giving up generating random sequences" in caplog.text


def test_calibration_keeps_going_on_steady_progress(caplog):
    """Progress ahead of the round budget share runs until enough scores are found"""
    with caplog.at_level(logging.WARNING):
        scanner, _, synth = run_calibration(60, want=1000, max_bp=2000, min_rounds=1, give_up_round=5)

    assert scanner.rounds == 17
    assert synth.num_scores_seen == 1020
    assert "Giving up" not in caplog.text


def test_calibration_respects_base_pair_budget():
    """The base-pair budget caps the number of random sequences"""
    scanner, _, synth = run_calibration(1, want=10**6, max_bp=700, min_rounds=1, give_up_round=100)

    assert scanner.rounds == 7
    assert synth.num_scores_seen == 7


# ---------------------------------------------------------------------------
# api
# ---------------------------------------------------------------------------


def test_create_config_threshold_choice(motif_file, write_fasta):
    """Choosing a p- or q-value threshold lifts the E-value threshold"""
    fasta = write_fasta([("s", "ACGT")])

    config = create_config(motif_file, fasta)
    assert config.output_thresh_type == "evalue"
    assert config.output_ethresh == 10.0

    config = create_config(motif_file, fasta, output_qthresh=0.05)
    assert config.output_thresh_type == "qvalue"
    assert config.output_qthresh == 0.05
    assert math.isinf(config.output_ethresh)
    assert config.output_pthresh == 1.0

    with pytest.raises(ValueError):
        create_config(motif_file, fasta, output_ethresh=1.0, output_pthresh=0.1)


def test_create_config_validation(motif_file, write_fasta, temp_dir):
    """Invalid settings are rejected before scanning"""
    fasta = write_fasta([("s", "ACGT")])

    with pytest.raises(ValueError):
        create_config(motif_file, fasta, motif_pthresh=1.5)
    with pytest.raises(ValueError):
        create_config(motif_file, fasta, max_stored_scores=0)
    with pytest.raises(ValueError):
        create_config(motif_file, fasta, psp_path=fasta)
    with pytest.raises(ValueError):
        create_config(motif_file, fasta, motif_format="jaspar")
    with pytest.raises(ValueError):
        create_config(motif_file, fasta, max_chars=100, overlap_size=100)
    with pytest.raises(FileNotFoundError):
        create_config(temp_dir / "missing.meme", fasta)
