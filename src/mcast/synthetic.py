"""Calibrate match significance on random sequences of varying GC content."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from mcast.distribution import EvdSet, ScoreReservoir, calc_distr
from mcast.io import DNA_LETTERS, ArraySegmentReader

COMPLEMENT = {"A": "T", "C": "G", "G": "C", "T": "A"}


@dataclass(frozen=True)
class CalibrationConfig:
    """Stopping rules for random-sequence calibration.

    Attributes
    ----------
    want : int
        Number of random match scores to collect
    seq_length : int
        Length of each random sequence
    max_bp : float
        Upper bound on the total random sequence generated
    min_rounds : int
        Minimum number of random sequences (GC contents) to try
    give_up_round : int
        First round at which calibration may stop for lack of progress
    """

    want: int = 100_000
    seq_length: int = 1_000_000
    max_bp: float = 1e9
    min_rounds: int = 100
    give_up_round: int = 10

    @property
    def max_rounds(self) -> float:
        return self.max_bp / self.seq_length


def complementary_indices(alphabet: str = DNA_LETTERS) -> Tuple[int, int, int, int]:
    """Return the indices of A, C, G and T in an alphabet of two complementary pairs."""
    letters = alphabet.upper()
    if len(letters) != 4 or any(c not in COMPLEMENT or COMPLEMENT[c] not in letters for c in letters):
        raise ValueError(f"Random calibration needs 4 core symbols in 2 complementary pairs, got {alphabet!r}")
    idx_a = 0
    idx_t = letters.index(COMPLEMENT[letters[idx_a]])
    idx_c = 1 if idx_t != 1 else 2
    idx_g = letters.index(COMPLEMENT[letters[idx_c]])
    return idx_a, idx_c, idx_g, idx_t


def gc_background(gc: float, alphabet: str = DNA_LETTERS) -> np.ndarray:
    """Order-0 background with the requested GC content."""
    idx_a, idx_c, idx_g, idx_t = complementary_indices(alphabet)
    background = np.zeros(4)
    background[idx_a] = (1.0 - gc) / 2.0
    background[idx_t] = (1.0 - gc) / 2.0
    background[idx_c] = gc / 2.0
    background[idx_g] = gc / 2.0
    return background


def generate_synthetic_sequence(
    rng: np.random.Generator, length: int, gc: float, alphabet: str = DNA_LETTERS
) -> str:
    """Draw an i.i.d. random sequence with the given GC content."""
    codes = rng.choice(4, size=length, p=gc_background(gc, alphabet))
    letters = np.frombuffer(alphabet.encode("ascii"), dtype=np.uint8)
    return letters[codes].tobytes().decode("ascii")


def generate_synth_evd(
    scanner,
    real_reservoir: ScoreReservoir,
    rng: np.random.Generator,
    capacity: int,
    config: CalibrationConfig = CalibrationConfig(),
) -> Tuple[EvdSet, ScoreReservoir]:
    """Fit the score distribution from matches found in random sequences.

    GC contents are drawn uniformly between the lowest and highest GC seen
    in the real scan. Random sequences are scanned until enough scores are
    found, the round budget runs out, or progress is too slow to finish.
    """

    logger = logging.getLogger(__name__)

    gcs = real_reservoir.sampled_gcs
    min_gc = float(gcs.min()) if gcs.size else 0.5
    max_gc = float(gcs.max()) if gcs.size else 0.5

    synth = ScoreReservoir(capacity)
    max_rounds = config.max_rounds
    db_size = 0

    round_num = 1
    while round_num <= max_rounds:
        gc = min_gc + rng.random() * (max_gc - min_gc)
        sequence = generate_synthetic_sequence(rng, config.seq_length, gc)
        db_size += config.seq_length

        with ArraySegmentReader([(f"random_{round_num}", sequence)]) as reader:
            scanner.read_and_score(reader, synth, rng)

        found = synth.num_scores_seen
        logger.debug(
            f"Random sequence {round_num}: {found} total matches, "
            f"progress {100 * found / config.want:.3g}%, min progress {100 * round_num / max_rounds:.3g}%"
        )

        if round_num >= config.min_rounds and found >= config.want:
            break

        if round_num >= config.give_up_round and found / config.want < round_num / max_rounds:
            logger.warning(
                "Giving up generating random sequences: match probability too low. "
                "Try increasing --motif-pthresh (the p-value threshold for scoring motif hits)."
            )
            break

        round_num += 1

    logger.info(f"Generated {db_size} random characters with {synth.num_scores_seen} matches.")
    return calc_distr(synth), synth
