"""
Pytest configuration and common fixtures for mcast tests.
"""
import sys
import tempfile
from pathlib import Path

import numpy as np
import pytest

# Force testing the installed package, not the local source
project_root = str(Path(__file__).parent.parent.absolute())
if project_root in sys.path:
    sys.path.remove(project_root)

from mcast.io import write_meme  # noqa: E402
from mcast.models import Motif  # noqa: E402
from mcast.synthetic import CalibrationConfig  # noqa: E402

MOTIF1_CONSENSUS = "GATCGT"
MOTIF2_CONSENSUS = "TTGACGCA"
MOTIF2_REVCOMP = "TGCGTCAA"


def sharp_motif(motif_id: str, consensus: str, alt_id: str = "") -> Motif:
    """Motif putting 0.97 of each column on the consensus letter."""
    freqs = np.full((4, len(consensus)), 0.01)
    for j, letter in enumerate(consensus):
        freqs["ACGT".index(letter), j] = 0.97
    return Motif(id=motif_id, frequencies=freqs, alt_id=alt_id)


def background_sequence(length: int, seed: int = 1) -> str:
    """Random A/C sequence, which no test motif can hit."""
    rng = np.random.default_rng(seed)
    return "".join(rng.choice(["A", "C"], size=length))


def plant(sequence: str, sites) -> str:
    """Overwrite ``sequence`` with each ``(position, site)`` pair."""
    chars = list(sequence)
    for pos, site in sites:
        chars[pos : pos + len(site)] = site
    return "".join(chars)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_motifs():
    """Two sharp motifs with no A/C-only hits on either strand."""
    return [sharp_motif("MOTIF_A", MOTIF1_CONSENSUS, "alpha"), sharp_motif("MOTIF_B", MOTIF2_CONSENSUS, "beta")]


@pytest.fixture
def motif_file(temp_dir, test_motifs):
    """MEME file holding the two test motifs."""
    path = temp_dir / "motifs.meme"
    write_meme(test_motifs, str(path))
    return path


@pytest.fixture
def write_fasta(temp_dir):
    """Factory writing ``[(name, sequence)]`` to a FASTA file with 60-column lines."""

    def _write(records, filename="sequences.fa"):
        path = temp_dir / filename
        with open(path, "w") as out:
            for name, seq in records:
                out.write(f">{name}\n")
                for i in range(0, len(seq), 60):
                    out.write(seq[i : i + 60] + "\n")
        return path

    return _write


@pytest.fixture
def planted_sequence():
    """Factory for an A/C background with motif sites planted at given positions."""

    def _make(sites, length=1000, seed=1):
        return plant(background_sequence(length, seed), sites)

    return _make


@pytest.fixture
def fast_calibration():
    """Small random-sequence budget that still collects a few hundred scores."""
    return CalibrationConfig(want=200, seq_length=20000, max_bp=4e5, min_rounds=2, give_up_round=10)
