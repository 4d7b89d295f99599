"""
MCAST
==================

Motif Cluster Alignment and Search Tool.  Given a set of DNA motifs and a
set of sequences, MCAST finds clusters of motif hits with a star-topology
hidden Markov model and reports each cluster with a p-value, E-value and
q-value estimated from random sequences of matching GC content.

The top level modules expose the following key components:

``io``
    Readers for motifs (MEME, TRANSFAC), backgrounds, position specific
    priors and FASTA sequences, and writers for TSV, GFF3 and XML results.

``models``
    Motif records and the star-topology motif HMM with its log-space form.

``pssm``
    Integer-scaled scoring matrices, their null score distributions and
    the gap costs derived from them.

``matcher``
    The repeated-match Viterbi scan and the extraction of matches from the
    state path of each sequence segment.

``matches``
    Match records and the bounded match store.

``distribution``
    Score reservoir sampling, GC-binned score distributions and q-values.

``synthetic``
    Calibration of match significance on random sequences.

``pipeline``
    The end-to-end scan used by the library and the command line.

``cli``
    The ``mcast`` command line interface.
"""

__version__ = "0.1.0"

from mcast.api import McastConfig, create_config, run_mcast, scan_motifs  # noqa: E402
from mcast.io import read_motifs  # noqa: E402
from mcast.matches import Match, MotifHit  # noqa: E402
from mcast.models import Motif  # noqa: E402
from mcast.pipeline import McastResult  # noqa: E402

__all__ = [
    "__version__",
    "McastConfig",
    "McastResult",
    "Match",
    "Motif",
    "MotifHit",
    "create_config",
    "read_motifs",
    "run_mcast",
    "scan_motifs",
]
