"""High-level public API for motif cluster scanning."""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

from mcast.matcher import OVERLAP_SIZE
from mcast.pipeline import McastResult, run_pipeline
from mcast.synthetic import CalibrationConfig

PathRef = Union[str, Path]

_MOTIF_FORMATS = ("meme", "transfac")

DEFAULT_ALPHA = 1.0
DEFAULT_MOTIF_PTHRESH = 0.0005
DEFAULT_MAX_GAP = 50
DEFAULT_OUTPUT_ETHRESH = 10.0
DEFAULT_MAX_STORED_SCORES = 100000
DEFAULT_SEED = 0


@dataclass(frozen=True)
class McastConfig:
    """Unified configuration object for library usage."""

    motif_path: PathRef
    sequence_path: PathRef
    output_dir: str = "mcast_out"
    allow_clobber: bool = True
    text_only: bool = False
    motif_format: str = "meme"
    max_total_width: int = -1
    hard_mask: bool = False
    parse_genomic_coord: bool = True
    background_path: Optional[PathRef] = None
    psp_path: Optional[PathRef] = None
    prior_dist_path: Optional[PathRef] = None
    alpha: float = DEFAULT_ALPHA
    motif_pthresh: float = DEFAULT_MOTIF_PTHRESH
    max_gap: int = DEFAULT_MAX_GAP
    output_thresh_type: str = "evalue"
    output_ethresh: float = DEFAULT_OUTPUT_ETHRESH
    output_pthresh: float = 1.0
    output_qthresh: float = 1.0
    max_stored_scores: int = DEFAULT_MAX_STORED_SCORES
    seed: int = DEFAULT_SEED
    max_chars: Optional[int] = None
    overlap_size: int = OVERLAP_SIZE
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)

    def settings(self) -> Dict[str, Any]:
        """Flat view of the settings for reporting."""
        values = asdict(self)
        calibration = values.pop("calibration")
        values.update({f"calibration_{k}": v for k, v in calibration.items()})
        return {k: ("" if v is None else v) for k, v in values.items()}


def create_config(
    motif_path: PathRef,
    sequence_path: PathRef,
    output_dir: str = "mcast_out",
    allow_clobber: bool = True,
    text_only: bool = False,
    motif_format: str = "meme",
    max_total_width: int = -1,
    hard_mask: bool = False,
    parse_genomic_coord: bool = True,
    background_path: Optional[PathRef] = None,
    psp_path: Optional[PathRef] = None,
    prior_dist_path: Optional[PathRef] = None,
    alpha: float = DEFAULT_ALPHA,
    motif_pthresh: float = DEFAULT_MOTIF_PTHRESH,
    max_gap: int = DEFAULT_MAX_GAP,
    output_ethresh: Optional[float] = None,
    output_pthresh: Optional[float] = None,
    output_qthresh: Optional[float] = None,
    max_stored_scores: int = DEFAULT_MAX_STORED_SCORES,
    seed: int = DEFAULT_SEED,
    max_chars: Optional[int] = None,
    overlap_size: int = OVERLAP_SIZE,
    calibration: Optional[CalibrationConfig] = None,
) -> McastConfig:
    """Build a validated scan config.

    At most one output threshold may be given. Choosing a p- or q-value
    threshold lifts the E-value threshold; the thresholds not chosen are
    set to 1.
    """

    given = [
        name
        for name, value in (("evalue", output_ethresh), ("pvalue", output_pthresh), ("qvalue", output_qthresh))
        if value is not None
    ]
    if len(given) > 1:
        raise ValueError("Use only one of output_ethresh, output_pthresh or output_qthresh.")

    thresh_type = given[0] if given else "evalue"
    ethresh, pthresh, qthresh = DEFAULT_OUTPUT_ETHRESH, 1.0, 1.0
    if thresh_type == "evalue" and output_ethresh is not None:
        ethresh = output_ethresh
        if ethresh <= 0:
            raise ValueError(f"E-value threshold must be positive, got {ethresh}")
    elif thresh_type == "pvalue":
        ethresh, pthresh = float("inf"), output_pthresh
        _check_probability("p-value threshold", pthresh)
    elif thresh_type == "qvalue":
        ethresh, qthresh = float("inf"), output_qthresh
        _check_probability("q-value threshold", qthresh)

    if motif_format not in _MOTIF_FORMATS:
        raise ValueError(f"Unknown motif format: {motif_format!r}. Available: {', '.join(_MOTIF_FORMATS)}")
    _check_probability("alpha", alpha)
    _check_probability("motif p-value threshold", motif_pthresh)
    if max_gap < 0:
        raise ValueError(f"max_gap must be non-negative, got {max_gap}")
    if max_stored_scores < 1:
        raise ValueError(f"max_stored_scores must be positive, got {max_stored_scores}")
    if max_total_width != -1 and max_total_width < 1:
        raise ValueError(f"max_total_width must be positive, got {max_total_width}")
    if (psp_path is None) != (prior_dist_path is None):
        raise ValueError("psp_path and prior_dist_path must be given together.")
    if not 0 <= seed < 2**32:
        raise ValueError(f"seed must be an unsigned 32-bit integer, got {seed}")
    if max_chars is not None and max_chars <= overlap_size:
        raise ValueError(f"max_chars ({max_chars}) must be larger than overlap_size ({overlap_size}).")
    if overlap_size < 1:
        raise ValueError(f"overlap_size must be positive, got {overlap_size}")

    for label, path in (("Motif", motif_path), ("Sequence", sequence_path)):
        if not Path(path).exists():
            raise FileNotFoundError(f"{label} file not found: {path}")

    return McastConfig(
        motif_path=motif_path,
        sequence_path=sequence_path,
        output_dir=output_dir,
        allow_clobber=allow_clobber,
        text_only=text_only,
        motif_format=motif_format,
        max_total_width=max_total_width,
        hard_mask=hard_mask,
        parse_genomic_coord=parse_genomic_coord,
        background_path=background_path,
        psp_path=psp_path,
        prior_dist_path=prior_dist_path,
        alpha=alpha,
        motif_pthresh=motif_pthresh,
        max_gap=max_gap,
        output_thresh_type=thresh_type,
        output_ethresh=ethresh,
        output_pthresh=pthresh,
        output_qthresh=qthresh,
        max_stored_scores=max_stored_scores,
        seed=seed,
        max_chars=max_chars,
        overlap_size=overlap_size,
        calibration=calibration or CalibrationConfig(),
    )


def _check_probability(label: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{label} must be between 0 and 1, got {value}")


def run_mcast(config: McastConfig) -> McastResult:
    """Execute a scan using the unified config."""
    return run_pipeline(config)


def scan_motifs(motif_path: PathRef, sequence_path: PathRef, **kwargs) -> McastResult:
    """Single-call entry point for motif cluster scanning."""
    return run_mcast(create_config(motif_path, sequence_path, **kwargs))
