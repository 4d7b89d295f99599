import argparse
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from mcast import __version__
from mcast.api import (
    DEFAULT_ALPHA,
    DEFAULT_MAX_GAP,
    DEFAULT_MAX_STORED_SCORES,
    DEFAULT_MOTIF_PTHRESH,
    DEFAULT_OUTPUT_ETHRESH,
    DEFAULT_SEED,
    create_config,
    run_mcast,
)
from mcast.synthetic import CalibrationConfig

_VERBOSITY_LEVELS = {0: logging.ERROR, 1: logging.WARNING, 2: logging.INFO}


def setup_logging(verbosity: int, verbose: bool = False):
    """Setup logging configuration."""
    if verbose:
        level = logging.DEBUG
    else:
        level = _VERBOSITY_LEVELS.get(verbosity, logging.DEBUG)
    logging.basicConfig(level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    logging.getLogger("numba").setLevel(logging.WARNING)


class OutputThresholdAction(argparse.Action):
    """Record which output threshold was given; the last one on the command line wins."""

    def __call__(self, parser, namespace, values, option_string=None):
        kind = {"--output-ethresh": "evalue", "--output-pthresh": "pvalue", "--output-qthresh": "qvalue"}
        setattr(namespace, self.dest, (kind[option_string], values))


class OutputDirAction(argparse.Action):
    """``--o`` keeps existing output, ``--oc`` overwrites it."""

    def __call__(self, parser, namespace, values, option_string=None):
        namespace.output_dir = values
        namespace.allow_clobber = option_string == "--oc"


def create_arg_parser() -> argparse.ArgumentParser:
    """Create and configure argument parser."""
    parser = argparse.ArgumentParser(
        prog="mcast",
        description="MCAST: find clusters of motif hits in DNA sequences with a star-topology motif HMM",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
 Examples:
   # Scan a genome with two MEME motifs, writing to mcast_out/
   mcast motifs.meme genome.fa

   # Plain text output with tighter clustering
   mcast --text --max-gap 30 --motif-pthresh 0.0001 motifs.meme promoters.fa

   # TRANSFAC motifs, custom background and a q-value cutoff
   mcast --transfac --bfile genome.bg --output-qthresh 0.05 --oc results matrices.dat genome.fa
         """,
    )
    parser.add_argument("motifs", help="Path to the motif file (MEME format unless --transfac is given).")
    parser.add_argument("sequences", help="Path to the FASTA file of sequences to scan.")

    io_group = parser.add_argument_group("Input/Output Options")
    io_group.add_argument(
        "--o",
        dest="output_dir",
        action=OutputDirAction,
        metavar="DIR",
        help="Name of output directory. Existing files will not be overwritten. (default: mcast_out)",
    )
    io_group.add_argument(
        "--oc",
        dest="output_dir",
        action=OutputDirAction,
        metavar="DIR",
        help="Name of output directory. Existing files will be overwritten.",
    )
    io_group.add_argument("--text", action="store_true", help="Plain text output to standard output only.")
    io_group.add_argument(
        "--transfac", action="store_true", help="Motif file is in TRANSFAC format (default: MEME format)."
    )
    io_group.add_argument(
        "--max-total-width",
        type=int,
        default=-1,
        help="Maximum combined width of all motifs; -1 means no limit. (default: %(default)s)",
    )
    io_group.add_argument(
        "--hardmask",
        action="store_true",
        help="Treat lower-case nucleotides as 'N' so they never take part in motif hits.",
    )
    io_group.add_argument(
        "--no-pgc",
        dest="parse_genomic_coord",
        action="store_false",
        help="Do not parse genomic coordinates (name:start-end) found in sequence headers.",
    )
    io_group.add_argument(
        "--parse-genomic-coord",
        dest="parse_genomic_coord",
        action="store_true",
        help="Parse genomic coordinates found in sequence headers (default).",
    )
    io_group.add_argument(
        "--bfile", "--bgfile", dest="bfile", help="File containing a Markov background model (order 0 is used)."
    )
    io_group.add_argument("--psp", help="File containing position specific priors (PSP or .wig).")
    io_group.add_argument(
        "--prior-dist", help="File containing the distribution of position specific priors. Required with --psp."
    )

    scan_group = parser.add_argument_group("Scanning Options")
    scan_group.add_argument(
        "--alpha",
        type=float,
        default=DEFAULT_ALPHA,
        help=(
            "Fraction of all TF binding sites that are binding sites for the TF of interest. "
            "Used with position specific priors. (default: %(default)s)"
        ),
    )
    scan_group.add_argument(
        "--motif-pthresh",
        type=float,
        default=DEFAULT_MOTIF_PTHRESH,
        help="p-value threshold for motif hits. (default: %(default)s)",
    )
    scan_group.add_argument(
        "--max-gap",
        type=int,
        default=DEFAULT_MAX_GAP,
        help="Maximum allowed distance between adjacent hits. (default: %(default)s)",
    )
    scan_group.add_argument(
        "--output-ethresh",
        dest="output_threshold",
        type=float,
        action=OutputThresholdAction,
        help=f"Print only results with E-values less than this value. (default: {DEFAULT_OUTPUT_ETHRESH})",
    )
    scan_group.add_argument(
        "--output-pthresh",
        dest="output_threshold",
        type=float,
        action=OutputThresholdAction,
        help="Print only results with p-values less than this value. (default: E-value threshold is used)",
    )
    scan_group.add_argument(
        "--output-qthresh",
        dest="output_threshold",
        type=float,
        action=OutputThresholdAction,
        help="Print only results with q-values less than this value. (default: E-value threshold is used)",
    )
    scan_group.add_argument(
        "--max-stored-scores",
        type=int,
        default=DEFAULT_MAX_STORED_SCORES,
        help="Maximum number of matches stored in memory. (default: %(default)s)",
    )

    calibration_defaults = CalibrationConfig()
    calibration_group = parser.add_argument_group("Calibration Options")
    calibration_group.add_argument(
        "--synth-seq-length",
        type=int,
        default=calibration_defaults.seq_length,
        help="Length of each random calibration sequence. (default: %(default)s)",
    )
    calibration_group.add_argument(
        "--synth-want",
        type=int,
        default=calibration_defaults.want,
        help="Number of random match scores to collect. (default: %(default)s)",
    )
    calibration_group.add_argument(
        "--synth-min-rounds",
        type=int,
        default=calibration_defaults.min_rounds,
        help="Minimum number of random sequences to scan. (default: %(default)s)",
    )
    calibration_group.add_argument(
        "--synth-max-bp",
        type=float,
        default=calibration_defaults.max_bp,
        help="Maximum total length of random sequence to scan. (default: %(default)s)",
    )

    technical_group = parser.add_argument_group("Technical Options")
    technical_group.add_argument(
        "--seed",
        type=int,
        default=DEFAULT_SEED,
        help="Seed for the random sequences used to estimate match significance. (default: %(default)s)",
    )
    technical_group.add_argument(
        "--verbosity",
        type=int,
        choices=range(0, 6),
        default=2,
        help="Verbosity of messages: 1 quiet, 2 normal, 3 and above debug. (default: %(default)s)",
    )
    technical_group.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging for detailed execution tracking.",
    )
    technical_group.add_argument("--version", action="version", version=__version__)

    parser.set_defaults(output_dir="mcast_out", allow_clobber=True, output_threshold=None, parse_genomic_coord=True)
    return parser


def validate_inputs(args) -> None:
    """Validate input files."""
    logger = logging.getLogger(__name__)
    for label, path in (
        ("Motif file", args.motifs),
        ("Sequence file", args.sequences),
        ("Background file", args.bfile),
        ("Prior file", args.psp),
        ("Prior distribution file", args.prior_dist),
    ):
        if path and not os.path.exists(path):
            logger.error(f"{label} not found: {path}")
            sys.exit(1)


def map_args_to_config_kwargs(args) -> Dict[str, Any]:
    """Map CLI arguments to ``create_config`` keyword arguments."""
    kwargs = {
        "output_dir": args.output_dir,
        "allow_clobber": args.allow_clobber,
        "text_only": args.text,
        "motif_format": "transfac" if args.transfac else "meme",
        "max_total_width": args.max_total_width,
        "hard_mask": args.hardmask,
        "parse_genomic_coord": args.parse_genomic_coord,
        "background_path": args.bfile,
        "psp_path": args.psp,
        "prior_dist_path": args.prior_dist,
        "alpha": args.alpha,
        "motif_pthresh": args.motif_pthresh,
        "max_gap": args.max_gap,
        "max_stored_scores": args.max_stored_scores,
        "seed": args.seed,
        "calibration": CalibrationConfig(
            want=args.synth_want,
            seq_length=args.synth_seq_length,
            max_bp=args.synth_max_bp,
            min_rounds=args.synth_min_rounds,
        ),
    }

    if args.output_threshold is not None:
        kind, value = args.output_threshold
        key = {"evalue": "output_ethresh", "pvalue": "output_pthresh", "qvalue": "output_qthresh"}[kind]
        kwargs[key] = value

    return kwargs


def main_cli(argv: Optional[List[str]] = None):
    """Main CLI entry point."""
    parser = create_arg_parser()

    if argv is None and len(sys.argv) == 1:
        parser.print_help(sys.stderr)
        sys.exit(1)

    args = parser.parse_args(argv)

    setup_logging(args.verbosity, args.verbose)
    validate_inputs(args)

    logger = logging.getLogger(__name__)
    logger.info(f"Motifs: {args.motifs}")
    logger.info(f"Sequences: {args.sequences}")

    try:
        config = create_config(args.motifs, args.sequences, **map_args_to_config_kwargs(args))
        result = run_mcast(config)
        logger.info(f"Found {len(result.matches)} significant motif cluster(s).")

    except Exception as e:
        print(f"ERROR: MCAST failed: {e}", file=sys.stderr)
        if args.verbose:
            import traceback

            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main_cli()
