from __future__ import annotations

import logging
import os
import re
import sys
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from dataclasses import field as dc_field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, TextIO, Tuple, Union

import joblib
import numpy as np
import pandas as pd

from mcast.functions import WILDCARD_CODE, pcm_to_pfm
from mcast.models import Motif
from mcast.pssm import PriorDistribution

DNA_LETTERS = "ACGT"
UNIFORM_BACKGROUND = np.full(4, 0.25)

_TRANS_TABLE = bytearray([WILDCARD_CODE] * 256)
for _char, _code in zip(b"ACGTacgt", [0, 1, 2, 3] * 2, strict=False):
    _TRANS_TABLE[_char] = _code

_MASK_TRANS_TABLE = bytearray([WILDCARD_CODE] * 256)
for _char, _code in zip(b"ACGT", [0, 1, 2, 3], strict=False):
    _MASK_TRANS_TABLE[_char] = _code

_GENOMIC_COORD = re.compile(r"^(?P<name>.+):(?P<start>\d+)-(?P<end>\d+)$")


# ---------------------------------------------------------------------------
# Motifs and backgrounds
# ---------------------------------------------------------------------------


def _check_alphabet(line: str, path: str) -> None:
    value = line.split("=", 1)[1].strip() if "=" in line else line.split(None, 1)[1]
    letters = value.split()[0].strip('"').upper() if value else ""
    if letters not in (DNA_LETTERS, "DNA"):
        raise ValueError(f"Only DNA motifs are supported; {path} declares alphabet {value!r}")


def _parse_background_line(line: str) -> np.ndarray:
    parts = line.split()
    freqs = dict(zip(parts[0::2], parts[1::2], strict=False))
    try:
        background = np.array([float(freqs[letter]) for letter in DNA_LETTERS], dtype=np.float64)
    except KeyError as exc:
        raise ValueError(f"Background frequency missing for letter {exc.args[0]}") from exc
    return background / background.sum()


def read_meme(path: str) -> Tuple[List[Motif], np.ndarray]:
    """Read every motif and the background from a MEME formatted file."""
    motifs: List[Motif] = []
    background = UNIFORM_BACKGROUND.copy()

    with open(path) as handle:
        line = handle.readline()
        while line:
            stripped = line.strip()
            if stripped.startswith("ALPHABET"):
                _check_alphabet(stripped, path)
            elif stripped.startswith("Background letter frequencies"):
                bg_line = handle.readline()
                while bg_line and not bg_line.strip():
                    bg_line = handle.readline()
                background = _parse_background_line(bg_line)
            elif stripped.startswith("MOTIF"):
                parts = stripped.split()
                name = parts[1]
                alt_id = parts[2] if len(parts) > 2 else ""

                header_line = handle.readline()
                while header_line and "letter-probability" not in header_line:
                    header_line = handle.readline()
                header = header_line.replace("=", "= ").split()

                try:
                    length_idx = header.index("w=") + 1
                    length = int(header[length_idx])
                except (ValueError, IndexError) as exc:
                    raise ValueError(f"Motif {name} in {path} has no width") from exc

                nsites = _header_value(header, "nsites=")
                evalue = _header_value(header, "E=")

                matrix = []
                while len(matrix) < length:
                    row_line = handle.readline()
                    if not row_line:
                        raise ValueError(f"Unexpected end of file in motif {name}")
                    row = row_line.strip().split()
                    if not row:
                        continue
                    matrix.append(list(map(float, row[:4])))

                freqs = np.array(matrix, dtype=np.float64).T
                freqs = freqs / freqs.sum(axis=0, keepdims=True)
                motifs.append(Motif(id=name, frequencies=freqs, alt_id=alt_id, nsites=nsites, evalue=evalue))

            line = handle.readline()

    if not motifs:
        raise ValueError(f"No motifs found in {path}")

    return motifs, background


def _header_value(header: List[str], key: str) -> Optional[float]:
    try:
        return float(header[header.index(key) + 1])
    except (ValueError, IndexError):
        return None


def read_transfac(path: str) -> List[Motif]:
    """Read count matrices from a TRANSFAC formatted file.

    The ``ID`` line names the motif and ``AC`` becomes its alternate name
    (or its name when there is no ``ID``). Records end at ``//``.
    """
    motifs: List[Motif] = []
    record: Dict[str, object] = {"counts": []}

    def flush(rec):
        counts = rec["counts"]
        name = rec.get("ID") or rec.get("AC")
        if not counts:
            return
        if name is None:
            name = f"motif_{len(motifs) + 1}"
        pcm = np.array(counts, dtype=np.float64).T
        alt_id = rec.get("AC", "") if "ID" in rec else ""
        motifs.append(Motif(id=name, frequencies=pcm_to_pfm(pcm), alt_id=alt_id, nsites=float(pcm[:, 0].sum())))

    with open(path) as handle:
        for line in handle:
            parts = line.strip().split()
            if not parts:
                continue
            tag = parts[0]
            if tag in ("AC", "ID") and len(parts) > 1:
                record[tag] = parts[1]
            elif tag in ("P0", "PO"):
                record["counts"] = []
            elif tag.isdigit() and len(parts) >= 5:
                record["counts"].append([float(x) for x in parts[1:5]])
            elif tag == "//":
                flush(record)
                record = {"counts": []}
    flush(record)

    if not motifs:
        raise ValueError(f"No motifs found in {path}")
    return motifs


def read_background(path: str) -> np.ndarray:
    """Read the order-0 part of a Markov background file."""
    freqs: Dict[str, float] = {}
    with open(path) as handle:
        for line in handle:
            parts = line.strip().split()
            if not parts or parts[0].startswith("#"):
                continue
            if len(parts) >= 2 and len(parts[0]) == 1:
                freqs[parts[0].upper()] = float(parts[1])

    missing = [letter for letter in DNA_LETTERS if letter not in freqs]
    if missing:
        raise ValueError(f"Background file {path} is missing letters: {', '.join(missing)}")
    background = np.array([freqs[letter] for letter in DNA_LETTERS], dtype=np.float64)
    return background / background.sum()


def read_motifs(path: str, motif_format: str = "meme") -> Tuple[List[Motif], np.ndarray]:
    """Load motifs and their background from a MEME, TRANSFAC or pickle file."""
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Motif file not found: {path}")

    if path.endswith(".pkl"):
        motifs = joblib.load(path)
        if isinstance(motifs, Motif):
            motifs = [motifs]
        return list(motifs), UNIFORM_BACKGROUND.copy()
    if motif_format == "meme":
        return read_meme(path)
    if motif_format == "transfac":
        return read_transfac(path), UNIFORM_BACKGROUND.copy()
    raise ValueError(f"Unknown motif format: {motif_format!r}. Available: meme, transfac")


def write_meme(motifs: List[Motif], path: str, background: Optional[np.ndarray] = None) -> None:
    """Write a list of motifs to a MEME formatted file."""
    background = UNIFORM_BACKGROUND if background is None else background
    with open(path, "w") as out:
        out.write("MEME version 4\n\n")
        out.write("ALPHABET= ACGT\n\n")
        out.write("strands: + -\n\n")
        out.write("Background letter frequencies\n")
        out.write(" ".join(f"{letter} {val:.3f}" for letter, val in zip(DNA_LETTERS, background, strict=False)))
        out.write("\n\n")
        for motif in motifs:
            out.write(f"MOTIF {motif.id} {motif.alt_id}".rstrip() + "\n")
            out.write(f"letter-probability matrix: alength= 4 w= {motif.width} nsites= 20 E= 0\n")
            for row in motif.frequencies.T:
                out.write(" " + " ".join(f"{val:.6f}" for val in row) + "\n")
            out.write("\n")


# ---------------------------------------------------------------------------
# Priors
# ---------------------------------------------------------------------------


class PositionPriors:
    """Per-position prior probabilities keyed by sequence name.

    WIG tracks are indexed by absolute (genomic) position. PSP tracks are
    ``relative``: their first value belongs to the first symbol of the
    sequence, whatever genomic start its header carries.
    """

    def __init__(self, tracks: Dict[str, np.ndarray], relative: bool = False):
        self.tracks = tracks
        self.relative = relative

    def __contains__(self, name: str) -> bool:
        return name in self.tracks

    def values(self, name: str, start: int, length: int, seq_start: int = 0) -> np.ndarray:
        """Priors for ``length`` positions from absolute ``start``; NaN where unknown.

        ``seq_start`` is the absolute position of the first symbol of the
        sequence and only shifts relative tracks.
        """
        out = np.full(length, np.nan)
        track = self.tracks.get(name)
        if self.relative:
            start -= seq_start
        if track is None or start < 0 or start >= track.size:
            return out
        stop = min(track.size, start + length)
        out[: stop - start] = track[start:stop]
        return out


def read_psp(path: str, parse_genomic_coord: bool = False) -> PositionPriors:
    """Read a FASTA-like position specific prior file.

    Headers are parsed like the sequence headers, so with
    ``parse_genomic_coord`` a ``chr1:1001-2000`` track is stored as ``chr1``.
    """
    tracks: Dict[str, List[float]] = {}
    current = None
    with open(path) as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            if line.startswith(">"):
                current = line[1:].split()[0]
                if parse_genomic_coord:
                    current, _ = parse_genomic_coordinates(current)
                tracks[current] = []
            elif current is not None:
                tracks[current].extend(float(x) for x in line.split())
    return PositionPriors(
        {name: np.array(vals, dtype=np.float64) for name, vals in tracks.items()}, relative=True
    )


def read_wig(path: str) -> PositionPriors:
    """Read priors from a variableStep/fixedStep WIG file (1-based positions)."""
    points: Dict[str, List[Tuple[int, int, float]]] = {}
    chrom = None
    mode = None
    span = 1
    step = 1
    position = 1

    with open(path) as handle:
        for line in handle:
            line = line.strip()
            if not line or line.startswith(("#", "track", "browser")):
                continue
            if line.startswith(("variableStep", "fixedStep")):
                fields = dict(item.split("=", 1) for item in line.split()[1:])
                mode = line.split()[0]
                chrom = fields["chrom"]
                span = int(fields.get("span", 1))
                step = int(fields.get("step", 1))
                position = int(fields.get("start", 1))
                points.setdefault(chrom, [])
                continue
            if chrom is None:
                raise ValueError(f"WIG data line before any declaration in {path}")
            parts = line.split()
            if mode == "variableStep":
                points[chrom].append((int(parts[0]), span, float(parts[1])))
            else:
                points[chrom].append((position, span, float(parts[0])))
                position += step

    tracks = {}
    for name, entries in points.items():
        size = max((pos + sp - 1 for pos, sp, _ in entries), default=0)
        track = np.full(size, np.nan)
        for pos, sp, value in entries:
            track[pos - 1 : pos - 1 + sp] = value
        tracks[name] = track
    return PositionPriors(tracks)


def read_priors(path: str, parse_genomic_coord: bool = False) -> PositionPriors:
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Prior file not found: {path}")
    if path.endswith(".wig"):
        return read_wig(path)
    return read_psp(path, parse_genomic_coord=parse_genomic_coord)


def read_prior_distribution(path: str) -> PriorDistribution:
    """Read a prior distribution file: minimum, maximum, then bin probabilities."""
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Prior distribution file not found: {path}")
    values = []
    with open(path) as handle:
        for line in handle:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            values.append(float(line.split()[0]))
    if len(values) < 3:
        raise ValueError(f"Prior distribution file {path} needs a minimum, a maximum and at least one bin")
    probabilities = np.array(values[2:], dtype=np.float64)
    if probabilities.sum() <= 0:
        raise ValueError(f"Prior distribution in {path} has no mass")
    return PriorDistribution(min_prior=values[0], max_prior=values[1], probabilities=probabilities)


# ---------------------------------------------------------------------------
# Sequences
# ---------------------------------------------------------------------------


@dataclass
class SequenceSegment:
    """A bounded window of one logical sequence.

    ``offset`` is the absolute position of ``raw[0]`` in the logical
    sequence; ``is_complete`` is False while more symbols remain unread.
    """

    name: str
    raw: str
    offset: int = 0
    is_complete: bool = True
    priors: Optional[np.ndarray] = dc_field(default=None, repr=False)
    hard_mask: bool = False

    @property
    def text(self) -> str:
        """The segment framed by boundary symbols."""
        return "X" + self.raw + "X"

    def prepare(self) -> np.ndarray:
        """Integer codes of the framed segment (A0 C1 G2 T3, wildcard 4)."""
        table = _MASK_TRANS_TABLE if self.hard_mask else _TRANS_TABLE
        codes = np.full(len(self.raw) + 2, WILDCARD_CODE, dtype=np.int8)
        encoded = self.raw.encode("ascii", errors="replace").translate(table)
        codes[1:-1] = np.frombuffer(encoded, dtype=np.int8)
        return codes

    def prepared_priors(self) -> Optional[np.ndarray]:
        if self.priors is None:
            return None
        out = np.full(len(self.raw) + 2, np.nan)
        out[1:-1] = self.priors
        return out


def parse_genomic_coordinates(header: str) -> Tuple[str, int]:
    """Split ``name:start-end`` into the name and a 0-based offset."""
    match = _GENOMIC_COORD.match(header)
    if match is None:
        return header, 0
    return match.group("name"), int(match.group("start")) - 1


class SegmentReader:
    """Hands out sequences in segments of bounded length."""

    def __init__(
        self,
        parse_genomic_coord: bool = False,
        hard_mask: bool = False,
        priors: Optional[PositionPriors] = None,
    ):
        self.parse_genomic_coord = parse_genomic_coord
        self.hard_mask = hard_mask
        self.priors = priors
        self._seq_start = 0
        self.logger = logging.getLogger(__name__)

    def _start_sequence(self) -> Optional[str]:
        raise NotImplementedError

    def _read_chars(self, n: int) -> Tuple[str, bool]:
        raise NotImplementedError

    def _make_segment(self, name: str, offset: int, raw: str, complete: bool) -> SequenceSegment:
        priors = None
        if self.priors is not None:
            priors = self.priors.values(name, offset, len(raw), seq_start=self._seq_start)
        return SequenceSegment(
            name=name, raw=raw, offset=offset, is_complete=complete, priors=priors, hard_mask=self.hard_mask
        )

    def next_sequence(self, max_chars: int) -> Optional[SequenceSegment]:
        """Start the next sequence and return its first segment, or None at the end."""
        header = self._start_sequence()
        if header is None:
            return None
        name, offset = parse_genomic_coordinates(header) if self.parse_genomic_coord else (header, 0)
        self._seq_start = offset
        if self.priors is not None and name not in self.priors:
            self.logger.warning(f"No position specific priors for sequence {name}; using the median prior.")
        raw, complete = self._read_chars(max_chars)
        return self._make_segment(name, offset, raw, complete)

    def extend(self, segment: SequenceSegment, max_chars: int, overlap: int) -> SequenceSegment:
        """Slide the window: keep the last ``overlap`` symbols and read up to ``max_chars``."""
        removed = max(0, len(segment.raw) - overlap)
        kept = segment.raw[removed:]
        more, complete = self._read_chars(max_chars - len(kept))
        return self._make_segment(segment.name, segment.offset + removed, kept + more, complete)

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class FastaSegmentReader(SegmentReader):
    """Stream a FASTA file without holding whole sequences in memory."""

    def __init__(self, path: Union[str, Path], **kwargs):
        super().__init__(**kwargs)
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Sequence file not found: {path}")
        self.path = str(path)
        self._handle: Optional[TextIO] = open(path, "r")
        self._pending = ""
        self._next_header: Optional[str] = None
        self._in_sequence = False
        self._load_line()

    def _load_line(self) -> bool:
        """Buffer the next sequence line; False at a header or end of file."""
        if self._next_header is not None or self._handle is None:
            return False
        while True:
            line = self._handle.readline()
            if not line:
                return False
            line = line.strip()
            if not line:
                continue
            if line.startswith(">"):
                self._next_header = line[1:].strip().split()[0] if line[1:].strip() else ""
                return False
            if self._in_sequence:
                self._pending = "".join(line.split())
                return True

    def _start_sequence(self) -> Optional[str]:
        while self._pending or self._load_line():
            self._pending = ""
        if self._next_header is None:
            return None
        header = self._next_header
        self._next_header = None
        self._in_sequence = True
        return header

    def _read_chars(self, n: int) -> Tuple[str, bool]:
        parts = []
        need = n
        while need > 0:
            if not self._pending and not self._load_line():
                break
            take = self._pending[:need]
            self._pending = self._pending[need:]
            parts.append(take)
            need -= len(take)
        complete = not self._pending and not self._load_line()
        return "".join(parts), complete

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None


class ArraySegmentReader(SegmentReader):
    """Serve in-memory sequences through the segment protocol."""

    def __init__(self, sequences: Iterable[Tuple[str, str]], **kwargs):
        super().__init__(**kwargs)
        self._sequences = list(sequences)
        self._index = -1
        self._pos = 0

    def _start_sequence(self) -> Optional[str]:
        self._index += 1
        self._pos = 0
        if self._index >= len(self._sequences):
            return None
        return self._sequences[self._index][0]

    def _read_chars(self, n: int) -> Tuple[str, bool]:
        seq = self._sequences[self._index][1]
        chunk = seq[self._pos : self._pos + n]
        self._pos += len(chunk)
        return chunk, self._pos >= len(seq)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

TSV_COLUMNS = [
    "pattern_name",
    "sequence_name",
    "start",
    "stop",
    "score",
    "p-value",
    "E-value",
    "q-value",
    "cluster_sequence",
]


def matches_to_dataframe(matches) -> pd.DataFrame:
    """Tabulate matches with 1-based inclusive coordinates."""
    rows = []
    for i, match in enumerate(matches, start=1):
        rows.append(
            {
                "pattern_name": f"cluster-{i}",
                "sequence_name": match.seq_name,
                "start": match.start + 1,
                "stop": match.stop + 1,
                "score": match.score,
                "p-value": match.pvalue,
                "E-value": match.evalue,
                "q-value": match.qvalue,
                "cluster_sequence": match.sequence,
            }
        )
    return pd.DataFrame(rows, columns=TSV_COLUMNS)


def write_tsv(matches, dest: Union[str, Path, TextIO, None] = None) -> None:
    """Write matches as a tab-separated table; ``None`` writes to standard output."""
    df = matches_to_dataframe(matches)
    target = sys.stdout if dest is None else dest
    df.to_csv(target, sep="\t", index=False, float_format="%.3g")


def write_gff(matches, path: Union[str, Path]) -> None:
    """Write matches and their motif hits as GFF3."""
    with open(path, "w") as out:
        out.write("##gff-version 3\n")
        for i, match in enumerate(matches, start=1):
            cluster_id = f"cluster-{i}"
            out.write(
                f"{match.seq_name}\tmcast\tmotif_cluster\t{match.start + 1}\t{match.stop + 1}\t{match.score:.3g}\t.\t.\t"
                f"ID={cluster_id};pvalue={match.pvalue:.3g};qvalue={match.qvalue:.3g};sequence={match.sequence}\n"
            )
            for hit in match.hits:
                out.write(
                    f"{match.seq_name}\tmcast\tmotif\t{hit.start + 1}\t{hit.stop + 1}\t.\t{hit.strand}\t.\t"
                    f"Parent={cluster_id};Name={hit.motif_id};pvalue={hit.pvalue:.3g};sequence={hit.sequence}\n"
                )


def write_xml(result, path: Union[str, Path]) -> None:
    """Write scan settings, motifs, significance model and clusters as XML."""
    from mcast import __version__

    root = ET.Element("mcast", version=__version__)

    settings = ET.SubElement(root, "settings")
    for key, value in result.settings.items():
        ET.SubElement(settings, "setting", name=key).text = str(value)

    motifs_el = ET.SubElement(root, "motifs")
    for index, motif in enumerate(result.motifs, start=1):
        ET.SubElement(motifs_el, "motif", id=motif.id, alt=motif.alt_id, width=str(motif.width), index=str(index))

    bg_el = ET.SubElement(root, "background")
    for letter, value in zip(DNA_LETTERS, result.background, strict=False):
        ET.SubElement(bg_el, "value", letter=letter).text = f"{value:.6g}"

    evd = result.evd
    sig = ET.SubElement(
        root,
        "significance",
        dp_thresh=f"{result.dp_thresh:.6g}",
        gap_open=f"{result.gap_open:.6g}",
        gap_extend=f"{result.gap_extend:.6g}",
        num_scores_seen=str(result.num_scores_seen),
        num_sequences=str(result.num_seqs),
        total_length=str(result.total_length),
        outliers=str(evd.outliers),
        min_e=f"{evd.min_e:.6g}",
        sum_log_e=f"{evd.sum_log_e:.6g}",
    )
    for gc, mu, count in zip(evd.mean_gc, evd.mu, evd.counts, strict=False):
        ET.SubElement(sig, "evd_bin", mean_gc=f"{gc:.6g}", mu=f"{mu:.6g}", count=str(int(count)))

    clusters = ET.SubElement(root, "clusters")
    for i, match in enumerate(result.matches, start=1):
        cluster = ET.SubElement(
            clusters,
            "cluster",
            id=f"cluster-{i}",
            sequence_name=match.seq_name,
            start=str(match.start + 1),
            stop=str(match.stop + 1),
            score=f"{match.score:.6g}",
            pvalue=f"{match.pvalue:.6g}",
            evalue=f"{match.evalue:.6g}",
            qvalue=f"{match.qvalue:.6g}",
        )
        ET.SubElement(cluster, "left_flank").text = match.lflank
        ET.SubElement(cluster, "sequence").text = match.sequence
        ET.SubElement(cluster, "right_flank").text = match.rflank
        for hit in match.hits:
            ET.SubElement(
                cluster,
                "hit",
                motif=hit.motif_id,
                index=str(hit.motif_index),
                strand=hit.strand,
                start=str(hit.start + 1),
                stop=str(hit.stop + 1),
                pvalue=f"{hit.pvalue:.6g}",
            ).text = hit.sequence

    tree = ET.ElementTree(root)
    ET.indent(tree)
    tree.write(path, encoding="utf-8", xml_declaration=True)
    logger = logging.getLogger(__name__)
    logger.debug(f"Wrote XML results to {path}")
