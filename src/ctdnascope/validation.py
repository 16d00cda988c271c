from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Sequence, Tuple

logger = logging.getLogger(__name__)

STYLE_UCSC = "ucsc"
STYLE_ENSEMBL = "ensembl"
STYLE_UNKNOWN = "unknown"

_UCSC_PREFIX = "chr"

# mitochondrial names differ in more than the prefix
_MITO = {STYLE_UCSC: "chrM", STYLE_ENSEMBL: "MT"}
_MITO_ALIASES = {"chrM", "chrMT", "MT", "M"}

_ALIGNMENT_INDEXES: Dict[str, Tuple[str, ...]] = {
    ".bam": (".bai", ".csi"),
    ".cram": (".crai",),
}


def _index_candidates(path: Path, suffixes: Sequence[str]) -> List[Path]:
    # samtools writes sample.bam.bai; some tools write sample.bai
    out: List[Path] = []
    for s in suffixes:
        out.append(path.with_name(path.name + s))
        out.append(path.with_suffix(s))
    return out


def check_bam_index(bam_path: str | Path) -> None:
    """Ensure a BAM/CRAM exists and is indexed.

    Raises FileNotFoundError for a missing file and ValueError (with the samtools command to run)
    for a missing index.
    """
    bam = Path(bam_path)
    if not bam.exists():
        raise FileNotFoundError(f"Alignment file not found: {bam}")
    suffixes = _ALIGNMENT_INDEXES.get(bam.suffix.lower(), _ALIGNMENT_INDEXES[".bam"])
    if any(p.exists() for p in _index_candidates(bam, suffixes)):
        return
    raise ValueError(f"{bam} is not indexed. Run: samtools index {bam}")


def check_fasta_index(fasta_path: str | Path) -> None:
    """Ensure a FASTA has a .fai (and .gzi when bgzipped); raise ValueError with fix instructions."""
    fa = Path(fasta_path)
    if not fa.exists():
        raise FileNotFoundError(f"Reference FASTA not found: {fa}")
    needed = [fa.with_name(fa.name + ".fai")]
    if fa.suffix == ".gz":
        needed.append(fa.with_name(fa.name + ".gzi"))
    missing = [p for p in needed if not p.exists()]
    if missing:
        raise ValueError(
            f"{fa} is not indexed (missing {', '.join(p.name for p in missing)}). Run: samtools faidx {fa}"
        )


def detect_contig_style(contigs: Iterable[str]) -> str:
    """'ucsc' when at least half of the contigs carry the chr prefix, else 'ensembl'."""
    names = [c for c in contigs if c]
    if not names:
        return STYLE_UNKNOWN
    prefixed = sum(1 for c in names if c.startswith(_UCSC_PREFIX))
    if prefixed >= max(1, len(names) // 2):
        return STYLE_UCSC
    return STYLE_ENSEMBL


def remap_contig(contig: str, style: str) -> str:
    """Rename a contig to the requested naming style; unknown styles leave it unchanged."""
    if style not in _MITO:
        return contig
    if contig in _MITO_ALIASES:
        return _MITO[style]
    has_prefix = contig.startswith(_UCSC_PREFIX)
    if style == STYLE_UCSC:
        return contig if has_prefix else _UCSC_PREFIX + contig
    return contig[len(_UCSC_PREFIX) :] if has_prefix else contig


def missing_contigs(names: Iterable[str], available: Iterable[str]) -> List[str]:
    """Sorted distinct names that are not among the available contigs."""
    have = set(available)
    return sorted({n for n in names if n not in have})
