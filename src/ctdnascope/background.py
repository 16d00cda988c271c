"""Background error-rate estimation and multi-sample background panels.

Background depth is counted per position per read (both mates of a pair count),
unlike mutation evidence which is counted per read pair.
"""

from __future__ import annotations

import logging
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import numpy as np
from tqdm import tqdm

from .errors import BlacklistModeMismatch, InsufficientCoverage, InvalidThreshold
from .inputs import merge_regions
from .models import NUCLEOTIDES, Blacklist, Mutation, ReadFilters, TargetRegion
from .reads import iter_aligned_bases, passes_read_filters
from .sources import AlignmentSource, BamAlignmentSource, FastaReference, ReferenceLookup
from .utils import format_float, open_textmaybe_gzip

logger = logging.getLogger(__name__)

_BASE_INDEX = {b: i for i, b in enumerate(NUCLEOTIDES)}

LocusKey = Tuple  # (chrom, pos) or (chrom, pos, ref, alt)


def count_base_calls(
    source: AlignmentSource,
    region: TargetRegion,
    *,
    filters: ReadFilters = ReadFilters(),
) -> np.ndarray:
    """Per-position A/C/G/T counts over a region, shape (region.length, 4).

    Only bases with quality >= filters.min_base_quality from reads passing the read filters count.
    """
    counts = np.zeros((region.length, 4), dtype=np.int64)
    start0, end0 = region.start - 1, region.end
    for read in source.records_overlapping(region.chrom, region.start, region.end):
        if not passes_read_filters(read, filters):
            continue
        for p0, base, bq in iter_aligned_bases(read, start0, end0, trim_ends=filters.trim_ends):
            if bq < filters.min_base_quality:
                continue
            idx = _BASE_INDEX.get(base)
            if idx is not None:
                counts[p0 - start0, idx] += 1
    return counts


@dataclass(frozen=True)
class BackgroundRate:
    """Aggregate background error statistics over the target regions."""

    total_depth: int
    total_alt: int
    depth_by_ref: Dict[str, int] = field(default_factory=dict)
    alt_by_substitution: Dict[str, int] = field(default_factory=dict)  # keys like "C>T"
    n_positions: int = 0
    n_excluded_positions: int = 0

    @property
    def rate(self) -> float:
        if self.total_depth <= 0:
            return 0.0
        return self.total_alt / self.total_depth

    def rate_for(self, ref: str, alt: str) -> float:
        """Substitution-specific rate; falls back to the overall rate when ref bases were not seen."""
        depth = self.depth_by_ref.get(ref, 0)
        if depth <= 0:
            return self.rate
        return self.alt_by_substitution.get(f"{ref}>{alt}", 0) / depth

    def to_dict(self) -> Dict[str, object]:
        return {
            "total_depth": int(self.total_depth),
            "total_alt": int(self.total_alt),
            "rate": float(self.rate),
            "depth_by_ref": dict(self.depth_by_ref),
            "alt_by_substitution": dict(self.alt_by_substitution),
            "n_positions": int(self.n_positions),
            "n_excluded_positions": int(self.n_excluded_positions),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, object]) -> "BackgroundRate":
        return cls(
            total_depth=int(d["total_depth"]),  # type: ignore[arg-type]
            total_alt=int(d["total_alt"]),  # type: ignore[arg-type]
            depth_by_ref={str(k): int(v) for k, v in dict(d.get("depth_by_ref") or {}).items()},
            alt_by_substitution={str(k): int(v) for k, v in dict(d.get("alt_by_substitution") or {}).items()},
            n_positions=int(d.get("n_positions", 0)),  # type: ignore[arg-type]
            n_excluded_positions=int(d.get("n_excluded_positions", 0)),  # type: ignore[arg-type]
        )


def estimate_background_rate(
    targets: Sequence[TargetRegion],
    source: AlignmentSource,
    reference: ReferenceLookup,
    *,
    mutations: Iterable[Mutation] = (),
    blacklist: Optional[Blacklist] = None,
    substitution_specific: bool = False,
    filters: ReadFilters = ReadFilters(),
    vaf_threshold: Optional[float] = 0.1,
) -> BackgroundRate:
    """Compute the per-base non-reference rate over targets.

    Mutation positions are always excluded. A loci blacklist removes whole positions; a variant
    blacklist (substitution_specific) removes only observations of the listed alt base. Positions
    whose non-reference fraction exceeds ``vaf_threshold`` are treated as germline and excluded.

    Raises
    ------
    BlacklistModeMismatch
        If the blacklist granularity does not match ``substitution_specific``.
    InsufficientCoverage
        If no usable depth remains.
    """
    if blacklist is not None and blacklist.substitution_specific != substitution_specific:
        raise BlacklistModeMismatch(
            f"Blacklist is {'variant' if blacklist.substitution_specific else 'loci'}-level but "
            f"substitution_specific={substitution_specific}"
        )
    if vaf_threshold is not None and not (0.0 < vaf_threshold <= 1.0):
        raise InvalidThreshold(f"vaf_threshold must be in (0, 1], got {vaf_threshold}")

    excluded: Set[Tuple[str, int]] = {(m.chrom, m.position) for m in mutations}
    blacklisted_alts: Dict[Tuple[str, int], Set[str]] = {}
    if blacklist is not None:
        if blacklist.substitution_specific:
            for chrom, pos, _ref, alt in blacklist.entries:
                blacklisted_alts.setdefault((chrom, pos), set()).add(alt)
        else:
            excluded.update(blacklist.entries)

    total_depth = 0
    total_alt = 0
    depth_by_ref = {b: 0 for b in NUCLEOTIDES}
    alt_by_sub = {f"{r}>{a}": 0 for r in NUCLEOTIDES for a in NUCLEOTIDES if r != a}
    n_positions = 0
    n_excluded = 0

    merged = merge_regions(targets)
    for region in merged:
        seq = reference.sequence(region.chrom, region.start, region.end)
        counts = count_base_calls(source, region, filters=filters)
        for i, ref in enumerate(seq):
            ref_idx = _BASE_INDEX.get(ref)
            if ref_idx is None:
                continue
            pos = region.start + i
            if (region.chrom, pos) in excluded:
                n_excluded += 1
                continue
            depth = int(counts[i].sum())
            if depth == 0:
                continue
            # germline filter sees every non-ref call, before blacklisting
            raw_alt = depth - int(counts[i, ref_idx])
            if vaf_threshold is not None and raw_alt / depth > vaf_threshold:
                n_excluded += 1
                continue
            row = counts[i].copy()
            for alt in blacklisted_alts.get((region.chrom, pos), ()):
                row[_BASE_INDEX[alt]] = 0
            alt_total = int(row.sum() - row[ref_idx])

            n_positions += 1
            total_depth += depth
            total_alt += alt_total
            depth_by_ref[ref] += depth
            for alt, j in _BASE_INDEX.items():
                if j != ref_idx:
                    alt_by_sub[f"{ref}>{alt}"] += int(row[j])

    if total_depth == 0:
        raise InsufficientCoverage(
            "No usable background depth in targets "
            + ", ".join(r.label for r in merged[:5])
            + (" ..." if len(merged) > 5 else "")
        )

    bg = BackgroundRate(
        total_depth=total_depth,
        total_alt=total_alt,
        depth_by_ref=depth_by_ref,
        alt_by_substitution=alt_by_sub,
        n_positions=n_positions,
        n_excluded_positions=n_excluded,
    )
    logger.info(
        "Background: depth=%d alt=%d rate=%.3g (%d positions, %d excluded)",
        total_depth,
        total_alt,
        bg.rate,
        n_positions,
        n_excluded,
    )
    return bg


# -----------------
# Background panel
# -----------------


@dataclass(frozen=True, eq=False)
class BackgroundPanel:
    """Per-locus (or per locus+alt) depth and alt counts across normal samples.

    ``depth`` and ``alt`` are integer arrays of shape (len(keys), len(samples)); a depth of zero
    means the row is absent for that sample and its VAF is NaN.
    """

    substitution_specific: bool
    samples: List[str]
    keys: List[LocusKey]
    depth: np.ndarray
    alt: np.ndarray

    @property
    def vaf(self) -> np.ndarray:
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.where(self.depth > 0, self.alt / np.maximum(self.depth, 1), np.nan)

    def __len__(self) -> int:
        return len(self.keys)


def sample_locus_counts(
    source: AlignmentSource,
    targets: Sequence[TargetRegion],
    reference: ReferenceLookup,
    *,
    substitution_specific: bool = False,
    filters: ReadFilters = ReadFilters(),
) -> Dict[LocusKey, Tuple[int, int]]:
    """Map step: {key: (depth, alt)} for one sample; loci with zero depth are omitted."""
    out: Dict[LocusKey, Tuple[int, int]] = {}
    for region in merge_regions(targets):
        seq = reference.sequence(region.chrom, region.start, region.end)
        counts = count_base_calls(source, region, filters=filters)
        for i, ref in enumerate(seq):
            ref_idx = _BASE_INDEX.get(ref)
            if ref_idx is None:
                continue
            depth = int(counts[i].sum())
            if depth == 0:
                continue
            pos = region.start + i
            if substitution_specific:
                for alt, j in _BASE_INDEX.items():
                    if j != ref_idx:
                        out[(region.chrom, pos, ref, alt)] = (depth, int(counts[i, j]))
            else:
                out[(region.chrom, pos)] = (depth, depth - int(counts[i, ref_idx]))
    return out


def merge_sample_counts(
    counts_by_sample: Mapping[str, Mapping[LocusKey, Tuple[int, int]]],
    *,
    substitution_specific: bool = False,
) -> BackgroundPanel:
    """Merge step: join per-sample counts by key; independent of input ordering."""
    samples = sorted(counts_by_sample)
    all_keys: Set[LocusKey] = set()
    for s in samples:
        all_keys.update(counts_by_sample[s].keys())
    keys = sorted(all_keys)
    row_of = {k: i for i, k in enumerate(keys)}

    depth = np.zeros((len(keys), len(samples)), dtype=np.int64)
    alt = np.zeros((len(keys), len(samples)), dtype=np.int64)
    for j, s in enumerate(samples):
        for k, (d, a) in counts_by_sample[s].items():
            i = row_of[k]
            depth[i, j] = d
            alt[i, j] = a

    return BackgroundPanel(
        substitution_specific=substitution_specific,
        samples=samples,
        keys=keys,
        depth=depth,
        alt=alt,
    )


def _bam_sample_counts(
    bam_path: str,
    targets: Sequence[TargetRegion],
    reference_fasta: str,
    substitution_specific: bool,
    filters: ReadFilters,
) -> Dict[LocusKey, Tuple[int, int]]:
    with BamAlignmentSource(bam_path) as source:
        reference = FastaReference(reference_fasta)
        try:
            return sample_locus_counts(
                source, targets, reference, substitution_specific=substitution_specific, filters=filters
            )
        finally:
            reference.close()


def build_background_panel(
    bam_paths: Mapping[str, str | Path],
    targets: Sequence[TargetRegion],
    reference_fasta: str | Path,
    *,
    substitution_specific: bool = False,
    filters: ReadFilters = ReadFilters(),
    n_workers: int = 1,
    progress: bool = True,
) -> BackgroundPanel:
    """Build a panel from {sample_name: bam_path}, one worker process per sample when n_workers > 1."""
    names = sorted(bam_paths)
    counts: Dict[str, Dict[LocusKey, Tuple[int, int]]] = {}
    args = [
        (str(bam_paths[n]), list(targets), str(reference_fasta), substitution_specific, filters)
        for n in names
    ]

    if n_workers > 1 and len(names) > 1:
        with ProcessPoolExecutor(max_workers=n_workers) as ex:
            futures = {n: ex.submit(_bam_sample_counts, *a) for n, a in zip(names, args)}
            it: Iterable[str] = futures
            if progress:
                it = tqdm(it, unit="sample", desc="Background panel")
            for n in it:
                counts[n] = futures[n].result()
    else:
        it2: Iterable[Tuple[str, tuple]] = zip(names, args)
        if progress:
            it2 = tqdm(list(it2), unit="sample", desc="Background panel")
        for n, a in it2:
            counts[n] = _bam_sample_counts(*a)

    panel = merge_sample_counts(counts, substitution_specific=substitution_specific)
    logger.info("Background panel: %d rows x %d samples", len(panel.keys), len(panel.samples))
    return panel


def write_panel_tsv(panel: BackgroundPanel, path: str | Path) -> None:
    """Long-format TSV: chrom pos [ref alt] sample depth alt vaf; zero-depth cells are omitted."""
    key_cols = ["chrom", "pos", "ref", "alt"] if panel.substitution_specific else ["chrom", "pos"]
    vaf = panel.vaf
    with open_textmaybe_gzip(path, "wt") as fh:
        fh.write("\t".join(key_cols + ["sample", "depth", "alt_count", "vaf"]) + "\n")
        for i, key in enumerate(panel.keys):
            for j, sample in enumerate(panel.samples):
                d = int(panel.depth[i, j])
                if d == 0:
                    continue
                fh.write(
                    "\t".join([str(k) for k in key] + [sample, str(d), str(int(panel.alt[i, j])), format_float(vaf[i, j])])
                    + "\n"
                )


def read_panel_tsv(path: str | Path) -> BackgroundPanel:
    counts: Dict[str, Dict[LocusKey, Tuple[int, int]]] = {}
    with open_textmaybe_gzip(path, "rt") as fh:
        header = fh.readline().rstrip("\n").split("\t")
        substitution_specific = "ref" in header
        for line in fh:
            f = line.rstrip("\n").split("\t")
            if not f or f == [""]:
                continue
            if substitution_specific:
                key: LocusKey = (f[0], int(f[1]), f[2], f[3])
                sample, d, a = f[4], int(f[5]), int(f[6])
            else:
                key = (f[0], int(f[1]))
                sample, d, a = f[2], int(f[3]), int(f[4])
            counts.setdefault(sample, {})[key] = (d, a)
    return merge_sample_counts(counts, substitution_specific=substitution_specific)

