"""Fragment sizes of read pairs: extraction, histogram binning and per-region summaries."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import numpy as np
import pysam
from tqdm import tqdm

from .errors import InvalidInput, InvalidThreshold
from .evidence import collect_read_evidence
from .models import FragmentBin, FragmentRecord, Mutation, ReadFilters, RegionSummary, TargetRegion
from .reads import passes_read_filters
from .sources import AlignmentSource
from .utils import format_float, open_textmaybe_gzip

logger = logging.getLogger(__name__)

SummaryFunction = Callable[[np.ndarray], float]

SUMMARY_FUNCTIONS: Dict[str, SummaryFunction] = {
    "mean": lambda a: float(np.mean(a)),
    "median": lambda a: float(np.median(a)),
    "sd": lambda a: float(np.std(a, ddof=1)) if a.size > 1 else float("nan"),
}


def _check_size_window(min_size: int, max_size: int) -> None:
    if min_size < 1 or max_size < min_size:
        raise InvalidThreshold(f"Invalid fragment size window [{min_size}, {max_size}]")


def fragment_from_read(
    read: pysam.AlignedSegment,
    *,
    filters: ReadFilters,
    min_size: int,
    max_size: int,
    different_strands: bool = True,
) -> Optional[FragmentRecord]:
    """Build the fragment of a pair from its first read; None when the pair does not qualify."""
    if not read.is_paired or not read.is_read1 or read.mate_is_unmapped:
        return None
    if not passes_read_filters(read, filters):
        return None
    if read.next_reference_id != read.reference_id:
        return None
    if read.has_tag("MQ") and int(read.get_tag("MQ")) < filters.min_mapq:
        return None
    if different_strands and read.is_reverse == read.mate_is_reverse:
        return None

    size = abs(int(read.template_length))
    if size == 0 or size < min_size or size > max_size:
        return None

    start0 = min(int(read.reference_start), int(read.next_reference_start))
    if read.is_reverse == read.mate_is_reverse:
        pairing = "--" if read.is_reverse else "++"
    else:
        pairing = "-+" if read.is_reverse else "+-"
    return FragmentRecord(
        pair_id=str(read.query_name),
        chrom=str(read.reference_name),
        start=start0 + 1,
        end=start0 + size,
        size=size,
        strand_pairing=pairing,
    )


def extract_fragments(
    source: AlignmentSource,
    *,
    regions: Optional[Sequence[TargetRegion]] = None,
    mutations: Optional[Sequence[Mutation]] = None,
    filters: ReadFilters = ReadFilters(),
    min_size: int = 1,
    max_size: int = 1000,
    different_strands: bool = True,
    progress: bool = False,
) -> List[FragmentRecord]:
    """One record per qualifying read pair, in source order per region.

    Without regions every reference of the source is scanned. With regions, a pair is kept when its
    fragment overlaps a region (reads are fetched with a ``max_size`` pad so that pairs whose first
    read lies outside the region are found), and is emitted once even when regions overlap.
    With mutations, ``supports_mutation`` marks pairs carrying any mutation's alt allele.
    """
    _check_size_window(min_size, max_size)

    alt_ids: Optional[Set[str]] = None
    if mutations:
        alt_ids = set()
        for ev in collect_read_evidence(list(mutations), source, filters=filters):
            alt_ids.update(ev.alt_read_ids)

    if regions is None:
        scan = [TargetRegion(chrom, 1, max(1, int(length))) for chrom, length in source.references()]
        padded = False
    else:
        scan = list(regions)
        padded = True

    it: Iterable[TargetRegion] = scan
    if progress:
        it = tqdm(it, unit="region", desc="Extracting fragments")

    out: List[FragmentRecord] = []
    seen: Set[Tuple[str, str]] = set()
    for region in it:
        lo = max(1, region.start - max_size) if padded else region.start
        hi = region.end + max_size if padded else region.end
        for read in source.records_overlapping(region.chrom, lo, hi):
            frag = fragment_from_read(
                read,
                filters=filters,
                min_size=min_size,
                max_size=max_size,
                different_strands=different_strands,
            )
            if frag is None:
                continue
            if frag.end < region.start or frag.start > region.end:
                continue
            key = (frag.chrom, frag.pair_id)
            if key in seen:
                continue
            seen.add(key)
            if alt_ids is not None:
                frag = FragmentRecord(
                    pair_id=frag.pair_id,
                    chrom=frag.chrom,
                    start=frag.start,
                    end=frag.end,
                    size=frag.size,
                    strand_pairing=frag.strand_pairing,
                    supports_mutation=frag.pair_id in alt_ids,
                )
            out.append(frag)

    logger.info("Extracted %d fragments", len(out))
    return out


# -----------------
# Histogram
# -----------------


@dataclass(frozen=True)
class FragmentHistogram:
    bins: List[FragmentBin] = field(default_factory=list)
    normalized: bool = False
    total: int = 0

    @property
    def values(self) -> List[float]:
        return [b.value for b in self.bins]


def _bin_edges(min_size: int, max_size: int, bin_size: Optional[int], breaks: Optional[Sequence[int]]) -> np.ndarray:
    """Left edges of closed integer bins plus one past the last upper bound."""
    if breaks is not None:
        b = sorted(set(int(x) for x in breaks))
        if len(b) < 2:
            raise InvalidThreshold("Custom breaks need at least two values")
        if b[0] > min_size or b[-1] < max_size:
            raise InvalidThreshold(
                f"Custom breaks [{b[0]}, {b[-1]}] must cover the size range [{min_size}, {max_size}]"
            )
        return np.asarray(b[:-1] + [b[-1] + 1], dtype=np.int64)

    if bin_size is None or int(bin_size) < 1:
        raise InvalidThreshold(f"bin_size must be >= 1, got {bin_size}")
    edges = list(range(min_size, max_size + 1, int(bin_size)))
    edges.append(max_size + 1)
    return np.asarray(edges, dtype=np.int64)


def bin_fragment_sizes(
    sizes: Iterable[int],
    *,
    bin_size: Optional[int] = 2,
    breaks: Optional[Sequence[int]] = None,
    min_size: int = 1,
    max_size: int = 1000,
    normalized: bool = False,
) -> FragmentHistogram:
    """Histogram of fragment sizes over [min_size, max_size].

    Bins are closed integer ranges: fixed width ``bin_size`` (last bin may be narrower), or the
    user ``breaks`` where each bin is [b_i, b_{i+1} - 1] and the last one includes its upper break.
    Sizes outside [min_size, max_size] are dropped. With ``normalized`` each bin holds its fraction
    of the retained fragments.
    """
    _check_size_window(min_size, max_size)
    edges = _bin_edges(min_size, max_size, bin_size, breaks)

    arr = np.asarray(list(sizes), dtype=np.int64)
    arr = arr[(arr >= min_size) & (arr <= max_size)]
    idx = np.searchsorted(edges, arr, side="right") - 1
    idx = idx[(idx >= 0) & (idx < len(edges) - 1)]
    counts = np.bincount(idx, minlength=len(edges) - 1)
    total = int(counts.sum())

    if normalized:
        values = counts / total if total > 0 else np.zeros(len(counts), dtype=float)
    else:
        values = counts.astype(float)

    bins = [
        FragmentBin(lower=int(edges[i]), upper=int(edges[i + 1]) - 1, value=float(values[i]))
        for i in range(len(edges) - 1)
    ]
    return FragmentHistogram(bins=bins, normalized=normalized, total=total)


def merge_histograms(histograms: Mapping[str, FragmentHistogram]) -> List[Tuple[int, int, Dict[str, float]]]:
    """Join per-sample histograms by bin: rows of (lower, upper, {sample: value}), sorted by bin."""
    rows: Dict[Tuple[int, int], Dict[str, float]] = {}
    for sample in sorted(histograms):
        for b in histograms[sample].bins:
            rows.setdefault((b.lower, b.upper), {})[sample] = b.value
    out = []
    for lower, upper in sorted(rows):
        vals = rows[(lower, upper)]
        out.append((lower, upper, {s: vals.get(s, 0.0) for s in sorted(histograms)}))
    return out


# -----------------
# Region profiles
# -----------------


def resolve_summary_functions(names: Sequence[str]) -> Dict[str, SummaryFunction]:
    out: Dict[str, SummaryFunction] = {}
    for n in names:
        key = n.strip().lower()
        if key not in SUMMARY_FUNCTIONS:
            raise InvalidThreshold(
                f"Unknown summary function '{n}'. Choose from: {', '.join(sorted(SUMMARY_FUNCTIONS))}"
            )
        out[key] = SUMMARY_FUNCTIONS[key]
    return out


def summarize_fragment_sizes(
    source: AlignmentSource,
    regions: Sequence[TargetRegion],
    *,
    summary_functions: Optional[Mapping[str, SummaryFunction]] = None,
    filters: ReadFilters = ReadFilters(),
    min_size: int = 1,
    max_size: int = 1000,
    different_strands: bool = True,
) -> List[RegionSummary]:
    """Summary statistics of the sizes of fragments overlapping each region (one row per region).

    A region without fragments, or a statistic that is undefined (NaN), yields None.
    """
    funcs = dict(summary_functions) if summary_functions is not None else dict(SUMMARY_FUNCTIONS)

    out: List[RegionSummary] = []
    for region in regions:
        frags = extract_fragments(
            source,
            regions=[region],
            filters=filters,
            min_size=min_size,
            max_size=max_size,
            different_strands=different_strands,
        )
        sizes = np.asarray([f.size for f in frags], dtype=np.int64)
        values: Dict[str, Optional[float]] = {}
        for name, fn in funcs.items():
            if sizes.size == 0:
                values[name] = None
                continue
            v = float(fn(sizes))
            values[name] = None if v != v else v
        out.append(RegionSummary(region=region, n_fragments=int(sizes.size), values=values))
    return out


# -----------------
# Tables
# -----------------

FRAGMENT_COLUMNS = ["pair_id", "chrom", "start", "end", "size", "strand_pairing", "supports_mutation"]


def write_fragments_tsv(fragments: Sequence[FragmentRecord], path: str | Path) -> None:
    with open_textmaybe_gzip(path, "wt") as fh:
        fh.write("\t".join(FRAGMENT_COLUMNS) + "\n")
        for f in fragments:
            support = "NA" if f.supports_mutation is None else str(int(f.supports_mutation))
            fh.write(f"{f.pair_id}\t{f.chrom}\t{f.start}\t{f.end}\t{f.size}\t{f.strand_pairing}\t{support}\n")


def read_fragment_sizes(path: str | Path) -> List[int]:
    """Sizes column of a fragments table written by :func:`write_fragments_tsv`."""
    with open_textmaybe_gzip(path, "rt") as fh:
        header = fh.readline().rstrip("\n").split("\t")
        if "size" not in header:
            raise InvalidInput(f"{path}: fragments table has no 'size' column")
        col = header.index("size")
        sizes = []
        for lineno, line in enumerate(fh, start=2):
            f = line.rstrip("\n").split("\t")
            if len(f) <= col:
                continue
            try:
                sizes.append(int(f[col]))
            except ValueError as e:
                raise InvalidInput(f"{path}:{lineno}: invalid size {f[col]!r}") from e
    return sizes


def write_histograms_tsv(histograms: Mapping[str, FragmentHistogram], path: str | Path) -> None:
    """Wide table: lower upper <sample...>, one row per bin."""
    samples = sorted(histograms)
    with open_textmaybe_gzip(path, "wt") as fh:
        fh.write("\t".join(["lower", "upper"] + samples) + "\n")
        for lower, upper, values in merge_histograms(histograms):
            fh.write("\t".join([str(lower), str(upper)] + [format_float(values[s]) for s in samples]) + "\n")


def write_region_summaries_tsv(summaries: Sequence[RegionSummary], path: str | Path) -> None:
    names: List[str] = []
    for s in summaries:
        for n in s.values:
            if n not in names:
                names.append(n)
    with open_textmaybe_gzip(path, "wt") as fh:
        fh.write("\t".join(["chrom", "start", "end", "name", "n_fragments"] + names) + "\n")
        for s in summaries:
            r = s.region
            row = [r.chrom, str(r.start), str(r.end), r.name or ".", str(s.n_fragments)]
            row += [format_float(s.values.get(n)) for n in names]
            fh.write("\t".join(row) + "\n")
