"""Windowed Protection Score (WPS) over target regions.

For a window [ws, we]:

- n_reads: fragments overlapping the window
- spanning: fragments with start <= ws and end >= we
- n_fragment_ends_adjusted: fragment endpoints (start or end) with ws < e < we
- wps_adjusted: spanning - n_fragment_ends_adjusted
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator, List, Sequence, Union

import numpy as np

from .errors import InvalidThreshold
from .fragments import extract_fragments
from .models import ReadFilters, TargetRegion, WPSWindow
from .sources import AlignmentSource
from .utils import open_textmaybe_gzip

logger = logging.getLogger(__name__)

WPS_COLUMNS = ["chrom", "start", "end", "n_reads", "n_fragment_ends_adjusted", "wps_adjusted"]


def iter_windows(region: TargetRegion, window_size: int, step_size: int) -> Iterator[TargetRegion]:
    """Windows of ``window_size`` bases that fit entirely inside the region."""
    s = region.start
    while s + window_size - 1 <= region.end:
        yield TargetRegion(region.chrom, s, s + window_size - 1)
        s += step_size


def wps_for_fragments(
    region: TargetRegion,
    starts: Sequence[int],
    ends: Sequence[int],
    *,
    window_size: int = 120,
    step_size: int = 1,
) -> List[WPSWindow]:
    """WPS windows of one region from fragment outer coordinates (1-based, closed)."""
    s = np.asarray(starts, dtype=np.int64)
    e = np.asarray(ends, dtype=np.int64)
    order = np.argsort(s, kind="stable")
    s_by_start = s[order]
    e_by_start = e[order]
    e_sorted = np.sort(e)

    out: List[WPSWindow] = []
    for w in iter_windows(region, window_size, step_size):
        ws, we = w.start, w.end
        started = int(np.searchsorted(s_by_start, ws, side="right"))
        n_reads = int(np.searchsorted(s_by_start, we, side="right")) - int(
            np.searchsorted(e_sorted, ws, side="left")
        )
        spanning = int(np.count_nonzero(e_by_start[:started] >= we))
        starts_inside = int(np.searchsorted(s_by_start, we, side="left")) - started
        ends_inside = int(np.searchsorted(e_sorted, we, side="left")) - int(
            np.searchsorted(e_sorted, ws, side="right")
        )
        n_ends = starts_inside + ends_inside
        out.append(
            WPSWindow(
                chrom=region.chrom,
                start=ws,
                end=we,
                n_reads=n_reads,
                n_fragment_ends_adjusted=n_ends,
                wps_adjusted=spanning - n_ends,
            )
        )
    return out


def compute_wps(
    source: AlignmentSource,
    regions: Union[TargetRegion, Sequence[TargetRegion]],
    *,
    window_size: int = 120,
    step_size: int = 1,
    min_size: int = 120,
    max_size: int = 180,
    filters: ReadFilters = ReadFilters(),
    different_strands: bool = True,
) -> List[WPSWindow]:
    """Slide a window across each region and score fragment protection.

    Only fragments with size in [min_size, max_size] count. Windows are returned region by region
    in genomic order; overlapping windows (step_size < window_size) are independent. A region
    shorter than the window yields no windows.
    """
    if int(window_size) < 1:
        raise InvalidThreshold(f"window_size must be >= 1, got {window_size}")
    if int(step_size) < 1:
        raise InvalidThreshold(f"step_size must be >= 1, got {step_size}")
    if isinstance(regions, TargetRegion):
        regions = [regions]

    out: List[WPSWindow] = []
    for region in regions:
        if region.length < window_size:
            logger.warning(
                "Region %s (%d bp) is shorter than the window (%d bp); no windows emitted",
                region.label,
                region.length,
                window_size,
            )
            continue
        frags = extract_fragments(
            source,
            regions=[region],
            filters=filters,
            min_size=min_size,
            max_size=max_size,
            different_strands=different_strands,
        )
        windows = wps_for_fragments(
            region,
            [f.start for f in frags],
            [f.end for f in frags],
            window_size=window_size,
            step_size=step_size,
        )
        logger.debug("Region %s: %d fragments, %d windows", region.label, len(frags), len(windows))
        out.extend(windows)
    return out


def write_wps_tsv(windows: Sequence[WPSWindow], path: str | Path) -> None:
    with open_textmaybe_gzip(path, "wt") as fh:
        fh.write("\t".join(WPS_COLUMNS) + "\n")
        for w in windows:
            fh.write(
                f"{w.chrom}\t{w.start}\t{w.end}\t{w.n_reads}\t{w.n_fragment_ends_adjusted}\t{w.wps_adjusted}\n"
            )
