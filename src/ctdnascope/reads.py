from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Optional, Tuple

import pysam

from .models import ReadFilters

logger = logging.getLogger(__name__)

_MATCH_OPS = (0, 7, 8)  # M, =, X


def passes_read_filters(read: pysam.AlignedSegment, filters: ReadFilters) -> bool:
    """Apply the read-level (not base-level) filters."""
    if read.is_unmapped or read.is_secondary or read.is_supplementary or read.is_qcfail:
        return False
    if filters.drop_duplicates and read.is_duplicate:
        return False
    if int(read.mapping_quality) < filters.min_mapq:
        return False
    if filters.require_proper_pair and not (read.is_paired and read.is_proper_pair):
        return False
    if filters.strand == "forward" and read.is_reverse:
        return False
    if filters.strand == "reverse" and not read.is_reverse:
        return False
    if filters.simple_cigar:
        cig = read.cigartuples
        if cig is None or len(cig) != 1 or cig[0][0] not in _MATCH_OPS:
            return False
    return True


def _trim_bounds(read: pysam.AlignedSegment, trim_ends: int) -> Tuple[int, int]:
    """Query index range [lo, hi) that is usable after trimming aligned ends."""
    lo = int(read.query_alignment_start or 0)
    hi = int(read.query_alignment_end or read.query_length or 0)
    if trim_ends > 0:
        lo += trim_ends
        hi -= trim_ends
    return lo, hi


def extract_bases_at_positions(
    read: pysam.AlignedSegment, positions0: List[int], *, trim_ends: int = 0
) -> Dict[int, Tuple[str, int]]:
    """Extract (base, baseq) at a sorted list of reference positions (0-based) for one read.

    This function walks the CIGAR once and extracts bases for candidate positions without iterating
    over all aligned pairs.

    Returns a mapping {pos0: (base, base_quality)} only for positions that are aligned as a base
    in the read (i.e. not deletions / ref skips at that locus) and outside the trimmed ends.
    """
    if read.is_unmapped or read.cigartuples is None or len(positions0) == 0:
        return {}

    seq = read.query_sequence
    if seq is None:
        return {}
    quals = read.query_qualities  # can be None
    q_lo, q_hi = _trim_bounds(read, trim_ends)

    out: Dict[int, Tuple[str, int]] = {}

    pos_idx = 0
    ref_pos = read.reference_start
    query_pos = 0

    # Fast-forward if positions are before the read
    while pos_idx < len(positions0) and positions0[pos_idx] < ref_pos:
        pos_idx += 1

    for op, length in read.cigartuples:
        if pos_idx >= len(positions0):
            break

        if op in _MATCH_OPS:
            ref_end = ref_pos + length
            while pos_idx < len(positions0) and positions0[pos_idx] < ref_end:
                p0 = positions0[pos_idx]
                if p0 >= ref_pos:
                    qpos = query_pos + (p0 - ref_pos)
                    if q_lo <= qpos < q_hi and qpos < len(seq):
                        bq = int(quals[qpos]) if quals is not None else 0
                        out[p0] = (seq[qpos].upper(), bq)
                pos_idx += 1
            ref_pos = ref_end
            query_pos += length
        elif op in (1, 4):  # I, S: consume query only
            query_pos += length
        elif op in (2, 3):  # D, N: consume ref only
            # positions inside a deletion carry no base
            while pos_idx < len(positions0) and positions0[pos_idx] < ref_pos + length:
                pos_idx += 1
            ref_pos += length

    return out


def iter_aligned_bases(
    read: pysam.AlignedSegment, start0: int, end0: int, *, trim_ends: int = 0
) -> Iterator[Tuple[int, str, int]]:
    """Yield (pos0, base, baseq) for every aligned base of the read inside [start0, end0)."""
    if read.is_unmapped or read.cigartuples is None:
        return
    seq = read.query_sequence
    if seq is None:
        return
    quals = read.query_qualities
    q_lo, q_hi = _trim_bounds(read, trim_ends)

    ref_pos = read.reference_start
    query_pos = 0
    for op, length in read.cigartuples:
        if ref_pos >= end0:
            break
        if op in _MATCH_OPS:
            lo = max(ref_pos, start0)
            hi = min(ref_pos + length, end0)
            for p0 in range(lo, hi):
                qpos = query_pos + (p0 - ref_pos)
                if q_lo <= qpos < q_hi:
                    bq = int(quals[qpos]) if quals is not None else 0
                    yield p0, seq[qpos].upper(), bq
            ref_pos += length
            query_pos += length
        elif op in (1, 4):
            query_pos += length
        elif op in (2, 3):
            ref_pos += length


def base_at(
    read: pysam.AlignedSegment, pos0: int, *, trim_ends: int = 0
) -> Optional[Tuple[str, int]]:
    """(base, baseq) of the read at one reference position, or None when not aligned there."""
    return extract_bases_at_positions(read, [pos0], trim_ends=trim_ends).get(pos0)
