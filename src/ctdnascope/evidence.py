from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Set

from tqdm import tqdm

from .errors import SourceUnavailable
from .models import Mutation, ReadEvidence, ReadFilters
from .reads import base_at, passes_read_filters
from .sources import AlignmentSource, ReferenceLookup

logger = logging.getLogger(__name__)

_REF = "ref"
_ALT = "alt"


def check_reference_bases(mutations: Iterable[Mutation], reference: ReferenceLookup) -> int:
    """Log a warning for each mutation whose declared reference base disagrees with the genome.

    Returns the number of mismatches; never raises for a mismatch.
    """
    mismatches = 0
    for m in mutations:
        try:
            genome_base = reference.base_at(m.chrom, m.position).upper()
        except SourceUnavailable as e:
            logger.warning("Could not check reference base for %s: %s", m.label, e)
            continue
        if genome_base != m.ref:
            mismatches += 1
            logger.warning(
                "Reference mismatch at %s: mutation declares %s but the reference has %s",
                m.label,
                m.ref,
                genome_base,
            )
    return mismatches


def collect_mutation_evidence(
    mutation: Mutation,
    source: AlignmentSource,
    *,
    filters: ReadFilters = ReadFilters(),
) -> ReadEvidence:
    """Classify every read pair overlapping one mutation as ref, alt or ambiguous."""
    signals: Dict[str, Set[str]] = {}

    for read in source.records_overlapping(mutation.chrom, mutation.position, mutation.position):
        if not passes_read_filters(read, filters):
            continue
        obs = base_at(read, mutation.pos0, trim_ends=filters.trim_ends)
        if obs is None:
            continue
        base, bq = obs
        if bq < filters.min_base_quality:
            continue
        if base == mutation.ref:
            allele = _REF
        elif base == mutation.alt:
            allele = _ALT
        else:
            continue
        signals.setdefault(str(read.query_name), set()).add(allele)

    ref_ids: Set[str] = set()
    alt_ids: Set[str] = set()
    ambiguous: Set[str] = set()
    for pair_id, alleles in signals.items():
        if len(alleles) > 1:
            ambiguous.add(pair_id)
        elif _ALT in alleles:
            alt_ids.add(pair_id)
        else:
            ref_ids.add(pair_id)

    if ambiguous:
        logger.debug("%s: dropped %d read pairs with conflicting mates", mutation.label, len(ambiguous))

    return ReadEvidence(
        mutation=mutation,
        ref_read_ids=frozenset(ref_ids),
        alt_read_ids=frozenset(alt_ids),
        ambiguous_read_ids=frozenset(ambiguous),
    )


def collect_read_evidence(
    mutations: List[Mutation],
    source: AlignmentSource,
    *,
    filters: ReadFilters = ReadFilters(),
    reference: Optional[ReferenceLookup] = None,
    progress: bool = False,
) -> List[ReadEvidence]:
    """Collect ref/alt supporting read pairs for each mutation (same order as the input).

    A read pair is counted once per mutation even if both mates overlap it. Pairs whose mates
    disagree (one ref, one alt) are excluded as ambiguous. A mutation without overlapping reads
    yields empty evidence.
    """
    if reference is not None:
        check_reference_bases(mutations, reference)

    it: Iterable[Mutation] = mutations
    if progress:
        it = tqdm(it, unit="mutation", desc="Collecting evidence")

    out: List[ReadEvidence] = []
    for m in it:
        ev = collect_mutation_evidence(m, source, filters=filters)
        logger.debug(
            "%s: ref=%d alt=%d ambiguous=%d",
            m.label,
            ev.ref_count,
            ev.alt_count,
            len(ev.ambiguous_read_ids),
        )
        out.append(ev)
    return out
