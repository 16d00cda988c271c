"""Merging of phased mutations (several SNVs on the same molecule) into single test units.

A read pair carrying the alt allele at every member of a phase group is far less likely to arise
from sequencing error than an alt call at any single position, because chance errors would have
to co-occur on the same molecule. The merged unit is therefore tested against a much lower
background rate (see :func:`phased_background_rate`).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Sequence, Tuple

from .errors import InconsistentPhaseGroup, InvalidInput
from .models import Mutation, ReadEvidence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PhasedUnit:
    """One independent test unit: a single mutation or a merged phase group."""

    label: str
    mutations: Tuple[Mutation, ...]
    evidence: ReadEvidence
    purification_probability: float = 1.0
    full_support_ids: FrozenSet[str] = frozenset()
    partial_support_ids: FrozenSet[str] = frozenset()

    @property
    def is_phased(self) -> bool:
        return len(self.mutations) > 1

    @property
    def informative_reads(self) -> int:
        return self.evidence.informative_reads

    @property
    def alt_count(self) -> int:
        return self.evidence.alt_count


def phased_background_rate(member_rates: Sequence[float], purification_probability: float) -> float:
    """Background rate for a merged unit: p * prod(r_i).

    For a single mutation this is its own rate. For k linked mutations a chance full-support read
    needs k independent errors on the same molecule (prod r_i); p, the fraction of alt-signal reads
    that survive purification, scales it further.
    """
    if not member_rates:
        raise InvalidInput("phased_background_rate needs at least one member rate")
    if len(member_rates) == 1:
        return float(member_rates[0])
    rate = float(purification_probability)
    for r in member_rates:
        rate *= float(r)
    return rate


def _merge_group(group_id: str, members: List[Tuple[Mutation, ReadEvidence]]) -> PhasedUnit:
    chroms = {m.chrom for m, _ in members}
    if len(chroms) > 1:
        raise InconsistentPhaseGroup(
            f"Phase group {group_id} spans several chromosomes: {', '.join(sorted(chroms))}"
        )

    members = sorted(members, key=lambda x: x[0].position)
    mutations = tuple(m for m, _ in members)
    k = len(members)

    alt_hits: Dict[str, int] = {}
    signal: set = set()
    seen: set = set()
    for _, ev in members:
        seen.update(ev.ref_read_ids, ev.alt_read_ids, ev.ambiguous_read_ids)
        # one mate showing alt at a member is an alt signal for the group
        signal.update(ev.alt_read_ids, ev.ambiguous_read_ids)
        for rid in ev.alt_read_ids:
            alt_hits[rid] = alt_hits.get(rid, 0) + 1

    full = frozenset(rid for rid, n in alt_hits.items() if n == k)
    partial = frozenset(signal - full)
    no_support = frozenset(seen - full - partial)

    with_alt = len(full) + len(partial)
    p = len(full) / with_alt if with_alt > 0 else 1.0

    label = f"{mutations[0].chrom}:{'+'.join(str(m.position) for m in mutations)}[{group_id}]"
    merged_evidence = ReadEvidence(
        mutation=mutations[0],
        ref_read_ids=frozenset(no_support | partial),
        alt_read_ids=full,
    )
    logger.info(
        "Phase group %s (%d mutations): full=%d partial=%d none=%d purification_p=%.3f",
        group_id,
        k,
        len(full),
        len(partial),
        len(no_support),
        p,
    )
    return PhasedUnit(
        label=label,
        mutations=mutations,
        evidence=merged_evidence,
        purification_probability=p,
        full_support_ids=full,
        partial_support_ids=partial,
    )


def merge_phased_mutations(evidence: Sequence[ReadEvidence]) -> List[PhasedUnit]:
    """Collapse phase groups into merged units; ungrouped mutations pass through unchanged.

    Read pairs of a group are classified as full support (alt at every member), partial support
    (alt at some but not all members, or mates disagreeing at any member) or no support.
    Partial-support pairs are purified: their alt calls are dropped and they count as
    ref-consistent informative reads. Groups of size 1 are a no-op passthrough.

    Units are returned in input order of their first member.
    """
    groups: Dict[str, List[Tuple[Mutation, ReadEvidence]]] = {}
    order: List[Tuple[str, object]] = []
    for ev in evidence:
        gid = ev.mutation.phase_group
        if gid is None:
            order.append(("single", ev))
            continue
        if gid not in groups:
            groups[gid] = []
            order.append(("group", gid))
        groups[gid].append((ev.mutation, ev))

    units: List[PhasedUnit] = []
    for kind, item in order:
        if kind == "single":
            ev = item  # type: ignore[assignment]
            units.append(PhasedUnit(label=ev.mutation.label, mutations=(ev.mutation,), evidence=ev))
            continue
        members = groups[item]  # type: ignore[index]
        if len(members) == 1:
            m, ev = members[0]
            units.append(PhasedUnit(label=m.label, mutations=(m,), evidence=ev))
        else:
            units.append(_merge_group(str(item), members))
    return units
