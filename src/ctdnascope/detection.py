from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .background import BackgroundRate, estimate_background_rate
from .errors import InvalidInput
from .evidence import collect_read_evidence
from .inputs import validate_mutations
from .models import Blacklist, Mutation, ReadFilters, TargetRegion
from .montecarlo import DEFAULT_ITERATIONS, MonteCarloResult, monte_carlo_test
from .phasing import PhasedUnit, merge_phased_mutations, phased_background_rate
from .sources import AlignmentSource, ReferenceLookup

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnitResult:
    """Per-unit row of a detection run (a single mutation or a merged phase group)."""

    label: str
    n_mutations: int
    ref_reads: int
    alt_reads: int
    informative_reads: int
    background_rate: float
    purification_probability: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "label": self.label,
            "n_mutations": self.n_mutations,
            "ref_reads": self.ref_reads,
            "alt_reads": self.alt_reads,
            "informative_reads": self.informative_reads,
            "background_rate": self.background_rate,
            "purification_probability": self.purification_probability,
        }


@dataclass(frozen=True)
class DetectionResult:
    test: MonteCarloResult
    background: BackgroundRate
    units: List[UnitResult] = field(default_factory=list)
    substitution_specific: bool = False

    @property
    def p_value(self) -> float:
        return self.test.p_value

    @property
    def status(self) -> str:
        return self.test.status

    @property
    def alt_count(self) -> int:
        return self.test.alt_count

    @property
    def informative_reads(self) -> int:
        return self.test.informative_reads

    @property
    def background_rate(self) -> float:
        return self.background.rate

    def to_dict(self) -> Dict[str, object]:
        out = self.test.to_dict()
        out["background_rate"] = float(self.background.rate)
        out["effective_background_rate"] = float(self.test.background_rate)
        out["substitution_specific"] = self.substitution_specific
        out["background"] = self.background.to_dict()
        out["units"] = [u.to_dict() for u in self.units]
        return out


def unit_background_rate(unit: PhasedUnit, background: BackgroundRate, *, substitution_specific: bool) -> float:
    if substitution_specific:
        member_rates = [background.rate_for(m.ref, m.alt) for m in unit.mutations]
    else:
        member_rates = [background.rate] * len(unit.mutations)
    return phased_background_rate(member_rates, unit.purification_probability)


def detect_ctdna(
    mutations: Sequence[Mutation],
    source: AlignmentSource,
    *,
    targets: Optional[Sequence[TargetRegion]] = None,
    reference: Optional[ReferenceLookup] = None,
    background: Optional[BackgroundRate] = None,
    blacklist: Optional[Blacklist] = None,
    substitution_specific: bool = False,
    filters: ReadFilters = ReadFilters(),
    vaf_threshold: Optional[float] = 0.1,
    informative_reads_threshold: int = 10_000,
    alpha: float = 0.05,
    n_iterations: int = DEFAULT_ITERATIONS,
    seed: Optional[int] = None,
    n_workers: int = 1,
    progress: bool = False,
) -> DetectionResult:
    """Test a sample for the presence of the given mutations above background.

    Either a precomputed ``background`` (reusable across calls) or ``targets`` plus ``reference``
    for estimating it must be supplied. Phase groups are merged before testing and their units are
    tested against the phase-adjusted rate.
    """
    mutations = validate_mutations(list(mutations))
    if not mutations:
        raise InvalidInput("No mutations to test")

    evidence = collect_read_evidence(
        mutations, source, filters=filters, reference=reference, progress=progress
    )
    units = merge_phased_mutations(evidence)

    if background is None:
        if targets is None or reference is None:
            raise InvalidInput("Background estimation needs targets and a reference (or pass background=)")
        background = estimate_background_rate(
            targets,
            source,
            reference,
            mutations=mutations,
            blacklist=blacklist,
            substitution_specific=substitution_specific,
            filters=filters,
            vaf_threshold=vaf_threshold,
        )

    rows: List[UnitResult] = []
    for u in units:
        rows.append(
            UnitResult(
                label=u.label,
                n_mutations=len(u.mutations),
                ref_reads=u.evidence.ref_count,
                alt_reads=u.alt_count,
                informative_reads=u.informative_reads,
                background_rate=unit_background_rate(u, background, substitution_specific=substitution_specific),
                purification_probability=u.purification_probability,
            )
        )

    test = monte_carlo_test(
        sum(r.alt_reads for r in rows),
        [r.informative_reads for r in rows],
        [r.background_rate for r in rows],
        n_iterations=n_iterations,
        seed=seed,
        alpha=alpha,
        informative_reads_threshold=informative_reads_threshold,
        n_workers=n_workers,
    )
    return DetectionResult(
        test=test,
        background=background,
        units=rows,
        substitution_specific=substitution_specific,
    )
