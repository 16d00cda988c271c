from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional, Tuple

from .errors import InvalidMutation, InvalidRegion

NUCLEOTIDES = ("A", "C", "G", "T")

STATUS_POSITIVE = "POSITIVE"
STATUS_NEGATIVE = "NEGATIVE"
STATUS_UNDETERMINED = "UNDETERMINED"


@dataclass(frozen=True)
class Mutation:
    """A single-nucleotide substitution to be tested.

    Attributes
    ----------
    chrom:
        Contig name as present in the BAM.
    position:
        1-based genomic position.
    ref, alt:
        Reference and alternate base (A/C/G/T), uppercase.
    phase_group:
        Optional identifier shared by mutations on the same molecule.
    """

    chrom: str
    position: int
    ref: str
    alt: str
    phase_group: Optional[str] = None

    def __post_init__(self) -> None:
        ref = str(self.ref).upper()
        alt = str(self.alt).upper()
        object.__setattr__(self, "ref", ref)
        object.__setattr__(self, "alt", alt)
        if ref not in NUCLEOTIDES or alt not in NUCLEOTIDES:
            raise InvalidMutation(
                f"{self.chrom}:{self.position} {ref}>{alt} is not a single-nucleotide substitution"
            )
        if ref == alt:
            raise InvalidMutation(f"{self.chrom}:{self.position} has identical ref and alt ({ref})")
        if int(self.position) < 1:
            raise InvalidMutation(f"{self.chrom}:{self.position} position must be >= 1")

    @property
    def pos0(self) -> int:
        return self.position - 1

    @property
    def key(self) -> Tuple[str, int, str, str]:
        return (self.chrom, self.position, self.ref, self.alt)

    @property
    def label(self) -> str:
        return f"{self.chrom}:{self.position}:{self.ref}:{self.alt}"


@dataclass(frozen=True)
class TargetRegion:
    """Genomic interval, 1-based and closed (start..end inclusive)."""

    chrom: str
    start: int
    end: int
    name: Optional[str] = None

    def __post_init__(self) -> None:
        if int(self.start) < 1:
            raise InvalidRegion(f"{self.chrom}:{self.start}-{self.end} start must be >= 1")
        if int(self.end) < int(self.start):
            raise InvalidRegion(f"{self.chrom}:{self.start}-{self.end} has end < start")

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    @property
    def label(self) -> str:
        return self.name or f"{self.chrom}:{self.start}-{self.end}"


@dataclass(frozen=True)
class ReadFilters:
    """Read-level quality thresholds shared by evidence, background and fragment code."""

    min_base_quality: int = 20
    min_mapq: int = 30
    require_proper_pair: bool = True
    drop_duplicates: bool = True
    simple_cigar: bool = False
    strand: Optional[str] = None  # None, 'forward' or 'reverse'
    trim_ends: int = 0


@dataclass(frozen=True)
class ReadEvidence:
    """Read pairs supporting each allele of one mutation."""

    mutation: Mutation
    ref_read_ids: FrozenSet[str] = frozenset()
    alt_read_ids: FrozenSet[str] = frozenset()
    ambiguous_read_ids: FrozenSet[str] = frozenset()

    @property
    def informative_reads(self) -> int:
        return len(self.ref_read_ids | self.alt_read_ids)

    @property
    def alt_count(self) -> int:
        return len(self.alt_read_ids)

    @property
    def ref_count(self) -> int:
        return len(self.ref_read_ids)


@dataclass(frozen=True)
class FragmentRecord:
    """One qualifying read pair (coordinates 1-based, closed)."""

    pair_id: str
    chrom: str
    start: int
    end: int
    size: int
    strand_pairing: str  # '+-' (read1 forward) or '-+' (read1 reverse); '++'/'--' when allowed
    supports_mutation: Optional[bool] = None


@dataclass(frozen=True)
class FragmentBin:
    lower: int
    upper: int  # inclusive
    value: float


@dataclass(frozen=True)
class RegionSummary:
    region: TargetRegion
    n_fragments: int
    values: Dict[str, Optional[float]] = field(default_factory=dict)


@dataclass(frozen=True)
class WPSWindow:
    chrom: str
    start: int
    end: int
    n_reads: int
    n_fragment_ends_adjusted: int
    wps_adjusted: int


@dataclass(frozen=True)
class Blacklist:
    """Noisy loci (chrom, pos) or, when substitution_specific, variants (chrom, pos, ref, alt)."""

    substitution_specific: bool
    entries: FrozenSet[Tuple] = frozenset()

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, key: object) -> bool:
        return key in self.entries
