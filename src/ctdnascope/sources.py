"""Alignment and reference collaborators.

The core algorithms only talk to the two small interfaces defined here:

- an *alignment source* yields ``pysam.AlignedSegment`` records overlapping a
  1-based closed interval, and every call returns a fresh iterator;
- a *reference lookup* returns reference bases by coordinate.

BAM/FASTA backed implementations use pysam; the in-memory variants are used by
the toy data generator and the tests.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Protocol, Sequence, Set, Tuple

import pysam

from .errors import InvalidRegion, SourceUnavailable
from .validation import check_bam_index

logger = logging.getLogger(__name__)


class AlignmentSource(Protocol):
    def records_overlapping(self, chrom: str, start: int, end: int) -> Iterator[pysam.AlignedSegment]:
        ...

    def references(self) -> List[Tuple[str, int]]:
        ...


class ReferenceLookup(Protocol):
    def base_at(self, chrom: str, position: int) -> str:
        ...

    def sequence(self, chrom: str, start: int, end: int) -> str:
        ...


def _check_interval(chrom: str, start: int, end: int) -> None:
    if start < 1 or end < start:
        raise InvalidRegion(f"Invalid interval {chrom}:{start}-{end}")


class BamAlignmentSource:
    """Indexed BAM/CRAM file accessed through pysam."""

    def __init__(self, bam_path: str | Path, *, reference_fasta: Optional[str | Path] = None) -> None:
        self.path = str(bam_path)
        try:
            check_bam_index(self.path)
            self._bam = pysam.AlignmentFile(
                self.path,
                "rc" if self.path.endswith(".cram") else "rb",
                reference_filename=str(reference_fasta) if reference_fasta else None,
            )
        except (OSError, ValueError) as e:
            raise SourceUnavailable(f"Cannot open alignment file {self.path}: {e}", path=self.path) from e
        self._contigs = frozenset(self._bam.references)
        self._warned_contigs: Set[str] = set()

    def records_overlapping(self, chrom: str, start: int, end: int) -> Iterator[pysam.AlignedSegment]:
        _check_interval(chrom, start, end)
        if chrom not in self._contigs:
            if chrom not in self._warned_contigs:
                self._warned_contigs.add(chrom)
                logger.warning("Contig %s is not in %s; no reads are reported for it", chrom, self.path)
            return iter(())
        try:
            it = self._bam.fetch(chrom, start - 1, end, multiple_iterators=True)
        except (OSError, ValueError, KeyError) as e:
            raise SourceUnavailable(
                f"Cannot fetch {chrom}:{start}-{end} from {self.path}: {e}", path=self.path
            ) from e
        return self._guarded(it, chrom, start, end)

    def _guarded(
        self, it: Iterator[pysam.AlignedSegment], chrom: str, start: int, end: int
    ) -> Iterator[pysam.AlignedSegment]:
        try:
            for read in it:
                yield read
        except OSError as e:
            raise SourceUnavailable(
                f"Read error in {self.path} at {chrom}:{start}-{end}: {e}", path=self.path
            ) from e

    def references(self) -> List[Tuple[str, int]]:
        return list(zip(self._bam.references, self._bam.lengths))

    def close(self) -> None:
        self._bam.close()

    def __enter__(self) -> "BamAlignmentSource":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class InMemoryAlignmentSource:
    """Alignment source over a list of reads that carry a header."""

    def __init__(
        self,
        reads: Sequence[pysam.AlignedSegment],
        references: Optional[Sequence[Tuple[str, int]]] = None,
    ) -> None:
        by_contig: Dict[str, List[pysam.AlignedSegment]] = {}
        for r in reads:
            if r.is_unmapped or r.reference_name is None:
                continue
            by_contig.setdefault(r.reference_name, []).append(r)
        for lst in by_contig.values():
            lst.sort(key=lambda x: x.reference_start)
        self._by_contig = by_contig
        if references is None:
            references = [
                (c, max(int(r.reference_end or r.reference_start + 1) for r in lst))
                for c, lst in sorted(by_contig.items())
            ]
        self._references = list(references)

    def records_overlapping(self, chrom: str, start: int, end: int) -> Iterator[pysam.AlignedSegment]:
        _check_interval(chrom, start, end)
        start0, end0 = start - 1, end
        for read in self._by_contig.get(chrom, []):
            if read.reference_start >= end0:
                break
            r_end = read.reference_end if read.reference_end is not None else read.reference_start + 1
            if r_end > start0:
                yield read

    def references(self) -> List[Tuple[str, int]]:
        return list(self._references)


class FastaReference:
    """Indexed FASTA reference accessed through pysam."""

    def __init__(self, fasta_path: str | Path) -> None:
        self.path = str(fasta_path)
        try:
            self._fa = pysam.FastaFile(self.path)
        except (OSError, ValueError) as e:
            raise SourceUnavailable(f"Cannot open reference FASTA {self.path}: {e}", path=self.path) from e

    def sequence(self, chrom: str, start: int, end: int) -> str:
        _check_interval(chrom, start, end)
        try:
            return self._fa.fetch(chrom, start - 1, end).upper()
        except (KeyError, ValueError, OSError) as e:
            raise SourceUnavailable(
                f"Cannot fetch {chrom}:{start}-{end} from {self.path}: {e}", path=self.path
            ) from e

    def base_at(self, chrom: str, position: int) -> str:
        return self.sequence(chrom, position, position)

    def close(self) -> None:
        self._fa.close()


class InMemoryReference:
    """Reference lookup over a {contig: sequence} mapping."""

    def __init__(self, sequences: Dict[str, str]) -> None:
        self._seqs = {k: v.upper() for k, v in sequences.items()}

    def sequence(self, chrom: str, start: int, end: int) -> str:
        _check_interval(chrom, start, end)
        if chrom not in self._seqs:
            raise SourceUnavailable(f"Contig {chrom} not present in reference")
        return self._seqs[chrom][start - 1 : end]

    def base_at(self, chrom: str, position: int) -> str:
        return self.sequence(chrom, position, position)
