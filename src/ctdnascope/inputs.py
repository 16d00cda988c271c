"""Loading mutation lists and target regions.

Mutation lists are tab-separated tables (or VCFs); target lists are BED files
or tab-separated tables. Column names are matched case-insensitively against a
small alias table. A phase-group column is never guessed: the caller names it.
"""

from __future__ import annotations

import csv
import logging
from collections import Counter
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import pysam

from .errors import InvalidMutation, InvalidRegion
from .models import Mutation, TargetRegion
from .utils import open_textmaybe_gzip
from .validation import STYLE_UNKNOWN, detect_contig_style, missing_contigs, remap_contig

logger = logging.getLogger(__name__)

_MUTATION_COLUMNS = {
    "chrom": ("chrom", "chr", "chromosome", "#chrom"),
    "position": ("pos", "position", "start"),
    "ref": ("ref", "reference"),
    "alt": ("alt", "alternate"),
}

_TARGET_COLUMNS = {
    "chrom": ("chrom", "chr", "chromosome", "#chrom", "seqnames"),
    "start": ("start",),
    "end": ("end", "stop"),
}


def _resolve_columns(header: Sequence[str], wanted: Dict[str, Sequence[str]], path: str) -> Dict[str, str]:
    lowered = {h.strip().lower(): h for h in header}
    out: Dict[str, str] = {}
    for key, aliases in wanted.items():
        for alias in aliases:
            if alias in lowered:
                out[key] = lowered[alias]
                break
        else:
            raise InvalidMutation(
                f"{path}: missing required column '{key}' (accepted names: {', '.join(aliases)})"
            )
    return out


def validate_mutations(mutations: Sequence[Mutation]) -> List[Mutation]:
    """Reject duplicated (chrom, pos, ref, alt) tuples unless they are intentionally phased.

    A tuple may only appear more than once when each occurrence carries a different phase group.
    """
    seen: Counter = Counter()
    for m in mutations:
        seen[(m.key, m.phase_group)] += 1
    dup_in_group = [k for k, n in seen.items() if n > 1]
    if dup_in_group:
        (key, group) = dup_in_group[0]
        raise InvalidMutation(
            f"Duplicated mutation {':'.join(map(str, key))}"
            + (f" within phase group {group}" if group is not None else "")
        )

    by_key: Dict[tuple, List[Optional[str]]] = {}
    for m in mutations:
        by_key.setdefault(m.key, []).append(m.phase_group)
    for key, groups in by_key.items():
        if len(groups) > 1 and any(g is None for g in groups):
            raise InvalidMutation(
                f"Duplicated mutation {':'.join(map(str, key))}; duplicates must carry distinct phase groups"
            )
    return list(mutations)


def load_mutations(
    path: str | Path,
    *,
    phase_column: Optional[str] = None,
) -> List[Mutation]:
    """Load SNVs from a TSV table with chrom/pos/ref/alt columns (1-based positions)."""
    p = str(path)
    if p.endswith((".vcf", ".vcf.gz", ".bcf")):
        return load_mutations_vcf(p)

    mutations: List[Mutation] = []
    with open_textmaybe_gzip(p, "rt") as fh:
        reader = csv.DictReader((line for line in fh if not line.startswith("##")), delimiter="\t")
        if reader.fieldnames is None:
            raise InvalidMutation(f"{p}: empty mutation table")
        cols = _resolve_columns(reader.fieldnames, _MUTATION_COLUMNS, p)
        if phase_column is not None and phase_column not in reader.fieldnames:
            raise InvalidMutation(f"{p}: phase column '{phase_column}' not found")

        for lineno, row in enumerate(reader, start=2):
            try:
                pos = int(row[cols["position"]])
            except (TypeError, ValueError) as e:
                raise InvalidMutation(f"{p}:{lineno}: invalid position {row[cols['position']]!r}") from e
            group = None
            if phase_column is not None:
                raw = (row.get(phase_column) or "").strip()
                group = raw if raw not in ("", "NA", ".") else None
            try:
                mutations.append(
                    Mutation(
                        chrom=row[cols["chrom"]].strip(),
                        position=pos,
                        ref=row[cols["ref"]].strip(),
                        alt=row[cols["alt"]].strip(),
                        phase_group=group,
                    )
                )
            except InvalidMutation as e:
                raise InvalidMutation(f"{p}:{lineno}: {e}") from e

    if not mutations:
        raise InvalidMutation(f"{p}: no mutations found")
    logger.info("Loaded %d mutations from %s", len(mutations), p)
    return validate_mutations(mutations)


def load_mutations_vcf(
    vcf_path: str,
    *,
    require_pass: bool = True,
    skip_non_snv: bool = False,
    phase_info_key: Optional[str] = None,
) -> List[Mutation]:
    """Load SNVs from a VCF.

    Parameters
    ----------
    require_pass:
        If True, require FILTER to be PASS or empty.
    skip_non_snv:
        If True, indels and multi-allelic records are skipped with a warning instead of raising.
    phase_info_key:
        Optional INFO key holding the phase group id.
    """
    try:
        vcf = pysam.VariantFile(vcf_path)
    except (OSError, ValueError) as e:
        raise InvalidMutation(f"Cannot read VCF {vcf_path}: {e}") from e

    mutations: List[Mutation] = []
    skipped = 0
    with vcf:
        for rec in vcf:
            if require_pass:
                filt = list(rec.filter.keys())
                if len(filt) > 0 and not (len(filt) == 1 and filt[0] == "PASS"):
                    continue
            alts = list(rec.alts or [])
            if len(rec.ref) != 1 or len(alts) != 1 or len(alts[0]) != 1:
                if skip_non_snv:
                    skipped += 1
                    continue
                raise InvalidMutation(
                    f"{vcf_path}: {rec.contig}:{rec.pos} {rec.ref}>{','.join(alts)} is not an SNV"
                )
            group = None
            if phase_info_key is not None and phase_info_key in rec.info:
                group = str(rec.info[phase_info_key])
            mutations.append(
                Mutation(chrom=str(rec.contig), position=int(rec.pos), ref=rec.ref, alt=alts[0], phase_group=group)
            )

    if skipped:
        logger.warning("Skipped %d non-SNV records in %s", skipped, vcf_path)
    if not mutations:
        raise InvalidMutation(f"{vcf_path}: no usable SNVs found")
    return validate_mutations(mutations)


def load_targets(path: str | Path) -> List[TargetRegion]:
    """Load targets from BED (0-based half-open) or a TSV with a chrom/start/end header (1-based)."""
    p = str(path)
    targets: List[TargetRegion] = []
    is_bed = p.endswith((".bed", ".bed.gz"))

    with open_textmaybe_gzip(p, "rt") as fh:
        if is_bed:
            for lineno, line in enumerate(fh, start=1):
                if not line.strip() or line.startswith(("#", "track", "browser")):
                    continue
                fields = line.rstrip("\n").split("\t")
                if len(fields) < 3:
                    raise InvalidRegion(f"{p}:{lineno}: expected at least 3 BED columns")
                try:
                    start0, end0 = int(fields[1]), int(fields[2])
                except ValueError as e:
                    raise InvalidRegion(f"{p}:{lineno}: non-integer coordinates") from e
                name = fields[3] if len(fields) > 3 and fields[3] else None
                try:
                    targets.append(TargetRegion(fields[0], start0 + 1, end0, name=name))
                except InvalidRegion as e:
                    raise InvalidRegion(f"{p}:{lineno}: {e}") from e
        else:
            reader = csv.DictReader(fh, delimiter="\t")
            if reader.fieldnames is None:
                raise InvalidRegion(f"{p}: empty target table")
            try:
                cols = _resolve_columns(reader.fieldnames, _TARGET_COLUMNS, p)
            except InvalidMutation as e:
                raise InvalidRegion(str(e)) from e
            for lineno, row in enumerate(reader, start=2):
                try:
                    targets.append(
                        TargetRegion(
                            row[cols["chrom"]].strip(),
                            int(row[cols["start"]]),
                            int(row[cols["end"]]),
                            name=(row.get("name") or None),
                        )
                    )
                except (TypeError, ValueError) as e:
                    raise InvalidRegion(f"{p}:{lineno}: {e}") from e

    if not targets:
        raise InvalidRegion(f"{p}: no target regions found")
    logger.info("Loaded %d target regions from %s", len(targets), p)
    return targets


def merge_regions(regions: Iterable[TargetRegion]) -> List[TargetRegion]:
    """Merge overlapping and adjacent regions per contig; output sorted by (chrom, start)."""
    by_contig: Dict[str, List[TargetRegion]] = {}
    for r in regions:
        by_contig.setdefault(r.chrom, []).append(r)

    merged: List[TargetRegion] = []
    for chrom in sorted(by_contig):
        lst = sorted(by_contig[chrom], key=lambda r: (r.start, r.end))
        cur_start, cur_end = lst[0].start, lst[0].end
        for r in lst[1:]:
            if r.start <= cur_end + 1:
                cur_end = max(cur_end, r.end)
            else:
                merged.append(TargetRegion(chrom, cur_start, cur_end))
                cur_start, cur_end = r.start, r.end
        merged.append(TargetRegion(chrom, cur_start, cur_end))
    return merged


def reconcile_contigs(
    mutations: List[Mutation],
    targets: List[TargetRegion],
    bam_contigs: Sequence[str],
) -> tuple[List[Mutation], List[TargetRegion]]:
    """Remap mutation/target contig names to the BAM's naming style (chr1 vs 1)."""
    bam_style = detect_contig_style(bam_contigs)
    if bam_style == STYLE_UNKNOWN:
        return mutations, targets

    mut_style = detect_contig_style([m.chrom for m in mutations])
    if mut_style != bam_style:
        logger.warning(
            "Contig style mismatch detected (mutations=%s, BAM=%s). Remapping to %s style.",
            mut_style,
            bam_style,
            bam_style,
        )
        mutations = [
            Mutation(remap_contig(m.chrom, bam_style), m.position, m.ref, m.alt, m.phase_group)
            for m in mutations
        ]
    targets = [
        TargetRegion(remap_contig(t.chrom, bam_style), t.start, t.end, name=t.name) for t in targets
    ]

    absent = missing_contigs((m.chrom for m in mutations), bam_contigs)
    if len(absent) == len({m.chrom for m in mutations}):
        raise InvalidMutation(
            "Contig mismatch between BAM and mutation list (e.g., chr1 vs 1); no mutation contig is in the BAM."
        )
    if absent:
        logger.warning("Mutation contigs absent from the BAM (no reads will be found): %s", ", ".join(absent))
    return mutations, targets
