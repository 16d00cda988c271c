from __future__ import annotations

import random
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import pysam

from .utils import ensure_outdir, write_json

TOY_CONTIG = "chr1"
TOY_LENGTH = 2000


def _write_fasta(path: Path, contig: str, seq: str) -> None:
    lines = [f">{contig}"]
    for i in range(0, len(seq), 60):
        lines.append(seq[i : i + 60])
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _mutate_base(base: str) -> str:
    for alt in ["A", "C", "G", "T"]:
        if alt != base:
            return alt
    return "A"


def toy_header(contig: str = TOY_CONTIG, length: int = TOY_LENGTH) -> pysam.AlignmentHeader:
    return pysam.AlignmentHeader.from_dict(
        {
            "HD": {"VN": "1.6", "SO": "coordinate"},
            "SQ": [{"SN": contig, "LN": length}],
        }
    )


def _segment(
    header: pysam.AlignmentHeader,
    name: str,
    seq: str,
    start0: int,
    *,
    flag: int,
    mate_start0: int,
    tlen: int,
    mapq: int,
    base_quality: int,
) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment(header)
    a.query_name = name
    a.query_sequence = seq
    a.flag = flag
    a.reference_id = 0
    a.reference_start = start0
    a.mapping_quality = mapq
    a.cigartuples = [(0, len(seq))]
    a.query_qualities = pysam.qualitystring_to_array(chr(base_quality + 33) * len(seq))
    a.next_reference_id = 0
    a.next_reference_start = mate_start0
    a.template_length = tlen
    a.set_tag("MQ", mapq)
    return a


def make_read_pair(
    header: pysam.AlignmentHeader,
    name: str,
    ref_seq: str,
    start0: int,
    size: int,
    *,
    read_len: int = 50,
    substitutions: Optional[Mapping[int, str]] = None,
    mapq: int = 60,
    base_quality: int = 40,
    read1_reverse: bool = False,
    proper_pair: bool = True,
    duplicate: bool = False,
) -> Tuple[pysam.AlignedSegment, pysam.AlignedSegment]:
    """A forward/reverse read pair spanning fragment [start0, start0 + size) on contig 0.

    ``substitutions`` maps 0-based positions to the base written in every mate covering them.
    Returns (read1, read2). By default read1 is the left, forward mate.
    """
    read_len = min(read_len, size)
    subs = dict(substitutions or {})
    left0 = start0
    right0 = start0 + size - read_len

    def seq_at(s0: int) -> str:
        bases = list(ref_seq[s0 : s0 + read_len])
        for p0, b in subs.items():
            if s0 <= p0 < s0 + read_len:
                bases[p0 - s0] = b
        return "".join(bases)

    base_flag = 0x1 | (0x2 if proper_pair else 0) | (0x400 if duplicate else 0)
    left_flag = base_flag | 0x20  # mate reverse
    right_flag = base_flag | 0x10  # reverse
    if read1_reverse:
        left_flag |= 0x80
        right_flag |= 0x40
    else:
        left_flag |= 0x40
        right_flag |= 0x80

    left = _segment(
        header, name, seq_at(left0), left0,
        flag=left_flag, mate_start0=right0, tlen=size, mapq=mapq, base_quality=base_quality,
    )
    right = _segment(
        header, name, seq_at(right0), right0,
        flag=right_flag, mate_start0=left0, tlen=-size, mapq=mapq, base_quality=base_quality,
    )
    return (right, left) if read1_reverse else (left, right)


def write_bam(path: str | Path, header: pysam.AlignmentHeader, reads: Sequence[pysam.AlignedSegment]) -> Path:
    """Write reads coordinate-sorted and index the BAM."""
    path = Path(path)
    with pysam.AlignmentFile(str(path), "wb", header=header) as bam:
        for r in sorted(reads, key=lambda r: (r.reference_start, r.query_name, r.flag)):
            bam.write(r)
    pysam.index(str(path))
    return path


def _simulate_sample(
    header: pysam.AlignmentHeader,
    ref_seq: str,
    *,
    seed: int,
    n_pairs: int,
    alt_sites: Mapping[int, str],
    alt_every: int,
    error_rate: float,
    prefix: str,
) -> List[pysam.AlignedSegment]:
    rng = random.Random(seed)
    reads: List[pysam.AlignedSegment] = []
    for i in range(n_pairs):
        size = rng.randint(130, 200)
        start0 = rng.randint(350, 1300)
        subs: Dict[int, str] = {}
        for p0 in range(start0, start0 + size):
            if rng.random() < error_rate:
                subs[p0] = rng.choice([b for b in "ACGT" if b != ref_seq[p0]])
        if alt_every > 0 and i % alt_every == 0:
            subs.update({p0: b for p0, b in alt_sites.items() if start0 <= p0 < start0 + size})
        reads.extend(make_read_pair(header, f"{prefix}{i:04d}", ref_seq, start0, size, read_len=60, substitutions=subs))
    return reads


def make_toy_data(*, outdir: str | Path, n_normals: int = 3) -> Dict[str, object]:
    """Create a tiny paired-end data set for quick demos/tests.

    The outputs include:
    - toy_ref.fa (+ .fai)
    - sample.bam (+ .bai): plasma-like sample carrying the toy mutations in a few read pairs
    - normal_<i>.bam (+ .bai): mutation-free samples for a background panel
    - mutations.tsv: two phased SNVs (group g1) and one unphased SNV
    - targets.bed

    Returns
    -------
    dict
        Paths to the generated files.
    """
    outdir_p = ensure_outdir(outdir)

    rng = random.Random(11)
    ref_seq = "".join(rng.choice("ACGT") for _ in range(TOY_LENGTH))
    ref_fa = outdir_p / "toy_ref.fa"
    _write_fasta(ref_fa, TOY_CONTIG, ref_seq)
    pysam.faidx(str(ref_fa))

    # (0-based position, phase group)
    sites = [(500, "g1"), (520, "g1"), (1200, None)]
    alt_sites = {p0: _mutate_base(ref_seq[p0]) for p0, _ in sites}

    mutations_tsv = outdir_p / "mutations.tsv"
    lines = ["chrom\tpos\tref\talt\tphase"]
    for p0, group in sites:
        lines.append(f"{TOY_CONTIG}\t{p0 + 1}\t{ref_seq[p0]}\t{alt_sites[p0]}\t{group or ''}")
    mutations_tsv.write_text("\n".join(lines) + "\n", encoding="utf-8")

    targets_bed = outdir_p / "targets.bed"
    targets_bed.write_text(
        f"{TOY_CONTIG}\t400\t700\tamplicon_1\n{TOY_CONTIG}\t1100\t1400\tamplicon_2\n", encoding="utf-8"
    )

    header = toy_header()
    sample_bam = write_bam(
        outdir_p / "sample.bam",
        header,
        _simulate_sample(
            header, ref_seq, seed=7, n_pairs=400, alt_sites=alt_sites, alt_every=8, error_rate=0.002, prefix="s"
        ),
    )

    normal_bams: List[str] = []
    for k in range(1, n_normals + 1):
        bam = write_bam(
            outdir_p / f"normal_{k}.bam",
            header,
            _simulate_sample(
                header, ref_seq, seed=100 + k, n_pairs=200, alt_sites={}, alt_every=0, error_rate=0.002, prefix=f"n{k}_"
            ),
        )
        normal_bams.append(str(bam))

    summary: Dict[str, object] = {
        "ref_fa": str(ref_fa),
        "sample_bam": str(sample_bam),
        "normal_bams": normal_bams,
        "mutations_tsv": str(mutations_tsv),
        "targets_bed": str(targets_bed),
        "outdir": str(outdir_p),
    }

    write_json(outdir_p / "toy_summary.json", summary)
    return summary
