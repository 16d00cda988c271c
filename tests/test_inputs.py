import logging
from pathlib import Path

import pysam
import pytest

from ctdnascope.errors import InvalidMutation, InvalidRegion
from ctdnascope.inputs import load_mutations, load_mutations_vcf, load_targets, merge_regions, reconcile_contigs
from ctdnascope.models import Mutation, TargetRegion


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def _make_small_vcf(path: Path, contig: str) -> Path:
    header = pysam.VariantHeader()
    header.add_meta("fileformat", "VCFv4.2")
    header.contigs.add(contig, length=200)
    header.info.add("PG", number=1, type="String", description="Phase group")
    header.filters.add("LowQual", None, None, "Low quality")

    vcf_path = path / "mutations.vcf"
    with pysam.VariantFile(str(vcf_path), "w", header=header) as vcf:
        for start, alleles, filt in [
            (49, ("A", "G"), "PASS"),
            (59, ("C", "T"), "LowQual"),
            (69, ("AT", "A"), "PASS"),
        ]:
            rec = vcf.new_record(contig=contig, start=start, stop=start + len(alleles[0]), alleles=alleles, filter=filt)
            rec.info["PG"] = "g1"
            vcf.write(rec)
    return vcf_path


def test_tsv_with_aliases_and_phase_column(tmp_path):
    p = _write(
        tmp_path / "m.tsv",
        "Chromosome\tPosition\tReference\tAlternate\tclone\n"
        "chr1\t100\ta\tg\tg1\n"
        "chr1\t130\tC\tT\tg1\n"
        "chr2\t50\tG\tA\t\n",
    )
    muts = load_mutations(p, phase_column="clone")
    assert muts[0] == Mutation("chr1", 100, "A", "G", "g1")
    assert muts[2].phase_group is None


def test_phase_column_is_never_guessed(tmp_path):
    p = _write(tmp_path / "m.tsv", "chrom\tpos\tref\talt\tphase\nchr1\t100\tA\tG\tg1\n")
    assert load_mutations(p)[0].phase_group is None
    with pytest.raises(InvalidMutation, match="phase column"):
        load_mutations(p, phase_column="group")


def test_non_snv_and_duplicates_rejected(tmp_path):
    indel = _write(tmp_path / "indel.tsv", "chrom\tpos\tref\talt\nchr1\t100\tAT\tA\n")
    with pytest.raises(InvalidMutation, match="indel.tsv:2"):
        load_mutations(indel)

    dup = _write(tmp_path / "dup.tsv", "chrom\tpos\tref\talt\nchr1\t100\tA\tG\nchr1\t100\tA\tG\n")
    with pytest.raises(InvalidMutation, match="Duplicated"):
        load_mutations(dup)

    phased = _write(
        tmp_path / "phased.tsv",
        "chrom\tpos\tref\talt\tpg\nchr1\t100\tA\tG\tg1\nchr1\t100\tA\tG\tg2\n",
    )
    assert len(load_mutations(phased, phase_column="pg")) == 2


def test_mutation_validation():
    with pytest.raises(InvalidMutation):
        Mutation("chr1", 10, "A", "A")
    with pytest.raises(InvalidMutation):
        Mutation("chr1", 0, "A", "G")
    with pytest.raises(InvalidMutation):
        Mutation("chr1", 10, "N", "G")


def test_vcf_loading(tmp_path):
    vcf = _make_small_vcf(tmp_path, "chr1")
    with pytest.raises(InvalidMutation, match="not an SNV"):
        load_mutations(vcf)

    muts = load_mutations_vcf(str(vcf), skip_non_snv=True, phase_info_key="PG")
    assert muts == [Mutation("chr1", 50, "A", "G", "g1")]
    muts = load_mutations_vcf(str(vcf), require_pass=False, skip_non_snv=True)
    assert [m.position for m in muts] == [50, 60]


def test_bed_is_converted_to_one_based(tmp_path):
    bed = _write(tmp_path / "t.bed", "track name=x\nchr1\t99\t200\tamp1\nchr1\t300\t301\n")
    targets = load_targets(bed)
    assert targets[0] == TargetRegion("chr1", 100, 200, name="amp1")
    assert targets[1].length == 1

    tsv = _write(tmp_path / "t.tsv", "chrom\tstart\tend\nchr1\t100\t200\n")
    assert load_targets(tsv) == [TargetRegion("chr1", 100, 200)]

    bad = _write(tmp_path / "bad.bed", "chr1\t200\t100\n")
    with pytest.raises(InvalidRegion):
        load_targets(bad)


def test_merge_regions():
    merged = merge_regions(
        [
            TargetRegion("chr2", 5, 10),
            TargetRegion("chr1", 100, 200),
            TargetRegion("chr1", 150, 250),
            TargetRegion("chr1", 251, 260),
            TargetRegion("chr1", 300, 310),
        ]
    )
    assert merged == [
        TargetRegion("chr1", 100, 260),
        TargetRegion("chr1", 300, 310),
        TargetRegion("chr2", 5, 10),
    ]


def test_reconcile_contigs():
    muts = [Mutation("1", 100, "A", "G")]
    targets = [TargetRegion("1", 50, 150)]
    m2, t2 = reconcile_contigs(muts, targets, ["chr1", "chr2"])
    assert m2[0].chrom == "chr1"
    assert t2[0].chrom == "chr1"

    with pytest.raises(InvalidMutation, match="Contig mismatch"):
        reconcile_contigs([Mutation("7", 100, "A", "G")], [], ["chr1", "chr2"])


def test_reconcile_contigs_warns_on_partial_absence(caplog):
    muts = [Mutation("chr1", 100, "A", "G"), Mutation("chr5", 100, "A", "G")]
    with caplog.at_level(logging.WARNING):
        m2, _ = reconcile_contigs(muts, [], ["chr1", "chr2"])
    assert [m.chrom for m in m2] == ["chr1", "chr5"]
    assert "chr5" in caplog.text
