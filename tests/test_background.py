import pytest

from ctdnascope.background import (
    BackgroundRate,
    estimate_background_rate,
    merge_sample_counts,
    read_panel_tsv,
    sample_locus_counts,
    write_panel_tsv,
)
from ctdnascope.errors import BlacklistModeMismatch, InsufficientCoverage
from ctdnascope.models import Blacklist, Mutation, TargetRegion
from ctdnascope.sources import InMemoryAlignmentSource, InMemoryReference
from ctdnascope.toy_data import make_read_pair, toy_header

REF = "ACGT" * 500
HEADER = toy_header("chr1", len(REF))
REFERENCE = InMemoryReference({"chr1": REF})

# 1-based 201..300, every position covered by exactly one mate of each of 10 pairs
TARGET = TargetRegion("chr1", 201, 300)

# pos0 -> substituted base: 210 G>T, 260 A>C, 220 A>G
ERRORS = [{210: "T"}, {260: "C"}, {220: "G"}]


def _source(extra=None, n_pairs=10):
    reads = []
    for i in range(n_pairs):
        subs = ERRORS[i] if i < len(ERRORS) else {}
        if extra is not None:
            subs = {**subs, **extra.get(i, {})}
        reads.extend(make_read_pair(HEADER, f"p{i}", REF, 200, 100, substitutions=subs))
    return InMemoryAlignmentSource(reads)


def test_rate_is_alt_over_depth():
    bg = estimate_background_rate([TARGET], _source(), REFERENCE, vaf_threshold=None)
    assert bg.total_depth == 1000
    assert bg.total_alt == 3
    assert bg.rate == pytest.approx(0.003)
    assert bg.n_positions == 100


def test_overlapping_targets_are_counted_once():
    targets = [TargetRegion("chr1", 201, 260), TargetRegion("chr1", 241, 300)]
    bg = estimate_background_rate(targets, _source(), REFERENCE, vaf_threshold=None)
    assert bg.total_depth == 1000


def test_mutation_positions_are_excluded():
    bg = estimate_background_rate(
        [TARGET], _source(), REFERENCE, mutations=[Mutation("chr1", 211, "G", "T")], vaf_threshold=None
    )
    assert bg.total_depth == 990
    assert bg.total_alt == 2
    assert bg.n_excluded_positions == 1


def test_loci_blacklist_removes_position():
    bl = Blacklist(substitution_specific=False, entries=frozenset({("chr1", 261)}))
    bg = estimate_background_rate([TARGET], _source(), REFERENCE, blacklist=bl, vaf_threshold=None)
    assert bg.total_depth == 990
    assert bg.total_alt == 2


def test_variant_blacklist_removes_only_that_alt():
    bl = Blacklist(substitution_specific=True, entries=frozenset({("chr1", 221, "A", "G")}))
    bg = estimate_background_rate(
        [TARGET], _source(), REFERENCE, blacklist=bl, substitution_specific=True, vaf_threshold=None
    )
    assert bg.total_depth == 1000
    assert bg.total_alt == 2


def test_blacklist_never_increases_rate():
    base = estimate_background_rate([TARGET], _source(), REFERENCE, vaf_threshold=None)
    loci = Blacklist(substitution_specific=False, entries=frozenset({("chr1", 211), ("chr1", 221)}))
    bg = estimate_background_rate([TARGET], _source(), REFERENCE, blacklist=loci, vaf_threshold=None)
    assert bg.rate <= base.rate

    # a variant blacklist can only remove alt observations
    for key in [("chr1", 211, "G", "T"), ("chr1", 250, "C", "A")]:
        bl = Blacklist(substitution_specific=True, entries=frozenset({key}))
        bg = estimate_background_rate(
            [TARGET], _source(), REFERENCE, blacklist=bl, substitution_specific=True, vaf_threshold=None
        )
        assert bg.rate <= base.rate


def test_variant_blacklist_cannot_readmit_germline_position():
    # pos0 220 (A): 4 x G (pair 2 plus 3..5) and 1 x C, so VAF 0.5 before blacklisting
    extra = {3: {220: "G"}, 4: {220: "G"}, 5: {220: "G"}, 6: {220: "C"}}
    base = estimate_background_rate([TARGET], _source(extra), REFERENCE, substitution_specific=True)
    assert base.total_depth == 990
    assert base.total_alt == 2

    bl = Blacklist(substitution_specific=True, entries=frozenset({("chr1", 221, "A", "G")}))
    bg = estimate_background_rate([TARGET], _source(extra), REFERENCE, blacklist=bl, substitution_specific=True)
    assert bg.n_excluded_positions == 1
    assert bg.total_depth == 990
    assert bg.rate <= base.rate


def test_blacklist_mode_mismatch_raises():
    bl = Blacklist(substitution_specific=True, entries=frozenset({("chr1", 221, "A", "G")}))
    with pytest.raises(BlacklistModeMismatch):
        estimate_background_rate([TARGET], _source(), REFERENCE, blacklist=bl)


def test_germline_like_positions_excluded_by_vaf_threshold():
    # pos0 230 (G) shows A in half of the pairs
    extra = {i: {230: "A"} for i in range(3, 8)}
    with_threshold = estimate_background_rate([TARGET], _source(extra), REFERENCE, vaf_threshold=0.1)
    assert with_threshold.total_depth == 990
    assert with_threshold.total_alt == 3
    without = estimate_background_rate([TARGET], _source(extra), REFERENCE, vaf_threshold=None)
    assert without.total_alt == 8


def test_substitution_specific_rates():
    bg = estimate_background_rate([TARGET], _source(), REFERENCE, substitution_specific=True, vaf_threshold=None)
    assert bg.depth_by_ref["G"] == 250
    assert bg.rate_for("G", "T") == pytest.approx(1 / 250)
    assert bg.rate_for("A", "C") == pytest.approx(1 / 250)
    assert bg.rate_for("C", "T") == 0.0


def test_zero_depth_raises_insufficient_coverage():
    with pytest.raises(InsufficientCoverage, match="chr1:1501-1600"):
        estimate_background_rate([TargetRegion("chr1", 1501, 1600)], _source(), REFERENCE)


def test_background_rate_dict_round_trip():
    bg = estimate_background_rate([TARGET], _source(), REFERENCE, vaf_threshold=None)
    again = BackgroundRate.from_dict(bg.to_dict())
    assert again == bg


def test_panel_merge_is_order_independent(tmp_path):
    a = sample_locus_counts(_source(), [TARGET], REFERENCE)
    b = sample_locus_counts(_source(n_pairs=4), [TARGET], REFERENCE)
    p1 = merge_sample_counts({"a": a, "b": b})
    p2 = merge_sample_counts({"b": b, "a": a})
    assert p1.samples == p2.samples == ["a", "b"]
    assert p1.keys == p2.keys
    assert (p1.depth == p2.depth).all()
    assert (p1.alt == p2.alt).all()

    row = p1.keys.index(("chr1", 211))
    assert p1.depth[row].tolist() == [10, 4]
    assert p1.alt[row].tolist() == [1, 1]

    path = tmp_path / "panel.tsv.gz"
    write_panel_tsv(p1, path)
    back = read_panel_tsv(path)
    assert back.keys == p1.keys
    assert (back.alt == p1.alt).all()


def test_substitution_specific_panel_has_three_rows_per_locus():
    counts = sample_locus_counts(_source(), [TARGET], REFERENCE, substitution_specific=True)
    panel = merge_sample_counts({"a": counts}, substitution_specific=True)
    assert len(panel) == 300
    row = panel.keys.index(("chr1", 211, "G", "T"))
    assert panel.alt[row, 0] == 1
