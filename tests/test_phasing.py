import pytest

from ctdnascope.errors import InconsistentPhaseGroup, InvalidInput
from ctdnascope.models import Mutation, ReadEvidence
from ctdnascope.phasing import merge_phased_mutations, phased_background_rate


def ev(mutation, ref=(), alt=(), ambiguous=()):
    return ReadEvidence(
        mutation=mutation,
        ref_read_ids=frozenset(ref),
        alt_read_ids=frozenset(alt),
        ambiguous_read_ids=frozenset(ambiguous),
    )


M1 = Mutation("chr1", 100, "A", "G", phase_group="g")
M2 = Mutation("chr1", 130, "C", "T", phase_group="g")


def test_full_partial_and_no_support():
    e1 = ev(M1, ref={"a", "b"}, alt={"c", "d", "e"})
    e2 = ev(M2, ref={"a", "c"}, alt={"d", "e", "f"})
    (unit,) = merge_phased_mutations([e1, e2])

    assert unit.is_phased
    assert unit.mutations == (M1, M2)
    assert unit.full_support_ids == frozenset({"d", "e"})
    assert unit.partial_support_ids == frozenset({"c", "f"})
    assert unit.evidence.alt_read_ids == frozenset({"d", "e"})
    # purified partial-support pairs stay informative as ref
    assert unit.evidence.ref_read_ids == frozenset({"a", "b", "c", "f"})
    assert unit.informative_reads == 6
    assert unit.purification_probability == pytest.approx(0.5)


def test_group_of_one_is_passthrough():
    single = Mutation("chr1", 100, "A", "G", phase_group="solo")
    e = ev(single, ref={"a"}, alt={"b"}, ambiguous={"c"})
    (unit,) = merge_phased_mutations([e])
    assert unit.evidence == e
    assert unit.purification_probability == 1.0
    assert not unit.is_phased


def test_ungrouped_mutations_pass_through_in_order():
    u1 = Mutation("chr1", 10, "A", "G")
    u2 = Mutation("chr2", 10, "A", "G")
    e1, e2, e3, e4 = ev(u1, alt={"x"}), ev(M1, alt={"y"}), ev(u2), ev(M2, alt={"y"})
    units = merge_phased_mutations([e1, e2, e3, e4])
    assert [len(u.mutations) for u in units] == [1, 2, 1]
    assert units[0].evidence == e1
    assert units[2].evidence == e3
    assert units[1].alt_count == 1


def test_no_alt_signal_gives_probability_one():
    (unit,) = merge_phased_mutations([ev(M1, ref={"a"}), ev(M2, ref={"a", "b"})])
    assert unit.purification_probability == 1.0
    assert unit.alt_count == 0
    assert unit.informative_reads == 2


def test_pairs_ambiguous_at_a_member_are_partial_support():
    (unit,) = merge_phased_mutations(
        [ev(M1, ref={"a"}, alt={"d"}, ambiguous={"z"}), ev(M2, ref={"a", "z"}, alt={"d"})]
    )
    assert unit.partial_support_ids == frozenset({"z"})
    assert unit.full_support_ids == frozenset({"d"})
    # purified like any partial-support pair
    assert "z" in unit.evidence.ref_read_ids
    assert unit.informative_reads == 3
    assert unit.purification_probability == pytest.approx(0.5)


def test_group_across_chromosomes_raises():
    other = Mutation("chr2", 100, "A", "G", phase_group="g")
    with pytest.raises(InconsistentPhaseGroup, match="g"):
        merge_phased_mutations([ev(M1), ev(other)])


def test_phased_background_rate():
    assert phased_background_rate([0.01], 0.3) == pytest.approx(0.01)
    assert phased_background_rate([0.01, 0.02], 0.5) == pytest.approx(1e-4)
    assert phased_background_rate([0.01, 0.01, 0.01], 1.0) < phased_background_rate([0.01, 0.01], 1.0)
    with pytest.raises(InvalidInput):
        phased_background_rate([], 1.0)
