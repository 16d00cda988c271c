import logging

from ctdnascope.evidence import collect_read_evidence
from ctdnascope.models import Mutation, ReadFilters
from ctdnascope.sources import InMemoryAlignmentSource, InMemoryReference
from ctdnascope.toy_data import make_read_pair, toy_header

REF = "ACGT" * 500
HEADER = toy_header("chr1", len(REF))

# pos0 100 is 'A'
MUT = Mutation("chr1", 101, "A", "G")


def _pairs(n, *, start0=80, size=150, prefix="p", **kwargs):
    reads = []
    for i in range(n):
        reads.extend(make_read_pair(HEADER, f"{prefix}{i}", REF, start0, size, **kwargs))
    return reads


def test_ref_and_alt_pairs_counted():
    reads = _pairs(7) + _pairs(3, prefix="alt", substitutions={100: "G"})
    (ev,) = collect_read_evidence([MUT], InMemoryAlignmentSource(reads))
    assert ev.ref_count == 7
    assert ev.alt_count == 3
    assert ev.informative_reads == 10
    assert ev.alt_read_ids == frozenset({"alt0", "alt1", "alt2"})


def test_overlapping_mates_counted_once():
    # both mates cover pos0 100
    reads = _pairs(4, start0=90, size=60, substitutions={100: "G"})
    (ev,) = collect_read_evidence([MUT], InMemoryAlignmentSource(reads))
    assert ev.alt_count == 4
    assert ev.informative_reads == 4


def test_conflicting_mates_are_ambiguous():
    alt_r1, _ = make_read_pair(HEADER, "x", REF, 90, 60, substitutions={100: "G"})
    _, ref_r2 = make_read_pair(HEADER, "x", REF, 90, 60)
    reads = [alt_r1, ref_r2] + _pairs(2)
    (ev,) = collect_read_evidence([MUT], InMemoryAlignmentSource(reads))
    assert "x" in ev.ambiguous_read_ids
    assert "x" not in ev.ref_read_ids | ev.alt_read_ids
    assert ev.informative_reads == 2


def test_low_quality_and_other_bases_give_no_signal():
    reads = (
        _pairs(2, prefix="lowq", base_quality=10, substitutions={100: "G"})
        + _pairs(2, prefix="third", substitutions={100: "C"})
        + _pairs(1, prefix="ok")
    )
    (ev,) = collect_read_evidence([MUT], InMemoryAlignmentSource(reads))
    assert ev.alt_count == 0
    assert ev.ref_read_ids == frozenset({"ok0"})


def test_duplicates_dropped_unless_kept():
    reads = _pairs(2, prefix="dup", duplicate=True, substitutions={100: "G"})
    source = InMemoryAlignmentSource(reads)
    (ev,) = collect_read_evidence([MUT], source)
    assert ev.informative_reads == 0
    (ev,) = collect_read_evidence([MUT], source, filters=ReadFilters(drop_duplicates=False))
    assert ev.alt_count == 2


def test_no_overlapping_reads_is_empty_evidence():
    far = Mutation("chr1", 1801, "A", "T")
    (ev,) = collect_read_evidence([far], InMemoryAlignmentSource(_pairs(3)))
    assert ev.informative_reads == 0
    assert ev.alt_count == 0


def test_reference_mismatch_is_a_warning(caplog):
    wrong = Mutation("chr1", 101, "C", "G")
    reference = InMemoryReference({"chr1": REF})
    with caplog.at_level(logging.WARNING):
        (ev,) = collect_read_evidence([wrong], InMemoryAlignmentSource(_pairs(2)), reference=reference)
    assert "Reference mismatch" in caplog.text
    assert ev.mutation == wrong
