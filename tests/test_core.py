import pysam

from ctdnascope.models import ReadFilters
from ctdnascope.reads import base_at, extract_bases_at_positions, iter_aligned_bases, passes_read_filters


def make_read(seq: str, start: int = 100, cigar=None, flag: int = 0x3, mapq: int = 60) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment()
    a.query_name = "r1"
    a.query_sequence = seq
    a.flag = flag
    a.reference_start = start
    a.mapping_quality = mapq
    a.cigartuples = cigar or [(0, len(seq))]  # M
    # high qualities
    a.query_qualities = pysam.qualitystring_to_array("I" * len(seq))
    return a


def test_extract_bases_simple_match():
    read = make_read("ACGTACGTAA", start=100)
    pos = [100, 103, 109]  # A, T, A
    out = extract_bases_at_positions(read, pos)
    assert out[100][0] == "A"
    assert out[103][0] == "T"
    assert out[109][0] == "A"
    assert out[100][1] == 40


def test_deletion_gives_no_base():
    # 4M 2D 6M: reference 104-105 deleted
    read = make_read("ACGTACGTAA", start=100, cigar=[(0, 4), (2, 2), (0, 6)])
    out = extract_bases_at_positions(read, [103, 104, 105, 106])
    assert out[103][0] == "T"
    assert 104 not in out
    assert 105 not in out
    assert out[106][0] == "A"


def test_insertion_and_soft_clip_shift_query():
    # 2S 3M 2I 3M: reference starts at query index 2
    read = make_read("TTACGGGTAC", start=100, cigar=[(4, 2), (0, 3), (1, 2), (0, 3)])
    out = extract_bases_at_positions(read, [100, 102, 103])
    assert out[100][0] == "A"
    assert out[102][0] == "G"
    assert out[103][0] == "T"


def test_trim_ends_hides_read_ends():
    read = make_read("ACGTACGTAA", start=100)
    assert base_at(read, 100, trim_ends=2) is None
    assert base_at(read, 101, trim_ends=2) is None
    assert base_at(read, 102, trim_ends=2) == ("G", 40)
    assert base_at(read, 109, trim_ends=2) is None


def test_iter_aligned_bases_clips_to_interval():
    read = make_read("ACGTACGTAA", start=100)
    got = [(p, b) for p, b, _ in iter_aligned_bases(read, 98, 103)]
    assert got == [(100, "A"), (101, "C"), (102, "G")]


def test_read_filters():
    f = ReadFilters()
    assert passes_read_filters(make_read("ACGT"), f)
    assert not passes_read_filters(make_read("ACGT", flag=0x3 | 0x400), f)
    assert passes_read_filters(make_read("ACGT", flag=0x3 | 0x400), ReadFilters(drop_duplicates=False))
    assert not passes_read_filters(make_read("ACGT", mapq=10), f)
    assert not passes_read_filters(make_read("ACGT", flag=0x1), f)
    assert passes_read_filters(make_read("ACGT", flag=0), ReadFilters(require_proper_pair=False))
    assert not passes_read_filters(make_read("ACGT", flag=0x3 | 0x100), f)
    assert not passes_read_filters(make_read("ACGT", flag=0x3 | 0x10), ReadFilters(strand="forward"))
    assert passes_read_filters(make_read("ACGT", flag=0x3 | 0x10), ReadFilters(strand="reverse"))

    clipped = make_read("ACGTAC", cigar=[(4, 2), (0, 4)])
    assert passes_read_filters(clipped, f)
    assert not passes_read_filters(clipped, ReadFilters(simple_cigar=True))
