import gzip
import json
import subprocess
import sys
from pathlib import Path

import pytest

from ctdnascope.toy_data import make_toy_data


def _run_cli(args: list[str]) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "ctdnascope"] + args,
        check=False,
        capture_output=True,
        text=True,
    )


@pytest.fixture(scope="module")
def toy(tmp_path_factory) -> dict:
    return make_toy_data(outdir=tmp_path_factory.mktemp("toy"))


def _detect_args(toy: dict, outdir: Path) -> list[str]:
    return [
        "detect",
        "--bam",
        toy["sample_bam"],
        "--mutations",
        toy["mutations_tsv"],
        "--phase-column",
        "phase",
        "--targets",
        toy["targets_bed"],
        "--ref",
        toy["ref_fa"],
        "--iterations",
        "2000",
        "--seed",
        "42",
        "--min-informative-reads",
        "10",
        "--outdir",
        str(outdir),
    ]


def test_quickstart_output() -> None:
    cp = _run_cli(["quickstart"])
    assert cp.returncode == 0
    assert "ctdnascope detect" in cp.stdout
    assert "ctdnascope background-panel" in cp.stdout


def test_make_toy_data_outputs(tmp_path: Path) -> None:
    toy_dir = tmp_path / "toy"
    cp = _run_cli(["make-toy-data", "--outdir", str(toy_dir)])
    assert cp.returncode == 0
    summary = json.loads(cp.stdout)
    assert Path(summary["sample_bam"]).exists()
    assert Path(summary["sample_bam"] + ".bai").exists()
    assert len(summary["normal_bams"]) == 3


def test_detect_dry_run_does_not_write_outputs(toy: dict, tmp_path: Path) -> None:
    outdir = tmp_path / "detect"
    cp = _run_cli(_detect_args(toy, outdir) + ["--dry-run"])
    assert cp.returncode == 0, cp.stderr
    assert "Dry-run" in cp.stdout
    assert "Mutations: 3" in cp.stdout
    assert not (outdir / "summary.json").exists()


def test_detect_writes_report_and_summary(toy: dict, tmp_path: Path) -> None:
    outdir = tmp_path / "detect"
    cp = _run_cli(_detect_args(toy, outdir))
    assert cp.returncode == 0, cp.stderr
    assert (outdir / "report.html").exists()
    assert (outdir / "logs" / "detect.log").exists()

    summary = json.loads((outdir / "summary.json").read_text())
    assert summary["status"] in ("POSITIVE", "NEGATIVE", "UNDETERMINED")
    assert summary["seed"] == 42
    # the two phased SNVs are tested as one unit
    assert len(summary["units"]) == 2
    assert sorted(u["n_mutations"] for u in summary["units"]) == [1, 2]
    assert summary["alt_count"] > 0

    # same seed, same p-value; reused background gives the same answer
    again = tmp_path / "again"
    cp = _run_cli(
        _detect_args(toy, again)[:-2]
        + ["--background", str(outdir / "background.json"), "--outdir", str(again)]
    )
    assert cp.returncode == 0, cp.stderr
    assert json.loads((again / "summary.json").read_text())["p_value"] == summary["p_value"]


def test_detect_requires_background_inputs(toy: dict, tmp_path: Path) -> None:
    cp = _run_cli(
        ["detect", "--bam", toy["sample_bam"], "--mutations", toy["mutations_tsv"], "--outdir", str(tmp_path / "x")]
    )
    assert cp.returncode == 2
    assert "--targets and --ref" in cp.stderr


def test_panel_blacklist_and_detect(toy: dict, tmp_path: Path) -> None:
    pon = tmp_path / "pon"
    cp = _run_cli(
        ["background-panel", "--bams", *toy["normal_bams"], "--targets", toy["targets_bed"], "--ref", toy["ref_fa"], "--outdir", str(pon)]
    )
    assert cp.returncode == 0, cp.stderr
    panel = pon / "panel.tsv.gz"
    with gzip.open(panel, "rt") as fh:
        header = fh.readline().rstrip("\n").split("\t")
    assert header == ["chrom", "pos", "sample", "depth", "alt_count", "vaf"]

    cp = _run_cli(["blacklist", "--panel", str(panel), "--min-samples-one-read", "1", "--outdir", str(pon)])
    assert cp.returncode == 0, cp.stderr
    assert (pon / "blacklist.tsv").exists()

    out = tmp_path / "detect"
    cp = _run_cli(_detect_args(toy, out) + ["--blacklist", str(pon / "blacklist.tsv")])
    assert cp.returncode == 0, cp.stderr

    # loci blacklist with substitution-specific mode is rejected
    cp = _run_cli(
        _detect_args(toy, tmp_path / "bad") + ["--blacklist", str(pon / "blacklist.tsv"), "--substitution-specific"]
    )
    assert cp.returncode == 2
    assert "BlacklistModeMismatch" in cp.stderr


def test_fragment_commands(toy: dict, tmp_path: Path) -> None:
    frag = tmp_path / "sample"
    cp = _run_cli(
        ["fragment-sizes", "--bam", toy["sample_bam"], "--mutations", toy["mutations_tsv"], "--outdir", str(frag)]
    )
    assert cp.returncode == 0, cp.stderr
    assert (frag / "fragments.tsv.gz").exists()

    cp = _run_cli(
        ["bin-fragments", "--fragments", str(frag / "fragments.tsv.gz"), "--bin-size", "10", "--normalized", "--outdir", str(tmp_path / "hist")]
    )
    assert cp.returncode == 0, cp.stderr
    rows = (tmp_path / "hist" / "histogram.tsv").read_text().splitlines()
    assert rows[0].split("\t") == ["lower", "upper", "sample"]
    assert sum(float(r.split("\t")[2]) for r in rows[1:]) == pytest.approx(1.0, abs=1e-3)

    cp = _run_cli(
        ["summarize-fragments", "--bam", toy["sample_bam"], "--regions", toy["targets_bed"], "--outdir", str(tmp_path / "sum")]
    )
    assert cp.returncode == 0, cp.stderr
    lines = (tmp_path / "sum" / "region_summary.tsv").read_text().splitlines()
    assert len(lines) == 3

    cp = _run_cli(["wps", "--bam", toy["sample_bam"], "--regions", toy["targets_bed"], "--outdir", str(tmp_path / "wps")])
    assert cp.returncode == 0, cp.stderr
    with gzip.open(tmp_path / "wps" / "wps.tsv.gz", "rt") as fh:
        # two 300 bp regions, 181 windows each
        assert len(fh.read().splitlines()) == 1 + 2 * 181


def test_contig_mismatch_message(toy: dict, tmp_path: Path) -> None:
    muts = tmp_path / "m.tsv"
    muts.write_text("chrom\tpos\tref\talt\n7\t100\tA\tG\n", encoding="utf-8")
    cp = _run_cli(
        [
            "detect",
            "--bam",
            toy["sample_bam"],
            "--mutations",
            str(muts),
            "--targets",
            toy["targets_bed"],
            "--ref",
            toy["ref_fa"],
            "--outdir",
            str(tmp_path / "out"),
        ]
    )
    assert cp.returncode != 0
    assert "Contig mismatch" in cp.stderr
