from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from . import __version__
from .background import (
    BackgroundRate,
    build_background_panel,
    read_panel_tsv,
    write_panel_tsv,
)
from .blacklist import build_blacklist, read_blacklist_tsv, write_blacklist_tsv
from .detection import DetectionResult, detect_ctdna
from .fragments import (
    SUMMARY_FUNCTIONS,
    bin_fragment_sizes,
    extract_fragments,
    read_fragment_sizes,
    resolve_summary_functions,
    summarize_fragment_sizes,
    write_fragments_tsv,
    write_histograms_tsv,
    write_region_summaries_tsv,
)
from .inputs import load_mutations, load_targets, reconcile_contigs
from .models import Blacklist, ReadFilters
from .montecarlo import DEFAULT_ITERATIONS
from .report import render_report
from .sources import BamAlignmentSource, FastaReference
from .toy_data import make_toy_data
from .utils import ensure_outdir, format_float, open_textmaybe_gzip, write_json
from .validation import check_bam_index, check_fasta_index
from .wps import compute_wps, write_wps_tsv


def _setup_logging(verbosity: int, *, logfile: Optional[Path] = None) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    log_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stderr)

    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile)
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(log_fmt))
        logging.getLogger().addHandler(fh)


def _path_exists(p: str) -> str:
    if not Path(p).exists():
        raise argparse.ArgumentTypeError(f"Path does not exist: {p}")
    return p


def _optional_float(s: str) -> Optional[float]:
    if s.strip().lower() in ("none", "off", ""):
        return None
    try:
        return float(s)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Expected a number or 'none', got {s!r}") from e


def _int_list(s: str) -> List[int]:
    try:
        return [int(x) for x in s.split(",") if x.strip()]
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Expected comma-separated integers, got {s!r}") from e


def _log_path(outdir: Path, name: str) -> Path:
    return outdir / "logs" / name


def _handle_error(err: Exception, *, log_path: Optional[Path] = None) -> int:
    msg = f"{err.__class__.__name__}: {err}"
    sys.stderr.write(msg + "\n")
    if log_path is not None:
        sys.stderr.write(f"See log: {log_path}\n")
    return 2


def _add_read_filter_args(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group("read filters")
    g.add_argument("--min-baseq", type=int, default=20, help="Minimum base quality.")
    g.add_argument("--min-mapq", type=int, default=30, help="Minimum mapping quality (read and mate).")
    g.add_argument("--no-proper-pair", action="store_true", help="Do not require the proper-pair flag.")
    g.add_argument("--keep-duplicates", action="store_true", help="Do not skip duplicate reads.")
    g.add_argument("--simple-cigar", action="store_true", help="Only use reads with a single M/=/X operation.")
    g.add_argument(
        "--strand",
        choices=["forward", "reverse"],
        default=None,
        help="Only use reads aligned to this strand.",
    )
    g.add_argument("--trim-ends", type=int, default=0, help="Ignore bases this close to either read end.")


def _filters_from_args(args: argparse.Namespace) -> ReadFilters:
    return ReadFilters(
        min_base_quality=int(args.min_baseq),
        min_mapq=int(args.min_mapq),
        require_proper_pair=not bool(args.no_proper_pair),
        drop_duplicates=not bool(args.keep_duplicates),
        simple_cigar=bool(args.simple_cigar),
        strand=args.strand,
        trim_ends=int(args.trim_ends),
    )


def _add_common_run_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--dry-run", action="store_true", help="Validate inputs and print planned outputs.")
    p.add_argument("--resume", action="store_true", help="Skip if outputs already exist.")
    p.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")


def _add_size_args(p: argparse.ArgumentParser, *, min_size: int = 1, max_size: int = 1000) -> None:
    p.add_argument("--min-size", type=int, default=min_size, help="Minimum fragment size.")
    p.add_argument("--max-size", type=int, default=max_size, help="Maximum fragment size.")
    p.add_argument(
        "--allow-same-strand",
        action="store_true",
        help="Also keep pairs whose mates align to the same strand.",
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="ctdnascope",
        description=(
            "ctdnascope: ctDNA detection from known SNVs (Monte-Carlo test against background "
            "sequencing error) and cell-free DNA fragment size / WPS profiling."
        ),
    )
    p.add_argument("--version", action="version", version=f"ctdnascope {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # -----------------
    # quickstart
    # -----------------
    sub.add_parser(
        "quickstart",
        help="Print ready-to-run recipes for common scenarios.",
    )

    # -----------------
    # make-toy-data
    # -----------------
    t = sub.add_parser(
        "make-toy-data",
        help="Generate a tiny reference, paired-end BAMs, mutations and targets for demos/tests.",
    )
    t.add_argument("--outdir", required=True, help="Output directory for toy data.")
    t.add_argument("--dry-run", action="store_true", help="Validate paths without writing files.")

    # -----------------
    # detect
    # -----------------
    d = sub.add_parser(
        "detect",
        help="Test a sample for ctDNA using its known tumor SNVs.",
    )
    d.add_argument("--bam", required=True, type=_path_exists, help="Sample BAM (sorted, indexed).")
    d.add_argument(
        "--mutations",
        required=True,
        type=_path_exists,
        help="Mutation list: TSV with chrom/pos/ref/alt columns, or VCF.",
    )
    d.add_argument("--phase-column", default=None, help="TSV column holding the phase group id.")
    d.add_argument("--targets", type=_path_exists, default=None, help="Target regions (BED or TSV).")
    d.add_argument("--ref", type=_path_exists, default=None, help="Reference FASTA (indexed).")
    d.add_argument(
        "--background",
        type=_path_exists,
        default=None,
        help="Reuse a background.json from an earlier run instead of estimating it.",
    )
    d.add_argument("--blacklist", type=_path_exists, default=None, help="Blacklist TSV from 'ctdnascope blacklist'.")
    d.add_argument(
        "--substitution-specific",
        action="store_true",
        help="Use substitution-specific background rates (requires a variant-level blacklist if any).",
    )
    d.add_argument(
        "--vaf-threshold",
        type=_optional_float,
        default=0.1,
        help="Exclude background positions with non-reference fraction above this ('none' disables).",
    )
    d.add_argument("--iterations", type=int, default=DEFAULT_ITERATIONS, help="Monte-Carlo iterations.")
    d.add_argument("--seed", type=int, default=None, help="Random seed for a reproducible p-value.")
    d.add_argument("--alpha", type=float, default=0.05, help="Significance level for POSITIVE.")
    d.add_argument(
        "--min-informative-reads",
        type=int,
        default=10_000,
        help="Below this many informative read pairs the call is UNDETERMINED.",
    )
    d.add_argument("--threads", type=int, default=1, help="Worker threads for the simulation.")
    d.add_argument("--sample", default=None, help="Sample name for the report (default: BAM file name).")
    d.add_argument("--outdir", required=True, help="Output directory.")
    _add_read_filter_args(d)
    _add_common_run_args(d)

    # -----------------
    # background-panel
    # -----------------
    bp = sub.add_parser(
        "background-panel",
        help="Count per-locus depth and alt reads across normal samples.",
    )
    bp.add_argument("--bams", required=True, nargs="+", type=_path_exists, help="Normal sample BAMs.")
    bp.add_argument("--targets", required=True, type=_path_exists, help="Target regions (BED or TSV).")
    bp.add_argument("--ref", required=True, type=_path_exists, help="Reference FASTA (indexed).")
    bp.add_argument("--substitution-specific", action="store_true", help="One row per locus and alt base.")
    bp.add_argument("--threads", type=int, default=1, help="Worker processes (one sample each).")
    bp.add_argument("--outdir", required=True, help="Output directory.")
    _add_read_filter_args(bp)
    _add_common_run_args(bp)

    # -----------------
    # blacklist
    # -----------------
    bl = sub.add_parser(
        "blacklist",
        help="Select recurrently noisy loci/variants from a background panel.",
    )
    bl.add_argument("--panel", required=True, type=_path_exists, help="panel.tsv.gz from background-panel.")
    bl.add_argument("--mean-vaf-quantile", type=float, default=None, help="Blacklist rows above this mean-VAF quantile.")
    bl.add_argument(
        "--min-samples-one-read",
        type=int,
        default=None,
        help="Blacklist rows with >= 1 alt read in at least this many samples.",
    )
    bl.add_argument(
        "--min-samples-two-reads",
        type=int,
        default=None,
        help="Blacklist rows with >= 2 alt reads in at least this many samples.",
    )
    bl.add_argument("--outdir", required=True, help="Output directory.")
    _add_common_run_args(bl)

    # -----------------
    # fragment-sizes
    # -----------------
    fs = sub.add_parser(
        "fragment-sizes",
        help="Extract one fragment per qualifying read pair.",
    )
    fs.add_argument("--bam", required=True, type=_path_exists, help="Sample BAM (sorted, indexed).")
    fs.add_argument("--targets", type=_path_exists, default=None, help="Restrict to fragments overlapping these regions.")
    fs.add_argument("--mutations", type=_path_exists, default=None, help="Tag fragments carrying these alt alleles.")
    fs.add_argument("--outdir", required=True, help="Output directory.")
    _add_size_args(fs)
    _add_read_filter_args(fs)
    _add_common_run_args(fs)

    # -----------------
    # bin-fragments
    # -----------------
    bf = sub.add_parser(
        "bin-fragments",
        help="Histogram fragment sizes of one or more fragments tables.",
    )
    bf.add_argument(
        "--fragments",
        required=True,
        nargs="+",
        type=_path_exists,
        help="fragments.tsv.gz files; the sample name is taken from the parent directory.",
    )
    g = bf.add_mutually_exclusive_group()
    g.add_argument("--bin-size", type=int, default=2, help="Fixed bin width.")
    g.add_argument("--breaks", type=_int_list, default=None, help="Custom bin breaks, e.g. 1,100,150,200,1000.")
    bf.add_argument("--min-size", type=int, default=1, help="Minimum fragment size.")
    bf.add_argument("--max-size", type=int, default=1000, help="Maximum fragment size.")
    bf.add_argument("--normalized", action="store_true", help="Report fractions instead of counts.")
    bf.add_argument("--outdir", required=True, help="Output directory.")
    _add_common_run_args(bf)

    # -----------------
    # summarize-fragments
    # -----------------
    sf = sub.add_parser(
        "summarize-fragments",
        help="Per-region summary statistics of fragment sizes.",
    )
    sf.add_argument("--bam", required=True, type=_path_exists, help="Sample BAM (sorted, indexed).")
    sf.add_argument("--regions", required=True, type=_path_exists, help="Regions (BED or TSV).")
    sf.add_argument(
        "--summary",
        nargs="+",
        choices=sorted(SUMMARY_FUNCTIONS),
        default=["mean", "sd", "median"],
        help="Statistics to report.",
    )
    sf.add_argument("--outdir", required=True, help="Output directory.")
    _add_size_args(sf)
    _add_read_filter_args(sf)
    _add_common_run_args(sf)

    # -----------------
    # wps
    # -----------------
    w = sub.add_parser(
        "wps",
        help="Windowed Protection Score across regions.",
    )
    w.add_argument("--bam", required=True, type=_path_exists, help="Sample BAM (sorted, indexed).")
    w.add_argument("--regions", required=True, type=_path_exists, help="Regions (BED or TSV).")
    w.add_argument("--window-size", type=int, default=120, help="Window width.")
    w.add_argument("--step-size", type=int, default=1, help="Window step.")
    w.add_argument("--outdir", required=True, help="Output directory.")
    _add_size_args(w, min_size=120, max_size=180)
    _add_read_filter_args(w)
    _add_common_run_args(w)

    return p


def cmd_quickstart() -> int:
    lines = [
        "ctdnascope quickstart (copy/paste):",
        "",
        "1) Detect ctDNA from known tumor SNVs:",
        "   ctdnascope detect \\",
        "     --bam plasma.bam \\",
        "     --mutations mutations.tsv \\",
        "     --targets panel.bed \\",
        "     --ref ref.fa \\",
        "     --seed 42 \\",
        "     --outdir results/",
        "   Outputs: results/report.html, results/summary.json, results/units.tsv, results/background.json",
        "",
        "2) Background panel and blacklist from normal samples:",
        "   ctdnascope background-panel \\",
        "     --bams normal1.bam normal2.bam normal3.bam \\",
        "     --targets panel.bed \\",
        "     --ref ref.fa \\",
        "     --outdir pon/",
        "   ctdnascope blacklist \\",
        "     --panel pon/panel.tsv.gz \\",
        "     --mean-vaf-quantile 0.95 --min-samples-one-read 2 \\",
        "     --outdir pon/",
        "   Then pass --blacklist pon/blacklist.tsv to detect.",
        "",
        "3) Fragment sizes and WPS:",
        "   ctdnascope fragment-sizes --bam plasma.bam --targets panel.bed --outdir frag/",
        "   ctdnascope bin-fragments --fragments frag/fragments.tsv.gz --normalized --outdir frag/",
        "   ctdnascope wps --bam plasma.bam --regions panel.bed --outdir wps/",
        "",
        "Tip: use --dry-run to validate inputs and print the planned outputs.",
    ]
    print("\n".join(lines))
    return 0


def cmd_make_toy_data(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    if args.dry_run:
        print(f"Would write toy data into: {outdir}")
        return 0

    summary = make_toy_data(outdir=outdir)
    print(json.dumps(summary, indent=2))
    return 0


def _print_plan(outputs: Dict[str, Path]) -> None:
    print("Dry-run: inputs look OK.")
    print("Planned outputs:")
    for name, path in outputs.items():
        print(f"  {name} -> {path}")


def _bam_contigs(bam_path: str) -> List[str]:
    with BamAlignmentSource(bam_path) as src:
        return [c for c, _ in src.references()]


def _write_units_tsv(result: DetectionResult, path: Path) -> None:
    cols = [
        "label",
        "n_mutations",
        "ref_reads",
        "alt_reads",
        "informative_reads",
        "background_rate",
        "purification_probability",
    ]
    with open_textmaybe_gzip(path, "wt") as fh:
        fh.write("\t".join(cols) + "\n")
        for u in result.units:
            fh.write(
                "\t".join(
                    [
                        u.label,
                        str(u.n_mutations),
                        str(u.ref_reads),
                        str(u.alt_reads),
                        str(u.informative_reads),
                        format_float(u.background_rate),
                        format_float(u.purification_probability),
                    ]
                )
                + "\n"
            )


def cmd_detect(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "detect.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)

    logger = logging.getLogger("ctdnascope")
    logger.info("ctdnascope %s", __version__)

    outputs = {
        "report.html": outdir / "report.html",
        "summary.json": outdir / "summary.json",
        "units.tsv": outdir / "units.tsv",
        "background.json": outdir / "background.json",
    }

    try:
        if args.background is None and (args.targets is None or args.ref is None):
            raise ValueError("detect needs --targets and --ref to estimate the background (or --background).")
        check_bam_index(args.bam)
        if args.ref is not None:
            check_fasta_index(args.ref)

        mutations = load_mutations(args.mutations, phase_column=args.phase_column)
        targets = load_targets(args.targets) if args.targets is not None else []
        mutations, targets = reconcile_contigs(mutations, targets, _bam_contigs(args.bam))
        blacklist: Optional[Blacklist] = read_blacklist_tsv(args.blacklist) if args.blacklist else None

        if args.dry_run:
            print(f"Mutations: {len(mutations)}")
            print(f"Targets: {len(targets)}")
            if blacklist is not None:
                print(f"Blacklist entries: {len(blacklist)}")
            _print_plan(outputs)
            return 0

        outdir = ensure_outdir(outdir)

        if args.resume and outputs["summary.json"].exists():
            logger.info("Resume enabled: summary.json already exists in %s", outdir)
            print(str(outputs["report.html"]))
            return 0

        background: Optional[BackgroundRate] = None
        if args.background is not None:
            with open(args.background, "rt", encoding="utf-8") as fh:
                background = BackgroundRate.from_dict(json.load(fh))

        reference = FastaReference(args.ref) if args.ref is not None else None
        try:
            with BamAlignmentSource(args.bam) as source:
                result = detect_ctdna(
                    mutations,
                    source,
                    targets=targets or None,
                    reference=reference,
                    background=background,
                    blacklist=blacklist,
                    substitution_specific=bool(args.substitution_specific),
                    filters=_filters_from_args(args),
                    vaf_threshold=args.vaf_threshold,
                    informative_reads_threshold=int(args.min_informative_reads),
                    alpha=float(args.alpha),
                    n_iterations=int(args.iterations),
                    seed=args.seed,
                    n_workers=int(args.threads),
                    progress=True,
                )
        finally:
            if reference is not None:
                reference.close()

        summary = result.to_dict()
        summary["version"] = __version__
        summary["bam_path"] = str(args.bam)
        write_json(outputs["summary.json"], summary)
        write_json(outputs["background.json"], result.background.to_dict())
        _write_units_tsv(result, outputs["units.tsv"])

        sample = args.sample or Path(args.bam).name
        report_path = render_report(
            outdir=outdir,
            version=__version__,
            result=result,
            sample=sample,
            inputs={
                "BAM": str(args.bam),
                "Mutations": str(args.mutations),
                "Targets": str(args.targets or "-"),
                "Blacklist": str(args.blacklist or "-"),
            },
        )

        logger.info("Report written: %s", report_path)
        print(f"{result.status}\tp={format_float(result.p_value, 4)}")
        print(str(report_path))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def _sample_names(paths: Sequence[str]) -> Dict[str, str]:
    names: Dict[str, str] = {}
    for p in paths:
        name = Path(p).name
        for suffix in (".bam", ".cram"):
            if name.endswith(suffix):
                name = name[: -len(suffix)]
        if name in names:
            raise ValueError(f"Duplicate sample name '{name}' ({names[name]} and {p})")
        names[name] = p
    return names


def cmd_background_panel(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "background_panel.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)
    logger = logging.getLogger("ctdnascope")

    panel_path = outdir / "panel.tsv.gz"
    try:
        samples = _sample_names(args.bams)
        for p in samples.values():
            check_bam_index(p)
        check_fasta_index(args.ref)
        targets = load_targets(args.targets)

        if args.dry_run:
            print(f"Samples: {len(samples)}")
            print(f"Targets: {len(targets)}")
            _print_plan({"panel.tsv.gz": panel_path})
            return 0

        outdir = ensure_outdir(outdir)
        if args.resume and panel_path.exists():
            logger.info("Resume enabled: %s already exists", panel_path)
            print(str(panel_path))
            return 0

        panel = build_background_panel(
            samples,
            targets,
            args.ref,
            substitution_specific=bool(args.substitution_specific),
            filters=_filters_from_args(args),
            n_workers=int(args.threads),
            progress=True,
        )
        write_panel_tsv(panel, panel_path)
        print(str(panel_path))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def cmd_blacklist(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "blacklist.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)
    logger = logging.getLogger("ctdnascope")

    out_path = outdir / "blacklist.tsv"
    try:
        if args.dry_run:
            _print_plan({"blacklist.tsv": out_path})
            return 0

        outdir = ensure_outdir(outdir)
        if args.resume and out_path.exists():
            logger.info("Resume enabled: %s already exists", out_path)
            print(str(out_path))
            return 0

        panel = read_panel_tsv(args.panel)
        bl = build_blacklist(
            panel,
            mean_vaf_quantile=args.mean_vaf_quantile,
            min_samples_one_read=args.min_samples_one_read,
            min_samples_two_reads=args.min_samples_two_reads,
        )
        write_blacklist_tsv(bl, out_path)
        print(f"{len(bl)} entries")
        print(str(out_path))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def cmd_fragment_sizes(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "fragment_sizes.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)
    logger = logging.getLogger("ctdnascope")

    out_path = outdir / "fragments.tsv.gz"
    try:
        check_bam_index(args.bam)
        regions = load_targets(args.targets) if args.targets else None
        mutations = load_mutations(args.mutations) if args.mutations else None

        if args.dry_run:
            _print_plan({"fragments.tsv.gz": out_path})
            return 0

        outdir = ensure_outdir(outdir)
        if args.resume and out_path.exists():
            logger.info("Resume enabled: %s already exists", out_path)
            print(str(out_path))
            return 0

        with BamAlignmentSource(args.bam) as source:
            frags = extract_fragments(
                source,
                regions=regions,
                mutations=mutations,
                filters=_filters_from_args(args),
                min_size=int(args.min_size),
                max_size=int(args.max_size),
                different_strands=not bool(args.allow_same_strand),
                progress=True,
            )
        write_fragments_tsv(frags, out_path)
        print(str(out_path))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def cmd_bin_fragments(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "bin_fragments.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)
    logger = logging.getLogger("ctdnascope")

    out_path = outdir / "histogram.tsv"
    try:
        names: Dict[str, str] = {}
        for p in args.fragments:
            name = Path(p).resolve().parent.name
            if name in names:
                name = f"{name}_{len(names) + 1}"
            names[name] = p

        if args.dry_run:
            print(f"Samples: {', '.join(names)}")
            _print_plan({"histogram.tsv": out_path})
            return 0

        outdir = ensure_outdir(outdir)
        if args.resume and out_path.exists():
            logger.info("Resume enabled: %s already exists", out_path)
            print(str(out_path))
            return 0

        hists = {
            name: bin_fragment_sizes(
                read_fragment_sizes(p),
                bin_size=None if args.breaks else int(args.bin_size),
                breaks=args.breaks,
                min_size=int(args.min_size),
                max_size=int(args.max_size),
                normalized=bool(args.normalized),
            )
            for name, p in names.items()
        }
        write_histograms_tsv(hists, out_path)
        print(str(out_path))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def cmd_summarize_fragments(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "summarize_fragments.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)
    logger = logging.getLogger("ctdnascope")

    out_path = outdir / "region_summary.tsv"
    try:
        check_bam_index(args.bam)
        regions = load_targets(args.regions)
        funcs = resolve_summary_functions(args.summary)

        if args.dry_run:
            print(f"Regions: {len(regions)}")
            _print_plan({"region_summary.tsv": out_path})
            return 0

        outdir = ensure_outdir(outdir)
        if args.resume and out_path.exists():
            logger.info("Resume enabled: %s already exists", out_path)
            print(str(out_path))
            return 0

        with BamAlignmentSource(args.bam) as source:
            summaries = summarize_fragment_sizes(
                source,
                regions,
                summary_functions=funcs,
                filters=_filters_from_args(args),
                min_size=int(args.min_size),
                max_size=int(args.max_size),
                different_strands=not bool(args.allow_same_strand),
            )
        write_region_summaries_tsv(summaries, out_path)
        print(str(out_path))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def cmd_wps(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "wps.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)
    logger = logging.getLogger("ctdnascope")

    out_path = outdir / "wps.tsv.gz"
    try:
        check_bam_index(args.bam)
        regions = load_targets(args.regions)

        if args.dry_run:
            print(f"Regions: {len(regions)}")
            _print_plan({"wps.tsv.gz": out_path})
            return 0

        outdir = ensure_outdir(outdir)
        if args.resume and out_path.exists():
            logger.info("Resume enabled: %s already exists", out_path)
            print(str(out_path))
            return 0

        with BamAlignmentSource(args.bam) as source:
            windows = compute_wps(
                source,
                regions,
                window_size=int(args.window_size),
                step_size=int(args.step_size),
                min_size=int(args.min_size),
                max_size=int(args.max_size),
                filters=_filters_from_args(args),
                different_strands=not bool(args.allow_same_strand),
            )
        write_wps_tsv(windows, out_path)
        print(str(out_path))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


_COMMANDS: Dict[str, Callable[[argparse.Namespace], int]] = {
    "make-toy-data": cmd_make_toy_data,
    "detect": cmd_detect,
    "background-panel": cmd_background_panel,
    "blacklist": cmd_blacklist,
    "fragment-sizes": cmd_fragment_sizes,
    "bin-fragments": cmd_bin_fragments,
    "summarize-fragments": cmd_summarize_fragments,
    "wps": cmd_wps,
}


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "quickstart":
        return cmd_quickstart()
    handler = _COMMANDS.get(args.cmd)
    if handler is None:
        parser.error(f"Unknown command: {args.cmd}")
        return 2
    return handler(args)
