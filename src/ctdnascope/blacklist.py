from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional

import numpy as np

from .background import BackgroundPanel
from .errors import InvalidThreshold
from .models import Blacklist
from .utils import open_textmaybe_gzip

logger = logging.getLogger(__name__)


def _check_min_samples(name: str, value: Optional[int]) -> None:
    if value is not None and int(value) < 0:
        raise InvalidThreshold(f"{name} must be >= 0, got {value}")


def blacklist_criteria(
    panel: BackgroundPanel,
    *,
    mean_vaf_quantile: Optional[float] = None,
    min_samples_one_read: Optional[int] = None,
    min_samples_two_reads: Optional[int] = None,
) -> Dict[str, np.ndarray]:
    """Boolean row masks for each enabled criterion, plus the per-row mean VAF.

    mean VAF is averaged over samples with depth > 0; rows never covered have NaN and cannot
    trigger the quantile criterion.
    """
    if mean_vaf_quantile is not None and not (0.0 <= float(mean_vaf_quantile) <= 1.0):
        raise InvalidThreshold(f"mean_vaf_quantile must be in [0, 1], got {mean_vaf_quantile}")
    _check_min_samples("min_samples_one_read", min_samples_one_read)
    _check_min_samples("min_samples_two_reads", min_samples_two_reads)

    n = len(panel.keys)
    vaf = panel.vaf
    covered = panel.depth > 0
    n_covered = covered.sum(axis=1)
    with np.errstate(invalid="ignore", divide="ignore"):
        mean_vaf = np.where(n_covered > 0, np.nansum(vaf, axis=1) / np.maximum(n_covered, 1), np.nan)

    masks: Dict[str, np.ndarray] = {"mean_vaf": mean_vaf}

    if mean_vaf_quantile is not None:
        defined = mean_vaf[~np.isnan(mean_vaf)]
        if defined.size > 0:
            cutoff = float(np.quantile(defined, float(mean_vaf_quantile)))
            logger.info("mean VAF cutoff at quantile %.3f: %.4g", mean_vaf_quantile, cutoff)
            with np.errstate(invalid="ignore"):
                masks["vaf_quantile"] = np.nan_to_num(mean_vaf, nan=-np.inf) > cutoff
        else:
            masks["vaf_quantile"] = np.zeros(n, dtype=bool)

    if min_samples_one_read is not None:
        masks["one_read"] = (panel.alt >= 1).sum(axis=1) >= int(min_samples_one_read)

    if min_samples_two_reads is not None:
        masks["two_reads"] = (panel.alt >= 2).sum(axis=1) >= int(min_samples_two_reads)

    return masks


def build_blacklist(
    panel: BackgroundPanel,
    *,
    mean_vaf_quantile: Optional[float] = None,
    min_samples_one_read: Optional[int] = None,
    min_samples_two_reads: Optional[int] = None,
) -> Blacklist:
    """Select noisy rows of a background panel.

    A row is blacklisted if ANY enabled criterion holds:

    - its mean VAF exceeds the ``mean_vaf_quantile`` quantile of all mean VAFs;
    - at least ``min_samples_one_read`` samples have >= 1 alt read;
    - at least ``min_samples_two_reads`` samples have >= 2 alt reads.

    A criterion left as None is disabled; with all three disabled the blacklist is empty.
    The output granularity (loci or variants) follows the panel.
    """
    masks = blacklist_criteria(
        panel,
        mean_vaf_quantile=mean_vaf_quantile,
        min_samples_one_read=min_samples_one_read,
        min_samples_two_reads=min_samples_two_reads,
    )
    selected = np.zeros(len(panel.keys), dtype=bool)
    for name, mask in masks.items():
        if name == "mean_vaf":
            continue
        logger.info("Blacklist criterion %s selects %d rows", name, int(mask.sum()))
        selected |= mask

    entries = frozenset(panel.keys[i] for i in np.flatnonzero(selected))
    logger.info(
        "Blacklist: %d of %d %s",
        len(entries),
        len(panel.keys),
        "variants" if panel.substitution_specific else "loci",
    )
    return Blacklist(substitution_specific=panel.substitution_specific, entries=entries)


def write_blacklist_tsv(blacklist: Blacklist, path: str | Path) -> None:
    cols = ["chrom", "pos", "ref", "alt"] if blacklist.substitution_specific else ["chrom", "pos"]
    with open_textmaybe_gzip(path, "wt") as fh:
        fh.write("\t".join(cols) + "\n")
        for key in sorted(blacklist.entries):
            fh.write("\t".join(str(k) for k in key) + "\n")


def read_blacklist_tsv(path: str | Path) -> Blacklist:
    entries = set()
    with open_textmaybe_gzip(path, "rt") as fh:
        header = fh.readline().rstrip("\n").split("\t")
        substitution_specific = "alt" in header
        for line in fh:
            f = line.rstrip("\n").split("\t")
            if len(f) < 2:
                continue
            if substitution_specific:
                entries.add((f[0], int(f[1]), f[2].upper(), f[3].upper()))
            else:
                entries.add((f[0], int(f[1])))
    return Blacklist(substitution_specific=substitution_specific, entries=frozenset(entries))
