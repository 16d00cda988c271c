"""ctdnascope: ctDNA detection from known tumor SNVs and cell-free DNA fragmentomics.

Public API is intentionally small; most users should use the CLI:

    ctdnascope detect --bam ... --mutations ... --targets ... --ref ... --outdir ...

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
