"""Exception types raised by ctdnascope.

Every error carries enough context (locus, region or file) for the caller to
find the faulty input. Ambiguous read pairs and reference-base mismatches are
handled locally and never raised.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class CtdnaScopeError(Exception):
    """Base class for all ctdnascope errors."""


class InvalidInput(CtdnaScopeError, ValueError):
    """Raised for malformed inputs or out-of-range parameters."""


class InvalidMutation(InvalidInput):
    """A mutation is not a single-nucleotide substitution, or is duplicated."""


class InvalidRegion(InvalidInput):
    """A genomic region has end < start or an otherwise invalid coordinate."""


class InvalidThreshold(InvalidInput):
    """A statistical parameter is outside its allowed range."""


class InconsistentPhaseGroup(InvalidInput):
    """Mutations sharing a phase id do not lie on a single chromosome."""


class BlacklistModeMismatch(InvalidInput):
    """A blacklist's granularity does not match the substitution_specific flag."""


class InsufficientCoverage(CtdnaScopeError, RuntimeError):
    """Background estimation found zero usable depth."""


class SourceUnavailable(CtdnaScopeError, OSError):
    """An alignment or reference source cannot satisfy a query."""

    def __init__(self, message: str, *, path: Optional[str | Path] = None) -> None:
        super().__init__(message)
        self.path = str(path) if path is not None else None
