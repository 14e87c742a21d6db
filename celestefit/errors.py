"""
Error kinds raised by celestefit.

Source-level kinds (``SOURCE_FAILURES``) are caught by the driver loop and
turned into per-source failures; everything else aborts the run.
"""

from __future__ import annotations

from typing import Sequence


class CelesteError(Exception):
    """Base class for celestefit errors."""


class TransformError(CelesteError, ValueError):
    """Malformed constrained input or a length mismatch in a transform call."""


class TrimmingExhausted(CelesteError):
    def __init__(self, source: int, msg: str | None = None):
        self.source = int(source)
        super().__init__(msg or f"no tiles survive trimming for source {self.source}")


class NumericalDivergence(CelesteError):
    def __init__(self, sources: Sequence[int], iteration: int, what: str):
        self.sources = [int(s) for s in sources]
        self.iteration = int(iteration)
        self.what = str(what)
        super().__init__(f"non-finite {self.what} at evaluation {self.iteration} for sources {self.sources}")


class NoMatchFound(CelesteError, LookupError):
    """No catalog position lies within the requested distance."""


SOURCE_FAILURES: tuple[type[CelesteError], ...] = (TrimmingExhausted, NumericalDivergence, TransformError)
