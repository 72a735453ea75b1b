"""
Error taxonomy for the analysis engine.

Per-gene problems (unknown gene, a single failed backend call) are recovered
locally by the caller: the gene is skipped and counted. Structural problems
(empty group, singular design, unknown group label) abort the enclosing call.
"""

from __future__ import annotations

from typing import Optional


class ScdiffError(Exception):
    """Base class for all engine errors."""


class InvalidInputError(ScdiffError, ValueError):
    """Malformed or contradictory input (negative counts, zero-total cell, ...)."""


class UnsupportedInputError(ScdiffError, ValueError):
    """A stage was given values on the wrong scale (e.g. normalized instead of counts)."""


class UnknownGeneError(ScdiffError, LookupError):
    """A requested gene is absent from the matrix.

    Non-fatal: scorers and the DE engine record these and skip the gene.
    """

    def __init__(self, gene: str, context: str = ""):
        self.gene = gene
        self.context = context
        msg = f"Gene '{gene}' not found in matrix"
        if context:
            msg += f" ({context})"
        super().__init__(msg)


class UnknownIdentifierError(ScdiffError, LookupError):
    """A metadata field or group label referenced by the caller does not exist."""


class SingularDesignError(ScdiffError):
    """The covariate design matrix is rank deficient."""


class EmptyGroupError(ScdiffError):
    """A resolved comparison group has no columns."""


class BackendError(ScdiffError):
    """Failure inside a differential-expression test backend.

    The original exception is chained as ``__cause__``.
    """

    def __init__(self, message: str, gene: Optional[str] = None, backend: Optional[str] = None):
        self.gene = gene
        self.backend = backend
        super().__init__(message)


class InsufficientReplicatesError(BackendError):
    """A count-based test was given fewer than two samples in a group."""


class SmallBucketWarning(UserWarning):
    """A pseudobulk bucket had fewer cells than the configured minimum and was dropped."""


class ConstantCovariateWarning(UserWarning):
    """A regression covariate had zero variance and was dropped from the design."""
