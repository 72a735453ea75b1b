"""
Core infrastructure for scdiff-pipeline.

Provides:
- Expression matrix and cell metadata containers
- Configuration management
- Error taxonomy
- Chunked thread-pool execution
"""

from scdiff_pipeline.core.config import Config
from scdiff_pipeline.core.errors import (
    BackendError,
    ConstantCovariateWarning,
    EmptyGroupError,
    InsufficientReplicatesError,
    InvalidInputError,
    ScdiffError,
    SingularDesignError,
    SmallBucketWarning,
    UnknownGeneError,
    UnknownIdentifierError,
    UnsupportedInputError,
)
from scdiff_pipeline.core.log import setup_logging
from scdiff_pipeline.core.matrix import CellMetadata, ExpressionMatrix, GeneSet, align
from scdiff_pipeline.core.parallel import chunk_ranges, run_chunked

__all__ = [
    "Config",
    "CellMetadata",
    "ExpressionMatrix",
    "GeneSet",
    "align",
    "setup_logging",
    "chunk_ranges",
    "run_chunked",
    # Errors
    "ScdiffError",
    "InvalidInputError",
    "UnsupportedInputError",
    "UnknownGeneError",
    "UnknownIdentifierError",
    "SingularDesignError",
    "EmptyGroupError",
    "BackendError",
    "InsufficientReplicatesError",
    "SmallBucketWarning",
    "ConstantCovariateWarning",
]
