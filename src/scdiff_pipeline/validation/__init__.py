"""
Validation of DE results.

Agreement between single-cell and pseudobulk differential expression.
"""

from scdiff_pipeline.validation.pseudobulk_vs_sc import (
    CATEGORIES,
    DEComparison,
    PseudobulkSCValidator,
    compare_de_results,
)

__all__ = [
    "CATEGORIES",
    "DEComparison",
    "PseudobulkSCValidator",
    "compare_de_results",
]
