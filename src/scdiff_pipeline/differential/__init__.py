"""
Differential expression.

Two-group comparisons with pluggable per-gene test backends.
"""

from scdiff_pipeline.differential.base import (
    BACKENDS,
    DEContext,
    DETestBackend,
    get_backend,
    register_backend,
)
from scdiff_pipeline.differential.wilcoxon import WilcoxonTest
from scdiff_pipeline.differential.ttest import TTest
from scdiff_pipeline.differential.negbinom import (
    NegativeBinomialTest,
    median_of_ratios,
)
from scdiff_pipeline.differential.hurdle import HurdleTest
from scdiff_pipeline.differential.effect_size import (
    EffectSizeCalculator,
    compute_log2fc,
)
from scdiff_pipeline.differential.fdr import (
    FDRCorrector,
    adjust_pvalues,
)
from scdiff_pipeline.differential.engine import (
    DE_COLUMNS,
    DEResult,
    DifferentialExpressionEngine,
    differential_expression,
    find_all_markers,
)

__all__ = [
    # Backends
    "BACKENDS",
    "DEContext",
    "DETestBackend",
    "get_backend",
    "register_backend",
    "WilcoxonTest",
    "TTest",
    "NegativeBinomialTest",
    "median_of_ratios",
    "HurdleTest",
    # Effect size
    "EffectSizeCalculator",
    "compute_log2fc",
    # Adjustment
    "FDRCorrector",
    "adjust_pvalues",
    # Engine
    "DE_COLUMNS",
    "DEResult",
    "DifferentialExpressionEngine",
    "differential_expression",
    "find_all_markers",
]
