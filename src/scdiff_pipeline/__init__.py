"""
scdiff-pipeline - Single-cell differential expression with pseudobulk validation.

This package provides pipelines for:
- Normalization of raw counts (log, relative, CLR)
- Gene-set signature scoring and cell-cycle phase assignment
- Covariate regression (regress out cell-cycle effects)
- Pseudobulk aggregation by sample / cell-type keys
- Differential expression with pluggable backends
  (Wilcoxon, Welch t, negative binomial, hurdle)
- Single-cell vs pseudobulk agreement

Example:
    >>> from scdiff_pipeline import Pipeline, Config, ExpressionMatrix, CellMetadata
    >>>
    >>> counts, metadata = ExpressionMatrix.from_anndata(adata)
    >>> pipeline = Pipeline(Config(seed=0, n_workers=4))
    >>> result = pipeline.run_comparison(
    ...     counts, metadata,
    ...     group1="stim", group2="ctrl", group_by="condition",
    ... )
"""

__version__ = "0.1.0"

# Core infrastructure
from scdiff_pipeline.core.config import Config
from scdiff_pipeline.core.matrix import CellMetadata, ExpressionMatrix, GeneSet, align

# Stage entry points
from scdiff_pipeline.preprocessing import normalize, regress_out, scale_data
from scdiff_pipeline.scoring import score_cell_cycle, score_signatures
from scdiff_pipeline.aggregation import aggregate
from scdiff_pipeline.differential import (
    DEResult,
    DifferentialExpressionEngine,
    differential_expression,
    find_all_markers,
)
from scdiff_pipeline.validation import compare_de_results

# Main Pipeline class
from scdiff_pipeline.pipeline import Pipeline, PipelineResult, create_pipeline

__all__ = [
    # Version
    "__version__",
    # Pipeline
    "Pipeline",
    "PipelineResult",
    "create_pipeline",
    # Core
    "Config",
    "CellMetadata",
    "ExpressionMatrix",
    "GeneSet",
    "align",
    # Stages
    "normalize",
    "regress_out",
    "scale_data",
    "score_signatures",
    "score_cell_cycle",
    "aggregate",
    "DEResult",
    "DifferentialExpressionEngine",
    "differential_expression",
    "find_all_markers",
    "compare_de_results",
]
