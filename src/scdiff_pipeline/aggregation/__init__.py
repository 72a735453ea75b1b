"""
Aggregation of single-cell data.

Pseudobulk: raw counts summed per group key (e.g. sample x cell type).
"""

from scdiff_pipeline.aggregation.base import (
    AggregationStrategy,
    AggregatedData,
    AggregationConfig,
)
from scdiff_pipeline.aggregation.pseudobulk import (
    N_CELLS,
    PseudobulkAggregator,
    aggregate,
)

__all__ = [
    # Base
    "AggregationStrategy",
    "AggregatedData",
    "AggregationConfig",
    # Pseudobulk
    "N_CELLS",
    "PseudobulkAggregator",
    "aggregate",
]
