"""
Base interfaces for aggregation strategies.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import pandas as pd

from scdiff_pipeline.core.config import AggregationConfig
from scdiff_pipeline.core.matrix import CellMetadata, ExpressionMatrix


@dataclass
class AggregatedData:
    """
    Result of aggregation operation.

    Contains the aggregated matrix and per-unit metadata.
    """

    matrix: ExpressionMatrix
    """Aggregated expression (genes x aggregation units)."""

    metadata: CellMetadata
    """Metadata for each aggregation unit (column of the matrix)."""

    aggregation_type: str
    """Type of aggregation performed."""

    config: AggregationConfig
    """Configuration used."""

    stats: dict[str, Any] = field(default_factory=dict)
    """Additional statistics (e.g., cells per unit, dropped buckets)."""

    @property
    def n_units(self) -> int:
        return self.matrix.n_cells

    @property
    def n_genes(self) -> int:
        return self.matrix.n_genes

    def get_groups(self, column: str) -> dict[str, list[str]]:
        """Get unit names grouped by a metadata column."""
        groups: dict[str, list[str]] = {}
        for unit, value in self.metadata[column].items():
            groups.setdefault(str(value), []).append(unit)
        return groups

    def to_frames(self) -> tuple[pd.DataFrame, pd.DataFrame]:
        """Expression and metadata as DataFrames."""
        return self.matrix.to_dataframe(), self.metadata.to_frame()


class AggregationStrategy(ABC):
    """
    Abstract base class for aggregation strategies.

    Aggregation collapses single-cell columns into summarized units
    suitable for sample-level analysis.
    """

    def __init__(self, config: Optional[AggregationConfig] = None):
        """
        Initialize aggregation strategy.

        Args:
            config: Aggregation configuration.
        """
        self.config = config or AggregationConfig()

    @abstractmethod
    def aggregate(
        self,
        matrix: ExpressionMatrix,
        metadata: CellMetadata,
    ) -> AggregatedData:
        """
        Aggregate expression data.

        Args:
            matrix: Expression matrix (genes x cells).
            metadata: Cell metadata.

        Returns:
            Aggregated data.
        """
        ...
