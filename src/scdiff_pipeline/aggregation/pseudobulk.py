"""
Pseudobulk aggregation.

Sums raw counts over all cells sharing a group key (e.g. sample x cell type),
creating one synthetic "pseudo-bulk" sample per observed key combination.
"""

from __future__ import annotations

import logging
import warnings
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from scipy import sparse as sp

from scdiff_pipeline.aggregation.base import (
    AggregatedData,
    AggregationConfig,
    AggregationStrategy,
)
from scdiff_pipeline.core.errors import (
    InvalidInputError,
    SmallBucketWarning,
    UnknownIdentifierError,
    UnsupportedInputError,
)
from scdiff_pipeline.core.matrix import CellMetadata, ExpressionMatrix, align
from scdiff_pipeline.core.parallel import run_chunked

logger = logging.getLogger(__name__)

N_CELLS = "n_cells"


class PseudobulkAggregator(AggregationStrategy):
    """
    Aggregates raw counts by group-key combinations.

    Only observed key combinations become samples. The reduction is a sum
    over cells, so partial sums over cell ranges are merged by addition.

    Example:
        >>> config = AggregationConfig(group_key=["donor", "treatment"], min_cells=3)
        >>> aggregator = PseudobulkAggregator(config)
        >>> result = aggregator.aggregate(counts, metadata)
        >>> print(f"Created {result.n_units} pseudobulk samples")
    """

    def __init__(
        self,
        config: Optional[AggregationConfig] = None,
        carry: Optional[Sequence[str]] = None,
        n_workers: int = 1,
        cells_per_task: int = 50000,
    ):
        """
        Initialize pseudobulk aggregator.

        Args:
            config: Aggregation configuration.
            carry: Extra metadata fields copied to each bucket (must be
                constant within a bucket).
            n_workers: Worker threads for partial sums.
            cells_per_task: Cells per partial-sum task.
        """
        super().__init__(config)
        self.carry = list(carry or [])
        self.n_workers = n_workers
        self.cells_per_task = cells_per_task

    def aggregate(
        self,
        matrix: ExpressionMatrix,
        metadata: CellMetadata,
    ) -> AggregatedData:
        """
        Aggregate by group key.

        Args:
            matrix: Raw counts (genes x cells).
            metadata: Cell metadata holding the key fields.

        Returns:
            Pseudobulk aggregated data.
        """
        if matrix.scale != "counts":
            raise UnsupportedInputError(
                f"Pseudobulk aggregation sums raw counts, got scale '{matrix.scale}'; "
                "back-transform to counts first"
            )

        key_fields = list(self.config.group_key)
        if not key_fields:
            raise InvalidInputError("Group key needs at least one field")
        for name in key_fields + self.carry:
            if name not in metadata:
                raise UnknownIdentifierError(
                    f"Group key field '{name}' not in metadata. Available: {metadata.fields}"
                )

        matrix, metadata = align(matrix, metadata, join="strict")
        obs = metadata.to_frame().reset_index(drop=True)

        keys = obs[key_fields]
        missing_key = keys.isna().any(axis=1).to_numpy()
        if missing_key.any():
            logger.warning(
                "%d cells have a missing group key value and are excluded",
                int(missing_key.sum()),
            )

        groups = obs.loc[~missing_key].groupby(key_fields, observed=True, sort=True).groups

        labels: list[str] = []
        rows: list[dict] = []
        cell_codes = np.full(matrix.n_cells, -1, dtype=np.int64)
        dropped: dict[str, int] = {}

        for key, indices in groups.items():
            key = key if isinstance(key, tuple) else (key,)
            n_cells = len(indices)
            label = self.config.sep.join(str(k) for k in key)

            if n_cells < self.config.min_cells:
                dropped[label] = n_cells
                continue

            row = dict(zip(key_fields, key))
            for name in self.carry:
                values = obs.loc[indices, name].unique()
                if len(values) != 1:
                    raise InvalidInputError(
                        f"Carried field '{name}' is not constant within bucket '{label}'"
                    )
                row[name] = values[0]
            row[N_CELLS] = n_cells

            cell_codes[np.asarray(indices, dtype=np.int64)] = len(labels)
            labels.append(label)
            rows.append(row)

        if dropped:
            msg = (
                f"Dropped {len(dropped)} buckets with fewer than {self.config.min_cells} cells: "
                + ", ".join(f"{k} ({v})" for k, v in list(dropped.items())[:10])
            )
            warnings.warn(msg, SmallBucketWarning, stacklevel=2)
            logger.warning(msg)

        if len(set(labels)) != len(labels):
            raise InvalidInputError(
                f"Joined key labels collide with separator '{self.config.sep}'"
            )

        summed = self._sum_by_code(matrix, cell_codes, len(labels))

        meta_df = pd.DataFrame(rows, index=labels, columns=key_fields + self.carry + [N_CELLS])
        if not labels:
            logger.warning("No pseudobulk buckets left after filtering")

        logger.info(
            "Aggregated %d cells into %d pseudobulk samples by %s",
            int((cell_codes >= 0).sum()),
            len(labels),
            key_fields,
        )

        return AggregatedData(
            matrix=ExpressionMatrix(values=summed, genes=matrix.genes, cells=labels, scale="counts"),
            metadata=CellMetadata(meta_df),
            aggregation_type="pseudobulk",
            config=self.config,
            stats={
                "cells_per_group": dict(zip(labels, meta_df[N_CELLS].tolist())),
                "dropped_buckets": dropped,
                "n_cells_missing_key": int(missing_key.sum()),
            },
        )

    def _sum_by_code(
        self,
        matrix: ExpressionMatrix,
        codes: np.ndarray,
        n_buckets: int,
    ) -> np.ndarray:
        """Sum columns into buckets; cells with code -1 are ignored."""
        n_genes = matrix.n_genes

        def partial(start: int, stop: int) -> np.ndarray:
            block_codes = codes[start:stop]
            keep = np.flatnonzero(block_codes >= 0)
            out = np.zeros((n_genes, n_buckets))
            if len(keep) == 0 or n_buckets == 0:
                return out
            indicator = sp.csr_matrix(
                (np.ones(len(keep)), (keep, block_codes[keep])),
                shape=(stop - start, n_buckets),
            )
            block = matrix.values[:, start:stop]
            out += np.asarray((block @ indicator).todense() if sp.issparse(block) else block @ indicator)
            return out

        parts = run_chunked(
            partial,
            n_items=matrix.n_cells,
            chunk_size=self.cells_per_task,
            n_workers=self.n_workers,
        )
        total = np.zeros((n_genes, n_buckets))
        for part in parts:
            total += part
        return total


def aggregate(
    matrix: ExpressionMatrix,
    metadata: CellMetadata,
    group_key_fields: Sequence[str],
    min_cells: int = 1,
    carry: Optional[Sequence[str]] = None,
    sep: str = "_",
    n_workers: int = 1,
) -> tuple[ExpressionMatrix, CellMetadata]:
    """
    Convenience function for pseudobulk aggregation.

    Args:
        matrix: Raw counts (genes x cells).
        metadata: Cell metadata.
        group_key_fields: Ordered key fields defining buckets.
        min_cells: Minimum cells per bucket.
        carry: Extra constant-per-bucket fields to keep.
        sep: Separator joining key values into sample labels.
        n_workers: Worker threads.

    Returns:
        Tuple of (pseudobulk matrix, pseudobulk metadata).
    """
    config = AggregationConfig(group_key=list(group_key_fields), min_cells=min_cells, sep=sep)
    aggregator = PseudobulkAggregator(config, carry=carry, n_workers=n_workers)
    result = aggregator.aggregate(matrix, metadata)
    return result.matrix, result.metadata
