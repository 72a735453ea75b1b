"""
Per-cell count normalization.
"""

from __future__ import annotations

import logging
from typing import Literal, Optional, Sequence

import numpy as np
from scipy import sparse as sp

from scdiff_pipeline.core.config import NormalizationConfig
from scdiff_pipeline.core.errors import InvalidInputError, UnsupportedInputError
from scdiff_pipeline.core.matrix import ExpressionMatrix

logger = logging.getLogger(__name__)


class Normalizer:
    """
    Converts raw counts to a comparable per-cell scale.

    Methods:
        log: log1p(count / scale_factor * target_sum)
        relative: count / scale_factor * target_sum
        clr: per-gene centered log ratio across cells (ignores target_sum,
            rejects scale factors)

    Example:
        >>> normalizer = Normalizer(NormalizationConfig(target_sum=1e4))
        >>> lognorm = normalizer.normalize(counts)
    """

    def __init__(self, config: Optional[NormalizationConfig] = None):
        """
        Initialize normalizer.

        Args:
            config: Normalization configuration.
        """
        self.config = config or NormalizationConfig()
        if self.config.method not in ("log", "relative", "clr"):
            raise ValueError(f"Unknown normalization method: {self.config.method}")
        if self.config.target_sum <= 0:
            raise InvalidInputError(f"target_sum must be positive, got {self.config.target_sum}")

    def normalize(
        self,
        matrix: ExpressionMatrix,
        scale_factors: Optional[Sequence[float]] = None,
    ) -> ExpressionMatrix:
        """
        Normalize a raw count matrix.

        Args:
            matrix: Raw counts (genes x cells).
            scale_factors: Per-cell divisors (default: total counts per cell).

        Returns:
            New normalized matrix.
        """
        if matrix.scale != "counts":
            raise UnsupportedInputError(
                f"Normalization expects raw counts, got scale '{matrix.scale}'"
            )
        self._check_counts(matrix)

        if self.config.method == "clr":
            if scale_factors is not None:
                raise InvalidInputError("CLR normalization does not take scale factors")
            return self._clr(matrix)

        if scale_factors is None:
            factors = matrix.column_sums()
        else:
            factors = np.asarray(scale_factors, dtype=np.float64).ravel()
            if len(factors) != matrix.n_cells:
                raise InvalidInputError(
                    f"Got {len(factors)} scale factors for {matrix.n_cells} cells"
                )

        bad = ~(factors > 0) | ~np.isfinite(factors)
        if bad.any():
            cells = matrix.cells[bad].tolist()[:5]
            raise InvalidInputError(
                f"{int(bad.sum())} cells have zero or invalid scale factor, e.g. {cells}"
            )

        multiplier = self.config.target_sum / factors
        if matrix.is_sparse:
            values = matrix.values @ sp.diags(multiplier)
            values = sp.csr_matrix(values)
            if self.config.method == "log":
                values.data = np.log1p(values.data)
        else:
            values = matrix.values * multiplier[np.newaxis, :]
            if self.config.method == "log":
                values = np.log1p(values)

        scale = "lognorm" if self.config.method == "log" else "relative"
        logger.info(
            "Normalized %d genes x %d cells (method=%s, target_sum=%g)",
            matrix.n_genes,
            matrix.n_cells,
            self.config.method,
            self.config.target_sum,
        )
        return matrix.with_values(values, scale=scale)

    def _check_counts(self, matrix: ExpressionMatrix) -> None:
        data = matrix.values.data if matrix.is_sparse else matrix.values
        if data.size and not np.all(np.isfinite(data)):
            raise InvalidInputError("Counts contain non-finite values")
        if data.size and data.min() < 0:
            raise InvalidInputError("Counts contain negative values")

    def _clr(self, matrix: ExpressionMatrix) -> ExpressionMatrix:
        """Centered log ratio per gene, computed over the positive entries."""
        X = matrix.dense()
        totals = matrix.column_sums()
        if (totals <= 0).any():
            cells = matrix.cells[totals <= 0].tolist()[:5]
            raise InvalidInputError(f"Cells with zero total counts: {cells}")

        log_x = np.log1p(X)
        n_cells = X.shape[1]
        geo = np.exp(np.where(X > 0, log_x, 0.0).sum(axis=1) / max(n_cells, 1))
        values = np.log1p(X / geo[:, np.newaxis])

        logger.info("CLR-normalized %d genes x %d cells", matrix.n_genes, matrix.n_cells)
        return matrix.with_values(values, scale="lognorm")


def normalize(
    matrix: ExpressionMatrix,
    target_sum: float = 1e4,
    method: Literal["log", "relative", "clr"] = "log",
    scale_factors: Optional[Sequence[float]] = None,
) -> ExpressionMatrix:
    """
    Convenience function for count normalization.

    Args:
        matrix: Raw counts (genes x cells).
        target_sum: Counts per cell after scaling.
        method: "log", "relative" or "clr".
        scale_factors: Per-cell divisors (default: total counts).

    Returns:
        New normalized matrix.
    """
    normalizer = Normalizer(NormalizationConfig(method=method, target_sum=target_sum))
    return normalizer.normalize(matrix, scale_factors=scale_factors)
