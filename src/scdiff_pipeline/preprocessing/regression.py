"""
Covariate regression and scaling.

Removes variance explained by numeric cell-level covariates (typically
cell-cycle scores) from each gene independently and returns standardized
residuals.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

from scdiff_pipeline.core.config import RegressionConfig
from scdiff_pipeline.core.errors import (
    ConstantCovariateWarning,
    SingularDesignError,
    UnsupportedInputError,
)
from scdiff_pipeline.core.matrix import CellMetadata, ExpressionMatrix, align
from scdiff_pipeline.core.parallel import run_chunked

logger = logging.getLogger(__name__)


@dataclass
class RegressionResult:
    """Result of covariate regression."""

    matrix: ExpressionMatrix
    """Standardized residuals (genes x cells), scale 'scaled'."""

    covariates_used: list[str]
    """Covariates kept in the design."""

    covariates_dropped: list[str] = field(default_factory=list)
    """Zero-variance covariates removed from the design."""

    constant_genes: list[str] = field(default_factory=list)
    """Genes whose residual had zero variance (output as zeros)."""


class CovariateRegressor:
    """
    Per-gene OLS regression against cell-level covariates.

    Each gene is fit as ``expression ~ 1 + covariates``; the output is the
    residual standardized to mean 0 and unit variance. With no covariates
    this reduces to plain centering and scaling.

    Example:
        >>> regressor = CovariateRegressor(n_workers=4)
        >>> result = regressor.regress(lognorm, metadata, ["S.Score", "G2M.Score"])
        >>> corrected = result.matrix
    """

    def __init__(
        self,
        config: Optional[RegressionConfig] = None,
        n_workers: int = 1,
    ):
        """
        Initialize regressor.

        Args:
            config: Regression configuration.
            n_workers: Worker threads for per-gene fits.
        """
        self.config = config or RegressionConfig()
        self.n_workers = n_workers

    def regress(
        self,
        matrix: ExpressionMatrix,
        metadata: CellMetadata,
        covariate_fields: Optional[Sequence[str]] = None,
        genes: Optional[Sequence[str]] = None,
    ) -> RegressionResult:
        """
        Regress covariates out of every gene.

        Args:
            matrix: Normalized expression (genes x cells).
            metadata: Cell metadata holding the covariate fields.
            covariate_fields: Ordered covariate names (default from config).
            genes: Restrict output to these genes.

        Returns:
            RegressionResult with standardized residuals.
        """
        if matrix.scale == "counts":
            raise UnsupportedInputError(
                "Covariate regression expects normalized values, got raw counts"
            )
        if covariate_fields is None:
            covariate_fields = list(self.config.covariates)
        covariate_fields = list(covariate_fields)

        matrix, metadata = align(matrix, metadata, join="strict")
        if genes is not None:
            matrix = matrix.subset(genes=genes)

        design, used, dropped = self._build_design(metadata, covariate_fields, matrix.cells)

        # Orthonormal basis of the design column space
        q, _ = np.linalg.qr(design)
        n_cells = matrix.n_cells

        def fit_chunk(start: int, stop: int) -> tuple[np.ndarray, np.ndarray]:
            Y = matrix.gene_rows(np.arange(start, stop))
            resid = Y - (Y @ q) @ q.T
            resid = resid - resid.mean(axis=1, keepdims=True)
            if n_cells > 1:
                sd = resid.std(axis=1, ddof=1, keepdims=True)
            else:
                sd = np.zeros((resid.shape[0], 1))
            zero = (sd.ravel() <= 1e-12)
            out = np.divide(resid, sd, out=np.zeros_like(resid), where=sd > 1e-12)
            return out, zero

        chunks = run_chunked(
            fit_chunk,
            n_items=matrix.n_genes,
            chunk_size=self.config.chunk_size,
            n_workers=self.n_workers,
        )
        if chunks:
            values = np.vstack([c[0] for c in chunks])
            zero_mask = np.concatenate([c[1] for c in chunks])
        else:
            values = np.zeros((0, n_cells))
            zero_mask = np.zeros(0, dtype=bool)

        if self.config.scale_max is not None:
            values = np.clip(values, -self.config.scale_max, self.config.scale_max)

        constant_genes = matrix.genes[zero_mask].tolist()
        if constant_genes:
            logger.warning(
                "%d genes have zero residual variance and are output as zeros",
                len(constant_genes),
            )

        logger.info(
            "Regressed %s out of %d genes x %d cells",
            used or "nothing (scaling only)",
            matrix.n_genes,
            n_cells,
        )

        return RegressionResult(
            matrix=matrix.with_values(values, scale="scaled"),
            covariates_used=used,
            covariates_dropped=dropped,
            constant_genes=constant_genes,
        )

    def _build_design(
        self,
        metadata: CellMetadata,
        covariate_fields: list[str],
        cells,
    ) -> tuple[np.ndarray, list[str], list[str]]:
        """Intercept + non-constant covariates; raises if rank deficient."""
        n_cells = len(cells)
        columns = [np.ones(n_cells)]
        used: list[str] = []
        dropped: list[str] = []

        for name in covariate_fields:
            values = metadata.numeric(name, cells=cells)
            if n_cells < 2 or np.ptp(values) == 0:
                msg = f"Covariate '{name}' is constant across cells; skipping it for all genes"
                warnings.warn(msg, ConstantCovariateWarning, stacklevel=3)
                logger.warning(msg)
                dropped.append(name)
                continue
            columns.append(values)
            used.append(name)

        design = np.column_stack(columns)
        rank = np.linalg.matrix_rank(design)
        if rank < design.shape[1]:
            raise SingularDesignError(
                f"Design [intercept + {used}] has rank {rank} < {design.shape[1]} columns"
            )
        return design, used, dropped


def regress_out(
    matrix: ExpressionMatrix,
    metadata: CellMetadata,
    covariate_fields: Sequence[str],
    genes: Optional[Sequence[str]] = None,
    scale_max: Optional[float] = None,
    n_workers: int = 1,
) -> ExpressionMatrix:
    """
    Convenience function for covariate regression.

    Args:
        matrix: Normalized expression (genes x cells).
        metadata: Cell metadata.
        covariate_fields: Covariate names to regress out.
        genes: Restrict output to these genes.
        scale_max: Optional clip value for the standardized residuals.
        n_workers: Worker threads.

    Returns:
        Standardized residual matrix.
    """
    config = RegressionConfig(covariates=list(covariate_fields), scale_max=scale_max)
    regressor = CovariateRegressor(config, n_workers=n_workers)
    return regressor.regress(matrix, metadata, covariate_fields, genes=genes).matrix


def scale_data(
    matrix: ExpressionMatrix,
    metadata: Optional[CellMetadata] = None,
    genes: Optional[Sequence[str]] = None,
    scale_max: Optional[float] = None,
) -> ExpressionMatrix:
    """Center and scale every gene without regressing any covariate."""
    if metadata is None:
        metadata = CellMetadata({}, index=matrix.cells)
    return regress_out(matrix, metadata, [], genes=genes, scale_max=scale_max)
