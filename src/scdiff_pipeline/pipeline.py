"""
Main Pipeline class that orchestrates all processing modules.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, Union
import logging

from scdiff_pipeline.aggregation.base import AggregatedData
from scdiff_pipeline.aggregation.pseudobulk import PseudobulkAggregator
from scdiff_pipeline.core.config import Config
from scdiff_pipeline.core.errors import InvalidInputError
from scdiff_pipeline.core.log import setup_logging
from scdiff_pipeline.core.matrix import CellMetadata, ExpressionMatrix, align
from scdiff_pipeline.differential.base import DETestBackend
from scdiff_pipeline.differential.engine import DEResult, DifferentialExpressionEngine
from scdiff_pipeline.preprocessing.normalize import Normalizer
from scdiff_pipeline.preprocessing.regression import CovariateRegressor
from scdiff_pipeline.scoring.cell_cycle import score_cell_cycle
from scdiff_pipeline.validation.pseudobulk_vs_sc import DEComparison, compare_de_results

logger = logging.getLogger(__name__)

Labels = Union[str, Sequence[str]]


@dataclass
class PipelineResult:
    """Result of pipeline execution."""

    normalized: Optional[ExpressionMatrix] = None
    metadata: Optional[CellMetadata] = None
    scaled: Optional[ExpressionMatrix] = None
    sc_result: Optional[DEResult] = None
    pseudobulk: Optional[AggregatedData] = None
    pb_result: Optional[DEResult] = None
    comparison: Optional[DEComparison] = None
    metrics: dict[str, Any] = field(default_factory=dict)


class Pipeline:
    """Single-cell vs pseudobulk differential expression pipeline.

    Every stage takes and returns explicit ``(matrix, metadata)`` pairs.

    Example:
        >>> from scdiff_pipeline import Pipeline, Config
        >>>
        >>> pipeline = Pipeline(Config(seed=0, n_workers=4))
        >>> result = pipeline.run_comparison(
        ...     counts, metadata,
        ...     group1="stim", group2="ctrl", group_by="condition",
        ... )
        >>> result.comparison.counts
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        configure_logging: bool = False,
    ):
        """Initialize pipeline.

        Parameters
        ----------
        config : Config, optional
            Pipeline configuration
        configure_logging : bool
            Set up root logging from ``config.verbose`` / ``config.log_file``
        """
        self.config = config or Config()
        if configure_logging:
            setup_logging(verbose=self.config.verbose, log_file=self.config.log_file)

        self.normalizer = Normalizer(self.config.normalization)
        self.regressor = CovariateRegressor(self.config.regression, n_workers=self.config.n_workers)
        self.engine = DifferentialExpressionEngine(self.config.de, n_workers=self.config.n_workers)

    def preprocess(
        self,
        counts: ExpressionMatrix,
        metadata: CellMetadata,
        cell_cycle: bool = True,
        regress: bool = True,
        covariates: Optional[Sequence[str]] = None,
    ) -> PipelineResult:
        """Normalize, score cell-cycle phases and regress covariates.

        Parameters
        ----------
        counts : ExpressionMatrix
            Raw counts (genes x cells)
        metadata : CellMetadata
            Cell metadata
        cell_cycle : bool
            Add S.Score / G2M.Score / Phase / CC.Difference fields
        regress : bool
            Produce a scaled, covariate-corrected matrix
        covariates : list[str], optional
            Covariates to regress (default from config)

        Returns
        -------
        PipelineResult
            With ``normalized``, ``metadata`` and (optionally) ``scaled`` set
        """
        counts, metadata = align(counts, metadata, join="strict")
        total_steps = 1 + int(cell_cycle) + int(regress)
        step = 1

        self._log_step(step, total_steps, "Normalizing...")
        normalized = self.normalizer.normalize(counts)

        if cell_cycle:
            step += 1
            self._log_step(step, total_steps, "Scoring cell-cycle phases...")
            metadata, _ = score_cell_cycle(normalized, metadata, config=self.config.scoring)

        scaled = None
        if regress:
            step += 1
            self._log_step(step, total_steps, "Regressing covariates...")
            fields = list(covariates) if covariates is not None else list(self.config.regression.covariates)
            scaled = self.regressor.regress(normalized, metadata, fields).matrix

        return PipelineResult(normalized=normalized, metadata=metadata, scaled=scaled)

    def single_cell_de(
        self,
        matrix: ExpressionMatrix,
        metadata: CellMetadata,
        group1: Labels,
        group2: Optional[Labels] = None,
        group_by: str = "ident",
        backend: Optional[Union[str, DETestBackend]] = None,
        gene_subset: Optional[Sequence[str]] = None,
    ) -> DEResult:
        """Run DE on single cells (normalized values)."""
        return self.engine.run(
            matrix,
            metadata,
            group1,
            group2=group2,
            backend=backend,
            gene_subset=gene_subset,
            group_by=group_by,
        )

    def pseudobulk_de(
        self,
        counts: ExpressionMatrix,
        metadata: CellMetadata,
        group1: Labels,
        group2: Optional[Labels] = None,
        group_by: str = "ident",
        backend: Union[str, DETestBackend] = "negbinom",
        gene_subset: Optional[Sequence[str]] = None,
    ) -> tuple[DEResult, AggregatedData]:
        """Aggregate raw counts per group key, then run DE on the buckets.

        Parameters
        ----------
        counts : ExpressionMatrix
            Raw counts (genes x cells)
        metadata : CellMetadata
            Cell metadata holding the group key fields and ``group_by``
        group1, group2
            Labels of ``group_by`` to compare
        group_by : str
            Comparison field; carried to the buckets when not part of the key
        backend : str or DETestBackend
            Count-based backend by default

        Returns
        -------
        tuple
            (DEResult, AggregatedData)
        """
        key = list(self.config.aggregation.group_key)
        carry = [] if group_by in key else [group_by]
        aggregator = PseudobulkAggregator(
            self.config.aggregation,
            carry=carry,
            n_workers=self.config.n_workers,
        )
        aggregated = aggregator.aggregate(counts, metadata)
        if aggregated.n_units == 0:
            raise InvalidInputError("No pseudobulk samples left after aggregation")

        result = self.engine.run(
            aggregated.matrix,
            aggregated.metadata,
            group1,
            group2=group2,
            backend=backend,
            gene_subset=gene_subset,
            group_by=group_by,
        )
        return result, aggregated

    def run_comparison(
        self,
        counts: ExpressionMatrix,
        metadata: CellMetadata,
        group1: Labels,
        group2: Optional[Labels] = None,
        group_by: str = "ident",
        sc_backend: Optional[Union[str, DETestBackend]] = None,
        pb_backend: Union[str, DETestBackend] = "negbinom",
        alpha: float = 0.05,
        cell_cycle: bool = False,
    ) -> PipelineResult:
        """Run single-cell and pseudobulk DE and compare them.

        Parameters
        ----------
        counts : ExpressionMatrix
            Raw counts (genes x cells)
        metadata : CellMetadata
            Cell metadata
        group1, group2
            Labels of ``group_by`` to compare
        group_by : str
            Comparison field
        sc_backend : str or DETestBackend, optional
            Single-cell backend (default from config)
        pb_backend : str or DETestBackend
            Pseudobulk backend
        alpha : float
            Adjusted p-value threshold for the comparison
        cell_cycle : bool
            Score cell-cycle phases during preprocessing

        Returns
        -------
        PipelineResult
            Results from all stages
        """
        result = self.preprocess(counts, metadata, cell_cycle=cell_cycle, regress=False)

        logger.info("Single-cell DE...")
        result.sc_result = self.single_cell_de(
            result.normalized,
            result.metadata,
            group1,
            group2=group2,
            group_by=group_by,
            backend=sc_backend,
        )

        logger.info("Pseudobulk DE...")
        result.pb_result, result.pseudobulk = self.pseudobulk_de(
            counts,
            result.metadata,
            group1,
            group2=group2,
            group_by=group_by,
            backend=pb_backend,
        )

        result.comparison = compare_de_results(result.sc_result, result.pb_result, alpha=alpha)
        result.metrics = self._compute_metrics(result)
        return result

    def _compute_metrics(self, result: PipelineResult) -> dict:
        """Compute summary metrics from results."""
        metrics = {}

        if result.normalized is not None:
            metrics["n_genes"] = result.normalized.n_genes
            metrics["n_cells"] = result.normalized.n_cells

        if result.pseudobulk is not None:
            metrics["n_pseudobulk_samples"] = result.pseudobulk.n_units

        if result.sc_result is not None:
            metrics["sc_n_significant"] = len(result.sc_result.get_significant())

        if result.pb_result is not None:
            metrics["pb_n_significant"] = len(result.pb_result.get_significant())

        if result.comparison is not None:
            metrics["lfc_spearman"] = result.comparison.correlation
            metrics["concordance"] = result.comparison.concordance

        return metrics

    def _log_step(self, step: int, total: int, message: str) -> None:
        logger.info("[%d/%d] %s", step, total, message)


def create_pipeline(
    seed: int = 0,
    n_workers: int = 1,
    **kwargs,
) -> Pipeline:
    """Factory function to create pipeline with common settings.

    Parameters
    ----------
    seed : int
        Random seed for control-gene sampling
    n_workers : int
        Worker threads for data-parallel stages
    **kwargs
        Additional config options

    Returns
    -------
    Pipeline
        Configured pipeline instance
    """
    config = Config(seed=seed, n_workers=n_workers, **kwargs)
    return Pipeline(config)
