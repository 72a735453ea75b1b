"""
Differential expression engine.

Resolves two groups of columns from a metadata field, applies pre-test
filters, runs a pluggable backend gene by gene, adjusts p-values across
the genes actually tested, and returns a ranked table.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy import sparse as sp
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from scdiff_pipeline.core.config import DEConfig
from scdiff_pipeline.core.errors import (
    BackendError,
    EmptyGroupError,
    InvalidInputError,
    UnknownGeneError,
    UnknownIdentifierError,
)
from scdiff_pipeline.core.matrix import CellMetadata, ExpressionMatrix, JoinPolicy, align
from scdiff_pipeline.core.parallel import run_chunked
from scdiff_pipeline.differential.base import DEContext, DETestBackend, get_backend
from scdiff_pipeline.differential.effect_size import EffectSizeCalculator
from scdiff_pipeline.differential.fdr import FDRCorrector

# Registers the built-in backends
from scdiff_pipeline.differential import hurdle, negbinom, ttest, wilcoxon  # noqa: F401

logger = logging.getLogger(__name__)

DE_COLUMNS = ["p_val", "avg_log2FC", "pct.1", "pct.2", "p_val_adj"]

Labels = Union[str, Sequence[str]]


@dataclass
class DEResult:
    """Result of one differential expression run."""

    table: pd.DataFrame
    """Ranked results indexed by gene (p_val, avg_log2FC, pct.1, pct.2, p_val_adj)."""

    backend: str
    """Backend used."""

    group1: list[str] = field(default_factory=list)
    """Labels forming group 1."""

    group2: list[str] = field(default_factory=list)
    """Labels forming group 2."""

    n1: int = 0
    """Columns in group 1."""

    n2: int = 0
    """Columns in group 2."""

    n_tested: int = 0
    """Genes that produced a p-value (adjustment denominator)."""

    n_filtered: int = 0
    """Genes skipped by min_pct / logfc_threshold."""

    n_omitted: int = 0
    """Genes whose backend call failed."""

    omitted: dict[str, str] = field(default_factory=dict)
    """Omitted gene -> failure reason."""

    unknown_genes: list[UnknownGeneError] = field(default_factory=list)
    """Requested genes absent from the matrix."""

    adjust_method: str = "bonferroni"
    """Multiple-testing correction applied."""

    def __len__(self) -> int:
        return len(self.table)

    @property
    def genes(self) -> list[str]:
        return self.table.index.tolist()

    def get_significant(
        self,
        alpha: float = 0.05,
        logfc_threshold: Optional[float] = None,
    ) -> pd.DataFrame:
        """
        Rows with adjusted p-value below ``alpha``.

        Args:
            alpha: Adjusted p-value threshold.
            logfc_threshold: Optional minimum absolute avg_log2FC.

        Returns:
            Filtered table in ranked order.
        """
        mask = self.table["p_val_adj"] < alpha
        if logfc_threshold is not None:
            mask &= self.table["avg_log2FC"].abs() >= logfc_threshold
        return self.table[mask]

    def summary(self) -> dict[str, Any]:
        return {
            "backend": self.backend,
            "group1": self.group1,
            "group2": self.group2,
            "n1": self.n1,
            "n2": self.n2,
            "n_tested": self.n_tested,
            "n_filtered": self.n_filtered,
            "n_omitted": self.n_omitted,
            "n_unknown_genes": len(self.unknown_genes),
            "n_reported": len(self.table),
            "adjust_method": self.adjust_method,
        }


def _as_label_list(labels: Labels) -> list[str]:
    if isinstance(labels, str) or not isinstance(labels, Sequence):
        return [str(labels)]
    return [str(x) for x in labels]


class DifferentialExpressionEngine:
    """
    Two-group differential expression with pluggable backends.

    Example:
        >>> engine = DifferentialExpressionEngine(DEConfig(backend="wilcox"))
        >>> result = engine.run(lognorm, metadata, group1="T cell", group_by="cell_type")
        >>> result.table.head()
    """

    def __init__(
        self,
        config: Optional[DEConfig] = None,
        n_workers: int = 1,
    ):
        """
        Initialize engine.

        Args:
            config: DE configuration.
            n_workers: Worker threads for per-gene tests.
        """
        self.config = config or DEConfig()
        self.n_workers = n_workers
        self.corrector = FDRCorrector(method=self.config.adjust_method)

    def resolve_groups(
        self,
        metadata: CellMetadata,
        group1: Labels,
        group2: Optional[Labels] = None,
        group_by: str = "ident",
    ) -> tuple[np.ndarray, np.ndarray, list[str], list[str]]:
        """
        Resolve group labels to column masks.

        Args:
            metadata: Metadata aligned to the matrix columns.
            group1: Label or labels of group 1.
            group2: Label or labels of group 2 (None = all other labels).
            group_by: Metadata field holding the labels.

        Returns:
            Tuple of (mask1, mask2, labels1, labels2).
        """
        series = metadata[group_by]
        present = series.notna().to_numpy()
        values = np.where(present, series.astype(str).to_numpy(), None)
        available = sorted({v for v in values if v is not None})

        labels1 = _as_label_list(group1)
        unknown = [g for g in labels1 if g not in available]
        if unknown:
            raise UnknownIdentifierError(
                f"Labels {unknown} not found in '{group_by}'. Available: {available}"
            )

        if group2 is None:
            labels2 = [g for g in available if g not in labels1]
        else:
            labels2 = _as_label_list(group2)
            unknown = [g for g in labels2 if g not in available]
            if unknown:
                raise UnknownIdentifierError(
                    f"Labels {unknown} not found in '{group_by}'. Available: {available}"
                )

        overlap = sorted(set(labels1) & set(labels2))
        if overlap:
            raise InvalidInputError(f"Groups overlap on labels: {overlap}")

        mask1 = np.isin(values, labels1) & present
        mask2 = np.isin(values, labels2) & present

        for name, mask in (("group1", mask1), ("group2", mask2)):
            n = int(mask.sum())
            if n == 0:
                raise EmptyGroupError(f"{name} has no columns in '{group_by}'")
            if n < self.config.min_cells_group:
                raise InvalidInputError(
                    f"{name} has {n} columns, fewer than min_cells_group={self.config.min_cells_group}"
                )

        return mask1, mask2, labels1, labels2

    def run(
        self,
        matrix: ExpressionMatrix,
        metadata: CellMetadata,
        group1: Labels,
        group2: Optional[Labels] = None,
        backend: Optional[Union[str, DETestBackend]] = None,
        gene_subset: Optional[Sequence[str]] = None,
        only_pos: Optional[bool] = None,
        group_by: str = "ident",
        join: JoinPolicy = "strict",
    ) -> DEResult:
        """
        Compare two groups of columns gene by gene.

        Args:
            matrix: Expression matrix (genes x columns).
            metadata: Column metadata.
            group1: Label or labels of group 1.
            group2: Label or labels of group 2 (None = rest).
            backend: Backend name or instance (default from config).
            gene_subset: Genes to test (default all).
            only_pos: Keep only genes with positive avg_log2FC.
            group_by: Metadata field holding the labels.
            join: Keyed join policy for matrix / metadata ids.

        Returns:
            DEResult.
        """
        backend = get_backend(backend if backend is not None else self.config.backend)
        only_pos = self.config.only_pos if only_pos is None else only_pos

        matrix, metadata = align(matrix, metadata, join=join)
        mask1, mask2, labels1, labels2 = self.resolve_groups(metadata, group1, group2, group_by)
        idx1 = np.flatnonzero(mask1)
        idx2 = np.flatnonzero(mask2)

        values1 = matrix.values[:, idx1]
        values2 = matrix.values[:, idx2]
        context = DEContext(
            scale=matrix.scale,
            group1_values=values1,
            group2_values=values2,
            pseudocount=self.config.pseudocount,
        )
        backend = backend.prepare(context)

        positions, unknown = self._resolve_genes(matrix, gene_subset)

        calc = EffectSizeCalculator(scale=matrix.scale, pseudocount=self.config.pseudocount)
        genes = matrix.genes

        def test_chunk(start: int, stop: int) -> list[tuple]:
            chunk = positions[start:stop]
            block1 = values1[chunk]
            block2 = values2[chunk]
            if sp.issparse(block1):
                block1 = block1.toarray()
                block2 = block2.toarray()
            pct1 = calc.pct_detected(block1)
            pct2 = calc.pct_detected(block2)
            lfc = calc.log2_fold_change(block1, block2)

            rows = []
            for j, pos in enumerate(chunk):
                gene = genes[pos]
                if max(pct1[j], pct2[j]) < self.config.min_pct or abs(lfc[j]) < self.config.logfc_threshold:
                    rows.append((gene, "filtered", None))
                    continue
                try:
                    effect, pvalue = backend.test(block1[j], block2[j])
                except BackendError as e:
                    e.gene = gene
                    rows.append((gene, "omitted", str(e)))
                    continue
                except Exception as e:
                    err = BackendError(f"{type(e).__name__}: {e}", gene=gene, backend=backend.name)
                    err.__cause__ = e
                    rows.append((gene, "omitted", str(err)))
                    continue
                rows.append((gene, "tested", (pvalue, effect, pct1[j], pct2[j])))
            return rows

        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            chunks = run_chunked(
                test_chunk,
                n_items=len(positions),
                chunk_size=self.config.chunk_size,
                n_workers=self.n_workers,
            )

        tested: dict[str, tuple] = {}
        omitted: dict[str, str] = {}
        n_filtered = 0
        for rows in chunks:
            for gene, status, payload in rows:
                if status == "tested":
                    tested[gene] = payload
                elif status == "omitted":
                    omitted[gene] = payload
                    logger.debug("Omitted %s: %s", gene, payload)
                else:
                    n_filtered += 1

        if omitted:
            logger.warning("%d genes omitted after backend failures", len(omitted))

        table = pd.DataFrame(
            list(tested.values()),
            index=pd.Index(list(tested), dtype=object),
            columns=["p_val", "avg_log2FC", "pct.1", "pct.2"],
        )
        table["p_val_adj"] = self.corrector.correct(table["p_val"].to_numpy(dtype=np.float64))

        if only_pos:
            table = table[table["avg_log2FC"] > 0]

        table = self._rank(table)

        logger.info(
            "DE [%s] %s (n=%d) vs %s (n=%d): %d tested, %d filtered, %d omitted",
            backend.name,
            labels1,
            len(idx1),
            labels2,
            len(idx2),
            len(tested),
            n_filtered,
            len(omitted),
        )

        return DEResult(
            table=table,
            backend=backend.name,
            group1=labels1,
            group2=labels2,
            n1=len(idx1),
            n2=len(idx2),
            n_tested=len(tested),
            n_filtered=n_filtered,
            n_omitted=len(omitted),
            omitted=omitted,
            unknown_genes=unknown,
            adjust_method=self.corrector.method,
        )

    def _resolve_genes(
        self,
        matrix: ExpressionMatrix,
        gene_subset: Optional[Sequence[str]],
    ) -> tuple[np.ndarray, list[UnknownGeneError]]:
        if gene_subset is None:
            return np.arange(matrix.n_genes), []

        requested = list(dict.fromkeys(str(g) for g in gene_subset))
        pos = matrix.gene_positions(requested)
        unknown = [UnknownGeneError(g, context="gene_subset") for g, p in zip(requested, pos) if p < 0]
        if unknown:
            logger.warning(
                "%d requested genes not in matrix and skipped: %s",
                len(unknown),
                ", ".join(e.gene for e in unknown[:10]),
            )
        pos = pos[pos >= 0]
        if len(pos) == 0:
            raise InvalidInputError("None of the requested genes are in the matrix")
        return pos, unknown

    @staticmethod
    def _rank(table: pd.DataFrame) -> pd.DataFrame:
        """Ascending p_val_adj, then descending |avg_log2FC|, then gene id."""
        ranked = table.assign(_abs_lfc=table["avg_log2FC"].abs(), _gene=table.index.astype(str))
        ranked = ranked.sort_values(
            ["p_val_adj", "_abs_lfc", "_gene"],
            ascending=[True, False, True],
            kind="mergesort",
        )
        ranked = ranked[DE_COLUMNS]
        ranked.index.name = "gene"
        return ranked


def differential_expression(
    matrix: ExpressionMatrix,
    metadata: CellMetadata,
    group1: Labels,
    group2: Optional[Labels] = None,
    backend: Union[str, DETestBackend] = "wilcox",
    gene_subset: Optional[Sequence[str]] = None,
    only_pos: bool = False,
    group_by: str = "ident",
    adjust_method: str = "bonferroni",
    min_pct: float = 0.0,
    logfc_threshold: float = 0.0,
    min_cells_group: int = 1,
    join: JoinPolicy = "strict",
    n_workers: int = 1,
) -> DEResult:
    """
    Convenience function for a two-group DE run.

    Args:
        matrix: Expression matrix (genes x columns).
        metadata: Column metadata.
        group1: Label or labels of group 1.
        group2: Label or labels of group 2 (None = rest).
        backend: "wilcox", "t", "negbinom", "hurdle" or a backend instance.
        gene_subset: Genes to test.
        only_pos: Keep only genes higher in group 1.
        group_by: Metadata field holding the labels.
        adjust_method: Multiple-testing correction.
        min_pct: Minimum detection fraction in either group.
        logfc_threshold: Minimum absolute avg_log2FC.
        min_cells_group: Minimum columns per group.
        join: Keyed join policy.
        n_workers: Worker threads.

    Returns:
        DEResult.
    """
    config = DEConfig(
        adjust_method=adjust_method,
        min_pct=min_pct,
        logfc_threshold=logfc_threshold,
        min_cells_group=min_cells_group,
        only_pos=only_pos,
    )
    engine = DifferentialExpressionEngine(config, n_workers=n_workers)
    return engine.run(
        matrix,
        metadata,
        group1,
        group2=group2,
        backend=backend,
        gene_subset=gene_subset,
        only_pos=only_pos,
        group_by=group_by,
        join=join,
    )


def find_all_markers(
    matrix: ExpressionMatrix,
    metadata: CellMetadata,
    group_by: str = "ident",
    backend: Union[str, DETestBackend] = "wilcox",
    only_pos: bool = False,
    config: Optional[DEConfig] = None,
    n_workers: int = 1,
) -> pd.DataFrame:
    """
    One-vs-rest markers for every label of ``group_by``.

    Args:
        matrix: Expression matrix.
        metadata: Column metadata.
        group_by: Metadata field holding the labels.
        backend: Backend name or instance.
        only_pos: Keep only genes higher in the label's cells.
        config: DE configuration (filters, adjustment).
        n_workers: Worker threads.

    Returns:
        Concatenated tables with "cluster" and "gene" columns.
    """
    engine = DifferentialExpressionEngine(config, n_workers=n_workers)
    series = metadata[group_by]
    labels = sorted(series.dropna().astype(str).unique())
    if len(labels) < 2:
        raise InvalidInputError(f"'{group_by}' needs at least two labels, got {labels}")

    tables = []
    for label in labels:
        result = engine.run(matrix, metadata, label, backend=backend, only_pos=only_pos, group_by=group_by)
        table = result.table.reset_index()
        table.insert(0, "cluster", label)
        tables.append(table)

    markers = pd.concat(tables, ignore_index=True)
    return markers[["cluster", "gene"] + DE_COLUMNS]
