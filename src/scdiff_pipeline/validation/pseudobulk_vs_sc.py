"""
Pseudobulk vs single-cell validation.

Compares a DE result computed on single cells with one computed on
pseudobulk samples. Disagreement between the two is an expected outcome
(cell-level tests treat correlated cells as replicates) and is reported,
not raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal

import numpy as np
import pandas as pd
from scipy import stats

from scdiff_pipeline.core.errors import InvalidInputError
from scdiff_pipeline.differential.engine import DEResult

logger = logging.getLogger(__name__)

CATEGORIES = ["both", "sc_only", "pb_only", "neither"]


@dataclass
class DEComparison:
    """Result of pseudobulk vs single-cell comparison."""

    table: pd.DataFrame
    """Merged per-gene table (``*_sc`` / ``*_pb`` columns plus ``category``)."""

    correlation: float
    """Spearman correlation of avg_log2FC between the two results."""

    pvalue: float
    """P-value for the correlation."""

    counts: dict[str, int] = field(default_factory=dict)
    """Genes per significance category."""

    alpha: float = 0.05
    """Adjusted p-value threshold for significance."""

    n_genes: int = 0
    """Genes compared."""

    @property
    def concordance(self) -> float:
        """Fraction of genes with the same significance call in both results."""
        if self.n_genes == 0:
            return float("nan")
        return (self.counts.get("both", 0) + self.counts.get("neither", 0)) / self.n_genes

    def genes_in(self, category: str) -> list[str]:
        if category not in CATEGORIES:
            raise InvalidInputError(f"Unknown category: {category}. Available: {CATEGORIES}")
        return self.table.index[self.table["category"] == category].tolist()


class PseudobulkSCValidator:
    """
    Compares single-cell and pseudobulk DE results gene by gene.

    Example:
        >>> validator = PseudobulkSCValidator(alpha=0.05)
        >>> comparison = validator.compare(sc_result, pb_result)
        >>> comparison.counts
        {'both': 12, 'sc_only': 240, 'pb_only': 3, 'neither': 1745}
    """

    def __init__(self, alpha: float = 0.05, join: Literal["strict", "inner"] = "inner"):
        """
        Initialize validator.

        Args:
            alpha: Adjusted p-value threshold.
            join: "inner" compares shared genes; "strict" requires identical gene sets.
        """
        if join not in ("strict", "inner"):
            raise InvalidInputError(f"Unknown join policy: {join}")
        self.alpha = alpha
        self.join = join

    def compare(self, sc_result: DEResult, pb_result: DEResult) -> DEComparison:
        """
        Merge two DE tables by gene and classify significance agreement.

        Args:
            sc_result: Single-cell DE result.
            pb_result: Pseudobulk DE result.

        Returns:
            DEComparison.
        """
        sc = sc_result.table
        pb = pb_result.table

        sc_genes = set(sc.index)
        pb_genes = set(pb.index)
        if sc_genes != pb_genes:
            if self.join == "strict":
                raise InvalidInputError(
                    f"Gene sets differ: {len(sc_genes - pb_genes)} only in single-cell, "
                    f"{len(pb_genes - sc_genes)} only in pseudobulk"
                )
            logger.info(
                "Comparing %d shared genes (%d single-cell only, %d pseudobulk only)",
                len(sc_genes & pb_genes),
                len(sc_genes - pb_genes),
                len(pb_genes - sc_genes),
            )

        merged = sc.join(pb, how="inner", lsuffix="_sc", rsuffix="_pb")
        merged = merged.sort_index()

        sig_sc = merged["p_val_adj_sc"] < self.alpha
        sig_pb = merged["p_val_adj_pb"] < self.alpha
        merged["category"] = pd.Categorical(
            np.select(
                [sig_sc & sig_pb, sig_sc & ~sig_pb, ~sig_sc & sig_pb],
                ["both", "sc_only", "pb_only"],
                default="neither",
            ),
            categories=CATEGORIES,
        )

        counts = {c: int((merged["category"] == c).sum()) for c in CATEGORIES}

        if len(merged) >= 3:
            rho, pval = stats.spearmanr(merged["avg_log2FC_sc"], merged["avg_log2FC_pb"])
        else:
            rho, pval = np.nan, np.nan

        logger.info(
            "Pseudobulk vs single-cell: rho=%.3f over %d genes, categories %s",
            rho,
            len(merged),
            counts,
        )

        return DEComparison(
            table=merged,
            correlation=float(rho),
            pvalue=float(pval),
            counts=counts,
            alpha=self.alpha,
            n_genes=len(merged),
        )


def compare_de_results(
    sc_result: DEResult,
    pb_result: DEResult,
    alpha: float = 0.05,
    join: Literal["strict", "inner"] = "inner",
) -> DEComparison:
    """
    Compare single-cell and pseudobulk DE results.

    Args:
        sc_result: Single-cell DE result.
        pb_result: Pseudobulk DE result.
        alpha: Adjusted p-value threshold.
        join: Gene set join policy.

    Returns:
        DEComparison.
    """
    validator = PseudobulkSCValidator(alpha=alpha, join=join)
    return validator.compare(sc_result, pb_result)
