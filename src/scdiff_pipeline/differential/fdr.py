"""
Multiple-testing correction for differential expression.
"""

from __future__ import annotations

from typing import Union

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from scdiff_pipeline.core.errors import InvalidInputError


class FDRCorrector:
    """
    P-value adjustment over the genes tested in one run.

    Supports the correction methods of statsmodels ``multipletests``.

    Example:
        >>> corrector = FDRCorrector(method="bonferroni")
        >>> p_adj = corrector.correct(pvalues)
    """

    METHODS = [
        "bonferroni",
        "sidak",
        "holm-sidak",
        "holm",
        "simes-hochberg",
        "hommel",
        "fdr_bh",  # Benjamini-Hochberg
        "fdr_by",  # Benjamini-Yekutieli
        "fdr_tsbh",  # Two-stage BH
        "fdr_tsbky",  # Two-stage BY
    ]

    ALIASES = {
        "BH": "fdr_bh",
        "fdr": "fdr_bh",
        "BY": "fdr_by",
    }

    def __init__(
        self,
        method: str = "bonferroni",
        alpha: float = 0.05,
    ):
        """
        Initialize corrector.

        Args:
            method: Correction method.
            alpha: Significance threshold.
        """
        method = self.ALIASES.get(method, method)
        if method not in self.METHODS:
            raise InvalidInputError(
                f"Unknown adjustment method: {method}. Available: {self.METHODS}"
            )
        self.method = method
        self.alpha = alpha

    def correct(
        self,
        pvalues: Union[np.ndarray, pd.Series],
    ) -> Union[np.ndarray, pd.Series]:
        """
        Adjust p-values.

        Args:
            pvalues: Raw p-values of the tested genes.

        Returns:
            Adjusted p-values (same type and order as input).
        """
        if isinstance(pvalues, pd.Series):
            return pd.Series(self.correct(pvalues.to_numpy()), index=pvalues.index)

        pvalues = np.asarray(pvalues, dtype=np.float64)
        if pvalues.size == 0:
            return pvalues.copy()
        if not np.all(np.isfinite(pvalues)):
            raise InvalidInputError("Cannot adjust non-finite p-values")

        _, adjusted, _, _ = multipletests(pvalues, alpha=self.alpha, method=self.method)
        return adjusted


def adjust_pvalues(
    pvalues: Union[np.ndarray, pd.Series],
    method: str = "bonferroni",
    alpha: float = 0.05,
) -> Union[np.ndarray, pd.Series]:
    """
    Adjust p-values for multiple testing.

    Convenience function for FDRCorrector.

    Args:
        pvalues: P-values.
        method: Correction method.
        alpha: Significance threshold.

    Returns:
        Adjusted p-values.
    """
    corrector = FDRCorrector(method=method, alpha=alpha)
    return corrector.correct(pvalues)
