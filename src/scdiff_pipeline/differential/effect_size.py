"""
Effect size computation for differential expression.

The average log2 fold change depends on the value scale: log-normalized
values are back-transformed with expm1 before averaging, counts and
relative values are averaged as-is, and scaled residuals (which can be
negative) use a plain mean difference.
"""

from __future__ import annotations

from typing import Union

import numpy as np
import pandas as pd

from scdiff_pipeline.core.errors import InvalidInputError


def _as_2d(values: Union[np.ndarray, pd.DataFrame]) -> np.ndarray:
    if isinstance(values, pd.DataFrame):
        values = values.values
    values = np.asarray(values, dtype=np.float64)
    if values.ndim == 1:
        values = values.reshape(1, -1)
    return values


class EffectSizeCalculator:
    """
    Computes per-gene effect sizes for two groups of columns.

    Example:
        >>> calc = EffectSizeCalculator(scale="lognorm")
        >>> lfc = calc.log2_fold_change(group1, group2)
        >>> pct1, pct2 = calc.pct_detected(group1), calc.pct_detected(group2)
    """

    def __init__(self, scale: str = "lognorm", pseudocount: float = 1.0):
        """
        Initialize calculator.

        Args:
            scale: Value scale of the inputs.
            pseudocount: Added to both group means before taking log2.
        """
        if pseudocount <= 0:
            raise InvalidInputError(f"pseudocount must be positive, got {pseudocount}")
        self.scale = scale
        self.pseudocount = pseudocount

    def group_means(self, values: Union[np.ndarray, pd.DataFrame]) -> np.ndarray:
        """Per-gene mean on the linear scale used for fold changes."""
        values = _as_2d(values)
        if self.scale == "lognorm":
            values = np.expm1(values)
        return values.mean(axis=1)

    def log2_fold_change(
        self,
        group1: Union[np.ndarray, pd.DataFrame],
        group2: Union[np.ndarray, pd.DataFrame],
    ) -> np.ndarray:
        """
        Average log2 fold change of group1 over group2.

        For ``scaled`` inputs this is the mean difference instead.

        Args:
            group1: First group (genes x columns1).
            group2: Second group (genes x columns2).

        Returns:
            Array of effect sizes, one per gene.
        """
        group1 = _as_2d(group1)
        group2 = _as_2d(group2)

        if self.scale == "scaled":
            return group1.mean(axis=1) - group2.mean(axis=1)

        mean1 = self.group_means(group1)
        mean2 = self.group_means(group2)
        return np.log2(mean1 + self.pseudocount) - np.log2(mean2 + self.pseudocount)

    @staticmethod
    def pct_detected(values: Union[np.ndarray, pd.DataFrame]) -> np.ndarray:
        """Fraction of columns with a positive value, per gene."""
        values = _as_2d(values)
        if values.shape[1] == 0:
            return np.zeros(values.shape[0])
        return (values > 0).mean(axis=1)


def compute_log2fc(
    group1: Union[np.ndarray, pd.DataFrame],
    group2: Union[np.ndarray, pd.DataFrame],
    scale: str = "lognorm",
    pseudocount: float = 1.0,
) -> np.ndarray:
    """
    Compute the average log2 fold change between groups.

    Example:
        >>> # lognorm values log1p(9) vs 0 -> log2(10) - log2(1)
        >>> compute_log2fc(np.log1p([[9.0, 9.0]]), [[0.0, 0.0]])
        array([3.32192809])

    Args:
        group1: First group (genes x columns).
        group2: Second group (genes x columns).
        scale: Value scale of both groups.
        pseudocount: Pseudocount added to each mean.

    Returns:
        Array of log2 fold changes.
    """
    calc = EffectSizeCalculator(scale=scale, pseudocount=pseudocount)
    return calc.log2_fold_change(group1, group2)
