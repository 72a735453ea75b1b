"""
Wilcoxon rank-sum test backend.
"""

from __future__ import annotations

from typing import Literal

import numpy as np
from scipy import stats

from scdiff_pipeline.core.errors import BackendError
from scdiff_pipeline.differential.base import DETestBackend, register_backend


@register_backend
class WilcoxonTest(DETestBackend):
    """
    Wilcoxon rank-sum (Mann-Whitney U) test.

    Non-parametric default for single-cell comparisons. Uses the normal
    approximation with tie and continuity correction.

    Example:
        >>> test = WilcoxonTest()
        >>> effect, pvalue = test.test(np.log1p([10, 10]), np.log1p([0, 0]))
    """

    name = "wilcox"

    def __init__(
        self,
        alternative: Literal["two-sided", "greater", "less"] = "two-sided",
        use_continuity: bool = True,
    ):
        """
        Initialize Wilcoxon test.

        Args:
            alternative: Alternative hypothesis.
            use_continuity: Apply continuity correction.
        """
        super().__init__()
        self.alternative = alternative
        self.use_continuity = use_continuity

    def test(self, group1: np.ndarray, group2: np.ndarray) -> tuple[float, float]:
        x = np.asarray(group1, dtype=np.float64)
        y = np.asarray(group2, dtype=np.float64)
        effect = self.effect_size(x, y)

        combined = np.concatenate([x, y])
        # All values tied: no evidence of a shift
        if combined.size == 0 or np.all(combined == combined[0]):
            return effect, 1.0

        try:
            _, pvalue = stats.mannwhitneyu(
                x,
                y,
                alternative=self.alternative,
                use_continuity=self.use_continuity,
                method="asymptotic",
            )
        except ValueError as e:
            raise BackendError(f"Mann-Whitney U failed: {e}", backend=self.name) from e

        if not np.isfinite(pvalue):
            raise BackendError("Mann-Whitney U returned a non-finite p-value", backend=self.name)
        return effect, float(pvalue)
