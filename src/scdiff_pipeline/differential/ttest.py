"""
T-test backend.
"""

from __future__ import annotations

from typing import Literal

import numpy as np
from scipy import stats

from scdiff_pipeline.core.errors import BackendError
from scdiff_pipeline.differential.base import DETestBackend, register_backend


@register_backend
class TTest(DETestBackend):
    """
    Two-sample t-test, Welch's variant by default.

    Example:
        >>> test = TTest(equal_var=False)
        >>> effect, pvalue = test.test(group1, group2)
    """

    name = "t"

    def __init__(
        self,
        equal_var: bool = False,
        alternative: Literal["two-sided", "greater", "less"] = "two-sided",
    ):
        """
        Initialize t-test.

        Args:
            equal_var: Assume equal variance (False = Welch's).
            alternative: Alternative hypothesis.
        """
        super().__init__()
        self.equal_var = equal_var
        self.alternative = alternative

    def test(self, group1: np.ndarray, group2: np.ndarray) -> tuple[float, float]:
        x = np.asarray(group1, dtype=np.float64)
        y = np.asarray(group2, dtype=np.float64)
        effect = self.effect_size(x, y)

        if len(x) < 2 or len(y) < 2:
            raise BackendError(
                f"t-test needs >= 2 values per group, got {len(x)} and {len(y)}",
                backend=self.name,
            )

        if np.ptp(x) == 0 and np.ptp(y) == 0:
            if x[0] == y[0]:
                return effect, 1.0
            raise BackendError("Both groups are constant with different values", backend=self.name)

        try:
            _, pvalue = stats.ttest_ind(x, y, equal_var=self.equal_var, alternative=self.alternative)
        except (ValueError, FloatingPointError) as e:
            raise BackendError(f"t-test failed: {e}", backend=self.name) from e

        if not np.isfinite(pvalue):
            raise BackendError("t-test returned a non-finite p-value", backend=self.name)
        return effect, float(pvalue)
