"""
Two-part hurdle backend for single-cell expression.

Per gene:
    discrete:    P(detected) ~ logit(1 + group + cdr)
    continuous:  expression | detected ~ 1 + group + cdr  (Gaussian)

``cdr`` is the standardized cellular detection rate (fraction of genes
detected in each cell). The group term is tested in each part by a
likelihood-ratio test; the chi-square statistics and their degrees of
freedom are summed. A part that cannot be estimated (every cell detected,
too few detected values per group) is left out of the sum.
"""

from __future__ import annotations

import logging
import warnings
from typing import Optional

import numpy as np
import statsmodels.api as sm
from scipy import stats
from statsmodels.tools.sm_exceptions import (
    ConvergenceWarning,
    PerfectSeparationError,
    PerfectSeparationWarning,
)

from scdiff_pipeline.core.errors import BackendError
from scdiff_pipeline.differential.base import DEContext, DETestBackend, register_backend

logger = logging.getLogger(__name__)


def _logit_llf(y: np.ndarray, X: np.ndarray, maxiter: int) -> float:
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", PerfectSeparationWarning)
        warnings.simplefilter("ignore", ConvergenceWarning)
        return float(sm.Logit(y, X).fit(disp=False, maxiter=maxiter).llf)


def _separated(detected: np.ndarray, x: np.ndarray) -> bool:
    """True when a threshold on ``x`` splits detected from undetected cells."""
    on, off = x[detected], x[~detected]
    return bool(on.min() > off.max() or on.max() < off.min())


@register_backend
class HurdleTest(DETestBackend):
    """
    Hurdle model test adjusting for the cellular detection rate.

    Example:
        >>> backend = HurdleTest().prepare(context)
        >>> log2fc, pvalue = backend.test(lognorm_group1, lognorm_group2)
    """

    name = "hurdle"
    supported_scales = ("counts", "relative", "lognorm")

    def __init__(self, adjust_cdr: bool = True, maxiter: int = 100):
        """
        Initialize hurdle test.

        Args:
            adjust_cdr: Include the detection-rate covariate in both parts.
            maxiter: Maximum iterations for the logistic fit.
        """
        super().__init__()
        self.adjust_cdr = adjust_cdr
        self.maxiter = maxiter
        self.cdr: Optional[np.ndarray] = None

    def prepare(self, context: DEContext) -> "HurdleTest":
        backend = super().prepare(context)
        backend.cdr = None
        if self.adjust_cdr:
            cdr1, cdr2 = context.detection_rates()
            cdr = np.concatenate([cdr1, cdr2])
            sd = cdr.std()
            if sd > 0:
                backend.cdr = (cdr - cdr.mean()) / sd
            else:
                logger.warning("Detection rate is constant across cells; fitting without it")
        return backend

    def test(self, group1: np.ndarray, group2: np.ndarray) -> tuple[float, float]:
        x = np.asarray(group1, dtype=np.float64)
        y = np.asarray(group2, dtype=np.float64)
        effect = self.effect_size(x, y)

        values = np.concatenate([x, y])
        group = np.concatenate([np.ones(len(x)), np.zeros(len(y))])
        detected = values > 0
        if not detected.any():
            raise BackendError("Gene not detected in any cell", backend=self.name)

        covariates = [np.ones(len(values))]
        if self.cdr is not None:
            if len(self.cdr) != len(values):
                raise BackendError("Backend prepared for a different set of cells", backend=self.name)
            covariates.append(self.cdr)
        reduced = np.column_stack(covariates)
        full = np.column_stack(covariates + [group])

        chi2 = 0.0
        df = 0

        try:
            if not detected.all():
                y_detected = detected.astype(np.float64)
                if self.cdr is not None and _separated(detected, self.cdr):
                    # Detection rate alone saturates both models
                    llf_full = llf_reduced = 0.0
                else:
                    if np.array_equal(detected, group == 1) or np.array_equal(detected, group == 0):
                        llf_full = 0.0
                    else:
                        llf_full = _logit_llf(y_detected, full, self.maxiter)
                    llf_reduced = _logit_llf(y_detected, reduced, self.maxiter)
                chi2 += max(0.0, 2.0 * (llf_full - llf_reduced))
                df += 1

            if self._continuous_estimable(detected, group, full.shape[1]):
                # Log scale for the positive part
                positive = values[detected]
                if self.context.scale != "lognorm":
                    positive = np.log1p(positive)
                if np.ptp(positive) > 0:
                    ols_full = sm.OLS(positive, full[detected]).fit()
                    ols_reduced = sm.OLS(positive, reduced[detected]).fit()
                    chi2 += max(0.0, 2.0 * (ols_full.llf - ols_reduced.llf))
                    df += 1
        except (ValueError, FloatingPointError, np.linalg.LinAlgError, PerfectSeparationError) as e:
            raise BackendError(f"Hurdle fit failed: {e}", backend=self.name) from e

        if df == 0:
            raise BackendError("Neither hurdle component is estimable", backend=self.name)
        if np.isnan(chi2):
            raise BackendError("Hurdle likelihood-ratio statistic is NaN", backend=self.name)

        return effect, float(stats.chi2.sf(chi2, df))

    @staticmethod
    def _continuous_estimable(detected: np.ndarray, group: np.ndarray, n_params: int) -> bool:
        """Detected values in both groups and residual degrees of freedom left."""
        n1 = int((detected & (group == 1)).sum())
        n2 = int((detected & (group == 0)).sum())
        return n1 > 0 and n2 > 0 and (n1 + n2) > n_params
