"""
Negative-binomial GLM backend for raw (pseudobulk) counts.

Model per gene:
    count ~ NB(mu, alpha),  log(mu) = b0 + b1 * group + log(size_factor)

Size factors use the median-of-ratios estimator; the dispersion alpha is
estimated by the method of moments on size-factor-normalized counts
(var = mu + alpha * mu^2). The group effect is tested with a likelihood-ratio
test against the intercept-only model.
"""

from __future__ import annotations

import logging

import numpy as np
import statsmodels.api as sm
from scipy import sparse as sp
from scipy import stats
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from scdiff_pipeline.core.errors import (
    BackendError,
    InsufficientReplicatesError,
    InvalidInputError,
)
from scdiff_pipeline.differential.base import DEContext, DETestBackend, register_backend

logger = logging.getLogger(__name__)

MIN_DISPERSION = 1e-8


def median_of_ratios(counts: np.ndarray) -> np.ndarray:
    """
    Median-of-ratios size factors (genes x samples counts).

    Only genes with a positive count in every sample contribute. When no
    such gene exists the library sizes, scaled to geometric mean 1, are used.
    """
    counts = np.asarray(counts, dtype=np.float64)
    lib_sizes = counts.sum(axis=0)
    if np.any(lib_sizes <= 0):
        raise InvalidInputError("Size factors undefined for a sample with zero total counts")

    positive = np.all(counts > 0, axis=1)
    if not positive.any():
        logger.warning(
            "No gene is expressed in all %d samples; using library sizes as size factors",
            counts.shape[1],
        )
        log_lib = np.log(lib_sizes)
        return np.exp(log_lib - log_lib.mean())

    log_counts = np.log(counts[positive])
    log_geo_means = log_counts.mean(axis=1, keepdims=True)
    return np.exp(np.median(log_counts - log_geo_means, axis=0))


def moment_dispersion(
    counts: np.ndarray,
    size_factors: np.ndarray,
    groups: np.ndarray,
) -> float:
    """Pooled within-group method-of-moments NB dispersion for one gene."""
    normalized = counts / size_factors
    numerator = 0.0
    weight = 0
    for g in np.unique(groups):
        mask = groups == g
        n = int(mask.sum())
        if n < 2:
            continue
        mean = normalized[mask].mean()
        if mean <= 0:
            continue
        var = normalized[mask].var(ddof=1)
        # Poisson part of the variance on the normalized scale
        poisson = mean * np.mean(1.0 / size_factors[mask])
        numerator += (n - 1) * (var - poisson) / mean**2
        weight += n - 1
    if weight == 0:
        return MIN_DISPERSION
    return float(max(numerator / weight, MIN_DISPERSION))


@register_backend
class NegativeBinomialTest(DETestBackend):
    """
    Count-based test for pseudobulk samples.

    Requires raw counts and at least two samples per group.

    Example:
        >>> backend = NegativeBinomialTest().prepare(context)
        >>> log2fc, pvalue = backend.test(counts_group1, counts_group2)
    """

    name = "negbinom"
    supported_scales = ("counts",)
    min_replicates = 2

    def __init__(self, maxiter: int = 100):
        """
        Initialize NB test.

        Args:
            maxiter: Maximum IRLS iterations per gene.
        """
        super().__init__()
        self.maxiter = maxiter
        self.size_factors1 = None
        self.size_factors2 = None

    def prepare(self, context: DEContext) -> "NegativeBinomialTest":
        backend = super().prepare(context)
        if context.n1 < self.min_replicates or context.n2 < self.min_replicates:
            raise InsufficientReplicatesError(
                f"Count-based test needs >= {self.min_replicates} samples per group, "
                f"got {context.n1} and {context.n2}",
                backend=self.name,
            )

        values = [context.group1_values, context.group2_values]
        if any(sp.issparse(v) for v in values):
            combined = sp.hstack(values).toarray()
        else:
            combined = np.hstack(values)

        sf = median_of_ratios(combined)
        backend.size_factors1 = sf[: context.n1]
        backend.size_factors2 = sf[context.n1:]
        logger.debug("Size factors: %s", np.round(sf, 3).tolist())
        return backend

    def test(self, group1: np.ndarray, group2: np.ndarray) -> tuple[float, float]:
        if self.size_factors1 is None:
            raise BackendError("Backend used before prepare()", backend=self.name)

        y = np.concatenate([group1, group2]).astype(np.float64)
        if y.sum() == 0:
            raise BackendError("All counts are zero", backend=self.name)

        groups = np.concatenate([np.ones(len(group1)), np.zeros(len(group2))])
        sf = np.concatenate([self.size_factors1, self.size_factors2])
        alpha = moment_dispersion(y, sf, groups)

        design = np.column_stack([np.ones_like(groups), groups])
        family = sm.families.NegativeBinomial(alpha=alpha)
        offset = np.log(sf)
        try:
            full = sm.GLM(y, design, family=family, offset=offset).fit(maxiter=self.maxiter)
            reduced = sm.GLM(y, design[:, :1], family=family, offset=offset).fit(maxiter=self.maxiter)
        except (ValueError, FloatingPointError, np.linalg.LinAlgError, PerfectSeparationError) as e:
            raise BackendError(f"NB GLM fit failed: {e}", backend=self.name) from e

        coef = float(full.params[1])
        lr = 2.0 * (full.llf - reduced.llf)
        if not (np.isfinite(coef) and np.isfinite(lr)):
            raise BackendError("NB GLM gave a non-finite fit", backend=self.name)

        # Likelihood ratio stays valid when one group is all zero
        pvalue = float(stats.chi2.sf(max(lr, 0.0), 1))
        return coef / np.log(2.0), pvalue
