"""
Preprocessing: normalization and covariate regression.
"""

from scdiff_pipeline.preprocessing.normalize import (
    Normalizer,
    normalize,
)
from scdiff_pipeline.preprocessing.regression import (
    CovariateRegressor,
    RegressionResult,
    regress_out,
    scale_data,
)

__all__ = [
    "Normalizer",
    "normalize",
    "CovariateRegressor",
    "RegressionResult",
    "regress_out",
    "scale_data",
]
