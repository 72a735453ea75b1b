"""
Pluggable per-gene test backends.

A backend compares one gene's values in two groups and returns
``(effect_size, p_value)``. Run-level context (value scale, the full
group matrices from which library sizes or detection rates are derived)
is bound once through ``prepare`` before any per-gene call.
"""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional, Union

import numpy as np
from scipy import sparse as sp

from scdiff_pipeline.core.errors import InvalidInputError, UnsupportedInputError
from scdiff_pipeline.differential.effect_size import EffectSizeCalculator


@dataclass(frozen=True)
class DEContext:
    """Run-level inputs shared by all per-gene tests."""

    scale: str = "lognorm"
    """Value scale of the matrix under test."""

    group1_values: Optional[Union[np.ndarray, sp.spmatrix]] = None
    """All genes x group1 columns."""

    group2_values: Optional[Union[np.ndarray, sp.spmatrix]] = None
    """All genes x group2 columns."""

    pseudocount: float = 1.0
    """Pseudocount for log2 fold changes."""

    @property
    def n1(self) -> int:
        return 0 if self.group1_values is None else self.group1_values.shape[1]

    @property
    def n2(self) -> int:
        return 0 if self.group2_values is None else self.group2_values.shape[1]

    def column_sums(self) -> tuple[np.ndarray, np.ndarray]:
        """Per-column totals (library sizes) of both groups."""
        return (
            np.asarray(self.group1_values.sum(axis=0)).ravel(),
            np.asarray(self.group2_values.sum(axis=0)).ravel(),
        )

    def detection_rates(self) -> tuple[np.ndarray, np.ndarray]:
        """Per-column fraction of genes with a positive value."""

        def rate(values):
            n_genes = max(values.shape[0], 1)
            if sp.issparse(values):
                return np.asarray((values > 0).sum(axis=0)).ravel() / n_genes
            return (np.asarray(values) > 0).sum(axis=0) / n_genes

        return rate(self.group1_values), rate(self.group2_values)


class DETestBackend(ABC):
    """
    Abstract base for differential expression tests.

    Subclasses set ``name`` (registry key) and ``supported_scales``.
    """

    name: str = ""
    supported_scales: tuple[str, ...] = ("counts", "relative", "lognorm", "scaled")

    def __init__(self):
        self.context = DEContext()

    def prepare(self, context: DEContext) -> "DETestBackend":
        """
        Return a copy of this backend bound to run-level context.

        Raises:
            UnsupportedInputError: If the scale is not supported.
        """
        if context.scale not in self.supported_scales:
            raise UnsupportedInputError(
                f"Backend '{self.name}' does not accept '{context.scale}' values "
                f"(supported: {self.supported_scales})"
            )
        backend = copy.copy(self)
        backend.context = context
        return backend

    @abstractmethod
    def test(self, group1: np.ndarray, group2: np.ndarray) -> tuple[float, float]:
        """
        Test one gene.

        Args:
            group1: Values of the gene in group1 columns.
            group2: Values of the gene in group2 columns.

        Returns:
            Tuple of (effect_size, p_value).

        Raises:
            BackendError: If the gene cannot be tested.
        """
        ...

    def effect_size(self, group1: np.ndarray, group2: np.ndarray) -> float:
        """Scale-aware average log2 fold change for one gene."""
        calc = EffectSizeCalculator(scale=self.context.scale, pseudocount=self.context.pseudocount)
        return float(calc.log2_fold_change(group1, group2)[0])

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


BACKENDS: dict[str, type[DETestBackend]] = {}

BACKEND_ALIASES = {
    "wilcoxon": "wilcox",
    "ttest": "t",
    "nb": "negbinom",
    "mast": "hurdle",
}


def register_backend(cls: type[DETestBackend]) -> type[DETestBackend]:
    """Class decorator adding a backend to the registry under ``cls.name``."""
    if not cls.name:
        raise InvalidInputError(f"Backend {cls.__name__} has no name")
    BACKENDS[cls.name] = cls
    return cls


def get_backend(backend: Union[str, DETestBackend], **kwargs: Any) -> DETestBackend:
    """
    Resolve a backend name (or pass an instance through).

    Args:
        backend: Registry name, alias or backend instance.
        **kwargs: Constructor arguments for a named backend.

    Returns:
        Backend instance.
    """
    if isinstance(backend, DETestBackend):
        return backend
    key = BACKEND_ALIASES.get(str(backend).lower(), str(backend).lower())
    if key not in BACKENDS:
        raise InvalidInputError(
            f"Unknown DE backend: {backend}. Available: {sorted(BACKENDS)}"
        )
    return BACKENDS[key](**kwargs)
