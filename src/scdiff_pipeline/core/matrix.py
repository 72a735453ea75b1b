"""
Expression matrix and cell metadata containers.

Matrices are genes x columns (cells or pseudobulk samples). Every stage
returns a new matrix; metadata only grows through ``CellMetadata.annotate``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy import sparse as sp

from scdiff_pipeline.core.errors import (
    InvalidInputError,
    UnknownIdentifierError,
)

logger = logging.getLogger(__name__)

Scale = Literal["counts", "relative", "lognorm", "scaled"]
JoinPolicy = Literal["strict", "inner"]

SCALES = ("counts", "relative", "lognorm", "scaled")


def _as_index(labels: Iterable[Any], kind: str) -> pd.Index:
    index = pd.Index([str(x) for x in labels])
    if index.has_duplicates:
        dupes = index[index.duplicated()].unique().tolist()[:5]
        raise InvalidInputError(f"Duplicate {kind} labels: {dupes}")
    return index


@dataclass(frozen=True)
class ExpressionMatrix:
    """
    Genes x columns expression values with unique labels on both axes.

    Example:
        >>> m = ExpressionMatrix(counts, genes=gene_ids, cells=cell_ids)
        >>> m.scale
        'counts'
    """

    values: Union[np.ndarray, sp.spmatrix]
    """Expression values (genes x columns), dense or sparse."""

    genes: pd.Index
    """Gene identifiers (rows)."""

    cells: pd.Index
    """Cell or sample identifiers (columns)."""

    scale: Scale = "counts"
    """Value scale: raw counts, relative, log-normalized or scaled residuals."""

    def __post_init__(self):
        values = self.values
        if sp.issparse(values):
            values = sp.csr_matrix(values, dtype=np.float64)
        else:
            values = np.asarray(values, dtype=np.float64)
            if values.ndim != 2:
                raise InvalidInputError(f"Expected 2D values, got {values.ndim}D")

        genes = _as_index(self.genes, "gene")
        cells = _as_index(self.cells, "cell")

        if values.shape != (len(genes), len(cells)):
            raise InvalidInputError(
                f"Shape {values.shape} does not match "
                f"{len(genes)} genes x {len(cells)} cells"
            )
        if self.scale not in SCALES:
            raise InvalidInputError(f"Unknown scale: {self.scale}. Available: {SCALES}")

        object.__setattr__(self, "values", values)
        object.__setattr__(self, "genes", genes)
        object.__setattr__(self, "cells", cells)

    @property
    def n_genes(self) -> int:
        return len(self.genes)

    @property
    def n_cells(self) -> int:
        return len(self.cells)

    @property
    def shape(self) -> tuple[int, int]:
        return (self.n_genes, self.n_cells)

    @property
    def is_sparse(self) -> bool:
        return sp.issparse(self.values)

    def dense(self) -> np.ndarray:
        """Dense float copy of the values."""
        if self.is_sparse:
            return self.values.toarray().astype(np.float64)
        return np.array(self.values, dtype=np.float64)

    def gene_row(self, i: int) -> np.ndarray:
        """Dense 1D row for the gene at position ``i``."""
        if self.is_sparse:
            return self.values[i].toarray().ravel().astype(np.float64)
        return np.asarray(self.values[i], dtype=np.float64)

    def gene_rows(self, positions: Sequence[int]) -> np.ndarray:
        """Dense 2D block for the genes at ``positions``."""
        positions = np.asarray(positions, dtype=np.int64)
        block = self.values[positions]
        if sp.issparse(block):
            block = block.toarray()
        return np.asarray(block, dtype=np.float64)

    def gene_means(self) -> np.ndarray:
        """Mean value of each gene across columns."""
        return np.asarray(self.values.mean(axis=1)).ravel()

    def column_sums(self) -> np.ndarray:
        """Total per column (library size for count matrices)."""
        return np.asarray(self.values.sum(axis=0)).ravel()

    def detection_rate(self) -> np.ndarray:
        """Fraction of genes with a positive value in each column."""
        if self.is_sparse:
            detected = np.asarray((self.values > 0).sum(axis=0)).ravel()
        else:
            detected = (self.values > 0).sum(axis=0)
        return detected / max(self.n_genes, 1)

    def gene_positions(self, genes: Iterable[str]) -> np.ndarray:
        """Row positions of ``genes``; -1 for genes that are absent."""
        return self.genes.get_indexer([str(g) for g in genes])

    def with_values(
        self,
        values: Union[np.ndarray, sp.spmatrix],
        scale: Optional[Scale] = None,
        genes: Optional[Iterable[str]] = None,
    ) -> "ExpressionMatrix":
        """New matrix with the same column labels and replaced values."""
        return ExpressionMatrix(
            values=values,
            genes=self.genes if genes is None else genes,
            cells=self.cells,
            scale=scale or self.scale,
        )

    def subset(
        self,
        genes: Optional[Iterable[str]] = None,
        cells: Optional[Iterable[str]] = None,
    ) -> "ExpressionMatrix":
        """
        Subset rows and/or columns by label.

        Args:
            genes: Gene labels to keep (in the given order).
            cells: Column labels to keep (in the given order).

        Returns:
            New ExpressionMatrix.
        """
        values = self.values
        gene_index = self.genes
        cell_index = self.cells

        if genes is not None:
            gene_index = pd.Index([str(g) for g in genes])
            pos = self.genes.get_indexer(gene_index)
            if (pos < 0).any():
                missing = gene_index[pos < 0].tolist()[:5]
                raise UnknownIdentifierError(f"Genes not in matrix: {missing}")
            values = values[pos]
        if cells is not None:
            cell_index = pd.Index([str(c) for c in cells])
            pos = self.cells.get_indexer(cell_index)
            if (pos < 0).any():
                missing = cell_index[pos < 0].tolist()[:5]
                raise UnknownIdentifierError(f"Columns not in matrix: {missing}")
            values = values[:, pos]

        return ExpressionMatrix(values=values, genes=gene_index, cells=cell_index, scale=self.scale)

    def to_dataframe(self) -> pd.DataFrame:
        """Dense genes x columns DataFrame."""
        return pd.DataFrame(self.dense(), index=self.genes, columns=self.cells)

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame, scale: Scale = "counts") -> "ExpressionMatrix":
        """Build from a genes x columns DataFrame."""
        return cls(values=df.to_numpy(dtype=np.float64), genes=df.index, cells=df.columns, scale=scale)

    @classmethod
    def from_anndata(
        cls,
        adata: Any,
        layer: Optional[str] = None,
        scale: Scale = "counts",
    ) -> tuple["ExpressionMatrix", "CellMetadata"]:
        """
        Build a matrix and metadata from an AnnData object (cells x genes).

        Args:
            adata: AnnData object.
            layer: Layer to read (None for ``.X``).
            scale: Scale tag of the values read.

        Returns:
            Tuple of (matrix, metadata).
        """
        try:
            import anndata as ad
        except ImportError as e:
            raise ImportError("anndata is required for AnnData conversion") from e

        if not isinstance(adata, ad.AnnData):
            raise InvalidInputError(f"Expected AnnData, got {type(adata).__name__}")

        X = adata.layers[layer] if layer is not None else adata.X
        values = X.T.tocsr() if sp.issparse(X) else np.asarray(X).T
        matrix = cls(values=values, genes=adata.var_names, cells=adata.obs_names, scale=scale)
        return matrix, CellMetadata(adata.obs)


class CellMetadata:
    """
    Per-column metadata table keyed by cell (or sample) identifier.

    Fields are only ever added; replacing an existing field needs
    ``overwrite=True``.

    Example:
        >>> meta = CellMetadata(obs_df)
        >>> meta = meta.annotate({"Phase": phases})
    """

    def __init__(self, frame: Union[pd.DataFrame, Mapping[str, Any]], index: Optional[Iterable[str]] = None):
        frame = pd.DataFrame(frame, index=index).copy()
        frame.index = _as_index(frame.index, "cell")
        self._frame = frame

    @property
    def cells(self) -> pd.Index:
        return self._frame.index

    @property
    def fields(self) -> list[str]:
        return list(self._frame.columns)

    def __len__(self) -> int:
        return len(self._frame)

    def __contains__(self, field_name: str) -> bool:
        return field_name in self._frame.columns

    def __getitem__(self, field_name: str) -> pd.Series:
        if field_name not in self._frame.columns:
            raise UnknownIdentifierError(
                f"Metadata field '{field_name}' not found. Available: {self.fields}"
            )
        return self._frame[field_name].copy()

    def __repr__(self) -> str:
        return f"CellMetadata(n_cells={len(self)}, fields={self.fields})"

    def to_frame(self) -> pd.DataFrame:
        """Copy of the underlying table."""
        return self._frame.copy()

    def numeric(self, field_name: str, cells: Optional[Iterable[str]] = None) -> np.ndarray:
        """
        Numeric field as a float vector.

        Args:
            field_name: Field to read.
            cells: Optional cell order to return values in.

        Returns:
            Float array.
        """
        series = self[field_name]
        if cells is not None:
            series = series.reindex([str(c) for c in cells])
        if not pd.api.types.is_numeric_dtype(series) or pd.api.types.is_bool_dtype(series):
            raise InvalidInputError(f"Field '{field_name}' is not numeric (dtype {series.dtype})")
        values = series.to_numpy(dtype=np.float64)
        if not np.all(np.isfinite(values)):
            raise InvalidInputError(f"Field '{field_name}' has missing or non-finite values")
        return values

    def annotate(
        self,
        fields: Union[pd.DataFrame, Mapping[str, Any]],
        overwrite: bool = False,
    ) -> "CellMetadata":
        """
        Return new metadata with additional fields.

        Args:
            fields: DataFrame (indexed by cell) or mapping of field -> values.
                Series / DataFrame inputs must cover exactly the same cells.
            overwrite: Allow replacing existing fields.

        Returns:
            New CellMetadata.
        """
        if isinstance(fields, pd.DataFrame):
            update = fields.copy()
        else:
            update = pd.DataFrame(
                {k: v for k, v in fields.items()},
                index=None if any(isinstance(v, pd.Series) for v in fields.values()) else self.cells,
            )
        update.index = pd.Index([str(x) for x in update.index])

        if set(update.index) != set(self.cells) or len(update.index) != len(self.cells):
            raise InvalidInputError(
                "Annotation cell ids do not match metadata cell ids "
                f"({len(update.index)} vs {len(self.cells)})"
            )

        clash = [c for c in update.columns if c in self._frame.columns]
        if clash and not overwrite:
            raise InvalidInputError(f"Fields already exist: {clash}. Pass overwrite=True to replace.")

        frame = self._frame.copy()
        update = update.reindex(frame.index)
        for col in update.columns:
            frame[col] = update[col]
        return CellMetadata(frame)

    def subset(self, cells: Iterable[str]) -> "CellMetadata":
        cells = [str(c) for c in cells]
        missing = [c for c in cells if c not in self._frame.index]
        if missing:
            raise UnknownIdentifierError(f"Cells not in metadata: {missing[:5]}")
        return CellMetadata(self._frame.loc[cells])


@dataclass(frozen=True)
class GeneSet:
    """Named, immutable, order-irrelevant set of gene identifiers."""

    name: str
    genes: frozenset = field(default_factory=frozenset)

    def __post_init__(self):
        object.__setattr__(self, "genes", frozenset(str(g) for g in self.genes))

    def __len__(self) -> int:
        return len(self.genes)

    def __iter__(self):
        return iter(sorted(self.genes))


def align(
    matrix: ExpressionMatrix,
    metadata: CellMetadata,
    join: JoinPolicy = "strict",
) -> tuple[ExpressionMatrix, CellMetadata]:
    """
    Align metadata rows to matrix columns by identifier.

    Args:
        matrix: Expression matrix.
        metadata: Cell metadata.
        join: "strict" raises on any id mismatch; "inner" keeps the shared ids.

    Returns:
        Tuple of (matrix, metadata) with identical column order.
    """
    if join not in ("strict", "inner"):
        raise InvalidInputError(f"Unknown join policy: {join}")

    meta_ids = set(metadata.cells)
    in_matrix_only = [c for c in matrix.cells if c not in meta_ids]
    matrix_ids = set(matrix.cells)
    in_meta_only = [c for c in metadata.cells if c not in matrix_ids]

    if join == "strict":
        if in_matrix_only or in_meta_only:
            raise InvalidInputError(
                f"Matrix and metadata ids differ: {len(in_matrix_only)} columns without metadata, "
                f"{len(in_meta_only)} metadata rows without columns"
            )
        if list(metadata.cells) == list(matrix.cells):
            return matrix, metadata
        return matrix, metadata.subset(matrix.cells)

    shared = [c for c in matrix.cells if c in meta_ids]
    if not shared:
        raise InvalidInputError("Matrix and metadata share no identifiers")
    if in_matrix_only or in_meta_only:
        logger.warning(
            "Inner join dropped %d matrix columns and %d metadata rows",
            len(in_matrix_only),
            len(in_meta_only),
        )
        matrix = matrix.subset(cells=shared)
    return matrix, metadata.subset(shared)
