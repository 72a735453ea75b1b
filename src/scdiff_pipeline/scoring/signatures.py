"""
Gene-set signature scoring against expression-matched control genes.

For every gene set, each cell's score is the mean expression of the set's
genes minus the mean expression of a control pool sampled from the same
expression bins. Control sampling is random: scores are reproducible only
when a seed is given.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence, Union

import numpy as np
import pandas as pd

from scdiff_pipeline.core.errors import InvalidInputError, UnknownGeneError
from scdiff_pipeline.core.matrix import ExpressionMatrix, GeneSet

logger = logging.getLogger(__name__)

SCORE_SUFFIX = ".Score"


def score_field(name: str) -> str:
    """Metadata field name for a gene set's score."""
    return f"{name}{SCORE_SUFFIX}"


@dataclass
class SignatureScoreResult:
    """Result of signature scoring."""

    scores: pd.DataFrame
    """Scores (cells x '<name>.Score')."""

    labels: Optional[pd.Series] = None
    """Categorical label per cell for an exclusive family."""

    label_field: Optional[str] = None
    """Metadata field the labels are stored under."""

    control_genes: dict[str, list[str]] = field(default_factory=dict)
    """Pooled control genes per gene set."""

    missing_genes: list[UnknownGeneError] = field(default_factory=list)
    """Requested genes absent from the matrix (skipped)."""

    def metadata_update(self) -> pd.DataFrame:
        """Fields to append to the cell metadata."""
        update = self.scores.copy()
        if self.labels is not None:
            update[self.label_field] = self.labels
        return update


class SignatureScorer:
    """
    Scores cells for gene sets relative to binned random control genes.

    Example:
        >>> scorer = SignatureScorer(n_bins=24, ctrl_size=100, seed=0)
        >>> result = scorer.score(lognorm, [GeneSet("S", s_genes), GeneSet("G2M", g2m_genes)],
        ...                       classify=["S", "G2M"])
        >>> result.labels.value_counts()
    """

    def __init__(
        self,
        n_bins: int = 24,
        ctrl_size: int = 100,
        seed: Optional[int] = 0,
        strict: bool = False,
    ):
        """
        Initialize scorer.

        Args:
            n_bins: Number of equal-count expression bins.
            ctrl_size: Control genes sampled per target gene.
            seed: Random seed (None = non-deterministic).
            strict: Raise UnknownGeneError instead of skipping missing genes.
        """
        if n_bins < 1:
            raise ValueError(f"n_bins must be >= 1, got {n_bins}")
        if ctrl_size < 1:
            raise ValueError(f"ctrl_size must be >= 1, got {ctrl_size}")
        self.n_bins = n_bins
        self.ctrl_size = ctrl_size
        self.seed = seed
        self.strict = strict

    def expression_bins(self, matrix: ExpressionMatrix) -> np.ndarray:
        """Equal-count bin index (0..n_bins-1) for every gene, by mean expression."""
        means = matrix.gene_means()
        n_bins = min(self.n_bins, matrix.n_genes)
        # Stable ranking: genes with equal means are split by row position
        ranks = pd.Series(means).rank(method="first").to_numpy() - 1
        return np.floor(ranks * n_bins / max(matrix.n_genes, 1)).astype(np.int64)

    def score(
        self,
        matrix: ExpressionMatrix,
        gene_sets: Sequence[GeneSet],
        classify: Optional[Sequence[str]] = None,
        threshold: float = 0.0,
        sentinel: str = "G1",
        label_field: str = "Phase",
    ) -> SignatureScoreResult:
        """
        Score every cell for every gene set.

        Args:
            matrix: Normalized expression (genes x cells).
            gene_sets: Gene sets to score.
            classify: Names of an exclusive family to derive a label from,
                in priority order for tie-breaking.
            threshold: Minimum winning score for a non-sentinel label.
            sentinel: Label when no score exceeds the threshold.
            label_field: Field name for the derived label.

        Returns:
            SignatureScoreResult.
        """
        if matrix.scale == "counts":
            logger.warning("Scoring raw counts; normalized values are expected")

        names = [gs.name for gs in gene_sets]
        if len(set(names)) != len(names):
            raise InvalidInputError(f"Duplicate gene set names: {names}")

        rng = np.random.default_rng(self.seed)
        bins = self.expression_bins(matrix)

        scores = {}
        control_genes = {}
        missing: list[UnknownGeneError] = []

        for gene_set in gene_sets:
            positions, absent = self._resolve(matrix, gene_set)
            missing.extend(absent)
            if len(positions) == 0:
                raise InvalidInputError(
                    f"No genes of set '{gene_set.name}' are present in the matrix"
                )

            ctrl_positions = self._sample_controls(positions, bins, rng)
            if len(ctrl_positions) == 0:
                raise InvalidInputError(
                    f"No control genes available for set '{gene_set.name}'"
                )

            target_mean = matrix.gene_rows(positions).mean(axis=0)
            ctrl_mean = matrix.gene_rows(ctrl_positions).mean(axis=0)
            scores[score_field(gene_set.name)] = target_mean - ctrl_mean
            control_genes[gene_set.name] = matrix.genes[ctrl_positions].tolist()

            logger.info(
                "Scored '%s': %d/%d genes present, %d control genes",
                gene_set.name,
                len(positions),
                len(gene_set),
                len(ctrl_positions),
            )

        score_df = pd.DataFrame(scores, index=matrix.cells)

        labels = None
        if classify is not None:
            labels = classify_signatures(score_df, classify, threshold=threshold, sentinel=sentinel)

        return SignatureScoreResult(
            scores=score_df,
            labels=labels,
            label_field=label_field if labels is not None else None,
            control_genes=control_genes,
            missing_genes=missing,
        )

    def _resolve(
        self,
        matrix: ExpressionMatrix,
        gene_set: GeneSet,
    ) -> tuple[np.ndarray, list[UnknownGeneError]]:
        genes = sorted(gene_set.genes)
        pos = matrix.gene_positions(genes)
        absent = [
            UnknownGeneError(g, context=f"gene set '{gene_set.name}'")
            for g, p in zip(genes, pos)
            if p < 0
        ]
        if absent:
            if self.strict:
                raise absent[0]
            logger.warning(
                "Gene set '%s': %d of %d genes not found and skipped: %s",
                gene_set.name,
                len(absent),
                len(genes),
                ", ".join(e.gene for e in absent[:10]),
            )
        return pos[pos >= 0], absent

    def _sample_controls(
        self,
        positions: np.ndarray,
        bins: np.ndarray,
        rng: np.random.Generator,
    ) -> np.ndarray:
        """Union of per-target-gene control samples drawn from the same bin."""
        targets = set(positions.tolist())
        pool: set[int] = set()
        for pos in positions:
            candidates = np.flatnonzero(bins == bins[pos])
            candidates = np.array([c for c in candidates if c not in targets], dtype=np.int64)
            if len(candidates) == 0:
                continue
            k = min(self.ctrl_size, len(candidates))
            pool.update(rng.choice(candidates, size=k, replace=False).tolist())
        return np.array(sorted(pool), dtype=np.int64)


def classify_signatures(
    scores: pd.DataFrame,
    names: Sequence[str],
    threshold: float = 0.0,
    sentinel: str = "G1",
) -> pd.Series:
    """
    Label each cell with its highest-scoring set from an exclusive family.

    A cell whose best score is not above ``threshold`` gets ``sentinel``.
    Exact ties go to the set listed first in ``names``.

    Args:
        scores: Scores frame with '<name>.Score' columns.
        names: Family member names in priority order.
        threshold: Minimum winning score.
        sentinel: Label for cells without an active signature.

    Returns:
        Categorical Series of labels.
    """
    names = list(names)
    if not names:
        raise InvalidInputError("Classification needs at least one gene set name")
    if sentinel in names:
        raise InvalidInputError(f"Sentinel '{sentinel}' clashes with a gene set name")
    columns = [score_field(n) for n in names]
    absent = [c for c in columns if c not in scores.columns]
    if absent:
        raise InvalidInputError(f"Scores missing for classification: {absent}")

    values = scores[columns].to_numpy(dtype=np.float64)
    # argmax returns the first maximum, which implements the priority tie-break
    best = np.argmax(values, axis=1)
    best_score = values[np.arange(len(values)), best]
    labels = np.where(best_score > threshold, np.array(names, dtype=object)[best], sentinel)

    return pd.Series(
        pd.Categorical(labels, categories=names + [sentinel]),
        index=scores.index,
    )


def score_signatures(
    matrix: ExpressionMatrix,
    gene_sets: Union[Sequence[GeneSet], dict[str, Iterable[str]]],
    bins: int = 24,
    seed: Optional[int] = 0,
    ctrl_size: int = 100,
    classify: Optional[Sequence[str]] = None,
    threshold: float = 0.0,
    sentinel: str = "G1",
    label_field: str = "Phase",
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """
    Convenience function for signature scoring.

    Args:
        matrix: Normalized expression (genes x cells).
        gene_sets: GeneSets or mapping of name -> genes.
        bins: Number of expression bins.
        seed: Random seed.
        ctrl_size: Control genes per target gene.
        classify: Exclusive family names (priority order) to label cells by.
        threshold: Minimum winning score.
        sentinel: Label for cells with no active signature.
        label_field: Field name for the label.

    Returns:
        Tuple of (scores, metadata_update).
    """
    if isinstance(gene_sets, dict):
        gene_sets = [GeneSet(name, frozenset(genes)) for name, genes in gene_sets.items()]
    scorer = SignatureScorer(n_bins=bins, ctrl_size=ctrl_size, seed=seed)
    result = scorer.score(
        matrix,
        gene_sets,
        classify=classify,
        threshold=threshold,
        sentinel=sentinel,
        label_field=label_field,
    )
    return result.scores, result.metadata_update()
