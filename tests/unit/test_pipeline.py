"""Tests for the end-to-end pipeline."""

import pytest
import numpy as np


def _counts_with_panels(n_cells=60, seed=0):
    """Counts holding part of both cell-cycle panels plus background genes."""
    from scdiff_pipeline.core.matrix import CellMetadata, ExpressionMatrix
    from scdiff_pipeline.scoring.cell_cycle import G2M_PHASE_GENES, S_PHASE_GENES

    rng = np.random.default_rng(seed)
    genes = list(S_PHASE_GENES[:20]) + list(G2M_PHASE_GENES[:20]) + [f"bg_{i}" for i in range(60)]
    mu = rng.gamma(3.0, 3.0, len(genes))[:, None] + 1.0
    values = rng.poisson(np.repeat(mu, n_cells, axis=1)).astype(np.float64)
    cells = [f"cell_{i}" for i in range(n_cells)]
    meta = CellMetadata({"sample": [f"s{i % 4}" for i in range(n_cells)]}, index=cells)
    return ExpressionMatrix(values, genes=genes, cells=cells), meta


class TestPreprocess:
    """Test normalization, scoring and regression stages."""

    def test_normalize_only(self, counts, metadata):
        from scdiff_pipeline.pipeline import Pipeline

        result = Pipeline().preprocess(counts, metadata, cell_cycle=False, regress=False)
        assert result.normalized.scale == "lognorm"
        assert result.scaled is None
        assert result.metadata.fields == metadata.fields

    def test_cell_cycle_and_regression(self):
        from scdiff_pipeline.pipeline import Pipeline

        counts, meta = _counts_with_panels()
        result = Pipeline().preprocess(counts, meta)

        for name in ("S.Score", "G2M.Score", "Phase", "CC.Difference"):
            assert name in result.metadata
        assert set(result.metadata["Phase"]) <= {"S", "G2M", "G1"}
        assert result.scaled.scale == "scaled"
        assert result.scaled.shape == counts.shape

        s_score = result.metadata.numeric("S.Score")
        centered = s_score - s_score.mean()
        np.testing.assert_allclose(result.scaled.values @ centered, 0.0, atol=1e-8)

    def test_custom_covariates(self, counts, metadata):
        from scdiff_pipeline.pipeline import Pipeline

        rng = np.random.default_rng(3)
        meta = metadata.annotate({"pct_mito": rng.uniform(0, 10, len(metadata))})
        result = Pipeline().preprocess(counts, meta, cell_cycle=False, covariates=["pct_mito"])
        assert result.scaled is not None
        np.testing.assert_allclose(result.scaled.values.mean(axis=1), 0.0, atol=1e-10)


class TestPseudobulkDE:
    """Test aggregation followed by DE."""

    def test_condition_carried(self, counts, metadata):
        from scdiff_pipeline.core.config import AggregationConfig, Config
        from scdiff_pipeline.pipeline import Pipeline

        pipeline = Pipeline(Config(aggregation=AggregationConfig(group_key=["sample"])))
        result, aggregated = pipeline.pseudobulk_de(counts, metadata, "stim", "ctrl", group_by="condition")

        assert aggregated.n_units == 6
        assert "condition" in aggregated.metadata
        assert result.n1 == 3 and result.n2 == 3
        assert {f"gene_{i}" for i in range(8)} <= set(result.get_significant(alpha=0.05).index)


class TestRunComparison:
    """Test the full single-cell vs pseudobulk run."""

    def test_run_comparison(self, counts, metadata):
        from scdiff_pipeline.pipeline import create_pipeline

        pipeline = create_pipeline(seed=0, n_workers=2)
        result = pipeline.run_comparison(counts, metadata, "stim", "ctrl", group_by="condition")

        assert result.sc_result.backend == "wilcox"
        assert result.pb_result.backend == "negbinom"
        assert result.pseudobulk.n_units == 12
        assert result.comparison.n_genes > 0

        up = [f"gene_{i}" for i in range(8)]
        assert set(up) <= set(result.comparison.genes_in("both"))
        assert result.comparison.correlation > 0.3

        for key in ("n_genes", "n_cells", "n_pseudobulk_samples", "lfc_spearman", "concordance"):
            assert key in result.metrics
        assert result.metrics["n_cells"] == counts.n_cells

    def test_misaligned_metadata(self, counts, metadata):
        from scdiff_pipeline.core.errors import InvalidInputError
        from scdiff_pipeline.pipeline import Pipeline

        with pytest.raises(InvalidInputError):
            Pipeline().run_comparison(counts, metadata.subset(metadata.cells[:50]), "stim", group_by="condition")
