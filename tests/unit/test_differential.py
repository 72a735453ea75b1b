"""Tests for differential expression modules."""

import pytest
import numpy as np
import pandas as pd


class TestWilcoxonTest:
    """Test Wilcoxon rank-sum backend."""

    def test_significant_difference(self):
        from scdiff_pipeline.differential.wilcoxon import WilcoxonTest

        rng = np.random.default_rng(42)
        group1 = rng.normal(3, 1, 50)
        group2 = rng.normal(0, 1, 50)

        effect, pval = WilcoxonTest().test(group1, group2)
        assert pval < 0.001

    def test_no_difference(self):
        from scdiff_pipeline.differential.wilcoxon import WilcoxonTest

        rng = np.random.default_rng(42)
        effect, pval = WilcoxonTest().test(rng.normal(size=50), rng.normal(size=50))
        assert pval > 0.05

    def test_all_tied(self):
        from scdiff_pipeline.differential.wilcoxon import WilcoxonTest

        effect, pval = WilcoxonTest().test(np.full(3, 2.0), np.full(4, 2.0))
        assert pval == 1.0
        assert effect == pytest.approx(0.0)


class TestTTest:
    """Test Welch t-test backend."""

    def test_significant_difference(self):
        from scdiff_pipeline.differential.ttest import TTest

        rng = np.random.default_rng(0)
        _, pval = TTest().test(rng.normal(2, 1, 30), rng.normal(0, 1, 30))
        assert pval < 0.001

    def test_constant_equal_groups(self):
        from scdiff_pipeline.differential.ttest import TTest

        _, pval = TTest().test(np.ones(3), np.ones(3))
        assert pval == 1.0

    def test_constant_different_groups_fails(self):
        from scdiff_pipeline.core.errors import BackendError
        from scdiff_pipeline.differential.ttest import TTest

        with pytest.raises(BackendError):
            TTest().test(np.ones(3), np.zeros(3))


class TestEffectSize:
    """Test scale-aware fold changes."""

    def test_lognorm_back_transform(self):
        from scdiff_pipeline.differential.effect_size import compute_log2fc

        lfc = compute_log2fc(np.log1p([[9.0, 9.0]]), np.log1p([[0.0, 0.0]]), scale="lognorm")
        assert lfc[0] == pytest.approx(np.log2(10.0))

    def test_counts_use_raw_means(self):
        from scdiff_pipeline.differential.effect_size import compute_log2fc

        lfc = compute_log2fc([[3.0, 5.0]], [[1.0, 1.0]], scale="counts")
        assert lfc[0] == pytest.approx(np.log2(5.0) - np.log2(2.0))

    def test_scaled_uses_difference(self):
        """Scaled residuals can be negative; use mean difference."""
        from scdiff_pipeline.differential.effect_size import compute_log2fc

        lfc = compute_log2fc([[-2.0, -1.0]], [[-4.0, -3.0]], scale="scaled")
        assert lfc[0] == pytest.approx(2.0)

    def test_pct_detected(self):
        from scdiff_pipeline.differential.effect_size import EffectSizeCalculator

        pct = EffectSizeCalculator.pct_detected(np.array([[0.0, 1.0, 2.0, 0.0], [0.0, 0.0, 0.0, 0.0]]))
        np.testing.assert_allclose(pct, [0.5, 0.0])


class TestFDR:
    """Test p-value adjustment."""

    def test_bonferroni(self):
        from scdiff_pipeline.differential.fdr import adjust_pvalues

        adj = adjust_pvalues(np.array([0.01, 0.2, 0.5]), method="bonferroni")
        np.testing.assert_allclose(adj, [0.03, 0.6, 1.0])

    def test_alias_and_empty(self):
        from scdiff_pipeline.differential.fdr import FDRCorrector

        corrector = FDRCorrector(method="BH")
        assert corrector.method == "fdr_bh"
        assert corrector.correct(np.array([])).size == 0

    def test_unknown_method(self):
        from scdiff_pipeline.core.errors import InvalidInputError
        from scdiff_pipeline.differential.fdr import FDRCorrector

        with pytest.raises(InvalidInputError):
            FDRCorrector(method="magic")


class TestBackendRegistry:
    """Test backend lookup."""

    def test_builtin_backends(self):
        from scdiff_pipeline.differential import BACKENDS

        assert {"wilcox", "t", "negbinom", "hurdle"} <= set(BACKENDS)

    def test_alias(self):
        from scdiff_pipeline.differential import HurdleTest, get_backend

        assert isinstance(get_backend("MAST"), HurdleTest)

    def test_unknown_backend(self):
        from scdiff_pipeline.core.errors import InvalidInputError
        from scdiff_pipeline.differential import get_backend

        with pytest.raises(InvalidInputError):
            get_backend("deseq9")

    def test_custom_backend(self, tiny_matrix):
        from scdiff_pipeline.differential import DETestBackend, differential_expression

        class MeanDifference(DETestBackend):
            name = "meandiff"

            def test(self, group1, group2):
                return float(np.mean(group1) - np.mean(group2)), 0.5

        matrix, meta = tiny_matrix
        result = differential_expression(matrix, meta, "g1", "g2", backend=MeanDifference())
        assert result.backend == "meandiff"
        assert result.table.loc["A", "avg_log2FC"] == pytest.approx(10.0)


class TestDifferentialExpression:
    """Test the DE engine."""

    def test_four_cell_example(self, tiny_matrix):
        from scdiff_pipeline.differential import differential_expression

        matrix, meta = tiny_matrix
        result = differential_expression(matrix, meta, "g1", "g2", backend="wilcox")
        table = result.table

        assert list(table.columns) == ["p_val", "avg_log2FC", "pct.1", "pct.2", "p_val_adj"]
        assert table.loc["A", "avg_log2FC"] > 0
        assert table.loc["A", "p_val"] < table.loc["B", "p_val"]
        assert table.loc["B", "p_val"] == pytest.approx(1.0)
        assert table.loc["B", "avg_log2FC"] == pytest.approx(0.0)
        assert table.loc["A", "pct.1"] == 1.0
        assert table.loc["A", "pct.2"] == 0.0
        assert table.index[0] == "A"

    def test_group2_none_equals_rest(self, lognorm, metadata):
        from scdiff_pipeline.differential import differential_expression

        rest = differential_expression(lognorm, metadata, "stim", group_by="condition")
        explicit = differential_expression(lognorm, metadata, "stim", "ctrl", group_by="condition")
        pd.testing.assert_frame_equal(rest.table, explicit.table)
        assert rest.group2 == ["ctrl"]

    def test_detects_upregulated_genes(self, lognorm, metadata):
        from scdiff_pipeline.differential import differential_expression

        result = differential_expression(lognorm, metadata, "stim", "ctrl", group_by="condition")
        significant = result.get_significant(alpha=0.01)
        up = {f"gene_{i}" for i in range(8)}
        assert up <= set(significant.index)
        assert (result.table.loc[sorted(up), "avg_log2FC"] > 1).all()

    def test_only_pos_subset(self, lognorm, metadata):
        from scdiff_pipeline.differential import differential_expression

        full = differential_expression(lognorm, metadata, "stim", "ctrl", group_by="condition")
        pos = differential_expression(lognorm, metadata, "stim", "ctrl", group_by="condition", only_pos=True)

        assert set(pos.table.index) <= set(full.table.index)
        assert (pos.table["avg_log2FC"] > 0).all()
        expected = full.table[full.table["avg_log2FC"] > 0]
        assert set(pos.table.index) == set(expected.index)
        pd.testing.assert_frame_equal(pos.table.sort_index(), expected.sort_index())

    def test_ranking(self, lognorm, metadata):
        from scdiff_pipeline.differential import differential_expression

        table = differential_expression(lognorm, metadata, "stim", "ctrl", group_by="condition").table
        padj = table["p_val_adj"].to_numpy()
        assert np.all(np.diff(padj) >= 0)
        for _, block in table.groupby("p_val_adj", sort=False):
            lfc = block["avg_log2FC"].abs().to_numpy()
            assert np.all(np.diff(lfc) <= 0)

    def test_adjustment_over_tested_genes(self, lognorm, metadata):
        from scdiff_pipeline.differential import differential_expression

        subset = [f"gene_{i}" for i in range(10)]
        small = differential_expression(lognorm, metadata, "stim", "ctrl", group_by="condition", gene_subset=subset)
        large = differential_expression(lognorm, metadata, "stim", "ctrl", group_by="condition")

        assert small.n_tested == 10
        assert large.n_tested == lognorm.n_genes
        gene = "gene_9"
        np.testing.assert_allclose(small.table.loc[gene, "p_val"], large.table.loc[gene, "p_val"])
        assert small.table.loc[gene, "p_val_adj"] == pytest.approx(
            min(1.0, small.table.loc[gene, "p_val"] * 10)
        )
        assert large.table.loc[gene, "p_val_adj"] == pytest.approx(
            min(1.0, large.table.loc[gene, "p_val"] * lognorm.n_genes)
        )

    def test_unknown_genes_in_subset(self, lognorm, metadata):
        from scdiff_pipeline.core.errors import InvalidInputError
        from scdiff_pipeline.differential import differential_expression

        result = differential_expression(
            lognorm, metadata, "stim", "ctrl", group_by="condition", gene_subset=["gene_0", "nope"]
        )
        assert result.n_tested == 1
        assert [e.gene for e in result.unknown_genes] == ["nope"]

        with pytest.raises(InvalidInputError):
            differential_expression(lognorm, metadata, "stim", "ctrl", group_by="condition", gene_subset=["nope"])

    def test_min_pct_filters(self, tiny_matrix):
        from scdiff_pipeline.core.matrix import ExpressionMatrix
        from scdiff_pipeline.differential import differential_expression

        matrix, meta = tiny_matrix
        values = np.vstack([matrix.values, [[0.0, 0.0, 0.0, 1.0]]])
        m = ExpressionMatrix(values, genes=["A", "B", "C"], cells=matrix.cells, scale="lognorm")

        result = differential_expression(m, meta, "g1", "g2", min_pct=0.6)
        assert "C" not in result.table.index
        assert result.n_filtered == 1
        assert result.n_tested == 2

    def test_logfc_threshold_filters(self, tiny_matrix):
        from scdiff_pipeline.differential import differential_expression

        matrix, meta = tiny_matrix
        result = differential_expression(matrix, meta, "g1", "g2", logfc_threshold=0.25)
        assert list(result.table.index) == ["A"]
        assert result.n_filtered == 1

    def test_failures_omitted_and_counted(self, tiny_matrix):
        from scdiff_pipeline.differential import differential_expression

        matrix, meta = tiny_matrix
        # Welch t: gene A is constant within groups with different values
        result = differential_expression(matrix, meta, "g1", "g2", backend="t")
        assert result.n_omitted == 1
        assert "A" in result.omitted
        assert list(result.table.index) == ["B"]
        assert result.n_tested == 1

    def test_backend_exception_wrapped_and_omitted(self, tiny_matrix):
        from scdiff_pipeline.differential import DETestBackend, differential_expression

        class Unstable(DETestBackend):
            name = "unstable"

            def test(self, group1, group2):
                if np.any(group1 == 10.0):
                    raise ValueError("model blew up")
                return 0.0, 1.0

        matrix, meta = tiny_matrix
        result = differential_expression(matrix, meta, "g1", "g2", backend=Unstable())
        assert result.n_omitted == 1
        assert "model blew up" in result.omitted["A"]
        assert "ValueError" in result.omitted["A"]
        assert list(result.table.index) == ["B"]

    def test_unknown_label(self, lognorm, metadata):
        from scdiff_pipeline.core.errors import UnknownIdentifierError
        from scdiff_pipeline.differential import differential_expression

        with pytest.raises(UnknownIdentifierError):
            differential_expression(lognorm, metadata, "treated", group_by="condition")

    def test_unknown_field(self, lognorm, metadata):
        from scdiff_pipeline.core.errors import UnknownIdentifierError
        from scdiff_pipeline.differential import differential_expression

        with pytest.raises(UnknownIdentifierError):
            differential_expression(lognorm, metadata, "stim", group_by="treatment")

    def test_empty_rest_group(self, tiny_matrix):
        from scdiff_pipeline.core.errors import EmptyGroupError
        from scdiff_pipeline.differential import differential_expression

        matrix, meta = tiny_matrix
        with pytest.raises(EmptyGroupError):
            differential_expression(matrix, meta, ["g1", "g2"])

    def test_overlapping_groups(self, tiny_matrix):
        from scdiff_pipeline.core.errors import InvalidInputError
        from scdiff_pipeline.differential import differential_expression

        matrix, meta = tiny_matrix
        with pytest.raises(InvalidInputError):
            differential_expression(matrix, meta, ["g1"], ["g1", "g2"])

    def test_min_cells_group(self, tiny_matrix):
        from scdiff_pipeline.core.errors import InvalidInputError
        from scdiff_pipeline.differential import differential_expression

        matrix, meta = tiny_matrix
        with pytest.raises(InvalidInputError):
            differential_expression(matrix, meta, "g1", "g2", min_cells_group=3)

    def test_threads_match_serial(self, lognorm, metadata):
        from scdiff_pipeline.core.config import DEConfig
        from scdiff_pipeline.differential import DifferentialExpressionEngine

        config = DEConfig(chunk_size=7)
        serial = DifferentialExpressionEngine(config).run(lognorm, metadata, "stim", group_by="condition")
        threaded = DifferentialExpressionEngine(config, n_workers=4).run(
            lognorm, metadata, "stim", group_by="condition"
        )
        pd.testing.assert_frame_equal(serial.table, threaded.table)


class TestNegativeBinomial:
    """Test the count-based backend on pseudobulk samples."""

    def test_size_factors(self):
        from scdiff_pipeline.differential.negbinom import median_of_ratios

        counts = np.array([[10.0, 20.0], [5.0, 10.0], [8.0, 16.0]])
        sf = median_of_ratios(counts)
        assert sf[1] / sf[0] == pytest.approx(2.0)
        assert np.prod(sf) == pytest.approx(1.0)

    def test_pseudobulk_de(self, counts, metadata):
        from scdiff_pipeline.aggregation.pseudobulk import aggregate
        from scdiff_pipeline.differential import differential_expression

        pb, pb_meta = aggregate(counts, metadata, ["sample"], carry=["condition"])
        result = differential_expression(pb, pb_meta, "stim", "ctrl", group_by="condition", backend="negbinom")

        assert result.n1 == 3
        assert result.n2 == 3
        up = [f"gene_{i}" for i in range(8)]
        table = result.table
        assert (table.loc[up, "avg_log2FC"] > 1.5).all()
        assert (table.loc[up, "p_val"] < 1e-3).all()

    def test_insufficient_replicates(self, counts, metadata):
        from scdiff_pipeline.aggregation.pseudobulk import aggregate
        from scdiff_pipeline.core.errors import InsufficientReplicatesError
        from scdiff_pipeline.differential import differential_expression

        pb, pb_meta = aggregate(counts, metadata, ["sample"])
        with pytest.raises(InsufficientReplicatesError):
            differential_expression(pb, pb_meta, "s0", ["s1", "s2"], group_by="sample", backend="negbinom")

    def test_requires_counts(self, lognorm, metadata):
        from scdiff_pipeline.core.errors import UnsupportedInputError
        from scdiff_pipeline.differential import differential_expression

        with pytest.raises(UnsupportedInputError):
            differential_expression(lognorm, metadata, "stim", group_by="condition", backend="negbinom")

    def test_all_zero_gene_omitted(self):
        from scdiff_pipeline.core.matrix import CellMetadata, ExpressionMatrix
        from scdiff_pipeline.differential import differential_expression

        values = np.array([
            [10.0, 12.0, 30.0, 33.0],
            [5.0, 6.0, 5.0, 7.0],
            [0.0, 0.0, 0.0, 0.0],
        ])
        m = ExpressionMatrix(values, genes=["up", "flat", "zero"], cells=["a", "b", "c", "d"])
        meta = CellMetadata({"grp": ["x", "x", "y", "y"]}, index=["a", "b", "c", "d"])

        result = differential_expression(m, meta, "y", "x", group_by="grp", backend="negbinom")
        assert "zero" in result.omitted
        assert result.n_tested == 2

    def test_silenced_gene_is_significant(self, counts, metadata):
        from scdiff_pipeline.aggregation.pseudobulk import aggregate
        from scdiff_pipeline.core.matrix import ExpressionMatrix
        from scdiff_pipeline.differential import differential_expression

        values = np.array(counts.values, dtype=np.float64)
        stim = (metadata["condition"] == "stim").to_numpy()
        values[counts.genes.get_loc("gene_20"), stim] = 0.0
        silenced = ExpressionMatrix(values, genes=counts.genes, cells=counts.cells)

        pb, pb_meta = aggregate(silenced, metadata, ["sample"], carry=["condition"])
        result = differential_expression(
            pb, pb_meta, "stim", "ctrl", group_by="condition", backend="negbinom",
            gene_subset=["gene_20", "gene_21"],
        )
        row = result.table.loc["gene_20"]
        assert row["avg_log2FC"] < 0
        assert row["p_val"] < 0.05
        assert row["p_val_adj"] < 0.05


class TestHurdle:
    """Test the hurdle backend."""

    def test_detects_difference(self, lognorm, metadata):
        from scdiff_pipeline.differential import differential_expression

        up = [f"gene_{i}" for i in range(8)]
        result = differential_expression(
            lognorm, metadata, "stim", "ctrl", group_by="condition", backend="hurdle",
            gene_subset=up + ["gene_30", "gene_31"],
        )
        table = result.table
        assert (table.loc[up, "p_val"] < 1e-3).all()
        assert (table.loc[up, "avg_log2FC"] > 0).all()

    def test_detection_only_difference(self):
        from scdiff_pipeline.core.matrix import CellMetadata, ExpressionMatrix
        from scdiff_pipeline.differential.base import DEContext
        from scdiff_pipeline.differential.hurdle import HurdleTest

        rng = np.random.default_rng(0)
        n = 40
        values = rng.uniform(1.0, 2.0, size=(5, 2 * n))
        values[0, :n] = np.where(rng.random(n) < 0.9, values[0, :n], 0.0)
        values[0, n:] = np.where(rng.random(n) < 0.2, values[0, n:], 0.0)

        context = DEContext(scale="lognorm", group1_values=values[:, :n], group2_values=values[:, n:])
        backend = HurdleTest(adjust_cdr=False).prepare(context)
        _, pval = backend.test(values[0, :n], values[0, n:])
        assert pval < 1e-3

    def test_detection_rate_separates_detection(self):
        """Detection tracks the detection rate exactly; no separation warnings leak."""
        import warnings

        from statsmodels.tools.sm_exceptions import PerfectSeparationWarning

        from scdiff_pipeline.differential.base import DEContext
        from scdiff_pipeline.differential.hurdle import HurdleTest

        rng = np.random.default_rng(1)
        n = 30
        values = rng.uniform(1.0, 2.0, size=(4, 2 * n))
        values[0, ::3] = 0.0

        context = DEContext(scale="lognorm", group1_values=values[:, :n], group2_values=values[:, n:])
        backend = HurdleTest().prepare(context)
        assert backend.cdr is not None

        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            _, pval = backend.test(values[0, :n], values[0, n:])

        assert 0.0 <= pval <= 1.0
        assert not any(issubclass(w.category, PerfectSeparationWarning) for w in caught)

    def test_undetected_gene_fails(self):
        from scdiff_pipeline.core.errors import BackendError
        from scdiff_pipeline.differential.hurdle import HurdleTest

        with pytest.raises(BackendError):
            HurdleTest(adjust_cdr=False).test(np.zeros(3), np.zeros(3))

    def test_rejects_scaled(self):
        from scdiff_pipeline.core.errors import UnsupportedInputError
        from scdiff_pipeline.differential.base import DEContext
        from scdiff_pipeline.differential.hurdle import HurdleTest

        context = DEContext(scale="scaled", group1_values=np.ones((2, 2)), group2_values=np.ones((2, 2)))
        with pytest.raises(UnsupportedInputError):
            HurdleTest().prepare(context)


class TestFindAllMarkers:
    """Test one-vs-rest marker search."""

    def test_one_table_per_label(self, lognorm, metadata):
        from scdiff_pipeline.differential import find_all_markers

        markers = find_all_markers(lognorm, metadata, group_by="condition", only_pos=True)
        assert list(markers.columns[:2]) == ["cluster", "gene"]
        assert set(markers["cluster"]) <= {"ctrl", "stim"}
        stim = markers[markers["cluster"] == "stim"]
        assert {f"gene_{i}" for i in range(8)} <= set(stim["gene"])
        assert (markers["avg_log2FC"] > 0).all()

    def test_single_label(self, tiny_matrix):
        from scdiff_pipeline.core.errors import InvalidInputError
        from scdiff_pipeline.core.matrix import CellMetadata
        from scdiff_pipeline.differential import find_all_markers

        matrix, _ = tiny_matrix
        meta = CellMetadata({"ident": ["a"] * 4}, index=matrix.cells)
        with pytest.raises(InvalidInputError):
            find_all_markers(matrix, meta)
