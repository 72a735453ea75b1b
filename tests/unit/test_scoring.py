"""Tests for signature scoring and cell-cycle phases."""

import pytest
import numpy as np
import pandas as pd


def _cell_cycle_matrix(n_cells=30, n_background=200, seed=0):
    """Log-normalized matrix with S genes high in the first third of cells, G2M in the second."""
    from scdiff_pipeline.core.matrix import ExpressionMatrix
    from scdiff_pipeline.scoring.cell_cycle import G2M_PHASE_GENES, S_PHASE_GENES

    rng = np.random.default_rng(seed)
    s_genes = list(S_PHASE_GENES[:15])
    g2m_genes = list(G2M_PHASE_GENES[:15])
    background = [f"bg_{i}" for i in range(n_background)]
    genes = s_genes + g2m_genes + background

    values = rng.uniform(0.5, 1.5, size=(len(genes), n_cells))
    third = n_cells // 3
    values[: len(s_genes), :third] += 3.0
    values[len(s_genes): len(s_genes) + len(g2m_genes), third: 2 * third] += 3.0

    cells = [f"cell_{i}" for i in range(n_cells)]
    return ExpressionMatrix(values, genes=genes, cells=cells, scale="lognorm"), third


class TestSignatureScorer:
    """Test control-matched signature scores."""

    def test_expression_bins_equal_count(self, lognorm):
        from scdiff_pipeline.scoring.signatures import SignatureScorer

        bins = SignatureScorer(n_bins=6).expression_bins(lognorm)
        counts = np.bincount(bins)
        assert len(counts) == 6
        assert counts.max() - counts.min() <= 1

    def test_bins_ordered_by_mean(self, lognorm):
        from scdiff_pipeline.scoring.signatures import SignatureScorer

        bins = SignatureScorer(n_bins=4).expression_bins(lognorm)
        means = lognorm.gene_means()
        assert means[bins == 0].max() <= means[bins == 3].min()

    def test_reproducible_with_seed(self, lognorm):
        from scdiff_pipeline.scoring.signatures import score_signatures

        sets = {"up": ["gene_0", "gene_1", "gene_2"]}
        s1, _ = score_signatures(lognorm, sets, bins=5, seed=3, ctrl_size=5)
        s2, _ = score_signatures(lognorm, sets, bins=5, seed=3, ctrl_size=5)
        pd.testing.assert_frame_equal(s1, s2)

    def test_score_field_names(self, lognorm):
        from scdiff_pipeline.scoring.signatures import score_signatures

        scores, update = score_signatures(lognorm, {"up": ["gene_0"], "down": ["gene_20"]}, bins=5, ctrl_size=5)
        assert list(scores.columns) == ["up.Score", "down.Score"]
        assert list(update.index) == list(lognorm.cells)

    def test_score_is_target_minus_control(self, lognorm):
        from scdiff_pipeline.core.matrix import GeneSet
        from scdiff_pipeline.scoring.signatures import SignatureScorer

        scorer = SignatureScorer(n_bins=5, ctrl_size=4, seed=1)
        result = scorer.score(lognorm, [GeneSet("up", frozenset(["gene_0", "gene_1"]))])
        ctrl = result.control_genes["up"]
        assert not {"gene_0", "gene_1"} & set(ctrl)

        target = lognorm.subset(genes=["gene_0", "gene_1"]).values.mean(axis=0)
        control = lognorm.subset(genes=ctrl).values.mean(axis=0)
        np.testing.assert_allclose(result.scores["up.Score"].to_numpy(), target - control)

    def test_missing_genes_skipped(self, lognorm):
        from scdiff_pipeline.core.matrix import GeneSet
        from scdiff_pipeline.scoring.signatures import SignatureScorer

        result = SignatureScorer(n_bins=5, ctrl_size=5).score(
            lognorm, [GeneSet("up", frozenset(["gene_0", "NOT_A_GENE"]))]
        )
        assert [e.gene for e in result.missing_genes] == ["NOT_A_GENE"]
        assert "up.Score" in result.scores

    def test_missing_genes_strict(self, lognorm):
        from scdiff_pipeline.core.errors import UnknownGeneError
        from scdiff_pipeline.core.matrix import GeneSet
        from scdiff_pipeline.scoring.signatures import SignatureScorer

        with pytest.raises(UnknownGeneError):
            SignatureScorer(strict=True).score(lognorm, [GeneSet("up", frozenset(["NOT_A_GENE", "gene_0"]))])

    def test_no_present_genes(self, lognorm):
        from scdiff_pipeline.core.errors import InvalidInputError
        from scdiff_pipeline.scoring.signatures import score_signatures

        with pytest.raises(InvalidInputError):
            score_signatures(lognorm, {"none": ["X", "Y"]})


class TestClassify:
    """Test exclusive-family labeling."""

    def test_threshold_and_sentinel(self):
        from scdiff_pipeline.scoring.signatures import classify_signatures

        scores = pd.DataFrame(
            {"S.Score": [0.5, -0.2, 0.1], "G2M.Score": [0.1, -0.1, 0.4]},
            index=["a", "b", "c"],
        )
        labels = classify_signatures(scores, ["S", "G2M"], threshold=0.0, sentinel="G1")
        assert labels.tolist() == ["S", "G1", "G2M"]

    def test_tie_goes_to_first(self):
        from scdiff_pipeline.scoring.signatures import classify_signatures

        scores = pd.DataFrame({"S.Score": [0.3], "G2M.Score": [0.3]}, index=["a"])
        assert classify_signatures(scores, ["S", "G2M"]).tolist() == ["S"]
        assert classify_signatures(scores, ["G2M", "S"]).tolist() == ["G2M"]

    def test_sentinel_clash(self):
        from scdiff_pipeline.core.errors import InvalidInputError
        from scdiff_pipeline.scoring.signatures import classify_signatures

        scores = pd.DataFrame({"G1.Score": [0.3]}, index=["a"])
        with pytest.raises(InvalidInputError):
            classify_signatures(scores, ["G1"], sentinel="G1")


class TestCellCycle:
    """Test cell-cycle scoring."""

    def test_panel_sizes(self):
        from scdiff_pipeline.scoring.cell_cycle import G2M_GENES, S_GENES

        assert len(S_GENES) == 43
        assert len(G2M_GENES) == 54

    def test_phases_assigned(self):
        from scdiff_pipeline.core.matrix import CellMetadata
        from scdiff_pipeline.scoring.cell_cycle import score_cell_cycle

        matrix, third = _cell_cycle_matrix()
        meta = CellMetadata({"sample": ["x"] * matrix.n_cells}, index=matrix.cells)

        annotated, result = score_cell_cycle(matrix, meta)

        for name in ("S.Score", "G2M.Score", "Phase", "CC.Difference"):
            assert name in annotated
        phase = annotated["Phase"]
        assert (phase.iloc[:third] == "S").all()
        assert (phase.iloc[third: 2 * third] == "G2M").all()
        np.testing.assert_allclose(
            annotated["CC.Difference"].to_numpy(),
            (annotated["S.Score"] - annotated["G2M.Score"]).to_numpy(),
        )
        # Only 15 of each panel are in the matrix
        assert len(result.missing_genes) == (43 - 15) + (54 - 15)

    def test_existing_fields_protected(self):
        from scdiff_pipeline.core.errors import InvalidInputError
        from scdiff_pipeline.core.matrix import CellMetadata
        from scdiff_pipeline.scoring.cell_cycle import score_cell_cycle

        matrix, _ = _cell_cycle_matrix()
        meta = CellMetadata({"Phase": ["?"] * matrix.n_cells}, index=matrix.cells)
        with pytest.raises(InvalidInputError):
            score_cell_cycle(matrix, meta)
        annotated, _ = score_cell_cycle(matrix, meta, overwrite=True)
        assert "?" not in set(annotated["Phase"])
