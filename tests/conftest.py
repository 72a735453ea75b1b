"""Pytest configuration and fixtures."""

import pytest
import numpy as np
import pandas as pd
from pathlib import Path
import tempfile


N_GENES = 60
N_UP = 8
SAMPLES = ["s0", "s1", "s2", "s3", "s4", "s5"]
STIM_SAMPLES = {"s3", "s4", "s5"}


def _make_counts(seed=42, cells_per_sample=20):
    rng = np.random.default_rng(seed)
    cell_ids, sample, cell_type = [], [], []
    for s in SAMPLES:
        for i in range(cells_per_sample):
            cell_ids.append(f"{s}_cell{i}")
            sample.append(s)
            cell_type.append("T" if i % 2 == 0 else "B")
    condition = ["stim" if s in STIM_SAMPLES else "ctrl" for s in sample]

    base = rng.gamma(4.0, 2.0, N_GENES) + 1.0
    mu = np.repeat(base[:, None], len(cell_ids), axis=1)
    stim = np.array([c == "stim" for c in condition])
    # First genes go up in stimulated cells
    mu[:N_UP, stim] *= 5.0
    counts = rng.poisson(mu).astype(np.float64)

    genes = [f"gene_{i}" for i in range(N_GENES)]
    metadata = pd.DataFrame(
        {
            "sample": sample,
            "condition": condition,
            "cell_type": cell_type,
            "ident": cell_type,
        },
        index=cell_ids,
    )
    return counts, genes, cell_ids, metadata


@pytest.fixture
def counts_frame():
    """Raw counts (genes x cells) with stimulated-up genes gene_0..gene_7."""
    counts, genes, cells, _ = _make_counts()
    return pd.DataFrame(counts, index=genes, columns=cells)


@pytest.fixture
def counts():
    """Raw count ExpressionMatrix, 60 genes x 120 cells."""
    from scdiff_pipeline.core.matrix import ExpressionMatrix

    values, genes, cells, _ = _make_counts()
    return ExpressionMatrix(values, genes=genes, cells=cells, scale="counts")


@pytest.fixture
def metadata():
    """Cell metadata: sample (6), condition (ctrl/stim), cell_type / ident (T/B)."""
    from scdiff_pipeline.core.matrix import CellMetadata

    _, _, _, frame = _make_counts()
    return CellMetadata(frame)


@pytest.fixture
def lognorm(counts):
    """Log-normalized version of ``counts``."""
    from scdiff_pipeline.preprocessing.normalize import normalize

    return normalize(counts)


@pytest.fixture
def tiny_matrix():
    """4 cells, 2 genes: gene A 10 vs 0, gene B identical everywhere."""
    from scdiff_pipeline.core.matrix import CellMetadata, ExpressionMatrix

    values = np.array([
        [10.0, 10.0, 0.0, 0.0],
        [5.0, 5.0, 5.0, 5.0],
    ])
    matrix = ExpressionMatrix(values, genes=["A", "B"], cells=["c1", "c2", "c3", "c4"], scale="lognorm")
    meta = CellMetadata({"ident": ["g1", "g1", "g2", "g2"]}, index=["c1", "c2", "c3", "c4"])
    return matrix, meta


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)
