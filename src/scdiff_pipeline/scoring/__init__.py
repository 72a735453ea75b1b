"""
Gene-set signature scoring and cell-cycle phase assignment.
"""

from scdiff_pipeline.scoring.signatures import (
    SCORE_SUFFIX,
    SignatureScorer,
    SignatureScoreResult,
    classify_signatures,
    score_field,
    score_signatures,
)
from scdiff_pipeline.scoring.cell_cycle import (
    CC_DIFFERENCE,
    G2M_GENES,
    G2M_SCORE,
    PHASE,
    S_GENES,
    S_SCORE,
    score_cell_cycle,
)

__all__ = [
    # Signatures
    "SCORE_SUFFIX",
    "SignatureScorer",
    "SignatureScoreResult",
    "classify_signatures",
    "score_field",
    "score_signatures",
    # Cell cycle
    "CC_DIFFERENCE",
    "G2M_GENES",
    "G2M_SCORE",
    "PHASE",
    "S_GENES",
    "S_SCORE",
    "score_cell_cycle",
]
