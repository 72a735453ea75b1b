"""
Pipeline configuration management.

Provides dataclass-based configuration with validation and serialization.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional, Literal, Any
import json
import os


@dataclass
class NormalizationConfig:
    """Normalization configuration."""

    method: Literal["log", "relative", "clr"] = "log"
    """Normalization method."""

    target_sum: float = 1e4
    """Counts per cell after scaling."""


@dataclass
class ScoringConfig:
    """Signature scoring configuration."""

    n_bins: int = 24
    """Number of expression bins for control-gene matching."""

    ctrl_size: Optional[int] = None
    """Control genes sampled per target gene (None = smallest panel size)."""

    threshold: float = 0.0
    """Minimum score for a signature label to be assigned."""

    sentinel: str = "G1"
    """Label for cells with no score above threshold."""

    seed: Optional[int] = 0
    """Random seed for control-gene sampling (None = non-deterministic)."""


@dataclass
class RegressionConfig:
    """Covariate regression configuration."""

    covariates: list[str] = field(default_factory=lambda: ["S.Score", "G2M.Score"])
    """Metadata fields regressed out of every gene."""

    scale_max: Optional[float] = None
    """Clip standardized residuals to +/- this value (None = no clipping)."""

    chunk_size: int = 1000
    """Genes per worker task."""


@dataclass
class AggregationConfig:
    """Pseudobulk aggregation configuration."""

    group_key: list[str] = field(default_factory=lambda: ["sample", "cell_type"])
    """Metadata fields defining aggregation buckets."""

    min_cells: int = 1
    """Buckets with fewer cells are dropped."""

    sep: str = "_"
    """Separator used to join key values into column labels."""


@dataclass
class DEConfig:
    """Differential expression configuration."""

    backend: str = "wilcox"
    """Test backend identifier."""

    adjust_method: str = "bonferroni"
    """Multiple-testing correction method (statsmodels name)."""

    min_pct: float = 0.0
    """Minimum detection fraction in either group for a gene to be tested."""

    logfc_threshold: float = 0.0
    """Minimum absolute avg_log2FC for a gene to be tested."""

    min_cells_group: int = 1
    """Minimum columns per group."""

    pseudocount: float = 1.0
    """Pseudocount used in fold-change calculation."""

    only_pos: bool = False
    """Keep only genes higher in group 1."""

    chunk_size: int = 500
    """Genes per worker task."""


@dataclass
class Config:
    """
    Main pipeline configuration.

    Example:
        >>> config = Config(
        ...     seed=42,
        ...     n_workers=4,
        ... )
        >>> pipeline = Pipeline(config)
    """

    # Convenience shortcuts (override sub-config values when set)
    seed: Optional[int] = None
    """Random seed for reproducibility (None = keep ``scoring.seed``)."""

    n_workers: int = 1
    """Worker threads for per-gene stages."""

    # Sub-configurations
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    regression: RegressionConfig = field(default_factory=RegressionConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    de: DEConfig = field(default_factory=DEConfig)

    # Logging
    verbose: bool = False
    """Enable verbose logging."""

    log_file: Optional[Path] = None
    """Log file path."""

    def __post_init__(self):
        """Synchronize shortcut values with sub-configs."""
        if self.seed is not None:
            self.scoring.seed = self.seed
        else:
            self.seed = self.scoring.seed

        if self.n_workers < 1:
            raise ValueError(f"n_workers must be >= 1, got {self.n_workers}")

        if self.log_file is not None:
            self.log_file = Path(self.log_file)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        d = asdict(self)
        if isinstance(d.get("log_file"), Path):
            d["log_file"] = str(d["log_file"])
        return d

    def to_json(self, path: Path | str) -> None:
        """Save configuration to JSON file."""
        path = Path(path)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Config":
        """Create from dictionary."""
        d = dict(d)
        # Handle nested configs
        if "normalization" in d and isinstance(d["normalization"], dict):
            d["normalization"] = NormalizationConfig(**d["normalization"])
        if "scoring" in d and isinstance(d["scoring"], dict):
            d["scoring"] = ScoringConfig(**d["scoring"])
        if "regression" in d and isinstance(d["regression"], dict):
            d["regression"] = RegressionConfig(**d["regression"])
        if "aggregation" in d and isinstance(d["aggregation"], dict):
            d["aggregation"] = AggregationConfig(**d["aggregation"])
        if "de" in d and isinstance(d["de"], dict):
            d["de"] = DEConfig(**d["de"])
        return cls(**d)

    @classmethod
    def from_json(cls, path: Path | str) -> "Config":
        """Load configuration from JSON file."""
        path = Path(path)
        with open(path) as f:
            d = json.load(f)
        return cls.from_dict(d)

    @classmethod
    def from_yaml(cls, path: Path | str) -> "Config":
        """Load configuration from a YAML file (top-level ``config`` key optional)."""
        import yaml

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            d = yaml.safe_load(f) or {}
        return cls.from_dict(d.get("config", d))

    @classmethod
    def from_env(cls) -> "Config":
        """Create configuration from environment variables."""
        seed = os.getenv("SCDIFF_SEED", "")
        scoring = ScoringConfig()
        if seed.lower() == "none":
            scoring.seed = None
        return cls(
            seed=int(seed) if seed and seed.lower() != "none" else None,
            n_workers=int(os.getenv("SCDIFF_N_WORKERS", "1")),
            scoring=scoring,
            de=DEConfig(
                backend=os.getenv("SCDIFF_DE_BACKEND", "wilcox"),
                adjust_method=os.getenv("SCDIFF_ADJUST_METHOD", "bonferroni"),
            ),
            verbose=os.getenv("SCDIFF_VERBOSE", "").lower() in ("1", "true", "yes"),
        )
