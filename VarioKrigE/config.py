"""
Run settings for variogram binning, model fitting and kriging, loadable from a YAML file.

Example file::

    variogram:
      bin_width: 250.0
      max_distance: 5000.0
      estimator: matheron
    fit:
      families: [exponential, spherical]
      fix_nugget: false
    kriging:
      chunk_size: 1024
      n_jobs: 4
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional, Tuple

import yaml


@dataclass(frozen=True)
class BinningConfig:
    """
    Lag binning for the empirical variogram.

    `bin_width` takes precedence over `n_bins`; with neither set, 15 bins are used.
    `max_distance` defaults to half the largest pairwise distance.
    """

    bin_width: Optional[float] = None
    n_bins: Optional[int] = None
    max_distance: Optional[float] = None
    estimator: str = "matheron"
    min_bins: int = 3
    n_jobs: int = 1

    def __post_init__(self):
        if self.bin_width is not None and self.bin_width <= 0:
            raise ValueError(f"bin_width must be > 0, got {self.bin_width}")
        if self.n_bins is not None and self.n_bins < 1:
            raise ValueError(f"n_bins must be >= 1, got {self.n_bins}")
        if self.max_distance is not None and self.max_distance <= 0:
            raise ValueError(f"max_distance must be > 0, got {self.max_distance}")
        if self.min_bins < 1:
            raise ValueError(f"min_bins must be >= 1, got {self.min_bins}")


@dataclass(frozen=True)
class FitConfig:
    """Candidate families and optimizer settings for the variogram fit."""

    families: Tuple[str, ...] = ("exponential", "spherical")
    fix_nugget: bool = False
    nugget_init: str = "zero"
    maxiter: int = 1000
    range_factor: float = 2.0

    def __post_init__(self):
        object.__setattr__(self, "families", tuple(self.families))
        if not self.families:
            raise ValueError("families must name at least one variogram family")
        if self.maxiter < 1:
            raise ValueError(f"maxiter must be >= 1, got {self.maxiter}")
        if self.nugget_init not in ("zero", "first_bin"):
            raise ValueError(f"nugget_init must be 'zero' or 'first_bin', got {self.nugget_init!r}")


@dataclass(frozen=True)
class KrigingConfig:
    """Batch settings for ordinary kriging."""

    chunk_size: int = 2048
    n_jobs: int = 1
    max_condition: float = 1e12
    fail_fast: bool = False

    def __post_init__(self):
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {self.chunk_size}")
        if self.n_jobs < 1:
            raise ValueError(f"n_jobs must be >= 1, got {self.n_jobs}")
        if not self.max_condition >= 1.0:
            raise ValueError(f"max_condition must be >= 1, got {self.max_condition}")


@dataclass(frozen=True)
class Settings:
    binning: BinningConfig = field(default_factory=BinningConfig)
    fit: FitConfig = field(default_factory=FitConfig)
    kriging: KrigingConfig = field(default_factory=KrigingConfig)


SECTIONS = {"variogram": BinningConfig, "fit": FitConfig, "kriging": KrigingConfig}


def _build(cls, section, values):
    values = values or {}
    if not isinstance(values, dict):
        raise TypeError(f"'{section}' section must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise KeyError(f"Unknown key(s) {unknown} in '{section}' config; expected a subset of {sorted(known)}")
    return cls(**values)


def load_config(config_path) -> Settings:
    """
    Read binning, fit and kriging settings from a YAML file.

    Missing sections or keys keep their defaults; unknown sections or keys raise KeyError.
    """
    with open(Path(config_path), "r") as f:
        raw = yaml.safe_load(f) or {}

    unknown = sorted(set(raw) - set(SECTIONS))
    if unknown:
        raise KeyError(f"Unknown config section(s) {unknown}; expected {sorted(SECTIONS)}")

    return Settings(
        binning=_build(BinningConfig, "variogram", raw.get("variogram")),
        fit=_build(FitConfig, "fit", raw.get("fit")),
        kriging=_build(KrigingConfig, "kriging", raw.get("kriging")),
    )
