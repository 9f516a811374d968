"""
Point observations and the deduplicated dataset the variogram and kriging routines consume.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.spatial import cKDTree

from VarioKrigE.errors import DuplicateLocationError

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 1e-9


@dataclass(frozen=True)
class SpatialObservation:
    """A value (e.g. log price per unit area) observed at a planar location."""

    x: float
    y: float
    value: float

    def __post_init__(self):
        for name in ("x", "y", "value"):
            v = float(getattr(self, name))
            if not np.isfinite(v):
                raise ValueError(f"SpatialObservation.{name} must be finite, got {v!r}")
            object.__setattr__(self, name, v)

    @property
    def location(self) -> Tuple[float, float]:
        return (self.x, self.y)


def _find_duplicate(coords: np.ndarray, tolerance: float) -> Optional[Tuple[int, int]]:
    """First pair (i, j), i < j, of locations closer than `tolerance`, or None."""
    if coords.shape[0] < 2:
        return None
    tree = cKDTree(coords)
    pairs = tree.query_pairs(r=tolerance, output_type="ndarray")
    if pairs.size == 0:
        return None
    pairs = np.sort(pairs, axis=1)
    order = np.lexsort((pairs[:, 1], pairs[:, 0]))
    i, j = pairs[order[0]]
    return int(i), int(j)


class Dataset:
    """
    Ordered, immutable collection of SpatialObservations with distinct locations.

    Parameters
    ----------
    observations : iterable of SpatialObservation
        Observations in their original order.
    tolerance : float, default 1e-9
        Two locations closer than this (Euclidean, in coordinate units) are
        treated as the same location.

    Raises
    ------
    DuplicateLocationError
        If two observations share a location within `tolerance`.
        Use `Dataset.deduplicate` to merge such records instead.
    """

    def __init__(self, observations: Iterable[SpatialObservation], tolerance: float = DEFAULT_TOLERANCE):
        obs = tuple(observations)
        for o in obs:
            if not isinstance(o, SpatialObservation):
                raise TypeError(f"Dataset expects SpatialObservation items, got {type(o).__name__}")
        if tolerance < 0:
            raise ValueError("tolerance must be >= 0")

        coords = np.array([o.location for o in obs], dtype=float).reshape(-1, 2)
        dup = _find_duplicate(coords, tolerance)
        if dup is not None:
            i, j = dup
            raise DuplicateLocationError(i, j, obs[i].location)

        self._observations = obs
        self._coords = coords
        self._values = np.array([o.value for o in obs], dtype=float)
        self._coords.setflags(write=False)
        self._values.setflags(write=False)
        self.tolerance = float(tolerance)

    # constructors
    @classmethod
    def from_arrays(cls, coords, values, tolerance: float = DEFAULT_TOLERANCE) -> "Dataset":
        """Build from an (n, 2) coordinate array and an (n,) value array."""
        X = np.asarray(coords, float).reshape(-1, 2)
        z = np.asarray(values, float).ravel()
        if X.shape[0] != z.size:
            raise ValueError(f"coords has {X.shape[0]} rows but values has {z.size}")
        return cls((SpatialObservation(x, y, v) for (x, y), v in zip(X, z)), tolerance=tolerance)

    @classmethod
    def from_records(cls, records: Iterable[Sequence[float]], tolerance: float = DEFAULT_TOLERANCE) -> "Dataset":
        """Build from ``(x, y, value)`` records."""
        return cls((SpatialObservation(*r) for r in records), tolerance=tolerance)

    @classmethod
    def from_dataframe(
        cls,
        df: pd.DataFrame,
        x_col: str = "x",
        y_col: str = "y",
        value_col: str = "value",
        tolerance: float = DEFAULT_TOLERANCE,
    ) -> "Dataset":
        """Build from the coordinate and value columns of a DataFrame (rows in frame order)."""
        missing = [c for c in (x_col, y_col, value_col) if c not in df.columns]
        if missing:
            raise KeyError(f"columns not found in DataFrame: {missing}")
        return cls.from_arrays(
            df[[x_col, y_col]].to_numpy(dtype=float),
            df[value_col].to_numpy(dtype=float),
            tolerance=tolerance,
        )

    @classmethod
    def deduplicate(cls, coords, values, tolerance: float = DEFAULT_TOLERANCE) -> "Dataset":
        """
        Build a Dataset from raw records, merging coincident locations.

        Records whose locations lie within `tolerance` of each other (transitively)
        are collapsed into one observation at the first-seen location, carrying
        the mean of their values. Order of first appearance is preserved.
        """
        X = np.asarray(coords, float).reshape(-1, 2)
        z = np.asarray(values, float).ravel()
        if X.shape[0] != z.size:
            raise ValueError(f"coords has {X.shape[0]} rows but values has {z.size}")
        n = z.size
        if n == 0:
            return cls((), tolerance=tolerance)

        # union-find over the close pairs
        parent = np.arange(n)

        def root(i):
            while parent[i] != i:
                parent[i] = parent[parent[i]]
                i = parent[i]
            return i

        for i, j in cKDTree(X).query_pairs(r=tolerance):
            ri, rj = root(i), root(j)
            if ri != rj:
                parent[max(ri, rj)] = min(ri, rj)

        groups = np.array([root(i) for i in range(n)])
        keep = np.flatnonzero(groups == np.arange(n))
        merged = pd.Series(z).groupby(groups).mean()
        n_merged = n - keep.size
        if n_merged:
            logger.info("Merged %d records sharing a location into %d observations", n_merged, keep.size)
        return cls(
            (SpatialObservation(X[i, 0], X[i, 1], merged.loc[i]) for i in keep),
            tolerance=tolerance,
        )

    # accessors
    def __len__(self) -> int:
        return len(self._observations)

    def __iter__(self) -> Iterator[SpatialObservation]:
        return iter(self._observations)

    def __getitem__(self, idx) -> SpatialObservation:
        return self._observations[idx]

    def __repr__(self) -> str:
        return f"Dataset(n={len(self)})"

    @property
    def observations(self) -> Tuple[SpatialObservation, ...]:
        return self._observations

    @property
    def coords(self) -> np.ndarray:
        """(n, 2) read-only array of (x, y)."""
        return self._coords

    @property
    def values(self) -> np.ndarray:
        """(n,) read-only array of observed values."""
        return self._values

    def sample_variance(self) -> float:
        """Unbiased sample variance of the values (ddof=1)."""
        if len(self) < 2:
            return 0.0
        return float(np.var(self._values, ddof=1))

    def without(self, index: int) -> "Dataset":
        """Copy of this dataset with observation `index` removed."""
        obs = self._observations[:index] + self._observations[index + 1:]
        return Dataset(obs, tolerance=self.tolerance)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({"x": self._coords[:, 0], "y": self._coords[:, 1], "value": self._values})
