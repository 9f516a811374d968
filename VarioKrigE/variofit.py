"""
This file contains the functions required for estimating the empirical semivariogram of a Dataset as well as
fitting candidate parametric models to it and selecting the best one.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import yaml
from numba import njit
from scipy import special
from scipy.optimize import minimize
from tqdm.auto import tqdm

from VarioKrigE.config import BinningConfig, FitConfig
from VarioKrigE.dataset import Dataset
from VarioKrigE.errors import ConvergenceError, InsufficientDataError, InvalidModelParameterError, KrigingError
from VarioKrigE.utils import as_coords, compute_distance_weights, row_blocks

logger = logging.getLogger(__name__)

# Semivariogram Models
# Every model returns 0 at h == 0: the nugget is a discontinuity at the origin.
def spherical(h, r, c0, b=0.0):
    """
    Semivariogram: Spherical (compact support)

    Definition
    ----------
    Set x = h / r. Then
        γ(h) = b + c0 * [ 1.5 x - 0.5 x^3 ]     for 0 < h <= r
               b + c0                          for h  >  r
        γ(0) = 0

    Parameters
    ----------
    h : array-like or float
        Nonnegative lag distance(s).
    r : float
        Range; the sill is reached exactly at h = r.
    c0 : float
        Partial sill (γ plateau height minus nugget).
    b : float, default 0.0
        Nugget.

    Returns
    -------
    gamma : ndarray
        Semivariogram values with the same shape as `h`.
    """

    h = np.asarray(h, float)
    x = h / r
    part = b + c0 * (1.5*x - 0.5*x**3)
    out = np.where(h <= r, part, b + c0)
    return np.where(h > 0.0, out, 0.0)

def exponential(h, r, c0, b=0.0):
    """
    Semivariogram: Exponential

    Definition
    ----------
        γ(h) = b + c0 * ( 1 - exp(-h / r) )   for h > 0,   γ(0) = 0

    `r` is the scale parameter; about 95% of the sill is reached at h = 3r.
    Approaches the sill asymptotically (never exactly reaches it).
    """

    h = np.asarray(h, float)
    out = b + c0 * (1.0 - np.exp(-h / r))
    return np.where(h > 0.0, out, 0.0)

def gaussian(h, r, c0, b=0.0):
    """
    Semivariogram: Gaussian

        γ(h) = b + c0 * ( 1 - exp( - (h / r)^2 ) )   for h > 0,   γ(0) = 0

    Very smooth near the origin; kriging systems built on it condition poorly
    when points are dense relative to `r`.
    """

    h = np.asarray(h, float)
    out = b + c0 * (1.0 - np.exp(-(h / r)**2))
    return np.where(h > 0.0, out, 0.0)

def stable(h, r, c0, kappa, b=0.0):
    """
    Semivariogram: Stable (a.k.a. powered exponential)

        γ(h) = b + c0 * ( 1 - exp( - (h / r)^kappa ) ),   0 < kappa <= 2

    kappa=1 → exponential, kappa=2 → Gaussian.
    """

    h = np.asarray(h, float)
    out = b + c0 * (1.0 - np.exp(-(h / r)**kappa))
    return np.where(h > 0.0, out, 0.0)

def matern(h, r, c0, kappa, b=0.0):
    """
    Semivariogram: Matérn

    Set u = h / r. Then
        γ(h) = b + c0 * [ 1 - (2^(1-kappa) / Γ(kappa)) * u^kappa * K_kappa(u) ]
    where K_kappa is the modified Bessel function of the second kind and kappa > 0
    the smoothness (kappa = 0.5 is the exponential model).
    """

    h = np.asarray(h, float)
    u = h / r
    # u == 0 gives 0 * inf; those entries are replaced below
    with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
        term = (2.0**(1.0 - kappa) / special.gamma(kappa)) * u**kappa * special.kv(kappa, u)
    term = np.where(np.isfinite(term), term, 0.0)
    out = b + c0 * (1.0 - np.clip(term, 0.0, 1.0))
    return np.where(h > 0.0, out, 0.0)


class VariogramFamily(str, Enum):
    """Closed set of supported model families."""

    EXPONENTIAL = "exponential"
    SPHERICAL = "spherical"
    GAUSSIAN = "gaussian"
    STABLE = "stable"
    MATERN = "matern"


VARIOGRAM_MODELS = {
    VariogramFamily.EXPONENTIAL: exponential,
    VariogramFamily.SPHERICAL: spherical,
    VariogramFamily.GAUSSIAN: gaussian,
    VariogramFamily.STABLE: stable,
    VariogramFamily.MATERN: matern,
}

# valid kappa interval (low, high] per shape family
KAPPA_LIMITS = {
    VariogramFamily.STABLE: (0.0, 2.0),
    VariogramFamily.MATERN: (0.0, 20.0),
}

DEFAULT_FAMILIES = (VariogramFamily.EXPONENTIAL, VariogramFamily.SPHERICAL)


def as_family(family) -> VariogramFamily:
    """Resolve a family tag or name, raising ValueError for unknown names."""
    if isinstance(family, VariogramFamily):
        return family
    try:
        return VariogramFamily(str(family).lower())
    except ValueError:
        choices = ", ".join(f"'{f.value}'" for f in VariogramFamily)
        raise ValueError(f"Invalid Model: {family!r}. Choose from {choices}") from None


@dataclass(frozen=True)
class VariogramModel:
    """
    A fitted (or user supplied) variogram: family tag plus parameters.

    Parameters
    ----------
    family : VariogramFamily or str
    nugget : float
        Semivariance jump at the origin, >= 0.
    sill : float
        Partial sill, > 0.
    range : float
        Range / scale parameter, > 0 (meaning per family, see the model functions).
    kappa : float, optional
        Shape parameter, required for 'stable' (0 < kappa <= 2) and 'matern'
        (0 < kappa <= 20), must be None otherwise.

    Raises
    ------
    InvalidModelParameterError
        If the parameters do not define a valid variogram.
    """

    family: VariogramFamily
    nugget: float
    sill: float
    range: float
    kappa: Optional[float] = None

    def __post_init__(self):
        try:
            family = as_family(self.family)
        except ValueError as exc:
            raise InvalidModelParameterError(str(exc)) from None
        object.__setattr__(self, "family", family)

        for name in ("nugget", "sill", "range"):
            v = float(getattr(self, name))
            if not np.isfinite(v):
                raise InvalidModelParameterError(f"{name} must be finite, got {v!r}")
            object.__setattr__(self, name, v)
        if self.nugget < 0.0:
            raise InvalidModelParameterError(f"nugget must be >= 0, got {self.nugget}")
        if self.sill <= 0.0:
            raise InvalidModelParameterError(f"partial sill must be > 0, got {self.sill}")
        if self.range <= 0.0:
            raise InvalidModelParameterError(f"range must be > 0, got {self.range}")

        if family in KAPPA_LIMITS:
            if self.kappa is None:
                raise InvalidModelParameterError(f"'{family.value}' model requires kappa")
            k = float(self.kappa)
            lo, hi = KAPPA_LIMITS[family]
            if not np.isfinite(k) or k <= lo or k > hi:
                raise InvalidModelParameterError(f"kappa for '{family.value}' must lie in ({lo}, {hi}], got {k}")
            object.__setattr__(self, "kappa", k)
        elif self.kappa is not None:
            raise InvalidModelParameterError(f"'{family.value}' model takes no kappa, got {self.kappa}")

    def __call__(self, h):
        out = VARIOGRAM_MODELS[self.family](h, *self.theta)
        return float(out) if np.ndim(out) == 0 else out

    @property
    def theta(self) -> Tuple[float, ...]:
        """Parameters in the positional order of the model function."""
        return tuple(theta_from_params(self.to_dict(), self.family))

    @property
    def total_sill(self) -> float:
        return self.nugget + self.sill

    def covariance(self, h):
        """C(h) = (nugget + sill) - γ(h); C(0) = nugget + sill."""
        return self.total_sill - self(h)

    def to_dict(self) -> Dict[str, Optional[float]]:
        return {
            "family": self.family.value,
            "nugget": self.nugget,
            "sill": self.sill,
            "range": self.range,
            "kappa": self.kappa,
        }

    @classmethod
    def from_dict(cls, record) -> "VariogramModel":
        missing = [k for k in ("family", "nugget", "sill", "range") if k not in record]
        if missing:
            raise InvalidModelParameterError(f"model record is missing {missing}")
        kappa = record.get("kappa")
        return cls(
            family=record["family"],
            nugget=record["nugget"],
            sill=record["sill"],
            range=record["range"],
            kappa=None if kappa is None else float(kappa),
        )


# R2 and Packing Semivariogram model parameters
def pack_params(family, theta):
    """
    Semivariogram-model parameter packing.

    Parameter layouts expected by VARIOGRAM_MODELS:

      - spherical / exponential / gaussian : (r, c0, b)
      - stable / matern                    : (r, c0, kappa, b)

    Returned keys use the model record names: range, sill, kappa, nugget.
    """

    family = as_family(family)
    if family in KAPPA_LIMITS:
        names = ("range", "sill", "kappa", "nugget")
    else:
        names = ("range", "sill", "nugget")
    return {k: float(v) for k, v in zip(names, theta)}

def theta_from_params(params, family):
    """
    Unpack in the same order expected by VARIOGRAM_MODELS signatures.
    """
    family = as_family(family)
    if family in KAPPA_LIMITS:
        order = ("range", "sill", "kappa", "nugget")
    else:
        order = ("range", "sill", "nugget")
    return [float(params[k]) for k in order]

def r2_score_weighted(y, yhat, w=None):
    """
    Weighted coefficient of determination, R^2.

    Computes
        R^2_w = 1 - SSE_w / SST_w
    where
        SSE_w = Σ_i w_i (y_i - ŷ_i)^2
        SST_w = Σ_i w_i (y_i - ȳ_w)^2
        ȳ_w   = (Σ_i w_i y_i) / (Σ_i w_i)

    If `w` is None, all weights are treated as 1 (ordinary R^2).
    Returns `np.nan` if the weighted variance `SST_w` is zero.
    """

    y = np.asarray(y, float).ravel()
    yhat = np.asarray(yhat, float).ravel()
    if w is None:
        ybar = np.mean(y)
        ss_res = np.sum((y - yhat)**2)
        ss_tot = np.sum((y - ybar)**2)
    else:
        w = np.asarray(w, float).ravel()
        wsum = np.sum(w)
        if wsum == 0:
            return np.nan
        ybar = np.sum(w * y) / wsum
        ss_res = np.sum(w * (y - yhat)**2)
        ss_tot = np.sum(w * (y - ybar)**2)
    return 1.0 - ss_res / ss_tot if ss_tot > 0 else np.nan


# Pair accumulation
@njit(nogil=True)
def _accumulate_pairs(coords, values, i0, i1, bin_width, cutoff, n_bins):
    """Bin every pair (i, j), i0 <= i < i1, i < j, with distance <= cutoff."""
    n = coords.shape[0]
    counts = np.zeros(n_bins, dtype=np.int64)
    sum_semi = np.zeros(n_bins, dtype=np.float64)
    sum_root = np.zeros(n_bins, dtype=np.float64)
    sum_dist = np.zeros(n_bins, dtype=np.float64)
    for i in range(i0, i1):
        for j in range(i + 1, n):
            dx = coords[i, 0] - coords[j, 0]
            dy = coords[i, 1] - coords[j, 1]
            d = np.sqrt(dx * dx + dy * dy)
            if d > cutoff:
                continue
            k = int(d / bin_width)
            # d == cutoff lands in the closing bin
            if k >= n_bins:
                k = n_bins - 1
            diff = values[i] - values[j]
            counts[k] += 1
            sum_semi[k] += 0.5 * diff * diff
            sum_root[k] += np.sqrt(abs(diff))
            sum_dist[k] += d
    return counts, sum_semi, sum_root, sum_dist

@njit(nogil=True)
def _max_pair_distance(coords, i0, i1):
    n = coords.shape[0]
    dmax = 0.0
    for i in range(i0, i1):
        for j in range(i + 1, n):
            dx = coords[i, 0] - coords[j, 0]
            dy = coords[i, 1] - coords[j, 1]
            d = np.sqrt(dx * dx + dy * dy)
            if d > dmax:
                dmax = d
    return dmax


@dataclass
class PairAccumulator:
    """Per-bin sums over pairs; merging two accumulators is associative and commutative."""

    counts: np.ndarray
    sum_semi: np.ndarray
    sum_root: np.ndarray
    sum_dist: np.ndarray

    @classmethod
    def empty(cls, n_bins):
        return cls(np.zeros(n_bins, dtype=np.int64), np.zeros(n_bins), np.zeros(n_bins), np.zeros(n_bins))

    def merge(self, other: "PairAccumulator") -> "PairAccumulator":
        return PairAccumulator(
            self.counts + other.counts,
            self.sum_semi + other.sum_semi,
            self.sum_root + other.sum_root,
            self.sum_dist + other.sum_dist,
        )

    @property
    def n_pairs(self) -> int:
        return int(self.counts.sum())


PAIRS_PER_BLOCK = 2_000_000


def _pair_blocks(n):
    """Row partition of the upper triangle; depends on n only so results do not depend on n_jobs."""
    n_pairs = n * (n - 1) // 2
    n_blocks = max(1, int(np.ceil(n_pairs / PAIRS_PER_BLOCK)))
    return row_blocks(n, n_blocks)


def _map_blocks(fn, blocks, n_jobs):
    if n_jobs is None or n_jobs <= 1 or len(blocks) == 1:
        return [fn(i0, i1) for i0, i1 in blocks]
    with ThreadPoolExecutor(max_workers=n_jobs) as pool:
        return list(pool.map(lambda b: fn(*b), blocks))


def max_pair_distance(coords, n_jobs=1) -> float:
    """Largest pairwise distance, computed without materializing the distance matrix."""
    X = np.ascontiguousarray(as_coords(coords))
    if X.shape[0] < 2:
        return 0.0
    parts = _map_blocks(lambda i0, i1: _max_pair_distance(X, i0, i1), _pair_blocks(X.shape[0]), n_jobs)
    return float(max(parts))


def accumulate_pairs(coords, values, bin_width, cutoff, n_bins, n_jobs=1) -> PairAccumulator:
    """
    Stream all unordered pairs into per-bin accumulators.

    Row blocks of the pair set are processed independently (in a thread pool when
    `n_jobs > 1`) and merged in block order.
    """
    X = np.ascontiguousarray(as_coords(coords))
    z = np.ascontiguousarray(np.asarray(values, float).ravel())
    blocks = _pair_blocks(X.shape[0])

    def run(i0, i1):
        return PairAccumulator(*_accumulate_pairs(X, z, i0, i1, float(bin_width), float(cutoff), int(n_bins)))

    acc = PairAccumulator.empty(n_bins)
    for part in _map_blocks(run, blocks, n_jobs):
        acc = acc.merge(part)
    return acc


# Semivariogram Estimators (on accumulated sums)
def matheron(count, sum_semi, sum_root):
    """Matheron (classical) semivariogram: mean of (z_i - z_j)^2 / 2 over the bin.

    References
    Matheron, G. (1962): Traité de Géostatistique Appliqué, Tonne 1. Memoires de Bureau de Recherches Géologiques et Miniéres, Paris.
    """
    return sum_semi / count

def cressie_hawkins(count, sum_semi, sum_root):
    """Cressie–Hawkins robust estimator from the mean of |z_i - z_j|^(1/2).

    References
    Cressie, N., and D. Hawkins (1980): Robust estimation of the variogram. Math. Geol., 12, 115-125.
    """
    A = 0.457 + 0.494/count + 0.045/(count**2)
    return 0.5 * (sum_root / count)**4 / A

ESTIMATORS = {
    "matheron": matheron,
    "cressie_hawkins": cressie_hawkins,
}


@dataclass(frozen=True)
class VariogramBin:
    """Half-open lag interval [lo, hi) with its mean pair distance, semivariance and pair count."""

    lo: float
    hi: float
    distance: float
    semivariance: float
    count: int


@dataclass(frozen=True)
class EmpiricalVariogram:
    """Non-empty lag bins of one Dataset, ordered by increasing distance."""

    bins: Tuple[VariogramBin, ...]
    bin_width: float
    max_distance: float
    estimator: str = "matheron"
    n_pairs: int = 0

    def __len__(self):
        return len(self.bins)

    def __iter__(self):
        return iter(self.bins)

    @property
    def distances(self) -> np.ndarray:
        return np.array([b.distance for b in self.bins], dtype=float)

    @property
    def semivariances(self) -> np.ndarray:
        return np.array([b.semivariance for b in self.bins], dtype=float)

    @property
    def counts(self) -> np.ndarray:
        return np.array([b.count for b in self.bins], dtype=np.int64)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [(b.lo, b.hi, b.distance, b.semivariance, b.count) for b in self.bins],
            columns=["lo", "hi", "h_lag", "gamma", "n_obs"],
        )


DEFAULT_N_BINS = 15


def empirical_variogram(
    dataset: Dataset,
    bin_width: Optional[float] = None,
    n_bins: Optional[int] = None,
    max_distance: Optional[float] = None,
    estimator: str = "matheron",
    min_bins: int = 3,
    n_jobs: int = 1,
) -> EmpiricalVariogram:
    """
    Compute the experimental semivariogram of a Dataset.

    Parameters
    ----------
    dataset : Dataset
        Observations with distinct locations.
    bin_width : float, optional
        Width of each lag bin. Takes precedence over `n_bins`.
    n_bins : int, optional
        Number of equal-width bins between 0 and `max_distance`. Defaults to 15
        when neither `bin_width` nor `n_bins` is given.
    max_distance : float, optional
        Cutoff; pairs farther apart are discarded. Defaults to half the largest
        pairwise distance.
    estimator : {'matheron', 'cressie_hawkins'}
        Semivariance estimator per bin.
    min_bins : int, default 3
        Minimum number of non-empty bins needed for a usable variogram.
    n_jobs : int, default 1
        Worker threads for the pair accumulation.

    Returns
    -------
    EmpiricalVariogram
        Non-empty bins only; each bin reports the mean distance of its pairs.

    Raises
    ------
    InsufficientDataError
        Fewer than 2 observations, or fewer than `min_bins` non-empty bins.
    ValueError
        Unknown estimator or non-positive bin width / count / cutoff.
    """

    if estimator not in ESTIMATORS:
        raise ValueError(f"Invalid estimator: choose from {sorted(ESTIMATORS)}")
    semivarioest_fn = ESTIMATORS[estimator]

    n = len(dataset)
    if n < 2:
        raise InsufficientDataError(f"need at least 2 observations to form pairs, got {n}")

    if max_distance is None:
        max_distance = 0.5 * max_pair_distance(dataset.coords, n_jobs=n_jobs)
    max_distance = float(max_distance)
    if not np.isfinite(max_distance) or max_distance <= 0.0:
        raise ValueError(f"max_distance must be positive and finite, got {max_distance}")

    if bin_width is not None:
        bin_width = float(bin_width)
        if not np.isfinite(bin_width) or bin_width <= 0.0:
            raise ValueError(f"bin_width must be positive, got {bin_width}")
        nmax = max(1, int(np.ceil(max_distance / bin_width - 1e-12)))
    else:
        nmax = DEFAULT_N_BINS if n_bins is None else int(n_bins)
        if nmax < 1:
            raise ValueError(f"n_bins must be >= 1, got {n_bins}")
        bin_width = max_distance / nmax

    acc = accumulate_pairs(dataset.coords, dataset.values, bin_width, max_distance, nmax, n_jobs=n_jobs)

    bins = []
    for i in np.flatnonzero(acc.counts):
        cnt = int(acc.counts[i])
        lo = i * bin_width
        bins.append(VariogramBin(
            lo=float(lo),
            hi=float(min(lo + bin_width, max_distance) if i == nmax - 1 else lo + bin_width),
            distance=float(acc.sum_dist[i] / cnt),
            semivariance=float(semivarioest_fn(cnt, acc.sum_semi[i], acc.sum_root[i])),
            count=cnt,
        ))

    logger.debug("Empirical variogram: %d/%d non-empty bins, %d pairs within %.6g", len(bins), nmax, acc.n_pairs, max_distance)
    if len(bins) < min_bins:
        raise InsufficientDataError(
            f"only {len(bins)} non-empty lag bins (need {min_bins}); "
            f"widen max_distance or use fewer, wider bins"
        )

    return EmpiricalVariogram(
        bins=tuple(bins),
        bin_width=float(bin_width),
        max_distance=max_distance,
        estimator=estimator,
        n_pairs=acc.n_pairs,
    )


# Objective Function(s) for Fitting
def objective_func(params, h, gamma, weights, semivario_fn):
    """
    Weighted SSE objective: minimize Σ w_i [γ_i - model_fn(h_i; θ)]^2.
    """

    gamma_pred = semivario_fn(h, *params)
    return np.sum(weights * (gamma - gamma_pred)**2)

def make_init_and_bounds(family, h, gamma, sample_variance=None, range_factor=2.0, fix_nugget=False, nugget_init="zero"):
    """
    Initial guesses & bounds for semivariogram models.

    Parameters
    ----------
    family : VariogramFamily or str
    h : array_like (k,)
        Representative bin lags.
    gamma : array_like (k,)
        Experimental semivariogram per bin.
    sample_variance : float, optional
        Variance of the observed values (same scale as `gamma`). The partial sill
        starts at sample_variance - nugget; the largest bin semivariance is used
        when omitted.
    range_factor : float, default 2.0
        Upper bound for the range: range_factor * max(h).
    fix_nugget : bool, default False
        If True, nugget b is fixed at 0.0 via bounds (0, 0).
    nugget_init : {'zero', 'first_bin'}
        Start the nugget at 0 or at the semivariance of the shortest-lag bin.

    Returns
    -------
    x0 : tuple
        Initial parameter vector in the model function's order.
    bounds : tuple of (low, high) tuples
        Bounds aligned with `x0`.

    Notes
    -----
    - Range starts at max(h) / 3, lower-bounded by half the shortest lag and
      upper-capped at `range_factor * max(h)`.
    - Partial sill is kept strictly positive.
    """

    family = as_family(family)
    h = np.asarray(h, float).ravel()
    g = np.asarray(gamma, float).ravel()

    mask_pos = np.isfinite(h) & (h > 0)
    h_min = float(np.nanmin(h[mask_pos])) if np.any(mask_pos) else 1.0
    h_max = float(np.nanmax(h[mask_pos])) if np.any(mask_pos) else 1.0
    g_max = float(np.nanmax(g)) if g.size else 1.0
    c_floor = 1e-9 * max(g_max, 1e-12)

    if fix_nugget or nugget_init == "zero":
        b0 = 0.0
    elif nugget_init == "first_bin":
        b0 = float(g[np.argmin(h)])
    else:
        raise ValueError("nugget_init must be 'zero' or 'first_bin'")

    var0 = g_max if sample_variance is None else float(sample_variance)
    c0 = max(var0 - b0, 0.1 * g_max, c_floor)

    r_lo = 0.5 * h_min
    r_hi = max(range_factor * h_max, r_lo * 1.01)
    r0 = float(np.clip(h_max / 3.0, r_lo, r_hi))

    r_bounds = (r_lo, r_hi)
    c_bounds = (c_floor, None)
    b_bounds = (0.0, 0.0) if fix_nugget else (0.0, None)

    if family in (VariogramFamily.EXPONENTIAL, VariogramFamily.SPHERICAL, VariogramFamily.GAUSSIAN):
        x0 = (r0, c0, b0)
        bounds = (r_bounds, c_bounds, b_bounds)
    elif family == VariogramFamily.STABLE:
        x0 = (r0, c0, 1.0, b0)
        bounds = (r_bounds, c_bounds, (0.05, 2.0), b_bounds)
    elif family == VariogramFamily.MATERN:
        x0 = (r0, c0, 0.5, b0)
        bounds = (r_bounds, c_bounds, (0.1, 5.0), b_bounds)
    else:
        raise ValueError("Unknown model")

    return x0, bounds


@dataclass(frozen=True)
class FitResult:
    """Best variogram model, its WSSE score and the per-candidate summary."""

    model: VariogramModel
    wsse: float
    empirical: EmpiricalVariogram
    candidates: pd.DataFrame = field(compare=False, repr=False)

    @property
    def family(self) -> VariogramFamily:
        return self.model.family


CANDIDATE_COLUMNS = ["family", "converged", "wsse", "r2_wls", "r2_ols", "nugget", "sill", "range", "kappa", "nit", "message"]


def _fit_family(family, h, g, m, sample_variance, fix_nugget, nugget_init, maxiter, range_factor):
    """Fit one family on nondimensionalised lags and semivariances. Returns (model | None, row)."""
    semivariomodel_fn = VARIOGRAM_MODELS[family]

    # scale lags and semivariances to O(1) so the optimizer sees comparable parameters
    s_h = float(np.max(h))
    s_g = float(np.max(g)) if np.max(g) > 0 else 1.0
    hs, gs = h / s_h, g / s_g
    w = compute_distance_weights(hs, m, weight_type="cressie")
    w = w / np.sum(w)
    sv = None if sample_variance is None else sample_variance / s_g

    x0, bounds = make_init_and_bounds(family, hs, gs, sv, range_factor, fix_nugget, nugget_init)
    res = minimize(
        fun=lambda th: objective_func(th, hs, gs, w, semivariomodel_fn),
        x0=x0,
        bounds=bounds,
        method="L-BFGS-B",
        options={"maxiter": maxiter, "ftol": 1e-12, "gtol": 1e-9},
    )
    theta_s = np.asarray(res.x, float)
    row = {"family": family.value, "converged": False, "wsse": np.nan, "r2_wls": np.nan, "r2_ols": np.nan,
           "nugget": np.nan, "sill": np.nan, "range": np.nan, "kappa": np.nan,
           "nit": int(getattr(res, "nit", 0)), "message": str(res.message)}

    if not (np.all(np.isfinite(theta_s)) and np.isfinite(res.fun)):
        row["message"] = f"non-finite result: {res.message}"
        return None, row
    if not res.success and row["nit"] >= maxiter:
        row["message"] = f"iteration budget ({maxiter}) exhausted: {res.message}"
        return None, row
    if not res.success:
        logger.debug("%s fit ended without success flag (%s); accepting finite optimum", family.value, res.message)

    params = pack_params(family, theta_s)
    params["range"] *= s_h
    params["sill"] *= s_g
    params["nugget"] *= s_g
    try:
        model = VariogramModel(family=family, **params)
    except InvalidModelParameterError as exc:
        row["message"] = f"invalid parameters: {exc}"
        return None, row

    g_fit = model(h)
    w_raw = compute_distance_weights(h, m, weight_type="cressie")
    row.update(
        converged=True,
        wsse=float(np.sum(w_raw * (g - g_fit)**2)),
        r2_wls=r2_score_weighted(g, g_fit, w=w_raw),
        r2_ols=r2_score_weighted(g, g_fit, w=None),
        nugget=model.nugget, sill=model.sill, range=model.range,
        kappa=np.nan if model.kappa is None else model.kappa,
    )
    return model, row


def fit_variogram_model(
    empirical: EmpiricalVariogram,
    families: Iterable[Union[str, VariogramFamily]] = DEFAULT_FAMILIES,
    sample_variance: Optional[float] = None,
    fix_nugget: bool = False,
    nugget_init: str = "zero",
    maxiter: int = 1000,
    range_factor: float = 2.0,
) -> FitResult:
    """
    Fit each candidate family to an empirical variogram and keep the best one.

    Each candidate is fitted by bounded weighted least squares (L-BFGS-B) with
    Cressie weights N(h) / h^2, starting from nugget 0 (or the first-bin
    semivariance), partial sill = sample variance - nugget and range = max lag / 3.

    Parameters
    ----------
    empirical : EmpiricalVariogram
    families : iterable of VariogramFamily or str
        Candidate families, tried in the given order.
    sample_variance : float, optional
        Variance of the observed values, used for the initial partial sill.
    fix_nugget : bool, default False
        Fix the nugget at 0.
    nugget_init : {'zero', 'first_bin'}
    maxiter : int, default 1000
        Iteration budget per candidate.
    range_factor : float, default 2.0
        Upper bound of the range as a multiple of the largest lag.

    Returns
    -------
    FitResult
        Converged candidate with the lowest weighted SSE, the empirical
        variogram, and a DataFrame with one row per candidate.

    Raises
    ------
    InsufficientDataError
        If the empirical variogram has no bins.
    ConvergenceError
        If no candidate converged within `maxiter` iterations.
    """

    families = [as_family(f) for f in families]
    if not families:
        raise ValueError("at least one candidate family is required")
    if len(empirical) == 0:
        raise InsufficientDataError("empirical variogram has no bins")

    h = empirical.distances
    g = empirical.semivariances
    m = empirical.counts.astype(float)

    best_model, best_wsse = None, np.inf
    rows = []
    for family in dict.fromkeys(families):
        model, row = _fit_family(family, h, g, m, sample_variance, fix_nugget, nugget_init, maxiter, range_factor)
        rows.append(row)
        if model is None:
            logger.warning("Variogram family '%s' did not converge: %s", family.value, row["message"])
            continue
        logger.debug("Fitted %s: nugget=%.6g sill=%.6g range=%.6g wsse=%.6g", family.value,
                     model.nugget, model.sill, model.range, row["wsse"])
        if row["wsse"] < best_wsse:
            best_model, best_wsse = model, row["wsse"]

    candidates = pd.DataFrame(rows, columns=CANDIDATE_COLUMNS)
    if best_model is None:
        raise ConvergenceError(
            "no candidate variogram family converged: " + ", ".join(f.value for f in dict.fromkeys(families)),
            failures={r["family"]: r["message"] for r in rows},
        )

    logger.info("Selected %s variogram (nugget=%.6g, sill=%.6g, range=%.6g, wsse=%.6g)",
                best_model.family.value, best_model.nugget, best_model.sill, best_model.range, best_wsse)
    return FitResult(model=best_model, wsse=float(best_wsse), empirical=empirical, candidates=candidates)


# Main Function
def variofit(
    dataset: Dataset,
    families: Optional[Sequence[Union[str, VariogramFamily]]] = None,
    binning: Optional[BinningConfig] = None,
    options: Optional[FitConfig] = None,
) -> FitResult:
    """
    Compute the empirical semivariogram of `dataset` and fit the candidate models.

    Parameters
    ----------
    dataset : Dataset
        Training observations (already projected to planar coordinates).
    families : sequence of str or VariogramFamily, optional
        Candidate families; defaults to ``options.families``.
    binning : BinningConfig, optional
        Lag binning (bin width or count, cutoff, estimator, minimum bins).
    options : FitConfig, optional
        Optimizer settings (nugget handling, iteration budget, range cap).

    Returns
    -------
    FitResult

    Raises
    ------
    InsufficientDataError
        Too few observations or usable bins.
    ConvergenceError
        No candidate converged.
    """

    binning = binning or BinningConfig()
    options = options or FitConfig()
    families = options.families if families is None else families

    empirical = empirical_variogram(
        dataset,
        bin_width=binning.bin_width,
        n_bins=binning.n_bins,
        max_distance=binning.max_distance,
        estimator=binning.estimator,
        min_bins=binning.min_bins,
        n_jobs=binning.n_jobs,
    )
    return fit_variogram_model(
        empirical,
        families=families,
        sample_variance=dataset.sample_variance(),
        fix_nugget=options.fix_nugget,
        nugget_init=options.nugget_init,
        maxiter=options.maxiter,
        range_factor=options.range_factor,
    )

# Main function: multi fitting
def variofitmulti(
    df,
    value_col,
    index_col,
    coord_cols=("x", "y"),
    families=None,
    binning=None,
    options=None,
    progress=True,
):
    """
    Fit a variogram per group in `index_col` (e.g. one per district or property type).

    Parameters
    ----------
    df : pandas.DataFrame
        Input table containing values, group ids, and coordinate columns.
    value_col : str
        Column name for the target values (e.g. log price per unit area).
    index_col : str
        Column name whose values define groups.
    coord_cols : tuple[str, str]
        Planar (x, y) coordinate columns.
    families, binning, options
        Passed through to `variofit` unchanged.
    progress : bool, default True
        Show a tqdm progress bar over groups.

    Returns
    -------
    summary : DataFrame
        One row per group with sample counts, mean/std, number of bins, the
        selected family and its parameters, or the error that stopped the fit.
    results : dict
        {group_id: FitResult} for the groups that could be fitted.
    """
    results = {}
    summary_rows = []

    gb = df.groupby(index_col, sort=False)
    for gid, gdf in tqdm(gb, total=gb.ngroups, desc="Fitting groups", disable=not progress):

        vals = gdf[value_col].to_numpy(dtype=float)
        row = {
            "group": gid,
            "n_samples": int(len(vals)),
            "mean": float(np.mean(vals)) if len(vals) else np.nan,
            "std": float(np.std(vals, ddof=1)) if len(vals) > 1 else np.nan,
        }
        try:
            dataset = Dataset.deduplicate(gdf[list(coord_cols)].to_numpy(dtype=float), vals)
            res = variofit(dataset, families=families, binning=binning, options=options)
        except KrigingError as exc:
            logger.warning("Group %r skipped: %s", gid, exc)
            row.update(n_bins=0, family=None, error=f"{type(exc).__name__}: {exc}")
            summary_rows.append(row)
            continue

        results[gid] = res
        row.update(
            n_bins=len(res.empirical),
            family=res.model.family.value,
            wsse=res.wsse,
            **{k: v for k, v in res.model.to_dict().items() if k != "family"},
            error=None,
        )
        summary_rows.append(row)

    columns = ["group", "n_samples", "mean", "std", "n_bins", "family", "wsse", "nugget", "sill", "range", "kappa", "error"]
    summary = pd.DataFrame(summary_rows).reindex(columns=columns)
    return summary, results


# Model persistence
def save_model(model: VariogramModel, path) -> None:
    """Write the flat model record (family, nugget, sill, range, kappa) as YAML."""
    with open(Path(path), "w") as f:
        yaml.safe_dump(model.to_dict(), f, sort_keys=False)

def load_model(path) -> VariogramModel:
    """Read a model written by `save_model`; parameters are validated on load."""
    with open(Path(path), "r") as f:
        record = yaml.safe_load(f)
    if not isinstance(record, dict):
        raise InvalidModelParameterError(f"{path} does not hold a variogram model record")
    return VariogramModel.from_dict(record)
