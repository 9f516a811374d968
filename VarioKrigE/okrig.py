"""
This file contains the functions required for ordinary kriging with a fitted VariogramModel, plus
leave-one-out cross-validation of a model against its training Dataset.
"""

# import modules
import logging
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy.linalg import LinAlgWarning, get_lapack_funcs, lu_factor, lu_solve
from tqdm.auto import tqdm

# from package
from VarioKrigE.config import KrigingConfig
from VarioKrigE.dataset import Dataset
from VarioKrigE.errors import InsufficientDataError, KrigingError, SingularMatrixError
from VarioKrigE.utils import pairwise_distances
from VarioKrigE.variofit import VariogramModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Prediction:
    """Kriged value and estimation variance at a query location."""

    x: float
    y: float
    value: float
    variance: float

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class PredictionFailure:
    """Marker occupying the slot of a query location that could not be kriged."""

    x: float
    y: float
    error: KrigingError

    @property
    def ok(self) -> bool:
        return False


PredictionResult = Union[Prediction, PredictionFailure]


class KrigingSystem:
    """
    Ordinary-kriging matrix of one (model, training Dataset) pair, factorized once.

        Γ = | γ(d_ij)  1 |      (n+1) x (n+1), γ(0) = 0 on the diagonal
            |   1ᵀ     0 |

    Right-hand sides g = [γ(d_i0); 1] are built per query and solved against the
    shared LU factorization. Instances are read-only after construction and can
    be used from several threads.

    Raises
    ------
    SingularMatrixError
        If Γ is not finite, its estimated 1-norm condition number exceeds
        `max_condition`, or the LU factorization hits an exactly singular pivot.
    """

    def __init__(self, model: VariogramModel, dataset: Dataset, max_condition: float = 1e12):
        if not isinstance(model, VariogramModel):
            raise TypeError(f"ordinary kriging needs a fitted VariogramModel, got {type(model).__name__}")
        n = len(dataset)
        if n < 2:
            raise InsufficientDataError(f"ordinary kriging needs at least 2 training observations, got {n}")

        self.model = model
        self.dataset = dataset
        self.n = n
        self.coords = dataset.coords
        self.values = dataset.values

        G = np.ones((n + 1, n + 1), dtype=float)
        G[:n, :n] = model(pairwise_distances(self.coords))
        G[n, n] = 0.0
        if not np.all(np.isfinite(G)):
            raise SingularMatrixError("kriging matrix contains non-finite semivariances")

        with warnings.catch_warnings():
            warnings.simplefilter("error", LinAlgWarning)
            try:
                self._lu = lu_factor(G, check_finite=False)
            except LinAlgWarning as exc:
                raise SingularMatrixError(f"kriging matrix is singular: {exc}") from None

        # 1-norm condition estimate from the LU factors (LAPACK gecon)
        gecon, = get_lapack_funcs(("gecon",), (self._lu[0],))
        rcond, info = gecon(self._lu[0], np.linalg.norm(G, 1), norm="1")
        condition = float(1.0 / rcond) if info == 0 and rcond > 0.0 else np.inf
        if not np.isfinite(condition) or condition > max_condition:
            raise SingularMatrixError(
                f"kriging matrix is ill-conditioned (condition number {condition:.3g} > {max_condition:.3g}); "
                "check for near-duplicate training locations or a degenerate variogram range",
                condition=condition,
            )

        self.matrix = G
        self.condition = condition
        logger.debug("Kriging system: n=%d, condition number %.3g", n, condition)

    def solve(self, targets: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """
        Solve for a block of finite (k, 2) target locations.

        Returns
        -------
        W : (k, n) ndarray
            Kriging weights per target.
        mu : (k,) ndarray
            Lagrange multipliers.
        est : (k,) ndarray
            Σ w_i z_i.
        var : (k,) ndarray
            Σ w_i γ_i0 + μ (not yet clipped).
        """
        D_nt = pairwise_distances(self.coords, targets)                # (n, k)
        # queries within the dataset tolerance of a training location coincide with it
        D_nt[D_nt <= self.dataset.tolerance] = 0.0
        g = np.ones((self.n + 1, D_nt.shape[1]), dtype=float)
        g[:self.n] = self.model(D_nt)

        sol = lu_solve(self._lu, g, check_finite=False)                  # (n+1, k)
        W = sol[:self.n].T                                               # (k, n)
        mu = sol[self.n]
        est = W @ self.values
        var = np.einsum("ij,ji->i", W, g[:self.n]) + mu
        return W, mu, est, var


def _krige_chunk(system, targets, return_weights, var_tol):
    """Kriging for one block of targets; failures are returned as markers, never raised."""
    k = targets.shape[0]
    results: List[Optional[PredictionResult]] = [None] * k
    W_out = np.full((k, system.n), np.nan) if return_weights else None

    finite = np.all(np.isfinite(targets), axis=1)
    for i in np.flatnonzero(~finite):
        results[i] = PredictionFailure(
            float(targets[i, 0]), float(targets[i, 1]),
            KrigingError("query location has non-finite coordinates"),
        )

    idx = np.flatnonzero(finite)
    if idx.size:
        W, mu, est, var = system.solve(targets[idx])
        for row, i in enumerate(idx):
            x, y = float(targets[i, 0]), float(targets[i, 1])
            if not (np.isfinite(est[row]) and np.isfinite(var[row]) and np.all(np.isfinite(W[row]))):
                results[i] = PredictionFailure(x, y, SingularMatrixError("kriging solve produced non-finite weights"))
                continue
            if var[row] < -var_tol:
                results[i] = PredictionFailure(
                    x, y, SingularMatrixError(f"kriging variance {var[row]:.3g} is negative beyond round-off"),
                )
                continue
            results[i] = Prediction(x, y, float(est[row]), float(max(var[row], 0.0)))
            if return_weights:
                W_out[i] = W[row]
    return results, W_out


def _as_targets(targets) -> np.ndarray:
    XT = np.asarray(targets, float)
    if XT.ndim == 1 and XT.size == 2:
        XT = XT.reshape(1, 2)
    if XT.ndim != 2 or XT.shape[1] != 2:
        raise ValueError(f"targets must have shape (m, 2): (x, y), got {XT.shape}")
    return XT


# Ordinary Kriging Function
def ordinary_kriging(
    model: VariogramModel,
    dataset: Dataset,
    targets,
    *,
    fail_fast: bool = False,
    chunk_size: int = 2048,
    n_jobs: int = 1,
    max_condition: float = 1e12,
    return_weights: bool = False,
    progress: bool = False,
    config: Optional[KrigingConfig] = None,
) -> Union[List[PredictionResult], Tuple[List[PredictionResult], np.ndarray]]:
    """
    Ordinary Kriging with a fitted variogram model.

    Estimator (per target x0):
        [w; μ] solves Γ [w; μ] = [γ(x_i - x0); 1]
        z_OK(x0)   = Σ_i w_i z_i,           Σ_i w_i = 1
        σ_OK^2(x0) = Σ_i w_i γ(x_i - x0) + μ

    Parameters
    ----------
    model : VariogramModel
        Fitted (immutable) variogram; required.
    dataset : Dataset
        Training observations (at least 2).
    targets : (m, 2) array_like
        Query locations, in the same planar coordinates as `dataset`.
    fail_fast : bool, default False
        If True, raise the first per-query error instead of returning a
        PredictionFailure in its slot, and cancel outstanding chunks.
    chunk_size : int, default 2048
        Number of targets solved per right-hand-side block (>= 1).
    n_jobs : int, default 1
        Worker threads across chunks. The factorized system is shared read-only.
    max_condition : float, default 1e12
        Largest acceptable (1-norm, estimated) condition number of Γ; >= 1.
    return_weights : bool
        If True, also return weights W with shape (m, n) (NaN rows for failures).
    progress : bool
        Show a tqdm progress bar over chunks.
    config : KrigingConfig, optional
        Overrides `fail_fast`, `chunk_size`, `n_jobs` and `max_condition`.

    Returns
    -------
    results : list of Prediction | PredictionFailure
        One entry per target, in target order.
    W : (m, n) ndarray  (only if return_weights=True)

    Raises
    ------
    TypeError
        If `model` is not a VariogramModel.
    ValueError
        If `targets` is not (m, 2), or `chunk_size`, `n_jobs` or `max_condition`
        is out of range.
    InsufficientDataError
        If the training Dataset has fewer than 2 observations.
    SingularMatrixError
        If the kriging matrix cannot be solved reliably (affects every target).
    KrigingError
        The first per-query failure, when `fail_fast` is True.
    """

    if config is not None:
        fail_fast = config.fail_fast
        chunk_size = config.chunk_size
        n_jobs = config.n_jobs
        max_condition = config.max_condition

    if chunk_size < 1:
        raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
    if n_jobs is not None and n_jobs < 1:
        raise ValueError(f"n_jobs must be >= 1, got {n_jobs}")
    if not max_condition >= 1.0:
        raise ValueError(f"max_condition must be >= 1, got {max_condition}")

    XT = _as_targets(targets)
    m = XT.shape[0]

    # 1) Kriging matrix, factorized once for the whole batch
    system = KrigingSystem(model, dataset, max_condition=max_condition)
    var_tol = 1e-8 * max(model.total_sill, 1.0)

    # 2) Right-hand sides in chunks of targets
    chunks = [(j0, min(m, j0 + chunk_size)) for j0 in range(0, m, int(chunk_size))]
    results: List[Optional[PredictionResult]] = [None] * m
    W = np.full((m, system.n), np.nan) if return_weights else None

    def run(chunk):
        j0, j1 = chunk
        return _krige_chunk(system, XT[j0:j1], return_weights, var_tol)

    def collect(chunk, out):
        j0, j1 = chunk
        res, W_chunk = out
        if fail_fast:
            for r in res:
                if isinstance(r, PredictionFailure):
                    raise r.error
        results[j0:j1] = res
        if return_weights:
            W[j0:j1] = W_chunk

    if n_jobs is None or n_jobs <= 1 or len(chunks) <= 1:
        for chunk in tqdm(chunks, disable=not progress, desc="Kriging chunks"):
            collect(chunk, run(chunk))
    else:
        pool = ThreadPoolExecutor(max_workers=n_jobs)
        try:
            futures = [pool.submit(run, chunk) for chunk in chunks]
            for chunk, fut in tqdm(zip(chunks, futures), total=len(chunks), disable=not progress, desc="Kriging chunks"):
                collect(chunk, fut.result())
        finally:
            pool.shutdown(wait=True, cancel_futures=True)

    n_failed = sum(isinstance(r, PredictionFailure) for r in results)
    if n_failed:
        logger.warning("Ordinary kriging: %d of %d query locations failed", n_failed, m)
    logger.info("Ordinary kriging: %d targets from %d observations (%s model)", m, system.n, model.family.value)

    return (results, W) if return_weights else results


def predictions_to_frame(results: Sequence[PredictionResult]) -> pd.DataFrame:
    """
    Tabulate kriging results in query order.

    Failed queries keep their location, carry NaN value/variance, and name the
    failure in the `error` column.
    """
    rows = []
    for r in results:
        if isinstance(r, Prediction):
            rows.append((r.x, r.y, r.value, r.variance, None))
        else:
            rows.append((r.x, r.y, np.nan, np.nan, f"{type(r.error).__name__}: {r.error}"))
    return pd.DataFrame(rows, columns=["x", "y", "value", "variance", "error"])


# Leave-one-out cross-validation
def cross_validate(model: VariogramModel, dataset: Dataset, *, max_condition: float = 1e12, progress: bool = False) -> pd.DataFrame:
    """
    Leave-one-out ordinary kriging of every training observation.

    Each observation is predicted from the remaining n - 1 with the same model.

    Returns
    -------
    DataFrame
        Columns x, y, observed, predicted, variance, error (predicted - observed)
        and std_error (error / sqrt(variance); NaN where the variance is 0).

    Raises
    ------
    InsufficientDataError
        If the dataset has fewer than 3 observations.
    SingularMatrixError
        If any leave-one-out system cannot be solved.
    """
    n = len(dataset)
    if n < 3:
        raise InsufficientDataError(f"leave-one-out cross-validation needs at least 3 observations, got {n}")

    rows = []
    for i in tqdm(range(n), disable=not progress, desc="LOO kriging"):
        obs = dataset[i]
        (pred,) = ordinary_kriging(model, dataset.without(i), [obs.location], fail_fast=True, max_condition=max_condition)
        err = pred.value - obs.value
        sd = np.sqrt(pred.variance)
        rows.append((obs.x, obs.y, obs.value, pred.value, pred.variance, err, err / sd if sd > 0 else np.nan))

    return pd.DataFrame(rows, columns=["x", "y", "observed", "predicted", "variance", "error", "std_error"])


def loo_summary(cv: pd.DataFrame) -> dict:
    """
    Summary metrics of a `cross_validate` table.

    mean_std_error near 0 and mean_sq_std_error near 1 indicate kriging
    variances consistent with the actual errors.
    """
    err = cv["error"].to_numpy(dtype=float)
    z = cv["std_error"].to_numpy(dtype=float)
    return {
        "n": int(err.size),
        "mae": float(np.mean(np.abs(err))),
        "rmse": float(np.sqrt(np.mean(err**2))),
        "mean_error": float(np.mean(err)),
        "mean_std_error": float(np.nanmean(z)),
        "mean_sq_std_error": float(np.nanmean(z**2)),
    }
