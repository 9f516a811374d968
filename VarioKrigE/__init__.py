"""
VarioKrigE
----------
Empirical variograms, weighted least-squares variogram model fitting, and
ordinary kriging of point observations (e.g. log price per unit area) in a
planar coordinate system.

    res = VarioKrigE.fit(dataset, ["exponential", "spherical"], BinningConfig(bin_width=250))
    preds = VarioKrigE.predict(res.model, dataset, query_xy)
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("VarioKrigE")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.0.0"

# ---------------------------------------------------------------------
# Errors and configuration
# ---------------------------------------------------------------------
from .errors import (
    KrigingError,
    DuplicateLocationError,
    InsufficientDataError,
    InvalidModelParameterError,
    ConvergenceError,
    SingularMatrixError,
)
from .config import BinningConfig, FitConfig, KrigingConfig, Settings, load_config

# ---------------------------------------------------------------------
# Data and distances
# ---------------------------------------------------------------------
from .dataset import SpatialObservation, Dataset
from .utils import distance, pairwise_distances, iter_pair_blocks, compute_distance_weights

# ---------------------------------------------------------------------
# Variogram estimation and fitting
# ---------------------------------------------------------------------
from .variofit import (
    VariogramFamily,
    VariogramModel,
    VariogramBin,
    EmpiricalVariogram,
    FitResult,
    VARIOGRAM_MODELS,
    empirical_variogram,
    fit_variogram_model,
    variofit,
    variofitmulti,
    save_model,
    load_model,
)

# ---------------------------------------------------------------------
# Ordinary kriging
# ---------------------------------------------------------------------
from .okrig import (
    Prediction,
    PredictionFailure,
    KrigingSystem,
    ordinary_kriging,
    predictions_to_frame,
    cross_validate,
    loo_summary,
)

# entry-point names
fit = variofit
predict = ordinary_kriging

__all__ = [
    "__version__",
    "KrigingError", "DuplicateLocationError", "InsufficientDataError",
    "InvalidModelParameterError", "ConvergenceError", "SingularMatrixError",
    "BinningConfig", "FitConfig", "KrigingConfig", "Settings", "load_config",
    "SpatialObservation", "Dataset",
    "distance", "pairwise_distances", "iter_pair_blocks", "compute_distance_weights",
    "VariogramFamily", "VariogramModel", "VariogramBin", "EmpiricalVariogram", "FitResult",
    "VARIOGRAM_MODELS", "empirical_variogram", "fit_variogram_model",
    "variofit", "variofitmulti", "save_model", "load_model",
    "Prediction", "PredictionFailure", "KrigingSystem", "ordinary_kriging",
    "predictions_to_frame", "cross_validate", "loo_summary",
    "fit", "predict",
]
