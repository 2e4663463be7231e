# histunfold/__init__.py
__all__ = [
    "Unfolding",
    "new_unfolding",
    "Response",
    "Histogram",
    "ParametricHistogram",
    "NuisanceParameter",
    "Algorithm",
    "BayesAlgorithm",
    "SvdAlgorithm",
    "InvertAlgorithm",
    "BinByBinAlgorithm",
    "TikhonovAlgorithm",
    "create_algorithm",
    "available_algorithms",
    "AlgorithmTag",
    "ErrorTreatment",
    "BiasMethod",
    "SystematicsTreatment",
    "invert_matrix",
    "InversionStatus",
    "print_table",
    "plot_unfolded",
]

from .algorithms import (
    Algorithm,
    BayesAlgorithm,
    BinByBinAlgorithm,
    InvertAlgorithm,
    SvdAlgorithm,
    TikhonovAlgorithm,
    available_algorithms,
    create_algorithm,
)
from .constants import AlgorithmTag, BiasMethod, ErrorTreatment, SystematicsTreatment
from .histogram import Histogram, NuisanceParameter, ParametricHistogram
from .linalg import InversionStatus, invert_matrix
from .presentation import plot_unfolded, print_table
from .response import Response
from .unfolding import Unfolding, new_unfolding
