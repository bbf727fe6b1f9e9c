"""
Ordered-categorical GAMs with MRF spatial smooths for forest health data.

- data: loading and recoding of the survey table
- graph: neighbour graph (.gra) parsing, MRF penalty, id alignment
- terms: immutable model specifications and their bases
- gam: REML fitting and the fitted model
- evaluate: class assignment, accuracy, confusion tables, AIC comparison
- plots: smooth, spatial and time-trend figures
"""

from foresthealth.data import load_forest_health, recode_defoliation, class_frequency
from foresthealth.graph import (
    read_gra, reorder_neighbors, penalty_from_neighbors, check_alignment,
    GraphFormatError, AlignmentError,
)
from foresthealth.ocat import OrderedCategorical
from foresthealth.terms import ModelSpec, ParametricTerm, SmoothTerm, add_term
from foresthealth.gam import fit, FittedOcatGAM, ConvergenceError
from foresthealth.evaluate import (
    predicted_class, accuracy, confusion_table, aic_difference,
    probability_table, prediction_grid,
)

__version__ = "0.1.0"

__all__ = [
    "load_forest_health",
    "recode_defoliation",
    "class_frequency",
    "read_gra",
    "reorder_neighbors",
    "penalty_from_neighbors",
    "check_alignment",
    "GraphFormatError",
    "AlignmentError",
    "OrderedCategorical",
    "ModelSpec",
    "ParametricTerm",
    "SmoothTerm",
    "add_term",
    "fit",
    "FittedOcatGAM",
    "ConvergenceError",
    "predicted_class",
    "accuracy",
    "confusion_table",
    "aic_difference",
    "probability_table",
    "prediction_grid",
]
