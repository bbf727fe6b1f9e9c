"""
Settings for the forest health ordered-categorical GAM walkthrough.

The input files are looked up relative to the working directory unless the
FORESTHEALTH_DATA / FORESTHEALTH_GRAPH environment variables point elsewhere.
"""

import os

# ------------------- CONFIG -------------------
# Data
DATA_PATH   = os.environ.get("FORESTHEALTH_DATA", "foresthealth.raw")
GRAPH_PATH  = os.environ.get("FORESTHEALTH_GRAPH", "foresthealth.gra")
OUTPUT_DIR  = os.environ.get("FORESTHEALTH_OUT", "output")

# Missing values are written as "NA" or "." in the raw table
NA_VALUES   = ["NA", "."]

# Raw column name -> canonical name
COLUMN_MAP = {
    "id": "id",
    "year": "year",
    "x": "x",
    "y": "y",
    "age": "age",
    "canopyd": "canopy",
    "gradient": "gradient",
    "alt": "alt",
    "depth": "depth",
    "ph": "ph",
    "watermoisture": "moisture",
    "alkali": "alkali",
    "humus": "humus",
    "stand": "type",
    "fertilized": "fert",
    "defoliation": "defol",
}

CONTINUOUS_COLS = ["age", "canopy", "gradient", "alt", "depth", "ph"]

# Declared level sets of the nominal covariates
FACTOR_LEVELS = {
    "moisture": [1, 2, 3],
    "alkali":   [1, 2, 3, 4],
    "humus":    [0, 1, 2, 3, 4],
    "type":     [0, 1],
    "fert":     [0, 1],
}
# humus class 0 is too sparse and is merged into class 1
FACTOR_MERGE = {"humus": {0: 1}}

# Defoliation: admissible raw percentages and the 3-class coarsening
DEFOL_LEVELS  = [0.0, 12.5, 25.0, 37.5, 50.0, 62.5, 75.0, 87.5, 100.0]
DEFOL_CUTS    = (10.0, 45.0)     # <=10 low, (10,45] med, >45 high
CLASS_LABELS  = ["low", "med", "high"]

# GAM
K_SMOOTH = {
    "age": 10,
    "canopy": 10,
    "gradient": 10,
    "alt": 10,
    "depth": 10,
    "ph": 10,
    "year": 6,
}
PARAMETRIC_FACTORS = ["moisture", "alkali", "humus", "type", "fert"]
N_THREADS   = 4           # speed hint for the smoothing parameter search only

# REML search
LOG_SP_BOUNDS = (-12.0, 15.0)
MAXIT_OUTER   = 100
MAXIT_INNER   = 200
TOL_INNER     = 1e-9

# Plots
FIG_DPI     = 160
GRID_POINTS = 50
# ------------------------------------------------
