import numpy as np
import pandas as pd
import pytest


def raw_forest_table(n_units=6, years=(2000, 2001, 2002), seed=0):
    """Raw table with the BayesX column names, one row per unit x year."""
    rng = np.random.default_rng(seed)
    rows = []
    for u in range(1, n_units + 1):
        for yr in years:
            rows.append({
                "id": u,
                "year": yr,
                "x": float(u % 3),
                "y": float(u // 3),
                "age": rng.uniform(20, 200),
                "canopyd": rng.uniform(0, 100),
                "gradient": rng.uniform(0, 40),
                "alt": rng.uniform(250, 500),
                "depth": rng.uniform(10, 50),
                "ph": rng.uniform(3, 7),
                "watermoisture": int(rng.integers(1, 4)),
                "alkali": int(rng.integers(1, 5)),
                "humus": int(rng.integers(0, 5)),
                "stand": int(rng.integers(0, 2)),
                "fertilized": int(rng.integers(0, 2)),
                "defoliation": float(rng.choice([0, 12.5, 25, 37.5, 50, 62.5])),
            })
    return pd.DataFrame(rows)


@pytest.fixture
def raw_table():
    return raw_forest_table()


@pytest.fixture
def path_graph():
    """Three units on a line: 1 - 2 - 3."""
    return {"1": ["2"], "2": ["1", "3"], "3": ["2"]}


@pytest.fixture
def gra_file(tmp_path):
    def _write(text, name="graph.gra"):
        p = tmp_path / name
        p.write_text(text)
        return str(p)
    return _write


@pytest.fixture
def make_raw_table():
    return raw_forest_table
