"""
Neighbour graphs for the MRF smooth.

The graph file is a BayesX-style adjacency list:

    <number of vertices>
    <id> <count> <neighbour id> ... <neighbour id>
    ...

one line per vertex. Vertices without neighbours have count 0.
"""

import warnings

import numpy as np
import pandas as pd
from libpysal.weights import W


class GraphFormatError(ValueError):
    """Malformed neighbour graph file or mapping."""


class AlignmentError(ValueError):
    """Unit ids in the data and the neighbour graph do not match."""


def read_gra(path: str) -> dict:
    """Parse a graph file into {vertex id: [neighbour ids]} (all strings, file order)."""
    with open(path) as f:
        lines = [(i, ln.split()) for i, ln in enumerate(f, start=1) if ln.strip()]
    if not lines:
        raise GraphFormatError(f"{path}: empty graph file.")

    lineno, header = lines[0]
    if len(header) != 1 or not header[0].isdigit():
        raise GraphFormatError(f"{path}:{lineno}: header must be the vertex count, got {' '.join(header)!r}.")
    n_vertices = int(header[0])
    if n_vertices == 0:
        raise GraphFormatError(f"{path}:{lineno}: graph has no vertices.")

    body = lines[1:]
    if len(body) < n_vertices:
        raise GraphFormatError(
            f"{path}: truncated file, header declares {n_vertices} vertices but only {len(body)} found."
        )
    if len(body) > n_vertices:
        lineno = body[n_vertices][0]
        raise GraphFormatError(
            f"{path}:{lineno}: more vertex lines than the {n_vertices} declared in the header."
        )

    neighbors = {}
    for lineno, tok in body:
        if len(tok) < 2 or not tok[1].isdigit():
            raise GraphFormatError(f"{path}:{lineno}: expected '<id> <count> <neighbours...>'.")
        vid, count, nbs = tok[0], int(tok[1]), tok[2:]
        if count != len(nbs):
            raise GraphFormatError(
                f"{path}:{lineno}: vertex {vid} declares {count} neighbours but lists {len(nbs)}."
            )
        if vid in neighbors:
            raise GraphFormatError(f"{path}:{lineno}: duplicate vertex id {vid}.")
        neighbors[vid] = list(nbs)
    return neighbors


def reorder_neighbors(neighbors: dict, width: int | None = None) -> dict:
    """
    Sort vertices by numeric id and re-key everything with zero-padded ids.

    The padded ids must match the unit ids of the observation table, so the
    same width has to be used on both sides.
    """
    def _num(v):
        try:
            return int(v)
        except ValueError:
            raise GraphFormatError(f"Vertex id {v!r} is not an integer.") from None

    if width is None:
        width = max(len(str(_num(v))) for v in neighbors)

    def _pad(v):
        return str(_num(v)).zfill(width)

    order = sorted(neighbors, key=_num)
    return {_pad(v): [_pad(nb) for nb in neighbors[v]] for v in order}


def neighbor_weights(neighbors: dict) -> W:
    """Binary contiguity weights (libpysal) in the mapping's vertex order."""
    ids = list(neighbors)
    known = set(ids)
    dangling = sorted({nb for v in ids for nb in neighbors[v] if nb not in known})
    if dangling:
        raise GraphFormatError(f"Neighbour ids that are not vertices of the graph: {dangling[:10]}")
    self_loops = [v for v in ids if v in neighbors[v]]
    if self_loops:
        raise GraphFormatError(f"Vertices listed as their own neighbour: {self_loops[:10]}")

    w = W({v: list(neighbors[v]) for v in ids}, id_order=ids, silence_warnings=True)
    asym = w.asymmetry(intrinsic=False)
    if len(asym):
        warnings.warn(
            f"Neighbour graph is not symmetric ({len(asym)} one-way links); "
            "links are symmetrised for the penalty.",
            UserWarning,
            stacklevel=2,
        )
    return w


def penalty_from_neighbors(neighbors: dict) -> pd.DataFrame:
    """
    MRF penalty matrix: neighbour count on the diagonal, -1 for neighbours.

    Symmetric with zero row sums; indexed by vertex id in mapping order.
    """
    w = neighbor_weights(neighbors)
    A = (w.sparse.toarray() != 0).astype(float)
    A = np.maximum(A, A.T)
    S = np.diag(A.sum(axis=1)) - A
    return pd.DataFrame(S, index=w.id_order, columns=w.id_order)


def check_alignment(units, neighbors: dict, allow_unobserved: bool = False) -> None:
    """
    Fail unless every unit id of the data is a graph vertex.

    Graph vertices without any observation are also fatal unless
    allow_unobserved is set.
    """
    data_units = set(pd.Series(units).astype(str).unique())
    graph_units = set(neighbors)

    absent = sorted(data_units - graph_units)
    if absent:
        raise AlignmentError(
            f"{len(absent)} unit id(s) in the data have no entry in the neighbour graph: {absent[:10]}"
        )
    unobserved = sorted(graph_units - data_units)
    if unobserved and not allow_unobserved:
        raise AlignmentError(
            f"{len(unobserved)} graph vertices have no observations: {unobserved[:10]} "
            "(pass allow_unobserved=True to keep them)."
        )
