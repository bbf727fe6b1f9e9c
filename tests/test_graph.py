import numpy as np
import pytest

from foresthealth.graph import (
    read_gra, reorder_neighbors, neighbor_weights, penalty_from_neighbors, check_alignment,
    GraphFormatError, AlignmentError,
)

PATH_GRA = """3
1 1 2
2 2 1 3
3 1 2
"""


def test_read_gra_path_graph(gra_file):
    nb = read_gra(gra_file(PATH_GRA))
    assert nb == {"1": ["2"], "2": ["1", "3"], "3": ["2"]}


def test_read_gra_keeps_isolated_vertex(gra_file):
    nb = read_gra(gra_file("3\n1 1 2\n2 1 1\n\n3 0\n"))
    assert nb["3"] == []
    assert list(nb) == ["1", "2", "3"]


def test_read_gra_count_mismatch(gra_file):
    with pytest.raises(GraphFormatError, match="declares 2 neighbours but lists 1"):
        read_gra(gra_file("2\n1 2 2\n2 1 1\n"))


def test_read_gra_truncated(gra_file):
    with pytest.raises(GraphFormatError, match="truncated"):
        read_gra(gra_file("3\n1 1 2\n2 1 1\n"))


def test_read_gra_extra_lines(gra_file):
    with pytest.raises(GraphFormatError, match="more vertex lines"):
        read_gra(gra_file("1\n1 0\n2 0\n"))


def test_read_gra_bad_header(gra_file):
    with pytest.raises(GraphFormatError, match="header"):
        read_gra(gra_file("three\n1 0\n"))


def test_read_gra_duplicate_vertex(gra_file):
    with pytest.raises(GraphFormatError, match="duplicate"):
        read_gra(gra_file("2\n1 0\n1 0\n"))


def test_penalty_path_graph(path_graph):
    S = penalty_from_neighbors(path_graph)
    assert list(S.index) == ["1", "2", "3"]
    np.testing.assert_array_equal(np.diag(S.values), [1, 2, 1])
    expected = np.array([[1, -1, 0], [-1, 2, -1], [0, -1, 1]], dtype=float)
    np.testing.assert_array_equal(S.values, expected)
    np.testing.assert_array_equal(S.values, S.values.T)
    np.testing.assert_allclose(S.values.sum(axis=1), 0.0)


def test_penalty_from_parsed_file(gra_file):
    S = penalty_from_neighbors(read_gra(gra_file(PATH_GRA)))
    off = (S.values < 0)
    assert off[0, 1] and off[1, 2] and not off[0, 2]


def test_penalty_symmetrises_one_way_links():
    nb = {"1": ["2"], "2": [], "3": []}
    with pytest.warns(UserWarning, match="not symmetric"):
        S = penalty_from_neighbors(nb)
    assert S.loc["2", "1"] == -1 and S.loc["1", "2"] == -1
    np.testing.assert_allclose(S.values.sum(axis=1), 0.0)


def test_dangling_neighbour_is_an_error():
    with pytest.raises(GraphFormatError, match="not vertices"):
        neighbor_weights({"1": ["2"], "2": ["1", "7"]})


def test_reorder_sorts_numerically_and_pads():
    nb = {"10": ["2"], "2": ["10", "1"], "1": ["2"]}
    out = reorder_neighbors(nb, width=3)
    assert list(out) == ["001", "002", "010"]
    assert out["002"] == ["010", "001"]
    assert reorder_neighbors(nb) == {"01": ["02"], "02": ["10", "01"], "10": ["02"]}


def test_alignment_missing_unit_is_fatal(path_graph):
    with pytest.raises(AlignmentError, match="99"):
        check_alignment(["1", "2", "3", "99"], path_graph)


def test_alignment_unobserved_vertex(path_graph):
    with pytest.raises(AlignmentError, match="no observations"):
        check_alignment(["1", "2"], path_graph)
    check_alignment(["1", "2"], path_graph, allow_unobserved=True)
    check_alignment(["3", "1", "2", "2"], path_graph)


def test_read_gra_rejects_empty_graph(gra_file):
    with pytest.raises(GraphFormatError, match="no vertices"):
        read_gra(gra_file("0\n"))
