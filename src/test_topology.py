"""
Tests for mesh connectivity and sub-mesh extraction.
"""

import numpy as np
import pytest
import scipy.sparse as sp

from conftest import great_circle_distances
from sphere_geometry import cart2sph
from topology import (
    boundary_vertices,
    expand_to_convex_hull,
    extract_submesh,
    local_neighbourhood,
    mesh_adjacency,
    mesh_edge_distances,
    squeeze_triangulation,
    tangled_components,
)


def test_mesh_adjacency(icosphere):
    adjacency = mesh_adjacency(icosphere.faces, len(icosphere.vertices))

    assert adjacency.shape == (12, 12)
    assert (adjacency != adjacency.T).nnz == 0
    assert adjacency.diagonal().sum() == 0
    # every icosahedron vertex has five neighbours
    np.testing.assert_array_equal(np.asarray(adjacency.sum(axis=1)).ravel(), 5)


def test_mesh_edge_distances(icosphere1):
    x = np.array(icosphere1.vertices)
    d = mesh_edge_distances(icosphere1.faces, x)

    assert d.shape == (42, 42)
    np.testing.assert_allclose(d, d.T)
    np.testing.assert_allclose(np.diag(d), 0.0)
    assert np.all(np.isfinite(d))

    for a, b in icosphere1.edges_unique[:10]:
        np.testing.assert_allclose(d[a, b], np.linalg.norm(x[a] - x[b]))

    euclidean = np.linalg.norm(x[:, None, :] - x[None, :, :], axis=2)
    assert np.all(d >= euclidean - 1e-12)


def test_tangled_components_are_disjoint(icosphere2):
    x = np.array(icosphere2.vertices)
    adjacency = mesh_adjacency(icosphere2.faces, len(x))
    opposite = int(np.argmin(x @ x[0]))

    is_free = np.zeros(len(x), dtype=bool)
    for v in (0, opposite):
        is_free |= local_neighbourhood(adjacency, np.array([v]))

    components = tangled_components(adjacency, is_free)

    assert len(components) == 2
    merged = np.sort(np.concatenate(components))
    np.testing.assert_array_equal(merged, np.flatnonzero(is_free))
    assert any(0 in c for c in components)
    assert any(opposite in c for c in components)
    print("✓ Tangled vertices split into two clusters")


def test_tangled_components_empty(icosphere):
    adjacency = mesh_adjacency(icosphere.faces, 12)
    assert tangled_components(adjacency, np.zeros(12, dtype=bool)) == []


def test_local_neighbourhood(icosphere):
    adjacency = mesh_adjacency(icosphere.faces, 12)
    nn = local_neighbourhood(adjacency, np.array([0]))

    assert nn.sum() == 6
    assert nn[0]
    neighbours = np.unique(icosphere.faces[np.any(icosphere.faces == 0, axis=1)])
    np.testing.assert_array_equal(np.flatnonzero(nn), neighbours)


def test_boundary_vertices_of_fan():
    tri = np.array([[0, 1, 2], [0, 2, 3], [0, 3, 4], [0, 4, 1]])
    np.testing.assert_array_equal(boundary_vertices(tri), [1, 2, 3, 4])


def test_boundary_vertices_of_closed_mesh(icosphere):
    assert len(boundary_vertices(icosphere.faces)) == 0


def test_squeeze_triangulation():
    tri = np.array([[5, 9, 2], [2, 9, 7]])
    local = squeeze_triangulation(tri, np.array([2, 5, 7, 9]))
    np.testing.assert_array_equal(local, [[1, 3, 0], [0, 3, 2]])

    with pytest.raises(ValueError, match="outside the kept set"):
        squeeze_triangulation(np.array([[5, 9, 3]]), np.array([2, 5, 9]))


def test_expand_to_convex_hull_fills_ring(icosphere1):
    y = np.array(icosphere1.vertices)
    adjacency = mesh_adjacency(icosphere1.faces, len(y))
    centre = 7
    ring = local_neighbourhood(adjacency, np.array([centre]))
    ring[centre] = False

    lon, lat, _ = cart2sph(y)
    expanded = expand_to_convex_hull(ring, y, lat, lon, 1.0)

    expected = ring.copy()
    expected[centre] = True
    np.testing.assert_array_equal(expanded, expected)


def test_expand_to_convex_hull_degenerate(icosphere1):
    y = np.array(icosphere1.vertices)
    lon, lat, _ = cart2sph(y)
    nn = np.zeros(len(y), dtype=bool)
    nn[[0, 1]] = True

    np.testing.assert_array_equal(expand_to_convex_hull(nn, y, lat, lon, 1.0), nn)


@pytest.mark.parametrize("sparse", [False, True])
def test_extract_submesh(icosphere1, sparse):
    y = np.array(icosphere1.vertices)
    faces = np.array(icosphere1.faces)
    d = great_circle_distances(y, 1.0)
    adjacency = mesh_adjacency(faces, len(y))
    nn = local_neighbourhood(adjacency, np.array([0]))

    sub = extract_submesh(faces, y, sp.csr_matrix(d) if sparse else d, nn)

    np.testing.assert_array_equal(sub.vertices, np.flatnonzero(nn))
    assert len(sub.tri) == np.sum(np.any(faces == 0, axis=1))
    assert sub.tri.max() < len(sub.vertices)
    np.testing.assert_array_equal(sub.vertices[sub.tri], faces[np.any(faces == 0, axis=1)])
    np.testing.assert_array_equal(sub.y, y[sub.vertices])

    # only the centre is free, the ring is the boundary
    np.testing.assert_array_equal(sub.vertices[sub.is_free], [0])

    d_local = sub.d.toarray() if sparse else sub.d
    assert sp.issparse(sub.d) == sparse
    np.testing.assert_allclose(d_local, d[np.ix_(sub.vertices, sub.vertices)])


def test_extract_submesh_without_triangles(icosphere1):
    nn = np.zeros(len(icosphere1.vertices), dtype=bool)
    nn[0] = True
    assert extract_submesh(icosphere1.faces, icosphere1.vertices, np.zeros((42, 42)), nn) is None
