"""
Mesh connectivity and local neighbourhood utilities.

Used by the local untangling strategy to split the tangled vertices into
connected clusters, grow each cluster into a local patch with a fixed
boundary, and cut the corresponding sub-problem out of the full mesh.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
import scipy.sparse as sp
import trimesh
from scipy.sparse.csgraph import connected_components, shortest_path
from scipy.spatial import Delaunay, QhullError

from sphere_geometry import cart2sph, rotation_to_x_axis, sph2cart, spherical_mean

logger = logging.getLogger(__name__)


# ----------------------------
# Connectivity
# ----------------------------


def _unique_edges(tri: np.ndarray) -> np.ndarray:
    edges = np.sort(trimesh.geometry.faces_to_edges(np.asarray(tri)), axis=1)
    return np.unique(edges, axis=0)


def mesh_adjacency(tri: np.ndarray, n: int) -> sp.csr_matrix:
    """
    Vertex adjacency matrix: i and j are adjacent if they share a triangle.

    Args:
        tri: (M, 3) triangulation
        n: Number of vertices

    Returns:
        Symmetric (n, n) sparse matrix of 0s and 1s
    """
    edges = _unique_edges(tri)
    rows = np.concatenate([edges[:, 0], edges[:, 1]])
    cols = np.concatenate([edges[:, 1], edges[:, 0]])
    data = np.ones(len(rows), dtype=np.int8)
    return sp.coo_matrix((data, (rows, cols)), shape=(n, n)).tocsr()


def mesh_edge_distances(tri: np.ndarray, x: np.ndarray) -> np.ndarray:
    """
    Shortest-path distances along mesh edges between all pairs of vertices.

    A linear approximation to geodesic distances on the surface.

    Args:
        tri: (M, 3) triangulation
        x: (N, 3) vertex coordinates

    Returns:
        Dense (N, N) distance matrix
    """
    x = np.asarray(x, dtype=np.float64)
    edges = _unique_edges(tri)
    lengths = np.linalg.norm(x[edges[:, 0]] - x[edges[:, 1]], axis=1)
    graph = sp.coo_matrix(
        (lengths, (edges[:, 0], edges[:, 1])), shape=(len(x), len(x))
    ).tocsr()
    logger.debug(f"Computing edge-path distances for {len(x)} vertices")
    return shortest_path(graph, method="D", directed=False)


def tangled_components(adjacency: sp.csr_matrix, is_free: np.ndarray) -> List[np.ndarray]:
    """
    Group free vertices into connected components.

    Components are computed on the subgraph induced by the free vertices,
    then mapped back to the full vertex numbering.

    Args:
        adjacency: (N, N) mesh adjacency
        is_free: (N,) boolean mask of tangled vertices

    Returns:
        List of vertex index arrays, one per component
    """
    free_map = np.flatnonzero(is_free)
    if len(free_map) == 0:
        return []
    subgraph = adjacency[free_map][:, free_map]
    ncomp, labels = connected_components(subgraph, directed=False)
    return [free_map[labels == k] for k in range(ncomp)]


def local_neighbourhood(adjacency: sp.csr_matrix, component: np.ndarray) -> np.ndarray:
    """
    Component vertices plus every vertex adjacent to one of them.

    Returns:
        (N,) boolean mask
    """
    n = adjacency.shape[0]
    nn = np.zeros(n, dtype=bool)
    nn[component] = True
    nn |= np.asarray(adjacency[component].sum(axis=0)).ravel() > 0
    return nn


def expand_to_convex_hull(
    nn: np.ndarray, y: np.ndarray, lat: np.ndarray, lon: np.ndarray, sphrad: float
) -> np.ndarray:
    """
    Grow a local neighbourhood to its convex hull on the sphere.

    The configuration is rotated so that the mean of the neighbourhood
    sits at lat=0, lon=0, and every vertex whose (lon, lat) falls inside
    the planar convex hull of the neighbourhood's (lon, lat) is added.

    Args:
        nn: (N,) boolean mask of the neighbourhood
        y: (N, 3) configuration
        lat, lon: (N,) spherical coordinates of y
        sphrad: Sphere radius

    Returns:
        (N,) boolean mask, a superset of nn
    """
    mlat, mlon = spherical_mean(lat[nn], lon[nn])
    centre = sph2cart(np.array([mlon]), np.array([mlat]), sphrad)[0]
    yrot = y @ rotation_to_x_axis(centre).T
    lonrot, latrot, _ = cart2sph(yrot)

    footprint = np.column_stack([lonrot, latrot])
    try:
        hull = Delaunay(footprint[nn])
    except (QhullError, ValueError) as e:
        # too few or collinear points
        logger.debug(f"Skipping convex hull expansion: {e}")
        return nn.copy()

    inside = hull.find_simplex(footprint) >= 0
    expanded = nn | inside
    logger.debug(
        f"Convex hull expansion: {int(nn.sum())} -> {int(expanded.sum())} vertices"
    )
    return expanded


# ----------------------------
# Sub-mesh extraction
# ----------------------------


def boundary_vertices(tri: np.ndarray) -> np.ndarray:
    """Vertices on edges that belong to exactly one triangle."""
    edges = np.sort(trimesh.geometry.faces_to_edges(np.asarray(tri)), axis=1)
    if len(edges) == 0:
        return np.zeros(0, dtype=np.int64)
    unique, counts = np.unique(edges, axis=0, return_counts=True)
    return np.unique(unique[counts == 1])


def squeeze_triangulation(tri: np.ndarray, vertices: np.ndarray) -> np.ndarray:
    """
    Renumber a triangulation to a compact index space.

    Args:
        tri: (M, 3) triangles, indices into the full mesh
        vertices: Sorted full-mesh indices of the kept vertices

    Returns:
        (M, 3) triangles, indices into vertices
    """
    lookup = np.full(int(np.max(vertices)) + 1 if len(vertices) else 0, -1, dtype=np.int64)
    lookup[vertices] = np.arange(len(vertices))
    local = lookup[np.asarray(tri)]
    if np.any(local < 0):
        raise ValueError("Triangulation references vertices outside the kept set")
    return local


@dataclass
class SubMesh:
    """Local sub-problem cut out of the full mesh."""

    vertices: np.ndarray  # (n,) full-mesh indices
    tri: np.ndarray  # (m, 3) local indices
    y: np.ndarray  # (n, 3) local configuration
    d: object  # (n, n) local distances, dense or sparse
    is_free: np.ndarray  # (n,) boundary vertices are fixed


def extract_submesh(
    tri: np.ndarray, y: np.ndarray, d, nn: np.ndarray
) -> Optional[SubMesh]:
    """
    Cut the sub-problem spanned by a local neighbourhood.

    Only triangles with all three vertices in the neighbourhood are kept,
    vertices left without a triangle are dropped, and the vertices on the
    boundary of the local triangulation are fixed.

    Args:
        tri: (M, 3) full triangulation
        y: (N, 3) full configuration
        d: (N, N) full distance matrix, dense or scipy.sparse
        nn: (N,) boolean mask of the neighbourhood

    Returns:
        SubMesh, or None if no triangle lies inside the neighbourhood
    """
    tri = np.asarray(tri)
    tri_nn = tri[np.all(nn[tri], axis=1)]
    if len(tri_nn) == 0:
        return None

    vertices = np.unique(tri_nn)
    is_free = ~np.isin(vertices, boundary_vertices(tri_nn))

    if sp.issparse(d):
        d_nn = d.tocsr()[vertices][:, vertices]
    else:
        d_nn = np.asarray(d)[np.ix_(vertices, vertices)]

    return SubMesh(
        vertices=vertices,
        tri=squeeze_triangulation(tri_nn, vertices),
        y=np.array(y[vertices], dtype=np.float64),
        d=d_nn,
        is_free=is_free,
    )
