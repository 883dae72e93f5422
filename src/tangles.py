"""
Detection of tangled vertices in a spherical parametrization.

A vertex is tangled if it belongs to a triangle whose tetrahedron with the
sphere centre has non-positive signed volume (the triangle normal points
inwards), or to a triangle that intersects another triangle of the mesh.
"""

import logging
from typing import Optional, Tuple

import numpy as np
import trimesh
from scipy.spatial import cKDTree

from sphere_geometry import signed_tetra_volume

logger = logging.getLogger(__name__)


def reorient_triangles(tri: np.ndarray, x: np.ndarray) -> np.ndarray:
    """
    Make the winding of all triangles consistent with outward normals.

    Args:
        tri: (M, 3) triangulation of a closed surface
        x: (N, 3) vertex coordinates of the surface

    Returns:
        (M, 3) triangulation with the same triangles, reoriented
    """
    mesh = trimesh.Trimesh(
        vertices=np.asarray(x, dtype=np.float64),
        faces=np.asarray(tri, dtype=np.int64),
        process=False,
    )
    trimesh.repair.fix_normals(mesh)
    return np.array(mesh.faces, dtype=np.int64)


# ----------------------------
# Self-intersections
# ----------------------------


def _segment_hits_triangle(
    p0: np.ndarray,
    p1: np.ndarray,
    v0: np.ndarray,
    v1: np.ndarray,
    v2: np.ndarray,
    eps: float = 1e-10,
) -> np.ndarray:
    """
    Vectorized Moller-Trumbore test of segments [p0, p1] against triangles.

    Touching at an endpoint or at the triangle border does not count as a
    hit, and neither does a segment lying in the plane of the triangle.
    """
    direction = p1 - p0
    e1 = v1 - v0
    e2 = v2 - v0
    h = np.cross(direction, e2)
    a = np.einsum("ij,ij->i", e1, h)

    scale = np.linalg.norm(e1, axis=1) * np.linalg.norm(e2, axis=1) * np.linalg.norm(
        direction, axis=1
    )
    valid = np.abs(a) > eps * np.maximum(scale, 1e-300)
    a = np.where(valid, a, 1.0)

    s = p0 - v0
    u = np.einsum("ij,ij->i", s, h) / a
    q = np.cross(s, e1)
    v = np.einsum("ij,ij->i", direction, q) / a
    t = np.einsum("ij,ij->i", e2, q) / a

    return (
        valid
        & (u > eps)
        & (v > eps)
        & (u + v < 1.0 - eps)
        & (t > eps)
        & (t < 1.0 - eps)
    )


def _edges_hit_triangles(
    points: np.ndarray, tri_a: np.ndarray, tri_b: np.ndarray, edge_mask: np.ndarray
) -> np.ndarray:
    """Whether any selected edge of each triangle in tri_a crosses tri_b."""
    hit = np.zeros(len(tri_a), dtype=bool)
    v0, v1, v2 = points[tri_b[:, 0]], points[tri_b[:, 1]], points[tri_b[:, 2]]
    for k, (i, j) in enumerate(((0, 1), (1, 2), (2, 0))):
        sel = edge_mask[:, k]
        if not np.any(sel):
            continue
        hit[sel] |= _segment_hits_triangle(
            points[tri_a[sel, i]],
            points[tri_a[sel, j]],
            v0[sel],
            v1[sel],
            v2[sel],
        )
    return hit


def _candidate_pairs(tri: np.ndarray, points: np.ndarray) -> np.ndarray:
    corners = points[tri]
    centroids = corners.mean(axis=1)
    radii = np.max(np.linalg.norm(corners - centroids[:, None, :], axis=2), axis=1)
    if len(tri) < 2:
        return np.zeros((0, 2), dtype=np.int64)

    tree = cKDTree(centroids)
    pairs = tree.query_pairs(r=2.0 * float(radii.max()), output_type="ndarray")
    if len(pairs) == 0:
        return pairs.reshape(0, 2)

    # bounding box overlap
    lo, hi = corners.min(axis=1), corners.max(axis=1)
    overlap = np.all(
        (lo[pairs[:, 0]] <= hi[pairs[:, 1]]) & (lo[pairs[:, 1]] <= hi[pairs[:, 0]]),
        axis=1,
    )
    return pairs[overlap]


def self_intersecting_triangles(tri: np.ndarray, points: np.ndarray) -> np.ndarray:
    """
    Flag triangles that intersect another triangle of the mesh.

    Triangles sharing an edge are not tested against each other. Triangles
    sharing one vertex intersect if the edge of either one opposite the
    shared vertex crosses the other one. Duplicated triangles are flagged.

    Args:
        tri: (M, 3) triangulation
        points: (N, 3) vertex coordinates

    Returns:
        (M,) boolean mask
    """
    tri = np.asarray(tri, dtype=np.int64)
    points = np.asarray(points, dtype=np.float64)
    flagged = np.zeros(len(tri), dtype=bool)

    pairs = _candidate_pairs(tri, points)
    if len(pairs) == 0:
        return flagged

    ta, tb = tri[pairs[:, 0]], tri[pairs[:, 1]]
    # shared[p, i, j]: vertex i of ta is vertex j of tb
    shared = ta[:, :, None] == tb[:, None, :]
    nshared = shared.sum(axis=(1, 2))

    hit = nshared == 3

    # an edge (i, i+1) is tested if it does not touch a shared vertex
    in_a = shared.any(axis=2)
    in_b = shared.any(axis=1)
    test = nshared <= 1
    edges_a = ~(in_a | np.roll(in_a, -1, axis=1)) & test[:, None]
    edges_b = ~(in_b | np.roll(in_b, -1, axis=1)) & test[:, None]

    hit |= _edges_hit_triangles(points, ta, tb, edges_a)
    hit |= _edges_hit_triangles(points, tb, ta, edges_b)

    flagged[pairs[hit, 0]] = True
    flagged[pairs[hit, 1]] = True
    return flagged


# ----------------------------
# Tangles and validity
# ----------------------------


def find_tangled_vertices(tri: np.ndarray, y: np.ndarray) -> np.ndarray:
    """
    Vertices of triangles with non-positive signed volume or that cause
    self-intersections.

    The triangles must already be oriented with outward normals (see
    reorient_triangles()).

    Returns:
        (N,) boolean mask
    """
    tri = np.asarray(tri, dtype=np.int64)
    is_free = np.zeros(len(y), dtype=bool)

    vol = signed_tetra_volume(tri, y)
    is_free[np.unique(tri[vol <= 0])] = True
    n_inverted = int(np.sum(vol <= 0))

    intersecting = self_intersecting_triangles(tri, y)
    is_free[np.unique(tri[intersecting])] = True

    logger.debug(
        f"Tangle detection: {n_inverted} inverted triangles, "
        f"{int(intersecting.sum())} self-intersecting triangles, "
        f"{int(is_free.sum())} tangled vertices"
    )
    return is_free


def check_topology(
    tri: np.ndarray,
    y: np.ndarray,
    volmin: float,
    volmax: float,
    label: Optional[str] = None,
) -> Tuple[bool, bool]:
    """
    Check a parametrization for self-intersections and out-of-bounds
    tetrahedral volumes. Problems are logged as warnings.

    Args:
        tri: (M, 3) triangulation
        y: (N, 3) configuration
        volmin, volmax: Allowed signed volume range
        label: Name used in the warnings (e.g. "Component 3")

    Returns:
        Tuple of (no self-intersections, all volumes within bounds)
    """
    label = label or "Mesh"
    no_intersections = not np.any(self_intersecting_triangles(tri, y))
    if not no_intersections:
        logger.warning(f"{label} contains self-intersections after untangling")

    vol = signed_tetra_volume(tri, y)
    out_of_bounds = (vol < volmin) | (vol > volmax)
    volumes_ok = not np.any(out_of_bounds)
    if not volumes_ok:
        logger.warning(
            f"{label} contains {int(out_of_bounds.sum())} tetrahedra with volumes "
            f"outside the constraint values [{volmin}, {volmax}]"
        )
    return no_intersections, volumes_ok
