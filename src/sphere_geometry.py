"""
Geometry primitives for spherical parametrization.

Conventions follow the usual (longitude, latitude, radius) spherical
coordinates: lon = atan2(y, x), lat = atan2(z, sqrt(x^2 + y^2)).
The sphere is always centred at the origin of coordinates.
"""

import logging
from typing import Optional, Tuple

import numpy as np
import scipy.sparse as sp
import trimesh
from scipy.spatial.transform import Rotation

logger = logging.getLogger(__name__)


# ----------------------------
# Spherical <-> Cartesian
# ----------------------------


def cart2sph(points: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Convert Cartesian coordinates to spherical coordinates.

    Args:
        points: Array of shape (N, 3)

    Returns:
        Tuple of (lon, lat, r), each of shape (N,)
    """
    points = np.atleast_2d(points)
    x, y, z = points[:, 0], points[:, 1], points[:, 2]
    hxy = np.hypot(x, y)
    return np.arctan2(y, x), np.arctan2(z, hxy), np.hypot(hxy, z)


def sph2cart(lon: np.ndarray, lat: np.ndarray, r) -> np.ndarray:
    """
    Convert spherical coordinates to Cartesian coordinates.

    Args:
        lon: Longitudes in radians, shape (N,)
        lat: Latitudes in radians, shape (N,)
        r: Radius, scalar or shape (N,)

    Returns:
        Array of shape (N, 3)
    """
    rcoslat = r * np.cos(lat)
    return np.stack(
        [rcoslat * np.cos(lon), rcoslat * np.sin(lon), r * np.sin(lat)], axis=1
    )


# ----------------------------
# Distance conversion
# ----------------------------


def _map_nonzero(d, func):
    # zero entries mean "pair excluded", so only nonzero entries are mapped
    if sp.issparse(d):
        out = d.copy().astype(np.float64)
        out.data = func(out.data)
        return out
    out = np.array(d, dtype=np.float64, copy=True)
    mask = out != 0
    out[mask] = func(out[mask])
    return out


def arclen_to_chord(d, sphrad: float):
    """
    Convert arc-length distances on a sphere to chord distances.

    Zero entries are left untouched (they flag excluded pairs, not
    coincident points), and the sparsity pattern of sparse input is kept.

    Args:
        d: Dense array or scipy.sparse matrix of arc lengths
        sphrad: Sphere radius

    Returns:
        Chord distances with the same type and shape as d
    """
    return _map_nonzero(d, lambda a: 2.0 * sphrad * np.sin(a / (2.0 * sphrad)))


distance_to_chord = arclen_to_chord


def chord_to_arclen(d, sphrad: float):
    """Inverse of arclen_to_chord() for chords no longer than the diameter."""
    return _map_nonzero(
        d, lambda c: 2.0 * sphrad * np.arcsin(np.clip(c / (2.0 * sphrad), -1.0, 1.0))
    )


# ----------------------------
# Sphere projection
# ----------------------------


def project_to_sphere(points: np.ndarray) -> Tuple[np.ndarray, float]:
    """
    Project points radially onto a sphere centred at the origin.

    The sphere radius is the median of the point radii, which is robust to
    a few points far from the sphere.

    Args:
        points: Array of shape (N, 3)

    Returns:
        Tuple of (projected points of shape (N, 3), sphere radius)
    """
    lon, lat, r = cart2sph(points)
    sphrad = float(np.median(r))
    return sph2cart(lon, lat, sphrad), sphrad


def random_sphere_points(
    n: int, sphrad: float, rng: Optional[np.random.Generator] = None
) -> np.ndarray:
    """
    Uniform random sampling of a sphere.

    Args:
        n: Number of points
        sphrad: Sphere radius
        rng: Random generator (a fresh default one if None)

    Returns:
        Array of shape (n, 3)
    """
    rng = np.random.default_rng() if rng is None else rng
    points = rng.standard_normal((n, 3))
    norms = np.linalg.norm(points, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return points / norms * sphrad


def spherical_mean(lat: np.ndarray, lon: np.ndarray) -> Tuple[float, float]:
    """
    Mean position of points on the sphere.

    Computed as the direction of the mean of the unit vectors.

    Returns:
        Tuple of (lat, lon) in radians
    """
    mean = sph2cart(lon, lat, 1.0).mean(axis=0)
    mlon, mlat, _ = cart2sph(mean)
    return float(mlat[0]), float(mlon[0])


def rotation_to_x_axis(v: np.ndarray) -> np.ndarray:
    """
    Rotation matrix that takes the direction of v to (1, 0, 0).

    In spherical coordinates, the direction of v is moved to lat=0, lon=0.
    """
    x_axis = np.array([1.0, 0.0, 0.0])
    v = np.asarray(v, dtype=np.float64)
    norm = np.linalg.norm(v)
    if norm < 1e-12:
        return np.eye(3)
    v = v / norm

    axis = np.cross(v, x_axis)
    axis_norm = np.linalg.norm(axis)
    angle = np.arccos(np.clip(np.dot(v, x_axis), -1.0, 1.0))
    if axis_norm < 1e-12:
        if angle < np.pi / 2:
            return np.eye(3)
        # antiparallel: any axis orthogonal to x works
        axis, axis_norm = np.array([0.0, 0.0, 1.0]), 1.0

    return Rotation.from_rotvec(axis / axis_norm * angle).as_matrix()


# ----------------------------
# Triangle measures
# ----------------------------


def signed_tetra_volume(tri: np.ndarray, points: np.ndarray) -> np.ndarray:
    """
    Signed volume of the tetrahedra formed by each triangle and the origin.

    The volume is positive when the triangle normal (right-hand rule on the
    vertex order) points away from the origin.

    Args:
        tri: Triangles, shape (M, 3)
        points: Vertex coordinates, shape (N, 3)

    Returns:
        Array of shape (M,)
    """
    tri = np.asarray(tri)
    a, b, c = points[tri[:, 0]], points[tri[:, 1]], points[tri[:, 2]]
    return np.einsum("ij,ij->i", a, np.cross(b, c)) / 6.0


def estimate_sphere_radius(tri: np.ndarray, x: np.ndarray) -> float:
    """
    Radius of the sphere with the same area as the mesh.

    Args:
        tri: Triangles, shape (M, 3)
        x: Vertex coordinates, shape (N, 3)

    Returns:
        sqrt(total_area / (4 * pi))
    """
    area = trimesh.triangles.area(np.asarray(x, dtype=np.float64)[np.asarray(tri)])
    total = float(np.sum(area))
    logger.debug(f"Total mesh area: {total:.6f}")
    return float(np.sqrt(total / (4.0 * np.pi)))
