"""
Bounds and tetrahedral volume constraints that keep a constrained
majorization from folding a spherical triangulation.
"""

import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from sphere_geometry import signed_tetra_volume

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VertexBounds:
    """Per-coordinate box bounds for every vertex."""

    lower: np.ndarray  # (N, 3)
    upper: np.ndarray  # (N, 3)

    def clip(self, y: np.ndarray) -> np.ndarray:
        return np.minimum(np.maximum(y, self.lower), self.upper)

    def contains(self, y: np.ndarray, tol: float = 0.0) -> bool:
        return bool(np.all(y >= self.lower - tol) and np.all(y <= self.upper + tol))


@dataclass(frozen=True)
class VolumeConstraints:
    """
    volmin <= vol(tri_k) <= volmax for every constrained triangle, where vol
    is the signed volume of the tetrahedron formed by the triangle and the
    centre of the sphere.
    """

    tri: np.ndarray  # (M, 3) constrained triangles
    volmin: float
    volmax: float
    sphrad: float

    def __len__(self) -> int:
        return len(self.tri)

    def volumes(self, y: np.ndarray) -> np.ndarray:
        return signed_tetra_volume(self.tri, y)

    def violation(self, y: np.ndarray) -> np.ndarray:
        """How far each triangle volume lies outside [volmin, volmax]."""
        vol = self.volumes(y)
        return np.maximum(self.volmin - vol, 0.0) + np.maximum(vol - self.volmax, 0.0)

    def is_satisfied(self, y: np.ndarray) -> bool:
        if len(self.tri) == 0:
            return True
        vol = self.volumes(y)
        return bool(np.all((vol >= self.volmin) & (vol <= self.volmax)))


def build_sphere_constraints(
    tri: np.ndarray,
    sphrad: float,
    volmin: float,
    volmax: float,
    is_free: np.ndarray,
    y: np.ndarray,
) -> Tuple[VolumeConstraints, VertexBounds]:
    """
    Constraints for untangling a spherical parametrization.

    Fixed vertices are bounded to their current position, free vertices to
    the box [-sphrad, sphrad]^3 that contains the sphere. Triangles with all
    three vertices fixed have a constant volume and are not constrained.

    Args:
        tri: (M, 3) triangulation, indices into y
        sphrad: Sphere radius
        volmin: Minimum signed tetrahedral volume. volmin > 0 forces every
                triangle normal to point outwards
        volmax: Maximum signed tetrahedral volume
        is_free: (N,) boolean mask of free vertices
        y: (N, 3) current configuration

    Returns:
        Tuple of (VolumeConstraints, VertexBounds)
    """
    tri = np.asarray(tri, dtype=np.int64).reshape(-1, 3)
    is_free = np.asarray(is_free, dtype=bool)
    y = np.asarray(y, dtype=np.float64)

    lower = y.copy()
    upper = y.copy()
    lower[is_free] = -sphrad
    upper[is_free] = sphrad

    constrained = tri[np.any(is_free[tri], axis=1)]

    logger.debug(
        f"Built {len(constrained)} volume constraints for {int(is_free.sum())} "
        f"free vertices (volmin={volmin}, volmax={volmax})"
    )
    return (
        VolumeConstraints(
            tri=constrained, volmin=float(volmin), volmax=float(volmax), sphrad=float(sphrad)
        ),
        VertexBounds(lower=lower, upper=upper),
    )
