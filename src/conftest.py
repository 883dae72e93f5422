"""
Shared fixtures: icosphere meshes and a parametrization with one fold.
"""

import numpy as np
import pytest
import trimesh


def great_circle_distances(points: np.ndarray, sphrad: float) -> np.ndarray:
    """Exact arc-length distances between points on a sphere."""
    unit = points / np.linalg.norm(points, axis=1, keepdims=True)
    cos = np.clip(unit @ unit.T, -1.0, 1.0)
    d = sphrad * np.arccos(cos)
    np.fill_diagonal(d, 0.0)
    return d


def fold_vertex(mesh: trimesh.Trimesh, v: int = 0, overshoot: float = 0.3) -> np.ndarray:
    """
    Copy of the mesh vertices with vertex v dragged across the opposite
    edge of one of its triangles, which inverts that triangle.
    """
    y = np.array(mesh.vertices, dtype=np.float64)
    face = mesh.faces[np.any(mesh.faces == v, axis=1)][0]
    a, b = [i for i in face if i != v]
    mid = 0.5 * (y[a] + y[b])
    moved = mid + overshoot * (mid - y[v])
    y[v] = moved / np.linalg.norm(moved) * np.linalg.norm(y[v])
    return y


@pytest.fixture
def icosphere():
    """12 vertices, 20 triangles, unit radius, outward normals."""
    return trimesh.creation.icosphere(subdivisions=0, radius=1.0)


@pytest.fixture
def icosphere1():
    """42 vertices, 80 triangles."""
    return trimesh.creation.icosphere(subdivisions=1, radius=1.0)


@pytest.fixture
def icosphere2():
    """162 vertices, 320 triangles."""
    return trimesh.creation.icosphere(subdivisions=2, radius=1.0)


@pytest.fixture
def folded_icosphere(icosphere1):
    """(mesh, folded configuration, folded vertex)"""
    return icosphere1, fold_vertex(icosphere1, v=0), 0
