"""
Spherical parametrization of closed triangular meshes.

Maps every vertex of a closed 2-manifold mesh to a point on a sphere, so
that geodesic distances on the mesh are approximated by chord distances on
the sphere, optionally untangling the result so that it is a valid
triangulation of the sphere.

Methods:
    classical-scaling (cmdscale):
        Classical MDS, projected on the sphere. Closed form.
    unconstrained-majorization (smacof):
        SMACOF from an initial guess, projected on the sphere.
    local-constrained-untangling (consmacof-local):
        Tangled vertices are grouped into connected clusters, and each
        cluster is untangled with constrained SMACOF on a local patch whose
        boundary is held fixed.
    global-constrained-untangling (consmacof-global):
        Constrained SMACOF on the whole mesh at once. Only practical for
        small meshes.

Example:
    >>> mesh = trimesh.creation.icosphere(subdivisions=2)
    >>> result = tri_sphparam(mesh.faces, mesh.vertices, "smacof")
    >>> lon, lat, r = cart2sph(result.y)
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Union

import numpy as np
import scipy.sparse as sp

from config import Config, get_config
from constrained_smacof import ConstrainedSmacof, ConstrainedStressSolver
from constraints import build_sphere_constraints
from convergence_tracker import STOP_GLOBAL_OPTIMUM
from smacof import cmdscale, smacof, stress
from sphere_geometry import (
    arclen_to_chord,
    cart2sph,
    estimate_sphere_radius,
    project_to_sphere,
    random_sphere_points,
    signed_tetra_volume,
    sph2cart,
)
from tangles import check_topology, find_tangled_vertices, reorient_triangles
from topology import (
    expand_to_convex_hull,
    extract_submesh,
    local_neighbourhood,
    mesh_adjacency,
    mesh_edge_distances,
    tangled_components,
)

logger = logging.getLogger(__name__)

CLASSICAL_SCALING = "classical-scaling"
UNCONSTRAINED_MAJORIZATION = "unconstrained-majorization"
LOCAL_UNTANGLING = "local-constrained-untangling"
GLOBAL_UNTANGLING = "global-constrained-untangling"

METHOD_ALIASES = {
    "cmdscale": CLASSICAL_SCALING,
    "smacof": UNCONSTRAINED_MAJORIZATION,
    "consmacof-local": LOCAL_UNTANGLING,
    "consmacof-global": GLOBAL_UNTANGLING,
}
METHODS = (
    CLASSICAL_SCALING,
    UNCONSTRAINED_MAJORIZATION,
    LOCAL_UNTANGLING,
    GLOBAL_UNTANGLING,
)


def resolve_method(method: str) -> str:
    """Canonical method name, accepting the short aliases."""
    name = METHOD_ALIASES.get(method, method)
    if name not in METHODS:
        raise ValueError(
            f"Unknown parametrization method: {method}. "
            f"Available: {list(METHODS) + list(METHOD_ALIASES)}"
        )
    return name


@dataclass
class SphParamResult:
    """
    Output of a parametrization.

    For the local untangling method, stop_condition, sigma and t hold one
    entry per connected component of tangled vertices.
    """

    y: np.ndarray  # (N, 3) points on the sphere
    stop_condition: Union[List[str], List[List[str]]]
    sigma: Union[np.ndarray, List[np.ndarray]]
    t: Union[np.ndarray, List[np.ndarray]]
    method: str
    sphrad: float
    tri: np.ndarray  # triangulation used, after any reorientation
    topology: dict = field(default_factory=dict)

    @property
    def per_component(self) -> bool:
        return self.method == LOCAL_UNTANGLING

    def save(self, filename: str = "sphparam_results.json") -> None:
        """Save the parametrization and its traces to a JSON file."""

        def as_list(trace):
            if self.per_component:
                return [np.asarray(tr).tolist() for tr in trace]
            return np.asarray(trace).tolist()

        results = {
            "method": self.method,
            "sphrad": self.sphrad,
            "y": self.y.tolist(),
            "tri": np.asarray(self.tri).tolist(),
            "stop_condition": self.stop_condition,
            "sigma": as_list(self.sigma),
            "t": as_list(self.t),
            "topology": self.topology,
        }
        path = Path(filename)
        with open(path, "w") as f:
            json.dump(results, f, indent=2)
        logger.info(f"Results saved to {path}")


class SphericalParametrization:
    """
    Spherical parametrization of a closed triangular mesh.

    The mesh and distance matrix are validated once on construction; run()
    can then be called with any of the methods.
    """

    def __init__(
        self,
        tri: np.ndarray,
        x: np.ndarray,
        d=None,
        config: Optional[Config] = None,
        solver: Optional[ConstrainedStressSolver] = None,
        distance_oracle: Optional[Callable] = None,
    ):
        """
        Args:
            tri: (M, 3) triangulation. Triangle orientation does not matter
            x: (N, 3) vertex coordinates of the mesh
            d: (N, N) arc-length distances between vertices, dense or
               scipy.sparse. d[i, j] = 0 excludes the pair from the stress.
               If None, computed by distance_oracle
            config: Configuration (default preset if None)
            solver: Constrained stress solver (ConstrainedSmacof if None)
            distance_oracle: Callable (tri, x) -> d used when d is None.
                Defaults to shortest paths along mesh edges
        """
        self.config = (config or get_config()).validate()

        self.tri = np.asarray(tri)
        self.x = np.asarray(x, dtype=np.float64)
        if self.tri.ndim != 2 or self.tri.shape[1] != 3:
            raise ValueError("TRI must have 3 columns")
        if self.x.ndim != 2 or self.x.shape[1] != 3:
            raise ValueError("X must have 3 columns")
        self.tri = self.tri.astype(np.int64)
        self.n = self.x.shape[0]
        if self.tri.size and (self.tri.min() < 0 or self.tri.max() >= self.n):
            raise ValueError("TRI references vertices that are not in X")

        if d is None:
            oracle = distance_oracle or mesh_edge_distances
            d = oracle(self.tri, self.x)
        if not sp.issparse(d):
            d = np.asarray(d, dtype=np.float64)
        if d.ndim != 2 or d.shape != (self.n, self.n):
            raise ValueError(
                "D must be a square matrix with the same number of rows as X"
            )
        self.d = d

        sphrad = self.config.sphparam.sphrad
        if sphrad is None:
            sphrad = estimate_sphere_radius(self.tri, self.x)
        self.sphrad = float(sphrad)

        self.solver = solver or ConstrainedSmacof(self.config.backend)
        self.rng = np.random.default_rng(self.config.sphparam.seed)

    def _log(self, message: str) -> None:
        if self.config.sphparam.verbose:
            logger.info(message)
        else:
            logger.debug(message)

    def initial_guess(self, y0: Optional[np.ndarray] = None) -> np.ndarray:
        """Validated copy of y0, or a random sampling of the sphere."""
        if y0 is None:
            return random_sphere_points(self.n, self.sphrad, self.rng)
        y0 = np.array(y0, dtype=np.float64)
        if y0.shape != (self.n, 3):
            raise ValueError("Y0 must be a 3-column matrix with the same number of rows as X")
        return y0

    def run(self, method: str, y0: Optional[np.ndarray] = None) -> SphParamResult:
        """
        Compute the parametrization.

        Args:
            method: Method name or alias (see module docstring)
            y0: (N, 3) initial guess. Ignored by classical scaling

        Returns:
            SphParamResult
        """
        return self._run(resolve_method(method), y0)

    def _run(self, method: str, y0: Optional[np.ndarray]) -> SphParamResult:
        if method == CLASSICAL_SCALING and sp.issparse(self.d):
            raise ValueError("Classical MDS does not accept sparse distance matrices")
        y = None if method == CLASSICAL_SCALING else self.initial_guess(y0)

        start = time.time()
        self._log(f"Parametrization method: {method}")

        if method == CLASSICAL_SCALING:
            result = self._classical_scaling(start)
        elif method == UNCONSTRAINED_MAJORIZATION:
            result = self._unconstrained_majorization(y)
        elif method == LOCAL_UNTANGLING:
            result = self._local_untangling(y, start)
        else:
            result = self._global_untangling(y)

        self._log(f"... Parametrization done. Total time: {time.time() - start:.4e} (sec)")

        if self.config.sphparam.topology_check:
            self._log("Checking output parametrization topology")
            no_intersections, volumes_ok = check_topology(
                result.tri,
                result.y,
                self.config.sphparam.volmin,
                self.config.sphparam.volmax,
            )
            result.topology = {
                "no_self_intersections": no_intersections,
                "volumes_within_bounds": volumes_ok,
            }
        return result

    # ----------------------------
    # Methods
    # ----------------------------

    def _classical_scaling(self, start: float) -> SphParamResult:
        d = arclen_to_chord(self.d, self.sphrad)

        y, sphrad = project_to_sphere(cmdscale(d, ndim=3))

        # mirror the parametrization if too many triangles are inverted
        vol = signed_tetra_volume(self.tri, y)
        if np.count_nonzero(vol < 0) > len(vol) * self.config.sphparam.mirror_fraction:
            self._log("Mirroring classical scaling solution")
            lon, lat, r = cart2sph(y)
            y = sph2cart(-lon, lat, r)

        return SphParamResult(
            y=y,
            stop_condition=[STOP_GLOBAL_OPTIMUM],
            sigma=np.array([stress(d, y)]),
            t=np.array([time.time() - start]),
            method=CLASSICAL_SCALING,
            sphrad=sphrad,
            tri=self.tri,
        )

    def _unconstrained_majorization(self, y: np.ndarray) -> SphParamResult:
        d = arclen_to_chord(self.d, self.sphrad)

        res = smacof(d, y, self.config.smacof)
        y, sphrad = project_to_sphere(res.y)

        return SphParamResult(
            y=y,
            stop_condition=res.stop_condition,
            sigma=res.sigma,
            t=res.t,
            method=UNCONSTRAINED_MAJORIZATION,
            sphrad=sphrad,
            tri=self.tri,
        )

    def _find_tangles(self, y: np.ndarray):
        tri = reorient_triangles(self.tri, self.x)
        is_free = find_tangled_vertices(tri, y)
        self._log(f"Found {int(is_free.sum())} tangled vertices")
        return tri, is_free

    def _local_untangling(self, y: np.ndarray, start: float) -> SphParamResult:
        cfg = self.config.sphparam
        lon, lat, _ = cart2sph(y)
        d = arclen_to_chord(self.d, self.sphrad)

        tri, is_free = self._find_tangles(y)
        adjacency = mesh_adjacency(tri, self.n)
        components = tangled_components(adjacency, is_free)
        ncomp = len(components)

        stop_condition: List[List[str]] = []
        sigma: List[np.ndarray] = []
        t: List[np.ndarray] = []

        for c, component in enumerate(components, start=1):
            self._log(f"** Untangling component {c}/{ncomp}")

            # neighbours are fixed: a free neighbour would belong to the component
            nn = local_neighbourhood(adjacency, component)
            if cfg.local_convex_hull:
                nn = expand_to_convex_hull(nn, y, lat, lon, self.sphrad)

            sub = extract_submesh(tri, y, d, nn)
            if sub is None:
                logger.warning(f"Component {c} has no triangles, skipping")
                stop_condition.append([])
                sigma.append(np.zeros(0))
                t.append(np.zeros(0))
                continue

            constraints, bounds = build_sphere_constraints(
                sub.tri, self.sphrad, cfg.volmin, cfg.volmax, sub.is_free, sub.y
            )
            res = self.solver.solve(
                sub.d, sub.y, sub.is_free, bounds, constraints, self.config.smacof
            )

            # the component writes back the free interior of its patch
            owned = sub.vertices[sub.is_free]
            y[owned] = res.y[sub.is_free]
            stop_condition.append(res.stop_condition)
            sigma.append(res.sigma)
            t.append(res.t)

            if cfg.topology_check:
                check_topology(
                    sub.tri, y[sub.vertices], cfg.volmin, cfg.volmax, f"Component {c}"
                )

            lon[sub.vertices], lat[sub.vertices], _ = cart2sph(y[sub.vertices])

            self._log(
                f"... Component {c}/{ncomp} done. Time: {time.time() - start:.4e}"
            )

        return SphParamResult(
            y=y,
            stop_condition=stop_condition,
            sigma=sigma,
            t=t,
            method=LOCAL_UNTANGLING,
            sphrad=self.sphrad,
            tri=tri,
        )

    def _global_untangling(self, y: np.ndarray) -> SphParamResult:
        cfg = self.config.sphparam
        d = arclen_to_chord(self.d, self.sphrad)

        tri, is_free = self._find_tangles(y)
        constraints, bounds = build_sphere_constraints(
            tri, self.sphrad, cfg.volmin, cfg.volmax, is_free, y
        )
        res = self.solver.solve(d, y, is_free, bounds, constraints, self.config.smacof)

        return SphParamResult(
            y=res.y,
            stop_condition=res.stop_condition,
            sigma=res.sigma,
            t=res.t,
            method=GLOBAL_UNTANGLING,
            sphrad=self.sphrad,
            tri=tri,
        )


def tri_sphparam(
    tri: np.ndarray,
    x: np.ndarray,
    method: str,
    d=None,
    y0: Optional[np.ndarray] = None,
    config: Optional[Config] = None,
    solver: Optional[ConstrainedStressSolver] = None,
    distance_oracle: Optional[Callable] = None,
) -> SphParamResult:
    """
    Spherical parametrization of a closed triangular mesh.

    Args:
        tri: (M, 3) triangulation
        x: (N, 3) vertex coordinates
        method: "classical-scaling", "unconstrained-majorization",
                "local-constrained-untangling", "global-constrained-untangling"
                or one of the aliases "cmdscale", "smacof", "consmacof-local",
                "consmacof-global"
        d: (N, N) arc-length distance matrix, dense or sparse. Must be dense
           for classical scaling
        y0: (N, 3) initial guess (random sampling of the sphere if None)
        config: Configuration (see config.get_config)
        solver: Constrained stress solver for the untangling methods
        distance_oracle: Callable (tri, x) -> d used when d is None

    Returns:
        SphParamResult
    """
    # resolved before the distance oracle runs
    method = resolve_method(method)
    param = SphericalParametrization(
        tri, x, d=d, config=config, solver=solver, distance_oracle=distance_oracle
    )
    return param._run(method, y0)
