"""
Constrained SMACOF.

Every iteration computes the Guttman transform of the free vertices. If the
update breaks a bound or a tetrahedral volume constraint, the majorizer is
minimized again under the constraints by a feasibility backend, which stops
at the first feasible solution. Constraint satisfaction is the backend's
job; stress minimization remains the majorization loop's job.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

import numpy as np
import torch

from config import BackendConfig, SmacofConfig
from constraints import VertexBounds, VolumeConstraints
from convergence_tracker import ConvergenceTracker
from smacof import DTYPE, SmacofResult, StressMajorizer

logger = logging.getLogger(__name__)


class ConstrainedStressSolver(ABC):
    """Stress minimization under bound and volume constraints."""

    @abstractmethod
    def solve(
        self,
        d,
        y: np.ndarray,
        is_free: np.ndarray,
        bounds: VertexBounds,
        constraints: VolumeConstraints,
        config: SmacofConfig,
    ) -> SmacofResult:
        """
        Args:
            d: (N, N) target distances, dense or scipy.sparse
            y: (N, 3) initial configuration
            is_free: (N,) boolean mask of optimized vertices
            bounds: Per-vertex box bounds
            constraints: Tetrahedral volume constraints
            config: Stop conditions

        Returns:
            SmacofResult with the final configuration, stop conditions and
            the stress and time traces
        """


def _tetra_volumes(y: torch.Tensor, tri: torch.Tensor) -> torch.Tensor:
    a, b, c = y[tri[:, 0]], y[tri[:, 1]], y[tri[:, 2]]
    return torch.sum(a * torch.linalg.cross(b, c, dim=1), dim=1) / 6.0


class TorchFeasibilityBackend:
    """
    Penalty method for

        min  tr(X' H X) - 2 tr(X' C)
        s.t. lower <= X <= upper,  volmin <= vol(tri_k) <= volmax

    optimized with Adam and projected on the box after every step. The
    penalty weight grows every penalty_interval steps.
    """

    def __init__(self, config: Optional[BackendConfig] = None):
        self.config = config or BackendConfig()

    def _log(self, message: str) -> None:
        if self.config.display_verblevel > 0:
            logger.info(message)
        else:
            logger.debug(message)

    def solve(
        self,
        h: torch.Tensor,
        c: torch.Tensor,
        x0: torch.Tensor,
        y: torch.Tensor,
        free_idx: torch.Tensor,
        lower: torch.Tensor,
        upper: torch.Tensor,
        constraints: VolumeConstraints,
    ) -> Tuple[torch.Tensor, bool]:
        """
        Args:
            h, c: Quadratic terms of the objective over the free block
            x0: (F, 3) starting point for the free block
            y: (N, 3) full configuration, fixed rows are read from it
            free_idx: Indices of the free rows in y
            lower, upper: (F, 3) box bounds of the free block
            constraints: Volume constraints, indices into y

        Returns:
            Tuple of (free block, whether it is feasible)
        """
        cfg = self.config
        sphrad = constraints.sphrad
        vol_scale = sphrad**3
        margin = cfg.margin * vol_scale
        quad_scale = sphrad**2 * max(len(free_idx), 1)
        tri = torch.as_tensor(np.asarray(constraints.tri, dtype=np.int64))
        volmin, volmax = constraints.volmin, constraints.volmax

        x = torch.nn.Parameter(torch.max(torch.min(x0.clone(), upper), lower))
        optimizer = torch.optim.Adam([x], lr=cfg.learning_rate * sphrad)
        penalty = cfg.penalty

        def assemble(block):
            return y.index_put((free_idx,), block)

        best, best_value = None, np.inf
        found = 0
        for step in range(cfg.max_steps):
            with torch.no_grad():
                vol = _tetra_volumes(assemble(x), tri)
                if bool(torch.all((vol >= volmin) & (vol <= volmax))):
                    found += 1
                    value = float(
                        torch.sum(x * (h @ x)) - 2.0 * torch.sum(x * c)
                    )
                    self._log(
                        f"Feasible solution {found} at step {step}: objective = {value:.6e}"
                    )
                    if value < best_value:
                        best, best_value = x.detach().clone(), value
                    if found >= cfg.limits_solutions:
                        break

            if step > 0 and step % cfg.penalty_interval == 0:
                penalty *= cfg.penalty_growth

            optimizer.zero_grad()
            vol = _tetra_volumes(assemble(x), tri)
            violation = torch.relu(volmin + margin - vol) + torch.relu(
                vol - (volmax - margin)
            )
            objective = (
                torch.sum(x * (h @ x)) - 2.0 * torch.sum(x * c)
            ) / quad_scale + penalty * torch.sum((violation / vol_scale) ** 2)
            objective.backward()
            optimizer.step()
            with torch.no_grad():
                x.copy_(torch.max(torch.min(x, upper), lower))

        if best is None:
            self._log(f"No feasible solution after {cfg.max_steps} steps")
            return x.detach().clone(), False
        return best, True


class ConstrainedSmacof(ConstrainedStressSolver):
    """
    SMACOF with bounds and tetrahedral volume constraints.

    Once a feasible configuration has been reached, a constrained update is
    only accepted if it does not increase the majorizer, so the stress
    sequence is non-increasing from then on. The relative-change stop
    condition is not evaluated while the configuration is infeasible.
    """

    def __init__(self, backend_config: Optional[BackendConfig] = None):
        self.backend = TorchFeasibilityBackend(backend_config)

    def solve(
        self,
        d,
        y: np.ndarray,
        is_free: np.ndarray,
        bounds: VertexBounds,
        constraints: VolumeConstraints,
        config: SmacofConfig,
    ) -> SmacofResult:
        is_free = np.asarray(is_free, dtype=bool)
        y_np = bounds.clip(np.array(y, dtype=np.float64))
        majorizer = StressMajorizer(d, is_free)
        tracker = ConvergenceTracker(config, name="consmacof")

        yt = torch.as_tensor(y_np)
        tracker.record(majorizer.stress(yt))
        if not majorizer.is_free.any():
            logger.debug("No free vertices, nothing to optimize")
            return SmacofResult(
                y=y_np,
                stop_condition=[],
                sigma=np.array(tracker.metrics["stress"]),
                t=np.array(tracker.metrics["time"]),
            )

        free_idx = majorizer.free_idx
        lower = torch.as_tensor(bounds.lower, dtype=DTYPE)[free_idx]
        upper = torch.as_tensor(bounds.upper, dtype=DTYPE)[free_idx]

        feasible = constraints.is_satisfied(y_np)
        backend_calls = 0
        stop_condition: List[str] = []
        while not stop_condition:
            h, c = majorizer.majorizer_terms(yt)
            x = torch.max(torch.min(majorizer.free_update(yt, c), upper), lower)
            candidate = yt.index_put((free_idx,), x)

            candidate_feasible = constraints.is_satisfied(candidate.numpy())
            if not candidate_feasible:
                backend_calls += 1
                x, candidate_feasible = self.backend.solve(
                    h, c, x, yt, free_idx, lower, upper, constraints
                )
                candidate = yt.index_put((free_idx,), x)

            if feasible and (
                not candidate_feasible
                or majorizer.majorizer(x, c) > majorizer.majorizer(yt[free_idx], c)
            ):
                # keep the current feasible configuration
                candidate = yt
            else:
                feasible = feasible or candidate_feasible

            yt = candidate
            tracker.record(majorizer.stress(yt))
            stop_condition = tracker.stop_conditions(check_relative=feasible)

        logger.debug(
            f"Constrained SMACOF stopped after {tracker.iteration} iterations "
            f"({backend_calls} backend calls): {stop_condition}"
        )
        return SmacofResult(
            y=yt.numpy(),
            stop_condition=stop_condition,
            sigma=np.array(tracker.metrics["stress"]),
            t=np.array(tracker.metrics["time"]),
            extra={"feasible": feasible, "backend_calls": backend_calls},
        )
