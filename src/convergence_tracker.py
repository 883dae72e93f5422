"""
Convergence tracking for majorization runs.
"""

import json
import logging
import time
from pathlib import Path
from typing import Dict, List

from config import SmacofConfig

logger = logging.getLogger(__name__)

STOP_MAX_ITER = "MaxIter"
STOP_EPSILON = "Epsilon"
STOP_TOL_FUN = "TolFun"
STOP_GLOBAL_OPTIMUM = "Global optimum"


class ConvergenceTracker:
    """
    Records the stress and elapsed time of every iteration and evaluates
    the stop conditions.

    Entry 0 of the trace is the initial configuration.
    """

    def __init__(self, config: SmacofConfig, name: str = "smacof"):
        self.config = config
        self.name = name
        self.start_time = time.time()
        self.metrics: Dict[str, List[float]] = {"stress": [], "time": []}

    @property
    def iteration(self) -> int:
        return len(self.metrics["stress"]) - 1

    def record(self, stress: float) -> None:
        self.metrics["stress"].append(float(stress))
        self.metrics["time"].append(time.time() - self.start_time)

        if self.iteration > 0:
            message = (
                f"{self.name} iter {self.iteration}: stress = {stress:.6e}, "
                f"time = {self.metrics['time'][-1]:.4f}s"
            )
            if self.config.verbose:
                logger.info(message)
            else:
                logger.debug(message)

    def relative_change(self) -> float:
        """Relative stress change over the last iteration."""
        sigma = self.metrics["stress"]
        if len(sigma) < 2 or sigma[-2] == 0:
            return 0.0
        return abs(sigma[-2] - sigma[-1]) / sigma[-2]

    def stop_conditions(self, check_relative: bool = True) -> List[str]:
        """
        Evaluate the stop conditions at the current iteration.

        Args:
            check_relative: Whether the relative-change condition may fire

        Returns:
            List with every condition that is met (empty to keep going)
        """
        if self.iteration < 1:
            return []

        conditions = []
        if self.iteration >= self.config.max_iter:
            conditions.append(STOP_MAX_ITER)
        if check_relative and self.relative_change() < self.config.epsilon:
            conditions.append(STOP_EPSILON)
        if self.metrics["stress"][-1] < self.config.tol_fun:
            conditions.append(STOP_TOL_FUN)
        return conditions

    def save(self, filename: str = "convergence.json") -> None:
        """Save the trace to a JSON file."""
        path = Path(filename)
        with open(path, "w") as f:
            json.dump({"name": self.name, **self.metrics}, f, indent=2)
        logger.info(f"Convergence trace saved to {path}")
