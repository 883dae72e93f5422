"""
Stress majorization (SMACOF) and classical multidimensional scaling.

The stress of a configuration Y is

    sigma(Y) = sum_{i<j, d_ij != 0} (d_ij - ||y_i - y_j||)^2

where a zero target distance excludes the pair. SMACOF decreases sigma
monotonically by minimizing, at every iteration, the quadratic majorizer

    tr(X' V X) - 2 tr(X' B(Y) Y)

(Guttman transform). Rows flagged as fixed are held constant, and the
majorizer is minimized over the free rows only.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
import scipy.sparse as sp
import torch

from config import SmacofConfig
from convergence_tracker import ConvergenceTracker

logger = logging.getLogger(__name__)

DTYPE = torch.float64


@dataclass
class SmacofResult:
    """Result container for a majorization run."""

    y: np.ndarray  # (N, 3) final configuration
    stop_condition: List[str]
    sigma: np.ndarray  # stress trace, entry 0 is the initial configuration
    t: np.ndarray  # elapsed time trace
    extra: dict = field(default_factory=dict)

    @property
    def iterations(self) -> int:
        return len(self.sigma) - 1


def dense_distances(d) -> np.ndarray:
    """Dense float64 copy of a dense or scipy.sparse distance matrix."""
    if sp.issparse(d):
        return d.toarray().astype(np.float64)
    return np.array(d, dtype=np.float64)


class StressMajorizer:
    """
    Stress and Guttman transform for a fixed target distance matrix.

    The weight of a pair is 1 where d_ij != 0 (off the diagonal) and 0
    otherwise. The metric V and its restriction to the free rows are
    computed once.
    """

    def __init__(self, d, is_free: Optional[np.ndarray] = None):
        """
        Args:
            d: (N, N) target distances, dense or scipy.sparse
            is_free: Boolean mask of optimized rows (all rows if None). Rows
                without any weighted pair are always held fixed
        """
        d_np = dense_distances(d)
        n = d_np.shape[0]
        if is_free is None:
            is_free = np.ones(n, dtype=bool)
        self.n = n

        self.d = torch.as_tensor(d_np, dtype=DTYPE)
        weights = (self.d != 0).to(DTYPE)
        weights.fill_diagonal_(0.0)
        self.weights = weights
        self.v = torch.diag(weights.sum(dim=1)) - weights

        # a row with every pair excluded has no stress term and keeps its position
        self.is_free = np.array(is_free, dtype=bool) & (weights.sum(dim=1) > 0).numpy()
        self.free_idx = torch.as_tensor(np.flatnonzero(self.is_free))
        self.fixed_idx = torch.as_tensor(np.flatnonzero(~self.is_free))

        v_free = self.v[self.free_idx]
        self.v_ff = v_free[:, self.free_idx]
        self.v_fx = v_free[:, self.fixed_idx]
        # V is singular when every row is free (translation invariance)
        if len(self.free_idx) > 0:
            self.v_ff_pinv = torch.linalg.pinv(self.v_ff)
        else:
            self.v_ff_pinv = torch.zeros((0, 0), dtype=DTYPE)

    def distances(self, y: torch.Tensor) -> torch.Tensor:
        return torch.cdist(y, y, compute_mode="donot_use_mm_for_euclid_dist")

    def stress(self, y: torch.Tensor) -> float:
        residual = self.weights * (self.d - self.distances(y))
        # each pair is counted twice in the full matrix
        return 0.5 * float(torch.sum(residual**2))

    def b_matrix(self, y: torch.Tensor) -> torch.Tensor:
        dist = self.distances(y)
        ratio = torch.where(
            dist > 0, self.weights * self.d / torch.clamp(dist, min=1e-300), 0.0
        )
        b = -ratio
        b.diagonal().copy_(ratio.sum(dim=1))
        return b

    def majorizer_terms(self, y: torch.Tensor):
        """
        Quadratic terms of the majorizer restricted to the free rows.

        Returns:
            Tuple (H, C) such that, up to a constant, the majorizer at a free
            block X is tr(X' H X) - 2 tr(X' C)
        """
        by = self.b_matrix(y) @ y
        c = by[self.free_idx] - self.v_fx @ y[self.fixed_idx]
        return self.v_ff, c

    def majorizer(self, x_free: torch.Tensor, c: torch.Tensor) -> torch.Tensor:
        return torch.sum(x_free * (self.v_ff @ x_free)) - 2.0 * torch.sum(x_free * c)

    def free_update(self, y: torch.Tensor, c: torch.Tensor) -> torch.Tensor:
        """
        Minimizer of the majorizer over the free rows.

        When V_ff is singular (no weighted pair links the free rows to a
        fixed one), the minimizer is only defined up to a translation, and
        the one nearest to the current free rows is returned.
        """
        y_free = y[self.free_idx]
        return y_free + self.v_ff_pinv @ (c - self.v_ff @ y_free)

    def guttman_transform(self, y: torch.Tensor) -> torch.Tensor:
        """Unconstrained minimizer of the majorizer, fixed rows unchanged."""
        _, c = self.majorizer_terms(y)
        x = y.clone()
        x[self.free_idx] = self.free_update(y, c)
        return x


# ----------------------------
# Unconstrained SMACOF
# ----------------------------


def smacof(
    d,
    y0: np.ndarray,
    config: Optional[SmacofConfig] = None,
    is_free: Optional[np.ndarray] = None,
) -> SmacofResult:
    """
    Minimize stress by majorization.

    Args:
        d: (N, N) target distances, dense or scipy.sparse. Zero entries are
           excluded from the stress
        y0: (N, p) initial configuration
        config: Stop conditions (defaults if None)
        is_free: Boolean mask of rows to optimize (all if None)

    Returns:
        SmacofResult
    """
    config = config or SmacofConfig()
    majorizer = StressMajorizer(d, is_free)
    tracker = ConvergenceTracker(config, name="smacof")

    y = torch.as_tensor(np.array(y0, dtype=np.float64))
    tracker.record(majorizer.stress(y))

    stop_condition: List[str] = []
    while not stop_condition:
        y = majorizer.guttman_transform(y)
        tracker.record(majorizer.stress(y))
        stop_condition = tracker.stop_conditions()

    logger.debug(
        f"SMACOF stopped after {tracker.iteration} iterations: {stop_condition}"
    )
    return SmacofResult(
        y=y.numpy(),
        stop_condition=stop_condition,
        sigma=np.array(tracker.metrics["stress"]),
        t=np.array(tracker.metrics["time"]),
    )


def stress(d, y: np.ndarray) -> float:
    """Stress of configuration y with respect to target distances d."""
    return StressMajorizer(d).stress(torch.as_tensor(np.asarray(y, dtype=np.float64)))


# ----------------------------
# Classical MDS
# ----------------------------


def cmdscale(d: np.ndarray, ndim: int = 3) -> np.ndarray:
    """
    Classical (Torgerson) multidimensional scaling.

    Args:
        d: Dense (N, N) distance matrix
        ndim: Number of output dimensions

    Returns:
        Array of shape (N, ndim). Dimensions without a positive eigenvalue
        are returned as zeros.
    """
    d = np.asarray(d, dtype=np.float64)
    n = d.shape[0]
    centering = np.eye(n) - np.ones((n, n)) / n
    b = -0.5 * centering @ (d**2) @ centering
    b = 0.5 * (b + b.T)

    eigval, eigvec = np.linalg.eigh(b)
    order = np.argsort(eigval)[::-1]
    eigval, eigvec = eigval[order], eigvec[:, order]

    y = np.zeros((n, ndim))
    k = min(ndim, n)
    positive = eigval[:k] > 0
    y[:, :k][:, positive] = eigvec[:, :k][:, positive] * np.sqrt(eigval[:k][positive])
    return y
