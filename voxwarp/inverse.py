"""
Numerical inversion of (possibly non-linear) transforms at single points.
"""

from __future__ import annotations

import logging
from typing import NamedTuple

import torch
import voxwarp as vw


logger = logging.getLogger(__name__)


class InverseResult(NamedTuple):
    """
    Outcome of an inverse query: the best point found and whether the
    residual reached the solver tolerance.
    """
    point: torch.Tensor
    converged: bool


class InverseSolver:
    """
    Finds x such that `transform(x) == v`.

    Newton iteration runs first, starting from the inverse of the affine part
    and using the finite-difference Jacobian of the transform. If it does not
    converge within its iteration cap, gradient descent on the squared
    residual takes over from the same starting point with a larger budget.
    Non-convergence is reported through the result flag, never raised. A
    solver keeps no per-query state, so one instance can serve many threads.
    """

    def __init__(self,
        transform: vw.Transform,
        config: vw.config.SolverConfig | None = None) -> None:
        """
        Args:
            transform (Transform): Transform to invert.
            config (SolverConfig, optional): Solver settings. Default: package defaults.
        """
        self.transform = transform
        self.config = vw.config.defaults.solver if config is None else config

    def _start(self, target: torch.Tensor) -> torch.Tensor:
        return self.transform.affine.inverse_transform(target).point

    def _evaluate(self, x: torch.Tensor, target: torch.Tensor) -> tuple:
        jacobian = self.transform.gradient(x, step=self.config.gradient_step)
        residual = self.transform.transform(x) - target
        return jacobian, residual

    def solve(self, target: torch.Tensor) -> InverseResult:
        """
        Invert the transform at a world point of shape (ndim,).

        Raises:
            DegenerateJacobianError: If Newton meets a singular Jacobian.
        """
        result = self.newton(target)
        if result.converged:
            return result

        logger.debug(f'newton did not converge for {torch.as_tensor(target).tolist()}, '
                     'falling back to gradient descent')
        result = self.gradient_descent(target)
        if not result.converged:
            logger.debug(f'gradient descent did not converge for {torch.as_tensor(target).tolist()}')
        return result

    def newton(self, target: torch.Tensor) -> InverseResult:
        """
        Newton iteration `x <- x - J^-1 (f(x) - v)`.
        """
        target = torch.as_tensor(target, dtype=torch.float64)
        eps2 = self.config.newton_epsilon ** 2
        x = self._start(target)

        for _ in range(self.config.newton_max_iter):
            jacobian, residual = self._evaluate(x, target)
            if torch.dot(residual, residual) < eps2:
                return InverseResult(x, True)
            inverse, info = torch.linalg.inv_ex(jacobian)
            if info.item() != 0 or not torch.isfinite(inverse).all():
                raise vw.DegenerateJacobianError(f'transform jacobian is not invertible at {x.tolist()}')
            x = x - inverse @ residual

        residual = self.transform.transform(x) - target
        return InverseResult(x, bool(torch.dot(residual, residual) < eps2))

    def gradient_descent(self, target: torch.Tensor, start: torch.Tensor | None = None) -> InverseResult:
        """
        Gradient descent on `|f(x) - v|^2 / 2` along `J^T (f(x) - v)`. The step
        size is halved, down to a minimum, every time the residual grows.
        """
        target = torch.as_tensor(target, dtype=torch.float64)
        config = self.config
        eps2 = config.descent_epsilon ** 2
        x = self._start(target) if start is None else torch.as_tensor(start, dtype=torch.float64)

        step = config.descent_step
        last_error = float('inf')
        best, best_error = x, float('inf')
        for _ in range(config.descent_iterations):
            jacobian, residual = self._evaluate(x, target)
            error = torch.dot(residual, residual).item()
            if error < best_error:
                best, best_error = x, error
            if error < eps2:
                return InverseResult(x, True)
            if error > last_error and step > config.descent_min_step:
                step /= 2
            last_error = error
            x = x - step * jacobian.T @ residual

        return InverseResult(best, best_error < eps2)

    def solve_many(self,
        targets: torch.Tensor,
        config: vw.config.ResamplingConfig | None = None) -> InverseResult:
        """
        Invert the transform at many points of shape (N, ndim). Points are
        solved independently, fanned out over the thread pool.

        Returns:
            InverseResult: Points of shape (N, ndim) and a boolean tensor of
            convergence flags of shape (N,).
        """
        targets = torch.as_tensor(targets, dtype=torch.float64)

        def process(i: int) -> InverseResult:
            return self.solve(targets[i])

        results = vw.parallel.for_each_slice(len(targets), process, config)
        if not results:
            return InverseResult(targets.clone(), torch.ones(0, dtype=torch.bool))
        points = torch.stack([r.point for r in results])
        converged = torch.tensor([r.converged for r in results], dtype=torch.bool)
        return InverseResult(points, converged)
