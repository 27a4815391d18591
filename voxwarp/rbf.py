"""
Analytic deformable transforms built from Gaussian radial basis functions.
"""

from __future__ import annotations

from typing import Iterable

import torch
import voxwarp as vw


class GaussianRbf:
    """
    Gaussian radial basis function carrying a displacement vector.

    The weight at a point p is `exp(-sum_i (p_i - mean_i)^2 / (2 variance_i))`
    and the displacement is that weight times `value`.
    """

    def __init__(self,
        value: torch.Tensor,
        mean: torch.Tensor,
        variance: torch.Tensor) -> None:
        """
        Args:
            value (Tensor): Displacement (mm) at the center of the function.
            mean (Tensor): World position of the center.
            variance (Tensor): Per-axis variance (mm^2).
        """
        self.value = torch.as_tensor(value, dtype=torch.float64)
        self.mean = torch.as_tensor(mean, dtype=torch.float64)
        self.variance = torch.as_tensor(variance, dtype=torch.float64)
        if not (self.value.shape == self.mean.shape == self.variance.shape) or self.mean.ndim != 1:
            raise ValueError('rbf value, mean and variance must be vectors of the same length')
        if (self.variance <= 0).any():
            raise ValueError('rbf variance must be positive')

    @property
    def ndim(self) -> int:
        return len(self.mean)

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(value={self.value.tolist()}, ' \
               f'mean={self.mean.tolist()}, variance={self.variance.tolist()})'

    def weight(self, points: torch.Tensor) -> torch.Tensor:
        """
        Basis weight at points of shape (..., ndim), with shape (...).
        """
        points = torch.as_tensor(points, dtype=torch.float64)
        delta = points - self.mean.to(points.device)
        return torch.exp(-(delta ** 2 / (2 * self.variance.to(points.device))).sum(-1))

    def displacement(self, points: torch.Tensor) -> torch.Tensor:
        """
        Weighted displacement at points of shape (..., ndim).
        """
        points = torch.as_tensor(points, dtype=torch.float64)
        return self.weight(points)[..., None] * self.value.to(points.device)


class RbfTransform(vw.Transform):
    """
    Affine transform followed by a sum of Gaussian displacements:
    `transform(p) = a + sum_k rbf_k(a)` with `a = affine(p)`.

    The basis functions are positioned in the space reached by the affine
    part, which is also where a dense deformable field stores its
    displacements, so a field imported from this transform reproduces it.
    """

    def __init__(self,
        affine: vw.AffineTransform | torch.Tensor | None = None,
        rbfs: Iterable[GaussianRbf] = (),
        ndim: int = 3) -> None:
        """
        Args:
            affine (AffineTransform, optional): Affine part. Default: identity.
            rbfs (Iterable[GaussianRbf], optional): Basis functions.
            ndim (int, optional): Dimensionality when `affine` is None.
        """
        if affine is None:
            affine = vw.AffineTransform.identity(ndim)
        elif not isinstance(affine, vw.AffineTransform):
            affine = vw.AffineTransform(affine)
        self._affine = affine
        self._rbfs = []
        for rbf in rbfs:
            self.add(rbf)

    @property
    def affine(self) -> vw.AffineTransform:
        return self._affine

    @property
    def rbfs(self) -> tuple:
        return tuple(self._rbfs)

    def add(self, rbf: GaussianRbf) -> None:
        """
        Append a basis function.
        """
        if rbf.ndim != self._affine.ndim:
            raise ValueError(f'expected a {self._affine.ndim}D rbf, got a {rbf.ndim}D rbf')
        self._rbfs.append(rbf)

    def clone(self) -> RbfTransform:
        rbfs = [GaussianRbf(r.value.clone(), r.mean.clone(), r.variance.clone()) for r in self._rbfs]
        return RbfTransform(self._affine.clone(), rbfs)

    def raw_displacement(self, points: torch.Tensor) -> torch.Tensor:
        """
        Sum of basis displacements at points already mapped by the affine part.
        """
        points = torch.as_tensor(points, dtype=torch.float64)
        displacement = torch.zeros_like(points)
        for rbf in self._rbfs:
            displacement += rbf.displacement(points)
        return displacement

    def transform_deformable_only(self, points: torch.Tensor) -> torch.Tensor:
        return self.raw_displacement(self._affine.transform(points))

    def transform_deformable_only_no_tfm(self, points: torch.Tensor) -> torch.Tensor:
        return self.raw_displacement(points)

    def transform(self, points: torch.Tensor) -> torch.Tensor:
        mapped = self._affine.transform(points)
        return mapped + self.raw_displacement(mapped)
