"""
World-to-world point transforms.
"""

from __future__ import annotations

import torch
import voxwarp as vw


class Transform:
    """
    Base class of transforms mapping world points of shape (..., ndim) to
    world points of the same shape.

    Every transform is an affine part, optionally followed by a deformable
    displacement: `transform(p) = affine(p) + deformable(affine(p))`.
    """

    @property
    def ndim(self) -> int:
        return self.affine.ndim

    @property
    def affine(self) -> AffineTransform:
        """
        Affine part of the transform.
        """
        raise NotImplementedError

    def transform(self, points: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def transform_affine_only(self, points: torch.Tensor) -> torch.Tensor:
        """
        Apply only the affine part of the transform.
        """
        return self.affine.transform(points)

    def transform_deformable_only(self, points: torch.Tensor) -> torch.Tensor:
        """
        Displacement added to the affine-transformed points.
        """
        raise NotImplementedError

    def transform_deformable_only_no_tfm(self, points: torch.Tensor) -> torch.Tensor:
        """
        Displacement at points already mapped by the affine part. Transforms
        with an analytic displacement override this; the default maps the
        points back through the inverse affine and evaluates the full transform.
        """
        points = torch.as_tensor(points, dtype=torch.float64)
        return self.transform(self.affine.inverse().transform(points)) - points

    def clone(self) -> Transform:
        raise NotImplementedError

    def __call__(self, points: torch.Tensor) -> torch.Tensor:
        return self.transform(points)

    def gradient(self, points: torch.Tensor, step: float | None = None) -> torch.Tensor:
        """
        Jacobian of the transform estimated by central finite differences.

        Args:
            points (Tensor): Points of shape (..., ndim).
            step (float, optional): Finite-difference step in mm. Default:
                `SolverConfig.gradient_step`.

        Returns:
            Tensor: Jacobians of shape (..., ndim, ndim), where column k holds
            the derivative of the transform along axis k.
        """
        if step is None:
            step = vw.config.defaults.solver.gradient_step
        points = torch.as_tensor(points, dtype=torch.float64)
        offsets = torch.eye(points.shape[-1], dtype=torch.float64, device=points.device) * step
        points = points[..., None, :]
        forward = self.transform(points + offsets)
        backward = self.transform(points - offsets)
        return ((forward - backward) / (2 * step)).transpose(-1, -2)

    def inverse_transform(self,
        point: torch.Tensor,
        config: vw.config.SolverConfig | None = None) -> vw.InverseResult:
        """
        Find the point that this transform maps onto `point`.

        Args:
            point (Tensor): World point of shape (ndim,).
            config (SolverConfig, optional): Solver settings.

        Returns:
            InverseResult: Found point and convergence flag.
        """
        return vw.InverseSolver(self, config).solve(point)


class AffineTransform(Transform):
    """
    Affine transform stored as a homogeneous matrix. The inverse matrix is
    computed once at construction and the transform cannot be modified
    afterwards; matrix accessors return copies.
    """

    def __init__(self,
        data=None,
        ndim: int = 3,
        device: torch.device | None = None) -> None:
        """
        Args:
            data (Tensor, optional): A 4x4 or 3x4 matrix (3D), or a 3x3 or 2x3
                matrix (2D). Default: identity.
            ndim (int, optional): Dimensionality of the identity built when
                `data` is None.
            device (device, optional): Device of the matrix.

        Raises:
            SingularMatrixError: If the matrix is not invertible.
        """
        if isinstance(data, AffineTransform):
            data = data._matrix
        elif data is None:
            data = torch.eye(ndim + 1, dtype=torch.float64)
        self._matrix = vw.frame.homogeneous_matrix(data, device)
        self._inverse = vw.frame.invert_matrix(self._matrix, 'non-affine transform: matrix is singular')

    @classmethod
    def identity(cls, ndim: int = 3, device: torch.device | None = None) -> AffineTransform:
        return cls(None, ndim=ndim, device=device)

    @property
    def matrix(self) -> torch.Tensor:
        """
        Copy of the forward matrix.
        """
        return self._matrix.clone()

    @property
    def inverse_matrix(self) -> torch.Tensor:
        """
        Copy of the cached inverse matrix.
        """
        return self._inverse.clone()

    @property
    def ndim(self) -> int:
        return self._matrix.shape[0] - 1

    @property
    def device(self) -> torch.device:
        return self._matrix.device

    @property
    def affine(self) -> AffineTransform:
        return self

    def __getitem__(self, indexing) -> torch.Tensor:
        return self._matrix[indexing].clone()

    def __repr__(self) -> str:
        name = self.__class__.__name__
        tensor_str = str(self._matrix.detach().cpu().numpy())
        tensor_str = tensor_str.replace('\n', f'\n{" " * (len(name) + 1)}')
        return f'{name}({tensor_str})'

    def __matmul__(self, other: AffineTransform | vw.SpatialFrame | torch.Tensor) -> AffineTransform:
        """
        Composition: `(a @ b)(p) == a(b(p))`.
        """
        other = vw.frame.homogeneous_matrix(other, self.device)
        return AffineTransform(self._matrix @ other)

    def clone(self) -> AffineTransform:
        return AffineTransform(self._matrix.clone())

    def inverse(self) -> AffineTransform:
        """
        The inverse transform.
        """
        return AffineTransform(self._inverse)

    def transform(self, points: torch.Tensor) -> torch.Tensor:
        """
        Apply the forward matrix to points of shape (..., ndim).
        """
        return vw.frame.apply_matrix(self._matrix, points)

    def transform_affine_only(self, points: torch.Tensor) -> torch.Tensor:
        return self.transform(points)

    def transform_deformable_only(self, points: torch.Tensor) -> torch.Tensor:
        return torch.zeros_like(torch.as_tensor(points, dtype=torch.float64))

    def gradient(self, points: torch.Tensor, step: float | None = None) -> torch.Tensor:
        """
        Jacobian of the transform, which is the linear part of the matrix at every point.
        """
        points = torch.as_tensor(points, dtype=torch.float64)
        n = self.ndim
        return self._matrix[:n, :n].expand(*points.shape[:-1], n, n).clone()

    def inverse_transform(self,
        point: torch.Tensor,
        config: vw.config.SolverConfig | None = None) -> vw.InverseResult:
        """
        Exact inverse through the cached inverse matrix. Always converged.
        """
        return vw.InverseResult(vw.frame.apply_matrix(self._inverse, point), True)
