"""
Spatial frames: the homogeneous matrices mapping voxel indices to world (mm)
positions, also known as patient-space transforms.
"""

from __future__ import annotations

import math
from typing import Sequence

import torch
import voxwarp as vw


def homogeneous_matrix(data, device: torch.device | None = None) -> torch.Tensor:
    """
    Convert matrix-like data to a float64 homogeneous matrix.

    A 4x4 (or 3x4) input describes a 3D frame and a 3x3 (or 2x3) input
    describes a 2D frame. Incomplete matrices are completed with the
    homogeneous row.

    Args:
        data: Tensor, nested sequence, SpatialFrame or AffineTransform.
        device (device, optional): Device of the returned tensor.

    Returns:
        Tensor: Square matrix of shape (ndim + 1, ndim + 1).
    """
    if isinstance(data, SpatialFrame):
        data = data.tensor
    elif isinstance(data, vw.AffineTransform):
        data = data.matrix

    matrix = torch.as_tensor(data, device=device).to(torch.float64)
    if matrix.ndim != 2:
        raise ValueError(f'expected a 2D matrix, got shape {tuple(matrix.shape)}')

    rows, cols = matrix.shape
    if (rows, cols) in ((2, 3), (3, 4)):
        row = torch.zeros((1, cols), dtype=matrix.dtype, device=matrix.device)
        row[0, -1] = 1
        matrix = torch.cat((matrix, row), dim=0)
    elif (rows, cols) not in ((3, 3), (4, 4)):
        raise ValueError(f'matrix must be 3x3, 2x3, 4x4 or 3x4, got {rows}x{cols}')

    return matrix


def invert_matrix(matrix: torch.Tensor, message: str = 'matrix is singular') -> torch.Tensor:
    """
    Invert a square matrix, raising a SingularMatrixError when it has no
    usable inverse.

    Args:
        matrix (Tensor): Square matrix.
        message (str, optional): Error message on failure.

    Returns:
        Tensor: Inverse matrix.
    """
    inverse, info = torch.linalg.inv_ex(matrix)
    if info.item() != 0 or not torch.isfinite(inverse).all():
        raise vw.SingularMatrixError(message)
    if torch.linalg.cond(matrix).item() > 1e12:
        raise vw.SingularMatrixError(message)
    return inverse


def apply_matrix(matrix: torch.Tensor, coords: torch.Tensor) -> torch.Tensor:
    """
    Apply a homogeneous matrix to points of shape (..., ndim).
    """
    ndim = matrix.shape[0] - 1
    coords = torch.as_tensor(coords, dtype=matrix.dtype, device=matrix.device)
    if coords.shape[-1] != ndim:
        raise ValueError(f'coordinates must have a last dimension of size {ndim}, '
                         f'got shape {tuple(coords.shape)}')
    return coords @ matrix[:ndim, :ndim].T + matrix[:ndim, ndim]


class SpatialFrame:
    """
    Invertible homogeneous matrix M such that `world = M @ index` for
    homogeneous voxel indices. The frame is immutable and stores its matrix in
    double precision; the inverse is computed once at construction.

    The columns of the linear part are the world-space steps taken when moving
    one voxel along each index axis, so their norms are the voxel spacing, and
    the last column is the world position of voxel zero.
    """

    def __init__(self,
        data=None,
        ndim: int = 3,
        device: torch.device | None = None) -> None:
        """
        Args:
            data (Tensor, optional): A 4x4 or 3x4 matrix for a 3D frame, or a
                3x3 or 2x3 matrix for a 2D frame. Default: identity.
            ndim (int, optional): Dimensionality of the identity frame built
                when `data` is None.
            device (device, optional): Device of the frame matrix.

        Raises:
            SingularMatrixError: If the matrix is not invertible.
        """
        vw.caching.init_property_cache(self)
        if data is None:
            data = torch.eye(ndim + 1, dtype=torch.float64)
        self._tensor = homogeneous_matrix(data, device)
        self._inverse = invert_matrix(self._tensor, 'the spatial frame matrix is singular')

    @classmethod
    def identity(cls, ndim: int = 3, device: torch.device | None = None) -> SpatialFrame:
        """
        Identity frame, where world coordinates equal voxel indices.
        """
        return cls(None, ndim=ndim, device=device)

    @classmethod
    def from_components(cls,
        rotation: torch.Tensor,
        origin: torch.Tensor,
        spacing: torch.Tensor) -> SpatialFrame:
        """
        Build a frame from its orientation, origin, and voxel spacing.

        Args:
            rotation (Tensor): Orthonormal (ndim, ndim) matrix whose columns are the
                world directions of the index axes.
            origin (Tensor): World position of voxel zero.
            spacing (Tensor): Voxel size along each index axis.

        Returns:
            SpatialFrame: The composed frame.
        """
        rotation = torch.as_tensor(rotation, dtype=torch.float64)
        ndim = rotation.shape[0]
        origin = torch.as_tensor(origin, dtype=torch.float64, device=rotation.device)
        spacing = torch.as_tensor(spacing, dtype=torch.float64, device=rotation.device)
        if rotation.shape != (ndim, ndim) or origin.shape != (ndim,) or spacing.shape != (ndim,):
            raise ValueError('rotation, origin and spacing dimensions do not match')
        matrix = torch.eye(ndim + 1, dtype=torch.float64, device=rotation.device)
        matrix[:ndim, :ndim] = rotation * spacing
        matrix[:ndim, ndim] = origin
        return cls(matrix)

    # -------------------------------------------------------------------------
    # matrix access
    # -------------------------------------------------------------------------

    @property
    def tensor(self) -> torch.Tensor:
        """
        Frame matrix of shape (ndim + 1, ndim + 1). Must not be modified.
        """
        return self._tensor

    @property
    def inverse_tensor(self) -> torch.Tensor:
        """
        Cached inverse matrix, mapping world positions to voxel indices.
        """
        return self._inverse

    @property
    def ndim(self) -> int:
        return self._tensor.shape[0] - 1

    @property
    def device(self) -> torch.device:
        return self._tensor.device

    def __getitem__(self, indexing) -> torch.Tensor:
        return self._tensor[indexing]

    def __setitem__(self, indexing, item):
        raise AttributeError('cannot modify a spatial frame in place, create a new one instead')

    def __repr__(self) -> str:
        name = self.__class__.__name__
        tensor_str = str(self._tensor.detach().cpu().numpy())
        tensor_str = tensor_str.replace('\n', f'\n{" " * (len(name) + 1)}')
        return f'{name}({tensor_str})'

    def __matmul__(self, other: SpatialFrame | torch.Tensor) -> SpatialFrame | torch.Tensor:
        if isinstance(other, (SpatialFrame, vw.AffineTransform)):
            other = homogeneous_matrix(other, self.device)
            return SpatialFrame(self._tensor @ other)
        other = torch.as_tensor(other, dtype=self._tensor.dtype, device=self.device)
        if other.shape == self._tensor.shape:
            return SpatialFrame(self._tensor @ other)
        return self._tensor @ other

    def allclose(self, other: SpatialFrame, atol: float = 1e-6) -> bool:
        """
        Whether two frames have (nearly) identical matrices.
        """
        other = homogeneous_matrix(other, self.device)
        return other.shape == self._tensor.shape and \
            torch.allclose(self._tensor, other, atol=atol, rtol=0)

    def inverse(self) -> SpatialFrame:
        """
        Frame of the inverse (world-to-index) mapping.
        """
        return SpatialFrame(self._inverse)

    def to(self, device: torch.device) -> SpatialFrame:
        return SpatialFrame(self._tensor.to(device))

    def cpu(self) -> SpatialFrame:
        return self.to('cpu')

    # -------------------------------------------------------------------------
    # derived geometry
    # -------------------------------------------------------------------------

    @vw.caching.cached
    def linear(self) -> torch.Tensor:
        """
        Linear (ndim, ndim) part of the frame: rotation, scaling and shear.
        """
        n = self.ndim
        return self._tensor[:n, :n]

    @vw.caching.cached
    def spacing(self) -> torch.Tensor:
        """
        Voxel spacing, computed as the norms of the linear-part columns.
        """
        return self.linear.norm(dim=0)

    @vw.caching.cached
    def origin(self) -> torch.Tensor:
        """
        World position of voxel zero.
        """
        return self._tensor[:self.ndim, self.ndim]

    @vw.caching.cached
    def rotation(self) -> torch.Tensor:
        """
        Linear part with unit-length columns (the index axis directions).
        """
        return self.linear / self.spacing

    @vw.caching.cached
    def is_scale_translation(self) -> bool:
        """
        True if the linear part is diagonal, i.e. the frame only scales and
        translates, without rotation or shear.
        """
        linear = self.linear
        offdiagonal = linear - torch.diag(torch.diagonal(linear))
        return bool(offdiagonal.abs().max() < 1e-12)

    def with_spacing(self, spacing: torch.Tensor) -> SpatialFrame:
        """
        Copy of the frame with a new voxel spacing, keeping orientation and origin.
        """
        return SpatialFrame.from_components(self.rotation, self.origin, spacing)

    def with_origin(self, origin: torch.Tensor) -> SpatialFrame:
        """
        Copy of the frame with a new origin, keeping orientation and spacing.
        """
        matrix = self._tensor.clone()
        matrix[:self.ndim, self.ndim] = torch.as_tensor(origin, dtype=matrix.dtype)
        return SpatialFrame(matrix)

    # -------------------------------------------------------------------------
    # coordinate conversion
    # -------------------------------------------------------------------------

    def transform(self, coords: torch.Tensor) -> torch.Tensor:
        """
        Apply the frame matrix to a set of points.

        Args:
            coords (Tensor): Points with shape (..., ndim).

        Returns:
            Tensor: Transformed float64 points with the same shape as the input.
        """
        return apply_matrix(self._tensor, coords)

    def index_to_position(self, index: torch.Tensor) -> torch.Tensor:
        """
        Convert (continuous) voxel indices to world positions.
        """
        return apply_matrix(self._tensor, index)

    def position_to_index(self, position: torch.Tensor) -> torch.Tensor:
        """
        Convert world positions to continuous voxel indices using the cached inverse.
        """
        return apply_matrix(self._inverse, position)


def cast_spatial_frame(frame, ndim: int | None = None) -> SpatialFrame:
    """
    Cast a frame-like object (matrix or frame) to a SpatialFrame. None casts
    to the identity frame of the given dimensionality.
    """
    if frame is None:
        return SpatialFrame.identity(3 if ndim is None else ndim)
    if not isinstance(frame, SpatialFrame):
        frame = SpatialFrame(frame)
    if ndim is not None and frame.ndim != ndim:
        raise ValueError(f'expected a {ndim}D spatial frame, got a {frame.ndim}D frame')
    return frame


# -----------------------------------------------------------------------------
# matrix builders
# -----------------------------------------------------------------------------


def translation_matrix(translation: Sequence[float] | torch.Tensor) -> torch.Tensor:
    """
    Homogeneous translation matrix for a 2D or 3D translation vector.

    Args:
        translation (Tensor): Translation vector.

    Returns:
        Tensor: Matrix of shape (ndim + 1, ndim + 1).
    """
    translation = torch.as_tensor(translation, dtype=torch.float64)
    if translation.ndim != 1 or len(translation) not in (2, 3):
        raise ValueError('translation vector must have a shape of (2,) or (3,)')
    ndim = len(translation)
    matrix = torch.eye(ndim + 1, dtype=torch.float64, device=translation.device)
    matrix[:ndim, ndim] = translation
    return matrix


def scaling_matrix(scale: Sequence[float] | torch.Tensor) -> torch.Tensor:
    """
    Homogeneous scaling matrix for per-axis 2D or 3D scale factors.
    """
    scale = torch.as_tensor(scale, dtype=torch.float64)
    if scale.ndim != 1 or len(scale) not in (2, 3):
        raise ValueError('scale vector must have a shape of (2,) or (3,)')
    ones = torch.ones(1, dtype=torch.float64, device=scale.device)
    return torch.diag(torch.cat([scale, ones]))


def rotation_matrix_z(angle: float, ndim: int = 3, degrees: bool = True) -> torch.Tensor:
    """
    Homogeneous counter-clockwise rotation about the z axis (or in the plane, in 2D).

    Args:
        angle (float): Rotation angle.
        ndim (int, optional): 2 or 3.
        degrees (bool, optional): Whether the angle is in degrees or radians.

    Returns:
        Tensor: Matrix of shape (ndim + 1, ndim + 1).
    """
    if degrees:
        angle = math.radians(angle)
    c, s = math.cos(angle), math.sin(angle)
    # snap to exact values so that right-angle rotations stay integral
    c, s = round(c, 15), round(s, 15)
    matrix = torch.eye(ndim + 1, dtype=torch.float64)
    matrix[:2, :2] = torch.tensor([[c, -s], [s, c]], dtype=torch.float64)
    return matrix


def angles_to_rotation_matrix(rotation: Sequence[float] | torch.Tensor,
                              degrees: bool = True) -> torch.Tensor:
    """
    3D rotation matrix composed from rotations about the x, y, and z axes
    (applied in z, y, x order).

    Args:
        rotation (Tensor): Three rotation angles.
        degrees (bool, optional): Whether the angles are in degrees or radians.

    Returns:
        Tensor: Rotation matrix of shape (3, 3).
    """
    rotation = torch.as_tensor(rotation, dtype=torch.float64)
    if rotation.shape != (3,):
        raise ValueError('rotation must be of shape (3,)')
    if degrees:
        rotation = torch.deg2rad(rotation)

    cx, sx = torch.cos(rotation[0]).item(), torch.sin(rotation[0]).item()
    cy, sy = torch.cos(rotation[1]).item(), torch.sin(rotation[1]).item()
    cz, sz = torch.cos(rotation[2]).item(), torch.sin(rotation[2]).item()
    rx = torch.tensor([[1, 0, 0], [0, cx, -sx], [0, sx, cx]], dtype=torch.float64)
    ry = torch.tensor([[cy, 0, sy], [0, 1, 0], [-sy, 0, cy]], dtype=torch.float64)
    rz = torch.tensor([[cz, -sz, 0], [sz, cz, 0], [0, 0, 1]], dtype=torch.float64)
    return rx @ ry @ rz


def compose_affine(
    translation: Sequence[float] | torch.Tensor | None = None,
    rotation: Sequence[float] | torch.Tensor | float | None = None,
    scale: Sequence[float] | torch.Tensor | float | None = None,
    ndim: int = 3,
    degrees: bool = True) -> torch.Tensor:
    """
    Compose a homogeneous matrix as translation @ rotation @ scale.

    Args:
        translation (Tensor, optional): Translation vector.
        rotation (Tensor, optional): Three angles in 3D, or one angle in 2D.
        scale (Tensor, optional): Per-axis or scalar scale factors.
        ndim (int, optional): 2 or 3.
        degrees (bool, optional): Whether the rotation angles are in degrees.

    Returns:
        Tensor: Composed matrix of shape (ndim + 1, ndim + 1).
    """
    if ndim not in (2, 3):
        raise ValueError(f'ndim must be 2 or 3, got {ndim}')

    translation = torch.zeros(ndim) if translation is None else torch.as_tensor(translation)
    if translation.shape != (ndim,):
        raise ValueError(f'translation must be of shape ({ndim},)')

    scale = torch.ones(ndim) if scale is None else torch.as_tensor(scale, dtype=torch.float64)
    if scale.ndim == 0:
        scale = scale.repeat(ndim)
    if scale.shape != (ndim,):
        raise ValueError(f'scale must be of shape ({ndim},)')

    R = torch.eye(ndim + 1, dtype=torch.float64)
    if rotation is not None:
        if ndim == 2:
            R = rotation_matrix_z(float(rotation), ndim=2, degrees=degrees)
        else:
            R[:3, :3] = angles_to_rotation_matrix(rotation, degrees=degrees)

    return translation_matrix(translation) @ R @ scaling_matrix(scale)
