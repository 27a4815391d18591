"""
Dense deformable fields: an affine transform followed by a displacement
sampled from a regular grid of vectors.
"""

from __future__ import annotations

import logging
from typing import Sequence

import torch
import voxwarp as vw


logger = logging.getLogger(__name__)


def _as_size(value: int | Sequence[int] | torch.Tensor, ndim: int) -> torch.Tensor:
    value = torch.as_tensor(value, dtype=torch.float64)
    if value.ndim == 0:
        value = value.repeat(ndim)
    if value.shape != (ndim,):
        raise ValueError(f'expected a size of length {ndim}, got {value.tolist()}')
    if (value <= 0).any():
        raise ValueError(f'sizes must be positive, got {value.tolist()}')
    return value


class DenseDeformableField(vw.Transform):
    """
    Affine transform composed with a discretized displacement field:
    `transform(p) = a + displacement(a)` with `a = affine(p)`.

    The displacements are world-space vectors (mm) stored in a multi-channel
    voxel volume with its own spatial frame. They are interpolated linearly,
    and are zero outside of the grid.
    """

    def __init__(self,
        affine: vw.AffineTransform | torch.Tensor | None,
        frame: vw.SpatialFrame | torch.Tensor,
        size: Sequence[int],
        storage: vw.VoxelVolume | None = None) -> None:
        """
        Args:
            affine (AffineTransform): Affine part. None means identity.
            frame (SpatialFrame): Frame of the displacement grid.
            size (Sequence[int]): Number of grid nodes per axis.
            storage (VoxelVolume, optional): Existing displacement volume with
                one channel per axis. Default: a zero field.
        """
        frame = vw.frame.cast_spatial_frame(frame)
        if affine is None:
            affine = vw.AffineTransform.identity(frame.ndim)
        elif not isinstance(affine, vw.AffineTransform):
            affine = vw.AffineTransform(affine)
        if affine.ndim != frame.ndim:
            raise ValueError(f'affine is {affine.ndim}D but the field frame is {frame.ndim}D')

        size = tuple(int(s) for s in size)
        if storage is None:
            storage = vw.VoxelVolume(size, frame, channels=frame.ndim, dtype=torch.float32)
        elif storage.num_channels != frame.ndim or storage.size != size:
            raise ValueError(f'displacement storage must have {frame.ndim} channels and size {size}')

        self._affine = affine
        self._storage = storage

    @classmethod
    def create(cls,
        transform: vw.AffineTransform | vw.RbfTransform | torch.Tensor | None,
        target_frame: vw.SpatialFrame | torch.Tensor,
        target_size: Sequence[int],
        grid_size: int | Sequence[int],
        config: vw.config.ResamplingConfig | None = None) -> DenseDeformableField:
        """
        Create a field covering a target volume with a (usually coarser) grid.

        The grid frame is the target frame scaled by `target_size / grid_size`,
        so the grid spans the same world region as the target. The grid is
        allocated with one extra node along each axis.

        Args:
            transform: Affine part, or an analytic deformable transform (such as an
                RbfTransform) whose affine part is used and whose displacement is
                sampled at every grid node.
            target_frame (SpatialFrame): Frame of the target volume.
            target_size (Sequence[int]): Size of the target volume in voxels.
            grid_size (int or Sequence[int]): Number of grid cells per axis.
            config (ResamplingConfig, optional): Parallelism settings of the import.

        Returns:
            DenseDeformableField: The new field.
        """
        target_frame = vw.frame.cast_spatial_frame(target_frame)
        ndim = target_frame.ndim
        target_size = _as_size(target_size, ndim)
        grid_size = _as_size(grid_size, ndim)

        frame = target_frame @ vw.scaling_matrix(target_size / grid_size)
        size = [int(s) + 1 for s in grid_size.round()]

        field = None
        if isinstance(transform, vw.Transform) and not isinstance(transform, vw.AffineTransform):
            field = transform
            transform = transform.affine

        ddf = cls(transform, frame, size)
        if field is not None:
            ddf.import_field(field, config)
        return ddf

    def import_field(self, field: vw.Transform, config: vw.config.ResamplingConfig | None = None) -> None:
        """
        Overwrite the displacement grid by evaluating an analytic field at the
        world position of every grid node, in parallel over z slices.

        Args:
            field (Transform): Transform providing `transform_deformable_only_no_tfm`,
                the displacement at points already mapped by its affine part.
            config (ResamplingConfig, optional): Parallelism settings.
        """
        storage = self._storage
        frame = self.frame
        size = storage.size
        plane = vw.volume.volume_grid(size[:2], device=storage.device)

        def process_slice(z: int) -> None:
            index = plane if self.ndim == 2 else torch.cat([plane, torch.full_like(plane[..., :1], z)], -1)
            displacement = field.transform_deformable_only_no_tfm(frame.index_to_position(index))
            values = displacement.movedim(-1, 0).to(storage.dtype)
            if self.ndim == 2:
                storage.tensor[...] = values
            else:
                storage.tensor[..., z] = values

        num_slices = 1 if self.ndim == 2 else size[2]
        vw.parallel.for_each_slice(num_slices, process_slice, config)
        logger.debug(f'imported a deformable field into a {size} displacement grid')

    # -------------------------------------------------------------------------
    # properties
    # -------------------------------------------------------------------------

    @property
    def affine(self) -> vw.AffineTransform:
        return self._affine

    @property
    def storage(self) -> vw.VoxelVolume:
        """
        Displacement volume, with one channel per world axis.
        """
        return self._storage

    @property
    def frame(self) -> vw.SpatialFrame:
        """
        Frame of the displacement grid.
        """
        return self._storage.frame

    @property
    def size(self) -> tuple:
        return self._storage.size

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(size={self.size})'

    def clone(self) -> DenseDeformableField:
        """
        Deep copy, including the displacement grid.
        """
        return self.__class__(self._affine.clone(), self.frame, self.size, self._storage.clone())

    # -------------------------------------------------------------------------
    # evaluation
    # -------------------------------------------------------------------------

    def transform(self, points: torch.Tensor) -> torch.Tensor:
        """
        Map source points of shape (..., ndim) through the affine part and add
        the interpolated displacement.
        """
        mapped = self._affine.transform(points)
        return mapped + self.transform_deformable_only_no_tfm(mapped)

    def transform_deformable_only(self, points: torch.Tensor) -> torch.Tensor:
        """
        Displacement (mm) applied to source points of shape (..., ndim).
        """
        return self.transform_deformable_only_no_tfm(self._affine.transform(points))

    displacement = transform_deformable_only

    def transform_deformable_only_no_tfm(self, points: torch.Tensor) -> torch.Tensor:
        """
        Displacement (mm) at points that were already mapped by the affine part.
        """
        return self.transform_deformable_only_index(self.frame.position_to_index(points))

    def transform_deformable_only_index(self, index: torch.Tensor) -> torch.Tensor:
        """
        Displacement (mm) at continuous grid indices of shape (..., ndim).
        """
        return vw.LinearInterpolator(self._storage)(index)
