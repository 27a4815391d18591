"""
Resampling of a source volume into the grid of a target volume through a
world-space transform.

For each target voxel, its world position (target frame) is mapped by the
transform into the source world, then by the inverse source frame into a
continuous source index, where the source is interpolated. In other words,
the transform maps target-world coordinates to source-world coordinates, and
the source content appears in the target moved by the inverse transform.
"""

from __future__ import annotations

import logging

import torch
import voxwarp as vw


logger = logging.getLogger(__name__)


class SliceGrid:
    """
    Affine index grid evaluated slice by slice from precomputed step vectors.

    Given a homogeneous matrix M and a grid size, slice z holds
    `origin + x * dx + y * dy + z * dz` for every (x, y), where the steps are
    the columns of M and the origin its last column.
    """

    def __init__(self, matrix: torch.Tensor, size: tuple) -> None:
        n = matrix.shape[0] - 1
        self.origin = matrix[:n, n]
        self.steps = matrix[:n, :n].T
        plane = vw.volume.volume_grid(size[:2], device=matrix.device)
        self.plane = plane @ self.steps[:2] + self.origin

    def __call__(self, z: int) -> torch.Tensor:
        if len(self.steps) == 2:
            return self.plane
        return self.plane + z * self.steps[2]


class IndexMapper:
    """
    Base class computing, for a slice of target voxels, the continuous source
    indices to interpolate.
    """

    def __init__(self, source: vw.VoxelVolume, target: vw.VoxelVolume, transform: vw.Transform) -> None:
        self.source = source
        self.target = target
        self.transform = transform

    def slice_indices(self, z: int) -> torch.Tensor:
        """
        Source indices of shape (X, Y, ndim) for target slice z.
        """
        raise NotImplementedError


class AffineIndexMapper(IndexMapper):
    """
    Affine transforms collapse into a single index-to-index matrix
    `source.frame^-1 @ A @ target.frame`.
    """

    def __init__(self, source, target, transform: vw.AffineTransform) -> None:
        super().__init__(source, target, transform)
        matrix = source.frame.inverse_tensor @ transform.matrix.to(source.device) @ target.frame.tensor
        self.grid = SliceGrid(matrix, target.size)

    def slice_indices(self, z: int) -> torch.Tensor:
        return self.grid(z)


class DdfIndexMapper(IndexMapper):
    """
    Dense deformable fields: the affine part and the displacement-grid index
    both follow step vectors, and the interpolated world displacement is
    converted to a source-index displacement by the linear part of the inverse
    source frame. When the source frame only scales and translates, the
    conversion is an elementwise scaling.
    """

    def __init__(self, source, target, transform: vw.DenseDeformableField) -> None:
        super().__init__(source, target, transform)
        affine = transform.affine.matrix.to(source.device)
        self.affine_grid = SliceGrid(source.frame.inverse_tensor @ affine @ target.frame.tensor, target.size)
        self.field_grid = SliceGrid(transform.frame.inverse_tensor @ affine @ target.frame.tensor, target.size)

        n = source.ndim
        linear = source.frame.inverse_tensor[:n, :n]
        self.scale = torch.diagonal(linear) if source.frame.is_scale_translation else None
        self.linear = linear

    def slice_indices(self, z: int) -> torch.Tensor:
        displacement = self.transform.transform_deformable_only_index(self.field_grid(z))
        if self.scale is not None:
            return self.affine_grid(z) + displacement * self.scale
        return self.affine_grid(z) + displacement @ self.linear.T


class TransformIndexMapper(IndexMapper):
    """
    Any other transform is evaluated explicitly at the world position of
    every target voxel.
    """

    def __init__(self, source, target, transform: vw.Transform) -> None:
        super().__init__(source, target, transform)
        self.world_grid = SliceGrid(target.frame.tensor, target.size)

    def slice_indices(self, z: int) -> torch.Tensor:
        world = self.transform.transform(self.world_grid(z))
        return self.source.frame.position_to_index(world)


class ResamplingMapper:
    """
    Drives the resampling loop over the z slices of a target volume. Each
    slice gets its own interpolator and writes a disjoint region of the
    target, so slices run concurrently on a thread pool.
    """

    def __init__(self, kind: str | type = 'linear', config: vw.config.Config | None = None) -> None:
        """
        Args:
            kind (str or type, optional): Interpolator name or class.
            config (Config, optional): Package settings. Default: package defaults.
        """
        self.interpolator = vw.interpolation.get_interpolator(kind)
        self.config = vw.config.defaults if config is None else config

    def index_mapper(self, source, target, transform: vw.Transform) -> IndexMapper:
        """
        Select the index computation suited to the transform type.
        """
        if isinstance(transform, vw.AffineTransform):
            return AffineIndexMapper(source, target, transform)
        if isinstance(transform, vw.DenseDeformableField):
            return DdfIndexMapper(source, target, transform)
        return TransformIndexMapper(source, target, transform)

    def run(self,
        source: vw.VoxelVolume,
        target: vw.VoxelVolume,
        transform: vw.Transform | torch.Tensor | None = None) -> vw.VoxelVolume:
        """
        Fill `target` in place with `source` sampled through `transform`.

        Returns:
            VoxelVolume: The target volume.
        """
        if source.ndim != target.ndim:
            raise ValueError(f'cannot resample a {source.ndim}D volume into a {target.ndim}D volume')
        if source.num_channels != target.num_channels:
            raise ValueError(f'source has {source.num_channels} channels but target '
                             f'has {target.num_channels}')

        if transform is None:
            transform = vw.AffineTransform.identity(source.ndim, device=source.device)
        elif not isinstance(transform, vw.Transform):
            transform = vw.AffineTransform(transform)
        if transform.ndim != source.ndim:
            raise ValueError(f'a {transform.ndim}D transform cannot resample {source.ndim}D volumes')

        if target.num_voxels == 0:
            return target

        mapper = self.index_mapper(source, target, transform)
        interpolator = self.interpolator
        source = interpolator.prepare(source)
        rounding = not target.dtype.is_floating_point and target.dtype != torch.bool

        def process_slice(z: int) -> None:
            sampler = interpolator(source)
            sampler.begin()
            values = sampler(mapper.slice_indices(z))
            sampler.end()
            if rounding and values.dtype.is_floating_point:
                values = values.round()
            values = values.movedim(-1, 0).to(target.dtype)
            if target.ndim == 2:
                target.tensor[...] = values
            else:
                target.tensor[..., z] = values

        num_slices = 1 if target.ndim == 2 else target.size[2]
        name = f'{type(mapper).__name__} ({interpolator.__name__}) into {target.size}'
        with vw.logging_config.Timer(f'resampling {name}', logger):
            vw.parallel.for_each_slice(num_slices, process_slice, self.config.resampling)
        return target


def resample(
    source: vw.VoxelVolume,
    target: vw.VoxelVolume,
    transform: vw.Transform | torch.Tensor | None = None,
    kind: str | type = 'linear',
    config: vw.config.Config | None = None) -> vw.VoxelVolume:
    """
    Resample a source volume into the grid of a target volume.

    Args:
        source (VoxelVolume): Volume to read from.
        target (VoxelVolume): Volume to fill, modified in place.
        transform (Transform, optional): Mapping from target-world to
            source-world coordinates. Default: identity.
        kind (str or type, optional): Interpolator, 'nearest' or 'linear'.
        config (Config, optional): Package settings.

    Returns:
        VoxelVolume: The target volume.
    """
    return ResamplingMapper(kind, config).run(source, target, transform)
