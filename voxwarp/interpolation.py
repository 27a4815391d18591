"""
Interpolators sampling a voxel volume at continuous indices.

An interpolator is built over one volume and evaluates many points at once.
A point is inside the volume when every voxel the interpolator reads for it
lies in the grid: the rounded voxel for nearest sampling, so coordinates in
[-0.5, size - 0.5), and both neighbors along each axis for linear sampling,
so coordinates in [0, size - 1]. Points outside receive the volume
background value.
"""

from __future__ import annotations

from typing import Sequence

import torch
import voxwarp as vw


def local_coordinates(indices: torch.Tensor, size: Sequence[int]) -> torch.Tensor:
    """
    Convert voxel indices of shape (N, ndim) to the flipped [-1, 1] grid
    coordinates expected by `grid_sample` with `align_corners=True`.
    """
    div = torch.tensor(size, dtype=indices.dtype, device=indices.device).clamp(min=2) - 1
    return (indices / div * 2 - 1).flip(-1)


class Interpolator:
    """
    Base class of volume interpolators.

    Subclasses implement `interpolate`, which maps continuous voxel indices of
    shape (N, ndim) to values of shape (N, C). The `begin` and `end` hooks
    bracket a batch of calls, for interpolators that prepare per-batch state.
    """

    def __init__(self, volume: vw.VoxelVolume) -> None:
        self.volume = volume
        self.ndim = volume.ndim
        self.channels = volume.num_channels
        self._size = torch.tensor(volume.size, dtype=torch.float64, device=volume.device)
        self._empty = volume.num_voxels == 0

    @classmethod
    def prepare(cls, volume: vw.VoxelVolume) -> vw.VoxelVolume:
        """
        Volume that interpolators of this class read when built over `volume`.
        Callers that build many interpolators over the same volume convert it
        once with this method.
        """
        return volume

    def begin(self) -> None:
        pass

    def end(self) -> None:
        pass

    def background(self, dtype: torch.dtype) -> torch.Tensor:
        """
        Background value broadcastable to (N, C).
        """
        value = torch.as_tensor(self.volume.background, dtype=dtype, device=self.volume.device)
        return value.reshape(-1)[None] if value.ndim else value

    def interpolate(self, indices: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def __call__(self, indices: torch.Tensor) -> torch.Tensor:
        indices = torch.as_tensor(indices, dtype=torch.float64, device=self.volume.device)
        if indices.shape[-1] != self.ndim:
            raise ValueError(f'expected indices with a last dimension of size {self.ndim}')
        shape = indices.shape[:-1]
        values = self.interpolate(indices.reshape(-1, self.ndim))
        return values.reshape(*shape, self.channels)


class GridSampleInterpolator(Interpolator):
    """
    Interpolator backed by `torch.nn.functional.grid_sample`. Volumes that
    are not float32 or float64 are sampled from a float64 copy.
    """

    mode = None

    def __init__(self, volume: vw.VoxelVolume) -> None:
        super().__init__(volume)
        self._input = self.prepare(volume).tensor.unsqueeze(0)

    @classmethod
    def prepare(cls, volume: vw.VoxelVolume) -> vw.VoxelVolume:
        if volume.dtype in (torch.float32, torch.float64):
            return volume
        return volume.new(volume.tensor.to(torch.float64))

    def grid_sample(self, indices: torch.Tensor) -> torch.Tensor:
        # (N, ndim) voxel indices to (N, C) float64 values
        grid = local_coordinates(indices, self.volume.size).to(self._input.dtype)
        grid = grid.view(1, len(indices), *([1] * (self.ndim - 1)), self.ndim)
        sampled = torch.nn.functional.grid_sample(self._input, grid, mode=self.mode,
                                                  padding_mode='border', align_corners=True)
        return sampled.reshape(self.channels, len(indices)).T.to(torch.float64)


class NearestInterpolator(GridSampleInterpolator):
    """
    Nearest-neighbor sampling. Coordinates are rounded half up, and values
    are returned in the data type of the volume.
    """

    mode = 'nearest'

    def interpolate(self, points: torch.Tensor) -> torch.Tensor:
        dtype = self.volume.dtype
        if self._empty or len(points) == 0:
            return self.background(dtype).expand(len(points), self.channels).clone()

        rounded = torch.floor(points + 0.5)
        inside = ((rounded >= 0) & (rounded < self._size)).all(-1)

        values = self.grid_sample(rounded).to(dtype)
        return torch.where(inside[:, None], values, self.background(dtype))


class LinearInterpolator(GridSampleInterpolator):
    """
    Linear (bilinear in 2D, trilinear in 3D) sampling. Returns float64 values.

    Coordinates within a small tolerance beyond [0, size - 1] are clamped
    onto the grid.
    """

    mode = 'bilinear'
    tolerance = 1e-6

    def interpolate(self, points: torch.Tensor) -> torch.Tensor:
        if self._empty or len(points) == 0:
            return self.background(torch.float64).expand(len(points), self.channels).clone()

        upper_bound = self._size - 1
        inside = ((points >= -self.tolerance) & (points <= upper_bound + self.tolerance)).all(-1)

        values = self.grid_sample(points)
        return torch.where(inside[:, None], values, self.background(torch.float64))


interpolators = {
    'nearest': NearestInterpolator,
    'linear': LinearInterpolator,
    'bilinear': LinearInterpolator,
    'trilinear': LinearInterpolator,
}


def register_interpolator(name: str, cls: type) -> None:
    """
    Make an Interpolator subclass available by name.
    """
    if not (isinstance(cls, type) and issubclass(cls, Interpolator)):
        raise ValueError(f'{cls} is not an Interpolator subclass')
    interpolators[name] = cls


def get_interpolator(kind: str | type) -> type:
    """
    Look up an interpolator class.

    Args:
        kind (str or type): Interpolator name ('nearest' or 'linear') or an
            Interpolator subclass.

    Returns:
        type: Interpolator class.
    """
    if isinstance(kind, type) and issubclass(kind, Interpolator):
        return kind
    cls = interpolators.get(kind)
    if cls is None:
        raise ValueError(f'unknown interpolator: {kind}, expected one of {sorted(interpolators)}')
    return cls
