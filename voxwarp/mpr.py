"""
Multi-planar reformatting: extraction of arbitrarily oriented 2D slices from
3D volumes.
"""

from __future__ import annotations

from typing import Sequence

import torch
import voxwarp as vw


class Slice:
    """
    Oriented 2D slice in a 3D world.

    A slice is a grid of (W, H) pixels centered on its origin: pixel (u, v)
    lies at `origin + (u - W / 2) * spacing_x * axis_x + (v - H / 2) * spacing_y * axis_y`.
    The axes are normalized at construction and are expected to be orthogonal.
    Pixel values live in a (W, H, 1) voxel volume whose frame is built from the
    axes, the plane normal and the corner position, so the slice can be filled
    by the regular resampling machinery.
    """

    def __init__(self,
        size: Sequence[int],
        axis_x: torch.Tensor,
        axis_y: torch.Tensor,
        origin: torch.Tensor,
        spacing: Sequence[float] = (1, 1),
        background: float = 0,
        channels: int = 1,
        dtype: torch.dtype = torch.float32) -> None:
        """
        Args:
            size (Sequence[int]): Number of pixels (W, H).
            axis_x (Tensor): World direction of increasing u.
            axis_y (Tensor): World direction of increasing v.
            origin (Tensor): World position of the slice center.
            spacing (Sequence[float], optional): Pixel size (mm) along u and v.
            background (float, optional): Value of pixels outside the sampled volume.
            channels (int, optional): Number of channels per pixel.
            dtype (dtype, optional): Pixel data type.
        """
        if len(size) != 2 or len(spacing) != 2:
            raise ValueError('slice size and spacing must have two elements')

        axis_x = torch.as_tensor(axis_x, dtype=torch.float64)
        axis_y = torch.as_tensor(axis_y, dtype=torch.float64)
        self._axis_x = axis_x / axis_x.norm()
        self._axis_y = axis_y / axis_y.norm()
        normal = torch.linalg.cross(self._axis_x, self._axis_y)
        if normal.norm() < 1e-8:
            raise ValueError('slice axes must not be parallel')
        self._normal = normal / normal.norm()
        self._origin = torch.as_tensor(origin, dtype=torch.float64)
        self._spacing = torch.as_tensor(spacing, dtype=torch.float64)

        matrix = torch.eye(4, dtype=torch.float64)
        matrix[:3, 0] = self._axis_x * self._spacing[0]
        matrix[:3, 1] = self._axis_y * self._spacing[1]
        matrix[:3, 2] = self._normal
        half = torch.as_tensor(size, dtype=torch.float64) / 2
        matrix[:3, 3] = self._origin - half[0] * matrix[:3, 0] - half[1] * matrix[:3, 1]
        frame = vw.SpatialFrame(matrix)

        self._volume = vw.VoxelVolume((*size, 1), frame, background, channels=channels, dtype=dtype)

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(size={self.size}, origin={self._origin.tolist()}, ' \
               f'axis_x={self._axis_x.tolist()}, axis_y={self._axis_y.tolist()})'

    @property
    def size(self) -> tuple:
        return self._volume.size[:2]

    @property
    def axis_x(self) -> torch.Tensor:
        return self._axis_x

    @property
    def axis_y(self) -> torch.Tensor:
        return self._axis_y

    @property
    def normal(self) -> torch.Tensor:
        return self._normal

    @property
    def origin(self) -> torch.Tensor:
        return self._origin

    @property
    def spacing(self) -> torch.Tensor:
        return self._spacing

    @property
    def frame(self) -> vw.SpatialFrame:
        """
        3D frame of the slice buffer; its third index axis is the plane normal.
        """
        return self._volume.frame

    @property
    def volume(self) -> vw.VoxelVolume:
        """
        Underlying (W, H, 1) voxel volume.
        """
        return self._volume

    @property
    def tensor(self) -> torch.Tensor:
        """
        Pixel data of shape (W, H), or (C, W, H) for multi-channel slices.
        """
        tensor = self._volume.tensor[..., 0]
        return tensor[0] if self._volume.num_channels == 1 else tensor

    def __getitem__(self, index: tuple) -> torch.Tensor:
        u, v = index
        return self._volume.at(u, v, 0)

    def index_to_position(self, index: torch.Tensor) -> torch.Tensor:
        """
        World positions of pixel coordinates of shape (..., 2).
        """
        index = torch.as_tensor(index, dtype=torch.float64)
        index = torch.cat([index, torch.zeros_like(index[..., :1])], -1)
        return self.frame.index_to_position(index)

    def position_to_index(self, position: torch.Tensor) -> torch.Tensor:
        """
        Pixel coordinates of the projection of world positions onto the plane.
        """
        return self.frame.position_to_index(position)[..., :2]

    def on_plane(self, position: torch.Tensor, tolerance: float = 1e-3) -> torch.Tensor:
        """
        Whether world positions of shape (..., 3) lie on the infinite plane of the slice.
        """
        position = torch.as_tensor(position, dtype=torch.float64)
        distance = ((position - self._origin) * self._normal).sum(-1)
        return distance.abs() <= tolerance

    def contains(self, position: torch.Tensor, tolerance: float = 1e-3) -> torch.Tensor:
        """
        Whether world positions of shape (..., 3) lie on the plane and within
        half the slice extent of its center.
        """
        position = torch.as_tensor(position, dtype=torch.float64)
        offset = position - self._origin
        u = (offset * self._axis_x).sum(-1).abs()
        v = (offset * self._axis_y).sum(-1).abs()
        extent = torch.as_tensor(self.size, dtype=torch.float64) * self._spacing / 2
        within = (u <= extent[0] + tolerance) & (v <= extent[1] + tolerance)
        return self.on_plane(position, tolerance) & within


class Mpr:
    """
    Extracts oriented slices from a 3D volume.
    """

    def __init__(self,
        volume: vw.VoxelVolume,
        kind: str | type = 'nearest',
        config: vw.config.Config | None = None) -> None:
        """
        Args:
            volume (VoxelVolume): 3D volume to reformat.
            kind (str or type, optional): Interpolator name or class.
            config (Config, optional): Package settings.
        """
        if volume.ndim != 3:
            raise ValueError(f'multi-planar reformatting requires a 3D volume, got {volume.ndim}D')
        self.volume = volume
        self.kind = kind
        self.config = config

    def get_slice(self, slice: Slice, transform: vw.Transform | torch.Tensor | None = None) -> Slice:
        """
        Fill a slice with values of the volume.

        Args:
            slice (Slice): Slice geometry and pixel buffer, filled in place.
            transform (Transform, optional): Mapping from slice-world to
                volume-world coordinates. Default: identity.

        Returns:
            Slice: The filled slice.
        """
        vw.resample(self.volume, slice.volume, transform, kind=self.kind, config=self.config)
        return slice
