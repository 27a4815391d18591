"""
Methods related to a voxel grid with a world-space frame.
"""

from __future__ import annotations

from typing import Sequence

import torch
import voxwarp as vw


class VoxelVolume:
    """
    A dense 3D (or 2D) voxel grid of (optionally multi-channel) samples with a
    spatial frame and a background value.

    The storage tensor has dimensions $(C, X, Y, Z)$ (or $(C, X, Y)$ in 2D),
    where $C$ is the number of channels and the spatial dimensions are the
    volume **size**. Voxels are addressed as `volume[x, y, z]`. The storage is
    always contiguous, so that the flat offset of a voxel is the dot product of
    its index with the spatial strides.
    """

    def __init__(self,
        size: Sequence[int],
        frame: vw.SpatialFrame | torch.Tensor | None = None,
        background: float = 0,
        channels: int = 1,
        dtype: torch.dtype = torch.float32,
        device: torch.device | None = None,
        fill_background: bool = False) -> None:
        """
        Args:
            size (Sequence[int]): Spatial size, (X, Y, Z) or (X, Y).
            frame (SpatialFrame, optional): Index-to-world frame. Default: identity.
            background (float, optional): Value returned by interpolators outside
                of the volume.
            channels (int, optional): Number of channels per voxel.
            dtype (dtype, optional): Storage data type.
            device (device, optional): Storage device.
            fill_background (bool, optional): Fill the storage with the background
                value instead of zeros.
        """
        size = tuple(int(s) for s in size)
        if len(size) not in (2, 3):
            raise ValueError(f'expected a 2D or 3D volume size, got {size}')
        if any(s < 0 for s in size):
            raise ValueError(f'volume size must not be negative, got {size}')
        fill = background if fill_background else 0
        tensor = torch.full((channels, *size), fill, dtype=dtype, device=device)
        self._set_storage(tensor, frame, background)

    @classmethod
    def from_tensor(cls,
        tensor: torch.Tensor,
        frame: vw.SpatialFrame | torch.Tensor | None = None,
        background: float = 0) -> VoxelVolume:
        """
        Wrap an existing tensor of shape $(C, X, Y, Z)$, $(X, Y, Z)$ or, when the
        frame is 2D, $(C, X, Y)$ or $(X, Y)$.

        Args:
            tensor (Tensor): Voxel data. Non-contiguous data is copied.
            frame (SpatialFrame, optional): Index-to-world frame. Default: identity.
            background (float, optional): Out-of-bounds value.

        Returns:
            VoxelVolume: The wrapped volume.
        """
        tensor = torch.as_tensor(tensor)
        ndim = 3 if frame is None else vw.frame.cast_spatial_frame(frame).ndim
        if tensor.ndim == ndim:
            tensor = tensor.unsqueeze(0)
        elif tensor.ndim != ndim + 1:
            raise ValueError(f'expected a {ndim}D or {ndim + 1}D tensor for a {ndim}D frame, '
                             f'got a {tensor.ndim}D input')
        volume = cls.__new__(cls)
        volume._set_storage(tensor.contiguous(), frame, background)
        return volume

    def _set_storage(self, tensor: torch.Tensor, frame, background: float) -> None:
        self._tensor = tensor
        self._frame = vw.frame.cast_spatial_frame(frame, tensor.ndim - 1)
        if self._frame.device != tensor.device:
            self._frame = self._frame.to(tensor.device)
        self._background = background

    # -------------------------------------------------------------------------
    # property getters and core methods
    # -------------------------------------------------------------------------

    @property
    def tensor(self) -> torch.Tensor:
        """
        The storage tensor, of shape $(C, *size)$.
        """
        return self._tensor

    @property
    def frame(self) -> vw.SpatialFrame:
        """
        The spatial frame mapping voxel indices to world positions.
        """
        return self._frame

    @property
    def background(self) -> float:
        """
        Value of every position outside the voxel grid.
        """
        return self._background

    @background.setter
    def background(self, value: float) -> None:
        self._background = value

    @property
    def size(self) -> tuple:
        """
        Spatial size of the grid, (X, Y, Z) or (X, Y).
        """
        return tuple(self._tensor.shape[1:])

    @property
    def baseshape(self) -> torch.Size:
        return self._tensor.shape[1:]

    @property
    def shape(self) -> torch.Size:
        return self._tensor.shape

    @property
    def ndim(self) -> int:
        """
        Number of spatial dimensions (2 or 3).
        """
        return self._tensor.ndim - 1

    @property
    def num_channels(self) -> int:
        return self._tensor.shape[0]

    @property
    def num_voxels(self) -> int:
        return self._tensor[0].numel() if self.num_channels else 0

    @property
    def device(self) -> torch.device:
        return self._tensor.device

    @property
    def dtype(self) -> torch.dtype:
        return self._tensor.dtype

    @property
    def spacing(self) -> torch.Tensor:
        """
        Voxel spacing of the frame.
        """
        return self._frame.spacing

    @property
    def origin(self) -> torch.Tensor:
        """
        World position of voxel zero.
        """
        return self._frame.origin

    @property
    def strides(self) -> tuple:
        """
        Storage strides (in elements) of the spatial axes.
        """
        return self._tensor.stride()[1:]

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(size={self.size}, channels={self.num_channels}, ' \
               f'dtype={self.dtype}, background={self.background})'

    def new(self,
        tensor: torch.Tensor,
        frame: vw.SpatialFrame | None = None) -> VoxelVolume:
        """
        Construct a new volume with the provided storage tensor, while
        preserving any unchanged properties of this volume.

        Args:
            tensor (Tensor): The new storage tensor.
            frame (SpatialFrame, optional): The new frame. If None, the current
                frame is propagated.
        """
        frame = self.frame if frame is None else frame
        return self.__class__.from_tensor(tensor, frame, self.background)

    def clone(self) -> VoxelVolume:
        """
        Deep copy of the volume. The copy shares no storage with this volume.
        """
        return self.__class__.from_tensor(self._tensor.clone(), self._frame, self._background)

    def zeros_like(self, channels: int | None = None, dtype: torch.dtype | None = None) -> VoxelVolume:
        """
        New zero-filled volume with the same size, frame and background.
        """
        channels = self.num_channels if channels is None else channels
        dtype = self.dtype if dtype is None else dtype
        return self.__class__(self.size, self.frame, self.background, channels=channels,
                              dtype=dtype, device=self.device)

    def fill(self, value: float) -> VoxelVolume:
        """
        Fill every voxel with a value, in place.
        """
        self._tensor.fill_(value)
        return self

    def to(self, device: torch.device) -> VoxelVolume:
        return self.__class__.from_tensor(self._tensor.to(device), self._frame.to(device),
                                          self._background)

    # -------------------------------------------------------------------------
    # voxel access
    # -------------------------------------------------------------------------

    def at(self, *index: int) -> torch.Tensor:
        """
        Value at an integer voxel index. The index must be inside the volume.

        Returns:
            Tensor: A scalar for single-channel volumes, otherwise a
            vector of channel values.
        """
        value = self._tensor[(slice(None), *index)]
        return value[0] if self.num_channels == 1 else value

    def __getitem__(self, index: tuple) -> torch.Tensor:
        return self.at(*index)

    def __setitem__(self, index: tuple, value) -> None:
        self._tensor[(slice(None), *index)] = torch.as_tensor(value, dtype=self.dtype)

    def inside(self, *index: float) -> bool:
        """
        Whether a (possibly continuous) voxel index lies within the grid,
        i.e. between 0 and size - 1 on every axis.
        """
        if len(index) != self.ndim:
            raise ValueError(f'expected {self.ndim} coordinates, got {len(index)}')
        return all(0 <= i <= s - 1 for i, s in zip(index, self.size))

    def iterator(self, *index: int) -> DirectionalIterator:
        """
        Directional iterator positioned at a voxel.
        """
        return DirectionalIterator(self, index)

    def index_to_position(self, index: torch.Tensor) -> torch.Tensor:
        """
        Convert voxel indices of shape (..., ndim) to world positions.
        """
        return self._frame.index_to_position(index)

    def position_to_index(self, position: torch.Tensor) -> torch.Tensor:
        """
        Convert world positions of shape (..., ndim) to continuous voxel indices.
        """
        return self._frame.position_to_index(position)

    # -------------------------------------------------------------------------
    # sampling and resampling
    # -------------------------------------------------------------------------

    def sample(self,
        points: torch.Tensor,
        space: vw.Space | str = 'world',
        kind: str = 'linear') -> torch.Tensor:
        """
        Sample volume values at a set of points.

        Args:
            points (Tensor): Points in world or voxel coordinates with shape (..., ndim).
            space (Space, optional): The coordinate space of the points.
            kind (str, optional): The interpolator, either 'linear' or 'nearest'.

        Returns:
            Tensor: The sampled values, with shape (..., C). Points outside the
            volume get the background value.
        """
        points = torch.as_tensor(points, dtype=torch.float64)
        if vw.Space(space) == 'world':
            points = self.position_to_index(points)
        interpolator = vw.interpolation.get_interpolator(kind)(self)
        return interpolator(points)

    def resample_like(self,
        frame: vw.SpatialFrame | torch.Tensor,
        size: Sequence[int] | None = None,
        transform: vw.Transform | None = None,
        kind: str = 'linear',
        config: vw.config.Config | None = None) -> VoxelVolume:
        """
        Resample the volume into a new grid.

        Args:
            frame (SpatialFrame): Frame of the new grid.
            size (Sequence[int], optional): Size of the new grid. Default: this
                volume's size.
            transform (Transform, optional): Mapping from the new grid's world
                coordinates to this volume's world coordinates. Default: identity.
            kind (str, optional): Interpolator name.
            config (Config, optional): Resampling settings.

        Returns:
            VoxelVolume: The resampled volume, with this volume's background.
        """
        size = self.size if size is None else size
        target = self.__class__(size, frame, self.background, channels=self.num_channels,
                                dtype=self.dtype, device=self.device)
        return vw.resample(self, target, transform, kind=kind, config=config)


class DirectionalIterator:
    """
    Cursor over the voxels of a volume that moves along the x, y, or z axis
    by adjusting a flat storage offset, without recomputing a full index.
    """

    def __init__(self, volume: VoxelVolume, index: Sequence[int]) -> None:
        if len(index) != volume.ndim:
            raise ValueError(f'expected a {volume.ndim}D index, got {tuple(index)}')
        self._volume = volume
        self._flat = volume.tensor.view(volume.num_channels, volume.num_voxels)
        self._strides = volume.strides
        self._offset = sum(int(i) * s for i, s in zip(index, self._strides))
        self._single = volume.num_channels == 1

    def _read(self, offset: int) -> torch.Tensor:
        value = self._flat[:, offset]
        return value[0] if self._single else value

    @property
    def offset(self) -> int:
        """
        Flat storage offset of the current voxel.
        """
        return self._offset

    @property
    def index(self) -> tuple:
        """
        Voxel index of the current position.
        """
        index, remainder = [], self._offset
        for stride in self._strides:
            index.append(remainder // stride)
            remainder %= stride
        return tuple(index)

    def get(self) -> torch.Tensor:
        return self._read(self._offset)

    def set(self, value) -> None:
        self._flat[:, self._offset] = torch.as_tensor(value, dtype=self._flat.dtype)

    def copy(self) -> DirectionalIterator:
        other = self.__class__.__new__(self.__class__)
        other.__dict__.update(self.__dict__)
        return other

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DirectionalIterator):
            return NotImplemented
        return self._volume is other._volume and self._offset == other._offset

    # moves

    def addx(self, n: int = 1) -> DirectionalIterator:
        self._offset += n * self._strides[0]
        return self

    def addy(self, n: int = 1) -> DirectionalIterator:
        self._offset += n * self._strides[1]
        return self

    def addz(self, n: int = 1) -> DirectionalIterator:
        self._offset += n * self._strides[2]
        return self

    # peeks

    def pickx(self, n: int = 1) -> torch.Tensor:
        return self._read(self._offset + n * self._strides[0])

    def picky(self, n: int = 1) -> torch.Tensor:
        return self._read(self._offset + n * self._strides[1])

    def pickz(self, n: int = 1) -> torch.Tensor:
        return self._read(self._offset + n * self._strides[2])


def volume_grid(
    size: Sequence[int],
    matrix: vw.SpatialFrame | torch.Tensor | None = None,
    device: torch.device | None = None) -> torch.Tensor:
    """
    Construct a grid of voxel coordinates of shape (*size, ndim).

    Args:
        size (Sequence[int]): Spatial shape of the grid.
        matrix (SpatialFrame or Tensor, optional): Homogeneous matrix applied
            to the grid coordinates, for example a frame to get world positions.
        device (device, optional): Device on which to allocate the grid.

    Returns:
        Tensor: float64 grid tensor.
    """
    ranges = [torch.arange(s, dtype=torch.float64, device=device) for s in size]
    grid = torch.stack(torch.meshgrid(*ranges, indexing='ij'), dim=-1)
    if matrix is not None:
        grid = vw.frame.apply_matrix(vw.frame.homogeneous_matrix(matrix, grid.device), grid)
    return grid


def volumes_equal(a: VoxelVolume, b: VoxelVolume, vol_tol: float = 0, geom_tol: float = 1e-6) -> bool:
    """
    Compare two volumes.

    Args:
        a (VoxelVolume): The first volume.
        b (VoxelVolume): The second volume.
        vol_tol (float, optional): Absolute tolerance on voxel values.
        geom_tol (float, optional): Absolute tolerance on frame matrices.

    Returns:
        bool: True if sizes, frames and voxel values match.
    """
    if a.shape != b.shape:
        return False
    if not a.frame.allclose(b.frame, atol=geom_tol):
        return False
    if vol_tol == 0:
        return bool(torch.equal(a.tensor, b.tensor.to(a.dtype)))
    return bool(torch.allclose(a.tensor.double(), b.tensor.double(), atol=vol_tol, rtol=0))
