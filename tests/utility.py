from __future__ import annotations

import random
import torch
import voxwarp as vw


# set seeds globally for reproducibility
torch.manual_seed(0)
random.seed(0)


# store data in a cache to avoid rebuilding for each test
datacache = {}


def from_cache(tag : str, builder : callable):
    """
    Fetch an object from the cache or build it if it is not found.

    Args:
        tag (str): A unique tag for the object.
        builder (callable): A function to build the object if it is not found in the cache.

    Returns:
        Any: The cached object.
    """
    if tag not in datacache:
        datacache[tag] = builder()
    return datacache[tag]


def random_frame(ndim : int = 3, seed : int = 0) -> vw.SpatialFrame:
    """
    A frame with random rotation, anisotropic spacing, and translation.
    """
    generator = torch.Generator().manual_seed(seed)
    uniform = lambda n, lo, hi: lo + (hi - lo) * torch.rand(n, generator=generator, dtype=torch.float64)
    if ndim == 3:
        rotation = uniform(3, -40, 40)
    else:
        rotation = float(uniform(1, -40, 40))
    matrix = vw.compose_affine(translation=uniform(ndim, -20, 20), rotation=rotation,
                               scale=uniform(ndim, 0.5, 2), ndim=ndim)
    return vw.SpatialFrame(matrix)


def random_volume(size : tuple, frame : vw.SpatialFrame | None = None, **kwargs) -> vw.VoxelVolume:
    """
    A volume filled with uniform random values.
    """
    tensor = torch.rand((1, *size))
    return vw.VoxelVolume.from_tensor(tensor, frame, **kwargs)


def rotated_volume() -> vw.VoxelVolume:
    """
    A 16^3 volume whose frame rotates by -90 degrees about z and translates by
    (-10, 0, 0), with markers of value 100, 10 and 5 at voxels (0, 0, 0),
    (10, 0, 0) and (0, 5, 0).
    """
    frame = vw.translation_matrix([-10, 0, 0]) @ vw.rotation_matrix_z(-90)
    volume = vw.VoxelVolume((16, 16, 16), frame)
    volume[0, 0, 0] = 100
    volume[10, 0, 0] = 10
    volume[0, 5, 0] = 5
    return volume


def gaussian_field(value=(2, 1, -1), mean=(16, 16, 16), variance=25,
                   affine : vw.AffineTransform | None = None) -> vw.RbfTransform:
    """
    Analytic deformable transform with a single isotropic Gaussian.
    """
    variance = torch.full((len(mean),), float(variance))
    return vw.RbfTransform(affine, [vw.GaussianRbf(value, mean, variance)], ndim=len(mean))


class FieldWrapper(vw.Transform):
    """
    Hides the type of a transform so that it is treated as a generic transform.
    """

    def __init__(self, transform : vw.Transform):
        self.wrapped = transform

    @property
    def affine(self):
        return self.wrapped.affine

    def transform(self, points):
        return self.wrapped.transform(points)
