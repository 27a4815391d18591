import math
import pytest
import torch
import voxwarp as vw

from . import utility


def test_rotated_volume_slice():

    # the volume frame rotates by -90 degrees about z and translates by (-10, 0, 0),
    # so voxel (i, j, 0) lies at world (j - 10, -i, 0)
    vol = utility.rotated_volume()
    mpr = vw.Mpr(vol)

    # an axis-aligned slice centered at world (-2, -7, 0), so that its pixel (0, 0)
    # lies at world (-10, -15, 0)
    slice = vw.Slice((16, 16), [1, 0, 0], [0, 1, 0], [-2, -7, 0], spacing=(1, 1))
    mpr.get_slice(slice)
    assert slice[0, 15] == 100
    assert slice[0, 5] == 10
    assert slice[5, 15] == 5
    assert slice.tensor.sum() == 115


def test_slice_origin_is_center():

    # a 5^3 volume translated to (11, 17, 20) and filled with 1, 2, 3... x fastest
    values = torch.arange(1, 126, dtype=torch.int32).view(5, 5, 5).permute(2, 1, 0)
    vol = vw.VoxelVolume.from_tensor(values, vw.translation_matrix([11, 17, 20]))

    # the slice origin is its center, so pixel (3, 4) of a 6x6 slice centered
    # at (11, 16, 20) lies on the first voxel
    slice = vw.Slice((6, 6), [1, 0, 0], [0, 1, 0], [11, 16, 20], dtype=torch.int32)
    vw.Mpr(vol).get_slice(slice)
    assert slice[3, 4] == 1
    assert slice[4, 4] == 2
    assert slice[5, 4] == 3
    assert slice[3, 5] == 6
    assert slice[4, 5] == 7
    assert slice[5, 5] == 8
    assert slice[0, 0] == 0


def test_slice_with_transform():
    vol = utility.rotated_volume()

    # moving the slice center and compensating with a transform gives the same pixels
    reference = vw.Mpr(vol).get_slice(vw.Slice((16, 16), [1, 0, 0], [0, 1, 0], [-2, -7, 0]))
    transform = vw.AffineTransform(vw.translation_matrix([-2, -7, 0]))
    moved = vw.Mpr(vol).get_slice(vw.Slice((16, 16), [1, 0, 0], [0, 1, 0], [0, 0, 0]), transform)
    assert torch.equal(moved.tensor, reference.tensor)


def test_oblique_slice():

    # a linear ramp along x is reproduced by linear interpolation on a diagonal slice
    grid = vw.volume.volume_grid((16, 16, 16))
    vol = vw.VoxelVolume.from_tensor(grid[..., 0].float())
    slice = vw.Slice((8, 4), [1, 1, 0], [0, 0, 1], [6, 6, 6])
    vw.Mpr(vol, kind='linear').get_slice(slice)
    u = torch.arange(8, dtype=torch.float64)[:, None].expand(8, 4)
    assert torch.allclose(slice.tensor.double(), 6 + (u - 4) / math.sqrt(2), atol=1e-5)


def test_slice_geometry():
    slice = vw.Slice((10, 20), [2, 0, 0], [0, 0, 3], [1, 2, 3], spacing=(0.5, 2))

    # axes are normalized and the normal completes a right-handed basis
    assert torch.allclose(slice.axis_x, torch.tensor([1., 0., 0.], dtype=torch.float64))
    assert torch.allclose(slice.axis_y, torch.tensor([0., 0., 1.], dtype=torch.float64))
    assert torch.allclose(slice.normal, torch.tensor([0., -1., 0.], dtype=torch.float64))
    assert slice.size == (10, 20)
    assert slice.volume.size == (10, 20, 1)

    # the center pixel lies on the origin
    center = slice.index_to_position(torch.tensor([5., 10.]))
    assert torch.allclose(center, torch.tensor([1., 2., 3.], dtype=torch.float64))

    # pixel coordinates map to world positions and back
    position = slice.index_to_position(torch.tensor([4., 5.]))
    assert torch.allclose(position, torch.tensor([0.5, 2., -7.], dtype=torch.float64))
    assert torch.allclose(slice.position_to_index(position), torch.tensor([4., 5.], dtype=torch.float64))
    assert slice.contains(position)
    assert not slice.contains(position + torch.tensor([0., 1., 0.], dtype=torch.float64))

    # points on the plane but beyond half the extent are outside the slice
    beyond = torch.tensor([1 + 3., 2., 3.], dtype=torch.float64)
    assert slice.on_plane(beyond)
    assert not slice.contains(beyond)

    with pytest.raises(ValueError):
        vw.Slice((4, 4), [1, 0, 0], [2, 0, 0], [0, 0, 0])


def test_mpr_requires_3d_volume():
    with pytest.raises(ValueError):
        vw.Mpr(vw.VoxelVolume((4, 4), vw.SpatialFrame.identity(2)))
