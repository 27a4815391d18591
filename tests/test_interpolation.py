import pytest
import torch
import voxwarp as vw

from . import utility


def test_nearest():
    vol = utility.random_volume((4, 5, 6), background=-1)
    interpolator = vw.NearestInterpolator(vol)

    # rounding to the closest voxel
    values = interpolator(torch.tensor([[1., 2., 3.], [1.4, 2.4, 2.6], [0.6, 1.5, 3.]]))
    assert values.shape == (3, 1)
    assert values[0, 0] == vol.at(1, 2, 3)
    assert values[1, 0] == vol.at(1, 2, 3)
    assert values[2, 0] == vol.at(1, 2, 3)

    # points rounding outside of the grid get the background
    values = interpolator(torch.tensor([[-0.6, 0., 0.], [3.6, 0., 0.], [0., 0., 5.4]]))
    assert values[:, 0].tolist() == [-1, -1, vol.at(0, 0, 5).item()]

    # the volume data type is preserved
    vol = vw.VoxelVolume.from_tensor(torch.arange(24, dtype=torch.int16).view(2, 3, 4))
    assert vw.NearestInterpolator(vol)(torch.zeros(3)).dtype == torch.int16


def test_linear():
    vol = utility.random_volume((4, 5, 6), background=-1)
    linear = vw.LinearInterpolator(vol)
    nearest = vw.NearestInterpolator(vol)

    # at voxel centers, linear and nearest interpolation agree
    points = vw.volume.volume_grid(vol.size).view(-1, 3)
    assert torch.allclose(linear(points), nearest(points).double(), atol=1e-7)

    # halfway between two voxels
    value = linear(torch.tensor([1.5, 2., 3.]))
    expected = (vol.at(1, 2, 3) + vol.at(2, 2, 3)) / 2
    assert torch.isclose(value[0], expected.double(), atol=1e-6)

    # the center of a cell averages its eight corners
    value = linear(torch.tensor([0.5, 0.5, 0.5]))
    assert torch.isclose(value[0], vol.tensor[0, :2, :2, :2].double().mean(), atol=1e-6)

    # the last index is still inside, anything beyond gets the background
    assert linear(torch.tensor([3., 4., 5.]))[0] == vol.at(3, 4, 5).double()
    assert linear(torch.tensor([3.01, 4., 5.]))[0] == -1
    assert linear(torch.tensor([0., -0.01, 0.]))[0] == -1


def test_linear_ramp_is_exact():

    # linear interpolation reproduces a linear function of the index
    grid = vw.volume.volume_grid((6, 7, 8))
    ramp = (2 * grid[..., 0] - grid[..., 1] + 0.5 * grid[..., 2]).float()
    vol = vw.VoxelVolume.from_tensor(ramp)
    points = torch.rand(50, 3, dtype=torch.float64) * torch.tensor([5., 6., 7.], dtype=torch.float64)
    expected = 2 * points[:, 0] - points[:, 1] + 0.5 * points[:, 2]
    assert torch.allclose(vw.LinearInterpolator(vol)(points)[:, 0], expected, atol=1e-5)


def test_bilinear_multichannel():
    tensor = torch.stack([torch.zeros(3, 3), torch.ones(3, 3)])
    tensor[0, 1, 1] = 4
    vol = vw.VoxelVolume.from_tensor(tensor, vw.SpatialFrame.identity(2), background=9)
    values = vw.get_interpolator('linear')(vol)(torch.tensor([[0.5, 1.], [1., 0.5], [5., 5.]]))
    assert values.shape == (3, 2)
    assert values[0].tolist() == [2, 1]
    assert values[1].tolist() == [2, 1]
    assert values[2].tolist() == [9, 9]


def test_registry():
    assert vw.get_interpolator('nearest') is vw.NearestInterpolator
    assert vw.get_interpolator('trilinear') is vw.LinearInterpolator
    assert vw.get_interpolator(vw.NearestInterpolator) is vw.NearestInterpolator
    with pytest.raises(ValueError):
        vw.get_interpolator('cubic')

    class ConstantInterpolator(vw.Interpolator):
        def interpolate(self, points):
            return torch.full((len(points), self.channels), 3.)

    vw.interpolation.register_interpolator('constant', ConstantInterpolator)
    vol = vw.VoxelVolume((2, 2, 2))
    assert (vol.sample(torch.zeros(4, 3), kind='constant') == 3).all()
    with pytest.raises(ValueError):
        vw.interpolation.register_interpolator('bad', dict)


def test_empty_volume():
    vol = vw.VoxelVolume((0, 3, 3), background=5)
    assert (vw.LinearInterpolator(vol)(torch.zeros(2, 3)) == 5).all()
    assert (vw.NearestInterpolator(vol)(torch.zeros(2, 3)) == 5).all()


def test_bounds_policy():

    # a point is inside when every voxel read for it is in the grid
    vol = vw.VoxelVolume.from_tensor(torch.arange(1, 9, dtype=torch.float32).view(2, 2, 2), background=-1)
    points = torch.tensor([[-0.4, 0., 0.], [-0.5, 0., 0.], [1.4, 1., 1.], [1.5, 0., 0.]])
    assert vw.NearestInterpolator(vol)(points)[:, 0].tolist() == [1, 1, 8, -1]
    assert vw.LinearInterpolator(vol)(points)[:, 0].tolist() == [-1, -1, -1, -1]


def test_integer_volumes():
    tensor = torch.arange(27, dtype=torch.int64).view(3, 3, 3)
    vol = vw.VoxelVolume.from_tensor(tensor, background=-7)

    # nearest keeps the integer type, linear samples a float64 copy
    values = vw.NearestInterpolator(vol)(torch.tensor([[2., 1., 0.], [5., 0., 0.]]))
    assert values.dtype == torch.int64
    assert values[:, 0].tolist() == [21, -7]
    values = vw.LinearInterpolator(vol)(torch.tensor([[0.5, 0., 0.], [1., 1., 1.]]))
    assert values.dtype == torch.float64
    assert values[:, 0].tolist() == [4.5, 13]

    # the prepared volume shares geometry and background
    prepared = vw.LinearInterpolator.prepare(vol)
    assert prepared.dtype == torch.float64
    assert prepared.background == -7
    assert vw.NearestInterpolator.prepare(vw.VoxelVolume((2, 2, 2))).dtype == torch.float32
