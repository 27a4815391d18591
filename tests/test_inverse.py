import pytest
import torch
import voxwarp as vw

from . import utility


def rbf_ddf() -> vw.DenseDeformableField:
    field = utility.gaussian_field(value=(3, -2, 1), mean=(16, 16, 16), variance=30)
    return utility.from_cache('ddf-inverse', lambda: vw.DenseDeformableField.create(
        field, vw.SpatialFrame.identity(), (32, 32, 32), 32))


class CollapsingTransform(vw.Transform):
    """
    Flattens the x axis, so its jacobian is singular everywhere.
    """

    @property
    def affine(self):
        return vw.AffineTransform.identity()

    def transform(self, points):
        return torch.as_tensor(points, dtype=torch.float64) * torch.tensor([0., 1., 1.], dtype=torch.float64)


def test_affine_inverse():
    generator = torch.Generator().manual_seed(1)
    for _ in range(5):
        matrix = vw.compose_affine(translation=torch.rand(3, generator=generator) * 20 - 10,
                                   rotation=torch.rand(3, generator=generator) * 60 - 30,
                                   scale=torch.rand(3, generator=generator) + 0.5)
        affine = vw.AffineTransform(matrix)
        ddf = vw.DenseDeformableField.create(affine, vw.SpatialFrame.identity(), (10, 10, 10), 5)
        for x in torch.rand(5, 3, generator=generator, dtype=torch.float64) * 100 - 50:
            result = ddf.inverse_transform(ddf.transform(x))
            assert result.converged
            assert torch.allclose(result.point, x, atol=1e-3)

            # the solver also runs directly on affine transforms
            result = vw.InverseSolver(affine).solve(affine.transform(x))
            assert result.converged
            assert torch.allclose(result.point, x, atol=1e-3)


def test_ddf_inverse():
    ddf = rbf_ddf()
    points = torch.rand(20, 3, generator=torch.Generator().manual_seed(2), dtype=torch.float64) * 12 + 10

    # the majority of points should be recovered
    recovered = 0
    for x in points:
        result = ddf.inverse_transform(ddf.transform(x))
        if result.converged and (result.point - x).norm() < 1e-1:
            recovered += 1
    assert recovered > len(points) // 2


def test_gradient_descent_fallback():
    ddf = rbf_ddf()
    x = torch.tensor([17., 15., 16.5], dtype=torch.float64)
    v = ddf.transform(x)

    # without newton iterations, gradient descent has to do the work
    config = vw.config.SolverConfig(newton_max_iter=0, descent_max_iter=500)
    solver = vw.InverseSolver(ddf, config)
    assert not solver.newton(v).converged
    result = solver.solve(v)
    assert result.converged
    assert (result.point - x).norm() < 0.2


def test_non_convergence_is_reported():
    ddf = rbf_ddf()
    v = ddf.transform(torch.tensor([16., 16., 16.], dtype=torch.float64))

    # a single descent step is not enough, but a point is still returned
    config = vw.config.SolverConfig(newton_max_iter=0, descent_max_iter=1)
    result = vw.InverseSolver(ddf, config).solve(v)
    assert not result.converged
    assert result.point.shape == (3,)
    assert torch.isfinite(result.point).all()


def test_degenerate_jacobian():
    with pytest.raises(vw.DegenerateJacobianError):
        CollapsingTransform().inverse_transform(torch.tensor([1., 2., 3.]))


def test_solve_many():
    ddf = rbf_ddf()
    x = torch.tensor([[14., 15., 16.], [18., 17., 15.], [16., 16., 16.], [20., 12., 18.]], dtype=torch.float64)
    result = vw.InverseSolver(ddf).solve_many(ddf.transform(x))
    assert result.point.shape == (4, 3)
    assert result.converged.all()
    assert torch.allclose(result.point, x, atol=1e-1)

    # sequential and parallel runs agree
    sequential = vw.InverseSolver(ddf).solve_many(ddf.transform(x), vw.config.ResamplingConfig(parallel=False))
    assert torch.allclose(sequential.point, result.point)


def test_descent_step_halving():

    # for f(x) = 2x a step of 0.8 overshoots the minimum and the residual grows,
    # so the step is halved to 0.4, which contracts the residual
    affine = vw.AffineTransform(vw.scaling_matrix([2, 2, 2]))
    v = torch.tensor([2., 2., 2.], dtype=torch.float64)
    start = torch.zeros(3, dtype=torch.float64)

    config = vw.config.SolverConfig(descent_step=0.8, descent_max_iter=100)
    result = vw.InverseSolver(affine, config).gradient_descent(v, start=start)
    assert result.converged
    assert torch.allclose(result.point, torch.ones(3, dtype=torch.float64), atol=0.05)

    # with the step held fixed the iteration diverges
    config = vw.config.SolverConfig(descent_step=0.8, descent_min_step=0.8, descent_max_iter=100)
    result = vw.InverseSolver(affine, config).gradient_descent(v, start=start)
    assert not result.converged
    assert torch.equal(result.point, start)


def test_shared_solver_across_threads():
    ddf = rbf_ddf()
    x = torch.rand(12, 3, generator=torch.Generator().manual_seed(3), dtype=torch.float64) * 8 + 12
    targets = ddf.transform(x)

    # one solver instance answers concurrent queries independently
    solver = vw.InverseSolver(ddf)
    parallel = solver.solve_many(targets, vw.config.ResamplingConfig(max_workers=4))
    for target, point in zip(targets, parallel.point):
        assert torch.equal(solver.solve(target).point, point)
