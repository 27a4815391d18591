import logging
import pytest
import voxwarp as vw


def test_defaults():
    config = vw.config.Config()
    assert config.solver.newton_epsilon == 0.01
    assert config.solver.descent_epsilon == 0.1
    assert config.solver.descent_iterations == 10 * config.solver.newton_max_iter
    assert vw.config.SolverConfig(descent_max_iter=7).descent_iterations == 7
    assert config.resampling.parallel


def test_from_dict():
    config = vw.config.Config.from_dict({'solver': {'newton_max_iter': 5}, 'resampling': {'max_workers': 2}})
    assert config.solver.newton_max_iter == 5
    assert config.solver.gradient_step == 0.1
    assert config.resampling.max_workers == 2

    with pytest.raises(ValueError):
        vw.config.Config.from_dict({'solvers': {}})
    with pytest.raises(ValueError):
        vw.config.Config.from_dict({'solver': {'tolerance': 1}})


def test_logging_setup(tmp_path):
    logfile = tmp_path / 'logs' / 'voxwarp.log'
    logger = vw.logging_config.setup_logging('DEBUG', log_file=logfile)
    try:
        assert logger.level == logging.DEBUG

        # resampling logs its duration at debug level
        vol = vw.VoxelVolume((3, 3, 3))
        vw.resample(vol, vol.zeros_like())
        for handler in logger.handlers:
            handler.flush()
        assert 'resampling' in logfile.read_text()

        # repeated setup does not duplicate handlers
        logger = vw.logging_config.setup_logging('INFO', log_file=logfile)
        assert sum(isinstance(h, logging.FileHandler) for h in logger.handlers) == 1
    finally:
        for handler in list(logger.handlers):
            if not isinstance(handler, logging.NullHandler):
                logger.removeHandler(handler)
                handler.close()
        logger.setLevel(logging.NOTSET)


def test_timer():
    with vw.logging_config.Timer('work') as timer:
        sum(range(1000))
    assert timer.elapsed >= 0
