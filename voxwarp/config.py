"""
Default numerical settings for inverse solving and resampling.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields


@dataclass
class SolverConfig:
    """Settings of the Newton / gradient-descent inverse solver."""
    newton_max_iter: int = 50  # Newton iteration cap
    newton_epsilon: float = 0.01  # residual norm (mm) accepted by Newton
    descent_max_iter: int | None = None  # defaults to 10x the Newton cap
    descent_epsilon: float = 0.1  # residual norm (mm) accepted by gradient descent
    descent_step: float = 0.1  # initial gradient-descent step size
    descent_min_step: float = 0.01  # step halving stops below this value
    gradient_step: float = 0.1  # finite-difference step (mm) of transform gradients

    @property
    def descent_iterations(self) -> int:
        if self.descent_max_iter is None:
            return 10 * self.newton_max_iter
        return self.descent_max_iter


@dataclass
class ResamplingConfig:
    """Settings of the per-slice resampling loop."""
    parallel: bool = True  # fan slices out over a thread pool
    max_workers: int | None = None  # thread pool size, None lets the executor decide


@dataclass
class Config:
    """Aggregated package settings."""
    solver: SolverConfig = field(default_factory=SolverConfig)
    resampling: ResamplingConfig = field(default_factory=ResamplingConfig)

    @classmethod
    def from_dict(cls, values: dict) -> Config:
        """
        Build a configuration from a nested dictionary, such as one parsed from
        a json or yaml file. Unknown keys raise a ValueError.

        Args:
            values (dict): Mapping with optional 'solver' and 'resampling' sections.

        Returns:
            Config: The configuration.
        """
        sections = {'solver': SolverConfig, 'resampling': ResamplingConfig}
        unknown = set(values) - set(sections)
        if unknown:
            raise ValueError(f'unknown configuration sections: {sorted(unknown)}')

        kwargs = {}
        for name, section in sections.items():
            options = values.get(name, {})
            allowed = {f.name for f in fields(section)}
            unknown = set(options) - allowed
            if unknown:
                raise ValueError(f'unknown {name} options: {sorted(unknown)}')
            kwargs[name] = section(**options)
        return cls(**kwargs)


# settings used when callers do not pass their own
defaults = Config()
