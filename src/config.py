"""
Configuration for the spherical parametrization pipeline.

Three records, one per stage:
    - sphparam: options of the parametrization itself (sphere radius,
      tetrahedral volume bounds, topology check, local convex hull)
    - smacof:   stopping rules of the majorization loop
    - backend:  options handed to the constrained sub-solve backend

All records are frozen. Use update_config_from_dict() to derive a modified
copy with dotted keys, e.g. {"smacof.max_iter": 200}.
"""

import math
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class SphParamConfig:
    """Parametrization options."""

    # None means "estimate from the total mesh area"
    sphrad: Optional[float] = None
    volmin: float = 0.0
    volmax: float = math.inf
    verbose: bool = False
    topology_check: bool = False
    local_convex_hull: bool = True
    # classical scaling mirrors the output when more than this fraction of
    # triangles have negative signed volume
    mirror_fraction: float = 0.5
    seed: Optional[int] = None


@dataclass(frozen=True)
class SmacofConfig:
    """Stop conditions of the majorization loop."""

    max_iter: int = 100
    epsilon: float = 1e-4
    tol_fun: float = 1e-6
    verbose: bool = False


@dataclass(frozen=True)
class BackendConfig:
    """Options for the constrained sub-solve backend."""

    # stop as soon as this many feasible solutions have been found
    limits_solutions: int = 1
    display_verblevel: int = 0
    max_steps: int = 2000
    # Adam step, relative to the sphere radius
    learning_rate: float = 1e-2
    penalty: float = 1e3
    penalty_growth: float = 10.0
    penalty_interval: int = 100
    # volumes are pushed this far (relative to sphrad**3) inside the bounds
    margin: float = 1e-6


@dataclass(frozen=True)
class Config:
    sphparam: SphParamConfig = field(default_factory=SphParamConfig)
    smacof: SmacofConfig = field(default_factory=SmacofConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)

    def validate(self) -> "Config":
        """Raise ValueError if any option is out of range."""
        sp = self.sphparam
        if sp.sphrad is not None and not sp.sphrad > 0:
            raise ValueError(f"sphparam.sphrad must be positive, got {sp.sphrad}")
        if sp.volmin > sp.volmax:
            raise ValueError(
                f"sphparam.volmin ({sp.volmin}) cannot exceed volmax ({sp.volmax})"
            )
        if not 0.0 <= sp.mirror_fraction <= 1.0:
            raise ValueError(
                f"sphparam.mirror_fraction must be in [0, 1], got {sp.mirror_fraction}"
            )

        sm = self.smacof
        if sm.max_iter < 1:
            raise ValueError(f"smacof.max_iter must be >= 1, got {sm.max_iter}")
        if sm.epsilon < 0 or sm.tol_fun < 0:
            raise ValueError("smacof.epsilon and smacof.tol_fun must be non-negative")

        be = self.backend
        if be.limits_solutions < 1:
            raise ValueError(
                f"backend.limits_solutions must be >= 1, got {be.limits_solutions}"
            )
        if be.max_steps < 1 or be.penalty_interval < 1:
            raise ValueError("backend.max_steps and backend.penalty_interval must be >= 1")
        if be.learning_rate <= 0 or be.penalty <= 0 or be.penalty_growth < 1:
            raise ValueError(
                "backend.learning_rate and backend.penalty must be positive, "
                "backend.penalty_growth must be >= 1"
            )
        return self


_PRESETS: Dict[str, Dict[str, Any]] = {
    "default": {},
    # strictly positive volumes force outward normals everywhere
    "strict": {
        "sphparam.volmin": 1e-9,
        "sphparam.topology_check": True,
    },
    "verbose": {
        "sphparam.verbose": True,
        "smacof.verbose": True,
        "backend.display_verblevel": 1,
    },
}


def get_config(name: str = "default") -> Config:
    """
    Get a preset configuration.

    Args:
        name: One of "default", "strict", "verbose"

    Returns:
        Config instance
    """
    if name not in _PRESETS:
        raise ValueError(
            f"Unknown configuration: {name}. Available: {sorted(_PRESETS)}"
        )
    return update_config_from_dict(Config(), _PRESETS[name])


def update_config_from_dict(config: Config, updates: Dict[str, Any]) -> Config:
    """
    Return a copy of config with dotted-key updates applied.

    Args:
        config: Base configuration
        updates: Mapping such as {"smacof.max_iter": 50, "sphparam.volmin": 0.0}

    Returns:
        New Config instance
    """
    sections: Dict[str, Dict[str, Any]] = {}
    for key, value in updates.items():
        section, _, name = key.partition(".")
        if section not in {f.name for f in fields(Config)} or not name:
            raise ValueError(f"Invalid configuration key: {key}")
        valid = {f.name for f in fields(getattr(config, section))}
        if name not in valid:
            raise ValueError(f"Unknown option '{name}' in section '{section}'")
        sections.setdefault(section, {})[name] = value

    for section, values in sections.items():
        config = replace(config, **{section: replace(getattr(config, section), **values)})
    return config
