"""
Model Configuration

Strongly typed, immutable description of an optimal stopping experiment:
state process, payoff, time discretisation, regression and simulation
design settings. Also holds the per-run context that owns the random
streams and the accumulated diagnostics.
"""

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
import yaml

from .exceptions import InvalidConfig


class PayoffType(str, Enum):
    PUT = "put"
    CALL = "call"
    BASKET_PUT = "basket_put"
    BASKET_CALL = "basket_call"
    MAX_CALL = "max_call"
    MIN_PUT = "min_put"
    DIGITAL_PUT = "digital_put"


class RegressionMethod(str, Enum):
    SPLINE = "spline"
    LM = "lm"
    KM = "km"
    TRAINKM = "trainkm"
    HETGP = "hetgp"


class KernelFamily(str, Enum):
    SE = "se"
    MATERN5_2 = "matern5_2"


class TrendForm(str, Enum):
    NONE = "none"
    CONSTANT = "constant"
    LINEAR = "linear"


class DesignMethod(str, Enum):
    FIXED = "fixed"
    QMC = "qmc"
    PATH = "path"
    SEQUENTIAL = "sequential"
    ADAPTIVE = "adaptive"


class Acquisition(str, Enum):
    SMCU = "smcu"
    TMSE = "tmse"
    MCU = "mcu"


def _as_enum(enum_cls, value, name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        choices = ", ".join(m.value for m in enum_cls)
        raise InvalidConfig(f"{name} must be one of {{{choices}}}, got {value!r}")


def _as_tuple(value) -> Optional[Tuple[float, ...]]:
    if value is None:
        return None
    return tuple(float(v) for v in np.atleast_1d(np.asarray(value, dtype=float)))


def _as_bounds(value, name: str) -> Tuple[float, float]:
    lo, hi = (float(v) for v in value)
    if not 0 < lo <= hi:
        raise InvalidConfig(f"{name} must satisfy 0 < lower <= upper, got {value}")
    return lo, hi


@dataclass(frozen=True)
class RegressionConfig:
    """
    Regression settings.

    Parameters
    ----------
    method : RegressionMethod
        Surrogate family used at every time step
    kernel : KernelFamily
        Covariance kernel of the GP variants
    trend : TrendForm
        Prior mean of the GP variants
    knots : int
        Interior knots of the smoothing spline basis
    degree : int
        Polynomial degree of the linear-basis regression
    lengthscale, variance, nugget
        Fixed hyperparameters of the ``km`` method; ``lengthscale`` and
        ``variance`` default to data-driven values when left as None
    lengthscale_bounds, variance_bounds, nugget_bounds
        Boxes for maximum likelihood estimation
    n_restarts : int
        Extra optimiser restarts for maximum likelihood
    """
    method: RegressionMethod = RegressionMethod.TRAINKM
    kernel: KernelFamily = KernelFamily.MATERN5_2
    trend: TrendForm = TrendForm.CONSTANT
    knots: int = 20
    degree: int = 3
    lengthscale: Optional[Tuple[float, ...]] = None
    variance: Optional[float] = None
    nugget: float = 1e-6
    lengthscale_bounds: Tuple[float, float] = (1e-2, 1e3)
    variance_bounds: Tuple[float, float] = (1e-4, 1e4)
    nugget_bounds: Tuple[float, float] = (1e-8, 1e2)
    n_restarts: int = 0

    def __post_init__(self):
        object.__setattr__(self, "method", _as_enum(RegressionMethod, self.method, "method"))
        object.__setattr__(self, "kernel", _as_enum(KernelFamily, self.kernel, "kernel"))
        object.__setattr__(self, "trend", _as_enum(TrendForm, self.trend, "trend"))
        object.__setattr__(self, "lengthscale", _as_tuple(self.lengthscale))
        object.__setattr__(self, "lengthscale_bounds",
                           _as_bounds(self.lengthscale_bounds, "lengthscale_bounds"))
        object.__setattr__(self, "variance_bounds",
                           _as_bounds(self.variance_bounds, "variance_bounds"))
        object.__setattr__(self, "nugget_bounds",
                           _as_bounds(self.nugget_bounds, "nugget_bounds"))

        if self.knots < 0:
            raise InvalidConfig(f"knots must be non-negative, got {self.knots}")
        if self.degree < 1:
            raise InvalidConfig(f"degree must be at least 1, got {self.degree}")
        if self.nugget < 0:
            raise InvalidConfig(f"nugget must be non-negative, got {self.nugget}")
        if self.variance is not None and self.variance <= 0:
            raise InvalidConfig(f"variance must be positive, got {self.variance}")
        if self.lengthscale is not None and min(self.lengthscale) <= 0:
            raise InvalidConfig(f"lengthscale must be positive, got {self.lengthscale}")
        if self.n_restarts < 0:
            raise InvalidConfig(f"n_restarts must be non-negative, got {self.n_restarts}")


@dataclass(frozen=True)
class DesignConfig:
    """
    Simulation design settings.

    Parameters
    ----------
    method : DesignMethod
        How training inputs are chosen at each step
    lower, upper : tuple of float
        Bounding box of fixed, QMC and candidate designs
    grid : tuple of tuple, optional
        Explicit fixed design; overrides the box-generated grid
    size : int
        Target number of unique inputs per step
    reps : int
        Replications per input for fixed, QMC and sequential designs
    init_size : int
        Initial QMC design size of sequential and adaptive designs
    look_ahead : int, optional
        Look-ahead window w of the pathwise responses (None = to maturity)
    candidates : int
        Candidate pool size of the acquisition search
    update_freq : int
        Additions between hyperparameter re-optimisations
    pilot_reps, batch_reps : int
        Replications of a new input / of a replication batch (adaptive)
    budget : int, optional
        Hard cap on simulations per step (adaptive and sequential)
    acquisition : Acquisition
        Acquisition function of sequential designs
    ucb_gamma : float
        Uncertainty weight of the straddle acquisition
    sequence : str
        Low-discrepancy sequence, 'sobol' or 'halton'
    n_paths : int
        Forward training paths of the path-based design
    """
    method: DesignMethod = DesignMethod.FIXED
    lower: Optional[Tuple[float, ...]] = None
    upper: Optional[Tuple[float, ...]] = None
    grid: Optional[Tuple[Tuple[float, ...], ...]] = None
    size: int = 25
    reps: int = 200
    init_size: int = 20
    look_ahead: Optional[int] = None
    candidates: int = 200
    update_freq: int = 10
    pilot_reps: int = 10
    batch_reps: int = 10
    budget: Optional[int] = None
    acquisition: Acquisition = Acquisition.SMCU
    ucb_gamma: float = 1.0
    sequence: str = "sobol"
    n_paths: int = 2000

    def __post_init__(self):
        object.__setattr__(self, "method", _as_enum(DesignMethod, self.method, "design"))
        object.__setattr__(self, "acquisition",
                           _as_enum(Acquisition, self.acquisition, "acquisition"))
        object.__setattr__(self, "lower", _as_tuple(self.lower))
        object.__setattr__(self, "upper", _as_tuple(self.upper))
        if self.grid is not None:
            grid = np.asarray(self.grid, dtype=float)
            if grid.ndim == 1:
                grid = grid[:, None]
            object.__setattr__(self, "grid", tuple(tuple(row) for row in grid))

        for name in ("size", "reps", "init_size", "candidates", "update_freq",
                     "pilot_reps", "batch_reps", "n_paths"):
            if getattr(self, name) < 1:
                raise InvalidConfig(f"{name} must be at least 1, got {getattr(self, name)}")
        if self.look_ahead is not None and self.look_ahead < 1:
            raise InvalidConfig(f"look_ahead must be at least 1, got {self.look_ahead}")
        if self.budget is not None and self.budget < 1:
            raise InvalidConfig(f"budget must be positive, got {self.budget}")
        if self.budget is not None and self.method in (DesignMethod.SEQUENTIAL,
                                                       DesignMethod.ADAPTIVE):
            init_reps = self.pilot_reps if self.method is DesignMethod.ADAPTIVE else self.reps
            if self.init_size * init_reps > self.budget:
                raise InvalidConfig(
                    f"Initial design of {self.init_size} x {init_reps} simulations "
                    f"exceeds the budget of {self.budget}")
        if self.sequence not in ("sobol", "halton"):
            raise InvalidConfig(f"sequence must be 'sobol' or 'halton', got {self.sequence!r}")
        if (self.lower is None) != (self.upper is None):
            raise InvalidConfig("lower and upper must be given together")
        if self.lower is not None:
            if len(self.lower) != len(self.upper):
                raise InvalidConfig("lower and upper must have the same length")
            if any(lo >= hi for lo, hi in zip(self.lower, self.upper)):
                raise InvalidConfig(f"lower {self.lower} must lie below upper {self.upper}")


@dataclass(frozen=True)
class OSPModel:
    """
    Optimal stopping problem for a multi-dimensional GBM state process.

    Parameters
    ----------
    dim : int
        State dimension d
    x0 : tuple of float
        Initial state
    strike : float
        Payoff strike
    payoff : PayoffType
        Immediate exercise reward
    r : float
        Risk-free rate used for drift and discounting
    div : float or tuple
        Dividend yield, scalar or per coordinate
    sigma : float or tuple
        Volatility, scalar or per coordinate
    corr : float or d x d matrix
        Correlation between coordinates
    T : float
        Maturity
    dt : float
        Time between exercise opportunities
    """
    dim: int = 1
    x0: Tuple[float, ...] = (40.0,)
    strike: float = 40.0
    payoff: PayoffType = PayoffType.PUT
    r: float = 0.06
    div: Union[float, Tuple[float, ...]] = 0.0
    sigma: Union[float, Tuple[float, ...]] = 0.2
    corr: Union[float, Tuple[Tuple[float, ...], ...]] = 0.0
    T: float = 1.0
    dt: float = 0.04
    regression: RegressionConfig = field(default_factory=RegressionConfig)
    design: DesignConfig = field(default_factory=DesignConfig)

    def __post_init__(self):
        if self.dim < 1:
            raise InvalidConfig(f"dim must be at least 1, got {self.dim}")
        object.__setattr__(self, "payoff", _as_enum(PayoffType, self.payoff, "payoff"))
        if isinstance(self.regression, dict):
            object.__setattr__(self, "regression", RegressionConfig(**self.regression))
        if isinstance(self.design, dict):
            object.__setattr__(self, "design", DesignConfig(**self.design))

        x0 = _as_tuple(self.x0)
        if len(x0) == 1 and self.dim > 1:
            x0 = x0 * self.dim
        if len(x0) != self.dim:
            raise InvalidConfig(f"x0 has {len(x0)} entries for dim={self.dim}")
        object.__setattr__(self, "x0", x0)

        for name in ("sigma", "div"):
            value = _as_tuple(getattr(self, name))
            if len(value) not in (1, self.dim):
                raise InvalidConfig(
                    f"{name} has {len(value)} entries, expected 1 or dim={self.dim}")
            object.__setattr__(self, name, value if len(value) > 1 else value[0])
        if np.any(self.sigma_vec < 0):
            raise InvalidConfig(f"sigma must be non-negative, got {self.sigma}")

        corr = np.asarray(self.corr, dtype=float)
        if corr.ndim == 0:
            if not -1 < float(corr) < 1:
                raise InvalidConfig(f"Correlation must be in (-1, 1), got {float(corr)}")
            object.__setattr__(self, "corr", float(corr))
        else:
            if corr.shape != (self.dim, self.dim):
                raise InvalidConfig(
                    f"Correlation matrix has shape {corr.shape}, expected {(self.dim, self.dim)}")
            if not np.allclose(corr, corr.T) or not np.allclose(np.diag(corr), 1.0):
                raise InvalidConfig("Correlation matrix must be symmetric with unit diagonal")
            object.__setattr__(self, "corr", tuple(tuple(row) for row in corr))

        if self.T <= 0 or self.dt <= 0:
            raise InvalidConfig(f"T and dt must be positive, got T={self.T}, dt={self.dt}")
        n_steps = int(round(self.T / self.dt))
        if n_steps < 2 or abs(n_steps * self.dt - self.T) > 1e-8 * max(1.0, self.T):
            raise InvalidConfig(
                f"T={self.T} must be a multiple (at least 2) of dt={self.dt}")

        if self.regression.method is RegressionMethod.SPLINE and self.dim > 1:
            raise InvalidConfig("Spline regression supports one-dimensional states only")
        if self.design.lower is not None and len(self.design.lower) != self.dim:
            raise InvalidConfig(
                f"Design box has {len(self.design.lower)} coordinates for dim={self.dim}")
        if self.design.grid is not None and len(self.design.grid[0]) != self.dim:
            raise InvalidConfig(
                f"Design grid has {len(self.design.grid[0])} columns for dim={self.dim}")

    @property
    def n_steps(self) -> int:
        """Number of exercise opportunities, the last one at maturity."""
        return int(round(self.T / self.dt))

    @property
    def x0_vec(self) -> np.ndarray:
        return np.asarray(self.x0, dtype=float)

    @property
    def sigma_vec(self) -> np.ndarray:
        return np.broadcast_to(np.asarray(self.sigma, dtype=float), (self.dim,)).copy()

    @property
    def div_vec(self) -> np.ndarray:
        return np.broadcast_to(np.asarray(self.div, dtype=float), (self.dim,)).copy()

    @property
    def corr_matrix(self) -> np.ndarray:
        if isinstance(self.corr, float):
            corr = np.full((self.dim, self.dim), self.corr)
            np.fill_diagonal(corr, 1.0)
            return corr
        return np.asarray(self.corr, dtype=float)

    def discount(self, n_steps) -> np.ndarray:
        """Discount factor over ``n_steps`` time steps."""
        return np.exp(-self.r * self.dt * np.asarray(n_steps, dtype=float))

    def box(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Bounding box of generated designs.

        Defaults to ``x0 * exp(-/+ 3 sigma sqrt(T))`` per coordinate when the
        design section does not set one.
        """
        if self.design.lower is not None:
            return np.asarray(self.design.lower), np.asarray(self.design.upper)
        spread = 3.0 * self.sigma_vec * np.sqrt(self.T)
        return self.x0_vec * np.exp(-spread), self.x0_vec * np.exp(spread)

    def replace(self, **changes) -> "OSPModel":
        """Copy with top-level fields, or ``regression``/``design`` dicts, updated."""
        for name in ("regression", "design"):
            if isinstance(changes.get(name), dict):
                changes[name] = dataclasses.replace(getattr(self, name), **changes[name])
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "OSPModel":
        """Build a model from a (YAML-style) nested dictionary."""
        config = dict(config or {})
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = set(config) - known
        if unknown:
            raise InvalidConfig(f"Unknown model keys: {sorted(unknown)}")
        try:
            regression = RegressionConfig(**(config.pop("regression", None) or {}))
            design = DesignConfig(**(config.pop("design", None) or {}))
        except TypeError as e:
            raise InvalidConfig(str(e))
        return cls(regression=regression, design=design, **config)


def load_model(config_path: str) -> OSPModel:
    """Load a model configuration from a YAML file."""
    try:
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise InvalidConfig(f"Could not parse {config_path}: {e}")
    return OSPModel.from_dict(config)


class RunContext:
    """
    Per-run mutable state threaded through the engine and the allocators.

    The root seed sequence spawns two independent streams: one for training
    (design construction, look-ahead paths) and one for testing (forward
    policy evaluation), so the two path sets never share random numbers.

    Parameters
    ----------
    seed : int, optional
        Root entropy of the run (default: 42)
    verbose : bool, optional
        Print a progress line per time step (default: False)
    """

    def __init__(self, seed: Optional[int] = 42, verbose: bool = False):
        self.seed = seed
        self.verbose = verbose
        root = np.random.SeedSequence(seed)
        train_seq, test_seq = root.spawn(2)
        self.training_rng = np.random.default_rng(train_seq)
        self.testing_rng = np.random.default_rng(test_seq)
        self.records: List[Dict[str, Any]] = []

    def record(self, **fields) -> None:
        self.records.append(fields)

    def log(self, message: str) -> None:
        if self.verbose:
            print(message)

    def diagnostics(self) -> pd.DataFrame:
        """Per-step diagnostics recorded so far, earliest step first."""
        frame = pd.DataFrame(self.records)
        if not frame.empty:
            frame = frame.sort_values("step").reset_index(drop=True)
        return frame
