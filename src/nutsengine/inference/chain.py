"""
Single-chain runner.

A chain owns its random generator, adaptation state and draw sequence; it
shares nothing mutable with other chains. ``run_chain`` is a module-level
function so it can run in a worker process and send the finished ``Chain``
back to the coordinator.
"""

import logging
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence
import numpy as np
from numpy.typing import NDArray

from nutsengine import defaults
from nutsengine.exceptions import SamplerError
from nutsengine.inference.adaptation import (
    ChainPhase,
    DualAveraging,
    WarmupSchedule,
    WelfordEstimator,
)
from nutsengine.inference.nuts import Metric, NUTSKernel
from nutsengine.model.log_density import LogDensity

logger = logging.getLogger(__name__)

STAT_NAMES = ("accept_stat", "step_size", "tree_depth", "n_leapfrog", "divergent", "energy")


class SamplerConfig(NamedTuple):
    """Per-run settings shared by every chain."""

    iterations: int
    warmup: int
    thin: int = 1
    target_accept: float = defaults.DEFAULT_TARGET_ACCEPT
    max_treedepth: int = defaults.DEFAULT_MAX_TREEDEPTH
    max_energy_error: float = defaults.DEFAULT_MAX_ENERGY_ERROR
    metric: str = defaults.DEFAULT_METRIC
    init_radius: float = defaults.DEFAULT_INIT_RADIUS
    max_init_attempts: int = defaults.DEFAULT_MAX_INIT_ATTEMPTS
    save_warmup: bool = False


class Draw(NamedTuple):
    """One retained iteration."""

    iteration: int
    values: NDArray[np.float64]
    log_posterior: float
    log_likelihood: NDArray[np.float64]
    divergent: bool


class ChainProgress(NamedTuple):
    """Progress message posted by a running chain."""

    chain: int
    iteration: int
    phase: ChainPhase
    step_size: float
    divergences: int


class ChainFailure(NamedTuple):
    """A chain that stopped with a ``SamplerError``."""

    chain: int
    message: str


def _read_only(values: List, dtype=np.float64) -> NDArray:
    array = np.array(values, dtype=dtype)
    array.flags.writeable = False
    return array


class Chain:
    """
    Draws and sampler statistics of one chain.

    Appended to only by ``run_chain``; read-only after ``freeze``.

    Attributes
    ----------
    chain_id : int
        Chain index within the run.
    parameter_names : List[str]
        Flat names of the constrained parameter elements.
    n_observations : int
        Length of each pointwise log-likelihood row.
    cancelled : bool
        Whether the run stopped early on request.
    n_divergent : int
        Divergent post-warm-up transitions, thinned-out iterations included.
    step_size : float
        Adapted step size used for sampling.
    inv_mass : NDArray[np.float64]
        Adapted inverse mass matrix (vector for a diagonal metric).
    """

    def __init__(self, chain_id: int, parameter_names: Sequence[str], n_observations: int = 0) -> None:
        self.chain_id = chain_id
        self.parameter_names = list(parameter_names)
        self.n_observations = n_observations
        self.cancelled = False
        self.n_divergent = 0
        self.step_size: Optional[float] = None
        self.inv_mass: Optional[NDArray[np.float64]] = None
        self._sections: Dict[str, Dict[str, list]] = {
            "sampling": {"draws": [], **{name: [] for name in STAT_NAMES}},
            "warmup": {"draws": [], **{name: [] for name in STAT_NAMES}},
        }
        self._frozen: Optional[Dict[str, Dict[str, Any]]] = None

    def append(self, draw: Draw, stats: Dict[str, float], warmup: bool = False) -> None:
        if self._frozen is not None:
            raise RuntimeError(f"Chain {self.chain_id} is frozen")
        section = self._sections["warmup" if warmup else "sampling"]
        section["draws"].append(draw)
        for name in STAT_NAMES:
            section[name].append(stats[name])

    def freeze(self, step_size: float, inv_mass: NDArray[np.float64]) -> None:
        """Convert the draw lists to read-only arrays."""
        self.step_size = float(step_size)
        self.inv_mass = np.array(inv_mass)
        self.inv_mass.flags.writeable = False

        n_params = len(self.parameter_names)
        n_obs = self.n_observations
        frozen = {}
        for key, section in self._sections.items():
            draws: List[Draw] = section["draws"]
            arrays = {
                "draws": tuple(draws),
                "values": _read_only([d.values for d in draws]).reshape(len(draws), n_params),
                "log_posterior": _read_only([d.log_posterior for d in draws]),
                "log_likelihood": _read_only([d.log_likelihood for d in draws]).reshape(len(draws), n_obs),
            }
            for name in STAT_NAMES:
                dtype = bool if name == "divergent" else (np.int64 if name in ("tree_depth", "n_leapfrog") else np.float64)
                arrays[name] = _read_only(section[name], dtype=dtype)
            frozen[key] = arrays
        self._frozen = frozen
        self._sections = {}

    def _section(self, warmup: bool) -> Dict[str, Any]:
        if self._frozen is None:
            raise RuntimeError(f"Chain {self.chain_id} is still running")
        return self._frozen["warmup" if warmup else "sampling"]

    @property
    def draws(self) -> tuple:
        return self._section(False)["draws"]

    @property
    def values(self) -> NDArray[np.float64]:
        """Constrained draws, shape (n_draws, n_parameters)."""
        return self._section(False)["values"]

    @property
    def log_posterior(self) -> NDArray[np.float64]:
        return self._section(False)["log_posterior"]

    @property
    def log_likelihood(self) -> NDArray[np.float64]:
        """Pointwise log-likelihood, shape (n_draws, n_obs)."""
        return self._section(False)["log_likelihood"]

    @property
    def divergent(self) -> NDArray[np.bool_]:
        return self._section(False)["divergent"]

    def stats(self, warmup: bool = False) -> Dict[str, NDArray]:
        """Per-draw sampler statistics (``STAT_NAMES`` plus ``lp``)."""
        section = self._section(warmup)
        out = {name: section[name] for name in STAT_NAMES}
        out["lp"] = section["log_posterior"]
        return out

    def warmup_values(self) -> NDArray[np.float64]:
        """Constrained warm-up draws (empty unless ``save_warmup``)."""
        return self._section(True)["values"]

    def __len__(self) -> int:
        return len(self.draws)

    def __repr__(self) -> str:
        """String representation."""
        n = len(self) if self._frozen is not None else len(self._sections["sampling"]["draws"])
        return (
            f"Chain(id={self.chain_id}, draws={n}, divergent={self.n_divergent}, "
            f"cancelled={self.cancelled})"
        )


def initialize(
    target: LogDensity,
    rng: np.random.Generator,
    radius: float,
    init: Optional[Dict[str, NDArray[np.float64]]],
    max_attempts: int,
    chain_id: int = 0,
) -> NDArray[np.float64]:
    """
    Find a starting point with finite log density and gradient.

    The user's ``init`` is used for the first attempt only; later attempts
    draw every coordinate uniformly from (-radius, radius).

    Raises
    ------
    SamplerError
        If no attempt out of ``max_attempts`` gives a finite log density.
    """
    for attempt in range(max_attempts):
        q = target.initial_point(rng, radius, init if attempt == 0 else None)
        log_density, grad = target.log_density_gradient(q)
        if np.isfinite(log_density) and np.all(np.isfinite(grad)):
            if attempt > 0:
                logger.debug("Chain %d initialised after %d attempts", chain_id, attempt + 1)
            return q
    raise SamplerError(
        f"Chain {chain_id}: log density is not finite at any of {max_attempts} initial points"
    )


def run_chain(
    target: LogDensity,
    config: SamplerConfig,
    chain_id: int,
    seed,
    init: Optional[Dict[str, NDArray[np.float64]]] = None,
    progress: Optional[Callable[[ChainProgress], None]] = None,
    stop_event=None,
) -> Chain:
    """
    Run warm-up and sampling for one chain.

    Parameters
    ----------
    target : LogDensity
        Target density.
    config : SamplerConfig
        Run settings.
    chain_id : int
        Chain index, used in progress messages and logs.
    seed : int or np.random.SeedSequence
        Seed of this chain's generator.
    init : Dict[str, array_like], optional
        Constrained initial values for some or all parameters.
    progress : Callable, optional
        Receives ``ChainProgress`` messages.
    stop_event : optional
        Anything with ``is_set()``; checked between iterations.

    Returns
    -------
    chain : Chain
        Frozen chain (possibly cancelled early).

    Raises
    ------
    SamplerError
        If initialisation fails or the step size degenerates.
    """
    rng = np.random.default_rng(seed)
    dense = config.metric == "dense"
    dimension = target.dimension

    kernel = NUTSKernel(target, config.max_treedepth, config.max_energy_error)
    kernel.metric = Metric.identity(dimension, dense=dense)
    schedule = WarmupSchedule(config.warmup)
    adapter = DualAveraging(config.target_accept)
    estimator = WelfordEstimator(dimension, dense=dense)

    q = initialize(target, rng, config.init_radius, init, config.max_init_attempts, chain_id)
    point = kernel.initial_point(q)
    if config.warmup > 0:
        adapter.restart(kernel.find_reasonable_step_size(point, rng))

    chain = Chain(chain_id, target.flat_parameter_names, target.n_observations)
    report_every = max(1, config.iterations // 100)
    divergences = 0
    phase = schedule.phase(0)

    def report(iteration: int, current: ChainPhase) -> None:
        if progress is not None:
            progress(ChainProgress(chain_id, iteration, current, float(kernel.step_size), divergences))

    for iteration in range(config.iterations):
        if stop_event is not None and stop_event.is_set():
            chain.cancelled = True
            logger.info("Chain %d cancelled after %d iterations", chain_id, iteration)
            break

        phase = schedule.phase(iteration)
        step_size = kernel.step_size
        transition = kernel.transition(point, rng)
        point = transition.point
        if transition.divergent:
            divergences += 1

        if phase is ChainPhase.SAMPLING:
            chain.n_divergent += int(transition.divergent)
            keep = (iteration - config.warmup) % config.thin == 0
        else:
            kernel.step_size = adapter.update(transition.accept_stat)
            if phase is ChainPhase.WARMUP_MASS_MATRIX_ADAPTATION:
                estimator.add_sample(point.q)
            if schedule.is_window_end(iteration):
                kernel.metric = Metric(estimator.estimate())
                estimator.restart()
                adapter.restart(kernel.find_reasonable_step_size(point, rng))
                logger.debug(
                    "Chain %d: metric updated at iteration %d, step size %.4g",
                    chain_id, iteration + 1, kernel.step_size,
                )
            if iteration == config.warmup - 1:
                kernel.step_size = adapter.final_step_size
                logger.debug("Chain %d: warm-up done, step size %.4g", chain_id, kernel.step_size)
            keep = config.save_warmup and iteration % config.thin == 0

        if keep:
            draw = Draw(
                iteration=iteration,
                values=target.constrained_vector(point.q),
                log_posterior=float(point.log_density),
                log_likelihood=target.pointwise_log_likelihood(point.q),
                divergent=transition.divergent,
            )
            stats = {
                "accept_stat": transition.accept_stat,
                "step_size": step_size,
                "tree_depth": transition.tree_depth,
                "n_leapfrog": transition.n_leapfrog,
                "divergent": transition.divergent,
                "energy": transition.energy,
            }
            chain.append(draw, stats, warmup=phase is not ChainPhase.SAMPLING)

        if (iteration + 1) % report_every == 0:
            report(iteration + 1, phase)

    chain.freeze(kernel.step_size, kernel.metric.inv_mass)
    report(config.iterations if not chain.cancelled else iteration, ChainPhase.DONE)
    logger.debug("Chain %d finished: %r", chain_id, chain)
    return chain
