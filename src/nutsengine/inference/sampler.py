"""
NUTS sampler: runs chains and collects their draws.

Orchestrates independent chains (sequentially or one worker process per
chain), relays progress, handles cancellation and failed chains, and
exposes the pooled draws as read-only arrays.

Key outputs:
- posterior: parameter -> (chain, draw, *shape)
- log_likelihood: (chain, draw, n_obs), input to WAIC / PSIS-LOO
- sample_stats: accept_stat, step_size, tree_depth, n_leapfrog, divergent,
  energy, lp
- Divergences are counted and reported with a DivergenceWarning
"""

from concurrent.futures import FIRST_COMPLETED, ProcessPoolExecutor, wait
from concurrent.futures.process import BrokenProcessPool
import logging
import multiprocessing
import os
import pickle
import queue as queue_module
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union
import warnings
import numpy as np
from numpy.typing import NDArray
import arviz as az
from tqdm import tqdm

from nutsengine import defaults
from nutsengine.exceptions import DivergenceWarning, SamplerError
from nutsengine.inference.chain import (
    STAT_NAMES,
    Chain,
    ChainFailure,
    ChainProgress,
    SamplerConfig,
    run_chain,
)
from nutsengine.model.log_density import LogDensity

logger = logging.getLogger(__name__)

InitSpec = Union[None, Dict[str, Any], Sequence[Optional[Dict[str, Any]]]]

# Names used by arviz for the sampler statistics
_ARVIZ_STAT_NAMES = {
    "accept_stat": "acceptance_rate",
    "step_size": "step_size",
    "tree_depth": "tree_depth",
    "n_leapfrog": "n_steps",
    "divergent": "diverging",
    "energy": "energy",
    "lp": "lp",
}


class InferenceSummary:
    """Draws and statistics from a sampler run."""

    def __init__(
        self,
        chains: List[Chain],
        failures: List[ChainFailure],
        parameter_shapes: Dict[str, Tuple[int, ...]],
        config: SamplerConfig,
        sampling_time: float,
        observed_name: str = "y",
    ) -> None:
        """
        Initialize inference summary.

        Parameters
        ----------
        chains : List[Chain]
            Chains that completed (or were cancelled) without error. Chains
            with fewer draws than the longest are kept in ``partial_chains``
            and left out of the pooled arrays.
        failures : List[ChainFailure]
            Chains that stopped with a SamplerError.
        parameter_shapes : Dict[str, Tuple[int, ...]]
            Constrained parameter shapes, in vector order.
        config : SamplerConfig
            Settings of the run.
        sampling_time : float
            Total wall time (seconds)
        observed_name : str
            Name of the observed data the log-likelihood refers to.
        """
        self.chains = sorted(chains, key=lambda c: c.chain_id)
        self.failures = list(failures)
        self.parameter_shapes = dict(parameter_shapes)
        self.config = config
        self.sampling_time = sampling_time
        self.observed_name = observed_name

        # Cancelled chains stop short; only chains of full length are pooled
        self.n_draws = max((len(chain) for chain in self.chains), default=0)
        self.pooled_chains = [chain for chain in self.chains if len(chain) == self.n_draws]
        self.partial_chains = [chain for chain in self.chains if len(chain) < self.n_draws]
        self.n_chains = len(self.pooled_chains)
        self.total_samples = self.n_draws * self.n_chains
        if self.partial_chains:
            logger.warning(
                "Chains %s stopped early with %s draws; pooling the %d chain(s) with %d draws",
                [c.chain_id for c in self.partial_chains],
                [len(c) for c in self.partial_chains],
                self.n_chains, self.n_draws,
            )

        self.posterior = self._split(self._stack(lambda c: c.values))
        self.log_likelihood = self._stack(lambda c: c.log_likelihood)
        self.sample_stats = {
            name: self._stack(lambda c, name=name: c.stats()[name])
            for name in STAT_NAMES + ("lp",)
        }

        self.warmup_posterior: Dict[str, NDArray[np.float64]] = {}
        if config.save_warmup:
            n_warm = min(len(c.warmup_values()) for c in self.pooled_chains)
            self.warmup_posterior = self._split(self._stack(lambda c: c.warmup_values()[:n_warm]))

    def _stack(self, getter: Callable[[Chain], NDArray]) -> NDArray:
        array = np.stack([getter(chain) for chain in self.pooled_chains])
        array.flags.writeable = False
        return array

    def _split(self, values: NDArray[np.float64]) -> Dict[str, NDArray[np.float64]]:
        """(chain, draw, flat) -> {name: (chain, draw, *shape)}."""
        n_chains, n_draws = values.shape[:2]
        posterior = {}
        offset = 0
        for name, shape in self.parameter_shapes.items():
            size = int(np.prod(shape, dtype=np.int64))
            block = values[:, :, offset:offset + size].reshape(n_chains, n_draws, *shape)
            block = np.array(block)
            block.flags.writeable = False
            posterior[name] = block
            offset += size
        return posterior

    @property
    def parameter_names(self) -> List[str]:
        return list(self.parameter_shapes)

    @property
    def flat_parameter_names(self) -> List[str]:
        return list(self.chains[0].parameter_names)

    @property
    def divergences(self) -> int:
        """Divergent post-warm-up transitions across all chains."""
        return int(sum(chain.n_divergent for chain in self.chains))

    @property
    def cancelled(self) -> bool:
        return any(chain.cancelled for chain in self.chains)

    @property
    def step_sizes(self) -> NDArray[np.float64]:
        return np.array([chain.step_size for chain in self.chains])

    def draws_table(self) -> Dict[str, NDArray]:
        """
        Flat parameter-by-iteration table.

        Returns
        -------
        table : Dict[str, NDArray]
            Columns ``chain``, ``draw``, one column per parameter element
            (``beta``, ``a[1]``, ...), then ``lp`` and ``divergent``. Rows are
            draws ordered by chain then iteration; chains that stopped early
            contribute the draws they made.
        """
        chains = [c for c in self.chains if len(c) > 0] or self.chains
        table: Dict[str, NDArray] = {
            "chain": np.concatenate([np.full(len(c), c.chain_id) for c in chains]),
            "draw": np.concatenate([np.arange(len(c)) for c in chains]),
        }
        values = np.concatenate([c.values for c in chains])
        for j, name in enumerate(self.flat_parameter_names):
            table[name] = values[:, j]
        table["lp"] = np.concatenate([c.log_posterior for c in chains])
        table["divergent"] = np.concatenate([c.divergent for c in chains])
        for column in table.values():
            column.flags.writeable = False
        return table

    def to_inference_data(self):
        """
        Export to ``arviz.InferenceData``.

        Returns
        -------
        idata : arviz.InferenceData
            Groups posterior, sample_stats, log_likelihood (if the target has
            observations) and warmup_posterior (if warm-up draws were saved).
        """
        sample_stats = {_ARVIZ_STAT_NAMES[name]: np.asarray(value) for name, value in self.sample_stats.items()}
        kwargs: Dict[str, Any] = {
            "posterior": {name: np.asarray(value) for name, value in self.posterior.items()},
            "sample_stats": sample_stats,
        }
        if self.log_likelihood.shape[-1] > 0:
            kwargs["log_likelihood"] = {self.observed_name: np.asarray(self.log_likelihood)}
        if self.warmup_posterior:
            kwargs["warmup_posterior"] = {name: np.asarray(v) for name, v in self.warmup_posterior.items()}
            kwargs["save_warmup"] = True
        return az.from_dict(**kwargs)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"InferenceSummary(draws={self.n_draws}, warmup={self.config.warmup}, "
            f"chains={self.n_chains}, failed={len(self.failures)}, "
            f"divergences={self.divergences}, time={self.sampling_time:.1f}s)"
        )


def _chain_task(
    target: LogDensity,
    config: SamplerConfig,
    chain_id: int,
    seed,
    init,
    progress_queue,
    stop_event,
) -> Chain:
    """Worker entry point: run one chain, posting progress on a queue."""
    progress = progress_queue.put if progress_queue is not None else None
    return run_chain(target, config, chain_id, seed, init, progress, stop_event)


class NUTSSampler:
    """
    No-U-Turn sampler with windowed warm-up adaptation.

    Runs independent chains on a ``LogDensity`` (e.g. a ``Model`` from
    ``ModelBuilder.build()``) and returns an ``InferenceSummary``.
    """

    def __init__(
        self,
        target_accept: float = defaults.DEFAULT_TARGET_ACCEPT,
        max_treedepth: int = defaults.DEFAULT_MAX_TREEDEPTH,
        metric: str = defaults.DEFAULT_METRIC,
        max_energy_error: float = defaults.DEFAULT_MAX_ENERGY_ERROR,
    ) -> None:
        """
        Initialize sampler.

        Parameters
        ----------
        target_accept : float
            Dual-averaging target for the acceptance statistic, in (0, 1).
            Default 0.8.
        max_treedepth : int
            Maximum tree depth (2^10 = 1024 leapfrog steps max). Default 10.
        metric : str
            ``"diag"`` or ``"dense"`` mass matrix. Default ``"diag"``.
        max_energy_error : float
            Energy error that marks a transition divergent. Default 1000.
        """
        if not (0.0 < target_accept < 1.0):
            raise ValueError(f"target_accept must be in (0, 1). Got {target_accept}")
        if max_treedepth < 1:
            raise ValueError(f"max_treedepth must be >= 1. Got {max_treedepth}")
        if metric not in ("diag", "dense"):
            raise ValueError(f"metric must be 'diag' or 'dense'. Got {metric}")
        if not max_energy_error > 0:
            raise ValueError(f"max_energy_error must be positive. Got {max_energy_error}")

        self.target_accept = target_accept
        self.max_treedepth = max_treedepth
        self.metric = metric
        self.max_energy_error = max_energy_error

    @staticmethod
    def _chain_seeds(random_seed, chains: int) -> List:
        if random_seed is None or isinstance(random_seed, (int, np.integer)):
            return list(np.random.SeedSequence(random_seed).spawn(chains))
        seeds = list(random_seed)
        if len(seeds) != chains:
            raise ValueError(f"random_seed needs one seed per chain ({chains}). Got {len(seeds)}")
        return seeds

    @staticmethod
    def _chain_inits(init: InitSpec, chains: int) -> List[Optional[Dict[str, Any]]]:
        if init is None or isinstance(init, dict):
            return [init] * chains
        inits = list(init)
        if len(inits) != chains:
            raise ValueError(f"init needs one dict per chain ({chains}). Got {len(inits)}")
        return inits

    def sample(
        self,
        model: LogDensity,
        iterations: int = defaults.DEFAULT_ITERATIONS,
        warmup: int = defaults.DEFAULT_WARMUP,
        chains: int = defaults.DEFAULT_CHAINS,
        cores: Optional[int] = None,
        thin: int = 1,
        random_seed=None,
        init: InitSpec = None,
        init_radius: float = defaults.DEFAULT_INIT_RADIUS,
        save_warmup: bool = False,
        progressbar: bool = False,
        callback: Optional[Callable[[ChainProgress], None]] = None,
        stop_event=None,
    ) -> InferenceSummary:
        """
        Run NUTS sampling.

        Parameters
        ----------
        model : LogDensity
            Target (from ModelBuilder.build() or a FunctionLogDensity)
        iterations : int
            Total iterations per chain, warm-up included. Default 2000.
        warmup : int
            Warm-up iterations per chain, < iterations. Default 1000.
        chains : int
            Number of chains. Default 4.
        cores : int, optional
            Worker processes. None or 1 runs chains sequentially.
        thin : int
            Keep every ``thin``-th post-warm-up draw. Default 1.
        random_seed : int or sequence, optional
            Run seed (per-chain streams are spawned from it) or one seed per
            chain.
        init : dict or list of dict, optional
            Constrained initial values, shared or per chain.
        init_radius : float
            Random initial points are uniform in (-r, r) on the unconstrained
            scale. Default 2.
        save_warmup : bool
            Keep warm-up draws. Default False.
        progressbar : bool
            Show a tqdm progress bar. Default False.
        callback : Callable, optional
            Receives every ``ChainProgress`` message.
        stop_event : optional
            Anything with ``is_set()``; chains stop between iterations once set.

        Returns
        -------
        summary : InferenceSummary
            Draws, statistics, failed chains, timing.

        Raises
        ------
        ValueError
            If the configuration is invalid.
        SamplerError
            If every chain fails.
        """
        if chains < 1:
            raise ValueError(f"chains must be >= 1. Got {chains}")
        if warmup < 0:
            raise ValueError(f"warmup must be >= 0. Got {warmup}")
        if iterations <= warmup:
            raise ValueError(f"iterations must exceed warmup ({warmup}). Got {iterations}")
        if thin < 1:
            raise ValueError(f"thin must be >= 1. Got {thin}")
        if cores is not None and cores < 1:
            raise ValueError(f"cores must be >= 1. Got {cores}")
        if init_radius < 0:
            raise ValueError(f"init_radius must be >= 0. Got {init_radius}")

        config = SamplerConfig(
            iterations=iterations,
            warmup=warmup,
            thin=thin,
            target_accept=self.target_accept,
            max_treedepth=self.max_treedepth,
            max_energy_error=self.max_energy_error,
            metric=self.metric,
            init_radius=init_radius,
            save_warmup=save_warmup,
        )
        seeds = self._chain_seeds(random_seed, chains)
        inits = self._chain_inits(init, chains)
        n_workers = min(cores or 1, chains, os.cpu_count() or 1)

        logger.info(
            "Sampling %d chains (%d iterations, %d warm-up) on %d worker(s)",
            chains, iterations, warmup, n_workers,
        )
        start_time = time.time()

        with tqdm(total=chains * iterations, desc="Sampling", disable=not progressbar) as pbar:
            last_iteration = [0] * chains
            divergences = [0] * chains

            def on_progress(message: ChainProgress) -> None:
                pbar.update(message.iteration - last_iteration[message.chain])
                last_iteration[message.chain] = message.iteration
                divergences[message.chain] = message.divergences
                pbar.set_postfix({"divergences": sum(divergences)})
                if callback is not None:
                    callback(message)

            results = None
            if n_workers > 1:
                results = self._run_parallel(model, config, seeds, inits, n_workers, on_progress, stop_event)
            if results is None:
                results = self._run_sequential(model, config, seeds, inits, on_progress, stop_event)

        sampling_time = time.time() - start_time
        completed = [r for r in results if isinstance(r, Chain)]
        failures = [r for r in results if isinstance(r, ChainFailure)]

        for failure in failures:
            logger.warning("Chain %d failed: %s", failure.chain, failure.message)
        if not completed:
            raise SamplerError(
                "All chains failed: " + "; ".join(f"chain {f.chain}: {f.message}" for f in failures)
            )

        summary = InferenceSummary(
            chains=completed,
            failures=failures,
            parameter_shapes=model.parameter_shapes,
            config=config,
            sampling_time=sampling_time,
            observed_name=model.observed_name,
        )

        # Check divergences
        n_divergences = summary.divergences
        if n_divergences > 0:
            n_total = (iterations - warmup) * len(completed)
            message = (
                f"{n_divergences} of {n_total} post-warm-up transitions diverged. "
                f"Consider increasing target_accept or reparameterizing."
            )
            logger.warning(message)
            warnings.warn(message, DivergenceWarning, stacklevel=2)

        logger.info("Finished sampling in %.1fs: %r", sampling_time, summary)
        return summary

    @staticmethod
    def _run_sequential(
        model: LogDensity,
        config: SamplerConfig,
        seeds: List,
        inits: List,
        on_progress: Callable[[ChainProgress], None],
        stop_event,
    ) -> List[Union[Chain, ChainFailure]]:
        results: List[Union[Chain, ChainFailure]] = []
        for chain_id, (seed, init) in enumerate(zip(seeds, inits)):
            try:
                chain = run_chain(model, config, chain_id, seed, init, on_progress, stop_event)
            except SamplerError as e:
                results.append(ChainFailure(chain_id, str(e)))
                continue
            logger.info("Chain %d done: %d draws", chain_id, len(chain))
            results.append(chain)
        return results

    @staticmethod
    def _drain(progress_queue, on_progress: Callable[[ChainProgress], None]) -> None:
        while True:
            try:
                message = progress_queue.get_nowait()
            except queue_module.Empty:
                return
            on_progress(message)

    def _run_parallel(
        self,
        model: LogDensity,
        config: SamplerConfig,
        seeds: List,
        inits: List,
        n_workers: int,
        on_progress: Callable[[ChainProgress], None],
        stop_event,
    ) -> Optional[List[Union[Chain, ChainFailure]]]:
        """One worker task per chain; None if the pool cannot be used."""
        try:
            pickle.dumps(model)
        except (pickle.PicklingError, AttributeError, TypeError) as e:
            logger.warning("Target cannot be sent to worker processes (%s), sampling sequentially", e)
            return None

        results: List[Union[Chain, ChainFailure]] = []
        try:
            with multiprocessing.Manager() as manager:
                progress_queue = manager.Queue()
                shared_stop = manager.Event()
                with ProcessPoolExecutor(max_workers=n_workers) as executor:
                    futures = {
                        executor.submit(
                            _chain_task, model, config, chain_id, seed, init, progress_queue, shared_stop
                        ): chain_id
                        for chain_id, (seed, init) in enumerate(zip(seeds, inits))
                    }
                    pending = set(futures)
                    while pending:
                        _, pending = wait(pending, timeout=0.1, return_when=FIRST_COMPLETED)
                        self._drain(progress_queue, on_progress)
                        if stop_event is not None and stop_event.is_set():
                            shared_stop.set()
                    self._drain(progress_queue, on_progress)

                    for future, chain_id in sorted(futures.items(), key=lambda item: item[1]):
                        try:
                            chain = future.result()
                        except SamplerError as e:
                            results.append(ChainFailure(chain_id, str(e)))
                            continue
                        logger.info("Chain %d done: %d draws", chain_id, len(chain))
                        results.append(chain)

        except (OSError, BrokenProcessPool, pickle.PicklingError) as e:
            logger.warning("Parallel sampling failed (%s), falling back to sequential", e)
            return None
        return results

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"NUTSSampler(target_accept={self.target_accept}, "
            f"max_treedepth={self.max_treedepth}, metric={self.metric})"
        )
