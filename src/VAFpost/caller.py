import logging
import multiprocessing
import zlib
from typing import Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from tqdm import tqdm

from .errors import LocusEvaluationError
from .params import CallingOptions
from .posterior import PosteriorEngine
from .utils import Locus, Observation, PosteriorResult

logger = logging.getLogger(__name__)

Candidate = Tuple[Locus, Mapping[str, Sequence[Observation]]]

# Engine of the current worker process, set by the pool initializer.
_WORKER_ENGINE: Optional[PosteriorEngine] = None


def downsample(
    observations: Sequence[Observation], max_depth: int, locus: Locus, seed: int
) -> List[Observation]:
    """
    Keep at most ``max_depth`` observations, chosen without replacement.

    The choice depends only on ``seed`` and the locus, so repeated runs and
    different worker counts keep the same reads. Input order is preserved.
    """
    observations = list(observations)
    if len(observations) <= max_depth:
        return observations
    rng = np.random.default_rng([seed, zlib.crc32(locus.name.encode())])
    keep = np.sort(rng.choice(len(observations), size=max_depth, replace=False))
    return [observations[i] for i in keep]


def evaluate_locus(
    engine: PosteriorEngine,
    locus: Locus,
    observations: Mapping[str, Sequence[Observation]],
) -> PosteriorResult:
    """
    Evaluate one candidate; per-locus failures become a NaN result.

    Only ``LocusEvaluationError`` is captured. Anything else is a bug and
    propagates.
    """
    options = engine.options
    capped = {
        name: downsample(obs, options.max_depth, locus, options.seed)
        for name, obs in observations.items()
    }
    try:
        return engine.compute(locus, capped)
    except LocusEvaluationError as e:
        logger.warning("Evaluation of %s failed: %s", locus.name, e)
        return PosteriorResult.failure(locus, engine.event_names, engine.sample_names, str(e))


def _init_worker(engine: PosteriorEngine):
    global _WORKER_ENGINE
    _WORKER_ENGINE = engine


def _evaluate_mp_wrapper(candidate: Candidate) -> PosteriorResult:
    locus, observations = candidate
    return evaluate_locus(_WORKER_ENGINE, locus, observations)


class VariantCaller:
    """
    Computes posterior event probabilities for a stream of candidates.

    Parameters
    ----------
    scenario : Scenario
        Loaded scenario; shared read-only with every worker.
    options : CallingOptions, optional
        Engine configuration.
    """

    def __init__(self, scenario, options: Optional[CallingOptions] = None):
        self.scenario = scenario
        self.options = options or CallingOptions()
        self.engine = PosteriorEngine(scenario, self.options)

    @property
    def event_names(self) -> List[str]:
        return self.engine.event_names

    @property
    def sample_names(self) -> List[str]:
        return self.engine.sample_names

    def call(
        self,
        candidates: Iterable[Candidate],
        workers: int = 1,
        progress: bool = False,
    ) -> Iterator[PosteriorResult]:
        """
        Yield one result per candidate, in input order.

        Parameters
        ----------
        candidates : iterable of (Locus, observations)
            Observations map sample names to their reads at the locus.
        workers : int
            Number of processes; 1 evaluates in this process.
        progress : bool
            Show a tqdm progress bar.
        """
        if workers < 1:
            raise ValueError("workers must be at least 1")
        n_failed = 0
        n_total = 0

        if workers == 1:
            results = (evaluate_locus(self.engine, locus, obs) for locus, obs in candidates)
            for result in tqdm(results, disable=not progress, mininterval=60, unit="locus"):
                n_total += 1
                n_failed += result.failed
                yield result
        else:
            logger.info("Evaluating candidates with %d worker processes", workers)
            with multiprocessing.Pool(
                processes=workers, initializer=_init_worker, initargs=(self.engine,)
            ) as pool:
                results = pool.imap(_evaluate_mp_wrapper, candidates, chunksize=8)
                for result in tqdm(results, disable=not progress, mininterval=60, unit="locus"):
                    n_total += 1
                    n_failed += result.failed
                    yield result

        logger.info("Evaluated %d candidates, %d failed", n_total, n_failed)
