"""
Joint posterior over the allele frequencies of a sample group at one locus.

The domain is the product of
    * the germline configurations with non-zero prior (exact enumeration),
    * one node set per *free* sample, i.e. a sample whose VAF has a
      continuous prior component: explicit universe points and candidate
      atoms evaluated directly, plus adaptive Gauss-Legendre nodes over the
      universe intervals.
Every other sample's VAF is a deterministic function of a row (its germline
state, its clonal source, or 0 at ploidy 0). Each row carries the log of
prior × likelihood × quadrature weight, so the posterior mass of any region
is a log-sum-exp over the rows inside it. Events are evaluated as boolean
masks over the rows; nothing is sampled.
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy.special import roots_legendre

from .errors import DomainEmptyError, LocusEvaluationError, NumericInstabilityWarning
from .grammar import EvaluationContext, event_breakpoints
from .likelihood import Biases, SampleLikelihood, SampleObservations, is_likely, is_possible
from .params import CallingOptions
from .prior import (
    ATOM,
    DENSITY,
    POINT,
    ClonalInheritance,
    FlatPrior,
    PedigreePrior,
    germline_bases,
    somatic_log_density,
)
from .universe import VAF_EPS, VAFPoint, VAFUniverse
from .utils import (
    LOG_ZERO,
    Locus,
    Observation,
    PosteriorResult,
    log_sum_exp,
    normalized_prob,
    safe_log,
)

logger = logging.getLogger(__name__)

ABSENT = "absent"
ARTIFACT = "artifact"

_MAX_GRID_ROWS = 5_000_000
# Kernel breakpoints are only placed around small sets of discrete bases.
_MAX_KERNEL_BREAKPOINT_BASES = 16


# =============================================================================
# Quadrature
# =============================================================================


def gauss_legendre(start: float, end: float, order: int) -> Tuple[np.ndarray, np.ndarray]:
    """Gauss-Legendre nodes and weights of the given order on [start, end]."""
    x, w = roots_legendre(order)
    half = 0.5 * (end - start)
    return start + half * (x + 1.0), half * w


def adaptive_nodes(
    integrand: Callable[[np.ndarray], np.ndarray],
    segments: Sequence[Tuple[float, float]],
    order: int = 5,
    tolerance: float = 1e-3,
    max_bisections: int = 6,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Quadrature nodes and weights for the integral of ``integrand`` over ``segments``.

    Each segment is bisected until the Gauss-Legendre estimate on its two
    halves agrees with the estimate on the whole within ``tolerance`` times
    the total integral, or until ``max_bisections`` levels were used.

    Returns
    -------
    tuple[np.ndarray, np.ndarray]
        Nodes and weights (empty when there are no segments).
    """
    if not segments:
        return np.empty(0), np.empty(0)

    coarse = []
    for start, end in segments:
        x, w = gauss_legendre(start, end, order)
        coarse.append(float(w @ integrand(x)))
    reference = max(sum(coarse), np.finfo(float).tiny)

    nodes: List[np.ndarray] = []
    weights: List[np.ndarray] = []

    def refine(start: float, end: float, estimate: float, depth: int):
        mid = 0.5 * (start + end)
        xl, wl = gauss_legendre(start, mid, order)
        xr, wr = gauss_legendre(mid, end, order)
        left = float(wl @ integrand(xl))
        right = float(wr @ integrand(xr))
        if depth >= max_bisections or abs(left + right - estimate) <= tolerance * reference:
            nodes.extend((xl, xr))
            weights.extend((wl, wr))
            return
        refine(start, mid, left, depth + 1)
        refine(mid, end, right, depth + 1)

    for (start, end), estimate in zip(segments, coarse):
        if max_bisections == 0:
            x, w = gauss_legendre(start, end, order)
            nodes.append(x)
            weights.append(w)
        else:
            refine(start, end, estimate, 1)
    return np.concatenate(nodes), np.concatenate(weights)


def _grouped_log_sum(groups: np.ndarray, values: np.ndarray, n_groups: int) -> np.ndarray:
    """log Σ exp(values) per group index."""
    out = np.full(n_groups, LOG_ZERO)
    finite = np.isfinite(values)
    if not finite.any():
        return out
    shift = values[finite].max()
    sums = np.bincount(groups[finite], weights=np.exp(values[finite] - shift), minlength=n_groups)
    return safe_log(sums) + shift


@dataclass
class _Nodes:
    """Grid coordinates of a free sample."""

    values: np.ndarray
    kinds: np.ndarray
    log_weights: np.ndarray

    def __len__(self) -> int:
        return len(self.values)


# =============================================================================
# Engine
# =============================================================================


class PosteriorEngine:
    """
    Posterior event probabilities and VAF estimates for one scenario.

    Built once per scenario; ``compute`` is side-effect free, so one engine
    may evaluate many loci, also from several worker processes.

    Parameters
    ----------
    scenario : Scenario
        Loaded and validated scenario.
    options : CallingOptions, optional
        Engine configuration.
    """

    def __init__(self, scenario, options: Optional[CallingOptions] = None):
        self.scenario = scenario
        self.options = options or CallingOptions()
        if scenario.species is None:
            self.prior = FlatPrior()
        else:
            self.prior = PedigreePrior(
                scenario.pedigree, scenario.species, self.options.min_somatic_vaf
            )
        self.events = scenario.events
        self.breakpoints = event_breakpoints(self.events)
        self.implicit_events = [name for name in (ABSENT, ARTIFACT) if name not in self.events]

    @property
    def event_names(self) -> List[str]:
        return list(self.events) + self.implicit_events

    @property
    def sample_names(self) -> List[str]:
        return list(self.scenario.samples)

    # -------------------------------------------------------------------------
    # Domain
    # -------------------------------------------------------------------------

    def _universe(self, name: str, ploidy: Optional[int]) -> VAFUniverse:
        spec = self.scenario.samples[name]
        if spec.universe is not None:
            return spec.universe
        if ploidy is None or spec.somatic_effective_mutation_rate is not None:
            return VAFUniverse.full()
        if ploidy == 0:
            return VAFUniverse((VAFPoint(0.0),))
        return VAFUniverse(tuple(VAFPoint(m / ploidy) for m in range(ploidy + 1)))

    def _base_candidates(
        self,
        name: str,
        support: Mapping[str, np.ndarray],
        germline: Mapping[str, np.ndarray],
    ) -> np.ndarray:
        """Values the sample's base VAF can take with non-zero prior."""
        if isinstance(self.prior, FlatPrior):
            return np.empty(0)
        relation = self.scenario.samples[name].inheritance
        if isinstance(relation, ClonalInheritance):
            if relation.somatic:
                return support[relation.source]
            return np.unique(germline[self.scenario.pedigree.germline_origin(name)])
        return np.unique(germline[name])

    def _base(
        self,
        name: str,
        vafs: Mapping[str, np.ndarray],
        germline: Mapping[str, np.ndarray],
        config: np.ndarray,
    ) -> Optional[np.ndarray]:
        """Base VAF of the sample per grid row."""
        if isinstance(self.prior, FlatPrior):
            return None
        relation = self.scenario.samples[name].inheritance
        if isinstance(relation, ClonalInheritance):
            if relation.somatic:
                return vafs[relation.source]
            return germline[self.scenario.pedigree.germline_origin(name)][config]
        return germline[name][config]

    def _free_nodes(
        self,
        name: str,
        universe: VAFUniverse,
        candidates: np.ndarray,
        likelihood: SampleLikelihood,
    ) -> _Nodes:
        points = universe.points()
        candidates = candidates[universe.contains(candidates)]
        on_point = np.any(np.abs(candidates[:, None] - points[None, :]) <= VAF_EPS, axis=1)
        atoms = candidates[~on_point]

        rate = None
        if isinstance(self.prior, PedigreePrior):
            rate = self.prior.somatic_rate(name)
        min_vaf = self.options.min_somatic_vaf

        cuts = set(self.breakpoints.get(name, ()))
        if rate is not None and len(candidates) <= _MAX_KERNEL_BREAKPOINT_BASES:
            for b in candidates:
                cuts.update(c for c in (b - min_vaf, b, b + min_vaf) if 0.0 <= c <= 1.0)
        segments = universe.segments(cuts)

        probe = [points, atoms] + [gauss_legendre(s, e, self.options.gauss_order)[0] for s, e in segments]
        probe = np.concatenate(probe)
        shift = float(np.max(likelihood(probe))) if probe.size else 0.0

        def integrand(v: np.ndarray) -> np.ndarray:
            value = np.exp(likelihood(v) - shift)
            if rate is not None and len(candidates):
                kernel = np.exp(somatic_log_density(v[:, None] - candidates[None, :], rate, min_vaf))
                value = value * kernel.sum(axis=1)
            return value

        x, w = adaptive_nodes(
            integrand,
            segments,
            order=self.options.gauss_order,
            tolerance=self.options.integration_tolerance,
            max_bisections=self.options.max_bisections,
        )
        return _Nodes(
            values=np.concatenate([points, atoms, x]),
            kinds=np.concatenate(
                [np.full(len(points), POINT), np.full(len(atoms), ATOM), np.full(len(x), DENSITY)]
            ),
            log_weights=np.concatenate([np.zeros(len(points) + len(atoms)), np.log(w)]),
        )

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def _probability(self, log_mass: float, log_total: float, event: str, diagnostics: List[str]) -> float:
        p, clipped = normalized_prob(log_mass, log_total)
        if clipped:
            message = f"probability of event {event!r} clipped to [0, 1]"
            warnings.warn(message, NumericInstabilityWarning, stacklevel=3)
            logger.warning(message)
            diagnostics.append(message)
        return p

    def _estimate(
        self,
        values: np.ndarray,
        log_posterior: np.ndarray,
        log_total: float,
        nodes: Optional[_Nodes],
        node_index: Optional[np.ndarray],
    ) -> float:
        if self.options.vaf_estimate == "mean":
            weights = np.exp(log_posterior - log_total)
            return float(weights @ values / weights.sum())

        if nodes is None:
            unique, inverse = np.unique(values, return_inverse=True)
            mass = _grouped_log_sum(inverse.ravel(), log_posterior, len(unique))
            return float(unique[np.argmax(mass)])

        mass = _grouped_log_sum(node_index, log_posterior, len(nodes))
        discrete = nodes.kinds != DENSITY
        if not discrete.all():
            continuous = log_sum_exp(mass[~discrete])
            if not discrete.any() or continuous > mass[discrete].max():
                density = np.where(discrete, LOG_ZERO, mass - nodes.log_weights)
                return float(nodes.values[np.argmax(density)])
        return float(nodes.values[discrete][np.argmax(mass[discrete])])

    def compute(
        self, locus: Locus, observations: Mapping[str, Sequence[Observation]]
    ) -> PosteriorResult:
        """
        Posterior event probabilities and per-sample VAF estimates at ``locus``.

        Parameters
        ----------
        locus : Locus
            Candidate variant.
        observations : Mapping[str, Sequence[Observation]]
            Observations per sample; missing samples count as uninformative.

        Raises
        ------
        DomainEmptyError
            If some sample has no feasible VAF or the posterior has no mass.
        LocusEvaluationError
            If the joint grid is too large to evaluate.
        """
        samples = self.scenario.samples
        order = self.scenario.pedigree.order
        options = self.options
        diagnostics: List[str] = []

        ploidies = self.prior.ploidies(locus.contig)
        pileups = {
            name: SampleObservations(
                observations.get(name, ()),
                omit_strand_bias=options.omit_strand_bias,
                omit_read_orientation_bias=options.omit_read_orientation_bias,
            )
            for name in samples
        }
        for name, pileup in pileups.items():
            if len(pileup) == 0:
                logger.debug("no observations for sample %s at %s", name, locus.name)
        unbiased = {name: SampleLikelihood(pileup) for name, pileup in pileups.items()}

        germline_names, states, config_log_probs = self.prior.germline_configurations(ploidies)
        germline = germline_bases(germline_names, states, ploidies)

        # Per-sample domains, sources before dependents.
        nodes: Dict[str, _Nodes] = {}
        support: Dict[str, np.ndarray] = {}
        for name in order:
            ploidy = ploidies.get(name)
            universe = self._universe(name, ploidy)
            if ploidy == 0:
                if not universe.contains(np.zeros(1))[0]:
                    raise DomainEmptyError(
                        f"sample {name!r} has ploidy 0 on {locus.contig} but its universe excludes 0"
                    )
                support[name] = np.zeros(1)
                continue
            candidates = self._base_candidates(name, support, germline)
            if self.prior.is_free(name, ploidy):
                nodes[name] = self._free_nodes(name, universe, candidates, unbiased[name])
                support[name] = nodes[name].values
            else:
                support[name] = candidates[universe.contains(candidates)]
            if len(support[name]) == 0:
                raise DomainEmptyError(
                    f"universe {universe} of sample {name!r} excludes every allele frequency its prior allows"
                )

        free = [name for name in order if name in nodes]
        shape = (len(config_log_probs),) + tuple(len(nodes[name]) for name in free)
        n_rows = int(np.prod(shape, dtype=float))
        if n_rows > _MAX_GRID_ROWS:
            raise LocusEvaluationError(
                f"joint grid of {n_rows} rows at {locus.name} exceeds the supported maximum"
            )
        index = np.indices(shape).reshape(len(shape), -1)
        config = index[0]
        node_index = {name: index[i + 1] for i, name in enumerate(free)}

        log_joint = config_log_probs[config].astype(float)
        vafs: Dict[str, np.ndarray] = {}
        for name in order:
            if ploidies.get(name) == 0:
                vafs[name] = np.zeros(n_rows)
                continue
            base = self._base(name, vafs, germline, config)
            if name in nodes:
                k = node_index[name]
                vafs[name] = nodes[name].values[k]
                log_joint += self.prior.log_prior(
                    name, vafs[name], base, nodes[name].kinds[k], nodes[name].log_weights[k]
                )
            else:
                vafs[name] = base
                universe = self._universe(name, ploidies.get(name))
                log_joint = np.where(universe.contains(base), log_joint, LOG_ZERO)

        effective = {}
        for name, spec in samples.items():
            contamination = spec.contamination
            if contamination is None:
                effective[name] = vafs[name]
            else:
                f = contamination.fraction
                effective[name] = (1.0 - f) * vafs[name] + f * vafs[contamination.by]

        pileup_list = list(pileups.values())
        artifacts = [
            biases
            for biases in Biases.artifact_combinations(
                not options.omit_strand_bias, not options.omit_read_orientation_bias
            )
            if is_possible(biases, pileup_list) and is_likely(biases, pileup_list)
        ]
        hypotheses = [Biases.none()] + artifacts
        if artifacts:
            log_hypothesis_prior = [float(np.log1p(-options.artifact_prior))] + [
                float(np.log(options.artifact_prior / len(artifacts)))
            ] * len(artifacts)
        else:
            log_hypothesis_prior = [0.0]

        joint = np.empty((len(hypotheses), n_rows))
        for i, biases in enumerate(hypotheses):
            total = log_joint + log_hypothesis_prior[i]
            for name in samples:
                likelihood = unbiased[name] if i == 0 else SampleLikelihood(pileups[name], biases)
                total = total + likelihood(effective[name])
                if likelihood.floored:
                    diagnostics.append(
                        f"per-read likelihood underflow clamped for sample {name} ({biases})"
                    )
            joint[i] = total

        log_total = log_sum_exp(joint)
        if log_total == LOG_ZERO:
            raise DomainEmptyError(f"posterior has no mass at {locus.name}")
        logger.debug(
            "%s: %d germline configurations, %d grid rows, %d bias hypotheses",
            locus.name,
            len(config_log_probs),
            n_rows,
            len(hypotheses),
        )

        context = EvaluationContext(locus=locus, vafs=vafs, size=n_rows)
        probabilities: Dict[str, float] = {}
        for event, expression in self.events.items():
            mask = expression.mask(context)
            probabilities[event] = self._probability(
                log_sum_exp(joint[0][mask]), log_total, event, diagnostics
            )

        absent = np.ones(n_rows, dtype=bool)
        for values in vafs.values():
            absent &= values <= VAF_EPS
        if ABSENT in self.implicit_events:
            probabilities[ABSENT] = self._probability(
                log_sum_exp(joint[:, absent]), log_total, ABSENT, diagnostics
            )
        if ARTIFACT in self.implicit_events:
            probabilities[ARTIFACT] = self._probability(
                log_sum_exp(joint[1:, ~absent]), log_total, ARTIFACT, diagnostics
            )

        log_posterior = np.logaddexp.reduce(joint, axis=0)
        estimates = {
            name: self._estimate(
                vafs[name],
                log_posterior,
                log_total,
                nodes.get(name),
                node_index.get(name),
            )
            for name in samples
        }
        return PosteriorResult(
            locus=locus,
            probabilities=probabilities,
            vaf_estimates=estimates,
            diagnostics=diagnostics,
        )
