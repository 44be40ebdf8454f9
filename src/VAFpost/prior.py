"""
Prior over the joint allele frequency vector of a sample group.

The prior is built once per scenario from the declared relation graph and
the species parameters and then evaluated for every candidate locus.

Germline state
    Roots and Mendelian children carry a germline genotype: the number m of
    alternative alleles among their N (ploidy) copies. Roots follow the
    infinite sites neutral variation model, P(m) = θ / m for m ≥ 1. Children
    draw ⌊c/2⌋ alleles from each parent without replacement; odd remainders
    come from the parent with more copies (X in sons, Y from fathers). Every
    transmitted allele flips with the germline mutation rate.

Somatic state
    A sample with a somatic effective mutation rate μ has allele frequency
    v = b + Δ around its base b. The shift has density μ / max(|Δ|, δ)²
    (Williams et al. 2016, neutral tumour evolution) and the atom at Δ = 0
    keeps the remaining mass; both are normalized by 1 + T(b), where T is
    the total density mass, so the prior is proper for any μ.

Clonal descendants take their base from the source: its germline VAF when
``somatic`` is false, its full VAF when ``somatic`` is true. Contamination
is not part of the prior; it couples samples in the likelihood.
"""

import logging
from dataclasses import dataclass
from itertools import product
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.stats import binom, hypergeom

from .errors import DomainEmptyError, LocusEvaluationError, ScenarioConfigError
from .params import SpeciesParameters
from .universe import VAF_EPS
from .utils import LOG_ZERO, safe_log

logger = logging.getLogger(__name__)

# Node kinds of the integration grid.
ATOM = 0  # candidate atom of the prior; carries mass only when it equals the base
POINT = 1  # explicit universe point; evaluated directly
DENSITY = 2  # quadrature node; density times quadrature weight

_MAX_CONFIGURATIONS = 2_000_000


# =============================================================================
# Relations
# =============================================================================


@dataclass(frozen=True)
class MendelianInheritance:
    parents: Tuple[str, str]


@dataclass(frozen=True)
class ClonalInheritance:
    source: str
    somatic: bool = False


@dataclass(frozen=True)
class Contamination:
    by: str
    fraction: float


Inheritance = Union[MendelianInheritance, ClonalInheritance]


class Pedigree:
    """
    Directed acyclic relation graph over the samples of a scenario.

    Inheritance edges (Mendelian, clonal) must be acyclic. Contamination
    edges only couple likelihoods and may point both ways.

    Parameters
    ----------
    samples : Mapping[str, object]
        Sample name to an object with ``inheritance`` and ``contamination``
        attributes (see scenario.SampleSpec).

    Raises
    ------
    ScenarioConfigError
        For unknown references, malformed relations, or cycles.
    """

    def __init__(self, samples: Mapping[str, object]):
        self.samples = dict(samples)
        self._validate()
        self.order = self._topological_order()

    def _validate(self):
        for name, sample in self.samples.items():
            relation = sample.inheritance
            if isinstance(relation, MendelianInheritance):
                if len(relation.parents) != 2 or relation.parents[0] == relation.parents[1]:
                    raise ScenarioConfigError(
                        f"mendelian inheritance of {name!r} needs exactly two distinct parents"
                    )
                for parent in relation.parents:
                    self._check_reference(name, parent, "parent")
            elif isinstance(relation, ClonalInheritance):
                self._check_reference(name, relation.source, "clonal source")

            contamination = sample.contamination
            if contamination is not None:
                self._check_reference(name, contamination.by, "contaminating sample")
                if not 0.0 <= contamination.fraction <= 1.0:
                    raise ScenarioConfigError(
                        f"contamination fraction of {name!r} must be in [0, 1], "
                        f"got {contamination.fraction}"
                    )

    def _check_reference(self, name: str, other: str, role: str):
        if other == name:
            raise ScenarioConfigError(f"sample {name!r} cannot be its own {role}")
        if other not in self.samples:
            raise ScenarioConfigError(
                f"{role} {other!r} of sample {name!r} is not defined in the scenario"
            )

    def dependencies(self, name: str) -> Tuple[str, ...]:
        relation = self.samples[name].inheritance
        if isinstance(relation, MendelianInheritance):
            return tuple(relation.parents)
        if isinstance(relation, ClonalInheritance):
            return (relation.source,)
        return ()

    def _topological_order(self) -> List[str]:
        white, gray, black = 0, 1, 2
        color = {name: white for name in self.samples}
        order: List[str] = []

        def visit(name: str, path: List[str]):
            color[name] = gray
            for dep in self.dependencies(name):
                if color[dep] == gray:
                    cycle = path[path.index(dep):] + [name, dep]
                    raise ScenarioConfigError(
                        f"cyclic inheritance: {' -> '.join(reversed(cycle))}"
                    )
                if color[dep] == white:
                    visit(dep, path + [name])
            color[name] = black
            order.append(name)

        for name in self.samples:
            if color[name] == white:
                visit(name, [])
        return order

    @property
    def germline_samples(self) -> List[str]:
        """Samples with their own germline genotype: roots and Mendelian children."""
        return [
            name
            for name in self.order
            if not isinstance(self.samples[name].inheritance, ClonalInheritance)
        ]

    def germline_origin(self, name: str) -> str:
        """The sample whose genotype ``name`` carries (itself unless clonal)."""
        relation = self.samples[name].inheritance
        while isinstance(relation, ClonalInheritance):
            name = relation.source
            relation = self.samples[name].inheritance
        return name


# =============================================================================
# Germline distributions
# =============================================================================


def infinite_sites_prior(ploidy: int, heterozygosity: float) -> np.ndarray:
    """
    Log-probabilities of m = 0..ploidy alternative alleles at a root sample.

    P(m) = θ / m for m ≥ 1 and P(0) = 1 - Σ P(m).
    """
    if ploidy == 0:
        return np.zeros(1)
    m = np.arange(1, ploidy + 1, dtype=float)
    probs = np.concatenate([[0.0], heterozygosity / m])
    probs[0] = max(1.0 - probs.sum(), 0.0)
    return safe_log(probs / probs.sum())


def _drawn_alt(ploidy: int, alt: int, k: int) -> np.ndarray:
    """P(j alt alleles among k alleles drawn without replacement), j = 0..k."""
    if k == 0:
        return np.ones(1)
    return hypergeom(ploidy, alt, k).pmf(np.arange(k + 1))


def _mutate(dist: np.ndarray, rate: float) -> np.ndarray:
    """Apply independent allele flips with probability ``rate`` to a count distribution."""
    k = len(dist) - 1
    out = np.zeros(k + 1)
    for j, pj in enumerate(dist):
        if pj == 0.0:
            continue
        lost = binom.pmf(np.arange(j + 1), j, rate)
        gained = binom.pmf(np.arange(k - j + 1), k - j, rate)
        # remaining alt alleles j - a, then add gained ones
        out += pj * np.convolve(lost[::-1], gained)
    return out


def transmitted_counts(
    child_ploidy: int, ploidy1: int, ploidy2: int
) -> List[Tuple[float, int, int]]:
    """
    How many alleles the child receives from each parent.

    Returns
    -------
    list[tuple[float, int, int]]
        (weight, k1, k2) alternatives; weights sum to 1.

    Raises
    ------
    DomainEmptyError
        If the parents cannot supply the child's ploidy.
    """
    half = child_ploidy // 2
    k1, k2 = min(half, ploidy1), min(half, ploidy2)
    rest = child_ploidy - k1 - k2

    def fill(first_to_1: bool) -> Tuple[int, int]:
        a, b, remaining = k1, k2, rest
        if first_to_1:
            extra = min(remaining, ploidy1 - a)
            a, remaining = a + extra, remaining - extra
            b += min(remaining, ploidy2 - b)
        else:
            extra = min(remaining, ploidy2 - b)
            b, remaining = b + extra, remaining - extra
            a += min(remaining, ploidy1 - a)
        return a, b

    if rest == 0:
        options = [(k1, k2)]
    elif ploidy1 > ploidy2:
        options = [fill(True)]
    elif ploidy2 > ploidy1:
        options = [fill(False)]
    else:
        options = [fill(True), fill(False)]

    options = [(a, b) for a, b in options if a + b == child_ploidy]
    if not options:
        raise DomainEmptyError(
            f"parents with ploidy {ploidy1} and {ploidy2} cannot produce a child of ploidy {child_ploidy}"
        )
    return [(1.0 / len(options), a, b) for a, b in options]


def mendelian_transmission(
    ploidy1: int, ploidy2: int, child_ploidy: int, mutation_rate: float
) -> np.ndarray:
    """
    Transmission table P(child = c | parent1 = m1, parent2 = m2).

    Returns
    -------
    np.ndarray
        Shape (ploidy1 + 1, ploidy2 + 1, child_ploidy + 1).
    """
    table = np.zeros((ploidy1 + 1, ploidy2 + 1, child_ploidy + 1))
    for weight, k1, k2 in transmitted_counts(child_ploidy, ploidy1, ploidy2):
        from1 = [_mutate(_drawn_alt(ploidy1, m1, k1), mutation_rate) for m1 in range(ploidy1 + 1)]
        from2 = [_mutate(_drawn_alt(ploidy2, m2, k2), mutation_rate) for m2 in range(ploidy2 + 1)]
        for m1, d1 in enumerate(from1):
            for m2, d2 in enumerate(from2):
                table[m1, m2] += weight * np.convolve(d1, d2)
    return table


# =============================================================================
# Somatic kernel
# =============================================================================


def _one_sided_mass(length: np.ndarray, rate: float, min_vaf: float) -> np.ndarray:
    """∫_0^L rate / max(x, δ)² dx."""
    length = np.asarray(length, dtype=float)
    return np.where(
        length <= min_vaf,
        rate * length / min_vaf**2,
        rate / min_vaf + rate * (1.0 / min_vaf - 1.0 / np.maximum(length, min_vaf)),
    )


def somatic_mass(base: np.ndarray, rate: float, min_vaf: float) -> np.ndarray:
    """Total density mass T(b) of somatic shifts within [-b, 1 - b]."""
    base = np.asarray(base, dtype=float)
    return _one_sided_mass(1.0 - base, rate, min_vaf) + _one_sided_mass(base, rate, min_vaf)


def somatic_log_density(delta: np.ndarray, rate: float, min_vaf: float) -> np.ndarray:
    """Unnormalized log density of a somatic shift Δ."""
    return np.log(rate) - 2.0 * np.log(np.maximum(np.abs(delta), min_vaf))


# =============================================================================
# Priors
# =============================================================================


class FlatPrior:
    """
    Uniform prior used when the scenario declares no species.

    Explicit universe points have weight 1 and intervals density 1; every
    sample is a free coordinate.
    """

    def ploidies(self, contig: str) -> Dict[str, Optional[int]]:
        return {}

    def is_free(self, sample: str, ploidy: Optional[int]) -> bool:
        return True

    def germline_configurations(
        self, ploidies: Mapping[str, Optional[int]]
    ) -> Tuple[List[str], np.ndarray, np.ndarray]:
        return [], np.zeros((1, 0), dtype=int), np.zeros(1)

    def log_prior(self, sample, vafs, bases, kinds, log_weights) -> np.ndarray:
        return np.where(
            kinds == DENSITY, log_weights, np.where(kinds == POINT, 0.0, LOG_ZERO)
        )


class PedigreePrior:
    """
    Pedigree-aware prior over germline genotypes and somatic shifts.

    Parameters
    ----------
    pedigree : Pedigree
        Validated relation graph.
    species : SpeciesParameters
        Heterozygosity, germline mutation rate and ploidy table.
    min_somatic_vaf : float
        δ, below which the somatic density is flat.
    """

    def __init__(
        self,
        pedigree: Pedigree,
        species: SpeciesParameters,
        min_somatic_vaf: float = 1e-3,
    ):
        self.pedigree = pedigree
        self.species = species
        self.min_somatic_vaf = min_somatic_vaf
        if species.ploidy.sex_specific:
            for name, sample in pedigree.samples.items():
                if sample.sex not in species.ploidy.by_sex:
                    raise ScenarioConfigError(
                        f"sample {name!r} needs a sex among "
                        f"{', '.join(species.ploidy.by_sex)} for the ploidy table"
                    )

    def ploidies(self, contig: str) -> Dict[str, int]:
        return {
            name: self.species.ploidy.ploidy(contig, sample.sex)
            for name, sample in self.pedigree.samples.items()
        }

    def somatic_rate(self, sample: str) -> Optional[float]:
        return self.pedigree.samples[sample].somatic_effective_mutation_rate

    def is_free(self, sample: str, ploidy: int) -> bool:
        """Whether the sample's VAF has a continuous component at this locus."""
        return self.somatic_rate(sample) is not None and ploidy > 0

    def germline_rate(self, sample: str) -> float:
        rate = self.pedigree.samples[sample].germline_mutation_rate
        return self.species.germline_mutation_rate if rate is None else rate

    def germline_configurations(
        self, ploidies: Mapping[str, int]
    ) -> Tuple[List[str], np.ndarray, np.ndarray]:
        """
        Enumerate joint germline genotypes with non-zero prior.

        Returns
        -------
        tuple[list[str], np.ndarray, np.ndarray]
            Germline sample names, alt allele counts (n_configurations x
            n_samples) and their log prior probabilities.
        """
        names = self.pedigree.germline_samples
        n_configurations = int(np.prod([ploidies[n] + 1 for n in names], dtype=float))
        if n_configurations > _MAX_CONFIGURATIONS:
            raise LocusEvaluationError(
                f"{n_configurations} germline configurations exceed the supported maximum"
            )
        states = np.array(
            list(product(*(range(ploidies[n] + 1) for n in names))), dtype=int
        ).reshape(-1, len(names))
        column = {name: i for i, name in enumerate(names)}
        log_probs = np.zeros(len(states))

        for name in names:
            relation = self.pedigree.samples[name].inheritance
            child = states[:, column[name]]
            if isinstance(relation, MendelianInheritance):
                p1, p2 = (self.pedigree.germline_origin(p) for p in relation.parents)
                table = mendelian_transmission(
                    ploidies[p1], ploidies[p2], ploidies[name], self.germline_rate(name)
                )
                log_probs += safe_log(
                    table[states[:, column[p1]], states[:, column[p2]], child]
                )
            else:
                log_probs += infinite_sites_prior(
                    ploidies[name], self.species.heterozygosity
                )[child]

        keep = np.isfinite(log_probs)
        if not keep.any():
            raise DomainEmptyError("no germline configuration has non-zero prior probability")
        logger.debug("%d of %d germline configurations feasible", keep.sum(), len(states))
        return names, states[keep], log_probs[keep]

    def log_prior(
        self,
        sample: str,
        vafs: np.ndarray,
        bases: np.ndarray,
        kinds: np.ndarray,
        log_weights: np.ndarray,
    ) -> np.ndarray:
        """
        Log prior of a free sample's VAF at grid rows, given the base VAF per row.

        ATOM rows carry the atom mass only where they coincide with the base,
        POINT rows fall back to the density value, DENSITY rows contribute
        density times quadrature weight.
        """
        rate = self.somatic_rate(sample)
        delta = vafs - bases
        log_norm = -np.log1p(somatic_mass(bases, rate, self.min_somatic_vaf))
        density = somatic_log_density(delta, rate, self.min_somatic_vaf) + log_norm
        at_base = np.abs(delta) <= VAF_EPS
        return np.where(
            kinds == DENSITY,
            density + log_weights,
            np.where(at_base, log_norm, np.where(kinds == POINT, density, LOG_ZERO)),
        )


def germline_bases(
    names: Sequence[str], states: np.ndarray, ploidies: Mapping[str, int]
) -> Dict[str, np.ndarray]:
    """Germline VAF m / N per germline sample and configuration."""
    bases = {}
    for i, name in enumerate(names):
        ploidy = ploidies[name]
        bases[name] = states[:, i] / ploidy if ploidy > 0 else np.zeros(len(states))
    return bases
