"""
Per-sample likelihood of read observations given an allele frequency.

At true allele frequency v each read independently stems from the
alternative allele with probability v and from the reference allele with
probability 1 - v:

    P(read | v) = v · P(read | alt) + (1 - v) · P(read | ref)

and the sample log-likelihood is the sum over reads. Everything is computed
in log space so hundreds of reads do not underflow.

Strand and read-orientation artifacts are composable tagged variants. Each
contributes a log factor for observing the read's strand (orientation) given
that it carries the alt allele under the hypothesis; reference reads always
get the unbiased factor. Factors add in log space. Reads with unknown strand
or orientation are uninformative under every hypothesis.
"""

import logging
import warnings
from dataclasses import dataclass
from enum import Enum
from itertools import product
from typing import List, Sequence

import numpy as np

from .errors import NumericInstabilityWarning
from .utils import (
    LOG_TINY,
    Observation,
    ReadOrientation,
    Strand,
    log1mexp,
    safe_log,
)

logger = logging.getLogger(__name__)

_LOG_HALF = float(np.log(0.5))
# Kass & Raftery "strong" evidence and the minimum mapping probability of a strong observation.
_LOG_STRONG_BAYES_FACTOR = float(np.log(20.0))
_LOG_PROB_095 = float(np.log(0.95))
_MIN_STRONG_OBSERVATIONS = 10
_MIN_BIAS_RATIO = 2.0 / 3.0
# Allele frequencies x reads evaluated per block.
_CHUNK_CELLS = 1 << 20

# Column codes for strand / orientation arrays.
_FIRST, _SECOND, _UNKNOWN = 0, 1, 2
_STRAND_CODES = {Strand.FORWARD: _FIRST, Strand.REVERSE: _SECOND, Strand.UNKNOWN: _UNKNOWN}
_ORIENTATION_CODES = {
    ReadOrientation.F1R2: _FIRST,
    ReadOrientation.F2R1: _SECOND,
    ReadOrientation.UNKNOWN: _UNKNOWN,
}


# =============================================================================
# Bias variants
# =============================================================================


class _TwoSidedBias(Enum):
    """Shared behaviour: NONE, or all alt reads on the first / second side."""

    @property
    def is_artifact(self) -> bool:
        return self.value != "none"

    def log_alt_factor(self, codes: np.ndarray) -> np.ndarray:
        """Log probability of each read's side given that it carries the alt allele."""
        if self.value == "none":
            informative = np.full(codes.shape, _LOG_HALF)
        else:
            biased_side = _FIRST if self.value == "first" else _SECOND
            informative = np.where(codes == biased_side, 0.0, -np.inf)
        return np.where(codes == _UNKNOWN, 0.0, informative)

    @staticmethod
    def log_any_factor(codes: np.ndarray) -> np.ndarray:
        """Log probability of each read's side for reference reads."""
        return np.where(codes == _UNKNOWN, 0.0, _LOG_HALF)

    def matches(self, codes: np.ndarray) -> np.ndarray:
        """Reads lying on the biased side."""
        side = _FIRST if self.value == "first" else _SECOND
        return codes == side


class StrandBias(_TwoSidedBias):
    NONE = "none"
    FORWARD = "first"
    REVERSE = "second"


class ReadOrientationBias(_TwoSidedBias):
    NONE = "none"
    F1R2 = "first"
    F2R1 = "second"


@dataclass(frozen=True)
class Biases:
    """A combination of bias variants; at most one is an artifact."""

    strand: StrandBias = StrandBias.NONE
    orientation: ReadOrientationBias = ReadOrientationBias.NONE

    @classmethod
    def none(cls) -> "Biases":
        return cls()

    @classmethod
    def artifact_combinations(
        cls, consider_strand_bias: bool, consider_read_orientation_bias: bool
    ) -> List["Biases"]:
        """All combinations with exactly one artifact among the considered kinds."""
        strands = list(StrandBias) if consider_strand_bias else [StrandBias.NONE]
        orientations = (
            list(ReadOrientationBias)
            if consider_read_orientation_bias
            else [ReadOrientationBias.NONE]
        )
        return [
            cls(strand, orientation)
            for strand, orientation in product(strands, orientations)
            if strand.is_artifact + orientation.is_artifact == 1
        ]

    @property
    def is_artifact(self) -> bool:
        return self.strand.is_artifact or self.orientation.is_artifact

    def __str__(self) -> str:
        return f"strand={self.strand.name},orientation={self.orientation.name}"


# =============================================================================
# Observations
# =============================================================================


class SampleObservations:
    """
    Columnar view of one sample's observations at one locus.

    Observation order is irrelevant for the likelihood but retained so that
    strand diagnostics can refer back to individual reads.
    """

    def __init__(
        self,
        observations: Sequence[Observation],
        omit_strand_bias: bool = False,
        omit_read_orientation_bias: bool = False,
    ):
        self.observations = list(observations)
        n = len(self.observations)
        self.prob_ref = np.fromiter((o.prob_ref for o in self.observations), float, n)
        self.prob_alt = np.fromiter((o.prob_alt for o in self.observations), float, n)
        self.prob_mapping = np.fromiter((o.prob_mapping for o in self.observations), float, n)
        # Pooled strands / orientations are represented as unknown.
        if omit_strand_bias:
            self.strand = np.full(n, _UNKNOWN)
        else:
            self.strand = np.fromiter((_STRAND_CODES[o.strand] for o in self.observations), int, n)
        if omit_read_orientation_bias:
            self.orientation = np.full(n, _UNKNOWN)
        else:
            self.orientation = np.fromiter(
                (_ORIENTATION_CODES[o.orientation] for o in self.observations), int, n
            )

    def __len__(self) -> int:
        return len(self.observations)

    @property
    def supports_alt(self) -> np.ndarray:
        return self.prob_alt > self.prob_ref

    @property
    def is_strong(self) -> np.ndarray:
        """Well mapped reads with strong (Kass-Raftery) evidence for the alt allele."""
        return (self.prob_mapping >= _LOG_PROB_095) & (
            self.prob_alt - self.prob_ref >= _LOG_STRONG_BAYES_FACTOR
        )

    def bias_matches(self, biases: Biases) -> np.ndarray:
        """Reads whose informative strand / orientation lies on the artifact side."""
        if biases.strand.is_artifact:
            return biases.strand.matches(self.strand)
        if biases.orientation.is_artifact:
            return biases.orientation.matches(self.orientation)
        return np.ones(len(self), dtype=bool)


def is_possible(biases: Biases, pileups: Sequence[SampleObservations]) -> bool:
    """An artifact needs at least one alt-supporting read on its side."""
    if not biases.is_artifact:
        return True
    return any(
        np.any(pileup.supports_alt & pileup.bias_matches(biases)) for pileup in pileups
    )


def is_likely(biases: Biases, pileups: Sequence[SampleObservations]) -> bool:
    """
    With at least ten strong observations in a sample, an artifact is only
    considered if two thirds of them lie on the artifact side; with fewer,
    there is not enough evidence to rule it out.
    """
    if not biases.is_artifact:
        return True
    for pileup in pileups:
        strong = pileup.is_strong
        n_strong = int(strong.sum())
        if n_strong < _MIN_STRONG_OBSERVATIONS:
            return True
        n_biased = int((strong & pileup.bias_matches(biases)).sum())
        if n_biased / n_strong >= _MIN_BIAS_RATIO:
            return True
    return False


# =============================================================================
# Likelihood
# =============================================================================


class SampleLikelihood:
    """
    Log-likelihood of a sample's observations as a function of allele frequency.

    Parameters
    ----------
    pileup : SampleObservations
        The sample's observations at the locus.
    biases : Biases
        Hypothesis on strand / orientation artifacts.

    Attributes
    ----------
    floored : bool
        Set once a per-read likelihood underflowed and was clamped.
    """

    def __init__(self, pileup: SampleObservations, biases: Biases = Biases()):
        self.pileup = pileup
        self.biases = biases
        self.floored = False

        any_factor = StrandBias.log_any_factor(pileup.strand) + ReadOrientationBias.log_any_factor(
            pileup.orientation
        )
        alt_factor = biases.strand.log_alt_factor(pileup.strand) + biases.orientation.log_alt_factor(
            pileup.orientation
        )
        self._log_alt = pileup.prob_alt + alt_factor
        self._log_ref = pileup.prob_ref + any_factor
        # A mismapped read is explained by the average of its emissions.
        self._log_missed = (
            np.logaddexp(pileup.prob_ref, pileup.prob_alt) + _LOG_HALF + any_factor
        )
        self._log_mapped = pileup.prob_mapping
        self._log_mismapped = log1mexp(pileup.prob_mapping)

    @property
    def is_empty(self) -> bool:
        return len(self.pileup) == 0

    def __call__(self, vafs: np.ndarray) -> np.ndarray:
        """
        Log-likelihood for each allele frequency in ``vafs``.

        An empty pileup is uninformative: 0 for every allele frequency.
        """
        vafs = np.asarray(vafs, dtype=float)
        if self.is_empty:
            return np.zeros(vafs.shape)

        unique, inverse = np.unique(vafs, return_inverse=True)
        step = max(1, _CHUNK_CELLS // len(self.pileup))
        totals = np.concatenate(
            [self._sum_reads(unique[i:i + step]) for i in range(0, len(unique), step)]
        )
        return totals[inverse].reshape(vafs.shape)

    def _sum_reads(self, vafs: np.ndarray) -> np.ndarray:
        log_v = safe_log(vafs)[:, None]
        log_1mv = safe_log(1.0 - vafs)[:, None]
        mixture = np.logaddexp(log_v + self._log_alt, log_1mv + self._log_ref)
        per_read = np.logaddexp(
            self._log_mapped + mixture, self._log_mismapped + self._log_missed
        )

        # Only artifact hypotheses may declare a read impossible.
        if not self.biases.is_artifact:
            underflow = per_read < LOG_TINY
            if np.any(underflow):
                if not self.floored:
                    warnings.warn(
                        "per-read likelihood underflow clamped to the smallest positive double",
                        NumericInstabilityWarning,
                        stacklevel=3,
                    )
                    logger.warning("per-read likelihood underflow clamped")
                self.floored = True
                per_read = np.maximum(per_read, LOG_TINY)

        return per_read.sum(axis=1)
