from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
from scipy.special import logsumexp


LOG_ZERO = -np.inf
LOG_ONE = 0.0
# Smallest per-read log-likelihood before the value is considered an underflow.
LOG_TINY = float(np.log(np.finfo(float).tiny))
# Probabilities may leave [0, 1] by this much through rounding before it is reported.
PROB_TOLERANCE = 1e-9


# =============================================================================
# Log-space numerics
# =============================================================================


def log_sum_exp(values: np.ndarray) -> float:
    """
    Stable log(Σ exp(values)).

    An empty input or an input that is -inf everywhere sums to -inf
    (probability zero) instead of raising or producing NaN.
    """
    values = np.asarray(values, dtype=float)
    if values.size == 0 or not np.any(np.isfinite(values)):
        return LOG_ZERO
    return float(logsumexp(values))


def log1mexp(x: np.ndarray) -> np.ndarray:
    """
    Compute log(1 - exp(x)) for x <= 0 without cancellation.

    Uses the two-branch formulation of Mächler (2012):
        x > -ln 2  →  log(-expm1(x))
        otherwise  →  log1p(-exp(x))
    """
    x = np.asarray(x, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(
            x > -np.log(2.0),
            np.log(-np.expm1(np.minimum(x, 0.0))),
            np.log1p(-np.exp(np.minimum(x, 0.0))),
        )


def safe_log(p: np.ndarray) -> np.ndarray:
    """Natural logarithm mapping 0 to -inf without a divide warning."""
    with np.errstate(divide="ignore"):
        return np.log(np.asarray(p, dtype=float))


def normalized_prob(log_mass: float, log_total: float) -> Tuple[float, bool]:
    """
    Convert a sub-mass and the total mass (both log) into a probability.

    Returns
    -------
    tuple[float, bool]
        (probability clipped to [0, 1], whether clipping exceeded rounding noise).
    """
    if log_mass == LOG_ZERO:
        return 0.0, False
    p = float(np.exp(log_mass - log_total))
    clipped = min(max(p, 0.0), 1.0)
    return clipped, abs(clipped - p) > PROB_TOLERANCE


def prob_to_phred(p: float) -> float:
    """Phred-scale a probability: -10 log10(p), inf for p = 0, NaN stays NaN."""
    if np.isnan(p):
        return float("nan")
    if p <= 0.0:
        return float("inf")
    return float(-10.0 * np.log10(p))


def phred_to_prob(q: float) -> float:
    """Inverse of prob_to_phred."""
    return float(10.0 ** (-q / 10.0))


# =============================================================================
# Data classes
# =============================================================================


class Strand(Enum):
    """Strand a read was sequenced from; UNKNOWN carries no strand information."""

    FORWARD = "+"
    REVERSE = "-"
    UNKNOWN = "*"


class ReadOrientation(Enum):
    """Pair orientation of a read (F1R2 / F2R1); UNKNOWN carries no information."""

    F1R2 = "F1R2"
    F2R1 = "F2R1"
    UNKNOWN = "*"


_NUCLEOTIDES = frozenset("ACGTN")
# Reference sequences may carry IUPAC ambiguity codes.
_REFERENCE_BASES = _NUCLEOTIDES | frozenset("RYSWKMBDHV")


@dataclass(frozen=True)
class Locus:
    """
    A candidate variant: contig, 1-based position, reference and alternative allele.

    Immutable once loaded.
    """

    contig: str
    pos: int
    ref: str
    alt: str
    id: Optional[str] = None

    def __post_init__(self):
        if not self.ref or not self.alt:
            raise ValueError("Locus needs non-empty ref and alt alleles")
        if set(self.ref.upper()) - _REFERENCE_BASES or set(self.alt.upper()) - _NUCLEOTIDES:
            raise ValueError(f"Locus alleles must be nucleotides, got {self.ref}>{self.alt}")

    @property
    def variant_type(self) -> str:
        """One of 'SNV', 'MNV', 'INS', 'DEL'."""
        if len(self.ref) == len(self.alt):
            return "SNV" if len(self.ref) == 1 else "MNV"
        return "INS" if len(self.alt) > len(self.ref) else "DEL"

    @property
    def substitution(self) -> Optional[Tuple[str, str]]:
        """(ref, alt) base pair for SNVs, None otherwise."""
        if self.variant_type != "SNV":
            return None
        return self.ref.upper(), self.alt.upper()

    @property
    def name(self) -> str:
        return self.id or f"{self.contig}:{self.pos}:{self.ref}:{self.alt}"


@dataclass(frozen=True)
class Observation:
    """
    One read's evidence at a locus.

    All probabilities are natural-log values:
        prob_ref     : P(read | reference allele)
        prob_alt     : P(read | alternative allele)
        prob_mapping : P(read is mapped correctly), 0.0 means certain
    """

    prob_ref: float
    prob_alt: float
    strand: Strand = Strand.UNKNOWN
    orientation: ReadOrientation = ReadOrientation.UNKNOWN
    prob_mapping: float = LOG_ONE

    def __post_init__(self):
        for name in ("prob_ref", "prob_alt", "prob_mapping"):
            value = getattr(self, name)
            if np.isnan(value) or value > 1e-12:
                raise ValueError(f"{name} must be a log-probability (<= 0), got {value}")

    @classmethod
    def from_probs(
        cls,
        prob_ref: float,
        prob_alt: float,
        strand: Strand = Strand.UNKNOWN,
        orientation: ReadOrientation = ReadOrientation.UNKNOWN,
        prob_mapping: float = 1.0,
    ) -> "Observation":
        """Build from linear-scale probabilities."""
        return cls(
            prob_ref=float(safe_log(prob_ref)),
            prob_alt=float(safe_log(prob_alt)),
            strand=strand,
            orientation=orientation,
            prob_mapping=float(safe_log(prob_mapping)),
        )

    @property
    def supports_alt(self) -> bool:
        return self.prob_alt > self.prob_ref


@dataclass
class PosteriorResult:
    """
    Posterior summary for one candidate locus.

    ``probabilities`` maps event name to linear-scale probability; on a
    per-locus failure every value is NaN and ``error`` holds the reason.
    """

    locus: Locus
    probabilities: Dict[str, float]
    vaf_estimates: Dict[str, float]
    diagnostics: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def failure(
        cls,
        locus: Locus,
        events: Iterable[str],
        samples: Iterable[str],
        message: str,
    ) -> "PosteriorResult":
        return cls(
            locus=locus,
            probabilities={name: float("nan") for name in events},
            vaf_estimates={name: float("nan") for name in samples},
            error=message,
        )

    @property
    def failed(self) -> bool:
        return self.error is not None

    def phred(self, event: str) -> float:
        """Phred-scaled posterior probability of ``event``."""
        return prob_to_phred(self.probabilities[event])

    def info_fields(self) -> Dict[str, float]:
        """PROB_<EVENT> fields in Phred scale, as written to the call file."""
        return {
            f"PROB_{event.upper()}": self.phred(event) for event in self.probabilities
        }
