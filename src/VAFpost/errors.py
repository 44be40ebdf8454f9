"""
Error taxonomy for scenario loading and per-locus evaluation.

Scenario problems are fatal and raised before any locus is processed.
Per-locus problems derive from LocusEvaluationError and are attached to
that locus' result by the caller, so sibling loci keep going.
"""


class ScenarioConfigError(ValueError):
    """Malformed scenario: cyclic pedigree, unknown names, bad fractions or universes."""


class LocusEvaluationError(RuntimeError):
    """Base class for failures confined to a single candidate locus."""


class DomainEmptyError(LocusEvaluationError):
    """No feasible allele frequency exists for the joint evaluation domain."""


class NumericInstabilityWarning(RuntimeWarning):
    """A log-space computation was clamped to stay finite."""
