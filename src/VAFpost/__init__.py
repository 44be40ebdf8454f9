"""
Posterior allele frequencies and event probabilities for related samples.

Given per-read allele observations for a group of samples (tumor/normal,
pedigrees, contaminated or clonally related samples) and a scenario that
declares their relations, VAFpost computes the joint posterior over sample
allele frequencies at each candidate variant and reports the posterior
probability of user-defined events.

Example
-------
>>> from VAFpost import load_scenario, VariantCaller, Locus, Observation
>>> scenario = load_scenario("scenario.yaml")
>>> caller = VariantCaller(scenario)
>>> obs = {"tumor": [Observation.from_probs(0.001, 0.9)] * 10}
>>> result, = caller.call([(Locus("chr1", 100, "C", "T"), obs)])
>>> result.probabilities["somatic_tumor"]
"""

from .errors import (
    ScenarioConfigError,
    LocusEvaluationError,
    DomainEmptyError,
    NumericInstabilityWarning,
)

from .params import (
    PloidyTable,
    SpeciesParameters,
    CallingOptions,
)

from .utils import (
    Strand,
    ReadOrientation,
    Locus,
    Observation,
    PosteriorResult,
    log_sum_exp,
    prob_to_phred,
    phred_to_prob,
)

from .universe import (
    VAFPoint,
    VAFRange,
    VAFUniverse,
)

from .grammar import (
    parse_expression,
    compile_events,
)

from .likelihood import (
    StrandBias,
    ReadOrientationBias,
    Biases,
    SampleObservations,
    SampleLikelihood,
)

from .prior import (
    MendelianInheritance,
    ClonalInheritance,
    Contamination,
    Pedigree,
    PedigreePrior,
    FlatPrior,
)

from .posterior import PosteriorEngine

from .scenario import (
    SampleSpec,
    Scenario,
    parse_scenario,
    load_scenario,
)

from .caller import (
    VariantCaller,
    downsample,
)

from .vcf import (
    CallWriter,
    read_candidates,
)

__all__ = [
    # Classes
    "PosteriorEngine",
    "VariantCaller",
    "CallWriter",
    "Pedigree",
    "PedigreePrior",
    "FlatPrior",
    "SampleLikelihood",
    "SampleObservations",
    # Scenario
    "Scenario",
    "SampleSpec",
    "MendelianInheritance",
    "ClonalInheritance",
    "Contamination",
    "parse_scenario",
    "load_scenario",
    # Data classes
    "PloidyTable",
    "SpeciesParameters",
    "CallingOptions",
    "Locus",
    "Observation",
    "PosteriorResult",
    "Strand",
    "ReadOrientation",
    "StrandBias",
    "ReadOrientationBias",
    "Biases",
    "VAFPoint",
    "VAFRange",
    "VAFUniverse",
    # Errors
    "ScenarioConfigError",
    "LocusEvaluationError",
    "DomainEmptyError",
    "NumericInstabilityWarning",
    # Utilities
    "parse_expression",
    "compile_events",
    "read_candidates",
    "downsample",
    "log_sum_exp",
    "prob_to_phred",
    "phred_to_prob",
]

__version__ = "0.1.0"
