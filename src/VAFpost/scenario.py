"""
Scenario loading.

A scenario is a YAML document, optionally a Jinja2 template, e.g.

    species:
      heterozygosity: 0.001
      germline-mutation-rate: 1e-3
      ploidy:
        male: {all: 2, X: 1, Y: 1}
        female: {all: 2, X: 2, Y: 0}
    samples:
      normal:
        sex: female
        somatic-effective-mutation-rate: 1e-10
      tumor:
        sex: female
        somatic-effective-mutation-rate: 3e-7
        inheritance:
          clonal: {from: normal, somatic: false}
        contamination: {by: normal, fraction: {{ purity_loss }}}
    expressions:
      ref: "normal:0.0"
    events:
      somatic_tumor: "tumor:]0.0,1.0] & $ref"

Everything is validated here, before any locus is evaluated.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import jinja2
import yaml

from .errors import ScenarioConfigError
from .grammar import Expression, compile_events
from .params import SpeciesParameters
from .prior import (
    ClonalInheritance,
    Contamination,
    Inheritance,
    MendelianInheritance,
    Pedigree,
)
from .universe import VAFUniverse

logger = logging.getLogger(__name__)

_SEXES = ("male", "female")
_SAMPLE_KEYS = {
    "sex",
    "universe",
    "inheritance",
    "contamination",
    "somatic-effective-mutation-rate",
    "germline-mutation-rate",
}
# Consumed by the upstream observation producer; kept for reference only.
_PASSTHROUGH_KEYS = {
    "alignment-properties",
    "max-depth",
    "spurious-ins-rate",
    "spurious-del-rate",
    "spurious-insext-rate",
    "spurious-delext-rate",
}
_SCENARIO_KEYS = {"species", "samples", "expressions", "events"}


@dataclass
class SampleSpec:
    """Declaration of one sample of the group."""

    name: str
    sex: Optional[str] = None
    universe: Optional[VAFUniverse] = None
    inheritance: Optional[Inheritance] = None
    contamination: Optional[Contamination] = None
    somatic_effective_mutation_rate: Optional[float] = None
    germline_mutation_rate: Optional[float] = None
    properties: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.sex is not None and self.sex not in _SEXES:
            raise ScenarioConfigError(
                f"sex of sample {self.name!r} must be one of {', '.join(_SEXES)}, got {self.sex!r}"
            )
        for attr in ("somatic_effective_mutation_rate", "germline_mutation_rate"):
            rate = getattr(self, attr)
            if rate is not None and not 0.0 < rate <= 1.0:
                raise ScenarioConfigError(
                    f"{attr.replace('_', '-')} of sample {self.name!r} must be in (0, 1], got {rate}"
                )


def _rate(config: Mapping, key: str, name: str) -> Optional[float]:
    if key not in config:
        return None
    try:
        return float(config[key])
    except (TypeError, ValueError) as e:
        raise ScenarioConfigError(f"{key} of sample {name!r} is not a number") from e


def _parse_inheritance(value: Any, name: str) -> Inheritance:
    if not isinstance(value, Mapping) or len(value) != 1:
        raise ScenarioConfigError(
            f"inheritance of sample {name!r} must be exactly one of 'mendelian' or 'clonal'"
        )
    kind, body = next(iter(value.items()))
    if not isinstance(body, Mapping) or "from" not in body:
        raise ScenarioConfigError(f"{kind} inheritance of sample {name!r} needs a 'from' entry")
    if kind == "mendelian":
        parents = body["from"]
        if isinstance(parents, str) or len(parents) != 2:
            raise ScenarioConfigError(
                f"mendelian inheritance of sample {name!r} needs exactly two parents"
            )
        return MendelianInheritance(parents=(str(parents[0]), str(parents[1])))
    if kind == "clonal":
        somatic = body.get("somatic", False)
        if not isinstance(somatic, bool):
            raise ScenarioConfigError(f"'somatic' of sample {name!r} must be true or false")
        return ClonalInheritance(source=str(body["from"]), somatic=somatic)
    raise ScenarioConfigError(f"unknown inheritance {kind!r} of sample {name!r}")


def _parse_contamination(value: Any, name: str) -> Contamination:
    if not isinstance(value, Mapping) or set(value) != {"by", "fraction"}:
        raise ScenarioConfigError(
            f"contamination of sample {name!r} needs exactly 'by' and 'fraction'"
        )
    try:
        fraction = float(value["fraction"])
    except (TypeError, ValueError) as e:
        raise ScenarioConfigError(f"contamination fraction of sample {name!r} is not a number") from e
    return Contamination(by=str(value["by"]), fraction=fraction)


def parse_sample(name: str, config: Optional[Mapping]) -> SampleSpec:
    """Parse one entry of the ``samples`` section."""
    config = config or {}
    if not isinstance(config, Mapping):
        raise ScenarioConfigError(f"sample {name!r} must be a mapping")
    unknown = set(config) - _SAMPLE_KEYS - _PASSTHROUGH_KEYS
    if unknown:
        raise ScenarioConfigError(
            f"unknown keys for sample {name!r}: {', '.join(sorted(map(str, unknown)))}"
        )
    return SampleSpec(
        name=name,
        sex=config.get("sex"),
        universe=VAFUniverse.parse(config["universe"]) if "universe" in config else None,
        inheritance=(
            _parse_inheritance(config["inheritance"], name) if "inheritance" in config else None
        ),
        contamination=(
            _parse_contamination(config["contamination"], name)
            if "contamination" in config
            else None
        ),
        somatic_effective_mutation_rate=_rate(config, "somatic-effective-mutation-rate", name),
        germline_mutation_rate=_rate(config, "germline-mutation-rate", name),
        properties={k: v for k, v in config.items() if k in _PASSTHROUGH_KEYS},
    )


@dataclass
class Scenario:
    """
    Validated scenario: samples, relation graph, species and compiled events.

    Shared read-only by all locus evaluations.
    """

    samples: Dict[str, SampleSpec]
    events: Dict[str, Expression]
    species: Optional[SpeciesParameters] = None
    pedigree: Pedigree = field(init=False)

    def __post_init__(self):
        if not self.samples:
            raise ScenarioConfigError("scenario declares no samples")
        self.pedigree = Pedigree(self.samples)
        if self.species is None:
            related = [name for name, s in self.samples.items() if s.inheritance is not None]
            if related:
                raise ScenarioConfigError(
                    f"inheritance of {', '.join(related)} requires a species section"
                )
        elif self.species.ploidy.sex_specific:
            missing = [name for name, s in self.samples.items() if s.sex is None]
            if missing:
                raise ScenarioConfigError(
                    f"ploidy depends on sex but no sex is given for {', '.join(missing)}"
                )

    @classmethod
    def from_config(cls, config: Mapping) -> "Scenario":
        """Build from a parsed scenario document."""
        if not isinstance(config, Mapping):
            raise ScenarioConfigError("scenario must be a mapping")
        unknown = set(config) - _SCENARIO_KEYS
        if unknown:
            raise ScenarioConfigError(
                f"unknown scenario sections: {', '.join(sorted(map(str, unknown)))}"
            )
        samples_config = config.get("samples") or {}
        if not isinstance(samples_config, Mapping):
            raise ScenarioConfigError("'samples' must map sample names to declarations")
        samples = {str(name): parse_sample(str(name), body) for name, body in samples_config.items()}

        species = None
        if config.get("species") is not None:
            species = SpeciesParameters.from_config(config["species"])

        events = {str(k): str(v) for k, v in (config.get("events") or {}).items()}
        expressions = {str(k): str(v) for k, v in (config.get("expressions") or {}).items()}
        compiled = compile_events(events, expressions, samples)
        return cls(samples=samples, events=compiled, species=species)


def render_scenario(text: str, variables: Optional[Mapping[str, Any]] = None) -> str:
    """Render scenario text as a Jinja2 template; undefined variables are errors."""
    try:
        template = jinja2.Template(text, undefined=jinja2.StrictUndefined)
        return template.render(**(variables or {}))
    except jinja2.TemplateError as e:
        raise ScenarioConfigError(f"cannot render scenario template: {e}") from e


def parse_scenario(text: str, variables: Optional[Mapping[str, Any]] = None) -> Scenario:
    """Render, parse and validate scenario text."""
    rendered = render_scenario(text, variables)
    try:
        config = yaml.safe_load(rendered)
    except yaml.YAMLError as e:
        raise ScenarioConfigError(f"scenario is not valid YAML: {e}") from e
    scenario = Scenario.from_config(config or {})
    logger.info(
        "Loaded scenario with %d samples and %d events", len(scenario.samples), len(scenario.events)
    )
    return scenario


def load_scenario(path: Union[str, Path], **variables) -> Scenario:
    """
    Load a scenario file.

    Parameters
    ----------
    path : str or Path
        YAML file, optionally containing Jinja2 placeholders.
    **variables
        Template variables.
    """
    path = Path(path)
    logger.info("Reading scenario %s", path)
    return parse_scenario(path.read_text(), variables)
