from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Union

from .errors import ScenarioConfigError


_SEXES = ("male", "female")
_DEFAULT_GENOME_SIZE = 3.5e9
_DEFAULT_GERMLINE_MUTATION_RATE = 1e-8
_DEFAULT_HETEROZYGOSITY = 1e-3
_PAIRHMM_MODES = ("exact", "fast", "homopolymer")
_VAF_ESTIMATES = ("map", "mean")


def _chromosome_key(contig: str) -> str:
    """Normalize a contig name for ploidy lookup ('chrX' and 'X' both map to 'X')."""
    if contig[:3].lower() == "chr":
        return contig[3:]
    return contig


def _check_ploidy(value, where: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ScenarioConfigError(f"ploidy for {where} must be a non-negative integer, got {value!r}")
    return value


def _chromosome_table(value, where: str) -> Dict[str, int]:
    if isinstance(value, Mapping):
        table = {
            _chromosome_key(str(chrom)): _check_ploidy(p, f"{where}/{chrom}")
            for chrom, p in value.items()
        }
    else:
        table = {"all": _check_ploidy(value, where)}
    if "all" not in table:
        raise ScenarioConfigError(f"ploidy table for {where} must define 'all'")
    return table


@dataclass
class PloidyTable:
    """
    Ploidy keyed by (sex, chromosome class).

    Chromosome keys are contig names without a 'chr' prefix; 'all' is the
    fallback for contigs that are not listed explicitly. When ``by_sex`` is
    empty the table is sex-agnostic and ``default`` applies to every sample.
    """

    default: Dict[str, int] = field(default_factory=lambda: {"all": 2})
    by_sex: Dict[str, Dict[str, int]] = field(default_factory=dict)

    @classmethod
    def from_config(cls, value: Union[int, Mapping, "PloidyTable"]) -> "PloidyTable":
        """
        Build a table from the scenario's ``ploidy`` entry.

        Accepted shapes:
            2
            {all: 2, X: 2}
            {male: {all: 2, X: 1, Y: 1}, female: {all: 2, X: 2, Y: 0}}
        """
        if isinstance(value, PloidyTable):
            return value
        if isinstance(value, Mapping) and any(k in _SEXES for k in value):
            unknown = [k for k in value if k not in _SEXES]
            if unknown:
                raise ScenarioConfigError(
                    f"ploidy table mixes sexes with other keys: {', '.join(map(str, unknown))}"
                )
            by_sex = {sex: _chromosome_table(v, sex) for sex, v in value.items()}
            return cls(default={}, by_sex=by_sex)
        return cls(default=_chromosome_table(value, "species"))

    @property
    def sex_specific(self) -> bool:
        return bool(self.by_sex)

    def ploidy(self, contig: str, sex: Optional[str] = None) -> int:
        """Ploidy of ``contig`` for a sample of the given sex."""
        if self.sex_specific:
            if sex not in self.by_sex:
                raise ScenarioConfigError(
                    f"ploidy table has no entry for sex {sex!r}"
                )
            table = self.by_sex[sex]
        else:
            table = self.default
        return table.get(_chromosome_key(contig), table["all"])


@dataclass
class SpeciesParameters:
    """
    Per-species population genetics parameters.

    Loaded once per scenario and shared read-only by all locus evaluations.
    """

    genome_size: float = _DEFAULT_GENOME_SIZE
    germline_mutation_rate: float = _DEFAULT_GERMLINE_MUTATION_RATE
    heterozygosity: float = _DEFAULT_HETEROZYGOSITY
    ploidy: PloidyTable = field(default_factory=PloidyTable)

    def __post_init__(self):
        self.ploidy = PloidyTable.from_config(self.ploidy)
        if not self.genome_size > 0:
            raise ScenarioConfigError("genome-size must be positive")
        if not 0.0 <= self.germline_mutation_rate <= 1.0:
            raise ScenarioConfigError("germline-mutation-rate must be in [0, 1]")
        if not 0.0 <= self.heterozygosity < 1.0:
            raise ScenarioConfigError("heterozygosity must be in [0, 1)")

    @classmethod
    def from_config(cls, config: Mapping) -> "SpeciesParameters":
        """Build from the scenario's ``species`` section (hyphenated keys)."""
        known = {"genome-size", "germline-mutation-rate", "heterozygosity", "ploidy"}
        unknown = set(config) - known
        if unknown:
            raise ScenarioConfigError(
                f"unknown species parameters: {', '.join(sorted(unknown))}"
            )
        try:
            return cls(
                genome_size=float(config.get("genome-size", _DEFAULT_GENOME_SIZE)),
                germline_mutation_rate=float(
                    config.get("germline-mutation-rate", _DEFAULT_GERMLINE_MUTATION_RATE)
                ),
                heterozygosity=float(config.get("heterozygosity", _DEFAULT_HETEROZYGOSITY)),
                ploidy=config.get("ploidy", 2),
            )
        except ScenarioConfigError:
            raise
        except (TypeError, ValueError) as e:
            raise ScenarioConfigError(f"invalid species parameters: {e}") from e


@dataclass
class CallingOptions:
    """
    Engine configuration.

    ``pairhmm_mode`` is only carried through for the upstream observation
    producer; ``max_depth`` caps observations per sample before inference.
    """

    omit_strand_bias: bool = False
    omit_read_orientation_bias: bool = False
    pairhmm_mode: str = "exact"
    max_depth: int = 200

    # Integration
    integration_tolerance: float = 1e-3
    gauss_order: int = 5
    max_bisections: int = 6

    # Priors
    artifact_prior: float = 1e-3
    min_somatic_vaf: float = 1e-3

    # Reporting
    vaf_estimate: str = "map"
    seed: int = 42

    def __post_init__(self):
        if self.pairhmm_mode not in _PAIRHMM_MODES:
            raise ScenarioConfigError(
                f"pairhmm_mode must be one of {', '.join(_PAIRHMM_MODES)}"
            )
        if self.vaf_estimate not in _VAF_ESTIMATES:
            raise ScenarioConfigError(
                f"vaf_estimate must be one of {', '.join(_VAF_ESTIMATES)}"
            )
        if self.max_depth < 1:
            raise ScenarioConfigError("max_depth must be at least 1")
        if not self.integration_tolerance > 0:
            raise ScenarioConfigError("integration_tolerance must be positive")
        if self.gauss_order < 1:
            raise ScenarioConfigError("gauss_order must be at least 1")
        if self.max_bisections < 0:
            raise ScenarioConfigError("max_bisections must be non-negative")
        if not 0.0 < self.artifact_prior < 1.0:
            raise ScenarioConfigError("artifact_prior must be in (0, 1)")
        if not 0.0 < self.min_somatic_vaf < 1.0:
            raise ScenarioConfigError("min_somatic_vaf must be in (0, 1)")
