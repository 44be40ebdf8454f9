import pytest

from VAFpost.errors import ScenarioConfigError
from VAFpost.prior import ClonalInheritance, Contamination, MendelianInheritance
from VAFpost.scenario import load_scenario, parse_sample, parse_scenario
from VAFpost.universe import VAFUniverse


SCENARIO = """
species:
  heterozygosity: 0.001
  germline-mutation-rate: 1e-3
  ploidy:
    male: {all: 2, X: 1, Y: 1}
    female: {all: 2, X: 2, Y: 0}

samples:
  tumor:
    sex: female
    somatic-effective-mutation-rate: 3e-7
    universe: "[0.0,0.1] | 0.5 | 1.0"
    inheritance:
      clonal:
        from: normal
        somatic: false
    contamination:
      by: normal
      fraction: {{ contamination }}
  normal:
    sex: female

expressions:
  ref: "normal:0.0"

events:
  somatic: "tumor:]0.0,0.1] & $ref"
  germline: "!$ref"
"""


class TestParseSample:
    """Tests for parse_sample."""

    def test_full_declaration(self):
        """Test every relation kind is parsed."""
        sample = parse_sample('tumor', {
            'sex': 'female',
            'somatic-effective-mutation-rate': 3e-7,
            'germline-mutation-rate': '1e-8',
            'universe': '[0.0,1.0]',
            'inheritance': {'clonal': {'from': 'normal', 'somatic': True}},
            'contamination': {'by': 'normal', 'fraction': 0.2},
        })
        assert sample.sex == 'female'
        assert sample.somatic_effective_mutation_rate == 3e-7
        assert sample.germline_mutation_rate == 1e-8
        assert sample.universe == VAFUniverse.full()
        assert sample.inheritance == ClonalInheritance('normal', somatic=True)
        assert sample.contamination == Contamination('normal', 0.2)

    def test_mendelian(self):
        """Test Mendelian inheritance with two parents."""
        sample = parse_sample('child', {'inheritance': {'mendelian': {'from': ['p1', 'p2']}}})
        assert sample.inheritance == MendelianInheritance(('p1', 'p2'))

    def test_empty_declaration(self):
        """Test a sample may be declared without any keys."""
        sample = parse_sample('normal', None)
        assert sample.inheritance is None
        assert sample.universe is None

    def test_passthrough_properties(self):
        """Test keys for the upstream observation producer are kept aside."""
        sample = parse_sample('normal', {'max-depth': 100})
        assert sample.properties == {'max-depth': 100}

    @pytest.mark.parametrize("config", [
        {'sex': 'unknown'},
        {'color': 'blue'},
        {'somatic-effective-mutation-rate': 'fast'},
        {'somatic-effective-mutation-rate': 0.0},
        {'inheritance': {'mendelian': {'from': ['p1']}}},
        {'inheritance': {'mendelian': {'from': 'p1'}}},
        {'inheritance': {'clonal': {'source': 'normal'}}},
        {'inheritance': {'clonal': {'from': 'normal', 'somatic': 'yes'}}},
        {'inheritance': {'adopted': {'from': 'x'}}},
        {'contamination': {'by': 'normal'}},
        {'contamination': {'by': 'normal', 'fraction': 'much'}},
        {'universe': '[0.5,0.1]'},
    ])
    def test_invalid(self, config):
        """Test malformed declarations are config errors."""
        with pytest.raises(ScenarioConfigError):
            parse_sample('s', config)


class TestParseScenario:
    """Tests for parse_scenario and load_scenario."""

    def test_template_rendering(self):
        """Test Jinja2 variables are substituted before parsing."""
        scenario = parse_scenario(SCENARIO, {'contamination': 0.25})
        assert scenario.samples['tumor'].contamination.fraction == 0.25
        assert set(scenario.events) == {'somatic', 'germline'}
        assert scenario.pedigree.order.index('normal') < scenario.pedigree.order.index('tumor')
        assert scenario.species.germline_mutation_rate == 1e-3

    def test_undefined_template_variable(self):
        """Test undefined template variables are errors, not empty strings."""
        with pytest.raises(ScenarioConfigError, match="template"):
            parse_scenario(SCENARIO)

    def test_load_from_file(self, tmp_path):
        """Test loading a scenario file with template variables."""
        path = tmp_path / 'scenario.yaml'
        path.write_text(SCENARIO)
        scenario = load_scenario(path, contamination=0.1)
        assert scenario.samples['tumor'].contamination.fraction == 0.1

    def test_invalid_yaml(self):
        """Test YAML syntax errors are config errors."""
        with pytest.raises(ScenarioConfigError, match="YAML"):
            parse_scenario("samples: [a")

    def test_unknown_section(self):
        """Test unknown top-level sections are rejected."""
        with pytest.raises(ScenarioConfigError, match="sections"):
            parse_scenario("samples:\n  a: {}\nscenarios: {}")

    def test_no_samples(self):
        """Test a scenario needs samples."""
        with pytest.raises(ScenarioConfigError):
            parse_scenario("events: {}")

    def test_cyclic_inheritance(self):
        """Test cycles fail at load time."""
        text = """
species: {}
samples:
  a:
    inheritance: {clonal: {from: b}}
  b:
    inheritance: {clonal: {from: a}}
"""
        with pytest.raises(ScenarioConfigError, match="cyclic"):
            parse_scenario(text)

    def test_undefined_event_sample(self):
        """Test events referring to unknown samples fail at load time."""
        with pytest.raises(ScenarioConfigError, match="relapse"):
            parse_scenario('samples:\n  tumor: {}\nevents:\n  e: "relapse:0.5"')

    def test_inheritance_requires_species(self):
        """Test relations need population parameters."""
        text = "samples:\n  normal: {}\n  tumor:\n    inheritance: {clonal: {from: normal}}"
        with pytest.raises(ScenarioConfigError, match="species"):
            parse_scenario(text)

    def test_sex_required_by_ploidy_table(self):
        """Test a sex-specific ploidy table needs every sample's sex."""
        text = "species:\n  ploidy: {male: {all: 2}, female: {all: 2}}\nsamples:\n  normal: {}"
        with pytest.raises(ScenarioConfigError, match="sex"):
            parse_scenario(text)

    def test_flat_scenario(self):
        """Test scenarios without species are accepted."""
        scenario = parse_scenario('samples:\n  tumor: {}\nevents:\n  present: "tumor:]0.0,1.0]"')
        assert scenario.species is None
