import numpy as np
import pytest
from scipy.integrate import quad

from VAFpost.errors import DomainEmptyError, ScenarioConfigError
from VAFpost.params import SpeciesParameters
from VAFpost.prior import (
    ATOM,
    DENSITY,
    POINT,
    ClonalInheritance,
    Contamination,
    FlatPrior,
    MendelianInheritance,
    Pedigree,
    PedigreePrior,
    infinite_sites_prior,
    mendelian_transmission,
    somatic_log_density,
    somatic_mass,
    transmitted_counts,
)
from VAFpost.scenario import SampleSpec


def _samples(**relations):
    return {
        name: SampleSpec(name=name, **kwargs) for name, kwargs in relations.items()
    }


class TestPedigree:
    """Tests for Pedigree."""

    def test_topological_order(self):
        """Test sources come before dependents regardless of declaration order."""
        samples = _samples(
            tumor=dict(inheritance=ClonalInheritance('normal')),
            child=dict(inheritance=MendelianInheritance(('father', 'mother'))),
            normal={},
            father={},
            mother={},
        )
        order = Pedigree(samples).order
        assert order.index('normal') < order.index('tumor')
        assert order.index('father') < order.index('child')
        assert order.index('mother') < order.index('child')

    def test_cycle_rejected(self):
        """Test cyclic inheritance fails at load time."""
        samples = _samples(
            a=dict(inheritance=ClonalInheritance('b')),
            b=dict(inheritance=ClonalInheritance('c')),
            c=dict(inheritance=ClonalInheritance('a')),
        )
        with pytest.raises(ScenarioConfigError, match="cyclic"):
            Pedigree(samples)

    def test_mutual_contamination_allowed(self):
        """Test contamination edges are not part of the cycle check."""
        samples = _samples(
            tumor=dict(contamination=Contamination('normal', 0.2)),
            normal=dict(contamination=Contamination('tumor', 0.05)),
        )
        assert set(Pedigree(samples).order) == {'tumor', 'normal'}

    @pytest.mark.parametrize("relations", [
        dict(a=dict(inheritance=ClonalInheritance('x'))),
        dict(a=dict(inheritance=ClonalInheritance('a'))),
        dict(a=dict(contamination=Contamination('x', 0.1))),
        dict(a=dict(contamination=Contamination('b', 1.5)), b={}),
        dict(a=dict(inheritance=MendelianInheritance(('b', 'b'))), b={}),
    ])
    def test_invalid_relations(self, relations):
        """Test unknown names, self references, bad fractions and bad parents."""
        with pytest.raises(ScenarioConfigError):
            Pedigree(_samples(**relations))

    def test_germline_origin(self):
        """Test clonal chains resolve to the sample carrying the genotype."""
        samples = _samples(
            normal={},
            primary=dict(inheritance=ClonalInheritance('normal')),
            relapse=dict(inheritance=ClonalInheritance('primary', somatic=True)),
        )
        pedigree = Pedigree(samples)
        assert pedigree.germline_origin('relapse') == 'normal'
        assert pedigree.germline_samples == ['normal']


class TestGermlineDistributions:
    """Tests for the germline prior and transmission tables."""

    def test_infinite_sites(self):
        """Test P(m) = theta / m and normalization."""
        log_p = infinite_sites_prior(2, 0.001)
        p = np.exp(log_p)
        np.testing.assert_allclose(p[1:], [0.001, 0.0005])
        assert p.sum() == pytest.approx(1.0)

    def test_infinite_sites_ploidy_zero(self):
        """Test ploidy 0 has a single state with probability 1."""
        np.testing.assert_array_equal(infinite_sites_prior(0, 0.001), [0.0])

    @pytest.mark.parametrize("child,p1,p2,expected", [
        (2, 2, 2, [(1.0, 1, 1)]),   # autosome
        (1, 1, 2, [(1.0, 0, 1)]),   # X in a son: from the mother
        (2, 1, 2, [(1.0, 1, 1)]),   # X in a daughter
        (1, 1, 0, [(1.0, 1, 0)]),   # Y in a son: from the father
        (0, 1, 0, [(1.0, 0, 0)]),   # Y in a daughter
    ])
    def test_transmitted_counts(self, child, p1, p2, expected):
        """Test allele counts drawn from each parent."""
        assert transmitted_counts(child, p1, p2) == expected

    def test_transmitted_counts_tie(self):
        """Test an odd remainder between equal parents averages both options."""
        assert transmitted_counts(1, 2, 2) == [(0.5, 1, 0), (0.5, 0, 1)]

    def test_transmitted_counts_impossible(self):
        """Test parents that cannot supply the child's ploidy."""
        with pytest.raises(DomainEmptyError):
            transmitted_counts(2, 0, 1)

    def test_mendelian_table_without_mutation(self):
        """Test the classic diploid transmission table."""
        table = mendelian_transmission(2, 2, 2, 0.0)
        np.testing.assert_allclose(table[1, 1], [0.25, 0.5, 0.25])
        np.testing.assert_allclose(table[0, 2], [0.0, 1.0, 0.0])
        np.testing.assert_allclose(table.sum(axis=2), 1.0)

    def test_hom_ref_parents(self):
        """Test hom-ref parents give a hom-alt child with probability at most the mutation rate."""
        rate = 1e-3
        table = mendelian_transmission(2, 2, 2, rate)
        assert table[0, 0, 2] == pytest.approx(rate ** 2)
        assert table[0, 0, 2] <= rate
        assert table[0, 0, 1] == pytest.approx(2 * rate * (1 - rate))
        np.testing.assert_allclose(table.sum(axis=2), 1.0)

    def test_x_linked_son(self):
        """Test a son's X comes from the mother only."""
        table = mendelian_transmission(1, 2, 1, 0.0)
        np.testing.assert_allclose(table[1, 0], [1.0, 0.0])
        np.testing.assert_allclose(table[0, 1], [0.5, 0.5])


class TestSomaticKernel:
    """Tests for the somatic mutation kernel."""

    @pytest.mark.parametrize("base", [0.0, 0.5, 1.0, 0.0005])
    def test_mass_matches_numeric_integral(self, base):
        """Test the closed-form density mass."""
        rate, delta = 1e-3, 1e-3
        density = lambda v: np.exp(somatic_log_density(v - base, rate, delta))
        points = [p for p in (base - delta, base, base + delta) if 0.0 < p < 1.0]
        numeric, _ = quad(density, 0.0, 1.0, points=points, limit=200)
        assert float(somatic_mass(base, rate, delta)) == pytest.approx(numeric, rel=1e-6)

    def test_flat_below_min_vaf(self):
        """Test the density is constant within min_somatic_vaf of the base."""
        values = somatic_log_density(np.array([0.0, 1e-4, -1e-3]), 1e-6, 1e-3)
        np.testing.assert_allclose(values, values[0])


class TestPedigreePrior:
    """Tests for PedigreePrior."""

    @pytest.fixture
    def trio(self):
        samples = _samples(
            father=dict(sex='male'),
            mother=dict(sex='female'),
            son=dict(sex='male', inheritance=MendelianInheritance(('father', 'mother'))),
        )
        species = SpeciesParameters(
            heterozygosity=0.001,
            ploidy={'male': {'all': 2, 'X': 1, 'Y': 1}, 'female': {'all': 2, 'X': 2, 'Y': 0}},
        )
        return PedigreePrior(Pedigree(samples), species)

    def test_ploidies(self, trio):
        """Test ploidy lookup by sex and contig."""
        assert trio.ploidies('chrX') == {'father': 1, 'mother': 2, 'son': 1}
        assert trio.ploidies('chrY') == {'father': 1, 'mother': 0, 'son': 1}

    def test_configurations_normalized(self, trio):
        """Test germline configuration probabilities sum to 1."""
        for contig in ('chr1', 'chrX', 'chrY'):
            names, states, log_probs = trio.germline_configurations(trio.ploidies(contig))
            assert names == ['father', 'mother', 'son']
            assert np.exp(log_probs).sum() == pytest.approx(1.0)

    def test_impossible_configurations_removed(self, trio):
        """Test configurations contradicting Mendelian transmission are dropped."""
        species = SpeciesParameters(
            germline_mutation_rate=0.0, ploidy=trio.species.ploidy
        )
        prior = PedigreePrior(trio.pedigree, species)
        names, states, _ = prior.germline_configurations(prior.ploidies('chrY'))
        son = states[:, names.index('son')]
        father = states[:, names.index('father')]
        # without de-novo mutation a son carries his father's Y
        assert set(zip(father, son)) == {(0, 0), (1, 1)}

    def test_missing_sex(self):
        """Test a sex-specific ploidy table requires every sex."""
        species = SpeciesParameters(ploidy={'male': {'all': 2}, 'female': {'all': 2}})
        with pytest.raises(ScenarioConfigError):
            PedigreePrior(Pedigree(_samples(a={})), species)

    def test_log_prior_atom_and_density(self):
        """Test atom mass and density sum to one over the domain."""
        samples = _samples(tumor=dict(somatic_effective_mutation_rate=1e-3))
        prior = PedigreePrior(Pedigree(samples), SpeciesParameters(), min_somatic_vaf=1e-3)
        base = np.array([0.5])
        atom = prior.log_prior('tumor', base, base, np.array([ATOM]), np.zeros(1))
        off_base = prior.log_prior('tumor', np.array([0.2]), base, np.array([ATOM]), np.zeros(1))
        assert off_base[0] == -np.inf

        total = somatic_mass(0.5, 1e-3, 1e-3)
        assert np.exp(atom[0]) == pytest.approx(1.0 / (1.0 + total))

        x = np.array([0.2])
        point = prior.log_prior('tumor', x, base, np.array([POINT]), np.zeros(1))
        weighted = prior.log_prior('tumor', x, base, np.array([DENSITY]), np.log([0.1]))
        assert weighted[0] == pytest.approx(point[0] + np.log(0.1))


class TestFlatPrior:
    """Tests for FlatPrior."""

    def test_weights(self):
        """Test points weigh 1, density nodes their quadrature weight, atoms nothing."""
        prior = FlatPrior()
        kinds = np.array([POINT, DENSITY, ATOM])
        log_weights = np.array([0.0, np.log(0.25), 0.0])
        values = prior.log_prior('tumor', np.zeros(3), None, kinds, log_weights)
        np.testing.assert_allclose(values, [0.0, np.log(0.25), -np.inf])

    def test_single_configuration(self):
        """Test there are no germline states under a flat prior."""
        names, states, log_probs = FlatPrior().germline_configurations({})
        assert names == []
        assert states.shape == (1, 0)
        np.testing.assert_array_equal(log_probs, [0.0])
