import numpy as np
import pytest

from VAFpost.caller import VariantCaller, downsample, evaluate_locus
from VAFpost.params import CallingOptions
from VAFpost.scenario import parse_scenario
from VAFpost.utils import Locus, Observation


SCENARIO = """
species:
  heterozygosity: 0.001
  germline-mutation-rate: 1e-3
  ploidy:
    male: {all: 2, X: 1, Y: 1}
    female: {all: 2, X: 2, Y: 0}
samples:
  sample:
    sex: female
    universe: "[0.5,1.0]"
events:
  hom: "sample:1.0"
  het: "sample:0.5"
"""


def reads(n_alt, n_ref):
    alt = Observation.from_probs(prob_ref=0.001, prob_alt=0.9)
    ref = Observation.from_probs(prob_ref=0.9, prob_alt=0.001)
    return [alt] * n_alt + [ref] * n_ref


def distinct_reads(n):
    """Reads that can be told apart after downsampling."""
    return [Observation.from_probs(prob_ref=0.5, prob_alt=(i + 1) / (n + 1)) for i in range(n)]


@pytest.fixture(scope="module")
def scenario():
    return parse_scenario(SCENARIO)


@pytest.fixture
def candidates():
    return [
        (Locus('chr1', 100, 'A', 'G'), {'sample': reads(10, 10)}),
        (Locus('chrY', 200, 'A', 'G'), {'sample': reads(5, 0)}),
        (Locus('chr2', 300, 'C', 'T'), {'sample': reads(20, 0)}),
    ]


class TestDownsample:
    """Tests for downsample."""

    def test_below_cap(self):
        """Test pileups within the cap are kept unchanged."""
        obs = distinct_reads(5)
        assert downsample(obs, 10, Locus('chr1', 1, 'A', 'G'), 42) == obs

    def test_cap_and_order(self):
        """Test the cap is applied and input order is preserved."""
        obs = distinct_reads(50)
        kept = downsample(obs, 20, Locus('chr1', 1, 'A', 'G'), 42)
        assert len(kept) == 20
        positions = [obs.index(o) for o in kept]
        assert positions == sorted(positions)
        assert len(set(positions)) == 20

    def test_deterministic(self):
        """Test the same seed and locus always keep the same reads."""
        obs = distinct_reads(50)
        locus = Locus('chr1', 1, 'A', 'G')
        assert downsample(obs, 20, locus, 42) == downsample(obs, 20, locus, 42)

    def test_depends_on_locus(self):
        """Test different loci draw different subsets."""
        obs = distinct_reads(50)
        first = downsample(obs, 10, Locus('chr1', 1, 'A', 'G'), 42)
        second = downsample(obs, 10, Locus('chr1', 2, 'A', 'G'), 42)
        assert first != second


class TestEvaluateLocus:
    """Tests for evaluate_locus."""

    def test_success(self, scenario):
        """Test a regular locus is evaluated."""
        caller = VariantCaller(scenario)
        result = evaluate_locus(caller.engine, Locus('chr1', 100, 'A', 'G'), {'sample': reads(10, 10)})
        assert not result.failed
        assert result.probabilities['het'] > 0.99

    def test_failure_is_captured(self, scenario):
        """Test an empty domain becomes a NaN result instead of an exception."""
        caller = VariantCaller(scenario)
        result = evaluate_locus(caller.engine, Locus('chrY', 200, 'A', 'G'), {'sample': reads(5, 0)})
        assert result.failed
        assert set(result.probabilities) == set(caller.event_names)
        assert all(np.isnan(p) for p in result.probabilities.values())
        assert np.isnan(result.vaf_estimates['sample'])
        assert np.isnan(result.phred('het'))

    def test_depth_cap(self, scenario):
        """Test observations beyond max_depth are not used."""
        caller = VariantCaller(scenario, CallingOptions(max_depth=10))
        locus = Locus('chr1', 100, 'A', 'G')
        capped = evaluate_locus(caller.engine, locus, {'sample': reads(100, 100)})
        direct = caller.engine.compute(
            locus, {'sample': downsample(reads(100, 100), 10, locus, caller.options.seed)}
        )
        assert capped.probabilities == direct.probabilities


class TestVariantCaller:
    """Tests for VariantCaller."""

    def test_order_and_failures(self, scenario, candidates):
        """Test results come in input order and a failing locus does not stop its siblings."""
        results = list(VariantCaller(scenario).call(candidates))
        assert [r.locus for r in results] == [locus for locus, _ in candidates]
        assert [r.failed for r in results] == [False, True, False]
        assert results[0].probabilities['het'] > 0.99
        assert results[2].probabilities['hom'] > 0.99

    def test_worker_processes(self, scenario, candidates):
        """Test a process pool yields the same results as in-process evaluation."""
        caller = VariantCaller(scenario)
        serial = list(caller.call(candidates))
        parallel = list(caller.call(candidates, workers=2))
        assert [r.locus for r in parallel] == [r.locus for r in serial]
        for a, b in zip(serial, parallel):
            assert a.failed == b.failed
            if not a.failed:
                assert a.probabilities == b.probabilities
                assert a.vaf_estimates == b.vaf_estimates

    def test_invalid_worker_count(self, scenario):
        """Test at least one worker is required."""
        with pytest.raises(ValueError):
            list(VariantCaller(scenario).call([], workers=0))

    def test_event_names(self, scenario):
        """Test implicit events are reported after the declared ones."""
        caller = VariantCaller(scenario)
        assert caller.event_names == ['hom', 'het', 'absent', 'artifact']
        assert caller.sample_names == ['sample']
