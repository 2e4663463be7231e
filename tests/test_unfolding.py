import numpy as np
import pytest

from histunfold import (
    Algorithm,
    ErrorTreatment,
    Histogram,
    Response,
    SystematicsTreatment,
    Unfolding,
    new_unfolding,
)
from histunfold.constants import CHI2_FAILED, REGPARM_UNSET

EDGES = np.linspace(0.0, 5.0, 6)
TRUTH = np.array([100.0, 200.0, 300.0, 200.0, 100.0])
MEASURED = np.array([110.0, 190.0, 300.0, 210.0, 95.0])


@pytest.fixture
def response():
    truth = Histogram(EDGES, TRUTH, name="truth")
    measured = Histogram(EDGES, TRUTH, name="measured")
    return Response(measured, truth, np.diag(TRUTH), name="identity")


@pytest.fixture
def measured():
    return Histogram(EDGES, MEASURED, name="data")


@pytest.fixture
def unfolding(response, measured):
    return Unfolding(response, measured, algorithm="invert", verbose=0, seed=1)


class CountingAlgorithm(Algorithm):
    """Algorithm that always fails and counts its calls."""

    def __init__(self, regparm=None):
        super().__init__(regparm)
        self.calls = 0

    def unfold(self, unfolding):
        self.calls += 1
        return None


class TestUnfoldingResults:
    def test_identity_response_returns_measured(self, unfolding):
        np.testing.assert_allclose(unfolding.vunfold(), MEASURED, rtol=1e-9)

    def test_dummy_algorithm_copies_input(self, response, measured):
        u = Unfolding(response, measured, verbose=0)
        np.testing.assert_array_equal(u.vunfold(), MEASURED)

    def test_vunfold_returns_copy(self, unfolding):
        first = unfolding.vunfold()
        first[:] = 0.0
        np.testing.assert_allclose(unfolding.vunfold(), MEASURED, rtol=1e-9)

    def test_hunfold_has_truth_binning(self, unfolding):
        hist = unfolding.hunfold()
        np.testing.assert_array_equal(hist.edges, EDGES)
        np.testing.assert_allclose(hist.vector(), MEASURED, rtol=1e-9)
        np.testing.assert_allclose(hist.error_vector(), np.sqrt(MEASURED), rtol=1e-6)

    def test_set_measured_vector_invalidates_cache(self, unfolding):
        unfolding.vunfold()
        assert unfolding.cache.unfolded
        new_values = MEASURED * 2.0
        unfolding.set_measured_vector(new_values)
        assert not unfolding.cache.unfolded
        np.testing.assert_allclose(unfolding.vunfold(), new_values, rtol=1e-9)
        np.testing.assert_allclose(
            unfolding.eunfold_v(ErrorTreatment.ERRORS), np.sqrt(new_values), rtol=1e-6
        )

    def test_set_measured_vector_uses_given_errors(self, unfolding):
        errors = np.full(5, 3.0)
        unfolding.set_measured_vector(MEASURED, errors=errors)
        np.testing.assert_allclose(unfolding.emeasured(), errors)
        np.testing.assert_allclose(
            unfolding.eunfold_v(ErrorTreatment.COVARIANCE), errors, rtol=1e-6
        )

    def test_set_measured_vector_rejects_errors_and_covariance(self, unfolding):
        with pytest.raises(ValueError):
            unfolding.set_measured_vector(MEASURED, errors=np.ones(5), covariance=np.eye(5))

    def test_set_measured_vector_wrong_length(self, unfolding):
        with pytest.raises(ValueError):
            unfolding.set_measured_vector(np.ones(4))

    def test_unfold_without_response_raises(self):
        with pytest.raises(ValueError):
            Unfolding(verbose=0).vunfold()

    def test_set_response_none_raises(self, unfolding):
        with pytest.raises(ValueError):
            unfolding.set_response(None)

    def test_response_is_copied(self, response, measured):
        u = Unfolding(response, measured, algorithm="invert", verbose=0)
        response.migrations[1:-1, 1:-1] *= 2.0
        np.testing.assert_allclose(u.vunfold(), MEASURED, rtol=1e-9)

    def test_default_name_and_title(self, unfolding):
        assert unfolding.name == "identity"
        assert unfolding.title.startswith("Unfold ")


class TestErrorTreatments:
    def test_covariance_and_errors_are_independent(self, unfolding):
        cov = np.diag(MEASURED)
        cov[0, 1] = cov[1, 0] = 50.0
        unfolding.set_measured_vector(MEASURED, covariance=cov)

        full = unfolding.eunfold(ErrorTreatment.COVARIANCE)
        diagonal = unfolding.eunfold(ErrorTreatment.ERRORS)

        np.testing.assert_allclose(full, cov, atol=1e-6)
        np.testing.assert_allclose(diagonal, np.diag(np.diag(cov)), atol=1e-6)
        assert unfolding.cache.have_cov
        assert unfolding.cache.have_errors

    def test_no_error_uses_contents(self, unfolding):
        np.testing.assert_allclose(
            unfolding.eunfold(ErrorTreatment.NO_ERROR), np.diag(MEASURED), rtol=1e-9
        )
        np.testing.assert_allclose(
            unfolding.eunfold_v(ErrorTreatment.NO_ERROR), np.sqrt(MEASURED), rtol=1e-9
        )

    def test_weight_matrix_inverts_covariance(self, unfolding):
        wgt = unfolding.wunfold(ErrorTreatment.COVARIANCE)
        np.testing.assert_allclose(wgt, np.diag(1.0 / MEASURED), rtol=1e-6)
        np.testing.assert_allclose(
            unfolding.wunfold(ErrorTreatment.ROOFIT), np.diag(1.0 / MEASURED), rtol=1e-6
        )

    def test_default_resolves_to_last_treatment(self, unfolding):
        unfolding.eunfold_v(ErrorTreatment.COVARIANCE)
        assert unfolding.error_treatment == ErrorTreatment.COVARIANCE
        np.testing.assert_allclose(
            unfolding.eunfold_v(ErrorTreatment.DEFAULT), np.sqrt(MEASURED), rtol=1e-6
        )

    def test_invalid_treatment_raises(self, unfolding):
        with pytest.raises(ValueError):
            unfolding.eunfold_v(42)
        with pytest.raises(ValueError):
            unfolding.unfold_with_errors(42)

    def test_chi2_no_error(self, unfolding):
        expected = np.sum((MEASURED - TRUTH) ** 2 / MEASURED)
        assert unfolding.chi2(TRUTH, ErrorTreatment.NO_ERROR) == pytest.approx(expected)

    def test_chi2_covariance_matches_diagonal(self, unfolding):
        expected = np.sum((MEASURED - TRUTH) ** 2 / MEASURED)
        assert unfolding.chi2(TRUTH, ErrorTreatment.COVARIANCE) == pytest.approx(
            expected, rel=1e-6
        )
        assert unfolding.chi2(None, ErrorTreatment.ERRORS) == pytest.approx(expected, rel=1e-6)

    def test_chi2_wrong_truth_length(self, unfolding):
        with pytest.raises(ValueError):
            unfolding.chi2(np.ones(3))


class TestToyCovariance:
    def test_toy_covariance_converges(self, response, measured):
        u = Unfolding(response, measured, verbose=0, ntoys=2000, seed=12345)
        toy_cov = u.eunfold(ErrorTreatment.COV_TOY)
        cov = u.eunfold(ErrorTreatment.COVARIANCE)

        np.testing.assert_allclose(np.diag(toy_cov), np.diag(cov), rtol=0.15)
        scale = np.sqrt(np.outer(MEASURED, MEASURED))
        off_diagonal = ~np.eye(5, dtype=bool)
        assert np.all(np.abs(toy_cov[off_diagonal]) < 0.15 * scale[off_diagonal])

    def test_toys_restore_nominal_results(self, response, measured):
        u = Unfolding(response, measured, verbose=0, ntoys=20, seed=3)
        nominal = u.vunfold()
        u.eunfold(ErrorTreatment.COV_TOY)
        np.testing.assert_array_equal(u.vunfold(), nominal)
        np.testing.assert_array_equal(u.vmeasured(), MEASURED)
        assert u.cache.have_err_mat

    def test_toy_covariance_needs_two_toys(self, response, measured):
        u = Unfolding(response, measured, verbose=0, ntoys=1, seed=3)
        np.testing.assert_array_equal(u.eunfold_v(ErrorTreatment.COV_TOY), np.zeros(5))
        assert u.cache.fail

    def test_run_toys_is_reproducible(self, response, measured):
        a = Unfolding(response, measured, verbose=0, seed=99).run_toys(10)
        b = Unfolding(response, measured, verbose=0, seed=99).run_toys(10)
        assert len(a) == 10
        np.testing.assert_array_equal(np.asarray(a.values), np.asarray(b.values))
        assert len(a.chi2) == 10

    def test_response_systematics(self, response, measured):
        u = Unfolding(
            response, measured, algorithm="invert", verbose=0, seed=4,
            systematics=SystematicsTreatment.ALL,
        )
        values = np.asarray(u.run_toys(5, with_errors=False).values)
        assert not np.allclose(values[0], values[1])
        np.testing.assert_array_equal(u.vmeasured(), MEASURED)
        np.testing.assert_allclose(u.vunfold(), MEASURED, rtol=1e-9)

    def test_run_toy_returns_values_errors_chi2(self, unfolding):
        values, errors, chi2 = unfolding.run_toy()
        assert values.shape == (5,)
        assert errors.shape == (5,)
        assert chi2 >= 0.0

    def test_negative_ntoys_rejected(self, unfolding):
        with pytest.raises(ValueError):
            unfolding.set_ntoys(-1)


class TestFailureHandling:
    def test_failure_is_sticky(self, response, measured):
        algorithm = CountingAlgorithm()
        u = Unfolding(response, measured, algorithm=algorithm, verbose=0)

        np.testing.assert_array_equal(u.vunfold(), np.zeros(5))
        np.testing.assert_array_equal(u.vunfold(), np.zeros(5))
        np.testing.assert_array_equal(u.eunfold_v(ErrorTreatment.ERRORS), np.zeros(5))
        np.testing.assert_array_equal(u.eunfold(ErrorTreatment.COVARIANCE), np.zeros((5, 5)))
        assert u.chi2(TRUTH) == CHI2_FAILED
        assert algorithm.calls == 1
        assert u.cache.fail

    def test_new_input_clears_failure(self, response, measured):
        algorithm = CountingAlgorithm()
        u = Unfolding(response, measured, algorithm=algorithm, verbose=0)
        u.vunfold()
        u.set_measured(measured)
        assert not u.cache.fail
        u.vunfold()
        assert algorithm.calls == 2

    def test_bin_by_bin_needs_matching_binning(self, measured):
        truth = Histogram(np.linspace(0.0, 5.0, 4), [100.0, 200.0, 300.0])
        train = Histogram(EDGES, TRUTH)
        migrations = np.zeros((5, 3))
        migrations[:3, :3] = np.diag([100.0, 200.0, 300.0])
        u = Unfolding(Response(train, truth, migrations), measured, algorithm="bin_by_bin",
                      verbose=0)
        np.testing.assert_array_equal(u.vunfold(), np.zeros(3))
        assert u.cache.fail


class TestBiasAccess:
    def test_vbias_before_calculation_raises(self, unfolding):
        with pytest.raises(RuntimeError, match="calculate bias"):
            unfolding.vbias()
        with pytest.raises(RuntimeError):
            unfolding.ebias()

    def test_unknown_bias_method_raises(self, unfolding):
        with pytest.raises(ValueError):
            unfolding.calculate_bias(method=7)


class TestConfiguration:
    def test_factory_sets_regparm(self, response, measured):
        u = new_unfolding("bayes", response, measured, regparm=3, verbose=0)
        assert u.regparm == 3
        assert u.algorithm.label == "Bayes"

    def test_classmethod_factory(self, response, measured):
        u = Unfolding.new("svd", response, measured, verbose=0)
        assert u.algorithm_tag.name == "SVD"

    def test_dummy_ignores_regparm(self, response, measured):
        u = Unfolding(response, measured, regparm=3, verbose=0)
        assert u.regparm == REGPARM_UNSET

    def test_regularization_bounds(self, response, measured):
        u = new_unfolding("bayes", response, measured, verbose=0)
        bounds = u.regularization_bounds()
        assert bounds.default == 4.0
        assert u.min_parm == 1.0
        assert u.max_parm == 15.0
        assert u.step_size_parm == 1.0
        assert u.cache.have_settings

    def test_set_regparm_clears_cache(self, response, measured):
        u = new_unfolding("bayes", response, measured, regparm=2, verbose=0)
        u.vunfold()
        u.set_regparm(5)
        assert not u.cache.unfolded
        assert u.regparm == 5

    def test_clone_is_independent(self, unfolding):
        clone = unfolding.clone()
        clone.set_measured_vector(MEASURED * 3.0)
        np.testing.assert_allclose(clone.vunfold(), MEASURED * 3.0, rtol=1e-9)
        np.testing.assert_allclose(unfolding.vunfold(), MEASURED, rtol=1e-9)
        assert clone.rng is unfolding.rng

    def test_clone_defaults_to_asimov_measured(self, unfolding):
        clone = unfolding.clone()
        np.testing.assert_allclose(clone.vunfold(), TRUTH, rtol=1e-9)

    def test_reset_drops_inputs(self, unfolding):
        unfolding.vunfold()
        unfolding.reset()
        assert unfolding.response is None
        assert unfolding.measured is None
        assert not unfolding.cache.unfolded

    def test_str_mentions_algorithm(self, unfolding):
        assert "Invert" in str(unfolding)


class TestUnequalBinning:
    @pytest.fixture
    def wide_measured(self):
        """Six measured bins against five truth bins."""
        edges = np.linspace(0.0, 6.0, 7)
        mig = np.zeros((6, 5))
        mig[:5, :5] = np.diag(TRUTH)
        response = Response(Histogram(edges, mig.sum(axis=1)), Histogram(EDGES, TRUTH), mig)
        data = Histogram(edges, np.append(MEASURED, 40.0))
        return Unfolding(response, data, algorithm="none", verbose=0)

    @pytest.fixture
    def narrow_measured(self):
        """Four measured bins against five truth bins."""
        edges = np.linspace(0.0, 4.0, 5)
        mig = np.diag(TRUTH)[:4, :]
        response = Response(Histogram(edges, mig.sum(axis=1)), Histogram(EDGES, TRUTH), mig)
        return Unfolding(response, Histogram(edges, MEASURED[:4]), algorithm="none", verbose=0)

    def test_dummy_copies_leading_bins_when_more_measured(self, wide_measured):
        assert (wide_measured.nm, wide_measured.nt) == (6, 5)
        np.testing.assert_array_equal(wide_measured.vunfold(), MEASURED)

    def test_dummy_pads_with_zeros_when_fewer_measured(self, narrow_measured):
        assert (narrow_measured.nm, narrow_measured.nt) == (4, 5)
        np.testing.assert_array_equal(narrow_measured.vunfold(), np.append(MEASURED[:4], 0.0))

    def test_default_covariance_drops_extra_measured_bins(self, wide_measured):
        cov_mes = np.diag(np.append(MEASURED, 40.0))
        cov_mes += 10.0 * (np.eye(6, k=1) + np.eye(6, k=-1))
        wide_measured.set_measured_cov(cov_mes)
        np.testing.assert_array_equal(
            wide_measured.eunfold(ErrorTreatment.COVARIANCE), cov_mes[:5, :5]
        )

    def test_default_covariance_is_zero_outside_measured_block(self, narrow_measured):
        cov = narrow_measured.eunfold(ErrorTreatment.COVARIANCE)
        expected = np.zeros((5, 5))
        expected[:4, :4] = np.diag(MEASURED[:4])
        np.testing.assert_allclose(cov, expected, rtol=1e-12)
        np.testing.assert_allclose(
            narrow_measured.eunfold_v(ErrorTreatment.ERRORS),
            np.append(np.sqrt(MEASURED[:4]), 0.0),
            rtol=1e-12,
        )


class TestOverflowAndDensity:
    TRUTH_FLOWS = np.concatenate(([20.0], TRUTH, [30.0]))
    MEASURED_FLOWS = np.concatenate(([25.0], MEASURED, [35.0]))

    @pytest.fixture
    def flow_response(self):
        truth = Histogram(EDGES, self.TRUTH_FLOWS, name="truth")
        measured = Histogram(EDGES, self.TRUTH_FLOWS, name="measured")
        return Response(measured, truth, np.diag(self.TRUTH_FLOWS), name="flows")

    @pytest.fixture
    def flow_data(self):
        return Histogram(EDGES, self.MEASURED_FLOWS, name="data")

    def test_overflow_response_unfolds_flow_bins(self, flow_response, flow_data):
        flow_response.overflow = True
        u = Unfolding(flow_response, flow_data, algorithm="invert", verbose=0)
        assert u.overflow
        assert (u.nm, u.nt) == (7, 7)
        np.testing.assert_allclose(u.vunfold(), self.MEASURED_FLOWS, rtol=1e-9)

        residual = self.MEASURED_FLOWS - self.TRUTH_FLOWS
        expected = np.sum(residual ** 2 / self.MEASURED_FLOWS)
        assert u.chi2(treatment=ErrorTreatment.ERRORS) == pytest.approx(expected, rel=1e-9)

        h = u.hunfold()
        np.testing.assert_allclose(h.vector(overflow=True), self.MEASURED_FLOWS, rtol=1e-9)
        np.testing.assert_allclose(
            h.error_vector(overflow=True), np.sqrt(self.MEASURED_FLOWS), rtol=1e-9
        )

    def test_set_overflow_switches_layout(self, flow_response, flow_data):
        u = Unfolding(flow_response, flow_data, algorithm="invert", verbose=0)
        np.testing.assert_allclose(u.vunfold(), MEASURED, rtol=1e-9)
        u.set_overflow(True)
        assert (u.nm, u.nt) == (7, 7)
        assert not u.cache.unfolded
        np.testing.assert_allclose(u.vunfold(), self.MEASURED_FLOWS, rtol=1e-9)
        assert u.hunfold().vector(overflow=True)[-1] == pytest.approx(35.0)
        assert not flow_response.overflow

    def test_density_response(self):
        edges = np.array([0.0, 1.0, 2.0, 4.0, 8.0])
        widths = np.diff(edges)
        truth = np.array([100.0, 200.0, 400.0, 400.0])
        data = np.array([110.0, 190.0, 420.0, 380.0])
        response = Response(
            Histogram(edges, truth), Histogram(edges, truth), np.diag(truth), density=True
        )
        u = Unfolding(response, Histogram(edges, data), algorithm="invert", verbose=0)
        assert u.density
        np.testing.assert_allclose(u.vmeasured(), data / widths, rtol=1e-12)
        np.testing.assert_allclose(u.vunfold(), data / widths, rtol=1e-9)
        np.testing.assert_allclose(
            u.eunfold_v(ErrorTreatment.ERRORS), np.sqrt(data) / widths, rtol=1e-9
        )
        assert u.chi2(treatment=ErrorTreatment.ERRORS) == pytest.approx(
            np.sum((data - truth) ** 2 / data), rel=1e-9
        )
        h = u.hunfold()
        np.testing.assert_allclose(h.vector(), data, rtol=1e-9)
        np.testing.assert_allclose(h.error_vector(), np.sqrt(data), rtol=1e-9)


class TestMeasuredAccessors:
    def test_measured_vectors_are_copies(self, unfolding):
        unfolding.vmeasured()[:] = -1.0
        unfolding.emeasured()[:] = -1.0
        unfolding.measured_cov()[:] = -1.0
        np.testing.assert_array_equal(unfolding.vmeasured(), MEASURED)
        np.testing.assert_allclose(unfolding.emeasured(), np.sqrt(MEASURED))
        np.testing.assert_allclose(unfolding.measured_cov(), np.diag(MEASURED))
        np.testing.assert_allclose(unfolding.vunfold(), MEASURED, rtol=1e-9)

    def test_set_covariance_is_not_exposed(self, unfolding):
        cov = np.diag(MEASURED)
        unfolding.set_measured_cov(cov)
        unfolding.measured_cov()[0, 0] = 0.0
        assert unfolding.measured_cov()[0, 0] == pytest.approx(MEASURED[0])
