import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402
import pandas as pd  # noqa: E402
import pytest  # noqa: E402

from histunfold import (  # noqa: E402
    ErrorTreatment,
    Histogram,
    Response,
    Unfolding,
    plot_unfolded,
    print_table,
)

EDGES = np.array([0.0, 1.0, 2.0, 4.0])


class TestHistogram:
    def test_vector_with_and_without_flows(self):
        h = Histogram(EDGES, [5.0, 1.0, 2.0, 3.0, 7.0])
        np.testing.assert_array_equal(h.vector(), [1.0, 2.0, 3.0])
        np.testing.assert_array_equal(h.vector(overflow=True), [5.0, 1.0, 2.0, 3.0, 7.0])
        assert h.nvalues() == 3
        assert h.nvalues(overflow=True) == 5

    def test_default_errors_are_poisson(self):
        h = Histogram(EDGES, [4.0, 9.0, 16.0])
        np.testing.assert_array_equal(h.error_vector(), [2.0, 3.0, 4.0])

    def test_density_divides_by_width(self):
        h = Histogram(EDGES, [4.0, 9.0, 16.0])
        np.testing.assert_array_equal(h.vector(density=True), [4.0, 9.0, 8.0])

    def test_from_vector_inverts_density(self):
        template = Histogram(EDGES)
        h = Histogram.from_vector([4.0, 9.0, 8.0], like=template, density=True)
        np.testing.assert_array_equal(h.vector(), [4.0, 9.0, 16.0])

    def test_from_vector_length_mismatch(self):
        with pytest.raises(ValueError):
            Histogram.from_vector([1.0, 2.0], like=Histogram(EDGES))

    @pytest.mark.parametrize("edges", [[0.0], [0.0, 2.0, 1.0]])
    def test_invalid_edges(self, edges):
        with pytest.raises(ValueError):
            Histogram(edges)

    def test_asimov_clone_has_poisson_errors(self):
        h = Histogram(EDGES, [4.0, 9.0, 16.0], errors=[1.0, 1.0, 1.0])
        clone = h.asimov_clone()
        np.testing.assert_array_equal(clone.error_vector(), [2.0, 3.0, 4.0])
        np.testing.assert_array_equal(h.error_vector(), [1.0, 1.0, 1.0])


class TestResponse:
    def test_from_pairs(self):
        response = Response.from_pairs(
            EDGES, EDGES,
            measured=[0.5, 1.5, 1.5, 2.5],
            truth=[0.5, 1.5, 1.5, 2.5],
            missed=[0.5],
        )
        np.testing.assert_array_equal(response.truth_vector(), [2.0, 2.0, 1.0])
        np.testing.assert_array_equal(response.measured_vector(), [1.0, 2.0, 1.0])
        np.testing.assert_allclose(response.matrix(), np.diag([0.5, 1.0, 1.0]))

    def test_from_pairs_fills_flows(self):
        response = Response.from_pairs(
            EDGES, EDGES, measured=[-1.0, 0.5], truth=[0.5, 9.0], overflow=True
        )
        assert response.n_truth == 5
        assert response.migrations[0, 1] == 1.0
        assert response.migrations[1, 4] == 1.0

    def test_fold(self):
        response = Response(
            Histogram(EDGES, [1.0, 1.0, 1.0]),
            Histogram(EDGES, [2.0, 1.0, 1.0]),
            np.diag([1.0, 1.0, 1.0]),
        )
        np.testing.assert_allclose(response.fold([4.0, 4.0, 4.0]), [2.0, 4.0, 4.0])
        with pytest.raises(ValueError):
            response.fold([1.0, 2.0])

    def test_migrations_shape_checked(self):
        with pytest.raises(ValueError):
            Response(Histogram(EDGES), Histogram(EDGES), np.ones((2, 2)))

    def test_missing_histogram_rejected(self):
        with pytest.raises(ValueError):
            Response(None, Histogram(EDGES), np.eye(3))

    def test_run_toy_is_cleared(self):
        truth = Histogram(EDGES, [100.0, 100.0, 100.0])
        response = Response(Histogram(EDGES, [100.0, 100.0, 100.0]), truth, np.diag([100.0] * 3))
        nominal = response.matrix().copy()
        response.run_toy(np.random.default_rng(0))
        assert not np.array_equal(response.matrix(), nominal)
        response.clear_cache()
        np.testing.assert_array_equal(response.matrix(), nominal)


class TestPresentation:
    @pytest.fixture
    def unfolding(self):
        truth = Histogram(EDGES, [100.0, 200.0, 100.0])
        response = Response(
            Histogram(EDGES, [100.0, 200.0, 100.0]), truth, np.diag([100.0, 200.0, 100.0])
        )
        return Unfolding(
            response, Histogram(EDGES, [110.0, 190.0, 105.0]), algorithm="invert", verbose=0
        )

    def test_print_table(self, unfolding):
        df = print_table(unfolding, truth=np.array([100.0, 200.0, 100.0]))
        assert isinstance(df, pd.DataFrame)
        assert list(df.columns) == [
            "train_truth", "train_measured", "truth", "measured",
            "unfolded", "error", "diff", "pull",
        ]
        assert len(df) == 3
        np.testing.assert_allclose(df["diff"], [10.0, -10.0, 5.0], atol=1e-9)
        assert df.attrs["chi2"] == pytest.approx(100 / 110 + 100 / 190 + 25 / 105, rel=1e-6)
        assert df.attrs["error_treatment"] == "ERRORS"

    def test_print_table_without_truth(self, unfolding):
        df = print_table(unfolding, treatment=ErrorTreatment.COVARIANCE)
        assert df["truth"].isna().all()
        assert np.isnan(df.attrs["chi2"])

    def test_plot_unfolded(self, unfolding):
        ax = plot_unfolded(unfolding, truth=np.array([100.0, 200.0, 100.0]))
        assert len(ax.get_legend().get_texts()) == 3
        plt.close(ax.figure)
