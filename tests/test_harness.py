"""Tests for the replication harness."""

import dataclasses
import math

import pytest

from conftest import ConstantControl
from dists import InvalidSampleSize, Uniform
from harness import (
    comparison_rows,
    failure_rows,
    replication_streams,
    run_comparison,
    variance_ratio,
)

STAT_COLUMNS = ("method", "N", "replications", "failures", "mean_estimate", "bias", "mcse", "variance", "mean_variance_estimate")


def _stats(rows):
    return [{k: row[k] for k in STAT_COLUMNS} for row in rows]


class TestRunComparison:
    """Repeated replications and aggregate statistics."""

    def test_rows(self, scenario, seed, reference):
        result = run_comparison(scenario, 1000, 20, reference, seed=seed)
        rows = comparison_rows(result)
        assert [r["method"] for r in rows] == ["simple", "control_variate", "importance"]
        for row in rows:
            assert row["N"] == 1000
            assert row["replications"] == 20
            assert row["failures"] == 0
            assert row["bias"] == pytest.approx(row["mean_estimate"] - reference)
            assert row["variance"] > 0.0
            assert row["elapsed_time"] >= 0.0
            assert 0.0 < row["mean_estimate"] < 1.0
        assert rows[0]["variance_ratio"] == 1.0

    def test_batch_statistics(self, scenario, seed, reference):
        result = run_comparison(scenario, 500, 10, reference, seed=seed, methods=("simple",))
        batch = result.batches["simple"]
        estimates = batch.estimates()
        assert len(batch.results) == 10
        assert batch.mean_estimate() == pytest.approx(estimates.mean())
        assert batch.variance() == pytest.approx(estimates.var(ddof=1))
        assert result.control_mean is None

    def test_control_variate_reduces_variance(self, scenario, seed, reference):
        result = run_comparison(scenario, 1000, 200, reference, seed=seed, methods=("simple", "control_variate"))
        assert result.batches["control_variate"].variance() <= result.batches["simple"].variance()
        assert variance_ratio(result, "control_variate") < 1.0

    def test_importance_bias_shrinks(self, scenario, seed, reference):
        biases = []
        for n in (1000, 10_000, 100_000):
            result = run_comparison(scenario, n, 20, reference, seed=seed, methods=("importance",))
            biases.append(abs(result.batches["importance"].bias(reference)))
        assert biases[1] < 0.003
        assert biases[2] < 0.002
        assert biases[2] <= biases[0] + 0.0005
        assert biases[2] <= biases[1] + 0.0005

    def test_seeded_runs_are_identical(self, scenario, seed, reference):
        a = comparison_rows(run_comparison(scenario, 800, 15, reference, seed=seed))
        b = comparison_rows(run_comparison(scenario, 800, 15, reference, seed=seed))
        assert _stats(a) == _stats(b)

    def test_different_seeds_differ(self, scenario, reference):
        a = comparison_rows(run_comparison(scenario, 800, 5, reference, seed=1, methods=("simple",)))
        b = comparison_rows(run_comparison(scenario, 800, 5, reference, seed=2, methods=("simple",)))
        assert a[0]["mean_estimate"] != b[0]["mean_estimate"]

    def test_unseeded_runs_work(self, scenario, reference):
        result = run_comparison(scenario, 200, 3, reference, methods=("simple",))
        assert len(result.batches["simple"].results) == 3

    def test_streams_are_distinct_per_method_and_replication(self):
        a = replication_streams(5, "simple", 100, 3)
        b = replication_streams(5, "importance", 100, 3)
        states = {tuple(ss.generate_state(2)) for ss in a + b}
        assert len(states) == 6

    def test_invalid_inputs(self, scenario, reference):
        with pytest.raises(InvalidSampleSize):
            run_comparison(scenario, 0, 5, reference, seed=1)
        with pytest.raises(ValueError):
            run_comparison(scenario, 10, 0, reference, seed=1)
        with pytest.raises(ValueError, match="Unknown method"):
            run_comparison(scenario, 10, 2, reference, seed=1, methods=("bootstrap",))

    def test_progress_callback(self, scenario, seed, reference):
        calls = []
        run_comparison(scenario, 100, 4, reference, seed=seed, on_result=lambda m, k: calls.append(m))
        assert len(calls) == 12
        assert calls[:4] == ["simple"] * 4


class TestFailures:
    """Per-replication failures are recorded, not raised."""

    def test_degenerate_control_recorded(self, scenario, seed, reference):
        degenerate = dataclasses.replace(scenario, control=ConstantControl())
        result = run_comparison(degenerate, 500, 6, reference, seed=seed)
        cv = result.batches["control_variate"]
        assert len(cv.failures) == 6
        assert not cv.results
        assert math.isnan(cv.mean_estimate())
        assert {f.error for f in cv.failures} == {"DegenerateControlVariate"}
        assert len(result.batches["simple"].results) == 6
        assert len(result.batches["importance"].results) == 6

        rows = failure_rows(result)
        assert len(rows) == 6
        assert rows[0]["method"] == "control_variate"
        assert [r["replication"] for r in rows] == list(range(6))
        table = {r["method"]: r for r in comparison_rows(result)}
        assert table["control_variate"]["failures"] == 6
        assert math.isnan(table["control_variate"]["variance_ratio"])

    def test_zero_weight_mass_recorded(self, scenario, seed, reference):
        disjoint = dataclasses.replace(scenario, nominal_clinic=Uniform(0.0, 1.0), proposal_clinic=Uniform(2.0, 3.0))
        result = run_comparison(disjoint, 100, 3, reference, seed=seed, methods=("simple", "importance"))
        assert {f.error for f in result.batches["importance"].failures} == {"ZeroWeightMass"}
        assert len(result.batches["simple"].results) == 3


class TestWorkers:
    """Process-pool execution matches the serial path."""

    def test_pool_matches_serial(self, scenario, seed, reference):
        serial = comparison_rows(run_comparison(scenario, 300, 4, reference, seed=seed))
        pooled = comparison_rows(run_comparison(scenario, 300, 4, reference, seed=seed, workers=2))
        assert _stats(serial) == _stats(pooled)
